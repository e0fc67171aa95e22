"""
Chat Clients
-------------
Two implementations with an identical chat(system_prompt, user_prompt) -> str
interface:

  ChatClient          -- OpenAI chat completions (or any OpenAI-compatible
                         server, e.g. a local Ollama, via base_url)
  AnthropicChatClient -- Anthropic messages API

Both default to temperature 0 so grounding behaviour is reproducible.  SDK
errors surface as ExternalCallFailure after tenacity has retried the
transient ones; timeouts are the SDK's and are not re-imposed here.
"""
from __future__ import annotations

import time
from typing import Optional

from langsmith import traceable
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentic_rag.config import GenerationSettings
from agentic_rag.errors import ConfigurationError, ExternalCallFailure
from agentic_rag.utils.helpers import truncate_text


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class ChatClient:
    """Blocking chat call against an OpenAI-compatible endpoint."""

    provider = "openai"

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        base_url: Optional[str] = None,
        client=None,
    ) -> None:
        import openai  # lazy import keeps import graph clean

        if not model or not model.strip():
            raise ConfigurationError("Chat model name is required")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._errors = openai
        try:
            self._client = client or openai.OpenAI(base_url=base_url)
        except openai.OpenAIError as exc:
            raise ConfigurationError(f"OpenAI client could not be created: {exc}") from exc
        self._send = retry(
            retry=retry_if_exception_type(
                (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError, openai.InternalServerError)
            ),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            reraise=True,
        )(self._complete)

    def _complete(self, system_prompt: str, user_prompt: str):
        return self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    @traceable(name="chat_openai", run_type="llm")
    def chat(self, system_prompt: str, user_prompt: str) -> str:
        logger.debug(
            f"[ChatClient] {self.model} | system={len(system_prompt)} chars "
            f"user={len(user_prompt)} chars | {truncate_text(user_prompt, 120)!r}"
        )
        start = time.perf_counter()
        try:
            response = self._send(system_prompt, user_prompt)
        except self._errors.OpenAIError as exc:
            logger.error(f"[ChatClient] {self.model} call failed after {time.perf_counter() - start:.2f}s: {exc}")
            raise ExternalCallFailure("generation", str(exc)) from exc

        answer = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        logger.info(
            f"[ChatClient] Done in {time.perf_counter() - start:.2f}s | {len(answer)} chars"
            + (f" | prompt={usage.prompt_tokens} completion={usage.completion_tokens}" if usage else "")
        )
        return answer


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class AnthropicChatClient:
    """
    Blocking chat call against Anthropic Claude models.

    The Anthropic SDK takes the system prompt as a separate `system`
    parameter rather than a message.
    """

    provider = "anthropic"

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        client=None,
    ) -> None:
        import anthropic  # lazy import

        if not model or not model.strip():
            raise ConfigurationError("Chat model name is required")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._errors = anthropic
        self._client = client or anthropic.Anthropic()
        self._send = retry(
            retry=retry_if_exception_type(
                (anthropic.APIConnectionError, anthropic.APITimeoutError, anthropic.RateLimitError, anthropic.InternalServerError)
            ),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            reraise=True,
        )(self._complete)

    def _complete(self, system_prompt: str, user_prompt: str):
        return self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )

    @traceable(name="chat_anthropic", run_type="llm")
    def chat(self, system_prompt: str, user_prompt: str) -> str:
        logger.debug(
            f"[AnthropicChatClient] {self.model} | system={len(system_prompt)} chars "
            f"user={len(user_prompt)} chars"
        )
        start = time.perf_counter()
        try:
            response = self._send(system_prompt, user_prompt)
        except self._errors.AnthropicError as exc:
            logger.error(f"[AnthropicChatClient] {self.model} call failed: {exc}")
            raise ExternalCallFailure("generation", str(exc)) from exc

        answer = response.content[0].text if response.content else ""
        logger.info(
            f"[AnthropicChatClient] Done in {time.perf_counter() - start:.2f}s | "
            f"input={response.usage.input_tokens} output={response.usage.output_tokens}"
        )
        return answer


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_chat_client(settings: GenerationSettings):
    """Instantiate the chat client for the configured provider."""
    if settings.provider == "anthropic":
        return AnthropicChatClient(
            model=settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    if settings.provider == "openai":
        return ChatClient(
            model=settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            base_url=settings.base_url,
        )
    raise ConfigurationError(f"Unknown chat provider: {settings.provider!r}")
