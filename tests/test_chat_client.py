from __future__ import annotations

from types import SimpleNamespace

import pytest
from openai import OpenAIError

from agentic_rag.config import GenerationSettings
from agentic_rag.errors import ExternalCallFailure
from agentic_rag.generation.client import AnthropicChatClient, ChatClient, make_chat_client


class FakeCompletions:
    def __init__(self, reply: str = "", fail: Exception | None = None) -> None:
        self.reply = reply
        self.fail = fail
        self.kwargs: dict = {}

    def create(self, **kwargs):
        if self.fail is not None:
            raise self.fail
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)


class FakeMessages:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.kwargs: dict = {}

    def create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(
            content=[SimpleNamespace(text=self.reply)],
            usage=SimpleNamespace(input_tokens=3, output_tokens=4),
        )


def test_openai_chat_sends_system_and_user() -> None:
    completions = FakeCompletions("answer")
    client = ChatClient(model="gpt-4o-mini", client=SimpleNamespace(chat=SimpleNamespace(completions=completions)))

    assert client.chat("system text", "user text") == "answer"
    assert completions.kwargs["messages"] == [
        {"role": "system", "content": "system text"},
        {"role": "user", "content": "user text"},
    ]
    assert completions.kwargs["temperature"] == 0.0


def test_openai_chat_error_becomes_external_call_failure() -> None:
    completions = FakeCompletions(fail=OpenAIError("unauthorised"))
    client = ChatClient(client=SimpleNamespace(chat=SimpleNamespace(completions=completions)))

    with pytest.raises(ExternalCallFailure) as info:
        client.chat("s", "u")
    assert info.value.service == "generation"


def test_anthropic_chat_uses_system_parameter() -> None:
    messages = FakeMessages("claude says hi")
    client = AnthropicChatClient(client=SimpleNamespace(messages=messages))

    assert client.chat("be brief", "hello") == "claude says hi"
    assert messages.kwargs["system"] == "be brief"
    assert messages.kwargs["messages"] == [{"role": "user", "content": "hello"}]


def test_make_chat_client_picks_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")

    assert isinstance(make_chat_client(GenerationSettings()), ChatClient)
    anthropic_client = make_chat_client(GenerationSettings(provider="anthropic", model="claude-haiku-4-5-20251001"))
    assert isinstance(anthropic_client, AnthropicChatClient)
    assert anthropic_client.model == "claude-haiku-4-5-20251001"
