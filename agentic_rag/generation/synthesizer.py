"""
Grounded answer synthesis.

Builds the context block from the retained hits -- each passage prefixed by
its [chunk:<id>] marker -- and issues a single chat call whose reply becomes
the state's draft answer.
"""
from __future__ import annotations

from loguru import logger

from agentic_rag.generation.prompts import (
    CHUNK_MARKER,
    SYNTHESIS_SYSTEM_PROMPT,
    SYNTHESIS_USER_TEMPLATE,
)
from agentic_rag.schemas import ChunkHit
from agentic_rag.serving.state import SharedPipelineState


def build_context(hits: list[ChunkHit]) -> tuple[str, str]:
    """Return (context_block, comma-separated chunk ids) for the given hits."""
    context = "\n\n---\n\n".join(
        f"{CHUNK_MARKER.format(chunk_id=h.chunk_id)} {h.content}" for h in hits
    )
    chunk_ids = ", ".join(str(h.chunk_id) for h in hits)
    return context, chunk_ids


class Synthesizer:
    name = "synthesizer"

    def __init__(self, chat) -> None:
        self.chat = chat

    def build_prompt(self, state: SharedPipelineState) -> tuple[str, str]:
        context, chunk_ids = build_context(state.hits)
        user = SYNTHESIS_USER_TEMPLATE.format(
            question=state.question,
            chunk_ids=chunk_ids or "(none)",
            context=context or "(no context retrieved)",
        )
        return SYNTHESIS_SYSTEM_PROMPT, user

    def run(self, state: SharedPipelineState) -> str:
        system, user = self.build_prompt(state)
        logger.info(
            f"[Synthesizer] attempt={state.attempt} | {len(state.hits)} chunk(s) | "
            f"prompt={len(user)} chars"
        )
        draft = self.chat.chat(system, user)
        state.draft_answer = draft
        return draft
