"""
Query rewriter.

After a rejected draft, asks the model for a better search query given the
original question, the failed draft and a few hints from the chunks that
were just retrieved.  The model is told to reply with {"query": "..."}; an
unparsable or blank reply keeps the previous query.
"""
from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

from agentic_rag.errors import ParseFailure
from agentic_rag.generation.prompts import (
    REWRITE_MAX_HINTS,
    REWRITE_SYSTEM_PROMPT,
    REWRITE_USER_TEMPLATE,
)
from agentic_rag.serving.state import SharedPipelineState
from agentic_rag.utils.helpers import truncate_text

_JSON_OBJECT = re.compile(r"\{.*?\}", re.DOTALL)
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def _loads_object(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    # Models sometimes wrap the object in prose; take the first {...} that parses
    for match in _JSON_OBJECT.finditer(raw):
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
    raise ParseFailure(f"No JSON object in rewrite reply: {truncate_text(raw, 120)!r}")


def extract_query(reply: str | None) -> str:
    """
    Pull the replacement query out of a {"query": "..."} reply.

    Raises ParseFailure when the reply has no JSON object, no "query" key, or
    a blank / non-string query.
    """
    if not reply or not reply.strip():
        raise ParseFailure("Empty rewrite reply")
    raw = _CODE_FENCE.sub("", reply.strip())
    parsed = _loads_object(raw)
    if not isinstance(parsed, dict):
        raise ParseFailure(f"Unexpected JSON shape: {type(parsed).__name__}")
    query = parsed.get("query")
    if not isinstance(query, str) or not query.strip():
        raise ParseFailure("Rewrite reply has no usable 'query'")
    return query.strip()


class QueryRewriter:
    name = "query-rewriter"

    def __init__(self, chat) -> None:
        self.chat = chat

    def build_prompt(self, state: SharedPipelineState) -> tuple[str, str]:
        hints = "\n---\n".join(
            f"{h.title} :: {h.content}" for h in state.hits[:REWRITE_MAX_HINTS]
        )
        user = REWRITE_USER_TEMPLATE.format(
            question=state.question,
            draft=state.draft_answer or "",
            hints=hints,
        )
        return REWRITE_SYSTEM_PROMPT, user

    def run(self, state: SharedPipelineState) -> str:
        """Replace state.query with the rewritten query; keep it on a parse failure."""
        system, user = self.build_prompt(state)
        reply = self.chat.chat(system, user)
        try:
            new_query = extract_query(reply)
        except ParseFailure as exc:
            logger.warning(f"[QueryRewriter] keeping previous query: {exc}")
            return state.query

        logger.info(f"[QueryRewriter] {state.query!r} -> {new_query!r}")
        state.query = new_query
        return new_query
