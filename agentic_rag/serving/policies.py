"""
Rule-based pipeline stages
---------------------------
Two pure functions over SharedPipelineState, no model calls:

1. route()  -- decides whether a question goes through retrieval.  A
               non-empty corpus always forces retrieval; on an empty corpus
               only a bare greeting skips it.

2. judge()  -- accepts or rejects a draft answer.  The length policy is
               used: a draft passes when there is retrieved context and the
               draft is at least MIN_ANSWER_CHARS long.  Citation markers are
               parsed for logging only and do not affect the verdict.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from agentic_rag.errors import ValidationRejection
from agentic_rag.serving.state import SharedPipelineState

GREETINGS = frozenset({"hello", "hi", "who are you"})
MIN_ANSWER_CHARS = 20

_CHUNK_MARKER = re.compile(r"\[chunk:(\d+)\]")


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

def is_greeting(question: str) -> bool:
    return question.strip().lower() in GREETINGS


def route(state: SharedPipelineState, has_documents: bool) -> bool:
    """Set and return state.needs_retrieval."""
    if has_documents:
        state.needs_retrieval = True
    else:
        state.needs_retrieval = not is_greeting(state.question)
    return state.needs_retrieval


# ---------------------------------------------------------------------------
# Judge
# ---------------------------------------------------------------------------

@dataclass
class JudgeVerdict:
    passed: bool
    reason: str = ""
    rejection: Optional[ValidationRejection] = None


def cited_chunk_ids(text: Optional[str]) -> set[int]:
    """Chunk ids referenced by [chunk:N] markers in text."""
    if not text:
        return set()
    return {int(m) for m in _CHUNK_MARKER.findall(text)}


def _reject(state: SharedPipelineState, reason: str) -> JudgeVerdict:
    state.accepted = False
    return JudgeVerdict(passed=False, reason=reason, rejection=ValidationRejection(reason))


def judge(state: SharedPipelineState) -> JudgeVerdict:
    """Set state.accepted and return the verdict."""
    hits = state.hits
    draft = state.draft_answer or ""

    if not hits:
        return _reject(state, "no retrieved context")
    if not draft.strip():
        return _reject(state, "blank draft")
    if len(draft) < MIN_ANSWER_CHARS:
        return _reject(state, f"draft shorter than {MIN_ANSWER_CHARS} chars")

    cited = cited_chunk_ids(draft)
    retained = {h.chunk_id for h in hits}
    unknown = cited - retained
    if unknown:
        logger.warning(f"[Judge] draft cites chunk ids not in context: {sorted(unknown)}")

    state.accepted = True
    return JudgeVerdict(passed=True, reason=f"{len(cited)} citation marker(s)")
