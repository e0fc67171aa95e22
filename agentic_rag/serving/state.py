"""Per-question mutable state threaded through every pipeline stage."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from agentic_rag.schemas import ChunkHit, Citation


@dataclass
class SharedPipelineState:
    """
    One instance per inbound question; never shared across questions.

    question is fixed at construction.  query starts as the question and is
    replaced by the rewriter.  Hits are appended concurrently by the
    retrievers, so they are only reachable through the lock-guarded methods.
    """

    question: str
    query: str = ""
    needs_retrieval: bool = False
    draft_answer: Optional[str] = None
    accepted: bool = False
    citations: list[Citation] = field(default_factory=list)
    attempt: int = 0

    _hits: list[ChunkHit] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.query:
            self.query = self.question

    def __setattr__(self, name: str, value) -> None:
        if name == "question" and "question" in self.__dict__:
            raise AttributeError("question is immutable")
        super().__setattr__(name, value)

    # --- Hit accumulator ------------------------------------------------------

    def add_hits(self, hits: Iterable[ChunkHit]) -> None:
        batch = list(hits)
        with self._lock:
            self._hits.extend(batch)

    def replace_hits(self, hits: Iterable[ChunkHit]) -> None:
        batch = list(hits)
        with self._lock:
            self._hits = batch

    def clear_hits(self) -> None:
        with self._lock:
            self._hits = []

    @property
    def hits(self) -> list[ChunkHit]:
        """Snapshot copy; mutating it does not touch the state."""
        with self._lock:
            return list(self._hits)
