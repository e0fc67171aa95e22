"""
Retriever workers.

Each Retriever searches the corpus with the state's current query at its own
top-k and appends what it finds to the state's hit accumulator.  The
pipeline runs three of them concurrently; the accumulator's lock is what
makes that safe.
"""
from __future__ import annotations

from typing import Sequence

from langsmith import traceable
from loguru import logger

from agentic_rag.schemas import AgentEvent, ChunkHit
from agentic_rag.serving.state import SharedPipelineState

RETRIEVER_KS: tuple[int, ...] = (6, 10, 14)


class Retriever:
    def __init__(self, name: str, store, k: int) -> None:
        self.name = name
        self.store = store
        self.k = k

    def trace(self, state: SharedPipelineState) -> AgentEvent:
        return AgentEvent(agent=self.name, type="retrieve", data={"k": self.k, "query": state.query})

    @traceable(name="retrieve", run_type="retriever")
    def run(self, state: SharedPipelineState) -> list[ChunkHit]:
        query = state.query if state.query and state.query.strip() else state.question
        hits = self.store.search(query, self.k)
        state.add_hits(hits)
        logger.debug(
            f"[{self.name}] k={self.k} -> {len(hits)} hit(s)"
            + (f" (top score: {hits[0].score:.4f})" if hits else "")
        )
        return hits


def build_retrievers(store, ks: Sequence[int] = RETRIEVER_KS) -> list[Retriever]:
    """One retriever per k, named retriever-a, retriever-b, ..."""
    return [Retriever(f"retriever-{chr(ord('a') + i)}", store, k) for i, k in enumerate(ks)]
