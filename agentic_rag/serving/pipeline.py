"""
Agentic RAG Pipeline
---------------------
Drives one question through the retrieval state machine:

    ROUTE --(greeting on empty corpus)--> ungrounded chat --> done
      |
      v
    PLAN (trace only)
      |
      v
    RETRIEVE  3 retrievers in parallel (k = 6, 10, 14), joined
      |
      v
    AGGREGATE dedupe by chunk id, top 3 by score
      |
      v
    SYNTHESIZE one chat call, [chunk:<id>] citations
      |
      v
    JUDGE  --pass--> ACCEPT
      |
     fail
      v
    REWRITE (if attempts remain) --> RETRIEVE ...
      |
    EXHAUSTED after 3 attempts --> disclaimer + last draft

The retry bound is a constant, not configuration: at most MAX_ATTEMPTS
synthesis calls and MAX_RETRIES rewrite calls per question.  Transport
failures are never retried here; they abort the question.

Trace events are emitted into an optional TraceLog and never feed back into
control flow.  The outer answer() call is decorated with @traceable so
LangSmith captures retrieval, synthesis and rewrites in one trace.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Optional

from langsmith import traceable
from loguru import logger

from agentic_rag.errors import AgenticRagError, ExternalCallFailure
from agentic_rag.generation.prompts import NOT_GROUNDED_DISCLAIMER, UNGROUNDED_SYSTEM_PROMPT
from agentic_rag.generation.rewriter import QueryRewriter
from agentic_rag.generation.synthesizer import Synthesizer
from agentic_rag.retrieval.aggregator import TOP_N, aggregate_hits
from agentic_rag.retrieval.retriever import RETRIEVER_KS, build_retrievers
from agentic_rag.schemas import AgentEvent, Citation, FinalAnswer
from agentic_rag.serving.policies import judge, route
from agentic_rag.serving.state import SharedPipelineState
from agentic_rag.serving.trace import NullTrace, TraceLog
from agentic_rag.utils.helpers import one_line, truncate_text

MAX_RETRIES = 2
MAX_ATTEMPTS = MAX_RETRIES + 1

PLAN_STEPS = [
    "route",
    "parallel retrieve (multi-agent)",
    "synthesize grounded answer",
    "judge groundedness",
    f"rewrite query + retry (max {MAX_RETRIES})",
]


class AgenticPipeline:
    """
    End-to-end question answering over a VersionedCorpusStore.

    Usage:
        pipeline = AgenticPipeline(store, chat)
        result = pipeline.answer("What is total revenue?")
        print(result.answer)
        for cit in result.citations:
            print(cit.chunk_id, cit.title)

    store needs search(query, k) and has_any_documents(); chat needs
    chat(system_prompt, user_prompt).  Both are blocking, so answer() must
    run on a worker thread when called from an event loop.
    """

    def __init__(self, store, chat) -> None:
        self.store = store
        self.chat = chat
        self.retrievers = build_retrievers(store, RETRIEVER_KS)
        self.synthesizer = Synthesizer(chat)
        self.rewriter = QueryRewriter(chat)

    # --- Public API -----------------------------------------------------------

    @traceable(name="agentic_rag_answer", run_type="chain")
    def answer(self, question: str, trace: Optional[TraceLog] = None) -> FinalAnswer:
        """
        Answer one question.

        Raises:
            ValueError:          blank question.
            ExternalCallFailure: an embedding or chat call failed.
            PersistenceFailure:  the corpus could not be read.
        """
        if not question or not question.strip():
            raise ValueError("question must not be blank")
        trace = trace if trace is not None else NullTrace()
        state = SharedPipelineState(question=question.strip())
        logger.info(f"[Pipeline] Question: {truncate_text(state.question, 100)!r}")
        t0 = time.perf_counter()

        # -- ROUTE ---------------------------------------------------------------
        has_documents = self.store.has_any_documents()
        route(state, has_documents)
        trace.emit("router", "route", {"needsRetrieval": state.needs_retrieval, "hasDocuments": has_documents})

        if not state.needs_retrieval:
            logger.info("[Pipeline] Routed to ungrounded generation")
            reply = self.chat.chat(UNGROUNDED_SYSTEM_PROMPT, state.question)
            return FinalAnswer(answer=reply, citations=[], grounded=False, attempts=0)

        # -- PLAN ----------------------------------------------------------------
        trace.emit("planner", "plan", {"steps": PLAN_STEPS})
        trace.emit("supervisor", "config", {"parallelRetrievers": list(RETRIEVER_KS), "maxRetries": MAX_RETRIES})

        for attempt in range(MAX_ATTEMPTS):
            state.attempt = attempt

            # -- RETRIEVE + AGGREGATE -------------------------------------------
            self._retrieve(state, trace)
            self._aggregate(state, trace)

            # -- SYNTHESIZE ------------------------------------------------------
            trace.emit(self.synthesizer.name, "synthesize", {"retrieved": len(state.hits), "attempt": attempt})
            self.synthesizer.run(state)

            # -- JUDGE -----------------------------------------------------------
            trace.emit("judge", "judge", {"draftChars": len(state.draft_answer or "")})
            verdict = judge(state)
            state.citations = [Citation.from_hit(h) for h in state.hits]
            logger.info(
                f"[Pipeline] attempt {attempt + 1}/{MAX_ATTEMPTS} | "
                f"judge={'pass' if verdict.passed else 'fail'} ({verdict.reason})"
            )

            if verdict.passed:
                logger.info(f"[Pipeline] Accepted in {(time.perf_counter() - t0) * 1000:.0f}ms")
                return FinalAnswer(
                    answer=state.draft_answer or "",
                    citations=state.citations,
                    grounded=True,
                    attempts=attempt + 1,
                )

            # -- REWRITE ---------------------------------------------------------
            if attempt < MAX_RETRIES:
                trace.emit(self.rewriter.name, "rewrite", {"prevQuery": state.query})
                self.rewriter.run(state)

        # -- EXHAUSTED -----------------------------------------------------------
        logger.warning(
            f"[Pipeline] No grounded answer after {MAX_ATTEMPTS} attempts "
            f"({(time.perf_counter() - t0) * 1000:.0f}ms)"
        )
        return FinalAnswer(
            answer=f"{NOT_GROUNDED_DISCLAIMER}\n\n{state.draft_answer or ''}",
            citations=state.citations,
            grounded=False,
            attempts=MAX_ATTEMPTS,
        )

    def events(self, question: str) -> list[AgentEvent]:
        """Routing, plan and supervisor events for a question, without answering it."""
        trace = TraceLog()
        state = SharedPipelineState(question=question.strip())
        has_documents = self.store.has_any_documents()
        route(state, has_documents)
        trace.emit("router", "route", {"needsRetrieval": state.needs_retrieval, "hasDocuments": has_documents})
        if state.needs_retrieval:
            trace.emit("planner", "plan", {"steps": PLAN_STEPS})
            trace.emit("supervisor", "config", {"parallelRetrievers": list(RETRIEVER_KS), "maxRetries": MAX_RETRIES})
        return trace.events

    # --- Stages ---------------------------------------------------------------

    def _retrieve(self, state: SharedPipelineState, trace: TraceLog) -> None:
        """Run every retriever concurrently against the current query and join."""
        state.clear_hits()
        for retriever in self.retrievers:
            event = retriever.trace(state)
            trace.emit(event.agent, event.type, event.data)

        t0 = time.perf_counter()
        with ThreadPoolExecutor(max_workers=len(self.retrievers), thread_name_prefix="retriever") as pool:
            futures = [pool.submit(r.run, state) for r in self.retrievers]
            wait(futures)

        for future in futures:
            exc = future.exception()
            if exc is None:
                continue
            if isinstance(exc, AgenticRagError):
                raise exc
            raise ExternalCallFailure("retrieval", str(exc)) from exc

        logger.info(
            f"[Pipeline] Retrieved {len(state.hits)} chunk(s) from {len(self.retrievers)} "
            f"parallel retrievers in {(time.perf_counter() - t0) * 1000:.0f}ms"
        )

    def _aggregate(self, state: SharedPipelineState, trace: TraceLog) -> None:
        candidates = state.hits
        top = aggregate_hits(candidates, TOP_N)
        state.replace_hits(top)
        trace.emit("aggregator", "aggregate", {"candidates": len(candidates), "kept": len(top)})

        for i, h in enumerate(top, start=1):
            logger.debug(
                f"  TOP_CHUNK[{i}] id={h.chunk_id} idx={h.chunk_index} title={h.title!r} "
                f"score={h.score:.4f} text={one_line(h.content, 200)}"
            )
