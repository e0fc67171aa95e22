from __future__ import annotations

import re
import threading

import pytest

from agentic_rag.errors import ExternalCallFailure
from agentic_rag.generation.prompts import (
    NOT_GROUNDED_DISCLAIMER,
    REWRITE_SYSTEM_PROMPT,
    SYNTHESIS_SYSTEM_PROMPT,
    UNGROUNDED_SYSTEM_PROMPT,
)
from agentic_rag.schemas import ChunkHit
from agentic_rag.serving.pipeline import MAX_ATTEMPTS, AgenticPipeline
from agentic_rag.serving.trace import TraceLog

REVENUE_DOC = (
    "Quarterly revenue report for the fiscal year.\n"
    "\n"
    "Region   Q1   Q2\n"
    "North 1200 9100\n"
    "South 1500 10231\n"
    "East 1461 9800\n"
    "West 1500 10200\n"
    "TOTAL 5661 39331\n"
)

_TOTAL_CHUNK = re.compile(r"\[chunk:(\d+)\][^\[]*TOTAL 5661 39331")


def _grounded_responder(system: str, user: str) -> str:
    if system == SYNTHESIS_SYSTEM_PROMPT:
        match = _TOTAL_CHUNK.search(user)
        if match:
            return f"Total revenue was 5661 in Q1 and 39331 in Q2 [chunk:{match.group(1)}]."
        return "Not found."
    if system == REWRITE_SYSTEM_PROMPT:
        return '{"query": "TOTAL revenue table"}'
    return "Hello there!"


class BrokenStore:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def has_any_documents(self) -> bool:
        return True

    def search(self, query, k):
        raise self.exc


def test_greeting_on_empty_corpus_skips_retrieval(store, embedder, make_chat) -> None:
    chat = make_chat(reply="Hi! Ask me about your documents.")
    result = AgenticPipeline(store, chat).answer("hello")

    assert result.answer == "Hi! Ask me about your documents."
    assert result.citations == []
    assert result.grounded is False
    assert result.attempts == 0
    assert chat.calls == [(UNGROUNDED_SYSTEM_PROMPT, "hello")]
    assert embedder.calls == []


def test_greeting_with_documents_still_retrieves(store, embedder, make_chat) -> None:
    store.ingest_text("file", "report", REVENUE_DOC)
    calls_after_ingest = len(embedder.calls)
    chat = make_chat(_grounded_responder)

    result = AgenticPipeline(store, chat).answer("hello")

    assert len(embedder.calls) > calls_after_ingest
    assert result.attempts >= 1


def test_total_row_answer_is_grounded_and_cited(store, make_chat) -> None:
    store.ingest_text("file", "report", REVENUE_DOC)
    chat = make_chat(_grounded_responder)

    result = AgenticPipeline(store, chat).answer("What is the total revenue?")

    assert result.grounded is True
    assert result.attempts == 1
    assert "5661" in result.answer and "39331" in result.answer
    cited = {int(m) for m in re.findall(r"\[chunk:(\d+)\]", result.answer)}
    assert cited <= {c.chunk_id for c in result.citations}
    assert any(c.chunk_index == 1 for c in result.citations)
    assert len(chat.calls_with(SYNTHESIS_SYSTEM_PROMPT)) == 1
    assert chat.calls_with(REWRITE_SYSTEM_PROMPT) == []


def test_trace_events_describe_the_run(store, make_chat) -> None:
    store.ingest_text("file", "report", REVENUE_DOC)
    trace = TraceLog()

    AgenticPipeline(store, make_chat(_grounded_responder)).answer("What is the total revenue?", trace=trace)

    events = trace.events
    assert [(e.agent, e.type) for e in events[:3]] == [
        ("router", "route"),
        ("planner", "plan"),
        ("supervisor", "config"),
    ]
    assert events[0].data["needsRetrieval"] is True
    assert events[2].data == {"parallelRetrievers": [6, 10, 14], "maxRetries": 2}
    retrieves = [e for e in events if e.type == "retrieve"]
    assert [e.agent for e in retrieves] == ["retriever-a", "retriever-b", "retriever-c"]
    assert [e.data["k"] for e in retrieves] == [6, 10, 14]
    assert [e.type for e in events if e.agent == "judge"] == ["judge"]


def test_permanent_rejection_exhausts_retries(store, make_chat) -> None:
    store.ingest_text("file", "report", REVENUE_DOC)

    def responder(system: str, user: str) -> str:
        if system == REWRITE_SYSTEM_PROMPT:
            return '{"query": "rewritten revenue"}'
        return "too short"

    chat = make_chat(responder)
    trace = TraceLog()
    result = AgenticPipeline(store, chat).answer("What is the total revenue?", trace=trace)

    assert result.grounded is False
    assert result.attempts == MAX_ATTEMPTS == 3
    assert result.answer == f"{NOT_GROUNDED_DISCLAIMER}\n\ntoo short"
    assert result.citations
    assert len(chat.calls_with(SYNTHESIS_SYSTEM_PROMPT)) == 3
    assert len(chat.calls_with(REWRITE_SYSTEM_PROMPT)) == 2

    queries = [e.data["query"] for e in trace.events if e.agent == "retriever-a"]
    assert queries == ["What is the total revenue?", "rewritten revenue", "rewritten revenue"]


def test_accepted_after_one_retry(store, make_chat) -> None:
    store.ingest_text("file", "report", REVENUE_DOC)
    drafts = iter(["nope", "Total revenue was 5661 and 39331 overall."])

    def responder(system: str, user: str) -> str:
        if system == REWRITE_SYSTEM_PROMPT:
            return '{"query": "total revenue"}'
        return next(drafts)

    result = AgenticPipeline(store, make_chat(responder)).answer("What is the total revenue?")

    assert result.grounded is True
    assert result.attempts == 2


def test_retriever_failure_aborts_question(make_chat) -> None:
    chat = make_chat(_grounded_responder)
    pipeline = AgenticPipeline(BrokenStore(ExternalCallFailure("embedding", "down")), chat)

    with pytest.raises(ExternalCallFailure):
        pipeline.answer("What is the total revenue?")
    assert chat.calls == []


def test_unexpected_retriever_error_is_wrapped(make_chat) -> None:
    pipeline = AgenticPipeline(BrokenStore(RuntimeError("boom")), make_chat())

    with pytest.raises(ExternalCallFailure) as info:
        pipeline.answer("What is the total revenue?")
    assert info.value.service == "retrieval"


@pytest.mark.parametrize("question", ["", "   "])
def test_blank_question_rejected(store, make_chat, question: str) -> None:
    with pytest.raises(ValueError):
        AgenticPipeline(store, make_chat()).answer(question)


def test_events_preview(store, make_chat) -> None:
    pipeline = AgenticPipeline(store, make_chat())
    assert [e.agent for e in pipeline.events("hello")] == ["router"]
    assert [e.agent for e in pipeline.events("What is revenue?")] == ["router", "planner", "supervisor"]


def test_total_lines_in_separate_chunks_both_reach_synthesis(store, make_chat) -> None:
    north = (
        "The northern division closed the fiscal year with strong subscription growth, steady "
        "renewals and lower churn across every customer segment it serves in the region. TOTAL 5661"
    )
    south = (
        "The southern division finished the same fiscal year with record enterprise bookings, "
        "expanded partner channels and improved margins on its services business line. TOTAL 39331"
    )
    store.ingest_text("file", "annual.txt", f"{north}\n\n{south}")

    def responder(system: str, user: str) -> str:
        ids = re.findall(r"\[chunk:(\d+)\]", user)
        return "Revenue totals were 5661 and 39331 " + " ".join(f"[chunk:{i}]" for i in ids) + "."

    chat = make_chat(responder)
    result = AgenticPipeline(store, chat).answer("What is total revenue?")

    prompt = chat.calls_with(SYNTHESIS_SYSTEM_PROMPT)[0]
    context_ids = set(re.findall(r"\[chunk:(\d+)\]", prompt))
    assert len(context_ids) == 2
    assert result.grounded is True
    cited = {int(m) for m in re.findall(r"\[chunk:(\d+)\]", result.answer)}
    assert cited and cited <= {c.chunk_id for c in result.citations}


class BarrierStore:
    """Every search blocks until all three retrievers are inside search at once."""

    def __init__(self) -> None:
        self.barrier = threading.Barrier(3, timeout=5)
        self.ks: list[int] = []
        self._lock = threading.Lock()

    def has_any_documents(self) -> bool:
        return True

    def search(self, query, k):
        with self._lock:
            self.ks.append(k)
        self.barrier.wait()
        return [ChunkHit(chunk_id=k, document_id=1, title="doc", chunk_index=0, content="text", score=1.0 / k)]


def test_retrievers_run_concurrently(make_chat) -> None:
    store = BarrierStore()
    result = AgenticPipeline(store, make_chat(reply="A sufficiently long grounded answer [chunk:6].")).answer("what?")

    assert sorted(store.ks) == [6, 10, 14]
    assert result.attempts == 1
    assert {c.chunk_id for c in result.citations} == {6, 10, 14}
