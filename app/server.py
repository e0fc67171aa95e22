"""
Agentic RAG - Web API Server
-----------------------------
FastAPI server over the AgenticPipeline and the versioned corpus.

Endpoints:
  GET  /api/health                   -> status + corpus stats
  GET  /api/chat/stream?question=    -> SSE: "agent" events, then one "final" (or "error")
  POST /api/chat                     -> run the pipeline, return FinalAnswer JSON
  POST /api/ingest/text              -> 201 {documentId, logicalId, version}
  POST /api/ingest/file              -> 202 {jobId}  (multipart, UTF-8 text)
  GET  /api/ingest/progress?jobId=   -> SSE: "progress" events until done
  POST /api/ingest/reembed           -> {updatedChunks}
  GET  /api/documents/{logical_id}/versions

Run from the project root:
    uvicorn app.server:app --reload --port 8000

Blocking work (embedding, chat, database) runs on a dedicated thread pool so
the event loop only shuffles events.  Set AGENTIC_RAG_CONFIG to point at a
YAML config file.
"""
from __future__ import annotations

import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from agentic_rag.bootstrap import Components, build_components
from agentic_rag.config import load_settings
from agentic_rag.errors import ConfigurationError, ExternalCallFailure, PersistenceFailure
from agentic_rag.schemas import DocumentVersion, FinalAnswer
from agentic_rag.serving.trace import TraceLog
from agentic_rag.utils.helpers import to_json, truncate_text
from agentic_rag.utils.logger import setup_logger

WORKER_THREADS = 8

# ---------------------------------------------------------------------------
# Component singletons
# ---------------------------------------------------------------------------

_components: Optional[Components] = None
_executor: Optional[ThreadPoolExecutor] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build components once at startup unless they were installed already."""
    global _components, _executor
    owned = _components is None
    if owned:
        settings = load_settings(os.getenv("AGENTIC_RAG_CONFIG"))
        setup_logger(settings.logging.level, settings.logging.file)
        logger.info("[Server] Building components...")
        _components = build_components(settings)
    _executor = ThreadPoolExecutor(max_workers=WORKER_THREADS, thread_name_prefix="api-worker")
    logger.info("[Server] Ready")
    yield
    _executor.shutdown(wait=False, cancel_futures=True)
    _executor = None
    if owned and _components is not None:
        _components.dispose()
        _components = None
    logger.info("[Server] Stopped.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Agentic RAG API",
    description="Grounded question answering over a versioned document corpus",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (ConfigurationError, 500),
    (ExternalCallFailure, 502),
    (PersistenceFailure, 503),
    (ValueError, 400),
]


def _error_body(exc: Exception) -> dict:
    return {"error": type(exc).__name__, "detail": str(exc)}


def _status_for(exc: Exception) -> int:
    for kind, status in _STATUS_BY_ERROR:
        if isinstance(exc, kind):
            return status
    return 500


async def _handle_error(request: Request, exc: Exception) -> JSONResponse:
    status = _status_for(exc)
    logger.warning(f"[API] {request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(status_code=status, content=_error_body(exc))


for _kind, _ in _STATUS_BY_ERROR:
    app.add_exception_handler(_kind, _handle_error)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    question: str


class IngestTextRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str = "api"
    title: str
    text: str
    logical_id: Optional[str] = Field(default=None, alias="logicalId")
    upsert_by_source_title: bool = Field(default=True, alias="upsertBySourceTitle")


class ReembedRequest(BaseModel):
    scope: str = "latest"
    model: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require() -> Components:
    if _components is None or _executor is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _components


async def _blocking(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, partial(fn, *args, **kwargs))


def _sse(event: str, payload) -> str:
    return f"event: {event}\ndata: {to_json(payload)}\n\n"


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


# ---------------------------------------------------------------------------
# Routes: health + chat
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    comps = _require()
    stats = await _blocking(comps.store.stats)
    return {"status": "ok", "corpus": stats.model_dump()}


@app.post("/api/chat", response_model=FinalAnswer)
async def chat(request: ChatRequest):
    """Answer one question; blocks until the pipeline finishes."""
    comps = _require()
    if not request.question.strip():
        raise ValueError("question must not be blank")
    logger.info(f"[API] Chat | question={truncate_text(request.question, 80)!r}")
    return await _blocking(comps.pipeline.answer, request.question)


@app.get("/api/chat/stream")
async def chat_stream(request: Request, question: str = Query(...)):
    """
    Stream agent trace events while the pipeline runs, then the final answer.

    The pipeline keeps running if the client goes away; only the trace is
    closed so no further events are queued.
    """
    comps = _require()
    if not question.strip():
        raise ValueError("question must not be blank")

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    trace = TraceLog()
    trace.subscribe(lambda ev: loop.call_soon_threadsafe(queue.put_nowait, ("agent", ev)))

    def run() -> None:
        try:
            outcome = ("final", comps.pipeline.answer(question, trace))
        except Exception as exc:
            logger.error(f"[API] Stream pipeline failed: {exc}")
            outcome = ("error", {**_error_body(exc), "status": _status_for(exc)})
        if not trace.closed:
            loop.call_soon_threadsafe(queue.put_nowait, outcome)

    loop.run_in_executor(_executor, run)

    async def event_source():
        try:
            while True:
                if await request.is_disconnected():
                    logger.info("[API] Stream client disconnected")
                    break
                name, payload = await queue.get()
                yield _sse(name, payload)
                if name != "agent":
                    break
        finally:
            trace.close()

    return StreamingResponse(event_source(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# Routes: ingestion
# ---------------------------------------------------------------------------

@app.post("/api/ingest/text", status_code=201)
async def ingest_text(request: IngestTextRequest):
    comps = _require()
    result = await _blocking(
        comps.ingest.ingest_text,
        request.source,
        request.title,
        request.text,
        logical_id=request.logical_id,
        upsert_by_source_title=request.upsert_by_source_title,
    )
    return {"documentId": result.document_id, "logicalId": result.logical_id, "version": result.version}


@app.post("/api/ingest/file", status_code=202)
async def ingest_file(file: UploadFile = File(...), source: str = Form("upload")):
    """Accept a plain-text upload and ingest it in the background."""
    comps = _require()
    data = await file.read()
    filename = file.filename or "upload.txt"
    job_id = comps.ingest.jobs.new_job()
    logger.info(f"[API] Ingest job {job_id} | {filename} ({len(data)} bytes)")

    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, partial(comps.ingest.run_file_job, job_id, source, filename, data))
    return {"jobId": job_id}


@app.get("/api/ingest/progress")
async def ingest_progress(job_id: str = Query(..., alias="jobId")):
    comps = _require()
    if job_id not in comps.ingest.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")

    async def event_source():
        async for event in comps.ingest.jobs.stream(job_id):
            yield _sse("progress", event)

    return StreamingResponse(event_source(), media_type="text/event-stream", headers=_SSE_HEADERS)


@app.post("/api/ingest/reembed")
async def reembed(request: Optional[ReembedRequest] = None):
    comps = _require()
    request = request or ReembedRequest()
    updated = await _blocking(comps.ingest.reembed, request.scope, request.model)
    return {"updatedChunks": updated}


@app.get("/api/documents/{logical_id}/versions", response_model=list[DocumentVersion])
async def document_versions(logical_id: str):
    comps = _require()
    return await _blocking(comps.store.list_versions, logical_id)
