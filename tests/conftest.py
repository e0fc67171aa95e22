"""Shared fixtures: an on-disk SQLite corpus and offline embedding / chat fakes."""
from __future__ import annotations

import re
import threading
import zlib
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pytest

from agentic_rag.storage.corpus_store import VersionedCorpusStore
from agentic_rag.storage.database import create_engine_for, create_session_factory, init_db

_WORD = re.compile(r"[a-z0-9]+")


class FakeEmbedder:
    """Deterministic bag-of-words hashing embedder; no network."""

    def __init__(self, model: str = "fake-embed", dimensions: int = 256) -> None:
        self.model = model
        self.dimensions = dimensions
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions, dtype=np.float32)
        for word in _WORD.findall(text.lower()):
            vec[zlib.crc32(word.encode("utf-8")) % self.dimensions] += 1.0
        norm = np.linalg.norm(vec)
        return vec / norm if norm else vec

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        with self._lock:
            self.calls.append(list(texts))
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)
        return np.stack([self._vector(t) for t in texts])

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]


class FakeChat:
    """
    Records (system, user) prompts and answers through responder.

    responder defaults to a fixed reply; pass a callable to script replies
    per prompt.
    """

    model = "fake-chat"

    def __init__(self, responder: Optional[Callable[[str, str], str]] = None, reply: str = "ok") -> None:
        self.responder = responder or (lambda system, user: reply)
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def chat(self, system_prompt: str, user_prompt: str) -> str:
        with self._lock:
            self.calls.append((system_prompt, user_prompt))
        return self.responder(system_prompt, user_prompt)

    def calls_with(self, system_prompt: str) -> list[str]:
        return [user for system, user in self.calls if system == system_prompt]


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'corpus.db'}"


@pytest.fixture
def engine(db_url: str):
    engine = create_engine_for(db_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store(session_factory, embedder) -> VersionedCorpusStore:
    return VersionedCorpusStore(session_factory, embedder)


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def make_chat():
    return FakeChat
