from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest
from openai import OpenAIError

from agentic_rag.embedding.embedder import Embedder
from agentic_rag.errors import ConfigurationError, ExternalCallFailure


class FakeEmbeddings:
    def __init__(self, width: int, fail: Exception | None = None) -> None:
        self.width = width
        self.fail = fail
        self.requests: list[list[str]] = []

    def create(self, model: str, input: list[str]):
        if self.fail is not None:
            raise self.fail
        self.requests.append(list(input))
        data = [
            SimpleNamespace(index=i, embedding=[float(len(text))] + [1.0] * (self.width - 1))
            for i, text in enumerate(input)
        ]
        # The API does not promise order; the embedder sorts by index
        return SimpleNamespace(data=list(reversed(data)), usage=SimpleNamespace(total_tokens=len(input)))


def _embedder(width: int = 4, dimensions: int = 4, batch_size: int = 2, fail: Exception | None = None):
    fake = FakeEmbeddings(width, fail)
    client = SimpleNamespace(embeddings=fake)
    return Embedder(model="test-embed", dimensions=dimensions, batch_size=batch_size, client=client), fake


def test_embed_texts_batches_and_normalises() -> None:
    embedder, fake = _embedder()
    vectors = embedder.embed_texts(["a", "bb", "ccc", "", "eeeee"])

    assert vectors.shape == (5, 4)
    assert vectors.dtype == np.float32
    assert np.allclose(np.linalg.norm(vectors, axis=1), 1.0)
    assert [len(r) for r in fake.requests] == [2, 2, 1]
    # Blank inputs are sent as a single space
    assert fake.requests[1][1] == " "
    # Index order preserved: first component grows with text length
    assert vectors[0][0] < vectors[2][0]
    assert embedder.usage_summary()["total_api_calls"] == 3


def test_empty_input_makes_no_call() -> None:
    embedder, fake = _embedder()
    assert embedder.embed_texts([]).shape == (0, 4)
    assert fake.requests == []


def test_wrong_width_is_configuration_error() -> None:
    embedder, _ = _embedder(width=3, dimensions=4)
    with pytest.raises(ConfigurationError):
        embedder.embed_query("hello")


def test_api_error_becomes_external_call_failure() -> None:
    embedder, _ = _embedder(fail=OpenAIError("invalid api key"))
    with pytest.raises(ExternalCallFailure) as info:
        embedder.embed_texts(["hello"])
    assert info.value.service == "embedding"


def test_blank_model_rejected() -> None:
    with pytest.raises(ConfigurationError):
        Embedder(model=" ", client=SimpleNamespace())
