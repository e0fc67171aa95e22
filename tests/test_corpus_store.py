from __future__ import annotations

import threading
import uuid

import pytest
from sqlalchemy import select

from agentic_rag.errors import ConfigurationError, ExternalCallFailure
from agentic_rag.storage.corpus_store import VersionedCorpusStore
from agentic_rag.storage.models import ChunkRow, DocumentRow, IngestJobRow


def _latest_rows(session_factory, logical_id: str) -> list[DocumentRow]:
    with session_factory() as session:
        return list(
            session.scalars(
                select(DocumentRow).where(
                    DocumentRow.logical_id == logical_id, DocumentRow.is_latest.is_(True)
                )
            ).all()
        )


def test_reingest_same_source_title_creates_new_version(store, session_factory) -> None:
    first = store.ingest_text("file", "report.txt", "Apples are red.")
    second = store.ingest_text("file", "report.txt", "Apples are green now.")

    assert first.version == 1
    assert second.version == 2
    assert second.logical_id == first.logical_id
    assert second.document_id != first.document_id

    latest = _latest_rows(session_factory, first.logical_id)
    assert [r.id for r in latest] == [second.document_id]

    versions = store.list_versions(first.logical_id)
    assert [(v.version, v.is_latest) for v in versions] == [(1, False), (2, True)]


def test_no_upsert_mints_new_logical_id(store) -> None:
    first = store.ingest_text("file", "report.txt", "one")
    second = store.ingest_text("file", "report.txt", "two", upsert_by_source_title=False)

    assert second.logical_id != first.logical_id
    assert second.version == 1


def test_explicit_logical_id_appends_version(store, session_factory) -> None:
    lid = str(uuid.uuid4())
    first = store.ingest_text("api", "a", "first text", logical_id=lid)
    second = store.ingest_text("api", "renamed", "second text", logical_id=lid)

    assert first.logical_id == lid
    assert (first.version, second.version) == (1, 2)
    assert len(_latest_rows(session_factory, lid)) == 1


def test_malformed_logical_id_rejected(store) -> None:
    with pytest.raises(ValueError):
        store.ingest_text("api", "a", "text", logical_id="not-a-uuid")
    assert store.stats().total_documents == 0


def test_empty_text_stores_document_without_chunks(store) -> None:
    result = store.ingest_text("api", "empty", "   ")
    stats = store.stats()

    assert result.version == 1
    assert stats.total_documents == 1
    assert stats.chunks == 0
    assert store.has_any_documents()


def test_chunks_are_tagged_with_model_and_ordered(store, session_factory) -> None:
    result = store.ingest_text("file", "doc", "First paragraph.\n\nSecond paragraph.")

    with session_factory() as session:
        chunks = session.scalars(
            select(ChunkRow).where(ChunkRow.document_id == result.document_id).order_by(ChunkRow.chunk_index)
        ).all()

    assert [c.chunk_index for c in chunks] == [0, 1]
    assert [c.content for c in chunks] == ["First paragraph.", "Second paragraph."]
    assert all(c.embedding_model == "fake-embed" for c in chunks)
    assert all(len(c.embedding) == 256 for c in chunks)


def test_job_id_recorded(store, session_factory) -> None:
    result = store.ingest_text("upload", "doc", "Some text.", job_id="job-1")

    with session_factory() as session:
        row = session.scalars(select(IngestJobRow)).one()
    assert (row.job_id, row.document_id) == ("job-1", result.document_id)


def test_progress_callback_reports_each_chunk(store) -> None:
    seen: list[tuple[int, int]] = []
    store.ingest_text("file", "doc", "One.\n\nTwo.\n\nThree.", on_progress=lambda c, t: seen.append((c, t)))
    assert seen == [(1, 3), (2, 3), (3, 3)]


def test_search_only_sees_latest_versions(store) -> None:
    old = store.ingest_text("file", "fruit.txt", "Apples grow in orchards.")
    new = store.ingest_text("file", "fruit.txt", "Bananas grow in plantations.")

    hits = store.search("apples orchards", k=5)

    assert hits
    assert {h.document_id for h in hits} == {new.document_id}
    assert old.document_id not in {h.document_id for h in hits}


def test_search_orders_best_first_and_limits_k(store) -> None:
    store.ingest_text("file", "a", "Revenue grew strongly.", upsert_by_source_title=False)
    store.ingest_text("file", "b", "Weather was cold.", upsert_by_source_title=False)
    store.ingest_text("file", "c", "Revenue and profit grew.", upsert_by_source_title=False)

    hits = store.search("revenue grew", k=2)

    assert len(hits) == 2
    assert hits[0].score >= hits[1].score
    assert all("Revenue" in h.content for h in hits)


def test_blank_query_skips_embedding(store, embedder) -> None:
    store.ingest_text("file", "a", "Some content.")
    calls_before = len(embedder.calls)

    assert store.search("   ", k=5) == []
    assert store.search(None, k=5) == []
    assert store.search("content", k=0) == []
    assert len(embedder.calls) == calls_before


def test_search_empty_corpus(store) -> None:
    assert store.search("anything", k=3) == []
    assert not store.has_any_documents()


def test_other_model_vectors_invisible_until_reembedded(store, session_factory, make_embedder) -> None:
    store.ingest_text("file", "a", "Apples grow in orchards.")
    other = VersionedCorpusStore(session_factory, make_embedder(model="fake-embed-v2"))

    assert other.search("apples", k=3) == []

    updated = other.reembed()
    assert updated == 1
    assert other.search("apples", k=3)
    # The original model's vectors were retagged
    assert store.search("apples", k=3) == []


def test_reembed_scope_all_includes_old_versions(store) -> None:
    store.ingest_text("file", "a", "Version one.")
    store.ingest_text("file", "a", "Version two.")

    assert store.reembed("latest") == 1
    assert store.reembed("all") == 2


def test_reembed_rejects_unknown_scope(store) -> None:
    with pytest.raises(ValueError):
        store.reembed("everything")


def test_query_dimension_mismatch_is_configuration_error(store, session_factory, make_embedder) -> None:
    store.ingest_text("file", "a", "Apples grow in orchards.")
    narrow = VersionedCorpusStore(session_factory, make_embedder(dimensions=16))

    with pytest.raises(ConfigurationError):
        narrow.search("apples", k=3)


def test_embedding_failure_writes_nothing(session_factory, make_embedder) -> None:
    class FailingEmbedder(make_embedder):
        def embed_texts(self, texts):
            raise ExternalCallFailure("embedding", "service down")

    store = VersionedCorpusStore(session_factory, FailingEmbedder())

    with pytest.raises(ExternalCallFailure):
        store.ingest_text("file", "a", "Some content.")
    assert store.stats().total_documents == 0


def test_failed_reupload_keeps_previous_latest(store, session_factory, embedder, monkeypatch) -> None:
    first = store.ingest_text("file", "a", "Original content.")

    def boom(texts):
        raise ExternalCallFailure("embedding", "timeout")

    monkeypatch.setattr(embedder, "embed_texts", boom)
    with pytest.raises(ExternalCallFailure):
        store.ingest_text("file", "a", "Replacement content.")

    latest = _latest_rows(session_factory, first.logical_id)
    assert [r.id for r in latest] == [first.document_id]


def test_concurrent_reuploads_all_land_as_distinct_versions(store, session_factory) -> None:
    first = store.ingest_text("file", "report", "Version one.")
    errors: list[Exception] = []

    def reupload(i: int) -> None:
        try:
            store.ingest_text("file", "report", f"Revision {i} of the report.")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=reupload, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    versions = store.list_versions(first.logical_id)
    assert [v.version for v in versions] == list(range(1, 8))
    assert [v.is_latest for v in versions] == [False] * 6 + [True]
    assert len(_latest_rows(session_factory, first.logical_id)) == 1


def test_search_reuses_loaded_vectors_until_corpus_changes(store, monkeypatch) -> None:
    store.ingest_text("file", "a", "Apples grow in orchards.")
    loads: list[int] = []
    original = store._load_snapshot

    def counting(session, revision):
        loads.append(revision)
        return original(session, revision)

    monkeypatch.setattr(store, "_load_snapshot", counting)

    store.search("apples", k=3)
    store.search("orchards", k=6)
    assert len(loads) == 1

    store.ingest_text("file", "b", "Bananas grow in plantations.")
    assert any(h.title == "b" for h in store.search("bananas", k=3))
    assert len(loads) == 2

    store.reembed("latest")
    store.search("apples", k=3)
    assert len(loads) == 3
    assert loads == sorted(set(loads))


def test_search_sees_writes_from_another_store_instance(store, session_factory, embedder) -> None:
    store.ingest_text("file", "a", "Apples grow in orchards.")
    assert store.search("pears", k=5)

    writer = VersionedCorpusStore(session_factory, embedder)
    writer.ingest_text("file", "p", "Pears ripen in autumn.")

    assert "p" in {h.title for h in store.search("pears", k=5)}
