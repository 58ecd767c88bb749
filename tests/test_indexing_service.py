"""
Test suite for the IndexingService orchestrator.

Runs the whole pipeline (JSON array source, real clients on the in-memory
fake backends, checkpoint / dedup / quarantine on tmp_path) and checks
outcomes per document, dedup idempotence and resume after interruption.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from services.indexing.CheckpointStore import CheckpointStore
from services.indexing.Chunker import Chunker
from services.indexing.DedupCache import DedupCache
from services.indexing.ErrorQuarantine import ErrorQuarantine
from services.indexing.IndexingService import IndexingService
from shared.sources.directory.DocumentSourceDirectory import DocumentSourceDirectory
from shared.sources.jsonarray.DocumentSourceJsonarray import DocumentSourceJsonarray
from tests.fakes import FakeEmbedder, FakeQdrant, VECTOR_SIZE


def _text(doc_id: str, sentences: int = 30) -> str:
    return " ".join(f"Sentence {n} of document {doc_id}." for n in range(sentences))


def _records(count: int) -> list[dict]:
    return [{"docId": str(i), "text": _text(str(i)), "court": "supreme"} for i in range(count)]


def _chunk_count(text: str) -> int:
    return len(Chunker(100, 10).split(text))


def _error_records(tmp_path: Path) -> list[dict]:
    path = tmp_path / "quarantine" / "errors.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def _stop_after_first_group(service: IndexingService) -> None:
    """Requests a graceful stop right after the first group is flushed."""
    original_flush = service._flush

    def flush_then_stop(completed: bool = False) -> None:
        original_flush(completed)
        if not service.stop_requested:
            service.request_stop()

    service._flush = flush_then_stop


@pytest.fixture
def make_service(helper_config, profile, embed_client, rag_client, tmp_path: Path, monkeypatch):
    """Builds a service over the given records with fresh components sharing tmp_path state."""

    def _make(records: list, **overrides) -> IndexingService:
        path = tmp_path / "records.json"
        path.write_text(json.dumps(records), encoding="utf-8")
        monkeypatch.setenv("SOURCE_JSONARRAY_PATH", str(path))
        return IndexingService(
            helper_config=helper_config,
            profile=profile.model_copy(update=overrides),
            source=DocumentSourceJsonarray(helper_config),
            embed_client=embed_client,
            rag_client=rag_client,
            checkpoint_store=CheckpointStore(helper_config, tmp_path / "state" / "checkpoint.json"),
            dedup_cache=DedupCache(helper_config, tmp_path / "state" / "indexed_ids.json.gz"),
            quarantine=ErrorQuarantine(helper_config, tmp_path / "quarantine"),
        )

    return _make


class TestPrepare:
    """Startup checks."""

    @pytest.mark.asyncio
    async def test_prepare_warms_up_and_creates_collection(self, make_service, embedder: FakeEmbedder, qdrant: FakeQdrant) -> None:
        service = make_service([])

        await service.do_prepare()

        assert qdrant.exists
        assert qdrant.created_with == {"vectors": {"size": VECTOR_SIZE, "distance": "Cosine"}}
        assert len(embedder.requests) == 1


class TestFullRun:
    """A complete pass over the source."""

    @pytest.mark.asyncio
    async def test_mixed_documents(self, make_service, qdrant: FakeQdrant, tmp_path: Path) -> None:
        """Good documents are indexed, empty ones skipped, malformed ones quarantined."""
        records = _records(3) + [{"docId": "empty", "text": "   "}, {"no": "id"}]
        service = make_service(records)

        checkpoint = await service.run()

        assert checkpoint.completed is True
        assert checkpoint.last_offset == 4
        assert checkpoint.counters.processed == 3
        assert checkpoint.counters.skipped == 1
        assert checkpoint.counters.errored == 1
        assert qdrant.doc_ids() == {"0", "1", "2"}
        errors = _error_records(tmp_path)
        assert [e["stage"] for e in errors] == ["source"]
        assert (tmp_path / "quarantine" / "offset-4.json").exists()

    @pytest.mark.asyncio
    async def test_payload_carries_chunk_fields_and_metadata(self, make_service, qdrant: FakeQdrant) -> None:
        """Every point has dense chunk indexes, the total count and the document metadata."""
        records = _records(1)
        expected = _chunk_count(records[0]["text"])
        service = make_service(records)

        await service.run()

        points = qdrant.points_of("0")
        assert len(points) == expected
        assert [p["payload"]["chunk_index"] for p in points] == list(range(expected))
        assert all(p["payload"]["total_chunks"] == expected for p in points)
        assert all(p["payload"]["court"] == "supreme" for p in points)
        assert all(p["payload"]["indexed_at"] for p in points)
        rebuilt = Chunker.reconstruct([SimpleNamespace(text=p["payload"]["chunk_text"]) for p in points], 10)
        assert rebuilt == records[0]["text"]
        assert len({p["id"] for p in points}) == expected

    @pytest.mark.asyncio
    async def test_rerun_indexes_nothing_new(self, make_service, qdrant: FakeQdrant) -> None:
        """Running again after a completed run skips every document."""
        records = _records(4)
        await make_service(records).run()
        stored = len(qdrant.points)
        calls = len(qdrant.upsert_sizes)

        checkpoint = await make_service(records).run()

        assert checkpoint.counters.processed == 0
        assert checkpoint.counters.skipped == 4
        assert len(qdrant.points) == stored
        assert len(qdrant.upsert_sizes) == calls

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_run_are_indexed_once(self, make_service, qdrant: FakeQdrant) -> None:
        records = [{"docId": "same", "text": _text("a")}, {"docId": "same", "text": _text("b")}]
        service = make_service(records)

        checkpoint = await service.run()

        assert checkpoint.counters.processed == 1
        assert checkpoint.counters.skipped == 1
        assert len(qdrant.points_of("same")) == _chunk_count(_text("a"))


class TestFailures:
    """Per-chunk errors and quarantine."""

    @pytest.mark.asyncio
    async def test_dimension_mismatch_drops_one_chunk(self, make_service, embedder: FakeEmbedder, qdrant: FakeQdrant, tmp_path: Path) -> None:
        """A chunk with a wrong-size vector is left out and recorded, the document is still indexed."""
        records = _records(1)
        chunks = list(Chunker(100, 10).split(records[0]["text"]))
        embedder.wrong_dim_texts = {chunks[3].text}
        service = make_service(records)

        checkpoint = await service.run()

        assert checkpoint.counters.processed == 1
        assert checkpoint.counters.chunk_errors == 1
        assert len(qdrant.points_of("0")) == len(chunks) - 1
        errors = _error_records(tmp_path)
        assert len(errors) == 1
        assert errors[0]["chunk_index"] == 3
        assert errors[0]["artifact_path"] is None

    @pytest.mark.asyncio
    async def test_failed_embedding_quarantines_document(self, make_service, embedder: FakeEmbedder, qdrant: FakeQdrant, tmp_path: Path) -> None:
        """A document whose every chunk fails is quarantined and the run continues."""
        records = [{"docId": "poison", "text": "poison text"}] + _records(2)
        embedder.poison_texts = {"poison text"}
        service = make_service(records)

        checkpoint = await service.run()

        assert checkpoint.counters.errored == 1
        assert checkpoint.counters.processed == 2
        assert "poison" not in service.dedup_cache
        errors = _error_records(tmp_path)
        assert errors[0]["doc_id"] == "poison"
        assert errors[0]["stage"] == "embedding"
        assert (tmp_path / "quarantine" / "poison.json").exists()

    @pytest.mark.asyncio
    async def test_rejected_point_rolls_back_document(self, make_service, qdrant: FakeQdrant, tmp_path: Path) -> None:
        """If a point cannot be stored the document's other points are removed and it is quarantined."""
        records = _records(2)
        qdrant.rejected_chunks = {("1", 2)}
        service = make_service(records)

        checkpoint = await service.run()

        assert checkpoint.counters.processed == 1
        assert checkpoint.counters.errored == 1
        assert qdrant.doc_ids() == {"0"}
        assert qdrant.delete_calls == 1
        assert "1" not in service.dedup_cache
        assert _error_records(tmp_path)[0]["stage"] == "upsert"


class TestResume:
    """Interruption and resume."""

    @pytest.mark.asyncio
    async def test_stop_then_resume_processes_each_document_once(self, make_service, qdrant: FakeQdrant) -> None:
        records = _records(6)
        first = make_service(records, document_batch_size=2, worker_concurrency=1)
        _stop_after_first_group(first)

        interrupted = await first.run()

        assert interrupted.completed is False
        assert interrupted.last_offset == 1
        assert qdrant.doc_ids() == {"0", "1"}

        resumed = await make_service(records, document_batch_size=2, worker_concurrency=1).run()

        assert resumed.completed is True
        assert resumed.last_offset == 5
        assert resumed.counters.processed == 6
        assert resumed.counters.skipped == 0
        for record in records:
            assert len(qdrant.points_of(record["docId"])) == _chunk_count(record["text"])

    @pytest.mark.asyncio
    async def test_checkpoint_records_profile(self, make_service, profile) -> None:
        service = make_service(_records(1))

        checkpoint = await service.run()

        assert checkpoint.profile_name == "test"
        assert checkpoint.profile_fingerprint == service.profile.fingerprint()
        assert checkpoint.collection == "test_docs"


class TestRollbackFailure:
    """A rollback that cannot remove the partial points."""

    @pytest.mark.asyncio
    async def test_failed_rollback_is_quarantined_at_rollback_stage(self, make_service, qdrant: FakeQdrant, tmp_path: Path) -> None:
        """The record tells the operator that the document's points are still partially stored."""
        records = _records(1)
        qdrant.rejected_chunks = {("0", 2)}
        qdrant.delete_status = 400
        service = make_service(records)

        checkpoint = await service.run()

        assert checkpoint.counters.errored == 1
        assert qdrant.delete_calls == 1
        assert len(qdrant.points_of("0")) == _chunk_count(records[0]["text"]) - 1
        record = _error_records(tmp_path)[0]
        assert record["stage"] == "rollback"
        assert "could not be removed" in record["error"]


class TestBackpressure:
    """Inter-batch delay between document groups."""

    @pytest.mark.asyncio
    async def test_batch_delay_applies_between_groups(self, make_service) -> None:
        """Five documents in groups of two wait twice, never before the first group."""
        service = make_service(_records(5), document_batch_size=2, batch_delay_ms=40)
        delays: list[float] = []
        original_delay = service._batch_delay

        async def recording_delay() -> None:
            delays.append(time.monotonic())
            await original_delay()

        service._batch_delay = recording_delay
        started = time.monotonic()

        checkpoint = await service.run()

        assert len(delays) == 2
        assert time.monotonic() - started >= 0.08
        assert checkpoint.counters.processed == 5

    @pytest.mark.asyncio
    async def test_stop_cuts_the_delay_short(self, make_service) -> None:
        """A stop during a long delay ends the run right away, after the first group."""
        service = make_service(_records(3), document_batch_size=1, worker_concurrency=1, batch_delay_ms=60_000)
        original_flush = service._flush
        scheduled: list[bool] = []

        def flush_then_schedule_stop(completed: bool = False) -> None:
            original_flush(completed)
            if not scheduled:
                scheduled.append(True)
                asyncio.get_running_loop().call_later(0.05, service.request_stop)

        service._flush = flush_then_schedule_stop

        checkpoint = await asyncio.wait_for(service.run(), timeout=10)

        assert checkpoint.completed is False
        assert checkpoint.last_offset == 0
        assert checkpoint.counters.processed == 1


class TestShutdown:
    """State is flushed on every way out of a run."""

    @pytest.mark.asyncio
    async def test_unexpected_error_still_flushes_state(self, make_service, helper_config, tmp_path: Path) -> None:
        """An error outside the per-document boundary propagates after checkpoint and dedup ids are saved."""
        service = make_service(_records(4), document_batch_size=2)
        original_group = service._process_group
        groups: list[list] = []

        async def failing_group(group: list) -> None:
            groups.append(group)
            if len(groups) == 2:
                raise RuntimeError("unexpected failure")
            await original_group(group)

        service._process_group = failing_group

        with pytest.raises(RuntimeError):
            await service.run()

        saved = CheckpointStore(helper_config, tmp_path / "state" / "checkpoint.json").load()
        assert saved.completed is False
        assert saved.last_offset == 1
        assert saved.counters.processed == 2
        dedup = DedupCache(helper_config, tmp_path / "state" / "indexed_ids.json.gz")
        assert dedup.load_snapshot() == 2
        assert "0" in dedup and "1" in dedup

    @pytest.mark.asyncio
    async def test_second_stop_cancels_stuck_documents(self, make_service, embed_client, helper_config, qdrant: FakeQdrant, tmp_path: Path, monkeypatch) -> None:
        """The first stop waits for in-flight documents, the second cancels them and flushes."""

        async def never_returns(texts: list[str]):
            await asyncio.Event().wait()

        monkeypatch.setattr(embed_client, "embed", never_returns)
        service = make_service(_records(3), worker_concurrency=1)
        task = asyncio.create_task(service.run())
        await asyncio.sleep(0.1)

        service.request_stop()
        await asyncio.sleep(0.05)
        assert not task.done()
        service.request_stop()
        checkpoint = await asyncio.wait_for(task, timeout=5)

        assert checkpoint.completed is False
        assert checkpoint.last_offset == -1
        assert checkpoint.counters.processed == 0
        assert qdrant.points == {}
        assert CheckpointStore(helper_config, tmp_path / "state" / "checkpoint.json").load().last_offset == -1


@pytest.fixture
def make_directory_service(helper_config, profile, embed_client, rag_client, tmp_path: Path, monkeypatch):
    """Builds services over tmp_path/docs, moving indexed files to tmp_path/done."""
    monkeypatch.setenv("SOURCE_DIRECTORY_PATH", str(tmp_path / "docs"))
    monkeypatch.setenv("SOURCE_DIRECTORY_DONE_DIR", str(tmp_path / "done"))

    def _make(**overrides) -> IndexingService:
        return IndexingService(
            helper_config=helper_config,
            profile=profile.model_copy(update=overrides),
            source=DocumentSourceDirectory(helper_config),
            embed_client=embed_client,
            rag_client=rag_client,
            checkpoint_store=CheckpointStore(helper_config, tmp_path / "state" / "checkpoint.json"),
            dedup_cache=DedupCache(helper_config, tmp_path / "state" / "indexed_ids.json.gz"),
            quarantine=ErrorQuarantine(helper_config, tmp_path / "quarantine"),
        )

    return _make


class TestDirectoryResume:
    """Sources that restart from their first item on every run."""

    @pytest.mark.asyncio
    async def test_progress_counts_only_the_current_pass(self, make_directory_service, tmp_path: Path, caplog) -> None:
        """After a resume, done never exceeds the files left in the directory."""
        docs = tmp_path / "docs"
        docs.mkdir()
        for i in range(6):
            (docs / f"doc-{i}.json").write_text(json.dumps({"docId": str(i), "text": _text(str(i))}), encoding="utf-8")
        caplog.set_level(logging.INFO, logger="indexer.tests")

        first = make_directory_service(document_batch_size=2, worker_concurrency=1)
        _stop_after_first_group(first)
        await first.run()

        assert "the next run restarts the source" in caplog.text
        assert len(list((tmp_path / "done").iterdir())) == 2

        resumed = make_directory_service(document_batch_size=2, worker_concurrency=1)
        checkpoint = await resumed.run()
        snap = resumed.monitor.snapshot()

        assert checkpoint.counters.processed == 6
        assert snap.total == 4
        assert snap.done == 4
        assert snap.processed == 6
