"""Indexing service.

Reads documents from a source, splits their text into chunks, embeds the
chunks and upserts the resulting points into the vector store.

The orchestrator is the only writer of the dedup cache, the checkpoint, the
quarantine and the counters. Workers pull documents from a bounded queue,
run chunk → embed → upsert sequentially and report a DocumentResult on the
result queue.
"""

import asyncio
import itertools
import time
import uuid
from datetime import datetime, timezone
from typing import Iterator

from services.indexing.CheckpointStore import CheckpointStore
from services.indexing.Chunker import Chunker
from services.indexing.DedupCache import DedupCache
from services.indexing.ErrorQuarantine import ErrorQuarantine
from services.indexing.ProgressMonitor import ProgressMonitor
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorPoint import VectorPoint
from shared.helper.HelperConfig import HelperConfig
from shared.models.checkpoint import Checkpoint, RunCounters
from shared.models.config import PerformanceProfile
from shared.models.document import ChunkError, DocumentResult, DocumentStatus, SourceItem
from shared.models.errors import IndexingError
from shared.sources.DocumentSourceInterface import DocumentSourceInterface


def _make_point_id() -> str:
    """Random UUID4 point ID. Re-indexing a document always yields new IDs."""
    return str(uuid.uuid4())


class IndexingService:
    """Orchestrates the resumable indexing pipeline from a document source into a vector store."""

    def __init__(
        self,
        helper_config: HelperConfig,
        profile: PerformanceProfile,
        source: DocumentSourceInterface,
        embed_client: EmbedClientInterface,
        rag_client: RAGClientInterface,
        checkpoint_store: CheckpointStore,
        dedup_cache: DedupCache,
        quarantine: ErrorQuarantine,
        reconcile_dedup: bool = False,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.profile = profile
        self.source = source
        self.embed_client = embed_client
        self.rag_client = rag_client
        self.checkpoint_store = checkpoint_store
        self.dedup_cache = dedup_cache
        self.quarantine = quarantine
        self.reconcile_dedup = reconcile_dedup
        self.chunker = Chunker(profile.chunk_size, profile.chunk_overlap)

        self.counters = RunCounters()
        self.checkpoint: Checkpoint | None = None
        self.monitor: ProgressMonitor | None = None
        self._stop_event = asyncio.Event()
        self._forced = False
        self._workers: list[asyncio.Task] = []
        self._dispatch_task: asyncio.Task | None = None
        self._work_queue: asyncio.Queue[SourceItem | None] = asyncio.Queue(maxsize=profile.worker_concurrency * 2)
        self._result_queue: asyncio.Queue[DocumentResult] = asyncio.Queue()
        self._claimed: set[str] = set()
        self._completed_offsets: set[int] = set()
        self._watermark = -1

    ##########################################
    ################ CONTROL #################
    ##########################################

    def request_stop(self) -> None:
        """Stop dispatching new documents. In-flight documents finish and the checkpoint is flushed.

        A second request cancels the in-flight documents instead of waiting for
        them. Their offsets stay above the checkpoint, so they are redone on the
        next run.
        """
        if not self._stop_event.is_set():
            self.logging.warning("Stop requested, finishing in-flight documents...", color="yellow")
            self._stop_event.set()
            return
        if self._forced:
            return
        self.logging.warning("Second stop request, cancelling in-flight documents...", color="red")
        self._forced = True
        while not self._work_queue.empty():
            self._work_queue.get_nowait()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
        for worker in self._workers:
            worker.cancel()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def do_prepare(self) -> None:
        """Checks both backends, warms up the embedding model and ensures the collection.

        Raises:
            IndexingError: If a backend is unreachable or the collection cannot be created.
        """
        await self.embed_client.retry_policy.call(self.embed_client.do_healthcheck, description="Embedding healthcheck")
        await self.rag_client.retry_policy.call(self.rag_client.do_healthcheck, description="Vector store healthcheck")
        await self.embed_client.do_warmup()
        await self.rag_client.do_ensure_collection(
            vector_size=self.embed_client.get_vector_size(),
            distance=self.embed_client.get_distance(),
        )

    ##########################################
    ############### CHECKPOINT ###############
    ##########################################

    def _load_checkpoint(self) -> Checkpoint:
        fingerprint = self.profile.fingerprint()
        collection = self.rag_client.get_collection_name()
        previous = self.checkpoint_store.load()
        if previous is None or previous.completed:
            if previous is not None:
                self.logging.info("Previous run completed, starting a new pass over the source.")
            return Checkpoint(collection=collection, profile_name=self.profile.name, profile_fingerprint=fingerprint)

        if previous.profile_fingerprint and previous.profile_fingerprint != fingerprint:
            self.logging.warning(
                "Performance profile changed since the checkpoint was written ('%s' -> '%s').",
                previous.profile_name, self.profile.name,
            )
        if previous.collection and previous.collection != collection:
            self.logging.warning(
                "Checkpoint was written for collection '%s', now indexing into '%s'.", previous.collection, collection
            )
        previous.profile_name = self.profile.name
        previous.profile_fingerprint = fingerprint
        previous.collection = collection
        return previous

    def _mark_offset_done(self, offset: int) -> None:
        self._completed_offsets.add(offset)
        while self._watermark + 1 in self._completed_offsets:
            self._watermark += 1
            self._completed_offsets.discard(self._watermark)

    def _flush(self, completed: bool = False) -> None:
        """Persists the new dedup ids, then the checkpoint at the current watermark."""
        if self.checkpoint is None:
            return
        self.dedup_cache.persist()
        self.checkpoint.completed = completed
        self.checkpoint_store.save_offset(self.checkpoint, self._watermark, self.counters)

    ##########################################
    ############### CORE RUN #################
    ##########################################

    async def run(self) -> Checkpoint:
        """Index the whole source, resuming after the last checkpointed offset.

        Returns:
            Checkpoint: The final persisted state, with cumulative counters.

        Raises:
            IndexingError: If the source cannot be opened or the dedup reconciliation fails.
        """
        self.checkpoint = self._load_checkpoint()
        self.counters = self.checkpoint.counters.model_copy()

        self.source.open()
        if self.source.resumes_by_offset():
            start_offset = self.checkpoint.resume_offset
        else:
            start_offset = 0
        self._watermark = start_offset - 1
        self.checkpoint.last_offset = self._watermark

        self.dedup_cache.load_snapshot()
        if self.reconcile_dedup:
            await self.dedup_cache.reconcile(self.rag_client)

        total = self.source.count()
        self.logging.info(
            "Starting indexing into '%s' at offset %d%s (%d documents already indexed).",
            self.rag_client.get_collection_name(),
            start_offset,
            f" of {total}" if total is not None else "",
            len(self.dedup_cache),
            color="cyan",
        )

        self.monitor = ProgressMonitor(
            self._helper_config,
            lambda: self.counters,
            total,
            self.profile.progress_interval_s,
            per_pass=not self.source.resumes_by_offset(),
        )
        self.monitor.start()
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.profile.worker_concurrency)]
        self._dispatch_task = asyncio.create_task(self._dispatch_all(self.source.iter_items(start_offset)))
        finished = False
        try:
            finished = await self._dispatch_task
        except asyncio.CancelledError:
            if not self._forced:
                raise
        finally:
            if not self._forced:
                for _ in self._workers:
                    await self._work_queue.put(None)
            await asyncio.gather(*self._workers, return_exceptions=True)
            # results of documents that finished before a forced stop
            while not self._result_queue.empty():
                self._apply_result(self._result_queue.get_nowait())
            await self.monitor.stop()
            self.dedup_cache.save_snapshot()
            self._flush(completed=finished and not self.stop_requested)
            self.monitor.summary()

        if self.stop_requested:
            if self.source.resumes_by_offset():
                self.logging.warning(
                    "Indexing interrupted, resume offset is %d.", self.checkpoint.resume_offset, color="yellow"
                )
            else:
                self.logging.warning(
                    "Indexing interrupted, the next run restarts the source and skips the %d indexed documents.",
                    len(self.dedup_cache),
                    color="yellow",
                )
        return self.checkpoint

    async def _dispatch_all(self, items: Iterator[SourceItem]) -> bool:
        """Feeds the source to the workers group by group.

        Returns:
            bool: True if the source was exhausted, False if a stop was requested first.
        """
        group_size = self.profile.document_batch_size
        group_number = 0
        while not self.stop_requested:
            group = list(itertools.islice(items, group_size))
            if not group:
                return True
            if group_number > 0:
                await self._batch_delay()
                if self.stop_requested:
                    break
            group_number += 1
            await self._process_group(group)
            self._flush()
        return False

    async def _batch_delay(self) -> None:
        delay = self.profile.batch_delay_ms / 1000
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _process_group(self, group: list[SourceItem]) -> None:
        """Dispatches one group and applies every result before returning."""
        dispatched = 0
        for item in group:
            if self.stop_requested:
                break
            result = self._precheck(item)
            if result is not None:
                self._apply_result(result)
                continue
            self._claimed.add(item.document.doc_id)
            await self._work_queue.put(item)
            dispatched += 1

        for _ in range(dispatched):
            result = await self._result_queue.get()
            self._apply_result(result)

    def _precheck(self, item: SourceItem) -> DocumentResult | None:
        """Resolves items that need no worker: malformed, empty or already indexed."""
        if item.document is None:
            return DocumentResult(item=item, status=DocumentStatus.QUARANTINED, stage="source", error=item.error or "Unreadable record")
        doc_id = item.document.doc_id
        if item.document.is_empty():
            return DocumentResult(item=item, status=DocumentStatus.SKIPPED, reason="empty text")
        if doc_id in self.dedup_cache or doc_id in self._claimed:
            return DocumentResult(item=item, status=DocumentStatus.SKIPPED, reason="already indexed")
        return None

    def _apply_result(self, result: DocumentResult) -> None:
        """Records a terminal document result. Only called by the orchestrator."""
        item = result.item
        if result.status == DocumentStatus.INDEXED:
            self.dedup_cache.mark_indexed(item.document.doc_id)
            self.counters.processed += 1
            self.counters.chunks += result.chunks
            self.counters.points += result.points
            self.counters.chunk_errors += len(result.chunk_errors)
            if result.chunk_errors:
                self.quarantine.record_chunk_errors(item, result.chunk_errors)
            self.source.on_indexed(item)
            self.logging.info(
                "Indexed '%s': %d chunks, %d points in %.0f ms%s",
                result.doc_id, result.chunks, result.points, result.duration_ms,
                f", {len(result.chunk_errors)} chunk errors" if result.chunk_errors else "",
            )
        elif result.status == DocumentStatus.SKIPPED:
            self.counters.skipped += 1
            self.logging.debug("Skipped '%s': %s", result.doc_id, result.reason)
        else:
            if item.document is not None:
                self._claimed.discard(item.document.doc_id)
            self.counters.errored += 1
            self.quarantine.quarantine(item, result.stage or "unknown", result.error or "unknown error")
        self._mark_offset_done(item.offset)

    ##########################################
    ############ DOCUMENT INDEX ##############
    ##########################################

    async def _worker(self, worker_id: int) -> None:
        while True:
            item = await self._work_queue.get()
            if item is None:
                return
            result = await self._index_document(item)
            await self._result_queue.put(result)

    async def _index_document(self, item: SourceItem) -> DocumentResult:
        """Chunk, embed and upsert a single document. Never raises.

        Args:
            item (SourceItem): An item holding a non-empty document.

        Returns:
            DocumentResult: INDEXED, or QUARANTINED with the failing stage.
        """
        started = time.monotonic()
        document = item.document
        status = DocumentStatus.EMBEDDING
        try:
            chunks = list(self.chunker.split(document.text))
            embeddings = await self.embed_client.embed([chunk.text for chunk in chunks])
            chunk_errors = [
                ChunkError(chunk_index=index, stage="embedding", message=message)
                for index, message in sorted(embeddings.errors.items())
            ]
            if embeddings.success_count == 0:
                return self._failed(item, "embedding", f"All {len(chunks)} chunks failed to embed: {chunk_errors[0].message}", started)

            indexed_at = datetime.now(timezone.utc).isoformat()
            points = []
            for chunk, vector in zip(chunks, embeddings.vectors):
                if vector is None:
                    continue
                payload = VectorPoint.from_chunk(
                    metadata=document.metadata,
                    doc_id=document.doc_id,
                    chunk_index=chunk.chunk_index,
                    total_chunks=chunk.total_chunks,
                    chunk_text=chunk.text,
                    indexed_at=indexed_at,
                )
                points.append({"id": _make_point_id(), "vector": vector, "payload": payload.model_dump()})

            status = DocumentStatus.UPSERTING
            upsert = await self.rag_client.do_upsert(points, document_size=len(document.text))
            if upsert.failed:
                first = upsert.failed[0]
                error = f"{len(upsert.failed)} of {len(points)} points could not be stored (chunk {first.chunk_index}: {first.message})"
                if not await self._rollback(document.doc_id):
                    # partial points remain in the store
                    return self._failed(item, "rollback", f"{error}; its stored points could not be removed", started)
                return self._failed(item, "upsert", error, started)
        except IndexingError as exc:
            return self._failed(item, exc.stage or status.value, str(exc), started)
        except Exception as exc:
            self.logging.exception("Unexpected error while indexing '%s'", document.doc_id)
            return self._failed(item, status.value, f"{type(exc).__name__}: {exc}", started)

        return DocumentResult(
            item=item,
            status=DocumentStatus.INDEXED,
            chunks=len(chunks),
            points=upsert.upserted,
            chunk_errors=chunk_errors,
            duration_ms=(time.monotonic() - started) * 1000,
        )

    async def _rollback(self, doc_id: str) -> bool:
        """Removes the points of a partially stored document.

        Returns:
            bool: False if the delete failed and partial points remain.
        """
        try:
            await self.rag_client.do_delete_document(doc_id)
        except IndexingError as exc:
            self.logging.error("Could not remove partial points of '%s': %s", doc_id, exc)
            return False
        return True

    def _failed(self, item: SourceItem, stage: str, error: str, started: float) -> DocumentResult:
        return DocumentResult(
            item=item,
            status=DocumentStatus.QUARANTINED,
            stage=stage,
            error=error,
            duration_ms=(time.monotonic() - started) * 1000,
        )
