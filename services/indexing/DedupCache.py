import gzip
import json
import os
from pathlib import Path

from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.helper.AtomicFile import atomic_write_bytes
from shared.helper.HelperConfig import HelperConfig

JOURNAL_SUFFIX = ".journal"


class DedupCache:
    """Set of document ids known to be indexed.

    Persisted as a gzip JSON snapshot plus an append-only journal of the ids
    added since that snapshot. Group flushes only append to the journal;
    ``save_snapshot`` compacts both into a new snapshot. Optionally reconciled
    against the vector store. Only the orchestrator mutates it.
    """

    def __init__(self, helper_config: HelperConfig, snapshot_path: Path | None = None):
        self.logging = helper_config.get_logger()
        self.snapshot_path = snapshot_path
        self.journal_path = snapshot_path.with_name(snapshot_path.name + JOURNAL_SUFFIX) if snapshot_path else None
        self._ids: set[str] = set()
        self._pending: list[str] = []
        self._needs_compaction = False

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._ids

    def is_indexed(self, doc_id: str) -> bool:
        return doc_id in self._ids

    def mark_indexed(self, doc_id: str) -> None:
        if doc_id not in self._ids:
            self._ids.add(doc_id)
            self._pending.append(doc_id)

    ##########################################
    ################# LOAD ###################
    ##########################################

    def _load_journal(self) -> int:
        if self.journal_path is None or not self.journal_path.exists():
            return 0
        loaded = 0
        try:
            with open(self.journal_path, "r", encoding="utf-8") as f:
                for line in f:
                    try:
                        doc_id = json.loads(line)
                    except ValueError:
                        # torn last line of an interrupted append
                        continue
                    if isinstance(doc_id, str):
                        self._ids.add(doc_id)
                        loaded += 1
        except OSError as exc:
            self.logging.warning("Ignoring unreadable dedup journal %s: %s", self.journal_path, exc)
        if loaded:
            self._needs_compaction = True
        return loaded

    def load_snapshot(self) -> int:
        """
        Loads the snapshot file and the journal written after it, if any.

        Returns:
            int: Number of ids loaded.
        """
        if self.snapshot_path is None:
            return 0
        ids: list = []
        if self.snapshot_path.exists():
            try:
                with gzip.open(self.snapshot_path, "rt", encoding="utf-8") as f:
                    ids = json.load(f)
            except (OSError, EOFError, ValueError) as exc:
                self.logging.warning("Ignoring unreadable dedup snapshot %s: %s", self.snapshot_path, exc)
                ids = []
            if not isinstance(ids, list):
                self.logging.warning("Ignoring dedup snapshot %s: not a list of ids.", self.snapshot_path)
                ids = []
        self._ids.update(str(i) for i in ids)
        loaded = len(ids) + self._load_journal()
        if loaded:
            self.logging.info("Loaded %d indexed document ids from %s", len(self._ids), self.snapshot_path)
        return len(self._ids)

    async def reconcile(self, rag_client: RAGClientInterface) -> int:
        """
        Rebuilds the set from the doc_id payloads stored in the vector store.

        The store is the source of truth: ids only present in the local snapshot
        are dropped.

        Returns:
            int: Number of distinct ids found in the store.
        """
        self.logging.info("Reconciling indexed document ids with the vector store...")
        store_ids = await rag_client.do_fetch_indexed_doc_ids()
        stale = len(self._ids - store_ids)
        added = len(store_ids - self._ids)
        self._ids = set(store_ids)
        self._pending = []
        self._needs_compaction = True
        self.logging.info(
            "Reconciliation done: %d ids in store, %d added, %d stale dropped.", len(store_ids), added, stale,
            color="green",
        )
        return len(store_ids)

    ##########################################
    ################# SAVE ###################
    ##########################################

    def persist(self) -> None:
        """
        Appends the ids marked since the last call to the journal and fsyncs it.

        Cost is proportional to the new ids only. After a reconciliation the
        journal cannot express dropped ids, and a journal left by an earlier
        run is folded in once, so those cases write a full snapshot instead.
        """
        if self.snapshot_path is None:
            return
        if self._needs_compaction:
            self.save_snapshot()
            return
        if not self._pending:
            return
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write("".join(json.dumps(doc_id) + "\n" for doc_id in self._pending))
            f.flush()
            os.fsync(f.fileno())
        self.logging.debug("Dedup journal: %d ids appended", len(self._pending))
        self._pending = []

    def save_snapshot(self) -> None:
        """
        Writes every id to a new snapshot atomically and removes the journal.
        """
        if self.snapshot_path is None:
            return
        if not self._pending and not self._needs_compaction and self.snapshot_path.exists():
            return
        data = gzip.compress(json.dumps(sorted(self._ids)).encode("utf-8"))
        atomic_write_bytes(self.snapshot_path, data)
        try:
            self.journal_path.unlink()
        except FileNotFoundError:
            pass
        self._pending = []
        self._needs_compaction = False
        self.logging.debug("Dedup snapshot saved with %d ids", len(self._ids))
