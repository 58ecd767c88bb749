from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from shared.helper.AtomicFile import atomic_write_bytes
from shared.helper.HelperConfig import HelperConfig
from shared.models.checkpoint import Checkpoint, RunCounters


class CheckpointStore:
    """Loads and atomically saves the run checkpoint.

    Single writer: only the orchestrator calls save().
    """

    def __init__(self, helper_config: HelperConfig, path: Path):
        self.logging = helper_config.get_logger()
        self.path = path

    def load(self) -> Checkpoint | None:
        """
        Reads the checkpoint written by a previous run.

        Returns:
            Checkpoint | None: The checkpoint, or None if there is none or it is unreadable.
        """
        if not self.path.exists():
            return None
        try:
            checkpoint = Checkpoint.model_validate_json(self.path.read_bytes())
        except (OSError, ValueError, ValidationError) as exc:
            self.logging.warning("Ignoring unreadable checkpoint %s: %s", self.path, exc)
            return None
        self.logging.info(
            "Loaded checkpoint: last offset %d, %d processed, %d errored, %d skipped%s",
            checkpoint.last_offset,
            checkpoint.counters.processed,
            checkpoint.counters.errored,
            checkpoint.counters.skipped,
            " (completed)" if checkpoint.completed else "",
        )
        return checkpoint

    def save(self, checkpoint: Checkpoint) -> None:
        """
        Persists the checkpoint with a write-temp-then-rename.

        Args:
            checkpoint (Checkpoint): The state to persist. updated_at is refreshed.
        """
        checkpoint.updated_at = datetime.now(timezone.utc)
        atomic_write_bytes(self.path, checkpoint.model_dump_json(indent=2).encode("utf-8"))
        self.logging.debug("Checkpoint saved at offset %d", checkpoint.last_offset)

    def save_offset(self, checkpoint: Checkpoint, offset: int, counters: RunCounters) -> None:
        checkpoint.last_offset = offset
        checkpoint.counters = counters.model_copy()
        self.save(checkpoint)
