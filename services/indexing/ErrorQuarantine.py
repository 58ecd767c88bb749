import json
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

from shared.helper.HelperConfig import HelperConfig
from shared.models.document import ChunkError, SourceItem

ERROR_LOG_NAME = "errors.jsonl"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ErrorQuarantine:
    """Relocates unprocessable source artifacts and appends error records.

    Best effort: no method raises. A failed move or write is logged and the
    pipeline continues.
    """

    def __init__(self, helper_config: HelperConfig, quarantine_dir: Path):
        self.logging = helper_config.get_logger()
        self.quarantine_dir = quarantine_dir
        self.error_log_path = quarantine_dir / ERROR_LOG_NAME

    ##########################################
    ############### RELOCATE #################
    ##########################################

    def _target_for(self, name: str) -> Path:
        target = self.quarantine_dir / name
        counter = 1
        while target.exists():
            target = self.quarantine_dir / f"{Path(name).stem}.{counter}{Path(name).suffix}"
            counter += 1
        return target

    def _relocate(self, item: SourceItem) -> Path | None:
        if item.artifact_path is not None:
            target = self._target_for(item.artifact_path.name)
            shutil.move(str(item.artifact_path), str(target))
            return target
        if item.raw is not None:
            name = _UNSAFE_CHARS.sub("_", item.label) or f"offset-{item.offset}"
            target = self._target_for(f"{name}.json")
            target.write_text(json.dumps(item.raw, ensure_ascii=False, indent=2), encoding="utf-8")
            return target
        return None

    ##########################################
    ################ RECORDS #################
    ##########################################

    def _append(self, record: dict) -> None:
        try:
            self.quarantine_dir.mkdir(parents=True, exist_ok=True)
            with open(self.error_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            self.logging.error("Could not write error record for '%s': %s", record.get("doc_id"), exc)

    def _record(self, item: SourceItem, stage: str, error: str, chunk_index: int | None, artifact_path: Path | None) -> dict:
        return {
            "doc_id": item.label,
            "offset": item.offset,
            "stage": stage,
            "error": error,
            "chunk_index": chunk_index,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "artifact_path": str(artifact_path) if artifact_path is not None else None,
        }

    def quarantine(self, item: SourceItem, stage: str, error: str) -> Path | None:
        """
        Moves the item's artifact to the quarantine directory and appends an error record.

        Args:
            item (SourceItem): The failed item.
            stage (str): The pipeline stage that failed.
            error (str): The error message.

        Returns:
            Path | None: The relocated artifact, or None if nothing could be relocated.
        """
        relocated: Path | None = None
        try:
            self.quarantine_dir.mkdir(parents=True, exist_ok=True)
            relocated = self._relocate(item)
        except (OSError, TypeError, ValueError) as exc:
            self.logging.error("Could not relocate artifact of '%s': %s", item.label, exc)
        self._append(self._record(item, stage, error, None, relocated))
        self.logging.error("Quarantined '%s' at stage '%s': %s", item.label, stage, error)
        return relocated

    def record_chunk_errors(self, item: SourceItem, errors: list[ChunkError]) -> None:
        """
        Appends one error record per failed chunk, without relocating anything.
        """
        for chunk_error in errors:
            self._append(self._record(item, chunk_error.stage, chunk_error.message, chunk_error.chunk_index, None))
