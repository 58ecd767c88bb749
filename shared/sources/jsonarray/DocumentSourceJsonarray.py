import json
from pathlib import Path
from typing import Any, Iterator

from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.document import SourceItem
from shared.models.errors import DocumentValidationError, SourceUnavailableError
from shared.sources.DocumentSourceInterface import DocumentSourceInterface


class DocumentSourceJsonarray(DocumentSourceInterface):
    """Reads documents from a single JSON file holding an array of records.

    Offsets are array indexes. Records have no file of their own, so the raw
    record is kept on the item and written out on quarantine.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._path: Path = self.get_config_val("PATH", default=None, val_type="path")
        self._records: list[Any] | None = None

    def _get_engine_name(self) -> str:
        return "Jsonarray"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="PATH", val_type="path", default=None),
        ]

    def open(self) -> None:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SourceUnavailableError(f"Cannot read source file '{self._path}': {exc}", stage="source") from exc
        if not isinstance(data, list):
            raise SourceUnavailableError(f"Source file '{self._path}' does not contain a JSON array.", stage="source")
        self._records = data
        self.logging.info("Loaded %d records from %s", len(data), self._path)

    def count(self) -> int | None:
        return len(self._records) if self._records is not None else None

    def iter_items(self, start_offset: int = 0) -> Iterator[SourceItem]:
        if self._records is None:
            raise RuntimeError("Source not opened. Call open() before iterating.")
        for offset in range(max(start_offset, 0), len(self._records)):
            record = self._records[offset]
            try:
                document = self.record_to_document(record)
            except DocumentValidationError as exc:
                yield SourceItem(offset=offset, error=str(exc), raw=record)
                continue
            yield SourceItem(offset=offset, document=document, raw=record)
