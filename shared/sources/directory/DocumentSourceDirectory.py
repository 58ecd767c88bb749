import json
import shutil
from pathlib import Path
from typing import Iterator

from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.document import Document, SourceItem
from shared.models.errors import DocumentValidationError, SourceUnavailableError
from shared.sources.DocumentSourceInterface import DocumentSourceInterface


class DocumentSourceDirectory(DocumentSourceInterface):
    """Reads one document per file from a directory.

    ``.json`` files hold a record object, any other file is read as plain text
    with the file stem as identifier. Offsets are positions in the sorted listing.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._path: Path = self.get_config_val("PATH", default=None, val_type="path")
        self._pattern: str = self.get_config_val("PATTERN", default="*.json", val_type="string")
        done_dir = self.get_config_val("DONE_DIR", default="", val_type="string")
        self._done_dir: Path | None = Path(done_dir).expanduser() if done_dir else None
        self._files: list[Path] | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Directory"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="PATH", val_type="path", default=None),
            EnvConfig(env_key="PATTERN", val_type="string", default="*.json"),
            EnvConfig(env_key="DONE_DIR", val_type="string", default=""),
        ]

    def resumes_by_offset(self) -> bool:
        # indexed and quarantined files leave the directory, so positions shift between runs
        return False

    ##########################################
    ############### READING ##################
    ##########################################

    def open(self) -> None:
        if not self._path.is_dir():
            raise SourceUnavailableError(f"Source directory '{self._path}' does not exist.", stage="source")
        try:
            self._files = sorted(p for p in self._path.glob(self._pattern) if p.is_file())
        except OSError as exc:
            raise SourceUnavailableError(f"Cannot list source directory '{self._path}': {exc}", stage="source") from exc
        self.logging.info("Found %d files matching '%s' in %s", len(self._files), self._pattern, self._path)

    def count(self) -> int | None:
        return len(self._files) if self._files is not None else None

    def _read_file(self, path: Path) -> Document:
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise DocumentValidationError(f"Cannot read '{path.name}': {exc}", stage="source") from exc
        if path.suffix.lower() != ".json":
            return Document(doc_id=path.stem, text=raw, metadata={"source_file": path.name})
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DocumentValidationError(f"Invalid JSON in '{path.name}': {exc}", stage="source") from exc
        return self.record_to_document(record, fallback_id=path.stem)

    def iter_items(self, start_offset: int = 0) -> Iterator[SourceItem]:
        if self._files is None:
            raise RuntimeError("Source not opened. Call open() before iterating.")
        for offset in range(max(start_offset, 0), len(self._files)):
            path = self._files[offset]
            try:
                document = self._read_file(path)
            except DocumentValidationError as exc:
                yield SourceItem(offset=offset, artifact_path=path, error=str(exc))
                continue
            yield SourceItem(offset=offset, document=document, artifact_path=path)

    def on_indexed(self, item: SourceItem) -> None:
        if self._done_dir is None or item.artifact_path is None:
            return
        try:
            self._done_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(item.artifact_path), str(self._done_dir / item.artifact_path.name))
        except OSError as exc:
            self.logging.warning("Could not move indexed file '%s' to %s: %s", item.artifact_path.name, self._done_dir, exc)
