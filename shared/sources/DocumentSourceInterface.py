from abc import ABC, abstractmethod
from typing import Any, Iterator

from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.document import Document, SourceItem
from shared.models.errors import DocumentValidationError


class DocumentSourceInterface(ABC):
    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.id_field = helper_config.get_string_val("SOURCE_ID_FIELD", default="docId")
        self.text_field = helper_config.get_string_val("SOURCE_TEXT_FIELD", default="text")
        self.validate_full_configuration()

    ##########################################
    ############### CHECKER ##################
    ##########################################

    def validate_full_configuration(self) -> None:
        """
        Validates that all required configuration values for the source are set and valid.

        Raises:
            ValueError: If any required configuration value is missing or invalid.
        """
        for config in self._get_required_config():
            _ = self.get_config_val(raw_key=config.env_key, default=config.default, val_type=config.val_type)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def get_engine_name(self) -> str:
        """
        Returns the name of the source engine. E.g. "directory"
        """
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        pass

    def resumes_by_offset(self) -> bool:
        """
        Whether offsets are stable between runs, so a run can resume after the checkpointed offset.

        Sources that remove finished items from their listing restart at the
        beginning of what is left instead.
        """
        return True

    ################ CONFIG ##################
    @abstractmethod
    def _get_required_config(self) -> list[EnvConfig]:
        """
        Returns all required configurations for the source.

        Returns:
            list[EnvConfig]: A list containing the details of each required configuration key.
        """
        pass

    def _get_config_key_name(self, raw_key: str) -> str:
        """
        Returns:
            str: The full configuration key name for the source. E.g. "SOURCE_DIRECTORY_PATH"
        """
        return f"SOURCE_{self.get_engine_name().upper()}_{raw_key.upper()}"

    def get_config_val(self, raw_key: str, default: Any = None, val_type: str = "string") -> Any:
        key = self._get_config_key_name(raw_key)
        if val_type == "string":
            return self._helper_config.get_string_val(key, default=default)
        elif val_type == "number":
            return self._helper_config.get_number_val(key, default=default)
        elif val_type == "bool":
            return self._helper_config.get_bool_val(key, default=default)
        elif val_type == "list":
            return self._helper_config.get_list_val(key, default=default)
        elif val_type == "path":
            return self._helper_config.get_path_val(key, default=default)
        else:
            raise ValueError(f"Unsupported config value type '{val_type}' for env key '{raw_key}' in source '{self.get_engine_name()}'.")

    ##########################################
    ############### READING ##################
    ##########################################

    @abstractmethod
    def open(self) -> None:
        """
        Opens the source and prepares the listing of items.

        Raises:
            SourceUnavailableError: If the source cannot be read.
        """
        pass

    @abstractmethod
    def count(self) -> int | None:
        """
        Returns the total number of items, or None if unknown. Only valid after open().
        """
        pass

    @abstractmethod
    def iter_items(self, start_offset: int = 0) -> Iterator[SourceItem]:
        """
        Yields the items of the source in offset order, starting at start_offset.

        Malformed records are yielded with ``document=None`` and an error message
        instead of raising, so the caller can quarantine them.

        Args:
            start_offset (int): The first offset to yield.
        """
        pass

    def on_indexed(self, item: SourceItem) -> None:
        """
        Hook called by the orchestrator after a document was indexed. Never raises.
        """
        return None

    ##########################################
    ################# OTHER ##################
    ##########################################

    @staticmethod
    def _get_field(record: dict, path: str) -> Any:
        """
        Reads a possibly nested field using dot notation, e.g. "data.texto".
        """
        value: Any = record
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def record_to_document(self, record: Any, fallback_id: str | None = None) -> Document:
        """
        Builds a Document from a JSON record.

        The identifier is read from SOURCE_ID_FIELD and the text from
        SOURCE_TEXT_FIELD; the remaining top-level keys become metadata.

        Args:
            record (Any): The parsed JSON record.
            fallback_id (str | None): Identifier used if the record has none.

        Returns:
            Document: The parsed document.

        Raises:
            DocumentValidationError: If the record is not an object, or has no identifier or text.
        """
        if not isinstance(record, dict):
            raise DocumentValidationError(f"Record is a {type(record).__name__}, expected an object.", stage="source")
        doc_id = self._get_field(record, self.id_field)
        if doc_id is None or str(doc_id).strip() == "":
            if fallback_id is None:
                raise DocumentValidationError(f"Record has no '{self.id_field}' field.", stage="source")
            doc_id = fallback_id
        text = self._get_field(record, self.text_field)
        if text is None:
            raise DocumentValidationError(f"Record has no '{self.text_field}' field.", stage="source")
        if not isinstance(text, str):
            raise DocumentValidationError(
                f"Field '{self.text_field}' is a {type(text).__name__}, expected a string.", stage="source"
            )
        top_level = {self.id_field.split(".")[0], self.text_field.split(".")[0]}
        metadata = {k: v for k, v in record.items() if k not in top_level}
        return Document(doc_id=str(doc_id), text=text, metadata=metadata)
