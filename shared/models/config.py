import hashlib
import json

from pydantic import BaseModel, Field, model_validator


class EnvConfig(BaseModel):
    """
    Represents a single configuration parameter required for a env setting.

    Attributes:
        env_key (str): The key/name of the environment variable to read.
        val_type (str): The expected type of the environment variable's value. Supported types are "string", "number", "bool", "list" and "path".
        default (str | int | bool | list | None): An optional default value if the environment variable is not set. If None, the variable is required and an error will be raised if it is not set.
    """

    # Core identity
    env_key: str
    val_type: str
    default: str | int | float | bool | list | None = None


class UpsertBatchTier(BaseModel):
    """One row of the dynamic upsert batch sizing table.

    Documents whose text is strictly longer than ``min_chars`` use ``batch_size``.
    The tier with the highest matching ``min_chars`` wins.
    """

    min_chars: int = Field(ge=0)
    batch_size: int = Field(ge=1)


class PerformanceProfile(BaseModel):
    """Tuning constants of the indexing pipeline.

    A profile is selected by name at startup and each field can be overridden
    individually from the environment (``INDEX_<FIELD>``). Delays are stored in
    milliseconds, the progress interval in seconds.

    Attributes:
        name:                   Profile name as selected with INDEX_PROFILE.
        chunk_size:             Maximum characters per chunk.
        chunk_overlap:          Characters shared by consecutive chunks.
        embedding_batch_size:   Max texts per embedding request.
        embedding_concurrency:  Max embedding requests in flight per document.
        upsert_batch_size:      Upper bound for any upsert batch.
        upsert_batch_tiers:     Document size → upsert batch size table.
        worker_concurrency:     Documents processed in parallel.
        document_batch_size:    Documents dispatched per group, checkpoint after each group.
        batch_delay_ms:         Pause between document groups.
        upsert_delay_ms:        Pause between consecutive upsert calls.
        max_retries:            Retries after the first attempt on transient errors.
        retry_base_delay_ms:    Base of the exponential backoff.
        retry_max_delay_ms:     Cap of a single backoff wait.
        retry_jitter_ms:        Random jitter added to each backoff wait.
        progress_interval_s:    Seconds between progress reports.
    """

    name: str
    chunk_size: int = Field(default=800, ge=1)
    chunk_overlap: int = Field(default=80, ge=0)
    embedding_batch_size: int = Field(default=64, ge=1)
    embedding_concurrency: int = Field(default=3, ge=1)
    upsert_batch_size: int = Field(default=200, ge=1)
    upsert_batch_tiers: list[UpsertBatchTier] = Field(
        default_factory=lambda: [
            UpsertBatchTier(min_chars=0, batch_size=200),
            UpsertBatchTier(min_chars=100_000, batch_size=150),
            UpsertBatchTier(min_chars=200_000, batch_size=120),
            UpsertBatchTier(min_chars=500_000, batch_size=80),
        ]
    )
    worker_concurrency: int = Field(default=3, ge=1)
    document_batch_size: int = Field(default=20, ge=1)
    batch_delay_ms: int = Field(default=2000, ge=0)
    upsert_delay_ms: int = Field(default=100, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=30_000, ge=0)
    retry_jitter_ms: int = Field(default=250, ge=0)
    progress_interval_s: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "PerformanceProfile":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})."
            )
        if not self.upsert_batch_tiers:
            raise ValueError("upsert_batch_tiers must contain at least one tier.")
        return self

    def fingerprint(self) -> str:
        """SHA-256 over the serialized profile, used to detect tuning changes between runs."""
        raw = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()
