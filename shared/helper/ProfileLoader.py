from shared.helper.HelperConfig import HelperConfig
from shared.models.config import PerformanceProfile, UpsertBatchTier

# field overrides per profile; everything not listed keeps the model default
BUILTIN_PROFILES: dict[str, dict] = {
    "conservative": {
        "document_batch_size": 10,
        "worker_concurrency": 2,
        "embedding_batch_size": 20,
        "embedding_concurrency": 2,
        "upsert_batch_size": 50,
        "batch_delay_ms": 3000,
        "upsert_delay_ms": 800,
        "max_retries": 5,
    },
    "balanced": {
        "document_batch_size": 20,
        "worker_concurrency": 3,
        "batch_delay_ms": 2000,
        "upsert_delay_ms": 300,
    },
    "aggressive": {
        "document_batch_size": 30,
        "worker_concurrency": 5,
        "embedding_batch_size": 96,
        "batch_delay_ms": 1000,
        "upsert_delay_ms": 100,
    },
    "maximum": {
        "document_batch_size": 50,
        "worker_concurrency": 8,
        "embedding_batch_size": 128,
        "batch_delay_ms": 500,
        "upsert_delay_ms": 50,
    },
    "local": {
        "document_batch_size": 30,
        "worker_concurrency": 10,
        "embedding_batch_size": 128,
        "batch_delay_ms": 0,
        "upsert_delay_ms": 0,
    },
    "ultra": {
        "document_batch_size": 40,
        "worker_concurrency": 15,
        "embedding_batch_size": 128,
        "embedding_concurrency": 3,
        "batch_delay_ms": 0,
        "upsert_delay_ms": 0,
    },
    "test": {
        "document_batch_size": 5,
        "worker_concurrency": 2,
        "embedding_batch_size": 16,
        "batch_delay_ms": 1000,
        "upsert_delay_ms": 200,
        "progress_interval_s": 5.0,
    },
}

DEFAULT_PROFILE = "balanced"

_INT_FIELDS = (
    "chunk_size",
    "chunk_overlap",
    "embedding_batch_size",
    "embedding_concurrency",
    "upsert_batch_size",
    "worker_concurrency",
    "document_batch_size",
    "batch_delay_ms",
    "upsert_delay_ms",
    "max_retries",
    "retry_base_delay_ms",
    "retry_max_delay_ms",
    "retry_jitter_ms",
)


class ProfileLoader:
    """
    Resolves the active PerformanceProfile from INDEX_PROFILE and INDEX_<FIELD> overrides.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()

    @staticmethod
    def parse_tiers(raw: list[str]) -> list[UpsertBatchTier]:
        """
        Parses upsert batch tiers given as "min_chars:batch_size" elements.

        Args:
            raw (list[str]): Elements like ["0:200", "100000:150"].

        Returns:
            list[UpsertBatchTier]: The parsed tiers.

        Raises:
            ValueError: If an element is not in "min_chars:batch_size" format.
        """
        tiers = []
        for elem in raw:
            min_chars, sep, batch_size = elem.partition(":")
            if not sep:
                raise ValueError(f"Invalid upsert batch tier '{elem}', expected 'min_chars:batch_size'.")
            tiers.append(UpsertBatchTier(min_chars=int(min_chars), batch_size=int(batch_size)))
        return tiers

    def _get_overrides(self) -> dict:
        overrides: dict = {}
        for field in _INT_FIELDS:
            val = self.helper_config.get_number_val(f"INDEX_{field}", default=-1)
            if val != -1:
                overrides[field] = int(val)
        interval = self.helper_config.get_number_val("INDEX_PROGRESS_INTERVAL_S", default=-1)
        if interval != -1:
            overrides["progress_interval_s"] = float(interval)
        tiers = self.helper_config.get_list_val("INDEX_UPSERT_BATCH_TIERS", default=[])
        if tiers:
            overrides["upsert_batch_tiers"] = self.parse_tiers(tiers)
        return overrides

    def load(self) -> PerformanceProfile:
        """
        Builds the profile selected by INDEX_PROFILE and applies the env overrides.

        Returns:
            PerformanceProfile: The validated profile.

        Raises:
            ValueError: If the profile name is unknown or an override is invalid.
        """
        name = self.helper_config.get_string_val("INDEX_PROFILE", default=DEFAULT_PROFILE).lower()
        if name not in BUILTIN_PROFILES:
            raise ValueError(f"Unknown performance profile '{name}'. Available: {', '.join(BUILTIN_PROFILES)}.")
        overrides = self._get_overrides()
        profile = PerformanceProfile(name=name, **{**BUILTIN_PROFILES[name], **overrides})
        if overrides:
            self.logging.info("Profile '%s' overridden from env: %s", name, ", ".join(sorted(overrides)))
        self.logging.info(
            "Using profile '%s': %d workers, %d docs/group, embed batch %d x%d, upsert cap %d, delay %dms",
            profile.name,
            profile.worker_concurrency,
            profile.document_batch_size,
            profile.embedding_batch_size,
            profile.embedding_concurrency,
            profile.upsert_batch_size,
            profile.batch_delay_ms,
            color="cyan",
        )
        return profile
