"""
Test suite for configuration: HelperConfig env parsing, performance profiles
with env overrides, dynamic upsert batch sizing and retry backoff.
"""

import time

import pytest

from shared.helper.BatchSizing import upsert_batch_size_for
from shared.helper.ProfileLoader import BUILTIN_PROFILES, ProfileLoader
from shared.helper.RetryPolicy import RetryPolicy
from shared.models.config import PerformanceProfile, UpsertBatchTier
from shared.models.errors import FatalIndexingError, TransientError


class TestHelperConfig:
    """Environment value parsing."""

    def test_missing_required_value_raises(self, helper_config, monkeypatch) -> None:
        monkeypatch.delenv("SOME_UNSET_KEY", raising=False)
        with pytest.raises(ValueError):
            helper_config.get_string_val("SOME_UNSET_KEY")

    def test_number_and_bool(self, helper_config, monkeypatch) -> None:
        monkeypatch.setenv("A_NUMBER", "2.5")
        monkeypatch.setenv("A_FLAG", "yes")
        assert helper_config.get_number_val("A_NUMBER") == 2.5
        assert helper_config.get_bool_val("A_FLAG") is True

    def test_list_requires_brackets(self, helper_config, monkeypatch) -> None:
        monkeypatch.setenv("A_LIST", "1,2")
        with pytest.raises(ValueError):
            helper_config.get_list_val("A_LIST", element_type=int)
        monkeypatch.setenv("A_LIST", "[1, 2]")
        assert helper_config.get_list_val("A_LIST", element_type=int) == [1, 2]


class TestProfileLoader:
    """Named profiles and INDEX_<FIELD> overrides."""

    def test_default_profile_is_balanced(self, helper_config, monkeypatch) -> None:
        monkeypatch.delenv("INDEX_PROFILE", raising=False)
        profile = ProfileLoader(helper_config).load()
        assert profile.name == "balanced"
        assert profile.worker_concurrency == 3
        assert profile.chunk_size == 800
        assert profile.chunk_overlap == 80

    @pytest.mark.parametrize("name", sorted(BUILTIN_PROFILES))
    def test_every_builtin_profile_is_valid(self, helper_config, monkeypatch, name: str) -> None:
        monkeypatch.setenv("INDEX_PROFILE", name)
        assert ProfileLoader(helper_config).load().name == name

    def test_env_overrides_fields(self, helper_config, monkeypatch) -> None:
        monkeypatch.setenv("INDEX_PROFILE", "local")
        monkeypatch.setenv("INDEX_WORKER_CONCURRENCY", "4")
        monkeypatch.setenv("INDEX_BATCH_DELAY_MS", "250")
        monkeypatch.setenv("INDEX_UPSERT_BATCH_TIERS", "[0:100,50000:40]")

        profile = ProfileLoader(helper_config).load()

        assert profile.worker_concurrency == 4
        assert profile.batch_delay_ms == 250
        assert profile.upsert_batch_tiers == [
            UpsertBatchTier(min_chars=0, batch_size=100),
            UpsertBatchTier(min_chars=50000, batch_size=40),
        ]

    def test_unknown_profile_raises(self, helper_config, monkeypatch) -> None:
        monkeypatch.setenv("INDEX_PROFILE", "warp")
        with pytest.raises(ValueError):
            ProfileLoader(helper_config).load()

    def test_invalid_overlap_override_raises(self, helper_config, monkeypatch) -> None:
        monkeypatch.setenv("INDEX_CHUNK_SIZE", "100")
        monkeypatch.setenv("INDEX_CHUNK_OVERLAP", "100")
        with pytest.raises(ValueError):
            ProfileLoader(helper_config).load()

    def test_fingerprint_tracks_changes(self) -> None:
        a = PerformanceProfile(name="x")
        b = PerformanceProfile(name="x")
        c = PerformanceProfile(name="x", worker_concurrency=9)
        assert a.fingerprint() == b.fingerprint()
        assert a.fingerprint() != c.fingerprint()


class TestUpsertBatchSizing:
    """Document size to upsert batch size."""

    @pytest.mark.parametrize(
        "size, expected",
        [
            (None, 200),
            (0, 200),
            (100_000, 200),
            (100_001, 150),
            (200_001, 120),
            (500_000, 120),
            (600_000, 80),
            (5_000_000, 80),
        ],
    )
    def test_default_tiers(self, size: int | None, expected: int) -> None:
        assert upsert_batch_size_for(size, PerformanceProfile(name="t")) == expected

    def test_batch_size_never_exceeds_cap(self) -> None:
        profile = PerformanceProfile(name="t", upsert_batch_size=50)
        assert upsert_batch_size_for(10, profile) == 50
        assert upsert_batch_size_for(600_000, profile) == 50


class TestRetryPolicy:
    """Exponential backoff on transient errors."""

    @pytest.mark.asyncio
    async def test_waits_grow_exponentially(self, logger) -> None:
        """Two transient failures wait base, then twice base, before the third attempt succeeds."""
        policy = RetryPolicy(logger, max_retries=2, base_delay=0.05, max_delay=1.0)
        attempts: list[float] = []

        async def flaky() -> str:
            attempts.append(time.monotonic())
            if len(attempts) < 3:
                raise TransientError("busy")
            return "ok"

        assert await policy.call(flaky, description="flaky") == "ok"
        assert len(attempts) == 3
        assert attempts[1] - attempts[0] >= 0.04
        assert attempts[2] - attempts[1] >= 0.09

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise_the_transient_error(self, logger) -> None:
        policy = RetryPolicy(logger, max_retries=2, base_delay=0.0, max_delay=0.0)
        calls: list[int] = []

        async def down() -> None:
            calls.append(1)
            raise TransientError("down")

        with pytest.raises(TransientError):
            await policy.call(down)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, logger) -> None:
        policy = RetryPolicy(logger, max_retries=5, base_delay=0.0, max_delay=0.0)
        calls: list[int] = []

        async def broken() -> None:
            calls.append(1)
            raise FatalIndexingError("bad credentials")

        with pytest.raises(FatalIndexingError):
            await policy.call(broken)
        assert len(calls) == 1
