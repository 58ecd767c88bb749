"""
Test suite for the indexer entry point: configuration failures abort with
exit code 1 before any backend is contacted.
"""

import pytest

from indexer.index_runner import EXIT_STARTUP_FAILURE, main


class TestIndexRunnerStartup:
    """Startup validation."""

    @pytest.mark.asyncio
    async def test_unknown_profile_exits_with_startup_failure(self, env, monkeypatch) -> None:
        monkeypatch.setenv("INDEX_PROFILE", "warp")
        assert await main() == EXIT_STARTUP_FAILURE

    @pytest.mark.asyncio
    async def test_missing_source_path_exits_with_startup_failure(self, env, monkeypatch) -> None:
        monkeypatch.delenv("INDEX_PROFILE", raising=False)
        monkeypatch.setenv("SOURCE_ENGINE", "jsonarray")
        monkeypatch.delenv("SOURCE_JSONARRAY_PATH", raising=False)
        assert await main() == EXIT_STARTUP_FAILURE
