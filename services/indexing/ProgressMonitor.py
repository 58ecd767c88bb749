"""Progress reporting.

Read-only telemetry: the monitor never influences control flow. Snapshots
are computed by a pure function of the counters and elapsed time, the
monitor task just logs them at a fixed interval.
"""

import asyncio
import time
from typing import Callable

from pydantic import BaseModel

from shared.helper.HelperConfig import HelperConfig
from shared.models.checkpoint import RunCounters


class ProgressSnapshot(BaseModel):
    processed: int
    errored: int
    skipped: int
    chunks: int
    done: int
    total: int | None
    elapsed_s: float
    docs_per_minute: float
    chunks_per_second: float
    eta_s: float | None


def compute_snapshot(
    counters: RunCounters,
    elapsed_s: float,
    total: int | None,
    baseline: int = 0,
    baseline_chunks: int = 0,
    per_pass: bool = False,
) -> ProgressSnapshot:
    """Compute throughput and ETA.

    Rates only count work done in this process; ``baseline`` is the number of
    documents already done when the run resumed.

    Args:
        counters: Cumulative counters, including resumed ones.
        elapsed_s: Seconds since this run started.
        total: Total documents in the source, if known.
        baseline: Documents done before this run.
        baseline_chunks: Chunks done before this run.
        per_pass: The source restarts from its first item on every run and
            ``total`` only covers this pass, so ``done`` excludes the baseline.
    """
    done = counters.total
    run_done = max(done - baseline, 0)
    if per_pass:
        done = run_done
    run_chunks = max(counters.chunks - baseline_chunks, 0)
    docs_per_minute = run_done / elapsed_s * 60 if elapsed_s > 0 else 0.0
    chunks_per_second = run_chunks / elapsed_s if elapsed_s > 0 else 0.0
    eta_s = None
    if total is not None and docs_per_minute > 0:
        eta_s = max(total - done, 0) / docs_per_minute * 60
    return ProgressSnapshot(
        processed=counters.processed,
        errored=counters.errored,
        skipped=counters.skipped,
        chunks=counters.chunks,
        done=done,
        total=total,
        elapsed_s=elapsed_s,
        docs_per_minute=docs_per_minute,
        chunks_per_second=chunks_per_second,
        eta_s=eta_s,
    )


def _format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


class ProgressMonitor:
    def __init__(
        self,
        helper_config: HelperConfig,
        counters: Callable[[], RunCounters],
        total: int | None,
        interval_s: float = 30.0,
        per_pass: bool = False,
    ):
        self.logging = helper_config.get_logger()
        self._counters = counters
        self.total = total
        self.interval_s = interval_s
        self._started = time.monotonic()
        initial = counters()
        self._baseline = initial.total
        self._baseline_chunks = initial.chunks
        self.per_pass = per_pass
        self._task: asyncio.Task | None = None

    def snapshot(self) -> ProgressSnapshot:
        return compute_snapshot(
            self._counters(),
            time.monotonic() - self._started,
            self.total,
            self._baseline,
            self._baseline_chunks,
            per_pass=self.per_pass,
        )

    def report(self) -> ProgressSnapshot:
        snap = self.snapshot()
        progress = f"{snap.done}/{snap.total}" if snap.total is not None else str(snap.done)
        self.logging.info(
            "Progress %s | indexed %d, quarantined %d, skipped %d, chunks %d | %.1f docs/min, %.1f chunks/s | ETA %s",
            progress,
            snap.processed,
            snap.errored,
            snap.skipped,
            snap.chunks,
            snap.docs_per_minute,
            snap.chunks_per_second,
            _format_duration(snap.eta_s),
            color="cyan",
        )
        return snap

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            self.report()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def summary(self) -> ProgressSnapshot:
        """Logs the final summary of the run."""
        snap = self.snapshot()
        counters = self._counters()
        self.logging.info("##########################################", color="green")
        self.logging.info("Indexing finished in %s", _format_duration(snap.elapsed_s), color="green")
        self.logging.info("  indexed:      %d", counters.processed, color="green")
        self.logging.info("  quarantined:  %d", counters.errored, color="green")
        self.logging.info("  skipped:      %d", counters.skipped, color="green")
        self.logging.info("  chunks:       %d", counters.chunks, color="green")
        self.logging.info("  points:       %d", counters.points, color="green")
        self.logging.info("  chunk errors: %d", counters.chunk_errors, color="green")
        self.logging.info("  throughput:   %.1f docs/min", snap.docs_per_minute, color="green")
        self.logging.info("##########################################", color="green")
        return snap
