# src/flowline/engine/workers.py
"""Worker pool: several scheduler loops sharing one ledger.

Workers coordinate only through the ledger's CAS; there is no in-process
lock around entries, so the same pool shape works across processes.

When given a RecoveryManager the pool also runs a recovery thread that
sweeps abandoned Running entries every recovery_interval seconds.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from functools import reduce
from types import TracebackType
from typing import Self

from flowline.contracts.results import TickResult
from flowline.core.ledger.recovery import RecoveryManager
from flowline.core.logging import get_logger
from flowline.engine.scheduler import StepScheduler

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class WorkerPool:
    """Runs StepScheduler.tick from ``workers`` threads.

    Example:
        with WorkerPool(scheduler, workers=4, poll_interval=1.0):
            ...  # ticks run in the background until the block exits

        # Or drive it explicitly (tests, cron):
        result = WorkerPool(scheduler, workers=4).run_once(now)
    """

    def __init__(
        self,
        scheduler: StepScheduler,
        *,
        workers: int = 1,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = _utc_now,
        recovery: RecoveryManager | None = None,
        recovery_interval: float | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        if recovery_interval is None and recovery is not None:
            recovery_interval = recovery.lease.total_seconds() / 2
        if recovery_interval is not None and recovery_interval <= 0:
            raise ValueError(f"recovery_interval must be > 0, got {recovery_interval}")
        self._scheduler = scheduler
        self._workers = workers
        self._poll_interval = poll_interval
        self._clock = clock
        self._recovery = recovery
        self._recovery_interval = recovery_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def run_once(self, now: datetime | None = None) -> TickResult:
        """Run one tick per worker concurrently and merge the counters."""
        now = now or self._clock()
        if self._workers == 1:
            return self._scheduler.tick(now)
        with ThreadPoolExecutor(max_workers=self._workers) as pool:
            futures = [pool.submit(self._scheduler.tick, now) for _ in range(self._workers)]
            results = [f.result() for f in futures]
        return reduce(TickResult.merge, results, TickResult())

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Worker pool already running")
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"flowline-worker-{i}", daemon=True)
            for i in range(self._workers)
        ]
        if self._recovery is not None:
            self._threads.append(
                threading.Thread(
                    target=self._recovery_loop, name="flowline-recovery", daemon=True
                )
            )
        for thread in self._threads:
            thread.start()
        logger.info("Worker pool started", workers=self._workers)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Worker pool stopped", workers=self._workers)

    def wait(self) -> None:
        """Block until stop() is called from another thread or a signal handler."""
        self._stop.wait()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = self._scheduler.tick(self._clock())
            except Exception:
                # Database hiccups must not kill the worker thread
                logger.exception("Tick failed")
                self._stop.wait(self._poll_interval)
                continue
            if result.selected == 0:
                self._stop.wait(self._poll_interval)

    def _recovery_loop(self) -> None:
        assert self._recovery is not None and self._recovery_interval is not None
        while not self._stop.wait(self._recovery_interval):
            try:
                result = self._recovery.recover(self._clock())
            except Exception:
                logger.exception("Recovery sweep failed")
                continue
            if result.recovered or result.failed:
                logger.info(
                    "Recovery sweep finished",
                    recovered=len(result.recovered),
                    failed=len(result.failed),
                    conflicts=result.conflicts,
                )

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()
