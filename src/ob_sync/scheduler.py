"""Timer-driven execution of reconciliation cycles with single-flight per vault.

Two periodic timers (settle and full reconciliation), a startup run and manual
triggers all funnel through one guard keyed by vault path. A trigger that
finds a cycle already in flight is skipped outright: concurrent git commands
against one working copy corrupt its index and lock state.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from .constants import APP_NAME, RECONCILE_INTERVAL, SETTLE_INTERVAL
from .engine import CycleOutcome, CycleResult, CycleState, ReconciliationEngine

logger = logging.getLogger(APP_NAME)


class VaultGuard:
    """Registry of non-blocking per-vault locks.

    Locks are keyed by the resolved vault path so that every scheduler and
    manual trigger in the process agrees on the identity of a vault.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        key = str(path.resolve())
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def is_held(self, path: Path) -> bool:
        return self._lock_for(path).locked()

    @contextmanager
    def hold(self, path: Path) -> Iterator[bool]:
        """Tries to take the vault's lock without waiting.

        Yields:
            bool: True if this caller owns the vault for the duration of the block.
        """
        lock = self._lock_for(path)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


GUARD = VaultGuard()
"""VaultGuard: The process-wide guard shared by all schedulers."""


class Scheduler:
    """Drives a ReconciliationEngine from timers and manual triggers.

    Every timer firing runs its cycle on a fresh worker thread, so a slow or
    hung cycle never delays the other timer. `stop()` joins timers and workers;
    cycles that have started are allowed to finish.

    Attributes:
        engine (ReconciliationEngine): The engine bound to the vault.
        settle_interval (float): Seconds between commit-only runs.
        reconcile_interval (float): Seconds between full cycles.
        results (list[CycleResult]): Results of completed cycles, oldest first.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        settle_interval: float = SETTLE_INTERVAL,
        reconcile_interval: float = RECONCILE_INTERVAL,
        guard: VaultGuard | None = None,
    ):
        self.engine = engine
        self.settle_interval = settle_interval
        self.reconcile_interval = reconcile_interval
        self.guard = guard or GUARD
        self.results: list[CycleResult] = []

        self._stop_event = threading.Event()
        self._timers: list[threading.Thread] = []
        self._workers: set[threading.Thread] = set()
        self._lock = threading.Lock()

    @property
    def vault_path(self) -> Path:
        return self.engine.settings.path

    # --- Execution ---

    def run_guarded(
        self, trigger: str, job: Callable[[], CycleResult]
    ) -> CycleResult:
        """Runs `job` if no other cycle holds the vault, otherwise skips it.

        A skipped trigger issues no git commands and is not queued.
        """
        with self.guard.hold(self.vault_path) as acquired:
            if not acquired:
                logger.info(
                    f"SKIPPED {self.vault_path.name} ({trigger}): "
                    "cycle already in flight."
                )
                result = CycleResult.skipped(trigger, "cycle already in flight")
            else:
                try:
                    result = job()
                except Exception as e:
                    # ObError never reaches here; this is a bug in a job.
                    logger.exception(f"LOOP ERROR {self.vault_path.name} ({trigger})")
                    result = CycleResult(
                        trigger=trigger,
                        outcome=CycleOutcome.ABORTED,
                        state=CycleState.ABORTED,
                        error=str(e),
                    )

        with self._lock:
            self.results.append(result)
        return result

    def _spawn(self, trigger: str, job: Callable[[], CycleResult]) -> threading.Thread:
        def work() -> None:
            try:
                self.run_guarded(trigger, job)
            finally:
                with self._lock:
                    self._workers.discard(threading.current_thread())

        worker = threading.Thread(target=work, name=f"ob-{trigger}", daemon=True)
        with self._lock:
            self._workers.add(worker)
        worker.start()
        return worker

    def _timer_loop(
        self, trigger: str, interval: float, job: Callable[[], CycleResult]
    ) -> None:
        while not self._stop_event.wait(interval):
            self._spawn(trigger, job)

    # --- Triggers ---

    def fire_settle(self) -> threading.Thread:
        return self._spawn("settle", self.engine.settle)

    def fire_reconcile(self) -> threading.Thread:
        return self._spawn("reconcile", self.engine.run_cycle)

    def trigger_manual(self) -> CycleResult:
        """Runs a manual sync (threshold 0) in the calling thread."""
        return self.run_guarded("manual", self.engine.sync_now)

    def trigger_squash(self, count: int) -> CycleResult:
        """Runs an on-demand history compaction in the calling thread."""
        if count < 1:
            raise ValueError(f"Commit count must be at least 1, got {count}")
        return self.run_guarded("squash", lambda: self.engine.squash_history(count))

    # --- Lifecycle ---

    def start(self) -> None:
        """Runs an immediate full cycle and starts both periodic timers."""
        self._stop_event.clear()
        logger.info(
            f"Started sync operations for {self.vault_path} "
            f"(settle every {self.settle_interval}s, "
            f"reconcile every {self.reconcile_interval}s)."
        )
        self._spawn("startup", self.engine.run_cycle)

        timers = [
            ("settle", self.settle_interval, self.engine.settle),
            ("reconcile", self.reconcile_interval, self.engine.run_cycle),
        ]
        for trigger, interval, job in timers:
            timer = threading.Thread(
                target=self._timer_loop,
                args=(trigger, interval, job),
                name=f"ob-timer-{trigger}",
                daemon=True,
            )
            self._timers.append(timer)
            timer.start()

    def wait_idle(self, timeout: float | None = None) -> None:
        """Blocks until every worker spawned so far has finished."""
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    def stop(self, timeout: float | None = None) -> None:
        """Stops the timers and joins in-flight cycles."""
        self._stop_event.set()
        for timer in self._timers:
            timer.join(timeout)
        self._timers.clear()
        self.wait_idle(timeout)
        logger.info(f"Stopped sync operations for {self.vault_path}.")

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._timers)
