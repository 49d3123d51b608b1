"""
Scheduler for the binning engine.

Validates the binning configuration, applies it to the engine, and then
invokes :meth:`BinningEngine.on_trigger` repeatedly from one or more
daemon threads.  An activation that accomplishes nothing makes its
thread back off for ``yield_duration_ms``; otherwise the next activation
starts immediately.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from binflow.binning.engine import BinningEngine, TriggerResult
from binflow.binning.policy import AdditionalValidation, BinningConfig, BinPolicy
from binflow.config import get_settings
from binflow.exceptions import BinningError

logger = logging.getLogger(__name__)


class BinningScheduler:
    """Background driver for a :class:`BinningEngine`.

    Args:
        engine: The engine to drive.
        config: Binning configuration validated on ``start()``.  Read
            from settings when omitted.
        yield_duration_ms: Back-off after an idle activation.
        concurrent_tasks: Number of threads running activations.
        additional_validation: Extra validation hook passed to
            :meth:`BinPolicy.from_config`.
    """

    def __init__(
        self,
        engine: BinningEngine,
        config: Optional[BinningConfig] = None,
        yield_duration_ms: Optional[int] = None,
        concurrent_tasks: Optional[int] = None,
        additional_validation: Optional[AdditionalValidation] = None,
    ) -> None:
        settings = get_settings()
        self._engine = engine
        self._config = config or BinningConfig.from_settings(settings.binning)
        if yield_duration_ms is None:
            yield_duration_ms = settings.scheduler.yield_duration_ms
        if concurrent_tasks is None:
            concurrent_tasks = settings.scheduler.concurrent_tasks
        if concurrent_tasks <= 0:
            raise BinningError(
                f"concurrent_tasks must be positive, got {concurrent_tasks}"
            )
        self._yield_s = yield_duration_ms / 1000.0
        self._concurrent_tasks = concurrent_tasks
        self._additional_validation = additional_validation
        self._stop_timeout = settings.scheduler.stop_timeout_seconds

        self._threads: List[threading.Thread] = []
        self._running = threading.Event()
        self._wakeup = threading.Event()
        self._lock = threading.Lock()
        self._live_threads = 0
        self._reset_pending = False

        # Counters
        self._stats_lock = threading.Lock()
        self._activations: int = 0
        self._idle_activations: int = 0
        self._activation_errors: int = 0

        logger.info(
            "BinningScheduler initialised",
            extra={
                "yield_duration_ms": yield_duration_ms,
                "concurrent_tasks": concurrent_tasks,
            },
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Validate the configuration and start the activation threads.

        Raises:
            BinningError: If the scheduler is already running, or
                activations from a previous run have not finished yet.
            ConfigurationError: If the binning configuration is invalid.
        """
        with self._lock:
            if self._running.is_set():
                raise BinningError("BinningScheduler is already running")
            if self._live_threads:
                raise BinningError(
                    f"{self._live_threads} activation thread(s) from the previous "
                    "run are still finishing"
                )

            policy = BinPolicy.from_config(self._config, self._additional_validation)
            self._engine.on_scheduled(policy)

            self._wakeup.clear()
            self._running.set()
            self._live_threads = self._concurrent_tasks
            self._threads = [
                threading.Thread(
                    target=self._run_loop,
                    name=f"binflow-scheduler-{i}",
                    daemon=True,
                )
                for i in range(self._concurrent_tasks)
            ]
            for thread in self._threads:
                thread.start()
            logger.info("BinningScheduler started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the scheduler.

        Signals running activations to stop between intake chunks, waits
        for the threads, then purges open bins and rolls back any bins
        still waiting to be processed.  If a thread outlives *timeout*
        the reset is left to the last thread to exit.

        Args:
            timeout: Maximum seconds to wait for each thread.
        """
        with self._lock:
            if not self._running.is_set():
                return
            self._running.clear()
            self._wakeup.set()

        wait = self._stop_timeout if timeout is None else timeout
        for thread in self._threads:
            thread.join(timeout=wait)
        self._threads = []

        with self._lock:
            if self._live_threads:
                self._reset_pending = True
                logger.warning(
                    "Activations still running after stop timeout; deferring reset",
                    extra={"live_threads": self._live_threads},
                )
                return

        self._engine.reset_state()
        logger.info("BinningScheduler stopped")

    @property
    def is_running(self) -> bool:
        """Whether activations are being scheduled."""
        return self._running.is_set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def trigger_once(self) -> TriggerResult:
        """Run a single activation on the calling thread."""
        result = self._engine.on_trigger()
        self._record(result)
        return result

    def stats(self) -> Dict[str, Any]:
        """Return scheduler and engine statistics."""
        with self._stats_lock:
            stats: Dict[str, Any] = {
                "running": self._running.is_set(),
                "activations": self._activations,
                "idle_activations": self._idle_activations,
                "activation_errors": self._activation_errors,
            }
        stats.update(self._engine.stats())
        return stats

    # ------------------------------------------------------------------
    # Internal loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Activation loop running in a daemon thread."""
        logger.debug("Scheduler loop started")
        try:
            while self._running.is_set():
                try:
                    result = self._engine.on_trigger(self._running.is_set)
                except Exception as exc:
                    logger.error(
                        "Activation failed; yielding",
                        extra={"error": str(exc)},
                        exc_info=True,
                    )
                    with self._stats_lock:
                        self._activation_errors += 1
                    self._wakeup.wait(self._yield_s)
                    continue

                self._record(result)
                if result.should_yield:
                    self._wakeup.wait(self._yield_s)
        finally:
            self._thread_exited()
        logger.debug("Scheduler loop exited")

    def _thread_exited(self) -> None:
        """Run a reset deferred by ``stop()`` once the last thread is gone."""
        with self._lock:
            self._live_threads -= 1
            reset = self._live_threads == 0 and self._reset_pending
            if reset:
                self._reset_pending = False
        if reset:
            self._engine.reset_state()
            logger.info("BinningScheduler stopped after deferred reset")

    def _record(self, result: TriggerResult) -> None:
        with self._stats_lock:
            self._activations += 1
            if result.should_yield:
                self._idle_activations += 1
