"""
Background scheduling for portfolio_engine

MonitoringLoop runs a task on a fixed interval on a daemon thread. The
sleep is an Event.wait(), so stop() wakes the thread immediately; a cycle
that is already running is allowed to finish.

fan_out() evaluates independent items on a thread pool and waits for all
of them. One item's exception is logged and reported, never propagated.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .log import get_logger, log_message
from .metrics import PrometheusExporter, MetricNames


def fan_out(
    items: Iterable[Tuple[str, Any]],
    fn: Callable[[Any], Any],
    max_workers: int = 8,
    logger: Optional[logging.Logger] = None,
    prefix: str = "fan_out"
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Run fn(item) for every (key, item) pair concurrently.

    Returns:
        Tuple of (results by key, error messages by key)
    """
    logger = get_logger("scheduler", logger)
    items = list(items)
    results: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    if not items:
        return results, errors

    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=prefix) as pool:
        futures = {pool.submit(fn, item): key for key, item in items}
        for future in as_completed(futures):
            key = futures[future]
            try:
                results[key] = future.result()
            except Exception as e:
                errors[key] = str(e)
                log_message(logger, prefix, f"evaluation of {key} failed: {e}", "error")
    return results, errors


class MonitoringLoop:
    """
    Fixed-interval background runner.

    Usage:
        loop = MonitoringLoop("rebalance-monitor", run_cycle, 300)
        loop.start()
        ...
        loop.stop()
    """

    def __init__(
        self,
        name: str,
        task: Callable[[], Any],
        interval_seconds: float,
        initial_delay: float = 0.0,
        metrics: Optional[PrometheusExporter] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.name = name
        self.task = task
        self.interval_seconds = interval_seconds
        self.initial_delay = initial_delay
        self.metrics = metrics
        self.logger = get_logger("scheduler", logger)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.cycles_completed = 0
        self.last_run: Optional[float] = None

    def log(self, msg: str, level: str = "info") -> None:
        log_message(self.logger, f"MonitoringLoop[{self.name}]", msg, level)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        with self._lock:
            if self.is_running():
                self.log("already running")
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
            self._thread.start()
        self.log(f"started (interval {self.interval_seconds}s)")
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loop to exit.

        An in-flight cycle completes; pass a timeout to wait for it.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is not None and timeout is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self.log("stop requested")

    def run_once(self) -> Any:
        """Run a single cycle on the calling thread."""
        result = self.task()
        self.cycles_completed += 1
        self.last_run = time.time()
        if self.metrics:
            self.metrics.set_gauge(
                MetricNames.LAST_CYCLE_TIMESTAMP,
                int(self.last_run),
                {"task": self.name}
            )
        return result

    def _run(self) -> None:
        stop_event = self._stop_event
        if self.initial_delay and stop_event.wait(self.initial_delay):
            self.log("cancelled during startup delay")
            return

        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                self.log(f"cycle failed: {e}", level="error")

            # Interruptible sleep: wait for timeout OR stop signal
            if stop_event.wait(self.interval_seconds):
                self.log("stopping due to stop signal")
                break
