"""
Periodic task scheduler.

Each registered task gets its own timer thread; ticks run on a shared worker
pool. A tick that arrives while the previous run of the same task is still
going is skipped and counted, never queued. Task exceptions are logged and
counted and never stop the timer.

Usage:
    scheduler = Scheduler()
    scheduler.register_periodic_task("notifications-cleanup", 3600, dispatcher.cleanup)
    scheduler.start()
    ...
    scheduler.stop(timeout=10)
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from models import isoformat, utc_from_timestamp
from monitoring.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class TaskStats:
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_started_at: float | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None


@dataclass
class PeriodicTask:
    name: str
    interval: float
    func: Callable[[], Any]
    run_immediately: bool = False
    stats: TaskStats = field(default_factory=TaskStats)
    busy: threading.Lock = field(default_factory=threading.Lock, repr=False)
    thread: threading.Thread | None = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self.busy.locked()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "intervalSeconds": self.interval,
            "running": self.running,
            "runs": self.stats.runs,
            "failures": self.stats.failures,
            "skipped": self.stats.skipped,
            "lastStartedAt": isoformat(utc_from_timestamp(self.stats.last_started_at))
            if self.stats.last_started_at
            else None,
            "lastDurationMs": self.stats.last_duration_ms,
            "lastError": self.stats.last_error,
        }


class Scheduler:
    """Runs registered callables on fixed intervals without overlapping runs."""

    def __init__(self, max_workers: int = 4, clock: Callable[[], float] = time.time):
        self.max_workers = max_workers
        self.clock = clock
        self._tasks: dict[str, PeriodicTask] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def register_periodic_task(
        self,
        name: str,
        interval: float,
        func: Callable[[], Any],
        run_immediately: bool = False,
    ) -> PeriodicTask:
        """
        Register a task. Tasks registered after start() begin immediately.

        Raises:
            ValueError: Duplicate name or non-positive interval
        """
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        with self._lock:
            if name in self._tasks:
                raise ValueError(f"Task {name} is already registered")
            task = PeriodicTask(name, interval, func, run_immediately)
            self._tasks[name] = task
            if self._started:
                self._start_timer(task)
        logger.debug(f"Registered periodic task {name} every {interval}s")
        return task

    def unregister(self, name: str) -> bool:
        """Forget a task; its timer exits on the next stop()."""
        with self._lock:
            return self._tasks.pop(name, None) is not None

    def start(self) -> None:
        with self._lock:
            if self._started:
                logger.warning("Scheduler already running")
                return
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="scheduler"
            )
            self._started = True
            for task in self._tasks.values():
                self._start_timer(task)
        logger.info(f"Scheduler started with {len(self._tasks)} tasks")

    def _start_timer(self, task: PeriodicTask) -> None:
        task.thread = threading.Thread(
            target=self._timer_loop, args=(task,), name=f"timer-{task.name}", daemon=True
        )
        task.thread.start()

    def _timer_loop(self, task: PeriodicTask) -> None:
        if task.run_immediately:
            self._dispatch(task)
        while not self._stop_event.wait(task.interval):
            if self._tasks.get(task.name) is not task:
                return
            self._dispatch(task)

    def _dispatch(self, task: PeriodicTask) -> Future | None:
        """Submit one tick, or skip it when the previous run has not finished."""
        if not task.busy.acquire(blocking=False):
            task.stats.skipped += 1
            metrics.increment("scheduler_ticks_skipped", labels={"task": task.name})
            logger.info(f"Skipping {task.name}: previous run still in progress")
            return None

        executor = self._executor
        if executor is None:
            # Not started: run inline
            future: Future = Future()
            self._run(task)
            future.set_result(None)
            return future
        try:
            future = executor.submit(self._run, task)
        except RuntimeError:
            # Executor shut down between the check and the submit
            task.busy.release()
            return None
        # Ticks cancelled by stop() never reach _run
        future.add_done_callback(lambda f: task.busy.release() if f.cancelled() else None)
        return future

    def _run(self, task: PeriodicTask) -> None:
        started = time.perf_counter()
        task.stats.last_started_at = self.clock()
        try:
            task.func()
            task.stats.last_error = None
        except Exception as e:
            task.stats.failures += 1
            task.stats.last_error = str(e)
            metrics.increment("scheduler_task_failures", labels={"task": task.name})
            logger.exception(f"Periodic task {task.name} failed")
        finally:
            task.stats.runs += 1
            task.stats.last_duration_ms = round((time.perf_counter() - started) * 1000, 2)
            task.busy.release()

    def run_now(self, name: str, wait: bool = True) -> bool:
        """
        Run a task outside its timer.

        Returns:
            False if the task was skipped because it is already running

        Raises:
            KeyError: Unknown task
        """
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(f"Unknown task: {name}")
        future = self._dispatch(task)
        if future is None:
            return False
        if wait:
            future.result()
        return True

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            tasks = list(self._tasks.values())
        return {
            "running": self._started,
            "tasks": {task.name: task.to_dict() for task in tasks},
        }

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the timers, wait for running ticks and drop queued ones."""
        with self._lock:
            if not self._started:
                return
            self._started = False
            self._stop_event.set()
            tasks = list(self._tasks.values())
            executor, self._executor = self._executor, None

        deadline = time.monotonic() + timeout
        for task in tasks:
            if task.thread is not None:
                task.thread.join(timeout=max(0.0, deadline - time.monotonic()))
                task.thread = None
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
        logger.info("Scheduler stopped")
