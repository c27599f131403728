"""Scheduled license re-verification and task failure tracking.

:class:`LicenseScheduler` runs three named tasks on independent
fixed-interval background threads:

1. ``daily_license_check`` -- full sweep via :meth:`LicenseService.check_licenses`
2. ``retry_failed_checks`` -- re-check licenses whose last sweep failed
3. ``expiration_report`` -- report licenses that expire soon

A task that raises is caught at the task boundary and recorded in a
:class:`FailureTracker`.  Consecutive failures past the configured
threshold escalate operator alerts; the next success clears the entry.

Lifecycle::

    scheduler = LicenseScheduler(service, FailureTracker(notifier))
    scheduler.start()   # launches one thread per task
    ...
    scheduler.stop()    # stops and joins every timer
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from edulicense.events import EventBus, EventType
from edulicense.models import format_timestamp, utcnow
from edulicense.notifications import AlertSeverity, NotificationSink
from edulicense.service import LicenseService

logger = logging.getLogger(__name__)

DAILY_LICENSE_CHECK = "daily_license_check"
RETRY_FAILED_CHECKS = "retry_failed_checks"
EXPIRATION_REPORT = "expiration_report"

_DEFAULT_INTERVALS: dict[str, float] = {
    DAILY_LICENSE_CHECK: 86400.0,
    RETRY_FAILED_CHECKS: 14400.0,
    EXPIRATION_REPORT: 604800.0,
}


@dataclass
class FailedTask:
    """Consecutive-failure record for one named task."""

    task_name: str
    fail_count: int
    last_error: str
    last_attempt: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "fail_count": self.fail_count,
            "last_error": self.last_error,
            "last_attempt": format_timestamp(self.last_attempt),
        }


class FailureTracker:
    """Counts consecutive failures per task name and escalates alerts.

    Every failure with ``fail_count >= threshold`` sends a MEDIUM alert;
    from ``2 * threshold`` on the alert is HIGH.  Alerts are not
    deduplicated.  The failure map is guarded by a lock and alerts are
    delivered after it is released.
    """

    def __init__(
        self,
        notifier: NotificationSink,
        threshold: int = 3,
        event_bus: EventBus | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self._notifier = notifier
        self._threshold = threshold
        self._event_bus = event_bus
        self._failed: dict[str, FailedTask] = {}
        self._lock = threading.Lock()

    @property
    def threshold(self) -> int:
        return self._threshold

    def _severity_for(self, fail_count: int) -> AlertSeverity | None:
        if fail_count >= self._threshold * 2:
            return AlertSeverity.HIGH
        if fail_count >= self._threshold:
            return AlertSeverity.MEDIUM
        return None

    def record_failure(self, task_name: str, error: BaseException | str) -> FailedTask:
        """Record one failure of *task_name* and alert if past the threshold."""
        message = str(error)
        with self._lock:
            entry = self._failed.get(task_name)
            if entry is None:
                entry = FailedTask(task_name, 0, message, utcnow())
                self._failed[task_name] = entry
            entry.fail_count += 1
            entry.last_error = message
            entry.last_attempt = utcnow()
            snapshot = FailedTask(entry.task_name, entry.fail_count, entry.last_error, entry.last_attempt)

        logger.error("Task %s failed (%d consecutive): %s", task_name, snapshot.fail_count, message)
        self._publish(EventType.TASK_FAILED, snapshot.to_dict())

        severity = self._severity_for(snapshot.fail_count)
        if severity is not None:
            alert = f"Task {task_name} has failed {snapshot.fail_count} times. Last error: {message}"
            self._notifier.send_admin_alert(alert, severity)
            self._publish(
                EventType.ALERT_SENT,
                {"task_name": task_name, "severity": severity.value, "message": alert},
            )
        return snapshot

    def record_success(self, task_name: str) -> bool:
        """Clear the failure entry for *task_name*.  Returns ``True`` if one existed."""
        with self._lock:
            entry = self._failed.pop(task_name, None)
        if entry is None:
            return False
        logger.info("Task %s recovered successfully after %d failure(s)", task_name, entry.fail_count)
        self._publish(EventType.TASK_RECOVERED, {"task_name": task_name, "fail_count": entry.fail_count})
        return True

    def get(self, task_name: str) -> FailedTask | None:
        with self._lock:
            entry = self._failed.get(task_name)
            if entry is None:
                return None
            return FailedTask(entry.task_name, entry.fail_count, entry.last_error, entry.last_attempt)

    def failed_tasks(self) -> list[FailedTask]:
        """Snapshot of every currently failing task, by name."""
        with self._lock:
            return [
                FailedTask(e.task_name, e.fail_count, e.last_error, e.last_attempt)
                for _, e in sorted(self._failed.items())
            ]

    def clear(self) -> None:
        with self._lock:
            self._failed.clear()

    def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event_type, data, source="scheduler")


class _ScheduledTask:
    """Bookkeeping for one named task."""

    def __init__(self, name: str, func: Callable[[], Any], interval: float) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self.run_lock = threading.Lock()
        self.thread: threading.Thread | None = None
        self.last_run: datetime | None = None
        self.last_result: Any = None


class LicenseScheduler:
    """Runs the license maintenance tasks on fixed-interval timers.

    :param service: Service whose sweeps are scheduled.
    :param tracker: Failure tracker receiving task outcomes.
    :param intervals: Seconds between runs, by task name.  Missing names
        use the defaults (daily sweep, 4-hourly retry, weekly report).
    :param run_on_start: Run every task once as soon as its timer starts.
    """

    def __init__(
        self,
        service: LicenseService,
        tracker: FailureTracker,
        *,
        intervals: dict[str, float] | None = None,
        run_on_start: bool = False,
    ) -> None:
        self._service = service
        self._tracker = tracker
        self._run_on_start = run_on_start
        merged = dict(_DEFAULT_INTERVALS)
        merged.update(intervals or {})
        funcs: dict[str, Callable[[], Any]] = {
            DAILY_LICENSE_CHECK: self._daily_license_check,
            RETRY_FAILED_CHECKS: self._retry_failed_checks,
            EXPIRATION_REPORT: self._expiration_report,
        }
        self._tasks: dict[str, _ScheduledTask] = {
            name: _ScheduledTask(name, func, float(merged[name])) for name, func in funcs.items()
        }
        self._stop_event = threading.Event()
        self._running = False
        self._lock = threading.Lock()
        # Threads that outlived the join in the last stop().
        self._lingering: list[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        """Whether the timer threads are running."""
        return self._running

    @property
    def tracker(self) -> FailureTracker:
        return self._tracker

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    # ------------------------------------------------------------------
    # Task bodies
    # ------------------------------------------------------------------

    def _daily_license_check(self) -> dict[str, Any]:
        return self._service.check_licenses().to_dict()

    def _retry_failed_checks(self) -> int:
        return self._service.retry_failed_checks()

    def _expiration_report(self) -> dict[str, Any]:
        return self._service.expiration_report()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_task(self, name: str) -> bool:
        """Run one named task now.

        Failures are logged and recorded in the tracker, never raised.
        Returns ``True`` on success.  A run that would overlap a run of the
        same task already in progress is skipped and returns ``False``.

        :raises KeyError: *name* is not a known task.
        """
        task = self._tasks[name]
        if not task.run_lock.acquire(blocking=False):
            logger.warning("Task %s is already running, skipping this run", name)
            return False
        try:
            task.last_run = utcnow()
            try:
                task.last_result = task.func()
            except Exception as exc:
                logger.exception("Scheduled task %s failed", name)
                self._tracker.record_failure(name, exc)
                return False
            self._tracker.record_success(name)
            logger.debug("Scheduled task %s completed", name)
            return True
        finally:
            task.run_lock.release()

    def manual_retry_failed_tasks(self) -> dict[str, bool]:
        """Re-run every task currently in the failure map.

        A failure is recorded like a scheduled one and does not stop the
        remaining retries.  Returns ``{task_name: succeeded}``.
        """
        results: dict[str, bool] = {}
        for entry in self._tracker.failed_tasks():
            if entry.task_name not in self._tasks:
                logger.warning("No task registered for failed task name %s", entry.task_name)
                continue
            logger.info("Manually retrying task %s (%d failure(s))", entry.task_name, entry.fail_count)
            results[entry.task_name] = self.run_task(entry.task_name)
        return results

    def _run_loop(self, task: _ScheduledTask) -> None:
        """Timer loop for one task."""
        if self._run_on_start and not self._stop_event.is_set():
            self.run_task(task.name)
        while not self._stop_event.wait(task.interval):
            self.run_task(task.name)

    def start(self) -> None:
        """Start one daemon timer thread per task.

        :raises RuntimeError: A thread from a previous run is still alive,
            for example a task that ignored the last :meth:`stop` timeout.
        """
        with self._lock:
            if self._running:
                return
            self._lingering = [t for t in self._lingering if t.is_alive()]
            if self._lingering:
                names = ", ".join(t.name for t in self._lingering)
                raise RuntimeError(f"Cannot restart scheduler while previous threads are alive: {names}")
            self._running = True
            self._stop_event.clear()
            for task in self._tasks.values():
                task.thread = threading.Thread(
                    target=self._run_loop,
                    args=(task,),
                    name=f"edulicense-{task.name}",
                    daemon=True,
                )
                task.thread.start()
        logger.info(
            "License scheduler started (%s)",
            ", ".join(f"{t.name} every {t.interval:.0f}s" for t in self._tasks.values()),
        )

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop every timer and join its thread."""
        with self._lock:
            self._running = False
            self._stop_event.set()
            threads = [t.thread for t in self._tasks.values() if t.thread is not None]
            for task in self._tasks.values():
                task.thread = None
        for thread in threads:
            thread.join(timeout=timeout)
        with self._lock:
            lingering = [t for t in self._lingering + threads if t.is_alive()]
            self._lingering = lingering
        if lingering:
            logger.warning(
                "License scheduler stopped with %d thread(s) still running: %s",
                len(lingering),
                ", ".join(t.name for t in lingering),
            )
            return
        logger.info("License scheduler stopped")

    def status(self) -> list[dict[str, Any]]:
        """Per-task summary for operators."""
        out = []
        for task in self._tasks.values():
            failed = self._tracker.get(task.name)
            if task.last_run is None:
                state = "never_run"
            elif failed is not None:
                state = "failing"
            else:
                state = "ok"
            out.append(
                {
                    "name": task.name,
                    "interval": task.interval,
                    "last_run": format_timestamp(task.last_run),
                    "status": state,
                    "fail_count": failed.fail_count if failed is not None else 0,
                }
            )
        return out
