"""
notifications.py - Fire-and-forget side effects

Notifications (and any other non-critical side effect) run as detached tasks:
they are scheduled after the core transaction commits, never block it, and a
failure is logged rather than propagated to the caller.
"""

from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import structlog

from .config import get_settings


logger = structlog.get_logger(__name__)


# Notification types emitted by the core.
LOAD_STATUS_CHANGED = "LOAD_STATUS_CHANGED"
LOAD_REQUEST_APPROVED = "LOAD_REQUEST_APPROVED"
LOAD_REQUEST_REJECTED = "LOAD_REQUEST_REJECTED"
SERVICE_FEE_DEDUCTED = "SERVICE_FEE_DEDUCTED"
SERVICE_FEE_REFUNDED = "SERVICE_FEE_REFUNDED"
COMMISSION_DEDUCTED = "COMMISSION_DEDUCTED"
SETTLEMENT_COMPLETE = "SETTLEMENT_COMPLETE"
WITHDRAWAL_REQUESTED = "WITHDRAWAL_REQUESTED"
POD_SUBMITTED = "POD_SUBMITTED"
POD_VERIFIED = "POD_VERIFIED"


@runtime_checkable
class Notifier(Protocol):
    """Notification collaborator. recipient_id is a user or organization id."""

    def notify(self, recipient_id: str, notification_type: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes to the log. Default sink when no delivery channel is wired."""

    def notify(self, recipient_id: str, notification_type: str, payload: Dict[str, Any]) -> None:
        logger.info("notification", recipient_id=recipient_id,
                    notification_type=notification_type, **payload)


class RecordingNotifier:
    """Notifier that keeps every call in memory. Used by tests and local tooling."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def notify(self, recipient_id: str, notification_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((recipient_id, notification_type, dict(payload)))

    def of_type(self, notification_type: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [n for n in self.sent if n[1] == notification_type]


class DetachedTaskRunner:
    """
    Runs callables in the background and logs their failures.

    spawn() never raises because of the task itself; the returned Future is
    for callers that want to wait (tests, graceful shutdown). The pool size
    defaults to the notification_workers setting.
    """

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers or get_settings().notification_workers
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                            thread_name_prefix="freight-detached")
        self._outstanding = 0
        self._idle = threading.Condition()

    def spawn(self, fn: Callable[..., Any], *args: Any, name: Optional[str] = None, **kwargs: Any) -> Future:
        task_name = name or getattr(fn, "__name__", repr(fn))
        with self._idle:
            self._outstanding += 1
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(lambda f: self._on_done(task_name, f))
        return future

    def _on_done(self, task_name: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("detached_task_failed", task=task_name,
                           error=str(exc), exc_info=exc)
        with self._idle:
            self._outstanding -= 1
            self._idle.notify_all()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every spawned task has finished and its failure (if any) is logged.

        Returns:
            False if the timeout expired first. Task failures are never re-raised.
        """
        with self._idle:
            finished = self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout)
        if not finished:
            logger.warning("detached_tasks_still_running", timeout=timeout)
        return finished

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class NotificationDispatcher:
    """
    Sends notifications through a Notifier on a DetachedTaskRunner.

    Operations call dispatch() only after their transaction has committed.
    """

    def __init__(self, notifier: Optional[Notifier] = None, runner: Optional[DetachedTaskRunner] = None):
        self.notifier = notifier or LoggingNotifier()
        self.runner = runner or DetachedTaskRunner()

    def dispatch(self, recipient_id: Optional[str], notification_type: str, **payload: Any) -> Optional[Future]:
        if not recipient_id:
            return None
        return self.runner.spawn(
            self.notifier.notify, recipient_id, notification_type, payload,
            name=f"notify:{notification_type}",
        )

    def drain(self, timeout: Optional[float] = None) -> bool:
        return self.runner.drain(timeout)


def dispatch(notifications: Optional[NotificationDispatcher], recipient_id: Optional[str],
             notification_type: str, **payload: Any) -> None:
    """dispatch() on an optional dispatcher; a missing dispatcher means no notifications."""
    if notifications is not None:
        notifications.dispatch(recipient_id, notification_type, **payload)
