"""
test_notifications.py - Unit tests for fire-and-forget side effects

Tests:
- DetachedTaskRunner: runs tasks, logs failures, drain with timeout, pool size
- NotificationDispatcher: recipients, notifier wiring
- A failing notifier never affects the operation that triggered it
"""

import threading

from structlog.testing import capture_logs

from freight_ledger import (
    DetachedTaskRunner, LoadStatus, LoggingNotifier, NotificationDispatcher, Notifier,
    RecordingNotifier, update_load_status,
)
from freight_ledger.notifications import dispatch

from tests.scenario import SHIPPER


class FailingNotifier:

    def notify(self, recipient_id, notification_type, payload):
        raise ConnectionError("SMS gateway down")


class TestDetachedTaskRunner:

    def test_runs_task(self):
        runner = DetachedTaskRunner()
        done = []
        future = runner.spawn(done.append, "ran")
        assert runner.drain(timeout=5)
        assert future.result() is None
        assert done == ["ran"]
        runner.shutdown()

    def test_failure_is_logged_not_raised(self):
        runner = DetachedTaskRunner()

        def boom():
            raise RuntimeError("kaboom")

        with capture_logs() as logs:
            runner.spawn(boom, name="boom-task")
            assert runner.drain(timeout=5)
        runner.shutdown()

        [entry] = [e for e in logs if e["event"] == "detached_task_failed"]
        assert entry["task"] == "boom-task"
        assert entry["error"] == "kaboom"
        assert entry["log_level"] == "warning"

    def test_drain_times_out(self):
        runner = DetachedTaskRunner()
        release = threading.Event()
        runner.spawn(release.wait, 5)

        with capture_logs() as logs:
            assert not runner.drain(timeout=0.05)
        assert logs[0]["event"] == "detached_tasks_still_running"

        release.set()
        assert runner.drain(timeout=5)
        runner.shutdown()

    def test_pool_size_from_settings(self, monkeypatch):
        monkeypatch.setenv("FREIGHT_NOTIFICATION_WORKERS", "5")
        runner = DetachedTaskRunner()
        assert runner.max_workers == 5
        runner.shutdown()

        dispatcher = NotificationDispatcher(RecordingNotifier())
        assert dispatcher.runner.max_workers == 5
        dispatcher.runner.shutdown()

    def test_explicit_pool_size_wins(self, monkeypatch):
        monkeypatch.setenv("FREIGHT_NOTIFICATION_WORKERS", "5")
        runner = DetachedTaskRunner(max_workers=1)
        assert runner.max_workers == 1
        runner.shutdown()


class TestDispatcher:

    def test_sends_payload(self, notifications, notifier):
        notifications.dispatch("org-1", "TEST", load_id="l1")
        assert notifications.drain(timeout=5)
        assert notifier.sent == [("org-1", "TEST", {"load_id": "l1"})]

    def test_missing_recipient_is_skipped(self, notifications, notifier):
        assert notifications.dispatch(None, "TEST") is None
        assert notifications.dispatch("", "TEST") is None
        assert notifications.drain(timeout=5)
        assert notifier.sent == []

    def test_helper_without_dispatcher(self):
        dispatch(None, "org-1", "TEST", load_id="l1")

    def test_defaults_to_logging_notifier(self):
        dispatcher = NotificationDispatcher()
        assert isinstance(dispatcher.notifier, LoggingNotifier)
        with capture_logs() as logs:
            dispatcher.dispatch("org-1", "TEST", load_id="l1")
            assert dispatcher.drain(timeout=5)
        dispatcher.runner.shutdown()
        [entry] = [e for e in logs if e["event"] == "notification"]
        assert entry["recipient_id"] == "org-1"
        assert entry["load_id"] == "l1"

    def test_notifier_protocol(self):
        assert isinstance(RecordingNotifier(), Notifier)
        assert isinstance(LoggingNotifier(), Notifier)


class TestFailureIsolation:

    def test_failing_notifier_does_not_undo_status_change(self, market):
        runner = DetachedTaskRunner()
        dispatcher = NotificationDispatcher(FailingNotifier(), runner)

        with capture_logs() as logs:
            result = update_load_status(market.store, market.load.id, LoadStatus.UNPOSTED, SHIPPER,
                                        notifications=dispatcher)
            assert dispatcher.drain(timeout=5)
        runner.shutdown()

        assert result.load.status is LoadStatus.UNPOSTED
        assert market.current_load().status is LoadStatus.UNPOSTED
        failures = [e for e in logs if e["event"] == "detached_task_failed"]
        assert failures and failures[0]["error"] == "SMS gateway down"
