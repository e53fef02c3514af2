"""Tests for notification fan-out and the shared event models."""

import logging
from datetime import UTC, datetime

from hostwatch.core.dispatcher import EventSink, NotificationDispatcher
from hostwatch.core.events import (
    LoginEvent,
    LoginEventKind,
    NetworkDevice,
    Severity,
    is_unknown,
)


def test_log_reaches_sinks_and_stdlib_logger(dispatcher, sink, caplog):
    with caplog.at_level(logging.WARNING):
        dispatcher.log("intrusion attempt", Severity.SECURITY)

    assert sink.messages == [("intrusion attempt", Severity.SECURITY)]
    assert any(r.message == "intrusion attempt" for r in caplog.records)


def test_failing_sink_is_isolated(sink, caplog):
    class ExplodingSink(EventSink):
        def on_new_device_detected(self, device):
            raise RuntimeError("sink exploded")

    dispatcher = NotificationDispatcher()
    dispatcher.register_sink(ExplodingSink())
    dispatcher.register_sink(sink)

    with caplog.at_level(logging.ERROR):
        dispatcher.new_device(NetworkDevice(ip_address="192.168.1.2"))

    assert len(sink.new_devices) == 1
    assert any("ExplodingSink" in r.message for r in caplog.records)


def test_unregistered_sink_receives_nothing(dispatcher, sink):
    dispatcher.unregister_sink(sink)
    dispatcher.suspicious_activity("1.2.3.4_bob", 9)

    assert sink.suspicious == []


def test_base_sink_ignores_everything():
    dispatcher = NotificationDispatcher()
    dispatcher.register_sink(EventSink())

    dispatcher.device_status_changed(NetworkDevice(ip_address="10.1.1.1"))
    dispatcher.log("hello")


def test_is_unknown_placeholders():
    for value in (None, "", "  ", "-", "unknown", "Unknown", "Unknown device"):
        assert is_unknown(value)
    assert not is_unknown("AA:BB:CC:DD:EE:FF")


def test_login_event_naive_timestamp_is_utc():
    event = LoginEvent(
        timestamp=datetime(2024, 1, 1, 8, 0),
        kind=LoginEventKind.FAILED_LOGIN,
    )

    assert event.timestamp.tzinfo is UTC
    assert event.attempt_key == "Unknown_Unknown"


def test_severity_maps_to_logging_levels():
    assert Severity.SECURITY.logging_level == logging.WARNING
    assert Severity.SUCCESS.logging_level == logging.INFO
    assert Severity.ERROR.logging_level == logging.ERROR
