"""Tests for the login correlator."""

import time
from datetime import UTC, datetime, timedelta

import pytest

from hostwatch.core.correlator import LoginCorrelator, ThreatLevel
from hostwatch.core.events import (
    LoginEvent,
    LoginEventKind,
    NotificationKind,
    Severity,
)

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


def make_event(
    kind: LoginEventKind = LoginEventKind.FAILED_LOGIN,
    source_ip: str | None = "10.0.0.5",
    username: str | None = "admin",
    at: datetime = T0,
) -> LoginEvent:
    return LoginEvent(
        timestamp=at,
        username=username,
        source_ip=source_ip,
        computer="WS01",
        kind=kind,
    )


@pytest.fixture
def correlator(dispatcher):
    return LoginCorrelator(max_failed_attempts=3, dispatcher=dispatcher)


def test_three_failures_escalate_and_success_resets(correlator, sink):
    results = [
        correlator.record_event(make_event(at=T0 + timedelta(seconds=i * 20)))
        for i in range(3)
    ]

    assert [len(r) for r in results] == [1, 1, 2]
    escalation = results[2][1]
    assert escalation.kind is NotificationKind.ESCALATION
    assert escalation.count == 3
    assert escalation.key == "10.0.0.5_admin"
    assert sink.suspicious == [("10.0.0.5_admin", 3)]

    correlator.record_event(make_event(LoginEventKind.SUCCESSFUL_LOGIN))

    assert "10.0.0.5_admin" not in correlator.snapshot()


def test_snapshot_counts_failures_since_last_success(correlator):
    for _ in range(2):
        correlator.record_event(make_event())
    correlator.record_event(make_event(LoginEventKind.SUCCESSFUL_LOGIN))
    for _ in range(2):
        correlator.record_event(make_event())

    assert correlator.snapshot()["10.0.0.5_admin"] == 2


def test_every_failure_past_threshold_escalates(correlator, sink):
    for _ in range(5):
        correlator.record_event(make_event())

    assert [count for _, count in sink.suspicious] == [3, 4, 5]


def test_lowering_threshold_escalates_on_next_failure(dispatcher, sink):
    correlator = LoginCorrelator(max_failed_attempts=10, dispatcher=dispatcher)
    for _ in range(4):
        correlator.record_event(make_event())
    assert sink.suspicious == []

    correlator.max_failed_attempts = 2
    notifications = correlator.record_event(make_event())

    assert notifications[-1].kind is NotificationKind.ESCALATION
    assert sink.suspicious == [("10.0.0.5_admin", 5)]


def test_keys_are_independent(correlator):
    correlator.record_event(make_event(username="admin"))
    correlator.record_event(make_event(username="root"))
    correlator.record_event(make_event(source_ip="10.0.0.6"))

    assert dict(correlator.snapshot()) == {
        "10.0.0.5_admin": 1,
        "10.0.0.5_root": 1,
        "10.0.0.6_admin": 1,
    }


def test_missing_fields_share_unknown_bucket(correlator):
    correlator.record_event(make_event(source_ip=None, username=""))
    correlator.record_event(make_event(source_ip="-", username=None))

    assert correlator.snapshot()["Unknown_Unknown"] == 2


def test_logoff_and_session_end_do_not_touch_counters(correlator, sink):
    correlator.record_event(make_event())
    correlator.record_event(make_event(LoginEventKind.LOGOFF_INITIATED))
    correlator.record_event(make_event(LoginEventKind.SESSION_ENDED))

    assert correlator.snapshot()["10.0.0.5_admin"] == 1
    assert len(sink.failed_logins) == 3


def test_success_notification_is_logged(correlator, sink):
    notifications = correlator.record_event(
        make_event(LoginEventKind.SUCCESSFUL_LOGIN)
    )

    assert [n.kind for n in notifications] == [NotificationKind.LOGIN_EVENT]
    assert any(level is Severity.SUCCESS for _, level in sink.messages)


def test_sweep_boundary_is_inclusive(correlator):
    window = correlator.time_window
    correlator.record_event(make_event(username="old", at=T0))
    correlator.record_event(
        make_event(username="edge", at=T0 + timedelta(seconds=1))
    )
    correlator.record_event(
        make_event(username="fresh", at=T0 + timedelta(minutes=5))
    )

    removed = correlator.sweep(T0 + timedelta(seconds=1) + window)

    assert removed == ["10.0.0.5_old"]
    assert set(correlator.snapshot()) == {"10.0.0.5_edge", "10.0.0.5_fresh"}


def test_expired_counter_starts_over(correlator, sink):
    correlator.record_event(make_event(at=T0))
    correlator.record_event(make_event(at=T0))
    correlator.sweep(T0 + timedelta(hours=1))

    correlator.record_event(make_event(at=T0 + timedelta(hours=1)))

    assert correlator.snapshot()["10.0.0.5_admin"] == 1
    assert sink.suspicious == []


def test_window_change_applies_to_next_sweep(correlator):
    correlator.record_event(make_event(at=T0))
    correlator.time_window = timedelta(minutes=1)

    assert correlator.sweep(T0 + timedelta(minutes=2)) == ["10.0.0.5_admin"]


def test_snapshot_is_a_copy(correlator):
    correlator.record_event(make_event())
    snapshot = correlator.snapshot()

    correlator.record_event(make_event())

    assert snapshot["10.0.0.5_admin"] == 1
    with pytest.raises(TypeError):
        snapshot["10.0.0.5_admin"] = 0


@pytest.mark.parametrize("value", [0, -1])
def test_invalid_threshold_rejected(value):
    with pytest.raises(ValueError):
        LoginCorrelator(max_failed_attempts=value)


def test_invalid_window_rejected(correlator):
    with pytest.raises(ValueError):
        correlator.time_window = timedelta(0)


def test_threat_report_grades_counts(dispatcher):
    correlator = LoginCorrelator(max_failed_attempts=4, dispatcher=dispatcher)
    for _ in range(4):
        correlator.record_event(make_event(username="a"))
    for _ in range(2):
        correlator.record_event(make_event(username="b"))
    correlator.record_event(make_event(username="c"))

    report = correlator.threat_report()

    assert report == [
        ("10.0.0.5_a", 4, ThreatLevel.CRITICAL),
        ("10.0.0.5_b", 2, ThreatLevel.SUSPICIOUS),
        ("10.0.0.5_c", 1, ThreatLevel.NORMAL),
    ]
    assert correlator.active_threats() == 1


def test_failing_sink_does_not_stop_counting(correlator, dispatcher, sink):
    class BrokenSink(type(sink)):
        def on_failed_login(self, event):
            raise RuntimeError("boom")

    dispatcher.register_sink(BrokenSink())
    for _ in range(3):
        correlator.record_event(make_event())

    assert correlator.snapshot()["10.0.0.5_admin"] == 3
    assert len(sink.failed_logins) == 3


def test_background_sweeper_expires_counters(dispatcher):
    correlator = LoginCorrelator(
        time_window=timedelta(seconds=1), dispatcher=dispatcher, sweep_interval=0.05
    )
    correlator.record_event(make_event(at=datetime.now(UTC) - timedelta(minutes=1)))

    correlator.start()
    try:
        assert correlator.running
        deadline = time.monotonic() + 2
        while correlator.snapshot() and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        correlator.stop()

    assert dict(correlator.snapshot()) == {}
    assert not correlator.running
