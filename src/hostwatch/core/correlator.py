"""Sliding-window correlation of remote-desktop logon events."""

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import MappingProxyType

from .dispatcher import NotificationDispatcher
from .events import (
    LoginEvent,
    LoginEventKind,
    LoginNotification,
    NotificationKind,
    Severity,
)

logger = logging.getLogger(__name__)


@dataclass
class AttemptCounter:
    """Failed attempts seen for one source/user pair."""

    count: int
    last_seen: datetime


class ThreatLevel(str, Enum):
    CRITICAL = "critical"
    SUSPICIOUS = "suspicious"
    NORMAL = "normal"


class LoginCorrelator:
    """
    Count failed logons per (source, user) and escalate past a threshold.

    Counters live in a private mapping guarded by a single lock. A counter
    disappears only through a successful logon for the same key or through
    sweep() once it is older than the time window.
    """

    def __init__(
        self,
        max_failed_attempts: int = 5,
        time_window: timedelta = timedelta(minutes=15),
        dispatcher: NotificationDispatcher | None = None,
        sweep_interval: float = 1.0,
    ):
        """
        Initialize the correlator.

        Args:
            max_failed_attempts: Count at which escalations start
            time_window: Age after which an idle counter is discarded
            dispatcher: Where notifications are delivered
            sweep_interval: Seconds between background sweeps
        """
        self._lock = threading.Lock()
        self._counters: dict[str, AttemptCounter] = {}
        self._max_failed_attempts = self._check_threshold(max_failed_attempts)
        self._time_window = self._check_window(time_window)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.sweep_interval = sweep_interval
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    @staticmethod
    def _check_threshold(value: int) -> int:
        if value < 1:
            raise ValueError(f"max_failed_attempts must be >= 1, got {value}")
        return value

    @staticmethod
    def _check_window(value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError(f"time_window must be positive, got {value}")
        return value

    @property
    def max_failed_attempts(self) -> int:
        with self._lock:
            return self._max_failed_attempts

    @max_failed_attempts.setter
    def max_failed_attempts(self, value: int) -> None:
        value = self._check_threshold(value)
        with self._lock:
            self._max_failed_attempts = value
        logger.info("Escalation threshold set to %d", value)

    @property
    def time_window(self) -> timedelta:
        with self._lock:
            return self._time_window

    @time_window.setter
    def time_window(self, value: timedelta) -> None:
        value = self._check_window(value)
        with self._lock:
            self._time_window = value
        logger.info("Correlation window set to %s", value)

    def record_event(self, event: LoginEvent) -> list[LoginNotification]:
        """
        Record a logon event and deliver the resulting notifications.

        Args:
            event: The normalized logon event

        Returns:
            The per-event notification, followed by an escalation when the
            failed-attempt count for the key reached the threshold
        """
        key = event.attempt_key

        if event.kind is LoginEventKind.FAILED_LOGIN:
            with self._lock:
                counter = self._counters.get(key)
                if counter is None:
                    counter = AttemptCounter(count=0, last_seen=event.timestamp)
                    self._counters[key] = counter
                counter.count += 1
                counter.last_seen = event.timestamp
                count = counter.count
                escalate = count >= self._max_failed_attempts

            notifications = [
                LoginNotification(
                    kind=NotificationKind.LOGIN_EVENT, key=key, count=count, event=event
                )
            ]
            logger.warning(
                f"Failed login: {event.username} from {event.source_ip} "
                f"(attempt #{count})"
            )
            self.dispatcher.failed_login(event)

            if escalate:
                notifications.append(
                    LoginNotification(
                        kind=NotificationKind.ESCALATION,
                        key=key,
                        count=count,
                        event=event,
                    )
                )
                self.dispatcher.log(
                    f"SUSPICIOUS ACTIVITY: {count} failed logins for "
                    f"{event.username} from {event.source_ip}",
                    Severity.SECURITY,
                    logger,
                )
                self.dispatcher.suspicious_activity(key, count)

            return notifications

        if event.kind is LoginEventKind.SUCCESSFUL_LOGIN:
            with self._lock:
                forgiven = self._counters.pop(key, None)

            if forgiven is not None:
                logger.info(
                    "Successful login for %s cleared %d failed attempts",
                    key,
                    forgiven.count,
                )
            self.dispatcher.log(
                f"Successful login: {event.username} from {event.source_ip}",
                Severity.SUCCESS,
                logger,
            )
        else:
            logger.debug(
                "%s: %s from %s", event.kind.value, event.username, event.source_ip
            )

        self.dispatcher.failed_login(event)
        return [
            LoginNotification(kind=NotificationKind.LOGIN_EVENT, key=key, event=event)
        ]

    def sweep(self, now: datetime | None = None) -> list[str]:
        """
        Remove counters whose last attempt is older than the time window.

        A counter last seen exactly at the window boundary is kept.

        Returns:
            Keys that were removed
        """
        if now is None:
            now = datetime.now(UTC)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        with self._lock:
            cutoff = now - self._time_window
            stale = [
                key
                for key, counter in self._counters.items()
                if counter.last_seen < cutoff
            ]
            for key in stale:
                del self._counters[key]

        for key in stale:
            logger.debug(f"Expired failed-attempt counter: {key}")
        return stale

    def snapshot(self) -> Mapping[str, int]:
        """Return a read-only copy of the current counts."""
        with self._lock:
            counts = {key: counter.count for key, counter in self._counters.items()}
        return MappingProxyType(counts)

    def grade(self, count: int) -> ThreatLevel:
        """Grade a failed-attempt count against the current threshold."""
        threshold = self.max_failed_attempts
        if count >= threshold:
            return ThreatLevel.CRITICAL
        if count >= threshold // 2:
            return ThreatLevel.SUSPICIOUS
        return ThreatLevel.NORMAL

    def threat_report(self) -> list[tuple[str, int, ThreatLevel]]:
        """Graded counters, highest count first."""
        counts = self.snapshot()
        ordered = sorted(counts.items(), key=lambda item: item[1], reverse=True)
        return [(key, count, self.grade(count)) for key, count in ordered]

    def active_threats(self) -> int:
        return sum(
            1 for _, _, level in self.threat_report() if level is ThreatLevel.CRITICAL
        )

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def start(self) -> None:
        """Start sweeping stale counters on a background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="login-correlator-sweep", daemon=True
        )
        self._sweeper.start()
        self.dispatcher.log("Login correlator started", Severity.INFO, logger)

    def stop(self) -> None:
        if not self.running:
            return
        self._stop_event.set()
        self._sweeper.join(timeout=5)
        self._sweeper = None
        self.dispatcher.log("Login correlator stopped", Severity.WARNING, logger)

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Counter sweep failed: {e}", exc_info=True)
