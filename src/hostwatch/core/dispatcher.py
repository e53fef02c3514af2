"""Notification fan-out to event sinks."""

import logging
import threading

from .events import LoginEvent, NetworkDevice, Severity

logger = logging.getLogger(__name__)


class EventSink:
    """Receiver of correlator and discovery notifications.

    Methods are called from worker threads, device notifications with the
    device registry locked. Implementations must return quickly and hand
    slow work such as network I/O to another thread or event loop.
    Subclasses override what they need; the defaults ignore the notification.
    """

    def on_failed_login(self, event: LoginEvent) -> None:
        """Called for every recorded logon event, whatever its kind."""

    def on_suspicious_activity(self, key: str, count: int) -> None:
        """Called every time a counter reaches the escalation threshold."""

    def on_new_device_detected(self, device: NetworkDevice) -> None:
        pass

    def on_device_status_changed(self, device: NetworkDevice) -> None:
        pass

    def on_log_message(self, text: str, level: Severity) -> None:
        pass


class NotificationDispatcher:
    """Deliver notifications to all registered sinks.

    Delivery is at-least-once per call and synchronous on the calling thread.
    A failing sink is logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []
        self._lock = threading.Lock()

    def register_sink(self, sink: EventSink) -> None:
        """Register an event sink."""
        with self._lock:
            self._sinks.append(sink)

    def unregister_sink(self, sink: EventSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def failed_login(self, event: LoginEvent) -> None:
        self._deliver("on_failed_login", event)

    def suspicious_activity(self, key: str, count: int) -> None:
        self._deliver("on_suspicious_activity", key, count)

    def new_device(self, device: NetworkDevice) -> None:
        self._deliver("on_new_device_detected", device)

    def device_status_changed(self, device: NetworkDevice) -> None:
        self._deliver("on_device_status_changed", device)

    def log(
        self,
        text: str,
        level: Severity = Severity.INFO,
        source: logging.Logger | None = None,
    ) -> None:
        """Write text to the stdlib log and forward it to the sinks."""
        (source or logger).log(level.logging_level, text)
        self._deliver("on_log_message", text, level)

    def _deliver(self, method: str, *args) -> None:
        with self._lock:
            sinks = list(self._sinks)

        for sink in sinks:
            try:
                getattr(sink, method)(*args)
            except Exception as e:
                logger.error(
                    "Sink %s failed in %s: %s",
                    type(sink).__name__,
                    method,
                    e,
                    exc_info=True,
                )
