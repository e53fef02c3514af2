"""Alert dispatcher for escalations and new devices."""

import asyncio
import logging
from concurrent.futures import Future

import aiohttp

from ..core.dispatcher import EventSink
from ..core.events import NetworkDevice
from ..discovery.classifier import DeviceClassifier

logger = logging.getLogger(__name__)


class AlertDispatcher(EventSink):
    """
    Send alerts for brute-force escalations and newly detected devices.

    Notifications arrive on worker threads; alerts are sent on the event
    loop given at construction.
    """

    def __init__(
        self,
        discord_enabled: bool = False,
        webhook_url: str | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        alert_on_new_devices: bool = True,
        classifier: DeviceClassifier | None = None,
    ):
        self.discord_enabled = discord_enabled
        self.webhook_url = webhook_url
        self.loop = loop
        self.alert_on_new_devices = alert_on_new_devices
        self.classifier = classifier or DeviceClassifier()
        self._session: aiohttp.ClientSession | None = None
        self._pending: set[Future] = set()

    def on_suspicious_activity(self, key: str, count: int) -> None:
        source_ip, _, username = key.partition("_")
        self._schedule(
            f"BRUTE FORCE SUSPECTED: {count} failed RDP logins "
            f"for '{username}' from {source_ip}"
        )

    def on_new_device_detected(self, device: NetworkDevice) -> None:
        if not self.alert_on_new_devices:
            return
        self._schedule(self._format_device_message(device))

    def _format_device_message(self, device: NetworkDevice) -> str:
        risk = self.classifier.classify(device).risk
        message = (
            f"NEW DEVICE: {device.ip_address} ({device.mac_address}) "
            f"{device.vendor} - {device.device_type}, risk {risk.level.value}"
        )
        if device.open_ports:
            ports = ", ".join(str(p) for p in sorted(device.open_ports))
            message += f", open ports: {ports}"
        return message

    def _schedule(self, message: str) -> None:
        """Send message on the event loop from any thread."""
        if self.loop is None or self.loop.is_closed():
            logger.warning(f"ALERT (no event loop): {message}")
            return

        future = asyncio.run_coroutine_threadsafe(self.send_alert(message), self.loop)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def send_alert(self, message: str):
        """Dispatch alert through configured channels."""
        logger.warning(f"ALERT: {message}")

        if self.discord_enabled and self.webhook_url:
            await self.send_discord_webhook(message)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10)
            )
        return self._session

    async def send_discord_webhook(self, message: str):
        """Send Discord webhook alert."""
        if not self.webhook_url:
            logger.error("Discord webhook URL not configured")
            return

        data = {"content": message, "username": "hostwatch"}
        try:
            session = await self._get_session()
            async with session.post(str(self.webhook_url), json=data) as response:
                # Discord answers 204 No Content on success
                if response.status == 204:
                    logger.info("Discord webhook alert sent")
                else:
                    error_text = await response.text()
                    logger.error(
                        f"Discord webhook failed: {response.status} {error_text}"
                    )
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Discord webhook alert failed: {e}")
            logger.warning(f"Discord Alert (NOT SENT): {message}")

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
