"""Thread-safe registry of discovered network devices."""

import ipaddress
import logging
import threading
from datetime import UTC, datetime

from ..core.dispatcher import NotificationDispatcher
from ..core.events import DeviceStatus, NetworkDevice, is_unknown

logger = logging.getLogger(__name__)

# Identity fields that are only filled in, never overwritten
_STICKY_FIELDS = ("mac_address", "vendor", "device_type", "operating_system")


def _ip_sort_key(ip: str):
    try:
        return (0, ipaddress.IPv4Address(ip))
    except ValueError:
        return (1, ip)


class DeviceRegistry:
    """
    Devices keyed by IP address.

    Every operation is atomic under one reentrant lock. Notifications for an
    update are delivered while the lock is held, so updates to one device
    reach sinks in the order they were applied, and a sink may read the
    registry from its callback. Callers and sinks only ever see copies.
    """

    def __init__(self, dispatcher: NotificationDispatcher | None = None):
        self.dispatcher = dispatcher or NotificationDispatcher()
        self._devices: dict[str, NetworkDevice] = {}
        self._lock = threading.RLock()
        self._revision = 0

    @property
    def revision(self) -> int:
        """Counter incremented by every mutation."""
        with self._lock:
            return self._revision

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, ip: str) -> bool:
        with self._lock:
            return ip in self._devices

    def ips(self) -> list[str]:
        with self._lock:
            return sorted(self._devices, key=_ip_sort_key)

    def get(self, ip: str) -> NetworkDevice | None:
        with self._lock:
            device = self._devices.get(ip)
            return device.model_copy(deep=True) if device else None

    def snapshot(self) -> list[NetworkDevice]:
        """Copies of all devices ordered by IP address."""
        with self._lock:
            devices = [d.model_copy(deep=True) for d in self._devices.values()]
        return sorted(devices, key=lambda d: _ip_sort_key(d.ip_address))

    def merge(
        self, candidate: NetworkDevice, now: datetime | None = None
    ) -> tuple[NetworkDevice, bool]:
        """
        Insert a new device or fold an observation into a known one.

        Known MAC, vendor, type and OS values are never replaced; hostname is
        replaced only by a known, different name.

        Returns:
            A copy of the stored device, and whether it was newly inserted
        """
        now = now or datetime.now(UTC)

        with self._lock:
            existing = self._devices.get(candidate.ip_address)

            if existing is None:
                device = candidate.model_copy(deep=True)
                device.first_seen = now
                device.last_seen = now
                device.is_new = True
                self._devices[device.ip_address] = device
                self._revision += 1
                copy = device.model_copy(deep=True)
                self.dispatcher.new_device(copy)
                return copy, True

            existing.status = candidate.status
            existing.last_seen = now
            for field in _STICKY_FIELDS:
                value = getattr(candidate, field)
                if is_unknown(getattr(existing, field)) and not is_unknown(value):
                    setattr(existing, field, value)
            if (
                not is_unknown(candidate.hostname)
                and candidate.hostname != existing.hostname
            ):
                existing.hostname = candidate.hostname
            if candidate.open_ports:
                existing.open_ports = set(candidate.open_ports)
            if candidate.description:
                existing.description = candidate.description

            self._revision += 1
            copy = existing.model_copy(deep=True)
            self.dispatcher.device_status_changed(copy)
            return copy, False

    def transition(
        self, ip: str, status: DeviceStatus, now: datetime | None = None
    ) -> NetworkDevice | None:
        """
        Set a device's status.

        Returns:
            A copy of the device if its status actually changed, else None
        """
        with self._lock:
            device = self._devices.get(ip)
            if device is None or device.status == status:
                return None
            device.status = status
            device.last_seen = now or datetime.now(UTC)
            self._revision += 1
            copy = device.model_copy(deep=True)
            self.dispatcher.device_status_changed(copy)
            return copy

    def overwrite_identity(
        self, ip: str, mac_address: str, vendor: str, device_type: str
    ) -> NetworkDevice | None:
        """Replace MAC, vendor and type of a device after a forced re-resolve."""
        with self._lock:
            device = self._devices.get(ip)
            if device is None:
                return None
            device.mac_address = mac_address
            device.vendor = vendor
            device.device_type = device_type
            self._revision += 1
            copy = device.model_copy(deep=True)
            self.dispatcher.device_status_changed(copy)
            return copy

    def acknowledge(self, ip: str) -> bool:
        """Clear the new flag of a device."""
        with self._lock:
            device = self._devices.get(ip)
            if device is None or not device.is_new:
                return False
            device.is_new = False
            self._revision += 1
            return True

    def remove(self, ip: str) -> bool:
        with self._lock:
            if self._devices.pop(ip, None) is None:
                return False
            self._revision += 1
            return True

    def clear(self) -> int:
        with self._lock:
            count = len(self._devices)
            self._devices.clear()
            self._revision += 1
        logger.info(f"Cleared {count} known devices")
        return count
