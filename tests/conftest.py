"""Shared fixtures."""

import threading

import pytest

from hostwatch.core.config import DiscoveryConfig
from hostwatch.core.dispatcher import EventSink, NotificationDispatcher
from hostwatch.core.events import UNKNOWN
from hostwatch.discovery.engine import DiscoveryEngine
from hostwatch.discovery.probes import PingResult, ProbeError
from hostwatch.discovery.vendors import VendorCatalog


class RecordingSink(EventSink):
    """Sink that records every notification it receives."""

    def __init__(self):
        self.lock = threading.Lock()
        self.failed_logins = []
        self.suspicious = []
        self.new_devices = []
        self.status_changes = []
        self.messages = []

    def on_failed_login(self, event):
        with self.lock:
            self.failed_logins.append(event)

    def on_suspicious_activity(self, key, count):
        with self.lock:
            self.suspicious.append((key, count))

    def on_new_device_detected(self, device):
        with self.lock:
            self.new_devices.append(device)

    def on_device_status_changed(self, device):
        with self.lock:
            self.status_changes.append(device)

    def on_log_message(self, text, level):
        with self.lock:
            self.messages.append((text, level))


class FakeGateway:
    """In-memory ProbeGateway."""

    def __init__(self, alive=(), arp=(), hostnames=None, ports=None, macs=None):
        self.alive = set(alive)
        self.arp = list(arp)
        self.hostnames = dict(hostnames or {})
        self.ports = dict(ports or {})
        self.macs = dict(macs or {})
        self.broken: set[str] = set()
        self.ping_calls: list[tuple[str, int]] = []
        self.port_scans: list[str] = []
        self._lock = threading.Lock()

    def ping(self, ip, timeout_ms):
        with self._lock:
            self.ping_calls.append((ip, timeout_ms))
        if ip in self.broken:
            raise ProbeError("ping executable not available")
        if ip in self.alive:
            return PingResult(True, 1.0)
        return PingResult(False)

    def read_arp_table(self):
        return list(self.arp)

    def reverse_dns(self, ip, timeout):
        return self.hostnames.get(ip, UNKNOWN)

    def scan_ports(self, ip, ports, timeout_ms):
        with self._lock:
            self.port_scans.append(ip)
        return set(self.ports.get(ip, ())) & set(ports)

    def get_mac(self, ip):
        return self.macs.get(ip) or dict(self.arp).get(ip, UNKNOWN)

    def close(self):
        pass


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    dispatcher = NotificationDispatcher()
    dispatcher.register_sink(sink)
    return dispatcher


@pytest.fixture
def vendor_file(tmp_path):
    path = tmp_path / "MAC.db"
    path.write_text(
        "FC253F\tApple, Inc.\n"
        "001B2F\tHikvision\n"
        "04D9F5\tASUSTek Computer Inc.\n"
        "C46E1F\tTp-Link\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def vendors(vendor_file):
    return VendorCatalog(vendor_file)


@pytest.fixture
def discovery_config():
    return DiscoveryConfig(
        local_ip="192.168.50.10",
        ping_timeouts_ms=[10, 20],
        arp_settle_seconds=0,
        ping_sweep_timeout_seconds=30,
        dns_sweep_timeout_seconds=30,
        arp_refresh_timeout_seconds=30,
        arp_ingest_timeout_seconds=30,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(gateway, vendors, dispatcher, discovery_config):
    engine = DiscoveryEngine(
        gateway, vendors, dispatcher=dispatcher, config=discovery_config
    )
    engine.start_monitoring()
    yield engine
    engine.stop_monitoring()
