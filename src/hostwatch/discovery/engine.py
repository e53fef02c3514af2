"""Multi-phase local network discovery."""

import ipaddress
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..core.config import DiscoveryConfig
from ..core.dispatcher import NotificationDispatcher
from ..core.events import UNKNOWN, DeviceStatus, NetworkDevice, Severity, is_unknown
from .classifier import DeviceClassifier, describe
from .network import detect_local_ipv4, subnet_hosts
from .pool import AdmissionGate, PhaseResult, run_bounded, run_each
from .probes import PingResult, ProbeError, ProbeGateway, normalize_mac
from .registry import DeviceRegistry
from .vendors import VendorCatalog

logger = logging.getLogger(__name__)

FORCE_SCAN_WARMUP_PINGS = 3
FORCE_SCAN_WARMUP_TIMEOUT_MS = 500
FORCE_UPDATE_PINGS = 5


def is_group_address(mac: str | None) -> bool:
    """True for multicast and broadcast MAC addresses."""
    normalized = normalize_mac(mac)
    if normalized is None:
        return False
    return bool(int(normalized[:2], 16) & 0x01)


@dataclass
class ScanSummary:
    """Outcome of one full scan."""

    local_ip: str
    started_at: datetime
    finished_at: datetime | None = None
    phases: dict[str, str] = field(default_factory=dict)
    devices: int = 0
    new_devices: int = 0


class DiscoveryEngine:
    """
    Discover devices on the local /24 and keep the registry current.

    A full scan runs four phases in order: ARP table ingestion, a bounded
    ping sweep, a reverse DNS sweep of addresses not yet known, and an ARP
    refresh followed by a second ingestion. Each phase tolerates its own
    failures; results are merged into the registry as soon as they land.
    """

    def __init__(
        self,
        gateway: ProbeGateway,
        vendors: VendorCatalog,
        classifier: DeviceClassifier | None = None,
        dispatcher: NotificationDispatcher | None = None,
        config: DiscoveryConfig | None = None,
        registry: DeviceRegistry | None = None,
    ):
        self.gateway = gateway
        self.vendors = vendors
        self.classifier = classifier or DeviceClassifier()
        self.config = config or DiscoveryConfig()
        if registry is not None:
            self.registry = registry
            self.dispatcher = dispatcher or registry.dispatcher
        else:
            self.dispatcher = dispatcher or NotificationDispatcher()
            self.registry = DeviceRegistry(self.dispatcher)
        self.local_ip: str | None = None
        self._running = threading.Event()
        self._stopped = threading.Event()
        self._scan_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    @property
    def scanning(self) -> bool:
        return self._scan_lock.locked()

    @property
    def revision(self) -> int:
        return self.registry.revision

    def start_monitoring(self) -> None:
        self._stopped.clear()
        self._running.set()
        self.dispatcher.log("Network discovery started", Severity.INFO, logger)

    def stop_monitoring(self) -> None:
        """Stop the engine; in-flight probes finish but no new ones start."""
        self._running.clear()
        self._stopped.set()
        self.dispatcher.log("Network discovery stopped", Severity.WARNING, logger)

    def perform_full_scan(self) -> ScanSummary | None:
        """
        Run all discovery phases once.

        Returns:
            A summary of the scan, or None if the engine is not running or
            another scan is already in progress
        """
        if not self.running:
            logger.warning("Discovery engine is not running, scan skipped")
            return None
        if not self._scan_lock.acquire(blocking=False):
            logger.info("Scan already in progress, request ignored")
            return None

        try:
            local_ip = self.config.local_ip or detect_local_ipv4(
                self.config.fallback_ip
            )
            self.local_ip = local_ip
            hosts = subnet_hosts(local_ip)
            known_before = set(self.registry.ips())
            summary = ScanSummary(local_ip=local_ip, started_at=datetime.now(UTC))
            self.dispatcher.log(
                f"Scanning network {hosts[0]} - {hosts[-1]} from {local_ip}",
                Severity.NETWORK,
                logger,
            )

            phases: list[tuple[str, Callable[[], PhaseResult]]] = [
                ("arp_table", self._ingest_arp_table),
                ("ping_sweep", lambda: self._ping_sweep(hosts)),
                ("reverse_dns", lambda: self._reverse_dns_sweep(hosts)),
                ("arp_refresh", lambda: self._refresh_arp_cache(hosts)),
            ]
            for name, phase in phases:
                if not self.running:
                    summary.phases[name] = "skipped"
                    continue
                summary.phases[name] = self._run_phase(name, phase)

            known_after = self.registry.ips()
            summary.devices = len(known_after)
            summary.new_devices = len(set(known_after) - known_before)
            summary.finished_at = datetime.now(UTC)
            self.dispatcher.log(
                f"Scan complete: {summary.devices} devices, "
                f"{summary.new_devices} new",
                Severity.SUCCESS,
                logger,
            )
            return summary
        finally:
            self._scan_lock.release()

    def _run_phase(self, name: str, phase: Callable[[], PhaseResult]) -> str:
        logger.debug(f"Scan phase {name} starting")
        try:
            result = phase()
        except Exception as e:
            logger.debug(f"Scan phase {name} traceback", exc_info=True)
            self.dispatcher.log(
                f"Scan phase {name} failed: {e}", Severity.ERROR, logger
            )
            return "failed"

        if result.timed_out:
            return "timed out"
        if result.cancelled:
            return "cancelled"
        return "completed"

    def _enrich(
        self,
        ip: str,
        mac: str | None = None,
        scan_ports: bool = True,
        status: DeviceStatus = DeviceStatus.ACTIVE,
    ) -> NetworkDevice:
        """Build a full observation of ip from the probes."""
        if is_unknown(mac):
            mac = self.gateway.get_mac(ip)
        hostname = self.gateway.reverse_dns(ip, self.config.dns_timeout_seconds)
        candidate = NetworkDevice(
            ip_address=ip,
            mac_address=mac,
            hostname=hostname,
            vendor=self.vendors.lookup(mac),
            status=status,
        )
        if scan_ports and not is_group_address(mac):
            candidate.open_ports = self.gateway.scan_ports(
                ip, self.config.common_ports, self.config.port_timeout_ms
            )
        self._classify_into(candidate)
        return candidate

    def _classify_into(self, candidate: NetworkDevice) -> None:
        classification = self.classifier.classify(candidate)
        candidate.device_type = classification.device_type
        candidate.operating_system = classification.operating_system
        candidate.description = describe(
            classification.device_type,
            classification.operating_system,
            candidate.open_ports,
        )

    def process_observation(self, candidate: NetworkDevice) -> NetworkDevice:
        """Merge an observation into the registry and return the stored copy."""
        device, created = self.registry.merge(candidate)
        if created:
            self.dispatcher.log(
                f"New device: {device.ip_address} ({device.mac_address}) "
                f"{device.vendor} - {device.device_type}",
                Severity.NETWORK,
                logger,
            )
        return device

    def _ingest_arp_table(self) -> PhaseResult:
        macs: dict[str, str] = {}
        for ip, mac in self.gateway.read_arp_table():
            macs.setdefault(ip, mac)
        logger.info(f"ARP table holds {len(macs)} entries")

        port_scan = set(list(macs)[: self.config.arp_port_scan_limit])

        def observe(ip: str):
            self.process_observation(
                self._enrich(ip, mac=macs[ip], scan_ports=ip in port_scan)
            )

        return run_bounded(
            macs,
            observe,
            AdmissionGate(self.config.ping_concurrency),
            self.config.arp_ingest_timeout_seconds,
            lambda: self.running,
            name="arp-ingest",
        )

    def _ping(self, ip: str, timeouts_ms: list[int]) -> PingResult:
        for timeout_ms in timeouts_ms:
            result = self.gateway.ping(ip, timeout_ms)
            if result.success or not self.running:
                return result
        return PingResult(False)

    def _probe_host(self, ip: str) -> bool:
        """
        Ping ip with escalating timeouts and record the outcome.

        A host that answers is merged into the registry. A known host that
        does not answer becomes Unreachable, and one whose probe raised
        becomes Error.
        """
        try:
            result = self._ping(ip, self.config.ping_timeouts_ms)
        except Exception as e:
            logger.error(f"Probe of {ip} failed: {e}")
            self.registry.transition(ip, DeviceStatus.ERROR)
            raise
        if not result.success:
            if not self.running:
                return False
            if self.registry.transition(ip, DeviceStatus.UNREACHABLE) is not None:
                self.dispatcher.log(
                    f"Device {ip} is now {DeviceStatus.UNREACHABLE.value}",
                    Severity.NETWORK,
                    logger,
                )
            return False
        self.process_observation(self._enrich(ip))
        return True

    def _ping_sweep(self, hosts: list[str]) -> PhaseResult:
        gate = AdmissionGate(self.config.ping_concurrency)
        result = run_bounded(
            hosts,
            self._probe_host,
            gate,
            self.config.ping_sweep_timeout_seconds,
            lambda: self.running,
            name="ping-sweep",
        )
        logger.debug(f"Ping sweep peaked at {gate.peak} concurrent probes")
        return result

    def _reverse_dns_sweep(self, hosts: list[str]) -> PhaseResult:
        unknown = [ip for ip in hosts if ip not in self.registry]

        def resolve(ip: str):
            hostname = self.gateway.reverse_dns(ip, self.config.dns_timeout_seconds)
            if is_unknown(hostname) or hostname == ip:
                return
            logger.debug(f"{ip} resolves to {hostname}, probing")
            self._probe_host(ip)

        return run_bounded(
            unknown,
            resolve,
            AdmissionGate(self.config.dns_concurrency),
            self.config.dns_sweep_timeout_seconds,
            lambda: self.running,
            name="reverse-dns",
        )

    def _refresh_arp_cache(self, hosts: list[str]) -> PhaseResult:
        timeout_ms = self.config.arp_refresh_ping_timeout_ms
        warm = run_bounded(
            hosts,
            lambda ip: self.gateway.ping(ip, timeout_ms),
            AdmissionGate(self.config.ping_concurrency),
            self.config.arp_refresh_timeout_seconds,
            lambda: self.running,
            name="arp-refresh",
        )
        if self._stopped.wait(self.config.arp_settle_seconds) or not self.running:
            warm.cancelled = True
            return warm

        result = self._ingest_arp_table()
        result.timed_out = result.timed_out or warm.timed_out
        return result

    def refresh_statuses(self) -> int:
        """
        Ping every known device once and record status transitions.

        Returns:
            Number of devices whose status changed
        """
        if not self.running:
            return 0

        changed = []
        timeout_ms = self.config.refresh_ping_timeout_ms

        def check(ip: str):
            result = self.gateway.ping(ip, timeout_ms)
            status = DeviceStatus.ACTIVE if result.success else DeviceStatus.UNREACHABLE
            device = self.registry.transition(ip, status)
            if device is not None:
                changed.append(device)
                self.dispatcher.log(
                    f"Device {ip} is now {status.value}", Severity.NETWORK, logger
                )

        outcomes = run_each(self.registry.ips(), check, name="status-refresh")
        for ip, error in outcomes.items():
            if error is None:
                continue
            logger.error(f"Status probe of {ip} failed: {error}")
            device = self.registry.transition(ip, DeviceStatus.ERROR)
            if device is not None:
                changed.append(device)
        return len(changed)

    def force_scan(self, ip: str) -> bool:
        """
        Probe a single address and make sure it ends up in the registry.

        The ARP cache is warmed with a few quick pings first. A host that
        still does not answer is registered as Unreachable with whatever
        identity can be learned.

        Returns:
            True if the device is known afterwards
        """
        try:
            ipaddress.IPv4Address(ip)
        except ValueError:
            self.dispatcher.log(f"Invalid IP address: {ip}", Severity.ERROR, logger)
            return False

        self.dispatcher.log(f"Forced scan of {ip}", Severity.INFO, logger)
        try:
            for _ in range(FORCE_SCAN_WARMUP_PINGS):
                self.gateway.ping(ip, FORCE_SCAN_WARMUP_TIMEOUT_MS)
            result = self._ping(ip, self.config.ping_timeouts_ms)
        except Exception as e:
            logger.error(f"Forced scan of {ip} failed: {e}")
            self.registry.transition(ip, DeviceStatus.ERROR)
            return ip in self.registry

        if result.success:
            self.process_observation(self._enrich(ip))
            return True

        mac = self.gateway.get_mac(ip)
        candidate = NetworkDevice(
            ip_address=ip,
            mac_address=mac,
            vendor=self.vendors.lookup(mac),
            status=DeviceStatus.UNREACHABLE,
        )
        self._classify_into(candidate)
        self.process_observation(candidate)
        self.dispatcher.log(
            f"{ip} did not answer, added as unreachable", Severity.WARNING, logger
        )
        return True

    def force_update_mac(self, ip: str) -> str:
        """
        Re-resolve the MAC of ip and overwrite the stored identity.

        Returns:
            The MAC address, or "Unknown" if it could not be resolved
        """
        for _ in range(FORCE_UPDATE_PINGS):
            try:
                self.gateway.ping(ip, self.config.refresh_ping_timeout_ms)
            except ProbeError as e:
                logger.warning(f"Ping of {ip} failed: {e}")
                break

        mac = self.gateway.get_mac(ip)
        if is_unknown(mac):
            self.dispatcher.log(
                f"Could not resolve MAC address of {ip}", Severity.WARNING, logger
            )
            return UNKNOWN

        existing = self.registry.get(ip)
        if existing is None:
            self.process_observation(self._enrich(ip, mac=mac))
            return mac

        vendor = self.vendors.lookup(mac)
        probe = existing.model_copy(update={"mac_address": mac, "vendor": vendor})
        classification = self.classifier.classify(probe)
        self.registry.overwrite_identity(ip, mac, vendor, classification.device_type)
        self.dispatcher.log(
            f"MAC of {ip} updated to {mac} ({vendor})", Severity.SUCCESS, logger
        )
        return mac

    def known_devices(self) -> list[NetworkDevice]:
        return self.registry.snapshot()

    def get_device(self, ip: str) -> NetworkDevice | None:
        return self.registry.get(ip)

    def acknowledge_device(self, ip: str) -> bool:
        return self.registry.acknowledge(ip)

    def remove_device(self, ip: str) -> bool:
        removed = self.registry.remove(ip)
        if removed:
            self.dispatcher.log(f"Device {ip} removed", Severity.INFO, logger)
        return removed

    def clear_known_devices(self) -> None:
        count = self.registry.clear()
        self.dispatcher.log(
            f"Device list cleared ({count} devices)", Severity.INFO, logger
        )

    def reload_vendor_database(self) -> int:
        count = self.vendors.reload()
        self.dispatcher.log(
            f"Vendor database reloaded: {count} prefixes", Severity.SUCCESS, logger
        )
        return count
