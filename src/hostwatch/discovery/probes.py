"""Network probes used by the discovery engine."""

import logging
import math
import re
import socket
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import NamedTuple, Protocol

import psutil

from ..core.events import UNKNOWN

logger = logging.getLogger(__name__)

PROC_ARP_PATH = Path("/proc/net/arp")

_HEX_RE = re.compile(r"^[0-9A-F]{12}$")
_CISCO_MAC_RE = re.compile(r"^[0-9A-Fa-f]{4}\.[0-9A-Fa-f]{4}\.[0-9A-Fa-f]{4}$")
_ARP_LINE_RE = re.compile(
    r"\(?(?P<ip>(?:\d{1,3}\.){3}\d{1,3})\)?\s+(?:at\s+)?"
    r"(?P<mac>[0-9A-Fa-f]{1,2}(?:[:-][0-9A-Fa-f]{1,2}){5})(?![0-9A-Fa-f:-])"
)
_RTT_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms")


class ProbeError(Exception):
    """A probe mechanism is broken, as opposed to a negative probe result."""


class PingResult(NamedTuple):
    success: bool
    rtt_ms: float | None = None


class ProbeGateway(Protocol):
    """Best-effort network operations consumed by the discovery engine.

    Negative outcomes are reported as sentinels ("Unknown", empty
    collections, unsuccessful PingResult). Only ping raises, with
    ProbeError, when the mechanism itself is unusable.
    """

    def ping(self, ip: str, timeout_ms: int) -> PingResult: ...

    def read_arp_table(self) -> list[tuple[str, str]]: ...

    def reverse_dns(self, ip: str, timeout: float) -> str: ...

    def scan_ports(self, ip: str, ports: list[int], timeout_ms: int) -> set[int]: ...

    def get_mac(self, ip: str) -> str: ...


def normalize_mac(value: str | None) -> str | None:
    """
    Normalize a MAC address to upper-case colon form.

    Accepts colon or dash separated octets (including the single-digit
    octets printed by BSD arp), Cisco dotted notation and bare hex.

    Returns:
        "AA:BB:CC:DD:EE:FF", or None if value is not a MAC address
    """
    if not value:
        return None

    text = value.strip()
    if _CISCO_MAC_RE.match(text):
        digits = text.replace(".", "")
    else:
        parts = re.split(r"[:-]", text)
        if len(parts) == 6 and all(1 <= len(part) <= 2 for part in parts):
            digits = "".join(part.zfill(2) for part in parts)
        else:
            digits = text

    digits = digits.upper()
    if not _HEX_RE.match(digits):
        return None
    return ":".join(digits[i : i + 2] for i in range(0, 12, 2))


def parse_arp_output(output: str) -> list[tuple[str, str]]:
    """Parse `arp -a` output from Windows, Linux or macOS into (ip, mac) pairs."""
    entries = []
    for line in output.splitlines():
        match = _ARP_LINE_RE.search(line)
        if not match:
            continue
        mac = normalize_mac(match.group("mac"))
        if mac and mac != "00:00:00:00:00:00":
            entries.append((match.group("ip"), mac))
    return entries


def parse_proc_arp(content: str) -> list[tuple[str, str]]:
    """Parse the Linux /proc/net/arp table, skipping incomplete entries."""
    entries = []
    for line in content.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        ip, _, flags, hw_address = fields[:4]
        if flags == "0x0":
            continue
        mac = normalize_mac(hw_address)
        if mac and mac != "00:00:00:00:00:00":
            entries.append((ip, mac))
    return entries


class SystemProbeGateway:
    """Probe the network with the operating system's own tools."""

    def __init__(self, dns_workers: int = 20):
        self._dns_executor = ThreadPoolExecutor(
            max_workers=dns_workers, thread_name_prefix="reverse-dns"
        )

    def close(self):
        self._dns_executor.shutdown(wait=False, cancel_futures=True)

    def _ping_command(self, ip: str, timeout_ms: int) -> list[str]:
        if sys.platform.startswith("win"):
            return ["ping", "-n", "1", "-w", str(timeout_ms), ip]
        if sys.platform == "darwin":
            return ["ping", "-c", "1", "-W", str(timeout_ms), ip]
        return ["ping", "-c", "1", "-W", str(max(1, math.ceil(timeout_ms / 1000))), ip]

    def ping(self, ip: str, timeout_ms: int) -> PingResult:
        try:
            completed = subprocess.run(
                self._ping_command(ip, timeout_ms),
                capture_output=True,
                text=True,
                timeout=timeout_ms / 1000 + 2,
            )
        except OSError as e:
            raise ProbeError(f"ping could not be run: {e}") from e
        except subprocess.TimeoutExpired:
            return PingResult(False)

        # Windows ping exits 0 for "Destination host unreachable" replies
        if completed.returncode != 0 or "TTL=" not in completed.stdout.upper():
            return PingResult(False)

        match = _RTT_RE.search(completed.stdout)
        return PingResult(True, float(match.group(1)) if match else None)

    def read_arp_table(self) -> list[tuple[str, str]]:
        if PROC_ARP_PATH.exists():
            try:
                return parse_proc_arp(PROC_ARP_PATH.read_text())
            except OSError as e:
                logger.debug(f"Cannot read {PROC_ARP_PATH}: {e}")

        try:
            completed = subprocess.run(
                ["arp", "-a"], capture_output=True, text=True, timeout=10
            )
        except OSError as e:
            raise ProbeError(f"arp could not be run: {e}") from e
        except subprocess.TimeoutExpired:
            logger.warning("arp -a timed out")
            return []
        return parse_arp_output(completed.stdout)

    def reverse_dns(self, ip: str, timeout: float) -> str:
        future = self._dns_executor.submit(socket.gethostbyaddr, ip)
        try:
            hostname, _, _ = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            return UNKNOWN
        except OSError:
            return UNKNOWN

        if not hostname or hostname == ip:
            return UNKNOWN
        return hostname

    def scan_ports(self, ip: str, ports: list[int], timeout_ms: int) -> set[int]:
        open_ports = set()
        for port in ports:
            try:
                with socket.create_connection((ip, port), timeout=timeout_ms / 1000):
                    open_ports.add(port)
            except OSError:
                continue
        return open_ports

    def get_mac(self, ip: str) -> str:
        """MAC of a local interface holding ip, else the ARP cache entry."""
        try:
            for addresses in psutil.net_if_addrs().values():
                if any(
                    a.family == socket.AF_INET and a.address == ip for a in addresses
                ):
                    for addr in addresses:
                        if addr.family == psutil.AF_LINK:
                            mac = normalize_mac(addr.address)
                            if mac:
                                return mac
        except psutil.Error as e:
            logger.debug(f"Interface enumeration failed: {e}")

        try:
            for entry_ip, mac in self.read_arp_table():
                if entry_ip == ip:
                    return mac
        except ProbeError as e:
            logger.debug(f"ARP lookup for {ip} failed: {e}")
        return UNKNOWN
