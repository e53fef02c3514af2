"""Heuristic device fingerprinting from MAC, hostname, vendor and ports."""

import re
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

from ..core.events import UNKNOWN, NetworkDevice, is_unknown
from .probes import normalize_mac

UNKNOWN_DEVICE = "Unknown device"


class DeviceCategory(str, Enum):
    MULTICAST = "multicast"
    BROADCAST = "broadcast"
    IPV6_MULTICAST = "ipv6_multicast"
    PHONE = "phone"
    TABLET = "tablet"
    COMPUTER = "computer"
    TV = "tv"
    WATCH = "watch"
    AUDIO = "audio"
    GAMING_CONSOLE = "gaming_console"
    ROUTER = "router"
    NETWORK = "network"
    PRINTER = "printer"
    CAMERA = "camera"
    MOBILE = "mobile"
    SMART_DEVICE = "smart_device"
    IOT = "iot"
    SERVER = "server"
    VIRTUAL_MACHINE = "virtual_machine"
    OTHER = "other"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    SAFE = "Safe"


class Rule(NamedTuple):
    """Substring rule: `pattern` (and `requires`, when set) must match."""

    pattern: str
    device_type: str
    category: DeviceCategory
    requires: str | None = None

    def matches(self, text: str) -> bool:
        if self.requires and not re.search(self.requires, text):
            return False
        return re.search(self.pattern, text) is not None


C = DeviceCategory

# Checked in order, first match wins
HOSTNAME_RULES: tuple[Rule, ...] = (
    Rule("iphone|phone", "iPhone", C.PHONE),
    Rule("ipad|pad", "iPad", C.TABLET),
    Rule("macbook|imac|mac", "Mac computer", C.COMPUTER),
    Rule("appletv|apple-tv", "Apple TV", C.TV),
    Rule("watch", "Apple Watch", C.WATCH),
    Rule("airpods|beats", "Apple audio", C.AUDIO),
    Rule("tab|note", "Samsung tablet", C.TABLET, requires="galaxy"),
    Rule("galaxy|sm-|phone", "Samsung phone", C.PHONE),
    Rule("switch", "Nintendo Switch", C.GAMING_CONSOLE),
    Rule("playstation|ps4|ps5", "PlayStation", C.GAMING_CONSOLE),
    Rule("xbox", "Xbox", C.GAMING_CONSOLE),
    Rule("surface", "Surface tablet", C.TABLET),
    Rule("router|gateway|openwrt", "Router", C.ROUTER),
    Rule("printer|canon|epson|hp-", "Printer", C.PRINTER),
    Rule("camera|cam|nvr", "IP camera", C.CAMERA),
    Rule("tv|smart|roku|chromecast", "Smart TV", C.TV),
    Rule("android|mobile", "Android phone", C.MOBILE),
    Rule("tablet|tab-", "Tablet", C.TABLET),
)

VENDOR_RULES: tuple[Rule, ...] = (
    Rule("apple", "Apple device", C.MOBILE),
    Rule(
        "cisco|tp-link|d-link|netgear|asus|linksys|belkin|router",
        "Network equipment",
        C.NETWORK,
    ),
    Rule(r"hewlett|\bhp\b|canon|epson|brother|xerox", "Printer", C.PRINTER),
    Rule("samsung|xiaomi|huawei|oppo|vivo|realme", "Mobile device", C.MOBILE),
    Rule("dell|lenovo|acer|intel|microsoft", "Computer", C.COMPUTER),
    Rule("lg electronics|sony|panasonic", "Smart device", C.SMART_DEVICE),
    Rule("nintendo|playstation|xbox", "Gaming console", C.GAMING_CONSOLE),
    Rule("hikvision|dahua|axis", "IP camera", C.CAMERA),
    Rule("sonos", "Smart speaker", C.IOT),
    Rule("nest|google", "Smart home device", C.IOT),
    Rule(r"\bring\b", "Smart doorbell", C.IOT),
    Rule("philips", "Smart lighting", C.IOT),
    Rule("amazon", "Amazon Echo", C.IOT),
    Rule(
        "vmware|qemu|virtualbox|virtual machine", "Virtual machine", C.VIRTUAL_MACHINE
    ),
)

HOSTNAME_OS_RULES: tuple[tuple[str, str], ...] = (
    ("iphone", "iOS"),
    ("ipad", "iPadOS"),
    ("macbook|imac|mac", "macOS"),
    ("apple-tv|appletv", "tvOS"),
    ("watch", "watchOS"),
    ("android", "Android"),
    ("linux|ubuntu|debian", "Linux"),
    ("windows|desktop|pc", "Windows"),
)

APPLE_OS_BY_CATEGORY = {
    C.PHONE: "iOS",
    C.TABLET: "iPadOS",
    C.COMPUTER: "macOS",
    C.TV: "tvOS",
    C.WATCH: "watchOS",
}

REMOTE_ACCESS_PORTS = frozenset({22, 23, 3389})
WEB_PORTS = frozenset({80, 443, 8080})


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel


@dataclass(frozen=True)
class Classification:
    device_type: str
    category: DeviceCategory
    operating_system: str
    risk: RiskAssessment


def risk_level(score: int) -> RiskLevel:
    if score >= 15:
        return RiskLevel.HIGH
    if score >= 8:
        return RiskLevel.MEDIUM
    if score >= 3:
        return RiskLevel.LOW
    return RiskLevel.SAFE


def describe(
    device_type: str, operating_system: str, open_ports: Collection[int]
) -> str:
    """Build the one-line description shown for a device."""
    parts = []
    if device_type:
        parts.append(device_type)
    if not is_unknown(operating_system):
        parts.append(f"OS: {operating_system}")
    if open_ports:
        parts.append("Ports: " + ", ".join(str(p) for p in sorted(open_ports)))
    return " | ".join(parts)


class DeviceClassifier:
    """
    Assign device type, operating system and risk to an observation.

    Classification is a pure function of the observation's MAC, hostname,
    vendor and open ports. Rule tables can be replaced; their order is the
    precedence order.
    """

    def __init__(
        self,
        hostname_rules: Sequence[Rule] = HOSTNAME_RULES,
        vendor_rules: Sequence[Rule] = VENDOR_RULES,
    ):
        self.hostname_rules = tuple(hostname_rules)
        self.vendor_rules = tuple(vendor_rules)

    def classify(self, device: NetworkDevice) -> Classification:
        device_type, category = self.device_type(device)
        operating_system = self.operating_system(device, category)
        risk = self.assess_risk(device.open_ports, device.vendor, category)
        return Classification(device_type, category, operating_system, risk)

    def device_type(self, device: NetworkDevice) -> tuple[str, DeviceCategory]:
        special = self._special_address(device.mac_address, device.vendor)
        if special is not None:
            return special

        hostname = "" if is_unknown(device.hostname) else device.hostname.lower()
        vendor = "" if is_unknown(device.vendor) else device.vendor.lower()

        if hostname:
            for rule in self.hostname_rules:
                if rule.matches(hostname):
                    return rule.device_type, rule.category

        if vendor:
            for rule in self.vendor_rules:
                if rule.matches(vendor):
                    return rule.device_type, rule.category

        by_ports = self._type_from_ports(device.open_ports)
        if by_ports is not None:
            return by_ports

        if vendor:
            return f"{device.vendor} device", C.OTHER
        return UNKNOWN_DEVICE, C.UNKNOWN

    @staticmethod
    def _special_address(
        mac: str, vendor: str
    ) -> tuple[str, DeviceCategory] | None:
        normalized = normalize_mac(mac) or ""
        vendor = (vendor or "").lower()
        if normalized.startswith("33:33") or "ipv6 multicast" in vendor:
            return "IPv6 multicast", C.IPV6_MULTICAST
        if normalized.startswith("01:00:5E") or "multicast" in vendor:
            return "Multicast address", C.MULTICAST
        if normalized == "FF:FF:FF:FF:FF:FF" or "broadcast" in vendor:
            return "Broadcast address", C.BROADCAST
        return None

    @staticmethod
    def _type_from_ports(ports: Collection[int]) -> tuple[str, DeviceCategory] | None:
        if 3389 in ports:
            return "Windows computer", C.COMPUTER
        if 22 in ports and 80 not in ports:
            return "Linux/Unix server", C.SERVER
        if 5353 in ports:
            return "Apple/mobile device", C.MOBILE
        web = 80 in ports or 443 in ports
        if web and (22 in ports or 23 in ports):
            return "Network device", C.NETWORK
        if web:
            return "Web server", C.SERVER
        return None

    def operating_system(self, device: NetworkDevice, category: DeviceCategory) -> str:
        """Guess the OS: hostname first, then vendor and type, then ports."""
        if not is_unknown(device.hostname):
            hostname = device.hostname.lower()
            for pattern, name in HOSTNAME_OS_RULES:
                if re.search(pattern, hostname):
                    return name

        vendor = "" if is_unknown(device.vendor) else device.vendor.lower()
        if "apple" in vendor:
            return APPLE_OS_BY_CATEGORY.get(category, "iOS/macOS")
        if "microsoft" in vendor:
            return "Windows"
        if re.search("samsung|xiaomi|huawei|oppo|vivo|realme|android", vendor):
            return "Android"
        if category is C.VIRTUAL_MACHINE or "vmware" in vendor:
            return "Virtualized"

        ports = device.open_ports
        if 3389 in ports:
            return "Windows"
        if 22 in ports and 80 not in ports:
            return "Linux/Unix"
        if 5353 in ports:
            return "macOS/iOS"
        return UNKNOWN

    @staticmethod
    def assess_risk(
        open_ports: Collection[int], vendor: str, category: DeviceCategory
    ) -> RiskAssessment:
        """
        Score exposure additively.

        +2 per open port, +10 for remote access ports, +3 for web ports,
        +5 when vendor or type is unresolved, +3 for cameras and IoT.
        """
        score = 2 * len(open_ports)
        if REMOTE_ACCESS_PORTS.intersection(open_ports):
            score += 10
        if WEB_PORTS.intersection(open_ports):
            score += 3
        if is_unknown(vendor) or "unknown" in vendor.lower() or category is C.UNKNOWN:
            score += 5
        if category in (C.CAMERA, C.IOT):
            score += 3
        return RiskAssessment(score, risk_level(score))
