"""Tests for the device registry."""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from hostwatch.core.dispatcher import EventSink
from hostwatch.core.events import DeviceStatus, NetworkDevice
from hostwatch.discovery.registry import DeviceRegistry

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def registry(dispatcher):
    return DeviceRegistry(dispatcher)


def device(**fields) -> NetworkDevice:
    fields.setdefault("ip_address", "192.168.1.10")
    return NetworkDevice(**fields)


def test_first_observation_inserts_and_notifies(registry, sink):
    stored, created = registry.merge(device(mac_address="AA:BB:CC:DD:EE:FF"), T0)

    assert created
    assert stored.is_new
    assert stored.first_seen == T0
    assert [d.ip_address for d in sink.new_devices] == ["192.168.1.10"]
    assert sink.status_changes == []


def test_identical_observation_is_idempotent(registry, sink):
    observation = device(
        mac_address="AA:BB:CC:DD:EE:FF",
        hostname="nas",
        vendor="Synology",
        device_type="Storage",
    )

    registry.merge(observation, T0)
    _, created = registry.merge(observation, T0 + timedelta(seconds=5))

    assert not created
    assert len(sink.new_devices) == 1
    assert len(registry) == 1


def test_known_mac_is_sticky(registry):
    registry.merge(device(mac_address="AA:BB:CC:DD:EE:FF"), T0)
    stored, _ = registry.merge(device(mac_address="Unknown"), T0)

    assert stored.mac_address == "AA:BB:CC:DD:EE:FF"


def test_known_identity_is_not_replaced(registry):
    registry.merge(
        device(mac_address="AA:BB:CC:DD:EE:FF", vendor="Apple", device_type="iPhone"),
        T0,
    )
    stored, _ = registry.merge(
        device(mac_address="11:22:33:44:55:66", vendor="Other", device_type="Router"),
        T0,
    )

    assert stored.mac_address == "AA:BB:CC:DD:EE:FF"
    assert stored.vendor == "Apple"
    assert stored.device_type == "iPhone"


def test_unknown_fields_are_filled_in(registry):
    registry.merge(device(), T0)
    stored, _ = registry.merge(
        device(
            mac_address="AA:BB:CC:DD:EE:FF",
            vendor="Apple",
            device_type="iPhone",
            operating_system="iOS",
            open_ports={62078},
            description="iPhone | OS: iOS",
        ),
        T0,
    )

    assert stored.mac_address == "AA:BB:CC:DD:EE:FF"
    assert stored.vendor == "Apple"
    assert stored.device_type == "iPhone"
    assert stored.operating_system == "iOS"
    assert stored.open_ports == {62078}
    assert stored.description == "iPhone | OS: iOS"


def test_hostname_updates_only_with_known_value(registry):
    registry.merge(device(hostname="old-name"), T0)

    stored, _ = registry.merge(device(hostname="Unknown"), T0)
    assert stored.hostname == "old-name"

    stored, _ = registry.merge(device(hostname="new-name"), T0)
    assert stored.hostname == "new-name"


def test_first_seen_never_changes(registry, sink):
    registry.merge(device(), T0)
    stored, _ = registry.merge(
        device(status=DeviceStatus.UNREACHABLE), T0 + timedelta(minutes=3)
    )

    assert stored.first_seen == T0
    assert stored.last_seen == T0 + timedelta(minutes=3)
    assert stored.status is DeviceStatus.UNREACHABLE
    assert len(sink.status_changes) == 1


def test_transition_only_notifies_on_change(registry, sink):
    registry.merge(device(), T0)

    assert registry.transition("192.168.1.10", DeviceStatus.ACTIVE) is None
    changed = registry.transition("192.168.1.10", DeviceStatus.UNREACHABLE)
    assert changed.status is DeviceStatus.UNREACHABLE
    assert registry.transition("192.168.1.99", DeviceStatus.ERROR) is None

    assert len(sink.status_changes) == 1


def test_callers_get_copies(registry):
    registry.merge(device(open_ports={22}), T0)

    copy = registry.get("192.168.1.10")
    copy.open_ports.add(3389)
    copy.mac_address = "FF:FF:FF:FF:FF:FF"

    stored = registry.get("192.168.1.10")
    assert stored.open_ports == {22}
    assert stored.mac_address == "Unknown"


def test_acknowledge_remove_and_reinsert(registry, sink):
    registry.merge(device(), T0)

    assert registry.acknowledge("192.168.1.10")
    assert not registry.get("192.168.1.10").is_new
    assert not registry.acknowledge("192.168.1.10")

    registry.merge(device(), T0)
    assert not registry.get("192.168.1.10").is_new

    assert registry.remove("192.168.1.10")
    assert not registry.remove("192.168.1.10")
    registry.merge(device(), T0)

    assert len(sink.new_devices) == 2


def test_revision_increases_with_every_mutation(registry):
    revisions = [registry.revision]
    registry.merge(device(), T0)
    revisions.append(registry.revision)
    registry.transition("192.168.1.10", DeviceStatus.UNREACHABLE)
    revisions.append(registry.revision)
    registry.acknowledge("192.168.1.10")
    revisions.append(registry.revision)
    registry.clear()
    revisions.append(registry.revision)

    assert revisions == sorted(set(revisions))
    unchanged = registry.revision
    registry.get("192.168.1.10")
    registry.snapshot()
    assert registry.revision == unchanged


def test_snapshot_sorted_by_address(registry):
    for ip in ("192.168.1.100", "192.168.1.9", "192.168.1.20"):
        registry.merge(device(ip_address=ip), T0)

    assert [d.ip_address for d in registry.snapshot()] == [
        "192.168.1.9",
        "192.168.1.20",
        "192.168.1.100",
    ]
    assert registry.ips() == ["192.168.1.9", "192.168.1.20", "192.168.1.100"]


def test_overwrite_identity(registry, sink):
    registry.merge(device(mac_address="AA:BB:CC:DD:EE:FF", vendor="Apple"), T0)

    updated = registry.overwrite_identity(
        "192.168.1.10", "11:22:33:44:55:66", "Dell Inc.", "Computer"
    )

    assert updated.mac_address == "11:22:33:44:55:66"
    assert updated.vendor == "Dell Inc."
    assert registry.overwrite_identity("10.0.0.1", "x", "y", "z") is None
    assert len(sink.status_changes) == 1


def test_concurrent_merges_announce_each_device_once(registry, sink):
    ips = [f"10.0.0.{i}" for i in range(1, 41)]

    def worker():
        for ip in ips:
            registry.merge(device(ip_address=ip))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(registry) == 40
    assert sorted(d.ip_address for d in sink.new_devices) == sorted(ips)
    assert len(sink.status_changes) == 40 * 7


def test_sink_may_read_registry_from_callback(registry, dispatcher):
    seen = []

    class ReadingSink(EventSink):
        def on_new_device_detected(self, device):
            seen.append([d.ip_address for d in registry.snapshot()])

        def on_device_status_changed(self, device):
            seen.append(registry.get(device.ip_address).status)

    dispatcher.register_sink(ReadingSink())
    worker = threading.Thread(
        target=lambda: (
            registry.merge(device(ip_address="192.168.1.7"), T0),
            registry.transition("192.168.1.7", DeviceStatus.UNREACHABLE),
        )
    )
    worker.start()
    worker.join(timeout=3)

    assert not worker.is_alive()
    assert seen == [["192.168.1.7"], DeviceStatus.UNREACHABLE]
