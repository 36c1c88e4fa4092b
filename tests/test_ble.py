import pytest

pytest.importorskip("gi")

from padlink.ble import EncryptedLinkTransport  # noqa: E402
from padlink.descriptors import WIRELESS_DESCRIPTOR  # noqa: E402
from padlink.gatt_app import uuid16  # noqa: E402
from padlink.hid_link import BondState  # noqa: E402
from padlink.transport import ConnectionState  # noqa: E402

HOST = "AA:BB:CC:DD:EE:FF"
REPORT = bytes([0x01, 1, 2, 3, 4, 0x10, 0x00, 8])


class FakeApp:
    def __init__(self):
        self.notified = []

    def notify(self, char, value):
        self.notified.append(value)
        return True


def _transport():
    transport = EncryptedLinkTransport()
    services = transport.build_services()
    transport._app = FakeApp()
    return transport, services


def test_services_expose_hid_battery_device_info_and_gap():
    _, services = _transport()
    assert [s.uuid for s in services] == [uuid16(0x1812), uuid16(0x180A), uuid16(0x180F), uuid16(0x1800)]
    report_map = next(c for c in services[0].characteristics if c.uuid == uuid16(0x2A4B))
    assert report_map.value == WIRELESS_DESCRIPTOR
    for char in services[0].characteristics:
        assert any(flag.startswith("encrypt-") for flag in char.flags)


def test_no_notification_until_bonded_and_subscribed():
    transport, _ = _transport()
    transport.send_report(REPORT)
    transport.link.peer_connected(HOST)
    transport.send_report(REPORT)

    transport.link.notifications_changed(True)
    transport.send_report(REPORT)
    assert transport._app.notified == []

    transport.link.notifications_changed(False)
    transport.link.bond_changed(HOST, BondState.BONDED)
    transport.send_report(REPORT)
    assert transport._app.notified == []

    transport.link.notifications_changed(True)
    transport.send_report(REPORT)
    assert transport._app.notified == [REPORT[1:]]
    assert transport.connection_state is ConnectionState.CONNECTED


def test_report_characteristic_serves_latest_report():
    transport, services = _transport()
    transport.send_report(REPORT)
    report_char = next(c for c in services[0].characteristics if c.uuid == uuid16(0x2A4D))
    assert report_char.value() == REPORT[1:]


def test_control_point_and_protocol_mode():
    transport, _ = _transport()
    transport._on_control_point(b"\x00")
    assert transport.suspended
    transport._on_control_point(b"\x01")
    assert not transport.suspended
    transport._on_protocol_mode(b"\x00")
    assert transport.protocol_mode == 0


def test_pairing_agent_marks_bonding():
    transport, _ = _transport()
    transport.link.peer_connected(HOST)
    transport._on_pairing_started(HOST)
    assert transport.link.bond_state is BondState.BONDING
    assert transport.connection_state is ConnectionState.CONNECTING


def test_advertising_errors_are_classified():
    from padlink.adv import AdvertisingError, classify_advertising_error

    assert classify_advertising_error("org.bluez.Error.AlreadyExists") is AdvertisingError.ALREADY_STARTED
    assert classify_advertising_error("org.bluez.Error.InvalidLength") is AdvertisingError.DATA_TOO_LARGE
    assert classify_advertising_error("org.bluez.Error.NotSupported") is AdvertisingError.FEATURE_UNSUPPORTED
    assert classify_advertising_error("Maximum advertisements reached") is AdvertisingError.TOO_MANY_ADVERTISERS
    assert classify_advertising_error("Failed") is AdvertisingError.INTERNAL_ERROR


def test_advertisement_failure_maps_to_error_state():
    transport, _ = _transport()
    transport._on_adv_registered(False, "org.bluez.Error.AlreadyExists")
    assert transport.connection_state is ConnectionState.ERROR


def test_advertisement_release_returns_link_to_idle():
    transport, _ = _transport()
    states = []
    transport.add_state_listener(lambda t, s: states.append(s))
    transport._adv_registered = True
    transport.link.advertising_started()
    assert transport.connection_state is ConnectionState.DISCOVERING

    transport._on_adv_released()
    assert not transport._adv_registered
    assert transport.connection_state is ConnectionState.DISCONNECTED
    assert states[-1] is ConnectionState.DISCONNECTED


def test_advertisement_release_keeps_connected_peer():
    transport, _ = _transport()
    transport.link.advertising_started()
    transport.link.peer_connected(HOST)
    transport.link.bond_changed(HOST, BondState.BONDED)
    transport.link.notifications_changed(True)

    transport._on_adv_released()
    assert transport.connection_state is ConnectionState.CONNECTED
