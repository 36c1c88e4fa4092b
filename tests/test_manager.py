import time

import pytest

from padlink.config import Settings
from padlink.manager import ConnectionManager, transport_factories
from padlink.report import LogicalInputState, ReportVariant, TriggerPolicy, encode, neutral_report
from padlink.transport import ConnectionState, DeviceDescriptor, Mode, Transport


class FakeTransport(Transport):
    def __init__(self, mode, variant, log, keepalive=None, fail_stop=False):
        super().__init__()
        self.mode = mode
        self.report_variant = variant
        self.keepalive_interval = keepalive
        self.log = log
        self.fail_stop = fail_stop
        self.sent = []

    def start(self):
        self.log.append(("start", self.mode))
        self._set_state(ConnectionState.DISCOVERING)

    def stop(self):
        self.log.append(("stop", self.mode))
        if self.fail_stop:
            raise RuntimeError("adapter vanished")
        self._set_state(ConnectionState.DISCONNECTED)

    def send_report(self, report):
        self.sent.append(report)

    def discover(self, timeout=5.0):
        devices = [DeviceDescriptor("10.0.0.3", "pad", 1)]
        self._publish_devices(devices)
        return devices


@pytest.fixture
def settings(tmp_path):
    return Settings(str(tmp_path / "padlink.ini"))


def _manager(settings, log, overrides=None):
    overrides = overrides or {}
    made = {}

    def factory(mode, variant):
        def build():
            transport = FakeTransport(mode, variant, log, **overrides.get(mode, {}))
            made[mode] = transport
            return transport
        return build

    factories = {
        Mode.CLASSIC: factory(Mode.CLASSIC, ReportVariant.PAIRED),
        Mode.BLE: factory(Mode.BLE, ReportVariant.WIRELESS),
        Mode.UDP: factory(Mode.UDP, ReportVariant.NETWORK),
    }
    return ConnectionManager(settings, factories), made


def test_send_without_transport_is_noop(settings):
    manager, _ = _manager(settings, [])
    manager.send_input(LogicalInputState())
    manager.send_report(b"\x01")
    assert manager.connection_state is ConnectionState.DISCONNECTED
    assert manager.discover(0.1) == []
    assert manager.paired_devices() == []


def test_switch_stops_previous_before_starting_next(settings):
    log = []
    manager, _ = _manager(settings, log)
    assert manager.switch_mode(Mode.BLE)
    assert manager.switch_mode(Mode.UDP)
    assert log == [("start", Mode.BLE), ("stop", Mode.BLE), ("start", Mode.UDP)]
    assert manager.mode is Mode.UDP


def test_switch_to_same_mode_is_noop(settings):
    log = []
    manager, _ = _manager(settings, log)
    manager.switch_mode(Mode.BLE)
    manager.switch_mode(Mode.BLE)
    assert log == [("start", Mode.BLE)]


def test_stop_errors_are_swallowed(settings):
    log = []
    manager, _ = _manager(settings, log, {Mode.CLASSIC: {"fail_stop": True}})
    manager.switch_mode(Mode.CLASSIC)
    assert manager.switch_mode(Mode.UDP)
    assert manager.mode is Mode.UDP


def test_input_encoded_with_active_layout(settings):
    manager, made = _manager(settings, [])
    state = LogicalInputState(buttons=1 << 8, left_x=10)

    manager.switch_mode(Mode.BLE)
    manager.send_input(state)
    assert made[Mode.BLE].sent == [encode(state, ReportVariant.WIRELESS)]

    manager.switch_mode(Mode.UDP)
    manager.send_input(state)
    assert made[Mode.UDP].sent == [encode(state, ReportVariant.NETWORK)]
    assert made[Mode.UDP].sent[0][4] == 255
    assert made[Mode.BLE].sent == [encode(state, ReportVariant.WIRELESS)]


def test_trigger_policy_is_applied(settings):
    manager, made = _manager(settings, [])
    manager.trigger_policy = TriggerPolicy.ANALOG
    manager.switch_mode(Mode.UDP)
    manager.send_input(LogicalInputState(left_trigger=60))
    assert made[Mode.UDP].sent[0][4] == 60


def test_state_events_from_inactive_transport_are_ignored(settings):
    manager, made = _manager(settings, [])
    seen = []
    manager.add_state_listener(lambda mode, state: seen.append((mode, state)))

    manager.switch_mode(Mode.BLE)
    old = made[Mode.BLE]
    manager.switch_mode(Mode.UDP)
    seen.clear()

    old._set_state(ConnectionState.CONNECTED)
    assert seen == []
    made[Mode.UDP]._set_state(ConnectionState.CONNECTED)
    assert seen == [(Mode.UDP, ConnectionState.CONNECTED)]


def test_discovered_devices_are_republished(settings):
    manager, _ = _manager(settings, [])
    found = []
    manager.add_devices_listener(found.append)
    manager.switch_mode(Mode.UDP)
    assert [d.address for d in manager.discover(0.1)] == ["10.0.0.3"]
    assert [d.address for d in found[0]] == ["10.0.0.3"]


def test_set_mode_persists_preference(settings):
    manager, _ = _manager(settings, [])
    manager.set_mode(Mode.CLASSIC)
    assert Settings(settings.path).mode is Mode.CLASSIC


def test_keepalive_resends_last_report(settings):
    manager, made = _manager(settings, [], {Mode.BLE: {"keepalive": 0.02}})
    manager.switch_mode(Mode.BLE)
    try:
        time.sleep(0.1)
        transport = made[Mode.BLE]
        assert transport.sent
        assert set(transport.sent) == {neutral_report(ReportVariant.WIRELESS)}

        state = LogicalInputState(buttons=1)
        manager.send_input(state)
        count = len(transport.sent)
        time.sleep(0.1)
        assert set(transport.sent[count:]) == {encode(state, ReportVariant.WIRELESS)}
    finally:
        manager.shutdown()
    assert manager.transport is None


def test_shutdown_stops_transport(settings):
    log = []
    manager, _ = _manager(settings, log)
    manager.switch_mode(Mode.UDP)
    manager.shutdown()
    assert log[-1] == ("stop", Mode.UDP)
    manager.shutdown()


def test_factories_apply_configured_keepalive(tmp_path):
    pytest.importorskip("gi")
    path = tmp_path / "padlink.ini"
    path.write_text("[bluetooth]\nkeepalive_interval = 0.2\n")
    factories = transport_factories(Settings(str(path)))

    assert factories[Mode.CLASSIC]().keepalive_interval == 0.2
    assert factories[Mode.BLE]().keepalive_interval == 0.2
    assert factories[Mode.UDP]().keepalive_interval is None
