from padlink.transport import ConnectionState, DeviceDescriptor, DeviceSet, Mode, Transport


def test_device_descriptor_json_keys():
    device = DeviceDescriptor("192.168.1.20", "AGamePad-UDP", 1700000000)
    assert DeviceDescriptor.from_json(device.to_json().encode()) == device
    assert '"ip"' in device.to_json()
    assert '"device_name"' in device.to_json()


def test_device_descriptor_rejects_malformed():
    assert DeviceDescriptor.from_json(b"discover") is None
    assert DeviceDescriptor.from_json(b'{"device_name": "x"}') is None
    assert DeviceDescriptor.from_json(b"\xff\xfe") is None


def test_device_set_dedups_by_address():
    devices = DeviceSet()
    assert devices.merge(DeviceDescriptor("10.0.0.2", "pad", 100))
    assert not devices.merge(DeviceDescriptor("10.0.0.2", "pad", 100))
    assert devices.merge(DeviceDescriptor("10.0.0.2", "pad-renamed", 200))
    assert not devices.merge(DeviceDescriptor("10.0.0.2", "stale", 50))

    assert len(devices) == 1
    assert devices.get("10.0.0.2").name == "pad-renamed"


def test_mode_parse():
    assert Mode.parse("classic") is Mode.CLASSIC
    assert Mode.parse("UDP") is Mode.UDP
    assert Mode.parse("") is Mode.BLE


class _Dummy(Transport):
    mode = Mode.BLE

    def start(self):
        self._set_state(ConnectionState.DISCOVERING)

    def stop(self):
        self._set_state(ConnectionState.DISCONNECTED)

    def send_report(self, report):
        pass


def test_listener_errors_do_not_propagate():
    transport = _Dummy()
    seen = []

    def broken(t, state):
        raise RuntimeError("boom")

    transport.add_state_listener(broken)
    transport.add_state_listener(lambda t, s: seen.append(s))
    transport.start()
    assert seen == [ConnectionState.DISCOVERING]
    assert transport.raw_state is ConnectionState.DISCOVERING


def test_base_transport_does_not_connect():
    transport = _Dummy()
    assert transport.connect("AA:BB:CC:DD:EE:FF") is False
    assert transport.discover(0.1) == []
    assert not transport.supports_outgoing_connect()
