import json
import socket

import pytest

from padlink.descriptors import NETWORK_DESCRIPTOR
from padlink.server import ServerConfig, VirtualDeviceServer, is_discovery_request

NEUTRAL_8 = bytes([0, 127, 127, 127, 127, 0, 0, 8])


class FakeDevice:
    """Records what the server would write to /dev/uhid."""

    def __init__(self, can_open=True):
        self.can_open = can_open
        self.is_open = False
        self.is_created = False
        self.creates = []
        self.inputs = []
        self.destroyed = False

    def open(self):
        from padlink.uhid import UHIDError
        if not self.can_open:
            raise UHIDError("no uhid here")
        self.is_open = True

    def create(self, descriptor):
        self.creates.append(bytes(descriptor))
        self.is_created = True

    def send_input(self, data):
        self.inputs.append(bytes(data))

    def read_event(self, timeout=0.5):
        return None

    def destroy(self):
        self.destroyed = True
        self.is_created = False
        self.is_open = False


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _config(**kwargs):
    return ServerConfig(
        broadcast_port=0,
        data_port=0,
        bind_host="127.0.0.1",
        broadcast_address="127.0.0.1",
        **kwargs,
    )


@pytest.fixture
def server():
    device = FakeDevice()
    srv = VirtualDeviceServer(_config(broadcast_interval=60.0), device=device, clock=Clock(), ip_lookup=lambda: "10.0.0.7")
    srv.start()
    yield srv
    srv.stop()


def _client():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    return sock


def test_discovery_request_matching():
    assert is_discovery_request(b"discover")
    assert is_discovery_request(b'{"device_info": true}')
    assert not is_discovery_request(b"hello")


def test_discover_reply_carries_ip_and_name(server):
    sock = _client()
    try:
        sock.sendto(b"discover", ("127.0.0.1", server.discovery_port))
        data, _ = sock.recvfrom(1024)
    finally:
        sock.close()
    reply = json.loads(data)
    assert reply["ip"] == "10.0.0.7"
    assert reply["device_name"] == "AGamePad-UDP"
    assert isinstance(reply["timestamp"], int)


def test_descriptor_handshake_creates_device_once(server):
    descriptor = NETWORK_DESCRIPTOR[:20]
    sock = _client()
    try:
        for _ in range(2):
            sock.sendto(b"DESC" + descriptor, ("127.0.0.1", server.data_port))
            data, _ = sock.recvfrom(64)
            assert data == b"DESC_OK"
    finally:
        sock.close()
    assert server.device.creates == [descriptor]
    assert server.descriptor == descriptor


def test_report_is_forwarded_verbatim():
    device = FakeDevice()
    srv = VirtualDeviceServer(_config(), device=device, clock=Clock(), ip_lookup=lambda: "10.0.0.7")
    device.open()
    assert srv.handle_datagram(b"DESC" + NETWORK_DESCRIPTOR) == b"DESC_OK"
    assert srv.handle_datagram(NEUTRAL_8) is None
    assert device.inputs == [NEUTRAL_8]
    assert srv.connected


def test_wrong_length_datagrams_are_dropped():
    device = FakeDevice()
    srv = VirtualDeviceServer(_config(), device=device, clock=Clock(), ip_lookup=lambda: "10.0.0.7")
    device.open()
    srv.handle_datagram(b"DESC" + NETWORK_DESCRIPTOR)
    srv.handle_datagram(bytes(5))
    srv.handle_datagram(bytes(9))
    assert device.inputs == []
    assert not srv.connected


def test_input_before_handshake_marks_connected_but_is_not_forwarded():
    device = FakeDevice()
    srv = VirtualDeviceServer(_config(), device=device, clock=Clock(), ip_lookup=lambda: "10.0.0.7")
    srv.handle_datagram(NEUTRAL_8)
    assert srv.connected
    assert device.inputs == []


def test_broadcast_resumes_after_silence():
    clock = Clock()
    srv = VirtualDeviceServer(_config(), device=FakeDevice(), clock=clock, ip_lookup=lambda: "10.0.0.7")
    assert srv.should_broadcast()

    srv.handle_datagram(NEUTRAL_8)
    assert not srv.should_broadcast()

    clock.now += 4.0
    assert not srv.should_broadcast()

    clock.now += 2.0
    assert srv.should_broadcast()
    assert not srv.connected


def test_broadcast_tick_announces_on_discovery_port():
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.bind(("127.0.0.1", 0))
    listener.settimeout(2.0)
    srv = VirtualDeviceServer(
        _config(announce_port=listener.getsockname()[1], broadcast_interval=60.0),
        device=FakeDevice(), clock=Clock(), ip_lookup=lambda: "10.0.0.7",
    )
    srv.start()
    try:
        assert srv.broadcast_tick()
        data, _ = listener.recvfrom(1024)
        assert json.loads(data)["ip"] == "10.0.0.7"

        srv.handle_datagram(NEUTRAL_8)
        assert not srv.broadcast_tick()
    finally:
        srv.stop()
        listener.close()


def test_degraded_mode_without_uhid():
    device = FakeDevice(can_open=False)
    srv = VirtualDeviceServer(_config(broadcast_interval=60.0), device=device, clock=Clock(), ip_lookup=lambda: "10.0.0.7")
    srv.start()
    try:
        assert srv.degraded
        assert srv.handle_datagram(b"DESC" + NETWORK_DESCRIPTOR) == b"DESC_OK"
        assert device.creates == []
    finally:
        srv.stop()


def test_stop_destroys_device(server):
    server.handle_datagram(b"DESC" + NETWORK_DESCRIPTOR)
    server.stop()
    assert server.device.destroyed
