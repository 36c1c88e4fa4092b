import errno
import socket
import threading
import time

import pytest

from padlink.descriptors import NETWORK_DESCRIPTOR
from padlink.report import ReportVariant, neutral_report
from padlink.server import ServerConfig, VirtualDeviceServer
from padlink.transport import ConnectionState
from padlink.udp import UdpTransport


class FakePeer:
    """Loopback data port that answers the handshake with ``reply``."""

    def __init__(self, reply=b"DESC_OK"):
        self.reply = reply
        self.received = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self._running = True
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self):
        while self._running:
            try:
                data, addr = self.sock.recvfrom(2048)
            except socket.timeout:
                continue
            except OSError:
                break
            self.received.append(data)
            if data.startswith(b"DESC") and self.reply is not None:
                self.sock.sendto(self.reply, addr)

    def wait_for(self, count, timeout=2.0):
        deadline = time.monotonic() + timeout
        while len(self.received) < count and time.monotonic() < deadline:
            time.sleep(0.01)
        return self.received

    def close(self):
        self._running = False
        self._thread.join(timeout=1.0)
        self.sock.close()


class Recorder:
    def __init__(self):
        self.states = []

    def __call__(self, transport, state):
        self.states.append(state)


@pytest.fixture
def peer():
    p = FakePeer()
    yield p
    p.close()


def _transport(port, **kwargs):
    kwargs.setdefault("liveness_interval", 60.0)
    return UdpTransport(discovery_port=0, data_port=port, handshake_timeout=1.0, **kwargs)


def test_connect_sends_descriptor_and_relays_reports(peer):
    transport = _transport(peer.port)
    recorder = Recorder()
    transport.add_state_listener(recorder)
    try:
        assert transport.connect("127.0.0.1")
        assert transport.connection_state is ConnectionState.CONNECTED
        assert transport.alive
        assert recorder.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

        report = bytes([1, 10, 20, 30, 0, 255, 40, 1, 0, 8])
        transport.send_report(report)
        received = peer.wait_for(2)
        assert received[0] == b"DESC" + NETWORK_DESCRIPTOR
        assert received[1] == report
        assert transport.last_report == report
    finally:
        transport.stop()
    assert transport.connection_state is ConnectionState.DISCONNECTED


def test_handshake_timeout_fails_without_connecting():
    silent = FakePeer(reply=None)
    transport = UdpTransport(discovery_port=0, data_port=silent.port, handshake_timeout=0.3)
    recorder = Recorder()
    transport.add_state_listener(recorder)
    try:
        started = time.monotonic()
        assert not transport.connect("127.0.0.1")
        assert time.monotonic() - started >= 0.3
        assert ConnectionState.CONNECTED not in recorder.states
        assert transport.connection_state is ConnectionState.DISCONNECTED
        assert transport.connected_address is None
    finally:
        silent.close()


def test_handshake_mismatch_fails():
    rude = FakePeer(reply=b"NOPE")
    transport = _transport(rude.port)
    try:
        assert not transport.connect("127.0.0.1")
        assert transport.connection_state is ConnectionState.DISCONNECTED
    finally:
        rude.close()


def test_send_without_connection_is_noop():
    transport = _transport(9)
    transport.send_report(neutral_report(ReportVariant.NETWORK))
    assert transport.last_report is None


def test_liveness_poll_resends_last_report(peer):
    transport = _transport(peer.port, liveness_interval=0.05)
    try:
        assert transport.connect("127.0.0.1")
        report = bytes([1, 0, 0, 0, 0, 0, 0, 0, 0, 8])
        transport.send_report(report)
        received = peer.wait_for(4)
        assert received[1:4] == [report, report, report]
    finally:
        transport.stop()


def test_liveness_poll_sends_neutral_report_before_input(peer):
    transport = _transport(peer.port, liveness_interval=0.05)
    try:
        assert transport.connect("127.0.0.1")
        received = peer.wait_for(2)
        assert received[1] == neutral_report(ReportVariant.NETWORK)
    finally:
        transport.stop()


def test_persists_last_connected_address(peer):
    class Settings:
        last_udp_address = None

        def set_last_udp_address(self, address):
            self.last_udp_address = address

    settings = Settings()
    transport = _transport(peer.port, settings=settings)
    try:
        assert transport.connect("127.0.0.1")
        assert settings.last_udp_address == "127.0.0.1"
    finally:
        transport.stop()


class RecordingDevice:
    is_open = True
    is_created = False

    def __init__(self):
        self.creates = []
        self.inputs = []

    def open(self):
        pass

    def create(self, descriptor):
        self.creates.append(bytes(descriptor))
        self.is_created = True

    def send_input(self, data):
        self.inputs.append(bytes(data))

    def read_event(self, timeout=0.5):
        time.sleep(timeout)
        return None

    def destroy(self):
        self.is_created = False


def test_end_to_end_with_server():
    device = RecordingDevice()
    server = VirtualDeviceServer(
        ServerConfig(broadcast_port=0, data_port=0, bind_host="127.0.0.1",
                     broadcast_address="127.0.0.1", broadcast_interval=60.0),
        device=device,
        ip_lookup=lambda: "127.0.0.1",
    )
    server.start()
    transport = _transport(server.data_port)
    try:
        assert transport.connect("127.0.0.1")
        report = bytes([1, 127, 127, 127, 0, 0, 127, 0, 0, 8])
        transport.send_report(report)

        deadline = time.monotonic() + 2.0
        while not device.inputs and time.monotonic() < deadline:
            time.sleep(0.01)
        assert device.creates == [NETWORK_DESCRIPTOR]
        assert device.inputs[0] == report
        assert server.connected
    finally:
        transport.stop()
        server.stop()


class FlakySocket:
    """Wraps a socket so the next ``failures`` sends raise ENETUNREACH."""

    def __init__(self, sock, failures=1):
        self._sock = sock
        self.failures = failures

    def sendto(self, data, addr):
        if self.failures:
            self.failures -= 1
            raise OSError(errno.ENETUNREACH, "Network is unreachable")
        return self._sock.sendto(data, addr)

    def __getattr__(self, name):
        return getattr(self._sock, name)


def _swap_socket(transport, failures):
    with transport._lock:
        transport._sock = FlakySocket(transport._sock, failures)


def test_failed_send_marks_link_dead(peer):
    transport = _transport(peer.port)
    alive = []
    transport.add_liveness_listener(alive.append)
    try:
        assert transport.connect("127.0.0.1")
        _swap_socket(transport, failures=1)
        transport.send_report(neutral_report(ReportVariant.NETWORK))
        assert not transport.alive
        assert transport.connection_state is ConnectionState.ERROR
        assert alive[-1] is False
    finally:
        transport.stop()


def test_liveness_recovers_from_transient_send_error(peer):
    transport = _transport(peer.port)
    recorder = Recorder()
    transport.add_state_listener(recorder)
    try:
        assert transport.connect("127.0.0.1")
        _swap_socket(transport, failures=1)

        transport._poll_liveness()
        assert transport.connection_state is ConnectionState.ERROR
        assert not transport.alive

        transport._poll_liveness()
        assert transport.connection_state is ConnectionState.CONNECTED
        assert transport.alive
        assert recorder.states[-2:] == [ConnectionState.ERROR, ConnectionState.CONNECTED]
    finally:
        transport.stop()


def _answer_discovery(port, replies, delay=0.1):
    def run():
        time.sleep(delay)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            for reply in replies:
                sock.sendto(reply, ("127.0.0.1", port))

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def test_discover_is_bounded_and_deduplicates():
    transport = _transport(9, broadcast_address="127.0.0.1")
    recorder = Recorder()
    transport.add_state_listener(recorder)
    transport.start()
    try:
        reply = b'{"ip": "192.168.1.20", "device_name": "desk", "timestamp": 1}'
        responder = _answer_discovery(transport.listener.bound_port, [reply, reply, b"garbage"])

        started = time.monotonic()
        devices = transport.discover(0.5)
        elapsed = time.monotonic() - started
        responder.join(timeout=1.0)

        assert 0.5 <= elapsed < 1.5
        assert [(d.address, d.name) for d in devices] == [("192.168.1.20", "desk")]
        assert recorder.states == [ConnectionState.DISCOVERING, ConnectionState.DISCONNECTED]
        assert transport.connection_state is ConnectionState.DISCONNECTED
    finally:
        transport.stop()


def test_discover_starts_from_an_empty_set():
    transport = _transport(9, broadcast_address="127.0.0.1")
    transport.start()
    try:
        reply = b'{"ip": "192.168.1.21", "device_name": "old", "timestamp": 1}'
        transport.listener.handle_datagram(reply)
        assert transport.discover(0.2) == []
    finally:
        transport.stop()
