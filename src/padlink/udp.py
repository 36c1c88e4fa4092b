"""
UDP transport: discovery, descriptor handshake and report relay to a
padlink server.
"""

import logging
import select
import socket
import threading
import time
from typing import Callable, List, Optional

from .discovery import DiscoveryListener
from .report import ReportVariant, neutral_report
from .timers import PeriodicTimer
from .transport import ConnectionState, DeviceDescriptor, Mode, Transport

logger = logging.getLogger(__name__)

DESC_MAGIC = b"DESC"
DESC_ACK = b"DESC_OK"


class HandshakeError(Exception):
    """The server did not acknowledge the descriptor."""


class UdpTransport(Transport):
    mode = Mode.UDP
    report_variant = ReportVariant.NETWORK
    # The liveness poll keeps the path warm instead of a fast keepalive
    keepalive_interval = None

    def __init__(
        self,
        discovery_port: int = 2242,
        data_port: int = 2243,
        handshake_timeout: float = 5.0,
        liveness_interval: float = 2.0,
        broadcast_address: str = "255.255.255.255",
        settings=None,
    ):
        super().__init__()
        self.data_port = data_port
        self.handshake_timeout = handshake_timeout
        self.liveness_interval = liveness_interval
        self.settings = settings

        self.listener = DiscoveryListener(
            port=discovery_port,
            broadcast_address=broadcast_address,
            on_change=lambda devices: self._publish_devices(devices),
        )

        self._lock = threading.Lock()
        self._sock: Optional[socket.socket] = None
        self._peer: Optional[str] = None
        self._last_report: Optional[bytes] = None
        self._liveness: Optional[PeriodicTimer] = None
        self._drain_thread: Optional[threading.Thread] = None
        self._alive = False
        self._alive_listeners: List[Callable[[bool], None]] = []
        self._stopping = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        self._stopping.clear()
        if not self.listener.start():
            self._set_state(ConnectionState.ERROR)

    def stop(self) -> None:
        self._stopping.set()
        self.disconnect()
        self.listener.stop()

    def supports_outgoing_connect(self) -> bool:
        return True

    @property
    def connected_address(self) -> Optional[str]:
        with self._lock:
            return self._peer

    @property
    def last_report(self) -> Optional[bytes]:
        with self._lock:
            return self._last_report

    @property
    def alive(self) -> bool:
        return self._alive

    def add_liveness_listener(self, listener: Callable[[bool], None]) -> None:
        self._alive_listeners.append(listener)

    # ------------------------------------------------------------------
    # Discovery

    def discover(self, timeout: float = 5.0) -> List[DeviceDescriptor]:
        """Collect servers for exactly ``timeout`` seconds."""
        if not self.listener.running and not self.listener.start():
            self._set_state(ConnectionState.ERROR)
            return []

        was_connected = self.is_connected
        if not was_connected:
            self._set_state(ConnectionState.DISCOVERING)

        self.listener.devices.clear()
        self.listener.probe()
        self._stopping.wait(timeout)

        devices = self.listener.devices.to_list()
        logger.info(f"Discovery finished: {len(devices)} device(s)")
        if not self.is_connected:
            self._set_state(ConnectionState.DISCONNECTED)
        return devices

    def last_connected_device(self, timeout: float = 3.0) -> Optional[DeviceDescriptor]:
        address = self.settings.last_udp_address if self.settings else None
        if not address:
            return None
        for device in self.discover(timeout):
            if device.address == address:
                return device
        return None

    def reconnect_last(self, timeout: float = 3.0) -> bool:
        device = self.last_connected_device(timeout)
        if device is None:
            logger.info("Last connected server not found")
            return False
        return self.connect(device.address)

    # ------------------------------------------------------------------
    # Connection

    def connect(self, address: str) -> bool:
        previous = self.connection_state
        self._set_state(ConnectionState.CONNECTING)

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind(("", 0))
            self._handshake(sock, address)
        except (OSError, HandshakeError) as e:
            logger.error(f"Connection to {address} failed: {e}")
            sock.close()
            self._set_state(previous)
            return False

        sock.setblocking(False)
        self._teardown_link()
        with self._lock:
            self._sock = sock
            self._peer = address
        if self.settings is not None:
            self.settings.set_last_udp_address(address)

        self._drain_thread = threading.Thread(target=self._drain_loop, args=(sock,), name="udp-drain", daemon=True)
        self._drain_thread.start()
        self._liveness = PeriodicTimer(self.liveness_interval, self._poll_liveness, name="udp-liveness")
        self._liveness.start()

        self._set_state(ConnectionState.CONNECTED)
        self._set_alive(True)
        logger.info(f"Connected to {address}:{self.data_port}")
        return True

    def _handshake(self, sock: socket.socket, address: str) -> None:
        packet = DESC_MAGIC + self.descriptor
        sock.sendto(packet, (address, self.data_port))
        deadline = time.monotonic() + self.handshake_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandshakeError(f"no acknowledgment within {self.handshake_timeout}s")
            sock.settimeout(remaining)
            try:
                data, _ = sock.recvfrom(1024)
            except socket.timeout:
                continue
            if data == DESC_ACK:
                logger.info("Descriptor acknowledgment received")
                return
            raise HandshakeError(f"unexpected reply {data[:16]!r}")

    def disconnect(self, address: Optional[str] = None) -> None:
        peer = self.connected_address
        if address is not None and address != peer:
            return
        self._teardown_link()
        if peer and self.settings is not None:
            self.settings.set_last_udp_address(peer)
        self._set_alive(False)
        self._set_state(ConnectionState.DISCONNECTED)

    def _teardown_link(self) -> None:
        if self._liveness:
            self._liveness.cancel()
            self._liveness = None
        with self._lock:
            sock, self._sock = self._sock, None
            self._peer = None
            self._last_report = None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        if self._drain_thread and self._drain_thread is not threading.current_thread():
            self._drain_thread.join(timeout=1.0)
        self._drain_thread = None

    def _drain_loop(self, sock: socket.socket) -> None:
        # Server replies (e.g. repeated DESC_OK) are read and dropped
        while True:
            with self._lock:
                if self._sock is not sock:
                    return
            try:
                readable, _, _ = select.select([sock], [], [], 0.5)
                if readable:
                    sock.recvfrom(2048)
            except (OSError, ValueError):
                return

    # ------------------------------------------------------------------
    # Sending

    def send_report(self, report: bytes) -> None:
        with self._lock:
            sock, peer = self._sock, self._peer
            if sock is None or peer is None:
                logger.debug("Cannot send input: not connected")
                return
            self._last_report = bytes(report)
        self._send(sock, peer, report)

    def _poll_liveness(self) -> None:
        with self._lock:
            sock, peer = self._sock, self._peer
            packet = self._last_report or neutral_report(ReportVariant.NETWORK)
        if sock is None or peer is None:
            self._set_alive(False)
            return
        if self._send(sock, peer, packet):
            self._set_alive(True)

    def _send(self, sock: socket.socket, peer: str, packet: bytes) -> bool:
        try:
            sock.sendto(packet, (peer, self.data_port))
        except (BlockingIOError, InterruptedError):
            return False
        except OSError as e:
            with self._lock:
                if self._sock is not sock:
                    # Link was torn down while this send was in flight
                    return False
            logger.error(f"Failed to send to {peer}: {e}")
            self._set_alive(False)
            self._set_state(ConnectionState.ERROR)
            return False
        with self._lock:
            recovered = self._sock is sock and self._state is ConnectionState.ERROR
        if recovered:
            logger.info(f"Link to {peer} recovered")
            self._set_state(ConnectionState.CONNECTED)
        return True

    def _set_alive(self, alive: bool) -> None:
        if alive == self._alive:
            return
        self._alive = alive
        for listener in list(self._alive_listeners):
            try:
                listener(alive)
            except Exception as e:
                logger.error(f"Liveness listener failed: {e}")
