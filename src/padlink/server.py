"""
UDP gamepad server backed by a UHID virtual device.

Runs on the machine that should see the controller. Answers discovery
requests, announces itself while no client is sending, accepts a descriptor
handshake to create the virtual device and relays report datagrams into it.

Usage:
    sudo padlink-server --bport 2242 --uport 2243 --name AGamePad-UDP -v
"""

import argparse
import logging
import signal
import socket
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import psutil

from .timers import PeriodicTimer
from .transport import DeviceDescriptor
from .uhid import EVENT_NAMES, Bus, UHIDDevice, UHIDError

logger = logging.getLogger(__name__)

DESC_MAGIC = b"DESC"
DESC_ACK = b"DESC_OK"
REPORT_SIZES = (8, 10)


class ServerStartError(Exception):
    """Raised when the UDP ports cannot be bound."""


@dataclass
class ServerConfig:
    broadcast_port: int = 2242
    data_port: int = 2243
    name: str = "AGamePad-UDP"
    verbose: bool = False
    bind_host: str = ""
    broadcast_address: str = "255.255.255.255"
    # Port the announcement is sent to; defaults to broadcast_port
    announce_port: Optional[int] = None
    broadcast_interval: float = 2.0
    connection_timeout: float = 5.0

    device_name: str = "AGamePad Virtual Controller"
    phys: str = "uhid-agamepad"
    uniq: str = "agamepad-001"
    bus: int = Bus.USB
    vendor: int = 0x046D
    product: int = 0x0000
    version: int = 0x0100
    country: int = 0


def local_ip() -> str:
    """First IPv4 address of an up, non-loopback interface, else 127.0.0.1."""
    try:
        stats = psutil.net_if_stats()
        for iface, addrs in psutil.net_if_addrs().items():
            st = stats.get(iface)
            if st is None or not st.isup:
                continue
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    return addr.address
    except (OSError, RuntimeError) as e:
        logger.debug(f"Interface enumeration failed: {e}")
    return "127.0.0.1"


def is_discovery_request(message: bytes) -> bool:
    text = message.decode("utf-8", errors="replace").strip()
    return text.lower() == "discover" or "device_info" in text


class VirtualDeviceServer:
    """Discovery responder, announcer and report relay.

    ``device`` defaults to a UHIDDevice built from the config; tests pass
    one pointing at a plain file. ``clock`` drives the liveness policy.
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        device: Optional[UHIDDevice] = None,
        clock: Callable[[], float] = time.monotonic,
        ip_lookup: Callable[[], str] = local_ip,
    ):
        self.config = config or ServerConfig()
        self.device = device or UHIDDevice(
            name=self.config.device_name,
            phys=self.config.phys,
            uniq=self.config.uniq,
            bus=self.config.bus,
            vendor=self.config.vendor,
            product=self.config.product,
            version=self.config.version,
            country=self.config.country,
        )
        self._clock = clock
        self._ip_lookup = ip_lookup

        self._discovery_sock: Optional[socket.socket] = None
        self._data_sock: Optional[socket.socket] = None
        self._threads = []
        self._broadcaster: Optional[PeriodicTimer] = None
        self._running = threading.Event()
        self._lock = threading.Lock()

        self.info = DeviceDescriptor(ip_lookup(), self.config.name)
        self.descriptor: Optional[bytes] = None
        self._connected = False
        self._last_input = 0.0
        self.degraded = False

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        """Open the UHID handle and bind both ports.

        UHID problems only put the server in degraded mode; a port that
        cannot be bound raises ServerStartError.
        """
        try:
            self.device.open()
        except UHIDError as e:
            logger.warning(f"UHID device setup failed: {e} (continuing without UHID)")
            self.degraded = True

        try:
            self._discovery_sock = self._bind(self.config.broadcast_port, broadcast=True)
            self._data_sock = self._bind(self.config.data_port)
        except OSError as e:
            self._close_sockets()
            self.device.destroy()
            raise ServerStartError(f"Failed to bind UDP ports: {e}")

        self._running.set()
        self._spawn(self._discovery_loop, "discovery")
        self._spawn(self._data_loop, "data")
        if self.device.is_open:
            self._spawn(self._kernel_event_loop, "uhid-events")
        self._broadcaster = PeriodicTimer(self.config.broadcast_interval, self.broadcast_tick, name="announce")
        self._broadcaster.start()

        logger.info(f"Listening for discovery on port {self.discovery_port}")
        logger.info(f"UDP server listening on port {self.data_port}")
        logger.info(f"Advertising as: {self.info.name} ({self.info.address})")

    def stop(self) -> None:
        if not self._running.is_set():
            return
        logger.info("Shutting down server...")
        self._running.clear()
        if self._broadcaster:
            self._broadcaster.cancel()
            self._broadcaster = None
        self._close_sockets()
        for thread in self._threads:
            thread.join(timeout=2.0)
        self._threads.clear()
        # Destroy before the handle is closed
        self.device.destroy()
        logger.info("Server stopped")

    def serve_forever(self) -> None:
        self.start()
        stop = threading.Event()

        def on_signal(sig, frame):
            logger.info("Received shutdown signal")
            stop.set()

        signal.signal(signal.SIGINT, on_signal)
        signal.signal(signal.SIGTERM, on_signal)
        try:
            while not stop.wait(0.5):
                pass
        finally:
            self.stop()

    def _bind(self, port: int, broadcast: bool = False) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        try:
            sock.bind((self.config.bind_host, port))
        except OSError:
            sock.close()
            raise
        sock.settimeout(0.5)
        return sock

    def _close_sockets(self) -> None:
        for sock in (self._discovery_sock, self._data_sock):
            if sock is not None:
                try:
                    sock.close()
                except OSError:
                    pass
        self._discovery_sock = None
        self._data_sock = None

    def _spawn(self, target, name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    @property
    def discovery_port(self) -> int:
        if self._discovery_sock is None:
            return self.config.broadcast_port
        return self._discovery_sock.getsockname()[1]

    @property
    def data_port(self) -> int:
        if self._data_sock is None:
            return self.config.data_port
        return self._data_sock.getsockname()[1]

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    # ------------------------------------------------------------------
    # Discovery

    def _discovery_loop(self) -> None:
        sock = self._discovery_sock
        while self._running.is_set():
            try:
                data, addr = sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError as e:
                if self._running.is_set():
                    logger.error(f"Error reading discovery message: {e}")
                break
            if self.config.verbose:
                logger.info(f"Received broadcast from {addr}: {data!r}")
            if is_discovery_request(data):
                self._respond_to_discovery(sock, addr)

    def _respond_to_discovery(self, sock: socket.socket, addr: Tuple[str, int]) -> None:
        self.info.timestamp = int(time.time())
        payload = self.info.to_json().encode("utf-8")
        try:
            sock.sendto(payload, addr)
            logger.info(f"Sent device info to {addr}: {payload.decode()}")
        except OSError as e:
            logger.error(f"Failed to send device info response: {e}")

    def should_broadcast(self) -> bool:
        """Announce while unconnected; a silent client counts as gone."""
        with self._lock:
            if self._connected and self._clock() - self._last_input > self.config.connection_timeout:
                logger.warning("Connection timeout, resuming broadcast...")
                self._connected = False
            return not self._connected

    def broadcast_tick(self) -> bool:
        """One announcement round. Returns True if a packet was sent."""
        self.info.address = self._ip_lookup()
        if not self.should_broadcast():
            return False
        sock = self._discovery_sock
        if sock is None:
            return False
        self.info.timestamp = int(time.time())
        payload = self.info.to_json().encode("utf-8")
        target = (self.config.broadcast_address, self.config.announce_port or self.discovery_port)
        try:
            sock.sendto(payload, target)
        except OSError as e:
            logger.error(f"Failed to broadcast device info: {e}")
            return False
        if self.config.verbose:
            logger.info(f"Broadcasting: {payload.decode()}")
        return True

    # ------------------------------------------------------------------
    # Data path

    def _data_loop(self) -> None:
        sock = self._data_sock
        while self._running.is_set():
            try:
                data, addr = sock.recvfrom(2048)
            except socket.timeout:
                continue
            except OSError as e:
                if self._running.is_set():
                    logger.error(f"Error reading UDP message: {e}")
                break
            reply = self.handle_datagram(data, addr)
            if reply is not None:
                try:
                    sock.sendto(reply, addr)
                    logger.info(f"Sent descriptor acknowledgment to {addr}")
                except OSError as e:
                    logger.error(f"Failed to send descriptor acknowledgment: {e}")

    def handle_datagram(self, data: bytes, addr=None) -> Optional[bytes]:
        """Process one datagram from the data port; returns the reply, if any."""
        if len(data) > len(DESC_MAGIC) and data[:len(DESC_MAGIC)] == DESC_MAGIC:
            self._handle_descriptor(data[len(DESC_MAGIC):], addr)
            return DESC_ACK
        if len(data) in REPORT_SIZES:
            self._handle_report(data, addr)
        else:
            logger.warning(f"Received {len(data)} bytes from {addr}, expected 8, 10 or descriptor")
        return None

    def _handle_descriptor(self, descriptor: bytes, addr) -> None:
        logger.info(f"Received HID descriptor from {addr} ({len(descriptor)} bytes)")
        logger.debug(f"Descriptor bytes: {descriptor.hex()}")
        self.descriptor = bytes(descriptor)

        if not self.device.is_open:
            logger.warning("UHID handle not available, skipping device creation")
            return
        if self.device.is_created:
            logger.info("UHID device already created, skipping")
            return
        try:
            self.device.create(self.descriptor)
        except UHIDError as e:
            logger.error(f"Failed to create UHID device: {e}")

    def _handle_report(self, data: bytes, addr) -> None:
        with self._lock:
            self._last_input = self._clock()
            if not self._connected:
                self._connected = True
                logger.info(f"Device connected from {addr}")

        if not self.device.is_created:
            logger.debug("UHID device not created yet, ignoring input")
            return
        try:
            self.device.send_input(data)
        except UHIDError as e:
            logger.error(f"Failed to write to UHID device: {e}")
            return
        if self.config.verbose:
            logger.info(f"Forwarded {len(data)} bytes (report ID {data[0]}): {data.hex()}")

    # ------------------------------------------------------------------
    # Kernel events

    def _kernel_event_loop(self) -> None:
        logger.info("Started reading UHID events from kernel")
        while self._running.is_set() and self.device.is_open:
            event = self.device.read_event(timeout=0.5)
            if event is None:
                self._running.wait(0.05)
                continue
            event_type, raw = event
            name = EVENT_NAMES.get(event_type)
            if name:
                logger.info(f"UHID event from kernel: {name} ({len(raw)} bytes)")
        logger.info("Stopped reading UHID events")


def main(argv=None):
    parser = argparse.ArgumentParser(description="UDP gamepad server (UHID virtual device)")
    parser.add_argument("--bport", type=int, default=2242, help="UDP port for discovery broadcast (default: 2242)")
    parser.add_argument("--uport", type=int, default=2243, help="UDP port for gamepad input (default: 2243)")
    parser.add_argument("--name", default="AGamePad-UDP", help="Name of the device to advertise")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging (all packets)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    server = VirtualDeviceServer(ServerConfig(
        broadcast_port=args.bport,
        data_port=args.uport,
        name=args.name,
        verbose=args.verbose,
    ))
    try:
        server.serve_forever()
    except ServerStartError as e:
        logger.error(f"Server failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
