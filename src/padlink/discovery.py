"""
Client-side UDP discovery listener.

A persistent socket on the discovery port collects server announcements
and replies to "discover" probes into a DeviceSet. It outlives individual
discover() and connect() calls.
"""

import logging
import socket
import threading
from typing import Callable, List, Optional

from .transport import DeviceDescriptor, DeviceSet

logger = logging.getLogger(__name__)

DISCOVER_MESSAGE = b"discover"


class DiscoveryListener:
    def __init__(
        self,
        port: int = 2242,
        broadcast_address: str = "255.255.255.255",
        on_change: Optional[Callable[[List[DeviceDescriptor]], None]] = None,
        bind_host: str = "",
    ):
        self.port = port
        self.broadcast_address = broadcast_address
        self.on_change = on_change
        self.bind_host = bind_host
        self.devices = DeviceSet()

        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self) -> bool:
        """Bind and start the read loop. Returns False if the port is unavailable."""
        if self._running:
            return True
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.bind_host, self.port))
            sock.settimeout(0.5)
        except OSError as e:
            logger.error(f"Failed to bind discovery listener to port {self.port}: {e}")
            sock.close()
            return False

        self._sock = sock
        self._running = True
        self._thread = threading.Thread(target=self._read_loop, name="discovery-listener", daemon=True)
        self._thread.start()
        logger.info(f"Discovery listener bound to port {self.bound_port}")
        return True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._sock:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def bound_port(self) -> int:
        if self._sock is None:
            return self.port
        return self._sock.getsockname()[1]

    def probe(self, target_port: Optional[int] = None) -> bool:
        """Broadcast a discovery request; servers answer to this socket."""
        if self._sock is None:
            return False
        try:
            self._sock.sendto(DISCOVER_MESSAGE, (self.broadcast_address, target_port or self.port))
            return True
        except OSError as e:
            logger.warning(f"Discovery probe failed: {e}")
            return False

    def _read_loop(self) -> None:
        while self._running:
            try:
                data, addr = self._sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"Discovery socket error: {e}")
                break
            self.handle_datagram(data, addr)

    def handle_datagram(self, data: bytes, addr=None) -> Optional[DeviceDescriptor]:
        device = DeviceDescriptor.from_json(data)
        if device is None:
            logger.debug(f"Ignoring non-device datagram from {addr}: {data[:32]!r}")
            return None
        if self.devices.merge(device):
            logger.debug(f"Discovered {device.name} ({device.address})")
            if self.on_change:
                try:
                    self.on_change(self.devices.to_list())
                except Exception as e:
                    logger.error(f"Discovery callback failed: {e}")
        return device
