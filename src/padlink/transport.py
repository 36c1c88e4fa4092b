"""
Transport interface shared by the paired-profile, encrypted-link and UDP
transports.

Every transport exposes the same lifecycle, a report layout, capability
queries and observable state. Transport-specific raw states are mapped onto
the shared ``ConnectionState`` vocabulary before listeners see them.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .descriptors import descriptor_for
from .report import ReportVariant

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Mode(Enum):
    CLASSIC = "classic"
    BLE = "ble"
    UDP = "udp"

    @classmethod
    def parse(cls, value: str) -> "Mode":
        value = (value or "").strip().lower()
        if value in ("classic", "br/edr", "bredr", "paired"):
            return cls.CLASSIC
        if value in ("udp", "network", "wifi"):
            return cls.UDP
        return cls.BLE


@dataclass
class DeviceDescriptor:
    """A reachable peer. Identity is the address."""
    address: str
    name: str = ""
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def to_json(self) -> str:
        return json.dumps({"ip": self.address, "device_name": self.name, "timestamp": self.timestamp})

    @classmethod
    def from_json(cls, payload) -> Optional["DeviceDescriptor"]:
        """Parse a discovery reply. Returns None for anything malformed."""
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return None
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or not data.get("ip"):
            return None
        try:
            timestamp = int(data.get("timestamp", 0))
        except (TypeError, ValueError):
            timestamp = 0
        return cls(str(data["ip"]), str(data.get("device_name", "")), timestamp)


class DeviceSet:
    """Discovered devices keyed by address; newer timestamps win."""

    def __init__(self):
        self._devices: Dict[str, DeviceDescriptor] = {}
        self._lock = threading.Lock()

    def merge(self, device: DeviceDescriptor) -> bool:
        """Insert or update. Returns True if the set changed."""
        with self._lock:
            current = self._devices.get(device.address)
            if current is not None and current.timestamp > device.timestamp:
                return False
            if current == device:
                return False
            self._devices[device.address] = device
            return True

    def clear(self) -> None:
        with self._lock:
            self._devices.clear()

    def get(self, address: str) -> Optional[DeviceDescriptor]:
        with self._lock:
            return self._devices.get(address)

    def to_list(self) -> List[DeviceDescriptor]:
        with self._lock:
            return list(self._devices.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)


StateListener = Callable[["Transport", ConnectionState], None]
DevicesListener = Callable[["Transport", List[DeviceDescriptor]], None]


class Transport:
    """Base class for a delivery channel to a host.

    Subclasses implement ``start``/``stop``/``send_report`` and call
    ``_set_state`` / ``_publish_devices`` when things change.
    """

    mode: Mode
    report_variant: ReportVariant = ReportVariant.WIRELESS
    keepalive_interval: Optional[float] = None

    def __init__(self):
        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: List[StateListener] = []
        self._devices_listeners: List[DevicesListener] = []

    @property
    def descriptor(self) -> bytes:
        return descriptor_for(self.report_variant)

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def connect(self, address: str) -> bool:
        logger.info(f"{type(self).__name__} does not initiate connections ({address})")
        return False

    def disconnect(self, address: Optional[str] = None) -> None:
        pass

    def send_report(self, report: bytes) -> None:
        raise NotImplementedError

    def discover(self, timeout: float = 5.0) -> List[DeviceDescriptor]:
        return []

    def supports_paired_device_list(self) -> bool:
        return False

    def supports_outgoing_connect(self) -> bool:
        return False

    def paired_devices(self) -> List[DeviceDescriptor]:
        return []

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def raw_state(self):
        """Transport-specific state; defaults to the shared one."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def add_devices_listener(self, listener: DevicesListener) -> None:
        self._devices_listeners.append(listener)

    def remove_devices_listener(self, listener: DevicesListener) -> None:
        if listener in self._devices_listeners:
            self._devices_listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info(f"{type(self).__name__}: {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(self, state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def _publish_devices(self, devices: List[DeviceDescriptor]) -> None:
        for listener in list(self._devices_listeners):
            try:
                listener(self, devices)
            except Exception as e:
                logger.error(f"Devices listener failed: {e}")
