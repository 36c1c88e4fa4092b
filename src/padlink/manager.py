"""
Connection manager: owns the one active transport.

The manager is built once at startup and handed to whatever produces input
(the evdev handler, the CLI). It encodes input with the active transport's
report layout, keeps HID links warm with a keepalive, and republishes state
and discovered devices from the active transport only.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .config import Settings
from .report import LogicalInputState, TriggerPolicy, encode, neutral_report
from .timers import PeriodicTimer
from .transport import ConnectionState, DeviceDescriptor, Mode, Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]
StateListener = Callable[[Mode, ConnectionState], None]
DevicesListener = Callable[[List[DeviceDescriptor]], None]


def transport_factories(settings: Settings, static_addr: Optional[str] = None, verbose: bool = False) -> Dict[Mode, TransportFactory]:
    """Factories for the three transports, configured from ``settings``."""

    def classic() -> Transport:
        from .classic import PairedProfileTransport
        return PairedProfileTransport(
            name=settings.device_name,
            adapter=settings.adapter,
            resume_check_interval=settings.resume_check_interval,
            keepalive_interval=settings.keepalive_interval,
        )

    def ble() -> Transport:
        from .ble import EncryptedLinkTransport
        return EncryptedLinkTransport(
            name=settings.device_name,
            adapter=settings.adapter,
            static_addr=static_addr or settings.static_address,
            verbose=verbose,
            keepalive_interval=settings.keepalive_interval,
        )

    def udp() -> Transport:
        from .udp import UdpTransport
        return UdpTransport(
            discovery_port=settings.discovery_port,
            data_port=settings.data_port,
            handshake_timeout=settings.handshake_timeout,
            liveness_interval=settings.liveness_interval,
            settings=settings,
        )

    return {Mode.CLASSIC: classic, Mode.BLE: ble, Mode.UDP: udp}


class ConnectionManager:
    def __init__(
        self,
        settings: Settings,
        factories: Optional[Dict[Mode, TransportFactory]] = None,
        trigger_policy: Optional[TriggerPolicy] = None,
    ):
        self.settings = settings
        self.factories = factories if factories is not None else transport_factories(settings)
        self.trigger_policy = trigger_policy or settings.trigger_policy

        self._transport: Optional[Transport] = None
        # Plain Lock: a switch must never re-enter another switch
        self._switch_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._last_report: Optional[bytes] = None
        self._keepalive: Optional[PeriodicTimer] = None
        self._state_listeners: List[StateListener] = []
        self._devices_listeners: List[DevicesListener] = []

    # ------------------------------------------------------------------
    # Active transport

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def mode(self) -> Optional[Mode]:
        return self._transport.mode if self._transport else None

    @property
    def connection_state(self) -> ConnectionState:
        if self._transport is None:
            return ConnectionState.DISCONNECTED
        return self._transport.connection_state

    def start(self) -> bool:
        """Start the transport for the persisted mode."""
        return self.switch_mode(self.settings.mode)

    def set_mode(self, mode: Mode) -> bool:
        """Remember ``mode`` as the preference and switch to it."""
        self.settings.set_mode(mode)
        return self.switch_mode(mode)

    def switch_mode(self, mode: Mode) -> bool:
        with self._switch_lock:
            current = self._transport
            if current is not None and current.mode is mode:
                return True

            self.stop_keepalive()
            if current is not None:
                self._detach(current)
                try:
                    current.stop()
                except Exception as e:
                    logger.error(f"Stopping {current.mode.value} transport failed: {e}")

            factory = self.factories.get(mode)
            if factory is None:
                logger.error(f"No transport available for mode {mode.value}")
                self._transport = None
                return False

            transport = factory()
            transport.add_state_listener(self._on_transport_state)
            transport.add_devices_listener(self._on_transport_devices)
            self._transport = transport
            with self._send_lock:
                self._last_report = None
            logger.info(f"Switched to {mode.value} mode")

            try:
                transport.start()
            except Exception as e:
                logger.error(f"Starting {mode.value} transport failed: {e}")
                self._notify_state(mode, ConnectionState.ERROR)
                return False

            self._notify_state(mode, transport.connection_state)
            if transport.keepalive_interval:
                self.start_keepalive()
            return True

    def _detach(self, transport: Transport) -> None:
        transport.remove_state_listener(self._on_transport_state)
        transport.remove_devices_listener(self._on_transport_devices)

    def shutdown(self) -> None:
        with self._switch_lock:
            self.stop_keepalive()
            transport, self._transport = self._transport, None
            if transport is None:
                return
            self._detach(transport)
            try:
                transport.stop()
            except Exception as e:
                logger.error(f"Stopping {transport.mode.value} transport failed: {e}")

    # ------------------------------------------------------------------
    # Listeners

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_devices_listener(self, listener: DevicesListener) -> None:
        self._devices_listeners.append(listener)

    def _on_transport_state(self, transport: Transport, state: ConnectionState) -> None:
        if transport is not self._transport:
            return
        self._notify_state(transport.mode, state)

    def _on_transport_devices(self, transport: Transport, devices: List[DeviceDescriptor]) -> None:
        if transport is not self._transport:
            return
        for listener in list(self._devices_listeners):
            try:
                listener(devices)
            except Exception as e:
                logger.error(f"Devices listener failed: {e}")

    def _notify_state(self, mode: Mode, state: ConnectionState) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(mode, state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    # ------------------------------------------------------------------
    # Input

    def send_input(self, state: LogicalInputState) -> None:
        transport = self._transport
        if transport is None:
            return
        self._send(transport, encode(state, transport.report_variant, self.trigger_policy))

    def send_report(self, report: bytes) -> None:
        transport = self._transport
        if transport is None:
            return
        self._send(transport, bytes(report))

    def _send(self, transport: Transport, report: bytes) -> None:
        with self._send_lock:
            self._last_report = report
        try:
            transport.send_report(report)
        except Exception as e:
            logger.error(f"{transport.mode.value} send failed: {e}")

    @property
    def last_report(self) -> Optional[bytes]:
        with self._send_lock:
            return self._last_report

    def start_keepalive(self) -> None:
        transport = self._transport
        if transport is None or not transport.keepalive_interval:
            return
        self.stop_keepalive()
        self._keepalive = PeriodicTimer(transport.keepalive_interval, self._keepalive_tick, name="keepalive")
        self._keepalive.start()

    def stop_keepalive(self) -> None:
        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None

    def _keepalive_tick(self) -> None:
        transport = self._transport
        if transport is None:
            return
        with self._send_lock:
            report = self._last_report
            if report is None:
                report = self._last_report = neutral_report(transport.report_variant)
        transport.send_report(report)

    # ------------------------------------------------------------------
    # Delegation

    def discover(self, timeout: Optional[float] = None) -> List[DeviceDescriptor]:
        transport = self._transport
        if transport is None:
            return []
        return transport.discover(timeout if timeout is not None else self.settings.discovery_timeout)

    def connect(self, address: str) -> bool:
        transport = self._transport
        if transport is None:
            return False
        return transport.connect(address)

    def disconnect(self, address: Optional[str] = None) -> None:
        transport = self._transport
        if transport is not None:
            transport.disconnect(address)

    def paired_devices(self) -> List[DeviceDescriptor]:
        transport = self._transport
        if transport is None or not transport.supports_paired_device_list():
            return []
        return transport.paired_devices()
