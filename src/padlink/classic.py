"""
Classic Bluetooth HID device transport.

Registers an HID profile with BlueZ (SDP record carrying the report
descriptor) and serves the HIDP control and interrupt L2CAP channels
itself. Bonded hosts reconnect to the listening sockets; ``connect()`` dials
a bonded host the way a real controller does after power-on.

BlueZ's own input plugin also wants PSM 0x11/0x13. If binding fails, run
bluetoothd with ``--noplugin=input``.
"""

import logging
import os
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from gi.repository import Gio, GLib

from . import hidp
from .bluez import (
    find_adapter_path,
    get_adapter_index,
    get_adapter_property,
    get_paired_devices,
    get_system_bus,
    register_profile_async,
    set_adapter_alias,
    set_device_class_hint,
    subscribe_bluez_owner,
    unregister_profile_async,
    ensure_adapter_powered_and_discoverable,
)
from .report import ReportVariant, neutral_report
from .timers import PeriodicTimer
from .transport import ConnectionState, DeviceDescriptor, Mode, Transport

logger = logging.getLogger(__name__)

HID_UUID = "00001124-0000-1000-8000-00805f9b34fb"
PROFILE_PATH = "/org/padlink/hid_profile"
PROFILE_IFACE = "org.bluez.Profile1"

HID_SUBCLASS_GAMEPAD = 0x08
SUPERVISION_TIMEOUT = 0x0C80
SSR_HOST_MAX_LATENCY = 0x0640
SSR_HOST_MIN_TIMEOUT = 0x0320

PROFILE_XML = f"""
<node>
    <interface name="{PROFILE_IFACE}">
        <method name="Release"/>
        <method name="NewConnection">
            <arg type="o" direction="in"/>
            <arg type="h" direction="in"/>
            <arg type="a{{sv}}" direction="in"/>
        </method>
        <method name="RequestDisconnection">
            <arg type="o" direction="in"/>
        </method>
        <method name="Cancel"/>
    </interface>
</node>
"""


class ProfileState(Enum):
    UNINITIALIZED = "uninitialized"
    REGISTERING = "registering"
    IDLE = "idle"
    CONNECTED = "connected"
    UNREGISTERING = "unregistering"
    ERROR = "error"


_SHARED = {
    ProfileState.UNINITIALIZED: ConnectionState.DISCONNECTED,
    ProfileState.REGISTERING: ConnectionState.CONNECTING,
    ProfileState.IDLE: ConnectionState.DISCONNECTED,
    ProfileState.CONNECTED: ConnectionState.CONNECTED,
    ProfileState.UNREGISTERING: ConnectionState.DISCONNECTED,
    ProfileState.ERROR: ConnectionState.ERROR,
}


def sdp_record(descriptor: bytes, name: str = "AGamepad") -> str:
    """SDP service record for an HID gamepad, in BlueZ's XML form."""
    def u8(v):
        return f'<uint8 value="0x{v:02x}"/>'

    def u16(v):
        return f'<uint16 value="0x{v:04x}"/>'

    def uuid(v):
        return f'<uuid value="0x{v:04x}"/>'

    def boolean(v):
        return f'<boolean value="{"true" if v else "false"}"/>'

    def attr(attr_id, body):
        return f'<attribute id="0x{attr_id:04x}">{body}</attribute>'

    def seq(*items):
        return "<sequence>" + "".join(items) + "</sequence>"

    def text(value):
        return f'<text value="{value}"/>'

    return "".join([
        '<?xml version="1.0" encoding="UTF-8" ?><record>',
        attr(0x0001, seq(uuid(0x1124))),
        attr(0x0004, seq(seq(uuid(0x0100), u16(hidp.CONTROL_PSM)), seq(uuid(0x0011)))),
        attr(0x0005, seq(uuid(0x1002))),
        attr(0x0006, seq(u16(0x656E), u16(0x006A), u16(0x0100))),
        attr(0x0009, seq(seq(uuid(0x1124), u16(0x0101)))),
        attr(0x000D, seq(seq(seq(uuid(0x0100), u16(hidp.INTERRUPT_PSM)), seq(uuid(0x0011))))),
        attr(0x0100, text(name)),
        attr(0x0101, text("Gamepad")),
        attr(0x0102, text("padlink")),
        attr(0x0200, u16(0x0100)),
        attr(0x0201, u16(0x0111)),
        attr(0x0202, u8(HID_SUBCLASS_GAMEPAD)),
        attr(0x0203, u8(0x00)),
        attr(0x0204, boolean(True)),
        attr(0x0205, boolean(True)),
        attr(0x0206, seq(seq(u8(0x22), f'<text encoding="hex" value="{descriptor.hex()}"/>'))),
        attr(0x0207, seq(seq(u16(0x0409), u16(0x0100)))),
        attr(0x0209, boolean(True)),
        attr(0x020A, boolean(True)),
        attr(0x020B, u16(0x0100)),
        attr(0x020C, u16(SUPERVISION_TIMEOUT)),
        attr(0x020D, boolean(False)),
        attr(0x020E, boolean(False)),
        attr(0x020F, u16(SSR_HOST_MAX_LATENCY)),
        attr(0x0210, u16(SSR_HOST_MIN_TIMEOUT)),
        "</record>",
    ])


def _l2cap_socket() -> socket.socket:
    return socket.socket(socket.AF_BLUETOOTH, socket.SOCK_SEQPACKET, socket.BTPROTO_L2CAP)


@dataclass
class _Peer:
    address: str
    control: Optional[socket.socket] = None
    interrupt: Optional[socket.socket] = None
    protocol: int = hidp.PROTOCOL_REPORT
    threads: List[threading.Thread] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.control is not None and self.interrupt is not None

    def close(self) -> None:
        for sock in (self.interrupt, self.control):
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        self.control = self.interrupt = None


class PairedProfileTransport(Transport):
    mode = Mode.CLASSIC
    report_variant = ReportVariant.PAIRED

    def __init__(self, name: str = "AGamepad", adapter: str = "hci0", resume_check_interval: float = 5.0,
                 keepalive_interval: float = 0.05):
        super().__init__()
        self.name = name
        self.adapter = adapter
        self.resume_check_interval = resume_check_interval
        self.keepalive_interval = keepalive_interval

        self._lock = threading.RLock()
        self._profile_state = ProfileState.UNINITIALIZED
        self._bus = None
        self._adapter_path: Optional[str] = None
        self._adapter_address: Optional[str] = None
        self._profile_reg: Optional[int] = None
        self._owner_sub: Optional[int] = None
        self._registered = False
        self._should_register = False
        self._servers: List[socket.socket] = []
        self._peers: Dict[str, _Peer] = {}
        self._last_report = neutral_report(ReportVariant.PAIRED)
        self._resume_timer: Optional[PeriodicTimer] = None
        self.suspended = False

    # ------------------------------------------------------------------
    # State

    @property
    def raw_state(self) -> ProfileState:
        return self._profile_state

    def _set_profile_state(self, state: ProfileState) -> None:
        with self._lock:
            self._profile_state = state
        self._set_state(_SHARED[state])

    @property
    def has_profile_handle(self) -> bool:
        return self._bus is not None and self._registered

    @property
    def connected_peers(self) -> List[str]:
        with self._lock:
            return [a for a, p in self._peers.items() if p.ready]

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        """Request the profile registration; the outcome arrives later."""
        self._should_register = True
        if not self._acquire():
            self._set_profile_state(ProfileState.ERROR)
        if self._resume_timer is None:
            self._resume_timer = PeriodicTimer(self.resume_check_interval, self._resume_check, name="hid-resume-check")
            self._resume_timer.start()

    def _acquire(self) -> bool:
        if self._bus is None:
            try:
                self._bus = get_system_bus()
            except GLib.Error as e:
                logger.error(f"Failed to connect to system bus: {e}")
                return False
            self._owner_sub = subscribe_bluez_owner(self._bus, self._on_bluez_owner)

        self._adapter_path = find_adapter_path(self._bus, self.adapter)
        if not self._adapter_path:
            logger.error(f"Adapter {self.adapter} not found")
            return False
        ensure_adapter_powered_and_discoverable(self._bus, self._adapter_path)
        set_adapter_alias(self._bus, self._adapter_path, self.name)
        address = get_adapter_property(self._bus, self._adapter_path, "Address")
        self._adapter_address = address.get_string() if address is not None else None
        set_device_class_hint(get_adapter_index(self.adapter))

        if self._profile_reg is None:
            try:
                node_info = Gio.DBusNodeInfo.new_for_xml(PROFILE_XML)
                self._profile_reg = self._bus.register_object(
                    PROFILE_PATH, node_info.interfaces[0], self._handle_profile, None, None
                )
            except GLib.Error as e:
                logger.error(f"Failed to export HID profile object: {e}")
                return False

        self._set_profile_state(ProfileState.REGISTERING)
        options = {
            "ServiceRecord": GLib.Variant("s", sdp_record(self.descriptor, self.name)),
            "Role": GLib.Variant("s", "server"),
            "RequireAuthentication": GLib.Variant("b", True),
            "RequireAuthorization": GLib.Variant("b", False),
        }
        register_profile_async(self._bus, PROFILE_PATH, HID_UUID, options, self._on_registered)
        return True

    def _on_registered(self, success: bool, error: Optional[str]) -> None:
        if not success:
            logger.error(f"HID profile registration failed: {error}")
            self._registered = False
            self._set_profile_state(ProfileState.ERROR)
            return
        self._registered = True
        logger.info("HID profile registered")
        self._listen()
        self._set_profile_state(ProfileState.CONNECTED if self.connected_peers else ProfileState.IDLE)

    def stop(self) -> None:
        self._should_register = False
        if self._resume_timer is not None:
            self._resume_timer.cancel()
            self._resume_timer = None
        self._set_profile_state(ProfileState.UNREGISTERING)

        with self._lock:
            peers = list(self._peers.values())
            self._peers.clear()
        for peer in peers:
            peer.close()
        self._close_servers()

        if self._bus is not None:
            if self._registered:
                unregister_profile_async(self._bus, PROFILE_PATH)
            if self._profile_reg is not None:
                self._bus.unregister_object(self._profile_reg)
                self._profile_reg = None
            if self._owner_sub is not None:
                self._bus.signal_unsubscribe(self._owner_sub)
                self._owner_sub = None
        self._registered = False
        self._bus = None
        self._set_profile_state(ProfileState.UNINITIALIZED)

    # ------------------------------------------------------------------
    # Profile handle recovery

    def _on_bluez_owner(self, present: bool) -> None:
        if not present:
            logger.warning("org.bluez left the bus - HID profile handle lost")
            self._lose_handle()
        else:
            logger.info("org.bluez is back")

    def _lose_handle(self) -> None:
        self._registered = False
        with self._lock:
            peers = list(self._peers.values())
            self._peers.clear()
        for peer in peers:
            peer.close()
        self._close_servers()
        self._set_profile_state(ProfileState.UNINITIALIZED)

    def _resume_check(self) -> None:
        if self._should_register and not self._registered and self._profile_state is not ProfileState.REGISTERING:
            logger.info("HID profile should be registered but is not - re-registering")
            GLib.idle_add(self._reacquire)

    def _reacquire(self) -> bool:
        if self._should_register and not self._registered:
            if not self._acquire():
                self._set_profile_state(ProfileState.ERROR)
        return False

    def _handle_profile(self, conn, sender, path, iface, method, params, invoc) -> None:
        if method == "Release":
            logger.warning("BlueZ released the HID profile")
            self._lose_handle()
            invoc.return_value(None)
        elif method == "NewConnection":
            device = params.unpack()[0]
            fd_list = invoc.get_message().get_unix_fd_list()
            if fd_list is not None:
                for fd in fd_list.steal_fds():
                    os.close(fd)
            logger.debug(f"Ignoring profile socket for {device}; HIDP channels are served directly")
            invoc.return_value(None)
        elif method == "RequestDisconnection":
            device = params.unpack()[0]
            logger.info(f"BlueZ requested disconnection of {device}")
            invoc.return_value(None)
        elif method == "Cancel":
            invoc.return_value(None)
        else:
            invoc.return_dbus_error("org.bluez.Error.NotSupported", f"Unknown method: {method}")

    # ------------------------------------------------------------------
    # L2CAP channels

    def _listen(self) -> None:
        if self._servers:
            return
        address = self._adapter_address or socket.BDADDR_ANY
        for psm in (hidp.CONTROL_PSM, hidp.INTERRUPT_PSM):
            sock = _l2cap_socket()
            try:
                sock.bind((address, psm))
                sock.listen(1)
            except OSError as e:
                sock.close()
                logger.error(f"Cannot listen on L2CAP PSM 0x{psm:02x}: {e} (is bluetoothd's input plugin disabled?)")
                self._close_servers()
                return
            self._servers.append(sock)
            threading.Thread(target=self._accept_loop, args=(sock, psm), name=f"hidp-accept-{psm:#x}", daemon=True).start()
        logger.info("Listening for HID hosts on the control and interrupt channels")

    def _close_servers(self) -> None:
        servers, self._servers = self._servers, []
        for sock in servers:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def _accept_loop(self, server: socket.socket, psm: int) -> None:
        while server in self._servers:
            try:
                client, (address, _) = server.accept()
            except OSError:
                break
            logger.info(f"Host {address} opened {'control' if psm == hidp.CONTROL_PSM else 'interrupt'} channel")
            self._attach(address, psm, client)

    def _attach(self, address: str, psm: int, sock: socket.socket) -> None:
        with self._lock:
            peer = self._peers.setdefault(address, _Peer(address))
            if psm == hidp.CONTROL_PSM:
                if peer.control is not None:
                    peer.control.close()
                peer.control = sock
            else:
                if peer.interrupt is not None:
                    peer.interrupt.close()
                peer.interrupt = sock
            ready = peer.ready
        reader = self._control_loop if psm == hidp.CONTROL_PSM else self._interrupt_loop
        thread = threading.Thread(target=reader, args=(peer, sock), name=f"hidp-{address}-{psm:#x}", daemon=True)
        peer.threads.append(thread)
        thread.start()
        if ready:
            logger.info(f"HID host {address} connected")
            self._set_profile_state(ProfileState.CONNECTED)

    def _control_loop(self, peer: _Peer, sock: socket.socket) -> None:
        while True:
            try:
                message = sock.recv(64)
            except OSError:
                break
            if not message:
                break
            reply, action, peer.protocol = hidp.handle_control(message, self._last_report, peer.protocol)
            logger.debug(f"HIDP control from {peer.address}: {message.hex()} -> {reply.hex() if reply else '-'}")
            if reply is not None:
                try:
                    sock.send(reply)
                except OSError as e:
                    logger.warning(f"Control reply to {peer.address} failed: {e}")
                    break
            if action is hidp.ControlAction.UNPLUG:
                logger.info(f"Host {peer.address} sent virtual cable unplug")
                break
            if action is hidp.ControlAction.SUSPEND:
                self.suspended = True
            elif action is hidp.ControlAction.EXIT_SUSPEND:
                self.suspended = False
        self._drop_peer(peer.address, sock)

    def _interrupt_loop(self, peer: _Peer, sock: socket.socket) -> None:
        # Output reports (rumble, LEDs) are not used; reading detects hang-up
        while True:
            try:
                data = sock.recv(64)
            except OSError:
                break
            if not data:
                break
        self._drop_peer(peer.address, sock)

    def _drop_peer(self, address: str, sock: Optional[socket.socket] = None) -> None:
        """Forget ``address``. With ``sock``, only if that channel still belongs to it."""
        with self._lock:
            peer = self._peers.get(address)
            if peer is not None and sock is not None and sock not in (peer.control, peer.interrupt):
                # A reconnect already replaced this channel
                sock.close()
                return
            self._peers.pop(address, None)
            remaining = any(p.ready for p in self._peers.values())
        if peer is None:
            return
        peer.close()
        logger.info(f"HID host {address} disconnected")
        if self._profile_state is ProfileState.CONNECTED and not remaining:
            self._set_profile_state(ProfileState.IDLE)

    # ------------------------------------------------------------------
    # Transport API

    def supports_paired_device_list(self) -> bool:
        return True

    def supports_outgoing_connect(self) -> bool:
        return True

    def paired_devices(self) -> List[DeviceDescriptor]:
        if self._bus is None or not self._adapter_path:
            return []
        return [DeviceDescriptor(d["address"], d["name"]) for d in get_paired_devices(self._bus, self._adapter_path)]

    def connect(self, address: str) -> bool:
        if not self.has_profile_handle:
            logger.warning(f"Cannot connect to {address}: HID profile is not registered")
            return False
        threading.Thread(target=self._dial, args=(address,), name=f"hidp-dial-{address}", daemon=True).start()
        return True

    def _dial(self, address: str) -> None:
        sockets = []
        for psm in (hidp.CONTROL_PSM, hidp.INTERRUPT_PSM):
            sock = _l2cap_socket()
            try:
                sock.connect((address, psm))
            except OSError as e:
                sock.close()
                logger.error(f"Connecting to {address} on PSM 0x{psm:02x} failed: {e}")
                for s in sockets:
                    s.close()
                return
            sockets.append(sock)
        for psm, sock in zip((hidp.CONTROL_PSM, hidp.INTERRUPT_PSM), sockets):
            self._attach(address, psm, sock)

    def disconnect(self, address: Optional[str] = None) -> None:
        if not self.has_profile_handle:
            logger.warning("Cannot disconnect: HID profile is not registered")
            return
        targets = [address] if address else self.connected_peers
        for target in targets:
            self._drop_peer(target)

    def send_report(self, report: bytes) -> None:
        self._last_report = bytes(report)
        frame = hidp.input_frame(report)
        with self._lock:
            channels = [(p.address, p.interrupt) for p in self._peers.values() if p.ready]
        for address, sock in channels:
            try:
                sock.send(frame, socket.MSG_DONTWAIT)
            except BlockingIOError:
                logger.debug(f"Interrupt channel to {address} busy, report dropped")
            except OSError as e:
                logger.warning(f"Send to {address} failed: {e}")
                self._drop_peer(address, sock)
