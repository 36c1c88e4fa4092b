"""
Pairing agent that auto-accepts incoming pairing requests.

Hosts pair with the gamepad from their own Bluetooth settings, so every
confirmation is accepted. ``on_pairing`` is told which device started
pairing, which lets the link report a Bonding state before BlueZ flips the
device to Paired.
"""

import logging
from typing import Callable, List, Optional

from gi.repository import Gio, GLib

from .bluez import address_from_path, register_agent_async, unregister_agent_async

logger = logging.getLogger(__name__)

AGENT_IFACE = "org.bluez.Agent1"

AGENT_XML = f"""
<node>
    <interface name="{AGENT_IFACE}">
        <method name="Release"/>
        <method name="RequestPinCode">
            <arg type="o" direction="in"/>
            <arg type="s" direction="out"/>
        </method>
        <method name="DisplayPinCode">
            <arg type="o" direction="in"/>
            <arg type="s" direction="in"/>
        </method>
        <method name="RequestPasskey">
            <arg type="o" direction="in"/>
            <arg type="u" direction="out"/>
        </method>
        <method name="DisplayPasskey">
            <arg type="o" direction="in"/>
            <arg type="u" direction="in"/>
            <arg type="q" direction="in"/>
        </method>
        <method name="RequestConfirmation">
            <arg type="o" direction="in"/>
            <arg type="u" direction="in"/>
        </method>
        <method name="RequestAuthorization">
            <arg type="o" direction="in"/>
        </method>
        <method name="AuthorizeService">
            <arg type="o" direction="in"/>
            <arg type="s" direction="in"/>
        </method>
        <method name="Cancel"/>
    </interface>
</node>
"""


class AutoAcceptAgent:
    """org.bluez.Agent1 with DisplayYesNo capability that says yes."""

    AGENT_PATH = "/org/padlink/agent"
    CAPABILITY = "DisplayYesNo"

    def __init__(self, bus: Gio.DBusConnection, on_pairing: Optional[Callable[[str], None]] = None):
        self.bus = bus
        self.on_pairing = on_pairing
        self._registrations: List[int] = []

    def register(self) -> bool:
        try:
            node_info = Gio.DBusNodeInfo.new_for_xml(AGENT_XML)
            self._registrations.append(
                self.bus.register_object(self.AGENT_PATH, node_info.interfaces[0], self._handle, None, None)
            )
        except GLib.Error as e:
            logger.error(f"Failed to register pairing agent object: {e}")
            return False
        register_agent_async(self.bus, self.AGENT_PATH, self.CAPABILITY)
        return True

    def unregister(self) -> None:
        if not self._registrations:
            return
        unregister_agent_async(self.bus, self.AGENT_PATH)
        for reg_id in self._registrations:
            try:
                self.bus.unregister_object(reg_id)
            except GLib.Error as e:
                logger.debug(f"Error unregistering agent {reg_id}: {e}")
        self._registrations.clear()

    def _pairing(self, device: str) -> None:
        address = address_from_path(device)
        if address and self.on_pairing:
            self.on_pairing(address)

    def _handle(self, conn, sender, path, iface, method, params, invoc) -> None:
        args = params.unpack() if params is not None else ()
        if method == "RequestConfirmation":
            device, passkey = args
            logger.info(f"Pairing request from {device}, passkey {passkey:06d} - accepting")
            self._pairing(device)
            invoc.return_value(None)
        elif method in ("RequestAuthorization", "AuthorizeService"):
            logger.info(f"{method} for {args[0]} - accepting")
            self._pairing(args[0])
            invoc.return_value(None)
        elif method == "RequestPinCode":
            self._pairing(args[0])
            invoc.return_value(GLib.Variant("(s)", ("0000",)))
        elif method == "RequestPasskey":
            self._pairing(args[0])
            invoc.return_value(GLib.Variant("(u)", (0,)))
        elif method in ("DisplayPinCode", "DisplayPasskey"):
            logger.info(f"Display code for {args[0]}: {args[1]}")
            self._pairing(args[0])
            invoc.return_value(None)
        elif method in ("Release", "Cancel"):
            logger.info(f"Agent {method}")
            invoc.return_value(None)
        else:
            invoc.return_dbus_error("org.bluez.Error.Rejected", f"Unsupported method: {method}")
