"""
GATT application served to BlueZ over D-Bus.

Implements:
- org.freedesktop.DBus.ObjectManager on the application root
- org.bluez.GattService1 / GattCharacteristic1 / GattDescriptor1 objects
  built from a declarative Service / Characteristic / Descriptor tree

Reads, writes and subscriptions are dispatched to per-characteristic
callbacks. Access a characteristic does not support is answered with
org.bluez.Error.NotPermitted.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from gi.repository import Gio, GLib

logger = logging.getLogger(__name__)

GATT_SERVICE_IFACE = "org.bluez.GattService1"
GATT_CHAR_IFACE = "org.bluez.GattCharacteristic1"
GATT_DESC_IFACE = "org.bluez.GattDescriptor1"
DBUS_OM_IFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"

ERROR_NOT_PERMITTED = "org.bluez.Error.NotPermitted"
ERROR_INVALID_OFFSET = "org.bluez.Error.InvalidOffset"


def uuid16(short: int) -> str:
    """Expand a 16-bit SIG UUID to its 128-bit string form."""
    return f"0000{short:04x}-0000-1000-8000-00805f9b34fb"


Value = Union[bytes, Callable[[], bytes]]


@dataclass
class Descriptor:
    uuid: str
    flags: List[str]
    value: Value = b""
    path: str = ""


@dataclass
class Characteristic:
    uuid: str
    flags: List[str]
    value: Optional[Value] = None
    on_write: Optional[Callable[[bytes], None]] = None
    on_subscribe: Optional[Callable[[bool], None]] = None
    descriptors: List[Descriptor] = field(default_factory=list)
    name: str = ""
    path: str = ""
    notifying: bool = False
    service_path: str = ""


@dataclass
class Service:
    uuid: str
    characteristics: List[Characteristic]
    primary: bool = True
    path: str = ""


_CHAR_XML = f"""
<node>
    <interface name="{GATT_CHAR_IFACE}">
        <method name="ReadValue">
            <arg type="a{{sv}}" direction="in"/>
            <arg type="ay" direction="out"/>
        </method>
        <method name="WriteValue">
            <arg type="ay" direction="in"/>
            <arg type="a{{sv}}" direction="in"/>
        </method>
        <method name="StartNotify"/>
        <method name="StopNotify"/>
        <property name="UUID" type="s" access="read"/>
        <property name="Service" type="o" access="read"/>
        <property name="Flags" type="as" access="read"/>
        <property name="Descriptors" type="ao" access="read"/>
        <property name="Notifying" type="b" access="read"/>
    </interface>
</node>
"""

_DESC_XML = f"""
<node>
    <interface name="{GATT_DESC_IFACE}">
        <method name="ReadValue">
            <arg type="a{{sv}}" direction="in"/>
            <arg type="ay" direction="out"/>
        </method>
        <method name="WriteValue">
            <arg type="ay" direction="in"/>
            <arg type="a{{sv}}" direction="in"/>
        </method>
        <property name="UUID" type="s" access="read"/>
        <property name="Characteristic" type="o" access="read"/>
        <property name="Flags" type="as" access="read"/>
    </interface>
</node>
"""

_SERVICE_XML = f"""
<node>
    <interface name="{GATT_SERVICE_IFACE}">
        <property name="UUID" type="s" access="read"/>
        <property name="Primary" type="b" access="read"/>
        <property name="Characteristics" type="ao" access="read"/>
    </interface>
</node>
"""

_PROPS_XML = f"""
<node>
    <interface name="{DBUS_PROPS_IFACE}">
        <method name="Get">
            <arg type="s" direction="in"/>
            <arg type="s" direction="in"/>
            <arg type="v" direction="out"/>
        </method>
        <method name="GetAll">
            <arg type="s" direction="in"/>
            <arg type="a{{sv}}" direction="out"/>
        </method>
    </interface>
</node>
"""

_OM_XML = f"""
<node>
    <interface name="{DBUS_OM_IFACE}">
        <method name="GetManagedObjects">
            <arg type="a{{oa{{sa{{sv}}}}}}" direction="out"/>
        </method>
    </interface>
</node>
"""


def _resolve(value: Optional[Value]) -> bytes:
    if value is None:
        return b""
    if callable(value):
        return bytes(value())
    return bytes(value)


class GattApplication:
    """
    Registers a service tree on D-Bus under APP_PATH:

    - APP_PATH                        ObjectManager
    - APP_PATH/serviceN               GattService1
    - APP_PATH/serviceN/charM         GattCharacteristic1
    - APP_PATH/serviceN/charM/descK   GattDescriptor1
    """

    APP_PATH = "/org/padlink/gatt"

    def __init__(self, bus: Gio.DBusConnection, services: List[Service], verbose: bool = False):
        self.bus = bus
        self.services = services
        self.verbose = verbose
        self._registrations: List[int] = []
        self._by_path: Dict[str, object] = {}
        self._assign_paths()

    def _assign_paths(self) -> None:
        for si, service in enumerate(self.services):
            service.path = f"{self.APP_PATH}/service{si}"
            self._by_path[service.path] = service
            for ci, char in enumerate(service.characteristics):
                char.path = f"{service.path}/char{ci}"
                char.service_path = service.path
                self._by_path[char.path] = char
                for di, desc in enumerate(char.descriptors):
                    desc.path = f"{char.path}/desc{di}"
                    self._by_path[desc.path] = (char, desc)

    def find(self, uuid: str) -> Optional[Characteristic]:
        for service in self.services:
            for char in service.characteristics:
                if char.uuid == uuid:
                    return char
        return None

    # ------------------------------------------------------------------
    # Registration

    def register(self) -> bool:
        """Register all GATT objects on D-Bus."""
        try:
            self._register(self.APP_PATH, _OM_XML, self._handle_om)
            for service in self.services:
                self._register(service.path, _SERVICE_XML, None, with_props=True)
                for char in service.characteristics:
                    self._register(char.path, _CHAR_XML, self._handle_char, with_props=True)
                    for desc in char.descriptors:
                        self._register(desc.path, _DESC_XML, self._handle_desc, with_props=True)
            logger.info(f"GATT objects registered under {self.APP_PATH}")
            return True
        except GLib.Error as e:
            logger.error(f"Failed to register GATT objects: {e}")
            self.unregister()
            return False

    def unregister(self) -> None:
        for reg_id in self._registrations:
            try:
                self.bus.unregister_object(reg_id)
            except GLib.Error as e:
                logger.debug(f"Error unregistering object {reg_id}: {e}")
        self._registrations.clear()
        for service in self.services:
            for char in service.characteristics:
                char.notifying = False
        logger.info("GATT objects unregistered")

    def _register(self, path: str, xml: str, handler, with_props: bool = False) -> None:
        node_info = Gio.DBusNodeInfo.new_for_xml(xml)
        if handler is not None:
            self._registrations.append(
                self.bus.register_object(path, node_info.interfaces[0], handler, None, None)
            )
        if with_props:
            props_info = Gio.DBusNodeInfo.new_for_xml(_PROPS_XML)
            self._registrations.append(
                self.bus.register_object(path, props_info.interfaces[0], self._handle_props, None, None)
            )

    # ------------------------------------------------------------------
    # Properties

    def _properties(self, path: str) -> Dict[str, Dict[str, GLib.Variant]]:
        obj = self._by_path.get(path)
        if isinstance(obj, Service):
            return {GATT_SERVICE_IFACE: {
                "UUID": GLib.Variant("s", obj.uuid),
                "Primary": GLib.Variant("b", obj.primary),
                "Characteristics": GLib.Variant("ao", [c.path for c in obj.characteristics]),
            }}
        if isinstance(obj, Characteristic):
            return {GATT_CHAR_IFACE: {
                "UUID": GLib.Variant("s", obj.uuid),
                "Service": GLib.Variant("o", obj.service_path),
                "Flags": GLib.Variant("as", obj.flags),
                "Descriptors": GLib.Variant("ao", [d.path for d in obj.descriptors]),
                "Notifying": GLib.Variant("b", obj.notifying),
            }}
        if isinstance(obj, tuple):
            char, desc = obj
            return {GATT_DESC_IFACE: {
                "UUID": GLib.Variant("s", desc.uuid),
                "Characteristic": GLib.Variant("o", char.path),
                "Flags": GLib.Variant("as", desc.flags),
            }}
        return {}

    def get_managed_objects(self) -> Dict[str, Dict[str, Dict[str, GLib.Variant]]]:
        return {path: self._properties(path) for path in self._by_path}

    def _handle_om(self, conn, sender, path, iface, method, params, invoc) -> None:
        if method == "GetManagedObjects":
            if self.verbose:
                logger.info(f"GetManagedObjects called by {sender}")
            invoc.return_value(GLib.Variant("(a{oa{sa{sv}}})", (self.get_managed_objects(),)))
        else:
            invoc.return_dbus_error("org.freedesktop.DBus.Error.UnknownMethod", f"Unknown method: {method}")

    def _handle_props(self, conn, sender, path, iface, method, params, invoc) -> None:
        all_props = self._properties(path)
        if method == "Get":
            iface_name, prop = params.unpack()
            value = all_props.get(iface_name, {}).get(prop)
            if value is None:
                invoc.return_dbus_error("org.freedesktop.DBus.Error.InvalidArgs", f"Unknown property: {prop}")
            else:
                invoc.return_value(GLib.Variant("(v)", (value,)))
        elif method == "GetAll":
            iface_name = params.unpack()[0]
            invoc.return_value(GLib.Variant("(a{sv})", (all_props.get(iface_name, {}),)))
        else:
            invoc.return_dbus_error("org.freedesktop.DBus.Error.UnknownMethod", f"Unknown method: {method}")

    # ------------------------------------------------------------------
    # Characteristic and descriptor access

    def _handle_char(self, conn, sender, path, iface, method, params, invoc) -> None:
        char = self._by_path.get(path)
        if not isinstance(char, Characteristic):
            invoc.return_dbus_error(ERROR_NOT_PERMITTED, "Unknown characteristic")
            return
        label = char.name or char.uuid

        if method == "ReadValue":
            if char.value is None:
                invoc.return_dbus_error(ERROR_NOT_PERMITTED, f"{label} is not readable")
                return
            options = params.unpack()[0]
            self._return_read(invoc, _resolve(char.value), options, label, sender)
        elif method == "WriteValue":
            value, options = params.unpack()
            if char.on_write is None:
                invoc.return_dbus_error(ERROR_NOT_PERMITTED, f"{label} is not writable")
                return
            if self.verbose:
                logger.info(f"{label} WriteValue: {bytes(value).hex()}")
            char.on_write(bytes(value))
            invoc.return_value(None)
        elif method in ("StartNotify", "StopNotify"):
            if char.on_subscribe is None:
                invoc.return_dbus_error(ERROR_NOT_PERMITTED, f"{label} does not notify")
                return
            enabled = method == "StartNotify"
            if self.verbose:
                logger.info(f"{label} {method} called by {sender}")
            invoc.return_value(None)
            if char.notifying != enabled:
                char.notifying = enabled
                char.on_subscribe(enabled)
        else:
            invoc.return_dbus_error(ERROR_NOT_PERMITTED, f"Unsupported method: {method}")

    def _handle_desc(self, conn, sender, path, iface, method, params, invoc) -> None:
        entry = self._by_path.get(path)
        if not isinstance(entry, tuple):
            invoc.return_dbus_error(ERROR_NOT_PERMITTED, "Unknown descriptor")
            return
        char, desc = entry
        if method == "ReadValue":
            options = params.unpack()[0]
            self._return_read(invoc, _resolve(desc.value), options, desc.uuid, sender)
        else:
            invoc.return_dbus_error(ERROR_NOT_PERMITTED, f"Unsupported method: {method}")

    def _return_read(self, invoc, value: bytes, options: Dict, label: str, sender: str) -> None:
        offset = int(options.get("offset", 0)) if options else 0
        if offset > len(value):
            invoc.return_dbus_error(ERROR_INVALID_OFFSET, f"Offset {offset} beyond {len(value)}")
            return
        if self.verbose:
            logger.info(f"{label} ReadValue called by {sender}")
        invoc.return_value(GLib.Variant("(ay)", (value[offset:],)))

    # ------------------------------------------------------------------
    # Notifications

    def notify(self, char: Characteristic, value: bytes) -> bool:
        """Emit a value change for a subscribed characteristic."""
        if not char.notifying:
            return False
        try:
            self.bus.emit_signal(
                None,
                char.path,
                DBUS_PROPS_IFACE,
                "PropertiesChanged",
                GLib.Variant(
                    "(sa{sv}as)",
                    (GATT_CHAR_IFACE, {"Value": GLib.Variant("ay", value)}, []),
                ),
            )
            return True
        except GLib.Error as e:
            logger.error(f"Error sending notification: {e}")
            return False
