"""
BLE advertisement for the HID peripheral.

Implements org.bluez.LEAdvertisement1 with a D-Bus Properties interface
(including a no-op Set, which BlueZ may call). Only the HID service UUID
goes into the advertising payload; the device information service is
offered in the scan response.
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from gi.repository import Gio, GLib

logger = logging.getLogger(__name__)

LE_ADV_IFACE = "org.bluez.LEAdvertisement1"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"

HID_SERVICE_UUID_16 = "1812"
DEVICE_INFO_UUID_16 = "180a"
GAMEPAD_APPEARANCE = 0x03C4


class AdvertisingError(Enum):
    ALREADY_STARTED = "already-started"
    DATA_TOO_LARGE = "data-too-large"
    FEATURE_UNSUPPORTED = "feature-unsupported"
    INTERNAL_ERROR = "internal-error"
    TOO_MANY_ADVERTISERS = "too-many-advertisers"


def classify_advertising_error(message: Optional[str]) -> AdvertisingError:
    """Map a BlueZ RegisterAdvertisement error to an AdvertisingError."""
    text = (message or "").lower()
    if "alreadyexists" in text or "already exists" in text:
        return AdvertisingError.ALREADY_STARTED
    if "invalidlength" in text or "too long" in text or "too large" in text:
        return AdvertisingError.DATA_TOO_LARGE
    if "notsupported" in text or "not supported" in text:
        return AdvertisingError.FEATURE_UNSUPPORTED
    if "maximum advertisements" in text or "notpermitted" in text:
        return AdvertisingError.TOO_MANY_ADVERTISERS
    return AdvertisingError.INTERNAL_ERROR


class Advertisement:
    """
    Registers at ADV_PATH with:
    - org.bluez.LEAdvertisement1 interface
    - org.freedesktop.DBus.Properties interface (with Set no-op)
    """

    ADV_PATH = "/org/padlink/adv0"

    def __init__(
        self,
        bus: Gio.DBusConnection,
        local_name: str = "AGamepad",
        verbose: bool = False,
        on_release: Optional[Callable[[], None]] = None,
    ):
        self.bus = bus
        self.local_name = local_name
        self.verbose = verbose
        self.on_release = on_release
        self._registrations: List[int] = []

    def _get_properties(self) -> Dict[str, GLib.Variant]:
        return {
            "Type": GLib.Variant("s", "peripheral"),
            "ServiceUUIDs": GLib.Variant("as", [HID_SERVICE_UUID_16]),
            "ScanResponseServiceUUIDs": GLib.Variant("as", [DEVICE_INFO_UUID_16]),
            "LocalName": GLib.Variant("s", self.local_name),
            "Appearance": GLib.Variant("q", GAMEPAD_APPEARANCE),
            "Discoverable": GLib.Variant("b", True),
            "Includes": GLib.Variant("as", ["tx-power"]),
        }

    def register(self) -> bool:
        """Register advertisement object on D-Bus."""
        try:
            self._register_advertisement()
            self._register_properties()
            logger.info(f"Advertisement object registered at {self.ADV_PATH}")
            return True
        except GLib.Error as e:
            logger.error(f"Failed to register advertisement object: {e}")
            self.unregister()
            return False

    def unregister(self) -> None:
        for reg_id in self._registrations:
            try:
                self.bus.unregister_object(reg_id)
            except GLib.Error as e:
                logger.debug(f"Error unregistering object {reg_id}: {e}")
        self._registrations.clear()

    def _register_advertisement(self) -> None:
        xml = f"""
        <node>
            <interface name="{LE_ADV_IFACE}">
                <method name="Release"/>
                <property name="Type" type="s" access="read"/>
                <property name="ServiceUUIDs" type="as" access="read"/>
                <property name="ScanResponseServiceUUIDs" type="as" access="read"/>
                <property name="LocalName" type="s" access="read"/>
                <property name="Appearance" type="q" access="read"/>
                <property name="Discoverable" type="b" access="read"/>
                <property name="Includes" type="as" access="read"/>
            </interface>
        </node>
        """
        node_info = Gio.DBusNodeInfo.new_for_xml(xml)

        def handler(conn, sender, path, iface, method, params, invoc):
            if method == "Release":
                logger.info("Advertisement released by BlueZ")
                invoc.return_value(None)
                if self.on_release:
                    self.on_release()
            else:
                invoc.return_dbus_error(
                    "org.freedesktop.DBus.Error.UnknownMethod",
                    f"Unknown method: {method}",
                )

        def get_property(conn, sender, path, iface, prop_name):
            return self._get_properties().get(prop_name)

        reg_id = self.bus.register_object(self.ADV_PATH, node_info.interfaces[0], handler, get_property, None)
        self._registrations.append(reg_id)

    def _register_properties(self) -> None:
        xml = f"""
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
                <method name="Set">
                    <arg type="s" direction="in"/>
                    <arg type="s" direction="in"/>
                    <arg type="v" direction="in"/>
                </method>
            </interface>
        </node>
        """
        node_info = Gio.DBusNodeInfo.new_for_xml(xml)

        def handler(conn, sender, path, iface, method, params, invoc):
            props = self._get_properties()
            if method == "Get":
                _, prop_name = params.unpack()
                if prop_name in props:
                    invoc.return_value(GLib.Variant("(v)", (props[prop_name],)))
                else:
                    invoc.return_dbus_error(
                        "org.freedesktop.DBus.Error.InvalidArgs",
                        f"Unknown property: {prop_name}",
                    )
            elif method == "GetAll":
                invoc.return_value(GLib.Variant("(a{sv})", (props,)))
            elif method == "Set":
                _, prop_name, _ = params.unpack()
                if self.verbose:
                    logger.info(f"Advertisement Set called (ignored): {prop_name}")
                invoc.return_value(None)
            else:
                invoc.return_dbus_error(
                    "org.freedesktop.DBus.Error.UnknownMethod",
                    f"Unknown method: {method}",
                )

        reg_id = self.bus.register_object(self.ADV_PATH, node_info.interfaces[0], handler, None, None)
        self._registrations.append(reg_id)
