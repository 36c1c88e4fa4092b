"""
BlueZ D-Bus helpers.

Thin wrappers around the adapter, device, GATT, advertising, profile and
agent managers. Anything that may take a while (registration, connecting)
goes through the async bus.call variants so the GLib loop never blocks on
BlueZ calling back into our own objects.
"""

import logging
import subprocess
from typing import Any, Callable, Dict, List, Optional

from gi.repository import Gio, GLib

logger = logging.getLogger(__name__)

BLUEZ_SERVICE = "org.bluez"
ADAPTER_IFACE = "org.bluez.Adapter1"
DEVICE_IFACE = "org.bluez.Device1"
GATT_MANAGER_IFACE = "org.bluez.GattManager1"
LE_ADV_MANAGER_IFACE = "org.bluez.LEAdvertisingManager1"
PROFILE_MANAGER_IFACE = "org.bluez.ProfileManager1"
AGENT_MANAGER_IFACE = "org.bluez.AgentManager1"
DBUS_OM_IFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"

# Class of Device: major Peripheral (0x05), minor gamepad (0x08)
GAMEPAD_CLASS_MAJOR = 0x05
GAMEPAD_CLASS_MINOR = 0x08

DoneCallback = Callable[[bool, Optional[str]], None]


def get_system_bus() -> Gio.DBusConnection:
    """Get a connection to the system D-Bus."""
    return Gio.bus_get_sync(Gio.BusType.SYSTEM, None)


def get_managed_objects(bus: Gio.DBusConnection) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """BlueZ object tree unpacked into plain Python values."""
    try:
        result = bus.call_sync(
            BLUEZ_SERVICE,
            "/",
            DBUS_OM_IFACE,
            "GetManagedObjects",
            None,
            GLib.VariantType("(a{oa{sa{sv}}})"),
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        return result.unpack()[0]
    except GLib.Error as e:
        logger.error(f"Error reading BlueZ objects: {e}")
        return {}


def find_adapter_path(bus: Gio.DBusConnection, adapter_name: str = "hci0") -> Optional[str]:
    """Object path like /org/bluez/hci0, or None if the adapter is missing."""
    for path, ifaces in get_managed_objects(bus).items():
        if path.endswith(f"/{adapter_name}") and ADAPTER_IFACE in ifaces:
            return path
    return None


def device_path(adapter_path: str, address: str) -> str:
    return f"{adapter_path}/dev_{address.upper().replace(':', '_')}"


def address_from_path(path: str) -> Optional[str]:
    leaf = path.rsplit("/", 1)[-1]
    if not leaf.startswith("dev_"):
        return None
    return leaf[4:].replace("_", ":")


def _get_property(bus: Gio.DBusConnection, path: str, iface: str, prop_name: str) -> Any:
    try:
        result = bus.call_sync(
            BLUEZ_SERVICE,
            path,
            DBUS_PROPS_IFACE,
            "Get",
            GLib.Variant("(ss)", (iface, prop_name)),
            GLib.VariantType("(v)"),
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        return result.get_child_value(0).get_variant()
    except GLib.Error as e:
        logger.error(f"Error getting {iface}.{prop_name}: {e}")
        return None


def get_adapter_property(bus: Gio.DBusConnection, adapter_path: str, prop_name: str) -> Any:
    """Get a property from the adapter as a GLib.Variant."""
    return _get_property(bus, adapter_path, ADAPTER_IFACE, prop_name)


def set_adapter_property(bus: Gio.DBusConnection, adapter_path: str, prop_name: str, value: GLib.Variant) -> bool:
    """Set a property on the adapter."""
    try:
        bus.call_sync(
            BLUEZ_SERVICE,
            adapter_path,
            DBUS_PROPS_IFACE,
            "Set",
            GLib.Variant("(ssv)", (ADAPTER_IFACE, prop_name, value)),
            None,
            Gio.DBusCallFlags.NONE,
            5000,
            None,
        )
        return True
    except GLib.Error as e:
        logger.error(f"Error setting adapter property {prop_name}: {e}")
        return False


def get_adapter_alias(bus: Gio.DBusConnection, adapter_path: str) -> Optional[str]:
    value = get_adapter_property(bus, adapter_path, "Alias")
    return value.get_string() if value is not None else None


def set_adapter_alias(bus: Gio.DBusConnection, adapter_path: str, name: str) -> bool:
    return set_adapter_property(bus, adapter_path, "Alias", GLib.Variant("s", name))


def get_device_property(bus: Gio.DBusConnection, path: str, prop_name: str) -> Any:
    return _get_property(bus, path, DEVICE_IFACE, prop_name)


def get_le_advertising_active_instances(bus: Gio.DBusConnection, adapter_path: str) -> int:
    value = _get_property(bus, adapter_path, LE_ADV_MANAGER_IFACE, "ActiveInstances")
    return value.get_byte() if value is not None else -1


def ensure_adapter_powered_and_discoverable(bus: Gio.DBusConnection, adapter_path: str) -> bool:
    """Power the adapter on and make it discoverable and pairable."""
    if not set_adapter_property(bus, adapter_path, "Powered", GLib.Variant("b", True)):
        return False
    set_adapter_property(bus, adapter_path, "Discoverable", GLib.Variant("b", True))
    set_adapter_property(bus, adapter_path, "Pairable", GLib.Variant("b", True))
    return True


def _call_async(
    bus: Gio.DBusConnection,
    path: str,
    iface: str,
    method: str,
    params: Optional[GLib.Variant],
    what: str,
    callback: Optional[DoneCallback],
    timeout_ms: int = 30000,
    quiet_failure: bool = False,
) -> None:
    def on_done(connection, result, user_data):
        try:
            connection.call_finish(result)
            logger.info(f"{what}: ok")
            if callback:
                callback(True, None)
        except GLib.Error as e:
            if quiet_failure:
                logger.warning(f"{what} failed (may be normal on shutdown): {e}")
            else:
                logger.error(f"{what} failed: {e}")
            if callback:
                callback(False, e.message)

    bus.call(
        BLUEZ_SERVICE,
        path,
        iface,
        method,
        params,
        None,
        Gio.DBusCallFlags.NONE,
        timeout_ms,
        None,
        on_done,
        None,
    )


def register_application_async(bus, adapter_path: str, app_path: str, callback: DoneCallback) -> None:
    """Register a GATT application; callback gets (success, error_message)."""
    _call_async(bus, adapter_path, GATT_MANAGER_IFACE, "RegisterApplication",
                GLib.Variant("(oa{sv})", (app_path, {})),
                f"RegisterApplication {app_path}", callback)


def unregister_application_async(bus, adapter_path: str, app_path: str, callback: Optional[DoneCallback] = None) -> None:
    _call_async(bus, adapter_path, GATT_MANAGER_IFACE, "UnregisterApplication",
                GLib.Variant("(o)", (app_path,)),
                f"UnregisterApplication {app_path}", callback, 5000, quiet_failure=True)


def register_advertisement_async(bus, adapter_path: str, adv_path: str, callback: DoneCallback) -> None:
    _call_async(bus, adapter_path, LE_ADV_MANAGER_IFACE, "RegisterAdvertisement",
                GLib.Variant("(oa{sv})", (adv_path, {})),
                f"RegisterAdvertisement {adv_path}", callback)


def unregister_advertisement_async(bus, adapter_path: str, adv_path: str, callback: Optional[DoneCallback] = None) -> None:
    _call_async(bus, adapter_path, LE_ADV_MANAGER_IFACE, "UnregisterAdvertisement",
                GLib.Variant("(o)", (adv_path,)),
                f"UnregisterAdvertisement {adv_path}", callback, 5000, quiet_failure=True)


def register_profile_async(bus, profile_path: str, uuid: str, options: Dict[str, GLib.Variant], callback: DoneCallback) -> None:
    """ProfileManager1.RegisterProfile; outcome arrives on ``callback``."""
    _call_async(bus, "/org/bluez", PROFILE_MANAGER_IFACE, "RegisterProfile",
                GLib.Variant("(osa{sv})", (profile_path, uuid, options)),
                f"RegisterProfile {profile_path}", callback)


def unregister_profile_async(bus, profile_path: str, callback: Optional[DoneCallback] = None) -> None:
    _call_async(bus, "/org/bluez", PROFILE_MANAGER_IFACE, "UnregisterProfile",
                GLib.Variant("(o)", (profile_path,)),
                f"UnregisterProfile {profile_path}", callback, 5000, quiet_failure=True)


def register_agent_async(bus, agent_path: str, capability: str, callback: Optional[DoneCallback] = None) -> None:
    """Register a pairing agent and make it the default one."""
    def on_registered(success, error):
        if not success:
            if callback:
                callback(False, error)
            return
        _call_async(bus, "/org/bluez", AGENT_MANAGER_IFACE, "RequestDefaultAgent",
                    GLib.Variant("(o)", (agent_path,)),
                    f"RequestDefaultAgent {agent_path}", callback, 5000)

    _call_async(bus, "/org/bluez", AGENT_MANAGER_IFACE, "RegisterAgent",
                GLib.Variant("(os)", (agent_path, capability)),
                f"RegisterAgent {agent_path}", on_registered, 5000)


def unregister_agent_async(bus, agent_path: str) -> None:
    _call_async(bus, "/org/bluez", AGENT_MANAGER_IFACE, "UnregisterAgent",
                GLib.Variant("(o)", (agent_path,)),
                f"UnregisterAgent {agent_path}", None, 5000, quiet_failure=True)


def device_disconnect_async(bus, path: str, callback: Optional[DoneCallback] = None) -> None:
    _call_async(bus, path, DEVICE_IFACE, "Disconnect", None, f"Disconnect {path}", callback, 10000)


def list_devices(bus: Gio.DBusConnection, adapter_path: str, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict]:
    """Devices under ``adapter_path`` whose Device1 properties match ``predicate``.

    Returns dicts with 'path', 'name', 'address', 'connected', 'paired' keys.
    """
    devices = []
    for path, ifaces in get_managed_objects(bus).items():
        if not path.startswith(adapter_path + "/"):
            continue
        props = ifaces.get(DEVICE_IFACE)
        if props is None or not predicate(props):
            continue
        devices.append({
            "path": path,
            "name": props.get("Alias") or props.get("Name") or "Unknown",
            "address": props.get("Address", ""),
            "connected": bool(props.get("Connected", False)),
            "paired": bool(props.get("Paired", False) or props.get("Bonded", False)),
        })
    return devices


def get_paired_devices(bus: Gio.DBusConnection, adapter_path: str) -> List[Dict]:
    return list_devices(bus, adapter_path, lambda p: bool(p.get("Paired", False) or p.get("Bonded", False)))


def subscribe_device_properties(
    bus: Gio.DBusConnection,
    callback: Callable[[str, Dict[str, Any]], None],
) -> int:
    """Call ``callback(device_path, changed)`` for every Device1 PropertiesChanged."""
    def on_signal(connection, sender, path, iface, signal, params):
        changed_iface, changed, _ = params.unpack()
        if changed_iface == DEVICE_IFACE:
            callback(path, changed)

    return bus.signal_subscribe(
        BLUEZ_SERVICE,
        DBUS_PROPS_IFACE,
        "PropertiesChanged",
        None,
        None,
        Gio.DBusSignalFlags.NONE,
        on_signal,
    )


def subscribe_bluez_owner(bus: Gio.DBusConnection, callback: Callable[[bool], None]) -> int:
    """Call ``callback(present)`` when org.bluez appears on or leaves the bus."""
    def on_signal(connection, sender, path, iface, signal, params):
        name, old_owner, new_owner = params.unpack()
        if name == BLUEZ_SERVICE:
            callback(bool(new_owner))

    return bus.signal_subscribe(
        "org.freedesktop.DBus",
        "org.freedesktop.DBus",
        "NameOwnerChanged",
        "/org/freedesktop/DBus",
        BLUEZ_SERVICE,
        Gio.DBusSignalFlags.NONE,
        on_signal,
    )


def get_adapter_index(adapter_name: str = "hci0") -> int:
    """Extract adapter index from adapter name (e.g., 'hci0' -> 0)."""
    if adapter_name.startswith("hci"):
        try:
            return int(adapter_name[3:])
        except ValueError:
            pass
    return 0


def _btmgmt(adapter_index: int, *args: str) -> Optional[subprocess.CompletedProcess]:
    try:
        return subprocess.run(
            ["btmgmt", "--index", str(adapter_index), *args],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"btmgmt {' '.join(args)} unavailable: {e}")
        return None


def set_device_class_hint(adapter_index: int = 0) -> bool:
    """Advertise the adapter as a gamepad in inquiry results.

    Best effort: BlueZ or the kernel may refuse it, which is not an error.
    """
    result = _btmgmt(adapter_index, "class", str(GAMEPAD_CLASS_MAJOR), str(GAMEPAD_CLASS_MINOR))
    if result is not None and result.returncode == 0:
        logger.info("Device class set to peripheral/gamepad")
        return True
    logger.debug("Device class hint not applied")
    return False


def check_static_address_set(adapter_index: int = 0) -> bool:
    result = _btmgmt(adapter_index, "info")
    return result is not None and result.returncode == 0 and "static-addr" in result.stdout.lower()


def set_static_ble_address(adapter_index: int = 0, address: str = "C2:12:34:56:78:9A") -> bool:
    """
    Give the adapter a static random LE address so hosts keep seeing the
    same controller across sessions. Requires root; the adapter is power
    cycled while the address is applied.
    """
    if check_static_address_set(adapter_index):
        logger.info(f"Static BLE address already configured for adapter {adapter_index}")
        return True

    logger.info(f"Configuring static BLE address {address} for adapter {adapter_index}")
    for args in (("power", "off"), ("static-addr", address), ("power", "on")):
        result = _btmgmt(adapter_index, *args)
        if result is None or result.returncode != 0:
            logger.warning(f"Failed to set static BLE address at 'btmgmt {' '.join(args)}' (requires sudo)")
            if args[0] != "power" or args[1] != "on":
                _btmgmt(adapter_index, "power", "on")
            return False
    logger.info(f"Static BLE address set: {address}")
    return True
