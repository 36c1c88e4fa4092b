"""
HID-over-GATT transport.

Serves the HID, device information, battery and generic access services
as a BLE peripheral, advertises, and forwards input reports as
notifications once the host is bonded and subscribed. Must be started from
the thread that runs the GLib main loop; BlueZ callbacks arrive there.
"""

import logging
import struct
from typing import List, Optional

from gi.repository import GLib

from .adv import Advertisement, classify_advertising_error
from .agent import AutoAcceptAgent
from .bluez import (
    address_from_path,
    device_disconnect_async,
    device_path,
    ensure_adapter_powered_and_discoverable,
    find_adapter_path,
    get_adapter_alias,
    get_adapter_index,
    get_device_property,
    get_le_advertising_active_instances,
    get_paired_devices,
    get_system_bus,
    register_advertisement_async,
    register_application_async,
    set_adapter_alias,
    set_static_ble_address,
    subscribe_device_properties,
    unregister_advertisement_async,
    unregister_application_async,
)
from .gatt_app import Characteristic, Descriptor, GattApplication, Service, uuid16
from .hid_link import BondState, HidLink, LinkState, shared_state
from .report import REPORT_ID, ReportVariant, neutral_report
from .transport import DeviceDescriptor, Mode, Transport

logger = logging.getLogger(__name__)

# HID Information: bcdHID 1.11, country 0, flags remote-wake | normally-connectable
HID_INFO = bytes([0x11, 0x01, 0x00, 0x03])
# Report Reference: report ID 1, type Input
REPORT_REFERENCE = bytes([REPORT_ID, 0x01])
PROTOCOL_MODE_REPORT = 0x01

MANUFACTURER_NAME = b"AGamepad"
MODEL_NUMBER = b"BLE Gamepad"
# PnP ID: vendor ID source USB (2), vendor 0x046D, product 0x0000, version 0x0001
PNP_ID = bytes([0x02, 0x6D, 0x04, 0x00, 0x00, 0x01, 0x00])
BATTERY_LEVEL = 100
APPEARANCE_GAMEPAD = 0x03C4

ENCRYPTED_READ = ["encrypt-read"]


class EncryptedLinkTransport(Transport):
    mode = Mode.BLE
    report_variant = ReportVariant.WIRELESS

    def __init__(
        self,
        name: str = "AGamepad",
        adapter: str = "hci0",
        static_addr: Optional[str] = None,
        verbose: bool = False,
        keepalive_interval: float = 0.05,
    ):
        super().__init__()
        self.name = name
        self.adapter = adapter
        self.static_addr = static_addr
        self.verbose = verbose
        self.keepalive_interval = keepalive_interval

        self.link = HidLink()
        self.link.add_listener(self._on_link_state)
        self.suspended = False
        self.protocol_mode = PROTOCOL_MODE_REPORT

        self._bus = None
        self._adapter_path: Optional[str] = None
        self._app: Optional[GattApplication] = None
        self._adv: Optional[Advertisement] = None
        self._agent: Optional[AutoAcceptAgent] = None
        self._report_char: Optional[Characteristic] = None
        self._signal_id: Optional[int] = None
        self._current = neutral_report(ReportVariant.WIRELESS)[1:]
        self._app_registered = False
        self._adv_registered = False
        self._running = False

    # ------------------------------------------------------------------
    # Service tree

    def build_services(self) -> List[Service]:
        self._report_char = Characteristic(
            uuid16(0x2A4D),
            ["encrypt-read", "notify", "encrypt-notify"],
            value=lambda: self._current,
            on_subscribe=self.link.notifications_changed,
            descriptors=[Descriptor(uuid16(0x2908), ENCRYPTED_READ, REPORT_REFERENCE)],
            name="Report",
        )
        hid = Service(uuid16(0x1812), [
            Characteristic(uuid16(0x2A4A), ENCRYPTED_READ, HID_INFO, name="HID Information"),
            Characteristic(uuid16(0x2A4B), ENCRYPTED_READ, self.descriptor, name="Report Map"),
            Characteristic(uuid16(0x2A4C), ["write-without-response", "encrypt-write"],
                           on_write=self._on_control_point, name="HID Control Point"),
            Characteristic(uuid16(0x2A4E), ["encrypt-read", "write-without-response", "encrypt-write"],
                           value=lambda: bytes([self.protocol_mode]),
                           on_write=self._on_protocol_mode, name="Protocol Mode"),
            self._report_char,
        ])
        device_info = Service(uuid16(0x180A), [
            Characteristic(uuid16(0x2A29), ["read"], MANUFACTURER_NAME, name="Manufacturer Name"),
            Characteristic(uuid16(0x2A24), ["read"], MODEL_NUMBER, name="Model Number"),
            Characteristic(uuid16(0x2A50), ["read"], PNP_ID, name="PnP ID"),
        ])
        battery = Service(uuid16(0x180F), [
            Characteristic(uuid16(0x2A19), ["read", "notify"], bytes([BATTERY_LEVEL]),
                           on_subscribe=lambda on: logger.debug(f"Battery notifications {'on' if on else 'off'}"),
                           name="Battery Level"),
        ])
        gap = Service(uuid16(0x1800), [
            Characteristic(uuid16(0x2A00), ["read"], lambda: self.name.encode("utf-8"), name="Device Name"),
            Characteristic(uuid16(0x2A01), ["read"], struct.pack("<H", APPEARANCE_GAMEPAD), name="Appearance"),
        ])
        return [hid, device_info, battery, gap]

    def _on_control_point(self, value: bytes) -> None:
        if not value:
            return
        if value[0] == 0:
            self.suspended = True
            logger.info("HID Control Point: Suspend")
        elif value[0] == 1:
            self.suspended = False
            logger.info("HID Control Point: Exit Suspend")
        else:
            logger.info(f"HID Control Point: Unknown command {value[0]}")

    def _on_protocol_mode(self, value: bytes) -> None:
        if value:
            self.protocol_mode = value[0]
            logger.info(f"Protocol mode set to {'report' if value[0] else 'boot'}")

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        if self._running:
            return
        try:
            self._bus = get_system_bus()
        except GLib.Error as e:
            logger.error(f"Failed to connect to system bus: {e}")
            self.link.advertising_failed("no system bus")
            return

        self._adapter_path = find_adapter_path(self._bus, self.adapter)
        if not self._adapter_path:
            logger.error(f"Adapter {self.adapter} not found")
            self.link.advertising_failed("adapter missing")
            return

        if self.static_addr:
            if not set_static_ble_address(get_adapter_index(self.adapter), self.static_addr):
                logger.warning("Could not set static BLE address - hosts may see a new controller on reconnect")

        if not ensure_adapter_powered_and_discoverable(self._bus, self._adapter_path):
            self.link.advertising_failed("adapter could not be powered")
            return
        set_adapter_alias(self._bus, self._adapter_path, self.name)

        self._app = GattApplication(self._bus, self.build_services(), verbose=self.verbose)
        self._adv = Advertisement(self._bus, self.name, verbose=self.verbose, on_release=self._on_adv_released)
        self._agent = AutoAcceptAgent(self._bus, on_pairing=self._on_pairing_started)
        if not self._app.register() or not self._adv.register():
            self._release_objects()
            self.link.advertising_failed("could not export GATT objects")
            return
        self._agent.register()
        self._signal_id = subscribe_device_properties(self._bus, self._on_device_properties)
        self._running = True

        register_application_async(self._bus, self._adapter_path, GattApplication.APP_PATH, self._on_app_registered)

    def _on_app_registered(self, success: bool, error: Optional[str]) -> None:
        if not success:
            logger.error(f"GATT registration failed: {error}")
            self.link.advertising_failed(f"GATT registration failed: {error}")
            return
        self._app_registered = True
        register_advertisement_async(self._bus, self._adapter_path, Advertisement.ADV_PATH, self._on_adv_registered)

    def _on_adv_registered(self, success: bool, error: Optional[str]) -> None:
        if not success:
            kind = classify_advertising_error(error)
            self.link.advertising_failed(f"{kind.value}: {error}")
            return
        self._adv_registered = True
        active = get_le_advertising_active_instances(self._bus, self._adapter_path)
        logger.info(f"Advertising as '{self.name}' (ActiveInstances: {active})")
        self.link.advertising_started()

    def _on_adv_released(self) -> None:
        self._adv_registered = False
        self.link.advertising_stopped()

    def stop(self) -> None:
        if not self._running:
            self.link.reset()
            return
        self._running = False
        peer = self.link.peer
        if peer and self._bus:
            device_disconnect_async(self._bus, device_path(self._adapter_path, peer))
        if self._adv_registered:
            unregister_advertisement_async(self._bus, self._adapter_path, Advertisement.ADV_PATH)
            self._adv_registered = False
        if self._app_registered:
            unregister_application_async(self._bus, self._adapter_path, GattApplication.APP_PATH)
            self._app_registered = False
        self._release_objects()
        self.link.reset()
        logger.info("BLE gamepad service stopped")

    def _release_objects(self) -> None:
        if self._signal_id is not None and self._bus:
            self._bus.signal_unsubscribe(self._signal_id)
            self._signal_id = None
        for obj in (self._agent, self._adv, self._app):
            if obj is not None:
                obj.unregister()
        self._agent = self._adv = self._app = None

    # ------------------------------------------------------------------
    # BlueZ events

    def _on_device_properties(self, path: str, changed) -> None:
        if not self._adapter_path or not path.startswith(self._adapter_path + "/"):
            return
        address = address_from_path(path)
        if address is None:
            return

        if "Connected" in changed:
            if changed["Connected"]:
                logger.info(f"Device connected: {address}")
                self.link.peer_connected(address)
                if self._is_paired(path):
                    logger.info("Device is already bonded")
                    self.link.bond_changed(address, BondState.BONDED)
            else:
                logger.info(f"Device disconnected: {address}")
                self.link.peer_disconnected(address)
                if self._report_char is not None:
                    self._report_char.notifying = False

        for key in ("Paired", "Bonded"):
            if key in changed:
                bond = BondState.BONDED if changed[key] else BondState.NONE
                logger.info(f"Bond state for {address}: {bond.value}")
                self.link.bond_changed(address, bond)

    def _is_paired(self, path: str) -> bool:
        value = get_device_property(self._bus, path, "Paired")
        return bool(value.get_boolean()) if value is not None else False

    def _on_pairing_started(self, address: str) -> None:
        if self.link.bond_state is not BondState.BONDED:
            self.link.bond_changed(address, BondState.BONDING)

    def _on_link_state(self, state: LinkState) -> None:
        self._set_state(shared_state(state))

    @property
    def raw_state(self) -> LinkState:
        return self.link.state

    # ------------------------------------------------------------------
    # Transport API

    def send_report(self, report: bytes) -> None:
        # Report ID 1 is declared by the Report Reference descriptor
        payload = report[1:] if len(report) == ReportVariant.WIRELESS.size else report
        self._current = bytes(payload)
        if not self.link.can_send():
            return
        if self._app is None or self._report_char is None:
            return
        self._app.notify(self._report_char, self._current)

    def disconnect(self, address: Optional[str] = None) -> None:
        peer = address or self.link.peer
        if not peer or not self._bus or not self._adapter_path:
            return
        device_disconnect_async(self._bus, device_path(self._adapter_path, peer))

    def supports_paired_device_list(self) -> bool:
        return True

    def paired_devices(self) -> List[DeviceDescriptor]:
        if not self._bus or not self._adapter_path:
            return []
        return [DeviceDescriptor(d["address"], d["name"]) for d in get_paired_devices(self._bus, self._adapter_path)]

    def get_bluetooth_name(self) -> str:
        if self._bus and self._adapter_path:
            return get_adapter_alias(self._bus, self._adapter_path) or self.name
        return self.name

    def set_bluetooth_name(self, name: str) -> bool:
        self.name = name
        if self._bus and self._adapter_path:
            return set_adapter_alias(self._bus, self._adapter_path, name)
        return False
