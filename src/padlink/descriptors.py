"""
HID report descriptors for the gamepad.

Both descriptors declare a Generic Desktop / Gamepad application collection
with Report ID 1, 8-bit axes (0-255), 16 one-bit buttons and an 8-bit hat
switch with a null state. The network variant adds two trigger axes.
"""

from typing import List

from .report import ReportVariant

# 4 axes (X, Y, Z, Rz), used by the paired and wireless transports
WIRELESS_DESCRIPTOR = bytes([
    0x05, 0x01,        # Usage Page (Generic Desktop)
    0x09, 0x05,        # Usage (Gamepad)
    0xA1, 0x01,        # Collection (Application)
    0x85, 0x01,        #   Report ID (1)

    0x05, 0x01,        #   Usage Page (Generic Desktop)
    0x09, 0x01,        #   Usage (Pointer)
    0xA1, 0x00,        #   Collection (Physical)
    0x09, 0x30,        #     Usage (X)   left stick X
    0x09, 0x31,        #     Usage (Y)   left stick Y
    0x09, 0x32,        #     Usage (Z)   right stick X
    0x09, 0x35,        #     Usage (Rz)  right stick Y
    0x15, 0x00,        #     Logical Minimum (0)
    0x26, 0xFF, 0x00,  #     Logical Maximum (255)
    0x75, 0x08,        #     Report Size (8)
    0x95, 0x04,        #     Report Count (4)
    0x81, 0x02,        #     Input (Data, Variable, Absolute)
    0xC0,              #   End Collection

    0x05, 0x09,        #   Usage Page (Button)
    0x19, 0x01,        #   Usage Minimum (Button 1)
    0x29, 0x10,        #   Usage Maximum (Button 16)
    0x15, 0x00,        #   Logical Minimum (0)
    0x25, 0x01,        #   Logical Maximum (1)
    0x75, 0x01,        #   Report Size (1)
    0x95, 0x10,        #   Report Count (16)
    0x81, 0x02,        #   Input (Data, Variable, Absolute)

    0x05, 0x01,        #   Usage Page (Generic Desktop)
    0x09, 0x39,        #   Usage (Hat switch)
    0x15, 0x00,        #   Logical Minimum (0)
    0x25, 0x07,        #   Logical Maximum (7)
    0x75, 0x08,        #   Report Size (8)
    0x95, 0x01,        #   Report Count (1)
    0x81, 0x42,        #   Input (Data, Variable, Absolute, Null State)

    0xC0,              # End Collection
])

# 6 axes in usage order 0x30..0x35; report order is lx, ly, rx, L2, R2, ry
NETWORK_DESCRIPTOR = bytes([
    0x05, 0x01,        # Usage Page (Generic Desktop)
    0x09, 0x05,        # Usage (Gamepad)
    0xA1, 0x01,        # Collection (Application)
    0x85, 0x01,        #   Report ID (1)

    0x05, 0x01,        #   Usage Page (Generic Desktop)
    0x09, 0x01,        #   Usage (Pointer)
    0xA1, 0x00,        #   Collection (Physical)
    0x09, 0x30,        #     Usage (X)   left stick X
    0x09, 0x31,        #     Usage (Y)   left stick Y
    0x09, 0x32,        #     Usage (Z)   right stick X
    0x09, 0x33,        #     Usage (Rx)  L2 trigger
    0x09, 0x34,        #     Usage (Ry)  R2 trigger
    0x09, 0x35,        #     Usage (Rz)  right stick Y
    0x15, 0x00,        #     Logical Minimum (0)
    0x26, 0xFF, 0x00,  #     Logical Maximum (255)
    0x75, 0x08,        #     Report Size (8)
    0x95, 0x06,        #     Report Count (6)
    0x81, 0x02,        #     Input (Data, Variable, Absolute)
    0xC0,              #   End Collection

    0x05, 0x09,        #   Usage Page (Button)
    0x19, 0x01,        #   Usage Minimum (Button 1)
    0x29, 0x10,        #   Usage Maximum (Button 16)
    0x15, 0x00,        #   Logical Minimum (0)
    0x25, 0x01,        #   Logical Maximum (1)
    0x75, 0x01,        #   Report Size (1)
    0x95, 0x10,        #   Report Count (16)
    0x81, 0x02,        #   Input (Data, Variable, Absolute)

    0x05, 0x01,        #   Usage Page (Generic Desktop)
    0x09, 0x39,        #   Usage (Hat switch)
    0x15, 0x00,        #   Logical Minimum (0)
    0x25, 0x07,        #   Logical Maximum (7)
    0x75, 0x08,        #   Report Size (8)
    0x95, 0x01,        #   Report Count (1)
    0x81, 0x42,        #   Input (Data, Variable, Absolute, Null State)

    0xC0,              # End Collection
])

_ITEM_NAMES = {
    0x04: "Usage Page",
    0x08: "Usage",
    0x14: "Logical Minimum",
    0x24: "Logical Maximum",
    0x74: "Report Size",
    0x84: "Report ID",
    0x94: "Report Count",
    0x18: "Usage Minimum",
    0x28: "Usage Maximum",
    0x80: "Input",
    0xA0: "Collection",
    0xC0: "End Collection",
}


def descriptor_for(variant: ReportVariant) -> bytes:
    if variant is ReportVariant.NETWORK:
        return NETWORK_DESCRIPTOR
    return WIRELESS_DESCRIPTOR


def describe(descriptor: bytes) -> List[str]:
    """Walk the short items of a descriptor and name each one."""
    lines = []
    i = 0
    while i < len(descriptor):
        prefix = descriptor[i]
        size = prefix & 0x03
        if size == 3:
            size = 4
        tag = prefix & 0xFC
        data = descriptor[i + 1:i + 1 + size]
        value = int.from_bytes(data, "little") if data else None
        name = _ITEM_NAMES.get(tag, f"Item 0x{tag:02X}")
        lines.append(name if value is None else f"{name} (0x{value:X})")
        i += 1 + size
    return lines


def axis_count(descriptor: bytes) -> int:
    """Number of axis fields declared by the first 8-bit Report Count."""
    for i in range(len(descriptor) - 1):
        if descriptor[i] == 0x95 and i >= 2 and descriptor[i - 2] == 0x75 and descriptor[i - 1] == 0x08:
            return descriptor[i + 1]
    return 0
