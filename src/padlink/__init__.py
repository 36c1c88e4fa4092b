"""
padlink: turn a Linux handheld into a game controller for another machine.

The pad can reach a host as a classic Bluetooth HID device, as a BLE
HID-over-GATT peripheral, or over UDP to a ``padlink-server`` that creates a
virtual HID device through /dev/uhid.
"""

__version__ = "0.1.0"
