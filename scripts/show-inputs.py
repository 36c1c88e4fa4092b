#!/usr/bin/env python3
"""
Show what padlink makes of a physical controller.
Press buttons and move sticks to see the logical state and the encoded
report for each transport. Press Ctrl+C when done.
"""

import os
import sys

import evdev

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "src"))

from padlink.input_handler import InputHandler
from padlink.report import ReportVariant, StateBuilder, encode

devices = [evdev.InputDevice(path) for path in evdev.list_devices()]

print("Available input devices:")
for i, dev in enumerate(devices):
    print(f"  {i}: {dev.path} - {dev.name}")

print()
choice = input("Enter device number to test (empty = auto-detect): ").strip()
path = None
if choice:
    try:
        path = devices[int(choice)].path
    except (ValueError, IndexError):
        print("Invalid device number!")
        sys.exit(1)


def show(state):
    print(f"buttons={state.buttons:016b} "
          f"L=({state.left_x:3d},{state.left_y:3d}) R=({state.right_x:3d},{state.right_y:3d}) "
          f"LT={state.left_trigger} RT={state.right_trigger} hat={state.hat}")
    for variant in ReportVariant:
        print(f"    {variant.name:8s} {encode(state, variant).hex(' ')}")


handler = InputHandler(StateBuilder(), device_path=path, on_change=show)
if not handler.start():
    print("Could not open an input device")
    sys.exit(1)

print("=" * 70)
print("Press ALL buttons and move ALL controls. Ctrl+C to quit.")
print("=" * 70)

try:
    while handler.is_running:
        handler._thread.join(0.5)
except KeyboardInterrupt:
    pass
finally:
    handler.stop()
