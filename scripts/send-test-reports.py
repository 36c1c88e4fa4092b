#!/usr/bin/env python3
"""
Exercise a padlink-server by sending test reports over UDP.
Run padlink-server on the host first, then run this on the handheld.

Usage:
    python3 scripts/send-test-reports.py [server-ip]
"""

import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "src"))

from padlink.report import Button, Hat, ReportVariant, StateBuilder, encode
from padlink.udp import UdpTransport


def main():
    print("=== Testing UDP relay to padlink-server ===\n")

    transport = UdpTransport()
    transport.start()

    if len(sys.argv) > 1:
        address = sys.argv[1]
    else:
        print("Discovering servers (5 seconds)...")
        devices = transport.discover(5.0)
        if not devices:
            print("ERROR: No server answered discovery!")
            print("Run: sudo padlink-server -v")
            transport.stop()
            return 1
        for device in devices:
            print(f"✓ Found {device.name} at {device.address}")
        address = devices[0].address

    print(f"\nConnecting to {address}...")
    if not transport.connect(address):
        print("ERROR: Descriptor handshake failed!")
        transport.stop()
        return 1
    print("✓ DESC_OK received")

    builder = StateBuilder()

    def push():
        transport.send_report(encode(builder.snapshot(), ReportVariant.NETWORK))

    try:
        print("\n=== Buttons (7 seconds) ===")
        for bit in range(16):
            print(f"Button {bit} press", end="", flush=True)
            builder.set_button(bit, True)
            push()
            time.sleep(0.2)
            print(" release")
            builder.set_button(bit, False)
            push()
            time.sleep(0.2)

        print("\n=== Hat (2 seconds) ===")
        for direction in range(Hat.CENTER + 1):
            print(f"  Hat {direction}")
            builder.set_hat(direction)
            push()
            time.sleep(0.2)

        print("\n=== Sticks (3 seconds) ===")
        for value in (0, 255, 127):
            print(f"  All axes -> {value}")
            for axis in ("left_x", "left_y", "right_x", "right_y"):
                builder.set_axis(axis, value)
            push()
            time.sleep(1.0)

        print("\n=== Triggers ===")
        for bit in (Button.L2, Button.R2):
            builder.set_button(bit, True)
            push()
            time.sleep(0.5)
            builder.set_button(bit, False)
            push()

        print("\n✓ Test complete!")
        print("\nCheck the host for a 'AGamePad Virtual Controller' in a gamepad tester")
        print("(e.g. evtest or jstest-gtk).")

    except Exception as e:
        print(f"\nERROR during test: {e}")
        import traceback
        traceback.print_exc()
        return 1
    finally:
        print("\nDisconnecting...")
        transport.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
