#!/usr/bin/env python3
"""Write the wireless and network HID report descriptors as raw files."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from padlink.descriptors import NETWORK_DESCRIPTOR, WIRELESS_DESCRIPTOR, axis_count, describe

DESCRIPTORS = {
    "wireless": WIRELESS_DESCRIPTOR,
    "network": NETWORK_DESCRIPTOR,
}


def main():
    if len(sys.argv) != 2:
        print("Usage: write-hid-descriptors.py <output_dir>")
        sys.exit(1)

    output_dir = sys.argv[1]
    os.makedirs(output_dir, exist_ok=True)

    for name, descriptor in DESCRIPTORS.items():
        path = os.path.join(output_dir, f"{name}.bin")
        with open(path, "wb") as f:
            f.write(descriptor)
        print(f"Wrote {len(descriptor)} bytes ({axis_count(descriptor)} axes) to {path}")
        for item in describe(descriptor):
            print(f"    {item}")


if __name__ == "__main__":
    main()
