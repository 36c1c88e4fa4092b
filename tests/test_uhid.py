import struct

import pytest

from padlink.descriptors import NETWORK_DESCRIPTOR
from padlink.uhid import (
    UHID_CREATE2,
    UHID_DESTROY,
    UHID_INPUT2,
    Bus,
    UHIDDevice,
    UHIDError,
    pack_create2,
    pack_destroy,
    pack_input2,
)


def test_create2_layout():
    event = pack_create2(
        "AGamePad Virtual Controller", NETWORK_DESCRIPTOR,
        phys="uhid-agamepad", uniq="agamepad-001",
        bus=Bus.USB, vendor=0x046D, product=0, version=0x0100, country=0,
    )
    # type + name + phys + uniq + rd_size + bus + 4 * u32 + rd_data
    assert len(event) == 4 + 128 + 64 + 64 + 2 + 2 + 16 + 4096
    assert struct.unpack_from("<L", event, 0)[0] == UHID_CREATE2
    assert event[4:4 + 27] == b"AGamePad Virtual Controller"
    assert event[4 + 27] == 0
    assert event[132:132 + 13] == b"uhid-agamepad"
    assert event[196:196 + 12] == b"agamepad-001"

    rd_size, bus, vendor, product, version, country = struct.unpack_from("<HHLLLL", event, 260)
    assert rd_size == len(NETWORK_DESCRIPTOR)
    assert bus == Bus.USB
    assert (vendor, product, version, country) == (0x046D, 0, 0x0100, 0)
    assert event[280:280 + rd_size] == NETWORK_DESCRIPTOR


def test_create2_rejects_oversized_descriptor():
    with pytest.raises(UHIDError):
        pack_create2("pad", bytes(4097))


def test_input2_keeps_report_id():
    report = bytes([0x01, 127, 127, 127, 0, 0, 127, 0, 0, 8])
    event = pack_input2(report)
    assert len(event) == 4 + 2 + 4096
    event_type, size = struct.unpack_from("<LH", event)
    assert event_type == UHID_INPUT2
    assert size == 10
    assert event[6:16] == report


def test_destroy_is_type_only():
    assert pack_destroy() == struct.pack("<L", UHID_DESTROY)


def test_device_on_regular_file(tmp_path):
    node = tmp_path / "uhid"
    node.write_bytes(b"")
    device = UHIDDevice(path=str(node))
    device.open(allow_provision=False)
    assert device.is_open

    with pytest.raises(UHIDError):
        device.send_input(b"\x01" * 8)

    device.create(NETWORK_DESCRIPTOR)
    assert device.is_created
    with pytest.raises(UHIDError):
        device.create(NETWORK_DESCRIPTOR)

    device.send_input(bytes(8))
    device.destroy()
    assert not device.is_open
    assert not device.is_created

    written = node.read_bytes()
    create_size = len(pack_create2("x", b""))
    input_size = len(pack_input2(b""))
    assert len(written) == create_size + input_size + 4
    assert struct.unpack_from("<L", written, create_size)[0] == UHID_INPUT2
    assert struct.unpack_from("<L", written, create_size + input_size)[0] == UHID_DESTROY


def test_open_missing_node_without_provisioning(tmp_path):
    device = UHIDDevice(path=str(tmp_path / "missing"))
    with pytest.raises(UHIDError):
        device.open(allow_provision=False)


def test_destroy_without_open_is_noop():
    UHIDDevice(path="/nonexistent").destroy()
