from padlink.descriptors import (
    NETWORK_DESCRIPTOR,
    WIRELESS_DESCRIPTOR,
    axis_count,
    describe,
    descriptor_for,
)
from padlink.report import ReportVariant


def test_descriptor_per_variant():
    assert descriptor_for(ReportVariant.WIRELESS) is WIRELESS_DESCRIPTOR
    assert descriptor_for(ReportVariant.PAIRED) is WIRELESS_DESCRIPTOR
    assert descriptor_for(ReportVariant.NETWORK) is NETWORK_DESCRIPTOR


def test_axis_counts():
    assert axis_count(WIRELESS_DESCRIPTOR) == 4
    assert axis_count(NETWORK_DESCRIPTOR) == 6


def test_descriptors_declare_gamepad_with_report_id_1():
    for descriptor in (WIRELESS_DESCRIPTOR, NETWORK_DESCRIPTOR):
        items = describe(descriptor)
        assert items[0] == "Usage Page (0x1)"
        assert "Usage (0x5)" in items
        assert "Report ID (0x1)" in items
        assert items[-1] == "End Collection"


def test_descriptor_fits_uhid_limit():
    assert len(NETWORK_DESCRIPTOR) < 4096
