from padlink import hidp
from padlink.report import ReportVariant, neutral_report

LAST = bytes([10, 20, 30, 40, 0x01, 0x00, 0x08])


def test_input_frame_carries_data_header_and_report_id():
    frame = hidp.input_frame(neutral_report(ReportVariant.PAIRED))
    assert frame[:2] == bytes([0xA1, 0x01])
    assert len(frame) == 9


def test_set_protocol_is_acknowledged():
    reply, action, protocol = hidp.handle_control(bytes([0x70]), LAST, hidp.PROTOCOL_REPORT)
    assert reply == bytes([hidp.RESULT_SUCCESSFUL])
    assert action is hidp.ControlAction.NONE
    assert protocol == hidp.PROTOCOL_BOOT


def test_get_protocol_reports_current_mode():
    reply, _, _ = hidp.handle_control(bytes([0x60]), LAST, hidp.PROTOCOL_REPORT)
    assert reply == bytes([0xA0, 0x01])


def test_get_report_returns_last_input():
    reply, _, _ = hidp.handle_control(bytes([0x41, 0x01]), LAST)
    assert reply == bytes([0xA1, 0x01]) + LAST


def test_get_report_with_wrong_id():
    reply, _, _ = hidp.handle_control(bytes([0x41, 0x07]), LAST)
    assert reply == bytes([hidp.RESULT_ERR_INVALID_REPORT_ID])


def test_get_feature_report_is_invalid_parameter():
    reply, _, _ = hidp.handle_control(bytes([0x43, 0x01]), LAST)
    assert reply == bytes([hidp.RESULT_ERR_INVALID_PARAMETER])


def test_virtual_cable_unplug_requests_disconnect():
    reply, action, _ = hidp.handle_control(bytes([0x15]), LAST)
    assert reply is None
    assert action is hidp.ControlAction.UNPLUG


def test_suspend_and_exit_suspend():
    assert hidp.handle_control(bytes([0x13]), LAST)[1] is hidp.ControlAction.SUSPEND
    assert hidp.handle_control(bytes([0x14]), LAST)[1] is hidp.ControlAction.EXIT_SUSPEND


def test_unknown_request_is_unsupported():
    reply, _, _ = hidp.handle_control(bytes([0x90]), LAST)
    assert reply == bytes([hidp.RESULT_ERR_UNSUPPORTED_REQUEST])


def test_empty_message_is_ignored():
    assert hidp.handle_control(b"", LAST) == (None, hidp.ControlAction.NONE, hidp.PROTOCOL_REPORT)
