"""
Bluetooth HID protocol (HIDP) framing for the control and interrupt channels.

Only what a gamepad device needs: input DATA frames on the interrupt channel
and answers to the host's control requests.
"""

from enum import Enum
from typing import Optional, Tuple

from .report import REPORT_ID

CONTROL_PSM = 0x11
INTERRUPT_PSM = 0x13

# Message types (high nibble of the header byte)
HANDSHAKE = 0x00
HID_CONTROL = 0x10
GET_REPORT = 0x40
SET_REPORT = 0x50
GET_PROTOCOL = 0x60
SET_PROTOCOL = 0x70
DATA = 0xA0

# Report types (low two bits of DATA/GET_REPORT/SET_REPORT)
REPORT_TYPE_INPUT = 0x01

# Handshake result codes
RESULT_SUCCESSFUL = 0x00
RESULT_ERR_INVALID_REPORT_ID = 0x02
RESULT_ERR_UNSUPPORTED_REQUEST = 0x03
RESULT_ERR_INVALID_PARAMETER = 0x04

# HID_CONTROL operations
CONTROL_SUSPEND = 0x03
CONTROL_EXIT_SUSPEND = 0x04
CONTROL_VIRTUAL_CABLE_UNPLUG = 0x05

PROTOCOL_BOOT = 0x00
PROTOCOL_REPORT = 0x01

INPUT_HEADER = bytes([DATA | REPORT_TYPE_INPUT, REPORT_ID])


class ControlAction(Enum):
    NONE = "none"
    UNPLUG = "unplug"
    SUSPEND = "suspend"
    EXIT_SUSPEND = "exit-suspend"


def input_frame(report: bytes) -> bytes:
    """Interrupt-channel frame for a 7-byte report without its ID."""
    return INPUT_HEADER + bytes(report)


def handshake(result: int) -> bytes:
    return bytes([HANDSHAKE | result])


def handle_control(message: bytes, last_report: bytes, protocol: int = PROTOCOL_REPORT) -> Tuple[Optional[bytes], ControlAction, int]:
    """Answer one control-channel message.

    Returns ``(reply, action, protocol)``: the bytes to send back (None for
    no reply), what the device should do, and the protocol mode after the
    message.
    """
    if not message:
        return None, ControlAction.NONE, protocol

    header = message[0]
    kind = header & 0xF0
    param = header & 0x0F

    if kind == HID_CONTROL:
        if param == CONTROL_VIRTUAL_CABLE_UNPLUG:
            return None, ControlAction.UNPLUG, protocol
        if param == CONTROL_SUSPEND:
            return handshake(RESULT_SUCCESSFUL), ControlAction.SUSPEND, protocol
        if param == CONTROL_EXIT_SUSPEND:
            return handshake(RESULT_SUCCESSFUL), ControlAction.EXIT_SUSPEND, protocol
        return handshake(RESULT_SUCCESSFUL), ControlAction.NONE, protocol

    if kind == SET_PROTOCOL:
        mode = param & 0x01
        return handshake(RESULT_SUCCESSFUL), ControlAction.NONE, mode

    if kind == GET_PROTOCOL:
        return bytes([DATA, protocol]), ControlAction.NONE, protocol

    if kind == GET_REPORT:
        report_type = param & 0x03
        if report_type != REPORT_TYPE_INPUT:
            return handshake(RESULT_ERR_INVALID_PARAMETER), ControlAction.NONE, protocol
        # report ID first, then an optional buffer size
        if len(message) > 1 and message[1] != REPORT_ID:
            return handshake(RESULT_ERR_INVALID_REPORT_ID), ControlAction.NONE, protocol
        return input_frame(last_report), ControlAction.NONE, protocol

    if kind == SET_REPORT:
        return handshake(RESULT_SUCCESSFUL), ControlAction.NONE, protocol

    return handshake(RESULT_ERR_UNSUPPORTED_REQUEST), ControlAction.NONE, protocol
