"""
HID report encoding for the three transport layouts.

One logical input state is packed into a fixed-size report per transport:

- PAIRED   (7 bytes):  lx, ly, rx, ry, btn_lo, btn_hi, hat
  (report ID 1 travels in the HIDP header, not in the payload)
- WIRELESS (8 bytes):  0x01, lx, ly, rx, ry, btn_lo, btn_hi, hat
- NETWORK  (10 bytes): 0x01, lx, ly, rx, L2, R2, ry, btn_lo, btn_hi, hat

Encoding never fails: out-of-range values are clamped.
"""

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

REPORT_ID = 0x01

AXIS_MIN = 0
AXIS_MAX = 255
AXIS_CENTER = 127


class Button:
    """Bit positions in the 16-bit button mask."""
    A = 0
    B = 1
    C = 2
    X = 3
    Y = 4
    Z = 5
    L1 = 6
    R1 = 7
    L2 = 8
    R2 = 9
    SELECT = 10
    START = 11
    HOME = 12
    L3 = 13
    R3 = 14
    TOUCHPAD = 15

    @classmethod
    def by_name(cls, name: str) -> int:
        value = getattr(cls, name.upper(), None)
        if not isinstance(value, int):
            raise ValueError(f"Unknown button: {name}")
        return value


class Hat:
    """Hat switch values. CENTER is the null state."""
    UP = 0
    UP_RIGHT = 1
    RIGHT = 2
    DOWN_RIGHT = 3
    DOWN = 4
    DOWN_LEFT = 5
    LEFT = 6
    UP_LEFT = 7
    CENTER = 8

    # (dx, dy) with dy = -1 meaning up, as evdev reports HAT0Y
    _FROM_XY = {
        (0, -1): UP,
        (1, -1): UP_RIGHT,
        (1, 0): RIGHT,
        (1, 1): DOWN_RIGHT,
        (0, 1): DOWN,
        (-1, 1): DOWN_LEFT,
        (-1, 0): LEFT,
        (-1, -1): UP_LEFT,
        (0, 0): CENTER,
    }

    @classmethod
    def from_xy(cls, dx: int, dy: int) -> int:
        dx = max(-1, min(1, dx))
        dy = max(-1, min(1, dy))
        return cls._FROM_XY[(dx, dy)]


class ReportVariant(Enum):
    PAIRED = 7
    WIRELESS = 8
    NETWORK = 10

    @property
    def size(self) -> int:
        return self.value


class TriggerPolicy(Enum):
    """How the NETWORK layout's L2/R2 axes are derived.

    DIGITAL uses only the L2/R2 button bits (255 or 0). ANALOG prefers the
    analog trigger value and falls back to the bit. MAX takes the larger of
    the two.
    """
    DIGITAL = "digital"
    ANALOG = "analog"
    MAX = "max"


def _clamp(value: int) -> int:
    return max(AXIS_MIN, min(AXIS_MAX, int(value)))


@dataclass(frozen=True)
class LogicalInputState:
    """Snapshot of the controller surface."""
    buttons: int = 0
    left_x: int = AXIS_CENTER
    left_y: int = AXIS_CENTER
    right_x: int = AXIS_CENTER
    right_y: int = AXIS_CENTER
    hat: int = Hat.CENTER
    left_trigger: Optional[int] = None
    right_trigger: Optional[int] = None

    def pressed(self, bit: int) -> bool:
        return bool(self.buttons & (1 << bit))


NEUTRAL_STATE = LogicalInputState()


class StateBuilder:
    """Thread-safe mutable holder the input surfaces write into."""

    def __init__(self, initial: LogicalInputState = NEUTRAL_STATE):
        self._state = initial
        self._lock = threading.Lock()

    def set_button(self, bit: int, pressed: bool) -> None:
        if not 0 <= bit < 16:
            return
        with self._lock:
            buttons = self._state.buttons
            if pressed:
                buttons |= (1 << bit)
            else:
                buttons &= ~(1 << bit)
            self._state = replace(self._state, buttons=buttons & 0xFFFF)

    def toggle_button(self, bit: int) -> bool:
        """Flip a button and return its new pressed state."""
        with self._lock:
            pressed = not self._state.pressed(bit)
        self.set_button(bit, pressed)
        return pressed

    def set_axis(self, name: str, value: int) -> None:
        if name not in ("left_x", "left_y", "right_x", "right_y"):
            raise ValueError(f"Unknown axis: {name}")
        with self._lock:
            self._state = replace(self._state, **{name: _clamp(value)})

    def set_hat(self, value: int) -> None:
        if not 0 <= value <= Hat.CENTER:
            value = Hat.CENTER
        with self._lock:
            self._state = replace(self._state, hat=value)

    def set_trigger(self, name: str, value: Optional[int]) -> None:
        if name not in ("left_trigger", "right_trigger"):
            raise ValueError(f"Unknown trigger: {name}")
        with self._lock:
            self._state = replace(self._state, **{name: None if value is None else _clamp(value)})

    def reset(self) -> None:
        with self._lock:
            self._state = NEUTRAL_STATE

    def snapshot(self) -> LogicalInputState:
        with self._lock:
            return self._state


def _trigger_axis(analog: Optional[int], pressed: bool, policy: TriggerPolicy) -> int:
    digital = AXIS_MAX if pressed else 0
    if policy is TriggerPolicy.DIGITAL or analog is None:
        return digital
    if policy is TriggerPolicy.ANALOG:
        return _clamp(analog)
    return max(_clamp(analog), digital)


def encode(
    state: LogicalInputState,
    variant: ReportVariant,
    trigger_policy: TriggerPolicy = TriggerPolicy.DIGITAL,
) -> bytes:
    """Pack a state snapshot into the report layout for ``variant``."""
    lx, ly = _clamp(state.left_x), _clamp(state.left_y)
    rx, ry = _clamp(state.right_x), _clamp(state.right_y)
    lo = state.buttons & 0xFF
    hi = (state.buttons >> 8) & 0xFF
    hat = state.hat if 0 <= state.hat <= Hat.CENTER else Hat.CENTER

    if variant is ReportVariant.PAIRED:
        return bytes([lx, ly, rx, ry, lo, hi, hat & 0x0F])
    if variant is ReportVariant.WIRELESS:
        return bytes([REPORT_ID, lx, ly, rx, ry, lo, hi, hat])

    l2 = _trigger_axis(state.left_trigger, state.pressed(Button.L2), trigger_policy)
    r2 = _trigger_axis(state.right_trigger, state.pressed(Button.R2), trigger_policy)
    return bytes([REPORT_ID, lx, ly, rx, l2, r2, ry, lo, hi, hat])


def variant_for_length(length: int) -> Optional[ReportVariant]:
    for variant in ReportVariant:
        if variant.size == length:
            return variant
    return None


def decode(report: bytes) -> LogicalInputState:
    """Recover a state from a report, inferring the layout from its length.

    Raises ValueError for lengths that match no layout.
    """
    variant = variant_for_length(len(report))
    if variant is None:
        raise ValueError(f"Unexpected report length {len(report)}")

    if variant is ReportVariant.PAIRED:
        lx, ly, rx, ry, lo, hi, hat = report
        return LogicalInputState(lo | (hi << 8), lx, ly, rx, ry, hat)
    if variant is ReportVariant.WIRELESS:
        _, lx, ly, rx, ry, lo, hi, hat = report
        return LogicalInputState(lo | (hi << 8), lx, ly, rx, ry, hat)

    _, lx, ly, rx, l2, r2, ry, lo, hi, hat = report
    return LogicalInputState(lo | (hi << 8), lx, ly, rx, ry, hat, left_trigger=l2, right_trigger=r2)


def neutral_report(variant: ReportVariant) -> bytes:
    return encode(NEUTRAL_STATE, variant)
