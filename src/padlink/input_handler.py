"""
Physical controller input via evdev.

Reads a Linux input device (e.g. the Steam Deck's built-in pad or a USB
Xbox 360 controller), folds its events into a StateBuilder and reports every
change through ``on_change``.
"""

import logging
import threading
from typing import Callable, Dict, Optional, Tuple

import evdev
from evdev import InputDevice, ecodes

from .report import AXIS_MAX, Button, Hat, LogicalInputState, StateBuilder

logger = logging.getLogger(__name__)

# Analog triggers past this point also press the L2/R2 buttons
TRIGGER_BUTTON_THRESHOLD = 128


def scale(value: int, lo: int, hi: int) -> int:
    """Map ``value`` from the device range [lo, hi] to 0-255."""
    if hi <= lo:
        return 0
    scaled = (value - lo) * AXIS_MAX / (hi - lo)
    return int(max(0, min(AXIS_MAX, scaled)))


class InputHandler:
    """Reads one evdev device on a daemon thread."""

    BUTTON_MAP = {
        ecodes.BTN_SOUTH: Button.A,
        ecodes.BTN_EAST: Button.B,
        ecodes.BTN_C: Button.C,
        ecodes.BTN_NORTH: Button.X,
        ecodes.BTN_WEST: Button.Y,
        ecodes.BTN_Z: Button.Z,
        ecodes.BTN_TL: Button.L1,
        ecodes.BTN_TR: Button.R1,
        ecodes.BTN_TL2: Button.L2,
        ecodes.BTN_TR2: Button.R2,
        ecodes.BTN_SELECT: Button.SELECT,
        ecodes.BTN_START: Button.START,
        ecodes.BTN_MODE: Button.HOME,
        ecodes.BTN_THUMBL: Button.L3,
        ecodes.BTN_THUMBR: Button.R3,
    }

    AXIS_MAP = {
        ecodes.ABS_X: "left_x",
        ecodes.ABS_Y: "left_y",
        ecodes.ABS_RX: "right_x",
        ecodes.ABS_RY: "right_y",
    }

    TRIGGER_MAP = {
        ecodes.ABS_Z: ("left_trigger", Button.L2),
        ecodes.ABS_RZ: ("right_trigger", Button.R2),
    }

    def __init__(
        self,
        builder: StateBuilder,
        device_path: Optional[str] = None,
        on_change: Optional[Callable[[LogicalInputState], None]] = None,
        verbose: bool = False,
    ):
        self.builder = builder
        self.device_path = device_path
        self.on_change = on_change
        self.verbose = verbose

        self._device: Optional[InputDevice] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._ranges: Dict[int, Tuple[int, int]] = {}
        self._dpad_x = 0
        self._dpad_y = 0

    def find_controller(self) -> Optional[str]:
        """Auto-detect a gamepad: known names first, then any device with face buttons and axes."""
        try:
            devices = [evdev.InputDevice(path) for path in evdev.list_devices()]
        except OSError as e:
            logger.error(f"Error listing input devices: {e}")
            return None

        for device in devices:
            name = device.name.lower()
            if "xbox" in name or "360 pad" in name or "x-box" in name or "steam deck" in name:
                logger.info(f"Found controller: {device.name} at {device.path}")
                return device.path

        for device in devices:
            caps = device.capabilities()
            if ecodes.EV_KEY in caps and ecodes.EV_ABS in caps:
                keys = caps[ecodes.EV_KEY]
                if ecodes.BTN_SOUTH in keys and ecodes.BTN_EAST in keys:
                    logger.info(f"Found gamepad: {device.name} at {device.path}")
                    return device.path

        logger.warning("No suitable gamepad found")
        return None

    def start(self) -> bool:
        if self._running:
            return True

        if not self.device_path:
            self.device_path = self.find_controller()
            if not self.device_path:
                logger.error("No input device specified and auto-detection failed")
                return False

        try:
            self._device = InputDevice(self.device_path)
        except OSError as e:
            logger.error(f"Failed to open input device {self.device_path}: {e}")
            return False
        logger.info(f"Opened input device: {self._device.name} at {self.device_path}")

        for code, info in self._device.capabilities(absinfo=True).get(ecodes.EV_ABS, []):
            self._ranges[code] = (info.min, info.max)

        try:
            self._device.grab()
            logger.info("Grabbed exclusive access to input device")
        except OSError as e:
            logger.warning(f"Could not grab device (non-exclusive mode): {e}")

        self._running = True
        self._thread = threading.Thread(target=self._read_loop, name="evdev-input", daemon=True)
        self._thread.start()
        return True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._device:
            try:
                self._device.ungrab()
            except OSError:
                pass
            # Closing the fd wakes read_loop
            self._device.close()
        if self._thread:
            self._thread.join(timeout=2.0)
        self._device = None
        logger.info("Input handler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _read_loop(self) -> None:
        try:
            for event in self._device.read_loop():
                if not self._running:
                    break
                self.handle_event(event)
        except OSError as e:
            if self._running:
                logger.error(f"Error in input reading loop: {e}")
        self._running = False

    def handle_event(self, event) -> None:
        """Apply one evdev event and notify on_change if the state moved."""
        changed = False
        if event.type == ecodes.EV_KEY:
            changed = self._handle_button(event.code, event.value)
        elif event.type == ecodes.EV_ABS:
            changed = self._handle_abs(event.code, event.value)
        if changed and self.on_change:
            self.on_change(self.builder.snapshot())

    def _handle_button(self, code: int, value: int) -> bool:
        bit = self.BUTTON_MAP.get(code)
        if bit is None:
            return False
        # 2 is autorepeat
        if value == 2:
            return False
        self.builder.set_button(bit, value == 1)
        if self.verbose:
            logger.debug(f"Button {bit} {'pressed' if value else 'released'}")
        return True

    def _handle_abs(self, code: int, value: int) -> bool:
        if code in self.AXIS_MAP:
            lo, hi = self._ranges.get(code, (-32768, 32767))
            self.builder.set_axis(self.AXIS_MAP[code], scale(value, lo, hi))
            return True

        if code in self.TRIGGER_MAP:
            name, bit = self.TRIGGER_MAP[code]
            lo, hi = self._ranges.get(code, (0, 255))
            level = scale(value, lo, hi)
            self.builder.set_trigger(name, level)
            self.builder.set_button(bit, level >= TRIGGER_BUTTON_THRESHOLD)
            return True

        if code == ecodes.ABS_HAT0X:
            self._dpad_x = value
        elif code == ecodes.ABS_HAT0Y:
            self._dpad_y = value
        else:
            return False
        self.builder.set_hat(Hat.from_xy(self._dpad_x, self._dpad_y))
        return True
