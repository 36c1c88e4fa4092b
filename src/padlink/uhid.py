"""
Virtual HID device via the Linux UHID interface.

Opens (and if needed provisions) /dev/uhid, creates a device from a report
descriptor with UHID_CREATE2, forwards raw reports with UHID_INPUT2 and
tears down with UHID_DESTROY. Kernel events read back from the fd are
surfaced for diagnostics.
"""

import logging
import os
import select
import struct
import subprocess
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# Event types from linux/uhid.h
UHID_DESTROY = 1
UHID_START = 2
UHID_STOP = 3
UHID_OPEN = 4
UHID_CLOSE = 5
UHID_OUTPUT = 6
UHID_GET_REPORT = 9
UHID_CREATE2 = 11
UHID_INPUT2 = 12
UHID_SET_REPORT = 13

EVENT_NAMES = {
    UHID_START: "START",
    UHID_STOP: "STOP",
    UHID_OPEN: "OPEN",
    UHID_CLOSE: "CLOSE",
    UHID_OUTPUT: "OUTPUT",
    UHID_GET_REPORT: "GET_REPORT",
    UHID_SET_REPORT: "SET_REPORT",
}

HID_MAX_DESCRIPTOR_SIZE = 4096
UHID_DATA_MAX = 4096

# sizeof(struct uhid_event)
UHID_EVENT_SIZE = 4380

CREATE2_FORMAT = "< L 128s 64s 64s H H L L L L 4096s"
INPUT2_FORMAT = "< L H 4096s"

UHID_PATH = "/dev/uhid"
UHID_MODULE = "uhid"
UHID_MAJOR = 10
UHID_MINOR = 223


class Bus:
    """Bus types for HID devices."""
    USB = 0x03
    BLUETOOTH = 0x05
    VIRTUAL = 0x06


class UHIDError(Exception):
    """Raised when the kernel interface is unavailable or a write fails."""


def pack_create2(
    name: str,
    descriptor: bytes,
    phys: str = "",
    uniq: str = "",
    bus: int = Bus.USB,
    vendor: int = 0,
    product: int = 0,
    version: int = 0,
    country: int = 0,
) -> bytes:
    if len(descriptor) > HID_MAX_DESCRIPTOR_SIZE:
        raise UHIDError(f"Report descriptor too large: {len(descriptor)} > {HID_MAX_DESCRIPTOR_SIZE}")
    return struct.pack(
        CREATE2_FORMAT,
        UHID_CREATE2,
        name.encode("utf-8")[:128],
        phys.encode("utf-8")[:64],
        uniq.encode("utf-8")[:64],
        len(descriptor),
        bus,
        vendor,
        product,
        version,
        country,
        descriptor,
    )


def pack_input2(data: bytes) -> bytes:
    if len(data) > UHID_DATA_MAX:
        raise UHIDError(f"Input data too large: {len(data)} > {UHID_DATA_MAX}")
    return struct.pack(INPUT2_FORMAT, UHID_INPUT2, len(data), data)


def pack_destroy() -> bytes:
    return struct.pack("< L", UHID_DESTROY)


def _run(cmd) -> bool:
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=10)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"{' '.join(cmd)} failed: {e}")
        return False


def _run_privileged(cmd) -> bool:
    return _run(cmd) or _run(["sudo", "-n"] + cmd)


def module_loaded(module: str = UHID_MODULE) -> bool:
    try:
        with open("/proc/modules") as f:
            return any(line.split(" ", 1)[0] == module for line in f)
    except OSError:
        return False


def provision(path: str = UHID_PATH) -> None:
    """Load the uhid module and create the device node when missing.

    Module loading failure is tolerated (the driver may be built in);
    failing to create the node raises UHIDError.
    """
    if not module_loaded():
        logger.warning("uhid module not loaded, attempting modprobe")
        if _run_privileged(["modprobe", UHID_MODULE]):
            logger.info("uhid module loaded")
        else:
            logger.warning("modprobe uhid failed (may be built into the kernel)")

    if not os.path.exists(path):
        logger.warning(f"{path} missing, creating device node")
        if not _run_privileged(["mknod", path, "c", str(UHID_MAJOR), str(UHID_MINOR)]):
            raise UHIDError(f"Failed to create device node {path}")
        logger.info(f"Created {path}")

    if not _run_privileged(["chmod", "666", path]):
        logger.warning(f"Could not set permissions on {path}")


class UHIDDevice:
    """One virtual HID device on a /dev/uhid handle.

    The handle is opened with ``open()``; ``create()`` may only succeed
    once per handle, matching the kernel's one-device-per-fd rule.
    """

    def __init__(
        self,
        name: str = "AGamePad Virtual Controller",
        phys: str = "uhid-agamepad",
        uniq: str = "agamepad-001",
        bus: int = Bus.USB,
        vendor: int = 0x046D,
        product: int = 0x0000,
        version: int = 0x0100,
        country: int = 0,
        path: str = UHID_PATH,
    ):
        self.name = name
        self.phys = phys
        self.uniq = uniq
        self.bus = bus
        self.vendor = vendor
        self.product = product
        self.version = version
        self.country = country
        self.path = path

        self._fd: Optional[int] = None
        self._created = False

    def open(self, allow_provision: bool = True) -> None:
        """Open the handle, provisioning the node first if it cannot be opened."""
        if self._fd is not None:
            return
        try:
            self._fd = os.open(self.path, os.O_RDWR)
            logger.info(f"Opened {self.path}")
            return
        except OSError as e:
            if not allow_provision:
                raise UHIDError(f"Failed to open {self.path}: {e}")
            logger.warning(f"Could not open {self.path} directly: {e}. Attempting setup...")

        provision(self.path)
        try:
            self._fd = os.open(self.path, os.O_RDWR)
            logger.info(f"Opened {self.path}")
        except OSError as e:
            raise UHIDError(f"Failed to open {self.path}: {e}")

    def create(self, descriptor: bytes) -> None:
        if self._fd is None:
            raise UHIDError("UHID handle not open")
        if self._created:
            raise UHIDError("Device already created on this handle")

        event = pack_create2(
            self.name, descriptor, self.phys, self.uniq,
            self.bus, self.vendor, self.product, self.version, self.country,
        )
        try:
            written = os.write(self._fd, event)
        except OSError as e:
            raise UHIDError(f"Failed to create device: {e}")
        if written != len(event):
            raise UHIDError(f"Incomplete write: {written} != {len(event)}")
        self._created = True
        logger.info(f"Created UHID device: {self.name} "
                    f"(vendor=0x{self.vendor:04x}, product=0x{self.product:04x}, "
                    f"rd_size={len(descriptor)})")

    def send_input(self, data: bytes) -> None:
        """Forward a raw report, including its report ID byte."""
        if not self._created:
            raise UHIDError("Device not created")
        event = pack_input2(data)
        try:
            os.write(self._fd, event)
        except OSError as e:
            raise UHIDError(f"Failed to send input: {e}")
        logger.debug(f"Sent input: {data.hex()}")

    def read_event(self, timeout: float = 0.5) -> Optional[Tuple[int, bytes]]:
        """Wait up to ``timeout`` for one kernel event.

        Returns (type, raw) or None when nothing was read.
        """
        fd = self._fd
        if fd is None:
            return None
        try:
            readable, _, _ = select.select([fd], [], [], timeout)
            if not readable:
                return None
            data = os.read(fd, UHID_EVENT_SIZE)
        except (OSError, ValueError):
            return None
        if len(data) < 4:
            return None

        return struct.unpack_from("< L", data)[0], data

    def destroy(self) -> None:
        """Send UHID_DESTROY (if a device exists) and close the handle."""
        if self._fd is None:
            return
        if self._created:
            try:
                os.write(self._fd, pack_destroy())
                logger.info(f"Destroyed UHID device: {self.name}")
            except OSError as e:
                logger.warning(f"Failed to send UHID_DESTROY: {e}")
            self._created = False
        try:
            os.close(self._fd)
        except OSError as e:
            logger.debug(f"Error closing {self.path}: {e}")
        self._fd = None

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    @property
    def is_created(self) -> bool:
        return self._created

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.destroy()
        return False
