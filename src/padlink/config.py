"""
Settings file for padlink.

Values are read from an INI file with defaults for everything, and the two
pieces of runtime state the app remembers (selected mode and last UDP peer)
are written back to the same file.
"""

import configparser
import logging
import os
from typing import Optional

from .report import TriggerPolicy
from .transport import Mode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(
    os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config")),
    "padlink",
    "padlink.ini",
)


class Settings:
    """Configuration loaded from ``path`` (missing file means defaults)."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or DEFAULT_CONFIG_PATH
        self._parser = configparser.ConfigParser()
        if os.path.exists(self.path):
            try:
                self._parser.read(self.path)
            except configparser.Error as e:
                logger.warning(f"Ignoring unreadable settings file {self.path}: {e}")
                self._parser = configparser.ConfigParser()
        self._load()

    def _load(self) -> None:
        # Device identity
        self.device_name = self._get("device", "name", "AGamepad")
        self.adapter = self._get("bluetooth", "adapter", "hci0")
        self.input_device = self._get("device", "input_device", "auto")
        self.trigger_policy = self._parse_policy(self._get("device", "trigger_policy", "digital"))

        # Bluetooth
        self.resume_check_interval = self._getfloat("bluetooth", "resume_check_interval", 5.0)
        self.keepalive_interval = self._getfloat("bluetooth", "keepalive_interval", 0.05)
        self.static_address = self._get("bluetooth", "static_address", "") or None

        # UDP
        self.discovery_port = self._getint("udp", "discovery_port", 2242)
        self.data_port = self._getint("udp", "data_port", 2243)
        self.discovery_timeout = self._getfloat("udp", "discovery_timeout", 5.0)
        self.handshake_timeout = self._getfloat("udp", "handshake_timeout", 5.0)
        self.liveness_interval = self._getfloat("udp", "liveness_interval", 2.0)

        # Persisted state
        self.mode = Mode.parse(self._get("state", "mode", "ble"))
        self.last_udp_address = self._get("state", "last_udp_address", "") or None

    def _parse_policy(self, value: str) -> TriggerPolicy:
        try:
            return TriggerPolicy(value.strip().lower())
        except ValueError:
            logger.warning(f"Unknown trigger policy {value!r}, using digital")
            return TriggerPolicy.DIGITAL

    def _get(self, section: str, key: str, default: str) -> str:
        try:
            return self._parser.get(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return default

    def _getint(self, section: str, key: str, default: int) -> int:
        try:
            return self._parser.getint(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return default

    def _getfloat(self, section: str, key: str, default: float) -> float:
        try:
            return self._parser.getfloat(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return default

    def _set(self, section: str, key: str, value: str) -> None:
        if not self._parser.has_section(section):
            self._parser.add_section(section)
        self._parser.set(section, key, value)

    def set_mode(self, mode: Mode) -> None:
        self.mode = mode
        self._set("state", "mode", mode.value)
        self.save()

    def set_last_udp_address(self, address: Optional[str]) -> None:
        self.last_udp_address = address
        self._set("state", "last_udp_address", address or "")
        self.save()

    def save(self) -> bool:
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w") as f:
                self._parser.write(f)
            return True
        except OSError as e:
            logger.warning(f"Could not save settings to {self.path}: {e}")
            return False
