"""User settings stored in an INI file in the home directory."""

from __future__ import annotations

import configparser
from pathlib import Path
from typing import Sequence

from naksu import log
from naksu.constants import (
    AVAILABLE_LANGS,
    AVAILABLE_NICS,
    AvailableSelection,
    get_available_selection_id,
)

_DEFAULTS: dict[tuple[str, str], str] = {
    ("common", "iniVersion"): "1",
    ("common", "language"): AVAILABLE_LANGS[0].config_value,
    ("selfupdate", "disabled"): "false",
    ("environment", "nic"): AVAILABLE_NICS[0].config_value,
    ("environment", "extnic"): "",
}

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True", "YES", "yes", "Yes", "y", "ON", "on", "On"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False", "NO", "no", "No", "n", "OFF", "off", "Off"}


def _parse_bool(value: str) -> bool:
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def _default(section: str, key: str) -> str:
    try:
        return _DEFAULTS[(section, key)]
    except KeyError:
        raise KeyError(f"Default for {section} / {key} is not defined!") from None


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # keys are case sensitive
    return parser


def default_ini_path() -> Path:
    """Return the default settings file path, ~/naksu.ini."""
    return Path.home() / "naksu.ini"


class Config:
    """Settings backed by an INI file; every change is saved immediately."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else default_ini_path()
        self._parser = _new_parser()
        try:
            with open(self.path, encoding="utf-8") as ini_file:
                self._parser.read_file(ini_file)
        except (OSError, configparser.Error, UnicodeDecodeError):
            log.debug("%s not found, setting up empty config with defaults", self.path)
            self._parser = _new_parser()
        for (section, key), value in _DEFAULTS.items():
            if not self._parser.has_option(section, key):
                self._ensure_section(section)
                self._parser.set(section, key, value)
        self.save()

    def _ensure_section(self, section: str) -> None:
        if not self._parser.has_section(section):
            self._parser.add_section(section)

    def save(self) -> None:
        """Write the settings to disk, logging any failure."""
        try:
            with open(self.path, "w", encoding="utf-8") as ini_file:
                self._parser.write(ini_file)
        except OSError as exc:
            log.error("%s save failed: %s", self.path, exc)

    def _get_string(self, section: str, key: str) -> str:
        return self._parser.get(section, key, fallback="")

    def _set_value(self, section: str, key: str, value: str) -> None:
        log.debug("Setting new configuration: section %s, key: %s, value: %s", section, key, value)
        self._ensure_section(section)
        self._parser.set(section, key, value)
        self.save()

    def _get_boolean(self, section: str, key: str) -> bool:
        try:
            return _parse_bool(self._get_string(section, key))
        except ValueError:
            log.error("Parsing key %s / %s as bool failed", section, key)
            default = _default(section, key)
            value = _parse_bool(default)
            self._set_value(section, key, default)
            return value

    def _validated_choice(
        self, section: str, key: str, choices: Sequence[AvailableSelection]
    ) -> str:
        value = self._get_string(section, key)
        if get_available_selection_id(value, choices, -1) >= 0:
            return value
        default = _default(section, key)
        log.warning("Correcting malformed ini-key %s / %s to default value %s", section, key, default)
        self._set_value(section, key, default)
        return default

    def _set_choice(
        self, section: str, key: str, value: str, choices: Sequence[AvailableSelection]
    ) -> None:
        if get_available_selection_id(value, choices, -1) < 0:
            value = _default(section, key)
        self._set_value(section, key, value)

    @property
    def language(self) -> str:
        """User language; unknown values fall back to "fi"."""
        return self._validated_choice("common", "language", AVAILABLE_LANGS)

    @language.setter
    def language(self, value: str) -> None:
        self._set_choice("common", "language", value, AVAILABLE_LANGS)

    @property
    def self_update_disabled(self) -> bool:
        """True if self-update is disabled."""
        return self._get_boolean("selfupdate", "disabled")

    @self_update_disabled.setter
    def self_update_disabled(self, value: bool) -> None:
        self._set_value("selfupdate", "disabled", _format_bool(value))

    @property
    def nic(self) -> str:
        """VM network device type; unknown values fall back to "virtio"."""
        return self._validated_choice("environment", "nic", AVAILABLE_NICS)

    @nic.setter
    def nic(self, value: str) -> None:
        self._set_choice("environment", "nic", value, AVAILABLE_NICS)

    @property
    def ext_nic(self) -> str:
        """Host network device name."""
        return self._get_string("environment", "extnic")

    @ext_nic.setter
    def ext_nic(self, value: str) -> None:
        self._set_value("environment", "extnic", value)


def load(path: str | Path | None = None) -> Config:
    """Load settings from path (default ~/naksu.ini), filling in defaults."""
    return Config(path)