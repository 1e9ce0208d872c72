"""Shared constants, selectable options and environment status."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Sequence

# Warning level of low free disk space, in bytes (50 GiB).
LOW_DISK_LIMIT = 50 * 1024 * 1024 * 1024

ABITTI_ETCHER_URL = "https://static.abitti.fi/etcher-usb/ktp-etcher.zip"
ABITTI_VERSION_URL = "https://static.abitti.fi/etcher-usb/ktp-etcher.ver"
ABITTI_BOX_TYPE = "abitti"

MATRICULATION_EXAM_ETCHER_URL = (
    "https://static.abitti.fi/etcher-usb/releases/###PASSPHRASEHASH###/ktp-etcher.zip"
)
MATRICULATION_EXAM_VERSION_URL = (
    "https://static.abitti.fi/etcher-usb/releases/###PASSPHRASEHASH###/ktp-etcher.ver"
)
MATRICULATION_EXAM_BOX_TYPE = "exam"

# URL used to test network connectivity, and its timeout in seconds.
URL_TEST = "https://static.abitti.fi/etcher-usb/ktp-etcher.ver"
URL_TEST_TIMEOUT = 4

# Interval for refreshing environment status; longer than URL_TEST_TIMEOUT.
ENVIRONMENT_STATUS_UPDATE_DURATION = timedelta(seconds=5)

VBOXMANAGE_CACHE_TIMEOUT = timedelta(seconds=30)
VBOX_RUNNING_CACHE_TIMEOUT = timedelta(seconds=2)
CLOUD_STATUS_TIMEOUT = timedelta(minutes=10)

LOG_COPY_REQUEST_FILENAME = "_log_copy_requested"
LOG_COPY_DONE_FILENAME = "_log_copy_done"
LOG_COPY_STATUS_FILENAME = "_log_copy_status"
LOG_REQUEST_TIMEOUT = timedelta(minutes=1)

# Supported VirtualBox version range; an empty string disables the check.
VBOX_MIN_VERSION = "6.1.16"
VBOX_MAX_VERSION = ""

FILE_PERMISSIONS_OWNER_RW = 0o600
FILE_PERMISSIONS_OWNER_RWX = 0o700


@dataclass(frozen=True)
class AvailableSelection:
    """A selectable UI or configuration option."""

    config_value: str
    legend: str


# The first entry of each list is the default.
AVAILABLE_LANGS: tuple[AvailableSelection, ...] = (
    AvailableSelection("fi", "Suomeksi"),
    AvailableSelection("sv", "På svenska"),
    AvailableSelection("en", "In English"),
)

AVAILABLE_NICS: tuple[AvailableSelection, ...] = tuple(
    AvailableSelection(name, name)
    for name in ("virtio", "Am79C970A", "Am79C973", "82540EM", "82543GC", "82545EM")
)

DEFAULT_EXT_NIC_ARRAY: tuple[AvailableSelection, ...] = (
    AvailableSelection("", "Select network device"),
)


def get_available_selection_id(
    config_value: str,
    choices: Sequence[AvailableSelection],
    value_if_not_found: int = -1,
) -> int:
    """Return the index of the choice with the given config value, or the fallback."""
    return next(
        (index for index, choice in enumerate(choices) if choice.config_value == config_value),
        value_if_not_found,
    )


@dataclass
class EnvironmentStatus:
    """Status of the system environment shown by the UI."""

    box_installed: bool = False
    box_running: bool = False
    net_available: bool = False