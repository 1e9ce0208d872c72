"""Information about the host machine."""

from __future__ import annotations

import os
import re
import shutil
import stat
import subprocess
import sys
from pathlib import Path
from typing import Iterable

import humanize
import psutil
import semver

from naksu import log
from naksu.constants import VBOX_MAX_VERSION, VBOX_MIN_VERSION
from naksu.vboxmanage import VBoxManageError, get_vboxmanage_version

_CPUINFO_PATH = Path("/proc/cpuinfo")
_KVM_DEVICE = "/dev/kvm"
_CPU_CORES_RE = re.compile(r"cpu cores\s+: (\d+)", re.ASCII)
_MEGABYTE = 1024 * 1024


class LowDiskSizeError(Exception):
    """A directory has less free disk space than required."""

    def __init__(self, low_path: str, low_size: int, err: str = "disk size is too low") -> None:
        self.err = err
        self.low_path = low_path
        self.low_size = low_size
        super().__init__(
            f"path {low_path} has low disk size: {low_size} ({humanize.naturalsize(low_size)})"
        )


def parse_cpu_cores(cpuinfo: str) -> int:
    """Return the first "cpu cores" value of /proc/cpuinfo content."""
    match = _CPU_CORES_RE.search(cpuinfo)
    if match is None:
        raise ValueError("could not detect number of cpu cores from /proc/cpuinfo")
    return int(match.group(1))


def get_cpu_core_count() -> int:
    """Return the number of CPU cores."""
    if sys.platform.startswith("linux"):
        try:
            content = _CPUINFO_PATH.read_text(errors="replace")
        except OSError as exc:
            log.error("Could not open /proc/cpuinfo to detect number of CPU cores: %s", exc)
            raise
        try:
            return parse_cpu_cores(content)
        except ValueError:
            log.debug(
                'Could not detect number of CPU cores from /proc/cpuinfo. The file appears to miss '
                'lines with "cpu cores" strings. Complete dump of the file follows:'
            )
            log.debug("%s", content)
            raise

    if sys.platform == "darwin":
        log.debug("CPU core count on Darwin is the number of CPU threads")
        return os.cpu_count() or 1

    cores = psutil.cpu_count(logical=False)
    if not cores:
        raise OSError("could not detect number of cpu cores")
    return cores


def _parse_cpuinfo_flags(cpuinfo: str) -> set[str]:
    flags: set[str] = set()
    for line in cpuinfo.splitlines():
        name, separator, value = line.partition(":")
        if separator and name.strip() == "flags":
            flags.update(value.split())
    return flags


def _cpu_flags() -> set[str]:
    if sys.platform.startswith("linux"):
        try:
            return _parse_cpuinfo_flags(_CPUINFO_PATH.read_text(errors="replace"))
        except OSError as exc:
            log.error("Could not read %s to detect CPU flags: %s", _CPUINFO_PATH, exc)
            return set()
    if sys.platform == "darwin":
        try:
            completed = subprocess.run(
                ["sysctl", "-n", "machdep.cpu.features"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            log.error("Could not run sysctl to detect CPU flags: %s", exc)
            return set()
        return set(completed.stdout.lower().split())
    return set()


def is_hw_virtualisation_cpu() -> bool:
    """Return True if the CPU supports hardware virtualisation (VT-x or AMD-V).

    Whether the support is enabled in the firmware is not checked.
    """
    flags = _cpu_flags()
    if "vmx" in flags:
        log.debug("Hardware virtualisation is supported by CPU (VT-x, CPU flag VMX)")
        return True
    if "svm" in flags:
        log.debug("Hardware virtualisation is supported by CPU (AMD-V, CPU flag SVM)")
        return True
    log.debug("Hardware virtualisation is not supported by CPU")
    return False


def _exists_char_device(path: str) -> bool:
    try:
        return stat.S_ISCHR(os.stat(path).st_mode)
    except OSError:
        return False


def is_hw_virtualisation() -> bool:
    """Return True if hardware virtualisation is available to the OS."""
    if sys.platform.startswith("linux"):
        if _exists_char_device(_KVM_DEVICE):
            log.debug("Hardware virtualisation support is enabled in BIOS (Linux)")
            return True
        log.debug("Hardware virtualisation support is disabled in BIOS (Linux)")
        return False

    log.debug("Warning: Detection of hardware virtualisation is not implemented for this platform.")
    return True


def is_hyperv() -> bool:
    """Return True if a Hyper-V hypervisor is present; never on Linux or Darwin."""
    return False


def get_memory() -> int:
    """Return the system RAM in megabytes."""
    return psutil.virtual_memory().total // _MEGABYTE


def check_free_disk(limit: int, directories: Iterable[str | os.PathLike]) -> None:
    """Raise LowDiskSizeError for the first directory with less than limit bytes free.

    Directories whose free space cannot be read are logged and skipped.
    """
    directories = list(directories)
    log.debug("CheckFreeDisk: %s", directories)

    for directory in directories:
        try:
            free = shutil.disk_usage(directory).free
        except OSError as exc:
            log.error("CheckFreeDisk could not get free disk for path '%s': %s", directory, exc)
            continue

        log.debug("CheckFreeDisk: %s (%d bytes, %s)", directory, free, humanize.naturalsize(free))
        if free < limit:
            raise LowDiskSizeError(str(directory), free)


def is_virtualbox_version_ok() -> str:
    """Return a user message if VirtualBox is too old or too new, else ""."""
    try:
        version = get_vboxmanage_version()
    except VBoxManageError as exc:
        log.debug("Could not get VBoxManage version: %s", exc)
        raise VBoxManageError(f"could not get vboxmanage version: {exc}", exc.output) from exc

    if VBOX_MIN_VERSION:
        try:
            minimum = semver.Version.parse(VBOX_MIN_VERSION)
        except ValueError as exc:
            raise ValueError(f"could not parse minimum required version {VBOX_MIN_VERSION}") from exc
        if version < minimum:
            return (
                f"Your VirtualBox version is old. Consider upgrading to {VBOX_MIN_VERSION} "
                "or newer to avoid problems."
            )

    if VBOX_MAX_VERSION:
        try:
            maximum = semver.Version.parse(VBOX_MAX_VERSION)
        except ValueError as exc:
            raise ValueError(f"could not parse maximum required version {VBOX_MAX_VERSION}") from exc
        if version > maximum:
            return (
                f"Your VirtualBox version is too new. Consider downgrading to {VBOX_MAX_VERSION} "
                "to avoid problems."
            )

    return ""