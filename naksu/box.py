"""Creating, starting and querying the exam server virtual machine."""

from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import semver

from naksu import host, log, vboxmanage
from naksu.constants import (
    ABITTI_BOX_TYPE,
    ENVIRONMENT_STATUS_UPDATE_DURATION,
    MATRICULATION_EXAM_BOX_TYPE,
    EnvironmentStatus,
)
from naksu.vboxmanage import VBoxManageError

BOX_NAME = "NaksuAbittiKTP"
BOX_OS_TYPE = "Debian"
BOX_FINAL_IMAGE_SIZE = 55 * 1024  # VDI disk size in megabytes
BOX_VRAM_SIZE = 24  # video RAM in megabytes
BOX_SNAPSHOT_NAME = "Installed"
BOX_MINIMUM_NUMBER_OF_CORES = 2
BOX_MEMORY_SIZE_PERCENTAGE = 0.74  # share of host RAM given to the VM
BOX_LOW_MEMORY_LIMIT = 8192 - 1024  # 8 GB minus 1 GB for the display adapter

_CLIPBOARD_MODE_VERSION = semver.Version.parse("6.1.0")
_CLONE_SUCCESS_TEXT = "Clone medium created in format 'VMDK'"
_SIZE_ON_DISK_RE = re.compile(r"Size on disk:\s+(\d+)\s+MBytes", re.ASCII)
_DISK_UUID_RE = r'"SATA Controller-ImageUUID-0-0"="(.*?)"'
_DISK_LOCATION_RE = r'"SATA Controller-0-0"="(.*)"'
_LOG_DIR_RE = r'LogFldr="(.*)"'


@dataclass(frozen=True)
class BoxPaths:
    """File locations used when creating a VM."""

    image_path: Path
    vdi_image_path: Path
    mebshare_directory: Path


@dataclass
class _BoxStatus:
    # Assuming "installed" lets the getters work before the real status is known.
    installed: bool = True
    running: bool = False
    state: str = ""


_last_status = _BoxStatus()


def _round_half_away(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_box_cpus() -> int:
    """Return the number of CPUs for a new VM: host cores minus one, at least two."""
    cores = host.get_cpu_core_count() - 1
    return max(cores, BOX_MINIMUM_NUMBER_OF_CORES)


def calculate_box_memory() -> int:
    """Return the memory in megabytes for a new VM.

    Raises RuntimeError if the host has too little memory.
    """
    host_memory = host.get_memory()
    vm_memory = _round_half_away(host_memory * BOX_MEMORY_SIZE_PERCENTAGE)
    low_limit = _round_half_away(BOX_LOW_MEMORY_LIMIT * BOX_MEMORY_SIZE_PERCENTAGE)
    if vm_memory < low_limit:
        raise RuntimeError(
            f"allocated vm memory {vm_memory} is less than required minimum memory limit {low_limit}"
        )
    return vm_memory


def create_new_box_basic_commands(
    box_name: str,
    box_type: str,
    box_version: str,
    cpus: int,
    memory: int,
    paths: BoxPaths,
) -> list[list[str]]:
    """Return the VBoxManage commands that create and configure a new VM."""
    image = str(paths.image_path)
    vdi = str(paths.vdi_image_path)
    return [
        ["convertfromraw", image, vdi, "--format", "VDI"],
        ["modifyhd", vdi, "--resize", str(BOX_FINAL_IMAGE_SIZE)],
        ["createvm", "--name", box_name, "--register"],
        [
            "modifyvm", box_name,
            "--pae", "on",
            "--cpus", str(cpus),
            "--memory", str(memory),
            "--vram", str(BOX_VRAM_SIZE),
            "--acpi", "on",
            "--ioapic", "on",
            "--ostype", BOX_OS_TYPE,
            "--firmware", "efi",
            "--audio", "none",
        ],
        ["guestproperty", "set", box_name, "boxType", box_type],
        ["guestproperty", "set", box_name, "boxVersion", box_version],
        [
            "sharedfolder", "add", box_name,
            "--name", "media_usb1",
            "--hostpath", str(paths.mebshare_directory),
        ],
        ["storagectl", box_name, "--add", "sata", "--name", "SATA Controller"],
        [
            "storageattach", box_name,
            "--storagectl", "SATA Controller",
            "--port", "0",
            "--device", "0",
            "--type", "hdd",
            "--medium", vdi,
        ],
        [
            "setextradata", box_name,
            "GUI/RestrictedCloseActions",
            "SaveState,PowerOffRestoringSnapshot",
        ],
    ]


def create_new_box_clipboard_command(vbox_version: semver.Version) -> list[str]:
    """Return the command enabling a bidirectional clipboard for the given VirtualBox version."""
    if vbox_version < _CLIPBOARD_MODE_VERSION:
        return ["modifyvm", BOX_NAME, "--clipboard", "bidirectional"]
    return ["modifyvm", BOX_NAME, "--clipboard-mode", "bidirectional"]


def reset_cache() -> None:
    """Forget all cached VM information and status."""
    global _last_status
    vboxmanage.reset_response_cache()
    _last_status = _BoxStatus()


def create_new_box(box_type: str, box_version: str, paths: BoxPaths) -> None:
    """Create and snapshot a new VM from the raw image in paths."""
    vdi = Path(paths.vdi_image_path)
    if vdi.is_file():
        try:
            vdi.unlink()
        except OSError as exc:
            raise OSError(f"could not remove old vdi file {vdi}: {exc}") from exc
        log.debug("Removed existing VDI file %s", vdi)

    cpus = calculate_box_cpus()
    memory = calculate_box_memory()
    log.debug("Calculated new VM specs - CPUs: %d, Memory: %d", cpus, memory)

    commands = create_new_box_basic_commands(BOX_NAME, box_type, box_version, cpus, memory, paths)

    try:
        vbox_version = vboxmanage.get_vboxmanage_version()
    except VBoxManageError as exc:
        log.error("Could not get VBoxManage version: %s", exc)
        raise

    commands.append(create_new_box_clipboard_command(vbox_version))
    commands.append(["snapshot", BOX_NAME, "take", BOX_SNAPSHOT_NAME])

    vboxmanage.run_commands(commands)
    reset_cache()


def start_current_box(ext_nic: str, nic: str) -> None:
    """Start the installed VM bridged to the host device ext_nic using NIC type nic."""
    vboxmanage.run_commands(
        [
            ["modifyvm", BOX_NAME, "--nic1", "bridged"],
            ["modifyvm", BOX_NAME, "--bridgeadapter1", ext_nic],
            ["modifyvm", BOX_NAME, "--nictype1", nic],
            ["startvm", BOX_NAME, "--type", "gui"],
        ]
    )


def restore_snapshot() -> None:
    """Return the installed VM to the snapshot taken right after installation."""
    vboxmanage.run_commands([["snapshot", BOX_NAME, "restore", BOX_SNAPSHOT_NAME]])


def remove_current_box() -> None:
    """Unregister and delete the installed VM."""
    vboxmanage.run_commands([["unregistervm", BOX_NAME, "--delete"]])


def _disk_uuid() -> str:
    if not _last_status.installed:
        return ""
    return vboxmanage.get_vm_info_by_regexp(BOX_NAME, _DISK_UUID_RE)


def write_disk_clone(clone_path: str | Path) -> None:
    """Write a VMDK clone of the VM's first disk to clone_path."""
    disk_uuid = _disk_uuid()
    if not disk_uuid:
        raise VBoxManageError("could not get disk uuid")

    output = vboxmanage.run_command(
        ["clonemedium", disk_uuid, str(clone_path), "--format", "VMDK"]
    )
    if _CLONE_SUCCESS_TEXT not in output:
        log.debug("VBoxManage output does not report successful clone in format 'VMDK'")
        raise VBoxManageError("could not get correct response from vboxmanage", output)

    # Detach the clone from VirtualBox disk management.
    vboxmanage.run_command(["closemedium", str(clone_path)])


def start_environment_status_update(
    environment_status: EnvironmentStatus,
    interval: timedelta | float = ENVIRONMENT_STATUS_UPDATE_DURATION,
) -> threading.Event:
    """Refresh box_installed and box_running periodically in a background thread.

    Returns an event; setting it stops the updates.
    """
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    stop = threading.Event()

    def update() -> None:
        while not stop.wait(seconds):
            try:
                environment_status.box_installed = installed()
            except VBoxManageError as exc:
                log.error("Could not query whether VM is installed: %s", exc)
            try:
                environment_status.box_running = running()
            except VBoxManageError as exc:
                log.error("Could not query whether VM is running: %s", exc)

    threading.Thread(target=update, name="naksu-box-status", daemon=True).start()
    return stop


def installed() -> bool:
    """Return True if the VM is registered in VirtualBox."""
    try:
        is_installed = vboxmanage.is_vm_installed(BOX_NAME)
    except VBoxManageError as exc:
        log.error("box.installed() could not detect whether VM is installed: %s", exc)
        raise
    _last_status.installed = is_installed
    return is_installed


def _record_running(is_running: bool, state: str) -> None:
    if _last_status.state != state:
        log.debug("VM state changed from '%s' to '%s'", _last_status.state, state)
    if is_running != _last_status.running:
        log.debug("VM has been started" if is_running else "VM has been stopped")
    _last_status.running = is_running
    _last_status.state = state


def running() -> bool:
    """Return True if the VM is running; False without asking if it is not installed."""
    if not _last_status.installed:
        return False
    try:
        is_running, state = vboxmanage.is_vm_running(BOX_NAME)
    except VBoxManageError as exc:
        log.error("box.running() could not detect whether VM is running: %s", exc)
        _record_running(False, "")
        raise
    _record_running(is_running, state)
    return is_running


def get_type() -> str:
    """Return the box type of the VM (e.g. "abitti"), "" if not installed."""
    if not _last_status.installed:
        return ""
    return vboxmanage.get_vm_property(BOX_NAME, "boxType")


def get_type_legend() -> str:
    """Return a user-readable legend of the VM type, "-" if unknown."""
    if not _last_status.installed:
        return "-"
    if type_is_abitti():
        return "Abitti server"
    if type_is_matriculation_exam():
        return "Matric Exam server"
    log.warning(
        "Warning: We have a type string '%s' which does not resolve to "
        "Abitti/Matriculation box type (get_type_legend)",
        get_type(),
    )
    return "-"


def type_is_abitti() -> bool:
    """Return True if the installed VM is an Abitti box."""
    return get_type() == ABITTI_BOX_TYPE


def type_is_matriculation_exam() -> bool:
    """Return True if the installed VM is a matriculation exam box."""
    return get_type() == MATRICULATION_EXAM_BOX_TYPE


def get_version() -> str:
    """Return the version string of the VM, "" if not installed."""
    if not _last_status.installed:
        return ""
    return vboxmanage.get_vm_property(BOX_NAME, "boxVersion")


def get_disk_location() -> str:
    """Return the full path of the VM disk image, "" if unknown."""
    if not _last_status.installed:
        return ""
    return vboxmanage.get_vm_info_by_regexp(BOX_NAME, _DISK_LOCATION_RE)


def get_log_dir() -> str:
    """Return the VirtualBox log directory of the VM, "" if unknown."""
    if not _last_status.installed:
        return ""
    return vboxmanage.get_vm_info_by_regexp(BOX_NAME, _LOG_DIR_RE)


def medium_size_on_disk(location: str | Path) -> int:
    """Return the size of the disk image at location on disk, in megabytes."""
    try:
        medium_info = vboxmanage.run_command(["showmediuminfo", str(location)])
    except VBoxManageError as exc:
        log.error("Could not get medium info to calculate its size: %s", exc)
        raise VBoxManageError(
            "failed to get medium size: could not execute vboxmanage", exc.output
        ) from exc

    match = _SIZE_ON_DISK_RE.search(medium_info)
    if match is None:
        raise VBoxManageError("failed to get medium size: no regex matches", medium_info)
    return int(match.group(1))