"""Running VBoxManage and querying VM information, with response caching."""

from __future__ import annotations

import os
import re
import subprocess
import sys
import threading
from typing import Iterable, Sequence

import semver
from cachetools import TLRUCache

from naksu import log
from naksu.constants import VBOX_RUNNING_CACHE_TIMEOUT, VBOXMANAGE_CACHE_TIMEOUT
from naksu.vbox_fix import detect_and_fix_duplicate_hard_disk_problem

_NO_VM_INSTALLED = "Could not find a registered machine named"

# Concurrent VBoxManage calls tend to fail with E_ACCESSDENIED; serialise them,
# but give up waiting after 240 tries of half a second.
_LOCK_TIMEOUT_SECONDS = 240 * 0.5
_lock = threading.Lock()

_VERSION_RE = re.compile(r"^(\d+\.\d+\.\d+)", re.ASCII)
_PROPERTY_RE = re.compile(r"Value:\s*(\w+)", re.ASCII)
_VM_STATE_RE = re.compile(r'VMState="(.+)"')


class VBoxManageError(Exception):
    """A VBoxManage call failed; output holds what it printed."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def _time_to_use(key: str, value: str, now: float) -> float:
    timeout = VBOX_RUNNING_CACHE_TIMEOUT if key == "vmstate" else VBOXMANAGE_CACHE_TIMEOUT
    return now + timeout.total_seconds()


def _new_cache() -> TLRUCache:
    return TLRUCache(maxsize=256, ttu=_time_to_use)


_cache: TLRUCache = _new_cache()


def vboxmanage_path() -> str:
    """Return the VBoxManage executable, honouring VBOXMANAGEPATH."""
    override = os.environ.get("VBOXMANAGEPATH", "")
    if override:
        return override
    if sys.platform.startswith("win"):
        install_path = os.environ.get("VBOX_MSI_INSTALL_PATH", "")
        if install_path:
            return os.path.join(install_path, "VBoxManage")
    return "VBoxManage"


def _execute(run_args: Sequence[str], log_output: bool) -> tuple[str, str | None]:
    """Run a command; return its combined output and an error text or None."""
    try:
        completed = subprocess.run(
            list(run_args),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        return "", str(exc)

    output = completed.stdout or ""
    if log_output:
        log.debug("Command '%s' returned: %s", " ".join(run_args), output)
    if completed.returncode != 0:
        return output, f"exit status {completed.returncode}"
    return output, None


def _log_failure(command: str, output: str, err: str) -> None:
    log.error("Failed to execute %s (%s), complete output:", command, err)
    log.error("%s", output)


def _run_vboxmanage(args: Sequence[str], log_output: bool) -> str:
    run_args = [vboxmanage_path(), *args]
    output, err = _execute(run_args, log_output)
    if err is None:
        return output

    command = " ".join(run_args)
    _log_failure(command, output, err)

    try:
        fixed = detect_and_fix_duplicate_hard_disk_problem(output)
    except OSError as exc:
        log.error("Failed to fix duplicate hard disk problem with command %s: (%s)", command, exc)
        raise VBoxManageError(f"failed to execute {command}: {err}") from exc

    if fixed:
        log.debug("Retrying '%s' after fixing problem", command)
        output, err = _execute(run_args, log_output)
        if err is None:
            return output
        _log_failure(command, output, err)

    raise VBoxManageError(f"failed to execute {command}: {err}", output)


def _run_command(args: Sequence[str], log_output: bool) -> str:
    acquired = _lock.acquire(timeout=_LOCK_TIMEOUT_SECONDS)
    if not acquired:
        log.debug("Gave up waiting for a previous VBoxManage call to exit")
    try:
        return _run_vboxmanage(args, log_output)
    finally:
        if acquired:
            _lock.release()


def run_command(args: Sequence[str]) -> str:
    """Run VBoxManage with the given arguments and return its output."""
    return _run_command(args, True)


def run_command_without_logging(args: Sequence[str]) -> str:
    """Run VBoxManage without logging its output."""
    return _run_command(args, False)


def run_commands(commands: Iterable[Sequence[str]]) -> None:
    """Run VBoxManage commands in order, stopping at the first failure."""
    for command in commands:
        run_command(command)


def reset_response_cache() -> None:
    """Forget all cached VBoxManage responses."""
    global _cache
    _cache = _new_cache()


def _get_vm_info(vm_name: str) -> str:
    cached = _cache.get("showvminfo")
    if cached is not None:
        return cached
    try:
        raw_info = run_command_without_logging(["showvminfo", "--machinereadable", vm_name])
    except VBoxManageError as exc:
        log.debug("Could not get VM info: %s", exc)
        raw_info = ""
    _cache["showvminfo"] = raw_info
    return raw_info


def get_vm_info_by_regexp(vm_name: str, vm_regexp: str) -> str:
    """Return the first group of vm_regexp in the (cached) showvminfo output, or ""."""
    match = re.search(vm_regexp, _get_vm_info(vm_name))
    if match is None or match.re.groups < 1:
        return ""
    return match.group(1) or ""


def _vboxmanage_version_semantic_part() -> str:
    try:
        output = run_command(["--version"])
    except VBoxManageError as exc:
        log.error("get_vboxmanage_version() failed to get VBoxManage version: %s", exc)
        raise VBoxManageError(f"failed to get vboxmanage version: {exc}", exc.output) from exc

    match = _VERSION_RE.match(output)
    if match is None:
        raise VBoxManageError(
            f"could not find semantic version string from vboxmanage version '{output}'", output
        )
    return match.group(1)


def get_vboxmanage_version() -> semver.Version:
    """Return the installed VBoxManage version."""
    cached = _cache.get("vboxmanageversion")
    if cached is not None:
        return semver.Version.parse(cached)

    version_string = _vboxmanage_version_semantic_part()
    try:
        version = semver.Version.parse(version_string)
    except ValueError as exc:
        raise VBoxManageError(
            f"vboxmanage version {version_string} is not a semantic version number: {exc}"
        ) from exc

    _cache["vboxmanageversion"] = str(version)
    return version


def get_vm_property(vm_name: str, property: str) -> str:
    """Return a VM guest property, "" if it cannot be read."""
    cached = _cache.get(property)
    if cached is not None:
        log.debug("Got VM guest property %s from cache: %s", property, cached)
        return cached

    try:
        output = run_command(["guestproperty", "get", vm_name, property])
    except VBoxManageError as exc:
        log.debug("Could not get VM guest property '%s': %s", property, exc)
        return ""

    match = _PROPERTY_RE.search(output)
    value = match.group(1) if match else ""
    _cache[property] = value
    log.debug("Stored VM guest property '%s' value '%s' to cache", property, value)
    return value


def vm_state_from_output(output: str) -> str:
    """Extract the VMState value from showvminfo --machinereadable output."""
    match = _VM_STATE_RE.search(output)
    return match.group(1) if match else ""


def _get_vm_state(vm_name: str) -> str:
    cached = _cache.get("vmstate")
    if cached is not None:
        return cached

    try:
        raw_info = run_command_without_logging(["showvminfo", "--machinereadable", vm_name])
    except VBoxManageError as exc:
        if _NO_VM_INSTALLED in exc.output:
            log.debug("When trying to get VM state, VM is not installed")
            return ""
        log.error("When trying to get VM state, could not get VM info: %s", exc)
        raise

    if _NO_VM_INSTALLED in raw_info:
        log.debug("When trying to get VM state, VM is not installed")
        return ""

    state = vm_state_from_output(raw_info)
    if not state:
        log.debug("Could not find VM state from the VM info")
        raise VBoxManageError("could not find vm state from the vm info", raw_info)

    _cache["vmstate"] = state
    return state


def is_vm_running(vm_name: str) -> tuple[bool, str]:
    """Return whether the VM is running, and its state string."""
    state = _get_vm_state(vm_name)
    return state == "running", state


def is_vm_installed(vm_name: str) -> bool:
    """Return True if a VM with the given name is registered."""
    raw_info = run_command_without_logging(["list", "vms"])
    return f'"{vm_name}"' in raw_info


def is_installed() -> bool:
    """Return True if VBoxManage can be run."""
    if not vboxmanage_path():
        log.debug("Could not get VBoxManage path")
        return False
    try:
        version = run_command(["--version"])
    except VBoxManageError:
        log.debug("VBoxManage was not found")
        return False
    log.debug("VBoxManage version: %s", version)
    return True