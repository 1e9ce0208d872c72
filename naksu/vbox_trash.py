"""Removal of leftover VirtualBox VM directories holding only a .vbox file."""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path

from naksu import log
from naksu.vboxmanage import VBoxManageError, run_command

_DEFAULT_VM_DIRECTORY_RE = re.compile(r"Default machine folder:\s+(\S.*)")


def default_vm_directory() -> str:
    """Return VirtualBox's default machine folder.

    Raises VBoxManageError if the folder cannot be found in the
    output of ``VBoxManage list systemproperties``.
    """
    try:
        properties = run_command(["list", "systemproperties"])
    except VBoxManageError as exc:
        log.error(
            "Failing to list system properties is not a fatal error, continuing normally. Error: %s",
            exc,
        )
        properties = exc.output

    match = _DEFAULT_VM_DIRECTORY_RE.search(properties)
    if match is None:
        raise VBoxManageError("failed to get default VM directory: no regex matches", properties)
    return match.group(1).strip()


def is_trash_vm_directory(path: str | Path) -> bool:
    """Return True if the directory holds exactly one entry: a .vbox file."""
    with os.scandir(path) as entries:
        contents = list(entries)
    if len(contents) != 1:
        return False
    only = contents[0]
    return not only.is_dir(follow_symlinks=False) and only.name.endswith(".vbox")


def clean_up_trash_vm_directories() -> None:
    """Delete VM directories in the default machine folder that only hold a .vbox file."""
    try:
        root = Path(default_vm_directory())
    except VBoxManageError as exc:
        log.error("Error searching for trash VM directories (get default vm dir): %s", exc)
        return

    try:
        with os.scandir(root) as entries:
            candidates = [Path(entry.path) for entry in entries if entry.is_dir(follow_symlinks=False)]
    except OSError as exc:
        log.error("Error searching for trash VM directories (list default vm dir %s): %s", root, exc)
        return

    for candidate in candidates:
        try:
            trash = is_trash_vm_directory(candidate)
        except OSError as exc:
            log.error("Error searching for trash VM directories (listing '%s'): %s", candidate, exc)
            return

        if trash:
            log.debug("Removing trash VM dir %s", candidate)
            try:
                shutil.rmtree(candidate)
            except OSError:
                log.debug("Error removing trash VM dir %s", candidate)