"""Repair of duplicate hard disk entries in the VirtualBox global configuration."""

from __future__ import annotations

import os
import re
import sys
import time
from pathlib import Path

from naksu import log

_DUPLICATE_HARD_DISK_RE = re.compile(
    r"because a hard disk '[^']*' with UUID \{([0-9a-fA-F-]+)\} already exists"
)

# VBoxManage needs about five seconds to notice the config file changed inode.
_WAIT_FOR_VIRTUALBOX_SECONDS = 5.5


def virtualbox_config_path() -> Path:
    """Return the path of VirtualBox.xml for the current platform."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "VirtualBox" / "VirtualBox.xml"
    if sys.platform.startswith("win"):
        return home / ".VirtualBox" / "VirtualBox.xml"
    return home / ".config" / "VirtualBox" / "VirtualBox.xml"


def detect_and_fix_duplicate_hard_disk_problem(
    output: str, config_path: str | Path | None = None
) -> bool:
    """Fix a duplicate hard disk reported in VBoxManage output.

    Returns True if a problem was detected and fixed, False if the output
    reports no such problem. Raises OSError if fixing fails.
    """
    match = _DUPLICATE_HARD_DISK_RE.search(output)
    if match is None:
        return False

    orphaned_uuid = match.group(1)
    log.debug("Detected duplicate VirtualBox disk %s, fixing...", orphaned_uuid)

    path = Path(config_path) if config_path is not None else virtualbox_config_path()
    fixed_path = write_fixed_virtualbox_config(path, orphaned_uuid)
    backup_path = backup_virtualbox_config(path)
    replace_virtualbox_config_with_fixed_one(path, fixed_path, backup_path)
    return True


def write_fixed_virtualbox_config(config_path: str | Path, orphaned_uuid: str) -> Path:
    """Write a copy of the config without the orphaned disk; return its path."""
    config_path = Path(config_path)
    fixed_path = config_path.with_name(config_path.name + ".new")
    marker = f'<HardDisk uuid="{{{orphaned_uuid}}}"'

    try:
        source = open(config_path, encoding="utf-8", errors="surrogateescape", newline="")
    except OSError:
        log.error("Failed to open virtualbox configuration file %s", config_path)
        raise

    with source:
        try:
            target = open(
                fixed_path, "w", encoding="utf-8", errors="surrogateescape", newline=""
            )
        except OSError:
            log.error("Failed to open replacement virtual box configuration file %s", fixed_path)
            raise
        with target:
            for raw_line in source:
                line = raw_line.removesuffix("\n").removesuffix("\r")
                if marker in line:
                    continue
                try:
                    target.write(line + "\r\n")
                except OSError:
                    log.error("Failed to write to %s", fixed_path)
                    raise

    return fixed_path


def backup_virtualbox_config(config_path: str | Path) -> Path:
    """Move the config aside as a backup; return the backup path."""
    config_path = Path(config_path)
    backup_path = config_path.with_name(config_path.name + ".naksubackup")
    try:
        os.replace(config_path, backup_path)
    except OSError:
        log.error("Failed to backup %s to %s", config_path, backup_path)
        raise
    return backup_path


def replace_virtualbox_config_with_fixed_one(
    config_path: str | Path, fixed_path: str | Path, backup_path: str | Path
) -> None:
    """Move the fixed config into place, restoring the backup on failure."""
    try:
        os.replace(fixed_path, config_path)
    except OSError:
        log.error(
            "Failed to move %s to %s, trying to restore %s from %s",
            fixed_path,
            config_path,
            config_path,
            backup_path,
        )
        try:
            os.replace(backup_path, config_path)
        except OSError:
            log.error(
                "Naksu encountered an error while trying to fix a problem with VirtualBox. "
                "VirtualBox configuration file %s has been moved to %s. "
                "Manually rename it to %s to fix this.",
                config_path,
                backup_path,
                config_path,
            )
        raise

    print(
        "Please wait a few seconds while Naksu is fixing a duplicate hard disk "
        "problem that it detected with VirtualBox."
    )
    time.sleep(_WAIT_FOR_VIRTUALBOX_SECONDS)