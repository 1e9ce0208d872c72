"""Hardware information gathered for the debug log."""

from __future__ import annotations

import csv
import os
import re
import subprocess
import sys
from typing import Sequence

import humanize
import psutil

from naksu import log

_LINUX_CPU_SETTINGS_PATH = "/sys/devices/system/cpu/"
_CPU_DIR_RE = re.compile(r"^cpu\d+", re.ASCII)
_NON_WORD_BYTES_RE = re.compile(rb"\W")

_PROCESSOR_AVAILABILITY_LEGENDS = (
    "N/A",
    "Other",
    "Unknown",
    "Running/Full Power",
    "Warning",
    "In Test",
    "Not Applicable",
    "Power Off",
    "Off Line",
    "Off Duty",
    "Degraded",
    "Not Installed",
    "Install Error",
    "Power Save - Unknown",
    "Power Save - Low Power Mode",
    "Power Save - Standby",
    "Power Cycle",
    "Power Save - Warning",
    "Paused",
    "Not Ready",
    "Not Configured",
    "Quiesced",
)

_LINUX_HW_LOG_TEMPLATE = """
===== Output of /proc/cpuinfo
{cpuinfo}

===== Scaling governor (for each CPU/core): '{powerplan}'

===== Output of /proc/meminfo
{meminfo}

===== Output of lshw
{lshw}

===== Output of lspci
{lspci}

===== Output of lsusb
{lsusb}

===== End of Hardware Log
"""

_WINDOWS_HW_LOG_TEMPLATE = """
===== Processor Info
{cpu_info}

===== Power configuration
{powerplan}

===== Memory Info
{memory_info}

===== Plug-And-Play Devices
{pnp_entities}

===== End of Hardware Log
"""


def simple_run_and_get_output(command_args: Sequence[str]) -> str:
    """Run a command and return its combined output, or a failure description."""
    command_args = list(command_args)
    try:
        completed = subprocess.run(
            command_args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        return f"command failed: {' '.join(command_args)} ({exc})"

    if completed.returncode != 0:
        return f"command failed: {' '.join(command_args)} (exit status {completed.returncode})"
    return completed.stdout if completed.stdout is not None else "n/a"


def win_processor_availability_legend(code: int) -> str:
    """Return the legend of a Win32_Processor Availability code; unknown codes give "N/A"."""
    if not 0 <= code < len(_PROCESSOR_AVAILABILITY_LEGENDS):
        code = 0
    return _PROCESSOR_AVAILABILITY_LEGENDS[code]


def powerplan_filenames(cpu_settings_path: str = _LINUX_CPU_SETTINGS_PATH) -> list[str]:
    """Return the scaling governor file of every CPU under cpu_settings_path, sorted."""
    try:
        names = sorted(os.listdir(cpu_settings_path))
    except OSError as exc:
        log.error(
            "Could not read filenames in directory %s to read power plan filenames: %s",
            cpu_settings_path,
            exc,
        )
        return []

    return [
        os.path.join(cpu_settings_path, name, "cpufreq", "scaling_governor")
        for name in names
        if _CPU_DIR_RE.match(name)
    ]


def powerplan_string(filename: str | os.PathLike) -> str:
    """Return the word characters of a power plan file, or "error" if it cannot be read."""
    try:
        with open(filename, "rb") as plan_file:
            content = plan_file.read()
    except OSError as exc:
        log.error("Could not open power plan file %s for reading: %s", filename, exc)
        return "error"
    return _NON_WORD_BYTES_RE.sub(b"", content).decode("ascii", errors="replace")


def _command_output(command_args: Sequence[str]) -> str:
    try:
        completed = subprocess.run(
            list(command_args),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        log.debug("Could not run %s: %s", " ".join(command_args), exc)
        return ""
    return completed.stdout or ""


def get_powerplan() -> str:
    """Return a description of the current power plan."""
    if sys.platform == "darwin":
        return "not implemented on Darwin"
    if sys.platform.startswith("win"):
        list_output = _command_output(["powercfg", "/list"])
        query_output = _command_output(["powercfg", "/query"])
        return f"{list_output}\n\n{query_output}"
    return "+".join(powerplan_string(name) for name in powerplan_filenames())


def _wmic_rows(args: Sequence[str]) -> list[dict[str, str]]:
    try:
        completed = subprocess.run(
            ["wmic", *args, "/format:csv"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        log.error("Could not make WMI query %s: %s", " ".join(args), exc)
        return []
    if completed.returncode != 0:
        log.error("WMI query %s failed: %s", " ".join(args), completed.stdout)
        return []
    lines = [line for line in (completed.stdout or "").splitlines() if line.strip()]
    return list(csv.DictReader(lines))


def _as_int(value: str | None) -> int:
    try:
        return int(value or 0)
    except ValueError:
        return 0


def _windows_processor_string() -> str:
    rows = _wmic_rows(
        [
            "cpu",
            "get",
            "Availability,Caption,CurrentClockSpeed,DeviceID,Manufacturer,"
            "MaxClockSpeed,Name,NumberOfCores",
        ]
    )
    return "\n".join(
        f"{row.get('DeviceID', '')}: {row.get('Manufacturer', '')}, {row.get('Name', '')}, "
        f"{row.get('Caption', '')} "
        f"Availability: {win_processor_availability_legend(_as_int(row.get('Availability')))}, "
        f"CurrentClockSpeed: {_as_int(row.get('CurrentClockSpeed'))}, "
        f"MaxClockSpeed: {_as_int(row.get('MaxClockSpeed'))}, "
        f"NumberOfCores: {_as_int(row.get('NumberOfCores'))}"
        for row in rows
    )


def _windows_memory_string() -> str:
    total = psutil.virtual_memory().total
    return f"Total Memory: {total} ({humanize.naturalsize(total)})"


def _windows_pnp_entity_string() -> str:
    rows = _wmic_rows(["path", "Win32_PnPEntity", "get", "DeviceID,Manufacturer,Name,PNPClass"])
    entities = sorted(
        f"{row.get('PNPClass', '')} {row.get('Manufacturer', '')} {row.get('Name', '')} "
        f"[{row.get('DeviceID', '')}]"
        for row in rows
    )
    return "\n".join(entities)


def get_hw_log() -> str:
    """Return hardware information to be written to the log."""
    if sys.platform == "darwin":
        return "Warning: GetHwLog() is not implemented for Darwin"

    if sys.platform.startswith("win"):
        return _WINDOWS_HW_LOG_TEMPLATE.format(
            cpu_info=_windows_processor_string(),
            powerplan=get_powerplan(),
            memory_info=_windows_memory_string(),
            pnp_entities=_windows_pnp_entity_string(),
        )

    return _LINUX_HW_LOG_TEMPLATE.format(
        cpuinfo=simple_run_and_get_output(["cat", "/proc/cpuinfo"]),
        powerplan=get_powerplan(),
        meminfo=simple_run_and_get_output(["cat", "/proc/meminfo"]),
        lshw=simple_run_and_get_output(["lshw"]),
        lspci=simple_run_and_get_output(["lspci"]),
        lsusb=simple_run_and_get_output(["lsusb"]),
    )