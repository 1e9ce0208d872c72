"""Requesting logs from the exam server and collecting log files into a zip."""

from __future__ import annotations

import os
import re
import shutil
import time
import zipfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Generator, Iterator, Optional

from naksu import box, log
from naksu.constants import (
    FILE_PERMISSIONS_OWNER_RW,
    LOG_COPY_DONE_FILENAME,
    LOG_COPY_REQUEST_FILENAME,
    LOG_COPY_STATUS_FILENAME,
    LOG_REQUEST_TIMEOUT,
)

# Progress value reported by collect_logs_to_zip once the zip is complete.
COLLECT_PROGRESS_DONE = 127

_POLL_INTERVAL_SECONDS = 1.0
_INITIAL_STATUS = "0 %\n"
_NUMBER_RE = re.compile(r"[+-]?\d+", re.ASCII)
_NAKSU_LASTLOG_RE = re.compile(r"^naksu_lastlog.*\.txt$")


def _seconds(timeout: timedelta | float) -> float:
    return timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)


def _write_text(path: str | os.PathLike, content: str) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_PERMISSIONS_OWNER_RW)
    except OSError as exc:
        log.error("Error opening file %s for writing: %s", path, exc)
        raise
    with os.fdopen(fd, "w", encoding="utf-8") as target:
        try:
            target.write(content)
        except OSError as exc:
            log.error("Error writing to file %s: %s", path, exc)
            raise


def _delete_file(path: Path) -> None:
    log.debug("Deleting file %s", path)
    try:
        path.unlink()
    except OSError as exc:
        log.warning("Could not delete file %s: %s", path, exc)


def delete_log_copy_files(mebshare_dir: str | os.PathLike) -> None:
    """Delete the temporary files used to copy logs from the VM guest."""
    share = Path(mebshare_dir)
    for name in (LOG_COPY_STATUS_FILENAME, LOG_COPY_REQUEST_FILENAME, LOG_COPY_DONE_FILENAME):
        _delete_file(share / name)


def read_number_from_file(filename: str | os.PathLike) -> int:
    """Return the integer stored in a file; 0 if its content is not a number.

    Raises OSError if the file cannot be read.
    """
    try:
        content = Path(filename).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        log.error("Error reading file %s: %s", filename, exc)
        raise

    text = content.strip()
    if not _NUMBER_RE.fullmatch(text):
        # A corrupted file restarts the request number sequence.
        log.error("Error converting value to integer %s", content)
        return 0
    return int(text)


def update_request_number(request_path: str | os.PathLike) -> int:
    """Increment the request number stored in request_path and return the new number."""
    request_path = Path(request_path)
    current = read_number_from_file(request_path) if request_path.exists() else 0
    new_number = current + 1
    _write_text(request_path, f"{new_number}\n")
    return new_number


def _reset_status_file(status_path: Path) -> None:
    log.debug("Resetting status file %s", status_path)
    try:
        _write_text(status_path, _INITIAL_STATUS)
    except OSError:
        log.error("Error resetting status file %s", status_path)


def wait_for_logs(
    request_number: int,
    timeout: timedelta | float = LOG_REQUEST_TIMEOUT,
    mebshare_dir: str | os.PathLike = ".",
) -> Generator[str, None, bool]:
    """Wait until the guest reports the request done, yielding copy progress on the way.

    The generator returns True when the logs were copied, False on timeout.
    """
    share = Path(mebshare_dir)
    done_path = share / LOG_COPY_DONE_FILENAME
    status_path = share / LOG_COPY_STATUS_FILENAME
    deadline = time.monotonic() + _seconds(timeout)
    log.debug(
        "Starting to wait for request number %d at %s with a timeout of %s",
        request_number,
        datetime.now(),
        timeout,
    )

    while True:
        if done_path.exists():
            try:
                done_number = read_number_from_file(done_path)
            except OSError:
                pass
            else:
                log.debug("Found %d in done file %s", done_number, done_path)
                if done_number >= request_number:
                    log.debug(
                        "Done number %d matches request number %d", done_number, request_number
                    )
                    return True
        else:
            log.debug("Done file not yet found at %s", done_path)

        time.sleep(_POLL_INTERVAL_SECONDS)

        try:
            progress = status_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            log.warning("Could not read status file %s: %s", status_path, exc)
        else:
            yield progress.strip()

        if time.monotonic() > deadline:
            log.debug("Timing out copying logs at %s", datetime.now())
            return False


def request_logs_from_server(
    mebshare_dir: str | os.PathLike,
    timeout: timedelta | float = LOG_REQUEST_TIMEOUT,
) -> Iterator[str]:
    """Ask the VM to copy its logs to the shared directory.

    Returns an iterator of progress strings that ends when the copy is done
    or the timeout passes.
    """
    log.debug("Requesting logs from server")
    share = Path(mebshare_dir)
    _reset_status_file(share / LOG_COPY_STATUS_FILENAME)

    request_path = share / LOG_COPY_REQUEST_FILENAME
    log.debug("Using request file %s", request_path)
    try:
        request_number = update_request_number(request_path)
    except OSError as exc:
        log.error("Could not update request number in file %s: %s", request_path, exc)
        return iter(())

    return wait_for_logs(request_number, timeout, share)


def _directory_entries(directory: str | os.PathLike) -> list[str]:
    try:
        return sorted(os.listdir(directory))
    except OSError as exc:
        log.error("Error listing directory %s: %s", directory, exc)
        raise


def collect_log_files(
    mebshare_dir: str | os.PathLike,
    ktp_dir: str | os.PathLike,
    virtualbox_log_dir: str | os.PathLike,
) -> list[Path]:
    """Return the server, VirtualBox and naksu log files to be collected.

    Directories that cannot be listed are logged and skipped.
    """
    files: list[Path] = []

    ktp_logs = Path(mebshare_dir) / "ktp_logs"
    try:
        for name in _directory_entries(ktp_logs):
            log.debug("Appending ktp log file %s", ktp_logs / name)
            files.append(ktp_logs / name)
    except OSError as exc:
        log.warning("Error appending ktp logs: %s", exc)

    try:
        vbox_logs = Path(virtualbox_log_dir) if str(virtualbox_log_dir) else None
        if vbox_logs is None:
            raise FileNotFoundError("VirtualBox log directory is unknown")
        for name in _directory_entries(vbox_logs):
            log.debug("Appending VirtualBox log file %s", vbox_logs / name)
            files.append(vbox_logs / name)
    except OSError as exc:
        log.warning("Error appending VirtualBox logs: %s", exc)

    ktp = Path(ktp_dir)
    try:
        for name in _directory_entries(ktp):
            if _NAKSU_LASTLOG_RE.match(name):
                log.debug("Appending naksu log file %s", ktp / name)
                files.append(ktp / name)
    except OSError as exc:
        log.warning("Error appending naksu logs: %s", exc)

    return files


def _add_file_to_zip(path: Path, archive: zipfile.ZipFile) -> None:
    try:
        info = zipfile.ZipInfo.from_file(path, arcname=path.name)
    except OSError as exc:
        log.warning("Could not stat %s: %s", path, exc)
        return
    info.compress_type = zipfile.ZIP_DEFLATED

    if info.is_dir():
        archive.writestr(info, b"")
        return

    try:
        source = open(path, "rb")
    except OSError as exc:
        log.warning("Could not open %s: %s", path, exc)
        return

    with source, archive.open(info, "w") as target:
        try:
            shutil.copyfileobj(source, target)
        except OSError as exc:
            log.warning("Could not add %s to zip: %s", path, exc)


def collect_logs_to_zip(
    mebshare_dir: str | os.PathLike,
    ktp_dir: str | os.PathLike,
    progress_callback: Optional[Callable[[int], None]] = None,
) -> Path:
    """Write the collected log files to a timestamped zip in the shared directory.

    progress_callback receives 0 at the start, the percentage done after each
    file and COLLECT_PROGRESS_DONE when the zip is complete. Returns the zip path.
    """
    report = progress_callback or (lambda value: None)
    share = Path(mebshare_dir)
    share.mkdir(parents=True, exist_ok=True)

    log.debug("Collecting logs")
    zip_path = share / datetime.now().strftime("%Y-%m-%d_%H-%M-%S.zip")
    report(0)

    log_files = collect_log_files(share, ktp_dir, box.get_log_dir())

    try:
        archive = zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED)
    except OSError as exc:
        log.error("Error creating zip file %s: %s", zip_path, exc)
        raise

    with archive:
        for number, path in enumerate(log_files):
            _add_file_to_zip(path, archive)
            report(100 * number // len(log_files))

    report(COLLECT_PROGRESS_DONE)
    return zip_path