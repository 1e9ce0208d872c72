"""SHA-256 checksums of disk images with progress reporting."""

from __future__ import annotations

import hashlib
import os
import re
import time
from functools import partial
from typing import Callable, Optional

ProgressCallback = Callable[[str, int], None]

# Progress messages closer than this to the previous one are suppressed.
_PROGRESS_MESSAGE_INTERVAL = 2.0
_last_message_time = time.monotonic()

_CHUNK_SIZE = 1024 * 1024
_CHECKSUM_RE = re.compile(r"[0-9a-f]{64}")


def _report(callback: Optional[ProgressCallback], message: str, percentage: int) -> None:
    """Pass a progress message to callback when one was given."""
    if callback is not None:
        callback(message, percentage)


class ProgressCounter:
    """Counts processed bytes and reports the percentage done, at most every two seconds."""

    def __init__(
        self,
        file_size: int,
        progress_callback: Optional[ProgressCallback],
        progress_string: str,
    ) -> None:
        self.file_size = file_size
        self.progress_callback = progress_callback
        self.progress_string = progress_string
        self.total = 0

    @property
    def percentage(self) -> int:
        """Percentage of file_size processed so far."""
        if not self.file_size:
            return 100
        return 100 * self.total // self.file_size

    def update(self, count: int) -> int:
        """Add count processed bytes, reporting progress if enough time has passed."""
        global _last_message_time
        self.total += count
        now = time.monotonic()
        if now > _last_message_time + _PROGRESS_MESSAGE_INTERVAL:
            _report(self.progress_callback, self.progress_string, self.percentage)
            _last_message_time = now
        return count


def clean_sha256_checksum_string(checksum_string: str) -> str:
    """Return the leading 64 hex digits of checksum file content, or "" if absent."""
    match = _CHECKSUM_RE.match(checksum_string)
    return match.group(0) if match else ""


def get_sha256_checksum_from_file(
    file_path: str | os.PathLike, progress_callback: Optional[ProgressCallback] = None
) -> str:
    """Return the hex SHA-256 digest of a file, reporting progress on the way."""
    digest = hashlib.sha256()

    with open(file_path, "rb") as source:
        size = os.fstat(source.fileno()).st_size
        _report(progress_callback, "Checking disk image...", 0)
        counter = ProgressCounter(size, progress_callback, "Checking disk image...")
        for chunk in iter(partial(source.read, _CHUNK_SIZE), b""):
            digest.update(chunk)
            counter.update(len(chunk))

    _report(progress_callback, "Disk image checked", 100)
    return digest.hexdigest()