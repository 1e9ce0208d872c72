"""Querying available server image versions and downloading the images."""

from __future__ import annotations

import os
import re
import urllib.error
import urllib.request
import zipfile
from functools import partial
from pathlib import Path
from typing import Optional

from cachetools import TTLCache

from naksu import log
from naksu.checksum import (
    ProgressCallback,
    ProgressCounter,
    clean_sha256_checksum_string,
    get_sha256_checksum_from_file,
)
from naksu.constants import CLOUD_STATUS_TIMEOUT, FILE_PERMISSIONS_OWNER_RW

_DOWNLOAD_PROGRESS_CONTACTING_SERVER = 0
_DOWNLOAD_PROGRESS_OPENING_FILE = 1
_DOWNLOAD_PROGRESS_DOWNLOADING = 2
_DOWNLOAD_PROGRESS_FINISHED = 100
_UNZIP_PROGRESS_STARTING = 1
_UNZIP_PROGRESS_FINISHED = 100
_HTTP_STATUS_OK = 200

_CHUNK_SIZE = 1024 * 1024
_IMAGE_MEMBER = "ytl/ktp.img"
_CHECKSUM_MEMBER = "ytl/ktp.img.sha256"
_NON_WORD_RE = re.compile(r"\W", re.ASCII)

_cloud_status_cache: TTLCache = TTLCache(maxsize=64, ttl=CLOUD_STATUS_TIMEOUT.total_seconds())


class DownloadedDiskImageCorrupted(Exception):
    """The uncompressed image does not match its defined checksum."""

    def __init__(self, message: str = "downloaded image is corrupted") -> None:
        super().__init__(message)


class HTTPStatusError(Exception):
    """An HTTP request returned a status other than 200."""

    def __init__(self, status_code: int) -> None:
        super().__init__(str(status_code))
        self.status_code = status_code


def _ignore_progress(message: str, percentage: int) -> None:
    pass


def server_image_path(ktp_directory: str | os.PathLike) -> Path:
    """Return the path of the cached server image zip in the ktp directory."""
    return Path(ktp_directory) / "naksu_last_image.zip"


def sanitize_box_version_string(text: str) -> str:
    """Remove every non-word character from a box version string."""
    return _NON_WORD_RE.sub("", text)


def _http_get(url: str):
    try:
        response = urllib.request.urlopen(url)  # noqa: S310
    except urllib.error.HTTPError as exc:
        exc.close()
        log.error("HTTP GET from url '%s' gives a status code %d", url, exc.code)
        raise HTTPStatusError(exc.code) from None
    except OSError as exc:
        log.error("Making HTTP GET request to '%s' resulted an error: %s", url, exc)
        raise

    if response.status != _HTTP_STATUS_OK:
        status = response.status
        response.close()
        log.error("HTTP GET from url '%s' gives a status code %d", url, status)
        raise HTTPStatusError(status)
    return response


def _open_for_writing(path: str | os.PathLike):
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_PERMISSIONS_OWNER_RW)
    return os.fdopen(fd, "wb")


def _copy_with_progress(source, target, counter: ProgressCounter) -> None:
    for chunk in iter(partial(source.read, _CHUNK_SIZE), b""):
        target.write(chunk)
        counter.update(len(chunk))


def download_server_image(
    url: str,
    zip_path: str | os.PathLike,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Download the server image zip from url to zip_path, replacing any old file."""
    report = progress_callback or _ignore_progress
    zip_path = Path(zip_path)

    if zip_path.is_file():
        zip_path.unlink()

    report("Contacting server", _DOWNLOAD_PROGRESS_CONTACTING_SERVER)
    log.debug("Starting to download image from '%s'", url)

    with _http_get(url) as response:
        try:
            file_size = int(response.headers.get("Content-Length") or 0)
        except ValueError:
            file_size = 0

        report("Opening file", _DOWNLOAD_PROGRESS_OPENING_FILE)
        try:
            target = _open_for_writing(zip_path)
        except OSError as exc:
            log.error("Could not open file '%s' for server image zip: %s", zip_path, exc)
            raise

        with target:
            report("Downloading server image", _DOWNLOAD_PROGRESS_DOWNLOADING)
            counter = ProgressCounter(file_size, report, "Downloading server image")
            _copy_with_progress(response, target, counter)

    report("Server image downloaded", _DOWNLOAD_PROGRESS_FINISHED)


def _extract_image(
    archive: zipfile.ZipFile,
    member: zipfile.ZipInfo,
    image_path: Path,
    report: ProgressCallback,
) -> None:
    with _open_for_writing(image_path) as target, archive.open(member) as source:
        report("Starting to uncompress raw image", _UNZIP_PROGRESS_STARTING)
        counter = ProgressCounter(member.file_size, report, "Uncompressing image...")
        _copy_with_progress(source, target, counter)
    report("Uncompressing finished", _UNZIP_PROGRESS_FINISHED)


def unzip_server_image(
    zip_path: str | os.PathLike,
    image_path: str | os.PathLike,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Extract the raw image from the zip and verify it against the bundled checksum.

    Raises DownloadedDiskImageCorrupted if the checksums differ.
    """
    report = progress_callback or _ignore_progress
    image_path = Path(image_path)
    defined_checksum = ""

    with zipfile.ZipFile(zip_path) as archive:
        for member in archive.infolist():
            log.debug("Etcher zip contains file %s, size %d", member.filename, member.file_size)
            if member.filename == _CHECKSUM_MEMBER:
                content = archive.read(member).decode("utf-8", errors="replace")
                defined_checksum = clean_sha256_checksum_string(content)
            if member.filename == _IMAGE_MEMBER:
                _extract_image(archive, member, image_path, report)

    if not defined_checksum:
        return

    log.debug("Checking that uncompressed image meets defined checksum '%s'", defined_checksum)
    calculated_checksum = get_sha256_checksum_from_file(image_path, report)
    if calculated_checksum != defined_checksum:
        log.error(
            "Image checksums differ, defined: %s, calculated: %s",
            defined_checksum,
            calculated_checksum,
        )
        raise DownloadedDiskImageCorrupted()
    log.debug("Image checksum verified without errors")


def get_server_image(
    url: str,
    zip_path: str | os.PathLike,
    image_path: str | os.PathLike,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Download the server image zip and extract the verified raw image."""
    try:
        download_server_image(url, zip_path, progress_callback)
    except Exception as exc:
        log.error("Failed to download server image from '%s': %s", url, exc)
        raise
    try:
        unzip_server_image(zip_path, image_path, progress_callback)
    except Exception as exc:
        log.error("Failed to unzip server image: %s", exc)
        raise


def get_available_version(version_url: str) -> str:
    """Return the box version published at version_url, cached for ten minutes."""
    cached = _cloud_status_cache.get(version_url)
    if cached is not None:
        return cached

    with _http_get(version_url) as response:
        body = response.read()

    version = sanitize_box_version_string(body.decode("utf-8", errors="replace"))
    _cloud_status_cache[version_url] = version
    log.debug("Box version from '%s' is '%s'", version_url, version)
    return version