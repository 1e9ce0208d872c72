from unittest import mock

import pytest

from naksu.checksum import (
    ProgressCounter,
    clean_sha256_checksum_string,
    get_sha256_checksum_from_file,
)

HASH = "aff72a2cd83323e21c48d8686f3bcb7469b5131eb678a1bdcdbef27ff4f05b94"


@pytest.mark.parametrize(
    "source, expected",
    [
        (HASH, HASH),
        (HASH + " ", HASH),
        (HASH + " foo", HASH),
        (HASH + r" foo\nbar", HASH),
        ("  " + HASH, ""),
        (HASH[1:], ""),
    ],
)
def test_clean_sha256_checksum_string(source, expected):
    assert clean_sha256_checksum_string(source) == expected


@pytest.mark.parametrize(
    "content, expected",
    [
        ("foobar", "c3ab8ff13720e8ad9047dd39466b3c8974e592c2fa383d4a3960714caef0c4f2"),
        ("foobar\n\n", "de9e0da624af6ccda42959e1f5a183153467831f5e81faadc641aaebf662e6cd"),
    ],
)
def test_get_sha256_checksum_from_file(tmp_path, content, expected):
    path = tmp_path / "image"
    path.write_bytes(content.encode())
    assert get_sha256_checksum_from_file(path, lambda message, value: None) == expected


def test_checksum_reports_start_and_end(tmp_path):
    path = tmp_path / "image"
    path.write_bytes(b"foobar")
    calls = []
    get_sha256_checksum_from_file(path, lambda message, value: calls.append((message, value)))
    assert calls[0] == ("Checking disk image...", 0)
    assert calls[-1] == ("Disk image checked", 100)


def test_checksum_of_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_sha256_checksum_from_file(tmp_path / "missing", None)


def test_progress_counter_percentage_and_return_value():
    counter = ProgressCounter(200, None, "msg")
    assert counter.update(50) == 50
    assert counter.total == 50
    assert counter.percentage == 25


def test_progress_counter_reports_and_throttles():
    calls = []
    counter = ProgressCounter(100, lambda message, value: calls.append((message, value)), "msg")

    with mock.patch("naksu.checksum.time.monotonic", return_value=1e12):
        counter.update(50)
        counter.update(10)
    assert calls == [("msg", 50)]

    with mock.patch("naksu.checksum.time.monotonic", return_value=1e12 + 3):
        counter.update(40)
    assert calls == [("msg", 50), ("msg", 100)]