import os
import subprocess
import sys

import pytest

from naksu import hwlog


@pytest.mark.parametrize(
    "code, expected",
    [
        (0, "N/A"),
        (3, "Running/Full Power"),
        (21, "Quiesced"),
        (22, "N/A"),
        (500, "N/A"),
    ],
)
def test_win_processor_availability_legend(code, expected):
    assert hwlog.win_processor_availability_legend(code) == expected


def test_simple_run_and_get_output_returns_output():
    output = hwlog.simple_run_and_get_output([sys.executable, "-c", "print('hello')"])
    assert output.strip() == "hello"


def test_simple_run_and_get_output_reports_nonzero_exit():
    args = [sys.executable, "-c", "import sys; sys.exit(3)"]
    output = hwlog.simple_run_and_get_output(args)
    assert output.startswith("command failed: " + " ".join(args))


def test_simple_run_and_get_output_reports_missing_command():
    output = hwlog.simple_run_and_get_output(["naksu-no-such-command-here"])
    assert output.startswith("command failed: naksu-no-such-command-here (")


def test_powerplan_filenames_picks_cpu_directories(tmp_path):
    for name in ("cpu1", "cpu0", "cpufreq", "cpuidle", "online", "cpu10"):
        (tmp_path / name).mkdir()
    names = hwlog.powerplan_filenames(str(tmp_path))
    assert names == [
        os.path.join(str(tmp_path), cpu, "cpufreq", "scaling_governor")
        for cpu in ("cpu0", "cpu1", "cpu10")
    ]


def test_powerplan_filenames_missing_directory(tmp_path):
    assert hwlog.powerplan_filenames(str(tmp_path / "missing")) == []


def test_powerplan_string_strips_non_word_characters(tmp_path):
    plan = tmp_path / "scaling_governor"
    plan.write_bytes(b"performance\n")
    assert hwlog.powerplan_string(plan) == "performance"


def test_powerplan_string_missing_file(tmp_path):
    assert hwlog.powerplan_string(tmp_path / "none") == "error"


def test_darwin_powerplan_and_hw_log(monkeypatch):
    monkeypatch.setattr(sys, "platform", "darwin")
    assert hwlog.get_powerplan() == "not implemented on Darwin"
    assert hwlog.get_hw_log() == "Warning: GetHwLog() is not implemented for Darwin"


def test_linux_hw_log_contains_command_outputs(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")

    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(args, 0, stdout=f"out:{args[-1]}")

    monkeypatch.setattr(hwlog.subprocess, "run", fake_run)
    text = hwlog.get_hw_log()
    assert "===== Output of lspci\nout:lspci" in text
    assert "===== Output of lsusb\nout:lsusb" in text
    assert "===== Output of /proc/meminfo\nout:/proc/meminfo" in text
    assert text.rstrip().endswith("===== End of Hardware Log")