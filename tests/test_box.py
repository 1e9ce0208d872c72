import json
import os
import stat
import sys
import time
from pathlib import Path
from types import SimpleNamespace

import psutil
import pytest
import semver

from naksu import box, host
from naksu.constants import EnvironmentStatus
from naksu.vboxmanage import VBoxManageError

_FAKE_SCRIPT = """\
import json, os, sys
args = sys.argv[1:]
with open(os.environ["FAKE_VBOX_CALLS"], "a", encoding="utf-8") as calls:
    calls.write(json.dumps(args) + "\\n")
with open(os.environ["FAKE_VBOX_RESPONSES"], encoding="utf-8") as source:
    responses = json.load(source)
joined = " ".join(args)
matches = [key for key in responses if joined.startswith(key)]
if matches:
    code, output = responses[max(matches, key=len)]
    sys.stdout.write(output)
    sys.exit(code)
"""

_MIB = 1024 * 1024


class FakeVBox:
    def __init__(self, directory: Path) -> None:
        self.calls_path = directory / "calls.jsonl"
        self.responses_path = directory / "responses.json"
        self.responses: dict[str, list] = {}
        self.calls_path.write_text("")
        self._save()

    def _save(self) -> None:
        self.responses_path.write_text(json.dumps(self.responses))

    def respond(self, prefix: str, output: str, code: int = 0) -> None:
        self.responses[prefix] = [code, output]
        self._save()

    @property
    def calls(self) -> list[list[str]]:
        return [json.loads(line) for line in self.calls_path.read_text().splitlines() if line]


@pytest.fixture
def fake_vbox(tmp_path, monkeypatch):
    directory = tmp_path / "fakevbox"
    directory.mkdir()
    script = directory / "fake_vboxmanage.py"
    script.write_text(_FAKE_SCRIPT)
    wrapper = directory / "VBoxManage"
    wrapper.write_text(f"#!/bin/sh\nexec '{sys.executable}' '{script}' \"$@\"\n")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR)
    fake = FakeVBox(directory)
    monkeypatch.setenv("VBOXMANAGEPATH", str(wrapper))
    monkeypatch.setenv("FAKE_VBOX_CALLS", str(fake.calls_path))
    monkeypatch.setenv("FAKE_VBOX_RESPONSES", str(fake.responses_path))
    box.reset_cache()
    yield fake
    box.reset_cache()


def _set_memory(monkeypatch, megabytes):
    monkeypatch.setattr(psutil, "virtual_memory", lambda: SimpleNamespace(total=megabytes * _MIB))


def _set_cores(tmp_path, monkeypatch, cores):
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text(f"processor\t: 0\ncpu cores\t: {cores}\n")
    monkeypatch.setattr(host, "_CPUINFO_PATH", cpuinfo)
    monkeypatch.setattr(sys, "platform", "linux")


@pytest.fixture
def paths(tmp_path):
    return box.BoxPaths(
        image_path=tmp_path / "ktp.img",
        vdi_image_path=tmp_path / "ktp.vdi",
        mebshare_directory=tmp_path / "ktp-jako",
    )


def test_basic_commands_structure(paths):
    commands = box.create_new_box_basic_commands("vm", "abitti", "v1", 3, 6000, paths)
    assert commands[0] == ["convertfromraw", str(paths.image_path), str(paths.vdi_image_path), "--format", "VDI"]
    assert commands[1] == ["modifyhd", str(paths.vdi_image_path), "--resize", str(box.BOX_FINAL_IMAGE_SIZE)]
    assert commands[2] == ["createvm", "--name", "vm", "--register"]
    modify = commands[3]
    assert modify[modify.index("--cpus") + 1] == "3"
    assert modify[modify.index("--memory") + 1] == "6000"
    assert modify[modify.index("--ostype") + 1] == "Debian"
    assert modify[modify.index("--firmware") + 1] == "efi"
    assert ["guestproperty", "set", "vm", "boxType", "abitti"] in commands
    assert ["guestproperty", "set", "vm", "boxVersion", "v1"] in commands
    shared = commands[6]
    assert shared[shared.index("--hostpath") + 1] == str(paths.mebshare_directory)
    assert commands[-1][-1] == "SaveState,PowerOffRestoringSnapshot"
    assert all(command[1] == "vm" or command[0] in ("convertfromraw", "modifyhd", "createvm")
               or command[2] == "vm" for command in commands)


@pytest.mark.parametrize(
    "version, option",
    [("6.0.24", "--clipboard"), ("6.1.0", "--clipboard-mode"), ("7.0.10", "--clipboard-mode")],
)
def test_clipboard_command(version, option):
    command = box.create_new_box_clipboard_command(semver.Version.parse(version))
    assert command == ["modifyvm", box.BOX_NAME, option, "bidirectional"]


def test_calculate_box_memory(monkeypatch):
    _set_memory(monkeypatch, 16384)
    memory = box.calculate_box_memory()
    assert abs(memory - 16384 * box.BOX_MEMORY_SIZE_PERCENTAGE) <= 0.5
    assert memory < 16384


def test_calculate_box_memory_too_low(monkeypatch):
    _set_memory(monkeypatch, 4096)
    with pytest.raises(RuntimeError):
        box.calculate_box_memory()


def test_calculate_box_cpus_leaves_one_core(tmp_path, monkeypatch):
    _set_cores(tmp_path, monkeypatch, 8)
    assert box.calculate_box_cpus() == 8 - 1


@pytest.mark.parametrize("cores", [1, 2, 3])
def test_calculate_box_cpus_minimum(tmp_path, monkeypatch, cores):
    _set_cores(tmp_path, monkeypatch, cores)
    assert box.calculate_box_cpus() == box.BOX_MINIMUM_NUMBER_OF_CORES


def test_restore_snapshot(fake_vbox):
    box.restore_snapshot()
    assert fake_vbox.calls == [["snapshot", box.BOX_NAME, "restore", "Installed"]]
    fake_vbox.respond("snapshot", "error", code=1)
    with pytest.raises(VBoxManageError):
        box.restore_snapshot()


def test_remove_current_box(fake_vbox):
    box.remove_current_box()
    assert fake_vbox.calls == [["unregistervm", box.BOX_NAME, "--delete"]]
    fake_vbox.respond("unregistervm", "error", code=1)
    with pytest.raises(VBoxManageError):
        box.remove_current_box()


def test_start_current_box(fake_vbox):
    box.start_current_box("eth0", "virtio")
    calls = fake_vbox.calls
    assert len(calls) == 4
    assert calls[1] == ["modifyvm", box.BOX_NAME, "--bridgeadapter1", "eth0"]
    assert calls[2] == ["modifyvm", box.BOX_NAME, "--nictype1", "virtio"]
    assert calls[3] == ["startvm", box.BOX_NAME, "--type", "gui"]
    fake_vbox.respond("startvm", "error", code=1)
    with pytest.raises(VBoxManageError):
        box.start_current_box("eth0", "virtio")
    assert len(fake_vbox.calls) == 8


def test_start_current_box_stops_at_failure(fake_vbox):
    fake_vbox.respond("modifyvm", "error", code=1)
    with pytest.raises(VBoxManageError):
        box.start_current_box("eth0", "virtio")
    assert len(fake_vbox.calls) == 1


def test_installed(fake_vbox):
    fake_vbox.respond("list vms", '"NaksuAbittiKTP" {0000-1111}\n')
    assert box.installed() is True
    fake_vbox.respond("list vms", '"Other" {0000-1111}\n')
    assert box.installed() is False


def test_not_installed_getters_skip_vboxmanage(fake_vbox):
    fake_vbox.respond("list vms", "")
    assert box.installed() is False
    calls_before = len(fake_vbox.calls)
    assert box.get_type() == ""
    assert box.get_type_legend() == "-"
    assert box.get_version() == ""
    assert box.get_disk_location() == ""
    assert box.running() is False
    assert len(fake_vbox.calls) == calls_before


def test_type_abitti(fake_vbox):
    fake_vbox.respond(f"guestproperty get {box.BOX_NAME} boxType", "Value: abitti\n")
    assert box.get_type() == "abitti"
    assert box.type_is_abitti() is True
    assert box.type_is_matriculation_exam() is False
    assert box.get_type_legend() == "Abitti server"


def test_type_exam(fake_vbox):
    fake_vbox.respond(f"guestproperty get {box.BOX_NAME} boxType", "Value: exam\n")
    assert box.type_is_matriculation_exam() is True
    assert box.get_type_legend() == "Matric Exam server"


def test_type_unknown_legend(fake_vbox):
    fake_vbox.respond(f"guestproperty get {box.BOX_NAME} boxType", "No value set!\n")
    assert box.get_type() == ""
    assert box.get_type_legend() == "-"


def test_version(fake_vbox):
    fake_vbox.respond(f"guestproperty get {box.BOX_NAME} boxVersion", "Value: SERVER7108X\n")
    assert box.get_version() == "SERVER7108X"


def test_running(fake_vbox):
    fake_vbox.respond("showvminfo", 'name="NaksuAbittiKTP"\nVMState="running"\n')
    assert box.running() is True


def test_not_running(fake_vbox):
    fake_vbox.respond("showvminfo", 'VMState="poweroff"\n')
    assert box.running() is False


def test_vm_info_lookups(fake_vbox):
    fake_vbox.respond(
        "showvminfo",
        '"SATA Controller-0-0"="/vms/disk.vdi"\nLogFldr="/vms/Logs"\n',
    )
    assert box.get_disk_location() == "/vms/disk.vdi"
    assert box.get_log_dir() == "/vms/Logs"


def test_write_disk_clone(fake_vbox, tmp_path):
    fake_vbox.respond("showvminfo", '"SATA Controller-ImageUUID-0-0"="abcd-1234"\n')
    fake_vbox.respond("clonemedium", "Clone medium created in format 'VMDK'. UUID: x\n")
    clone = tmp_path / "clone.vmdk"
    box.write_disk_clone(clone)
    calls = fake_vbox.calls
    assert ["clonemedium", "abcd-1234", str(clone), "--format", "VMDK"] in calls
    assert calls[-1] == ["closemedium", str(clone)]


def test_write_disk_clone_bad_output(fake_vbox, tmp_path):
    fake_vbox.respond("showvminfo", '"SATA Controller-ImageUUID-0-0"="abcd-1234"\n')
    fake_vbox.respond("clonemedium", "something else\n")
    with pytest.raises(VBoxManageError):
        box.write_disk_clone(tmp_path / "clone.vmdk")
    assert all(call[0] != "closemedium" for call in fake_vbox.calls)


def test_write_disk_clone_without_uuid(fake_vbox, tmp_path):
    fake_vbox.respond("showvminfo", "nothing\n")
    with pytest.raises(VBoxManageError, match="disk uuid"):
        box.write_disk_clone(tmp_path / "clone.vmdk")


def test_medium_size_on_disk(fake_vbox):
    fake_vbox.respond("showmediuminfo", "Format: VDI\nSize on disk:   1234 MBytes\n")
    assert box.medium_size_on_disk("/vms/disk.vdi") == 1234
    assert fake_vbox.calls == [["showmediuminfo", "/vms/disk.vdi"]]


def test_medium_size_on_disk_no_match(fake_vbox):
    fake_vbox.respond("showmediuminfo", "Format: VDI\n")
    with pytest.raises(VBoxManageError, match="no regex matches"):
        box.medium_size_on_disk("/vms/disk.vdi")


def test_medium_size_on_disk_failure(fake_vbox):
    fake_vbox.respond("showmediuminfo", "error", code=1)
    with pytest.raises(VBoxManageError, match="could not execute"):
        box.medium_size_on_disk("/vms/disk.vdi")


def test_create_new_box(fake_vbox, paths, tmp_path, monkeypatch):
    _set_memory(monkeypatch, 16384)
    _set_cores(tmp_path, monkeypatch, 6)
    fake_vbox.respond("--version", "7.0.10r158379\n")
    paths.vdi_image_path.write_bytes(b"old")

    box.create_new_box("abitti", "v1", paths)

    assert not paths.vdi_image_path.exists()
    calls = fake_vbox.calls
    assert calls[-1] == ["snapshot", box.BOX_NAME, "take", "Installed"]
    assert calls[-2] == ["modifyvm", box.BOX_NAME, "--clipboard-mode", "bidirectional"]
    modify = next(call for call in calls if "--cpus" in call)
    assert modify[modify.index("--cpus") + 1] == str(6 - 1)
    assert ["guestproperty", "set", box.BOX_NAME, "boxType", "abitti"] in calls


def test_create_new_box_stops_on_failure(fake_vbox, paths, tmp_path, monkeypatch):
    _set_memory(monkeypatch, 16384)
    _set_cores(tmp_path, monkeypatch, 4)
    fake_vbox.respond("--version", "6.0.24\n")
    fake_vbox.respond("createvm", "failed", code=1)
    with pytest.raises(VBoxManageError):
        box.create_new_box("exam", "v2", paths)
    assert fake_vbox.calls[-1][0] == "createvm"


def test_environment_status_update(fake_vbox):
    fake_vbox.respond("list vms", '"NaksuAbittiKTP" {0000-1111}\n')
    fake_vbox.respond("showvminfo", 'VMState="running"\n')
    status = EnvironmentStatus()
    stop = box.start_environment_status_update(status, 0.05)
    try:
        deadline = time.monotonic() + 20
        while not (status.box_installed and status.box_running) and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        stop.set()
        time.sleep(0.5)
    assert status.box_installed is True
    assert status.box_running is True