# naksu

`naksu` is a library for installing, running and maintaining an exam
server virtual machine on a workstation with VirtualBox. The work is done
by calling `VBoxManage`. User settings are kept in an INI file, which is
`~/naksu.ini` by default.

## Modules

- `naksu.download`
  - `download_server_image` downloads the server image zip and reports
    progress through a callback.
  - `unzip_server_image` extracts `ytl/ktp.img` from the zip. When the zip
    also holds `ytl/ktp.img.sha256`, it checks the image against it and
    raises `DownloadedDiskImageCorrupted` if the checksums differ.
  - `get_server_image` runs the two steps above one after the other.
  - `get_available_version` reads the published box version from a URL.
    The result is cached for ten minutes.
  - A response with a status other than 200 raises `HTTPStatusError`.
- `naksu.checksum`
  - `get_sha256_checksum_from_file` computes the SHA-256 of a file and
    reports progress.
  - `clean_sha256_checksum_string` extracts the hash from the contents of
    a checksum file.
  - `ProgressCounter` reports progress to the callback at most once every
    two seconds.
- `naksu.box` works with the virtual machine `NaksuAbittiKTP`.
  - `create_new_box` creates the VM and snapshots it. The VM gets the host
    core count minus one CPUs, with at least two. It gets 74 % of host
    memory.
  - `start_current_box(ext_nic, nic)` starts the VM on a bridged network
    adapter.
  - `restore_snapshot` returns the VM to its snapshot, and
    `remove_current_box` removes the VM.
  - `write_disk_clone` writes a VMDK clone of the disk, and
    `medium_size_on_disk` returns the size of a disk image.
  - `installed`, `running`, `get_type`, `get_type_legend`, `get_version`,
    `get_disk_location` and `get_log_dir` query the VM.
  - `start_environment_status_update` updates an `EnvironmentStatus` from
    a background thread. It returns a `threading.Event`; setting the event
    stops the updates.
  - File locations are passed in as a `BoxPaths`.
- `naksu.vboxmanage`
  - Runs `VBoxManage` one call at a time and caches recent answers.
  - Failures raise `VBoxManageError`, which carries the command output.
  - When a call fails because of a duplicate hard disk entry,
    `naksu.vbox_fix` removes that entry from `VirtualBox.xml`. The old file
    is kept as a backup, and the call is run again.
- `naksu.vbox_trash`
  - `clean_up_trash_vm_directories` deletes directories in the default
    machine folder that contain nothing but one `.vbox` file.
- `naksu.host`
  - CPU core count, memory in megabytes, and hardware virtualisation
    checks.
  - `check_free_disk` raises `LowDiskSizeError` for the first directory
    that has too little free space.
  - `is_virtualbox_version_ok` returns a warning message when the
    VirtualBox version is older than 6.1.16, and an empty string otherwise.
- `naksu.hwlog`
  - `get_hw_log` builds a hardware report for the log.
    - On Linux it uses `/proc`, `lshw`, `lspci` and `lsusb`.
    - On Windows it uses `wmic` and `powercfg`.
- `naksu.log` handles console logging. `set_debug_filename` also writes
  the log to a rotating file.
- `naksu.logdelivery`
  - `request_logs_from_server` asks the running server to copy its logs
    into the shared directory. It returns an iterator of progress strings.
  - `collect_logs_to_zip` writes the server, VirtualBox and naksu logs into
    a timestamped zip and returns the path of the zip.
- `naksu.config`: the `Config` class holds these settings:
  - `language`
  - `nic`
  - `ext_nic`
  - `self_update_disabled`

  Invalid values are reset to their defaults, and every change is saved
  at once.
- `naksu.constants` holds shared values, the available choices and
  `EnvironmentStatus`.

## Requirements

- Python 3.10 or newer.
- VirtualBox with `VBoxManage`. It is found in one of these places:
  - the `PATH`;
  - the `VBOXMANAGEPATH` environment variable;
  - on Windows, `VBOX_MSI_INSTALL_PATH`.

## Usage

```python
from naksu import box, config, download, host, log

log.set_debug(True)
log.set_debug_filename(log.get_new_debug_filename())

settings = config.load(config.default_ini_path())
print(settings.language, settings.nic)

message = host.is_virtualbox_version_ok()
if message:
    print(message)

def progress(text, percent):
    print(f"{text}: {percent} %")

download.get_server_image(url, zip_path, image_path, progress)

if box.installed():
    print(box.get_type_legend(), box.get_version())
    box.start_current_box(settings.ext_nic, settings.nic)
```

## What it does not do

- There is no command-line program and no graphical interface. It is a
  library only.
- It does not update itself. `self_update_disabled` is stored, but it has
  no effect in the package.
- It does not check network connectivity.
- It does not upload the collected log zip anywhere.
- User messages are in English only.
- `is_hyperv` always returns `False`.
- Outside Linux, `is_hw_virtualisation` does not check anything and
  returns `True`.