import os
from subprocess import CalledProcessError, TimeoutExpired

import pytest

from pichroot import devices, executil, lifecycle, mounts, partitioning
from pichroot.model import Settings


class DummyResult:
    def __init__(self, out: str = "", rc: int = 0, err: str = "") -> None:
        self.out = out
        self.rc = rc
        self.err = err


KPARTX_ADD = (
    "add map loop7p1 (253:0): 0 524288 linear 7:7 8192\n"
    "add map loop7p2 (253:1): 0 3997696 linear 7:7 532480\n"
)


class FakeHost:
    """Stands in for mount/umount/kpartx/losetup; mount state lives in a mountinfo file."""

    def __init__(self, mountinfo: str) -> None:
        self.mountinfo = mountinfo
        self.commands: list[list[str]] = []
        self.kpartx_out = KPARTX_ADD
        self.mapped = False
        self.fail_mount: set[str] = set()
        self.fail_umount: set[str] = set()
        self.hang_umount: set[str] = set()
        self.fail_unmap = False
        self.fsck_rc = 0
        self.resize2fs_rc = 0
        self.targets: list[str] = []
        self._write([])

    def _write(self, targets: list[str]) -> None:
        self.targets = list(targets)
        with open(self.mountinfo, "w", encoding="utf-8") as fh:
            for idx, target in enumerate(targets):
                fh.write(f"{idx + 30} 1 0:{idx} / {target.replace(' ', chr(92) + '040')} rw - fake src rw\n")

    def mount_commands(self) -> list[list[str]]:
        return [cmd for cmd in self.commands if cmd[0] == "mount"]

    def umount_commands(self) -> list[list[str]]:
        return [cmd for cmd in self.commands if cmd[0] == "umount"]

    def kpartx_commands(self) -> list[list[str]]:
        return [cmd for cmd in self.commands if cmd[0] == "kpartx"]

    def __call__(self, cmd, check=True, **_kwargs):
        cmd = list(cmd)
        self.commands.append(cmd)
        tool = cmd[0]
        if tool == "mount":
            target = cmd[-1]
            if target in self.fail_mount:
                raise CalledProcessError(32, cmd, "", f"mount: {target}: failed")
            self._write(self.targets + [target])
        elif tool == "umount":
            target = cmd[-1]
            if target in self.hang_umount:
                raise TimeoutExpired(cmd, 60.0)
            if target in self.fail_umount:
                raise CalledProcessError(32, cmd, "", f"umount: {target}: target is busy")
            self._write([t for t in self.targets if t != target])
        elif tool == "losetup":
            return DummyResult("/dev/loop7: [2049]:131 (/images/pi.img)\n" if self.mapped else "")
        elif cmd[:2] == ["kpartx", "-a"]:
            self.mapped = True
            return DummyResult(self.kpartx_out)
        elif cmd[:2] == ["kpartx", "-d"]:
            if self.fail_unmap:
                raise CalledProcessError(1, cmd, "", "device-mapper: remove ioctl on loop7p2 failed: Device or resource busy")
            self.mapped = False
            return DummyResult("del devmap : loop7p2\ndel devmap : loop7p1\n")
        elif tool == "e2fsck":
            return DummyResult("", rc=self.fsck_rc, err="e2fsck: bad magic" if self.fsck_rc else "")
        elif tool == "resize2fs":
            return DummyResult("", rc=self.resize2fs_rc)
        return DummyResult("")


@pytest.fixture(autouse=True)
def isolated_log(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return log_dir


@pytest.fixture
def fake_host(tmp_path, monkeypatch):
    host = FakeHost(str(tmp_path / "mountinfo"))
    for module in (devices, mounts, partitioning, lifecycle):
        monkeypatch.setattr(module, "run", host)
    monkeypatch.setattr(devices, "udev_settle", lambda: None)
    monkeypatch.setattr(mounts, "UMOUNT_DELAY", 0.0)
    return host


@pytest.fixture
def settings(tmp_path, fake_host):
    mnt = tmp_path / "mnt"
    (mnt / "proc" / "sys" / "fs" / "binfmt_misc").mkdir(parents=True)
    (mnt / "etc").mkdir()
    return Settings(mount_point=os.path.realpath(mnt), mountinfo=fake_host.mountinfo)


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "pi.img"
    with open(path, "wb") as fh:
        fh.write(b"\0" * 4096)
    return str(path)


@pytest.fixture
def qemu(tmp_path):
    path = tmp_path / "qemu-arm-static"
    path.write_bytes(b"\x7fELF fake interpreter")
    os.chmod(path, 0o755)
    return str(path)
