import os

import pytest

from pichroot import safety
from pichroot.errors import PreconditionError


@pytest.mark.parametrize("index", [1, 2, 3, 4])
def test_partition_index_in_range(index):
    assert safety.validate_partition_index(index, "root") == index


@pytest.mark.parametrize("index", [0, 5, -1])
def test_partition_index_out_of_range(index):
    with pytest.raises(PreconditionError, match="between 1 and 4"):
        safety.validate_partition_index(index, "boot")


def test_validate_partitions_rejects_same_index():
    safety.validate_partitions(1, 2)
    with pytest.raises(PreconditionError):
        safety.validate_partitions(2, 2)
    with pytest.raises(PreconditionError):
        safety.validate_partitions(0, 2)
    with pytest.raises(PreconditionError):
        safety.validate_partitions(1, 5)


def test_validate_image(tmp_path):
    good = tmp_path / "pi.img"
    good.write_bytes(b"\0" * 512)
    empty = tmp_path / "empty.img"
    empty.write_bytes(b"")

    assert safety.validate_image(str(good)) == str(good)
    with pytest.raises(PreconditionError, match="empty"):
        safety.validate_image(str(empty))
    with pytest.raises(PreconditionError, match="not a regular file"):
        safety.validate_image(str(tmp_path / "missing.img"))
    with pytest.raises(PreconditionError, match="not a regular file"):
        safety.validate_image(str(tmp_path))


def test_require_root(monkeypatch):
    monkeypatch.setattr(safety.os, "geteuid", lambda: 1000)
    with pytest.raises(PreconditionError, match="root"):
        safety.require_root()
    monkeypatch.setattr(safety.os, "geteuid", lambda: 0)
    safety.require_root()


def test_require_tools_lists_missing(monkeypatch):
    monkeypatch.setattr(safety.shutil, "which", lambda tool: None if tool in {"kpartx", "parted"} else f"/usr/bin/{tool}")

    safety.require_tools(["mount", "chroot"])
    with pytest.raises(PreconditionError) as excinfo:
        safety.require_tools(["mount", "kpartx", "parted"])
    assert "kpartx, parted" in str(excinfo.value)


def test_resolve_interpreter(tmp_path, monkeypatch):
    qemu = tmp_path / "qemu-arm-static"
    qemu.write_bytes(b"\x7fELF")
    os.chmod(qemu, 0o755)

    assert safety.resolve_interpreter(str(qemu)) == str(qemu)

    monkeypatch.setattr(safety.shutil, "which", lambda name: str(qemu))
    assert safety.resolve_interpreter(None) == str(qemu)

    monkeypatch.setattr(safety.shutil, "which", lambda name: None)
    with pytest.raises(PreconditionError, match="not found on PATH"):
        safety.resolve_interpreter(None)

    plain = tmp_path / "not-executable"
    plain.write_bytes(b"x")
    os.chmod(plain, 0o644)
    with pytest.raises(PreconditionError):
        safety.resolve_interpreter(str(plain))


def test_settings_mount_point_from_environment(monkeypatch):
    from pichroot.model import Settings

    monkeypatch.setenv("PICHROOT_MOUNT_POINT", "/srv/pi")
    assert Settings.from_env().mount_point == "/srv/pi"
    assert Settings.from_env(mount_point="/mnt/other").mount_point == "/mnt/other"
    monkeypatch.delenv("PICHROOT_MOUNT_POINT")
    assert Settings.from_env().mount_point == "/mnt/pichroot"
