"""Precondition checks run before any mapping or mount is attempted."""

from __future__ import annotations

import os
import shutil
from typing import Iterable

from .errors import PreconditionError

BASE_TOOLS = ("losetup", "kpartx", "e2fsck", "resize2fs", "mount", "umount", "chroot")
RESIZE_TOOLS = ("fallocate", "parted")
MAX_PARTITION_INDEX = 4


def require_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("pichroot must run as root (loop devices, mounts and chroot need it)")


def require_tools(tools: Iterable[str]) -> None:
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise PreconditionError("required tools not found on PATH: " + ", ".join(missing))


def _readable_file(path: str, what: str) -> str:
    if not path:
        raise PreconditionError(f"no {what} given")
    if not os.path.isfile(path):
        raise PreconditionError(f"{what} {path} is not a regular file")
    if not os.access(path, os.R_OK):
        raise PreconditionError(f"{what} {path} is not readable")
    if os.path.getsize(path) == 0:
        raise PreconditionError(f"{what} {path} is empty")
    return os.path.abspath(path)


def validate_image(path: str) -> str:
    return _readable_file(path, "image")


def validate_script(path: str) -> str:
    return _readable_file(path, "provisioning script")


def validate_partition_index(index: int, label: str) -> int:
    if not isinstance(index, int) or not 1 <= index <= MAX_PARTITION_INDEX:
        raise PreconditionError(
            f"{label} partition index must be between 1 and {MAX_PARTITION_INDEX}, got {index}"
        )
    return index


def validate_partitions(boot_index: int, root_index: int) -> None:
    validate_partition_index(boot_index, "boot")
    validate_partition_index(root_index, "root")
    if boot_index == root_index:
        raise PreconditionError(f"boot and root cannot both be partition {boot_index}")


def resolve_interpreter(path: str | None, name: str = "qemu-arm-static") -> str:
    """Return the host path of the static interpreter, searching PATH when unset."""

    candidate = path or shutil.which(name)
    if not candidate:
        raise PreconditionError(f"{name} not found on PATH; pass its location explicitly")
    if not os.path.isfile(candidate) or not os.access(candidate, os.X_OK):
        raise PreconditionError(f"interpreter {candidate} is not an executable file")
    return os.path.abspath(candidate)
