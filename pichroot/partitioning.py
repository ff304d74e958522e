"""Backing-file growth and root partition extension."""
from __future__ import annotations

import os
from subprocess import CalledProcessError

from .errors import PreconditionError, ResizeError
from .executil import command_error, run, say, trace

BYTES_PER_MB = 1_000_000


def parted_supports_resizepart() -> bool:
    # parted prints its command list on -h; older builds have no resizepart
    r = run(["parted", "-h"], check=False)
    return "resizepart" in ((r.out or "") + (r.err or ""))


def partition_start(image: str, index: int) -> int:
    """Return the first byte of partition ``index`` as reported by parted."""

    out = run(["parted", "-s", "-m", image, "unit", "B", "print"], check=True).out or ""
    for line in out.splitlines():
        fields = line.strip().rstrip(";").split(":")
        if len(fields) >= 2 and fields[0] == str(index):
            try:
                return int(fields[1].rstrip("B"))
            except ValueError:
                break
    raise ResizeError(f"parted did not report a start offset for partition {index} of {image}")


def _extend_native(image: str, index: int, new_size_mb: int):
    run(["parted", "-s", image, "resizepart", str(index), f"{new_size_mb}MB"], check=True)


def _extend_recreate(image: str, index: int):
    start = partition_start(image, index)
    trace("partitioning.recreate", image=image, index=index, start=start)
    run(["parted", "-s", image, "rm", str(index)], check=True)
    run(["parted", "-s", image, "mkpart", "primary", "ext4", f"{start}B", "100%"], check=True)


def resize(image: str, new_size_mb: int, root_index: int) -> str:
    """Grow ``image`` to ``new_size_mb`` megabytes and extend the root partition.

    The partition end is moved with ``parted resizepart`` when the installed
    parted has it; otherwise the partition entry is deleted and recreated from
    the same start offset to the end of the file. Returns the method used.
    The change is made in place and is not undone on later failures.
    """

    if new_size_mb <= 0:
        raise PreconditionError(f"resize target must be a positive number of MB, got {new_size_mb}")
    if not os.path.isfile(image):
        raise PreconditionError(f"cannot resize {image}: no such file")
    target = new_size_mb * BYTES_PER_MB
    current = os.path.getsize(image)
    if target < current:
        raise PreconditionError(
            f"refusing to shrink {image} from {current} to {target} bytes"
        )

    say("info", f"Resizing {image} to {new_size_mb} MB", event="partitioning.resize",
        image=image, current=current, target=target, root_index=root_index)
    try:
        run(["fallocate", "-l", str(target), image], check=True, timeout=600.0)
        if parted_supports_resizepart():
            method = "resizepart"
            _extend_native(image, root_index, new_size_mb)
        else:
            method = "recreate"
            _extend_recreate(image, root_index)
    except CalledProcessError as exc:
        raise ResizeError(f"resizing {image} failed: {command_error(exc)}") from exc
    trace("partitioning.resize.done", image=image, method=method, size=os.path.getsize(image))
    return method
