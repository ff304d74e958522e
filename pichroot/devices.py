"""Partition mappings for an image file (kpartx / device-mapper)."""
from __future__ import annotations

import re
from subprocess import CalledProcessError, TimeoutExpired

from .errors import DeviceLineError, MappingError
from .executil import command_error, run, say, trace, udev_settle
from .model import PartitionDevices

# "add map loop0p2 (253:1): 0 3997696 linear 7:0 532480"
_ADD_MAP_RE = re.compile(r"^add map (\S+) ")


def parse_map_line(lines: list[str], index: int) -> str:
    """Return the ``/dev/mapper`` path kpartx assigned to partition ``index``.

    kpartx prints one ``add map`` line per partition in table order, so line
    ``index`` (1-based) belongs to partition ``index``.  A short listing raises
    :class:`DeviceLineError` with kind ``missing``; a line that is not an
    ``add map`` line raises kind ``malformed``.  Nothing is guessed.
    """

    if index < 1 or index > len(lines):
        raise DeviceLineError(DeviceLineError.MISSING, index)
    line = lines[index - 1]
    match = _ADD_MAP_RE.match(line)
    if not match:
        raise DeviceLineError(DeviceLineError.MALFORMED, index, line)
    return f"/dev/mapper/{match.group(1)}"


def attached_loops(image: str) -> list[str]:
    r = run(["losetup", "-j", image], check=False)
    loops = []
    for line in (r.out or "").splitlines():
        dev, sep, _rest = line.partition(":")
        if sep and dev.startswith("/dev/"):
            loops.append(dev)
    return loops


def unmap_all(image: str) -> bool:
    """Remove every kpartx mapping of ``image``; returns ``False`` when there was none."""

    try:
        loops = attached_loops(image)
        if not loops:
            trace("devices.unmap.noop", image=image)
            return False
        run(["kpartx", "-d", "-v", image], check=True, timeout=120.0)
    except (CalledProcessError, TimeoutExpired) as exc:
        raise MappingError(f"kpartx could not remove mappings of {image}: {command_error(exc)}") from exc
    udev_settle()
    trace("devices.unmap", image=image, loops=loops)
    return True


def _release(image: str, event: str):
    try:
        unmap_all(image)
    except MappingError as exc:
        say("warn", str(exc), event=event, image=image)


def check_root_filesystem(root: str):
    """Run fsck and an online grow on ``root``.  Failures are only warnings."""

    fsck = run(["e2fsck", "-p", "-f", root], check=False, timeout=1800.0)
    # e2fsck: 1 = errors corrected, 2 = corrected and reboot advised
    if fsck.rc > 2:
        say("warn", f"e2fsck on {root} exited {fsck.rc}; continuing",
            event="devices.fsck_failed", device=root, rc=fsck.rc, stderr=(fsck.err or "").strip())
    grow = run(["resize2fs", root], check=False, timeout=1800.0)
    if grow.rc != 0:
        say("warn", f"resize2fs on {root} exited {grow.rc}; continuing",
            event="devices.resize2fs_failed", device=root, rc=grow.rc, stderr=(grow.err or "").strip())


def map_all(image: str, boot_index: int, root_index: int, check_fs: bool = True) -> PartitionDevices:
    """Map every partition of ``image`` and return the boot and root devices.

    Leftover mappings from an earlier run are cleared first; a failure there
    is only a warning, the fresh ``kpartx -a`` decides whether mapping works.
    """

    _release(image, "devices.stale_clear_failed")
    try:
        r = run(["kpartx", "-a", "-v", "-s", image], check=True, timeout=120.0)
    except (CalledProcessError, TimeoutExpired) as exc:
        _release(image, "devices.release_failed")
        raise MappingError(f"kpartx could not map {image}: {command_error(exc)}") from exc

    lines = [line.strip() for line in (r.out or "").splitlines() if line.strip()]
    try:
        boot = parse_map_line(lines, boot_index)
        root = parse_map_line(lines, root_index)
    except DeviceLineError as exc:
        trace("devices.map.parse_error", image=image, kind=exc.kind, index=exc.index, lines=lines)
        _release(image, "devices.release_failed")
        raise

    udev_settle()
    trace("devices.map", image=image, boot=boot, root=root)
    if check_fs:
        check_root_filesystem(root)
    return PartitionDevices(image=image, boot=boot, root=root)
