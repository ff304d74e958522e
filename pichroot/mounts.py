"""Mounting the image tree and the pseudo-filesystems a chroot needs."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from subprocess import CalledProcessError, TimeoutExpired
from typing import Optional

from .errors import MountError
from .executil import command_error, run, say, trace, with_backoff

MOUNTINFO = "/proc/self/mountinfo"
BINFMT_DIR = "proc/sys/fs/binfmt_misc"
UMOUNT_TRIES = 3
UMOUNT_DELAY = 0.5

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass
class MountSpec:
    target: str
    source: Optional[str] = None
    fstype: Optional[str] = None
    bind: bool = False
    # best-effort mounts only warn on failure
    optional: bool = False


class MountSet:
    def __init__(self, mnt: str):
        self.mnt = mnt
        self.mounted_paths: list[str] = []


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def mounted_targets(mountinfo: str = MOUNTINFO) -> set[str]:
    targets: set[str] = set()
    try:
        with open(mountinfo, "r", encoding="utf-8", errors="surrogateescape") as fh:
            for line in fh:
                parts = line.split()
                if len(parts) < 5:
                    continue
                targets.add(_unescape(parts[4]))
    except FileNotFoundError:
        return set()
    except OSError as exc:
        trace("mounts.mountinfo_error", path=mountinfo, error=str(exc))
    return targets


def is_mounted(path: str, mountinfo: str = MOUNTINFO) -> bool:
    # mountinfo lists canonical paths
    return os.path.realpath(path) in mounted_targets(mountinfo)


def mount_plan(root_dev: str | None, boot_dev: str | None, mnt: str,
               binfmt_dir: str = BINFMT_DIR) -> list[MountSpec]:
    """Mounts for ``mnt`` in the order they are made; unmounting walks it backwards."""

    mnt = os.path.realpath(mnt)
    return [
        MountSpec(target=mnt, source=root_dev),
        MountSpec(target=f"{mnt}/boot", source=boot_dev),
        MountSpec(target=f"{mnt}/dev", source="/dev", bind=True),
        MountSpec(target=f"{mnt}/sys", source="/sys", bind=True),
        MountSpec(target=f"{mnt}/proc", source="proc", fstype="proc"),
        MountSpec(target=os.path.join(mnt, binfmt_dir), source="binfmt_misc",
                  fstype="binfmt_misc", optional=True),
    ]


def _mount(spec: MountSpec):
    run(["mkdir", "-p", spec.target], check=True)
    cmd = ["mount"]
    if spec.bind:
        cmd += ["--bind"]
    if spec.fstype:
        cmd += ["-t", spec.fstype]
    cmd += [spec.source, spec.target]
    run(cmd, check=True)


def mount_image(root_dev: str, boot_dev: str, mnt: str, *,
                binfmt_dir: str = BINFMT_DIR, mountinfo: str = MOUNTINFO) -> MountSet:
    """Mount the image at ``mnt`` plus /dev, /sys, proc and (if needed) binfmt_misc.

    Targets that are already mounted are left alone, so calling this on a
    mounted tree is a no-op.  Root, boot and the kernel filesystems are
    required; binfmt_misc is only mounted when its ``register`` file is not
    already visible (older kernels) and a failure there is just a warning.
    """

    ms = MountSet(os.path.realpath(mnt))
    run(["mkdir", "-p", ms.mnt], check=True)
    for spec in mount_plan(root_dev, boot_dev, ms.mnt, binfmt_dir):
        if is_mounted(spec.target, mountinfo):
            trace("mounts.skip_mounted", target=spec.target)
            continue
        if spec.optional and os.path.exists(os.path.join(spec.target, "register")):
            trace("mounts.binfmt_exposed", target=spec.target)
            continue
        try:
            _mount(spec)
        except (CalledProcessError, TimeoutExpired) as exc:
            if spec.optional:
                say("warn", f"could not mount {spec.fstype} at {spec.target}: {command_error(exc)}",
                    event="mounts.optional_failed", target=spec.target)
                continue
            raise MountError(
                f"mounting {spec.source} at {spec.target} failed: {command_error(exc)}",
                target=spec.target,
            ) from exc
        ms.mounted_paths.append(spec.target)
        trace("mounts.mounted", target=spec.target, source=spec.source)
    return ms


def _umount(target: str):
    try:
        with_backoff(lambda: run(["umount", target], check=True),
                     tries=UMOUNT_TRIES, base=UMOUNT_DELAY)
    except (CalledProcessError, TimeoutExpired):
        # still busy: detach now, release once the last user goes away
        run(["umount", "-l", target], check=True)


def unmount_image(mnt: str, *, binfmt_dir: str = BINFMT_DIR, mountinfo: str = MOUNTINFO) -> list[str]:
    """Unmount everything :func:`mount_image` may have mounted, newest first.

    Only mounted targets are touched.  A failing or hung target is reported
    and the walk continues; the list of targets that could not be released is
    returned.
    """

    failed: list[str] = []
    for spec in reversed(mount_plan(None, None, mnt, binfmt_dir)):
        if not is_mounted(spec.target, mountinfo):
            continue
        try:
            _umount(spec.target)
        except (CalledProcessError, TimeoutExpired, OSError) as exc:
            say("warn", f"could not unmount {spec.target}: {command_error(exc)}",
                event="mounts.umount_failed", target=spec.target)
            failed.append(spec.target)
            continue
        trace("mounts.unmounted", target=spec.target)
    return failed
