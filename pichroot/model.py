from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

# ELF32 little-endian, e_machine == EM_ARM; the kernel decodes the \x escapes.
ARM_MAGIC = r"\x7fELF\x01\x01\x01\x00\x00\x00\x00\x00\x00\x00\x00\x00\x02\x00\x28\x00"
ARM_MASK = r"\xff\xff\xff\xff\xff\xff\xff\x00\xff\xff\xff\xff\xff\xff\xff\xff\xfe\xff\xff\xff"


@dataclass
class Settings:
    mount_point: str = "/mnt/pichroot"
    interpreter_dest: str = "/usr/bin/qemu-arm-static"
    interpreter_name: str = "qemu-arm-static"
    binfmt_name: str = "arm"
    binfmt_aliases: tuple = ("qemu-arm",)
    binfmt_dir: str = "proc/sys/fs/binfmt_misc"
    preload_config: str = "etc/ld.so.preload"
    script_dest: str = "/tmp/pichroot-provision.sh"
    shell: str = "/bin/bash"
    mountinfo: str = "/proc/self/mountinfo"
    fail_on_script_error: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        mount_point = os.environ.get("PICHROOT_MOUNT_POINT")
        if mount_point and "mount_point" not in overrides:
            overrides["mount_point"] = mount_point
        return cls(**overrides)

    def in_tree(self, mnt: str, path: str) -> str:
        """Host path of ``path`` inside the tree mounted at ``mnt``."""

        return os.path.join(mnt, path.lstrip("/"))

    def binfmt_control_dir(self, mnt: str) -> str:
        return self.in_tree(mnt, self.binfmt_dir)

    def binfmt_record(self) -> str:
        return f":{self.binfmt_name}:M::{ARM_MAGIC}:{ARM_MASK}:{self.interpreter_dest}:"


@dataclass
class ProvisionRequest:
    image: str
    boot_index: int = 1
    root_index: int = 2
    resize_mb: Optional[int] = None
    script: Optional[str] = None
    interactive: bool = False
    interpreter: Optional[str] = None


@dataclass
class PartitionDevices:
    image: str
    boot: str
    root: str


@dataclass
class ShimState:
    binary_path: str
    previously_registered: bool
    preload_disabled: bool = False


@dataclass
class ProvisionOutcome:
    mode: str
    rc: int
    script: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rc == 0


@dataclass
class TeardownReport:
    unmount_failures: list = field(default_factory=list)
    unmap_error: Optional[str] = None

    @property
    def clean(self) -> bool:
        return not self.unmount_failures and not self.unmap_error
