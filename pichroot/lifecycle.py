"""Sequencing of one provisioning run and its guaranteed teardown."""

from __future__ import annotations

import atexit
import enum
import os
import signal
from dataclasses import dataclass, field
from subprocess import CalledProcessError, TimeoutExpired
from typing import Any, Callable, Dict, Optional

from . import devices, emulation, mounts, partitioning
from .chroot import session_for
from .errors import Interrupted, MappingError, PreconditionError
from .executil import command_error, run, say, trace
from .model import PartitionDevices, ProvisionOutcome, ProvisionRequest, Settings, TeardownReport
from .safety import resolve_interpreter, validate_image, validate_partitions


class Stage(enum.Enum):
    IDLE = "idle"
    IMAGE_VALIDATED = "image_validated"
    RESIZED = "resized"
    MAPPED = "mapped"
    MOUNTED = "mounted"
    SHIM_INSTALLED = "shim_installed"
    PROVISIONED = "provisioned"
    SHIM_REMOVED = "shim_removed"
    UNMOUNTED = "unmounted"
    UNMAPPED = "unmapped"
    DONE = "done"


class TeardownGuard:
    """Run ``callback`` exactly once, however the guarded block is left.

    While active, SIGINT, SIGTERM and SIGHUP raise :class:`Interrupted` so the
    stack unwinds through ``finally`` blocks on the main thread, and an
    ``atexit`` hook covers interpreter shutdown.  Once closing has started a
    signal no longer raises; while the callback runs signals are ignored.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

    def __init__(self, callback: Callable[[], Any]):
        self._callback = callback
        self._fired = False
        self._closing = False
        self._previous: Dict[int, Any] = {}
        self.result: Any = None

    def _on_signal(self, signum, _frame):
        if self._closing:
            return
        raise Interrupted(signum)

    def __enter__(self) -> "TeardownGuard":
        atexit.register(self.fire)
        for sig in self.SIGNALS:
            self._previous[sig] = signal.signal(sig, self._on_signal)
        return self

    def fire(self) -> Any:
        self._closing = True
        if self._fired:
            return self.result
        for sig in self.SIGNALS:
            signal.signal(sig, signal.SIG_IGN)
        self._fired = True
        self.result = self._callback()
        return self.result

    def __exit__(self, *exc_info) -> None:
        self._closing = True
        try:
            self.fire()
        finally:
            for sig, handler in self._previous.items():
                signal.signal(sig, handler)
            self._previous.clear()
            atexit.unregister(self.fire)

    @property
    def fired(self) -> bool:
        return self._fired


@dataclass
class RunReport:
    image: str
    result: str
    stages: list = field(default_factory=list)
    resize_method: Optional[str] = None
    devices: Optional[PartitionDevices] = None
    outcome: Optional[ProvisionOutcome] = None
    teardown: Optional[TeardownReport] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "image": self.image,
            "stages": [stage.value for stage in self.stages],
            "resize_method": self.resize_method,
        }
        if self.devices:
            data["devices"] = {"boot": self.devices.boot, "root": self.devices.root}
        if self.outcome:
            data["provision"] = {"mode": self.outcome.mode, "rc": self.outcome.rc, "script": self.outcome.script}
        if self.teardown:
            data["teardown"] = {
                "unmount_failures": list(self.teardown.unmount_failures),
                "unmap_error": self.teardown.unmap_error,
            }
        return data


def copy_image(source: str, destination: str) -> str:
    """Copy ``source`` to ``destination`` (sparse) so the run leaves the original alone."""

    validate_image(source)
    if os.path.realpath(source) == os.path.realpath(destination):
        raise PreconditionError("destination image must differ from the source image")
    say("info", f"Copying {source} to {destination}", event="lifecycle.copy",
        source=source, destination=destination)
    try:
        run(["cp", "--sparse=always", source, destination], check=True, timeout=None)
    except CalledProcessError as exc:
        raise PreconditionError(f"could not copy {source} to {destination}: {command_error(exc)}") from exc
    return os.path.abspath(destination)


class ImageProvisioner:
    """Drive one image through map, mount, shim, provision and teardown."""

    def __init__(self, settings: Settings, request: ProvisionRequest):
        self.settings = settings
        self.request = request
        self.stage = Stage.IDLE
        self.stages = [Stage.IDLE]
        self.image: Optional[str] = None
        self.teardown_report: Optional[TeardownReport] = None
        self.teardown_calls = 0

    def _advance(self, stage: Stage) -> None:
        self.stage = stage
        self.stages.append(stage)
        trace("lifecycle.stage", stage=stage.value, image=self.image)

    def teardown(self) -> TeardownReport:
        self.teardown_calls += 1
        mnt = self.settings.mount_point
        report = TeardownReport()
        try:
            report.unmount_failures = mounts.unmount_image(
                mnt, binfmt_dir=self.settings.binfmt_dir, mountinfo=self.settings.mountinfo,
            )
        except (CalledProcessError, TimeoutExpired, OSError, ValueError) as exc:
            # unmapping still has to be attempted
            report.unmount_failures = [mnt]
            say("warn", f"could not unmount {mnt}: {command_error(exc)}",
                event="lifecycle.unmount_failed", mount_point=mnt)
        self._advance(Stage.UNMOUNTED)
        try:
            devices.unmap_all(self.image)
        except MappingError as exc:
            report.unmap_error = str(exc)
            say("warn", str(exc), event="lifecycle.unmap_failed", image=self.image)
        self._advance(Stage.UNMAPPED)
        self.teardown_report = report
        return report

    def run(self) -> RunReport:
        settings, req = self.settings, self.request
        mnt = settings.mount_point

        validate_partitions(req.boot_index, req.root_index)
        session = session_for(req)
        interpreter = resolve_interpreter(req.interpreter, settings.interpreter_name)
        self.image = validate_image(req.image)
        if mounts.is_mounted(mnt, settings.mountinfo):
            raise PreconditionError(f"{mnt} is already mounted; unmount it before provisioning")
        self._advance(Stage.IMAGE_VALIDATED)

        report = RunReport(image=self.image, result="OK", stages=self.stages)
        with TeardownGuard(self.teardown):
            if req.resize_mb:
                report.resize_method = partitioning.resize(self.image, req.resize_mb, req.root_index)
                self._advance(Stage.RESIZED)

            report.devices = devices.map_all(self.image, req.boot_index, req.root_index)
            self._advance(Stage.MAPPED)

            mounts.mount_image(report.devices.root, report.devices.boot, mnt,
                               binfmt_dir=settings.binfmt_dir, mountinfo=settings.mountinfo)
            self._advance(Stage.MOUNTED)

            shim = emulation.install(interpreter, mnt, settings)
            self._advance(Stage.SHIM_INSTALLED)
            try:
                report.outcome = session.run(mnt, settings)
                self._advance(Stage.PROVISIONED)
            finally:
                emulation.uninstall(mnt, shim, settings)
                self._advance(Stage.SHIM_REMOVED)

        report.teardown = self.teardown_report
        self._advance(Stage.DONE)
        report.result = self._result(report)
        return report

    def _result(self, report: RunReport) -> str:
        if report.teardown is not None and not report.teardown.clean:
            return "FAIL_TEARDOWN"
        outcome = report.outcome
        if outcome is not None and outcome.mode == "script" and not outcome.ok:
            if self.settings.fail_on_script_error:
                return "FAIL_PROVISION"
            say("warn", "script failure ignored for the exit status", event="lifecycle.script_failure_ignored")
        return "OK"
