"""Provisioning sessions run inside the mounted tree."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Union

from .errors import PreconditionError, ProvisionError
from .executil import run_attached, say, trace
from .model import ProvisionOutcome, ProvisionRequest, Settings
from .safety import validate_script


def _chroot(cmd: list[str]) -> int:
    try:
        return run_attached(cmd)
    except OSError as exc:
        raise ProvisionError(f"could not start {cmd[0]}: {exc}") from exc


@dataclass
class ScriptSession:
    script: str

    mode = "script"

    def run(self, mnt: str, settings: Settings) -> ProvisionOutcome:
        """Copy the script into the tree, run it traced with ``bash -x``, remove the copy.

        The exit status is returned, not raised; the copy is deleted whatever
        the script did.
        """

        validate_script(self.script)
        dest = settings.in_tree(mnt, settings.script_dest)
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copyfile(self.script, dest)
            os.chmod(dest, 0o755)
        except OSError as exc:
            self._remove(dest)
            raise ProvisionError(f"could not copy {self.script} into {mnt}: {exc}") from exc

        say("info", f"Running {self.script} in {mnt}", event="chroot.script.start", script=self.script)
        try:
            rc = _chroot(["chroot", mnt, settings.shell, "-xv", settings.script_dest])
        finally:
            self._remove(dest)

        if rc != 0:
            say("error", f"provisioning script {self.script} exited with status {rc}",
                event="chroot.script.failed", script=self.script, rc=rc)
        else:
            trace("chroot.script.done", script=self.script)
        return ProvisionOutcome(mode=self.mode, rc=rc, script=self.script)

    @staticmethod
    def _remove(path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


@dataclass
class InteractiveSession:
    mode = "interactive"

    def run(self, mnt: str, settings: Settings) -> ProvisionOutcome:
        say("info", f"Entering {settings.shell} in {mnt}; exit the shell to unmount the image",
            event="chroot.interactive.start")
        rc = _chroot(["chroot", mnt, settings.shell])
        trace("chroot.interactive.done", rc=rc)
        return ProvisionOutcome(mode=self.mode, rc=rc)


Session = Union[ScriptSession, InteractiveSession]


def session_for(request: ProvisionRequest) -> Session:
    if bool(request.script) == bool(request.interactive):
        raise PreconditionError("exactly one of a provisioning script or interactive mode is required")
    if request.interactive:
        return InteractiveSession()
    return ScriptSession(request.script)
