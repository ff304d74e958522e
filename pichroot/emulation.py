"""qemu user-mode shim: in-tree interpreter copy, binfmt registration, ld.so.preload."""

from __future__ import annotations

import os
import shutil

from .errors import ShimError
from .executil import say, trace
from .model import Settings, ShimState


def comment_out(text: str) -> str:
    return "".join("#" + line for line in text.splitlines(keepends=True))


def uncomment(text: str) -> str:
    return "".join(line[1:] if line.startswith("#") else line for line in text.splitlines(keepends=True))


def _rewrite(path: str, transform) -> None:
    # surrogateescape keeps undecodable bytes exactly as they were
    with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as fh:
        content = fh.read()
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as fh:
        fh.write(transform(content))


def binfmt_registered(mnt: str, settings: Settings) -> bool:
    control = settings.binfmt_control_dir(mnt)
    names = (settings.binfmt_name, *settings.binfmt_aliases)
    return any(os.path.exists(os.path.join(control, name)) for name in names)


def register_binfmt(mnt: str, settings: Settings) -> None:
    register = os.path.join(settings.binfmt_control_dir(mnt), "register")
    with open(register, "w", encoding="ascii") as fh:
        fh.write(settings.binfmt_record())


def _remove_copy(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def install(shim_binary: str, mnt: str, settings: Settings) -> ShimState:
    """Make foreign binaries under ``mnt`` runnable through ``shim_binary``.

    The interpreter is copied to ``settings.interpreter_dest`` inside the tree,
    the binfmt_misc entry is written unless one already exists, and every line
    of the tree's ``ld.so.preload`` is commented out because host-architecture
    preload libraries cannot be loaded by the emulated loader.  On failure the
    copy is removed again before the error (or an interrupt) propagates.
    """

    dest = settings.in_tree(mnt, settings.interpreter_dest)
    try:
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copy2(shim_binary, dest)
        os.chmod(dest, 0o755)
    except OSError as exc:
        _remove_copy(dest)
        raise ShimError(f"could not copy {shim_binary} to {dest}: {exc}") from exc
    except BaseException:
        _remove_copy(dest)
        raise

    state = ShimState(binary_path=dest, previously_registered=binfmt_registered(mnt, settings))
    try:
        if state.previously_registered:
            trace("emulation.binfmt_present", name=settings.binfmt_name)
        else:
            register_binfmt(mnt, settings)
            trace("emulation.binfmt_registered", name=settings.binfmt_name,
                  interpreter=settings.interpreter_dest)
        preload = settings.in_tree(mnt, settings.preload_config)
        if os.path.isfile(preload):
            _rewrite(preload, comment_out)
            state.preload_disabled = True
            trace("emulation.preload_disabled", path=preload)
    except (OSError, ValueError) as exc:
        _remove_copy(dest)
        raise ShimError(f"could not set up {settings.interpreter_name}: {exc}") from exc
    except BaseException:
        _remove_copy(dest)
        raise
    return state


def uninstall(mnt: str, state: ShimState, settings: Settings) -> None:
    """Undo :func:`install` inside the tree.

    The kernel binfmt entry is left registered; it is host-wide and later runs
    reuse it.
    """

    errors = []
    try:
        _remove_copy(state.binary_path)
    except OSError as exc:
        errors.append(f"removing {state.binary_path}: {exc}")
    if state.preload_disabled:
        preload = settings.in_tree(mnt, settings.preload_config)
        try:
            _rewrite(preload, uncomment)
            state.preload_disabled = False
        except (OSError, ValueError) as exc:
            errors.append(f"restoring {preload}: {exc}")
    trace("emulation.uninstalled", binary=state.binary_path,
          previously_registered=state.previously_registered)
    if errors:
        for err in errors:
            say("error", err, event="emulation.uninstall_failed")
        raise ShimError("; ".join(errors))
