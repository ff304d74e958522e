from __future__ import annotations

"""Subprocess wrapper plus the JSONL trace log every module writes to."""

import datetime as _dt
import json
import os
import signal
import subprocess
import sys
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "pichroot.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/pichroot",
        "/tmp/pichroot-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _log_event(kind: str, cmd: list[str], rc: int | None = None, out: str | None = None,
               err: str | None = None, dur: float | None = None):
    line = {"ts": _now(), "kind": kind, "cmd": cmd, "rc": rc, "dur": dur, "out": out, "err": err}
    _write_jsonl(line)


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("PICHROOT_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj) + "\n")
    except OSError:
        # the trace log must never take a run down with it
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def say(level: str, message: str, event: str | None = None, **fields):
    """Print an operator-facing ``[LEVEL] message`` line and log it."""

    print(f"[{level.upper()}] {message}", file=sys.stderr, flush=True)
    log(level, event or "say", message=message, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = 60.0,
    env: dict | None = None,
) -> Result:
    trace("exec.start", cmd=list(cmd))
    _log_event("exec", list(cmd))
    started = time.time()
    env2 = (env or os.environ).copy()
    env2.setdefault("PICHROOT_LOG_LEVEL", LOG_LEVEL)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2)
    except subprocess.TimeoutExpired:
        # device-mapper nodes sometimes stall until udev catches up
        udev_settle()
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    _log_event("done", list(cmd), rc=proc.returncode, out=proc.stdout, err=proc.stderr, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def _default_sigint():
    signal.signal(signal.SIGINT, signal.SIG_DFL)


def run_attached(cmd: Sequence[str], env: dict | None = None) -> int:
    """Run ``cmd`` with the caller's terminal attached and return its exit status.

    Used for chroot sessions: output streams straight to the operator and there
    is no timeout, so an interactive shell blocks until it is exited.  SIGINT
    is ignored here while the child runs so Ctrl-C reaches the child only.
    """

    trace("exec.attached.start", cmd=list(cmd))
    _log_event("exec-attached", list(cmd))
    started = time.time()
    previous = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        proc = subprocess.run(list(cmd), env=env, preexec_fn=_default_sigint)
    finally:
        signal.signal(signal.SIGINT, previous)
    dur = time.time() - started
    trace("exec.attached.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    _log_event("done-attached", list(cmd), rc=proc.returncode, dur=dur)
    return proc.returncode


def command_error(exc: Exception) -> str:
    """Best one-line description of a failed or hung command."""

    if isinstance(exc, subprocess.TimeoutExpired):
        return f"timed out after {exc.timeout} seconds"
    if not isinstance(exc, subprocess.CalledProcessError):
        return str(exc)
    msg = (exc.stderr or exc.stdout or "").strip()
    if msg:
        return msg.splitlines()[-1]
    return f"exit status {exc.returncode}"


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def with_backoff(fn, tries: int = 3, base: float = 0.5, max_delay: float = 4.0):
    delay = base
    last = None
    for _ in range(max(1, tries)):
        try:
            return fn()
        except Exception as e:
            last = e
            time.sleep(delay)
            delay = min(max_delay, delay * 2)
    raise last


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass
