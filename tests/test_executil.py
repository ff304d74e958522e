import json
import signal
from types import SimpleNamespace

import pytest

from pichroot import executil


def test_log_event_creates_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_PATH", None, raising=False)
    executil._log_event("exec", ["kpartx", "-l"], rc=0, out="ok", err=None, dur=0.1)
    log_file = tmp_path / "pichroot.jsonl"
    assert log_file.exists()
    data = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines() if line]
    assert data and data[0]["kind"] == "exec"


def test_log_level_filters(isolated_log, monkeypatch):
    monkeypatch.setattr(executil, "LOG_LEVEL", "WARN")
    executil.trace("hidden")
    executil.log("ERROR", "shown", detail=1)
    lines = (isolated_log / "pichroot.jsonl").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line)["event"] for line in lines]
    assert events == ["shown"]


def test_run_retries_after_timeout(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)
    monkeypatch.setattr(executil, "udev_settle", lambda: None)

    calls = {"count": 0}

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        if calls["count"] == 0:
            calls["count"] += 1
            raise executil.subprocess.TimeoutExpired(cmd, timeout)
        return SimpleNamespace(returncode=0, stdout="done", stderr="", args=cmd)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["true"], check=True)
    assert result.out == "done"
    assert result.rc == 0


def test_run_raises_on_failure(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        return SimpleNamespace(returncode=1, stdout="bad", stderr="oops")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(executil.subprocess.CalledProcessError) as excinfo:
        executil.run(["false"], check=True)
    assert executil.command_error(excinfo.value) == "oops"

    assert executil.run(["false"], check=False).rc == 1


def test_command_error_falls_back_to_status():
    exc = executil.subprocess.CalledProcessError(5, ["umount"], "", "")
    assert executil.command_error(exc) == "exit status 5"


def test_run_attached_ignores_sigint_while_child_runs(monkeypatch):
    seen = {}

    def fake_run(cmd, env=None, preexec_fn=None):
        seen["handler"] = signal.getsignal(signal.SIGINT)
        seen["preexec_fn"] = preexec_fn
        return SimpleNamespace(returncode=3)

    before = signal.getsignal(signal.SIGINT)
    monkeypatch.setattr(executil.subprocess, "run", fake_run)

    assert executil.run_attached(["chroot", "/mnt", "/bin/bash"]) == 3
    assert seen["handler"] is signal.SIG_IGN
    assert seen["preexec_fn"] is executil._default_sigint
    assert signal.getsignal(signal.SIGINT) is before


def test_say_prints_and_logs(isolated_log, capsys):
    executil.say("warn", "resize2fs failed", event="devices.resize2fs_failed", device="/dev/mapper/loop0p2")
    assert capsys.readouterr().err == "[WARN] resize2fs failed\n"
    record = json.loads((isolated_log / "pichroot.jsonl").read_text(encoding="utf-8").splitlines()[-1])
    assert record["event"] == "devices.resize2fs_failed"
    assert record["level"] == "WARN"


def test_with_backoff_eventually_succeeds():
    attempts = {"count": 0}

    def flaky():
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("try again")
        return "ok"

    assert executil.with_backoff(flaky, tries=5, base=0.001, max_delay=0.001) == "ok"

    def always_fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        executil.with_backoff(always_fail, tries=2, base=0.0, max_delay=0.0)


def test_append_jsonl(tmp_path):
    path = tmp_path / "data" / "log.jsonl"
    executil.append_jsonl(str(path), {"foo": "bar"})
    text = path.read_text(encoding="utf-8").strip()
    assert json.loads(text) == {"foo": "bar"}


def test_udev_settle(monkeypatch):
    calls = []

    def fake_run(cmd, check=False):
        calls.append(cmd)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    executil.udev_settle()
    assert calls[0][0] == "udevadm"


def test_command_error_describes_timeouts():
    exc = executil.subprocess.TimeoutExpired(["umount", "/mnt/pi/sys"], 60.0)
    assert executil.command_error(exc) == "timed out after 60.0 seconds"
    assert executil.command_error(OSError(16, "Device or resource busy")) == "[Errno 16] Device or resource busy"
