from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/pichroot"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the state directory for pichroot runs.

    ``PICHROOT_BASE_PATH`` overrides the location; otherwise the packaged
    default under ``/var/lib`` is used.
    """

    override = os.environ.get("PICHROOT_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")
