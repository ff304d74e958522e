"""Exception types raised by the image lifecycle."""

from __future__ import annotations


class PichrootError(RuntimeError):
    """Base class for failures the CLI maps to a result code."""


class PreconditionError(PichrootError):
    """Raised before any resource is touched (privilege, paths, indices, tools)."""


class ResizeError(PichrootError):
    pass


class MappingError(PichrootError):
    pass


class DeviceLineError(MappingError):
    """A ``kpartx`` output line for an expected partition is absent or unparsable."""

    MISSING = "missing"
    MALFORMED = "malformed"

    def __init__(self, kind: str, index: int, line: str | None = None) -> None:
        if kind == self.MISSING:
            message = f"kpartx reported no line for partition {index}"
        else:
            message = f"kpartx line for partition {index} is malformed: {line!r}"
        super().__init__(message)
        self.kind = kind
        self.index = index
        self.line = line


class MountError(PichrootError):
    def __init__(self, message: str, *, target: str | None = None) -> None:
        super().__init__(message)
        self.target = target


class ShimError(PichrootError):
    pass


class ProvisionError(PichrootError):
    pass


class Interrupted(BaseException):
    """Raised from a signal handler so cleanup runs on the main thread."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"interrupted by signal {signum}")
        self.signum = signum
