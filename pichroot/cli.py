"""CLI entrypoint for pichroot."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, Optional

from .errors import (
    Interrupted,
    MappingError,
    MountError,
    PichrootError,
    PreconditionError,
    ProvisionError,
    ResizeError,
    ShimError,
)
from .executil import append_jsonl, resolve_log_path, say, trace
from .lifecycle import ImageProvisioner, copy_image
from .model import ProvisionRequest, Settings
from .paths import logs_dir
from .safety import (
    BASE_TOOLS,
    RESIZE_TOOLS,
    require_root,
    require_tools,
    resolve_interpreter,
    validate_image,
    validate_partitions,
    validate_script,
)

VERSION = "0.1.0"

RESULT_CODES: Dict[str, int] = {
    "OK": 0,
    "FAIL_USAGE": 1,
    "FAIL_PRECONDITION": 1,
    "FAIL_RESIZE": 3,
    "FAIL_MAPPING": 4,
    "FAIL_MOUNT": 5,
    "FAIL_SHIM": 6,
    "FAIL_PROVISION": 7,
    "FAIL_TEARDOWN": 8,
    "FAIL_UNHANDLED": 9,
    "FAIL_INTERRUPTED": 130,
}

_ERROR_KINDS = (
    (PreconditionError, "FAIL_PRECONDITION"),
    (ResizeError, "FAIL_RESIZE"),
    (MappingError, "FAIL_MAPPING"),
    (MountError, "FAIL_MOUNT"),
    (ShimError, "FAIL_SHIM"),
    (ProvisionError, "FAIL_PROVISION"),
)

RESULT_LOG_PATH: Optional[str] = None
CLI_START_MONO = time.perf_counter()
JSON_OUTPUT_ENABLED = True


def _result_log_path() -> str:
    global RESULT_LOG_PATH
    if RESULT_LOG_PATH:
        return RESULT_LOG_PATH
    path = resolve_log_path()
    if not path:
        path = os.path.join(logs_dir(), "pichroot.jsonl")
    RESULT_LOG_PATH = path
    return path


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time()), "version": VERSION}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    payload.setdefault("log_path", _result_log_path())
    append_jsonl(_result_log_path(), payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _failure_kind(exc: BaseException) -> str:
    for exc_type, kind in _ERROR_KINDS:
        if isinstance(exc, exc_type):
            return kind
    return "FAIL_UNHANDLED"


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(RESULT_CODES["FAIL_USAGE"], f"{self.prog}: error: {message}\n")


def _positive_mb(value: str) -> int:
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size {value!r}: expected an integer number of MB")
    if size <= 0:
        raise argparse.ArgumentTypeError(f"size must be greater than 0, got {size}")
    return size


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="pichroot",
        description="Mount a Raspberry Pi image and provision it in a qemu-backed chroot.",
    )
    parser.add_argument("source", help="image to provision")
    parser.add_argument("destination", nargs="?", default=None,
                        help="copy the source here first and provision the copy")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("-p", "--script", default=None, help="script to run inside the image")
    mode.add_argument("-i", "--interactive", action="store_true", help="open a shell inside the image")
    parser.add_argument("-s", "--resize", type=_positive_mb, default=None, metavar="MB",
                        help="grow the image and its root partition to MB megabytes")
    parser.add_argument("-b", "--boot-partition", type=int, default=1, metavar="N")
    parser.add_argument("-r", "--root-partition", type=int, default=2, metavar="N")
    parser.add_argument("-q", "--qemu", default=None, metavar="PATH",
                        help="qemu-arm-static to install (default: found on PATH)")
    parser.add_argument("--ignore-script-failure", action="store_true",
                        help="exit 0 even when the provisioning script fails")
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def check_preconditions(args: argparse.Namespace, settings: Settings) -> str:
    """Validate everything that can be checked before touching the host; return the interpreter."""

    validate_partitions(args.boot_partition, args.root_partition)
    require_root()
    require_tools(BASE_TOOLS + (RESIZE_TOOLS if args.resize else ()))
    validate_image(args.source)
    if args.script:
        validate_script(args.script)
    return resolve_interpreter(args.qemu, settings.interpreter_name)


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    global JSON_OUTPUT_ENABLED
    JSON_OUTPUT_ENABLED = bool(args.json)

    settings = Settings.from_env(fail_on_script_error=not args.ignore_script_failure)
    trace(
        "cli.args",
        source=args.source,
        destination=args.destination,
        script=args.script,
        interactive=args.interactive,
        resize=args.resize,
        boot_partition=args.boot_partition,
        root_partition=args.root_partition,
        mount_point=settings.mount_point,
    )

    try:
        interpreter = check_preconditions(args, settings)
        image = args.source
        if args.destination:
            image = copy_image(args.source, args.destination)
    except PreconditionError as exc:
        say("error", str(exc), event="cli.precondition_failed")
        _emit_result("FAIL_PRECONDITION", extra={"why": str(exc)})

    request = ProvisionRequest(
        image=image,
        boot_index=args.boot_partition,
        root_index=args.root_partition,
        resize_mb=args.resize,
        script=args.script,
        interactive=args.interactive,
        interpreter=interpreter,
    )
    provisioner = ImageProvisioner(settings, request)
    try:
        report = provisioner.run()
    except Interrupted as exc:
        say("error", str(exc), event="cli.interrupted")
        _emit_result("FAIL_INTERRUPTED", extra=_failure_extra(provisioner, exc), exit_code=128 + exc.signum)
    except PichrootError as exc:
        say("error", str(exc), event="cli.failed")
        _emit_result(_failure_kind(exc), extra=_failure_extra(provisioner, exc))

    if report.result == "OK":
        say("info", f"{report.image} provisioned and unmounted", event="cli.done")
    _emit_result(report.result, extra=report.as_dict())
    return 0


def _failure_extra(provisioner: ImageProvisioner, exc: BaseException) -> Dict[str, Any]:
    extra: Dict[str, Any] = {
        "why": str(exc),
        "image": provisioner.image or provisioner.request.image,
        "stages": [stage.value for stage in provisioner.stages],
    }
    teardown = provisioner.teardown_report
    if teardown is not None:
        extra["teardown"] = {
            "unmount_failures": list(teardown.unmount_failures),
            "unmap_error": teardown.unmap_error,
        }
    return extra


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
