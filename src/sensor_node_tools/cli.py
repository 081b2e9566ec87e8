"""Command-line interface for Sensor Node Tools."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from . import (
    DEFAULT_PROJECT_DIR,
    DEFAULT_SERIAL_PORT,
    SERIAL_BAUD_RATE,
    SERIAL_BOOT_SETTLE_MS,
    SERIAL_REPLY_WINDOW_MS,
    UPLOAD_TIMEOUT_S,
    UPLOAD_TOOL,
)
from .applier import ConfigApplier
from .device_config import build_command_plan, load_config
from .exceptions import SensorNodeToolsError, UploadFailed, UploadTimeout
from .ports import list_ports, resolve_port, select_best
from .serial_comm import SerialSession
from .upload import UploadSupervisor


def _print_line(text: str) -> None:
    print(text, flush=True)


def _print_chunk(text: str) -> None:
    print(text, end="", flush=True)


def _make_applier(args, port: str, log_sink=_print_line) -> ConfigApplier:
    return ConfigApplier(
        port,
        log_sink=log_sink,
        reply_window_ms=args.reply_window,
        settle_ms=args.settle,
        session_factory=lambda p: SerialSession(p, baud_rate=args.baud_rate),
    )


def command_ports(args) -> int:
    """List available serial ports and mark the auto-selected one."""
    ports = list_ports()
    if not ports:
        print("No serial ports found.")
        return 0
    best = select_best(ports)
    print("Available serial ports:")
    for p in ports:
        marker = "*" if p == best else " "
        print(f" {marker} {p.label()}")
    return 0


def _run_upload(args, ctx: str) -> int:
    supervisor = UploadSupervisor(tool=args.tool, log_sink=_print_line)
    try:
        result = supervisor.run_upload(
            args.project_dir,
            context=ctx,
            environment=args.env,
            upload_port=args.serial_port or None,
            timeout_s=args.timeout,
        )
    except UploadTimeout as e:
        print(f"Upload timed out after {e.timeout_s:.0f}s: {e}", file=sys.stderr)
        return 1
    except UploadFailed as e:
        print(f"Upload failed (exit {e.return_code})", file=sys.stderr)
        return 1
    print(f"Upload finished in {result.elapsed_seconds:.1f}s")
    return 0


def command_upload(args) -> int:
    """Build and upload firmware with PlatformIO."""
    ctx = f"CLI upload from {args.project_dir}"
    try:
        return _run_upload(args, ctx)
    except SensorNodeToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def _run_apply(args, ctx: str, config=None) -> int:
    # Parse before touching the port so a bad document sends nothing
    if config is None:
        config = load_config(args.config)

    if args.dry_run:
        for command in build_command_plan(config, cal_load=args.cal_load, cal_save=args.cal_save):
            print(command)
        return 0

    port = resolve_port(args.serial_port or None, context=ctx)
    applier = _make_applier(args, port)
    exchanges = applier.apply(config, context=ctx, cal_load=args.cal_load, cal_save=args.cal_save)
    print(f"Applied {len(exchanges)} commands on {port}")
    return 0


def command_apply(args) -> int:
    """Apply a JSON configuration document over serial."""
    ctx = f"CLI apply {args.config}"
    try:
        return _run_apply(args, ctx)
    except SensorNodeToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_send(args) -> int:
    """Send raw device commands and print each reply window."""
    ctx = "CLI send"
    try:
        port = resolve_port(args.serial_port or None, context=ctx)
        _make_applier(args, port).send_commands(args.device_commands, context=ctx)
        return 0
    except SensorNodeToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_monitor(args) -> int:
    """Print device output until the duration elapses or Ctrl+C."""
    ctx = "CLI monitor"
    try:
        port = resolve_port(args.serial_port or None, context=ctx)
        applier = _make_applier(args, port, log_sink=_print_chunk)
        try:
            applier.monitor(context=ctx, duration_ms=args.duration)
        except KeyboardInterrupt:
            print("\n[monitor stopped]", file=sys.stderr)
        return 0
    except SensorNodeToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_deploy(args) -> int:
    """Upload firmware, then apply a configuration document."""
    ctx = f"CLI deploy {args.project_dir} + {args.config}"
    try:
        config = load_config(args.config)
        if args.dry_run:
            command = UploadSupervisor(tool=args.tool).build_command(args.env, args.serial_port or None)
            print(" ".join(command))
            return _run_apply(args, ctx, config=config)
        rc = _run_upload(args, ctx)
        if rc != 0:
            return rc
        return _run_apply(args, ctx, config=config)
    except SensorNodeToolsError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def _add_serial_options(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--serial-port", type=str, default=DEFAULT_SERIAL_PORT,
        help="Serial port path (e.g. /dev/ttyUSB0 or COM3). "
             "Auto-selected when omitted.",
    )
    p.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )
    p.add_argument(
        "--reply-window", type=int, default=SERIAL_REPLY_WINDOW_MS,
        help=f"Milliseconds to collect each reply (default: {SERIAL_REPLY_WINDOW_MS})",
    )
    p.add_argument(
        "--settle", type=int, default=SERIAL_BOOT_SETTLE_MS,
        help=f"Milliseconds of boot output to discard after opening "
             f"(default: {SERIAL_BOOT_SETTLE_MS})",
    )


def _add_upload_options(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--project-dir", default=DEFAULT_PROJECT_DIR,
        help="PlatformIO project directory containing platformio.ini",
    )
    p.add_argument("--env", default=None, help="PlatformIO environment name")
    p.add_argument(
        "--timeout", type=float, default=UPLOAD_TIMEOUT_S,
        help=f"Upload timeout in seconds (default: {UPLOAD_TIMEOUT_S})",
    )
    p.add_argument(
        "--tool", default=UPLOAD_TOOL,
        help=f"PlatformIO executable (default: {UPLOAD_TOOL})",
    )


def _add_apply_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("config", help="JSON configuration document ('-' for stdin)")
    p.add_argument("--cal-load", action="store_true", help="Send 'cal load' after the document")
    p.add_argument("--cal-save", action="store_true", help="Send 'cal save' after the document")
    p.add_argument(
        "--dry-run", action="store_true",
        help="Print the command sequence without opening the port",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sensor-node",
        description="Sensor Node Tools - flash and configure sensor nodes over USB serial",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="-v for INFO logging, -vv for DEBUG",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    ports_parser = subparsers.add_parser("ports", help="List serial ports")
    ports_parser.set_defaults(func=command_ports)

    upload_parser = subparsers.add_parser("upload", help="Build and upload firmware")
    _add_upload_options(upload_parser)
    upload_parser.add_argument(
        "--serial-port", type=str, default=DEFAULT_SERIAL_PORT,
        help="Upload port override (PlatformIO auto-detects when omitted)",
    )
    upload_parser.set_defaults(func=command_upload)

    apply_parser = subparsers.add_parser("apply", help="Apply a configuration document")
    _add_apply_options(apply_parser)
    _add_serial_options(apply_parser)
    apply_parser.set_defaults(func=command_apply)

    send_parser = subparsers.add_parser("send", help="Send raw device commands")
    send_parser.add_argument(
        "device_commands", metavar="COMMAND", nargs="+",
        help="Device command line, e.g. 'status' or 'thr show'",
    )
    _add_serial_options(send_parser)
    send_parser.set_defaults(func=command_send)

    monitor_parser = subparsers.add_parser("monitor", help="Print device output")
    monitor_parser.add_argument(
        "--duration", type=int, default=None,
        help="Stop after this many milliseconds (default: until Ctrl+C)",
    )
    _add_serial_options(monitor_parser)
    monitor_parser.set_defaults(func=command_monitor)

    deploy_parser = subparsers.add_parser(
        "deploy", help="Upload firmware, then apply a configuration document",
    )
    _add_upload_options(deploy_parser)
    _add_apply_options(deploy_parser)
    _add_serial_options(deploy_parser)
    deploy_parser.set_defaults(func=command_deploy)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
