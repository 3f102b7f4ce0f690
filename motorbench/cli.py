"""Command-line interface for motorbench."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

from . import constants
from .adapters import BleakTransport
from .app import BenchApp
from .channel import CommandChannelError
from .config import BenchConfig, load_config
from .core.models import RunOutcome, TelemetrySample
from .export import export_run_csv
from .history import HistoryStore, JsonKeyValueStore
from .logging import configure_logging
from .sequencer import MODES, SequencerError, get_mode
from .session import SessionError

LOGGER = logging.getLogger(__name__)

# Time between arming and the first throttle command of a run.
ARM_SETTLE_SECONDS = 1.0


def _param(value: str) -> Tuple[str, str]:
    key, sep, raw = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key.strip(), raw.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="motorbench", description="Bluetooth motor and ESC test bench controller"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Connect and keep the bench session running")

    scan_parser = subparsers.add_parser("scan", help="List nearby bench devices")
    scan_parser.add_argument(
        "--all", action="store_true", help="Include devices without the bench service"
    )

    monitor_parser = subparsers.add_parser("monitor", help="Print live telemetry")
    monitor_parser.add_argument(
        "--duration", type=float, default=None, help="Stop after this many seconds"
    )

    run_parser = subparsers.add_parser("run", help="Run one test mode")
    run_parser.add_argument("mode", choices=sorted(MODES))
    run_parser.add_argument(
        "-p",
        "--param",
        type=_param,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Mode parameter, e.g. startThrottle=10 (repeatable)",
    )
    run_parser.add_argument(
        "--arm", action="store_true", help="Arm the ESC before the run and disarm after"
    )

    subparsers.add_parser("modes", help="List test modes and their default parameters")
    subparsers.add_parser("history", help="List stored runs")

    export_parser = subparsers.add_parser("export", help="Export a stored run as CSV")
    export_parser.add_argument(
        "index", nargs="?", type=int, default=-1, help="History index (default: latest)"
    )
    export_parser.add_argument(
        "-o", "--output", type=Path, default=None, help="Output file or directory"
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _load_history(config: BenchConfig) -> HistoryStore:
    history = HistoryStore(
        JsonKeyValueStore(config.history.path), capacity=config.history.capacity
    )
    history.load()
    return history


def _format_sample(sample: TelemetrySample) -> str:
    return (
        f"thr {sample.throttle_pct:5.1f}%  {sample.voltage:5.2f} V  "
        f"{sample.current:5.2f} A  {sample.power:6.1f} W  {sample.rpm:6.0f} rpm  "
        f"{sample.thrust_grams:6.1f} g  esc {sample.esc_temp_c:4.1f}°C  "
        f"motor {sample.motor_temp_c:4.1f}°C"
    )


async def _prompt_voltage(step: int, total: int) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(
        None, input, f"Step {step}/{total}: set the supply voltage, then press Enter "
    )


async def _scan(config: BenchConfig, accept_all: bool) -> int:
    transport = BleakTransport(scan_timeout=config.device.scan_timeout_seconds)
    peripherals = await transport.scan(
        accept_all=accept_all or config.device.scan_all_devices,
        service_uuid=constants.NUS_SERVICE_UUID,
    )
    if not peripherals:
        print("No devices found")
        return 1
    for peripheral in peripherals:
        rssi = f"{peripheral.rssi} dBm" if peripheral.rssi is not None else "n/a"
        print(f"{peripheral.address}  {peripheral.name or 'Unknown':<24} {rssi}")
    return 0


async def _monitor(config: BenchConfig, duration: Optional[float]) -> int:
    app = BenchApp(config)
    app.decoder.add_telemetry_listener(lambda sample: print(_format_sample(sample)))
    app.decoder.add_warning_listener(lambda labels: print(f"WARNING: {labels}"))
    await app.start_services()
    try:
        await app.connect()
        await app.refresh_profiles()
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    except (SessionError, CommandChannelError) as exc:
        LOGGER.error("%s", exc)
        return 1
    finally:
        await app.stop_services()
    return 0


async def _run(config: BenchConfig, mode: str, params: Dict[str, str], arm: bool) -> int:
    # Reject bad parameters before the ESC is armed.
    try:
        get_mode(mode).parse(params)
    except SequencerError as exc:
        LOGGER.error("%s", exc)
        return 1

    app = BenchApp(config, voltage_prompt=_prompt_voltage)
    app.sequencer.add_status_listener(lambda text, _kind: print(text))
    await app.start_services()
    try:
        await app.connect()
        if arm:
            await app.arm()
            await asyncio.sleep(ARM_SETTLE_SECONDS)
        try:
            run = await app.run_test(mode, params)
        finally:
            if arm and app.session.is_connected:
                await app.disarm()
    except (SessionError, SequencerError, CommandChannelError) as exc:
        LOGGER.error("%s", exc)
        return 1
    finally:
        await app.stop_services()

    summary = (run.analysis or {}).get("summary", {})
    print(
        f"{run.mode} run {run.outcome.value if run.outcome else '?'}: "
        f"{len(run.samples)} samples, peak thrust {summary.get('peak_thrust_grams', 0.0):.1f} g"
    )
    for key in ("kv", "ir"):
        result = (run.analysis or {}).get(key)
        if result:
            print(f"{key}: slope {result['slope']:.4f} (r2 {result['r2']:.3f})")
    return 0 if run.outcome is RunOutcome.COMPLETED else 1


def _print_modes() -> None:
    for name, spec in MODES.items():
        print(f"{name}: {spec.title}")
        for key, value in spec.defaults().items():
            print(f"    {key} = {value!r}")


def _print_history(config: BenchConfig) -> int:
    runs = _load_history(config).runs()
    if not runs:
        print("No stored runs")
        return 0
    for index, run in enumerate(runs):
        outcome = run.outcome.value if run.outcome else "?"
        started = run.started_at.isoformat(timespec="seconds")
        print(f"{index:2d}  {started}  {run.mode:<10} {outcome:<10} {len(run.samples)} samples")
    return 0


def _export(config: BenchConfig, index: int, output: Optional[Path]) -> int:
    history = _load_history(config)
    try:
        run = history.get(index)
    except IndexError:
        LOGGER.error("No stored run at index %d (%d stored)", index, len(history))
        return 1
    try:
        path = export_run_csv(run, output)
    except OSError as exc:
        LOGGER.error("Export failed: %s", exc)
        return 1
    print(path)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        BenchApp.start(config)
        return 0

    configure_logging(
        config.logging.level,
        log_path=config.logging.path,
        log_ble=config.logging.log_ble,
    )

    try:
        if args.command == "scan":
            return asyncio.run(_scan(config, args.all))
        if args.command == "monitor":
            return asyncio.run(_monitor(config, args.duration))
        if args.command == "run":
            return asyncio.run(_run(config, args.mode, dict(args.param), args.arm))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
        return 130

    if args.command == "modes":
        _print_modes()
        return 0

    if args.command == "history":
        return _print_history(config)

    if args.command == "export":
        return _export(config, args.index, args.output)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
