from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from dataclasses import fields
from typing import Any, Callable

from .app import Runtime, build_runtime
from .config import Config, _is_field_type
from .eta import ETAEstimator, format_duration, format_eta
from .queue_model import QueueModel
from .runlog import format_console
from .runtime.events import LOG, POSITION_ALERT, QUEUE_FINISHED, PositionAlert
from .runtime.lifecycle import ConnectionLifecycle
from .session_store import SessionStore

SECONDS_PER_DAY = 86400.0
DEFAULT_COLLECT_DAYS = 7.0
HISTORY_TAIL = 10

COMMAND_HELP = """
  Available Commands:
  ─────────────────────────────────────
  start       Start queueing
  stop        Stop queueing
  update      Show current queue status
  stats       Show health and hunger
  idle        Toggle idle prevention
  restart     Toggle auto-restart
  help        Show this help message
  exit/quit   Exit the application
  ─────────────────────────────────────
"""


def _str2bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"invalid bool: {value}")


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        name = field.name.replace("_", "-")
        if _is_field_type(field.type, bool, "bool"):
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if _is_field_type(field.type, bool, "bool"):
            overrides[field.name] = _str2bool(value)
        elif _is_field_type(field.type, int, "int"):
            overrides[field.name] = int(value)
        elif _is_field_type(field.type, float, "float"):
            overrides[field.name] = float(value)
        else:
            overrides[field.name] = value
    return overrides


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop(sig: signal.Signals) -> None:
        if stop_event.is_set():
            return
        print(f"received {sig.name}, shutting down", file=sys.stderr)
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
            except (ValueError, AttributeError):
                continue


def _format_vital(value: float | None, empty: str, *, ceil: bool) -> str:
    if value is None:
        return "?"
    half = -(-int(value) // 2) if ceil else int(value) // 2
    return empty if half == 0 else f"{half}/10"


def handle_command(lifecycle: ConnectionLifecycle, command: str, out: Callable[[str], None] = print) -> bool:
    """Run one console command. Returns False when the operator asked to exit."""
    cmd = command.strip().lower()
    if cmd in ("help", "commands"):
        out(COMMAND_HELP)
    elif cmd == "start":
        lifecycle.start()
    elif cmd == "stop":
        lifecycle.stop()
    elif cmd == "update":
        snap = lifecycle.snapshot()
        position = snap.position if snap.position is not None else "None"
        out(f"  Status: {snap.state.value}")
        out(f"  Position: {position}")
        out(f"  ETA: {snap.eta or 'None'}")
        out(f"  Idle prevention: {'Active' if snap.idle_prevention_active else 'Inactive'}")
        out(f"  Auto-Restart: {'On' if snap.auto_restart else 'Off'}")
    elif cmd == "stats":
        snap = lifecycle.snapshot()
        if snap.health is None:
            out("  Not connected to server")
        else:
            out(f"  Health: {_format_vital(snap.health, 'DEAD', ceil=True)}")
            out(f"  Hunger: {_format_vital(snap.food, 'STARVING', ceil=False)}")
    elif cmd in ("idle", "antiafk"):
        lifecycle.toggle_idle_prevention()
    elif cmd == "restart":
        lifecycle.toggle_auto_restart()
    elif cmd in ("exit", "quit"):
        return False
    elif cmd:
        out(f'  Unknown command: "{cmd}". Type "help" for available commands.')
    return True


def _attach_console(lifecycle: ConnectionLifecycle, stop_event: asyncio.Event) -> bool:
    loop = asyncio.get_running_loop()

    def _on_line() -> None:
        line = sys.stdin.readline()
        if not line:
            loop.remove_reader(sys.stdin)
            return
        if not handle_command(lifecycle, line):
            stop_event.set()

    try:
        loop.add_reader(sys.stdin, _on_line)
    except (NotImplementedError, ValueError, OSError):
        return False
    return True


def _print_alert(alert: PositionAlert) -> None:
    print(f"\a[ALERT] queue position {alert.position} (threshold {alert.threshold})", flush=True)


async def _run_lifecycle(runtime: Runtime, *, join: bool, console: bool) -> int:
    lifecycle = runtime.lifecycle
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    # entries logged while the runtime was built
    for entry in runtime.runlog.recent():
        print(format_console(entry), flush=True)
    runtime.bus.subscribe(LOG, lambda entry: print(format_console(entry), flush=True))
    runtime.bus.subscribe(POSITION_ALERT, _print_alert)
    runtime.bus.subscribe(
        QUEUE_FINISHED, lambda _snap: print("[DONE] queue finished", flush=True)
    )
    attached = console and _attach_console(lifecycle, stop_event)
    if join:
        lifecycle.start()
    waiters = [
        asyncio.create_task(stop_event.wait()),
        asyncio.create_task(lifecycle.terminated.wait()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        if attached:
            asyncio.get_running_loop().remove_reader(sys.stdin)
        await lifecycle.shutdown()
        # let queued log deliveries reach the console
        await asyncio.sleep(0)
    if lifecycle.terminated.is_set():
        return lifecycle.exit_code
    return 0


def _load_history(config: Config) -> SessionStore:
    store = SessionStore(config.history_path, max_sessions=config.history_max_sessions)
    store.load()
    return store


def print_history(config: Config, out: Callable[[str], None] = print) -> int:
    store = _load_history(config)
    estimator = ETAEstimator(store)
    out(f"{config.history_path}: {estimator.summary()}")
    if store.load_skipped:
        out(f"  ({store.load_skipped} unreadable entries skipped)")
    for session in store.sessions()[-HISTORY_TAIL:]:
        out(
            f"  #{session.start_position:<5} {format_duration(session.duration_ms / 1000):>7}"
            f"  {session.positions_per_hour:>5} pos/hr"
            f"  day {session.day_of_week} hour {session.start_hour:02d}"
        )
    return 0


def print_estimate(
    config: Config,
    position: int,
    start: int | None = None,
    out: Callable[[str], None] = print,
) -> int:
    if position < 0:
        out("position must be >= 0")
        return 2
    store = _load_history(config)
    model = QueueModel.load(config.queue_model_path)
    base = model.base_minutes(start if start is not None else position, position)
    minutes = ETAEstimator(store).estimate_minutes(position, base)
    out(f"Position {position}: ETA {format_eta(minutes)} (decay model {format_eta(base)})")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="queue_pilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    _add_config_args(common)

    run = subparsers.add_parser("run", parents=[common])
    run.add_argument("--join", action="store_true")
    run.add_argument("--no-console", dest="console", action="store_false")

    collect = subparsers.add_parser("collect", parents=[common])
    collect.add_argument("--days", type=float, default=None)
    collect.add_argument("--relog", type=int, default=None)

    subparsers.add_parser("history", parents=[common])

    estimate = subparsers.add_parser("estimate", parents=[common])
    estimate.add_argument("--position", type=int, required=True)
    estimate.add_argument("--start", type=int, default=None)

    args = parser.parse_args(argv)
    overrides = _cli_overrides(args)
    if args.command == "collect":
        overrides["mode"] = "collector"
        days = args.days
        if days is None and overrides.get("max_run_seconds") is None:
            days = DEFAULT_COLLECT_DAYS
        if days is not None:
            overrides["max_run_seconds"] = days * SECONDS_PER_DAY
        if args.relog is not None:
            overrides["relog_threshold"] = args.relog
    config = Config.from_env_and_cli(overrides, os.environ)
    try:
        config.validate()
    except ValueError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    if args.command == "history":
        return print_history(config)
    if args.command == "estimate":
        return print_estimate(config, args.position, args.start)

    runtime = build_runtime(config)
    try:
        if args.command == "collect":
            budget = format_duration(config.max_run_seconds or 0)
            runtime.runlog.info(
                f"Collector: run for {budget} max, relog at <= #{config.relog_threshold}"
            )
            return asyncio.run(_run_lifecycle(runtime, join=True, console=False))
        return asyncio.run(
            _run_lifecycle(runtime, join=args.join, console=args.console and sys.stdin.isatty())
        )
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
