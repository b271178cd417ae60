"""Command-line entry point.

Usage:
    pserver-lifecycle check <config.yaml> [--transitions N]
    pserver-lifecycle run <config.yaml> [--log-level LEVEL]
"""

from __future__ import annotations

import argparse
import asyncio
import itertools
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from pserver_lifecycle import __version__
from pserver_lifecycle.config_loader import ConfigLoader, LifecycleConfig
from pserver_lifecycle.exceptions import ConfigError
from pserver_lifecycle.services import LifecycleService
from pserver_lifecycle.utils.clock import LoopClock
from pserver_lifecycle.utils.cron import evaluate_windows, iter_transitions
from pserver_lifecycle.utils.durations import format_duration

log = logging.getLogger("pserver_lifecycle")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pserver-lifecycle",
        description="Start and stop game servers by schedule and player presence",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", type=Path, default=None, help="Load environment variables from this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check", help="Validate configuration and show upcoming windows")
    check.add_argument("config", type=Path, help="Main configuration file")
    check.add_argument("--servers-dir", type=Path, default=None, help="Directory of per-server files")
    check.add_argument(
        "--transitions",
        type=int,
        default=4,
        help="Number of upcoming window transitions to show per server (default: 4)",
    )

    run = subparsers.add_parser("run", help="Run the lifecycle service")
    run.add_argument("config", type=Path, help="Main configuration file")
    run.add_argument("--servers-dir", type=Path, default=None, help="Directory of per-server files")
    run.add_argument("--log-level", default=None, help="Override settings.log_level")

    return parser


def describe_config(config: LifecycleConfig, transitions: int) -> list[str]:
    """Describe servers and their upcoming window transitions.

    Args:
        config: Loaded configuration
        transitions: Transitions to list per server

    Returns:
        Output lines
    """
    now = datetime.now(timezone.utc)
    lines = [f"[OK] {len(config.servers)} server(s) configured"]
    for server in config.servers:
        control = server.control_api.type if server.control_api else "none"
        idle = format_duration(server.idle_timeout) if server.idle_timeout is not None else "off"
        lines.append(f"\n{server.display_name} ({server.id})")
        lines.append(f"  Control API: {control}")
        lines.append(f"  Idle timeout: {idle}")
        lines.append(f"  Minimum uptime: {format_duration(server.minimum_uptime)}")
        lines.append(f"  Cooldown: {format_duration(server.cooldown)}")
        if not server.schedules:
            lines.append("  Schedules: none (presence and manual control only)")
            continue

        for schedule in server.schedules:
            end = f"until '{schedule.stop}'" if schedule.stop else f"for {format_duration(schedule.duration or 0)}"
            label = f"{schedule.name}: " if schedule.name else ""
            lines.append(f"  Schedule {label}'{schedule.start}' {end} ({schedule.time_zone})")

        inside = evaluate_windows(server.schedules, now).inside
        lines.append(f"  Window now: {'open' if inside else 'closed'}")
        for in_window, at in itertools.islice(iter_transitions(server.schedules, now), transitions):
            lines.append(f"    {at.isoformat()}  {'opens' if in_window else 'closes'}")
    return lines


async def run_service(loader: ConfigLoader, config: LifecycleConfig) -> None:
    """Run the service until SIGINT/SIGTERM; SIGHUP reloads configuration.

    Args:
        loader: Loader used for reloads
        config: Initial configuration
    """
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    reload_requested = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))
    if hasattr(signal, "SIGHUP"):
        try:
            loop.add_signal_handler(signal.SIGHUP, reload_requested.set)
        except (NotImplementedError, RuntimeError):
            log.debug("SIGHUP reload not available on this platform")

    async with LifecycleService(config.settings, clock=LoopClock(loop)) as service:
        await service.start(config.servers)

        while not stop_event.is_set():
            stop_wait = asyncio.ensure_future(stop_event.wait())
            reload_wait = asyncio.ensure_future(reload_requested.wait())
            await asyncio.wait({stop_wait, reload_wait}, return_when=asyncio.FIRST_COMPLETED)
            for waiter in (stop_wait, reload_wait):
                waiter.cancel()

            if reload_requested.is_set() and not stop_event.is_set():
                reload_requested.clear()
                log.info("Reloading configuration from %s", loader.config_path)
                try:
                    new_config = loader.load()
                except ConfigError as e:
                    log.error("Reload failed, keeping current configuration: %s", e)
                    continue
                await service.reconcile(new_config.servers)

        log.info("Shutting down")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()

    loader = ConfigLoader(args.config, servers_dir=args.servers_dir)
    try:
        config = loader.load()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "check":
        print("\n".join(describe_config(config, args.transitions)))
        return 0

    level = (args.log_level or config.settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_service(loader, config))
    except KeyboardInterrupt:
        log.info("Interrupted by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
