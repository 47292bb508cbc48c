"""CLI entrypoint for redlib-wrapper."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Awaitable, Sequence
from importlib import metadata
import json
from pathlib import Path
import sys
from typing import Any, TextIO, TypeVar

from .agents import RunAgent, RunRequest, UpdateAgent
from .config import BusConfig, RunConfig, UpdateConfig, load_config
from .events import EventBus, RunResult, Subscription
from .logging_utils import configure_logging
from .task_manager import TaskManager

T = TypeVar("T")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redlib-wrapper",
        description="redlib-wrapper - update and run a managed redlib binary",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an alternative config.toml",
    )
    commands = parser.add_subparsers(dest="command")

    update = commands.add_parser("update", help="Install a new binary from SOURCE")
    update.add_argument("source", help="Local path, file:// or http(s):// URL")
    update.add_argument("--sha256", default=None, help="Expected SHA-256 of the artifact")

    run = commands.add_parser("run", help="Run BINARY and stream its output")
    run.add_argument("binary", help="Absolute path of the binary to run")
    run.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the binary")
    run.add_argument("--cwd", default=None, help="Working directory")
    run.add_argument("--env-profile", default=None, help="Environment profile name")
    run.add_argument("--pty", action="store_true", help="Request a pseudo-terminal")
    return parser


async def _print_events(subscription: Subscription, out: TextIO) -> None:
    # Leaving the block unsubscribes, so a broken stdout never stalls publishers.
    async with subscription:
        async for event in subscription:
            out.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
            out.flush()


async def _observe(bus: EventBus, invocation: Awaitable[T], out: TextIO) -> T:
    """Await ``invocation`` while printing every bus event as a JSON line."""
    tasks = TaskManager(owner="cli")
    subscription = bus.subscribe()
    tasks.spawn(_print_events(subscription, out))
    try:
        return await invocation
    finally:
        # The printer drains what is buffered, then stops.
        subscription.close()
        await tasks.join()


def _make_bus(config: dict[str, Any]) -> EventBus:
    settings = BusConfig.model_validate(config["bus"])
    return EventBus(settings.buffer_size, settings.publish_timeout)


async def _update(config: dict[str, Any], args: argparse.Namespace, out: TextIO) -> int:
    async with _make_bus(config) as bus:
        agent = UpdateAgent(bus, UpdateConfig.model_validate(config["update"]))
        result = await _observe(bus, agent.run_update(args.source, args.sha256), out)
    return 0 if result.ok else 1


async def _run(config: dict[str, Any], args: argparse.Namespace, out: TextIO) -> int:
    request = RunRequest(
        binary_path=args.binary,
        args=tuple(args.args),
        env_profile_name=args.env_profile,
        working_dir=args.cwd,
        pty=args.pty,
    )
    async with _make_bus(config) as bus:
        agent = RunAgent(bus, config=RunConfig.model_validate(config["run"]))
        terminal = await _observe(bus, agent.run(request), out)
    return 0 if isinstance(terminal, RunResult) else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI flags, configure logging and run one update or run."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("redlib-wrapper")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"redlib-wrapper {version}")
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    config = load_config(args.config)
    configure_logging(config["logging"])
    handler = _update if args.command == "update" else _run
    try:
        return asyncio.run(handler(config, args, sys.stdout))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
