#!/usr/bin/env python3
"""Main entry point for fleetrun."""

import argparse
import asyncio
import contextlib
import signal
import sys
from pathlib import Path
from typing import Callable

from .client import NodeFilter, check_filter
from .commands import Action, ActionRequest, CommandContext, RunOptions, get_handler, parse_action
from .config import Config, RunSettings, load_config
from .dashboard import Dashboard
from .errors import ConfigurationError, FatalTransportError
from .logs import RunLog
from .scheduler import BatchScheduler, timestamped_printer
from .ssh_client import SshAgentClient
from .stats import RunStatistics

# ANSI colors for different nodes
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetrun",
        description="Run puppet on matching nodes, only CONCURRENCY nodes at a time",
    )
    parser.add_argument("action", nargs="?", help="runall or discover")
    parser.add_argument(
        "concurrency", nargs="?", help="Maximum number of nodes running at once (runall)"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("fleetrun.yaml"),
        help="Path to YAML configuration file",
    )

    filters = parser.add_argument_group("filters")
    filters.add_argument("-I", "--with-identity", action="append", default=[],
                         help="Match node name, exact or /regex/")
    filters.add_argument("-F", "--with-fact", action="append", default=[],
                         help="Match fact key=value")
    filters.add_argument("-C", "--with-class", action="append", default=[],
                         help="Match class name, exact or /regex/")
    filters.add_argument("-S", "--select", action="append", default=[],
                         help="Compound filter expression (not usable with runall)")

    run = parser.add_argument_group("puppet run options")
    run.add_argument("--force", action="store_true", help="Bypass splay options when running")
    run.add_argument("--server", help="Connect to a specific server or port")
    run.add_argument("--tag", action="append", default=[], help="Restrict the run to specific tags")
    run.add_argument("--noop", dest="noop", action="store_const", const=True, help="Do a noop run")
    run.add_argument("--no-noop", dest="noop", action="store_const", const=False,
                     help="Do a run with noop disabled")
    run.add_argument("--environment", help="Place the node in a specific environment for this run")
    run.add_argument("--splay", dest="splay", action="store_const", const=True,
                     help="Splay the run by up to splaylimit seconds")
    run.add_argument("--no-splay", dest="splay", action="store_const", const=False,
                     help="Do a run with splay disabled")
    run.add_argument("--splaylimit", type=int, help="Maximum splay time for this run if splay is set")

    timing = parser.add_argument_group("timeouts")
    timing.add_argument("--node-timeout", type=float, help="Seconds a single node may take")
    timing.add_argument("--run-timeout", type=float, help="Seconds the whole batch may take")
    timing.add_argument("--abandon-timeout", type=float,
                        help="Seconds to wait for running nodes after an interrupt")

    parser.add_argument("--key", type=Path, help="Override SSH key path from config")
    parser.add_argument("--no-logs", action="store_true", help="Disable logging to files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print node command output")
    parser.add_argument("--dashboard", action="store_true", help="Run with the TUI dashboard")
    return parser


def resolve_settings(config: Config, args: argparse.Namespace) -> RunSettings:
    """Merge CLI timeouts over the config file's run section."""
    run = config.run
    return RunSettings(
        concurrency=run.concurrency,
        node_timeout=args.node_timeout if args.node_timeout is not None else run.node_timeout,
        run_timeout=args.run_timeout if args.run_timeout is not None else run.run_timeout,
        abandon_timeout=(
            args.abandon_timeout if args.abandon_timeout is not None else run.abandon_timeout
        ),
    )


def interrupt_handler(scheduler: BatchScheduler, task: asyncio.Task) -> Callable[[], None]:
    """SIGINT handler: the first one stops the batch, the next cancels ``task``."""

    def on_interrupt() -> None:
        if scheduler.stopping:
            task.cancel()
        else:
            scheduler.interrupt()

    return on_interrupt


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    concurrency = args.concurrency
    if concurrency is None and config.run.concurrency is not None:
        concurrency = str(config.run.concurrency)
    request = parse_action(args.action, concurrency)
    if isinstance(request, ConfigurationError):
        print(f"Error: {request}", file=sys.stderr)
        return 1

    options = RunOptions(
        force=args.force,
        server=args.server,
        tags=args.tag,
        noop=args.noop,
        environment=args.environment,
        splay=args.splay,
        splaylimit=args.splaylimit,
    )
    node_filter = NodeFilter(
        identities=args.with_identity,
        facts=args.with_fact,
        classes=args.with_class,
        compound=args.select,
    )
    error = options.validate() or check_filter(node_filter, batch=request.action is Action.RUNALL)
    if error is not None:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    # Override SSH key if provided (applies to all nodes)
    if args.key:
        key_path = args.key.expanduser()
        config.defaults.ssh_key = key_path
        for node in config.nodes:
            node.ssh_key = key_path

    settings = resolve_settings(config, args)
    enable_logging = not args.no_logs and request.action is Action.RUNALL

    if args.dashboard and request.action is Action.RUNALL:
        app = Dashboard(
            config,
            request,
            node_filter,
            options,
            settings,
            enable_logging=enable_logging,
        )
        app.run()
        if app.error:
            print(f"Error: {app.error}", file=sys.stderr)
            return 1
        if app.statistics:
            print("\n".join(app.statistics.summary_lines()))
            return app.statistics.exit_code
        return 1

    return asyncio.run(
        _run_headless(config, request, node_filter, options, settings, enable_logging, args.verbose)
    )


async def _run_headless(
    config: Config,
    request: ActionRequest,
    node_filter: NodeFilter,
    options: RunOptions,
    settings: RunSettings,
    enable_logging: bool,
    verbose: bool,
) -> int:
    """Run the action without the TUI dashboard."""
    run_log = RunLog(config, enabled=enable_logging)
    run_log.setup()
    printer = timestamped_printer()

    # Assign colors to nodes
    node_colors = {node.name: COLORS[i % len(COLORS)] for i, node in enumerate(config.nodes)}

    def on_output(node_name: str, line: str) -> None:
        run_log.write_output(node_name, line)
        if verbose:
            color = node_colors.get(node_name, "")
            print(f"{color}[{node_name}]{RESET} {line}")

    def progress(at, message: str) -> None:
        printer(at, message)
        run_log.write_progress(at, message)

    client = SshAgentClient(config, on_output=on_output)
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    handled_signals: list[int] = []

    def make_scheduler(concurrency: int) -> BatchScheduler:
        scheduler = BatchScheduler(
            client,
            concurrency,
            node_timeout=settings.node_timeout,
            run_timeout=settings.run_timeout,
            abandon_timeout=settings.abandon_timeout,
            progress=progress,
        )
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, interrupt_handler(scheduler, task))
            handled_signals.append(signal.SIGINT)
        return scheduler

    ctx = CommandContext(
        client=client,
        node_filter=node_filter,
        options=options,
        progress=progress,
        scheduler_factory=make_scheduler,
    )

    try:
        result = await get_handler(request.action)(ctx, request)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FatalTransportError as e:
        print(f"Fatal: {e}", file=sys.stderr)
        if e.statistics is not None:
            print("\n".join(e.statistics.summary_lines()), file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        print("Cancelled: running nodes were killed", file=sys.stderr)
        return 130
    finally:
        for sig in handled_signals:
            loop.remove_signal_handler(sig)
        await client.close()

    if isinstance(result, RunStatistics):
        print()
        print("\n".join(result.summary_lines()))
        if run_log.directory:
            print(f"Logs: {run_log.directory}")
        return result.exit_code

    return 0


if __name__ == "__main__":
    sys.exit(main())
