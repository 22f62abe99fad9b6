from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler

from . import config, storage
from .errors import SchedulerError
from .models import Target, new_target
from .monitor import Monitor
from .transition_logger import TransitionLogger, TransitionTracker
from .ui import build_table

console = Console()
logger = logging.getLogger("endpoint_monitor")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="endpoint-monitor",
        description="Probe TCP/ICMP endpoints and classify their health.",
    )
    parser.add_argument(
        "--targets",
        type=Path,
        help="targets JSON file (default: portable file or per-user data dir)",
    )
    parser.add_argument(
        "--examples",
        action="store_true",
        help="replace the target list with the built-in examples and save it",
    )
    parser.add_argument(
        "--interval", type=float, default=config.PROBE_INTERVAL_SECONDS
    )
    parser.add_argument("--timeout", type=float, default=config.PROBE_TIMEOUT_SECONDS)
    parser.add_argument("--log-file", default=config.LOG_FILE)
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument(
        "--once", action="store_true", help="probe every target once and exit"
    )
    args = parser.parse_args(argv)
    if args.interval <= 0 or args.timeout <= 0:
        parser.error("--interval and --timeout must be positive")
    return args


def setup_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def example_targets() -> List[Target]:
    return [
        new_target(t["name"], t["host"], t["port"], t["probe_type"])
        for t in config.EXAMPLE_TARGETS
    ]


def load_target_list(args: argparse.Namespace) -> List[Target]:
    path = args.targets or storage.detect_storage().path
    if args.examples:
        targets = example_targets()
        storage.save_targets(path, targets)
        return targets
    return storage.load_targets(path)


async def run_once(monitor: Monitor):
    """Probe every target once and print the table."""
    results = await asyncio.gather(
        *(monitor.probe_once(t) for t in monitor.registry.snapshot())
    )
    for result in results:
        monitor.record(result)
    console.print(build_table(monitor.statuses(), monitor.icmp_available))


async def ui_loop(monitor: Monitor, stop_event: asyncio.Event):
    """Renders the live UI table."""
    with Live(
        build_table(monitor.statuses(), monitor.icmp_available),
        refresh_per_second=int(1 / config.UI_REFRESH_INTERVAL),
        console=console,
        screen=False,
    ) as live:
        while not stop_event.is_set():
            live.update(build_table(monitor.statuses(), monitor.icmp_available))
            await asyncio.sleep(config.UI_REFRESH_INTERVAL)


async def main_async(args: argparse.Namespace) -> int:
    """The main asynchronous entry point of the application."""
    targets = load_target_list(args)
    tracker = TransitionTracker(TransitionLogger(args.log_file))
    monitor = Monitor(
        targets,
        interval=args.interval,
        timeout=args.timeout,
        on_status=tracker.update,
    )
    if not targets:
        console.print(
            "No targets configured. Add some to the targets file or run with --examples."
        )
        return 0

    if args.once:
        await run_once(monitor)
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler():
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:  # Windows
            signal.signal(sig, lambda s, f: _signal_handler())

    if hasattr(signal, "SIGCONT"):
        # back from Ctrl-Z / SIGSTOP: statistics from before are stale
        try:
            loop.add_signal_handler(signal.SIGCONT, monitor.refresh_all)
        except NotImplementedError:
            pass

    await monitor.start()
    ui_task = asyncio.create_task(ui_loop(monitor, stop_event))
    fatal_task = asyncio.create_task(monitor.wait_closed())
    stop_task = asyncio.create_task(stop_event.wait())

    await asyncio.wait({fatal_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    stop_event.set()

    # Graceful shutdown
    logger.info("stopping; waiting for in-flight probes")
    await monitor.stop()
    for t in (ui_task, stop_task):
        t.cancel()
    await asyncio.gather(ui_task, stop_task, return_exceptions=True)

    exit_code = 0
    try:
        await fatal_task
    except SchedulerError as e:
        console.print(f"[bold red]Probing stopped:[/] {e}")
        exit_code = 1

    # Print summary
    console.print("\nSummary:")
    for st in monitor.statuses():
        rate = st.summary.success_rate
        health = "unsupported" if st.unsupported else st.health.value
        console.print(
            f"{st.target.name} ({st.target.address}): health={health} "
            f"probes={st.summary.count} "
            f"success={'-' if rate is None else f'{rate * 100:.1f}%'}"
        )
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
