#!/usr/bin/env python3
"""
ingestcue-sim: Interactive simulator for ingestcue.

Usage:
    ingestcue-sim --requests 10 --cooldown 1
    ingestcue-sim --scenario priority_jump --cooldown 5 --work-duration 1
    ingestcue-sim --requests 20 --error-rate 0.2 --max-attempts 2 --no-tui
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime

from rich.console import Console
from rich.table import Table

from ingestcue_sim.display import SimulationState, SimulatorDisplay, print_simple_stats
from ingestcue_sim.runner import SimConfig, SimulationRunner


def configure_logging(verbose: bool = False) -> None:
    """Route ingestcue library logs to stderr when verbose, mute them otherwise."""
    ingest_logger = logging.getLogger("ingestcue")
    if verbose:
        ingest_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        ingest_logger.addHandler(handler)
    else:
        # The display already shows unit events
        ingest_logger.setLevel(logging.CRITICAL)


async def run_with_display(config: SimConfig, use_tui: bool = True, verbose: bool = False) -> None:
    """Drive one simulation and render it.

    Args:
        config: Scenario, pacing and failure settings
        use_tui: Live panel view; otherwise a single updating status line
        verbose: Stream every unit event as a line, overrides use_tui
    """
    state = SimulationState()

    if verbose:
        original_add_event = state.add_event

        def logging_add_event(event_type: str, unit_id: str, priority: str | None = None, details: str = "") -> None:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            print(f"{ts} {event_type:<10} {priority or '':<8} {unit_id:<14} {details}")
            original_add_event(event_type, unit_id, priority, details)

        state.add_event = logging_add_event  # type: ignore

    runner = SimulationRunner(config, state)

    if verbose:
        print("\ningestcue-sim [verbose]")
        print(f"   Scenario: {config.scenario}, Requests: {config.requests}")
        print(f"   Cooldown: {config.cooldown:g}s, Work: {config.work_duration:g}s, Error: {config.error_rate * 100:.0f}%")
        print()
        print(f"{'TIME':<12} {'EVENT':<10} {'PRIORITY':<8} {'UNIT':<14} DETAILS")
        print("-" * 72)
        try:
            await runner.run()
        except (KeyboardInterrupt, asyncio.CancelledError):
            runner.stop()
        finally:
            await runner.cleanup()
        print("-" * 72)
        print_final_summary(state)
        return

    async def update_loop(render, interval: float):
        while True:
            render()
            await asyncio.sleep(interval)

    if use_tui:
        display = SimulatorDisplay(state)
        with display:
            update_task = asyncio.create_task(update_loop(display.refresh, 0.1))
            try:
                await runner.run()
            except (KeyboardInterrupt, asyncio.CancelledError):
                runner.stop()
            finally:
                update_task.cancel()
                try:
                    await update_task
                except asyncio.CancelledError:
                    pass
                await runner.cleanup()
    else:
        print("\ningestcue-sim")
        print(f"   Scenario: {config.scenario}, Cooldown: {config.cooldown:g}s, Work: {config.work_duration:g}s")
        print()
        update_task = asyncio.create_task(update_loop(lambda: print_simple_stats(state), 0.5))
        try:
            await runner.run()
        except (KeyboardInterrupt, asyncio.CancelledError):
            runner.stop()
        finally:
            update_task.cancel()
            try:
                await update_task
            except asyncio.CancelledError:
                pass
            await runner.cleanup()
        print_simple_stats(state)
        print()  # Newline after progress

    print_final_summary(state)


def print_final_summary(state: SimulationState) -> None:
    """Print unit totals and the spread of request outcomes."""
    console = Console()
    console.print()

    table = Table(title="Simulation Results", show_header=False, border_style="green")
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    statuses: dict[str, int] = {}
    for req in state.requests.values():
        statuses[req.overall_status] = statuses.get(req.overall_status, 0) + 1

    table.add_row("Requests", str(state.submitted_requests))
    table.add_row("Units", str(state.submitted_units))
    table.add_row("Done", f"[green]{state.done}[/green]")
    table.add_row("Failed", f"[red]{state.failed}[/red]" if state.failed else "0")
    for status, count in sorted(statuses.items()):
        table.add_row(f"  {status}", str(count))
    table.add_row("Duration", f"{state.elapsed:.2f}s")
    table.add_row("Throughput", f"{state.throughput:.2f} units/s")

    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ingestcue simulator - watch prioritized, paced ingestion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ingestcue-sim --requests 10 --cooldown 1
  ingestcue-sim --scenario priority_jump --cooldown 5 --work-duration 1
  ingestcue-sim --scenario burst --requests 6 --cooldown 0.5
  ingestcue-sim --error-rate 0.3 --max-attempts 2 --verbose
  ingestcue-sim --list-scenarios
        """,
    )

    parser.add_argument(
        "--scenario",
        type=str,
        default="mixed",
        help="Scenario to run (default: mixed)",
    )
    parser.add_argument(
        "--list-scenarios",
        action="store_true",
        help="Show the built-in scenarios and exit",
    )
    parser.add_argument(
        "--requests", "-n",
        type=int,
        default=5,
        help="Number of requests to submit (default: 5)",
    )
    parser.add_argument(
        "--cooldown", "-c",
        type=float,
        default=1.0,
        help="Seconds between units (default: 1.0)",
    )
    parser.add_argument(
        "--work-duration", "-w",
        type=float,
        default=0.2,
        help="Simulated processing time per unit in seconds (default: 0.2)",
    )
    parser.add_argument(
        "--batch-size", "-b",
        type=int,
        default=3,
        help="Maximum ids per unit (default: 3)",
    )
    parser.add_argument(
        "--error-rate", "-e",
        type=float,
        default=0.0,
        help="Fraction of attempts that fail, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=3,
        help="Attempts per unit before it is marked failed (default: 3)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite file to persist state in (default: in-memory)",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=None,
        help="Stop after this many seconds even if requests are unfinished",
    )
    parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Print a single status line instead of the live panel",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print event log and library logs instead of status updates",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for workload sizes, priorities and injected errors",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.list_scenarios:
        from ingestcue_sim.scenarios import list_scenarios
        print("\nAvailable scenarios:\n")
        for info in list_scenarios():
            print(f"  {info.name:<15} {info.description}")
        print()
        sys.exit(0)

    configure_logging(verbose=args.verbose)

    if not 0.0 <= args.error_rate <= 1.0:
        parser.error("--error-rate must be between 0.0 and 1.0")
    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")

    config = SimConfig(
        scenario=args.scenario,
        requests=args.requests,
        cooldown=args.cooldown,
        work_duration=args.work_duration,
        batch_size=args.batch_size,
        error_rate=args.error_rate,
        max_attempts=args.max_attempts,
        duration=args.duration,
        db_path=args.db,
        seed=args.seed,
    )

    async def run_main():
        """Stop cleanly on SIGINT or SIGTERM."""
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        main_task = asyncio.create_task(
            run_with_display(config, use_tui=not args.no_tui, verbose=args.verbose)
        )
        stop_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            [main_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if stop_task in done:
            print("\nInterrupted.")
            sys.exit(130)
        main_task.result()

    try:
        asyncio.run(run_main())
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    except ValueError as e:
        parser.error(str(e))


if __name__ == "__main__":
    main()
