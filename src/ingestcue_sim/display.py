"""Terminal rendering for ingestcue-sim.

Draws queue counters, per-request progress and recent unit events from a
SimulationState. Nothing here talks to the cue itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

TERMINAL_STATUSES = ("completed", "partial", "failed")


@dataclass
class RequestProgress:
    """Progress of one submitted request for display."""

    request_id: str
    priority: str
    total_units: int
    done_units: int = 0
    failed_units: int = 0
    overall_status: str = "not_started"
    submitted_at: float = 0.0

    @property
    def finished(self) -> bool:
        return self.overall_status in TERMINAL_STATUSES

    @property
    def fraction(self) -> float:
        if self.total_units <= 0:
            return 0.0
        return (self.done_units + self.failed_units) / self.total_units


@dataclass
class EventRecord:
    """One line of the unit event log."""

    timestamp: datetime
    event_type: str
    unit_id: str
    priority: str | None = None
    details: str = ""


@dataclass
class SimulationState:
    """Counters and per-request progress shared by runner and display.

    SimulationRunner writes it from cue callbacks and status polls;
    SimulatorDisplay and print_simple_stats only read it.
    """

    # Unit stats
    submitted_requests: int = 0
    submitted_units: int = 0
    queued: int = 0
    in_flight: int = 0
    done: int = 0
    failed: int = 0
    retrying: int = 0

    # Timing
    start_time: float = 0.0
    elapsed: float = 0.0

    # Requests, in submission order
    requests: dict[str, RequestProgress] = field(default_factory=dict)

    # Newest first
    events: list[EventRecord] = field(default_factory=list)
    max_events: int = 10

    # Config display
    scenario_name: str = "mixed"
    cooldown: float = 0.0
    work_duration: float = 0.0
    batch_size: int = 0
    error_rate: float = 0.0

    @property
    def throughput(self) -> float:
        """Units finished per second."""
        if self.elapsed > 0:
            return (self.done + self.failed) / self.elapsed
        return 0.0

    @property
    def progress(self) -> float:
        """Fraction of submitted units finished (0.0 to 1.0)."""
        if self.submitted_units > 0:
            return (self.done + self.failed) / self.submitted_units
        return 0.0

    @property
    def all_finished(self) -> bool:
        return bool(self.requests) and all(r.finished for r in self.requests.values())

    def add_event(self, event_type: str, unit_id: str, priority: str | None = None, details: str = "") -> None:
        """Record a unit or request event, keeping the newest max_events."""
        self.events.insert(0, EventRecord(
            timestamp=datetime.now(),
            event_type=event_type,
            unit_id=unit_id,
            priority=priority,
            details=details,
        ))
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]


class SimulatorDisplay:
    """Live terminal view of a running simulation.

    Panels:
    - Queue stats
    - Requests with per-request progress bars
    - Recent events log
    - Config footer
    """

    max_request_rows = 8

    def __init__(self, state: SimulationState, console: Console | None = None):
        self.state = state
        self.console = console or Console()
        self._live: Live | None = None

    def __enter__(self) -> SimulatorDisplay:
        self._live = Live(
            self._build_layout(),
            console=self.console,
            refresh_per_second=10,
            screen=False,
        )
        self._live.__enter__()
        return self

    def __exit__(self, *args) -> None:
        if self._live:
            self._live.__exit__(*args)
            self._live = None

    def refresh(self) -> None:
        """Redraw from the current state."""
        if self._live:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Panel:
        s = self.state
        request_rows = min(len(s.requests), self.max_request_rows) or 1

        layout = Layout()
        layout.split_column(
            Layout(name="queue", size=4),
            Layout(name="requests", size=2 + request_rows),
            Layout(name="events", size=7),
            Layout(name="config", size=3),
        )
        layout["queue"].update(self._build_queue_section())
        layout["requests"].update(self._build_requests_section())
        layout["events"].update(self._build_events_section())
        layout["config"].update(self._build_config_section())

        return Panel(
            layout,
            title="[bold cyan]ingestcue-sim[/bold cyan]",
            border_style="cyan",
        )

    def _build_queue_section(self) -> Panel:
        s = self.state

        stats = Table.grid(expand=True, padding=(0, 2))
        for _ in range(4):
            stats.add_column(justify="left")
        stats.add_row(
            f"[dim]Queued:[/dim] [bold]{s.queued:,}[/bold]",
            f"[dim]In flight:[/dim] [bold yellow]{s.in_flight}[/bold yellow]",
            f"[dim]Done:[/dim] [bold green]{s.done:,}[/bold green]",
            f"[dim]Failed:[/dim] [bold red]{s.failed}[/bold red]",
        )

        stats2 = Table.grid(expand=True, padding=(0, 2))
        for _ in range(3):
            stats2.add_column(justify="left")
        stats2.add_row(
            f"[dim]Retrying:[/dim] [bold magenta]{s.retrying}[/bold magenta]",
            f"[dim]Progress:[/dim] [bold]{s.progress * 100:.0f}%[/bold]",
            f"[dim]Throughput:[/dim] [bold]{s.throughput:.2f}/s[/bold]",
        )

        content = Table.grid(expand=True)
        content.add_row(stats)
        content.add_row(stats2)
        return Panel(content, title="[bold]Queue[/bold]", border_style="blue")

    def _build_requests_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Request", width=14)
        table.add_column("Priority", width=8)
        table.add_column("Units", width=22)
        table.add_column("Status", width=12)

        priority_styles = {"HIGH": "red", "MEDIUM": "yellow", "LOW": "dim"}
        status_styles = {
            "completed": "green",
            "triggered": "yellow",
            "partial": "magenta",
            "failed": "red",
        }

        # Unfinished requests first, then most recent
        rows = sorted(s.requests.values(), key=lambda r: (r.finished, -r.submitted_at))
        for req in rows[:self.max_request_rows]:
            p_style = priority_styles.get(req.priority, "white")
            st_style = status_styles.get(req.overall_status, "dim")
            bar = self._progress_bar(req.fraction, 10)
            table.add_row(
                f"[bold]{req.request_id}[/bold]",
                f"[{p_style}]{req.priority}[/{p_style}]",
                f"{bar} {req.done_units + req.failed_units}/{req.total_units}",
                f"[{st_style}]{req.overall_status}[/{st_style}]",
            )

        if not s.requests:
            table.add_row("[dim]No requests yet[/dim]", "", "", "")
        elif len(rows) > self.max_request_rows:
            table.add_row("", "", f"[dim]... and {len(rows) - self.max_request_rows} more[/dim]", "")

        return Panel(table, title="[bold]Requests[/bold]", border_style="blue")

    def _build_events_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Time", width=10, style="dim")
        table.add_column("Event", width=12)
        table.add_column("Unit", width=14)
        table.add_column("Priority", width=8)
        table.add_column("Details")

        event_styles = {
            "done": "green",
            "failed": "red",
            "started": "yellow",
            "retrying": "magenta",
            "submitted": "dim",
        }
        for event in s.events[:5]:
            style = event_styles.get(event.event_type, "white")
            table.add_row(
                event.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{event.event_type}[/{style}]",
                event.unit_id[:12],
                event.priority or "",
                event.details[:30],
            )

        if not s.events:
            table.add_row("[dim]No events yet[/dim]", "", "", "", "")

        return Panel(table, title="[bold]Recent Events[/bold]", border_style="blue")

    def _build_config_section(self) -> Panel:
        s = self.state

        text = Text()
        text.append("Scenario: ", style="dim")
        text.append(s.scenario_name, style="bold")
        text.append("  Cooldown: ", style="dim")
        text.append(f"{s.cooldown:g}s", style="bold")
        text.append("  Work: ", style="dim")
        text.append(f"{s.work_duration:g}s", style="bold")
        text.append("  Batch: ", style="dim")
        text.append(str(s.batch_size), style="bold")
        text.append("  Error: ", style="dim")
        text.append(f"{s.error_rate*100:.0f}%", style="bold red" if s.error_rate > 0 else "bold")
        text.append("    Ctrl+C to stop", style="dim")

        return Panel(text, title="[bold]Config[/bold]", border_style="dim")

    @staticmethod
    def _progress_bar(pct: float, width: int = 10) -> str:
        """Render a fraction as a fixed-width block bar."""
        pct = min(1.0, max(0.0, pct))
        filled = int(pct * width)
        empty = width - filled
        color = "green" if pct >= 1.0 else "yellow"
        return f"[{color}]{'█' * filled}{'░' * empty}[/{color}]"


def print_simple_stats(state: SimulationState) -> None:
    """Print a one-line progress summary without the TUI."""
    s = state
    finished = sum(1 for r in s.requests.values() if r.finished)
    print(
        f"\r[{finished}/{s.submitted_requests} requests] "
        f"Q:{s.queued} F:{s.in_flight} ✓:{s.done} ✗:{s.failed} R:{s.retrying} "
        f"({s.progress * 100:.0f}%) {s.throughput:.2f}/s",
        end="",
        flush=True,
    )
