"""
Manages a Rich Live display for concurrent downloads.
Shows a session header, running statistics, playlist progress and one bar per
active job, all driven by engine and batch events.
"""

import asyncio
import logging

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)
from rich.table import Table
from rich.text import Text

from dlqueue.core.events import BatchEvent, Event, EventKind, JobEvent, Subscription
from dlqueue.models.job import JobStatus
from dlqueue.models.stats import SessionStats
from dlqueue.utils.formatting import format_duration, parse_percent

log = logging.getLogger("dlqueue")

_STATUS_STYLES = {
    JobStatus.PENDING: "dim",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.CONVERTING: "magenta",
    JobStatus.PAUSED: "yellow",
}


class ProgressManager:
    """
    Renders engine events. Feed it with ``consume(subscription)`` or call
    ``handle_event`` directly; it keeps ``stats`` up to date either way.
    """

    def __init__(self, console: Console, stats: SessionStats | None = None, quiet: bool = False):
        self.console = console
        self.stats = stats or SessionStats()
        self.quiet = quiet

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=20),
            TextColumn("{task.fields[progress]:>10}"),
            "•",
            TextColumn("[dim]{task.fields[size]}[/dim]"),
            "•",
            TextColumn("[magenta]{task.fields[speed]}[/magenta]"),
            "•",
            TextColumn("ETA {task.fields[eta]}"),
            console=console,
            transient=False,
        )

        self.overall_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=console,
        )

        self._live: Live | None = None
        self._layout: Layout | None = None
        self._titles: dict[str, str] = {}
        self._tasks: dict[str, TaskID] = {}
        self._batches: dict[str, tuple[str, BatchEvent | None]] = {}
        self._overall_task_id: TaskID | None = None
        self._total = 0

    def set_title(self, job_id: str, title: str) -> None:
        """Sets the label shown for a job instead of its id."""
        self._titles[job_id] = title

    def track_batch(self, batch_id: str, title: str) -> None:
        self._batches[batch_id] = (title, None)

    def initialize_session(self, total_jobs: int) -> None:
        self._total = total_jobs
        self.stats.jobs_submitted = total_jobs
        if not self.quiet:
            self._overall_task_id = self.overall_progress.add_task(
                "Overall Progress", total=max(total_jobs, 1), start=True
            )

    def add_to_total(self, count: int) -> None:
        self._total += count
        self.stats.jobs_submitted += count
        if self._overall_task_id is not None:
            self.overall_progress.update(self._overall_task_id, total=max(self._total, 1))

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def consume(self, subscription: Subscription) -> None:
        """Renders events until the subscription is closed."""
        async for event in subscription:
            try:
                self.handle_event(event)
            except Exception as e:
                log.debug(f"Progress display failed on {event.kind.value}: {e}")

    def handle_event(self, event: Event) -> None:
        if isinstance(event, BatchEvent):
            self._handle_batch_event(event)
        else:
            self._handle_job_event(event)
        self._update_display()

    def _label(self, job_id: str) -> str:
        label = self._titles.get(job_id, job_id)
        return label if len(label) <= 45 else label[:42] + "..."

    def _handle_job_event(self, event: JobEvent) -> None:
        job_id = event.job_id
        if event.kind is EventKind.PROGRESS and event.status is not None:
            self.stats.record_status(job_id, event.status)
            if event.status.is_active:
                self._update_task(event)
            else:
                self._remove_task(job_id)
            return

        self._remove_task(job_id)
        label = self._label(job_id)
        if event.kind is EventKind.COMPLETED:
            self.stats.record_completed(job_id)
            log.info(f"[green]✓ Downloaded:[/green] {label}")
        elif event.kind is EventKind.ERROR:
            self.stats.record_failed(job_id, event.error_category)
            log.error(f"[red]✗ Failed:[/red] {label}: {event.error}")
            if event.log_path:
                log.info(f"  [dim]Full log: {event.log_path}[/dim]")
        elif event.kind is EventKind.REMOVED:
            self.stats.record_removed(job_id)
            log.info(f"[yellow]○ Removed:[/yellow] {label}")
        self._advance_overall()

    def _update_task(self, event: JobEvent) -> None:
        style = _STATUS_STYLES.get(event.status, "white")
        percent = parse_percent(event.progress)
        fields = {
            "progress": f"[{style}]{event.progress or ''}{'%' if percent is not None else ''}[/{style}]",
            "size": event.total_size or "-",
            "speed": event.speed or "-",
            "eta": event.eta or "--:--",
        }
        task_id = self._tasks.get(event.job_id)
        if task_id is None:
            task_id = self.progress.add_task(
                self._label(event.job_id), total=100, start=True, **fields
            )
            self._tasks[event.job_id] = task_id
        if percent is None:
            # Phase labels such as "Converting" have no measurable progress
            self.progress.update(task_id, total=None, **fields)
        else:
            self.progress.update(task_id, total=100, completed=percent, **fields)

    def _remove_task(self, job_id: str) -> None:
        task_id = self._tasks.pop(job_id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

    def _advance_overall(self) -> None:
        if self._overall_task_id is None:
            return
        done = self.stats.jobs_completed + self.stats.jobs_failed + self.stats.jobs_removed
        self.overall_progress.update(self._overall_task_id, completed=done)

    def _handle_batch_event(self, event: BatchEvent) -> None:
        title, _ = self._batches.get(event.batch_id, (event.batch_id, None))
        self._batches[event.batch_id] = (title, event)
        if event.kind is EventKind.BATCH_FINISHED:
            progress = event.progress
            log.info(
                f"[bold green]✓ Playlist finished:[/bold green] {title} "
                f"({progress.completed} completed, {progress.failed} failed)"
            )

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="stats", size=7),
            Layout(name="batches", size=5),
            Layout(name="progress", ratio=1),
        )
        return layout

    def _generate_header(self) -> Panel:
        header_text = Text()
        header_text.append("⬇ dlqueue ", style="bold cyan")
        header_text.append("│ ", style="dim")
        header_text.append(f"Session: {format_duration(self.stats.elapsed)}", style="yellow")
        return Panel(header_text, border_style="cyan")

    def _generate_stats_panel(self) -> Panel:
        stats_table = Table.grid(padding=(0, 2))
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        stats_table.add_row(
            "Downloaded:",
            f"[green]{self.stats.jobs_completed}[/green]",
            "Failed:",
            f"[red]{self.stats.jobs_failed}[/red]",
        )
        stats_table.add_row(
            "Active:",
            f"[cyan]{self.stats.active_count}[/cyan]",
            "Peak:",
            f"[magenta]{self.stats.peak_concurrent}[/magenta]",
        )
        combined = Table.grid()
        combined.add_row(stats_table)
        if self._overall_task_id is not None:
            combined.add_row(self.overall_progress)
        return Panel(combined, title="[bold]Session Statistics[/bold]", border_style="blue")

    def _generate_batch_panel(self) -> Panel:
        if not self._batches:
            body = Text("No playlists in this session.", style="dim italic", justify="center")
        else:
            body = Table.grid(padding=(0, 2))
            body.add_column(style="yellow")
            body.add_column(justify="right")
            for title, event in list(self._batches.values())[-3:]:
                if event is None:
                    body.add_row(title, "[dim]queued[/dim]")
                    continue
                progress = event.progress
                body.add_row(
                    title,
                    f"{progress.completed + progress.failed}/{progress.total} "
                    f"([cyan]{progress.percentage:.0f}%[/cyan])",
                )
        return Panel(body, title="[bold]Playlists[/bold]", border_style="green")

    def _generate_progress_panel(self) -> Panel:
        if not self._tasks:
            return Panel(
                Text("Waiting for downloads to start...", style="dim italic", justify="center"),
                title="[bold]Active Downloads[/bold]",
                border_style="green",
            )
        return Panel(
            self.progress,
            title=f"[bold]Active Downloads ({len(self._tasks)})[/bold]",
            border_style="green",
        )

    def _update_display(self) -> None:
        if self.quiet or not self._layout:
            return
        self._layout["header"].update(self._generate_header())
        self._layout["stats"].update(self._generate_stats_panel())
        self._layout["batches"].update(self._generate_batch_panel())
        self._layout["progress"].update(self._generate_progress_panel())

    async def __aenter__(self):
        if self.quiet:
            return self
        self._layout = self._create_layout()
        self._update_display()
        self._live = Live(
            self._layout,
            console=self.console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live and not self.quiet:
            await asyncio.sleep(0.2)
            self._live.stop()
