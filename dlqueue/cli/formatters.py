"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from dlqueue.models.batch import Batch
from dlqueue.models.config import EngineConfig
from dlqueue.models.job import Job, JobStatus
from dlqueue.models.stats import SessionStats
from dlqueue.utils.formatting import format_age, format_duration

_STATUS_COLORS = {
    JobStatus.PENDING: "dim",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.CONVERTING: "magenta",
    JobStatus.COMPLETED: "green",
    JobStatus.ERROR: "red",
    JobStatus.PAUSED: "yellow",
}

_CATEGORY_SUGGESTIONS = {
    "robot-check": "• Browser cookies will be used for the next hour; run `dlqueue resume` or retry.",
    "access-denied": "• The item is private or needs a signed-in browser session.",
    "restricted-format": "• Try a lower resolution with -r or switch to --audio.",
    "file-permission": "• Check write permissions and free space of the output directory.",
    "not-found": "• Double-check the URL; the item may have been removed.",
    "platform-error": "• The site is having trouble; try again in a few minutes.",
    "launch-failure": "• Run `dlqueue diagnose` to check that yt-dlp and ffmpeg are installed.",
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `dlqueue init --force` to recreate it with defaults.",
        ],
        "BinaryNotFoundError": [
            "• Install yt-dlp and ffmpeg, or put them on your PATH.",
            "• Point `yt_dlp_path` / `ffmpeg_path` at the executables in the config.",
            "• Run `dlqueue diagnose` to see what was found.",
        ],
        "LaunchFailure": [
            "• The external tool could not be started.",
            "• Run `dlqueue diagnose` to check your installation.",
        ],
        "ProcessFailure": [
            "• Run `dlqueue list` to see why each download failed.",
            "• Full tool output is kept in the logs folder of the config directory.",
            "• Run `dlqueue retry` once the cause is fixed.",
        ],
        "PlaylistAnalysisError": [
            "• Make sure the URL points at a public playlist.",
            "• The site may be asking for verification; retry in a few minutes.",
        ],
        "VideoAnalysisError": [
            "• Check that the URL opens in a browser.",
            "• Pass a file name with -n to skip the lookup.",
        ],
        "JobConflictError": [
            "• This item is already in the queue or history.",
            "• Use `dlqueue list` to inspect it and `dlqueue remove` to clear it.",
        ],
        "InvalidJobError": [
            "• Check the URL and the output name you provided.",
        ],
        "ClientConnectorError": [
            "• A network connection issue occurred.",
            "• Check your internet connection.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )
    if category := getattr(error, "category", None):
        if hint := _CATEGORY_SUGGESTIONS.get(category):
            suggestions = [hint, *suggestions]

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def suggestion_for_category(category: str | None) -> str | None:
    return _CATEGORY_SUGGESTIONS.get(category or "")


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration file contents."""
    console = Console()
    content = "\n".join(f"{key} = {value}" for key, value in config_data.items())
    console.print(
        Panel(
            content or "[dim](defaults)[/dim]",
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_settings_table(config: EngineConfig):
    """Displays a summary of the effective settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Concurrent Downloads:", str(config.max_concurrent))
    table.add_row(
        "Playlist Gate:",
        str(config.batch_concurrency) if config.batch_gate else "✗ Disabled",
    )
    table.add_row("Output Directory:", f"[dim]{config.output_dir}[/dim]")
    if config.media_format.value == "audio":
        table.add_row("Format:", f"audio ({config.audio_format})")
    else:
        table.add_row("Format:", f"video ({config.resolution or 'best'})")
    table.add_row("Cookie Browser:", config.cookie_browser)
    table.add_row("M3U Playlists:", "✗ Disabled" if config.no_m3u else "✓ Enabled")

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_jobs_table(jobs: list[Job], batches: list[Batch] | None = None):
    """Displays persisted jobs grouped under their playlists."""
    console = Console()
    if not jobs:
        console.print("[dim]The queue is empty.[/dim]")
        return

    titles = {batch.id: batch.title for batch in batches or []}
    table = Table(box=box.ROUNDED)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("Playlist", style="yellow")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Added", style="dim")
    table.add_column("Details")

    for job in jobs:
        color = _STATUS_COLORS.get(job.status, "white")
        details = ""
        if job.status is JobStatus.ERROR:
            details = f"[red]{job.last_error or ''}[/red]"
        elif job.output_path:
            details = f"[dim]{job.output_path}[/dim]"
        table.add_row(
            job.id,
            job.output_base_name,
            titles.get(job.group_id or "", job.group_id or ""),
            f"[{color}]{job.status.value}[/{color}]",
            job.progress,
            format_age(job.created_at),
            details,
        )
    console.print(table)


def print_summary_panel(stats: SessionStats):
    """Displays the final summary of a download session."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row("✓ Downloaded:", f"[bold green]{stats.jobs_completed}[/bold green]")
    if stats.jobs_failed > 0:
        stats_table.add_row("✗ Failed:", f"[bold red]{stats.jobs_failed}[/bold red]")
        for category, count in sorted(stats.errors_by_category.items()):
            stats_table.add_row("", f"[red]{count}[/red] [dim]{category}[/dim]")
    if stats.jobs_removed > 0:
        stats_table.add_row("○ Removed:", f"[yellow]{stats.jobs_removed}[/yellow]")

    stats_table.add_row("", "")
    stats_table.add_row("Peak Concurrent:", f"[green]{stats.peak_concurrent}[/green]")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(stats.elapsed)}[/blue]")

    failed = stats.jobs_failed > 0
    console.print()
    console.print(
        Panel(
            stats_table,
            title="[bold]Session Complete[/bold]" if not failed else "[bold]Session Finished With Errors[/bold]",
            border_style="green" if not failed else "yellow",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
