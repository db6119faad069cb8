"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import hashlib
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import aiohttp
import typer
from rich.console import Console
from rich.logging import RichHandler

from dlqueue import __version__
from dlqueue.core import BatchCoordinator, DownloadEngine, EventKind, JobEvent
from dlqueue.exceptions import DlqueueError, JobConflictError, ProcessFailure, VideoAnalysisError
from dlqueue.media import (
    FFMPEG,
    YT_DLP,
    BinaryResolver,
    CommandBuilder,
    ErrorCategory,
    PlaylistAnalyzer,
    ProcessSupervisor,
    VideoAnalyzer,
    infer_kind,
)
from dlqueue.models import (
    EngineConfig,
    Job,
    JobKind,
    JobStatus,
    MediaSelector,
    MediaType,
    SessionStats,
)
from dlqueue.storage import ConfigManager, CookieHints, JobStore, LogSink
from dlqueue.utils.formatting import parse_selection
from dlqueue.utils.path import safe_name
from dlqueue.utils.playlist import generate_m3u

from .formatters import (
    print_config,
    print_jobs_table,
    print_settings_table,
    print_summary_panel,
    suggestion_for_category,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("dlqueue")

app = typer.Typer(
    name="dlqueue",
    help=(
        "A concurrent download queue for yt-dlp and ffmpeg. Use 'dlqueue"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "dlqueue"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"
LOG_DIR = CONFIG_DIR / "logs"
COOKIE_STATE_FILE = CONFIG_DIR / "cookie_state.json"


@dataclass
class Runtime:
    """Everything one CLI session needs, wired from a loaded config."""

    config: EngineConfig
    store: JobStore
    log_sink: LogSink
    cookie_hints: CookieHints
    resolver: BinaryResolver
    engine: DownloadEngine
    coordinator: BatchCoordinator


def _load_config(cli_options: dict | None = None) -> EngineConfig:
    return ConfigManager(CONFIG_FILE).load_config(cli_options)


def _create_runtime(config: EngineConfig) -> Runtime:
    store = JobStore(CONFIG_DIR)
    log_sink = LogSink(LOG_DIR, config.log_retention_hours, config.error_log_retention_days)
    cookie_hints = CookieHints(COOKIE_STATE_FILE, config.cookie_browser)
    resolver = BinaryResolver(
        overrides={YT_DLP: config.yt_dlp_path, FFMPEG: config.ffmpeg_path},
        bin_dir=Path(config.bin_dir) if config.bin_dir else None,
    )
    supervisor = ProcessSupervisor(resolver, config.stderr_tail_lines, config.terminate_timeout)
    engine = DownloadEngine(
        store,
        supervisor,
        CommandBuilder(config, cookie_hints),
        log_sink=log_sink,
        max_concurrent=config.max_concurrent,
    )
    coordinator = BatchCoordinator(engine, store, batch_gate=config.batch_gate)
    return Runtime(config, store, log_sink, cookie_hints, resolver, engine, coordinator)


def _cli_options(**options) -> dict:
    return {key: value for key, value in options.items() if value is not None}


def _job_id_for(url: str, output_dir: Path) -> str:
    digest = hashlib.sha1(f"{url}\0{output_dir}".encode()).hexdigest()
    return digest[:12]


def _default_base_name(url: str) -> str:
    """A readable file name for a URL when the user did not give one."""
    parsed = urlparse(url)
    if video_ids := parse_qs(parsed.query).get("v"):
        return safe_name(f"video_{video_ids[0]}")
    parts = [p for p in parsed.path.split("/") if p]
    if parts:
        return safe_name(Path(parts[-1]).stem or parts[-1])
    return f"download_{hashlib.sha1(url.encode()).hexdigest()[:8]}"


async def _base_name_for(url: str, analyzer: VideoAnalyzer | None) -> str:
    """Names the output after the video's title, or after the URL when that fails."""
    fallback = _default_base_name(url)
    if analyzer is None or infer_kind(url) is JobKind.STREAM_REMUX:
        return fallback
    try:
        info = await analyzer.analyze(url)
    except VideoAnalysisError as e:
        log.warning(
            f"[yellow]Could not look up the title of {url}; saving as '{fallback}'.[/yellow] "
            f"[dim]({e.category or 'unknown'})[/dim]"
        )
        return fallback
    return safe_name(info.title, fallback=fallback)


def _raise_if_failed(stats: SessionStats) -> None:
    """Turns failed downloads into a non-zero exit with a hint for the most common cause."""
    if not stats.jobs_failed:
        return
    category = max(stats.errors_by_category, key=stats.errors_by_category.get)
    raise ProcessFailure(
        f"{stats.jobs_failed} download(s) failed. Failed jobs stay in the queue.",
        category=category,
    )


@asynccontextmanager
async def _session(runtime: Runtime, progress_manager: ProgressManager):
    """
    Renders engine and batch events for the duration of the block, then
    stops any remaining processes so their jobs are saved as paused.
    """
    engine = runtime.engine

    def _on_error(event: JobEvent) -> None:
        if event.error_category == ErrorCategory.ROBOT_CHECK.value:
            runtime.cookie_hints.record_block()
        if hint := suggestion_for_category(event.error_category):
            log.info(f"  [dim]{hint}[/dim]")

    remove_listener = engine.events.add_listener(_on_error, [EventKind.ERROR])
    job_events = engine.subscribe()
    batch_events = runtime.coordinator.events.subscribe()
    consumers = [
        asyncio.create_task(progress_manager.consume(job_events)),
        asyncio.create_task(progress_manager.consume(batch_events)),
    ]
    try:
        await runtime.log_sink.clean_old_logs()
        yield
    finally:
        remove_listener()
        await runtime.coordinator.close()
        await engine.shutdown()
        job_events.close()
        batch_events.close()
        await asyncio.gather(*consumers, return_exceptions=True)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """dlqueue: concurrent media downloads"""
    if version:
        console.print(f"[bold]dlqueue[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("dlqueue").setLevel(log_level)

    if show_config:
        config_manager = ConfigManager(CONFIG_FILE)
        print_config(CONFIG_FILE, config_manager.get_config_as_dict())
        print_settings_table(config_manager.load_config())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    output_dir: str | None = typer.Option(
        None, "--output", "-o", help="Default download directory."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Write a configuration file with default settings."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    ConfigManager(CONFIG_FILE).save_new_config(_cli_options(output_dir=output_dir))
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to download! Try: [cyan]dlqueue get <URL>[/cyan]")


@app.command(name="get")
def get_command(
    urls: list[str] = typer.Argument(..., help="One or more media URLs."),  # noqa: B008
    output_dir: str | None = typer.Option(
        None, "-o", "--output", help="Directory to save into (overrides config)."
    ),
    name: str | None = typer.Option(
        None, "-n", "--name", help="Output file name without extension (single URL only)."
    ),
    audio: bool | None = typer.Option(
        None, "--audio/--video", help="Extract audio instead of keeping the video."
    ),
    resolution: str | None = typer.Option(
        None, "-r", "--resolution", help="Preferred video height, e.g. 720p."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads (1-9)."
    ),
    lookup: bool = typer.Option(
        True, "--lookup/--no-lookup", help="Look up each video's title to name its file."
    ),
):
    """Download one or more URLs."""
    if name and len(urls) > 1:
        console.print("[red]✗ --name can only be used with a single URL.[/red]")
        raise typer.Exit(code=1)

    media_format = None if audio is None else (MediaType.AUDIO if audio else MediaType.VIDEO)
    config = _load_config(
        _cli_options(
            output_dir=output_dir,
            media_format=media_format,
            resolution=resolution,
            max_concurrent=workers,
        )
    )

    async def _get_async():
        runtime = _create_runtime(config)
        stats = SessionStats()
        async with (
            ProgressManager(console, stats) as progress_manager,
            _session(runtime, progress_manager),
        ):
            await runtime.engine.start()
            target_dir = Path(config.output_dir).expanduser()
            quality = config.resolution if config.media_format is MediaType.VIDEO else config.audio_quality
            analyzer = VideoAnalyzer(runtime.resolver, runtime.cookie_hints) if lookup else None
            used_names: set[str] = set()
            submitted = 0
            for url in dict.fromkeys(urls):
                job_id = _job_id_for(url, target_dir)
                if existing := runtime.engine.get(job_id):
                    log.warning(
                        f"[yellow]Already in the queue ({existing.status.value}): {url}[/yellow] "
                        f"[dim]Use `dlqueue remove {job_id}` to clear it.[/dim]"
                    )
                    continue
                base_name = safe_name(name) if name else await _base_name_for(url, analyzer)
                if base_name in used_names:
                    base_name = f"{base_name} ({job_id[:6]})"
                used_names.add(base_name)
                job = Job(
                    id=job_id,
                    source_locator=url,
                    output_directory=str(target_dir),
                    output_base_name=base_name,
                    kind=infer_kind(url),
                    media=MediaSelector(type=config.media_format, quality=quality or None),
                )
                try:
                    await runtime.engine.submit(job)
                except JobConflictError:
                    log.warning(f"[yellow]Already in the queue: {url}[/yellow]")
                    continue
                progress_manager.set_title(job.id, job.output_base_name)
                submitted += 1
            progress_manager.initialize_session(submitted)
            await runtime.engine.wait_idle()
        print_summary_panel(stats)
        _raise_if_failed(stats)

    asyncio.run(_get_async())


@app.command()
def playlist(
    url: str = typer.Argument(..., help="Playlist URL."),
    output_dir: str | None = typer.Option(
        None, "-o", "--output", help="Root directory; a subfolder is created per playlist."
    ),
    select: str | None = typer.Option(
        None, "--select", "-s", help="Items to download, e.g. '1,3-5' (default: all)."
    ),
    audio: bool | None = typer.Option(
        None, "--audio/--video", help="Extract audio instead of keeping the video."
    ),
    resolution: str | None = typer.Option(
        None, "-r", "--resolution", help="Preferred video height, e.g. 720p."
    ),
    batch_limit: int | None = typer.Option(
        None, "--batch-limit", help="Items of this playlist in flight at once (0 = no limit)."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads (1-9)."
    ),
    no_m3u: bool | None = typer.Option(
        None, "--no-m3u/--m3u", help="Do not write an .m3u file when the playlist finishes."
    ),
):
    """Download a playlist as one batch."""
    media_format = None if audio is None else (MediaType.AUDIO if audio else MediaType.VIDEO)
    config = _load_config(
        _cli_options(
            output_dir=output_dir,
            media_format=media_format,
            resolution=resolution,
            batch_concurrency=batch_limit,
            max_concurrent=workers,
            no_m3u=no_m3u,
        )
    )

    async def _playlist_async():
        runtime = _create_runtime(config)
        quality = config.resolution if config.media_format is MediaType.VIDEO else config.audio_quality
        media = MediaSelector(type=config.media_format, quality=quality or None)
        analyzer = PlaylistAnalyzer(runtime.resolver, runtime.cookie_hints)
        console.print("[cyan]Analyzing playlist...[/cyan]")
        try:
            batch = await analyzer.analyze(url, Path(config.output_dir).expanduser(), media)
        except DlqueueError as e:
            if getattr(e, "category", None) == ErrorCategory.ROBOT_CHECK.value:
                runtime.cookie_hints.record_block()
            raise

        if select:
            try:
                chosen = parse_selection(select, len(batch.members))
            except ValueError as e:
                console.print(f"[red]✗ Invalid selection: {e}[/red]")
                raise typer.Exit(code=1) from e
            for member in batch.members:
                member.selected = member.index in chosen

        stats = SessionStats()
        async with (
            ProgressManager(console, stats) as progress_manager,
            _session(runtime, progress_manager),
        ):
            await runtime.engine.start()
            await runtime.coordinator.start()
            await runtime.coordinator.restore()
            for member in batch.members:
                progress_manager.set_title(batch.job_id_for(member), f"{member.index:02d} - {member.title}")
            progress_manager.track_batch(batch.id, batch.title)
            await runtime.coordinator.submit_batch(batch)
            progress_manager.initialize_session(len(batch.counted_members))
            await runtime.coordinator.wait_finished(batch.id)

        print_summary_panel(stats)
        progress = runtime.coordinator.progress(batch.id)
        if progress and progress.finished and progress.completed and not config.no_m3u:
            generate_m3u(Path(batch.output_directory), safe_name(batch.title))
        _raise_if_failed(stats)

    asyncio.run(_playlist_async())


@app.command()
def resume(
    job_ids: list[str] | None = typer.Argument(  # noqa: B008
        None, help="Jobs to resume (default: every paused job)."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads (1-9)."
    ),
):
    """Resume interrupted or paused downloads."""
    config = _load_config(_cli_options(max_concurrent=workers))

    async def _resume_async():
        runtime = _create_runtime(config)
        stats = SessionStats()
        async with (
            ProgressManager(console, stats) as progress_manager,
            _session(runtime, progress_manager),
        ):
            jobs = await runtime.engine.start()
            await runtime.coordinator.start()
            batches = await runtime.coordinator.restore()
            for batch in batches:
                progress_manager.track_batch(batch.id, batch.title)
                for member in batch.members:
                    progress_manager.set_title(
                        batch.job_id_for(member), f"{member.index:02d} - {member.title}"
                    )

            wanted = set(job_ids or [])
            resumed = 0
            for job in jobs:
                if wanted and job.id not in wanted:
                    continue
                if job.status is JobStatus.PAUSED:
                    await runtime.engine.resume(job.id)
                    resumed += 1
                if not job.group_id:
                    progress_manager.set_title(job.id, job.output_base_name)

            pending = sum(1 for job in runtime.engine.jobs() if not job.status.is_terminal)
            if not pending:
                console.print("[dim]Nothing to resume.[/dim]")
            else:
                log.info(f"Resuming {resumed} paused job(s); {pending} job(s) in the queue.")
            progress_manager.initialize_session(pending)
            await runtime.engine.wait_idle()
        print_summary_panel(stats)
        _raise_if_failed(stats)

    asyncio.run(_resume_async())


@app.command(name="list")
def list_command():
    """Show the persisted queue and download history."""

    async def _list_async():
        store = JobStore(CONFIG_DIR)
        jobs = await store.load()
        batches = await store.load_batches()
        print_jobs_table(jobs, batches)

    asyncio.run(_list_async())


@app.command()
def retry(
    job_ids: list[str] | None = typer.Argument(  # noqa: B008
        None, help="Failed jobs to retry (default: every failed job)."
    ),
):
    """Queue failed downloads again and run them."""
    config = _load_config()

    async def _retry_async():
        runtime = _create_runtime(config)
        stats = SessionStats()
        async with (
            ProgressManager(console, stats) as progress_manager,
            _session(runtime, progress_manager),
        ):
            jobs = await runtime.engine.start(admit=False)
            await runtime.coordinator.start()
            await runtime.coordinator.restore()
            wanted = set(job_ids or [])
            retried = 0
            for job in jobs:
                if job.status is JobStatus.ERROR and (not wanted or job.id in wanted):
                    progress_manager.set_title(job.id, job.output_base_name)
                    if await runtime.engine.retry(job.id):
                        retried += 1
            if not retried:
                console.print("[dim]No failed jobs to retry.[/dim]")
            progress_manager.initialize_session(retried)
            await runtime.engine.wait_idle()
        print_summary_panel(stats)
        _raise_if_failed(stats)

    asyncio.run(_retry_async())


@app.command()
def remove(
    job_ids: list[str] | None = typer.Argument(  # noqa: B008
        None, help="Jobs to remove. Unfinished jobs are cancelled and their partial files deleted."
    ),
    finished: bool = typer.Option(
        False, "--finished", help="Remove every completed or failed job."
    ),
    batch_id: str | None = typer.Option(
        None, "--batch", help="Remove a whole playlist and its jobs."
    ),
):
    """Remove jobs from the queue and history."""
    if not job_ids and not finished and not batch_id:
        console.print("[red]✗ Nothing to remove.[/red] Give job ids, --finished or --batch.")
        raise typer.Exit(code=1)
    config = _load_config()

    async def _remove_async():
        runtime = _create_runtime(config)
        jobs = await runtime.engine.start(admit=False)
        await runtime.coordinator.restore(feed=False)
        # Lets playlists mark the members whose jobs are removed below
        await runtime.coordinator.start()
        removed = 0
        try:
            if batch_id:
                if await runtime.coordinator.remove_batch(batch_id):
                    console.print(f"[green]✓ Removed playlist '{batch_id}'.[/green]")
                else:
                    console.print(f"[yellow]No playlist with id '{batch_id}'.[/yellow]")
            targets = set(job_ids or [])
            if finished:
                targets.update(job.id for job in jobs if job.status.is_terminal)
            for job_id in targets:
                if runtime.engine.get(job_id) is None:
                    console.print(f"[yellow]Unknown job: {job_id}[/yellow]")
                    continue
                await runtime.engine.remove(job_id)
                removed += 1
        finally:
            await runtime.coordinator.close()
            await runtime.engine.shutdown()
        if removed:
            console.print(f"[green]✓ Removed {removed} job(s).[/green]")

    asyncio.run(_remove_async())


@app.command(name="clean-logs")
def clean_logs():
    """Delete old job logs and optimize the queue database."""
    config = _load_config()

    async def _clean_async():
        sink = LogSink(LOG_DIR, config.log_retention_hours, config.error_log_retention_days)
        deleted = await sink.clean_old_logs()
        console.print(f"[green]✓ Removed {deleted} old log file(s).[/green]")
        if await JobStore(CONFIG_DIR).vacuum():
            console.print("[green]✓ Queue database optimized.[/green]")
        else:
            console.print("[red]✗ Optimization failed.[/red]")

    asyncio.run(_clean_async())


@app.command()
def diagnose(
    reset_cookies: bool = typer.Option(
        False, "--reset-cookies", help="Forget a recorded verification block."
    ),
):
    """Diagnose common configuration, tool and connectivity issues."""
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    issues_found = False
    if CONFIG_FILE.is_file():
        console.print(f"[green]✓[/] Config file exists at: [dim]{CONFIG_FILE}[/dim]")
    else:
        console.print("[yellow]○[/] No config file; defaults are used. Run [cyan]dlqueue init[/cyan].")

    try:
        config = _load_config()
        console.print("[green]✓[/] Configuration is valid.")
    except DlqueueError as e:
        console.print(f"[red]✗ Configuration validation failed: {e}[/red]")
        raise typer.Exit(code=1) from e

    resolver = BinaryResolver(
        overrides={YT_DLP: config.yt_dlp_path, FFMPEG: config.ffmpeg_path},
        bin_dir=Path(config.bin_dir) if config.bin_dir else None,
    )
    for tool in (YT_DLP, FFMPEG):
        if resolver.available(tool):
            console.print(f"[green]✓[/] Found {tool}: [dim]{resolver.resolve(tool)}[/dim]")
        else:
            console.print(f"[red]✗ {tool} was not found.[/red]")
            issues_found = True

    cookie_hints = CookieHints(COOKIE_STATE_FILE, config.cookie_browser)
    if reset_cookies:
        cookie_hints.reset()
        console.print("[green]✓[/] Cleared the recorded verification block.")
    blocked, minutes = cookie_hints.status()
    if blocked:
        console.print(
            f"[yellow]○[/] Verification block recorded {minutes} min ago; "
            f"{config.cookie_browser} cookies are in use."
        )

    output_dir = Path(config.output_dir).expanduser()
    if output_dir.is_dir() and os.access(output_dir, os.W_OK):
        console.print(f"[green]✓[/] Output directory is writable: [dim]{output_dir}[/dim]")
    elif not output_dir.exists():
        console.print(f"[yellow]○[/] Output directory will be created: [dim]{output_dir}[/dim]")
    else:
        console.print(f"[red]✗ Output directory is not writable: {output_dir}[/red]")
        issues_found = True

    console.print("\n[dim]Testing connectivity...[/dim]")

    async def test_connection():
        try:
            timeout = aiohttp.ClientTimeout(total=10)
            async with (
                aiohttp.ClientSession(timeout=timeout) as session,
                session.get("https://www.youtube.com") as resp,
            ):
                if resp.status < 400:
                    console.print("[green]✓[/] Network connectivity looks good.")
                    return True
                console.print(f"[red]✗ Connectivity check failed (Status: {resp.status}).[/red]")
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            console.print(f"[red]✗ Connection test failed: {e}[/red]")
            return False

    if not asyncio.run(test_connection()):
        issues_found = True
    console.print()
    if not issues_found:
        console.print("[bold green]✓ All checks passed! Your setup looks good.[/bold green]\n")
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
