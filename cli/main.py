"""Meeting Bot CLI - Main Entry Point"""

import asyncio
import json
import signal
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel

from meetbot.config.logging import get_logger, setup_logging
from meetbot.config.settings import Settings
from meetbot.v1.core.exceptions import MeetBotException
from meetbot.v1.infra.jobs.runtime import JobSystem
from meetbot.v1.infra.jobs.schemas import EnqueueOptions

from .utils.formatting import (
    create_stats_table,
    create_status_panel,
    display_job,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

# Create main Typer app
app = typer.Typer(
    name="meetbot",
    help="🎙️ Meeting Bot - background job queue and workers",
    rich_markup_mode="rich",
)


def _load_settings() -> Settings:
    settings = Settings()
    setup_logging(settings)
    return settings


def _run(coro):
    """Run a coroutine, turning application errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except MeetBotException as e:
        print_error(e.message)
        if e.details:
            console.print(f"[dim]{json.dumps(e.details, default=str)}[/dim]")
        raise typer.Exit(1)


async def _with_system(settings: Settings, operation):
    jobs = JobSystem(settings)
    try:
        return await operation(jobs)
    finally:
        await jobs.database.close()


@app.command("init-db")
def init_db():
    """🗄️ Create the jobs table (development; use alembic in production)"""
    settings = _load_settings()

    async def create(jobs: JobSystem):
        await jobs.create_schema()

    _run(_with_system(settings, create))
    print_success("Database schema created")


@app.command()
def enqueue(
    job_type: str = typer.Argument(..., help="Job type, e.g. process-recording"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    queue: Optional[str] = typer.Option(None, "--queue", "-q", help="Target queue"),
    delay_ms: int = typer.Option(0, "--delay-ms", help="Delay before the job may run"),
    max_attempts: Optional[int] = typer.Option(
        None, "--max-attempts", help="Attempt ceiling for this job"
    ),
    dedupe_key: Optional[str] = typer.Option(
        None, "--dedupe-key", help="Skip if a live job holds this key"
    ),
):
    """➕ Enqueue a job"""
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON payload: {e}")
        raise typer.Exit(1)

    settings = _load_settings()
    options = EnqueueOptions(
        delay_ms=delay_ms, max_attempts=max_attempts, dedupe_key=dedupe_key
    )

    async def submit(jobs: JobSystem):
        return await jobs.service.submit(queue, job_type, parsed, options)

    response = _run(_with_system(settings, submit))

    if response.deduplicated:
        print_warning(f"Live job already exists: {response.job_id}")
    else:
        print_success(f"Enqueued job {response.job_id} ({response.status.value})")


@app.command()
def status(
    queue: Optional[str] = typer.Option(None, "--queue", "-q", help="Queue to report"),
):
    """📊 Show queue depth and job counts"""
    settings = _load_settings()

    async def collect(jobs: JobSystem):
        latency = await jobs.store.ping()
        stats = await jobs.service.get_job_stats(queue or settings.queue_name)
        return latency, stats

    latency, stats = _run(_with_system(settings, collect))
    data = stats.model_dump(mode="json")

    console.print(create_status_panel(data, latency))
    console.print(create_stats_table(data))


@app.command()
def inspect(job_id: UUID = typer.Argument(..., help="Job ID")):
    """🔍 Show one job"""
    settings = _load_settings()

    async def fetch(jobs: JobSystem):
        return await jobs.service.get_job(job_id)

    job = _run(_with_system(settings, fetch))
    display_job(job.model_dump(mode="json"))


@app.command()
def retry(job_id: UUID = typer.Argument(..., help="Job ID")):
    """🔁 Re-queue a failed job"""
    settings = _load_settings()

    async def requeue(jobs: JobSystem):
        return await jobs.service.retry_job(job_id)

    if not _run(_with_system(settings, requeue)):
        print_error(
            f"Job {job_id} is not eligible for retry "
            "(not failed, or a live job holds its dedupe key)"
        )
        raise typer.Exit(1)
    print_success(f"Job {job_id} re-queued")


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", help="Execution slots (default QUEUE_CONCURRENCY)"
    ),
    no_scheduler: bool = typer.Option(
        False, "--no-scheduler", help="Do not run the cron scheduler in this process"
    ),
):
    """⚙️ Run the worker pool and scheduler until SIGINT/SIGTERM"""
    settings = _load_settings()
    overrides = {}
    if concurrency is not None:
        overrides["queue_concurrency"] = concurrency
    if no_scheduler:
        overrides["scheduler_enabled"] = False
    if overrides:
        settings = settings.model_copy(update=overrides)

    print_info(
        f"Starting workers on queue '{settings.queue_name}' "
        f"with {settings.queue_concurrency} slots"
    )
    _run(_serve(settings))
    print_success("Workers stopped")


async def _serve(settings: Settings) -> None:
    jobs = JobSystem(settings)
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            logger.info("Shutdown signal received, draining workers")
            shutdown.set()

    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except (NotImplementedError, AttributeError):
            logger.warning("Could not install signal handler", signal=sig.name)

    try:
        await jobs.start()
        await shutdown.wait()
    finally:
        await jobs.close()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, AttributeError):
                pass


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    🎙️ Meeting Bot CLI

    Enqueue, inspect and retry background jobs, and run worker processes.
    """
    if version:
        console.print(Panel(
            f"🎙️ [bold cyan]Meeting Bot[/bold cyan]\n\n"
            f"• Version: [green]{Settings().version}[/green]",
            title="Version Info",
            border_style="cyan",
        ))
        raise typer.Exit()


if __name__ == "__main__":
    app()
