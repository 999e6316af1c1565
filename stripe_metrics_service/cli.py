"""CLI entrypoint for the Stripe metrics service."""

from __future__ import annotations

import asyncio
import json
import subprocess
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import typer
from redis.asyncio import Redis

from .config import Settings, get_settings
from .db.session import Database
from .jobs.models import JobState
from .jobs.queue import JobNotFoundError, JobQueue
from .logging_utils import configure_logging

app = typer.Typer(help="Stripe Metrics Service command line interface")


@asynccontextmanager
async def _job_queue(settings: Settings) -> AsyncIterator[JobQueue]:
    from .worker.celery_app import dispatch_scrape

    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield JobQueue(redis, dispatch_scrape, settings)
    finally:
        await redis.aclose()


@app.command()
def show_config() -> None:
    """Print the active configuration."""

    settings = get_settings()
    typer.echo(json.dumps(settings.masked(), indent=2))


@app.command()
def worker(
    log_level: str = typer.Option("INFO", help="Logging level"),
    concurrency: Optional[int] = typer.Option(None, help="Override WORKER_CONCURRENCY"),
) -> None:
    """Run the Celery worker pool."""

    from .worker.celery_app import run_worker

    configure_logging(log_level, get_settings().log_file)
    run_worker(log_level=log_level, concurrency=concurrency)


@app.command()
def submit(
    owner_id: str,
    api_key: str = typer.Option(..., prompt=True, hide_input=True, envvar="STRIPE_API_KEY", help="Stripe secret key"),
) -> None:
    """Enqueue a scrape job for OWNER_ID and print its id."""

    if not api_key.strip():
        typer.echo("A Stripe API key is required", err=True)
        raise typer.Exit(code=2)

    async def _submit() -> str:
        async with _job_queue(get_settings()) as queue:
            return await queue.submit(owner_id, api_key.strip())

    typer.echo(asyncio.run(_submit()))


@app.command()
def status(job_id: str) -> None:
    """Print the status of a job."""

    async def _status():
        async with _job_queue(get_settings()) as queue:
            return await queue.get_status(job_id)

    result = asyncio.run(_status())
    if result is None:
        typer.echo(f"Job {job_id} not found", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result, indent=2))


@app.command()
def watch(
    job_id: str,
    interval: Optional[float] = typer.Option(None, help="Seconds between polls"),
    timeout: Optional[float] = typer.Option(None, help="Give up after this many seconds"),
) -> None:
    """Poll a job until it completes or fails."""

    settings = get_settings()

    async def _watch():
        async with _job_queue(settings) as queue:
            return await queue.wait_for_terminal(
                job_id,
                interval=interval or settings.status_poll_interval_seconds,
                timeout=timeout or settings.status_poll_timeout_seconds,
            )

    try:
        job = asyncio.run(_watch())
    except JobNotFoundError:
        typer.echo(f"Job {job_id} not found", err=True)
        raise typer.Exit(code=1)
    except TimeoutError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=3)

    typer.echo(json.dumps(job.to_status(), indent=2))
    if job.state is JobState.FAILED:
        raise typer.Exit(code=1)


@app.command()
def clear_queue(
    purge_waiting: bool = typer.Option(True, help="Also drop waiting and delayed jobs and pending task messages"),
) -> None:
    """Remove failed and completed jobs from the registry."""

    async def _clear():
        async with _job_queue(get_settings()) as queue:
            failed = await queue.clean(JobState.FAILED)
            completed = await queue.clean(JobState.COMPLETED)
            waiting = await queue.clean(JobState.WAITING) if purge_waiting else 0
            delayed = await queue.clean(JobState.DELAYED) if purge_waiting else 0
            return failed, completed, waiting, delayed, await queue.counts()

    failed, completed, waiting, delayed, counts = asyncio.run(_clear())
    typer.echo(f"Removed {failed} failed jobs")
    typer.echo(f"Removed {completed} completed jobs")
    if purge_waiting:
        from .worker.celery_app import celery_app

        purged = celery_app.control.purge()
        typer.echo(f"Drained {waiting} waiting and {delayed} delayed jobs ({purged} task messages)")
    typer.echo(f"Current queue status: {json.dumps(counts)}")


@app.command()
def init_db() -> None:
    """Create tables directly from the ORM metadata."""

    async def _init() -> None:
        database = Database(get_settings().database_url)
        try:
            await database.create_all()
        finally:
            await database.dispose()

    asyncio.run(_init())
    typer.echo("Database tables created")


@app.command()
def migrate(direction: str = typer.Argument("upgrade"), revision: str = typer.Argument("head")) -> None:
    """Run Alembic migrations."""

    settings: Settings = get_settings()
    subprocess.run(["alembic", "-c", str(settings.alembic_ini_path), direction, revision], check=True)


if __name__ == "__main__":
    app()
