"""
Command line interface for the recurring schedule engine.

Commands:
    init-db       Create the engine tables (development only; use Alembic in production)
    worker        Run the expansion worker until interrupted
    run-once      Run queued jobs until none is runnable, then exit
    failed-jobs   List jobs kept in failed status
    retry-job     Re-queue a failed job
    serve         Run the HTTP API with uvicorn
"""

import signal
import sys

import click

from timeslot.src.config.settings import get_settings
from timeslot.src.utils.logging_config import init_logging


def _build_worker():
    from timeslot.src.db.database import SessionLocal, engine
    from timeslot.src.main import build_entity_registry
    from timeslot.src.services.expansion_worker import ExpansionWorker

    settings = get_settings()
    registry = build_entity_registry(settings, engine)
    return ExpansionWorker(SessionLocal, registry, settings)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Recurring time-slot schedule engine.

    Use 'timeslot COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)
    init_logging()


@cli.command("init-db")
def init_db_command() -> None:
    """Create the engine tables in the configured database."""
    from timeslot.src.db.database import init_db

    init_db()
    click.echo(click.style("Database tables created", fg="green"))


@cli.command()
def worker() -> None:
    """
    Run the expansion worker.

    Polls the recurring queue until stopped with Ctrl+C or SIGTERM.

    Example:

        timeslot worker
    """
    runner = _build_worker()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: runner.request_shutdown())

    click.echo(f"Starting expansion worker (queues: {', '.join(runner.queues)})")
    click.echo("Press Ctrl+C to stop")
    sys.exit(runner.run())


@cli.command("run-once")
@click.option("--max-jobs", type=int, default=None, help="Stop after this many jobs.")
def run_once(max_jobs) -> None:
    """Run queued jobs until the queue is empty."""
    count = _build_worker().drain(max_jobs=max_jobs)
    click.echo(f"Ran {count} job(s)")


@cli.command("failed-jobs")
@click.option("--queue", default=None, help="Only show jobs from this queue.")
@click.option("--limit", type=int, default=50, show_default=True)
def failed_jobs(queue, limit) -> None:
    """List jobs kept in failed status."""
    from timeslot.src.db.database import SessionLocal
    from timeslot.src.utils.job_queue import JobQueue

    db = SessionLocal()
    try:
        jobs = JobQueue(db).list_failed(queue, limit)
        if not jobs:
            click.echo("No failed jobs")
            return
        for job in jobs:
            click.echo(
                f"{job.id:>6}  {job.kind:<28} attempts {job.attempt}/{job.max_attempts}  "
                f"{job.finalized_at:%Y-%m-%d %H:%M}  {job.args}"
            )
            click.echo(f"        {click.style(job.last_error or '', fg='red')}")
    finally:
        db.close()


@cli.command("retry-job")
@click.argument("job_id", type=int)
@click.pass_context
def retry_job(ctx: click.Context, job_id: int) -> None:
    """Re-queue failed job JOB_ID."""
    from timeslot.src.db.database import SessionLocal
    from timeslot.src.services.exceptions import ServiceError
    from timeslot.src.utils.job_queue import JobQueue

    db = SessionLocal()
    try:
        JobQueue(db).retry(job_id)
    except ServiceError as e:
        click.echo(click.style("Error: ", fg="red", bold=True) + str(e))
        ctx.exit(1)
    finally:
        db.close()
    click.echo(f"Job {job_id} re-queued")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.option("--reload", is_flag=True, help="Reload on code changes (development).")
def serve(host, port, reload) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("timeslot.src.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """Main entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
