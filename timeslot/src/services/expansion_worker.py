"""
Background worker for recurring series expansion.

Claims jobs from the durable queue and runs their handlers:
- expand_recurring_series: expand a series up to a horizon date and
  materialize the new occurrences

Failure handling:
- Conflicts and validation problems cannot be fixed by retrying; the job
  is kept as failed right away with the error naming the cause
- Any other error is treated as transient; the job is retried with
  exponential backoff until its attempts run out
- Occurrences committed before a failure stay; the retry skips them
"""

import threading
from datetime import date
from typing import Callable, Dict, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from timeslot.src.config.settings import AppSettings, get_settings
from timeslot.src.models import Instance, Series, SeriesStatus
from timeslot.src.models.job import Job
from timeslot.src.services.entity_registry import EntityRegistry, check_template_drift
from timeslot.src.services.exceptions import (
    IncompleteExpansionError,
    OccurrenceConflictError,
    PermanentJobError,
    ValidationError,
)
from timeslot.src.services.materializer import Materializer
from timeslot.src.services.recurrence import expand
from timeslot.src.services.series_service import (
    EXPANSION_JOB_KIND,
    EXPANSION_PRIORITY,
    EXPANSION_QUEUE,
    SeriesService,
)
from timeslot.src.utils.job_queue import JobQueue
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("worker")

# Configuration
MAX_POLL_FAILURES = 5  # Max consecutive claim failures before giving up

# Errors a retry cannot fix
PERMANENT_ERRORS = (OccurrenceConflictError, PermanentJobError, ValidationError)


class ExpansionJobHandler:
    """
    Runs one expand_recurring_series job.

    Job args:
        series_id: Series to expand
        expand_until: ISO date horizon (default: configured horizon from today)
    """

    def __init__(self, db: Session, registry: EntityRegistry, settings: AppSettings):
        self.db = db
        self.registry = registry
        self.settings = settings

    def __call__(self, job: Job) -> Dict[str, object]:
        """
        Expand and materialize a series.

        Returns:
            Summary of the run

        Raises:
            PermanentJobError: If the job arguments are unusable
            OccurrenceConflictError: If an occurrence conflicts and the series
                does not skip conflicts
            IncompleteExpansionError: If some occurrences could not be written
        """
        args = job.args
        series_id = args.get("series_id")
        if series_id is None:
            raise PermanentJobError("Job arguments lack series_id")

        series = self.db.query(Series).filter(Series.id == series_id).first()
        if series is None:
            logger.info(f"Series {series_id} no longer exists, nothing to expand")
            return {"skipped": "series_not_found"}

        if not series.is_active:
            logger.info(
                f"Series {series_id} is {series.status.value}, skipping expansion",
                extra={"series_id": series_id, "status": series.status.value}
            )
            return {"skipped": series.status.value}

        definition = self.registry.get(series.entity_table)
        issues = check_template_drift(
            self.db, definition, series.entity_template, series.time_slot_field
        )
        if issues:
            series.status = SeriesStatus.NEEDS_ATTENTION
            series.status_reason = "; ".join(f"{i['field']}: {i['issue']}" for i in issues)
            self.db.commit()
            logger.warning(
                f"Series {series_id} template drifted from schema, marked needs_attention",
                extra={"series_id": series_id, "issues": issues}
            )
            return {"skipped": "schema_drift", "issues": issues}

        if args.get("expand_until"):
            horizon = date.fromisoformat(args["expand_until"])
        else:
            horizon = SeriesService(self.db, self.registry, settings=self.settings).default_horizon(
                series.timezone
            )
        if series.effective_until is not None:
            horizon = min(horizon, series.effective_until)

        existing = {
            row.occurrence_date for row in self.db.query(Instance.occurrence_date).filter(
                Instance.series_id == series_id
            ).all()
        }

        cap = self.settings.max_occurrences_per_pass
        occurrences = expand(
            series.rrule,
            series.anchor_local,
            series.duration,
            series.timezone,
            horizon,
            already_expanded_dates=existing,
            max_occurrences=cap,
        )
        capped = len(occurrences) >= cap
        reached = occurrences[-1].occurrence_date if capped else horizon

        result = Materializer(self.db, self.registry).materialize(series, occurrences)

        series = self.db.query(Series).filter(Series.id == series_id).first()
        if series.expanded_until is None or series.expanded_until < reached:
            series.expanded_until = reached

        if capped and not result.failed:
            # The rest of the window is picked up by a follow-up job
            JobQueue(self.db, self.settings).enqueue(
                EXPANSION_JOB_KIND,
                {"series_id": series_id, "expand_until": horizon.isoformat()},
                queue=EXPANSION_QUEUE,
                priority=EXPANSION_PRIORITY,
            )
        self.db.commit()

        if result.failed:
            raise IncompleteExpansionError(series_id, result.failed)

        summary = result.to_dict()
        summary["expanded_until"] = reached.isoformat()
        summary["continued"] = capped
        return summary


class ExpansionWorker:
    """
    Polling worker for the recurring queue.

    Each job runs in its own session from ``session_factory``.

    Attributes:
        poll_interval: Seconds between polls when the queue is empty
        queues: Queue names this worker takes work from
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: EntityRegistry,
        settings: Optional[AppSettings] = None,
        queues: Sequence[str] = (EXPANSION_QUEUE,),
    ):
        """
        Initialize the worker.

        Args:
            session_factory: Creates database sessions
            registry: Entity tables series may target
            settings: Retry and polling configuration
            queues: Queue names to consume
        """
        self._session_factory = session_factory
        self._registry = registry
        self.settings = settings or get_settings()
        self.queues = tuple(queues)
        self.poll_interval = self.settings.worker_poll_interval
        self._shutdown_event = threading.Event()
        self._consecutive_failures = 0
        self._handlers: Dict[str, Callable[[Session], Callable[[Job], object]]] = {
            EXPANSION_JOB_KIND: lambda db: ExpansionJobHandler(db, self._registry, self.settings),
        }

    def register_handler(self, kind: str, factory: Callable[[Session], Callable[[Job], object]]) -> None:
        """
        Register a handler for another job kind.

        Args:
            kind: Job kind
            factory: Builds the handler for a session
        """
        self._handlers[kind] = factory

    def run_once(self) -> Optional[Job]:
        """
        Claim and run at most one job.

        Returns:
            The job that ran (in its final state for this attempt), or None
            when nothing was runnable
        """
        db = self._session_factory()
        try:
            queue = JobQueue(db, self.settings)
            job = queue.claim(self.queues)
            if job is None:
                return None
            self._execute(db, queue, job)
            db.refresh(job)
            db.expunge(job)
            return job
        finally:
            db.close()

    def _execute(self, db: Session, queue: JobQueue, job: Job) -> None:
        factory = self._handlers.get(job.kind)
        if factory is None:
            queue.fail(job, f"No handler for job kind '{job.kind}'", permanent=True)
            return

        try:
            summary = factory(db)(job)
        except PERMANENT_ERRORS as e:
            db.rollback()
            queue.fail(job, str(e), permanent=True)
        except Exception as e:
            db.rollback()
            logger.error(
                f"Job {job.id} ({job.kind}) raised {type(e).__name__}: {e}",
                exc_info=not isinstance(e, IncompleteExpansionError),
                extra={"job_id": job.id}
            )
            queue.fail(job, f"{type(e).__name__}: {e}")
        else:
            queue.complete(job)
            logger.info(
                f"Job {job.id} ({job.kind}) finished: {summary}",
                extra={"job_id": job.id, "summary": summary}
            )

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """
        Run jobs until none is runnable.

        Args:
            max_jobs: Stop after this many jobs

        Returns:
            Number of jobs run
        """
        count = 0
        while max_jobs is None or count < max_jobs:
            if self.run_once() is None:
                break
            count += 1
        return count

    def run(self) -> int:
        """
        Run the polling loop until shutdown is requested.

        Returns:
            Exit code (0 for clean shutdown, 4 after repeated failures)
        """
        logger.info(
            f"Starting expansion worker on {', '.join(self.queues)} "
            f"(interval: {self.poll_interval}s)"
        )

        while not self._shutdown_event.is_set():
            try:
                job = self.run_once()
                self._consecutive_failures = 0
                if job is None:
                    self._shutdown_event.wait(self.poll_interval)
            except Exception as e:
                self._consecutive_failures += 1
                logger.error(
                    f"Error in worker loop: {e} "
                    f"(attempt {self._consecutive_failures}/{MAX_POLL_FAILURES})",
                    exc_info=True
                )
                if self._consecutive_failures >= MAX_POLL_FAILURES:
                    logger.error("Too many consecutive errors, stopping worker")
                    return 4
                self._shutdown_event.wait(self.poll_interval)

        logger.info("Expansion worker stopped")
        return 0

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the polling loop."""
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return not self._shutdown_event.is_set()
