"""
Durable job queue backed by the ``jobs`` table.

Jobs are inserted in the caller's transaction, so a mutation and the job
that follows it up commit together. Workers claim jobs one at a time; on
PostgreSQL the claim uses FOR UPDATE SKIP LOCKED so concurrent workers
never receive the same row.

Retry policy: a failed attempt becomes RETRYABLE with exponential backoff
(base * 2^(attempt - 1), capped) until max_attempts is reached, after which
the job is kept as FAILED with its error history.

A RUNNING job whose worker died is never finished by it. Once its attempt
is older than the job timeout, the next claim puts it back in line as
RETRYABLE (or FAILED when it has no attempts left).
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from timeslot.src.config.settings import AppSettings, get_settings
from timeslot.src.models.job import Job, JobStatus
from timeslot.src.services.exceptions import NotFoundError, ValidationError
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("jobs")


class JobQueue:
    """
    Persistent job queue.

    Usage:
        >>> queue = JobQueue(db)
        >>> queue.enqueue("expand_recurring_series", {"series_id": 1}, queue="recurring")
        >>> db.commit()
        >>> job = queue.claim(["recurring"])
    """

    def __init__(self, db: Session, settings: Optional[AppSettings] = None):
        """
        Initialize the queue.

        Args:
            db: SQLAlchemy database session
            settings: Retry policy source (defaults to application settings)
        """
        self.db = db
        self.settings = settings or get_settings()
        self._is_sqlite = self._check_is_sqlite()

    def _check_is_sqlite(self) -> bool:
        """Check if the database backend is SQLite."""
        try:
            return self.db.bind.dialect.name == "sqlite"
        except Exception:
            return False

    def enqueue(
        self,
        kind: str,
        args: Dict[str, Any],
        queue: str = "default",
        priority: int = 0,
        max_attempts: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Job:
        """
        Add a job in the current transaction.

        The caller commits; nothing is visible to workers before that.

        Args:
            kind: Handler name
            args: JSON-serializable handler arguments
            queue: Queue name
            priority: Higher runs first
            max_attempts: Overrides the configured attempt limit
            scheduled_at: Earliest run time (default now)

        Returns:
            The pending Job (flushed, id assigned)
        """
        job = Job(
            kind=kind,
            queue=queue,
            status=JobStatus.AVAILABLE,
            priority=priority,
            attempt=0,
            max_attempts=max_attempts or self.settings.job_max_attempts,
            scheduled_at=scheduled_at or datetime.utcnow(),
        )
        job.args = args
        self.db.add(job)
        self.db.flush()

        logger.info(
            f"Enqueued job {job.id} ({kind}) on queue {queue}",
            extra={"job_id": job.id, "kind": kind, "queue": queue}
        )
        return job

    def rescue_stuck(self, queues: Sequence[str] = ("default",)) -> int:
        """
        Reclaim RUNNING jobs whose attempt outlived the job timeout.

        The attempt counts as failed: the job becomes RETRYABLE right away,
        or FAILED if it has used every attempt. Commits when anything changed.

        Args:
            queues: Queue names to inspect

        Returns:
            Number of jobs reclaimed
        """
        timeout = self.settings.job_timeout_seconds
        now = datetime.utcnow()
        query = self.db.query(Job).filter(
            Job.queue.in_(list(queues)),
            Job.status == JobStatus.RUNNING,
            Job.attempted_at < now - timedelta(seconds=timeout)
        )
        if not self._is_sqlite:
            query = query.with_for_update(skip_locked=True)

        stuck = query.all()
        for job in stuck:
            message = f"Attempt {job.attempt} did not finish within {timeout}s"
            if job.attempts_exhausted:
                job.fail(message)
            else:
                job.schedule_retry(message, now)
            logger.warning(
                f"Reclaimed job {job.id} ({job.kind}) from a stalled worker: {job.status.value}",
                extra={"job_id": job.id, "kind": job.kind, "attempt": job.attempt}
            )

        if stuck:
            self.db.commit()
        return len(stuck)

    def claim(self, queues: Sequence[str] = ("default",)) -> Optional[Job]:
        """
        Claim the next runnable job and commit the claim.

        Selection: AVAILABLE or RETRYABLE jobs in the given queues whose
        scheduled_at has passed, highest priority first, then oldest.
        Jobs stuck in RUNNING past the job timeout are reclaimed first.

        Args:
            queues: Queue names to take work from

        Returns:
            The claimed Job in RUNNING status, or None if nothing is runnable
        """
        self.rescue_stuck(queues)

        now = datetime.utcnow()
        query = self.db.query(Job).filter(
            Job.queue.in_(list(queues)),
            or_(
                Job.status == JobStatus.AVAILABLE,
                and_(
                    Job.status == JobStatus.RETRYABLE,
                    Job.scheduled_at <= now
                )
            ),
            Job.scheduled_at <= now
        ).order_by(
            Job.priority.desc(),
            Job.scheduled_at.asc(),
            Job.id.asc()
        )

        # Use FOR UPDATE SKIP LOCKED only for PostgreSQL (SQLite doesn't support it)
        if not self._is_sqlite:
            query = query.with_for_update(skip_locked=True)

        job = query.first()
        if job is None:
            return None

        job.start_attempt()
        self.db.commit()

        logger.info(
            f"Claimed job {job.id} ({job.kind}) attempt {job.attempt}/{job.max_attempts}",
            extra={"job_id": job.id, "kind": job.kind, "attempt": job.attempt}
        )
        return job

    def complete(self, job: Job) -> Job:
        """
        Mark a running job completed and commit.

        Args:
            job: Claimed job

        Returns:
            Updated job
        """
        job.complete()
        self.db.commit()
        logger.info(f"Completed job {job.id} ({job.kind})", extra={"job_id": job.id})
        return job

    def fail(self, job: Job, error_message: str, permanent: bool = False) -> Job:
        """
        Record a failed attempt and commit.

        Args:
            job: Claimed job
            error_message: Failure description
            permanent: Skip remaining attempts (retrying cannot succeed)

        Returns:
            Updated job, RETRYABLE or FAILED
        """
        if permanent or job.attempts_exhausted:
            job.fail(error_message)
            logger.error(
                f"Job {job.id} ({job.kind}) failed after attempt {job.attempt}: {error_message}",
                extra={"job_id": job.id, "kind": job.kind, "attempt": job.attempt,
                       "permanent": permanent}
            )
        else:
            delay = self.settings.backoff_seconds(job.attempt)
            job.schedule_retry(error_message, datetime.utcnow() + timedelta(seconds=delay))
            logger.warning(
                f"Job {job.id} ({job.kind}) attempt {job.attempt} failed, "
                f"retrying in {delay}s: {error_message}",
                extra={"job_id": job.id, "kind": job.kind, "attempt": job.attempt,
                       "retry_in_seconds": delay}
            )
        self.db.commit()
        return job

    def get(self, job_id: int) -> Job:
        """
        Get a job by id.

        Raises:
            NotFoundError: If the job does not exist
        """
        job = self.db.query(Job).filter(Job.id == job_id).first()
        if not job:
            raise NotFoundError("Job", job_id)
        return job

    def list_failed(self, queue: Optional[str] = None, limit: int = 50) -> List[Job]:
        """
        List jobs kept in FAILED status, newest first.

        Args:
            queue: Optional queue filter
            limit: Maximum rows returned

        Returns:
            Failed jobs
        """
        query = self.db.query(Job).filter(Job.status == JobStatus.FAILED)
        if queue:
            query = query.filter(Job.queue == queue)
        return query.order_by(Job.finalized_at.desc(), Job.id.desc()).limit(limit).all()

    def retry(self, job_id: int) -> Job:
        """
        Re-queue a failed job for a fresh set of attempts.

        Args:
            job_id: Failed job id

        Returns:
            The re-queued job

        Raises:
            NotFoundError: If the job does not exist
            ValidationError: If the job is not FAILED
        """
        job = self.get(job_id)
        if job.status != JobStatus.FAILED:
            raise ValidationError(
                f"Only failed jobs can be retried (job {job_id} is {job.status.value})",
                field="status"
            )
        job.requeue()
        self.db.commit()
        logger.info(f"Re-queued failed job {job.id} ({job.kind})", extra={"job_id": job.id})
        return job
