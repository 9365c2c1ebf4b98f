"""
Job model for the durable background job queue.

Jobs are rows in the same database as the data they act on, so an RPC can
enqueue work in the same transaction as its mutation: either both commit or
neither does. Workers claim jobs with FOR UPDATE SKIP LOCKED on PostgreSQL.

Design Rationale:
- Delivery is at-least-once; handlers must be idempotent
- attempt counts claims; a job exhausting max_attempts stays FAILED with its
  error history so operators can inspect and re-queue it
- RETRYABLE jobs become claimable again at scheduled_at (exponential backoff)
"""

import enum
import json
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, Index
from sqlalchemy.dialects.postgresql import JSONB

from timeslot.src.models import Base


class JobStatus(str, enum.Enum):
    """
    Job status enumeration.

    - AVAILABLE: Ready to be claimed
    - RUNNING: Claimed by a worker
    - RETRYABLE: Failed, waiting for scheduled_at before the next attempt
    - COMPLETED: Finished successfully
    - FAILED: Failed permanently or out of attempts (kept for operators)
    """
    AVAILABLE = "available"
    RUNNING = "running"
    RETRYABLE = "retryable"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(Base):
    """
    Queued unit of background work.

    Attributes:
        id: Primary key
        kind: Handler name (e.g. expand_recurring_series)
        queue: Queue name workers subscribe to
        args_json: Handler arguments
        status: Lifecycle status
        priority: Higher runs first
        attempt: Number of times the job has been claimed
        max_attempts: Claims allowed before the job is kept as FAILED
        scheduled_at: Earliest time the job may be claimed
        attempted_at: When the current/last attempt started
        finalized_at: When the job reached a terminal status
        last_error: Error message of the last failed attempt
        errors_json: Error history, one entry per failed attempt
        created_at: Creation timestamp
        updated_at: Last modification timestamp

    Indexes:
        - (queue, status, scheduled_at, priority) for claiming
    """

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    kind = Column(String(100), nullable=False)
    queue = Column(String(50), nullable=False, default="default")
    args_json = Column(
        JSONB().with_variant(Text, "sqlite"),
        nullable=False
    )

    status = Column(
        Enum(
            JobStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=JobStatus.AVAILABLE,
        nullable=False,
        index=True
    )
    priority = Column(Integer, default=0, nullable=False)

    # Retry bookkeeping
    attempt = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    scheduled_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    attempted_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    errors_json = Column(
        JSONB().with_variant(Text, "sqlite"),
        nullable=True
    )

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    __table_args__ = (
        Index("ix_jobs_claimable", "queue", "status", "scheduled_at", "priority"),
    )

    @property
    def args(self) -> Dict[str, Any]:
        """
        Get the job arguments as a dictionary.

        Returns:
            Handler arguments
        """
        if self.args_json is None:
            return {}
        if isinstance(self.args_json, str):
            return json.loads(self.args_json)
        return self.args_json

    @args.setter
    def args(self, value: Dict[str, Any]) -> None:
        # Serialize for SQLite compatibility (uses Text variant)
        self.args_json = json.dumps(value or {}, default=str)

    @property
    def errors(self) -> List[Dict[str, Any]]:
        """
        Get the error history.

        Returns:
            List of {attempt, at, error} entries, oldest first
        """
        if self.errors_json is None:
            return []
        if isinstance(self.errors_json, str):
            return json.loads(self.errors_json)
        return list(self.errors_json)

    def record_error(self, message: str) -> None:
        """
        Append an error to the history and set last_error.

        Args:
            message: Error description for the current attempt
        """
        history = self.errors
        history.append({
            "attempt": self.attempt,
            "at": datetime.utcnow().isoformat() + "Z",
            "error": message,
        })
        self.errors_json = json.dumps(history)
        self.last_error = message

    @property
    def is_terminal(self) -> bool:
        """
        Check if the job is in a terminal state.

        Returns:
            True for COMPLETED and FAILED
        """
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def attempts_exhausted(self) -> bool:
        """True once the job has used every allowed attempt."""
        return self.attempt >= self.max_attempts

    def start_attempt(self) -> None:
        """Mark the job as claimed for a new attempt."""
        self.status = JobStatus.RUNNING
        self.attempt += 1
        self.attempted_at = datetime.utcnow()

    def complete(self) -> None:
        """Mark the job as completed."""
        self.status = JobStatus.COMPLETED
        self.finalized_at = datetime.utcnow()

    def fail(self, error_message: str) -> None:
        """
        Mark the job as permanently failed.

        Args:
            error_message: Error message describing the failure
        """
        self.record_error(error_message)
        self.status = JobStatus.FAILED
        self.finalized_at = datetime.utcnow()

    def schedule_retry(self, error_message: str, run_at: datetime) -> None:
        """
        Record a failed attempt and make the job claimable again later.

        Args:
            error_message: Error message describing the failure
            run_at: Earliest time of the next attempt
        """
        self.record_error(error_message)
        self.status = JobStatus.RETRYABLE
        self.scheduled_at = run_at

    def requeue(self) -> None:
        """
        Reset a failed job for another round of attempts.

        Keeps the error history; attempts start over.
        """
        self.status = JobStatus.AVAILABLE
        self.attempt = 0
        self.scheduled_at = datetime.utcnow()
        self.finalized_at = None

    def __repr__(self) -> str:
        return (
            f"<Job("
            f"id={self.id}, "
            f"kind='{self.kind}', "
            f"status={self.status.value if self.status else None}, "
            f"attempt={self.attempt}/{self.max_attempts}"
            f")>"
        )

    def __str__(self) -> str:
        return f"Job {self.id} ({self.kind}, {self.status.value})"
