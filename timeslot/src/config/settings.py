"""
Application settings configuration for the schedule engine.

Centralized settings loaded from environment variables.
"""

from functools import lru_cache
from typing import Dict, List, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        TIMESLOT_EXPANSION_HORIZON_DAYS: Days ahead of today the worker materializes (default: 90)
        TIMESLOT_MAX_OCCURRENCES_PER_PASS: Hard cap on occurrences one expansion emits (default: 500)
        TIMESLOT_JOB_MAX_ATTEMPTS: Attempts before a job is kept as failed (default: 3)
        TIMESLOT_JOB_BACKOFF_BASE_SECONDS: First retry delay (default: 30)
        TIMESLOT_JOB_BACKOFF_MAX_SECONDS: Retry delay ceiling (default: 3600)
        TIMESLOT_WORKER_POLL_INTERVAL: Seconds the worker sleeps on an empty queue (default: 5)
        TIMESLOT_JOB_TIMEOUT_SECONDS: Seconds a claimed job may run before it is reclaimed (default: 900)
        TIMESLOT_ENTITY_TABLES: Comma-separated entity tables to reflect at startup
            Example: "bookings,room_reservations"
        TIMESLOT_CONFLICT_SCOPES: Per-table overlap scope columns
            Example: "bookings=room_id;room_reservations=room_id+floor"
    """

    # Expansion window
    expansion_horizon_days: int = Field(
        default=90,
        validation_alias="TIMESLOT_EXPANSION_HORIZON_DAYS",
        ge=1,
        le=3660,
    )

    max_occurrences_per_pass: int = Field(
        default=500,
        validation_alias="TIMESLOT_MAX_OCCURRENCES_PER_PASS",
        ge=1,
    )

    # Job retry policy
    job_max_attempts: int = Field(
        default=3,
        validation_alias="TIMESLOT_JOB_MAX_ATTEMPTS",
        ge=1,
        le=25,
    )

    job_backoff_base_seconds: int = Field(
        default=30,
        validation_alias="TIMESLOT_JOB_BACKOFF_BASE_SECONDS",
        ge=1,
    )

    job_backoff_max_seconds: int = Field(
        default=3600,
        validation_alias="TIMESLOT_JOB_BACKOFF_MAX_SECONDS",
        ge=1,
    )

    worker_poll_interval: float = Field(
        default=5.0,
        validation_alias="TIMESLOT_WORKER_POLL_INTERVAL",
        gt=0,
    )

    job_timeout_seconds: int = Field(
        default=900,
        validation_alias="TIMESLOT_JOB_TIMEOUT_SECONDS",
        ge=1,
    )

    # Entity registry
    entity_tables: str = Field(
        default="",
        validation_alias="TIMESLOT_ENTITY_TABLES",
        description="Comma-separated list of entity tables that series may target"
    )

    conflict_scopes: str = Field(
        default="",
        validation_alias="TIMESLOT_CONFLICT_SCOPES",
        description="table=col1+col2 pairs separated by ';'"
    )

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("conflict_scopes")
    @classmethod
    def validate_conflict_scopes(cls, v: str) -> str:
        """Validate that every scope entry has the table=columns form."""
        for entry in filter(None, (e.strip() for e in v.split(";"))):
            table, sep, columns = entry.partition("=")
            if not sep or not table.strip() or not columns.strip():
                raise ValueError(
                    f"TIMESLOT_CONFLICT_SCOPES entry '{entry}' must look like table=col1+col2"
                )
        return v

    @property
    def entity_table_list(self) -> List[str]:
        """Get the configured entity tables as a list."""
        return [t.strip() for t in self.entity_tables.split(",") if t.strip()]

    @property
    def conflict_scope_map(self) -> Dict[str, Tuple[str, ...]]:
        """
        Get the conflict scope columns per table.

        Returns:
            Mapping of table name to the columns that must match for two
            rows to be checked for overlap
        """
        scopes = {}
        for entry in filter(None, (e.strip() for e in self.conflict_scopes.split(";"))):
            table, _, columns = entry.partition("=")
            scopes[table.strip()] = tuple(c.strip() for c in columns.split("+") if c.strip())
        return scopes

    def backoff_seconds(self, attempt: int) -> int:
        """
        Retry delay after the given failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            base * 2^(attempt - 1), capped at the configured maximum
        """
        delay = self.job_backoff_base_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.job_backoff_max_seconds)


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()
