"""
Custom exceptions for service layer.

Provides specific exception types for scheduling errors that the RPC facade
turns into result records and the HTTP layer turns into responses.
"""

from datetime import date
from typing import Any, List, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ValidationError(ServiceError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class OccurrenceConflictError(ServiceError):
    """Raised when an occurrence overlaps an existing entity and skipping is off.

    Aborts the materialization run. Occurrences written before the conflict
    are kept.
    """

    def __init__(
        self,
        occurrence_date: date,
        conflicting_entity_id: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.occurrence_date = occurrence_date
        self.conflicting_entity_id = conflicting_entity_id
        if conflicting_entity_id is not None:
            self.message = (
                f"Occurrence on {occurrence_date.isoformat()} overlaps "
                f"existing entity {conflicting_entity_id}"
            )
        else:
            self.message = (
                f"Occurrence on {occurrence_date.isoformat()} was rejected by the "
                f"entity table: {detail}"
            )
        super().__init__(self.message)


class SchemaDriftError(ServiceError):
    """Raised when a stored template no longer matches its entity schema."""

    def __init__(self, issues: List[dict]):
        self.issues = issues
        fields = ", ".join(issue["field"] for issue in issues)
        self.message = f"Template no longer matches entity schema: {fields}"
        super().__init__(self.message)


class IncompleteExpansionError(ServiceError):
    """Raised when some occurrences of an expansion run could not be written.

    The written occurrences stay; the job is retried to pick up the rest.
    """

    def __init__(self, series_id: int, failed: dict):
        self.series_id = series_id
        self.failed = failed
        dates = ", ".join(d.isoformat() for d in sorted(failed))
        self.message = f"Series {series_id}: {len(failed)} occurrence(s) not written ({dates})"
        super().__init__(self.message)


class PermanentJobError(ServiceError):
    """Raised by a job handler when retrying the job cannot succeed."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
