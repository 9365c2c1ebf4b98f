"""
Service layer for the recurring schedule engine.

Modules that need the job queue (series_service, series_rpc,
expansion_worker, materializer) are imported directly by their callers.
"""

from timeslot.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ValidationError,
    OccurrenceConflictError,
    SchemaDriftError,
    IncompleteExpansionError,
    PermanentJobError,
)
from timeslot.src.services.recurrence import RecurrenceRule, Occurrence, parse_rrule, expand
from timeslot.src.services.template import EntityTemplate, TemplatePatch

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ValidationError",
    "OccurrenceConflictError",
    "SchemaDriftError",
    "IncompleteExpansionError",
    "PermanentJobError",
    "RecurrenceRule",
    "Occurrence",
    "parse_rrule",
    "expand",
    "EntityTemplate",
    "TemplatePatch",
]
