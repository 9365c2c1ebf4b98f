"""
Pydantic schemas for the recurring series RPC surface.

Provides data validation and serialization for:
- RPC request bodies (one model per operation)
- RPC result records (success flag, message, affected ids and counts)
- Series membership and group summaries
- Conflict previews

Design:
- Every RPC returns a structured record, never raw rows
- Failures are results with success=False, not HTTP errors
- Durations accept seconds or ISO 8601 (PT1H30M)
- Naive datetimes are wall-clock time in the series time zone
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer


# ============================================================================
# Request Schemas
# ============================================================================


class CreateRecurringSeriesRequest(BaseModel):
    """Request body for create_recurring_series."""

    group_name: str = Field(..., min_length=1, max_length=255)
    group_description: Optional[str] = None
    group_color: Optional[str] = Field(default=None, description="#RRGGBB")
    entity_table: str = Field(..., min_length=1, max_length=63)
    entity_template: Dict[str, Any] = Field(default_factory=dict)
    rrule: str = Field(..., description="e.g. FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10")
    dtstart: datetime
    duration: timedelta
    timezone: str = "UTC"
    time_slot_field: str = "time_slot"
    expand_now: bool = True
    skip_conflicts: bool = True

    model_config = {
        "json_schema_extra": {
            "example": {
                "group_name": "Team standup",
                "group_color": "#3B82F6",
                "entity_table": "bookings",
                "entity_template": {"room_id": 4, "purpose": "Standup"},
                "rrule": "FREQ=WEEKLY;BYDAY=MO,WE",
                "dtstart": "2025-01-06T09:00:00",
                "duration": "PT30M",
                "timezone": "America/New_York",
            }
        }
    }


class UpdateSeriesTemplateRequest(BaseModel):
    """Request body for update_series_template."""

    series_id: int
    template_patch: Dict[str, Any]
    skip_exceptions: bool = True


class UpdateSeriesScheduleRequest(BaseModel):
    """Request body for update_series_schedule."""

    series_id: int
    new_anchor: Optional[datetime] = None
    new_duration: Optional[timedelta] = None
    new_rrule: Optional[str] = None


class SplitSeriesRequest(BaseModel):
    """Request body for split_series_from_date."""

    series_id: int
    boundary_date: date
    new_anchor: datetime
    new_duration: Optional[timedelta] = None
    template_patch: Dict[str, Any] = Field(default_factory=dict)
    new_rrule: Optional[str] = None


class EntityReference(BaseModel):
    """An entity row identified by table and id."""

    entity_table: str
    entity_id: int


class CancelOccurrenceRequest(EntityReference):
    """Request body for cancel_series_occurrence."""

    reason: Optional[str] = None


class ModifyOccurrenceRequest(EntityReference):
    """Request body for modify_series_occurrence."""

    values: Dict[str, Any]


class RescheduleOccurrenceRequest(EntityReference):
    """Request body for reschedule_occurrence."""

    new_start: datetime
    new_end: datetime


class SeriesIdRequest(BaseModel):
    """Request body for operations addressing one series."""

    series_id: int


class PauseSeriesRequest(SeriesIdRequest):
    """Request body for pause_series."""

    reason: Optional[str] = None


class ExpandSeriesRequest(SeriesIdRequest):
    """Request body for expand_series_instances."""

    expand_until: Optional[date] = None


class GroupIdRequest(BaseModel):
    """Request body for operations addressing one group."""

    group_id: int


class UpdateGroupInfoRequest(GroupIdRequest):
    """Request body for update_series_group_info."""

    display_name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None


class PreviewConflictsRequest(BaseModel):
    """Request body for preview_recurring_conflicts."""

    entity_table: str
    entity_template: Dict[str, Any] = Field(default_factory=dict)
    rrule: str
    dtstart: datetime
    duration: timedelta
    timezone: str = "UTC"
    time_slot_field: str = "time_slot"
    horizon_days: Optional[int] = Field(default=None, ge=1, le=3660)


# ============================================================================
# Response Schemas
# ============================================================================


class SeriesRpcResult(BaseModel):
    """
    Result record of a mutating RPC.

    Only the fields relevant to the operation are set.
    """

    success: bool
    message: str
    group_id: Optional[int] = None
    series_id: Optional[int] = None
    new_series_id: Optional[int] = None
    job_id: Optional[int] = None
    occurrence_date: Optional[date] = None
    instances_updated: Optional[int] = None
    entities_deleted: Optional[int] = None
    error_field: Optional[str] = None


class SeriesMembership(BaseModel):
    """Series membership of an entity row."""

    is_member: bool
    series_id: Optional[int] = None
    group_id: Optional[int] = None
    group_name: Optional[str] = None
    group_color: Optional[str] = None
    version_number: Optional[int] = None
    occurrence_date: Optional[date] = None
    is_exception: Optional[bool] = None
    exception_type: Optional[str] = None
    original_template: Optional[Dict[str, Any]] = None


class ConflictPreviewItem(BaseModel):
    """One candidate occurrence in a conflict preview."""

    occurrence_date: date
    start: datetime
    end: datetime
    has_conflict: bool
    conflicting_entity_id: Optional[int] = None


class ConflictPreviewResult(BaseModel):
    """Result record of preview_recurring_conflicts."""

    success: bool
    message: str
    occurrences: List[ConflictPreviewItem] = Field(default_factory=list)
    conflict_count: int = 0


class SeriesVersionSummary(BaseModel):
    """One series version within a group."""

    id: int
    version_number: int
    effective_from: date
    effective_until: Optional[date]
    rrule: str
    timezone: str
    status: str
    expanded_until: Optional[date]
    instance_counts: Dict[str, int] = Field(default_factory=dict)


class SeriesGroupSummary(BaseModel):
    """Group with its series versions."""

    id: int
    display_name: str
    description: Optional[str]
    color: Optional[str]
    series: List[SeriesVersionSummary] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    @classmethod
    def serialize_datetime_utc(cls, v: datetime) -> str:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None


class JobResponse(BaseModel):
    """Queued job as shown to operators."""

    id: int
    kind: str
    queue: str
    status: str
    args: Dict[str, Any]
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    finalized_at: Optional[datetime]
    last_error: Optional[str]
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            id=job.id,
            kind=job.kind,
            queue=job.queue,
            status=job.status.value,
            args=job.args,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            scheduled_at=job.scheduled_at,
            finalized_at=job.finalized_at,
            last_error=job.last_error,
            errors=job.errors,
        )
