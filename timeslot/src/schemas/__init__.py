"""
Pydantic schemas for API request/response validation.

This module exports all schema classes for use in API endpoints.
"""

from timeslot.src.schemas.series import (
    CreateRecurringSeriesRequest,
    UpdateSeriesTemplateRequest,
    UpdateSeriesScheduleRequest,
    SplitSeriesRequest,
    EntityReference,
    CancelOccurrenceRequest,
    ModifyOccurrenceRequest,
    RescheduleOccurrenceRequest,
    SeriesIdRequest,
    PauseSeriesRequest,
    ExpandSeriesRequest,
    GroupIdRequest,
    UpdateGroupInfoRequest,
    PreviewConflictsRequest,
    SeriesRpcResult,
    SeriesMembership,
    ConflictPreviewItem,
    ConflictPreviewResult,
    SeriesVersionSummary,
    SeriesGroupSummary,
    JobResponse,
)

__all__ = [
    "CreateRecurringSeriesRequest",
    "UpdateSeriesTemplateRequest",
    "UpdateSeriesScheduleRequest",
    "SplitSeriesRequest",
    "EntityReference",
    "CancelOccurrenceRequest",
    "ModifyOccurrenceRequest",
    "RescheduleOccurrenceRequest",
    "SeriesIdRequest",
    "PauseSeriesRequest",
    "ExpandSeriesRequest",
    "GroupIdRequest",
    "UpdateGroupInfoRequest",
    "PreviewConflictsRequest",
    "SeriesRpcResult",
    "SeriesMembership",
    "ConflictPreviewItem",
    "ConflictPreviewResult",
    "SeriesVersionSummary",
    "SeriesGroupSummary",
    "JobResponse",
]
