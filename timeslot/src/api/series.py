"""
Recurring series API endpoints.

Exposes the series RPC surface over HTTP:
- POST /rpc/<operation> for every mutating operation
- GET /series/groups/{group_id} for a group summary
- GET /series/membership for the series membership of an entity row

Design:
- RPC endpoints always answer 200 with a result record; a failed
  operation has success=false and a message
- Request bodies are validated by pydantic (422 on malformed input)
- The entity registry lives on app.state and is set up at startup
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from timeslot.src.db.database import get_db
from timeslot.src.schemas.series import (
    CancelOccurrenceRequest,
    ConflictPreviewResult,
    CreateRecurringSeriesRequest,
    ExpandSeriesRequest,
    GroupIdRequest,
    ModifyOccurrenceRequest,
    PauseSeriesRequest,
    PreviewConflictsRequest,
    RescheduleOccurrenceRequest,
    SeriesGroupSummary,
    SeriesIdRequest,
    SeriesMembership,
    SeriesRpcResult,
    SplitSeriesRequest,
    UpdateGroupInfoRequest,
    UpdateSeriesScheduleRequest,
    UpdateSeriesTemplateRequest,
)
from timeslot.src.services.entity_registry import EntityRegistry
from timeslot.src.services.series_rpc import SeriesRpc
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(tags=["Recurring Series"])


# ============================================================================
# Dependencies
# ============================================================================


def get_entity_registry(request: Request) -> EntityRegistry:
    """Get the entity registry configured at startup."""
    return request.app.state.entity_registry


def get_series_rpc(
    db: Session = Depends(get_db),
    registry: EntityRegistry = Depends(get_entity_registry),
) -> SeriesRpc:
    """Create SeriesRpc instance with database session."""
    return SeriesRpc(db, registry)


# ============================================================================
# RPC Endpoints
# ============================================================================


@router.post(
    "/rpc/create_recurring_series",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def create_recurring_series(
    body: CreateRecurringSeriesRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Create a series group with its first series and queue its expansion."""
    result = rpc.create_recurring_series(**body.model_dump())
    logger.info(
        f"create_recurring_series: {result.message}",
        extra={"success": result.success, "series_id": result.series_id}
    )
    return result


@router.post(
    "/rpc/update_series_template",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def update_series_template(
    body: UpdateSeriesTemplateRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Merge a template patch into a series and propagate it."""
    return rpc.update_series_template(body.series_id, body.template_patch, body.skip_exceptions)


@router.post(
    "/rpc/update_series_schedule",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def update_series_schedule(
    body: UpdateSeriesScheduleRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Replace the schedule of a series and regenerate its occurrences."""
    return rpc.update_series_schedule(
        body.series_id, body.new_anchor, body.new_duration, body.new_rrule
    )


@router.post(
    "/rpc/split_series_from_date",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def split_series_from_date(
    body: SplitSeriesRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Change a series from a date forward."""
    return rpc.split_series_from_date(
        body.series_id,
        body.boundary_date,
        body.new_anchor,
        body.new_duration,
        body.template_patch,
        body.new_rrule,
    )


@router.post(
    "/rpc/cancel_series_occurrence",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def cancel_series_occurrence(
    body: CancelOccurrenceRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Cancel one occurrence of a series."""
    return rpc.cancel_series_occurrence(body.entity_table, body.entity_id, body.reason)


@router.post(
    "/rpc/modify_series_occurrence",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def modify_series_occurrence(
    body: ModifyOccurrenceRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Edit the fields of one occurrence."""
    return rpc.modify_series_occurrence(body.entity_table, body.entity_id, body.values)


@router.post(
    "/rpc/reschedule_occurrence",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def reschedule_occurrence(
    body: RescheduleOccurrenceRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Move one occurrence to another slot."""
    return rpc.reschedule_occurrence(
        body.entity_table, body.entity_id, body.new_start, body.new_end
    )


@router.post(
    "/rpc/delete_series_with_instances",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def delete_series_with_instances(
    body: SeriesIdRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Delete a series with its instances and entity rows."""
    return rpc.delete_series_with_instances(body.series_id)


@router.post(
    "/rpc/delete_series_group",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def delete_series_group(
    body: GroupIdRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Delete a group with every series in it."""
    return rpc.delete_series_group(body.group_id)


@router.post(
    "/rpc/expand_series_instances",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def expand_series_instances(
    body: ExpandSeriesRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Queue an on-demand expansion."""
    return rpc.expand_series_instances(body.series_id, body.expand_until)


@router.post(
    "/rpc/update_series_group_info",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def update_series_group_info(
    body: UpdateGroupInfoRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Update a group's name, description or color."""
    return rpc.update_series_group_info(
        body.group_id, body.display_name, body.description, body.color
    )


@router.post(
    "/rpc/pause_series",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def pause_series(
    body: PauseSeriesRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Stop expanding a series."""
    return rpc.pause_series(body.series_id, body.reason)


@router.post(
    "/rpc/resume_series",
    response_model=SeriesRpcResult,
    response_model_exclude_none=True,
)
async def resume_series(
    body: SeriesIdRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesRpcResult:
    """Resume expanding a series."""
    return rpc.resume_series(body.series_id)


@router.post("/rpc/preview_recurring_conflicts", response_model=ConflictPreviewResult)
async def preview_recurring_conflicts(
    body: PreviewConflictsRequest,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> ConflictPreviewResult:
    """List the occurrences a rule would produce and their conflicts."""
    return rpc.preview_recurring_conflicts(**body.model_dump())


# ============================================================================
# Read Endpoints
# ============================================================================


@router.get("/series/membership", response_model=SeriesMembership, response_model_exclude_none=True)
async def get_series_membership(
    entity_table: str = Query(..., description="Entity table name"),
    entity_id: int = Query(..., description="Entity row id"),
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesMembership:
    """Report whether an entity row belongs to a series."""
    return rpc.get_series_membership(entity_table, entity_id)


@router.get("/series/groups/{group_id}", response_model=SeriesGroupSummary)
async def get_series_group(
    group_id: int,
    rpc: SeriesRpc = Depends(get_series_rpc),
) -> SeriesGroupSummary:
    """Get a group with its series versions."""
    summary = rpc.get_series_group(group_id)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Group {group_id} not found"
        )
    return summary
