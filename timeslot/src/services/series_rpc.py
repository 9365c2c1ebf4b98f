"""
RPC facade over SeriesService.

Each operation returns a result record. Service errors (validation,
missing rows, conflicts) become ``success=False`` results after the
transaction is rolled back, so a failed call never leaves partial writes.
Unexpected errors are rolled back and re-raised.
"""

from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from timeslot.src.config.settings import AppSettings
from timeslot.src.schemas.series import (
    ConflictPreviewItem,
    ConflictPreviewResult,
    SeriesGroupSummary,
    SeriesMembership,
    SeriesRpcResult,
    SeriesVersionSummary,
)
from timeslot.src.services.entity_registry import EntityRegistry
from timeslot.src.services.exceptions import ServiceError
from timeslot.src.services.series_service import SeriesService
from timeslot.src.utils.job_queue import JobQueue
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("services")


class SeriesRpc:
    """
    Structured-result entry points for series operations.

    Usage:
        >>> rpc = SeriesRpc(db, registry)
        >>> result = rpc.cancel_series_occurrence("bookings", 42, reason="Holiday")
        >>> result.success
        True
    """

    def __init__(
        self,
        db: Session,
        registry: EntityRegistry,
        job_queue: Optional[JobQueue] = None,
        settings: Optional[AppSettings] = None,
    ):
        self.db = db
        self.service = SeriesService(db, registry, job_queue=job_queue, settings=settings)

    def _run(self, operation: str, call) -> SeriesRpcResult:
        try:
            return call()
        except ServiceError as e:
            self.db.rollback()
            logger.info(
                f"{operation} failed: {e}",
                extra={"operation": operation, "error": str(e)}
            )
            return SeriesRpcResult(
                success=False,
                message=str(e),
                error_field=getattr(e, "field", None),
            )
        except Exception:
            self.db.rollback()
            logger.exception(f"{operation} raised unexpectedly", extra={"operation": operation})
            raise

    def create_recurring_series(
        self,
        group_name: str,
        entity_table: str,
        entity_template: Mapping[str, Any],
        rrule: str,
        dtstart: datetime,
        duration: timedelta,
        timezone: str = "UTC",
        group_description: Optional[str] = None,
        group_color: Optional[str] = None,
        time_slot_field: str = "time_slot",
        expand_now: bool = True,
        skip_conflicts: bool = True,
    ) -> SeriesRpcResult:
        def call():
            group, series = self.service.create_recurring_series(
                group_name=group_name,
                entity_table=entity_table,
                entity_template=entity_template,
                rrule=rrule,
                dtstart=dtstart,
                duration=duration,
                timezone=timezone,
                group_description=group_description,
                group_color=group_color,
                time_slot_field=time_slot_field,
                expand_now=expand_now,
                skip_conflicts=skip_conflicts,
            )
            return SeriesRpcResult(
                success=True,
                message="Recurring series created successfully",
                group_id=group.id,
                series_id=series.id,
            )
        return self._run("create_recurring_series", call)

    def update_series_template(
        self,
        series_id: int,
        template_patch: Mapping[str, Any],
        skip_exceptions: bool = True,
    ) -> SeriesRpcResult:
        def call():
            updated = self.service.update_series_template(series_id, template_patch, skip_exceptions)
            return SeriesRpcResult(
                success=True,
                message=f"Template updated, {updated} instance(s) updated",
                series_id=series_id,
                instances_updated=updated,
            )
        return self._run("update_series_template", call)

    def update_series_schedule(
        self,
        series_id: int,
        new_anchor: Optional[datetime] = None,
        new_duration: Optional[timedelta] = None,
        new_rrule: Optional[str] = None,
    ) -> SeriesRpcResult:
        def call():
            deleted = self.service.update_series_schedule(
                series_id, new_anchor, new_duration, new_rrule
            )
            return SeriesRpcResult(
                success=True,
                message=f"Schedule updated, {deleted} instance(s) will be regenerated",
                series_id=series_id,
                entities_deleted=deleted,
            )
        return self._run("update_series_schedule", call)

    def split_series_from_date(
        self,
        series_id: int,
        boundary_date: date,
        new_anchor: datetime,
        new_duration: Optional[timedelta] = None,
        template_patch: Optional[Mapping[str, Any]] = None,
        new_rrule: Optional[str] = None,
    ) -> SeriesRpcResult:
        def call():
            new_series = self.service.split_series_from_date(
                series_id, boundary_date, new_anchor, new_duration, template_patch, new_rrule
            )
            return SeriesRpcResult(
                success=True,
                message=f"Series split at {boundary_date.isoformat()}",
                series_id=series_id,
                new_series_id=new_series.id,
                group_id=new_series.group_id,
            )
        return self._run("split_series_from_date", call)

    def cancel_series_occurrence(
        self,
        entity_table: str,
        entity_id: int,
        reason: Optional[str] = None,
    ) -> SeriesRpcResult:
        def call():
            instance = self.service.cancel_series_occurrence(entity_table, entity_id, reason)
            return SeriesRpcResult(
                success=True,
                message="Occurrence cancelled",
                series_id=instance.series_id,
                occurrence_date=instance.occurrence_date,
            )
        return self._run("cancel_series_occurrence", call)

    def modify_series_occurrence(
        self,
        entity_table: str,
        entity_id: int,
        values: Mapping[str, Any],
    ) -> SeriesRpcResult:
        def call():
            instance = self.service.modify_series_occurrence(entity_table, entity_id, values)
            return SeriesRpcResult(
                success=True,
                message="Occurrence updated",
                series_id=instance.series_id,
                occurrence_date=instance.occurrence_date,
            )
        return self._run("modify_series_occurrence", call)

    def reschedule_occurrence(
        self,
        entity_table: str,
        entity_id: int,
        new_start: datetime,
        new_end: datetime,
    ) -> SeriesRpcResult:
        def call():
            instance = self.service.reschedule_occurrence(entity_table, entity_id, new_start, new_end)
            return SeriesRpcResult(
                success=True,
                message="Occurrence rescheduled",
                series_id=instance.series_id,
                occurrence_date=instance.occurrence_date,
            )
        return self._run("reschedule_occurrence", call)

    def delete_series_with_instances(self, series_id: int) -> SeriesRpcResult:
        def call():
            deleted = self.service.delete_series_with_instances(series_id)
            return SeriesRpcResult(
                success=True,
                message=f"Series deleted with {deleted} instance(s)",
                series_id=series_id,
                entities_deleted=deleted,
            )
        return self._run("delete_series_with_instances", call)

    def delete_series_group(self, group_id: int) -> SeriesRpcResult:
        def call():
            deleted = self.service.delete_series_group(group_id)
            return SeriesRpcResult(
                success=True,
                message=f"Group deleted with {deleted} instance(s)",
                group_id=group_id,
                entities_deleted=deleted,
            )
        return self._run("delete_series_group", call)

    def expand_series_instances(
        self,
        series_id: int,
        expand_until: Optional[date] = None,
    ) -> SeriesRpcResult:
        def call():
            job = self.service.expand_series_instances(series_id, expand_until)
            return SeriesRpcResult(
                success=True,
                message="Expansion queued",
                series_id=series_id,
                job_id=job.id,
            )
        return self._run("expand_series_instances", call)

    def update_series_group_info(
        self,
        group_id: int,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> SeriesRpcResult:
        def call():
            group = self.service.update_series_group_info(group_id, display_name, description, color)
            return SeriesRpcResult(success=True, message="Group updated", group_id=group.id)
        return self._run("update_series_group_info", call)

    def pause_series(self, series_id: int, reason: Optional[str] = None) -> SeriesRpcResult:
        def call():
            self.service.pause_series(series_id, reason)
            return SeriesRpcResult(success=True, message="Series paused", series_id=series_id)
        return self._run("pause_series", call)

    def resume_series(self, series_id: int) -> SeriesRpcResult:
        def call():
            self.service.resume_series(series_id)
            return SeriesRpcResult(success=True, message="Series resumed", series_id=series_id)
        return self._run("resume_series", call)

    def get_series_membership(self, entity_table: str, entity_id: int) -> SeriesMembership:
        return SeriesMembership(**self.service.get_series_membership(entity_table, entity_id))

    def get_series_group(self, group_id: int) -> Optional[SeriesGroupSummary]:
        """Summarize a group, or None if it does not exist."""
        try:
            group = self.service.get_series_group(group_id)
        except ServiceError:
            return None
        return SeriesGroupSummary(
            id=group.id,
            display_name=group.display_name,
            description=group.description,
            color=group.color,
            created_at=group.created_at,
            updated_at=group.updated_at,
            series=[
                SeriesVersionSummary(
                    id=s.id,
                    version_number=s.version_number,
                    effective_from=s.effective_from,
                    effective_until=s.effective_until,
                    rrule=s.rrule,
                    timezone=s.timezone,
                    status=s.status.value,
                    expanded_until=s.expanded_until,
                    instance_counts=self.service.instance_counts(s.id),
                )
                for s in group.series
            ],
        )

    def preview_recurring_conflicts(
        self,
        entity_table: str,
        entity_template: Mapping[str, Any],
        rrule: str,
        dtstart: datetime,
        duration: timedelta,
        timezone: str = "UTC",
        time_slot_field: str = "time_slot",
        horizon_days: Optional[int] = None,
    ) -> ConflictPreviewResult:
        try:
            items = [
                ConflictPreviewItem(**item)
                for item in self.service.preview_recurring_conflicts(
                    entity_table, entity_template, rrule, dtstart, duration,
                    timezone, time_slot_field, horizon_days,
                )
            ]
        except ServiceError as e:
            return ConflictPreviewResult(success=False, message=str(e))

        conflicts = sum(1 for item in items if item.has_conflict)
        return ConflictPreviewResult(
            success=True,
            message=f"{len(items)} occurrence(s), {conflicts} conflict(s)",
            occurrences=items,
            conflict_count=conflicts,
        )
