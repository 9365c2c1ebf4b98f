"""
Series service for recurring time-slot schedules.

Implements every mutation of series groups, series and instances. Methods
raise ServiceError subclasses on invalid input and commit on success.
When occurrences need to be (re)generated, the expansion job is enqueued
in the same transaction as the mutation, so both commit or neither does.
"""

import re
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from timeslot.src.config.settings import AppSettings, get_settings
from timeslot.src.models import (
    Instance,
    Series,
    SeriesGroup,
    SeriesStatus,
    ExceptionType,
    Active,
    Modified,
    Rescheduled,
)
from timeslot.src.models.job import Job
from timeslot.src.services.entity_registry import EntityRegistry, validate_template
from timeslot.src.services.entity_store import EntityStore
from timeslot.src.services.exceptions import (
    NotFoundError,
    OccurrenceConflictError,
    ValidationError,
)
from timeslot.src.services.materializer import Materializer
from timeslot.src.services.recurrence import (
    RecurrenceRule,
    expand,
    parse_rrule,
    resolve_timezone,
)
from timeslot.src.services.template import EntityTemplate, TemplatePatch
from timeslot.src.utils.job_queue import JobQueue
from timeslot.src.utils.logging_config import get_logger
from timeslot.src.utils.time_slot import TimeSlot


logger = get_logger("services")

EXPANSION_JOB_KIND = "expand_recurring_series"
EXPANSION_QUEUE = "recurring"
EXPANSION_PRIORITY = 2

COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


def to_utc_naive(value: datetime, tz_name: str) -> datetime:
    """
    Normalize an anchor for storage.

    Naive values are wall-clock time in ``tz_name``; aware values keep
    their instant.

    Returns:
        Naive UTC datetime
    """
    tz = resolve_timezone(tz_name)
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(dt_timezone.utc).replace(tzinfo=None)


def _validate_color(color: Optional[str]) -> None:
    if color and not COLOR_PATTERN.match(color):
        raise ValidationError("Color must be a hex value like #3B82F6", field="color")


def _validate_duration(duration: Optional[timedelta]) -> timedelta:
    if duration is None:
        raise ValidationError("Duration is required", field="duration")
    if duration <= timedelta(0):
        raise ValidationError("Duration must be positive", field="duration")
    return duration


class SeriesService:
    """
    Service for managing recurring series.

    Usage:
        >>> service = SeriesService(db, registry)
        >>> group, series = service.create_recurring_series(
        ...     group_name="Standup",
        ...     entity_table="bookings",
        ...     entity_template={"room_id": 1, "purpose": "Standup"},
        ...     rrule="FREQ=WEEKLY;BYDAY=MO,WE",
        ...     dtstart=datetime(2025, 1, 6, 9, 0),
        ...     duration=timedelta(minutes=30),
        ...     timezone="America/New_York",
        ... )
    """

    def __init__(
        self,
        db: Session,
        registry: EntityRegistry,
        job_queue: Optional[JobQueue] = None,
        settings: Optional[AppSettings] = None,
    ):
        """
        Initialize series service.

        Args:
            db: SQLAlchemy database session
            registry: Entity tables series may target
            job_queue: Queue expansion jobs are written to (defaults to one on db)
            settings: Horizon and retry configuration
        """
        self.db = db
        self.registry = registry
        self.settings = settings or get_settings()
        self.job_queue = job_queue or JobQueue(db, self.settings)
        self.materializer = Materializer(db, registry)

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_series(self, series_id: int) -> Series:
        """
        Get a series by id.

        Raises:
            NotFoundError: If the series does not exist
        """
        series = self.db.query(Series).filter(Series.id == series_id).first()
        if not series:
            raise NotFoundError("Series", series_id)
        return series

    def get_series_group(self, group_id: int) -> SeriesGroup:
        """
        Get a series group by id.

        Raises:
            NotFoundError: If the group does not exist
        """
        group = self.db.query(SeriesGroup).filter(SeriesGroup.id == group_id).first()
        if not group:
            raise NotFoundError("Group", group_id)
        return group

    def instance_counts(self, series_id: int) -> Dict[str, int]:
        """Count a series' instances by state."""
        rows = self.db.query(
            Instance.exception_type, func.count(Instance.id)
        ).filter(
            Instance.series_id == series_id
        ).group_by(Instance.exception_type).all()

        counts = {"active": 0}
        counts.update({t.value: 0 for t in ExceptionType})
        for exception_type, count in rows:
            key = ExceptionType(exception_type).value if exception_type else "active"
            counts[key] = count
        counts["total"] = sum(counts.values())
        return counts

    def _store(self, series: Series) -> EntityStore:
        return EntityStore(self.db, self.registry.get(series.entity_table), series.time_slot_field)

    # =========================================================================
    # Expansion jobs
    # =========================================================================

    def default_horizon(self, tz_name: str = "UTC") -> date:
        """Today in the given zone plus the configured horizon."""
        today = datetime.now(resolve_timezone(tz_name)).date()
        return today + timedelta(days=self.settings.expansion_horizon_days)

    def enqueue_expansion(self, series: Series, expand_until: Optional[date] = None) -> Job:
        """
        Enqueue an expansion job for a series in the current transaction.

        Args:
            series: Flushed series
            expand_until: Horizon date (default: configured horizon from today)

        Returns:
            The queued job
        """
        horizon = expand_until or self.default_horizon(series.timezone)
        return self.job_queue.enqueue(
            EXPANSION_JOB_KIND,
            {"series_id": series.id, "expand_until": horizon.isoformat()},
            queue=EXPANSION_QUEUE,
            priority=EXPANSION_PRIORITY,
        )

    def expand_series_instances(self, series_id: int, expand_until: Optional[date] = None) -> Job:
        """
        Queue an on-demand expansion of a series.

        Args:
            series_id: Series to expand
            expand_until: Horizon date (default: configured horizon)

        Returns:
            The queued job

        Raises:
            NotFoundError: If the series does not exist
        """
        series = self.get_series(series_id)
        job = self.enqueue_expansion(series, expand_until)
        self.db.commit()
        return job

    # =========================================================================
    # Create
    # =========================================================================

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
    ) -> Tuple[SeriesGroup, Series]:
        """
        Create a series group with its first series.

        Args:
            group_name: Display name of the group
            entity_table: Registered table occurrences are written to
            entity_template: Field values for every occurrence
            rrule: Recurrence rule
            dtstart: Anchor start (naive = wall-clock in ``timezone``)
            duration: Length of each occurrence
            timezone: IANA zone the rule is evaluated in
            group_description: Optional description
            group_color: Optional #RRGGBB color
            time_slot_field: Column receiving each occurrence's slot
            expand_now: Enqueue the first expansion job
            skip_conflicts: Skip overlapping occurrences instead of aborting

        Returns:
            (group, series)

        Raises:
            ValidationError: On any invalid argument; nothing is written
        """
        if not group_name or not group_name.strip():
            raise ValidationError("Group name is required", field="group_name")
        if not entity_table:
            raise ValidationError("Entity table is required", field="entity_table")
        if dtstart is None:
            raise ValidationError("Start time is required", field="dtstart")
        _validate_color(group_color)
        _validate_duration(duration)

        rule = parse_rrule(rrule)
        resolve_timezone(timezone)

        definition = self.registry.get(entity_table)
        template = EntityTemplate.from_dict(entity_template).without(time_slot_field)
        validate_template(definition, template.to_dict(), time_slot_field)

        anchor_utc = to_utc_naive(dtstart, timezone)
        anchor_local_date = anchor_utc.replace(tzinfo=dt_timezone.utc).astimezone(
            resolve_timezone(timezone)
        ).date()

        group = SeriesGroup(
            display_name=group_name.strip(),
            description=group_description,
            color=group_color or None,
        )
        self.db.add(group)
        self.db.flush()

        series = Series(
            group_id=group.id,
            version_number=1,
            effective_from=anchor_local_date,
            entity_table=entity_table,
            rrule=rule.to_string(),
            dtstart=anchor_utc,
            duration=duration,
            timezone=timezone,
            time_slot_field=time_slot_field,
            skip_conflicts=skip_conflicts,
            status=SeriesStatus.ACTIVE,
        )
        series.entity_template = template.to_dict()
        self.db.add(series)
        self.db.flush()

        if expand_now:
            self.enqueue_expansion(series)

        self.db.commit()
        self.db.refresh(series)

        logger.info(
            f"Created recurring series {series.id} in group {group.id} ({rule})",
            extra={"series_id": series.id, "group_id": group.id, "entity_table": entity_table}
        )
        return group, series

    # =========================================================================
    # Template and schedule updates
    # =========================================================================

    def update_series_template(
        self,
        series_id: int,
        template_patch: Mapping[str, Any],
        skip_exceptions: bool = True,
    ) -> int:
        """
        Merge a patch into a series template and propagate it.

        The patch overrides the keys it names; other template fields are
        kept. Patched values are copied to the series' materialized rows.

        Args:
            series_id: Series to update
            template_patch: Values to override
            skip_exceptions: Leave modified and rescheduled rows untouched

        Returns:
            Number of entity rows updated

        Raises:
            NotFoundError: If the series does not exist
            ValidationError: If the merged template names unknown fields
        """
        series = self.get_series(series_id)
        definition = self.registry.get(series.entity_table)
        patch = TemplatePatch.from_dict(template_patch)

        merged = EntityTemplate.from_dict(series.entity_template).merge(patch).without(
            series.time_slot_field
        )
        validate_template(definition, merged.to_dict(), series.time_slot_field)

        series.entity_template = merged.to_dict()
        series.template_updated_at = datetime.utcnow()

        query = self.db.query(Instance.entity_id).filter(
            Instance.series_id == series.id,
            Instance.entity_id.isnot(None)
        )
        if skip_exceptions:
            query = query.filter(Instance.is_exception.is_(False))
        entity_ids = [row.entity_id for row in query.all()]

        propagated = {k: v for k, v in patch.values.items() if k != series.time_slot_field}
        updated = self._store(series).update_many(entity_ids, propagated)

        self.db.commit()
        logger.info(
            f"Updated template of series {series.id}, {updated} row(s) propagated",
            extra={"series_id": series.id, "instances_updated": updated,
                   "fields": sorted(propagated)}
        )
        return updated

    def _delete_generated_instances(self, series: Series, on_or_after: Optional[date] = None) -> int:
        """Delete non-exception instances and their rows; returns rows deleted."""
        query = self.db.query(Instance).filter(
            Instance.series_id == series.id,
            Instance.is_exception.is_(False)
        )
        if on_or_after is not None:
            query = query.filter(Instance.occurrence_date >= on_or_after)
        instances = query.all()

        entity_ids = [i.entity_id for i in instances]
        for instance in instances:
            self.db.delete(instance)
        self.db.flush()
        return self._store(series).delete_many(entity_ids)

    def update_series_schedule(
        self,
        series_id: int,
        new_anchor: Optional[datetime] = None,
        new_duration: Optional[timedelta] = None,
        new_rrule: Optional[str] = None,
    ) -> int:
        """
        Replace the schedule of a series and regenerate its occurrences.

        Generated occurrences are deleted with their rows; exceptions
        (cancellations, edits, moves) are kept. A fresh expansion job is
        always enqueued.

        Returns:
            Number of entity rows deleted

        Raises:
            NotFoundError: If the series does not exist
            ValidationError: If the rule or duration is invalid, or the new
                anchor falls after the last date of a closed version
        """
        series = self.get_series(series_id)
        rule = parse_rrule(new_rrule) if new_rrule else parse_rrule(series.rrule)
        duration = series.duration if new_duration is None else _validate_duration(new_duration)
        dtstart = series.dtstart if new_anchor is None else to_utc_naive(new_anchor, series.timezone)
        anchor_local = dtstart.replace(tzinfo=dt_timezone.utc).astimezone(series.tz)

        if series.effective_until is not None:
            if anchor_local.date() > series.effective_until:
                raise ValidationError(
                    f"New start time is after this version ends ({series.effective_until})",
                    field="new_anchor"
                )
            rule = self._close_rule(
                rule, anchor_local, duration, series.timezone, series.effective_until
            )

        deleted = self._delete_generated_instances(series)

        if new_anchor is not None:
            series.dtstart = dtstart
            series.effective_from = anchor_local.date()
        series.duration = duration
        series.rrule = rule.to_string()
        series.expanded_until = None

        self.enqueue_expansion(series)
        self.db.commit()

        logger.info(
            f"Updated schedule of series {series.id} ({series.rrule}), {deleted} row(s) removed",
            extra={"series_id": series.id, "entities_deleted": deleted}
        )
        return deleted

    # =========================================================================
    # Split
    # =========================================================================

    def _close_rule(
        self,
        rule: RecurrenceRule,
        anchor_local: datetime,
        duration: timedelta,
        tz_name: str,
        last_date: date,
    ) -> RecurrenceRule:
        """End a rule anchored at ``anchor_local`` on ``last_date`` without letting a COUNT grow."""
        if rule.until is not None and rule.until <= last_date:
            return rule
        if rule.count is None:
            return rule.with_until(last_date)
        occurrences = expand(
            rule, anchor_local, duration, tz_name,
            horizon=last_date, max_occurrences=rule.count,
        )
        if occurrences and len(occurrences) >= rule.count:
            return rule.with_until(occurrences[-1].occurrence_date)
        return rule.with_until(last_date)

    def split_series_from_date(
        self,
        series_id: int,
        boundary_date: date,
        new_anchor: datetime,
        new_duration: Optional[timedelta] = None,
        template_patch: Optional[Mapping[str, Any]] = None,
        new_rrule: Optional[str] = None,
    ) -> Series:
        """
        Change a series from a date forward.

        The original series is closed the day before ``boundary_date``. A
        new version starts on the boundary in the same group with the next
        version number and the merged template. Generated occurrences of the
        original on or after the boundary are removed; exceptions there are
        moved to the new version so cancellations and edits survive.

        Args:
            series_id: Series to split
            boundary_date: First date governed by the new version
            new_anchor: Anchor of the new version (not before the boundary)
            new_duration: Duration of the new version (default: unchanged)
            template_patch: Template changes for the new version
            new_rrule: Rule of the new version (default: the original rule)

        Returns:
            The new series

        Raises:
            NotFoundError: If the series does not exist
            ValidationError: If the boundary or new anchor is invalid
        """
        original = self.get_series(series_id)
        definition = self.registry.get(original.entity_table)

        if boundary_date <= original.anchor_local.date():
            raise ValidationError(
                "Split date must be after the first occurrence of the series",
                field="boundary_date"
            )
        if original.effective_until is not None and boundary_date > original.effective_until:
            raise ValidationError(
                f"Split date is after this version ends ({original.effective_until})",
                field="boundary_date"
            )
        if new_anchor is None:
            raise ValidationError("New start time is required", field="new_anchor")

        anchor_utc = to_utc_naive(new_anchor, original.timezone)
        anchor_local_date = anchor_utc.replace(tzinfo=dt_timezone.utc).astimezone(
            original.tz
        ).date()
        if anchor_local_date < boundary_date:
            raise ValidationError(
                "New start time cannot be before the split date", field="new_anchor"
            )

        duration = original.duration if new_duration is None else _validate_duration(new_duration)
        source_rule = parse_rrule(original.rrule)
        new_rule = parse_rrule(new_rrule) if new_rrule else source_rule

        merged = EntityTemplate.from_dict(original.entity_template).merge(
            TemplatePatch.from_dict(template_patch)
        ).without(original.time_slot_field)
        validate_template(definition, merged.to_dict(), original.time_slot_field)

        # Close the original version
        last_date = boundary_date - timedelta(days=1)
        original.rrule = self._close_rule(
            source_rule, original.anchor_local, original.duration, original.timezone, last_date
        ).to_string()
        original.effective_until = last_date
        self._delete_generated_instances(original, on_or_after=boundary_date)

        max_version = self.db.query(func.max(Series.version_number)).filter(
            Series.group_id == original.group_id
        ).scalar() or 0

        new_series = Series(
            group_id=original.group_id,
            version_number=max_version + 1,
            effective_from=boundary_date,
            entity_table=original.entity_table,
            rrule=new_rule.to_string(),
            dtstart=anchor_utc,
            duration=duration,
            timezone=original.timezone,
            time_slot_field=original.time_slot_field,
            skip_conflicts=original.skip_conflicts,
            status=SeriesStatus.ACTIVE,
        )
        new_series.entity_template = merged.to_dict()
        self.db.add(new_series)
        self.db.flush()

        relinked = self.db.query(Instance).filter(
            Instance.series_id == original.id,
            Instance.occurrence_date >= boundary_date,
            Instance.is_exception.is_(True)
        ).update({Instance.series_id: new_series.id}, synchronize_session=False)

        self.enqueue_expansion(new_series)
        self.db.commit()
        self.db.refresh(new_series)

        logger.info(
            f"Split series {original.id} at {boundary_date}: new series {new_series.id} "
            f"(v{new_series.version_number}), {relinked} exception(s) moved",
            extra={"series_id": original.id, "new_series_id": new_series.id,
                   "group_id": original.group_id, "boundary_date": boundary_date.isoformat()}
        )
        return new_series

    # =========================================================================
    # Single occurrences
    # =========================================================================

    def cancel_series_occurrence(
        self,
        entity_table: str,
        entity_id: int,
        reason: Optional[str] = None,
    ) -> Instance:
        """
        Cancel one occurrence of a series.

        Deletes the entity row and keeps the instance as a tombstone so the
        date is never regenerated.

        Raises:
            NotFoundError: If the row is not part of a series
        """
        instance = self.materializer.cancel_occurrence(entity_table, entity_id, reason)
        self.db.commit()
        self.db.refresh(instance)
        return instance

    def modify_series_occurrence(
        self,
        entity_table: str,
        entity_id: int,
        values: Mapping[str, Any],
    ) -> Instance:
        """
        Edit the fields of one occurrence.

        The occurrence becomes an exception, so later template updates do
        not overwrite the edit.

        Raises:
            NotFoundError: If the row is not part of a series
            ValidationError: If a field cannot be edited here
        """
        instance = self.materializer.find_instance(entity_table, entity_id)
        series = instance.series
        definition = self.registry.get(entity_table)

        if not values:
            raise ValidationError("No fields to update", field="values")
        for key in values:
            if key == series.time_slot_field:
                raise ValidationError(
                    "Use reschedule_occurrence to move an occurrence", field=key
                )
            if key not in definition.editable_fields:
                raise ValidationError(f"Field '{key}' cannot be edited", field=key)

        self._store(series).update(entity_id, values)
        if isinstance(instance.state, Active):
            instance.state = Modified(entity_id=entity_id)

        self.db.commit()
        self.db.refresh(instance)
        logger.info(
            f"Modified {entity_table} {entity_id} (series {series.id})",
            extra={"series_id": series.id, "entity_id": entity_id, "fields": sorted(values)}
        )
        return instance

    def reschedule_occurrence(
        self,
        entity_table: str,
        entity_id: int,
        new_start: datetime,
        new_end: datetime,
    ) -> Instance:
        """
        Move one occurrence to another slot.

        The generated slot is kept on the instance the first time it moves.

        Raises:
            NotFoundError: If the row is not part of a series
            ValidationError: If the new slot is invalid
            OccurrenceConflictError: If the new slot overlaps another row
        """
        try:
            slot = TimeSlot(new_start, new_end)
        except ValueError as e:
            raise ValidationError(str(e), field="new_start")

        instance = self.materializer.find_instance(entity_table, entity_id)
        series = instance.series
        store = self._store(series)

        record = store.get(entity_id) or {}
        conflicting_id = store.find_conflict(record, slot, exclude_ids=[entity_id])
        if conflicting_id is not None:
            raise OccurrenceConflictError(instance.occurrence_date, conflicting_id)

        original_slot = store.get_time_slot(entity_id)
        store.update(entity_id, {series.time_slot_field: slot})

        if not isinstance(instance.state, Rescheduled):
            instance.state = Rescheduled(
                entity_id=entity_id,
                original_time_slot=original_slot.to_db_string() if original_slot else "",
            )

        self.db.commit()
        self.db.refresh(instance)
        logger.info(
            f"Rescheduled {entity_table} {entity_id} to {slot}",
            extra={"series_id": series.id, "entity_id": entity_id}
        )
        return instance

    # =========================================================================
    # Deletes
    # =========================================================================

    def _purge_series(self, series: Series) -> int:
        """Delete a series' rows and instances; returns rows deleted."""
        entity_ids = [
            row.entity_id for row in self.db.query(Instance.entity_id).filter(
                Instance.series_id == series.id,
                Instance.entity_id.isnot(None)
            ).all()
        ]
        deleted = self._store(series).delete_many(entity_ids)
        self.db.query(Instance).filter(
            Instance.series_id == series.id
        ).delete(synchronize_session=False)
        return deleted

    def delete_series_with_instances(self, series_id: int) -> int:
        """
        Delete a series, its instances and their entity rows.

        The group goes too when this was its last series.

        Returns:
            Number of entity rows deleted

        Raises:
            NotFoundError: If the series does not exist
        """
        series = self.get_series(series_id)
        group = series.group

        deleted = self._purge_series(series)
        group.series.remove(series)
        self.db.delete(series)
        self.db.flush()

        group_deleted = False
        if not group.series:
            self.db.delete(group)
            group_deleted = True

        self.db.commit()
        logger.info(
            f"Deleted series {series_id} and {deleted} row(s)"
            + (", group removed" if group_deleted else ""),
            extra={"series_id": series_id, "entities_deleted": deleted}
        )
        return deleted

    def delete_series_group(self, group_id: int) -> int:
        """
        Delete a group with all its series, instances and entity rows.

        Returns:
            Number of entity rows deleted

        Raises:
            NotFoundError: If the group does not exist
        """
        group = self.get_series_group(group_id)

        deleted = 0
        for series in list(group.series):
            deleted += self._purge_series(series)
        self.db.delete(group)
        self.db.commit()

        logger.info(
            f"Deleted series group {group_id} and {deleted} row(s)",
            extra={"group_id": group_id, "entities_deleted": deleted}
        )
        return deleted

    # =========================================================================
    # Group info and status
    # =========================================================================

    def update_series_group_info(
        self,
        group_id: int,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> SeriesGroup:
        """
        Update display information of a group.

        None leaves a field unchanged; an empty description or color
        clears it. A blank display name is ignored.

        Raises:
            NotFoundError: If the group does not exist
            ValidationError: If the color is not #RRGGBB
        """
        group = self.get_series_group(group_id)
        _validate_color(color)

        if display_name and display_name.strip():
            group.display_name = display_name.strip()
        if description is not None:
            group.description = description or None
        if color is not None:
            group.color = color or None

        self.db.commit()
        self.db.refresh(group)
        return group

    def pause_series(self, series_id: int, reason: Optional[str] = None) -> Series:
        """Stop expanding a series."""
        series = self.get_series(series_id)
        series.status = SeriesStatus.PAUSED
        series.status_reason = reason
        self.db.commit()
        logger.info(f"Paused series {series.id}", extra={"series_id": series.id})
        return series

    def resume_series(self, series_id: int) -> Series:
        """
        Resume expanding a paused or flagged series and queue an expansion.

        Raises:
            ValidationError: If the series has ended
        """
        series = self.get_series(series_id)
        if series.status == SeriesStatus.ENDED:
            raise ValidationError("Series has ended", field="status")
        series.status = SeriesStatus.ACTIVE
        series.status_reason = None
        self.enqueue_expansion(series)
        self.db.commit()
        logger.info(f"Resumed series {series.id}", extra={"series_id": series.id})
        return series

    # =========================================================================
    # Read-only queries
    # =========================================================================

    def get_series_membership(self, entity_table: str, entity_id: int) -> Dict[str, Any]:
        """
        Report whether an entity row belongs to a series.

        Tombstones carry no entity id, so a cancelled occurrence's former
        row never matches.

        Returns:
            Membership record with is_member False for unrelated rows
        """
        row = self.db.query(Instance, Series, SeriesGroup).join(
            Series, Instance.series_id == Series.id
        ).join(
            SeriesGroup, Series.group_id == SeriesGroup.id
        ).filter(
            Instance.entity_table == entity_table,
            Instance.entity_id == entity_id
        ).first()

        if row is None:
            return {"is_member": False}

        instance, series, group = row
        return {
            "is_member": True,
            "series_id": series.id,
            "group_id": group.id,
            "group_name": group.display_name,
            "group_color": group.color,
            "version_number": series.version_number,
            "occurrence_date": instance.occurrence_date,
            "is_exception": instance.is_exception,
            "exception_type": instance.exception_type.value if instance.exception_type else None,
            "original_template": series.entity_template,
        }

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
    ) -> List[Dict[str, Any]]:
        """
        List the occurrences a rule would produce and which would conflict.

        Nothing is written.

        Returns:
            One record per occurrence with has_conflict and conflicting_entity_id
        """
        definition = self.registry.get(entity_table)
        if not definition.has_field(time_slot_field):
            raise ValidationError(
                f"Time slot field '{time_slot_field}' not found in '{entity_table}'",
                field="time_slot_field"
            )
        _validate_duration(duration)
        tz = resolve_timezone(timezone)
        days = horizon_days or self.settings.expansion_horizon_days
        horizon = datetime.now(tz).date() + timedelta(days=days)

        store = EntityStore(self.db, definition, time_slot_field)
        record = dict(entity_template or {})
        preview = []
        for occurrence in expand(
            rrule, dtstart, duration, tz, horizon,
            max_occurrences=self.settings.max_occurrences_per_pass,
        ):
            conflicting_id = store.find_conflict(record, occurrence.time_slot)
            preview.append({
                "occurrence_date": occurrence.occurrence_date,
                "start": occurrence.start,
                "end": occurrence.end,
                "has_conflict": conflicting_id is not None,
                "conflicting_entity_id": conflicting_id,
            })
        return preview
