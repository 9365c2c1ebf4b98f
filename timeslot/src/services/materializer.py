"""
Materialization of expanded occurrences into entity rows.

For every occurrence that is not yet an instance of the series, the
materializer builds the row (series template plus the computed time slot),
checks it for overlaps, inserts it and links it with an Instance row.

Each occurrence is its own transaction: a failure rolls back that
occurrence only, and occurrences written before it stay committed. The
(series_id, occurrence_date) uniqueness constraint makes the work
idempotent; a concurrent run that wins the race for a date turns this
run's insert into an IntegrityError, which is counted as already present.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timeslot.src.models import Instance, Series, Active, Cancelled, ConflictSkipped
from timeslot.src.services.entity_registry import EntityRegistry
from timeslot.src.services.entity_store import EntityStore
from timeslot.src.services.exceptions import (
    NotFoundError,
    OccurrenceConflictError,
    ServiceError,
    ValidationError,
)
from timeslot.src.services.recurrence import Occurrence
from timeslot.src.services.template import EntityTemplate, TemplatePatch
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("services")


@dataclass
class MaterializationResult:
    """Per-date outcome of one materialization run."""

    created: List[date] = field(default_factory=list)
    conflict_skipped: List[date] = field(default_factory=list)
    already_present: List[date] = field(default_factory=list)
    failed: Dict[date, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return (
            len(self.created) + len(self.conflict_skipped)
            + len(self.already_present) + len(self.failed)
        )

    def to_dict(self) -> dict:
        return {
            "created": len(self.created),
            "conflict_skipped": len(self.conflict_skipped),
            "already_present": len(self.already_present),
            "failed": len(self.failed),
        }


class Materializer:
    """
    Writes entity and instance rows for a series.

    Usage:
        >>> materializer = Materializer(db, registry)
        >>> result = materializer.materialize(series, occurrences)
    """

    def __init__(self, db: Session, registry: EntityRegistry):
        self.db = db
        self.registry = registry

    def _store_for(self, entity_table: str, time_slot_field: str = "time_slot") -> EntityStore:
        return EntityStore(self.db, self.registry.get(entity_table), time_slot_field)

    def _instance_exists(self, series_id: int, occurrence_date: date) -> bool:
        return self.db.query(Instance.id).filter(
            Instance.series_id == series_id,
            Instance.occurrence_date == occurrence_date
        ).first() is not None

    def _skip_occurrence(self, series_id: int, day: date, entity_table: str, reason: str) -> None:
        """Commit a ConflictSkipped tombstone for ``day``."""
        instance = Instance(
            series_id=series_id,
            occurrence_date=day,
            entity_table=entity_table,
        )
        instance.state = ConflictSkipped(reason=reason)
        self.db.add(instance)
        self.db.commit()
        logger.info(
            f"Series {series_id}: skipped {day} ({reason})",
            extra={"series_id": series_id, "occurrence_date": day.isoformat()}
        )

    def materialize(self, series: Series, occurrences: Iterable[Occurrence]) -> MaterializationResult:
        """
        Materialize occurrences of a series, committing each one.

        An overlap is either found by the conflict lookup or reported by a
        constraint of the entity table rejecting the insert; both follow
        the series' skip_conflicts policy.

        Args:
            series: Series being expanded
            occurrences: Expanded occurrences, in order

        Returns:
            Outcome per date

        Raises:
            OccurrenceConflictError: If an occurrence overlaps an existing
                row and the series does not skip conflicts. Occurrences
                before it remain committed.
        """
        # Plain values; the session expires ORM state on every commit/rollback
        series_id = series.id
        entity_table = series.entity_table
        time_slot_field = series.time_slot_field
        skip_conflicts = series.skip_conflicts
        template = EntityTemplate.from_dict(series.entity_template).without(time_slot_field)

        store = self._store_for(entity_table, time_slot_field)
        result = MaterializationResult()

        for occurrence in occurrences:
            day = occurrence.occurrence_date
            try:
                if self._instance_exists(series_id, day):
                    result.already_present.append(day)
                    continue

                slot = occurrence.time_slot
                record = template.merge(TemplatePatch({time_slot_field: slot})).to_dict()

                conflicting_id = store.find_conflict(record, slot)
                if conflicting_id is not None:
                    if not skip_conflicts:
                        raise OccurrenceConflictError(day, conflicting_id)
                    self._skip_occurrence(
                        series_id, day, entity_table, f"Overlaps {entity_table} {conflicting_id}"
                    )
                    result.conflict_skipped.append(day)
                    continue

                try:
                    entity_id = store.insert(record)
                except IntegrityError as e:
                    self.db.rollback()
                    if self._instance_exists(series_id, day):
                        result.already_present.append(day)
                        continue
                    if not skip_conflicts:
                        raise OccurrenceConflictError(day, detail=str(e.orig))
                    self._skip_occurrence(
                        series_id, day, entity_table, f"Rejected by {entity_table}: {e.orig}"
                    )
                    result.conflict_skipped.append(day)
                    continue

                instance = Instance(
                    series_id=series_id,
                    occurrence_date=day,
                    entity_table=entity_table,
                )
                instance.state = Active(entity_id=entity_id)
                self.db.add(instance)
                self.db.commit()
                result.created.append(day)

            except OccurrenceConflictError:
                self.db.rollback()
                logger.warning(
                    f"Series {series_id}: conflict on {day}, aborting run",
                    extra={"series_id": series_id, "occurrence_date": day.isoformat()}
                )
                raise
            except IntegrityError as e:
                self.db.rollback()
                if self._instance_exists(series_id, day):
                    result.already_present.append(day)
                else:
                    result.failed[day] = str(e.orig)
                    logger.error(
                        f"Series {series_id}: could not write {day}: {e.orig}",
                        extra={"series_id": series_id, "occurrence_date": day.isoformat()}
                    )
            except (ServiceError, ValueError) as e:
                self.db.rollback()
                result.failed[day] = str(e)
                logger.error(
                    f"Series {series_id}: could not write {day}: {e}",
                    extra={"series_id": series_id, "occurrence_date": day.isoformat()}
                )

        logger.info(
            f"Series {series_id}: materialized {len(result.created)} occurrence(s)",
            extra={"series_id": series_id, "result": result.to_dict()}
        )
        return result

    def find_instance(self, entity_table: str, entity_id: int) -> Instance:
        """
        Get the instance governing an entity row.

        Raises:
            NotFoundError: If the row is not part of a series
        """
        instance = self.db.query(Instance).filter(
            Instance.entity_table == entity_table,
            Instance.entity_id == entity_id
        ).first()
        if not instance:
            raise NotFoundError("Series occurrence for entity", f"{entity_table}/{entity_id}")
        return instance

    def cancel_occurrence(self, entity_table: str, entity_id: int, reason: str = None) -> Instance:
        """
        Cancel one occurrence: delete its row and keep a tombstone.

        The caller commits.

        Args:
            entity_table: Table of the occurrence's row
            entity_id: Row id
            reason: Optional cancellation reason

        Returns:
            The instance, now Cancelled

        Raises:
            NotFoundError: If the row is not part of a series
            ValidationError: If the occurrence is already a tombstone
        """
        instance = self.find_instance(entity_table, entity_id)
        if instance.is_tombstone:
            raise ValidationError("Occurrence is already cancelled", field="entity_id")

        store = self._store_for(entity_table, instance.series.time_slot_field)
        instance.state = Cancelled(reason=reason)
        self.db.flush()
        store.delete(entity_id)

        logger.info(
            f"Cancelled {entity_table} {entity_id} (series {instance.series_id}, {instance.occurrence_date})",
            extra={"series_id": instance.series_id, "entity_id": entity_id,
                   "occurrence_date": instance.occurrence_date.isoformat()}
        )
        return instance
