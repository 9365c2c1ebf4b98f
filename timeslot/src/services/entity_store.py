"""
Row-level access to registered entity tables.

The engine writes domain rows through SQLAlchemy Core against the table
registered in the EntityRegistry; it never assumes anything about the
table beyond an integer ``id``, the time-slot column and the template
fields.
"""

from typing import Any, Dict, Iterable, Mapping, Optional

from sqlalchemy import and_, delete, func, insert, not_, or_, select, update
from sqlalchemy.dialects.postgresql import TSTZRANGE
from sqlalchemy.orm import Session

from timeslot.src.services.entity_registry import EntityDefinition
from timeslot.src.utils.logging_config import get_logger
from timeslot.src.utils.time_slot import BOUND_FORMAT, LITERAL_PATTERN, TimeSlot


logger = get_logger("services")


class EntityStore:
    """
    Create, read, update and delete rows of one entity table.

    Values for the time-slot column may be given as TimeSlot objects; they
    are stored as range literals.
    """

    def __init__(self, db: Session, definition: EntityDefinition, time_slot_field: str = "time_slot"):
        self.db = db
        self.definition = definition
        self.table = definition.table
        self.time_slot_field = time_slot_field

    def _prepare(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        prepared = dict(values)
        slot = prepared.get(self.time_slot_field)
        if isinstance(slot, TimeSlot):
            prepared[self.time_slot_field] = slot.to_db_string()
        return prepared

    def insert(self, values: Mapping[str, Any]) -> int:
        """
        Insert a row.

        Returns:
            The new row id
        """
        result = self.db.execute(insert(self.table).values(**self._prepare(values)))
        return result.inserted_primary_key[0]

    def get(self, entity_id: int) -> Optional[Dict[str, Any]]:
        """Get a row as a dict, or None."""
        row = self.db.execute(
            select(self.table).where(self.table.c.id == entity_id)
        ).mappings().first()
        return dict(row) if row else None

    def exists(self, entity_id: int) -> bool:
        return self.db.execute(
            select(self.table.c.id).where(self.table.c.id == entity_id)
        ).first() is not None

    def update(self, entity_id: int, values: Mapping[str, Any]) -> bool:
        """
        Update a row.

        Returns:
            True if a row was updated
        """
        if not values:
            return False
        result = self.db.execute(
            update(self.table)
            .where(self.table.c.id == entity_id)
            .values(**self._prepare(values))
        )
        return result.rowcount > 0

    def update_many(self, entity_ids: Iterable[int], values: Mapping[str, Any]) -> int:
        """Apply the same values to several rows; returns rows updated."""
        ids = list(entity_ids)
        if not ids or not values:
            return 0
        result = self.db.execute(
            update(self.table)
            .where(self.table.c.id.in_(ids))
            .values(**self._prepare(values))
        )
        return result.rowcount

    def delete(self, entity_id: int) -> bool:
        """
        Delete a row.

        Returns:
            True if a row was deleted
        """
        result = self.db.execute(delete(self.table).where(self.table.c.id == entity_id))
        return result.rowcount > 0

    def delete_many(self, entity_ids: Iterable[int]) -> int:
        """Delete several rows; returns rows deleted."""
        ids = list(entity_ids)
        if not ids:
            return 0
        result = self.db.execute(delete(self.table).where(self.table.c.id.in_(ids)))
        return result.rowcount

    def get_time_slot(self, entity_id: int) -> Optional[TimeSlot]:
        """Read the slot of a row."""
        row = self.get(entity_id)
        if row is None or row.get(self.time_slot_field) is None:
            return None
        return TimeSlot.parse(row[self.time_slot_field])

    def _overlap_clause(self, slot: TimeSlot):
        """SQL filter keeping rows that may overlap ``slot``."""
        slot_column = self.table.c[self.time_slot_field]
        if isinstance(slot_column.type, TSTZRANGE):
            return slot_column.op("&&")(func.tstzrange(slot.start, slot.end, "[)"))

        # Bounds of canonical literals compare as text; other spellings are
        # left for TimeSlot.parse
        canonical = slot_column.like(LITERAL_PATTERN)
        return or_(
            and_(
                canonical,
                func.substr(slot_column, 2, 20) < slot.end.strftime(BOUND_FORMAT),
                func.substr(slot_column, 23, 20) > slot.start.strftime(BOUND_FORMAT),
            ),
            not_(canonical),
        )

    def find_conflict(
        self,
        record: Mapping[str, Any],
        slot: TimeSlot,
        exclude_ids: Iterable[int] = (),
    ) -> Optional[int]:
        """
        Find a row overlapping ``slot`` within the record's conflict scope.

        Rows match the scope when every scope column equals the record's
        value. With no scope columns every row of the table is a candidate.
        The overlap test runs in the database; candidate rows are confirmed
        with TimeSlot.overlaps.

        Args:
            record: Values of the row about to be written
            slot: Slot about to be written
            exclude_ids: Rows to ignore (e.g. the row being moved)

        Returns:
            Id of the first overlapping row, or None
        """
        slot_column = self.table.c[self.time_slot_field]
        query = select(self.table.c.id, slot_column).where(
            slot_column.is_not(None),
            self._overlap_clause(slot),
        ).order_by(self.table.c.id)

        for column in self.definition.conflict_scope:
            value = record.get(column)
            if value is None:
                query = query.where(self.table.c[column].is_(None))
            else:
                query = query.where(self.table.c[column] == value)

        excluded = list(exclude_ids)
        if excluded:
            query = query.where(self.table.c.id.not_in(excluded))

        if isinstance(slot_column.type, TSTZRANGE):
            return self.db.execute(query.limit(1)).scalar()

        for entity_id, stored in self.db.execute(query):
            try:
                existing = TimeSlot.parse(stored)
            except ValueError:
                logger.warning(
                    f"Unreadable time slot on {self.table.name} row {entity_id}: {stored!r}",
                    extra={"entity_table": self.table.name, "entity_id": entity_id}
                )
                continue
            if existing.overlaps(slot):
                return entity_id
        return None
