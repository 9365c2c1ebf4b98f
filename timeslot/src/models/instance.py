"""
Instance model linking one occurrence date of a Series to its entity row.

Each (series, occurrence_date) pair has at most one Instance. A normal
instance points at the materialized entity row. Exceptions record what
happened to an occurrence:

- cancelled: the entity row was deleted on purpose; the instance stays as a
  tombstone so the worker never regenerates that date
- conflict_skipped: the occurrence overlapped another row and the series
  skips conflicts; also a tombstone
- modified: the entity row was edited individually; template updates skip it
- rescheduled: the entity row was moved; original_time_slot keeps the
  computed slot

The columns are constrained so that only these shapes can be stored, and
``Instance.state`` exposes them as a tagged variant.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, Text,
    ForeignKey, Enum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from timeslot.src.models import Base


class ExceptionType(str, enum.Enum):
    """Ways an occurrence can deviate from its series."""
    CANCELLED = "cancelled"
    MODIFIED = "modified"
    RESCHEDULED = "rescheduled"
    CONFLICT_SKIPPED = "conflict_skipped"


@dataclass(frozen=True)
class Active:
    """Occurrence materialized as generated."""
    entity_id: int


@dataclass(frozen=True)
class Cancelled:
    """Occurrence cancelled; entity row deleted."""
    reason: Optional[str] = None


@dataclass(frozen=True)
class Modified:
    """Occurrence edited individually."""
    entity_id: int


@dataclass(frozen=True)
class Rescheduled:
    """Occurrence moved to another slot."""
    entity_id: int
    original_time_slot: str


@dataclass(frozen=True)
class ConflictSkipped:
    """Occurrence skipped because it overlapped an existing row."""
    reason: Optional[str] = None


InstanceState = Union[Active, Cancelled, Modified, Rescheduled, ConflictSkipped]


class Instance(Base):
    """
    Occurrence of a series.

    Attributes:
        id: Primary key
        series_id: Owning Series
        occurrence_date: Local calendar date of the occurrence
        entity_table: Table holding the materialized row
        entity_id: Materialized row id (NULL for tombstones)
        is_exception: True when exception_type is set
        exception_type: cancelled/modified/rescheduled/conflict_skipped
        exception_reason: Free text supplied with the exception
        exception_at: When the exception was recorded
        original_time_slot: Generated slot of a rescheduled occurrence
        created_at: Creation timestamp

    Relationships:
        series: Parent series (many-to-one, CASCADE on delete)

    Constraints:
        - (series_id, occurrence_date) is unique
        - (entity_table, entity_id) is unique
        - is_exception matches exception_type presence
        - tombstones have no entity_id, every other shape has one
        - rescheduled instances keep their original slot
    """

    __tablename__ = "time_slot_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)

    series_id = Column(
        Integer,
        ForeignKey("time_slot_series.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    occurrence_date = Column(Date, nullable=False)

    entity_table = Column(String(63), nullable=False)
    entity_id = Column(Integer, nullable=True)

    is_exception = Column(Boolean, nullable=False, default=False)
    exception_type = Column(
        Enum(
            ExceptionType,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=True
    )
    exception_reason = Column(Text, nullable=True)
    exception_at = Column(DateTime, nullable=True)
    original_time_slot = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    series = relationship("Series", back_populates="instances")

    __table_args__ = (
        UniqueConstraint("series_id", "occurrence_date", name="uq_instances_series_date"),
        UniqueConstraint("entity_table", "entity_id", name="uq_instances_entity"),
        CheckConstraint(
            "(is_exception AND exception_type IS NOT NULL) "
            "OR (NOT is_exception AND exception_type IS NULL)",
            name="ck_instances_exception_flag",
        ),
        CheckConstraint(
            "(COALESCE(exception_type, '') IN ('cancelled', 'conflict_skipped') AND entity_id IS NULL) "
            "OR (COALESCE(exception_type, '') IN ('', 'modified', 'rescheduled') "
            "AND entity_id IS NOT NULL)",
            name="ck_instances_entity_presence",
        ),
        CheckConstraint(
            "exception_type IS NULL OR exception_type != 'rescheduled' "
            "OR original_time_slot IS NOT NULL",
            name="ck_instances_rescheduled_slot",
        ),
        Index("ix_instances_entity", "entity_table", "entity_id"),
    )

    @property
    def state(self) -> InstanceState:
        """
        Get the occurrence state as a tagged variant.

        Returns:
            Active, Cancelled, Modified, Rescheduled or ConflictSkipped
        """
        kind = ExceptionType(self.exception_type) if self.exception_type else None
        if kind is None:
            return Active(entity_id=self.entity_id)
        if kind == ExceptionType.CANCELLED:
            return Cancelled(reason=self.exception_reason)
        if kind == ExceptionType.CONFLICT_SKIPPED:
            return ConflictSkipped(reason=self.exception_reason)
        if kind == ExceptionType.MODIFIED:
            return Modified(entity_id=self.entity_id)
        return Rescheduled(
            entity_id=self.entity_id,
            original_time_slot=self.original_time_slot,
        )

    @state.setter
    def state(self, value: InstanceState) -> None:
        """
        Write a state variant to the underlying columns.

        Args:
            value: New state

        Raises:
            TypeError: If value is not one of the state variants
        """
        if isinstance(value, Active):
            self.entity_id = value.entity_id
            self.is_exception = False
            self.exception_type = None
            self.exception_reason = None
            self.exception_at = None
            self.original_time_slot = None
            return

        if isinstance(value, Cancelled):
            self.entity_id = None
            self.exception_type = ExceptionType.CANCELLED
            self.exception_reason = value.reason
        elif isinstance(value, ConflictSkipped):
            self.entity_id = None
            self.exception_type = ExceptionType.CONFLICT_SKIPPED
            self.exception_reason = value.reason
        elif isinstance(value, Modified):
            self.entity_id = value.entity_id
            self.exception_type = ExceptionType.MODIFIED
        elif isinstance(value, Rescheduled):
            self.entity_id = value.entity_id
            self.exception_type = ExceptionType.RESCHEDULED
            self.original_time_slot = value.original_time_slot
        else:
            raise TypeError(f"Unsupported instance state: {value!r}")

        self.is_exception = True
        self.exception_at = datetime.utcnow()

    @property
    def is_tombstone(self) -> bool:
        """True for cancelled and conflict-skipped occurrences."""
        return isinstance(self.state, (Cancelled, ConflictSkipped))

    def __repr__(self) -> str:
        return (
            f"<Instance("
            f"id={self.id}, "
            f"series_id={self.series_id}, "
            f"date={self.occurrence_date}, "
            f"entity_id={self.entity_id}, "
            f"exception={self.exception_type}"
            f")>"
        )
