"""
Series model for one version of a recurring schedule.

A Series holds the recurrence rule, anchor, duration, time zone and entity
template used to materialize occurrences. Series belong to a SeriesGroup;
splitting a schedule closes the current version (effective_until) and
starts a new one with the next version number.

Design Rationale:
- dtstart is stored as naive UTC like every other timestamp; expansion
  converts it to the series time zone before doing wall-clock arithmetic
- entity_table names the domain table rows are written to, so one engine
  can drive several entity types
- skip_conflicts is captured at creation and applies to every expansion run
"""

import enum
import json
from datetime import datetime, timezone
from typing import Any, Dict
from zoneinfo import ZoneInfo

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, Text, Interval,
    ForeignKey, Enum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from timeslot.src.models import Base


class SeriesStatus(str, enum.Enum):
    """
    Series lifecycle status.

    - ACTIVE: Expanded by the worker
    - PAUSED: Expansion suspended by a user
    - NEEDS_ATTENTION: Template no longer matches the entity schema
    - ENDED: Closed, no further expansion
    """
    ACTIVE = "active"
    PAUSED = "paused"
    NEEDS_ATTENTION = "needs_attention"
    ENDED = "ended"


class Series(Base):
    """
    Recurring schedule version.

    Attributes:
        id: Primary key
        group_id: Owning SeriesGroup
        version_number: 1 for the first series in a group, +1 per split
        effective_from: First local date this version applies
        effective_until: Last local date this version applies (NULL = ongoing)
        entity_table: Target domain table for materialized rows
        entity_template_json: Field values copied into every materialized row
        rrule: Recurrence rule text (FREQ=WEEKLY;BYDAY=MO,WE)
        dtstart: Anchor start instant (naive UTC)
        duration: Length of each occurrence
        timezone: IANA time zone the rule is evaluated in
        time_slot_field: Entity column receiving the computed slot
        skip_conflicts: Record overlapping occurrences as skipped instead of aborting
        status: Lifecycle status (active/paused/needs_attention/ended)
        status_reason: Why the status last changed
        expanded_until: Last horizon date the worker processed
        created_at: Creation timestamp
        updated_at: Last update timestamp
        template_updated_at: When the template was last patched

    Relationships:
        group: Parent group (many-to-one, CASCADE on delete)
        instances: Occurrence instances (one-to-many, CASCADE on delete)

    Constraints:
        - (group_id, version_number) is unique
        - effective_until, when set, is not before effective_from
    """

    __tablename__ = "time_slot_series"

    id = Column(Integer, primary_key=True, autoincrement=True)

    group_id = Column(
        Integer,
        ForeignKey("time_slot_series_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    version_number = Column(Integer, default=1, nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)

    # Entity definition
    entity_table = Column(String(63), nullable=False)
    entity_template_json = Column(
        JSONB().with_variant(Text, "sqlite"),
        nullable=False
    )

    # Recurrence definition
    rrule = Column(String(500), nullable=False)
    dtstart = Column(DateTime, nullable=False)
    duration = Column(Interval, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    time_slot_field = Column(String(63), nullable=False, default="time_slot")
    skip_conflicts = Column(Boolean, nullable=False, default=True)

    # Expansion state
    status = Column(
        Enum(
            SeriesStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=SeriesStatus.ACTIVE,
        nullable=False,
        index=True
    )
    status_reason = Column(Text, nullable=True)
    expanded_until = Column(Date, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )
    template_updated_at = Column(DateTime, nullable=True)

    group = relationship("SeriesGroup", back_populates="series")
    instances = relationship(
        "Instance",
        back_populates="series",
        lazy="dynamic",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("group_id", "version_number", name="uq_series_group_version"),
        CheckConstraint(
            "effective_until IS NULL OR effective_until >= effective_from",
            name="ck_series_effective_range",
        ),
    )

    @property
    def entity_template(self) -> Dict[str, Any]:
        """
        Get the entity template as a dictionary.

        Returns:
            Template field values
        """
        if self.entity_template_json is None:
            return {}
        if isinstance(self.entity_template_json, str):
            return json.loads(self.entity_template_json)
        return dict(self.entity_template_json)

    @entity_template.setter
    def entity_template(self, value: Dict[str, Any]) -> None:
        # Serialize for SQLite compatibility (uses Text variant)
        self.entity_template_json = json.dumps(value or {}, default=str)

    @property
    def tz(self) -> ZoneInfo:
        """Series time zone."""
        return ZoneInfo(self.timezone)

    @property
    def anchor_local(self) -> datetime:
        """Anchor as an aware datetime in the series time zone."""
        return self.dtstart.replace(tzinfo=timezone.utc).astimezone(self.tz)

    @property
    def is_active(self) -> bool:
        """Check if the worker should expand this series."""
        return self.status == SeriesStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<Series("
            f"id={self.id}, "
            f"group_id={self.group_id}, "
            f"version={self.version_number}, "
            f"rrule='{self.rrule}', "
            f"status={self.status}"
            f")>"
        )

    def __str__(self) -> str:
        return f"{self.entity_table} v{self.version_number}: {self.rrule}"
