"""
SeriesGroup model for user-facing recurring schedules.

A group is what a user thinks of as "the recurring booking". It owns one or
more Series versions: the first is created with the group, and each
"change from this date forward" split adds another version.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, CheckConstraint
from sqlalchemy.orm import relationship

from timeslot.src.models import Base


class SeriesGroup(Base):
    """
    Recurring schedule group.

    Attributes:
        id: Primary key
        display_name: Name shown to users
        description: Optional description
        color: Optional ``#RRGGBB`` display color
        created_at: Creation timestamp
        updated_at: Last update timestamp

    Relationships:
        series: Series versions in this group (one-to-many, CASCADE on delete)

    Constraints:
        - color is NULL or a 7-character hex string
    """

    __tablename__ = "time_slot_series_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)

    display_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(7), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    series = relationship(
        "Series",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Series.version_number",
    )

    __table_args__ = (
        CheckConstraint(
            "color IS NULL OR length(color) = 7",
            name="ck_series_groups_color",
        ),
    )

    @property
    def current_series(self):
        """The version with the highest version number, or None."""
        return self.series[-1] if self.series else None

    def __repr__(self) -> str:
        return f"<SeriesGroup(id={self.id}, display_name='{self.display_name}')>"

    def __str__(self) -> str:
        return self.display_name
