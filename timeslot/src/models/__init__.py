"""
SQLAlchemy models for the schedule engine.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# All models inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models
from timeslot.src.models.series_group import SeriesGroup
from timeslot.src.models.series import Series, SeriesStatus
from timeslot.src.models.instance import (
    Instance,
    ExceptionType,
    InstanceState,
    Active,
    Cancelled,
    Modified,
    Rescheduled,
    ConflictSkipped,
)
from timeslot.src.models.job import Job, JobStatus

__all__ = [
    "Base",
    "SeriesGroup",
    "Series",
    "SeriesStatus",
    "Instance",
    "ExceptionType",
    "InstanceState",
    "Active",
    "Cancelled",
    "Modified",
    "Rescheduled",
    "ConflictSkipped",
    "Job",
    "JobStatus",
]
