"""
Half-open time range value used for entity time-slot fields.

Entity rows store their slot as text in range literal form,
``[2025-01-06T14:00:00Z,2025-01-06T15:00:00Z)``, which sorts and compares
the same way in SQLite and PostgreSQL. PostgreSQL ``tstzrange`` literals
(quoted bounds, space separator, ``+00`` offsets) are accepted on read.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union


BOUND_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# LIKE pattern of the literals written by to_db_string
LITERAL_PATTERN = "[____-__-__T__:__:__Z,____-__-__T__:__:__Z)"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("Time slot bounds must be timezone-aware")
    return value.astimezone(timezone.utc)


def _parse_bound(text: str) -> datetime:
    text = text.strip().strip('"')
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # tstzrange renders "+00" rather than "+00:00"
    if len(text) > 3 and text[-3] in "+-" and text[-2:].isdigit():
        text = text + ":00"
    return _as_utc(datetime.fromisoformat(text))


@dataclass(frozen=True)
class TimeSlot:
    """An absolute ``[start, end)`` interval."""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", _as_utc(self.start))
        object.__setattr__(self, "end", _as_utc(self.end))
        if self.end <= self.start:
            raise ValueError("Time slot end must be after its start")

    def overlaps(self, other: "TimeSlot") -> bool:
        """Half-open overlap: touching ranges do not overlap."""
        return self.start < other.end and other.start < self.end

    def to_db_string(self) -> str:
        """Render as the stored range literal."""
        return f"[{self.start.strftime(BOUND_FORMAT)},{self.end.strftime(BOUND_FORMAT)})"

    @classmethod
    def parse(cls, value: Union[str, "TimeSlot"]) -> "TimeSlot":
        """
        Parse a stored range literal.

        Args:
            value: ``[start,end)`` text or an existing TimeSlot

        Returns:
            TimeSlot

        Raises:
            ValueError: If the text is not a bounded half-open range
        """
        if isinstance(value, TimeSlot):
            return value
        text = str(value).strip()
        if not (text.startswith("[") and text.endswith(")")):
            raise ValueError(f"Not a half-open time range: {value!r}")
        start_text, sep, end_text = text[1:-1].partition(",")
        if not sep:
            raise ValueError(f"Not a half-open time range: {value!r}")
        return cls(_parse_bound(start_text), _parse_bound(end_text))

    def __str__(self) -> str:
        return self.to_db_string()
