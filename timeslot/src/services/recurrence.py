"""
Recurrence rule parsing and expansion.

Turns a recurrence rule, an anchor start time, a duration and an IANA time
zone into the concrete occurrences that fall on or before a horizon date.

Supported rule parts:
    FREQ=DAILY|WEEKLY|MONTHLY|YEARLY (required)
    INTERVAL=n
    BYDAY=MO,WE or, for MONTHLY, ordinal forms such as 2TU or -1FR
    BYMONTHDAY=15 or -1 (MONTHLY)
    BYSETPOS=1..5 or -1 (MONTHLY, together with BYDAY)
    COUNT=n or UNTIL=YYYYMMDD[THHMMSS[Z]] (not both)

Expansion runs on naive wall-clock datetimes in the series time zone, so a
09:00 meeting stays at 09:00 local time across DST transitions. Only after a
local start is produced is it attached to the zone; the end is the start
plus the duration in absolute time.

UNTIL is read as an inclusive local calendar date: every occurrence on that
date is kept whatever its start time. COUNT is counted from the anchor, so a
partly expanded series never emits more than COUNT occurrences overall.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import rrule as du_rrule

from timeslot.src.services.exceptions import ValidationError
from timeslot.src.utils.time_slot import TimeSlot


MAX_OCCURRENCES_PER_PASS = 500

FREQUENCIES = {
    "DAILY": du_rrule.DAILY,
    "WEEKLY": du_rrule.WEEKLY,
    "MONTHLY": du_rrule.MONTHLY,
    "YEARLY": du_rrule.YEARLY,
}

BLOCKED_FREQUENCIES = ("SECONDLY", "MINUTELY")

WEEKDAYS = {
    "MO": du_rrule.MO,
    "TU": du_rrule.TU,
    "WE": du_rrule.WE,
    "TH": du_rrule.TH,
    "FR": du_rrule.FR,
    "SA": du_rrule.SA,
    "SU": du_rrule.SU,
}

SET_POSITIONS = (1, 2, 3, 4, 5, -1)

_KNOWN_PARTS = ("FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYSETPOS", "COUNT", "UNTIL")


@dataclass(frozen=True)
class RecurrenceRule:
    """
    Parsed recurrence rule.

    Attributes:
        freq: DAILY, WEEKLY, MONTHLY or YEARLY
        interval: Step between periods
        by_day: (ordinal, weekday code) pairs; ordinal is None for plain days
        by_month_day: Days of the month (negative counts from month end)
        by_set_pos: Positions selected within the month's BYDAY matches
        count: Total number of occurrences from the anchor
        until: Last local date (inclusive)
    """

    freq: str
    interval: int = 1
    by_day: Tuple[Tuple[Optional[int], str], ...] = ()
    by_month_day: Tuple[int, ...] = ()
    by_set_pos: Tuple[int, ...] = ()
    count: Optional[int] = None
    until: Optional[date] = None

    def with_until(self, until: date) -> "RecurrenceRule":
        """Return a copy ending on ``until`` (inclusive), dropping COUNT."""
        return replace(self, count=None, until=until)

    def to_string(self) -> str:
        """Render the rule in canonical text form."""
        parts = [f"FREQ={self.freq}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            parts.append("BYDAY=" + ",".join(
                f"{ordinal if ordinal is not None else ''}{code}"
                for ordinal, code in self.by_day
            ))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.by_set_pos:
            parts.append("BYSETPOS=" + ",".join(str(p) for p in self.by_set_pos))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until.strftime('%Y%m%d')}T235959Z")
        return ";".join(parts)

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class Occurrence:
    """
    One expanded occurrence.

    Attributes:
        occurrence_date: Local calendar date of the start
        start: Aware start in the series time zone
        end: Aware end in the series time zone
    """

    occurrence_date: date
    start: datetime
    end: datetime

    @property
    def time_slot(self) -> TimeSlot:
        """The occurrence as an absolute half-open range."""
        return TimeSlot(self.start, self.end)


def _positive_int(name: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got '{value}'", field="rrule")
    if number < 1:
        raise ValidationError(f"{name} must be positive, got {number}", field="rrule")
    return number


def _parse_by_day(value: str) -> Tuple[Tuple[Optional[int], str], ...]:
    entries = []
    for raw in value.split(","):
        raw = raw.strip().upper()
        code = raw[-2:]
        if code not in WEEKDAYS:
            raise ValidationError(f"Invalid BYDAY value '{raw}'", field="rrule")
        prefix = raw[:-2]
        ordinal = None
        if prefix:
            try:
                ordinal = int(prefix)
            except ValueError:
                raise ValidationError(f"Invalid BYDAY value '{raw}'", field="rrule")
            if ordinal not in SET_POSITIONS:
                raise ValidationError(
                    f"BYDAY ordinal must be 1-5 or -1, got {ordinal}", field="rrule"
                )
        entries.append((ordinal, code))
    return tuple(entries)


def _parse_int_list(name: str, value: str) -> Tuple[int, ...]:
    try:
        return tuple(int(v) for v in value.split(","))
    except ValueError:
        raise ValidationError(f"{name} must be a list of integers, got '{value}'", field="rrule")


def _parse_until(value: str) -> date:
    text = value.strip().upper().rstrip("Z")
    for fmt in ("%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValidationError(f"Invalid UNTIL value '{value}'", field="rrule")


def parse_rrule(text: str) -> RecurrenceRule:
    """
    Parse and validate a recurrence rule.

    Args:
        text: Rule text, optionally prefixed with ``RRULE:``

    Returns:
        RecurrenceRule

    Raises:
        ValidationError: If the rule is malformed or uses unsupported parts
    """
    if not text or not text.strip():
        raise ValidationError("Recurrence rule is required", field="rrule")

    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]

    parts = {}
    for chunk in filter(None, (c.strip() for c in body.split(";"))):
        key, sep, value = chunk.partition("=")
        key = key.strip().upper()
        if not sep or not value.strip():
            raise ValidationError(f"Malformed rule part '{chunk}'", field="rrule")
        if key not in _KNOWN_PARTS:
            raise ValidationError(f"Unsupported rule part '{key}'", field="rrule")
        if key in parts:
            raise ValidationError(f"Rule part '{key}' given more than once", field="rrule")
        parts[key] = value.strip()

    freq = parts.get("FREQ", "").upper()
    if not freq:
        raise ValidationError("RRULE must contain FREQ", field="rrule")
    if freq in BLOCKED_FREQUENCIES:
        raise ValidationError(f"FREQ={freq} is not allowed", field="rrule")
    if freq not in FREQUENCIES:
        raise ValidationError(f"Unsupported frequency '{freq}'", field="rrule")

    interval = _positive_int("INTERVAL", parts["INTERVAL"]) if "INTERVAL" in parts else 1
    by_day = _parse_by_day(parts["BYDAY"]) if "BYDAY" in parts else ()
    by_month_day = _parse_int_list("BYMONTHDAY", parts["BYMONTHDAY"]) if "BYMONTHDAY" in parts else ()
    by_set_pos = _parse_int_list("BYSETPOS", parts["BYSETPOS"]) if "BYSETPOS" in parts else ()
    count = _positive_int("COUNT", parts["COUNT"]) if "COUNT" in parts else None
    until = _parse_until(parts["UNTIL"]) if "UNTIL" in parts else None

    if count is not None and until is not None:
        raise ValidationError("COUNT and UNTIL cannot both be set", field="rrule")

    has_ordinals = any(ordinal is not None for ordinal, _ in by_day)

    if freq == "YEARLY" and (by_day or by_month_day or by_set_pos):
        raise ValidationError("YEARLY rules repeat on the anchor date only", field="rrule")

    if freq != "MONTHLY":
        if by_month_day:
            raise ValidationError("BYMONTHDAY is only supported with FREQ=MONTHLY", field="rrule")
        if by_set_pos:
            raise ValidationError("BYSETPOS is only supported with FREQ=MONTHLY", field="rrule")
        if has_ordinals:
            raise ValidationError("BYDAY ordinals are only supported with FREQ=MONTHLY", field="rrule")

    if by_month_day:
        if by_day or by_set_pos:
            raise ValidationError(
                "BYMONTHDAY cannot be combined with BYDAY/BYSETPOS", field="rrule"
            )
        for day in by_month_day:
            if day == 0 or not -31 <= day <= 31:
                raise ValidationError(f"BYMONTHDAY out of range: {day}", field="rrule")

    if by_set_pos:
        if not by_day:
            raise ValidationError("BYSETPOS requires BYDAY", field="rrule")
        if has_ordinals:
            raise ValidationError("BYSETPOS cannot be combined with BYDAY ordinals", field="rrule")
        for position in by_set_pos:
            if position not in SET_POSITIONS:
                raise ValidationError(
                    f"BYSETPOS must be 1-5 or -1, got {position}", field="rrule"
                )

    return RecurrenceRule(
        freq=freq,
        interval=interval,
        by_day=by_day,
        by_month_day=by_month_day,
        by_set_pos=by_set_pos,
        count=count,
        until=until,
    )


def resolve_timezone(name: Union[str, ZoneInfo]) -> ZoneInfo:
    """
    Resolve an IANA time zone name.

    Raises:
        ValidationError: If the zone is unknown
    """
    if isinstance(name, ZoneInfo):
        return name
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValidationError(f"Unknown time zone '{name}'", field="timezone")


def _to_local_naive(anchor: datetime, tz: ZoneInfo) -> datetime:
    if anchor.tzinfo is None:
        return anchor
    return anchor.astimezone(tz).replace(tzinfo=None)


def _build_rrule(rule: RecurrenceRule, anchor: datetime) -> du_rrule.rrule:
    kwargs = {
        "freq": FREQUENCIES[rule.freq],
        "interval": rule.interval,
        "dtstart": anchor,
        "cache": False,
    }
    if rule.by_day:
        kwargs["byweekday"] = [
            WEEKDAYS[code] if ordinal is None else WEEKDAYS[code](ordinal)
            for ordinal, code in rule.by_day
        ]
    if rule.by_month_day:
        kwargs["bymonthday"] = list(rule.by_month_day)
    if rule.by_set_pos:
        kwargs["bysetpos"] = list(rule.by_set_pos)
    if rule.count is not None:
        kwargs["count"] = rule.count
    if rule.until is not None:
        kwargs["until"] = datetime.combine(rule.until, time.max)
    return du_rrule.rrule(**kwargs)


def expand(
    rule: Union[str, RecurrenceRule],
    anchor_local: datetime,
    duration: timedelta,
    timezone: Union[str, ZoneInfo],
    horizon: date,
    already_expanded_dates: Iterable[date] = (),
    max_occurrences: int = MAX_OCCURRENCES_PER_PASS,
) -> List[Occurrence]:
    """
    Expand a rule into the occurrences on or before ``horizon``.

    Args:
        rule: Rule text or parsed rule
        anchor_local: First start time; naive values are wall-clock time in
            ``timezone``, aware values are converted to it
        duration: Length of each occurrence (positive)
        timezone: IANA zone the rule is evaluated in
        horizon: Last local date to emit (inclusive)
        already_expanded_dates: Dates that must not be emitted again
        max_occurrences: Cap on emitted occurrences for this pass

    Returns:
        Occurrences ordered by start

    Raises:
        ValidationError: If the rule, time zone or duration is invalid
    """
    parsed = rule if isinstance(rule, RecurrenceRule) else parse_rrule(rule)
    tz = resolve_timezone(timezone)
    if duration <= timedelta(0):
        raise ValidationError("Duration must be positive", field="duration")

    anchor = _to_local_naive(anchor_local, tz)
    skip = set(already_expanded_dates)
    occurrences = []

    for local_start in _build_rrule(parsed, anchor):
        if local_start.date() > horizon:
            break
        if local_start.date() in skip:
            continue

        start = local_start.replace(tzinfo=tz)
        end = (start.astimezone(dt_timezone.utc) + duration).astimezone(tz)
        occurrences.append(Occurrence(occurrence_date=local_start.date(), start=start, end=end))

        if len(occurrences) >= max_occurrences:
            break

    return occurrences
