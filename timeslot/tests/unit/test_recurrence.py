"""
Unit tests for recurrence rule parsing and expansion.

Covers the supported frequencies and BY* parts, end conditions, wall-clock
behavior across DST transitions and the per-pass bounds.
"""

import pytest
from datetime import date, datetime, timedelta, timezone

from timeslot.src.services.exceptions import ValidationError
from timeslot.src.services.recurrence import RecurrenceRule, expand, parse_rrule


FAR_HORIZON = date(2030, 12, 31)


def _dates(occurrences):
    return [o.occurrence_date for o in occurrences]


class TestParseRrule:
    """Tests for parse_rrule() and RecurrenceRule rendering"""

    def test_parse_normalizes_case_and_prefix(self):
        """Should accept an RRULE: prefix and lower-case values"""
        rule = parse_rrule("RRULE:freq=weekly;byday=mo,we;count=4")

        assert rule.freq == "WEEKLY"
        assert rule.by_day == ((None, "MO"), (None, "WE"))
        assert rule.count == 4
        assert rule.to_string() == "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4"

    def test_parse_ordinal_byday(self):
        """Should keep BYDAY ordinals for monthly rules"""
        rule = parse_rrule("FREQ=MONTHLY;BYDAY=2TU")

        assert rule.by_day == ((2, "TU"),)
        assert rule.to_string() == "FREQ=MONTHLY;BYDAY=2TU"

    @pytest.mark.parametrize("until", ["20250301", "20250301T120000", "20250301T120000Z"])
    def test_parse_until_forms(self, until):
        """Should read every UNTIL form as a calendar date"""
        rule = parse_rrule(f"FREQ=DAILY;UNTIL={until}")

        assert rule.until == date(2025, 3, 1)

    def test_with_until_replaces_count(self):
        """Should drop COUNT and render an inclusive UNTIL"""
        rule = parse_rrule("FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4").with_until(date(2025, 3, 1))

        assert rule.count is None
        assert rule.to_string() == "FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20250301T235959Z"

    def test_interval_rendered_only_when_not_default(self):
        assert RecurrenceRule(freq="DAILY").to_string() == "FREQ=DAILY"
        assert RecurrenceRule(freq="DAILY", interval=3).to_string() == "FREQ=DAILY;INTERVAL=3"

    @pytest.mark.parametrize("text", [
        "",
        "INTERVAL=2",
        "FREQ=SECONDLY",
        "FREQ=MINUTELY",
        "FREQ=HOURLY",
        "FREQ=DAILY;FREQ=WEEKLY",
        "FREQ=DAILY;WKST=MO",
        "FREQ=DAILY;INTERVAL=0",
        "FREQ=DAILY;COUNT=abc",
        "FREQ=WEEKLY;COUNT=2;UNTIL=20250101",
        "FREQ=WEEKLY;BYMONTHDAY=3",
        "FREQ=WEEKLY;BYDAY=2TU",
        "FREQ=WEEKLY;BYDAY=XX",
        "FREQ=YEARLY;BYDAY=MO",
        "FREQ=MONTHLY;BYMONTHDAY=0",
        "FREQ=MONTHLY;BYMONTHDAY=32",
        "FREQ=MONTHLY;BYMONTHDAY=15;BYDAY=MO",
        "FREQ=MONTHLY;BYSETPOS=1",
        "FREQ=MONTHLY;BYDAY=TU;BYSETPOS=6",
        "FREQ=MONTHLY;BYDAY=2TU;BYSETPOS=1",
        "FREQ=MONTHLY;BYDAY=6TU",
        "FREQ=DAILY;UNTIL=tomorrow",
    ])
    def test_invalid_rules_rejected(self, text):
        """Should reject malformed or unsupported rules on the rrule field"""
        with pytest.raises(ValidationError) as exc_info:
            parse_rrule(text)

        assert exc_info.value.field == "rrule"

    def test_blocked_frequency_message(self):
        """Should name the blocked frequency"""
        with pytest.raises(ValidationError) as exc_info:
            parse_rrule("FREQ=MINUTELY")

        assert "MINUTELY" in exc_info.value.message


class TestExpandFrequencies:
    """Tests for expand() per frequency"""

    def test_weekly_byday_count(self):
        """Should emit COUNT occurrences on the listed weekdays"""
        occurrences = expand(
            "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4",
            datetime(2025, 1, 6, 9, 0),
            timedelta(minutes=30),
            "UTC",
            FAR_HORIZON,
        )

        assert _dates(occurrences) == [
            date(2025, 1, 6), date(2025, 1, 8), date(2025, 1, 13), date(2025, 1, 15),
        ]
        first = occurrences[0]
        assert first.start == datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
        assert first.end == datetime(2025, 1, 6, 9, 30, tzinfo=timezone.utc)

    def test_weekly_defaults_to_anchor_weekday(self):
        """Should repeat on the anchor's weekday when BYDAY is omitted"""
        occurrences = expand(
            "FREQ=WEEKLY;COUNT=3", datetime(2025, 1, 7, 9, 0), timedelta(hours=1),
            "UTC", FAR_HORIZON,
        )

        assert _dates(occurrences) == [date(2025, 1, 7), date(2025, 1, 14), date(2025, 1, 21)]

    def test_weekly_interval(self):
        """Should skip weeks according to INTERVAL"""
        occurrences = expand(
            "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO", datetime(2025, 1, 6, 9, 0), timedelta(hours=1),
            "UTC", date(2025, 2, 3),
        )

        assert _dates(occurrences) == [date(2025, 1, 6), date(2025, 1, 20), date(2025, 2, 3)]

    def test_monthly_bymonthday_skips_short_months(self):
        """Should skip months without the requested day"""
        occurrences = expand(
            "FREQ=MONTHLY;BYMONTHDAY=31;COUNT=3", datetime(2025, 1, 31, 9, 0),
            timedelta(hours=1), "UTC", FAR_HORIZON,
        )

        assert _dates(occurrences) == [date(2025, 1, 31), date(2025, 3, 31), date(2025, 5, 31)]

    def test_monthly_negative_bymonthday(self):
        """Should count negative BYMONTHDAY from the end of the month"""
        occurrences = expand(
            "FREQ=MONTHLY;BYMONTHDAY=-1;COUNT=3", datetime(2025, 1, 1, 9, 0),
            timedelta(hours=1), "UTC", FAR_HORIZON,
        )

        assert _dates(occurrences) == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31)]

    def test_monthly_second_tuesday_with_bysetpos(self):
        """Should pick the second Tuesday of each month"""
        occurrences = expand(
            "FREQ=MONTHLY;BYDAY=TU;BYSETPOS=2;COUNT=3", datetime(2025, 1, 1, 9, 0),
            timedelta(hours=1), "UTC", FAR_HORIZON,
        )

        assert _dates(occurrences) == [date(2025, 1, 14), date(2025, 2, 11), date(2025, 3, 11)]

    @pytest.mark.parametrize("rrule", [
        "FREQ=MONTHLY;BYDAY=-1FR;COUNT=3",
        "FREQ=MONTHLY;BYDAY=FR;BYSETPOS=-1;COUNT=3",
    ])
    def test_monthly_last_friday(self, rrule):
        """Should pick the last Friday of each month in either notation"""
        occurrences = expand(
            rrule, datetime(2025, 1, 1, 17, 0), timedelta(hours=1), "UTC", FAR_HORIZON,
        )

        assert _dates(occurrences) == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 28)]

    def test_yearly_on_anchor_date(self):
        """Should repeat yearly on the anchor month and day"""
        occurrences = expand(
            "FREQ=YEARLY;COUNT=3", datetime(2025, 6, 15, 12, 0), timedelta(hours=2),
            "UTC", FAR_HORIZON,
        )

        assert _dates(occurrences) == [date(2025, 6, 15), date(2026, 6, 15), date(2027, 6, 15)]


class TestExpandBounds:
    """Tests for end conditions, horizon and per-pass bounds"""

    def test_until_is_inclusive_local_date(self):
        """Should keep an occurrence on the UNTIL date even when it is past midnight UTC"""
        occurrences = expand(
            "FREQ=DAILY;UNTIL=20250110", datetime(2025, 1, 6, 20, 0), timedelta(hours=1),
            "America/New_York", FAR_HORIZON,
        )

        assert _dates(occurrences)[-1] == date(2025, 1, 10)
        assert len(occurrences) == 5
        # 20:00 EST is already the next day in UTC
        assert occurrences[-1].time_slot.start == datetime(2025, 1, 11, 1, 0, tzinfo=timezone.utc)

    def test_horizon_bounds_open_rule(self):
        """Should stop at the horizon date (inclusive)"""
        occurrences = expand(
            "FREQ=DAILY", datetime(2025, 1, 6, 9, 0), timedelta(hours=1), "UTC", date(2025, 1, 10),
        )

        assert _dates(occurrences) == [date(2025, 1, d) for d in range(6, 11)]

    def test_already_expanded_dates_not_emitted(self):
        """Should skip known dates and count COUNT from the anchor"""
        occurrences = expand(
            "FREQ=DAILY;COUNT=5", datetime(2025, 1, 6, 9, 0), timedelta(hours=1), "UTC",
            FAR_HORIZON, already_expanded_dates={date(2025, 1, 6), date(2025, 1, 7)},
        )

        assert _dates(occurrences) == [date(2025, 1, 8), date(2025, 1, 9), date(2025, 1, 10)]

    def test_max_occurrences_caps_pass(self):
        """Should emit at most max_occurrences"""
        occurrences = expand(
            "FREQ=DAILY", datetime(2025, 1, 6, 9, 0), timedelta(hours=1), "UTC",
            FAR_HORIZON, max_occurrences=10,
        )

        assert len(occurrences) == 10
        assert occurrences[-1].occurrence_date == date(2025, 1, 15)

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            expand("FREQ=DAILY;COUNT=1", datetime(2025, 1, 6, 9, 0), timedelta(hours=1),
                   "Mars/Olympus_Mons", FAR_HORIZON)

        assert exc_info.value.field == "timezone"

    def test_non_positive_duration_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            expand("FREQ=DAILY;COUNT=1", datetime(2025, 1, 6, 9, 0), timedelta(0),
                   "UTC", FAR_HORIZON)

        assert exc_info.value.field == "duration"


class TestExpandTimeZones:
    """Tests for wall-clock expansion across DST transitions"""

    def test_local_time_preserved_across_spring_forward(self):
        """Should keep 09:00 local time while the UTC offset changes"""
        occurrences = expand(
            "FREQ=DAILY;COUNT=3", datetime(2025, 3, 8, 9, 0), timedelta(hours=1),
            "America/New_York", FAR_HORIZON,
        )

        assert [o.start.hour for o in occurrences] == [9, 9, 9]
        assert [o.time_slot.start.hour for o in occurrences] == [14, 13, 13]

    def test_local_time_preserved_across_fall_back(self):
        occurrences = expand(
            "FREQ=WEEKLY;COUNT=2", datetime(2025, 10, 28, 9, 0), timedelta(hours=1),
            "America/New_York", FAR_HORIZON,
        )

        assert [o.start.hour for o in occurrences] == [9, 9]
        assert [o.time_slot.start.hour for o in occurrences] == [13, 14]

    def test_duration_is_absolute_time(self):
        """Should add the duration in absolute time when a transition falls inside it"""
        occurrences = expand(
            "FREQ=DAILY;COUNT=1", datetime(2025, 3, 9, 1, 30), timedelta(hours=1),
            "America/New_York", FAR_HORIZON,
        )

        slot = occurrences[0].time_slot
        assert slot.end - slot.start == timedelta(hours=1)
        assert (occurrences[0].end.hour, occurrences[0].end.minute) == (3, 30)

    def test_aware_anchor_converted_to_series_zone(self):
        """Should evaluate an aware anchor in the series time zone"""
        occurrences = expand(
            "FREQ=DAILY;COUNT=1", datetime(2025, 1, 6, 14, 0, tzinfo=timezone.utc),
            timedelta(hours=1), "America/New_York", FAR_HORIZON,
        )

        assert occurrences[0].start.hour == 9
        assert occurrences[0].occurrence_date == date(2025, 1, 6)
