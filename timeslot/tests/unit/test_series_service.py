"""
Unit tests for SeriesService.

Tests series creation, template propagation, schedule replacement,
splitting, single-occurrence exceptions, deletes, group info and the
read-only queries. Expansion runs through the worker.
"""

import pytest
from datetime import date, datetime, timedelta, timezone

from timeslot.src.models import (
    Instance,
    Job,
    Series,
    SeriesGroup,
    SeriesStatus,
    Active,
    Cancelled,
    Modified,
    Rescheduled,
)
from timeslot.src.services.exceptions import (
    NotFoundError,
    OccurrenceConflictError,
    ValidationError,
)
from timeslot.src.services.series_service import EXPANSION_JOB_KIND, EXPANSION_QUEUE


UTC = timezone.utc


@pytest.fixture
def run_jobs(test_db_session, expansion_worker):
    """Run every queued job, then expire the test session."""
    def _run():
        count = expansion_worker.drain()
        test_db_session.expire_all()
        return count
    return _run


@pytest.fixture
def expanded_series(sample_series, run_jobs):
    """Series with its four occurrences materialized."""
    group, series = sample_series()
    run_jobs()
    return group, series


def _instances(db, series_id):
    return db.query(Instance).filter(
        Instance.series_id == series_id
    ).order_by(Instance.occurrence_date).all()


def _entity_for(db, series_id, day):
    return db.query(Instance).filter(
        Instance.series_id == series_id, Instance.occurrence_date == day
    ).one().entity_id


class TestCreateRecurringSeries:
    """Tests for SeriesService.create_recurring_series()"""

    def test_create_series_and_enqueue(self, test_db_session, sample_series):
        """Should create group, first series version and one expansion job"""
        group, series = sample_series(
            timezone="America/New_York", group_color="#3B82F6", group_description="Daily sync",
        )

        assert group.display_name == "Team standup"
        assert group.color == "#3B82F6"
        assert series.version_number == 1
        assert series.rrule == "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4"
        # 09:00 EST stored as naive UTC
        assert series.dtstart == datetime(2025, 1, 6, 14, 0)
        assert series.effective_from == date(2025, 1, 6)
        assert series.effective_until is None
        assert series.status == SeriesStatus.ACTIVE
        assert series.entity_template == {"room_id": 1, "purpose": "Standup"}

        jobs = test_db_session.query(Job).all()
        assert len(jobs) == 1
        assert jobs[0].kind == EXPANSION_JOB_KIND
        assert jobs[0].queue == EXPANSION_QUEUE
        assert jobs[0].args["series_id"] == series.id
        assert "expand_until" in jobs[0].args

    def test_create_without_expansion(self, test_db_session, sample_series):
        sample_series(expand_now=False)

        assert test_db_session.query(Job).count() == 0

    def test_time_slot_value_dropped_from_template(self, sample_series):
        _, series = sample_series(
            entity_template={"room_id": 1, "purpose": "Standup", "time_slot": "[x,y)"},
        )

        assert "time_slot" not in series.entity_template

    @pytest.mark.parametrize("overrides,field", [
        ({"entity_template": {"room_id": 1}}, "entity_template"),
        ({"entity_table": "invoices"}, "entity_table"),
        ({"rrule": "FREQ=MINUTELY"}, "rrule"),
        ({"timezone": "Nowhere/City"}, "timezone"),
        ({"duration": timedelta(0)}, "duration"),
        ({"group_color": "blue"}, "color"),
        ({"group_name": "  "}, "group_name"),
    ])
    def test_invalid_arguments_write_nothing(self, test_db_session, series_service,
                                             sample_series_data, overrides, field):
        """Should reject the call before anything is written"""
        with pytest.raises(ValidationError) as exc_info:
            series_service.create_recurring_series(**sample_series_data(**overrides))

        assert exc_info.value.field == field
        test_db_session.rollback()
        assert test_db_session.query(SeriesGroup).count() == 0
        assert test_db_session.query(Job).count() == 0


class TestUpdateSeriesTemplate:
    """Tests for SeriesService.update_series_template()"""

    def test_patch_merges_and_propagates(self, series_service, expanded_series, booking_rows):
        """Should keep unpatched template fields and update every generated row"""
        _, series = expanded_series

        updated = series_service.update_series_template(series.id, {"purpose": "Retro"})

        assert updated == 4
        assert series_service.get_series(series.id).entity_template == {"room_id": 1, "purpose": "Retro"}
        assert {row["purpose"] for row in booking_rows()} == {"Retro"}
        assert {row["room_id"] for row in booking_rows()} == {1}

    def test_modified_occurrences_skipped(self, test_db_session, series_service, expanded_series,
                                          bookings_store):
        """Should not overwrite an individually edited occurrence"""
        _, series = expanded_series
        edited = _entity_for(test_db_session, series.id, date(2025, 1, 8))
        series_service.modify_series_occurrence("test_bookings", edited, {"purpose": "Demo day"})

        updated = series_service.update_series_template(series.id, {"purpose": "Retro"})

        assert updated == 3
        assert bookings_store.get(edited)["purpose"] == "Demo day"

    def test_include_exceptions(self, test_db_session, series_service, expanded_series, bookings_store):
        _, series = expanded_series
        edited = _entity_for(test_db_session, series.id, date(2025, 1, 8))
        series_service.modify_series_occurrence("test_bookings", edited, {"notes": "Moved chairs"})

        updated = series_service.update_series_template(
            series.id, {"purpose": "Retro"}, skip_exceptions=False
        )

        assert updated == 4
        assert bookings_store.get(edited)["purpose"] == "Retro"

    def test_unknown_field_rejected(self, series_service, expanded_series):
        _, series = expanded_series

        with pytest.raises(ValidationError):
            series_service.update_series_template(series.id, {"projector": True})

    def test_null_required_field_rejected(self, series_service, expanded_series):
        _, series = expanded_series

        with pytest.raises(ValidationError, match="purpose"):
            series_service.update_series_template(series.id, {"purpose": None})

    def test_missing_series(self, series_service):
        with pytest.raises(NotFoundError):
            series_service.update_series_template(999, {"purpose": "Retro"})


class TestUpdateSeriesSchedule:
    """Tests for SeriesService.update_series_schedule()"""

    def test_regenerates_and_keeps_exceptions(self, test_db_session, series_service,
                                              expanded_series, run_jobs):
        """Should replace generated occurrences and keep cancellations"""
        _, series = expanded_series
        cancelled = _entity_for(test_db_session, series.id, date(2025, 1, 8))
        series_service.cancel_series_occurrence("test_bookings", cancelled)

        deleted = series_service.update_series_schedule(
            series.id, new_rrule="FREQ=WEEKLY;BYDAY=TU;COUNT=2"
        )

        assert deleted == 3
        refreshed = series_service.get_series(series.id)
        assert refreshed.rrule == "FREQ=WEEKLY;BYDAY=TU;COUNT=2"
        assert refreshed.expanded_until is None
        assert test_db_session.query(Job).filter(Job.status == "available").count() == 1

        run_jobs()

        states = {i.occurrence_date: i.state for i in _instances(test_db_session, series.id)}
        assert set(states) == {date(2025, 1, 7), date(2025, 1, 8), date(2025, 1, 14)}
        assert isinstance(states[date(2025, 1, 8)], Cancelled)
        assert isinstance(states[date(2025, 1, 7)], Active)

    def test_new_anchor_and_duration(self, test_db_session, series_service, expanded_series,
                                     run_jobs, booking_rows):
        _, series = expanded_series

        series_service.update_series_schedule(
            series.id, new_anchor=datetime(2025, 1, 6, 10, 0), new_duration=timedelta(hours=1),
        )
        run_jobs()

        slots = sorted(row["time_slot"] for row in booking_rows())
        assert slots[0] == "[2025-01-06T10:00:00Z,2025-01-06T11:00:00Z)"
        assert len(slots) == 4

    def test_always_enqueues(self, test_db_session, series_service, expanded_series):
        """Should enqueue a job even when nothing changes"""
        _, series = expanded_series

        series_service.update_series_schedule(series.id)

        assert test_db_session.query(Job).filter(Job.status == "available").count() == 1

    def test_invalid_rule_changes_nothing(self, test_db_session, series_service, expanded_series,
                                          booking_rows):
        _, series = expanded_series

        with pytest.raises(ValidationError):
            series_service.update_series_schedule(series.id, new_rrule="FREQ=HOURLY")

        test_db_session.rollback()
        assert len(booking_rows()) == 4

    def test_anchor_after_closed_version_rejected(self, test_db_session, series_service,
                                                  sample_series, run_jobs):
        """Should refuse an anchor past the last date of a split-off version"""
        _, series = sample_series(rrule="FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20250131")
        run_jobs()
        series_service.split_series_from_date(
            series.id, date(2025, 1, 20), datetime(2025, 1, 20, 9, 0),
        )

        with pytest.raises(ValidationError) as exc_info:
            series_service.update_series_schedule(
                series.id, new_anchor=datetime(2025, 1, 27, 9, 0),
            )

        assert exc_info.value.field == "new_anchor"
        assert "2025-01-19" in exc_info.value.message
        test_db_session.rollback()
        assert len(_instances(test_db_session, series.id)) == 4
        assert test_db_session.query(Job).filter(Job.status == "available").count() == 1

    def test_closed_version_counts_from_new_anchor(self, test_db_session, series_service,
                                                   sample_series, run_jobs):
        """Should cap a COUNT rule of a closed version from its new start"""
        _, series = sample_series(rrule="FREQ=WEEKLY;BYDAY=MO;COUNT=8")
        run_jobs()
        series_service.split_series_from_date(
            series.id, date(2025, 2, 3), datetime(2025, 2, 3, 9, 0),
        )
        run_jobs()

        series_service.update_series_schedule(
            series.id,
            new_anchor=datetime(2025, 1, 13, 9, 0),
            new_rrule="FREQ=WEEKLY;BYDAY=MO;COUNT=2",
        )
        run_jobs()

        updated = series_service.get_series(series.id)
        assert updated.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250120T235959Z"
        assert updated.effective_from == date(2025, 1, 13)
        assert [i.occurrence_date for i in _instances(test_db_session, series.id)] == [
            date(2025, 1, 13), date(2025, 1, 20),
        ]


class TestSplitSeriesFromDate:
    """Tests for SeriesService.split_series_from_date()"""

    @pytest.fixture
    def january_series(self, sample_series, run_jobs):
        group, series = sample_series(rrule="FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20250131")
        run_jobs()
        return group, series

    def test_split_closes_original_and_starts_new_version(
        self, test_db_session, series_service, january_series, run_jobs, booking_rows
    ):
        """Should end the original before the boundary and continue in a new version"""
        group, series = january_series
        cancelled = _entity_for(test_db_session, series.id, date(2025, 1, 22))
        series_service.cancel_series_occurrence("test_bookings", cancelled, reason="Offsite")

        new_series = series_service.split_series_from_date(
            series.id,
            boundary_date=date(2025, 1, 20),
            new_anchor=datetime(2025, 1, 20, 10, 0),
            template_patch={"purpose": "Planning"},
        )

        original = series_service.get_series(series.id)
        assert original.effective_until == date(2025, 1, 19)
        assert original.rrule == "FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20250119T235959Z"
        assert [i.occurrence_date for i in _instances(test_db_session, series.id)] == [
            date(2025, 1, 6), date(2025, 1, 8), date(2025, 1, 13), date(2025, 1, 15),
        ]

        assert new_series.group_id == group.id
        assert new_series.version_number == 2
        assert new_series.effective_from == date(2025, 1, 20)
        assert new_series.rrule == "FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20250131T235959Z"
        assert new_series.entity_template == {"room_id": 1, "purpose": "Planning"}

        # The cancellation moved to the new version
        relinked = _instances(test_db_session, new_series.id)
        assert [(i.occurrence_date, type(i.state)) for i in relinked] == [
            (date(2025, 1, 22), Cancelled)
        ]

        run_jobs()

        new_instances = _instances(test_db_session, new_series.id)
        assert [i.occurrence_date for i in new_instances] == [
            date(2025, 1, 20), date(2025, 1, 22), date(2025, 1, 27), date(2025, 1, 29),
        ]
        assert isinstance(new_instances[1].state, Cancelled)

        rows = booking_rows()
        assert len(rows) == 7
        planning = [row for row in rows if row["purpose"] == "Planning"]
        assert len(planning) == 3
        assert all("T10:00:00Z" in row["time_slot"] for row in planning)

    def test_split_count_rule_does_not_grow(self, series_service, sample_series, run_jobs):
        """Should turn COUNT into UNTIL so the closed version emits no more occurrences"""
        _, series = sample_series(rrule="FREQ=WEEKLY;BYDAY=MO,WE;COUNT=6")
        run_jobs()

        series_service.split_series_from_date(
            series.id, date(2025, 1, 15), datetime(2025, 1, 15, 9, 0),
        )

        original = series_service.get_series(series.id)
        assert original.rrule == "FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20250114T235959Z"

    def test_split_with_new_rule_and_duration(self, series_service, january_series):
        _, series = january_series

        new_series = series_service.split_series_from_date(
            series.id, date(2025, 1, 20), datetime(2025, 1, 21, 9, 0),
            new_duration=timedelta(hours=2), new_rrule="FREQ=WEEKLY;BYDAY=TU",
        )

        assert new_series.rrule == "FREQ=WEEKLY;BYDAY=TU"
        assert new_series.duration == timedelta(hours=2)

    def test_second_split_increments_version(self, series_service, january_series):
        _, series = january_series
        second = series_service.split_series_from_date(
            series.id, date(2025, 1, 13), datetime(2025, 1, 13, 9, 0),
        )

        third = series_service.split_series_from_date(
            second.id, date(2025, 1, 20), datetime(2025, 1, 20, 9, 0),
        )

        assert (second.version_number, third.version_number) == (2, 3)

    def test_boundary_must_follow_anchor(self, series_service, january_series):
        _, series = january_series

        with pytest.raises(ValidationError) as exc_info:
            series_service.split_series_from_date(
                series.id, date(2025, 1, 6), datetime(2025, 1, 6, 9, 0),
            )

        assert exc_info.value.field == "boundary_date"

    def test_new_anchor_not_before_boundary(self, series_service, january_series):
        _, series = january_series

        with pytest.raises(ValidationError) as exc_info:
            series_service.split_series_from_date(
                series.id, date(2025, 1, 20), datetime(2025, 1, 19, 9, 0),
            )

        assert exc_info.value.field == "new_anchor"


class TestSingleOccurrences:
    """Tests for cancel, modify and reschedule of one occurrence"""

    def test_cancel(self, test_db_session, series_service, expanded_series, bookings_store):
        """Should delete the row and keep a tombstone that blocks regeneration"""
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 8))

        instance = series_service.cancel_series_occurrence("test_bookings", entity_id, "Holiday")

        assert instance.state == Cancelled(reason="Holiday")
        assert instance.occurrence_date == date(2025, 1, 8)
        assert bookings_store.get(entity_id) is None
        assert series_service.get_series_membership("test_bookings", entity_id) == {"is_member": False}

    def test_cancelled_date_not_regenerated(self, test_db_session, series_service, expanded_series,
                                            run_jobs, booking_rows):
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 8))
        series_service.cancel_series_occurrence("test_bookings", entity_id)

        series_service.expand_series_instances(series.id)
        run_jobs()

        assert len(booking_rows()) == 3

    def test_cancel_non_member(self, series_service, sample_booking):
        entity_id = sample_booking(datetime(2025, 1, 6, 9, tzinfo=UTC), datetime(2025, 1, 6, 10, tzinfo=UTC))

        with pytest.raises(NotFoundError):
            series_service.cancel_series_occurrence("test_bookings", entity_id)

    def test_modify(self, test_db_session, series_service, expanded_series, bookings_store):
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 6))

        instance = series_service.modify_series_occurrence(
            "test_bookings", entity_id, {"notes": "Guest speaker"}
        )

        assert instance.state == Modified(entity_id=entity_id)
        assert bookings_store.get(entity_id)["notes"] == "Guest speaker"

    @pytest.mark.parametrize("values", [{}, {"time_slot": "[x,y)"}, {"id": 3}, {"projector": 1}])
    def test_modify_rejects_fields(self, test_db_session, series_service, expanded_series, values):
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 6))

        with pytest.raises(ValidationError):
            series_service.modify_series_occurrence("test_bookings", entity_id, values)

    def test_reschedule_keeps_first_original_slot(self, test_db_session, series_service,
                                                  expanded_series, bookings_store):
        """Should move the row and remember the generated slot"""
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 6))

        series_service.reschedule_occurrence(
            "test_bookings", entity_id,
            datetime(2025, 1, 6, 11, 0, tzinfo=UTC), datetime(2025, 1, 6, 11, 30, tzinfo=UTC),
        )
        instance = series_service.reschedule_occurrence(
            "test_bookings", entity_id,
            datetime(2025, 1, 6, 12, 0, tzinfo=UTC), datetime(2025, 1, 6, 12, 30, tzinfo=UTC),
        )

        assert instance.state == Rescheduled(
            entity_id=entity_id,
            original_time_slot="[2025-01-06T09:00:00Z,2025-01-06T09:30:00Z)",
        )
        assert bookings_store.get(entity_id)["time_slot"] == "[2025-01-06T12:00:00Z,2025-01-06T12:30:00Z)"

    def test_reschedule_onto_other_occurrence_conflicts(self, test_db_session, series_service,
                                                        expanded_series):
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 6))

        with pytest.raises(OccurrenceConflictError):
            series_service.reschedule_occurrence(
                "test_bookings", entity_id,
                datetime(2025, 1, 8, 9, 15, tzinfo=UTC), datetime(2025, 1, 8, 9, 45, tzinfo=UTC),
            )

    def test_reschedule_invalid_range(self, test_db_session, series_service, expanded_series):
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 6))

        with pytest.raises(ValidationError):
            series_service.reschedule_occurrence(
                "test_bookings", entity_id,
                datetime(2025, 1, 6, 12, 0, tzinfo=UTC), datetime(2025, 1, 6, 11, 0, tzinfo=UTC),
            )


class TestDeletes:
    """Tests for delete_series_with_instances() and delete_series_group()"""

    def test_delete_last_series_removes_group(self, test_db_session, series_service,
                                              expanded_series, booking_rows):
        group, series = expanded_series
        group_id, series_id = group.id, series.id

        deleted = series_service.delete_series_with_instances(series_id)

        assert deleted == 4
        assert booking_rows() == []
        assert test_db_session.query(Instance).count() == 0
        assert test_db_session.query(Series).filter(Series.id == series_id).first() is None
        assert test_db_session.query(SeriesGroup).filter(SeriesGroup.id == group_id).first() is None

    def test_delete_one_version_keeps_group(self, test_db_session, series_service, expanded_series,
                                            run_jobs):
        group, series = expanded_series
        group_id = group.id
        new_series = series_service.split_series_from_date(
            series.id, date(2025, 1, 13), datetime(2025, 1, 13, 9, 0),
        )
        run_jobs()

        series_service.delete_series_with_instances(new_series.id)

        remaining = series_service.get_series_group(group_id)
        assert [s.id for s in remaining.series] == [series.id]

    def test_delete_group(self, test_db_session, series_service, expanded_series, run_jobs,
                          booking_rows, sample_booking):
        group, series = expanded_series
        series_service.split_series_from_date(
            series.id, date(2025, 1, 13), datetime(2025, 1, 13, 9, 0),
        )
        run_jobs()
        unrelated = sample_booking(datetime(2025, 2, 1, 9, tzinfo=UTC), datetime(2025, 2, 1, 10, tzinfo=UTC))

        deleted = series_service.delete_series_group(group.id)

        assert deleted == 6
        assert [row["id"] for row in booking_rows()] == [unrelated]
        assert test_db_session.query(Series).count() == 0

    def test_delete_missing(self, series_service):
        with pytest.raises(NotFoundError):
            series_service.delete_series_with_instances(999)
        with pytest.raises(NotFoundError):
            series_service.delete_series_group(999)


class TestGroupInfoAndStatus:
    """Tests for group info updates and pause/resume"""

    def test_update_group_info(self, series_service, sample_series):
        group, _ = sample_series(group_description="Old", group_color="#000000")

        updated = series_service.update_series_group_info(
            group.id, display_name="Daily sync", description="", color=None,
        )

        assert updated.display_name == "Daily sync"
        assert updated.description is None
        assert updated.color == "#000000"

    def test_update_group_bad_color(self, series_service, sample_series):
        group, _ = sample_series()

        with pytest.raises(ValidationError) as exc_info:
            series_service.update_series_group_info(group.id, color="#12345")

        assert exc_info.value.field == "color"

    def test_pause_and_resume(self, test_db_session, series_service, sample_series, run_jobs,
                              booking_rows):
        """Should not expand while paused and queue an expansion on resume"""
        _, series = sample_series()
        series_service.pause_series(series.id, reason="Summer break")

        run_jobs()
        assert booking_rows() == []
        assert series_service.get_series(series.id).status_reason == "Summer break"

        series_service.resume_series(series.id)
        run_jobs()

        assert series_service.get_series(series.id).status == SeriesStatus.ACTIVE
        assert len(booking_rows()) == 4

    def test_resume_ended_series_rejected(self, test_db_session, series_service, sample_series):
        _, series = sample_series(expand_now=False)
        series.status = SeriesStatus.ENDED
        test_db_session.commit()

        with pytest.raises(ValidationError):
            series_service.resume_series(series.id)


class TestQueries:
    """Tests for membership, group lookups and conflict previews"""

    def test_membership(self, test_db_session, series_service, expanded_series):
        group, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 13))

        membership = series_service.get_series_membership("test_bookings", entity_id)

        assert membership["is_member"] is True
        assert membership["series_id"] == series.id
        assert membership["group_id"] == group.id
        assert membership["group_name"] == "Team standup"
        assert membership["occurrence_date"] == date(2025, 1, 13)
        assert membership["is_exception"] is False
        assert membership["exception_type"] is None
        assert membership["original_template"] == {"room_id": 1, "purpose": "Standup"}

    def test_membership_of_unrelated_row(self, series_service):
        assert series_service.get_series_membership("test_bookings", 42) == {"is_member": False}

    def test_instance_counts(self, test_db_session, series_service, expanded_series):
        _, series = expanded_series
        entity_id = _entity_for(test_db_session, series.id, date(2025, 1, 8))
        series_service.cancel_series_occurrence("test_bookings", entity_id)

        counts = series_service.instance_counts(series.id)

        assert counts["active"] == 3
        assert counts["cancelled"] == 1
        assert counts["total"] == 4

    def test_preview_conflicts(self, series_service, sample_booking, test_db_session):
        """Should flag conflicting occurrences without writing anything"""
        existing = sample_booking(datetime(2025, 1, 8, 9, 0, tzinfo=UTC), datetime(2025, 1, 8, 10, 0, tzinfo=UTC))

        preview = series_service.preview_recurring_conflicts(
            "test_bookings", {"room_id": 1, "purpose": "Standup"},
            "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4", datetime(2025, 1, 6, 9, 0),
            timedelta(minutes=30),
        )

        assert [p["occurrence_date"] for p in preview] == [
            date(2025, 1, 6), date(2025, 1, 8), date(2025, 1, 13), date(2025, 1, 15),
        ]
        assert [p["has_conflict"] for p in preview] == [False, True, False, False]
        assert preview[1]["conflicting_entity_id"] == existing
        assert test_db_session.query(Instance).count() == 0
