from datetime import datetime

import pytest

import ledger
from helpers import BASE_TZ, InvalidArgument

NOW = BASE_TZ.localize(datetime(2024, 5, 1, 12, 0))


def _at(day, hour=15):
    return BASE_TZ.localize(datetime(2024, 5, day, hour, 0)).isoformat()


def _booking(bid, day, hour=15, **extra):
    booking = {"id": bid, "student_id": "s1", "starts_at": _at(day, hour), "duration_min": 60}
    booking.update(extra)
    return booking


def _students(**balance):
    student = {"id": "s1", "name": "Alice", "email": "alice@example.com"}
    student.update(balance)
    return {"s1": student}


def test_ninety_minutes_pay_only_the_first_hour():
    students = _students(remaining_paid_hours=1.5)
    bookings = [_booking("b1", 2), _booking("b2", 3), _booking("b3", 4)]
    assert ledger.compute_unpaid_set(students, bookings, NOW) == {"id:b2", "id:b3"}


def test_two_hours_leave_only_the_last_booking_unpaid():
    students = _students(remaining_paid_hours=2)
    bookings = [_booking("b3", 4), _booking("b1", 2), _booking("b2", 3)]
    assert ledger.compute_unpaid_set(students, bookings, NOW) == {"id:b3"}


def test_unpaid_set_is_a_chronological_suffix():
    students = _students(hours_paid=3, hours_consumed=0.5)
    bookings = [_booking(f"b{d}", d) for d in (9, 2, 7, 3, 5, 4)]
    run = ledger.ledger_run(students["s1"], bookings, NOW)
    flags = [entry.is_unpaid for entry in run]
    first_unpaid = flags.index(True)
    assert all(flags[first_unpaid:])
    assert not any(flags[:first_unpaid])
    assert [e.booking["id"] for e in run] == ["b2", "b3", "b4", "b5", "b7", "b9"]


def test_no_partial_skipping_after_shortfall():
    # 90 minutes: the 120 minute lesson does not fit, the later 30 minute one stays unpaid
    students = _students(remaining_paid_hours=1.5)
    bookings = [
        _booking("long", 2, duration_min=120),
        _booking("short", 3, duration_min=30),
    ]
    assert ledger.compute_unpaid_set(students, bookings, NOW) == {"id:long", "id:short"}


def test_consumed_before_tracks_paid_minutes():
    run = ledger.ledger_run(
        {"remaining_paid_hours": 2}, [_booking("a", 2), _booking("b", 3)], NOW
    )
    assert [e.consumed_before for e in run] == [0, 60]


def test_duration_from_call_type_then_default():
    call_types = [{"id": "ct1", "slug": "check-percorso", "duration_min": 30}]
    assert ledger.resolve_duration({"call_type": "CHECK-PERCORSO"}, call_types) == 30
    assert ledger.resolve_duration({"call_type_id": "ct1"}, call_types) == 30
    assert ledger.resolve_duration({"duration_min": 45, "call_type": "ct1"}, call_types) == 45
    assert ledger.resolve_duration({"duration_min": -5}, call_types) == 60
    assert ledger.resolve_duration({"duration_min": float("nan")}) == 60
    assert ledger.resolve_duration({"call_type": "unknown"}, call_types) == 60


def test_call_type_duration_feeds_the_ledger():
    students = _students(remaining_paid_hours=1)
    call_types = {"short": {"id": "short", "duration_min": 30}}
    bookings = [
        {"id": "a", "student_id": "s1", "starts_at": _at(2), "call_type": "short"},
        {"id": "b", "student_id": "s1", "starts_at": _at(3), "call_type": "short"},
        {"id": "c", "student_id": "s1", "starts_at": _at(4)},
    ]
    assert ledger.compute_unpaid_set(students, bookings, NOW, call_types) == {"id:c"}


@pytest.mark.parametrize(
    "balance",
    [
        {"remaining_paid_hours": float("nan")},
        {"remaining_paid_hours": -3},
        {"remaining_paid_hours": "lots"},
        {"hours_paid": 1, "hours_consumed": 4},
        {},
        None,
    ],
)
def test_unusable_balances_clamp_to_zero(balance):
    assert ledger.remaining_minutes(balance) == 0


def test_remaining_minutes_derives_from_counters():
    assert ledger.remaining_minutes({"remaining_paid_hours": 2, "hours_paid": 10}) == 600
    assert ledger.remaining_minutes({"hours_paid": 5, "hours_consumed": 3.5}) == 90
    assert ledger.remaining_minutes({"remaining_paid_hours": 1.5}) == 90


def test_stale_projection_does_not_flag_covered_lessons():
    students = _students(hours_paid=5, hours_consumed=1, remaining_paid_hours=0)
    assert ledger.compute_unpaid_set(students, [_booking("a", 2)], NOW) == set()


def test_malformed_and_past_bookings_are_ignored():
    students = _students(remaining_paid_hours=1)
    bookings = [
        _booking("past", 1, hour=9),
        {"id": "broken", "student_id": "s1", "starts_at": "not-a-date"},
        {"id": "cancelled", "student_id": "s1", "starts_at": _at(2), "status": "cancelled"},
        _booking("real", 3),
    ]
    statuses = ledger.classify_bookings(students, bookings, NOW)
    assert statuses == {"id:real": ledger.PAID}


def test_email_attribution_and_unmatched():
    students = {
        "s1": {"name": "Alice", "parent_email": "Mum@Example.com", "remaining_paid_hours": 0},
        "s2": {"name": "Bob", "email": "bob@example.com", "remaining_paid_hours": 5},
    }
    bookings = [
        {"id": "a", "email": "mum@example.COM", "starts_at": _at(2)},
        {"id": "b", "student_id": "ghost", "email": "bob@example.com", "starts_at": _at(2)},
        {"id": "c", "email": "stranger@example.com", "starts_at": _at(3)},
    ]
    assert ledger.resolve_student_id(bookings[0], students) == "s1"
    assert ledger.resolve_student_id(bookings[1], students) == "s2"
    assert ledger.resolve_student_id(bookings[2], students) is None

    statuses = ledger.classify_bookings(students, bookings, NOW)
    assert statuses == {"id:a": ledger.UNPAID, "id:b": ledger.PAID, "id:c": ledger.UNMATCHED}
    assert ledger.compute_unpaid_set(students, bookings, NOW) == {"id:a"}
    assert [b["id"] for b in ledger.unmatched_bookings(students, bookings, NOW)] == ["c"]


def test_booking_key_precedence():
    at = _at(2)
    assert ledger.booking_key({"id": 7, "slot_id": "x", "starts_at": at}) == "id:7"
    assert ledger.booking_key({"slot_id": "x", "starts_at": at}) == "slot:x"
    by_time = ledger.booking_key({"starts_at": at})
    assert by_time.startswith("at:")
    assert by_time == ledger.booking_key({"starts_at": "2024-05-02T13:00:00Z"})


def test_compute_unpaid_set_is_idempotent():
    students = _students(remaining_paid_hours=1)
    bookings = [_booking("a", 2), _booking("b", 3)]
    first = ledger.compute_unpaid_set(students, bookings, NOW)
    second = ledger.compute_unpaid_set(students, bookings, NOW)
    assert first == second == {"id:b"}


@pytest.mark.parametrize(
    "draft_day, draft_hour, expected",
    [(1, 18, False), (3, 15, True), (6, 10, True)],
    ids=["start", "middle-same-instant", "end"],
)
def test_draft_matches_committed_result(draft_day, draft_hour, expected):
    students = _students(remaining_paid_hours=2)
    existing = [_booking("a", 2), _booking("b", 3), _booking("c", 5)]
    draft = {"id": "draft", "student_id": "s1", "starts_at": _at(draft_day, draft_hour)}

    preview = ledger.would_be_unpaid(
        students["s1"], existing, draft, NOW, students_by_id=students
    )
    committed = ledger.compute_unpaid_set(students, existing + [draft], NOW)
    assert preview == ("id:draft" in committed) == expected


def test_draft_at_start_is_paid_and_pushes_others_out():
    students = _students(remaining_paid_hours=2)
    existing = [_booking("a", 2), _booking("b", 3)]
    draft = {"id": "draft", "student_id": "s1", "starts_at": _at(1, 18)}
    assert ledger.would_be_unpaid(students["s1"], existing, draft, NOW) is False
    assert ledger.compute_unpaid_set(students, existing + [draft], NOW) == {"id:b"}


def test_draft_at_end_is_unpaid_when_hours_run_out():
    students = _students(remaining_paid_hours=2)
    existing = [_booking("a", 2), _booking("b", 3)]
    draft = {"student_id": "s1", "starts_at": _at(8)}
    assert ledger.would_be_unpaid(students["s1"], existing, draft, NOW) is True


def test_draft_without_student_id_on_record():
    student = {"remaining_paid_hours": 1}
    existing = [{"id": "a", "student_id": "s9", "starts_at": _at(2)}]
    draft = {"starts_at": _at(3)}
    assert ledger.would_be_unpaid(student, existing, draft, NOW) is False


def test_past_draft_is_never_flagged():
    students = _students(remaining_paid_hours=0)
    draft = {"student_id": "s1", "starts_at": _at(1, 8)}
    assert ledger.would_be_unpaid(students["s1"], [], draft, NOW) is False


def test_top_up_hours():
    updated = ledger.top_up_hours({"hours_paid": 2, "hours_consumed": 1}, "3")
    assert updated["hours_paid"] == 5
    assert updated["remaining_paid_hours"] == 4
    only_projection = ledger.top_up_hours({"remaining_paid_hours": 0.5}, 1)
    assert only_projection == {"remaining_paid_hours": 1.5}
    for bad in (0, -1, float("inf"), "abc", None):
        with pytest.raises(InvalidArgument):
            ledger.top_up_hours({}, bad)


def test_complete_booking_charges_duration():
    booking = _booking("a", 2, duration_min=90)
    balance = {"hours_paid": 10, "hours_consumed": 2}
    done, updated = ledger.complete_booking(booking, balance)
    assert done["status"] == "completed"
    assert booking.get("status") is None
    assert updated["hours_consumed"] == 3.5
    assert updated["remaining_paid_hours"] == 6.5
    assert balance["hours_consumed"] == 2


def test_complete_booking_minimum_and_override():
    _, charged = ledger.complete_booking(_booking("a", 2, duration_min=5), {"hours_paid": 1})
    assert charged["hours_consumed"] == 0.25
    _, override = ledger.complete_booking(_booking("b", 2), {"hours_paid": 3}, hours=2)
    assert override["remaining_paid_hours"] == 1


def test_complete_booking_twice_is_rejected():
    with pytest.raises(InvalidArgument):
        ledger.complete_booking({"id": "a", "status": "completed"}, {})


def test_preview_without_lookup_skips_other_students_bookings():
    students = _students(remaining_paid_hours=1)
    # same email as Alice but booked for someone else
    other = _booking("x", 2, student_id="s2", email="alice@example.com")
    draft = {"student_id": "s1", "starts_at": _at(3)}
    assert ledger.would_be_unpaid(students["s1"], [other], draft, NOW) is False


def test_create_booking_refuses_uncovered_lesson():
    students = _students(remaining_paid_hours=1)
    existing = [_booking("a", 2)]
    with pytest.raises(ledger.HoursNotCovered):
        ledger.create_booking(students["s1"], existing, _at(3), NOW, students_by_id=students)

    booking = ledger.create_booking(
        students["s1"], existing, _at(3), NOW, allow_unpaid=True, students_by_id=students
    )
    assert booking["id"] is None
    assert booking["student_id"] == "s1"
    assert booking["status"] == "confirmed"
    assert booking["email"] == "alice@example.com"
    committed = ledger.compute_unpaid_set(students, existing + [dict(booking, id="new")], NOW)
    assert committed == {"id:new"}


def test_create_booking_validates_input():
    students = _students(remaining_paid_hours=5)
    booking = ledger.create_booking(students["s1"], [], "2024-05-03T10:00", NOW, duration_min="45")
    assert booking["duration_min"] == 45
    assert booking["starts_at"] == _at(3, 10)
    with pytest.raises(InvalidArgument):
        ledger.create_booking(students["s1"], [], "someday", NOW)
    with pytest.raises(InvalidArgument):
        ledger.create_booking(students["s1"], [], _at(3), NOW, duration_min=0)


def test_reschedule_booking_checks_hours_without_counting_itself():
    students = _students(remaining_paid_hours=2)
    existing = [_booking("a", 2), _booking("b", 3)]
    moved = ledger.reschedule_booking(
        existing[1], students["s1"], existing, _at(6), NOW, students_by_id=students
    )
    assert moved["starts_at"] == _at(6)
    assert moved["id"] == "b"
    assert existing[1]["starts_at"] == _at(3)

    with pytest.raises(ledger.HoursNotCovered):
        ledger.reschedule_booking(
            existing[1], students["s1"], existing, _at(6), NOW,
            duration_min=120, students_by_id=students,
        )


def test_reschedule_rejects_finished_bookings():
    student = _students(remaining_paid_hours=5)["s1"]
    for status in ("completed", "cancelled"):
        with pytest.raises(InvalidArgument):
            ledger.reschedule_booking(_booking("a", 2, status=status), student, [], _at(4), NOW)


def test_cancel_booking():
    booking = _booking("a", 2)
    cancelled = ledger.cancel_booking(booking)
    assert cancelled["status"] == "cancelled"
    assert booking.get("status") is None
    assert not ledger.participates(cancelled, NOW)
    with pytest.raises(InvalidArgument):
        ledger.cancel_booking(_booking("b", 2, status="completed"))
