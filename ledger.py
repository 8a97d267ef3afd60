"""Prepaid-hour ledger and unpaid booking detection.

Each student's future active bookings are replayed in chronological order
against the student's remaining prepaid minutes.  The earliest lesson is paid
first; as soon as one booking does not fit, it and every later booking of
that student are unpaid.  All functions are pure: callers pass ``now`` and
the records they fetched, and persist whatever comes back.
"""

import logging
import math
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from helpers import InvalidArgument, parse_instant

DEFAULT_DURATION_MIN = 60
# Smallest amount charged when a lesson is marked as held
MIN_COMPLETED_HOURS = 0.25
INACTIVE_STATUSES = {"completed", "cancelled"}

PAID = "paid"
UNPAID = "unpaid"
UNMATCHED = "unmatched"

_DRAFT_STUDENT = "__draft_student__"


class LedgerEntry(NamedTuple):
    booking: Dict[str, Any]
    consumed_before: int
    is_unpaid: bool


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def _require_now(now: Any):
    now_dt = parse_instant(now)
    if now_dt is None:
        raise InvalidArgument(f"Invalid reference instant: {now!r}")
    return now_dt


def booking_key(booking: Dict[str, Any]) -> str:
    """Return a best-effort identity for ``booking``.

    Precedence is ``id``, then ``slot_id``, then ``starts_at``.  The source
    field is part of the key so an id can never equal a slot id or a
    timestamp.  Two bookings with neither id nor slot id starting at the
    same instant share a key.
    """

    bid = booking.get("id")
    if bid not in (None, ""):
        return f"id:{bid}"
    slot_id = booking.get("slot_id")
    if slot_id not in (None, ""):
        return f"slot:{slot_id}"
    starts = parse_instant(booking.get("starts_at"))
    if starts is not None:
        return f"at:{starts.timestamp():.0f}"
    return f"at:{booking.get('starts_at')}"


def _find_call_type(call_types: Any, ref: Any) -> Optional[Dict[str, Any]]:
    if not call_types or ref in (None, ""):
        return None
    wanted = str(ref).strip().lower()
    items = call_types.values() if isinstance(call_types, dict) else call_types
    for ct in items:
        if not isinstance(ct, dict):
            continue
        if str(ct.get("id") or "").lower() == wanted:
            return ct
        if str(ct.get("slug") or "").lower() == wanted:
            return ct
    return None


def resolve_duration(booking: Dict[str, Any], call_types: Any = None) -> int:
    """Lesson length in minutes.

    Explicit ``duration_min`` first, then the duration registered for the
    booking's call type, then ``DEFAULT_DURATION_MIN``.
    """

    explicit = _finite(booking.get("duration_min"))
    if explicit is not None and explicit > 0:
        return int(round(explicit))
    ref = booking.get("call_type") or booking.get("call_type_id")
    ct = _find_call_type(call_types, ref)
    if ct is not None:
        registered = _finite(ct.get("duration_min"))
        if registered is not None and registered > 0:
            return int(round(registered))
    return DEFAULT_DURATION_MIN


def remaining_minutes(balance: Optional[Dict[str, Any]]) -> int:
    """Prepaid minutes left for ``balance`` (never negative).

    ``hours_paid - hours_consumed`` is canonical; the stored
    ``remaining_paid_hours`` is only read when neither counter is present.
    """

    if not balance:
        return 0
    if "hours_paid" in balance or "hours_consumed" in balance:
        paid = _finite(balance.get("hours_paid")) or 0.0
        consumed = _finite(balance.get("hours_consumed")) or 0.0
        hours = paid - consumed
    else:
        hours = _finite(balance.get("remaining_paid_hours"))
        if hours is None:
            return 0
    return max(0, int(round(hours * 60)))


def _student_emails(student: Dict[str, Any]) -> Set[str]:
    emails: Set[str] = set()
    candidates = [student.get(f) for f in ("email", "student_email", "parent_email")]
    candidates.extend(student.get("emails") or [])
    for value in candidates:
        if isinstance(value, str) and value.strip():
            emails.add(value.strip().lower())
    return emails


def resolve_student_id(
    booking: Dict[str, Any], students_by_id: Dict[Any, Dict[str, Any]]
) -> Optional[Any]:
    """Return the key of the student owning ``booking`` or ``None``.

    The booking's own ``student_id`` wins when it names a known student,
    otherwise its email is matched case-insensitively against the student's
    registered addresses.
    """

    sid = booking.get("student_id")
    if sid not in (None, ""):
        for key in students_by_id:
            if str(key) == str(sid):
                return key
    email = booking.get("email")
    if not isinstance(email, str) or not email.strip():
        return None
    email = email.strip().lower()
    for key, student in students_by_id.items():
        if email in _student_emails(student or {}):
            return key
    return None


def participates(booking: Dict[str, Any], now: Any) -> bool:
    """True for bookings that are still to be held and can consume hours."""

    status = str(booking.get("status") or "confirmed").lower()
    if status in INACTIVE_STATUSES:
        return False
    starts = parse_instant(booking.get("starts_at"))
    if starts is None:
        logging.debug("Skipping booking with unparseable start: %s", booking_key(booking))
        return False
    return starts >= _require_now(now)


def ledger_run(
    balance: Optional[Dict[str, Any]],
    bookings: Iterable[Dict[str, Any]],
    now: Any,
    call_types: Any = None,
) -> List[LedgerEntry]:
    """Replay ``bookings`` of one student against ``balance``.

    Only participating bookings are replayed.  They are stably sorted by
    start time, so bookings at the same instant keep their input order.
    """

    now_dt = _require_now(now)
    active = [b for b in bookings if participates(b, now_dt)]
    ordered = sorted(active, key=lambda b: parse_instant(b.get("starts_at")))

    remaining = remaining_minutes(balance)
    consumed = 0
    exhausted = False
    run: List[LedgerEntry] = []
    for booking in ordered:
        duration = resolve_duration(booking, call_types)
        if not exhausted and remaining >= duration:
            run.append(LedgerEntry(booking, consumed, False))
            remaining -= duration
            consumed += duration
        else:
            # once short, every later lesson stays unpaid
            exhausted = True
            remaining = 0
            run.append(LedgerEntry(booking, consumed, True))
    return run


def _group_by_student(
    students_by_id: Dict[Any, Dict[str, Any]],
    bookings: Iterable[Dict[str, Any]],
    now_dt,
) -> Tuple[Dict[Any, List[Dict[str, Any]]], List[Dict[str, Any]]]:
    groups: Dict[Any, List[Dict[str, Any]]] = {}
    unmatched: List[Dict[str, Any]] = []
    for booking in bookings:
        if not participates(booking, now_dt):
            continue
        sid = resolve_student_id(booking, students_by_id)
        if sid is None:
            unmatched.append(booking)
            continue
        groups.setdefault(sid, []).append(booking)
    return groups, unmatched


def compute_unpaid_set(
    students_by_id: Dict[Any, Dict[str, Any]],
    bookings: Iterable[Dict[str, Any]],
    now: Any,
    call_types: Any = None,
) -> Set[str]:
    """Return the ``booking_key`` of every future booking not covered by hours."""

    now_dt = _require_now(now)
    groups, _ = _group_by_student(students_by_id, bookings, now_dt)
    unpaid: Set[str] = set()
    for sid, group in groups.items():
        for entry in ledger_run(students_by_id.get(sid), group, now_dt, call_types):
            if entry.is_unpaid:
                unpaid.add(booking_key(entry.booking))
    return unpaid


def classify_bookings(
    students_by_id: Dict[Any, Dict[str, Any]],
    bookings: Iterable[Dict[str, Any]],
    now: Any,
    call_types: Any = None,
) -> Dict[str, str]:
    """Map each participating booking key to ``paid``, ``unpaid`` or ``unmatched``."""

    now_dt = _require_now(now)
    groups, unmatched = _group_by_student(students_by_id, bookings, now_dt)
    result: Dict[str, str] = {}
    for sid, group in groups.items():
        for entry in ledger_run(students_by_id.get(sid), group, now_dt, call_types):
            result[booking_key(entry.booking)] = UNPAID if entry.is_unpaid else PAID
    for booking in unmatched:
        result[booking_key(booking)] = UNMATCHED
    return result


def unmatched_bookings(
    students_by_id: Dict[Any, Dict[str, Any]],
    bookings: Iterable[Dict[str, Any]],
    now: Any,
) -> List[Dict[str, Any]]:
    """Future active bookings that cannot be attributed to any student."""

    _, unmatched = _group_by_student(students_by_id, bookings, _require_now(now))
    if unmatched:
        logging.warning("%d booking(s) could not be matched to a student", len(unmatched))
    return unmatched


def would_be_unpaid(
    student: Dict[str, Any],
    existing_bookings: Iterable[Dict[str, Any]],
    draft: Dict[str, Any],
    now: Any,
    call_types: Any = None,
    students_by_id: Optional[Dict[Any, Dict[str, Any]]] = None,
) -> bool:
    """Preview whether ``draft`` would be unpaid once saved for ``student``.

    The draft is appended after the student's existing bookings and the
    stable chronological sort places it exactly where a saved booking would
    land, so the answer matches ``compute_unpaid_set`` after persisting.
    Pass ``students_by_id`` to attribute existing bookings with the same
    lookup the full report uses.
    """

    now_dt = _require_now(now)
    if not participates(draft, now_dt):
        return False
    sid = student.get("id")
    if students_by_id and sid is None:
        sid = next((k for k, v in students_by_id.items() if v is student), None)
    partial = students_by_id is None or sid is None
    if partial:
        sid = sid if sid is not None else _DRAFT_STUDENT
        lookup = {sid: student}
    else:
        lookup = students_by_id

    def owned(booking: Dict[str, Any]) -> bool:
        if booking is draft:
            return False
        named = booking.get("student_id")
        # without the full lookup a booking naming another id belongs elsewhere
        if partial and named not in (None, "") and str(named) != str(sid):
            return False
        return str(resolve_student_id(booking, lookup)) == str(sid)

    own = [b for b in existing_bookings if owned(b)]
    for entry in ledger_run(student, own + [draft], now_dt, call_types):
        if entry.booking is draft:
            return entry.is_unpaid
    return False


def _apply_hours(
    balance: Optional[Dict[str, Any]], paid_delta: float = 0.0, consumed_delta: float = 0.0
) -> Dict[str, Any]:
    updated = dict(balance or {})
    has_counters = "hours_paid" in updated or "hours_consumed" in updated
    cached = _finite(updated.get("remaining_paid_hours"))
    if not has_counters and cached is not None:
        remaining = cached + paid_delta - consumed_delta
        updated["remaining_paid_hours"] = round(max(0.0, remaining), 4)
        return updated
    paid = (_finite(updated.get("hours_paid")) or 0.0) + paid_delta
    consumed = (_finite(updated.get("hours_consumed")) or 0.0) + consumed_delta
    updated["hours_paid"] = round(paid, 4)
    updated["hours_consumed"] = round(consumed, 4)
    updated["remaining_paid_hours"] = round(max(0.0, paid - consumed), 4)
    return updated


def top_up_hours(balance: Optional[Dict[str, Any]], hours: Any) -> Dict[str, Any]:
    """Return ``balance`` with ``hours`` more prepaid hours."""

    amount = _finite(hours)
    if amount is None or amount <= 0:
        raise InvalidArgument(f"Invalid top-up amount: {hours!r}")
    return _apply_hours(balance, paid_delta=amount)


def complete_booking(
    booking: Dict[str, Any],
    balance: Optional[Dict[str, Any]],
    hours: Any = None,
    call_types: Any = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Mark ``booking`` as held and charge it to ``balance``.

    The charge is ``hours`` when positive, otherwise the booking's duration,
    and never less than ``MIN_COMPLETED_HOURS``.
    """

    if str(booking.get("status") or "").lower() == "completed":
        raise InvalidArgument(f"Booking {booking_key(booking)} already completed")
    explicit = _finite(hours)
    if explicit is not None and explicit > 0:
        minutes = explicit * 60
    else:
        minutes = resolve_duration(booking, call_types)
    charged = max(MIN_COMPLETED_HOURS, minutes / 60)
    updated_booking = dict(booking)
    updated_booking["status"] = "completed"
    return updated_booking, _apply_hours(balance, consumed_delta=charged)


class HoursNotCovered(InvalidArgument):
    """Raised when a lesson would not be covered and unpaid was not allowed."""


def _lesson_start(starts_at: Any):
    start = parse_instant(starts_at)
    if start is None:
        raise InvalidArgument(f"Invalid lesson start: {starts_at!r}")
    return start


def _set_duration(booking: Dict[str, Any], duration_min: Any) -> None:
    if duration_min is None:
        return
    minutes = _finite(duration_min)
    if minutes is None or minutes <= 0:
        raise InvalidArgument(f"Invalid lesson length: {duration_min!r}")
    booking["duration_min"] = int(round(minutes))


def _check_covered(student, others, draft, now_dt, call_types, students_by_id) -> None:
    if would_be_unpaid(student, others, draft, now_dt, call_types, students_by_id):
        raise HoursNotCovered(
            f"Lesson on {draft['starts_at']} is not covered by prepaid hours"
        )


def create_booking(
    student: Dict[str, Any],
    existing_bookings: Iterable[Dict[str, Any]],
    starts_at: Any,
    now: Any,
    duration_min: Any = None,
    allow_unpaid: bool = False,
    call_types: Any = None,
    students_by_id: Optional[Dict[Any, Dict[str, Any]]] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a confirmed booking for ``student``.

    Unless ``allow_unpaid`` is set, a lesson the prepaid hours would not
    cover raises ``HoursNotCovered``.  The booking has no id yet; the store
    assigns one when it is saved.
    """

    now_dt = _require_now(now)
    start = _lesson_start(starts_at)
    booking: Dict[str, Any] = {
        "id": None,
        "student_id": student.get("id"),
        "full_name": student.get("preferred_name") or student.get("name"),
        "email": student.get("student_email") or student.get("parent_email") or student.get("email"),
        "starts_at": start.isoformat(),
        "status": "confirmed",
        "note": (note or "").strip() or None,
    }
    _set_duration(booking, duration_min)
    if not allow_unpaid:
        _check_covered(student, list(existing_bookings), booking, now_dt, call_types, students_by_id)
    return booking


def reschedule_booking(
    booking: Dict[str, Any],
    student: Optional[Dict[str, Any]],
    existing_bookings: Iterable[Dict[str, Any]],
    starts_at: Any,
    now: Any,
    duration_min: Any = None,
    allow_unpaid: bool = False,
    call_types: Any = None,
    students_by_id: Optional[Dict[Any, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Move ``booking`` to ``starts_at``, with the same hours check as a new one.

    Bookings without a known ``student`` are moved unchecked.
    """

    status = str(booking.get("status") or "confirmed").lower()
    if status in INACTIVE_STATUSES:
        raise InvalidArgument(f"Booking {booking_key(booking)} is {status}")
    now_dt = _require_now(now)
    updated = dict(booking)
    updated["starts_at"] = _lesson_start(starts_at).isoformat()
    _set_duration(updated, duration_min)
    if student is not None and not allow_unpaid:
        key = booking_key(booking)
        others = [b for b in existing_bookings if booking_key(b) != key]
        _check_covered(student, others, updated, now_dt, call_types, students_by_id)
    return updated


def cancel_booking(booking: Dict[str, Any]) -> Dict[str, Any]:
    """Mark ``booking`` cancelled; a held lesson cannot be cancelled."""

    status = str(booking.get("status") or "confirmed").lower()
    if status == "completed":
        raise InvalidArgument(f"Booking {booking_key(booking)} was already held")
    updated = dict(booking)
    updated["status"] = "cancelled"
    return updated
