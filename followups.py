"""Follow-up scheduling for contacts and the phone-keyed lead cycle.

Contacts move between ``active``, ``dropped`` and ``completed``.  Only active
contacts are bucketed into *due* (today or overdue) and *upcoming*.  The lead
cycle is a separate nurture cadence keyed by normalized phone number with
fixed day offsets; restarting it never rewrites the contact's own schedule
beyond the usual default offset.

Transitions return new dicts and never touch storage.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from helpers import (
    WEEKDAYS,
    InvalidArgument,
    add_days,
    day_key,
    iso_weekday_monday_first,
    parse_instant,
    start_of_day,
    to_local,
)

DEFAULT_OFFSET_DAYS = 3
LEAD_FOLLOWUP_STEPS = [1, 2, 7, 30]
UPCOMING_PAGE_SIZE = 150
COMPLETED_PAGE_SIZE = 50
CONTACT_STATUSES = ("active", "completed", "dropped")
LEAD_CHANNEL = "followup"
EDITABLE_FIELDS = ("name", "note", "phone")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Return ``raw`` in ``+<digits>`` form, or ``None`` if it has no digits.

    ``+39 333 1234567``, ``00393331234567`` and ``3933 31234567`` all become
    ``+393331234567``.
    """

    if raw is None:
        return None
    compact = re.sub(r"\s+", "", str(raw))
    digits = re.sub(r"\D", "", compact)
    if not digits:
        return None
    if compact.startswith("+"):
        return f"+{digits}"
    if digits.startswith("00") and len(digits) > 2:
        return f"+{digits[2:]}"
    return f"+{digits}"


def contact_status(contact: Dict[str, Any]) -> str:
    return str(contact.get("status") or "active").lower()


def _require_id(contact: Optional[Dict[str, Any]]) -> None:
    if not contact or contact.get("id") in (None, ""):
        raise InvalidArgument("Contact is missing an id")


def _require_now(now: Any):
    now_dt = parse_instant(now)
    if now_dt is None:
        raise InvalidArgument(f"Invalid reference instant: {now!r}")
    return now_dt


def _next_or_default(next_date: Any, now_dt) -> str:
    explicit = parse_instant(next_date)
    if explicit is not None:
        # caller dates are kept as given, even in the past
        if isinstance(next_date, str):
            return next_date.strip()
        return explicit.isoformat()
    return add_days(now_dt, DEFAULT_OFFSET_DAYS).isoformat()


def bucket_contacts(
    contacts: Iterable[Dict[str, Any]],
    reference_day: Any,
    include_completed: bool = False,
    upcoming_limit: Optional[int] = UPCOMING_PAGE_SIZE,
) -> Dict[str, Any]:
    """Split ``contacts`` into due / upcoming / completed for ``reference_day``.

    ``due`` holds active contacts scheduled up to the end of the reference
    day (overdue included, never-scheduled first).  ``upcoming`` holds the
    later ones, capped at ``upcoming_limit`` (``None`` for no cap).
    ``invalid`` lists active contacts whose date cannot be parsed; they are
    in neither bucket.
    """

    day = parse_instant(reference_day)
    if day is None:
        raise InvalidArgument(f"Invalid reference day: {reference_day!r}")
    day_start = start_of_day(day)
    day_end = add_days(day_start, 1)

    unscheduled: List[Dict[str, Any]] = []
    due: List[Tuple[Any, Dict[str, Any]]] = []
    upcoming: List[Tuple[Any, Dict[str, Any]]] = []
    invalid: List[Dict[str, Any]] = []
    completed: List[Dict[str, Any]] = []

    for contact in contacts:
        status = contact_status(contact)
        if status == "completed":
            completed.append(contact)
            continue
        if status != "active":
            continue
        raw = contact.get("next_follow_up_at")
        if raw in (None, ""):
            unscheduled.append(contact)
            continue
        at = parse_instant(raw)
        if at is None:
            logging.debug("Contact %s has unparseable follow-up date %r", contact.get("id"), raw)
            invalid.append(contact)
            continue
        if at <= day_end:
            due.append((at, contact))
        else:
            upcoming.append((at, contact))

    due.sort(key=lambda item: item[0])
    upcoming.sort(key=lambda item: item[0])
    upcoming_list = [c for _, c in upcoming]
    if upcoming_limit is not None:
        upcoming_list = upcoming_list[:upcoming_limit]

    result: Dict[str, Any] = {
        "date": day_start.isoformat(),
        "due": unscheduled + [c for _, c in due],
        "upcoming": upcoming_list,
        "completed": [],
        "invalid": invalid,
    }
    if include_completed:
        dated = [c for c in completed if parse_instant(c.get("updated_at")) is not None]
        undated = [c for c in completed if parse_instant(c.get("updated_at")) is None]
        dated.sort(key=lambda c: parse_instant(c.get("updated_at")), reverse=True)
        result["completed"] = (dated + undated)[:COMPLETED_PAGE_SIZE]
    return result


def upcoming_contacts(contacts: Iterable[Dict[str, Any]], reference_day: Any) -> List[Dict[str, Any]]:
    """The full, uncapped upcoming list."""
    return bucket_contacts(contacts, reference_day, upcoming_limit=None)["upcoming"]


def group_by_day(contacts: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Group contacts by the local day of their next follow-up, in day order."""

    groups: Dict[str, Dict[str, Any]] = {}
    for contact in contacts:
        at = to_local(contact.get("next_follow_up_at"))
        if at is None:
            continue
        key = day_key(at)
        if key not in groups:
            weekday = iso_weekday_monday_first(at)
            groups[key] = {
                "day_key": key,
                "weekday": weekday,
                "label": f"{WEEKDAYS[weekday]} {at.day:02d}/{at.month:02d}",
                "contacts": [],
            }
        groups[key]["contacts"].append(contact)
    return [groups[k] for k in sorted(groups)]


def advance(contact: Dict[str, Any], now: Any, next_date: Any = None) -> Dict[str, Any]:
    """Record a manual follow-up and schedule the next one."""

    _require_id(contact)
    now_dt = _require_now(now)
    updated = dict(contact)
    updated["last_contacted_at"] = now_dt.isoformat()
    updated["status"] = "active"
    updated["next_follow_up_at"] = _next_or_default(next_date, now_dt)
    logging.info("Follow-up %s advanced to %s", contact["id"], updated["next_follow_up_at"])
    return updated


def pause(contact: Dict[str, Any]) -> Dict[str, Any]:
    """Drop ``contact`` while keeping its schedule for a later resume.

    Completed contacts stay completed.
    """

    _require_id(contact)
    updated = dict(contact)
    if contact_status(contact) != "completed":
        updated["status"] = "dropped"
    return updated


def resume(contact: Dict[str, Any]) -> Dict[str, Any]:
    """Reactivate a dropped contact; completed contacts stay completed."""

    _require_id(contact)
    updated = dict(contact)
    if contact_status(contact) == "dropped":
        updated["status"] = "active"
    return updated


def complete(contact: Dict[str, Any]) -> Dict[str, Any]:
    _require_id(contact)
    updated = dict(contact)
    updated["status"] = "completed"
    return updated


def edit_contact(contact: Dict[str, Any], **changes: Any) -> Dict[str, Any]:
    """Return ``contact`` with its name, note or phone replaced.

    A blank name or a phone without digits is rejected; a blank note clears
    it.  Status and schedule are left alone.
    """

    _require_id(contact)
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidArgument(f"Cannot edit {', '.join(sorted(unknown))}")
    if not changes:
        raise InvalidArgument("Nothing to update")
    updated = dict(contact)
    if "name" in changes:
        name = str(changes["name"] or "").strip()
        if not name:
            raise InvalidArgument("Name cannot be empty")
        updated["name"] = name
    if "note" in changes:
        updated["note"] = str(changes["note"] or "").strip() or None
    if "phone" in changes:
        phone = normalize_phone(changes["phone"])
        if not phone:
            raise InvalidArgument("A WhatsApp phone number is required")
        updated["phone"] = phone
    return updated


def compute_lead_next_follow_up(step: int, from_: Any):
    """Instant of the follow-up for ``step``, or ``None`` past the last step."""

    if step < 0 or step >= len(LEAD_FOLLOWUP_STEPS):
        return None
    return add_days(from_, LEAD_FOLLOWUP_STEPS[step])


def find_lead_cycle(lead_cycles: Any, phone: str) -> Optional[Dict[str, Any]]:
    """Most recently updated lead cycle for ``phone`` in ``lead_cycles``."""

    if not lead_cycles:
        return None
    items = lead_cycles.values() if isinstance(lead_cycles, dict) else lead_cycles
    matches = [c for c in items if normalize_phone(c.get("phone")) == phone]
    if not matches:
        return None
    matches.sort(key=lambda c: str(c.get("updated_at") or ""), reverse=True)
    return matches[0]


def restart_lead_cycle(
    contact: Dict[str, Any],
    now: Any,
    next_date: Any = None,
    lead_cycles: Any = None,
    phone: Optional[str] = None,
    name: Optional[str] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Put a responding contact back at step 0 of the lead cycle.

    Returns ``(contact, lead_cycle)``.  The lead cycle for the contact's
    phone is updated when one exists in ``lead_cycles``, otherwise a new one
    is built.  The step always resets to 0, whatever progress the previous
    cycle had made.
    """

    _require_id(contact)
    now_dt = _require_now(now)
    normalized = normalize_phone(phone or contact.get("phone"))
    if not normalized:
        raise InvalidArgument(f"Contact {contact['id']} has no usable phone")
    now_iso = now_dt.isoformat()

    existing = find_lead_cycle(lead_cycles, normalized)
    cycle: Dict[str, Any] = dict(existing) if existing else {"created_at": now_iso}
    lead_next = compute_lead_next_follow_up(0, now_dt)
    cycle.update(
        {
            "phone": normalized,
            "name": (name or "").strip() or contact.get("name") or cycle.get("name"),
            "note": contact.get("note") or None,
            "channel": LEAD_CHANNEL,
            "status": "active",
            "current_step": 0,
            "last_contacted_at": now_iso,
            "next_follow_up_at": lead_next.isoformat() if lead_next else None,
            "completed_at": None,
            "updated_at": now_iso,
        }
    )

    updated = dict(contact)
    updated["last_contacted_at"] = now_iso
    updated["next_follow_up_at"] = _next_or_default(next_date, now_dt)
    updated["status"] = "active"
    logging.info(
        "Lead cycle for %s restarted from contact %s (%s)",
        normalized,
        contact["id"],
        "updated" if existing else "created",
    )
    return updated, cycle


def advance_lead_cycle(cycle: Dict[str, Any], now: Any) -> Dict[str, Any]:
    """Move ``cycle`` to its next step, completing it after the last one."""

    if str(cycle.get("status") or "active").lower() == "completed":
        raise InvalidArgument(f"Lead cycle {cycle.get('phone')} already completed")
    now_dt = _require_now(now)
    try:
        step = int(cycle.get("current_step") or 0)
    except (TypeError, ValueError):
        step = 0
    next_step = min(step + 1, len(LEAD_FOLLOWUP_STEPS))
    next_at = compute_lead_next_follow_up(next_step, now_dt)
    updated = dict(cycle)
    updated["current_step"] = next_step
    updated["last_contacted_at"] = now_dt.isoformat()
    updated["next_follow_up_at"] = next_at.isoformat() if next_at else None
    updated["status"] = "active" if next_at else "completed"
    updated["updated_at"] = now_dt.isoformat()
    if next_at is None:
        updated["completed_at"] = now_dt.isoformat()
    return updated


def new_contact(
    phone: Optional[str],
    now: Any,
    name: Optional[str] = None,
    note: Optional[str] = None,
    student_id: Optional[str] = None,
    next_date: Any = None,
) -> Dict[str, Any]:
    """Build an active contact scheduled for ``next_date`` or right away."""

    normalized = normalize_phone(phone)
    if not normalized:
        raise InvalidArgument("A WhatsApp phone number is required")
    now_dt = _require_now(now)
    explicit = parse_instant(next_date)
    return {
        "id": None,
        "name": (name or "").strip() or None,
        "phone": normalized,
        "note": (note or "").strip() or None,
        "student_id": student_id or None,
        "status": "active",
        "next_follow_up_at": (explicit or now_dt).isoformat(),
        "last_contacted_at": None,
    }


def _student_phone(student: Dict[str, Any]) -> Optional[str]:
    return normalize_phone(
        student.get("student_phone") or student.get("parent_phone") or student.get("phone")
    )


def pick_next_candidate(
    students: Dict[str, Dict[str, Any]], contacts: Iterable[Dict[str, Any]]
) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
    """Student to contact next: least recently contacted, with a phone and
    no active follow-up already linked."""

    linked = {
        str(c.get("student_id"))
        for c in contacts
        if c.get("student_id") and contact_status(c) == "active"
    }

    def sort_key(item):
        _, stu = item
        last = parse_instant(stu.get("last_contacted_at"))
        start = parse_instant(stu.get("start_date"))
        return (
            last is not None,
            last.timestamp() if last else 0.0,
            start.timestamp() if start else float("inf"),
        )

    for sid, student in sorted(students.items(), key=sort_key):
        if str(sid) in linked:
            continue
        if _student_phone(student):
            return str(sid), student
    return None, None


def contact_from_student(student_id: str, student: Dict[str, Any], now: Any) -> Dict[str, Any]:
    """New contact for ``student`` due at the start of today."""

    parts = []
    if student.get("year_class"):
        parts.append(f"Class: {student['year_class']}")
    if student.get("track"):
        parts.append(f"Track: {student['track']}")
    email = student.get("student_email") or student.get("parent_email") or student.get("email")
    if email:
        parts.append(f"Email: {email}")
    contact = new_contact(
        _student_phone(student),
        now,
        name=student.get("preferred_name") or student.get("name"),
        note=" • ".join(parts),
        student_id=str(student_id),
        next_date=start_of_day(now),
    )
    return contact
