import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from followups import normalize_phone
from helpers import InvalidArgument

STUDENTS_FILE = "students.json"
BOOKINGS_FILE = "bookings.json"
CALL_TYPES_FILE = "call_types.json"
CONTACTS_FILE = "contacts.json"
LEAD_CYCLES_FILE = "lead_cycles.json"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(path: str, default):
    """Return the decoded content of ``path`` or ``default`` when unreadable."""
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
    except Exception as e:
        logging.warning("Could not read %s: %s", path, e)
        return default
    if not isinstance(data, type(default)):
        logging.warning("Unexpected content in %s; ignoring", path)
        return default
    return data


def _save_json_atomic(path: str, data: Any) -> bool:
    """Write ``data`` to ``path`` via a temp file so a crash never truncates it."""
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            try:
                f.flush()
                os.fsync(f.fileno())
            except OSError:
                # fsync may not be available on some platforms
                pass
        os.replace(tmp_path, path)
        return True
    except Exception as e:
        logging.error(
            "Failed to save %s atomically; original file left unchanged: %s", path, e
        )
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
        return False


# ---------------------------------------------------------------------------
# Students and balances
# ---------------------------------------------------------------------------

def load_students() -> Dict[str, Any]:
    """Return the students mapping keyed by id, each record carrying its ``id``."""
    raw = _load_json(STUDENTS_FILE, {})
    cleaned: Dict[str, Any] = {}
    for key, student in raw.items():
        if not isinstance(student, dict):
            continue
        student["id"] = str(key)
        cleaned[str(key)] = student
    return cleaned


def save_students(data: Dict[str, Any]) -> None:
    if not data:
        logging.warning("Refusing to overwrite students.json with empty data")
        return
    _save_json_atomic(STUDENTS_FILE, {str(k): v for k, v in data.items()})


def get_student_by_id(student_id: str, safe: bool = True) -> Optional[Dict[str, Any]]:
    """Return student dict for ``student_id``.

    If ``safe`` is ``True`` (default) then ``None`` is returned when the ID is
    missing.  Otherwise a ``KeyError`` is raised.
    """

    data = load_students()
    try:
        return data[str(student_id)]
    except KeyError:
        if safe:
            return None
        raise


def update_student(student_id: str, student: Dict[str, Any]) -> None:
    data = load_students()
    data[str(student_id)] = student
    save_students(data)


def touch_student_contacted(student_id: Optional[str], when: str) -> bool:
    """Stamp ``last_contacted_at`` on a linked student, if it exists."""
    if not student_id:
        return False
    data = load_students()
    student = data.get(str(student_id))
    if student is None:
        return False
    student["last_contacted_at"] = when
    student["updated_at"] = when
    save_students(data)
    return True


# ---------------------------------------------------------------------------
# Bookings and call types
# ---------------------------------------------------------------------------

def load_bookings() -> List[Dict[str, Any]]:
    return [b for b in _load_json(BOOKINGS_FILE, []) if isinstance(b, dict)]


def save_bookings(bookings: List[Dict[str, Any]]) -> None:
    _save_json_atomic(BOOKINGS_FILE, bookings)


def get_booking(booking_id: str) -> Optional[Dict[str, Any]]:
    for booking in load_bookings():
        if str(booking.get("id")) == str(booking_id):
            return booking
    return None


def save_booking(booking: Dict[str, Any]) -> Dict[str, Any]:
    """Insert or replace ``booking`` by id; new bookings get an id."""
    bookings = load_bookings()
    record = dict(booking)
    if not record.get("id"):
        record["id"] = uuid.uuid4().hex
        bookings.append(record)
    else:
        for idx, existing in enumerate(bookings):
            if str(existing.get("id")) == str(record["id"]):
                bookings[idx] = record
                break
        else:
            bookings.append(record)
    save_bookings(bookings)
    return record


def load_call_types() -> List[Dict[str, Any]]:
    return [ct for ct in _load_json(CALL_TYPES_FILE, []) if isinstance(ct, dict)]


# ---------------------------------------------------------------------------
# Follow-up contacts
# ---------------------------------------------------------------------------

def load_contacts() -> List[Dict[str, Any]]:
    return [c for c in _load_json(CONTACTS_FILE, []) if isinstance(c, dict)]


def get_contact(contact_id: str) -> Optional[Dict[str, Any]]:
    for contact in load_contacts():
        if str(contact.get("id")) == str(contact_id):
            return contact
    return None


def save_contact(contact: Dict[str, Any], now: Optional[str] = None) -> Dict[str, Any]:
    """Insert or update ``contact``; audit timestamps are assigned here."""
    stamp = now or _utc_now_iso()
    contacts = load_contacts()
    record = dict(contact)
    record["updated_at"] = stamp
    if not record.get("id"):
        record["id"] = uuid.uuid4().hex
        record["created_at"] = stamp
        contacts.append(record)
    else:
        for idx, existing in enumerate(contacts):
            if str(existing.get("id")) == str(record["id"]):
                record.setdefault("created_at", existing.get("created_at") or stamp)
                contacts[idx] = record
                break
        else:
            record.setdefault("created_at", stamp)
            contacts.append(record)
    _save_json_atomic(CONTACTS_FILE, contacts)
    return record


# ---------------------------------------------------------------------------
# Lead cycles
# ---------------------------------------------------------------------------

def load_lead_cycles() -> List[Dict[str, Any]]:
    return [c for c in _load_json(LEAD_CYCLES_FILE, []) if isinstance(c, dict)]


def upsert_lead_cycle(cycle: Dict[str, Any]) -> Dict[str, Any]:
    """Store ``cycle`` keyed by its normalized phone, replacing any previous one."""
    phone = normalize_phone(cycle.get("phone"))
    if not phone:
        raise InvalidArgument("Lead cycle without phone")
    record = dict(cycle)
    record["phone"] = phone
    cycles: List[Dict[str, Any]] = []
    for existing in load_lead_cycles():
        if normalize_phone(existing.get("phone")) == phone:
            record.setdefault("created_at", existing.get("created_at"))
            continue
        cycles.append(existing)
    cycles.append(record)
    _save_json_atomic(LEAD_CYCLES_FILE, cycles)
    return record
