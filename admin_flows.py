import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from telegram import Update
from telegram.error import BadRequest
from telegram.ext import ContextTypes

import data_store
import followups
import keyboard_builders
import ledger
from helpers import (
    BASE_TZ,
    WEEKDAYS,
    InvalidArgument,
    build_month_grid,
    day_key,
    fmt_local,
    parse_instant,
    try_ack,
)

CONTACT_NOT_FOUND_MSG = (
    "❌ This contact was not found — it may have been removed."
)
# Telegram rejects messages over 4096 characters
MESSAGE_CHAR_LIMIT = 3900


def _now() -> datetime:
    return datetime.now(BASE_TZ)


async def safe_edit_or_send(target, text: str, reply_markup=None) -> None:
    """Edit message if possible, otherwise send a new message."""
    if hasattr(target, "edit_message_text"):
        try:
            await target.edit_message_text(text, reply_markup=reply_markup)
            return
        except BadRequest as exc:
            logging.info("Edit failed, sending a new message: %s", exc)
            target = getattr(target, "message", None) or target
    if hasattr(target, "message") and target.message:
        await target.message.reply_text(text, reply_markup=reply_markup)
    else:
        await target.reply_text(text, reply_markup=reply_markup)


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------

def fit_message(lines: List[str], limit: int = MESSAGE_CHAR_LIMIT) -> str:
    """Join ``lines``, dropping the tail with a marker when too long to send."""
    size = 0
    for idx, line in enumerate(lines):
        size += len(line) + 1
        if size > limit - 40:
            kept = lines[:idx]
            kept.append(f"… and {len(lines) - idx} more lines")
            return "\n".join(kept)
    return "\n".join(lines)


def render_followup_summary(buckets: Dict[str, Any]) -> str:
    due = buckets.get("due", [])
    lines = [
        f"Follow-ups for {day_key(buckets['date'])}",
        f"Due: {len(due)}",
        f"Upcoming: {len(buckets.get('upcoming', []))}",
    ]
    if buckets.get("completed"):
        lines.append(f"Completed: {len(buckets['completed'])}")
    invalid = buckets.get("invalid", [])
    if invalid:
        lines.append(f"⚠️ {len(invalid)} contact(s) have an invalid follow-up date")
    for contact in due:
        lines.append(
            f" - {keyboard_builders.contact_label(contact)}"
            f" ({fmt_local(contact.get('next_follow_up_at'))})"
        )
    return fit_message(lines)


def render_upcoming(contacts: List[Dict[str, Any]]) -> str:
    if not contacts:
        return "No upcoming follow-ups."
    lines = ["Upcoming follow-ups:"]
    for group in followups.group_by_day(contacts):
        lines.append(f"{group['label']}:")
        for contact in group["contacts"]:
            lines.append(f" - {keyboard_builders.contact_label(contact)}")
    return fit_message(lines)


def render_unpaid_report(
    students: Dict[str, Dict[str, Any]],
    bookings: List[Dict[str, Any]],
    now: Any,
    call_types: Any = None,
) -> str:
    """List unpaid bookings per student plus bookings nobody owns."""

    statuses = ledger.classify_bookings(students, bookings, now, call_types)
    by_student: Dict[str, List[Dict[str, Any]]] = {}
    unmatched: List[Dict[str, Any]] = []
    for booking in bookings:
        status = statuses.get(ledger.booking_key(booking))
        if status == ledger.UNPAID:
            sid = ledger.resolve_student_id(booking, students)
            by_student.setdefault(sid, []).append(booking)
        elif status == ledger.UNMATCHED:
            unmatched.append(booking)

    if not by_student and not unmatched:
        return "All upcoming bookings are covered by prepaid hours."
    lines: List[str] = []
    for sid, items in by_student.items():
        student = students.get(sid, {})
        hours = ledger.remaining_minutes(student) / 60
        name = student.get("name") or student.get("preferred_name") or sid
        lines.append(f"{name} — {hours:g}h prepaid left, unpaid:")
        for booking in sorted(items, key=lambda b: parse_instant(b.get("starts_at"))):
            lines.append(f" - {fmt_local(booking.get('starts_at'))}")
    if unmatched:
        lines.append("Unmatched bookings (no student found):")
        for booking in unmatched:
            who = booking.get("full_name") or booking.get("email") or ledger.booking_key(booking)
            lines.append(f" - {fmt_local(booking.get('starts_at'))} {who}")
    return fit_message(lines)


def render_month_calendar(month_start: Any, bookings: List[Dict[str, Any]]) -> str:
    """Monospace month grid with the number of active bookings per day."""

    counts: Dict[str, int] = {}
    for booking in bookings:
        if str(booking.get("status") or "confirmed").lower() == "cancelled":
            continue
        key = day_key(booking.get("starts_at"))
        if key:
            counts[key] = counts.get(key, 0) + 1
    cells = build_month_grid(month_start)
    header = " ".join(f"{d[:2]:>4}" for d in WEEKDAYS)
    rows = [header]
    for start in range(0, len(cells), 7):
        week = []
        for cell in cells[start:start + 7]:
            if not cell["in_current_month"]:
                week.append("   .")
                continue
            count = counts.get(cell["day_key"], 0)
            mark = "*" if count else " "
            week.append(f"{cell['day_number']:>3}{mark}")
        rows.append(" ".join(week))
    return "\n".join(rows)


# ---------------------------------------------------------------------------
# Screens shared by commands and menu callbacks
# ---------------------------------------------------------------------------

async def show_due(target, reference_day: Optional[Any] = None) -> None:
    contacts = data_store.load_contacts()
    buckets = followups.bucket_contacts(contacts, reference_day or _now())
    text = render_followup_summary(buckets)
    markup = keyboard_builders.build_contact_list_kb(buckets["due"])
    await safe_edit_or_send(target, text, reply_markup=markup)


async def show_upcoming(target) -> None:
    contacts = data_store.load_contacts()
    upcoming = followups.upcoming_contacts(contacts, _now())
    await safe_edit_or_send(
        target,
        render_upcoming(upcoming[: followups.UPCOMING_PAGE_SIZE]),
        reply_markup=keyboard_builders.build_contact_list_kb(upcoming),
    )


async def show_completed(target) -> None:
    contacts = data_store.load_contacts()
    buckets = followups.bucket_contacts(contacts, _now(), include_completed=True)
    done = buckets["completed"]
    if not done:
        text = "No completed follow-ups."
    else:
        text = fit_message(
            ["Completed follow-ups:"]
            + [f" - {keyboard_builders.contact_label(c)}" for c in done]
        )
    await safe_edit_or_send(target, text)


async def show_unpaid(target) -> None:
    text = render_unpaid_report(
        data_store.load_students(),
        data_store.load_bookings(),
        _now(),
        data_store.load_call_types(),
    )
    await safe_edit_or_send(target, text)


async def show_calendar(target, month_start: Optional[Any] = None) -> None:
    month = month_start or _now()
    text = render_month_calendar(month, data_store.load_bookings())
    await safe_edit_or_send(target, text)


async def show_next_candidate(target) -> None:
    now = _now()
    sid, student = followups.pick_next_candidate(
        data_store.load_students(), data_store.load_contacts()
    )
    if sid is None:
        await safe_edit_or_send(target, "No student left to contact.")
        return
    contact = data_store.save_contact(
        followups.contact_from_student(sid, student, now), now=now.isoformat()
    )
    text, markup = keyboard_builders.build_contact_detail_view(contact)
    await safe_edit_or_send(target, text, reply_markup=markup)


# ---------------------------------------------------------------------------
# Contact actions (fu:<ACTION>:<id>)
# ---------------------------------------------------------------------------

async def save_and_show_contact(target, contact: Dict[str, Any], now: datetime) -> None:
    saved = data_store.save_contact(contact, now=now.isoformat())
    text, markup = keyboard_builders.build_contact_detail_view(saved)
    await safe_edit_or_send(target, text, reply_markup=markup)


async def advance_contact(target, contact: Dict[str, Any], next_date: Any = None) -> None:
    now = _now()
    updated = followups.advance(contact, now, next_date=next_date)
    data_store.touch_student_contacted(contact.get("student_id"), now.isoformat())
    await save_and_show_contact(target, updated, now)


async def restart_contact_lead(target, contact: Dict[str, Any], next_date: Any = None) -> None:
    now = _now()
    updated, cycle = followups.restart_lead_cycle(
        contact, now, next_date=next_date, lead_cycles=data_store.load_lead_cycles()
    )
    data_store.upsert_lead_cycle(cycle)
    await save_and_show_contact(target, updated, now)


async def wrap_view_contact(query, context, contact: Dict[str, Any]) -> None:
    text, markup = keyboard_builders.build_contact_detail_view(contact)
    await safe_edit_or_send(query, text, reply_markup=markup)


async def wrap_advance(query, context, contact: Dict[str, Any]) -> None:
    await advance_contact(query, contact)


async def wrap_pause(query, context, contact: Dict[str, Any]) -> None:
    await save_and_show_contact(query, followups.pause(contact), _now())


async def wrap_resume(query, context, contact: Dict[str, Any]) -> None:
    await save_and_show_contact(query, followups.resume(contact), _now())


async def wrap_done(query, context, contact: Dict[str, Any]) -> None:
    await save_and_show_contact(query, followups.complete(contact), _now())


async def wrap_restart(query, context, contact: Dict[str, Any]) -> None:
    await restart_contact_lead(query, contact)


actions_map = {
    "VIEW": wrap_view_contact,
    "ADVANCE": wrap_advance,
    "PAUSE": wrap_pause,
    "RESUME": wrap_resume,
    "DONE": wrap_done,
    "RESTART": wrap_restart,
}


async def handle_contact_action(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Dispatch contact actions based on callback_data."""
    query = update.callback_query
    if not query:
        return
    await try_ack(query)
    data = query.data or ""
    match = re.match(r"^fu:([A-Z]+):(.+)$", data)
    if not match:
        logging.warning("Malformed contact action callback: %s", data)
        return
    action, contact_id = match.groups()
    handler = actions_map.get(action)
    if handler is None:
        logging.warning("Unhandled contact action: %s", data)
        return
    contact = data_store.get_contact(contact_id)
    if not contact:
        await safe_edit_or_send(query, CONTACT_NOT_FOUND_MSG)
        return
    try:
        await handler(query, context, contact)
    except InvalidArgument as exc:
        logging.info("Contact action %s rejected: %s", data, exc)
        await safe_edit_or_send(query, f"⚠️ {exc}")


async def admin_menu_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await try_ack(query)
    action = (query.data or "").split(":", 1)[-1]
    if action == "due":
        await show_due(query)
    elif action == "upcoming":
        await show_upcoming(query)
    elif action == "unpaid":
        await show_unpaid(query)
    elif action == "calendar":
        await show_calendar(query)
    elif action == "next":
        await show_next_candidate(query)
    else:
        await safe_edit_or_send(
            query, "🔧 Admin Menu", reply_markup=keyboard_builders.build_admin_menu_kb()
        )
