from typing import Any, Dict, List, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from followups import contact_status
from helpers import fmt_local


def build_admin_menu_kb() -> InlineKeyboardMarkup:
    buttons = [
        [
            InlineKeyboardButton("📋 Due today", callback_data="admin:due"),
            InlineKeyboardButton("🗓 Upcoming", callback_data="admin:upcoming"),
        ],
        [
            InlineKeyboardButton("💸 Unpaid bookings", callback_data="admin:unpaid"),
            InlineKeyboardButton("📆 Calendar", callback_data="admin:calendar"),
        ],
        [InlineKeyboardButton("➕ Next candidate", callback_data="admin:next")],
    ]
    return InlineKeyboardMarkup(buttons)


def contact_label(contact: Dict[str, Any]) -> str:
    return contact.get("name") or contact.get("phone") or str(contact.get("id"))


def build_contact_list_kb(contacts: List[Dict[str, Any]], limit: int = 20) -> InlineKeyboardMarkup:
    """One button per contact opening its detail view."""
    rows = [
        [
            InlineKeyboardButton(
                f"{contact_label(c)} · {fmt_local(c.get('next_follow_up_at'))}",
                callback_data=f"fu:VIEW:{c['id']}",
            )
        ]
        for c in contacts[:limit]
        if c.get("id")
    ]
    rows.append([InlineKeyboardButton("⬅ Menu", callback_data="admin:menu")])
    return InlineKeyboardMarkup(rows)


def build_contact_submenu(contact_id: str, status: str = "active") -> InlineKeyboardMarkup:
    """Return the action keyboard for a contact.

    Callback data strings follow the ``fu:<ACTION>:<id>`` convention.
    """
    contact_id = str(contact_id)
    buttons = [
        [
            InlineKeyboardButton("✅ Contacted (+3d)", callback_data=f"fu:ADVANCE:{contact_id}"),
            InlineKeyboardButton("🔁 Restart lead cycle", callback_data=f"fu:RESTART:{contact_id}"),
        ],
    ]
    if status == "dropped":
        buttons.append(
            [InlineKeyboardButton("▶️ Resume", callback_data=f"fu:RESUME:{contact_id}")]
        )
    elif status == "active":
        buttons.append(
            [
                InlineKeyboardButton("⏸ Pause", callback_data=f"fu:PAUSE:{contact_id}"),
                InlineKeyboardButton("🏁 Done", callback_data=f"fu:DONE:{contact_id}"),
            ]
        )
    buttons.append([InlineKeyboardButton("⬅ Due list", callback_data="admin:due")])
    return InlineKeyboardMarkup(buttons)


def build_contact_detail_view(contact: Dict[str, Any]) -> Tuple[str, InlineKeyboardMarkup]:
    """Return a summary of ``contact`` and its action keyboard."""

    status = contact_status(contact)
    lines = [
        f"Contact: {contact_label(contact)}",
        f"WhatsApp: {contact.get('phone') or '—'}",
        f"Status: {status}",
        f"Next follow-up: {fmt_local(contact.get('next_follow_up_at'))}",
        f"Last contacted: {fmt_local(contact.get('last_contacted_at'))}",
    ]
    if contact.get("note"):
        lines.append(f"Note: {contact['note']}")
    return "\n".join(lines), build_contact_submenu(contact["id"], status=status)
