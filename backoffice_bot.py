"""
Telegram admin console for the tutoring back office.

The tutor (admin) uses this bot to work through the follow-up list of
contacts ("who do I message on WhatsApp today?"), to see which upcoming
lessons are not covered by a student's prepaid hours, to book, move and
cancel lessons, and to record hour top-ups and held lessons.

Data lives in flat JSON files managed by ``data_store``.  Every handler
loads a fresh snapshot, runs the pure functions from ``ledger`` and
``followups`` and saves whatever they return.

Configuration comes from the environment (optionally a ``.env`` file):

  TELEGRAM_BOT_TOKEN   bot token from @BotFather
  ADMIN_IDS            comma-separated Telegram user ids allowed to use the bot
  BACKOFFICE_TZ        local timezone name (default Europe/Rome)
  BACKOFFICE_DEBUG     set to 1 for debug logging
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

from datetime import datetime
from typing import List, Optional

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

import data_store
import followups
import keyboard_builders
import ledger
from admin_flows import (
    CONTACT_NOT_FOUND_MSG,
    _now,
    advance_contact,
    admin_menu_callback,
    handle_contact_action,
    restart_contact_lead,
    save_and_show_contact,
    show_calendar,
    show_completed,
    show_due,
    show_next_candidate,
    show_unpaid,
    show_upcoming,
)
from helpers import BASE_TZ, InvalidArgument, fmt_local, parse_instant, safe_localize


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "YOUR_TELEGRAM_BOT_TOKEN_HERE")

# Comma-separated list of integers, e.g. ADMIN_IDS="123456789,987654321"
admin_env = os.environ.get("ADMIN_IDS")
if admin_env:
    try:
        ADMIN_IDS = {int(item.strip()) for item in admin_env.split(",") if item.strip()}
    except ValueError:
        logging.warning(
            "Invalid ADMIN_IDS environment variable; falling back to default admin list."
        )
        ADMIN_IDS = {123456789}
else:
    ADMIN_IDS = {123456789}

DEBUG_MODE = os.environ.get("BACKOFFICE_DEBUG", "0") == "1"

USAGE_CHECKBOOKING = "Usage: /checkbooking <student_id> <YYYY-MM-DDTHH:MM> [minutes]"
USAGE_TOPUP = "Usage: /topup <student_id> <hours>"
USAGE_COMPLETE = "Usage: /complete <booking_id> [hours]"
USAGE_NEWCONTACT = "Usage: /newcontact <phone> [name]"
USAGE_FOLLOWUP = "Usage: /followup <contact_id> <YYYY-MM-DD>"
USAGE_RESTARTLEAD = "Usage: /restartlead <contact_id> [YYYY-MM-DD]"
USAGE_EDITCONTACT = "Usage: /editcontact <contact_id> <name|note|phone> <value>"
USAGE_LEADNEXT = "Usage: /leadnext <phone>"
USAGE_BOOK = "Usage: /book <student_id> <YYYY-MM-DDTHH:MM> [minutes] [anyway]"
USAGE_RESCHEDULE = "Usage: /reschedule <booking_id> <YYYY-MM-DDTHH:MM> [anyway]"
USAGE_CANCEL = "Usage: /cancel <booking_id>"


def is_admin(user_id: Optional[int]) -> bool:
    return user_id in ADMIN_IDS if user_id is not None else False


def admin_only(func):
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        user = update.effective_user
        user_id = user.id if user else None
        logging.info("Command %s called by user_id=%s", func.__name__, user_id)

        if not is_admin(user_id):
            try:
                if update.message:
                    await update.message.reply_text("Sorry, you are not authorized to perform this command.")
                elif update.callback_query:
                    await update.callback_query.answer("Not authorized.", show_alert=True)
            except Exception:
                logging.warning("Unauthorized call with no message/callback context.")
            return

        try:
            return await func(update, context)
        except InvalidArgument as exc:
            logging.info("Command %s rejected: %s", func.__name__, exc)
            if update.effective_message:
                await update.effective_message.reply_text(f"⚠️ {exc}")
        except Exception:
            logging.exception("Error in admin command %s", func.__name__)
            try:
                if update.message:
                    await update.message.reply_text("Oops, something went wrong running that command.")
                elif update.callback_query:
                    await update.callback_query.edit_message_text("Oops, something went wrong running that command.")
            except Exception:
                logging.debug("Could not report the error back to the admin")
    wrapper.__name__ = func.__name__
    return wrapper


def _args(context) -> List[str]:
    return list(getattr(context, "args", None) or [])


# -----------------------------------------------------------------------------
# Follow-up commands
# -----------------------------------------------------------------------------

@admin_only
async def admin_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "🔧 Admin Menu", reply_markup=keyboard_builders.build_admin_menu_kb()
    )


@admin_only
async def due_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show due follow-ups for today or for the day given as argument."""
    args = _args(context)
    reference = None
    if args:
        reference = parse_instant(args[0])
        if reference is None:
            await update.message.reply_text("Invalid date. Use YYYY-MM-DD.")
            return
    await show_due(update.message, reference)


@admin_only
async def upcoming_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_upcoming(update.message)


@admin_only
async def completed_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_completed(update.message)


@admin_only
async def new_contact_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Add a contact to follow up, due immediately."""
    args = _args(context)
    if not args:
        await update.message.reply_text(USAGE_NEWCONTACT)
        return
    now = _now()
    contact = followups.new_contact(args[0], now, name=" ".join(args[1:]) or None)
    saved = data_store.save_contact(contact, now=now.isoformat())
    text, markup = keyboard_builders.build_contact_detail_view(saved)
    await update.message.reply_text(text, reply_markup=markup)


@admin_only
async def next_candidate_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_next_candidate(update.message)


def _day_arg(raw: str):
    day = parse_instant(raw)
    if day is None:
        raise InvalidArgument("Invalid date. Use YYYY-MM-DD.")
    return day.isoformat()


@admin_only
async def followup_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Record a follow-up and schedule the next one on the given day."""
    args = _args(context)
    if len(args) != 2:
        await update.message.reply_text(USAGE_FOLLOWUP)
        return
    contact = data_store.get_contact(args[0])
    if not contact:
        await update.message.reply_text(CONTACT_NOT_FOUND_MSG)
        return
    await advance_contact(update.message, contact, next_date=_day_arg(args[1]))


@admin_only
async def restart_lead_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Put a contact back at the start of the lead cycle."""
    args = _args(context)
    if not args or len(args) > 2:
        await update.message.reply_text(USAGE_RESTARTLEAD)
        return
    contact = data_store.get_contact(args[0])
    if not contact:
        await update.message.reply_text(CONTACT_NOT_FOUND_MSG)
        return
    next_date = _day_arg(args[1]) if len(args) > 1 else None
    await restart_contact_lead(update.message, contact, next_date=next_date)


@admin_only
async def edit_contact_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = _args(context)
    if len(args) < 3:
        await update.message.reply_text(USAGE_EDITCONTACT)
        return
    contact = data_store.get_contact(args[0])
    if not contact:
        await update.message.reply_text(CONTACT_NOT_FOUND_MSG)
        return
    field = args[1].lower()
    if field not in followups.EDITABLE_FIELDS:
        await update.message.reply_text(USAGE_EDITCONTACT)
        return
    updated = followups.edit_contact(contact, **{field: " ".join(args[2:])})
    await save_and_show_contact(update.message, updated, _now())


@admin_only
async def lead_next_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Move the lead cycle of a phone number to its next step."""
    args = _args(context)
    if not args:
        await update.message.reply_text(USAGE_LEADNEXT)
        return
    phone = followups.normalize_phone(" ".join(args))
    cycle = followups.find_lead_cycle(data_store.load_lead_cycles(), phone) if phone else None
    if not cycle:
        await update.message.reply_text("No lead cycle for that phone.")
        return
    stored = data_store.upsert_lead_cycle(followups.advance_lead_cycle(cycle, _now()))
    if stored["status"] == "completed":
        text = f"Lead cycle for {phone} completed."
    else:
        text = (
            f"Lead {phone} at step {stored['current_step']}, "
            f"next follow-up {fmt_local(stored['next_follow_up_at'])}"
        )
    await update.message.reply_text(text)


# -----------------------------------------------------------------------------
# Ledger commands
# -----------------------------------------------------------------------------

@admin_only
async def unpaid_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_unpaid(update.message)


@admin_only
async def check_booking_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Warn before booking a lesson that would not be covered by prepaid hours."""
    args = _args(context)
    if len(args) < 2:
        await update.message.reply_text(USAGE_CHECKBOOKING)
        return
    student = data_store.get_student_by_id(args[0])
    if not student:
        await update.message.reply_text("Student not found.")
        return
    starts_at = parse_instant(args[1])
    if starts_at is None:
        await update.message.reply_text(USAGE_CHECKBOOKING)
        return
    draft = {"student_id": args[0], "starts_at": starts_at.isoformat(), "status": "confirmed"}
    if len(args) > 2:
        draft["duration_min"] = args[2]
    unpaid = ledger.would_be_unpaid(
        student,
        data_store.load_bookings(),
        draft,
        _now(),
        call_types=data_store.load_call_types(),
        students_by_id=data_store.load_students(),
    )
    label = fmt_local(starts_at)
    if unpaid:
        text = f"⚠️ A lesson on {label} would NOT be covered by prepaid hours. Book anyway?"
    else:
        text = f"✅ A lesson on {label} is covered by prepaid hours."
    await update.message.reply_text(text)


@admin_only
async def topup_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = _args(context)
    if len(args) != 2:
        await update.message.reply_text(USAGE_TOPUP)
        return
    student = data_store.get_student_by_id(args[0])
    if not student:
        await update.message.reply_text("Student not found.")
        return
    updated = ledger.top_up_hours(student, args[1])
    data_store.update_student(args[0], updated)
    await update.message.reply_text(
        f"Added {args[1]}h. Prepaid hours left: {ledger.remaining_minutes(updated) / 60:g}h"
    )


@admin_only
async def complete_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Mark a booking as held and charge its hours to the student."""
    args = _args(context)
    if not args:
        await update.message.reply_text(USAGE_COMPLETE)
        return
    booking = data_store.get_booking(args[0])
    if not booking:
        await update.message.reply_text("Booking not found.")
        return
    students = data_store.load_students()
    sid = ledger.resolve_student_id(booking, students)
    if sid is None:
        await update.message.reply_text(
            "This booking is not linked to any student; no hours were charged."
        )
        return
    hours = args[1] if len(args) > 1 else None
    updated_booking, balance = ledger.complete_booking(
        booking, students[sid], hours=hours, call_types=data_store.load_call_types()
    )
    updated_booking["student_id"] = sid
    data_store.save_booking(updated_booking)
    data_store.update_student(sid, balance)
    await update.message.reply_text(
        f"Lesson marked as held. Prepaid hours left: {ledger.remaining_minutes(balance) / 60:g}h"
    )


def _split_anyway(args: List[str]):
    """Strip the trailing ``anyway`` flag that allows an unpaid lesson."""
    rest = [a for a in args if a.lower() != "anyway"]
    return rest, len(rest) != len(args)


async def _reply_not_covered(update: Update, exc: Exception) -> None:
    await update.message.reply_text(
        f"⚠️ {exc}. Repeat the command with 'anyway' to book it unpaid."
    )


@admin_only
async def book_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Book a lesson, refusing one the prepaid hours would not cover."""
    args, allow_unpaid = _split_anyway(_args(context))
    if len(args) not in (2, 3):
        await update.message.reply_text(USAGE_BOOK)
        return
    students = data_store.load_students()
    student = students.get(args[0])
    if not student:
        await update.message.reply_text("Student not found.")
        return
    try:
        booking = ledger.create_booking(
            student,
            data_store.load_bookings(),
            args[1],
            _now(),
            duration_min=args[2] if len(args) > 2 else None,
            allow_unpaid=allow_unpaid,
            call_types=data_store.load_call_types(),
            students_by_id=students,
        )
    except ledger.HoursNotCovered as exc:
        await _reply_not_covered(update, exc)
        return
    saved = data_store.save_booking(booking)
    await update.message.reply_text(
        f"Lesson {saved['id']} booked on {fmt_local(saved['starts_at'])}."
    )


@admin_only
async def reschedule_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args, allow_unpaid = _split_anyway(_args(context))
    if len(args) != 2:
        await update.message.reply_text(USAGE_RESCHEDULE)
        return
    booking = data_store.get_booking(args[0])
    if not booking:
        await update.message.reply_text("Booking not found.")
        return
    students = data_store.load_students()
    sid = ledger.resolve_student_id(booking, students)
    try:
        updated = ledger.reschedule_booking(
            booking,
            students.get(sid) if sid is not None else None,
            data_store.load_bookings(),
            args[1],
            _now(),
            allow_unpaid=allow_unpaid,
            call_types=data_store.load_call_types(),
            students_by_id=students,
        )
    except ledger.HoursNotCovered as exc:
        await _reply_not_covered(update, exc)
        return
    data_store.save_booking(updated)
    await update.message.reply_text(f"Lesson moved to {fmt_local(updated['starts_at'])}.")


@admin_only
async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = _args(context)
    if len(args) != 1:
        await update.message.reply_text(USAGE_CANCEL)
        return
    booking = data_store.get_booking(args[0])
    if not booking:
        await update.message.reply_text("Booking not found.")
        return
    cancelled = ledger.cancel_booking(booking)
    data_store.save_booking(cancelled)
    await update.message.reply_text(f"Lesson on {fmt_local(cancelled['starts_at'])} cancelled.")


@admin_only
async def calendar_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = _args(context)
    month = None
    if args:
        try:
            month = safe_localize(datetime.strptime(args[0], "%Y-%m"))
        except ValueError:
            await update.message.reply_text("Invalid month. Use YYYY-MM.")
            return
    await show_calendar(update.message, month)


async def global_error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log the exception and inform the user of a generic error."""
    logging.error("Unhandled exception", exc_info=context.error)
    message = getattr(update, "effective_message", None)
    if message:
        try:
            await message.reply_text("Error occurred")
        except Exception:
            logging.debug("Could not send error notice")


def build_application() -> Application:
    """Return an application with every admin command and callback handler.

    Used by ``main`` and by tests to inspect the configured handlers without
    starting the bot.
    """
    app = ApplicationBuilder().token(TOKEN).build()
    app.add_error_handler(global_error_handler)
    app.add_handler(CommandHandler("admin", admin_command))
    app.add_handler(CommandHandler("due", due_command))
    app.add_handler(CommandHandler("upcoming", upcoming_command))
    app.add_handler(CommandHandler("completed", completed_command))
    app.add_handler(CommandHandler("newcontact", new_contact_command))
    app.add_handler(CommandHandler("nextcandidate", next_candidate_command))
    app.add_handler(CommandHandler("followup", followup_command))
    app.add_handler(CommandHandler("restartlead", restart_lead_command))
    app.add_handler(CommandHandler("editcontact", edit_contact_command))
    app.add_handler(CommandHandler("leadnext", lead_next_command))
    app.add_handler(CommandHandler("unpaid", unpaid_command))
    app.add_handler(CommandHandler("checkbooking", check_booking_command))
    app.add_handler(CommandHandler("topup", topup_command))
    app.add_handler(CommandHandler("complete", complete_command))
    app.add_handler(CommandHandler("book", book_command))
    app.add_handler(CommandHandler("reschedule", reschedule_command))
    app.add_handler(CommandHandler("cancel", cancel_command))
    app.add_handler(CommandHandler("calendar", calendar_command))
    app.add_handler(
        CallbackQueryHandler(
            admin_only(handle_contact_action),
            pattern=r"^fu:(VIEW|ADVANCE|PAUSE|RESUME|DONE|RESTART):[^:]+$",
        )
    )
    app.add_handler(
        CallbackQueryHandler(
            admin_only(admin_menu_callback),
            pattern=r"^admin:(menu|due|upcoming|unpaid|calendar|next)$",
        )
    )
    return app


def main() -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if DEBUG_MODE else logging.INFO,
    )
    logging.info("ADMIN_IDS loaded: %s", ADMIN_IDS)
    logging.info("Local timezone: %s", BASE_TZ)

    if TOKEN == "YOUR_TELEGRAM_BOT_TOKEN_HERE":
        logging.warning("Please set the TELEGRAM_BOT_TOKEN environment variable.")

    application = build_application()
    application.run_polling()


if __name__ == "__main__":
    main()
