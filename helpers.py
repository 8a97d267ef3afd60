import logging
import os
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

import pytz
from pytz import AmbiguousTimeError, NonExistentTimeError
from telegram.error import BadRequest

# Local calendar used for day keys, midnights and day arithmetic.
BASE_TZ = pytz.timezone(os.environ.get("BACKOFFICE_TZ", "Europe/Rome"))

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


class InvalidArgument(ValueError):
    """Raised when a caller breaks a precondition (missing id, bad amount...)."""


def safe_localize(naive_dt: datetime, tz=None) -> datetime:
    """Localize ``naive_dt`` handling DST edge cases."""
    tz = tz or BASE_TZ
    try:
        return tz.localize(naive_dt, is_dst=None)
    except AmbiguousTimeError as e:
        logging.debug("Ambiguous time %s in %s: %s", naive_dt, tz, e)
        return tz.localize(naive_dt, is_dst=True)
    except NonExistentTimeError as e:
        logging.debug("Non-existent time %s in %s: %s", naive_dt, tz, e)
        # shift by +1h
        return tz.localize(naive_dt + timedelta(hours=1), is_dst=True)


def parse_instant(value: Any) -> Optional[datetime]:
    """Return an aware ``datetime`` for ``value`` or ``None`` if unusable.

    Accepts datetimes, dates and ISO strings (a trailing ``Z`` is allowed).
    Naive values are taken as local wall-clock time in ``BASE_TZ``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = safe_localize(dt)
    return dt


def to_local(instant: Any) -> Optional[datetime]:
    dt = parse_instant(instant)
    if dt is None:
        return None
    return dt.astimezone(BASE_TZ)


def day_key(instant: Any) -> str:
    """Return ``YYYY-MM-DD`` in local time, or ``""`` for unparseable input."""
    local = to_local(instant)
    if local is None:
        return ""
    return local.date().isoformat()


def start_of_day(instant: Any) -> datetime:
    """Truncate ``instant`` to local midnight."""
    local = to_local(instant)
    if local is None:
        raise InvalidArgument(f"Invalid instant: {instant!r}")
    return safe_localize(datetime.combine(local.date(), time.min))


def add_days(instant: Any, n: int) -> datetime:
    """Add ``n`` calendar days keeping the local wall-clock time.

    The result is re-localized, so crossing a DST change keeps e.g. 09:00 at
    09:00 rather than shifting by the offset difference.
    """

    local = to_local(instant)
    if local is None:
        raise InvalidArgument(f"Invalid instant: {instant!r}")
    naive = local.replace(tzinfo=None) + timedelta(days=n)
    return safe_localize(naive)


def iso_weekday_monday_first(instant: Any) -> int:
    """Weekday index with Monday=0 ... Sunday=6."""
    local = to_local(instant)
    if local is None:
        raise InvalidArgument(f"Invalid instant: {instant!r}")
    return local.weekday()


def build_month_grid(month_start: Any, weeks: int = 6) -> List[Dict[str, Any]]:
    """Return ``weeks * 7`` day cells for the month containing ``month_start``.

    The grid begins on the Monday on or before the 1st. Each cell is a dict
    with ``day_key``, ``day_number`` and ``in_current_month``.
    """

    local = to_local(month_start)
    if local is None:
        raise InvalidArgument(f"Invalid month start: {month_start!r}")
    first = local.date().replace(day=1)
    grid_start = first - timedelta(days=first.weekday())
    cells: List[Dict[str, Any]] = []
    for offset in range(weeks * 7):
        current = grid_start + timedelta(days=offset)
        cells.append(
            {
                "day_key": current.isoformat(),
                "day_number": current.day,
                "in_current_month": current.month == first.month,
            }
        )
    return cells


def interval_contains(start: Any, end: Any, instant: Any) -> bool:
    """Return True if ``start <= instant < end``."""
    lo = parse_instant(start)
    hi = parse_instant(end)
    at = parse_instant(instant)
    if lo is None or hi is None or at is None:
        return False
    return lo <= at < hi


def fmt_local(instant: Any) -> str:
    """Turn an instant into a label like 'Mon 09 Sep 17:00'."""
    local = to_local(instant)
    if local is None:
        return "—"
    return local.strftime("%a %d %b %H:%M")


async def try_ack(query, *, text=None, show_alert=False) -> bool:
    """Attempt callback acknowledgment, returning whether it succeeded."""

    try:
        await query.answer(text=text, show_alert=show_alert)
        return True
    except BadRequest as exc:
        logging.info("Callback ack failed (continuing): %s", exc)
        return False
    except TypeError as exc:
        logging.debug("Ack signature mismatch: %s", exc)
        return False
