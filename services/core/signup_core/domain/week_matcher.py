"""Week-of date matching.

Providers advertise sessions as "week of June 10" with start times that are
often imprecise, so sessions are matched to a requested week with a
half-open 7-day window in the parent's timezone rather than by exact date.

Input handling:
    - ``datetime`` values with tzinfo are converted into the target zone.
    - Naive ``datetime`` values and ISO strings without an offset are read as
      wall-clock time in the target zone.
    - Date-only values (``date`` or ``"2024-06-10"``) mean midnight of that
      calendar day in the target zone.
    - Anything unparseable makes matching return False instead of raising.
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterable, Optional, TypeVar, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "America/Chicago"

T = TypeVar("T")
DateLike = Union[str, date, datetime, None]


def _zone(tz: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return None


def to_zoned(value: DateLike, tz: str = DEFAULT_TIMEZONE) -> Optional[datetime]:
    """Coerce ``value`` to an aware datetime in ``tz``; None if it cannot be read."""
    zone = _zone(tz)
    if zone is None or value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=zone)
        return value.astimezone(zone)

    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=zone)

    return None


def _start_of_week(moment: datetime) -> datetime:
    monday = moment.date() - timedelta(days=moment.weekday())
    return datetime.combine(monday, time.min, tzinfo=moment.tzinfo)


def match_week(
    week_of: DateLike,
    session_start: DateLike,
    tz: str = DEFAULT_TIMEZONE,
    offset_days: int = 0,
) -> bool:
    """Test whether ``session_start`` falls in the week containing ``week_of``.

    The window is ``[monday + offset_days, monday + offset_days + 7 days)``
    where ``monday`` is midnight of the Monday starting the week of
    ``week_of`` in ``tz``.

    Args:
        week_of: Any date inside the requested week.
        session_start: The session's advertised start.
        tz: IANA timezone both values are interpreted in.
        offset_days: Shift applied to the window start.

    Returns:
        True when the session starts inside the window, False otherwise,
        including when either value is missing or invalid.
    """
    anchor = to_zoned(week_of, tz)
    start = to_zoned(session_start, tz)
    if anchor is None or start is None:
        return False

    window_start = _start_of_week(anchor) + timedelta(days=offset_days)
    window_end = window_start + timedelta(days=7)
    return window_start <= start < window_end


def get_week_key(value: DateLike, tz: str = DEFAULT_TIMEZONE) -> Optional[str]:
    """Return the ``YYYY-MM-DD`` of the Monday starting ``value``'s week."""
    moment = to_zoned(value, tz)
    if moment is None:
        return None
    return _start_of_week(moment).date().isoformat()


def week_boundaries(
    value: DateLike, tz: str = DEFAULT_TIMEZONE
) -> Optional[tuple[datetime, datetime]]:
    """Monday 00:00 and Sunday 23:59:59.999999 of ``value``'s week in ``tz``."""
    moment = to_zoned(value, tz)
    if moment is None:
        return None
    start = _start_of_week(moment)
    end = datetime.combine(
        start.date() + timedelta(days=6), time.max, tzinfo=start.tzinfo
    )
    return start, end


def week_label(value: DateLike, tz: str = DEFAULT_TIMEZONE) -> Optional[str]:
    """Human label for a camp week, e.g. ``"Mon 6/10 - Fri 6/14"``."""
    bounds = week_boundaries(value, tz)
    if bounds is None:
        return None
    monday = bounds[0].date()
    friday = monday + timedelta(days=4)
    return (
        f"{monday:%a} {monday.month}/{monday.day} - "
        f"{friday:%a} {friday.month}/{friday.day}"
    )


def _default_start(item: Any) -> DateLike:
    if isinstance(item, dict):
        return item.get("start_at")
    return getattr(item, "start_at", None)


def group_sessions_by_week(
    sessions: Iterable[T],
    tz: str = DEFAULT_TIMEZONE,
    get_start: Callable[[T], DateLike] = _default_start,
) -> dict[str, list[T]]:
    """Bucket sessions by Monday week key, each bucket sorted by start time.

    Sessions without a readable start are skipped. Keys are returned in
    chronological order.
    """
    buckets: dict[str, list[tuple[datetime, int, T]]] = {}
    for index, session in enumerate(sessions):
        start = to_zoned(get_start(session), tz)
        if start is None:
            continue
        key = _start_of_week(start).date().isoformat()
        buckets.setdefault(key, []).append((start, index, session))

    return {
        key: [session for _, _, session in sorted(buckets[key], key=lambda e: (e[0], e[1]))]
        for key in sorted(buckets)
    }


def rank_candidates(
    candidates: list[T],
    week_of: DateLike,
    tz: str = DEFAULT_TIMEZONE,
    offset_days: int = 0,
    get_start: Callable[[T], DateLike] = _default_start,
) -> list[T]:
    """Move candidates inside the requested week to the front.

    In-week candidates keep their relative order, as do the rest.
    """
    rank = {
        index: position
        for position, index in enumerate(
            i
            for i, candidate in enumerate(candidates)
            if match_week(week_of, get_start(candidate), tz, offset_days)
        )
    }
    unranked = len(rank)
    order = sorted(range(len(candidates)), key=lambda i: (rank.get(i, unranked), i))
    return [candidates[i] for i in order]
