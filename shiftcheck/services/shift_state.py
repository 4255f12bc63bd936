from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shiftcheck.errors import InvalidStateTransition
from shiftcheck.models import AttendanceStatus, Shift, ShiftStatus
from shiftcheck.settings import get_settings

logger = logging.getLogger("shiftcheck.shift_state")

_ALLOWED_TRANSITIONS: dict[ShiftStatus, frozenset[ShiftStatus]] = {
    ShiftStatus.SCHEDULED: frozenset({ShiftStatus.IN_PROGRESS, ShiftStatus.MISSED}),
    ShiftStatus.IN_PROGRESS: frozenset({ShiftStatus.COMPLETED}),
    ShiftStatus.COMPLETED: frozenset(),
    ShiftStatus.MISSED: frozenset(),
}


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("attendance_timezone_unknown", extra={"timezone": raw_name, "fallback": "UTC"})
        return ZoneInfo("UTC")


def _normalize_ts(ts_utc: datetime) -> datetime:
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


def local_day_from_utc(ts_utc: datetime) -> date:
    return _normalize_ts(ts_utc).astimezone(attendance_timezone()).date()


def local_day_bounds_utc(local_day: date) -> tuple[datetime, datetime]:
    tz = attendance_timezone()
    local_start = datetime.combine(local_day, time.min, tzinfo=tz)
    local_end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def shift_start_utc(shift: Shift) -> datetime:
    local_start = datetime.combine(shift.date, shift.start_time_local, tzinfo=attendance_timezone())
    return local_start.astimezone(timezone.utc)


def derive_attendance_status(shift: Shift, check_in_time: datetime) -> AttendanceStatus:
    if _normalize_ts(check_in_time) > shift_start_utc(shift):
        return AttendanceStatus.LATE
    return AttendanceStatus.PRESENT


def ensure_transition(shift: Shift, target: ShiftStatus) -> None:
    current = ShiftStatus(shift.status)
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(current=current.value, target=target.value)


def transition_shift(shift: Shift, target: ShiftStatus) -> None:
    ensure_transition(shift, target)
    shift.status = target
