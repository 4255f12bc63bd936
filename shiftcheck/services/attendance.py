from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, selectinload

from shiftcheck.db import transaction_scope
from shiftcheck.errors import ApiError, NoCheckInRecord, OutOfRange, ShiftNotFound, Unauthorized
from shiftcheck.models import MAX_ROW_ID, Attendance, AttendanceStatus, Employee, Shift, ShiftStatus, User
from shiftcheck.services.geofence import (
    Coordinate,
    Geofence,
    distance_m,
    format_distance,
    parse_dms,
    resolve_geofence,
    shift_geofence_source,
)
from shiftcheck.services.qr_tokens import QrPayload, parse_qr_payload, validate_shift_token
from shiftcheck.services.shift_state import (
    derive_attendance_status,
    ensure_transition,
    local_day_from_utc,
    transition_shift,
)
from shiftcheck.settings import get_settings

logger = logging.getLogger("shiftcheck.attendance")

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True, slots=True)
class CheckinPolicy:
    office_geofence: Geofence
    checkout_requires_geofence: bool = True


@dataclass(frozen=True, slots=True)
class AttendanceResult:
    attendance: Attendance
    shift: Shift
    distance_m: float | None
    geofence: Geofence | None
    created: bool = False


@lru_cache
def get_checkin_policy() -> CheckinPolicy:
    settings = get_settings()
    return CheckinPolicy(
        office_geofence=Geofence(
            center=parse_dms(settings.office_location_dms),
            radius_m=float(settings.office_radius_m),
            name=settings.office_name,
        ),
        checkout_requires_geofence=settings.checkout_requires_geofence,
    )


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def _load_shift_for_update(db: Session, shift_id: int) -> Shift:
    if not 1 <= shift_id <= MAX_ROW_ID:
        raise ShiftNotFound()
    shift = db.scalar(
        select(Shift)
        .options(
            selectinload(Shift.employee).selectinload(Employee.user),
            selectinload(Shift.location),
        )
        .where(Shift.id == shift_id)
        .with_for_update(of=Shift)
        .execution_options(populate_existing=True)
    )
    if shift is None:
        raise ShiftNotFound()
    return shift


def authorize_shift_access(shift: Shift, requester_company: str) -> Employee:
    employee = shift.employee
    if employee is None or not requester_company or employee.company != requester_company:
        raise Unauthorized()
    if not employee.is_active:
        raise ApiError(
            status_code=403,
            code="EMPLOYEE_INACTIVE",
            message="Inactive employee cannot perform attendance actions.",
        )
    return employee


def _verify_geofence(geofence: Geofence, observed: Coordinate) -> float:
    distance_value = distance_m(observed, geofence.center)
    if distance_value > geofence.radius_m:
        raise OutOfRange(
            distance_m=distance_value,
            max_allowed_m=geofence.radius_m,
            message=(
                f"You are {format_distance(distance_value)} away from {geofence.name}. "
                f"Max allowed is {format_distance(geofence.radius_m)}."
            ),
        )
    return distance_value


def _select_attendance_for_update(db: Session, *, employee_id: int, bucket: date) -> Attendance | None:
    return db.scalar(
        select(Attendance)
        .where(
            Attendance.employee_id == employee_id,
            Attendance.date == bucket,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _upsert_attendance_row(
    db: Session,
    *,
    employee_id: int,
    shift_id: int,
    bucket: date,
    now_utc: datetime,
) -> tuple[Attendance, bool]:
    """Return the (employee, day) attendance row, creating it if missing.

    The insert is a no-op when a concurrent request already holds the key,
    in which case the committed row is re-read under lock and updated.
    """
    insert_factory = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
    if insert_factory is None:
        existing = _select_attendance_for_update(db, employee_id=employee_id, bucket=bucket)
        if existing is not None:
            return existing, False
        attendance = Attendance(
            employee_id=employee_id,
            shift_id=shift_id,
            date=bucket,
            status=AttendanceStatus.ABSENT,
            created_at=now_utc,
            updated_at=now_utc,
        )
        db.add(attendance)
        db.flush()
        return attendance, True

    statement = (
        insert_factory(Attendance)
        .values(
            employee_id=employee_id,
            shift_id=shift_id,
            date=bucket,
            status=AttendanceStatus.ABSENT,
            created_at=now_utc,
            updated_at=now_utc,
        )
        .on_conflict_do_nothing(index_elements=["employee_id", "date"])
    )
    created = db.execute(statement).rowcount == 1
    attendance = _select_attendance_for_update(db, employee_id=employee_id, bucket=bucket)
    if attendance is None:
        raise ApiError(
            status_code=500,
            code="TRANSACTION_ABORTED",
            message="Attendance row vanished during check-in.",
        )
    return attendance, created


def _log_rejection(event: str, exc: ApiError, **fields: object) -> None:
    logger.warning(
        event,
        extra={"error_code": exc.code, "status_code": exc.status_code, **fields},
    )


def check_in(
    db: Session,
    *,
    qr_data: str,
    latitude: float,
    longitude: float,
    requester_company: str,
    policy: CheckinPolicy,
    now_utc: datetime | None = None,
) -> AttendanceResult:
    observed = Coordinate(latitude=latitude, longitude=longitude)
    now = _normalize_ts(now_utc)
    payload: QrPayload | None = None

    try:
        payload = parse_qr_payload(qr_data)
        with transaction_scope(db, operation="checkin"):
            shift = _load_shift_for_update(db, payload.shift_id)
            employee = authorize_shift_access(shift, requester_company)
            validate_shift_token(shift, payload.token, now_utc=now)

            geofence = resolve_geofence(shift_geofence_source(shift), fallback=policy.office_geofence)
            distance_value = _verify_geofence(geofence, observed)

            ensure_transition(shift, ShiftStatus.IN_PROGRESS)
            bucket = local_day_from_utc(now)
            status = derive_attendance_status(shift, now)

            attendance, created = _upsert_attendance_row(
                db,
                employee_id=employee.id,
                shift_id=shift.id,
                bucket=bucket,
                now_utc=now,
            )
            attendance.shift_id = shift.id
            attendance.check_in_time = now
            attendance.check_out_time = None
            attendance.status = status
            attendance.location = observed.as_lon_lat()
            attendance.qr_data = qr_data
            attendance.updated_at = now

            transition_shift(shift, ShiftStatus.IN_PROGRESS)
            shift.check_in_time = now
            shift.check_in_location = observed.as_lon_lat()
            db.flush()
    except ApiError as exc:
        _log_rejection(
            "attendance_checkin_rejected",
            exc,
            shift_id=payload.shift_id if payload is not None else None,
        )
        raise

    logger.info(
        "attendance_checkin",
        extra={
            "shift_id": shift.id,
            "employee_id": employee.id,
            "attendance_id": attendance.id,
            "attendance_status": attendance.status.value,
            "attendance_created": created,
            "distance_m": round(distance_value, 2),
            "radius_m": geofence.radius_m,
        },
    )
    return AttendanceResult(
        attendance=attendance,
        shift=shift,
        distance_m=distance_value,
        geofence=geofence,
        created=created,
    )


def check_out(
    db: Session,
    *,
    shift_id: int,
    latitude: float,
    longitude: float,
    requester_company: str,
    policy: CheckinPolicy,
    now_utc: datetime | None = None,
) -> AttendanceResult:
    observed = Coordinate(latitude=latitude, longitude=longitude)
    now = _normalize_ts(now_utc)
    distance_value: float | None = None
    geofence: Geofence | None = None

    try:
        with transaction_scope(db, operation="checkout"):
            shift = _load_shift_for_update(db, shift_id)
            employee = authorize_shift_access(shift, requester_company)

            if policy.checkout_requires_geofence:
                geofence = resolve_geofence(shift_geofence_source(shift), fallback=policy.office_geofence)
                distance_value = _verify_geofence(geofence, observed)

            attendance = _select_attendance_for_update(
                db,
                employee_id=employee.id,
                bucket=local_day_from_utc(now),
            )
            if attendance is None or attendance.check_in_time is None:
                raise NoCheckInRecord()

            transition_shift(shift, ShiftStatus.COMPLETED)
            shift.check_out_time = now
            shift.check_out_location = observed.as_lon_lat()
            attendance.check_out_time = now
            attendance.updated_at = now
            db.flush()
    except ApiError as exc:
        _log_rejection("attendance_checkout_rejected", exc, shift_id=shift_id)
        raise

    logger.info(
        "attendance_checkout",
        extra={
            "shift_id": shift.id,
            "employee_id": employee.id,
            "attendance_id": attendance.id,
            "distance_m": round(distance_value, 2) if distance_value is not None else None,
        },
    )
    return AttendanceResult(
        attendance=attendance,
        shift=shift,
        distance_m=distance_value,
        geofence=geofence,
    )


def _company_employees(db: Session, company: str) -> list[Employee]:
    return list(
        db.scalars(
            select(Employee)
            .join(User, Employee.user_id == User.id)
            .where(User.company == company, Employee.is_active.is_(True))
            .order_by(Employee.id)
        ).all()
    )


def get_attendance_dashboard(
    db: Session,
    *,
    company: str,
    day: date | None = None,
) -> dict[str, object]:
    target_day = day or local_day_from_utc(datetime.now(timezone.utc))
    employees = _company_employees(db, company)
    employees_by_id = {employee.id: employee for employee in employees}

    records: list[Attendance] = []
    if employees_by_id:
        records = list(
            db.scalars(
                select(Attendance)
                .where(
                    Attendance.employee_id.in_(list(employees_by_id)),
                    Attendance.date == target_day,
                )
                .order_by(Attendance.check_in_time.asc(), Attendance.id.asc())
            ).all()
        )

    present_count = sum(1 for item in records if item.status == AttendanceStatus.PRESENT)
    late_count = sum(1 for item in records if item.status == AttendanceStatus.LATE)
    return {
        "date": target_day,
        "total_employees": len(employees),
        "present": present_count,
        "late": late_count,
        "absent": max(0, len(employees) - present_count - late_count),
        "attendance": [
            {
                "attendance": record,
                "employee_name": employees_by_id[record.employee_id].full_name,
                "position": employees_by_id[record.employee_id].position,
            }
            for record in records
        ],
    }


def get_attendance_summary(
    db: Session,
    *,
    company: str,
    start_date: date,
    end_date: date,
) -> dict[str, object]:
    if end_date < start_date:
        raise ApiError(
            status_code=400,
            code="INVALID_DATE_RANGE",
            message="end_date must not be before start_date.",
        )
    if (end_date - start_date).days > 92:
        raise ApiError(
            status_code=400,
            code="INVALID_DATE_RANGE",
            message="Date range cannot exceed 93 days.",
        )

    employees = _company_employees(db, company)
    employee_ids = [employee.id for employee in employees]
    counts_by_day: dict[date, Counter[AttendanceStatus]] = {}
    if employee_ids:
        rows = db.execute(
            select(Attendance.date, Attendance.status).where(
                Attendance.employee_id.in_(employee_ids),
                Attendance.date >= start_date,
                Attendance.date <= end_date,
            )
        ).all()
        for row_date, row_status in rows:
            counts_by_day.setdefault(row_date, Counter())[AttendanceStatus(row_status)] += 1

    days: list[dict[str, object]] = []
    cursor = start_date
    while cursor <= end_date:
        counts = counts_by_day.get(cursor, Counter())
        present_count = counts[AttendanceStatus.PRESENT]
        late_count = counts[AttendanceStatus.LATE]
        excused_count = counts[AttendanceStatus.EXCUSED]
        days.append(
            {
                "date": cursor,
                "present": present_count,
                "late": late_count,
                "excused": excused_count,
                "absent": max(0, len(employees) - present_count - late_count - excused_count),
            }
        )
        cursor += timedelta(days=1)

    return {
        "start_date": start_date,
        "end_date": end_date,
        "total_employees": len(employees),
        "days": days,
    }
