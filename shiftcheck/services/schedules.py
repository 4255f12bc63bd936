from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from shiftcheck.db import transaction_scope
from shiftcheck.errors import ApiError, ShiftNotFound, Unauthorized
from shiftcheck.models import MAX_ROW_ID, Employee, Location, Shift, ShiftStatus, User, Weekday
from shiftcheck.schemas import LocationCreate, LocationUpdate, ShiftCreate, ShiftUpdate
from shiftcheck.services.geofence import parse_dms
from shiftcheck.services.qr_tokens import IssuedToken, TokenGenerator, generate_token, issue_shift_token

logger = logging.getLogger("shiftcheck.schedules")

_WEEKDAYS: tuple[Weekday, ...] = tuple(Weekday)


def weekday_for(day: date) -> Weekday:
    return _WEEKDAYS[day.weekday()]


def _company_shift_query(company: str):  # type: ignore[no-untyped-def]
    return (
        select(Shift)
        .join(Employee, Shift.employee_id == Employee.id)
        .join(User, Employee.user_id == User.id)
        .where(User.company == company)
    )


def _ensure_valid_times(start_time: time, end_time: time) -> None:
    if end_time == start_time:
        raise ApiError(
            status_code=400,
            code="INVALID_SHIFT_TIMES",
            message="Shift start and end time cannot be equal.",
        )


def _active_location(db: Session, location_id: int) -> Location:
    location = db.get(Location, location_id)
    if location is None or not location.is_active:
        raise ApiError(status_code=404, code="LOCATION_NOT_FOUND", message="Location not found.")
    return location


def _load_company_shift(db: Session, *, shift_id: int, company: str, lock: bool = False) -> Shift:
    if not 1 <= shift_id <= MAX_ROW_ID:
        raise ShiftNotFound()
    statement = (
        select(Shift)
        .options(selectinload(Shift.employee).selectinload(Employee.user))
        .where(Shift.id == shift_id)
    )
    if lock:
        statement = statement.with_for_update(of=Shift)
    shift = db.scalar(statement)
    if shift is None:
        raise ShiftNotFound()
    if shift.employee is None or shift.employee.company != company:
        raise Unauthorized()
    return shift


def get_company_shift(db: Session, *, shift_id: int, company: str) -> Shift:
    return _load_company_shift(db, shift_id=shift_id, company=company)


def list_company_shifts(
    db: Session,
    *,
    company: str,
    start_date: date | None = None,
    end_date: date | None = None,
    employee_id: int | None = None,
) -> list[Shift]:
    statement = _company_shift_query(company)
    if start_date is not None:
        statement = statement.where(Shift.date >= start_date)
    if end_date is not None:
        statement = statement.where(Shift.date <= end_date)
    if employee_id is not None:
        statement = statement.where(Shift.employee_id == employee_id)
    return list(db.scalars(statement.order_by(Shift.date.asc(), Shift.start_time_local.asc(), Shift.id.asc())).all())


def create_shift(db: Session, *, payload: ShiftCreate, company: str) -> Shift:
    employee = db.scalar(
        select(Employee)
        .options(selectinload(Employee.user))
        .where(Employee.id == payload.employee_id)
    )
    if employee is None:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    if employee.company != company:
        raise Unauthorized()
    if not employee.is_active:
        raise ApiError(
            status_code=422,
            code="EMPLOYEE_INACTIVE",
            message="Cannot schedule an inactive employee.",
        )
    _ensure_valid_times(payload.start_time, payload.end_time)

    shift = Shift(
        employee_id=employee.id,
        date=payload.date,
        day=weekday_for(payload.date),
        start_time_local=payload.start_time,
        end_time_local=payload.end_time,
        status=ShiftStatus.SCHEDULED,
    )
    if payload.location_id is not None:
        shift.location_id = _active_location(db, payload.location_id).id
    elif payload.geofence is not None:
        shift.geofence_name = payload.geofence.name
        shift.geofence_lat = payload.geofence.latitude
        shift.geofence_lon = payload.geofence.longitude
        shift.geofence_radius_m = payload.geofence.radius_m

    with transaction_scope(db, operation="create_shift"):
        db.add(shift)
        db.flush()

    logger.info(
        "shift_created",
        extra={"shift_id": shift.id, "employee_id": employee.id, "shift_date": shift.date.isoformat()},
    )
    return shift


def update_shift(db: Session, *, shift_id: int, payload: ShiftUpdate, company: str) -> Shift:
    """Edit a shift that has not started yet.

    Choosing a location clears any inline geofence and vice versa.
    """
    with transaction_scope(db, operation="update_shift"):
        shift = _load_company_shift(db, shift_id=shift_id, company=company, lock=True)
        if shift.status != ShiftStatus.SCHEDULED:
            raise ApiError(
                status_code=409,
                code="SHIFT_NOT_EDITABLE",
                message="Only scheduled shifts can be edited.",
            )

        start_time = payload.start_time or shift.start_time_local
        end_time = payload.end_time or shift.end_time_local
        _ensure_valid_times(start_time, end_time)
        shift.start_time_local = start_time
        shift.end_time_local = end_time
        if payload.date is not None:
            shift.date = payload.date
            shift.day = weekday_for(payload.date)

        if payload.location_id is not None:
            shift.location_id = _active_location(db, payload.location_id).id
            shift.geofence_name = None
            shift.geofence_lat = None
            shift.geofence_lon = None
            shift.geofence_radius_m = None
        elif payload.geofence is not None:
            shift.location_id = None
            shift.geofence_name = payload.geofence.name
            shift.geofence_lat = payload.geofence.latitude
            shift.geofence_lon = payload.geofence.longitude
            shift.geofence_radius_m = payload.geofence.radius_m
        db.flush()

    logger.info(
        "shift_updated",
        extra={"shift_id": shift.id, "fields": sorted(payload.model_fields_set)},
    )
    return shift


def delete_shift(db: Session, *, shift_id: int, company: str) -> None:
    with transaction_scope(db, operation="delete_shift"):
        shift = _load_company_shift(db, shift_id=shift_id, company=company, lock=True)
        if shift.status != ShiftStatus.SCHEDULED:
            raise ApiError(
                status_code=409,
                code="SHIFT_NOT_DELETABLE",
                message="Only scheduled shifts can be deleted.",
            )
        db.delete(shift)
    logger.info("shift_deleted", extra={"shift_id": shift_id})


def issue_shift_qr(
    db: Session,
    *,
    shift_id: int,
    company: str,
    token_generator: TokenGenerator = generate_token,
    now_utc: datetime | None = None,
) -> IssuedToken:
    with transaction_scope(db, operation="issue_qr"):
        shift = _load_company_shift(db, shift_id=shift_id, company=company, lock=True)
        if shift.status in {ShiftStatus.COMPLETED, ShiftStatus.MISSED}:
            raise ApiError(
                status_code=409,
                code="SHIFT_CLOSED",
                message="Cannot issue a QR code for a closed shift.",
            )
        issued = issue_shift_token(
            shift,
            now_utc=now_utc or datetime.now(timezone.utc),
            token_generator=token_generator,
        )
        db.flush()

    logger.info(
        "qr_token_issued",
        extra={"shift_id": issued.shift_id, "expires_at": issued.expires_at.isoformat()},
    )
    return issued


def _save_location(db: Session, location: Location, *, operation: str) -> None:
    try:
        with transaction_scope(db, operation=operation):
            db.add(location)
            db.flush()
    except ApiError as exc:
        if isinstance(exc.__cause__, IntegrityError):
            raise ApiError(
                status_code=409,
                code="LOCATION_NAME_TAKEN",
                message="A location with this name already exists.",
            ) from exc
        raise


def create_location(db: Session, *, payload: LocationCreate) -> Location:
    if payload.latitude is not None and payload.longitude is not None:
        lat, lon = payload.latitude, payload.longitude
    else:
        center = parse_dms(payload.dms or "")
        lat, lon = center.latitude, center.longitude

    location = Location(
        name=payload.name.strip(),
        address=payload.address.strip(),
        lat=lat,
        lon=lon,
        radius_m=payload.radius_m,
        is_active=True,
    )
    _save_location(db, location, operation="create_location")
    return location


def update_location(db: Session, *, location_id: int, payload: LocationUpdate) -> Location:
    location = get_location(db, location_id=location_id)
    if payload.latitude is not None and payload.longitude is not None:
        location.lat, location.lon = payload.latitude, payload.longitude
    elif payload.dms:
        center = parse_dms(payload.dms)
        location.lat, location.lon = center.latitude, center.longitude
    if payload.name is not None:
        location.name = payload.name.strip()
    if payload.address is not None:
        location.address = payload.address.strip()
    if payload.radius_m is not None:
        location.radius_m = payload.radius_m
    if payload.is_active is not None:
        location.is_active = payload.is_active

    _save_location(db, location, operation="update_location")
    logger.info("location_updated", extra={"location_id": location.id})
    return location


def deactivate_location(db: Session, *, location_id: int) -> Location:
    """Soft-delete a location; shifts bound to it fall back to the office geofence."""
    with transaction_scope(db, operation="deactivate_location"):
        location = get_location(db, location_id=location_id)
        location.is_active = False
        db.flush()
    logger.info("location_deactivated", extra={"location_id": location_id})
    return location


def list_locations(db: Session, *, include_inactive: bool = False) -> list[Location]:
    statement = select(Location)
    if not include_inactive:
        statement = statement.where(Location.is_active.is_(True))
    return list(db.scalars(statement.order_by(Location.name.asc())).all())


def get_location(db: Session, *, location_id: int) -> Location:
    location = db.get(Location, location_id) if 1 <= location_id <= MAX_ROW_ID else None
    if location is None:
        raise ApiError(status_code=404, code="LOCATION_NOT_FOUND", message="Location not found.")
    return location
