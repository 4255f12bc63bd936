from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from shiftcheck.audit import AuditAction, record_audit
from shiftcheck.db import get_db
from shiftcheck.schemas import (
    LocationCreate,
    LocationRead,
    LocationUpdate,
    QrCodeResponse,
    ShiftCreate,
    ShiftRead,
    ShiftUpdate,
)
from shiftcheck.security import CurrentUser, require_scheduler
from shiftcheck.services.schedules import (
    create_location,
    create_shift,
    deactivate_location,
    delete_shift,
    get_company_shift,
    get_location,
    issue_shift_qr,
    list_company_shifts,
    list_locations,
    update_location,
    update_shift,
)

router = APIRouter(prefix="/api/v1", tags=["schedules"])


@router.get("/schedules", response_model=list[ShiftRead])
def list_shifts(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> list[ShiftRead]:
    shifts = list_company_shifts(
        db,
        company=current_user.company,
        start_date=start_date,
        end_date=end_date,
        employee_id=employee_id,
    )
    return [ShiftRead.model_validate(item) for item in shifts]


@router.post("/schedules", response_model=ShiftRead, status_code=status.HTTP_201_CREATED)
def create_schedule(
    payload: ShiftCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> ShiftRead:
    shift = create_shift(db, payload=payload, company=current_user.company)
    request.state.shift_id = shift.id
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.SHIFT_CREATED,
        entity_type="shift",
        entity_id=shift.id,
        details={"employee_id": shift.employee_id, "date": shift.date.isoformat()},
    )
    return ShiftRead.model_validate(shift)


@router.get("/schedules/{shift_id}", response_model=ShiftRead)
def get_schedule(
    shift_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> ShiftRead:
    shift = get_company_shift(db, shift_id=shift_id, company=current_user.company)
    return ShiftRead.model_validate(shift)


@router.put("/schedules/{shift_id}", response_model=ShiftRead)
def update_schedule(
    shift_id: int,
    payload: ShiftUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> ShiftRead:
    shift = update_shift(db, shift_id=shift_id, payload=payload, company=current_user.company)
    request.state.shift_id = shift.id
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.SHIFT_UPDATED,
        entity_type="shift",
        entity_id=shift.id,
        details={"fields": sorted(payload.model_fields_set)},
    )
    return ShiftRead.model_validate(shift)


@router.delete("/schedules/{shift_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule(
    shift_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> None:
    delete_shift(db, shift_id=shift_id, company=current_user.company)
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.SHIFT_DELETED,
        entity_type="shift",
        entity_id=shift_id,
    )


@router.post("/schedules/{shift_id}/qrcode", response_model=QrCodeResponse)
def issue_schedule_qrcode(
    shift_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> QrCodeResponse:
    issued = issue_shift_qr(db, shift_id=shift_id, company=current_user.company)
    request.state.shift_id = issued.shift_id
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.SHIFT_QR_ISSUED,
        entity_type="shift",
        entity_id=issued.shift_id,
        details={"expires_at": issued.expires_at.isoformat()},
    )
    return QrCodeResponse(
        shift_id=issued.shift_id,
        qr_data=issued.payload(),
        issued_at=issued.issued_at,
        expires_at=issued.expires_at,
    )


@router.get("/locations", response_model=list[LocationRead])
def list_location_items(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    _current_user: CurrentUser = Depends(require_scheduler),
) -> list[LocationRead]:
    return [LocationRead.model_validate(item) for item in list_locations(db, include_inactive=include_inactive)]


@router.post("/locations", response_model=LocationRead, status_code=status.HTTP_201_CREATED)
def create_location_item(
    payload: LocationCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> LocationRead:
    location = create_location(db, payload=payload)
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.LOCATION_CREATED,
        entity_type="location",
        entity_id=location.id,
        details={"name": location.name, "radius_m": location.radius_m},
    )
    return LocationRead.model_validate(location)


@router.get("/locations/{location_id}", response_model=LocationRead)
def get_location_item(
    location_id: int,
    db: Session = Depends(get_db),
    _current_user: CurrentUser = Depends(require_scheduler),
) -> LocationRead:
    return LocationRead.model_validate(get_location(db, location_id=location_id))


@router.put("/locations/{location_id}", response_model=LocationRead)
def update_location_item(
    location_id: int,
    payload: LocationUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> LocationRead:
    location = update_location(db, location_id=location_id, payload=payload)
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.LOCATION_UPDATED,
        entity_type="location",
        entity_id=location.id,
        details={"fields": sorted(payload.model_fields_set)},
    )
    return LocationRead.model_validate(location)


@router.delete("/locations/{location_id}", status_code=status.HTTP_204_NO_CONTENT)
def deactivate_location_item(
    location_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> None:
    deactivate_location(db, location_id=location_id)
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=AuditAction.LOCATION_DEACTIVATED,
        entity_type="location",
        entity_id=location_id,
    )
