from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from shiftcheck.audit import AuditAction, record_audit
from shiftcheck.db import get_db
from shiftcheck.schemas import (
    AttendanceActionResponse,
    AttendanceDashboardResponse,
    AttendanceSummaryResponse,
    CheckinRequest,
    CheckoutRequest,
)
from shiftcheck.security import CurrentUser, require_scheduler, require_user
from shiftcheck.services.attendance import (
    AttendanceResult,
    CheckinPolicy,
    check_in,
    check_out,
    get_attendance_dashboard,
    get_attendance_summary,
    get_checkin_policy,
)

router = APIRouter(prefix="/api/v1/attendance", tags=["attendance"])


def _record_attendance_action(
    db: Session,
    request: Request,
    *,
    action: AuditAction,
    current_user: CurrentUser,
    result: AttendanceResult,
) -> None:
    request.state.employee_id = result.attendance.employee_id
    request.state.shift_id = result.shift.id
    record_audit(
        db,
        request,
        actor_id=current_user.username,
        action=action,
        entity_type="attendance",
        entity_id=result.attendance.id,
        details={
            "shift_id": result.shift.id,
            "shift_status": result.shift.status.value,
            "attendance_status": result.attendance.status.value,
            "distance_m": round(result.distance_m, 2) if result.distance_m is not None else None,
            "geofence": result.geofence.name if result.geofence is not None else None,
        },
    )


@router.post("/checkin", response_model=AttendanceActionResponse)
def checkin(
    payload: CheckinRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_user),
    policy: CheckinPolicy = Depends(get_checkin_policy),
) -> AttendanceActionResponse:
    result = check_in(
        db,
        qr_data=payload.qr_data,
        latitude=payload.user_location.latitude,
        longitude=payload.user_location.longitude,
        requester_company=current_user.company,
        policy=policy,
    )
    _record_attendance_action(
        db,
        request,
        action=AuditAction.ATTENDANCE_CHECKIN,
        current_user=current_user,
        result=result,
    )
    return AttendanceActionResponse.model_validate(
        {
            "ok": True,
            "message": "Check-in successful",
            "attendance": result.attendance,
            "shift": result.shift,
        },
        from_attributes=True,
    )


@router.post("/checkout", response_model=AttendanceActionResponse)
def checkout(
    payload: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_user),
    policy: CheckinPolicy = Depends(get_checkin_policy),
) -> AttendanceActionResponse:
    result = check_out(
        db,
        shift_id=payload.shift_id,
        latitude=payload.user_location.latitude,
        longitude=payload.user_location.longitude,
        requester_company=current_user.company,
        policy=policy,
    )
    _record_attendance_action(
        db,
        request,
        action=AuditAction.ATTENDANCE_CHECKOUT,
        current_user=current_user,
        result=result,
    )
    return AttendanceActionResponse.model_validate(
        {
            "ok": True,
            "message": "Check-out successful",
            "attendance": result.attendance,
            "shift": result.shift,
        },
        from_attributes=True,
    )


@router.get("", response_model=AttendanceDashboardResponse)
def attendance_dashboard(
    day: date | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> AttendanceDashboardResponse:
    dashboard = get_attendance_dashboard(db, company=current_user.company, day=day)
    return AttendanceDashboardResponse.model_validate(dashboard, from_attributes=True)


@router.get("/summary", response_model=AttendanceSummaryResponse)
def attendance_summary(
    start_date: date = Query(),
    end_date: date = Query(),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_scheduler),
) -> AttendanceSummaryResponse:
    summary = get_attendance_summary(
        db,
        company=current_user.company,
        start_date=start_date,
        end_date=end_date,
    )
    return AttendanceSummaryResponse.model_validate(summary, from_attributes=True)
