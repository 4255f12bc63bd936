from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from shiftcheck.audit import AuditAction, client_ip, record_audit
from shiftcheck.db import get_db
from shiftcheck.errors import ApiError
from shiftcheck.schemas import LoginRequest, LoginResponse
from shiftcheck.security import (
    authenticate_user,
    create_access_token,
    ensure_login_attempt_allowed,
    register_login_failure,
    register_login_success,
)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> LoginResponse:
    ip = client_ip(request) or "unknown"
    ensure_login_attempt_allowed(ip)

    user = authenticate_user(db, username=payload.username, password=payload.password)
    if user is None:
        register_login_failure(ip)
        record_audit(
            db,
            request,
            actor_id=payload.username,
            action=AuditAction.LOGIN_FAILED,
            success=False,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid username or password.")

    register_login_success(ip)
    token, expires_in, claims = create_access_token(user)
    request.state.actor = claims["role"]
    request.state.actor_id = user.username
    record_audit(
        db,
        request,
        actor_id=user.username,
        action=AuditAction.LOGIN_SUCCEEDED,
        entity_type="user",
        entity_id=user.id,
        details={"company": user.company, "role": claims["role"]},
    )
    return LoginResponse(
        access_token=token,
        expires_in=expires_in,
        role=claims["role"],
        company=user.company,
    )
