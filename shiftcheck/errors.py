from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class MalformedPayload(ApiError):
    def __init__(self, message: str = "Invalid QR code data.") -> None:
        super().__init__(status_code=400, code="MALFORMED_PAYLOAD", message=message)


class MalformedCoordinate(ApiError):
    def __init__(self, message: str = "Invalid DMS coordinate format.") -> None:
        super().__init__(status_code=400, code="MALFORMED_COORDINATE", message=message)


class TokenMismatch(ApiError):
    def __init__(self) -> None:
        super().__init__(status_code=400, code="TOKEN_MISMATCH", message="Invalid QR code token.")


class TokenExpired(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=400,
            code="TOKEN_EXPIRED",
            message="QR code has expired. Request a fresh code.",
        )


class OutOfRange(ApiError):
    def __init__(self, *, distance_m: float, max_allowed_m: float, message: str) -> None:
        super().__init__(
            status_code=400,
            code="OUT_OF_RANGE",
            message=message,
            details={
                "distance_m": round(distance_m, 2),
                "max_allowed_m": max_allowed_m,
            },
        )
        self.distance_m = distance_m
        self.max_allowed_m = max_allowed_m


class Unauthorized(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=403,
            code="UNAUTHORIZED",
            message="Not authorized to access this shift.",
        )


class ShiftNotFound(ApiError):
    def __init__(self) -> None:
        super().__init__(status_code=404, code="SHIFT_NOT_FOUND", message="Shift not found.")


class InvalidStateTransition(ApiError):
    def __init__(self, *, current: str, target: str) -> None:
        super().__init__(
            status_code=409,
            code="INVALID_STATE_TRANSITION",
            message=f"Shift cannot move from '{current}' to '{target}'.",
            details={"current_status": current, "target_status": target},
        )


class NoCheckInRecord(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=409,
            code="NO_CHECKIN_RECORD",
            message="No check-in found for today. Check in before checking out.",
        )


class TransactionAborted(ApiError):
    def __init__(self, message: str = "Attendance could not be saved. Please retry.") -> None:
        super().__init__(status_code=500, code="TRANSACTION_ABORTED", message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})
