from __future__ import annotations

import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shiftcheck.errors import MalformedPayload, TokenExpired, TokenMismatch
from shiftcheck.models import MAX_ROW_ID, Shift

QR_TOKEN_TTL = timedelta(minutes=5)
QR_TOKEN_BYTES = 32

TokenGenerator = Callable[[], str]


def generate_token() -> str:
    return secrets.token_hex(QR_TOKEN_BYTES)


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


class QrPayload(BaseModel):
    shift_id: int = Field(alias="shiftId", ge=1, le=MAX_ROW_ID)
    token: str = Field(min_length=1, max_length=128)
    # Advisory only; expiry is always derived from the stored issue time.
    timestamp: int | float | str | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


@dataclass(frozen=True, slots=True)
class IssuedToken:
    shift_id: int
    token: str
    issued_at: datetime
    expires_at: datetime

    def payload(self) -> str:
        return build_qr_payload(self.shift_id, self.token, self.issued_at)


def build_qr_payload(shift_id: int, token: str, issued_at: datetime) -> str:
    return json.dumps(
        {
            "shiftId": shift_id,
            "token": token,
            "timestamp": int(_normalize_ts(issued_at).timestamp() * 1000),
        },
        separators=(",", ":"),
    )


def parse_qr_payload(raw: str | None) -> QrPayload:
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedPayload("Please provide QR code data.")
    try:
        return QrPayload.model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedPayload("Invalid QR code format.") from exc


def issue_shift_token(
    shift: Shift,
    *,
    now_utc: datetime | None = None,
    token_generator: TokenGenerator = generate_token,
) -> IssuedToken:
    """Mint a fresh token for ``shift``, replacing any previously issued one.

    The caller owns the transaction; nothing is committed here.
    """
    issued_at = _normalize_ts(now_utc)
    token = token_generator()
    if not token:
        raise ValueError("Token generator returned an empty token.")

    shift.qr_token = token
    shift.qr_issued_at = issued_at
    shift.qr_expires_at = issued_at + QR_TOKEN_TTL
    return IssuedToken(
        shift_id=shift.id,
        token=token,
        issued_at=issued_at,
        expires_at=issued_at + QR_TOKEN_TTL,
    )


def validate_shift_token(
    shift: Shift,
    presented_token: str,
    *,
    now_utc: datetime | None = None,
) -> None:
    stored_token = shift.qr_token or ""
    if not stored_token or not hmac.compare_digest(
        presented_token.encode("utf-8"),
        stored_token.encode("utf-8"),
    ):
        raise TokenMismatch()

    if shift.qr_issued_at is None:
        raise TokenExpired()

    now = _normalize_ts(now_utc)
    if now - _normalize_ts(shift.qr_issued_at) > QR_TOKEN_TTL:
        raise TokenExpired()
