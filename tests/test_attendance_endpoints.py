from __future__ import annotations

import json
import unittest
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient
from sqlalchemy import select

from shiftcheck.db import get_db
from shiftcheck.errors import TransactionAborted
from shiftcheck.main import app
from shiftcheck.models import AuditLog, ShiftStatus
from shiftcheck.security import CurrentUser, require_user
from shiftcheck.services.attendance import CheckinPolicy, get_checkin_policy
from shiftcheck.services.geofence import Coordinate, Geofence
from shiftcheck.services.qr_tokens import build_qr_payload, issue_shift_token
from shiftcheck.services.shift_state import local_day_from_utc

from sqlite_support import OFFICE_LAT, OFFICE_LON, attendance_count, build_session_factory, seed_employee, seed_shift

_POLICY = CheckinPolicy(
    office_geofence=Geofence(
        center=Coordinate(latitude=OFFICE_LAT, longitude=OFFICE_LON),
        radius_m=20.0,
        name="Head Office",
    ),
)


def _override_get_db(session):  # type: ignore[no-untyped-def]
    def _override() -> Generator[object, None, None]:
        yield session

    return _override


class AttendanceEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch(
            "shiftcheck.services.shift_state.attendance_timezone",
            return_value=ZoneInfo("Africa/Douala"),
        )
        patcher.start()
        self.addCleanup(patcher.stop)

        self.session = build_session_factory()()
        self.addCleanup(self.session.close)
        self.employee = seed_employee(self.session)
        self.now = datetime.now(timezone.utc)
        self.shift = seed_shift(self.session, self.employee, shift_date=local_day_from_utc(self.now))

        self.current_user = CurrentUser(
            user_id=self.employee.user_id,
            username="alice",
            role="employee",
            company="acme",
            employee_id=self.employee.id,
        )
        app.dependency_overrides[get_db] = _override_get_db(self.session)
        app.dependency_overrides[require_user] = lambda: self.current_user
        app.dependency_overrides[get_checkin_policy] = lambda: _POLICY
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def _qr(self) -> str:
        issue_shift_token(self.shift, now_utc=self.now, token_generator=lambda: "c" * 64)
        self.session.commit()
        return build_qr_payload(self.shift.id, "c" * 64, self.now)

    def _checkin_body(self, qr_data: str, *, lat: float = OFFICE_LAT) -> dict[str, object]:
        return {"qrData": qr_data, "userLocation": {"latitude": lat, "longitude": OFFICE_LON}}

    def test_checkin_success_returns_attendance_and_shift(self) -> None:
        response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(self._qr()))

        self.assertEqual(response.status_code, 200)
        self.assertIn("X-Request-Id", response.headers)
        body = response.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["message"], "Check-in successful")
        self.assertEqual(body["shift"]["status"], "in-progress")
        self.assertEqual(body["attendance"]["shift_id"], self.shift.id)
        self.assertIn(body["attendance"]["status"], {"present", "late"})
        self.assertEqual(body["attendance"]["location"], [OFFICE_LON, OFFICE_LAT])

        audit = self.session.scalar(select(AuditLog).where(AuditLog.action == "ATTENDANCE_CHECKIN"))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.actor_id, "alice")
        self.assertEqual(audit.details["shift_id"], self.shift.id)

    def test_checkin_out_of_range_uses_error_envelope(self) -> None:
        response = self.client.post(
            "/api/v1/attendance/checkin",
            json=self._checkin_body(self._qr(), lat=OFFICE_LAT + 0.001),
            headers={"X-Request-Id": "req-geo-1"},
        )

        self.assertEqual(response.status_code, 400)
        error = response.json()["error"]
        self.assertEqual(error["code"], "OUT_OF_RANGE")
        self.assertEqual(error["request_id"], "req-geo-1")
        self.assertGreater(error["details"]["distance_m"], 100)
        self.assertEqual(error["details"]["max_allowed_m"], 20.0)
        self.assertEqual(attendance_count(self.session), 0)

    def test_checkin_with_bad_qr_payload(self) -> None:
        response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body("{not-json"))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "MALFORMED_PAYLOAD")

    def test_checkin_with_stale_token(self) -> None:
        issue_shift_token(self.shift, now_utc=self.now - timedelta(minutes=6), token_generator=lambda: "d" * 64)
        self.session.commit()
        qr = build_qr_payload(self.shift.id, "d" * 64, self.now - timedelta(minutes=6))

        response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(qr))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "TOKEN_EXPIRED")

    def test_checkin_for_other_company_is_forbidden(self) -> None:
        app.dependency_overrides[require_user] = lambda: CurrentUser(
            user_id=99,
            username="mallory",
            role="employee",
            company="globex",
        )

        response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(self._qr()))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

    def test_missing_user_location_is_a_validation_error(self) -> None:
        response = self.client.post("/api/v1/attendance/checkin", json={"qrData": self._qr()})

        self.assertEqual(response.status_code, 400)
        error = response.json()["error"]
        self.assertEqual(error["code"], "VALIDATION_ERROR")
        self.assertTrue(any("userLocation" in item["loc"] for item in error["details"]["errors"]))

    def test_missing_bearer_token_is_rejected(self) -> None:
        app.dependency_overrides.pop(require_user)

        response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(self._qr()))

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")

    def test_storage_failure_maps_to_transaction_aborted(self) -> None:
        with patch("shiftcheck.routers.attendance.check_in", side_effect=TransactionAborted()):
            response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(self._qr()))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"]["code"], "TRANSACTION_ABORTED")

    def test_checkout_without_checkin(self) -> None:
        response = self.client.post(
            "/api/v1/attendance/checkout",
            json={"shiftId": self.shift.id, "userLocation": {"latitude": OFFICE_LAT, "longitude": OFFICE_LON}},
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "NO_CHECKIN_RECORD")

    def test_checkin_then_checkout(self) -> None:
        self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(self._qr()))

        response = self.client.post(
            "/api/v1/attendance/checkout",
            json={"shiftId": self.shift.id, "userLocation": {"latitude": OFFICE_LAT, "longitude": OFFICE_LON}},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["message"], "Check-out successful")
        self.assertEqual(body["shift"]["status"], ShiftStatus.COMPLETED.value)
        self.assertIsNotNone(body["attendance"]["check_out_time"])

    def test_unknown_shift_checkout(self) -> None:
        response = self.client.post(
            "/api/v1/attendance/checkout",
            json={"shiftId": 4040, "userLocation": {"latitude": OFFICE_LAT, "longitude": OFFICE_LON}},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "SHIFT_NOT_FOUND")

    def test_oversized_shift_ids_are_rejected_as_bad_input(self) -> None:
        checkin = self.client.post(
            "/api/v1/attendance/checkin",
            json=self._checkin_body('{"shiftId": 99999999999999999999, "token": "x", "timestamp": 1}'),
        )
        checkout = self.client.post(
            "/api/v1/attendance/checkout",
            json={"shiftId": 2**64, "userLocation": {"latitude": OFFICE_LAT, "longitude": OFFICE_LON}},
        )

        self.assertEqual(checkin.status_code, 400)
        self.assertEqual(checkin.json()["error"]["code"], "MALFORMED_PAYLOAD")
        self.assertEqual(checkout.status_code, 400)
        self.assertEqual(checkout.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(attendance_count(self.session), 0)

    def test_dashboard_requires_scheduler_role(self) -> None:
        response = self.client.get("/api/v1/attendance")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_dashboard_counts_checked_in_employee(self) -> None:
        self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(self._qr()))
        seed_employee(self.session, username="bob", full_name="Bob Eto'o")
        app.dependency_overrides[require_user] = lambda: CurrentUser(
            user_id=50,
            username="hr1",
            role="hr",
            company="acme",
        )

        response = self.client.get("/api/v1/attendance", params={"day": self.shift.date.isoformat()})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total_employees"], 2)
        self.assertEqual(body["present"] + body["late"], 1)
        self.assertEqual(body["absent"], 1)
        self.assertEqual(body["attendance"][0]["employee_name"], "Alice Ndongo")

    def test_summary_rejects_reversed_range(self) -> None:
        app.dependency_overrides[require_user] = lambda: CurrentUser(
            user_id=50,
            username="hr1",
            role="hr",
            company="acme",
        )

        response = self.client.get(
            "/api/v1/attendance/summary",
            params={"start_date": "2026-03-10", "end_date": "2026-03-01"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_DATE_RANGE")

    def test_summary_lists_every_day(self) -> None:
        app.dependency_overrides[require_user] = lambda: CurrentUser(
            user_id=50,
            username="hr1",
            role="hr",
            company="acme",
        )

        response = self.client.get(
            "/api/v1/attendance/summary",
            params={"start_date": "2026-03-01", "end_date": "2026-03-03"},
        )

        self.assertEqual(response.status_code, 200)
        days = response.json()["days"]
        self.assertEqual([item["date"] for item in days], ["2026-03-01", "2026-03-02", "2026-03-03"])
        self.assertTrue(all(item["absent"] == 1 for item in days))

    def test_qr_payload_from_scheduler_endpoint_checks_in(self) -> None:
        app.dependency_overrides[require_user] = lambda: CurrentUser(
            user_id=50,
            username="hr1",
            role="hr",
            company="acme",
        )
        issued = self.client.post(f"/api/v1/schedules/{self.shift.id}/qrcode")
        self.assertEqual(issued.status_code, 200)
        qr_data = issued.json()["qr_data"]
        self.assertEqual(json.loads(qr_data)["shiftId"], self.shift.id)

        app.dependency_overrides[require_user] = lambda: self.current_user
        response = self.client.post("/api/v1/attendance/checkin", json=self._checkin_body(qr_data))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["shift"]["status"], "in-progress")


if __name__ == "__main__":
    unittest.main()
