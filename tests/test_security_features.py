from __future__ import annotations

import os
import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import select

from shiftcheck import security
from shiftcheck.db import get_db
from shiftcheck.errors import ApiError
from shiftcheck.main import app
from shiftcheck.models import AuditLog, Employee, User, UserRole
from shiftcheck.security import create_access_token, decode_token, hash_password, verify_password
from shiftcheck.settings import get_settings

from sqlite_support import build_session_factory


def _override_get_db(session):  # type: ignore[no-untyped-def]
    def _override() -> Generator[object, None, None]:
        yield session

    return _override


def _user() -> User:
    user = User(
        id=7,
        username="hr1",
        password_hash="unused",
        role=UserRole.HR,
        company="acme",
        is_active=True,
    )
    user.employee = Employee(id=70, user_id=7, full_name="HR One", is_active=True)
    return user


class AccessTokenTests(unittest.TestCase):
    def setUp(self) -> None:
        env = patch.dict(os.environ, {"JWT_SECRET": "test-signing-secret"}, clear=False)
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)

    def test_token_round_trip_carries_company_and_role(self) -> None:
        token, expires_in, claims = create_access_token(_user())

        current = decode_token(token)

        self.assertEqual(expires_in, 3600)
        self.assertEqual(claims["typ"], "access")
        self.assertEqual(current.user_id, 7)
        self.assertEqual(current.role, "hr")
        self.assertEqual(current.company, "acme")
        self.assertEqual(current.employee_id, 70)

    def test_token_signed_with_other_secret_is_rejected(self) -> None:
        _, _, claims = create_access_token(_user())
        forged = jwt.encode(claims, "someone-else", algorithm="HS256")

        with self.assertRaises(ApiError) as exc:
            decode_token(forged)

        self.assertEqual(exc.exception.status_code, 401)
        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_token_without_company_is_rejected(self) -> None:
        _, _, claims = create_access_token(_user())
        claims["company"] = ""
        token = jwt.encode(claims, "test-signing-secret", algorithm="HS256")

        with self.assertRaises(ApiError) as exc:
            decode_token(token)

        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_missing_secret_refuses_to_sign(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": ""}, clear=False):
            get_settings.cache_clear()
            with self.assertRaises(ApiError) as exc:
                create_access_token(_user())

        self.assertEqual(exc.exception.code, "JWT_NOT_CONFIGURED")

    def test_password_hash_round_trip(self) -> None:
        password_hash = hash_password("s3cret-pass")

        self.assertTrue(verify_password("s3cret-pass", password_hash))
        self.assertFalse(verify_password("wrong", password_hash))
        self.assertFalse(verify_password("s3cret-pass", "not-a-hash"))


class LoginEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        env = patch.dict(os.environ, {"JWT_SECRET": "test-signing-secret"}, clear=False)
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        security._FAILED_ATTEMPTS.clear()
        self.addCleanup(security._FAILED_ATTEMPTS.clear)

        self.session = build_session_factory()()
        self.addCleanup(self.session.close)
        app.dependency_overrides[get_db] = _override_get_db(self.session)
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def test_login_success_returns_bearer_token(self) -> None:
        with patch("shiftcheck.routers.auth.authenticate_user", return_value=_user()):
            response = self.client.post("/api/v1/auth/login", json={"username": "hr1", "password": "x"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["token_type"], "bearer")
        self.assertEqual(body["company"], "acme")
        self.assertEqual(decode_token(body["access_token"]).role, "hr")

        audit = self.session.scalar(select(AuditLog).where(AuditLog.action == "LOGIN_SUCCEEDED"))
        self.assertIsNotNone(audit)

    def test_login_failure_is_audited(self) -> None:
        with patch("shiftcheck.routers.auth.authenticate_user", return_value=None):
            response = self.client.post("/api/v1/auth/login", json={"username": "hr1", "password": "bad"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_CREDENTIALS")
        audit = self.session.scalar(select(AuditLog).where(AuditLog.action == "LOGIN_FAILED"))
        self.assertIsNotNone(audit)
        self.assertFalse(audit.success)

    def test_repeated_failures_are_throttled(self) -> None:
        with patch("shiftcheck.routers.auth.authenticate_user", return_value=None):
            for _ in range(10):
                self.client.post("/api/v1/auth/login", json={"username": "hr1", "password": "bad"})
            response = self.client.post("/api/v1/auth/login", json={"username": "hr1", "password": "bad"})

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"]["code"], "TOO_MANY_ATTEMPTS")


if __name__ == "__main__":
    unittest.main()
