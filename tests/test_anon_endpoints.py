from __future__ import annotations

import asyncio
import os
import re
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from anon_identity.db import Base, create_engine_from_url, create_session_factory, get_session_factory
from anon_identity.main import app
from anon_identity.models import AnonIdentity, DeviceLink
from anon_identity.security import get_password_hasher
from anon_identity.services.identity_store import IdentityStore, StoreError
from anon_identity.services.rate_limit import (
    InMemoryRateLimiter,
    get_restore_rate_limiter,
    get_rotation_rate_limiter,
)
from anon_identity.settings import get_settings

CODE_PATTERN = re.compile(r"^[A-Z0-9]{5}(-[A-Z0-9]{5}){3}$")
FAST_ARGON_ENV = {"ARGON2_TIME_COST": "1", "ARGON2_MEMORY_COST": "1024", "TRUST_FORWARDED_FOR": "true"}
UNKNOWN_CODE = "ZZZZZ-YYYYY-XXXXX-WWWWW"


class _EndpointTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, FAST_ARGON_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()
        get_password_hasher.cache_clear()

        self._tmpdir = tempfile.TemporaryDirectory()
        database_path = Path(self._tmpdir.name) / "anon.db"
        self.engine = create_engine_from_url(f"sqlite+aiosqlite:///{database_path}")
        asyncio.run(self._create_schema())
        self.session_factory = create_session_factory(self.engine)
        self.restore_limiter = InMemoryRateLimiter(max_failures=10, window=timedelta(minutes=10))
        self.rotation_limiter = InMemoryRateLimiter(max_failures=5, window=timedelta(hours=1))

        app.dependency_overrides[get_session_factory] = lambda: self.session_factory
        app.dependency_overrides[get_restore_rate_limiter] = lambda: self.restore_limiter
        app.dependency_overrides[get_rotation_rate_limiter] = lambda: self.rotation_limiter
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        asyncio.run(self.engine.dispose())
        self._tmpdir.cleanup()
        self._env.stop()
        get_settings.cache_clear()
        get_password_hasher.cache_clear()

    async def _create_schema(self) -> None:
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    def count_rows(self, model) -> int:  # type: ignore[no-untyped-def]
        async def _count() -> int:
            async with self.session_factory() as session:
                return int(await session.scalar(select(func.count()).select_from(model)) or 0)

        return asyncio.run(_count())

    def bound_anon_id(self, device_id: str) -> str | None:
        async def _lookup() -> str | None:
            async with self.session_factory() as session:
                link = await session.get(DeviceLink, device_id)
                return link.anon_id if link else None

        return asyncio.run(_lookup())

    def bootstrap(self) -> dict:
        response = self.client.post("/api/anon/bootstrap")
        self.assertEqual(response.status_code, 201)
        return {**response.json(), "header_device_id": response.headers["x-device-id"]}


class BootstrapEndpointTests(_EndpointTestCase):
    def test_bootstrap_without_device_header_provisions_identity(self) -> None:
        response = self.client.post("/api/anon/bootstrap")

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "created")
        self.assertTrue(body["anonId"])
        self.assertRegex(body["recoveryCode"], CODE_PATTERN)
        device_id = response.headers["x-device-id"]
        self.assertEqual(body["deviceId"], device_id)
        self.assertEqual(self.bound_anon_id(device_id), body["anonId"])
        self.assertIn("X-Request-Id", response.headers)

    def test_bootstrap_with_known_device_returns_existing_context(self) -> None:
        created = self.bootstrap()

        response = self.client.post(
            "/api/anon/bootstrap",
            headers={"x-device-id": created["header_device_id"]},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "anonId": created["anonId"]})
        self.assertEqual(response.headers["x-device-id"], created["header_device_id"])
        self.assertEqual(self.count_rows(AnonIdentity), 1)

    def test_bootstrap_with_unknown_device_returns_not_found(self) -> None:
        with patch("anon_identity.routers.anon.provision_identity") as mock_provision:
            response = self.client.post("/api/anon/bootstrap", headers={"x-device-id": "lost-device"})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "UNKNOWN_DEVICE")
        mock_provision.assert_not_called()
        self.assertEqual(self.count_rows(AnonIdentity), 0)
        self.assertEqual(self.count_rows(DeviceLink), 0)

    def test_bootstrap_rejects_malformed_device_header(self) -> None:
        response = self.client.post("/api/anon/bootstrap", headers={"x-device-id": "bad id/with spaces"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(self.count_rows(AnonIdentity), 0)

    def test_bootstrap_store_failure_is_generic(self) -> None:
        with patch.object(IdentityStore, "insert_identity", side_effect=StoreError("insert_identity")):
            response = self.client.post("/api/anon/bootstrap")

        self.assertEqual(response.status_code, 500)
        error = response.json()["error"]
        self.assertEqual(error["code"], "PROVISIONING_FAILED")
        self.assertEqual(error["message"], "Failed to bootstrap device.")
        self.assertNotIn("x-device-id", response.headers)


class RestoreEndpointTests(_EndpointTestCase):
    def test_restore_without_device_header_mints_device(self) -> None:
        created = self.bootstrap()

        response = self.client.post("/api/anon/restore", json={"recoveryCode": created["recoveryCode"].lower()})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["anonId"], created["anonId"])
        self.assertNotEqual(body["deviceId"], created["header_device_id"])
        self.assertEqual(response.headers["x-device-id"], body["deviceId"])
        self.assertEqual(self.bound_anon_id(body["deviceId"]), created["anonId"])

    def test_restore_with_device_header_rebinds_that_device(self) -> None:
        first = self.bootstrap()
        second = self.bootstrap()

        response = self.client.post(
            "/api/anon/restore",
            json={"recoveryCode": second["recoveryCode"]},
            headers={"x-device-id": first["header_device_id"]},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"anonId": second["anonId"], "deviceId": first["header_device_id"]},
        )
        self.assertEqual(response.headers["x-device-id"], first["header_device_id"])
        self.assertEqual(self.bound_anon_id(first["header_device_id"]), second["anonId"])

        follow_up = self.client.post(
            "/api/anon/bootstrap",
            headers={"x-device-id": first["header_device_id"]},
        )
        self.assertEqual(follow_up.json()["anonId"], second["anonId"])

    def test_restore_invalid_code_is_generic_401(self) -> None:
        response = self.client.post("/api/anon/restore", json={"recoveryCode": UNKNOWN_CODE})

        self.assertEqual(response.status_code, 401)
        error = response.json()["error"]
        self.assertEqual(error["code"], "INVALID_RECOVERY_CODE")
        self.assertEqual(error["message"], "Recovery code is invalid.")

    def test_restore_missing_code_is_validation_error(self) -> None:
        for payload in ({}, {"recoveryCode": ""}, {"recoveryCode": "short"}):
            response = self.client.post("/api/anon/restore", json=payload)
            self.assertEqual(response.status_code, 422)
            self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

        self.assertEqual(self.restore_limiter.check("testclient").remaining, 10)

    def test_eleventh_failed_restore_is_rate_limited_before_lookup(self) -> None:
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1"}
        for _ in range(10):
            response = self.client.post("/api/anon/restore", json={"recoveryCode": UNKNOWN_CODE}, headers=headers)
            self.assertEqual(response.status_code, 401)

        with patch.object(IdentityStore, "find_identity_by_fingerprint") as mock_lookup:
            response = self.client.post("/api/anon/restore", json={"recoveryCode": UNKNOWN_CODE}, headers=headers)

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"]["code"], "TOO_MANY_ATTEMPTS")
        self.assertGreater(int(response.headers["Retry-After"]), 0)
        mock_lookup.assert_not_called()

        other_ip = self.client.post(
            "/api/anon/restore",
            json={"recoveryCode": UNKNOWN_CODE},
            headers={"x-forwarded-for": "198.51.100.7"},
        )
        self.assertEqual(other_ip.status_code, 401)

    def test_forwarded_for_is_ignored_unless_trusted(self) -> None:
        with patch.dict(os.environ, {"TRUST_FORWARDED_FOR": "false"}, clear=False):
            get_settings.cache_clear()
            for index in range(10):
                response = self.client.post(
                    "/api/anon/restore",
                    json={"recoveryCode": UNKNOWN_CODE},
                    headers={"x-forwarded-for": f"198.51.100.{index}"},
                )
                self.assertEqual(response.status_code, 401)

            response = self.client.post(
                "/api/anon/restore",
                json={"recoveryCode": UNKNOWN_CODE},
                headers={"x-forwarded-for": "198.51.100.99"},
            )

        get_settings.cache_clear()
        self.assertEqual(response.status_code, 429)
        self.assertFalse(self.restore_limiter.check("testclient").allowed)


class RecoveryRotationEndpointTests(_EndpointTestCase):
    def _rotate(self, device_id: str | None, *, csrf: str | None = "csrf-token", cookie: str | None = "csrf-token", origin: str | None = None):  # type: ignore[no-untyped-def]
        headers: dict[str, str] = {}
        if device_id is not None:
            headers["x-device-id"] = device_id
        if csrf is not None:
            headers["x-recovery-csrf"] = csrf
        if origin is not None:
            headers["origin"] = origin
        self.client.cookies.clear()
        if cookie is not None:
            self.client.cookies.set("sta_recovery_csrf", cookie)
        return self.client.post("/api/anon/recovery", headers=headers)

    def test_rotation_issues_new_code_and_retires_old_one(self) -> None:
        created = self.bootstrap()

        response = self._rotate(created["header_device_id"])

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["anonId"], created["anonId"])
        self.assertRegex(body["recoveryCode"], CODE_PATTERN)
        self.assertNotEqual(body["recoveryCode"], created["recoveryCode"])
        self.assertIn("rotatedAt", body)
        self.assertEqual(response.headers["X-RateLimit-Remaining"], "4")
        self.assertEqual(response.headers["Cache-Control"], "no-store, max-age=0")

        replaced = self.client.post("/api/anon/restore", json={"recoveryCode": created["recoveryCode"]})
        self.assertEqual(replaced.status_code, 410)
        self.assertEqual(replaced.json()["error"]["code"], "RECOVERY_CODE_REPLACED")
        self.assertIsNotNone(replaced.json()["error"]["rotated_at"])

        restored = self.client.post("/api/anon/restore", json={"recoveryCode": body["recoveryCode"]})
        self.assertEqual(restored.status_code, 200)
        self.assertEqual(restored.json()["anonId"], created["anonId"])

    def test_rotation_requires_device_header(self) -> None:
        response = self._rotate(None)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "DEVICE_ID_REQUIRED")

    def test_rotation_rejects_csrf_mismatch(self) -> None:
        created = self.bootstrap()

        mismatch = self._rotate(created["header_device_id"], csrf="other-token")
        missing_cookie = self._rotate(created["header_device_id"], cookie=None)

        self.assertEqual(mismatch.status_code, 403)
        self.assertEqual(mismatch.json()["error"]["code"], "CSRF_MISMATCH")
        self.assertEqual(missing_cookie.status_code, 403)

    def test_rotation_rejects_disallowed_origin(self) -> None:
        created = self.bootstrap()

        response = self._rotate(created["header_device_id"], origin="https://evil.example")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_rotation_unknown_device_is_not_found(self) -> None:
        response = self._rotate("ghost-device")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.count_rows(AnonIdentity), 0)

    def test_rotation_is_rate_limited_per_device_and_ip(self) -> None:
        created = self.bootstrap()
        for _ in range(5):
            self.assertEqual(self._rotate(created["header_device_id"]).status_code, 200)

        response = self._rotate(created["header_device_id"])

        self.assertEqual(response.status_code, 429)
        self.assertIn("Retry-After", response.headers)
        self.assertEqual(response.headers["X-RateLimit-Remaining"], "0")


class HealthEndpointTests(unittest.TestCase):
    def test_health_reports_schema_guard_state(self) -> None:
        client = TestClient(app)

        response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertIn("schema_guard", body)


if __name__ == "__main__":
    unittest.main()
