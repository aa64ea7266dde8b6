from __future__ import annotations

from datetime import datetime
from typing import Mapping

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        headers: Mapping[str, str] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = dict(headers or {})


class RecoveryCodeInputError(ApiError):
    def __init__(self, message: str = "Recovery code is required."):
        super().__init__(status_code=422, code="VALIDATION_ERROR", message=message)


class DeviceIdInputError(ApiError):
    def __init__(self, message: str = "Device identifier is malformed."):
        super().__init__(status_code=422, code="VALIDATION_ERROR", message=message)


class AuthenticationFailure(ApiError):
    """Unknown code and wrong code share this error so callers cannot tell them apart."""

    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            code="INVALID_RECOVERY_CODE",
            message="Recovery code is invalid.",
        )


class RecoveryCodeReplaced(ApiError):
    def __init__(self, rotated_at: datetime | None = None):
        super().__init__(
            status_code=410,
            code="RECOVERY_CODE_REPLACED",
            message="Recovery code was replaced.",
        )
        self.rotated_at = rotated_at


class RateLimited(ApiError):
    def __init__(self, retry_after_seconds: int, message: str = "Too many attempts. Please try again later."):
        retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(
            status_code=429,
            code="TOO_MANY_ATTEMPTS",
            message=message,
            headers={"Retry-After": str(retry_after_seconds)},
        )
        self.retry_after_seconds = retry_after_seconds


class UnknownDeviceContext(ApiError):
    def __init__(self) -> None:
        super().__init__(status_code=404, code="UNKNOWN_DEVICE", message="Unknown device.")


class ProvisioningFailure(ApiError):
    def __init__(self, message: str = "Failed to bootstrap device."):
        super().__init__(status_code=500, code="PROVISIONING_FAILED", message=message)


class RecoveryCodeCollisionExhausted(ProvisioningFailure):
    def __init__(self, attempts: int, *, status_code: int = 500):
        super().__init__(message="Could not generate a fresh recovery code. Please retry shortly.")
        self.status_code = status_code
        self.code = "RECOVERY_CODE_COLLISION"
        self.attempts = attempts


class StoreFailure(ApiError):
    def __init__(self, message: str = "Request could not be completed."):
        super().__init__(status_code=500, code="STORE_FAILURE", message=message)


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
    headers: Mapping[str, str] | None = None,
    extra: Mapping[str, object] | None = None,
) -> JSONResponse:
    payload: dict[str, object] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            **(extra or {}),
        }
    }
    return JSONResponse(status_code=status_code, content=payload, headers=dict(headers or {}) or None)
