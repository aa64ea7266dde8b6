import re

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status

from anon_identity.db import SessionFactory, get_session_factory
from anon_identity.errors import ApiError, DeviceIdInputError, UnknownDeviceContext
from anon_identity.schemas import (
    BootstrapCreatedResponse,
    BootstrapResolvedResponse,
    RecoveryRotateResponse,
    RestoreRequest,
    RestoreResponse,
)
from anon_identity.services.device_context import resolve_device_context, touch_last_active_best_effort
from anon_identity.services.provisioning import provision_identity
from anon_identity.services.rate_limit import (
    InMemoryRateLimiter,
    get_restore_rate_limiter,
    get_rotation_rate_limiter,
)
from anon_identity.services.restore import restore_identity
from anon_identity.services.rotation import rotate_recovery_code
from anon_identity.security import secrets_match
from anon_identity.settings import get_settings, is_origin_allowed

router = APIRouter(prefix="/api/anon", tags=["anon"])

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _client_ip(request: Request) -> str:
    if get_settings().trust_forwarded_for:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            first = forwarded_for.split(",")[0].strip()
            if first:
                return first
    if request.client:
        return request.client.host
    return "unknown"


def _device_id_from_request(request: Request) -> str | None:
    raw = request.headers.get(get_settings().device_id_header)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    if not DEVICE_ID_PATTERN.fullmatch(value):
        raise DeviceIdInputError()
    return value


def _set_device_id_header(response: Response, device_id: str) -> None:
    response.headers[get_settings().device_id_header] = device_id


@router.post(
    "/bootstrap",
    response_model=BootstrapCreatedResponse | BootstrapResolvedResponse,
    responses={201: {"model": BootstrapCreatedResponse}, 200: {"model": BootstrapResolvedResponse}},
)
async def bootstrap(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory = Depends(get_session_factory),
) -> BootstrapCreatedResponse | BootstrapResolvedResponse:
    device_id = _device_id_from_request(request)

    if device_id is None:
        provisioned = await provision_identity(session_factory)
        request.state.anon_id = provisioned.anon_id
        response.status_code = status.HTTP_201_CREATED
        _set_device_id_header(response, provisioned.device_id)
        return BootstrapCreatedResponse(
            anon_id=provisioned.anon_id,
            device_id=provisioned.device_id,
            recovery_code=provisioned.recovery_code,
        )

    context = await resolve_device_context(session_factory, device_id)
    if context is None:
        raise UnknownDeviceContext()

    request.state.anon_id = context.anon_id
    background_tasks.add_task(touch_last_active_best_effort, session_factory, context.anon_id, device_id)
    _set_device_id_header(response, device_id)
    return BootstrapResolvedResponse(anon_id=context.anon_id)


@router.post("/restore", response_model=RestoreResponse)
async def restore(
    payload: RestoreRequest,
    request: Request,
    response: Response,
    session_factory: SessionFactory = Depends(get_session_factory),
    limiter: InMemoryRateLimiter = Depends(get_restore_rate_limiter),
) -> RestoreResponse:
    device_id = _device_id_from_request(request)
    restored = await restore_identity(
        session_factory,
        recovery_code=payload.recovery_code,
        device_id=device_id,
        source_ip=_client_ip(request),
        limiter=limiter,
    )
    request.state.anon_id = restored.anon_id
    _set_device_id_header(response, restored.device_id)
    return RestoreResponse(anon_id=restored.anon_id, device_id=restored.device_id)


@router.post("/recovery", response_model=RecoveryRotateResponse)
async def rotate_recovery(
    request: Request,
    response: Response,
    session_factory: SessionFactory = Depends(get_session_factory),
    limiter: InMemoryRateLimiter = Depends(get_rotation_rate_limiter),
) -> RecoveryRotateResponse:
    settings = get_settings()
    response.headers["Cache-Control"] = "no-store, max-age=0"

    if not is_origin_allowed(request.headers.get("origin")):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Origin not allowed.")

    device_id = _device_id_from_request(request)
    if device_id is None:
        raise ApiError(status_code=401, code="DEVICE_ID_REQUIRED", message="Missing device identity.")

    csrf_header = (request.headers.get(settings.recovery_csrf_header_name) or "").strip()
    csrf_cookie = request.cookies.get(settings.recovery_csrf_cookie_name)
    if not secrets_match(csrf_header, csrf_cookie):
        raise ApiError(status_code=403, code="CSRF_MISMATCH", message="CSRF token mismatch.")

    client_ip = _client_ip(request)
    decision = limiter.hit(f"{device_id}::{client_ip}")
    rate_headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at.timestamp())),
    }
    response.headers.update(rate_headers)
    if not decision.allowed:
        raise ApiError(
            status_code=429,
            code="TOO_MANY_ATTEMPTS",
            message="Too many recovery code rotations. Try again in a little while.",
            headers={**rate_headers, "Retry-After": str(decision.retry_after_seconds or 1)},
        )

    context = await resolve_device_context(session_factory, device_id)
    if context is None:
        raise UnknownDeviceContext()
    request.state.anon_id = context.anon_id

    rotated = await rotate_recovery_code(session_factory, anon_id=context.anon_id, client_ip=client_ip)
    return RecoveryRotateResponse(
        anon_id=rotated.anon_id,
        recovery_code=rotated.recovery_code,
        rotated_at=rotated.rotated_at,
    )
