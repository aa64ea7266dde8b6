from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from anon_identity.db import SessionFactory, run_detached_unit_of_work
from anon_identity.errors import AuthenticationFailure, RateLimited, RecoveryCodeReplaced, StoreFailure
from anon_identity.models import AnonIdentity
from anon_identity.services.device_context import touch_last_active_best_effort
from anon_identity.services.identity_store import IdentityStore, StoreError
from anon_identity.services.provisioning import new_device_id
from anon_identity.services.rate_limit import RateLimiter
from anon_identity.services.recovery_codes import (
    fingerprint_recovery_code,
    parse_recovery_code_input,
    verify_recovery_code,
)
from anon_identity.settings import get_settings

logger = logging.getLogger("anon_identity.restore")


@dataclass(frozen=True, slots=True)
class RestoredIdentity:
    anon_id: str
    device_id: str
    device_id_minted: bool


async def _lookup_candidate(
    session_factory: SessionFactory,
    fingerprint: str,
) -> tuple[AnonIdentity | None, AnonIdentity | None]:
    async with session_factory() as session:
        store = IdentityStore(session)
        identity = await store.find_identity_by_fingerprint(fingerprint)
        if identity is not None:
            return identity, None
        replaced = await store.find_identity_by_previous_fingerprint(fingerprint)
        return None, replaced


async def _bind_device(session: AsyncSession, *, anon_id: str, device_id: str) -> None:
    store = IdentityStore(session)
    await store.upsert_device_link(device_id=device_id, anon_id=anon_id, now=datetime.now(timezone.utc))
    await store.commit()


def _log_failure(source_ip: str, *, reason: str) -> None:
    logger.info("restore_failed", extra={"ip": source_ip, "reason": reason})


async def _verify_and_bind(
    session_factory: SessionFactory,
    *,
    normalized: str,
    device_id: str | None,
    source_ip: str,
) -> tuple[str, str]:
    fingerprint = fingerprint_recovery_code(normalized)
    if fingerprint is None:
        _log_failure(source_ip, reason="empty_fingerprint")
        raise AuthenticationFailure()

    try:
        identity, replaced = await _lookup_candidate(session_factory, fingerprint)
    except StoreError as exc:
        logger.error("store_failure", extra={"operation": exc.operation}, exc_info=exc)
        raise StoreFailure("Failed to verify recovery code.") from exc

    if identity is None:
        if replaced is not None:
            _log_failure(source_ip, reason="replaced")
            raise RecoveryCodeReplaced(rotated_at=replaced.recovery_rotated_at)
        _log_failure(source_ip, reason="unknown")
        raise AuthenticationFailure()

    if not await verify_recovery_code(normalized, identity.recovery_code_hash):
        _log_failure(source_ip, reason="mismatch")
        raise AuthenticationFailure()

    target_device_id = device_id or new_device_id()
    anon_id = identity.anon_id
    try:
        await run_detached_unit_of_work(
            session_factory,
            lambda session: _bind_device(session, anon_id=anon_id, device_id=target_device_id),
        )
    except StoreError as exc:
        logger.error("store_failure", extra={"operation": exc.operation}, exc_info=exc)
        raise StoreFailure("Failed to restore device.") from exc
    return anon_id, target_device_id


async def restore_identity(
    session_factory: SessionFactory,
    *,
    recovery_code: object,
    device_id: str | None,
    source_ip: str,
    limiter: RateLimiter,
) -> RestoredIdentity:
    """Rebind a device to the identity owning `recovery_code`.

    Order is fixed: input validation, rate-limit gate, fingerprint lookup,
    hash verification, device upsert. Unknown and wrong codes raise the same
    AuthenticationFailure and both count against the caller's window.

    The rate-limit slot is taken before any awaited work, so concurrent
    attempts from one source cannot all pass the gate. The slot stays as a
    recorded failure when the code is rejected and is released otherwise.
    """
    normalized = parse_recovery_code_input(recovery_code)

    decision = limiter.hit(source_ip)
    if not decision.allowed:
        logger.warning(
            "restore_rate_limited",
            extra={"ip": source_ip, "retry_after_seconds": decision.retry_after_seconds},
        )
        raise RateLimited(retry_after_seconds=decision.retry_after_seconds or 1)
    reserved_at = decision.reserved_at

    try:
        anon_id, target_device_id = await _verify_and_bind(
            session_factory,
            normalized=normalized,
            device_id=device_id,
            source_ip=source_ip,
        )
    except (AuthenticationFailure, RecoveryCodeReplaced):
        raise
    except BaseException:
        limiter.release(source_ip, reserved_at)
        raise

    if get_settings().restore_rate_limit_reset_on_success:
        limiter.reset(source_ip)
    else:
        limiter.release(source_ip, reserved_at)

    await touch_last_active_best_effort(session_factory, anon_id, target_device_id)

    logger.info(
        "device_restored",
        extra={
            "anon_id": anon_id,
            "device_id": target_device_id,
            "device_id_minted": device_id is None,
        },
    )
    return RestoredIdentity(
        anon_id=anon_id,
        device_id=target_device_id,
        device_id_minted=device_id is None,
    )
