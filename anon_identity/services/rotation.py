from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from anon_identity.db import SessionFactory, run_detached_unit_of_work
from anon_identity.errors import RecoveryCodeCollisionExhausted, StoreFailure, UnknownDeviceContext
from anon_identity.services.identity_store import FingerprintConflictError, IdentityStore, StoreError
from anon_identity.services.recovery_codes import (
    fingerprint_recovery_code,
    format_recovery_code,
    generate_recovery_code,
    hash_recovery_code,
    normalize_recovery_code,
)
from anon_identity.settings import get_recovery_code_max_attempts

logger = logging.getLogger("anon_identity.rotation")


@dataclass(frozen=True, slots=True)
class RotatedRecoveryCode:
    anon_id: str
    recovery_code: str
    rotated_at: datetime


async def _rotate(
    session: AsyncSession,
    *,
    anon_id: str,
    client_ip: str | None,
    max_attempts: int,
) -> RotatedRecoveryCode:
    store = IdentityStore(session)
    rotated_at = datetime.now(timezone.utc)

    for attempt in range(1, max_attempts + 1):
        # Re-read each attempt: a conflict rolls the session back and expires loaded rows.
        identity = await store.get_identity(anon_id)
        if identity is None:
            raise UnknownDeviceContext()
        previous_fingerprint = identity.recovery_code_fingerprint

        normalized = normalize_recovery_code(generate_recovery_code())
        fingerprint = fingerprint_recovery_code(normalized)
        code_hash = await hash_recovery_code(normalized)
        try:
            await store.replace_recovery_code(
                anon_id,
                fingerprint=fingerprint,  # type: ignore[arg-type]
                code_hash=code_hash,
                previous_fingerprint=previous_fingerprint,
                rotated_at=rotated_at,
                rotated_by_ip=client_ip,
            )
        except FingerprintConflictError:
            logger.warning("recovery_code_collision", extra={"attempt": attempt, "anon_id": anon_id})
            continue

        await store.commit()
        return RotatedRecoveryCode(
            anon_id=anon_id,
            recovery_code=format_recovery_code(normalized),
            rotated_at=rotated_at,
        )

    raise RecoveryCodeCollisionExhausted(attempts=max_attempts, status_code=503)


async def rotate_recovery_code(
    session_factory: SessionFactory,
    *,
    anon_id: str,
    client_ip: str | None,
    max_attempts: int | None = None,
) -> RotatedRecoveryCode:
    """Replace the identity's recovery code; the old code stops working immediately.

    The previous fingerprint is kept so a restore with the old code can be
    told that it was replaced.
    """
    attempts = max_attempts if max_attempts is not None else get_recovery_code_max_attempts()
    try:
        rotated = await run_detached_unit_of_work(
            session_factory,
            lambda session: _rotate(session, anon_id=anon_id, client_ip=client_ip, max_attempts=attempts),
        )
    except RecoveryCodeCollisionExhausted:
        logger.error("recovery_code_collision_exhausted", extra={"attempts": attempts, "anon_id": anon_id})
        raise
    except StoreError as exc:
        logger.error("store_failure", extra={"operation": exc.operation}, exc_info=exc)
        raise StoreFailure("Failed to rotate recovery code.") from exc

    logger.info("recovery_code_rotated", extra={"anon_id": anon_id, "ip": client_ip})
    return rotated
