from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from anon_identity.db import SessionFactory, run_detached_unit_of_work
from anon_identity.errors import ProvisioningFailure, RecoveryCodeCollisionExhausted
from anon_identity.services.identity_store import FingerprintConflictError, IdentityStore, StoreError
from anon_identity.services.recovery_codes import (
    fingerprint_recovery_code,
    format_recovery_code,
    generate_recovery_code,
    hash_recovery_code,
    normalize_recovery_code,
)
from anon_identity.settings import get_recovery_code_max_attempts

logger = logging.getLogger("anon_identity.provisioning")


@dataclass(frozen=True, slots=True)
class ProvisionedIdentity:
    anon_id: str
    device_id: str
    recovery_code: str


def new_device_id() -> str:
    return str(uuid4())


async def _provision(session: AsyncSession, *, max_attempts: int) -> ProvisionedIdentity:
    store = IdentityStore(session)
    now_utc = datetime.now(timezone.utc)

    for attempt in range(1, max_attempts + 1):
        normalized = normalize_recovery_code(generate_recovery_code())
        fingerprint = fingerprint_recovery_code(normalized)
        code_hash = await hash_recovery_code(normalized)
        try:
            identity = await store.insert_identity(
                fingerprint=fingerprint,  # type: ignore[arg-type]
                code_hash=code_hash,
                now=now_utc,
            )
        except FingerprintConflictError:
            logger.warning("recovery_code_collision", extra={"attempt": attempt})
            continue

        device_id = new_device_id()
        await store.insert_device_link(device_id=device_id, anon_id=identity.anon_id, now=now_utc)
        await store.commit()
        return ProvisionedIdentity(
            anon_id=identity.anon_id,
            device_id=device_id,
            recovery_code=format_recovery_code(normalized),
        )

    raise RecoveryCodeCollisionExhausted(attempts=max_attempts)


async def provision_identity(
    session_factory: SessionFactory,
    *,
    max_attempts: int | None = None,
) -> ProvisionedIdentity:
    """Create an identity, its first device link and a one-time recovery code.

    Identity and link commit together; a failure leaves neither behind.
    """
    attempts = max_attempts if max_attempts is not None else get_recovery_code_max_attempts()
    try:
        provisioned = await run_detached_unit_of_work(
            session_factory,
            lambda session: _provision(session, max_attempts=attempts),
        )
    except RecoveryCodeCollisionExhausted:
        logger.error("recovery_code_collision_exhausted", extra={"attempts": attempts})
        raise
    except StoreError as exc:
        logger.error("store_failure", extra={"operation": exc.operation}, exc_info=exc)
        raise ProvisioningFailure() from exc

    logger.info(
        "identity_provisioned",
        extra={"anon_id": provisioned.anon_id, "device_id": provisioned.device_id},
    )
    return provisioned
