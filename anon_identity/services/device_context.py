from __future__ import annotations

import logging
from dataclasses import dataclass

from anon_identity.db import SessionFactory
from anon_identity.errors import StoreFailure
from anon_identity.services.identity_store import IdentityStore, StoreError

logger = logging.getLogger("anon_identity.device_context")


@dataclass(frozen=True, slots=True)
class DeviceContext:
    anon_id: str
    device_id: str


async def resolve_device_context(session_factory: SessionFactory, device_id: str) -> DeviceContext | None:
    """Look up the identity bound to `device_id`.

    Returns None for an unknown device. Never provisions a new identity.
    """
    async with session_factory() as session:
        store = IdentityStore(session)
        try:
            identity = await store.find_identity_by_device_id(device_id)
        except StoreError as exc:
            logger.error("store_failure", extra={"operation": exc.operation}, exc_info=exc)
            raise StoreFailure() from exc
    if identity is None:
        return None
    return DeviceContext(anon_id=identity.anon_id, device_id=device_id)


async def touch_last_active_best_effort(
    session_factory: SessionFactory,
    anon_id: str,
    device_id: str | None,
) -> None:
    try:
        async with session_factory() as session:
            store = IdentityStore(session)
            await store.touch_last_active(anon_id, device_id)
            await store.commit()
    except Exception:
        logger.warning(
            "last_active_touch_failed",
            extra={"anon_id": anon_id, "device_id": device_id},
            exc_info=True,
        )
