from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from anon_identity.models import AnonIdentity, DeviceLink


class StoreError(Exception):
    def __init__(self, operation: str):
        super().__init__(f"Store operation failed: {operation}")
        self.operation = operation


class FingerprintConflictError(StoreError):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_fingerprint_conflict(exc: IntegrityError) -> bool:
    # Postgres names the constraint, SQLite names the column; both contain this token.
    return "recovery_code_fingerprint" in str(getattr(exc, "orig", exc))


class IdentityStore:
    """Persistence for anonymous identities and their device links.

    Every SQLAlchemy error is translated into `StoreError` (or the
    `FingerprintConflictError` subclass) after rolling the session back.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except StoreError:
            raise
        except IntegrityError as exc:
            await self._session.rollback()
            if _is_fingerprint_conflict(exc):
                raise FingerprintConflictError(operation) from exc
            raise StoreError(operation) from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise StoreError(operation) from exc

    async def insert_identity(
        self,
        *,
        fingerprint: str,
        code_hash: str,
        now: datetime | None = None,
    ) -> AnonIdentity:
        now = now or _utc_now()
        identity = AnonIdentity(
            recovery_code_hash=code_hash,
            recovery_code_fingerprint=fingerprint,
            last_active=now,
            created_at=now,
            updated_at=now,
        )
        async with self._translate_errors("insert_identity"):
            self._session.add(identity)
            await self._session.flush()
        return identity

    async def insert_device_link(
        self,
        *,
        device_id: str,
        anon_id: str,
        now: datetime | None = None,
    ) -> DeviceLink:
        now = now or _utc_now()
        link = DeviceLink(
            device_id=device_id,
            anon_id=anon_id,
            last_active=now,
            created_at=now,
            updated_at=now,
        )
        async with self._translate_errors("insert_device_link"):
            self._session.add(link)
            await self._session.flush()
        return link

    async def upsert_device_link(
        self,
        *,
        device_id: str,
        anon_id: str,
        now: datetime | None = None,
    ) -> None:
        now = now or _utc_now()
        async with self._translate_errors("upsert_device_link"):
            dialect_name = self._session.get_bind().dialect.name
            if dialect_name == "postgresql":
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            elif dialect_name == "sqlite":
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            else:
                await self._merge_device_link(device_id=device_id, anon_id=anon_id, now=now)
                return

            statement = dialect_insert(DeviceLink).values(
                device_id=device_id,
                anon_id=anon_id,
                last_active=now,
                created_at=now,
                updated_at=now,
            )
            statement = statement.on_conflict_do_update(
                index_elements=[DeviceLink.device_id],
                set_={
                    "anon_id": statement.excluded.anon_id,
                    "last_active": statement.excluded.last_active,
                    "updated_at": statement.excluded.updated_at,
                },
            )
            await self._session.execute(statement)

    async def _merge_device_link(self, *, device_id: str, anon_id: str, now: datetime) -> None:
        link = await self._session.get(DeviceLink, device_id)
        if link is None:
            self._session.add(
                DeviceLink(
                    device_id=device_id,
                    anon_id=anon_id,
                    last_active=now,
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            link.anon_id = anon_id
            link.last_active = now
            link.updated_at = now
        await self._session.flush()

    async def find_identity_by_device_id(self, device_id: str) -> AnonIdentity | None:
        async with self._translate_errors("find_identity_by_device_id"):
            return await self._session.scalar(
                select(AnonIdentity)
                .join(DeviceLink, DeviceLink.anon_id == AnonIdentity.anon_id)
                .where(DeviceLink.device_id == device_id)
            )

    async def find_identity_by_fingerprint(self, fingerprint: str) -> AnonIdentity | None:
        async with self._translate_errors("find_identity_by_fingerprint"):
            return await self._session.scalar(
                select(AnonIdentity).where(AnonIdentity.recovery_code_fingerprint == fingerprint)
            )

    async def find_identity_by_previous_fingerprint(self, fingerprint: str) -> AnonIdentity | None:
        async with self._translate_errors("find_identity_by_previous_fingerprint"):
            return await self._session.scalar(
                select(AnonIdentity)
                .where(AnonIdentity.recovery_prev_fingerprint == fingerprint)
                .limit(1)
            )

    async def get_identity(self, anon_id: str) -> AnonIdentity | None:
        async with self._translate_errors("get_identity"):
            return await self._session.get(AnonIdentity, anon_id)

    async def touch_last_active(
        self,
        anon_id: str,
        device_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> None:
        now = now or _utc_now()
        async with self._translate_errors("touch_last_active"):
            await self._session.execute(
                update(AnonIdentity)
                .where(AnonIdentity.anon_id == anon_id)
                .values(last_active=now, updated_at=now)
            )
            if device_id:
                await self._session.execute(
                    update(DeviceLink)
                    .where(DeviceLink.anon_id == anon_id, DeviceLink.device_id == device_id)
                    .values(last_active=now, updated_at=now)
                )

    async def replace_recovery_code(
        self,
        anon_id: str,
        *,
        fingerprint: str,
        code_hash: str,
        previous_fingerprint: str | None,
        rotated_at: datetime,
        rotated_by_ip: str | None,
    ) -> None:
        async with self._translate_errors("replace_recovery_code"):
            result = await self._session.execute(
                update(AnonIdentity)
                .where(AnonIdentity.anon_id == anon_id)
                .values(
                    recovery_code_hash=code_hash,
                    recovery_code_fingerprint=fingerprint,
                    recovery_prev_fingerprint=previous_fingerprint,
                    recovery_rotated_at=rotated_at,
                    recovery_rotated_by_ip=rotated_by_ip,
                    updated_at=rotated_at,
                )
            )
        if result.rowcount == 0:
            raise StoreError("replace_recovery_code")

    async def commit(self) -> None:
        async with self._translate_errors("commit"):
            await self._session.commit()
