from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from anon_identity.db import Base

FINGERPRINT_UNIQUE_CONSTRAINT = "uq_anon_identities_recovery_code_fingerprint"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_anon_id() -> str:
    return str(uuid4())


class AnonIdentity(Base):
    __tablename__ = "anon_identities"
    __table_args__ = (
        UniqueConstraint("recovery_code_fingerprint", name=FINGERPRINT_UNIQUE_CONSTRAINT),
    )

    anon_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_anon_id)
    recovery_code_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    recovery_code_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    recovery_prev_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    recovery_rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recovery_rotated_by_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_active: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utc_now,
    )

    device_links: Mapped[list[DeviceLink]] = relationship(
        back_populates="identity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DeviceLink(Base):
    __tablename__ = "anon_device_links"

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    anon_id: Mapped[str] = mapped_column(
        ForeignKey("anon_identities.anon_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    last_active: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utc_now,
    )

    identity: Mapped[AnonIdentity] = relationship(back_populates="device_links")
