"""Anonymous identities and device links

Revision ID: 0001_anon_identities
Revises:
Create Date: 2026-10-18 10:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_anon_identities"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "anon_identities",
        sa.Column("anon_id", sa.String(length=36), nullable=False),
        sa.Column("recovery_code_hash", sa.String(length=255), nullable=False),
        sa.Column("recovery_code_fingerprint", sa.String(length=64), nullable=False),
        sa.Column(
            "last_active",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("anon_id"),
        sa.UniqueConstraint(
            "recovery_code_fingerprint",
            name="uq_anon_identities_recovery_code_fingerprint",
        ),
    )

    op.create_table(
        "anon_device_links",
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("anon_id", sa.String(length=36), nullable=False),
        sa.Column(
            "last_active",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["anon_id"], ["anon_identities.anon_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("device_id"),
    )
    op.create_index("ix_anon_device_links_anon_id", "anon_device_links", ["anon_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_anon_device_links_anon_id", table_name="anon_device_links")
    op.drop_table("anon_device_links")
    op.drop_table("anon_identities")
