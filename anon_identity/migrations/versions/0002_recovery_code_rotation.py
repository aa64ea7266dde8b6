"""Track recovery code rotation

Revision ID: 0002_recovery_code_rotation
Revises: 0001_anon_identities
Create Date: 2026-10-18 10:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_recovery_code_rotation"
down_revision: Union[str, None] = "0001_anon_identities"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("anon_identities", sa.Column("recovery_prev_fingerprint", sa.String(length=64), nullable=True))
    op.add_column("anon_identities", sa.Column("recovery_rotated_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("anon_identities", sa.Column("recovery_rotated_by_ip", sa.String(length=64), nullable=True))
    op.create_index(
        "ix_anon_identities_recovery_prev_fingerprint",
        "anon_identities",
        ["recovery_prev_fingerprint"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_anon_identities_recovery_prev_fingerprint", table_name="anon_identities")
    op.drop_column("anon_identities", "recovery_rotated_by_ip")
    op.drop_column("anon_identities", "recovery_rotated_at")
    op.drop_column("anon_identities", "recovery_prev_fingerprint")
