"""Add last_totp_step to mfa_configs so accepted TOTP codes cannot be replayed.

Revision ID: 20261020000000
Revises: 20261012000000
Create Date: 2026-10-20

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "20261020000000"
down_revision: Union[str, None] = "20261012000000"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("mfa_configs", sa.Column("last_totp_step", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    op.drop_column("mfa_configs", "last_totp_step")
