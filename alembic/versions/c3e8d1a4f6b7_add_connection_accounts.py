"""add_connection_accounts

Revision ID: c3e8d1a4f6b7
Revises: a7c1e3f5b9d2
Create Date: 2026-10-19 15:30:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "c3e8d1a4f6b7"
down_revision: Union[str, None] = "a7c1e3f5b9d2"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("plaid_connections", sa.Column("accounts", sa.JSON(), nullable=True))


def downgrade() -> None:
    op.drop_column("plaid_connections", "accounts")
