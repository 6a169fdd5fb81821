"""Add sync_started_at claim column to mail_accounts

Revision ID: 0002_sync_claim
Revises: 0001_init
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0002_sync_claim"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("mail_accounts", sa.Column("sync_started_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column("mail_accounts", "sync_started_at")
