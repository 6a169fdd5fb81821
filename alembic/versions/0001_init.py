"""init
Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("picture", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "mail_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False, server_default="gmail"),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("oauth_id", sa.String(length=128), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.BigInteger(), nullable=True),
        sa.Column("scope", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("needs_reauth", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "provider", "email", name="uq_mail_account"),
    )
    op.create_index("ix_mail_accounts_user_id", "mail_accounts", ["user_id"])
    op.create_index("ix_mail_accounts_email", "mail_accounts", ["email"])

    op.create_table(
        "emails",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "mail_account_id", sa.Integer(), sa.ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("message_id", sa.String(length=128), nullable=False),
        sa.Column("thread_id", sa.String(length=128), nullable=True),
        sa.Column("from_address", sa.Text(), nullable=True),
        sa.Column("to_address", sa.Text(), nullable=True),
        sa.Column("cc_address", sa.Text(), nullable=True),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("html_body", sa.Text(), nullable=True),
        sa.Column("search_text", sa.Text(), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("label_ids", sa.JSON(), nullable=True),
        sa.Column("internal_date_ms", sa.BigInteger(), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("has_attachments", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("has_images", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("analyzed_at", sa.DateTime(), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("mail_account_id", "message_id", name="uq_email_account_msg"),
    )
    op.create_index("ix_emails_user_id", "emails", ["user_id"])
    op.create_index("ix_emails_mail_account_id", "emails", ["mail_account_id"])
    op.create_index("ix_emails_message_id", "emails", ["message_id"])
    op.create_index("ix_emails_internal_date_ms", "emails", ["internal_date_ms"])
    op.create_index("ix_emails_analyzed_at", "emails", ["analyzed_at"])

    op.create_table(
        "email_attachments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("attachment_id", sa.String(length=512), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("mime_type", sa.String(length=256), nullable=True),
        sa.Column("size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_id", sa.String(length=512), nullable=True),
        sa.Column("is_inline", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("data", sa.LargeBinary(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email_id", "attachment_id", name="uq_attachment_email"),
    )
    op.create_index("ix_email_attachments_email_id", "email_attachments", ["email_id"])

    op.create_table(
        "payment_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_payment", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=10), nullable=True),
        sa.Column("merchant", sa.String(length=256), nullable=True),
        sa.Column("payment_date", sa.DateTime(), nullable=True),
        sa.Column("card_type", sa.String(length=128), nullable=True),
        sa.Column("payment_type", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "primary_report_id",
            sa.Integer(),
            sa.ForeignKey("payment_reports.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payment_reports_email_id", "payment_reports", ["email_id"], unique=True)
    op.create_index("ix_payment_reports_payment_date", "payment_reports", ["payment_date"])
    op.create_index("ix_payment_reports_is_duplicate", "payment_reports", ["is_duplicate"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("audit_log")
    op.drop_index("ix_payment_reports_is_duplicate", table_name="payment_reports")
    op.drop_index("ix_payment_reports_payment_date", table_name="payment_reports")
    op.drop_index("ix_payment_reports_email_id", table_name="payment_reports")
    op.drop_table("payment_reports")
    op.drop_index("ix_email_attachments_email_id", table_name="email_attachments")
    op.drop_table("email_attachments")
    op.drop_index("ix_emails_analyzed_at", table_name="emails")
    op.drop_index("ix_emails_internal_date_ms", table_name="emails")
    op.drop_index("ix_emails_message_id", table_name="emails")
    op.drop_index("ix_emails_mail_account_id", table_name="emails")
    op.drop_index("ix_emails_user_id", table_name="emails")
    op.drop_table("emails")
    op.drop_index("ix_mail_accounts_email", table_name="mail_accounts")
    op.drop_index("ix_mail_accounts_user_id", table_name="mail_accounts")
    op.drop_table("mail_accounts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
