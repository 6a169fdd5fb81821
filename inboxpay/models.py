import enum
from datetime import datetime, timezone

from sqlalchemy import (
    String, DateTime, Boolean, Integer, BigInteger, ForeignKey,
    Numeric, Text, UniqueConstraint, LargeBinary, JSON
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from inboxpay.db import Base


def utcnow() -> datetime:
    """Naive UTC; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MailProvider(str, enum.Enum):
    gmail = "gmail"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    mail_accounts = relationship("MailAccount", back_populates="user", cascade="all, delete-orphan")


class MailAccount(Base):
    __tablename__ = "mail_accounts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    provider: Mapped[str] = mapped_column(String(20), default=MailProvider.gmail.value)
    email: Mapped[str] = mapped_column(String(320), index=True)
    oauth_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    # epoch milliseconds
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    scope: Mapped[str] = mapped_column(Text, default="")

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    needs_reauth: Mapped[bool] = mapped_column(Boolean, default=False)

    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # set while a sync run holds the account; cleared when it finishes
    sync_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="mail_accounts")
    emails = relationship("Email", back_populates="mail_account", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (UniqueConstraint("user_id", "provider", "email", name="uq_mail_account"),)


class Email(Base):
    __tablename__ = "emails"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    mail_account_id: Mapped[int] = mapped_column(ForeignKey("mail_accounts.id", ondelete="CASCADE"), index=True)

    message_id: Mapped[str] = mapped_column(String(128), index=True)
    thread_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    from_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    cc_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    search_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    label_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # provider internalDate is epoch milliseconds => BIGINT
    internal_date_ms: Mapped[int] = mapped_column(BigInteger, index=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    has_images: Mapped[bool] = mapped_column(Boolean, default=False)

    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    mail_account = relationship("MailAccount", back_populates="emails")
    attachments = relationship(
        "EmailAttachment", back_populates="email", cascade="all, delete-orphan", passive_deletes=True
    )
    payment_report = relationship(
        "PaymentReport", back_populates="email", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (UniqueConstraint("mail_account_id", "message_id", name="uq_email_account_msg"),)


class EmailAttachment(Base):
    __tablename__ = "email_attachments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email_id: Mapped[int] = mapped_column(ForeignKey("emails.id", ondelete="CASCADE"), index=True)

    attachment_id: Mapped[str] = mapped_column(String(512))
    filename: Mapped[str] = mapped_column(String(512), default="unknown")
    mime_type: Mapped[str | None] = mapped_column(String(256), nullable=True)
    size: Mapped[int] = mapped_column(Integer, default=0)
    content_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_inline: Mapped[bool] = mapped_column(Boolean, default=False)
    data: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    email = relationship("Email", back_populates="attachments")

    __table_args__ = (UniqueConstraint("email_id", "attachment_id", name="uq_attachment_email"),)


class PaymentReport(Base):
    __tablename__ = "payment_reports"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email_id: Mapped[int] = mapped_column(ForeignKey("emails.id", ondelete="CASCADE"), unique=True, index=True)

    is_payment: Mapped[bool] = mapped_column(Boolean, default=False)
    amount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    merchant: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    card_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    primary_report_id: Mapped[int | None] = mapped_column(
        ForeignKey("payment_reports.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    email = relationship("Email", back_populates="payment_report")
    primary_report = relationship("PaymentReport", remote_side=[id])


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(64))
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
