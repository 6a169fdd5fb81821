from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.models import AuditLog, MailAccount, MailProvider, User
from inboxpay.oauth.base import OAuthProvider
from inboxpay.oauth.vault import TokenVault

logger = logging.getLogger("inboxpay.oauth.accounts")


@dataclass
class OAuthResult:
    user: User
    account: MailAccount
    created: bool


async def complete_oauth(
    db: Session,
    provider: OAuthProvider,
    code: str,
    *,
    mail_provider: MailProvider = MailProvider.gmail,
    vault: TokenVault | None = None,
) -> OAuthResult:
    """Finish an authorization-code flow and upsert the user plus mail account."""
    vault = vault or TokenVault(db, provider=provider)

    tokens = await provider.exchange_code(code)
    info = await provider.fetch_userinfo(tokens.access_token)

    user = db.execute(select(User).where(User.email == info.email)).scalar_one_or_none()
    if not user:
        user = User(email=info.email)
        db.add(user)
        db.flush()
    user.name = info.name or user.name
    user.picture = info.picture or user.picture

    account = db.execute(
        select(MailAccount).where(
            MailAccount.user_id == user.id,
            MailAccount.provider == mail_provider.value,
            MailAccount.email == info.email,
        )
    ).scalar_one_or_none()
    created = account is None
    if created:
        account = MailAccount(user_id=user.id, provider=mail_provider.value, email=info.email)
        db.add(account)

    account.oauth_id = info.provider_user_id
    account.is_active = True
    # Google omits refresh_token on re-consent sometimes; store_tokens keeps the old one then.
    vault.store_tokens(
        account,
        access_token=tokens.access_token,
        expires_in=tokens.expires_in,
        scope=tokens.scope,
        refresh_token=tokens.refresh_token,
    )
    db.flush()

    db.add(
        AuditLog(
            user_id=user.id,
            action="mail_account_connected",
            meta={"provider": mail_provider.value, "email": info.email, "created": created},
        )
    )
    db.commit()
    logger.info(
        "oauth complete user_id=%s account_id=%s provider=%s created=%s has_refresh=%s",
        user.id,
        account.id,
        mail_provider.value,
        created,
        bool(account.refresh_token_enc),
    )
    return OAuthResult(user=user, account=account, created=created)
