from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx
from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.config import settings
from inboxpay.errors import OAuthError, ReauthRequiredError, TransientProviderError
from inboxpay.models import AuditLog, MailAccount, MailProvider
from inboxpay.oauth.base import OAuthProvider
from inboxpay.oauth.registry import provider_for_mail
from inboxpay.security import TokenCipher, token_cipher

logger = logging.getLogger("inboxpay.oauth.vault")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenStatus:
    has_token: bool
    has_refresh_token: bool
    is_expired: bool
    needs_reauth: bool


@dataclass
class RefreshSummary:
    success: int = 0
    failed: int = 0


class TokenVault:
    """Keeps one access/refresh token pair per MailAccount usable.

    Tokens are refreshed lazily (``get_valid_access_token``) or in bulk
    (``refresh_all``). A refresh the provider rejects flips ``needs_reauth``
    and raises ``ReauthRequiredError``; a stale token is never handed out.
    """

    def __init__(
        self,
        db: Session,
        *,
        provider: OAuthProvider | None = None,
        cipher: TokenCipher | None = None,
        margin_seconds: int | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.db = db
        self._provider = provider
        self.cipher = cipher or token_cipher
        self.margin_ms = 1000 * (margin_seconds if margin_seconds is not None else settings.TOKEN_REFRESH_MARGIN_SECONDS)
        self.clock = clock

    def provider_for(self, account: MailAccount) -> OAuthProvider:
        return self._provider or provider_for_mail(account.provider)

    def is_expired(self, account: MailAccount) -> bool:
        if not account.access_token or account.expires_at is None:
            return True
        return self.clock() >= account.expires_at - self.margin_ms

    def check_validity(self, account: MailAccount) -> TokenStatus:
        return TokenStatus(
            has_token=bool(account.access_token),
            has_refresh_token=bool(account.refresh_token_enc),
            is_expired=self.is_expired(account),
            needs_reauth=bool(account.needs_reauth),
        )

    def store_tokens(
        self,
        account: MailAccount,
        *,
        access_token: str,
        expires_in: int | None,
        scope: str | None = None,
        refresh_token: str | None = None,
    ) -> None:
        account.access_token = access_token
        account.expires_at = self.clock() + 1000 * expires_in if expires_in else None
        if scope:
            account.scope = scope
        if refresh_token:
            account.refresh_token_enc = self.cipher.encrypt(refresh_token)
        account.needs_reauth = False

    def _mark_reauth(self, account: MailAccount, reason: str) -> ReauthRequiredError:
        account.needs_reauth = True
        self.db.commit()
        logger.warning(
            "token_refresh needs_reauth account_id=%s provider=%s reason=%s",
            account.id,
            account.provider,
            reason,
        )
        return ReauthRequiredError(
            f"Reauthentication required for {account.email}: {reason}",
            account_id=account.id,
            provider=account.provider,
        )

    async def refresh_account(self, account: MailAccount) -> MailAccount:
        if not account.refresh_token_enc:
            raise self._mark_reauth(account, "no refresh token")

        try:
            refresh_token = self.cipher.decrypt(account.refresh_token_enc)
        except InvalidToken as e:
            # encrypted under a different TOKEN_ENCRYPTION_KEY, or corrupted
            raise self._mark_reauth(account, "refresh token unreadable") from e
        provider = self.provider_for(account)
        try:
            tokens = await provider.refresh(refresh_token)
        except OAuthError as e:
            raise self._mark_reauth(account, str(e)) from e
        except httpx.TransportError as e:
            # nothing the user can fix; leave needs_reauth alone
            raise TransientProviderError(f"Token refresh failed: {e}") from e

        self.store_tokens(
            account,
            access_token=tokens.access_token,
            expires_in=tokens.expires_in,
            scope=tokens.scope,
            refresh_token=tokens.refresh_token,
        )
        self.db.commit()
        logger.info("token_refresh ok account_id=%s expires_at=%s", account.id, account.expires_at)
        return account

    async def get_valid_access_token(self, account: MailAccount) -> str:
        if not self.is_expired(account):
            return account.access_token
        await self.refresh_account(account)
        return account.access_token

    async def refresh_all(self, provider: MailProvider | str = MailProvider.gmail) -> RefreshSummary:
        provider_value = MailProvider(provider).value
        accounts = self.db.execute(
            select(MailAccount).where(MailAccount.provider == provider_value, MailAccount.is_active.is_(True))
        ).scalars().all()

        summary = RefreshSummary()
        for account in accounts:
            try:
                await self.refresh_account(account)
                summary.success += 1
            except Exception as e:
                self.db.rollback()
                summary.failed += 1
                logger.warning("refresh_all account failed account_id=%s error=%s", account.id, e)

        self.db.add(
            AuditLog(
                user_id=None,
                action="tokens_refreshed",
                meta={"provider": provider_value, "success": summary.success, "failed": summary.failed},
            )
        )
        self.db.commit()
        logger.info("refresh_all done provider=%s success=%s failed=%s", provider_value, summary.success, summary.failed)
        return summary
