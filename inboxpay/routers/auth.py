from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.db import get_db
from inboxpay.deps import get_current_user_id
from inboxpay.models import MailAccount
from inboxpay.oauth.accounts import complete_oauth
from inboxpay.oauth.registry import get_provider
from inboxpay.oauth.vault import TokenVault
from inboxpay.schemas import AuthOut, AuthUrlOut, MailAccountOut, TokenStatusOut
from inboxpay.security import create_access_token

router = APIRouter(prefix="/auth", tags=["auth"])


class AuthCodeIn(BaseModel):
    code: str


def _account(db: Session, user_id: int, account_id: int) -> MailAccount:
    acct = db.execute(
        select(MailAccount).where(MailAccount.id == account_id, MailAccount.user_id == user_id)
    ).scalar_one_or_none()
    if not acct:
        raise HTTPException(status_code=404, detail="Mail account not found")
    return acct


@router.get("/{provider}/url", response_model=AuthUrlOut)
def authorization_url(provider: str, state: str | None = Query(None, max_length=256)):
    p = get_provider(provider)
    return AuthUrlOut(provider=p.name.value, url=p.authorization_url(state))


async def _finish(provider: str, code: str, db: Session) -> AuthOut:
    result = await complete_oauth(db, get_provider(provider), code)
    token = create_access_token(subject=result.user.email, user_id=result.user.id)
    return AuthOut(access_token=token, user_email=result.user.email, mail_account_id=result.account.id)


@router.get("/{provider}/callback", response_model=AuthOut)
async def oauth_callback(provider: str, code: str, db: Session = Depends(get_db)):
    return await _finish(provider, code, db)


@router.post("/{provider}/code", response_model=AuthOut)
async def oauth_code(provider: str, payload: AuthCodeIn, db: Session = Depends(get_db)):
    """Same as the callback, for clients that run the consent screen themselves."""
    return await _finish(provider, payload.code, db)


@router.get("/accounts", response_model=list[MailAccountOut])
def list_accounts(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    rows = db.execute(select(MailAccount).where(MailAccount.user_id == user_id).order_by(MailAccount.id)).scalars()
    return [MailAccountOut.model_validate(a) for a in rows]


@router.get("/accounts/{account_id}/token-status", response_model=TokenStatusOut)
def token_status(account_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    acct = _account(db, user_id, account_id)
    status = TokenVault(db).check_validity(acct)
    return TokenStatusOut(
        mail_account_id=acct.id,
        email=acct.email,
        has_token=status.has_token,
        has_refresh_token=status.has_refresh_token,
        is_expired=status.is_expired,
        needs_reauth=status.needs_reauth,
    )


@router.post("/accounts/{account_id}/refresh", response_model=TokenStatusOut)
async def refresh_token(account_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    acct = _account(db, user_id, account_id)
    vault = TokenVault(db)
    await vault.refresh_account(acct)
    status = vault.check_validity(acct)
    return TokenStatusOut(
        mail_account_id=acct.id,
        email=acct.email,
        has_token=status.has_token,
        has_refresh_token=status.has_refresh_token,
        is_expired=status.is_expired,
        needs_reauth=status.needs_reauth,
    )
