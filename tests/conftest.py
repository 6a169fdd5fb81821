"""Pytest fixtures: in-memory DB, fake Gmail/OAuth/classifier, generated images."""
import os

from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LLM_PROVIDER", "none")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

import base64
import io
import time
from datetime import datetime
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from PIL import Image

import inboxpay.models  # noqa: F401
from inboxpay.db import Base, SessionLocal, engine
from inboxpay.errors import ClassifierError, OAuthError
from inboxpay.gmail_client import GmailClient
from inboxpay.llm import PaymentInfo
from inboxpay.models import MailAccount, User
from inboxpay.oauth.base import OAuthProvider, OAuthProviderName, OAuthTokens, OAuthUserInfo
from inboxpay.security import token_cipher


def b64url(data) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def build_message(
    message_id: str,
    *,
    subject: str = "Hello",
    sender: str = "Shop <shop@example.com>",
    text: str | None = "plain body",
    html: str | None = None,
    internal_ms: int | None = None,
    labels: list[str] | None = None,
    extra_parts: list[dict] | None = None,
) -> dict:
    parts = []
    if text is not None:
        parts.append({"partId": "0", "mimeType": "text/plain", "body": {"data": b64url(text), "size": len(text)}})
    if html is not None:
        parts.append({"partId": "1", "mimeType": "text/html", "body": {"data": b64url(html), "size": len(html)}})
    parts.extend(extra_parts or [])
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "snippet": (text or "")[:40],
        "internalDate": str(internal_ms if internal_ms is not None else int(time.time() * 1000)),
        "payload": {
            "partId": "",
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "me@example.com"},
                {"name": "Subject", "value": subject},
            ],
            "body": {"size": 0},
            "parts": parts,
        },
    }


class FakeGmail:
    """Gmail REST stand-in served through httpx.MockTransport."""

    def __init__(self):
        self.messages: dict[str, dict] = {}
        self.attachments: dict[tuple[str, str], bytes] = {}
        # when set, list calls walk these pages in order instead of returning everything
        self.pages: list[list[str]] | None = None
        self.list_calls: list[dict] = []
        self.get_calls: list[str] = []
        self.fail_messages: set[str] = set()
        self.fail_attachments: set[str] = set()

    def add(self, raw: dict) -> dict:
        self.messages[raw["id"]] = raw
        return raw

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = urlsplit(str(request.url)).path
        params = {k: v[0] for k, v in parse_qs(urlsplit(str(request.url)).query).items()}
        segments = path.split("/messages", 1)[1].strip("/").split("/") if "/messages" in path else []

        if segments == [""]:
            self.list_calls.append(params)
            if self.pages is None:
                ids = list(self.messages)
                body = {"messages": [{"id": i} for i in ids], "resultSizeEstimate": len(ids)} if ids else {"resultSizeEstimate": 0}
                return httpx.Response(200, json=body)
            idx = int(params.get("pageToken", "0") or 0)
            body = {"messages": [{"id": i} for i in self.pages[idx]]}
            if idx + 1 < len(self.pages):
                body["nextPageToken"] = str(idx + 1)
            return httpx.Response(200, json=body)

        if len(segments) == 1:
            mid = segments[0]
            self.get_calls.append(mid)
            if mid in self.fail_messages:
                return httpx.Response(500, json={"error": {"message": "backend error"}})
            if mid not in self.messages:
                return httpx.Response(404, json={"error": {"message": "not found"}})
            return httpx.Response(200, json=self.messages[mid])

        if len(segments) == 3 and segments[1] == "attachments":
            mid, aid = segments[0], segments[2]
            if aid in self.fail_attachments:
                return httpx.Response(500, json={"error": {"message": "attachment error"}})
            data = self.attachments.get((mid, aid))
            if data is None:
                return httpx.Response(404, json={"error": {"message": "not found"}})
            return httpx.Response(200, json={"data": b64url(data), "size": len(data)})

        return httpx.Response(404, json={"error": {"message": f"unexpected path {path}"}})

    def client_factory(self):
        def factory(access_token: str) -> GmailClient:
            client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
            return GmailClient(access_token, client=client, backoff=0)

        return factory


class FakeOAuthProvider(OAuthProvider):
    name = OAuthProviderName.google

    def __init__(self, *, fail: bool = False, refresh_token: str | None = "new-refresh", email: str = "user@example.com"):
        self.fail = fail
        self.refresh_token = refresh_token
        self.email = email
        self.refresh_calls: list[str] = []

    def authorization_url(self, state=None) -> str:
        return f"https://auth.example.com/?state={state or ''}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        if self.fail:
            raise OAuthError("bad code")
        return OAuthTokens(access_token=f"access-{code}", refresh_token=self.refresh_token, expires_in=3600, scope="s1 s2")

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls.append(refresh_token)
        if self.fail:
            raise OAuthError("invalid_grant")
        return OAuthTokens(access_token=f"refreshed-{len(self.refresh_calls)}", expires_in=3600, scope="s1")

    async def fetch_userinfo(self, access_token: str) -> OAuthUserInfo:
        return OAuthUserInfo(provider=self.name, provider_user_id="g-123", email=self.email, name="Test User")


class FakeLLM:
    """Returns canned PaymentInfo keyed by subject; records every call."""

    def __init__(self, responses: dict[str, dict] | None = None, default: dict | None = None, fail_subjects=()):
        self.responses = responses or {}
        self.default = default or {"isPayment": False, "summary": "not a payment"}
        self.fail_subjects = set(fail_subjects)
        self.calls: list[dict] = []

    async def analyze_payment_email(self, *, sender, subject, body, html_body=None, files=None) -> PaymentInfo:
        self.calls.append({"sender": sender, "subject": subject, "files": list(files or [])})
        if subject in self.fail_subjects:
            raise ClassifierError("classifier down")
        return PaymentInfo.model_validate(self.responses.get(subject, self.default))


def make_png(width: int, height: int) -> bytes:
    # random pixels so the PNG cannot compress below the tracking-pixel byte floor
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    u = User(email="user@example.com", name="Test User")
    db.add(u)
    db.commit()
    return u


def _account(db, user, *, email="user@example.com", expires_in_s=3600, refresh_token="refresh-1", access_token="access-1"):
    acct = MailAccount(
        user_id=user.id,
        provider="gmail",
        email=email,
        access_token=access_token,
        refresh_token_enc=token_cipher.encrypt(refresh_token) if refresh_token else None,
        expires_at=int(time.time() * 1000) + expires_in_s * 1000,
        scope="https://www.googleapis.com/auth/gmail.readonly",
    )
    db.add(acct)
    db.commit()
    return acct


@pytest.fixture
def account_factory(db, user):
    def factory(**kwargs):
        return _account(db, user, **kwargs)

    return factory


@pytest.fixture
def account(account_factory):
    return account_factory()


@pytest.fixture
def fake_gmail():
    return FakeGmail()


@pytest.fixture
def fake_provider():
    return FakeOAuthProvider()


@pytest.fixture
def provider_factory():
    return FakeOAuthProvider


@pytest.fixture
def png():
    return make_png


@pytest.fixture
def message_builder():
    return build_message


@pytest.fixture
def llm_factory():
    return FakeLLM


@pytest.fixture
def email_factory(db, user, account):
    """Insert an Email row directly, bypassing sync."""
    from inboxpay.models import Email

    counter = {"n": 0}

    def factory(*, subject="Receipt", received_at=None, html_body=None, body="body", owner=None, mail_account=None, **kwargs):
        counter["n"] += 1
        received_at = received_at or datetime(2026, 10, 1, 12, 0, 0)
        e = Email(
            user_id=(owner or user).id,
            mail_account_id=(mail_account or account).id,
            message_id=f"m-{counter['n']}",
            subject=subject,
            from_address="Shop <shop@example.com>",
            body=body,
            html_body=html_body,
            search_text=f"{subject}\n{body}".lower(),
            internal_date_ms=int(received_at.timestamp() * 1000),
            received_at=received_at,
            **kwargs,
        )
        db.add(e)
        db.commit()
        return e

    return factory
