from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx

from inboxpay.config import settings
from inboxpay.errors import OAuthError
from inboxpay.oauth.base import OAuthProvider, OAuthProviderName, OAuthTokens, OAuthUserInfo
from inboxpay.text_utils import mask

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

logger = logging.getLogger(__name__)


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return err.get("message") or str(err)
        return data.get("error_description") or err or resp.text
    return resp.text


class GoogleOAuthProvider(OAuthProvider):
    name = OAuthProviderName.google

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        scopes: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 20,
    ):
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        self.redirect_uri = redirect_uri if redirect_uri is not None else settings.GOOGLE_REDIRECT_URI
        self.scopes = scopes if scopes is not None else settings.google_scopes
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        if not self.client_id or not self.client_secret or not self.redirect_uri:
            raise OAuthError("Missing Google OAuth env vars (client id/secret/redirect uri).")

        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        async with self._client() as client:
            resp = await client.post(TOKEN_URL, data=data)

        if resp.status_code != 200:
            # Never log the auth code or the secret.
            logger.error(
                "Google token exchange failed: status=%s body=%s redirect_uri=%s client_id_prefix=%s",
                resp.status_code,
                resp.text,
                self.redirect_uri,
                mask(self.client_id, keep=12),
            )
            raise OAuthError(f"Token exchange failed: {resp.status_code} {_error_text(resp)}")

        token_json = resp.json()
        if not token_json.get("access_token"):
            raise OAuthError("No access_token returned by Google")
        return OAuthTokens.from_token_response(token_json)

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        async with self._client() as client:
            resp = await client.post(TOKEN_URL, data=data)

        if resp.status_code != 200:
            logger.warning("Google token refresh rejected: status=%s error=%s", resp.status_code, _error_text(resp))
            raise OAuthError(f"Failed to refresh token: {_error_text(resp)}")

        token_json = resp.json()
        if not token_json.get("access_token"):
            raise OAuthError("No access_token returned by Google refresh")
        return OAuthTokens.from_token_response(token_json)

    async def fetch_userinfo(self, access_token: str) -> OAuthUserInfo:
        async with self._client() as client:
            resp = await client.get(USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
        if resp.status_code != 200:
            logger.error("Google userinfo failed: status=%s body=%s", resp.status_code, resp.text)
            raise OAuthError(f"Userinfo failed: {resp.status_code} {_error_text(resp)}")

        data = resp.json()
        email = data.get("email")
        provider_user_id = data.get("id") or data.get("sub")
        if not email or not provider_user_id:
            raise OAuthError("Google userinfo missing email/id")
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=str(provider_user_id),
            email=email,
            name=data.get("name"),
            picture=data.get("picture"),
        )
