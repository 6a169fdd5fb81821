from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from typing import Any


class OAuthProviderName(str, enum.Enum):
    google = "google"


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None
    id_token: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_token_response(cls, data: dict[str, Any]) -> "OAuthTokens":
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            token_type=data.get("token_type"),
            scope=data.get("scope"),
            id_token=data.get("id_token"),
            raw=data,
        )


@dataclass
class OAuthUserInfo:
    provider: OAuthProviderName
    provider_user_id: str
    email: str
    name: str | None = None
    picture: str | None = None


class OAuthProvider(abc.ABC):
    """One OAuth2 authorization server.

    Implementations only talk HTTP; token bookkeeping on MailAccount rows lives
    in TokenVault so every provider gets the same refresh/reauth behavior.
    """

    name: OAuthProviderName

    @abc.abstractmethod
    def authorization_url(self, state: str | None = None) -> str:
        ...

    @abc.abstractmethod
    async def exchange_code(self, code: str) -> OAuthTokens:
        ...

    @abc.abstractmethod
    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Raise OAuthError when the server rejects the refresh token."""

    @abc.abstractmethod
    async def fetch_userinfo(self, access_token: str) -> OAuthUserInfo:
        ...
