from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

import httpx

from inboxpay.config import settings
from inboxpay.errors import ProviderError, TransientProviderError

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
RETRY_STATUSES = {429, 500, 502, 503, 504}

logger = logging.getLogger("inboxpay.gmail_client")


def b64url_decode(data: str) -> bytes:
    """Gmail bodies use the URL-safe alphabet and frequently drop padding."""
    s = data.replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    return base64.b64decode(s)


class GmailClient:
    """Thin async wrapper over the Gmail REST endpoints sync needs.

    Pass ``client`` to reuse a shared ``httpx.AsyncClient`` (tests hand in one
    built on ``httpx.MockTransport``); otherwise the client owns its own and
    must be closed with ``aclose`` or used as an async context manager.
    """

    def __init__(
        self,
        access_token: str,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = GMAIL_API_BASE,
        tries: int = 3,
        backoff: float = 0.8,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.tries = tries
        self.backoff = backoff

    async def __aenter__(self) -> "GmailClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict:
        url = f"{self.base_url}{path}"
        delay = self.backoff
        last_err: str = ""
        for attempt in range(1, self.tries + 1):
            try:
                resp = await self._client.get(url, params=params, headers=self._headers)
            except httpx.TransportError as e:
                last_err = f"{type(e).__name__}: {e}"
            else:
                if resp.status_code == 200:
                    return resp.json()
                if resp.status_code not in RETRY_STATUSES:
                    raise ProviderError(
                        f"Gmail GET {path} failed: {resp.status_code} {resp.text[:300]}",
                        status_code=resp.status_code,
                    )
                last_err = f"status={resp.status_code}"

            if attempt == self.tries:
                break
            logger.info("gmail retry path=%s attempt=%s error=%s", path, attempt, last_err)
            await asyncio.sleep(delay)
            delay *= 1.8

        raise TransientProviderError(f"Gmail GET {path} failed after {self.tries} tries: {last_err}")

    async def list_messages(self, query: str, page_token: str | None = None, max_results: int = 100) -> dict:
        params: dict[str, Any] = {"q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        return await self._get("/messages", params)

    async def get_message(self, message_id: str, format: str = "full") -> dict:
        return await self._get(f"/messages/{message_id}", {"format": format})

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        data = await self._get(f"/messages/{message_id}/attachments/{attachment_id}")
        encoded = data.get("data")
        if not encoded:
            return b""
        return b64url_decode(encoded)
