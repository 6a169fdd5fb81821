from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from inboxpay.config import settings
from inboxpay.errors import ClassifierError
from inboxpay.services.content_collector import EvidenceFile
from inboxpay.text_utils import strip_html

logger = logging.getLogger("inboxpay.llm")

CATEGORIES = ("transport", "living", "hobby", "other")
PAYMENT_TYPES = ("card_online", "card_offline", "subscription", "autopay", "transfer", "mobile", "other")


class PaymentInfo(BaseModel):
    """Classifier verdict for one email. Accepts the camelCase keys the model emits."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_payment: bool = Field(default=False, alias="isPayment")
    amount: float | None = None
    currency: str | None = None
    merchant: str | None = None
    payment_date: str | None = Field(default=None, alias="paymentDate")
    card_type: str | None = Field(default=None, alias="cardType")
    payment_type: str | None = Field(default=None, alias="paymentType")
    category: str | None = None
    summary: str | None = None

    @field_validator("is_payment", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Any:
        if isinstance(v, str):
            s = v.replace(",", "").strip()
            if not s:
                return None
            try:
                return float(s)
            except ValueError:
                return None
        return v

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper() or None
        return v

    @field_validator("merchant", "card_type", "summary", "payment_date", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip().lower()
        return v if v in CATEGORIES else "other"

    @field_validator("payment_type", mode="before")
    @classmethod
    def _payment_type(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip().lower()
        return v if v in PAYMENT_TYPES else "other"


class LLM(Protocol):
    async def analyze_payment_email(
        self,
        *,
        sender: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        files: list[EvidenceFile] | None = None,
    ) -> PaymentInfo:
        ...


class NoopLLM:
    async def analyze_payment_email(
        self,
        *,
        sender: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        files: list[EvidenceFile] | None = None,
    ) -> PaymentInfo:
        return PaymentInfo(is_payment=False, summary="classifier disabled")


SYSTEM_PROMPT = (
    "You analyze emails and decide whether they are about a payment, purchase or bill the "
    "recipient was charged for. Use the email text, attached images (receipts, payment "
    "screenshots) and PDFs (invoices, receipts). Promotions and newsletters that only "
    "mention prices are not payments. Respond with valid JSON only."
)

USER_PROMPT = """Analyze this email. Check the text body, images and PDF files.

FROM: {sender}
SUBJECT: {subject}

TEXT BODY:
{body}

{html_section}
Respond with JSON:
{{
  "isPayment": true/false,
  "amount": number or null,
  "currency": "ISO 4217 code or null",
  "merchant": "string or null",
  "paymentDate": "YYYY-MM-DD or null",
  "cardType": "string or null",
  "paymentType": "card_online|card_offline|subscription|autopay|transfer|mobile|other or null",
  "category": "transport|living|hobby|other or null",
  "summary": "2-3 sentence summary"
}}
Always include isPayment and summary, even when the email is not a payment."""


class OpenAIChatCompletionsLLM:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def _content(self, sender: str, subject: str, body: str, html_body: str | None, files: list[EvidenceFile]) -> list[dict]:
        html_section = ""
        if html_body:
            html_section = "HTML BODY (excerpt):\n" + " ".join(strip_html(html_body).split())[:2000] + "\n"
        text = USER_PROMPT.format(
            sender=sender or "",
            subject=subject or "",
            body=(body or "(no text body)")[:3000],
            html_section=html_section,
        )
        content: list[dict] = [{"type": "text", "text": text}]
        for f in files[: settings.OPENAI_MAX_FILES]:
            if f.mime_type.startswith("image/"):
                url = f.data if f.kind == "url" else f"data:{f.mime_type};base64,{f.data}"
                content.append({"type": "image_url", "image_url": {"url": url, "detail": "low"}})
            elif f.mime_type == "application/pdf" and f.kind == "base64":
                content.append(
                    {
                        "type": "file",
                        "file": {
                            "filename": f.filename or "document.pdf",
                            "file_data": f"data:application/pdf;base64,{f.data}",
                        },
                    }
                )
        return content

    async def analyze_payment_email(
        self,
        *,
        sender: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        files: list[EvidenceFile] | None = None,
    ) -> PaymentInfo:
        if not settings.OPENAI_API_KEY:
            raise ClassifierError("OPENAI_API_KEY is not set")

        payload = {
            "model": settings.OPENAI_MODEL,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._content(sender, subject, body, html_body, files or [])},
            ],
            "max_tokens": 1000,
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
        }
        url = settings.OPENAI_BASE_URL.rstrip("/") + "/chat/completions"
        headers = {"Authorization": f"Bearer {settings.OPENAI_API_KEY}"}

        try:
            async with httpx.AsyncClient(timeout=settings.OPENAI_TIMEOUT_SECONDS, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ClassifierError(f"classifier request failed: {type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise ClassifierError(f"classifier returned {resp.status_code}: {resp.text[:300]}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassifierError("classifier response has no message content") from e
        if not content:
            raise ClassifierError("classifier returned an empty message")

        try:
            info = PaymentInfo.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ClassifierError(f"classifier returned malformed JSON: {e}") from e

        logger.info(
            "classifier ok is_payment=%s files=%s model=%s", info.is_payment, len(files or []), settings.OPENAI_MODEL
        )
        return info


def get_llm() -> LLM:
    if settings.LLM_PROVIDER == "openai_chat_completions":
        return OpenAIChatCompletionsLLM()
    return NoopLLM()
