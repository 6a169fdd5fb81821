"""Gmail ``format=full`` payload -> ParsedMessage.

The part tree is first decoded into explicit variants (``decode_part``), which
rejects shapes it does not understand with ``ParseError``; ``parse_message``
then walks those variants to pick bodies and attachment descriptors.
"""
from __future__ import annotations

import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from inboxpay.errors import ParseError
from inboxpay.gmail_client import b64url_decode
from inboxpay.text_utils import strip_html

logger = logging.getLogger("inboxpay.parsing")

FORWARD_SUBJECT_PREFIXES = ("fwd:", "fw:", "전달:")
FORWARD_BODY_MARKERS = (
    "---------- Forwarded message ---------",
    "Original Message",
    "Begin forwarded message",
    "전달된 메일",
    "원본 메시지",
)
FORWARD_SENDER_PATTERNS = [
    re.compile(r"^\W*From:\s*(.+)$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^\W*보낸\s?사람:\s*(.+)$", re.MULTILINE),
    re.compile(r"^\W*De:\s*(.+)$", re.MULTILINE),
    re.compile(r"^\W*Von:\s*(.+)$", re.MULTILINE),
]
SENTENCE_SPLIT_RE = re.compile(r"[.!?。\n]+")
MIN_SENTENCE_LENGTH = 3


@dataclass
class TextPart:
    part_id: str
    text: str


@dataclass
class HtmlPart:
    part_id: str
    html: str


@dataclass
class AttachmentDescriptor:
    attachment_id: str
    filename: str
    mime_type: str
    size: int = 0
    content_id: str | None = None
    is_inline: bool = False
    # set when the provider shipped the bytes in the part itself
    data: bytes | None = None


@dataclass
class InlineImagePart:
    part_id: str
    attachment: AttachmentDescriptor


@dataclass
class AttachmentPart:
    part_id: str
    attachment: AttachmentDescriptor


@dataclass
class MultipartPart:
    part_id: str
    mime_type: str
    parts: list["MimePart"] = field(default_factory=list)


@dataclass
class OpaquePart:
    """A leaf with nothing we keep (e.g. text/calendar without a filename)."""

    part_id: str
    mime_type: str


MimePart = Union[TextPart, HtmlPart, InlineImagePart, AttachmentPart, MultipartPart, OpaquePart]


@dataclass
class ParsedMessage:
    message_id: str
    thread_id: str | None
    from_address: str | None
    envelope_from: str | None
    to_address: str | None
    cc_address: str | None
    subject: str | None
    text_body: str
    html_body: str
    attachments: list[AttachmentDescriptor]
    inline_images: list[AttachmentDescriptor]
    search_text: str
    snippet: str
    label_ids: list[str]
    internal_date_ms: int
    received_at: datetime | None
    is_read: bool

    @property
    def all_attachments(self) -> list[AttachmentDescriptor]:
        return [*self.attachments, *self.inline_images]


def _headers(part: dict) -> dict[str, str]:
    raw = part.get("headers") or []
    if not isinstance(raw, list):
        raise ParseError("headers must be a list")
    headers: dict[str, str] = {}
    for h in raw:
        if not isinstance(h, dict):
            raise ParseError("header entries must be objects")
        name = (h.get("name") or "").lower()
        if name:
            headers[name] = h.get("value") or ""
    return headers


def _charset(content_type: str) -> str:
    m = re.search(r'charset="?([\w\-]+)"?', content_type or "", re.IGNORECASE)
    return m.group(1) if m else "utf-8"


def _decode_text(data: str, content_type: str) -> str:
    raw = _decode_bytes(data)
    try:
        return raw.decode(_charset(content_type), errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _decode_bytes(data: str) -> bytes:
    try:
        return b64url_decode(data)
    except (binascii.Error, ValueError) as e:
        raise ParseError(f"body data is not base64url: {e}") from e


def decode_part(part: Any, part_id: str = "0") -> MimePart:
    if not isinstance(part, dict):
        raise ParseError(f"part {part_id} is not an object")

    part_id = str(part.get("partId") or part_id)
    mime = (part.get("mimeType") or "").lower()
    headers = _headers(part)
    body = part.get("body") or {}
    if not isinstance(body, dict):
        raise ParseError(f"part {part_id} body is not an object")
    data = body.get("data")
    if data is not None and not isinstance(data, str):
        raise ParseError(f"part {part_id} body.data is not a string")

    children = part.get("parts")
    if children is not None and not isinstance(children, list):
        raise ParseError(f"part {part_id} parts is not a list")
    if mime.startswith("multipart/") or children:
        return MultipartPart(
            part_id=part_id,
            mime_type=mime,
            parts=[decode_part(child, f"{part_id}.{i}") for i, child in enumerate(children or [])],
        )

    filename = part.get("filename") or ""
    attachment_id = body.get("attachmentId")
    content_id = (headers.get("content-id") or "").strip("<> ") or None
    disposition = headers.get("content-disposition", "").lower()

    def descriptor(default_name: str, inline: bool) -> AttachmentDescriptor:
        inline_data = None
        if not attachment_id and data:
            inline_data = _decode_bytes(data)
        return AttachmentDescriptor(
            attachment_id=attachment_id or f"part-{part_id}",
            filename=filename or default_name,
            mime_type=mime,
            size=int(body.get("size") or (len(inline_data) if inline_data else 0)),
            content_id=content_id,
            is_inline=inline,
            data=inline_data,
        )

    if mime.startswith("image/") and (attachment_id or data):
        if "inline" in disposition or content_id:
            return InlineImagePart(part_id, descriptor("image", True))
        return AttachmentPart(part_id, descriptor("image", False))

    if filename and attachment_id:
        return AttachmentPart(part_id, descriptor(filename, False))

    content_type = headers.get("content-type", "")
    if mime == "text/plain" and data:
        return TextPart(part_id, _decode_text(data, content_type))
    if mime == "text/html" and data:
        return HtmlPart(part_id, _decode_text(data, content_type))

    return OpaquePart(part_id, mime)


def _walk(part: MimePart, acc: dict[str, Any]) -> None:
    if isinstance(part, MultipartPart):
        for child in part.parts:
            _walk(child, acc)
    elif isinstance(part, TextPart):
        if acc["text"] is None:
            acc["text"] = part.text
    elif isinstance(part, HtmlPart):
        acc["html"] = part.html
    elif isinstance(part, InlineImagePart):
        acc["inline"].append(part.attachment)
    elif isinstance(part, AttachmentPart):
        acc["attachments"].append(part.attachment)


def is_forwarded_subject(subject: str | None) -> bool:
    s = (subject or "").strip().lower()
    return s.startswith(FORWARD_SUBJECT_PREFIXES) or "forwarded" in s


def find_forwarded_sender(text: str) -> str | None:
    """Best effort: the original sender quoted after a forwarding marker, else None."""
    if not text:
        return None
    for marker in FORWARD_BODY_MARKERS:
        idx = text.find(marker)
        if idx < 0:
            continue
        tail = text[idx + len(marker):]
        for pattern in FORWARD_SENDER_PATTERNS:
            m = pattern.search(tail)
            if m:
                sender = m.group(1).strip().strip("*").strip()
                if sender:
                    return sender
    return None


def build_search_text(*chunks: str | None) -> str:
    combined = "\n".join(c for c in chunks if c).lower()
    seen: set[str] = set()
    sentences: list[str] = []
    for fragment in SENTENCE_SPLIT_RE.split(combined):
        s = re.sub(r"\s+", " ", fragment).strip()
        if len(s) < MIN_SENTENCE_LENGTH or s in seen:
            continue
        seen.add(s)
        sentences.append(s)
    return "\n".join(sentences)


def parse_message(message: dict) -> ParsedMessage:
    if not isinstance(message, dict) or not message.get("id"):
        raise ParseError("message must be an object with an id")

    payload = message.get("payload") or {}
    root = decode_part(payload, "0")
    headers = _headers(payload)

    acc: dict[str, Any] = {"text": None, "html": None, "attachments": [], "inline": []}
    _walk(root, acc)
    text_body = acc["text"] or ""
    html_body = acc["html"] or ""

    subject = headers.get("subject")
    envelope_from = headers.get("from")
    sender = envelope_from
    html_text = strip_html(html_body)
    if is_forwarded_subject(subject):
        forwarded = find_forwarded_sender(text_body) or find_forwarded_sender(html_text)
        if forwarded:
            logger.debug("forwarded sender message_id=%s sender=%s", message.get("id"), forwarded)
            sender = forwarded

    try:
        internal_ms = int(message.get("internalDate") or 0)
    except (TypeError, ValueError) as e:
        raise ParseError(f"bad internalDate {message.get('internalDate')!r}") from e
    received_at = (
        datetime.fromtimestamp(internal_ms / 1000.0, tz=timezone.utc).replace(tzinfo=None) if internal_ms else None
    )

    label_ids = message.get("labelIds") or []
    return ParsedMessage(
        message_id=str(message["id"]),
        thread_id=message.get("threadId"),
        from_address=sender,
        envelope_from=envelope_from,
        to_address=headers.get("to"),
        cc_address=headers.get("cc"),
        subject=subject,
        text_body=text_body,
        html_body=html_body,
        attachments=acc["attachments"],
        inline_images=acc["inline"],
        search_text=build_search_text(subject, sender, text_body, html_text),
        snippet=message.get("snippet") or "",
        label_ids=list(label_ids),
        internal_date_ms=internal_ms,
        received_at=received_at,
        is_read="UNREAD" not in label_ids,
    )
