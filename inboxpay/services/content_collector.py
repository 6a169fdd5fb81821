from __future__ import annotations

import base64
import html
import io
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx
from PIL import Image, UnidentifiedImageError
from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.config import settings
from inboxpay.errors import ContentFetchError
from inboxpay.models import EmailAttachment

logger = logging.getLogger("inboxpay.services.content_collector")

IMG_SRC_RE = re.compile(r"""<img[^>]+src\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
BG_IMAGE_RE = re.compile(r"""background-image:\s*url\(["']?([^"')]+)["']?\)""", re.IGNORECASE)

TRACKING_PATTERNS = (
    "pixel",
    "track",
    "beacon",
    "analytics",
    "open.gif",
    "1x1",
    "spacer",
    "blank",
    "mailtrack",
    "email-open",
    "read-receipt",
)
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp")
IMAGE_PATH_HINTS = ("/image", "/img", "/photo")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9,ko-KR;q=0.8",
}


@dataclass
class EvidenceFile:
    kind: str  # "base64" | "url"
    data: str
    mime_type: str
    filename: str | None = None

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str, filename: str | None = None) -> "EvidenceFile":
        return cls(kind="base64", data=base64.b64encode(data).decode("ascii"), mime_type=mime_type, filename=filename)


def extract_image_urls(html_body: str | None) -> list[str]:
    if not html_body:
        return []
    urls: list[str] = []
    for regex in (IMG_SRC_RE, BG_IMAGE_RE):
        for m in regex.finditer(html_body):
            url = html.unescape(m.group(1)).strip()
            if url and url not in urls:
                urls.append(url)
    return urls


def is_likely_content_image(url: str) -> bool:
    lower = url.lower()
    if any(p in lower for p in TRACKING_PATTERNS):
        return False
    return any(ext in lower for ext in IMAGE_EXTENSIONS) or any(h in lower for h in IMAGE_PATH_HINTS)


def image_dimensions(data: bytes) -> tuple[int, int] | None:
    """(width, height), or None when Pillow can't identify the format (SVG etc.).

    Raises ContentFetchError when the declared size trips Pillow's decompression bomb limit.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except Image.DecompressionBombError as e:
        raise ContentFetchError(f"image too large to decode: {e}") from e
    except (UnidentifiedImageError, OSError):
        return None


class ContentCollector:
    """Builds the ordered, capped list of evidence files sent to the classifier."""

    def __init__(self, db: Session, *, client: httpx.AsyncClient | None = None):
        self.db = db
        self._client = client
        self.max_files = settings.COLLECT_MAX_FILES
        self.max_pdfs = settings.COLLECT_MAX_PDFS
        self.max_pdf_bytes = settings.COLLECT_MAX_PDF_BYTES
        self.max_image_bytes = settings.COLLECT_MAX_IMAGE_BYTES
        self.min_image_bytes = settings.COLLECT_MIN_IMAGE_BYTES
        self.min_dimension = settings.COLLECT_MIN_IMAGE_DIMENSION

    def check_image(self, data: bytes, label: str) -> None:
        """Raise ContentFetchError if the bytes fail the size or pixel filters."""
        if len(data) < self.min_image_bytes:
            raise ContentFetchError(f"{label}: too small ({len(data)} bytes)")
        if len(data) > self.max_image_bytes:
            raise ContentFetchError(f"{label}: too large ({len(data)} bytes)")
        dims = image_dimensions(data)
        if dims and (dims[0] < self.min_dimension or dims[1] < self.min_dimension):
            raise ContentFetchError(f"{label}: below {self.min_dimension}px ({dims[0]}x{dims[1]})")

    async def download_image(self, client: httpx.AsyncClient, url: str) -> EvidenceFile:
        parts = urlsplit(url)
        headers = {**BROWSER_HEADERS, "Referer": f"{parts.scheme}://{parts.netloc}"}
        try:
            resp = await client.get(url, headers=headers, timeout=settings.IMAGE_DOWNLOAD_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            raise ContentFetchError(f"download failed: {type(e).__name__}") from e
        if resp.status_code != 200:
            raise ContentFetchError(f"download failed: status={resp.status_code}")

        content_type = (resp.headers.get("content-type") or "image/jpeg").split(";")[0].strip()
        if not content_type.startswith("image/"):
            raise ContentFetchError(f"not an image ({content_type})")
        data = resp.content
        self.check_image(data, url[:80])
        return EvidenceFile.from_bytes(data, content_type)

    def _attachments(self, email_id: int, *conditions) -> list[EmailAttachment]:
        return (
            self.db.execute(
                select(EmailAttachment).where(EmailAttachment.email_id == email_id, *conditions).order_by(EmailAttachment.id)
            )
            .scalars()
            .all()
        )

    async def collect(self, email_id: int, html_body: str | None) -> list[EvidenceFile]:
        files: list[EvidenceFile] = []

        pdfs = self._attachments(email_id, EmailAttachment.mime_type == "application/pdf")[: self.max_pdfs]
        for att in pdfs:
            if len(files) >= self.max_files:
                break
            if not att.data:
                continue
            if len(att.data) > self.max_pdf_bytes:
                logger.info("collect skip large pdf email_id=%s filename=%s bytes=%s", email_id, att.filename, len(att.data))
                continue
            files.append(EvidenceFile.from_bytes(att.data, "application/pdf", att.filename))

        urls = [
            u for u in extract_image_urls(html_body) if u.startswith(("http://", "https://")) and is_likely_content_image(u)
        ]
        if urls and len(files) < self.max_files:
            client = self._client or httpx.AsyncClient(follow_redirects=True)
            try:
                for url in urls:
                    if len(files) >= self.max_files:
                        break
                    try:
                        files.append(await self.download_image(client, url))
                    except ContentFetchError as e:
                        logger.info("collect skip image email_id=%s reason=%s", email_id, e)
            finally:
                if self._client is None:
                    await client.aclose()

        for att in self._attachments(email_id, EmailAttachment.is_inline.is_(True)):
            if len(files) >= self.max_files:
                break
            if not att.data or not (att.mime_type or "").startswith("image/"):
                continue
            try:
                self.check_image(att.data, att.filename)
            except ContentFetchError as e:
                logger.info("collect skip inline image email_id=%s reason=%s", email_id, e)
                continue
            files.append(EvidenceFile.from_bytes(att.data, att.mime_type, att.filename))

        logger.info("collect done email_id=%s files=%s", email_id, len(files))
        return files
