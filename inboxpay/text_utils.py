from __future__ import annotations

import html
import re


def strip_html(source: str | None) -> str:
    if not source:
        return ""
    text = re.sub(r"<script.*?</script>", " ", source, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<style.*?</style>", " ", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<br\s*/?>|</p>|</div>|</tr>|</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    return text


def mask(value: str | None, keep: int = 6) -> str:
    """Short prefix of a secret for log lines."""
    if not value:
        return "<none>"
    if len(value) <= keep * 2:
        return "<redacted>"
    return value[:keep] + "..."
