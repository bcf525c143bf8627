from __future__ import annotations

import base64
import html
from datetime import datetime, timezone
from typing import Any


def text_to_html(text: str) -> str:
    """Plain text to ``<p>`` paragraphs; text that already has markup is kept."""
    if "<" in text:
        return text
    return "<p>" + html.escape(text, quote=False).replace("\n", "</p><p>") + "</p>"


def decode_body(data: str | None) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def extract_body(payload: dict[str, Any]) -> tuple[str, bool]:
    """First HTML part, else first plain-text part. Returns ``(body, is_html)``."""
    html_body = ""
    text_body = ""

    def walk(part: dict[str, Any]) -> None:
        nonlocal html_body, text_body
        mime_type = part.get("mimeType", "")
        data = part.get("body", {}).get("data")
        if mime_type == "text/html" and data and not html_body:
            html_body = decode_body(data)
        elif mime_type == "text/plain" and data and not text_body:
            text_body = decode_body(data)
        for nested in part.get("parts", []):
            walk(nested)

    walk(payload)
    if html_body:
        return html_body, True
    return text_body, False


def epoch_ms_to_iso(value: Any) -> str:
    if value in (None, ""):
        return ""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).isoformat()
