"""Free-text input cleaning for values that end up in emails and admin screens."""
from __future__ import annotations

import html
from typing import Any, Optional

import bleach


def clean_text(value: Any, max_length: Optional[int] = None) -> str:
    """Strip markup and surrounding whitespace from user supplied text."""
    if value is None:
        return ""
    cleaned = bleach.clean(str(value), tags=[], strip=True)
    # bleach escapes entities; stored values are plain text and escaped on output
    cleaned = html.unescape(cleaned).strip()
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned
