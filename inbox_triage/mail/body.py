"""
Plain-text body extraction from a multipart message tree.

Preference order:
1. First text/plain part (depth-first) carrying a payload
2. First text/html part, tags stripped and whitespace collapsed
3. First part carrying any payload
4. The top-level payload

Every function here is total: bad base64, odd charsets or an empty
message all come back as a (possibly empty) string.

Usage:
    from inbox_triage.mail.body import extract_body
    text = extract_body(MimePart.from_gmail(message["payload"]))
"""

import base64
import binascii
import html
import re
from typing import Callable, Optional

from inbox_triage.agent.schemas import MimePart

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def decode_base64(data: Optional[str]) -> str:
    """
    Decode a transport-encoded payload to text.

    Accepts the URL-safe alphabet (-, _) as well as the standard one
    (+, /), with or without trailing '=' padding.
    """
    if not data:
        return ""
    normalized = re.sub(r"\s+", "", data).replace("-", "+").replace("_", "/")
    normalized = normalized.rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    try:
        raw = base64.b64decode(normalized)
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def strip_html(markup: str) -> str:
    """Reduce an HTML document to its visible text on a single line."""
    text = _SCRIPT_STYLE_RE.sub(" ", markup)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def find_part(parts: list[MimePart], predicate: Callable[[MimePart], bool]) -> Optional[MimePart]:
    """Depth-first search for the first part matching `predicate`."""
    for part in parts:
        if predicate(part):
            return part
        nested = find_part(part.parts, predicate)
        if nested is not None:
            return nested
    return None


def _is_type(mime_type: str) -> Callable[[MimePart], bool]:
    return lambda part: part.mime_type == mime_type and bool(part.data)


def extract_body(payload: Optional[MimePart]) -> str:
    """Return the best plain-text rendition of a message, or ''."""
    if payload is None:
        return ""

    if payload.parts:
        plain = find_part(payload.parts, _is_type("text/plain"))
        if plain is not None:
            return decode_base64(plain.data)

        html_part = find_part(payload.parts, _is_type("text/html"))
        if html_part is not None:
            return strip_html(decode_base64(html_part.data))

        anything = find_part(payload.parts, lambda part: bool(part.data))
        if anything is not None:
            return decode_base64(anything.data)

    # Single-part messages carry the body on the root node.
    if payload.mime_type == "text/html":
        return strip_html(decode_base64(payload.data))
    return decode_base64(payload.data)
