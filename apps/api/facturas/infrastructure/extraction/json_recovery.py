"""
Recovery parser for the free-text answers of the extraction model.

The model is asked for JSON but regularly returns fenced blocks, doubly
escaped objects, comma decimals or a sentence around the payload. Each
recovery step rewrites the text and hands it to the next one; the first
step that yields a parsed value wins.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*", re.MULTILINE)
_FENCE_CLOSE = re.compile(r"```\s*$", re.MULTILINE)
_INVISIBLE = re.compile("[\ufeff\u200b-\u200d]")
_COMMA_DECIMAL = re.compile(r"(\d+),(\d+)")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")

_NUL = "\x00"
_UNESCAPES = (
    ("\\\\", _NUL),
    ('\\"', '"'),
    ("\\/", "/"),
    ("\\b", "\b"),
    ("\\f", "\f"),
    ("\\n", "\n"),
    ("\\r", "\r"),
    ("\\t", "\t"),
    (_NUL, "\\"),
)

_MISSING = object()


def _load(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError, RecursionError):
        return _MISSING


def _accept(value: Any) -> bool:
    # A bare JSON string means the payload is still encoded; keep recovering.
    return value is not _MISSING and not isinstance(value, str)


def _strip_wrappers(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text, count=1)).strip()
    return _INVISIBLE.sub("", text)


def _unescape_once(text: str) -> str:
    for old, new in _UNESCAPES:
        text = text.replace(old, new)
    return text


def _normalize_numbers(text: str) -> str:
    text = _COMMA_DECIMAL.sub(r"\1.\2", text)
    return _TRAILING_COMMA.sub(r"\1", text)


def _decode_string_literal(text: str) -> Any:
    if len(text) < 2 or not (text.startswith('"') and text.endswith('"')):
        return _MISSING
    once = _load(text)
    if not isinstance(once, str):
        return once
    twice = _load(once)
    return twice if twice is not _MISSING else once


def _outer_object(text: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return _MISSING
    return _load(text[start : end + 1])


def recover_json(raw: Optional[str]) -> Any:
    """Return the first value any recovery step can parse, or None."""
    if not raw:
        return None

    text = _strip_wrappers(raw)
    value = _load(text)
    if _accept(value):
        return value

    if text.startswith("{\\"):
        text = _unescape_once(text)
        value = _load(text)
        if _accept(value):
            return value

    text = _normalize_numbers(text)
    value = _load(text)
    if _accept(value):
        return value

    value = _decode_string_literal(text)
    if _accept(value):
        return value

    value = _outer_object(text)
    if _accept(value):
        return value
    return None


def is_invoice_payload(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    provider = value.get("provider")
    total = value.get("totalAmount")
    return (
        isinstance(value.get("invoiceCode"), str)
        and isinstance(provider, dict)
        and isinstance(provider.get("name"), str)
        and isinstance(value.get("issueDate"), str)
        and isinstance(total, (int, float))
        and not isinstance(total, bool)
        and isinstance(value.get("items"), list)
    )


def parse_invoice_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse an extraction answer into an invoice payload.

    Never raises. Returns None when no step recovers a value or when the
    recovered value does not have the invoice shape (arrays, scalars, objects
    missing invoiceCode/provider.name/issueDate/totalAmount/items).
    """
    value = recover_json(raw)
    if value is None:
        preview = (raw or "")[:200]
        logger.warning("Could not recover JSON from extraction answer: %r", preview)
        return None
    if not is_invoice_payload(value):
        logger.warning("Recovered JSON does not look like an invoice (%s)", type(value).__name__)
        return None
    return value
