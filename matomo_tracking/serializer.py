"""Query-string encoding for tracking parameters.

Absent (``None``) values are dropped, nested values are JSON encoded and
everything is form-encoded in insertion order.
"""

import json
from typing import Any, Mapping
from urllib.parse import urlencode


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def encode_query(params: Mapping[str, Any]) -> str:
    pairs = [(str(key), _scalar(value)) for key, value in params.items() if value is not None]
    if not pairs:
        return ""
    return urlencode(pairs)


def build_url(base_url: str, params: Mapping[str, Any]) -> str:
    query = encode_query(params)
    if not query:
        return base_url
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{query}"


def bulk_entry(params: Mapping[str, Any]) -> str:
    """Render one request of a bulk payload (``?`` followed by the query)."""
    return "?" + encode_query(params)
