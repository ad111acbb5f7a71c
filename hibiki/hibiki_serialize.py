from __future__ import annotations

import json
import re
from typing import Any, Optional

import yaml

from hibiki.hibiki_values import to_plain


# --------------------------
# Helpers
# --------------------------

_CHARSET_RE = re.compile(r'charset\s*=\s*"?([\w.:-]+)', re.IGNORECASE)

YAML_MEDIA_TYPES = frozenset({'application/yaml', 'application/x-yaml', 'text/yaml', 'text/x-yaml'})


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or '').split(';', 1)[0].strip().lower()


def _decode(data: bytes | bytearray | str, content_type: Optional[str]) -> str:
    if isinstance(data, str):
        return data
    m = _CHARSET_RE.search(content_type or '')
    try:
        return bytes(data).decode(m.group(1) if m else 'utf-8', errors='replace')
    except LookupError:
        return bytes(data).decode('utf-8', errors='replace')


def is_json_content_type(content_type: Optional[str]) -> bool:
    """True for application/json and +json media types."""
    media = _media_type(content_type)
    return media == 'application/json' or media.endswith('+json')


def detect_format(content_type: Optional[str] = None, text: Optional[str] = None) -> Optional[str]:
    """'json' or 'yaml' from the media type, else 'json' when text opens an object or array."""
    if is_json_content_type(content_type):
        return 'json'
    if _media_type(content_type) in YAML_MEDIA_TYPES:
        return 'yaml'
    if text is not None and text.lstrip()[:1] in ('{', '['):
        return 'json'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml'.
    If fmt is None, uses content_type, then sniffing.
    Returns dict/list/scalars for structured formats; returns raw text for others.
    Malformed JSON or YAML raises ValueError (yaml.YAMLError for YAML).
    """
    text = _decode(data, content_type)
    f = (fmt or detect_format(content_type, text))
    if f == 'json':
        return json.loads(text)
    if f == 'yaml':
        return yaml.safe_load(text)
    return text


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str:
    """
    Convert a runtime value into a textual representation.
    - fmt: 'json' | 'yaml'
    References are read through and blobs become {mimetype, data}.
    """
    f = (fmt or '').lower()
    built = to_plain(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "is_json_content_type",
]
