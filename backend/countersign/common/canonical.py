"""
Canonical JSON used for every byte string that is hashed or signed.

Keys are sorted lexicographically, there is no insignificant whitespace,
strings are Unicode NFC and the output is UTF-8. Datetimes are rendered as
RFC 3339 UTC with a ``Z`` suffix; numeric timestamps never appear.
"""

import enum
import hashlib
import json
import unicodedata
import uuid
from datetime import datetime
from typing import Any

from countersign.common.base_models import rfc3339


def _normalise(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return _normalise(value.value)
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value)
    if isinstance(value, datetime):
        return rfc3339(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {unicodedata.normalize("NFC", str(k)): _normalise(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(
        _normalise(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_bytes(value: Any) -> bytes:
    return canonical_json(value).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
