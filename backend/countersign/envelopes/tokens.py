"""
Recipient access tokens.

Tokens are opaque URL-safe strings with at least 128 bits of entropy. Only
their SHA-256 is stored, so a database read never yields a usable link.
``AccessTokenCache`` is a bounded LRU with a TTL that maps token hashes to
recipient ids; a hit is always re-checked against the row.
"""

import hashlib
import hmac
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from countersign.common.base_models import as_utc, utcnow
from countersign.envelopes.models import Recipient

MIN_TOKEN_BYTES = 16


@dataclass(frozen=True)
class MintedToken:
    token: str
    token_hash: str
    expires_at: datetime


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def mint_access_token(recipient: Recipient, token_bytes: int = 16, ttl_days: int = 30) -> MintedToken:
    """Bind a fresh token to the recipient row, replacing any previous one."""
    token = secrets.token_urlsafe(max(token_bytes, MIN_TOKEN_BYTES))
    minted = MintedToken(token=token, token_hash=hash_token(token), expires_at=utcnow() + timedelta(days=ttl_days))
    recipient.access_token_hash = minted.token_hash
    recipient.access_token_expires_at = minted.expires_at
    return minted


def token_matches(recipient: Recipient, token: str, now: Optional[datetime] = None) -> bool:
    if not token or not recipient.access_token_hash:
        return False
    if not hmac.compare_digest(recipient.access_token_hash, hash_token(token)):
        return False
    expires_at = as_utc(recipient.access_token_expires_at)
    return expires_at is None or expires_at > (now or utcnow())


class AccessTokenCache:
    def __init__(self, max_size: int = 1024, ttl_seconds: float = 300.0, clock=time.monotonic):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[tuple[int, str], tuple[int, float]] = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "AccessTokenCache":
        return cls(max_size=settings.access_token_cache_size, ttl_seconds=settings.access_token_cache_ttl_seconds)

    def get(self, envelope_id: int, token_hash: str) -> Optional[int]:
        key = (envelope_id, token_hash)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            recipient_id, stored_at = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return recipient_id

    def put(self, envelope_id: int, token_hash: str, recipient_id: int) -> None:
        key = (envelope_id, token_hash)
        with self._lock:
            self._entries[key] = (recipient_id, self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def discard(self, envelope_id: int, token_hash: str) -> None:
        with self._lock:
            self._entries.pop((envelope_id, token_hash), None)

    def __len__(self) -> int:
        return len(self._entries)
