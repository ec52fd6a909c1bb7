"""Process-scoped TTL cache for merchant categorizations (tier 1).

Entries are keyed by ``(user_id, normalized merchant, merchant category code
or "none")`` and expire a fixed number of seconds after they were stored. The
cache is never authoritative: a miss or an expired entry simply falls through
to the persistent merchant table.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from .logging_setup import get_logger
from .models import CategorizationResult
from .normalizers import normalize_text

_logger = get_logger("transaction_ingest.merchant_cache")

NO_MCC = "none"

CacheKey = tuple[int, str, str]


def merchant_key(user_id: int, merchant_name: str, mcc: str | None) -> CacheKey:
    code = (mcc or "").strip() or NO_MCC
    return (user_id, normalize_text(merchant_name), code)


@dataclass(slots=True)
class _Entry:
    result: CategorizationResult
    expires_at: float


class MerchantCache:
    """Thread-safe in-memory cache with per-entry expiry.

    ``clock`` defaults to :func:`time.monotonic`; tests pass a fake clock to
    exercise expiry without sleeping.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"invalid ttl_seconds {ttl_seconds!r}; expected > 0")
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._lock = threading.Lock()

    def lookup(self, key: CacheKey) -> CategorizationResult | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.result

    def store(self, key: CacheKey, result: CategorizationResult) -> None:
        with self._lock:
            self._entries[key] = _Entry(result=result, expires_at=self._clock() + self._ttl)

    def invalidate(self, user_id: int, merchant_name: str) -> int:
        """Drop every entry for the merchant and user, whatever its code."""

        merchant = normalize_text(merchant_name)
        with self._lock:
            stale = [k for k in self._entries if k[0] == user_id and k[1] == merchant]
            for k in stale:
                del self._entries[k]
        if stale:
            _logger.debug(
                "merchant_cache:invalidated user_id=%d merchant=%s entries=%d",
                user_id,
                merchant,
                len(stale),
            )
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["NO_MCC", "CacheKey", "MerchantCache", "merchant_key"]
