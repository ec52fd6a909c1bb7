"""Tiered merchant categorization with learning.

Lookups walk an ordered list of tiers sharing one interface
(:class:`CategorizationTier`):

1. :class:`CacheTier`: the process-scoped TTL cache
   (:class:`~transaction_ingest.merchant_cache.MerchantCache`).
2. :class:`MerchantTableTier`: the persistent per-user merchant table, with a
   running-average confidence, a usage count and a bounded history of how
   each categorization came about (``automatic``, ``manual_override`` or
   ``bulk_update``).
3. An external classifier (see :mod:`transaction_ingest.classifier`); any
   failure there means "no suggestion".

A hit at tier *i* is written back into every tier before *i*, so the next
lookup for the same merchant is served by the cache. Transactions without a
merchant name fall back to keyword matching over the user's categories.

User corrections overwrite the suggestion, append a full-confidence
``manual_override`` history entry and invalidate every cached entry for the
merchant.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

from ledger_db.models.ledger import Category, MerchantCategorization
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .categories import CategoryOption, best_keyword_match, list_category_options
from .config import IngestSettings
from .errors import CategoryNotFoundError
from .logging_setup import get_logger
from .merchant_cache import NO_MCC, CacheKey, MerchantCache, merchant_key
from .models import CategorizationRequest, CategorizationResult, TransactionType
from .normalizers import normalize_text

_logger = get_logger("transaction_ingest.merchant_categorization")

MANUAL_CONFIDENCE = 1.0

HISTORY_AUTOMATIC = "automatic"
HISTORY_MANUAL = "manual_override"
HISTORY_BULK = "bulk_update"


@dataclass(frozen=True, slots=True)
class MerchantQuery:
    user_id: int
    merchant_name: str
    description: str
    amount: Decimal
    type: TransactionType
    merchant_category_code: str | None = None
    candidates: tuple[CategoryOption, ...] = ()

    @property
    def cache_key(self) -> CacheKey:
        return merchant_key(self.user_id, self.merchant_name, self.merchant_category_code)


class CategorizationTier(Protocol):
    name: str

    def lookup(self, query: MerchantQuery) -> CategorizationResult | None: ...

    def store(self, query: MerchantQuery, result: CategorizationResult) -> None: ...


# ---------------------------
# Tier 1: cache
# ---------------------------


class CacheTier:
    name = "cache"

    def __init__(self, cache: MerchantCache) -> None:
        self.cache = cache

    def lookup(self, query: MerchantQuery) -> CategorizationResult | None:
        hit = self.cache.lookup(query.cache_key)
        return dataclasses.replace(hit, tier=self.name) if hit is not None else None

    def store(self, query: MerchantQuery, result: CategorizationResult) -> None:
        self.cache.store(query.cache_key, result)


# ---------------------------
# Tier 2: persistent merchant table
# ---------------------------


def _now() -> datetime:
    return datetime.now(UTC)


def _code(mcc: str | None) -> str:
    return (mcc or "").strip() or NO_MCC


class MerchantTableTier:
    name = "merchant_table"

    def __init__(self, session: Session, settings: IngestSettings) -> None:
        self.session = session
        self.settings = settings

    def _find(self, user_id: int, merchant: str, code: str) -> MerchantCategorization | None:
        return (
            self.session.execute(
                select(MerchantCategorization).where(
                    MerchantCategorization.user_id == user_id,
                    MerchantCategorization.merchant_name == merchant,
                    MerchantCategorization.merchant_category_code == code,
                )
            )
            .scalars()
            .first()
        )

    def lookup(self, query: MerchantQuery) -> CategorizationResult | None:
        merchant = normalize_text(query.merchant_name)
        row = self._find(query.user_id, merchant, _code(query.merchant_category_code))
        if row is None:
            # Any code for the same merchant; the most used wins.
            row = (
                self.session.execute(
                    select(MerchantCategorization)
                    .where(
                        MerchantCategorization.user_id == query.user_id,
                        MerchantCategorization.merchant_name == merchant,
                    )
                    .order_by(
                        MerchantCategorization.usage_count.desc(), MerchantCategorization.id
                    )
                )
                .scalars()
                .first()
            )
        if row is None:
            return None
        return CategorizationResult(
            category_id=row.suggested_category_id,
            category_name=row.suggested_category.name,
            confidence=float(row.average_confidence),
            tier=self.name,
        )

    def store(self, query: MerchantQuery, result: CategorizationResult) -> None:
        self.record(
            user_id=query.user_id,
            merchant_name=query.merchant_name,
            mcc=query.merchant_category_code,
            category_id=result.category_id,
            confidence=result.confidence,
            source=HISTORY_AUTOMATIC,
        )

    def record(
        self,
        *,
        user_id: int,
        merchant_name: str,
        mcc: str | None,
        category_id: int,
        confidence: float,
        source: str,
    ) -> MerchantCategorization:
        """Upsert the merchant row and fold ``confidence`` into its running average."""

        merchant = normalize_text(merchant_name)
        code = _code(mcc)
        now = _now()
        entry: dict[str, Any] = {
            "category_id": category_id,
            "confidence": round(float(confidence), 4),
            "source": source,
            "at": now.isoformat(),
        }
        row = self._find(user_id, merchant, code)
        if row is None:
            try:
                with self.session.begin_nested():
                    row = MerchantCategorization(
                        user_id=user_id,
                        merchant_name=merchant,
                        merchant_category_code=code,
                        suggested_category_id=category_id,
                        average_confidence=float(confidence),
                        usage_count=1,
                        category_history=[entry],
                        first_seen=now,
                        last_seen=now,
                    )
                    self.session.add(row)
                return row
            except IntegrityError:
                row = self._find(user_id, merchant, code)
                if row is None:
                    raise

        n = row.usage_count + 1
        row.average_confidence = (row.average_confidence * (n - 1) + float(confidence)) / n
        row.usage_count = n
        row.suggested_category_id = category_id
        row.last_seen = now
        # Reassign so the JSON column is flagged dirty.
        history = [*(row.category_history or []), entry]
        row.category_history = history[-self.settings.merchant_history_limit :]
        self.session.flush()
        self.session.expire(row, ["suggested_category"])
        return row

    def retarget(
        self, *, user_id: int, merchant_name: str, category_id: int, source: str
    ) -> int:
        """Point every row of the merchant, whatever its code, at ``category_id``.

        Usage counts and averages are left alone; only the suggestion and its
        history change. Returns the number of rows rewritten.
        """

        merchant = normalize_text(merchant_name)
        rows = (
            self.session.execute(
                select(MerchantCategorization).where(
                    MerchantCategorization.user_id == user_id,
                    MerchantCategorization.merchant_name == merchant,
                    MerchantCategorization.suggested_category_id != category_id,
                )
            )
            .scalars()
            .all()
        )
        now = _now()
        for row in rows:
            entry = {
                "category_id": category_id,
                "confidence": MANUAL_CONFIDENCE,
                "source": source,
                "at": now.isoformat(),
            }
            row.suggested_category_id = category_id
            row.last_seen = now
            history = [*(row.category_history or []), entry]
            row.category_history = history[-self.settings.merchant_history_limit :]
        if rows:
            self.session.flush()
            for row in rows:
                self.session.expire(row, ["suggested_category"])
        return len(rows)


# ---------------------------
# Service
# ---------------------------


@dataclass(frozen=True, slots=True)
class MerchantStats:
    total_merchants: int
    total_categorizations: int
    average_confidence: float
    # (merchant, usage_count, category_name), most used first
    top_merchants: tuple[tuple[str, int, str], ...] = ()


class MerchantCategorizationService:
    def __init__(
        self,
        *,
        settings: IngestSettings,
        cache: MerchantCache | None = None,
        classifier: CategorizationTier | None = None,
    ) -> None:
        self.settings = settings
        if cache is None:
            cache = MerchantCache(settings.merchant_cache_ttl_seconds)
        self.cache = cache
        self.classifier = classifier

    def tiers(self, session: Session) -> list[CategorizationTier]:
        tiers: list[CategorizationTier] = [
            CacheTier(self.cache),
            MerchantTableTier(session, self.settings),
        ]
        if self.classifier is not None:
            tiers.append(self.classifier)
        return tiers

    def categorize(
        self,
        session: Session,
        *,
        user_id: int,
        request: CategorizationRequest,
        candidates: Sequence[CategoryOption] | None = None,
    ) -> CategorizationResult | None:
        """Suggest a category for one transaction, or None when nothing matches."""

        options = (
            tuple(candidates)
            if candidates is not None
            else tuple(list_category_options(session, user_id=user_id))
        )
        merchant = (request.merchant_name or "").strip()
        if merchant and normalize_text(merchant):
            query = MerchantQuery(
                user_id=user_id,
                merchant_name=merchant,
                description=request.description,
                amount=request.amount,
                type=request.type,
                merchant_category_code=request.merchant_category_code,
                candidates=options,
            )
            result = self._walk(self.tiers(session), query)
            if result is not None:
                return result

        option = best_keyword_match(options, request.description)
        if option is None:
            _logger.debug("categorize:no_suggestion user_id=%d", user_id)
            return None
        return CategorizationResult(
            category_id=option.id,
            category_name=option.name,
            confidence=self.settings.keyword_match_confidence,
            tier="keyword",
        )

    @staticmethod
    def _walk(
        tiers: Sequence[CategorizationTier], query: MerchantQuery
    ) -> CategorizationResult | None:
        for i, tier in enumerate(tiers):
            result = tier.lookup(query)
            if result is None:
                continue
            for earlier in reversed(tiers[:i]):
                earlier.store(query, result)
            _logger.debug(
                "categorize:hit user_id=%d tier=%s category_id=%d",
                query.user_id,
                tier.name,
                result.category_id,
            )
            return result
        return None

    def _owned_category(self, session: Session, user_id: int, category_id: int) -> Category:
        category = session.get(Category, category_id)
        if category is None or category.user_id != user_id:
            raise CategoryNotFoundError(category_id, user_id)
        return category

    def learn_from_correction(
        self,
        session: Session,
        *,
        user_id: int,
        merchant_name: str,
        category_id: int,
        mcc: str | None = None,
    ) -> CategorizationResult:
        """Record a user's manual categorization as authoritative for the merchant."""

        return self._override(
            session,
            user_id=user_id,
            merchant_name=merchant_name,
            category_id=category_id,
            mcc=mcc,
            source=HISTORY_MANUAL,
        )

    def record_bulk_update(
        self,
        session: Session,
        *,
        user_id: int,
        merchant_name: str,
        category_id: int,
        mcc: str | None = None,
    ) -> CategorizationResult:
        return self._override(
            session,
            user_id=user_id,
            merchant_name=merchant_name,
            category_id=category_id,
            mcc=mcc,
            source=HISTORY_BULK,
        )

    def _override(
        self,
        session: Session,
        *,
        user_id: int,
        merchant_name: str,
        category_id: int,
        mcc: str | None,
        source: str,
    ) -> CategorizationResult:
        if not normalize_text(merchant_name):
            raise ValueError(f"invalid merchant name {merchant_name!r}; expected non-empty text")
        category = self._owned_category(session, user_id, category_id)
        table = MerchantTableTier(session, self.settings)
        table.record(
            user_id=user_id,
            merchant_name=merchant_name,
            mcc=mcc,
            category_id=category.id,
            confidence=MANUAL_CONFIDENCE,
            source=source,
        )
        # Rows under other merchant codes must not keep serving the old category.
        retargeted = table.retarget(
            user_id=user_id, merchant_name=merchant_name, category_id=category.id, source=source
        )
        dropped = self.cache.invalidate(user_id, merchant_name)
        _logger.info(
            "categorize:override user_id=%d merchant=%s category_id=%d source=%s "
            "retargeted=%d cache_dropped=%d",
            user_id,
            normalize_text(merchant_name),
            category.id,
            source,
            retargeted,
            dropped,
        )
        return CategorizationResult(
            category_id=category.id,
            category_name=category.name,
            confidence=MANUAL_CONFIDENCE,
            tier=MerchantTableTier.name,
        )

    def merchant_stats(self, session: Session, *, user_id: int, top: int = 10) -> MerchantStats:
        total, usage, avg = session.execute(
            select(
                func.count(MerchantCategorization.id),
                func.coalesce(func.sum(MerchantCategorization.usage_count), 0),
                func.coalesce(func.avg(MerchantCategorization.average_confidence), 0.0),
            ).where(MerchantCategorization.user_id == user_id)
        ).one()
        rows = (
            session.execute(
                select(MerchantCategorization)
                .where(MerchantCategorization.user_id == user_id)
                .order_by(MerchantCategorization.usage_count.desc(), MerchantCategorization.id)
                .limit(top)
            )
            .scalars()
            .all()
        )
        return MerchantStats(
            total_merchants=int(total),
            total_categorizations=int(usage),
            average_confidence=round(float(avg), 4),
            top_merchants=tuple(
                (r.merchant_name, r.usage_count, r.suggested_category.name) for r in rows
            ),
        )


__all__ = [
    "CacheTier",
    "CategorizationTier",
    "MerchantCategorizationService",
    "MerchantQuery",
    "MerchantStats",
    "MerchantTableTier",
]
