"""Recurring-payment detection over a user's stored transactions.

Transactions are clustered by a loose description key (lowercased, dates and
digits removed, non-letters collapsed to spaces); two keys belong to the same
cluster when one contains the other, so ``"PAYPAL *ELSA SPEAK 01/2025"`` and
``"paypal elsa speak"`` group together. A cluster is reported as recurring
when at least three of its members have amounts within 40% of the cluster
average and the mean gap between them falls into a known frequency band.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from ledger_db.models.ledger import Transaction
from sqlalchemy import select
from sqlalchemy.orm import Session

from .logging_setup import get_logger

_logger = get_logger("transaction_ingest.patterns")

_FULL_DATE_RE = re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}")
_MONTH_YEAR_RE = re.compile(r"\d{1,2}/\d{4}")
_DIGITS_RE = re.compile(r"\d+")
_NON_LETTERS_RE = re.compile(r"[^a-z]+")

MIN_CLUSTER_SIZE = 3
AMOUNT_SPREAD = Decimal("0.4")

# (frequency, min mean gap in days, max mean gap in days, confidence); first match wins
FREQUENCY_BANDS: tuple[tuple[str, float, float, float], ...] = (
    ("monthly", 25, 35, 0.8),
    ("weekly", 6, 8, 0.8),
    ("yearly", 350, 380, 0.7),
    ("daily", 0, 3, 0.6),
)


@dataclass(frozen=True, slots=True)
class RecurringPattern:
    key: str
    frequency: str
    confidence: float
    transaction_ids: tuple[int, ...]
    average_amount: Decimal


def description_key(description: str) -> str:
    text = description.lower()
    text = _FULL_DATE_RE.sub("", text)
    text = _MONTH_YEAR_RE.sub("", text)
    text = _DIGITS_RE.sub("", text)
    return _NON_LETTERS_RE.sub(" ", text).strip()


def keys_match(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a == b or a in b or b in a


def classify_frequency(gaps: Sequence[int]) -> tuple[str, float] | None:
    if len(gaps) < MIN_CLUSTER_SIZE - 1:
        return None
    mean = sum(gaps) / len(gaps)
    for frequency, low, high, confidence in FREQUENCY_BANDS:
        if low <= mean <= high:
            return frequency, confidence
    return None


class RecurringPatternDetector:
    def detect(self, session: Session, user_id: int) -> list[RecurringPattern]:
        """Return recurring patterns for ``user_id``, largest cluster first."""

        txs = (
            session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.execution_date, Transaction.id)
            )
            .scalars()
            .all()
        )
        clusters: dict[str, list[Transaction]] = {}
        for tx in txs:
            key = description_key(tx.description)
            if not key:
                continue
            target = next((k for k in clusters if keys_match(k, key)), key)
            clusters.setdefault(target, []).append(tx)

        patterns: list[RecurringPattern] = []
        for key, members in clusters.items():
            pattern = self._evaluate(key, members)
            if pattern is not None:
                patterns.append(pattern)
        patterns.sort(key=lambda p: len(p.transaction_ids), reverse=True)
        _logger.debug("patterns:detected user_id=%d count=%d", user_id, len(patterns))
        return patterns

    @staticmethod
    def _evaluate(key: str, members: list[Transaction]) -> RecurringPattern | None:
        if len(members) < MIN_CLUSTER_SIZE:
            return None
        average = sum((Decimal(t.amount) for t in members), Decimal(0)) / len(members)
        limit = abs(average) * AMOUNT_SPREAD
        kept = [t for t in members if abs(Decimal(t.amount) - average) <= limit]
        if len(kept) < MIN_CLUSTER_SIZE:
            return None
        kept.sort(key=lambda t: (t.execution_date, t.id))
        gaps = [
            round((b.execution_date - a.execution_date).total_seconds() / 86400)
            for a, b in zip(kept, kept[1:], strict=False)
        ]
        classified = classify_frequency(gaps)
        if classified is None:
            return None
        frequency, confidence = classified
        return RecurringPattern(
            key=key,
            frequency=frequency,
            confidence=confidence,
            transaction_ids=tuple(t.id for t in kept),
            average_amount=(
                sum((Decimal(t.amount) for t in kept), Decimal(0)) / len(kept)
            ).quantize(Decimal("0.01")),
        )


__all__ = [
    "FREQUENCY_BANDS",
    "RecurringPattern",
    "RecurringPatternDetector",
    "classify_frequency",
    "description_key",
    "keys_match",
]
