"""Public entrypoints for transaction ingestion, reconciliation and categorization.

Every function opens its own transactional scope via
``ledger_db.client.session_scope`` (``database_url`` falls back to the
``DATABASE_URL`` environment variable) and returns plain values, never ORM
objects bound to a closed session.

The merchant categorization service is process-scoped so its tier-1 cache
survives across calls; :func:`default_categorizer` builds it once per
settings value. The external classifier tier is enabled only when an OpenAI
API key is configured.
"""

from __future__ import annotations

import os
from functools import lru_cache

from ledger_db.client import session_scope

from .classifier import OpenAIClassifierTier
from .config import IngestSettings
from .duplicates import DuplicateResolution, resolve_pending_duplicate as _resolve
from .importer import ImportOrchestrator
from .merchant_categorization import MerchantCategorizationService, MerchantStats
from .models import (
    CategorizationRequest,
    CategorizationResult,
    ImportRequest,
    ImportSummary,
    ReconciliationResult,
)
from .patterns import RecurringPattern, RecurringPatternDetector
from .reconciliation import reconcile, unlink


@lru_cache(maxsize=8)
def default_categorizer(settings: IngestSettings) -> MerchantCategorizationService:
    classifier = None
    if os.getenv("OPENAI_API_KEY"):
        classifier = OpenAIClassifierTier(
            model=settings.classifier_model, timeout_seconds=settings.classifier_timeout_seconds
        )
    return MerchantCategorizationService(settings=settings, classifier=classifier)


def _settings(settings: IngestSettings | None) -> IngestSettings:
    return settings if settings is not None else IngestSettings()


def import_transactions(
    request: ImportRequest,
    *,
    database_url: str | None = None,
    settings: IngestSettings | None = None,
    categorizer: MerchantCategorizationService | None = None,
) -> ImportSummary:
    """Import one payload; see :mod:`transaction_ingest.importer` for the stages."""

    s = _settings(settings)
    return ImportOrchestrator(
        settings=s,
        categorizer=categorizer or default_categorizer(s),
        database_url=database_url,
    ).run(request)


def reconcile_transactions(
    *,
    user_id: int,
    date_tolerance_days: int | None = None,
    database_url: str | None = None,
    settings: IngestSettings | None = None,
) -> ReconciliationResult:
    with session_scope(database_url=database_url) as session:
        return reconcile(
            session,
            user_id=user_id,
            settings=_settings(settings),
            date_tolerance_days=date_tolerance_days,
        )


def unlink_reconciliation(*, user_id: int, link_id: int, database_url: str | None = None) -> None:
    with session_scope(database_url=database_url) as session:
        unlink(session, user_id=user_id, link_id=link_id)


def lookup_category(
    request: CategorizationRequest,
    *,
    user_id: int,
    database_url: str | None = None,
    settings: IngestSettings | None = None,
    categorizer: MerchantCategorizationService | None = None,
) -> CategorizationResult | None:
    service = categorizer or default_categorizer(_settings(settings))
    with session_scope(database_url=database_url) as session:
        return service.categorize(session, user_id=user_id, request=request)


def learn_from_correction(
    *,
    user_id: int,
    merchant_name: str,
    category_id: int,
    merchant_category_code: str | None = None,
    database_url: str | None = None,
    settings: IngestSettings | None = None,
    categorizer: MerchantCategorizationService | None = None,
) -> CategorizationResult:
    service = categorizer or default_categorizer(_settings(settings))
    with session_scope(database_url=database_url) as session:
        return service.learn_from_correction(
            session,
            user_id=user_id,
            merchant_name=merchant_name,
            category_id=category_id,
            mcc=merchant_category_code,
        )


def merchant_stats(
    *,
    user_id: int,
    database_url: str | None = None,
    settings: IngestSettings | None = None,
    categorizer: MerchantCategorizationService | None = None,
) -> MerchantStats:
    service = categorizer or default_categorizer(_settings(settings))
    with session_scope(database_url=database_url) as session:
        return service.merchant_stats(session, user_id=user_id)


def resolve_pending_duplicate(
    *,
    user_id: int,
    pending_id: int,
    choice: DuplicateResolution | str,
    database_url: str | None = None,
) -> int | None:
    """Apply a review decision; returns the id of the surviving transaction, if any."""

    with session_scope(database_url=database_url) as session:
        survivor = _resolve(session, user_id=user_id, pending_id=pending_id, choice=choice)
        return survivor.id if survivor is not None else None


def detect_recurring_patterns(
    *, user_id: int, database_url: str | None = None
) -> list[RecurringPattern]:
    with session_scope(database_url=database_url) as session:
        return RecurringPatternDetector().detect(session, user_id)


__all__ = [
    "default_categorizer",
    "detect_recurring_patterns",
    "import_transactions",
    "learn_from_correction",
    "lookup_category",
    "merchant_stats",
    "reconcile_transactions",
    "resolve_pending_duplicate",
    "unlink_reconciliation",
]
