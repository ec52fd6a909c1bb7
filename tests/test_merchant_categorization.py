from __future__ import annotations

from decimal import Decimal

import pytest
from ledger_db.client import session_scope
from ledger_db.models.ledger import MerchantCategorization
from sqlalchemy import select
from transaction_ingest import (
    CategorizationRequest,
    CategorizationResult,
    CategoryNotFoundError,
    IngestSettings,
    TransactionType,
    learn_from_correction,
    lookup_category,
    merchant_stats,
)
from transaction_ingest.categories import CategoryOption, best_keyword_match, keyword_matches
from transaction_ingest.merchant_cache import MerchantCache, merchant_key
from transaction_ingest.merchant_categorization import MerchantCategorizationService

from tests.helpers.db import seed_user


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(clock: FakeClock) -> MerchantCategorizationService:
    settings = IngestSettings()
    return MerchantCategorizationService(
        settings=settings, cache=MerchantCache(settings.merchant_cache_ttl_seconds, clock=clock)
    )


def _request(merchant: str | None, description: str = "Pagamento POS") -> CategorizationRequest:
    return CategorizationRequest(
        merchant_name=merchant,
        description=description,
        amount=Decimal("-12.50"),
        type=TransactionType.EXPENSE,
    )


# ---- Learning and tier walk ------------------------------------------------------


def test_correction_is_served_from_the_table_then_the_cache(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)
    groceries = seeded.categories["Groceries"]

    learned = learn_from_correction(
        user_id=seeded.user_id,
        merchant_name="Esselunga",
        category_id=groceries,
        categorizer=service,
    )
    assert learned == CategorizationResult(groceries, "Groceries", 1.0, "merchant_table")

    first = lookup_category(_request("ESSELUNGA"), user_id=seeded.user_id, categorizer=service)
    second = lookup_category(_request("esselunga"), user_id=seeded.user_id, categorizer=service)

    assert first is not None and second is not None
    assert (first.category_id, first.tier, first.confidence) == (groceries, "merchant_table", 1.0)
    assert (second.category_id, second.tier) == (groceries, "cache")


def test_a_new_correction_invalidates_cached_entries(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)
    groceries, restaurants = seeded.categories["Groceries"], seeded.categories["Restaurants"]
    learn_from_correction(
        user_id=seeded.user_id, merchant_name="Da Mario", category_id=groceries, categorizer=service
    )
    lookup_category(_request("Da Mario"), user_id=seeded.user_id, categorizer=service)
    assert len(service.cache) == 1

    learn_from_correction(
        user_id=seeded.user_id,
        merchant_name="da mario",
        category_id=restaurants,
        categorizer=service,
    )

    assert len(service.cache) == 0
    result = lookup_category(_request("Da Mario"), user_id=seeded.user_id, categorizer=service)
    assert result is not None
    assert (result.category_id, result.tier) == (restaurants, "merchant_table")

    with session_scope(database_url=database_url) as session:
        (row,) = session.execute(select(MerchantCategorization)).scalars().all()
        assert row.merchant_name == "da mario"
        assert row.merchant_category_code == "none"
        assert row.usage_count == 2
        assert row.average_confidence == pytest.approx(1.0)
        assert [h["source"] for h in row.category_history] == ["manual_override"] * 2
        assert [h["category_id"] for h in row.category_history] == [groceries, restaurants]


def test_merchant_code_is_part_of_the_key_with_fallback_to_any_code(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)
    coffee = seeded.categories["Coffee Shops"]
    learn_from_correction(
        user_id=seeded.user_id,
        merchant_name="Bar Centrale",
        category_id=coffee,
        merchant_category_code="5814",
        categorizer=service,
    )

    request = CategorizationRequest(
        merchant_name="Bar Centrale",
        merchant_category_code="5812",
        description="Pagamento POS",
        amount=Decimal("-2.40"),
        type=TransactionType.EXPENSE,
    )
    result = lookup_category(request, user_id=seeded.user_id, categorizer=service)

    assert result is not None and result.category_id == coffee


def test_correction_without_code_replaces_suggestions_under_every_code(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)
    coffee, restaurants = seeded.categories["Coffee Shops"], seeded.categories["Restaurants"]
    learn_from_correction(
        user_id=seeded.user_id,
        merchant_name="Bar Centrale",
        category_id=coffee,
        merchant_category_code="5812",
        categorizer=service,
    )

    learn_from_correction(
        user_id=seeded.user_id,
        merchant_name="Bar Centrale",
        category_id=restaurants,
        categorizer=service,
    )

    request = CategorizationRequest(
        merchant_name="Bar Centrale",
        merchant_category_code="5812",
        description="Pagamento POS",
        amount=Decimal("-18.00"),
        type=TransactionType.EXPENSE,
    )
    result = lookup_category(request, user_id=seeded.user_id, categorizer=service)
    assert result is not None
    assert (result.category_id, result.category_name) == (restaurants, "Restaurants")

    with session_scope(database_url=database_url) as session:
        rows = session.execute(select(MerchantCategorization)).scalars().all()
        assert {r.merchant_category_code for r in rows} == {"5812", "none"}
        assert {r.suggested_category_id for r in rows} == {restaurants}
        coded = next(r for r in rows if r.merchant_category_code == "5812")
        assert coded.usage_count == 1
        assert [h["category_id"] for h in coded.category_history] == [coffee, restaurants]


def test_correction_rejects_foreign_categories_and_blank_merchants(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seed_user(database_url, user_id=1)
    other = seed_user(database_url, user_id=2)

    with pytest.raises(CategoryNotFoundError):
        learn_from_correction(
            user_id=1,
            merchant_name="Esselunga",
            category_id=other.categories["Groceries"],
            categorizer=service,
        )
    with pytest.raises(ValueError, match="merchant name"):
        learn_from_correction(
            user_id=other.user_id,
            merchant_name="  *** ",
            category_id=other.categories["Groceries"],
            categorizer=service,
        )


def test_bulk_update_is_recorded_in_history(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)
    utilities = seeded.categories["Utilities"]

    with session_scope(database_url=database_url) as session:
        result = service.record_bulk_update(
            session, user_id=seeded.user_id, merchant_name="Enel Energia", category_id=utilities
        )
        assert (result.category_name, result.confidence) == ("Utilities", 1.0)

    with session_scope(database_url=database_url) as session:
        (row,) = session.execute(select(MerchantCategorization)).scalars().all()
        assert row.category_history[-1]["source"] == "bulk_update"


# ---- Keyword fallback ------------------------------------------------------------


def test_keyword_fallback_without_merchant(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)

    result = lookup_category(
        _request(None, "Caffe al Bar Roma"), user_id=seeded.user_id, categorizer=service
    )

    assert result == CategorizationResult(
        seeded.categories["Coffee Shops"], "Coffee Shops", 0.6, "keyword"
    )


def test_keyword_fallback_when_every_tier_misses(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)

    hit = lookup_category(
        _request("Unknown Srl", "NETFLIX.COM abbonamento"),
        user_id=seeded.user_id,
        categorizer=service,
    )
    miss = lookup_category(
        _request("Unknown Srl", "Bonifico a Marco"), user_id=seeded.user_id, categorizer=service
    )

    assert hit is not None and hit.tier == "keyword"
    assert hit.category_id == seeded.categories["Subscriptions"]
    assert miss is None


def test_keyword_rules() -> None:
    assert keyword_matches("BAR CAFFE DEL CORSO", "bar caffe")
    assert keyword_matches("caffe del bar", "bar caffe")
    assert not keyword_matches("caffetteria", "bar caffe")
    assert keyword_matches("SUPERMARKETS ITALIA", "supermarket")
    assert not keyword_matches("", "coop")

    options = [
        CategoryOption(id=1, name="Food", keywords=("bar",)),
        CategoryOption(id=2, name="Coffee", keywords=("bar caffe",)),
    ]
    chosen = best_keyword_match(options, "Bar Caffe Roma")
    assert chosen is not None and chosen.name == "Coffee"


# ---- Statistics ------------------------------------------------------------------


def test_merchant_stats(database_url: str, service: MerchantCategorizationService) -> None:
    seeded = seed_user(database_url)
    groceries = seeded.categories["Groceries"]
    for merchant in ("Esselunga", "Esselunga", "Coop"):
        learn_from_correction(
            user_id=seeded.user_id,
            merchant_name=merchant,
            category_id=groceries,
            categorizer=service,
        )

    stats = merchant_stats(user_id=seeded.user_id, categorizer=service)

    assert stats.total_merchants == 2
    assert stats.total_categorizations == 3
    assert stats.average_confidence == pytest.approx(1.0)
    assert stats.top_merchants == (("esselunga", 2, "Groceries"), ("coop", 1, "Groceries"))


def test_merchant_stats_for_a_user_without_history(
    database_url: str, service: MerchantCategorizationService
) -> None:
    seeded = seed_user(database_url)
    stats = merchant_stats(user_id=seeded.user_id, categorizer=service)
    assert (stats.total_merchants, stats.total_categorizations, stats.top_merchants) == (0, 0, ())


# ---- Cache ------------------------------------------------------------------------


def test_cache_entries_expire_after_ttl(clock: FakeClock) -> None:
    cache = MerchantCache(60, clock=clock)
    key = merchant_key(1, "Esselunga", None)
    cache.store(key, CategorizationResult(5, "Groceries", 0.8, "merchant_table"))

    clock.now += 59
    assert cache.lookup(key) is not None
    clock.now += 1
    assert cache.lookup(key) is None
    assert len(cache) == 0


def test_cache_invalidation_spans_codes_but_not_users(clock: FakeClock) -> None:
    cache = MerchantCache(60, clock=clock)
    result = CategorizationResult(5, "Groceries", 0.8, "merchant_table")
    cache.store(merchant_key(1, "Esselunga", None), result)
    cache.store(merchant_key(1, "ESSELUNGA", "5411"), result)
    cache.store(merchant_key(2, "Esselunga", None), result)

    assert cache.invalidate(1, "esselunga") == 2
    assert len(cache) == 1
    assert merchant_key(1, "Esselunga", " ") == (1, "esselunga", "none")


def test_cache_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError, match="ttl_seconds"):
        MerchantCache(0)
