from __future__ import annotations

import logging
from decimal import Decimal

import pytest
from ledger_db.client import session_scope
from ledger_db.models.ledger import ReconciliationLink, Transaction
from sqlalchemy import select
from transaction_ingest import (
    IngestSettings,
    ReconciliationError,
    reconcile_transactions,
    unlink_reconciliation,
)
from transaction_ingest.reconciliation import (
    amounts_compatible,
    enrich_description,
    provider_markers,
)

from tests.helpers.db import add_transaction, seed_user


def _pair(
    database_url: str,
    seeded,
    *,
    bank_description: str = "PAGAMENTO PAYPAL",
    bank_amount: str = "-30.00",
    bank_day: str = "2024-03-05",
    provider_description: str = "PAYPAL *ACME",
    provider_amount: str = "-30.00",
    provider_day: str = "2024-03-06",
    merchant_name: str | None = "ACME",
) -> tuple[int, int]:
    bank_id = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description=bank_description,
        amount=bank_amount,
        day=bank_day,
    )
    provider_id = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description=provider_description,
        amount=provider_amount,
        day=provider_day,
        source="paypal",
        merchant_name=merchant_name,
    )
    return bank_id, provider_id


def _tx(database_url: str, tx_id: int) -> Transaction:
    with session_scope(database_url=database_url) as session:
        tx = session.get(Transaction, tx_id)
        assert tx is not None
        return tx


def test_provider_row_is_linked_to_its_bank_twin(database_url: str) -> None:
    seeded = seed_user(database_url)
    bank_id, provider_id = _pair(database_url, seeded)

    result = reconcile_transactions(user_id=seeded.user_id)

    assert result.reconciled_count == 1
    (match,) = result.matches
    assert (match.primary_id, match.secondary_id) == (bank_id, provider_id)
    assert match.date_delta_days == 1
    assert match.amount_delta == Decimal("0.00")
    assert match.merchant_name == "ACME"
    assert result.unreconciled == ()

    primary, secondary = _tx(database_url, bank_id), _tx(database_url, provider_id)
    assert primary.description == "PAGAMENTO PAYPAL (ACME)"
    assert primary.reconciliation_status == "reconciled_as_primary"
    assert primary.reconciled_with_id == provider_id
    assert secondary.reconciliation_status == "reconciled_as_secondary"
    assert secondary.reconciled_with_id == bank_id
    assert secondary.description == "PAYPAL *ACME"


def test_second_pass_finds_nothing_new(database_url: str) -> None:
    seeded = seed_user(database_url)
    _pair(database_url, seeded)
    reconcile_transactions(user_id=seeded.user_id)

    again = reconcile_transactions(user_id=seeded.user_id)

    assert again.reconciled_count == 0
    with session_scope(database_url=database_url) as session:
        assert len(session.execute(select(ReconciliationLink)).scalars().all()) == 1


def test_unlink_restores_the_primary_description(database_url: str) -> None:
    seeded = seed_user(database_url)
    bank_id, provider_id = _pair(database_url, seeded)
    (match,) = reconcile_transactions(user_id=seeded.user_id).matches

    unlink_reconciliation(user_id=seeded.user_id, link_id=match.link_id)

    primary, secondary = _tx(database_url, bank_id), _tx(database_url, provider_id)
    assert primary.description == "PAGAMENTO PAYPAL"
    assert {primary.reconciliation_status, secondary.reconciliation_status} == {"not_reconciled"}
    assert primary.reconciled_with_id is None and secondary.reconciled_with_id is None

    with pytest.raises(ReconciliationError, match="not found"):
        unlink_reconciliation(user_id=seeded.user_id, link_id=match.link_id)


def test_merchant_falls_back_to_text_after_star(database_url: str) -> None:
    seeded = seed_user(database_url)
    bank_id, _ = _pair(database_url, seeded, merchant_name=None)

    reconcile_transactions(user_id=seeded.user_id)

    assert _tx(database_url, bank_id).description == "PAGAMENTO PAYPAL (ACME)"


def test_amount_within_tolerance_matches(database_url: str) -> None:
    seeded = seed_user(database_url)
    _pair(database_url, seeded, bank_amount="-30.20")

    result = reconcile_transactions(user_id=seeded.user_id)

    assert result.reconciled_count == 1
    assert result.matches[0].amount_delta == Decimal("0.20")


@pytest.mark.parametrize(
    "overrides",
    [
        {"bank_amount": "-31.00"},
        {"bank_day": "2024-03-01"},
        {"bank_amount": "30.00"},
        {"bank_description": "ESSELUNGA SUPERMERCATO"},
    ],
    ids=["amount", "window", "type", "no-marker"],
)
def test_mismatches_leave_rows_open(database_url: str, overrides: dict) -> None:
    seeded = seed_user(database_url)
    _, provider_id = _pair(database_url, seeded, **overrides)

    result = reconcile_transactions(user_id=seeded.user_id)

    assert result.reconciled_count == 0
    assert result.unreconciled == (provider_id,)


def test_closest_date_wins(database_url: str) -> None:
    seeded = seed_user(database_url)
    far = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="PAGAMENTO PAYPAL",
        amount="-30.00",
        day="2024-03-03",
    )
    near, provider_id = _pair(database_url, seeded, bank_day="2024-03-07")

    (match,) = reconcile_transactions(user_id=seeded.user_id).matches

    assert match.primary_id == near != far
    assert match.secondary_id == provider_id


def test_window_override_and_validation(database_url: str) -> None:
    seeded = seed_user(database_url)
    _pair(database_url, seeded, bank_day="2024-03-01")

    result = reconcile_transactions(user_id=seeded.user_id, date_tolerance_days=5)
    assert result.reconciled_count == 1
    with pytest.raises(ReconciliationError, match="expected >= 0"):
        reconcile_transactions(user_id=seeded.user_id, date_tolerance_days=-1)


def test_other_users_rows_are_ignored(database_url: str) -> None:
    mine = seed_user(database_url, user_id=1)
    other = seed_user(database_url, user_id=2)
    _pair(database_url, other)

    assert reconcile_transactions(user_id=mine.user_id).reconciled_count == 0
    assert reconcile_transactions(user_id=other.user_id).reconciled_count == 1


def test_provider_markers_and_helpers() -> None:
    settings = IngestSettings()
    assert provider_markers(settings, "gocardless_paypal") >= {"paypal", "gocardless_paypal"}
    assert "satispay" in provider_markers(settings, "satispay")

    tolerance = settings.reconciliation_amount_tolerance
    assert amounts_compatible(Decimal("-100.00"), Decimal("-100.90"), tolerance)
    assert not amounts_compatible(Decimal("-100.00"), Decimal("-101.10"), tolerance)

    assert enrich_description("PAGAMENTO PAYPAL", "ACME") == "PAGAMENTO PAYPAL (ACME)"
    assert enrich_description("ACME STORE", "acme") == "ACME STORE"
    assert enrich_description("PAGAMENTO PAYPAL", None) == "PAGAMENTO PAYPAL"


def test_provider_text_alone_does_not_justify_a_link(database_url: str) -> None:
    seeded = seed_user(database_url)
    bank_id, provider_id = _pair(
        database_url,
        seeded,
        bank_description="ESSELUNGA SUPERMERCATO",
        bank_amount="-19.99",
        provider_amount="-19.99",
    )

    result = reconcile_transactions(user_id=seeded.user_id)

    assert (result.reconciled_count, result.unreconciled) == (0, (provider_id,))
    bank = _tx(database_url, bank_id)
    assert bank.description == "ESSELUNGA SUPERMERCATO"
    assert bank.reconciliation_status == "not_reconciled"


def test_month_crossing_match_is_logged_as_warning_with_delta(
    database_url: str, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    # The CLI may have configured the package logger to stop propagating.
    monkeypatch.setattr(logging.getLogger("transaction_ingest"), "propagate", True)
    caplog.set_level(logging.INFO, logger="transaction_ingest.reconciliation")
    seeded = seed_user(database_url)
    bank_id, provider_id = _pair(
        database_url, seeded, bank_day="2024-03-31", provider_day="2024-04-01"
    )

    (match,) = reconcile_transactions(user_id=seeded.user_id).matches

    assert match.date_delta_days == 1
    (record,) = [r for r in caplog.records if r.getMessage().startswith("reconcile:matched")]
    assert record.levelno == logging.WARNING
    message = record.getMessage()
    assert f"primary_id={bank_id} secondary_id={provider_id}" in message
    assert "date_delta_days=1" in message
    assert "crosses_month=True" in message


def test_same_month_match_is_logged_at_info(
    database_url: str, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(logging.getLogger("transaction_ingest"), "propagate", True)
    caplog.set_level(logging.INFO, logger="transaction_ingest.reconciliation")
    seeded = seed_user(database_url)
    _pair(database_url, seeded)

    reconcile_transactions(user_id=seeded.user_id)

    (record,) = [r for r in caplog.records if r.getMessage().startswith("reconcile:matched")]
    assert record.levelno == logging.INFO
    assert "date_delta_days=1" in record.getMessage()
