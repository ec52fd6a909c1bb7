from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest
from ledger_db.client import session_scope
from ledger_db.models.ledger import PendingDuplicate, ReconciliationLink, Transaction
from sqlalchemy import select
from transaction_ingest import (
    DuplicateResolutionError,
    IngestSettings,
    TransactionDraft,
    TransactionType,
    resolve_pending_duplicate,
)
from transaction_ingest.duplicates import (
    DuplicateKind,
    WriteOutcome,
    check_duplicate,
    description_similarity,
    list_pending_duplicates,
    write_draft,
)
from transaction_ingest.persistence import AccountRef, enrich_explicit
from transaction_ingest.reconciliation import reconcile

from tests.helpers.db import add_transaction, all_transactions, seed_user

SETTINGS = IngestSettings()


def _draft(seeded, description: str, amount: str, day: str, **kw) -> TransactionDraft:
    signed = Decimal(amount)
    fields = {
        "description": description,
        "amount": abs(signed),
        "execution_date": datetime.fromisoformat(day).replace(hour=12),
        "type": TransactionType.from_signed(signed),
        "source": "file_import",
        "bank_account_id": seeded.bank_account_id,
    }
    fields.update(kw)
    return TransactionDraft(**fields)


def _write(database_url: str, seeded, draft: TransactionDraft):
    account = AccountRef(bank_account_id=seeded.bank_account_id, credit_card_id=None)
    with session_scope(database_url=database_url) as session:
        result = write_draft(
            session,
            user_id=seeded.user_id,
            draft=draft,
            enrich=lambda: enrich_explicit(
                session, user_id=seeded.user_id, draft=draft, account=account
            ),
            settings=SETTINGS,
        )
        return result.outcome, (result.pending.id if result.pending is not None else None)


# ---- Similarity ----------------------------------------------------------------


def test_description_similarity() -> None:
    assert description_similarity("Esselunga Milano", "ESSELUNGA, milano") == 1.0
    assert description_similarity("milano esselunga", "esselunga milano") == 1.0
    assert description_similarity("Esselunga Milano", "ESSELUNGA MILANO SPA") >= 0.6
    assert description_similarity("Esselunga", "Trenitalia biglietto") < 0.6
    assert description_similarity("", "anything") == 0.0


# ---- Detection -----------------------------------------------------------------


def test_exact_duplicate_by_external_id_ignores_date(database_url: str) -> None:
    seeded = seed_user(database_url)
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Bonifico",
        amount="-10.00",
        day="2024-03-01",
        external_id="ext-1",
    )
    draft = _draft(seeded, "Bonifico SEPA", "-10.00", "2024-03-20", external_id="ext-1")

    outcome, _ = _write(database_url, seeded, draft)

    assert outcome == WriteOutcome.DUPLICATE_SUPPRESSED
    assert len(all_transactions(database_url)) == 1


def test_distinct_external_ids_are_never_duplicates(database_url: str) -> None:
    seeded = seed_user(database_url)
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Caffe bar",
        amount="-1.50",
        day="2024-03-05",
        external_id="a",
    )
    draft = _draft(seeded, "Caffe bar", "-1.50", "2024-03-05", external_id="b")

    outcome, _ = _write(database_url, seeded, draft)

    assert outcome == WriteOutcome.CREATED


def test_cross_source_pair_is_not_a_duplicate(database_url: str) -> None:
    seeded = seed_user(database_url)
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="PAYPAL *ACME",
        amount="-30.00",
        day="2024-03-05",
    )
    draft = _draft(seeded, "PAYPAL *ACME", "-30.00", "2024-03-06", source="paypal")

    outcome, _ = _write(database_url, seeded, draft)

    assert outcome == WriteOutcome.CREATED


def test_near_duplicate_prefers_the_closest_date(database_url: str) -> None:
    seeded = seed_user(database_url)
    far = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Esselunga Milano",
        amount="-45.20",
        day="2024-03-02",
    )
    near = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Esselunga Milano centro",
        amount="-45.20",
        day="2024-03-04",
    )
    draft = _draft(seeded, "ESSELUNGA MILANO", "-45.20", "2024-03-05")

    with session_scope(database_url=database_url) as session:
        match = check_duplicate(session, user_id=seeded.user_id, draft=draft, settings=SETTINGS)
        assert match is not None
        assert match.kind == DuplicateKind.NEAR
        assert match.transaction.id == near != far
        assert match.date_delta_days == 1


def test_amount_or_type_mismatch_is_not_a_near_duplicate(database_url: str) -> None:
    seeded = seed_user(database_url)
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Rimborso Esselunga",
        amount="45.20",
        day="2024-03-05",
    )
    draft = _draft(seeded, "Rimborso Esselunga", "-45.20", "2024-03-06")

    with session_scope(database_url=database_url) as session:
        assert (
            check_duplicate(session, user_id=seeded.user_id, draft=draft, settings=SETTINGS)
            is None
        )


# ---- Review queue --------------------------------------------------------------


def _queue_near_duplicate(database_url: str, seeded, **draft_kw) -> tuple[int, int]:
    existing = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Esselunga Milano",
        amount="-45.20",
        day="2024-03-05",
    )
    draft = _draft(seeded, "ESSELUNGA MILANO SPA", "-45.20", "2024-03-07", **draft_kw)
    outcome, pending_id = _write(database_url, seeded, draft)
    assert outcome == WriteOutcome.PENDING_DUPLICATE and pending_id is not None
    return existing, pending_id


def _pending(database_url: str, pending_id: int) -> PendingDuplicate:
    with session_scope(database_url=database_url) as session:
        row = session.get(PendingDuplicate, pending_id)
        assert row is not None
        return row


def test_keep_existing_discards_the_queued_row(database_url: str) -> None:
    seeded = seed_user(database_url)
    existing, pending_id = _queue_near_duplicate(database_url, seeded)

    survivor = resolve_pending_duplicate(
        user_id=seeded.user_id, pending_id=pending_id, choice="keep_existing"
    )

    assert survivor == existing
    assert [t.id for t in all_transactions(database_url)] == [existing]
    row = _pending(database_url, pending_id)
    assert row.resolved is True and row.resolution == "keep_existing"
    assert row.resolved_at is not None


def test_accept_new_replaces_the_existing_row(database_url: str) -> None:
    seeded = seed_user(database_url)
    existing, pending_id = _queue_near_duplicate(database_url, seeded)

    survivor = resolve_pending_duplicate(
        user_id=seeded.user_id, pending_id=pending_id, choice="ACCEPT_NEW"
    )

    txs = all_transactions(database_url)
    assert [t.id for t in txs] == [survivor]
    assert txs[0].description == "ESSELUNGA MILANO SPA"
    assert txs[0].amount == Decimal("-45.20")
    assert _pending(database_url, pending_id).resolution == "accept_new"


def test_merge_fills_blank_fields_only(database_url: str) -> None:
    seeded = seed_user(database_url)
    existing, pending_id = _queue_near_duplicate(
        database_url,
        seeded,
        merchant_name="Esselunga",
        external_id="ext-77",
        tag_names=("spesa",),
    )

    survivor = resolve_pending_duplicate(
        user_id=seeded.user_id, pending_id=pending_id, choice="merge"
    )

    assert survivor == existing
    (tx,) = all_transactions(database_url)
    assert tx.description == "Esselunga Milano"
    assert tx.merchant_name == "Esselunga"
    assert tx.external_id == "ext-77"
    assert [t.name for t in tx.tags] == ["spesa"]


def test_resolution_errors(database_url: str) -> None:
    seeded = seed_user(database_url)
    _, pending_id = _queue_near_duplicate(database_url, seeded)

    with pytest.raises(DuplicateResolutionError, match="invalid resolution"):
        resolve_pending_duplicate(user_id=seeded.user_id, pending_id=pending_id, choice="maybe")
    with pytest.raises(DuplicateResolutionError, match="not found"):
        resolve_pending_duplicate(user_id=99, pending_id=pending_id, choice="merge")

    resolve_pending_duplicate(user_id=seeded.user_id, pending_id=pending_id, choice="merge")
    with pytest.raises(DuplicateResolutionError, match="already resolved"):
        resolve_pending_duplicate(
            user_id=seeded.user_id, pending_id=pending_id, choice="keep_existing"
        )


def test_list_pending_duplicates_hides_resolved_rows(database_url: str) -> None:
    seeded = seed_user(database_url)
    _, pending_id = _queue_near_duplicate(database_url, seeded)
    with session_scope(database_url=database_url) as session:
        assert [p.id for p in list_pending_duplicates(session, user_id=seeded.user_id)] == [
            pending_id
        ]

    resolve_pending_duplicate(
        user_id=seeded.user_id, pending_id=pending_id, choice="keep_existing"
    )

    with session_scope(database_url=database_url) as session:
        assert list_pending_duplicates(session, user_id=seeded.user_id) == []


# ---- Interaction with reconciliation ------------------------------------------------


def test_reimported_bank_row_matches_reconciled_original_text(database_url: str) -> None:
    seeded = seed_user(database_url)
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="POS PURCHASE PAYPAL",
        amount="-30.00",
        day="2024-03-05",
    )
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="PAYPAL *ACME",
        amount="-30.00",
        day="2024-03-06",
        source="paypal",
    )
    with session_scope(database_url=database_url) as session:
        assert reconcile(session, user_id=seeded.user_id, settings=SETTINGS).reconciled_count == 1

    draft = _draft(seeded, "POS PURCHASE PAYPAL", "-30.00", "2024-03-05")
    outcome, _ = _write(database_url, seeded, draft)

    assert outcome == WriteOutcome.DUPLICATE_SUPPRESSED


def test_accept_new_unlinks_a_reconciled_existing_row(database_url: str) -> None:
    seeded = seed_user(database_url)
    bank_id = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="POS PURCHASE PAYPAL",
        amount="-30.00",
        day="2024-03-05",
    )
    provider_id = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="PAYPAL *ACME",
        amount="-30.00",
        day="2024-03-06",
        source="paypal",
    )
    with session_scope(database_url=database_url) as session:
        reconcile(session, user_id=seeded.user_id, settings=SETTINGS)

    draft = _draft(seeded, "POS PURCHASE PAYPAL EU", "-30.00", "2024-03-06")
    outcome, pending_id = _write(database_url, seeded, draft)
    assert outcome == WriteOutcome.PENDING_DUPLICATE
    assert pending_id is not None

    resolve_pending_duplicate(user_id=seeded.user_id, pending_id=pending_id, choice="accept_new")

    with session_scope(database_url=database_url) as session:
        assert session.get(Transaction, bank_id) is None
        provider = session.get(Transaction, provider_id)
        assert provider is not None
        assert provider.reconciliation_status == "not_reconciled"
        assert provider.reconciled_with_id is None
        assert session.execute(select(ReconciliationLink)).scalars().all() == []
