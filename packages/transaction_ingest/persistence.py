"""Persistence helpers for canonical transactions.

Functions here write to the shared database owned by ``libs/ledger_db``.
They take a caller-owned SQLAlchemy session and never commit.

Scope:
- validate the account reference of a draft (exactly one of bank account or
  credit card, owned by the user);
- compute the billing date (credit cards bill on the next billing day strictly
  after the execution date; bank accounts bill on the execution date);
- insert a draft as a :class:`~ledger_db.models.ledger.Transaction`, applying
  the ledger sign convention regardless of the source format's convention;
- produce JSON snapshots of stored rows for the duplicate review queue.
"""

from __future__ import annotations

import calendar
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from ledger_db.models.ledger import BankAccount, CreditCard, Tag, Transaction
from sqlalchemy import select
from sqlalchemy.orm import Session

from .categories import resolve_category, resolve_tags
from .errors import AccountReferenceError
from .models import ReconciliationStatus, TransactionDraft

_CENT = Decimal("0.01")


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


# ---------------------------
# Accounts and billing dates
# ---------------------------


@dataclass(frozen=True, slots=True)
class AccountRef:
    bank_account_id: int | None
    credit_card_id: int | None
    # Set for credit cards only.
    billing_day: int | None = None


def resolve_account(
    session: Session,
    *,
    user_id: int,
    bank_account_id: int | None,
    credit_card_id: int | None,
) -> AccountRef:
    """Validate that exactly one owned account is referenced."""

    if (bank_account_id is None) == (credit_card_id is None):
        raise AccountReferenceError(
            f"account reference bank_account_id={bank_account_id!r} "
            f"credit_card_id={credit_card_id!r}; expected exactly one of the two"
        )
    if bank_account_id is not None:
        account = session.get(BankAccount, bank_account_id)
        if account is None or account.user_id != user_id:
            raise AccountReferenceError(
                f"bank account {bank_account_id!r} not found for user {user_id}"
            )
        return AccountRef(bank_account_id=bank_account_id, credit_card_id=None)

    card = session.get(CreditCard, credit_card_id)
    if card is None or card.user_id != user_id:
        raise AccountReferenceError(f"credit card {credit_card_id!r} not found for user {user_id}")
    return AccountRef(bank_account_id=None, credit_card_id=card.id, billing_day=card.billing_day)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def compute_billing_date(execution_date: date, billing_day: int | None) -> date:
    """Return the billing date for a transaction executed on ``execution_date``.

    With no ``billing_day`` (bank accounts) the billing date is the execution
    date. Otherwise it is the next occurrence of ``billing_day`` strictly after
    the execution date, clamped to the month's last day (day 31 bills on
    30 April).
    """

    if billing_day is None:
        return execution_date
    candidate = _clamped(execution_date.year, execution_date.month, billing_day)
    if candidate > execution_date:
        return candidate
    year, month = execution_date.year, execution_date.month + 1
    if month > 12:
        year, month = year + 1, 1
    return _clamped(year, month, billing_day)


# ---------------------------
# Enrichment + insert
# ---------------------------


@dataclass(frozen=True, slots=True)
class Enrichment:
    billing_date: date
    category_id: int | None = None
    category_confidence: float | None = None
    tags: tuple[Tag, ...] = ()


def enrich_explicit(
    session: Session,
    *,
    user_id: int,
    draft: TransactionDraft,
    account: AccountRef,
) -> Enrichment:
    """Billing date, tags, and the draft's explicitly named category (if any)."""

    billing = compute_billing_date(draft.execution_date.date(), account.billing_day)
    tags = tuple(resolve_tags(session, user_id=user_id, names=draft.tag_names))
    category_id: int | None = None
    confidence: float | None = None
    if draft.category_name:
        category_id = resolve_category(session, user_id=user_id, name=draft.category_name).id
        confidence = 1.0
    return Enrichment(
        billing_date=billing,
        category_id=category_id,
        category_confidence=confidence,
        tags=tags,
    )


def insert_transaction(
    session: Session,
    *,
    user_id: int,
    draft: TransactionDraft,
    enrichment: Enrichment,
    import_id: int | None = None,
) -> Transaction:
    if (draft.bank_account_id is None) == (draft.credit_card_id is None):
        raise AccountReferenceError(
            f"draft at row {draft.row_index} references "
            f"bank_account_id={draft.bank_account_id!r} credit_card_id={draft.credit_card_id!r}; "
            "expected exactly one"
        )
    tx = Transaction(
        user_id=user_id,
        description=draft.description,
        amount=quantize_amount(draft.signed_amount),
        type=str(draft.type),
        status=str(draft.status),
        source=draft.source,
        execution_date=draft.execution_date,
        billing_date=enrichment.billing_date,
        external_id=draft.external_id,
        merchant_name=draft.merchant_name,
        merchant_category_code=draft.merchant_category_code,
        category_id=enrichment.category_id,
        category_confidence=enrichment.category_confidence,
        bank_account_id=draft.bank_account_id,
        credit_card_id=draft.credit_card_id,
        reconciliation_status=str(ReconciliationStatus.NOT_RECONCILED),
        import_id=import_id,
    )
    tx.tags = list(enrichment.tags)
    session.add(tx)
    session.flush()
    return tx


def transaction_snapshot(tx: Transaction) -> dict[str, Any]:
    """JSON-safe view of a stored transaction for the duplicate review queue."""

    return {
        "id": tx.id,
        "description": tx.description,
        "amount": f"{quantize_amount(Decimal(tx.amount)):.2f}",
        "execution_date": tx.execution_date.isoformat(),
        "type": tx.type,
        "status": tx.status,
        "source": tx.source,
        "external_id": tx.external_id,
        "merchant_name": tx.merchant_name,
        "category_id": tx.category_id,
        "bank_account_id": tx.bank_account_id,
        "credit_card_id": tx.credit_card_id,
    }


def transactions_in_window(
    session: Session,
    *,
    user_id: int,
    start: date,
    end: date,
    statuses: Sequence[str] | None = None,
) -> list[Transaction]:
    """Transactions of ``user_id`` executed on days ``start``..``end`` inclusive."""

    stmt = select(Transaction).where(
        Transaction.user_id == user_id,
        Transaction.execution_date >= datetime.combine(start, time.min),
        Transaction.execution_date <= datetime.combine(end, time.max),
    )
    if statuses is not None:
        stmt = stmt.where(Transaction.reconciliation_status.in_(list(statuses)))
    return list(session.execute(stmt.order_by(Transaction.id)).scalars().all())


__all__ = [
    "AccountRef",
    "Enrichment",
    "compute_billing_date",
    "enrich_explicit",
    "insert_transaction",
    "quantize_amount",
    "resolve_account",
    "transaction_snapshot",
    "transactions_in_window",
]
