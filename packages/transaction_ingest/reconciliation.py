"""Cross-source reconciliation.

A purchase paid through a payment provider shows up twice: once in the
provider's own export (``PROVIDER *ACME``) and once in the bank feed that
funded it (``PAGAMENTO PAYPAL``). This pass links such pairs instead of treating
them as duplicates:

- the bank-origin row becomes ``reconciled_as_primary`` and keeps its text,
  with the provider-reported merchant appended as ``" (ACME)"``;
- the provider-origin row becomes ``reconciled_as_secondary``;
- a :class:`~ledger_db.models.ledger.ReconciliationLink` records the pair, the
  date/amount deltas and the primary's original description.

Only rows still ``not_reconciled`` are read or written. Every status change is
a guarded ``UPDATE ... WHERE reconciliation_status = 'not_reconciled'`` whose
row count is checked, so the pass is idempotent and can run alongside imports
without taking a table-wide lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from ledger_db.models.ledger import ReconciliationLink, Transaction
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .config import IngestSettings
from .errors import ReconciliationError
from .logging_setup import get_logger
from .models import ReconciliationMatch, ReconciliationResult, ReconciliationStatus
from .persistence import quantize_amount, transactions_in_window

_logger = get_logger("transaction_ingest.reconciliation")

_OPEN = ReconciliationStatus.NOT_RECONCILED.value


class _LostRace(Exception):
    """A row changed reconciliation status between read and guarded update."""


@dataclass(frozen=True, slots=True)
class _Candidate:
    tx: Transaction
    date_delta_days: int
    amount_delta: Decimal


# ---------------------------
# Matching rules
# ---------------------------


def provider_markers(settings: IngestSettings, provider_source: str) -> frozenset[str]:
    """Markers identifying provider-routed payments for ``provider_source``.

    The configured markers plus the source tag itself and its last
    ``_``-separated part (``gocardless_paypal`` contributes ``paypal``).
    """

    source = provider_source.strip().lower()
    markers = set(settings.provider_markers)
    if source:
        markers.add(source)
        markers.add(source.rsplit("_", 1)[-1])
    return frozenset(m for m in markers if m)


def has_marker(description: str | None, markers: frozenset[str]) -> bool:
    lowered = (description or "").lower()
    return any(m in lowered for m in markers)


def amounts_compatible(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    a, b = abs(Decimal(a)), abs(Decimal(b))
    return abs(a - b) <= tolerance * max(a, b)


def provider_merchant(provider: Transaction) -> str | None:
    """Merchant reported by the provider row: its merchant name, else the text after ``*``."""

    if provider.merchant_name and provider.merchant_name.strip():
        return provider.merchant_name.strip()
    _, star, tail = (provider.description or "").partition("*")
    name = " ".join(tail.split()) if star else ""
    return name or None


def enrich_description(description: str, merchant: str | None) -> str:
    if not merchant or merchant.lower() in description.lower():
        return description
    return f"{description} ({merchant})"


# ---------------------------
# Pass
# ---------------------------


def _open_provider_rows(
    session: Session, *, user_id: int, settings: IngestSettings
) -> list[Transaction]:
    rows = (
        session.execute(
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.reconciliation_status == _OPEN,
                Transaction.source.in_(sorted(settings.provider_sources)),
            )
            .order_by(Transaction.execution_date, Transaction.id)
        )
        .scalars()
        .all()
    )
    return list(rows)


def _best_candidate(
    session: Session,
    *,
    provider: Transaction,
    settings: IngestSettings,
    window_days: int,
    taken: set[int],
) -> _Candidate | None:
    day = provider.execution_date.date()
    window = timedelta(days=window_days)
    markers = provider_markers(settings, provider.source)
    provider_amount = Decimal(provider.amount)
    best: _Candidate | None = None
    for tx in transactions_in_window(
        session,
        user_id=provider.user_id,
        start=day - window,
        end=day + window,
        statuses=[_OPEN],
    ):
        if tx.id == provider.id or tx.id in taken:
            continue
        if not settings.is_bank_source(tx.source) or tx.type != provider.type:
            continue
        if not amounts_compatible(
            Decimal(tx.amount), provider_amount, settings.reconciliation_amount_tolerance
        ):
            continue
        # The marker must sit in the bank-side text; provider rows always carry one.
        if not has_marker(tx.description, markers):
            continue
        candidate = _Candidate(
            tx=tx,
            date_delta_days=abs((tx.execution_date.date() - day).days),
            amount_delta=quantize_amount(abs(Decimal(tx.amount) - provider_amount)),
        )
        if best is None or (candidate.date_delta_days, candidate.amount_delta, tx.id) < (
            best.date_delta_days,
            best.amount_delta,
            best.tx.id,
        ):
            best = candidate
    return best


def _link(
    session: Session, *, primary: Transaction, secondary: Transaction, candidate: _Candidate
) -> ReconciliationLink:
    original = primary.description
    enriched = enrich_description(original, provider_merchant(secondary))
    with session.begin_nested():
        res = session.execute(
            update(Transaction)
            .where(Transaction.id == primary.id, Transaction.reconciliation_status == _OPEN)
            .values(
                reconciliation_status=ReconciliationStatus.PRIMARY.value,
                reconciled_with_id=secondary.id,
                description=enriched,
            )
        )
        if res.rowcount != 1:
            raise _LostRace(primary.id)
        res = session.execute(
            update(Transaction)
            .where(Transaction.id == secondary.id, Transaction.reconciliation_status == _OPEN)
            .values(
                reconciliation_status=ReconciliationStatus.SECONDARY.value,
                reconciled_with_id=primary.id,
            )
        )
        if res.rowcount != 1:
            raise _LostRace(secondary.id)
        link = ReconciliationLink(
            user_id=primary.user_id,
            primary_transaction_id=primary.id,
            secondary_transaction_id=secondary.id,
            date_delta_days=candidate.date_delta_days,
            amount_delta=candidate.amount_delta,
            original_primary_description=original,
        )
        session.add(link)
    return link


def reconcile(
    session: Session,
    *,
    user_id: int,
    settings: IngestSettings,
    date_tolerance_days: int | None = None,
) -> ReconciliationResult:
    """Link every open provider-origin row of ``user_id`` to its bank-side twin.

    The closest execution date wins, then the smallest amount difference,
    then the oldest row. Running the pass again finds nothing new.
    """

    window_days = (
        settings.reconciliation_window_days if date_tolerance_days is None else date_tolerance_days
    )
    if window_days < 0:
        raise ReconciliationError(f"invalid date tolerance {window_days!r}; expected >= 0")

    matches: list[ReconciliationMatch] = []
    unreconciled: list[int] = []
    taken: set[int] = set()
    for provider in _open_provider_rows(session, user_id=user_id, settings=settings):
        candidate = _best_candidate(
            session, provider=provider, settings=settings, window_days=window_days, taken=taken
        )
        if candidate is None:
            unreconciled.append(provider.id)
            continue
        primary = candidate.tx
        try:
            link = _link(session, primary=primary, secondary=provider, candidate=candidate)
        except _LostRace as e:
            _logger.info(
                "reconcile:skipped_concurrent user_id=%d transaction_id=%s", user_id, e.args[0]
            )
            unreconciled.append(provider.id)
            continue
        taken.add(primary.id)
        session.refresh(primary)
        session.refresh(provider)

        crosses_month = (primary.execution_date.year, primary.execution_date.month) != (
            provider.execution_date.year,
            provider.execution_date.month,
        )
        log = _logger.warning if crosses_month else _logger.info
        log(
            "reconcile:matched user_id=%d primary_id=%d secondary_id=%d "
            "date_delta_days=%d amount_delta=%s crosses_month=%s",
            user_id,
            primary.id,
            provider.id,
            candidate.date_delta_days,
            candidate.amount_delta,
            crosses_month,
        )
        matches.append(
            ReconciliationMatch(
                link_id=link.id,
                primary_id=primary.id,
                secondary_id=provider.id,
                date_delta_days=candidate.date_delta_days,
                amount_delta=candidate.amount_delta,
                merchant_name=provider_merchant(provider),
            )
        )

    _logger.info(
        "reconcile:done user_id=%d window_days=%d reconciled=%d unreconciled=%d",
        user_id,
        window_days,
        len(matches),
        len(unreconciled),
    )
    return ReconciliationResult(
        reconciled_count=len(matches), matches=tuple(matches), unreconciled=tuple(unreconciled)
    )


# ---------------------------
# Unlink
# ---------------------------


def unlink(session: Session, *, user_id: int, link_id: int) -> None:
    """Undo a reconciliation: restore the primary's text and reopen both rows."""

    link = session.get(ReconciliationLink, link_id)
    if link is None or link.user_id != user_id:
        raise ReconciliationError(f"reconciliation link {link_id} not found")
    primary = session.get(Transaction, link.primary_transaction_id)
    secondary = session.get(Transaction, link.secondary_transaction_id)
    if primary is not None:
        primary.description = link.original_primary_description
        primary.reconciliation_status = _OPEN
        primary.reconciled_with_id = None
    if secondary is not None:
        secondary.reconciliation_status = _OPEN
        secondary.reconciled_with_id = None
    session.delete(link)
    session.flush()
    _logger.info(
        "reconcile:unlinked user_id=%d link_id=%d primary_id=%d secondary_id=%d",
        user_id,
        link_id,
        link.primary_transaction_id,
        link.secondary_transaction_id,
    )


def unlink_transaction(session: Session, tx: Transaction) -> bool:
    """Unlink whichever reconciliation ``tx`` takes part in; False when none."""

    link = (
        session.execute(
            select(ReconciliationLink).where(
                or_(
                    ReconciliationLink.primary_transaction_id == tx.id,
                    ReconciliationLink.secondary_transaction_id == tx.id,
                )
            )
        )
        .scalars()
        .first()
    )
    if link is None:
        return False
    unlink(session, user_id=link.user_id, link_id=link.id)
    return True


__all__ = [
    "amounts_compatible",
    "enrich_description",
    "has_marker",
    "provider_markers",
    "provider_merchant",
    "reconcile",
    "unlink",
    "unlink_transaction",
]
