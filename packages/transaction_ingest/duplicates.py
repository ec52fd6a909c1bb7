"""Duplicate detection within a single source, and the duplicate-aware writer.

Two levels of "same payment" are distinguished:

- **Exact duplicate**: same ``external_id`` for the user, or same signed
  amount on the same execution day with an equal normalized description.
  The incoming draft is dropped silently; re-importing a file is a no-op.
- **Near duplicate**: same signed amount and type, execution dates within
  ``duplicate_window_days`` and a description similarity at or above
  ``duplicate_similarity_threshold``. The incoming draft is *not* inserted;
  a :class:`~ledger_db.models.ledger.PendingDuplicate` is queued for a human.

Neither case ever deletes or overwrites an existing transaction. Changes to
stored rows happen only through :func:`resolve_pending_duplicate`.

Cross-source pairs (bank row vs. payment-provider row) are not duplicates;
they are linked by :mod:`transaction_ingest.reconciliation` instead. Only
candidates whose source belongs to the same side as the draft are compared.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from difflib import SequenceMatcher
from enum import StrEnum

from ledger_db.models.ledger import PendingDuplicate, ReconciliationLink, Transaction
from sqlalchemy import select
from sqlalchemy.orm import Session

from .categories import resolve_category, resolve_tags
from .config import IngestSettings
from .errors import DuplicateResolutionError
from .logging_setup import get_logger
from .models import TransactionDraft
from .normalizers import normalize_text
from .persistence import (
    Enrichment,
    enrich_explicit,
    insert_transaction,
    quantize_amount,
    resolve_account,
    transaction_snapshot,
    transactions_in_window,
)
from .reconciliation import unlink_transaction

_logger = get_logger("transaction_ingest.duplicates")


class DuplicateKind(StrEnum):
    EXACT = "exact"
    NEAR = "near"


class DuplicateResolution(StrEnum):
    ACCEPT_NEW = "accept_new"
    KEEP_EXISTING = "keep_existing"
    MERGE = "merge"


class WriteOutcome(StrEnum):
    CREATED = "created"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    PENDING_DUPLICATE = "pending_duplicate"


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    kind: DuplicateKind
    transaction: Transaction
    similarity: float
    date_delta_days: int


@dataclass(frozen=True, slots=True)
class WriteResult:
    outcome: WriteOutcome
    transaction: Transaction | None = None
    pending: PendingDuplicate | None = None
    duplicate_of: Transaction | None = None


# ---------------------------
# Similarity
# ---------------------------


def description_similarity(a: str, b: str) -> float:
    """Similarity in 0..1 of two descriptions after normalization.

    The larger of the character-level ratio and the word-overlap (Dice)
    coefficient, so both reordered words and small typos score high.
    """

    na, nb = normalize_text(a), normalize_text(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    ratio = SequenceMatcher(None, na, nb).ratio()
    wa, wb = set(na.split()), set(nb.split())
    dice = 2 * len(wa & wb) / (len(wa) + len(wb))
    return max(ratio, dice)


def _same_side(settings: IngestSettings, a: str | None, b: str | None) -> bool:
    return settings.is_provider_source(a) == settings.is_provider_source(b)


def _original_descriptions(session: Session, txs: list[Transaction]) -> dict[int, str]:
    """Pre-enrichment descriptions of reconciled primaries among ``txs``."""

    ids = [t.id for t in txs if t.reconciled_with_id is not None]
    if not ids:
        return {}
    rows = session.execute(
        select(
            ReconciliationLink.primary_transaction_id,
            ReconciliationLink.original_primary_description,
        ).where(ReconciliationLink.primary_transaction_id.in_(ids))
    ).all()
    return {pid: desc for pid, desc in rows}


# ---------------------------
# Detection
# ---------------------------


def find_exact_duplicate(
    session: Session, *, user_id: int, draft: TransactionDraft
) -> Transaction | None:
    if draft.external_id:
        hit = (
            session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id, Transaction.external_id == draft.external_id)
                .order_by(Transaction.id)
            )
            .scalars()
            .first()
        )
        if hit is not None:
            return hit

    day = draft.execution_date.date()
    signed = quantize_amount(draft.signed_amount)
    wanted = normalize_text(draft.description)
    candidates = transactions_in_window(session, user_id=user_id, start=day, end=day)
    originals = _original_descriptions(session, candidates)
    for tx in candidates:
        if quantize_amount(Decimal(tx.amount)) != signed:
            continue
        # A different external id on both sides means two distinct payments.
        if draft.external_id and tx.external_id and tx.external_id != draft.external_id:
            continue
        stored = {normalize_text(tx.description)}
        if tx.id in originals:
            stored.add(normalize_text(originals[tx.id]))
        if wanted in stored:
            return tx
    return None


def find_near_duplicate(
    session: Session,
    *,
    user_id: int,
    draft: TransactionDraft,
    settings: IngestSettings,
) -> DuplicateMatch | None:
    """Best near-duplicate candidate for ``draft``, or None.

    Ties go to the closest execution date, then the highest similarity, then
    the most recently inserted row.
    """

    day = draft.execution_date.date()
    window = timedelta(days=settings.duplicate_window_days)
    signed = quantize_amount(draft.signed_amount)
    best: tuple[int, float, int] | None = None
    match: DuplicateMatch | None = None
    candidates = transactions_in_window(
        session, user_id=user_id, start=day - window, end=day + window
    )
    for tx in candidates:
        if tx.type != str(draft.type) or quantize_amount(Decimal(tx.amount)) != signed:
            continue
        if not _same_side(settings, tx.source, draft.source):
            continue
        if draft.external_id and tx.external_id and tx.external_id != draft.external_id:
            continue
        similarity = description_similarity(tx.description, draft.description)
        if similarity < settings.duplicate_similarity_threshold:
            continue
        delta = abs((tx.execution_date.date() - day).days)
        rank = (-delta, similarity, tx.id)
        if best is None or rank > best:
            best = rank
            match = DuplicateMatch(
                kind=DuplicateKind.NEAR,
                transaction=tx,
                similarity=similarity,
                date_delta_days=delta,
            )
    return match


def check_duplicate(
    session: Session,
    *,
    user_id: int,
    draft: TransactionDraft,
    settings: IngestSettings,
) -> DuplicateMatch | None:
    exact = find_exact_duplicate(session, user_id=user_id, draft=draft)
    if exact is not None:
        delta = abs((exact.execution_date.date() - draft.execution_date.date()).days)
        return DuplicateMatch(
            kind=DuplicateKind.EXACT, transaction=exact, similarity=1.0, date_delta_days=delta
        )
    return find_near_duplicate(session, user_id=user_id, draft=draft, settings=settings)


# ---------------------------
# Writer
# ---------------------------


def create_pending_duplicate(
    session: Session,
    *,
    user_id: int,
    draft: TransactionDraft,
    match: DuplicateMatch,
    source_reference: str | None = None,
) -> PendingDuplicate:
    pending = PendingDuplicate(
        user_id=user_id,
        existing_transaction_id=match.transaction.id,
        existing_transaction_data=transaction_snapshot(match.transaction),
        new_transaction_data=draft.to_snapshot(),
        similarity=round(match.similarity, 4),
        source=draft.source,
        source_reference=source_reference,
        resolved=False,
    )
    session.add(pending)
    session.flush()
    _logger.info(
        "duplicates:pending_created user_id=%d pending_id=%d existing_id=%d similarity=%.2f",
        user_id,
        pending.id,
        match.transaction.id,
        match.similarity,
    )
    return pending


def write_draft(
    session: Session,
    *,
    user_id: int,
    draft: TransactionDraft,
    enrich: Callable[[], Enrichment],
    settings: IngestSettings,
    import_id: int | None = None,
) -> WriteResult:
    """Insert ``draft`` unless it duplicates a stored transaction.

    Exact duplicates are suppressed; near duplicates are queued for review
    and not inserted. The session is flushed but never committed.
    """

    match = check_duplicate(session, user_id=user_id, draft=draft, settings=settings)
    if match is not None and match.kind == DuplicateKind.EXACT:
        _logger.debug(
            "duplicates:exact_suppressed user_id=%d existing_id=%d row=%s",
            user_id,
            match.transaction.id,
            draft.row_index,
        )
        return WriteResult(WriteOutcome.DUPLICATE_SUPPRESSED, duplicate_of=match.transaction)
    if match is not None:
        reference = f"import:{import_id}" if import_id is not None else None
        pending = create_pending_duplicate(
            session, user_id=user_id, draft=draft, match=match, source_reference=reference
        )
        return WriteResult(
            WriteOutcome.PENDING_DUPLICATE, pending=pending, duplicate_of=match.transaction
        )

    tx = insert_transaction(
        session, user_id=user_id, draft=draft, enrichment=enrich(), import_id=import_id
    )
    return WriteResult(WriteOutcome.CREATED, transaction=tx)


# ---------------------------
# Review queue
# ---------------------------


def list_pending_duplicates(session: Session, *, user_id: int) -> list[PendingDuplicate]:
    return list(
        session.execute(
            select(PendingDuplicate)
            .where(PendingDuplicate.user_id == user_id, PendingDuplicate.resolved.is_(False))
            .order_by(PendingDuplicate.id)
        )
        .scalars()
        .all()
    )


def _merge_into(
    session: Session, existing: Transaction, draft: TransactionDraft, user_id: int
) -> None:
    # Fill blanks only; stored values always win.
    if not existing.external_id and draft.external_id:
        existing.external_id = draft.external_id
    if not existing.merchant_name and draft.merchant_name:
        existing.merchant_name = draft.merchant_name
    if not existing.merchant_category_code and draft.merchant_category_code:
        existing.merchant_category_code = draft.merchant_category_code
    if existing.category_id is None and draft.category_name:
        category = resolve_category(session, user_id=user_id, name=draft.category_name)
        existing.category_id = category.id
        existing.category_confidence = 1.0
    known = {t.id for t in existing.tags}
    for tag in resolve_tags(session, user_id=user_id, names=draft.tag_names):
        if tag.id not in known:
            existing.tags.append(tag)


def resolve_pending_duplicate(
    session: Session,
    *,
    user_id: int,
    pending_id: int,
    choice: DuplicateResolution | str,
) -> Transaction | None:
    """Apply a human decision to a queued near-duplicate.

    - ``accept_new``: insert the queued transaction and delete the existing one.
    - ``keep_existing``: discard the queued transaction.
    - ``merge``: copy the queued transaction's non-empty fields into blank
      fields of the existing one.

    Returns the transaction that survives, or None when nothing does.
    """

    try:
        resolution = DuplicateResolution(str(choice).strip().lower())
    except ValueError as e:
        expected = ", ".join(r.value for r in DuplicateResolution)
        raise DuplicateResolutionError(
            f"invalid resolution {choice!r}; expected one of: {expected}"
        ) from e

    pending = session.get(PendingDuplicate, pending_id)
    if pending is None or pending.user_id != user_id:
        raise DuplicateResolutionError(f"pending duplicate {pending_id} not found")
    if pending.resolved:
        raise DuplicateResolutionError(
            f"pending duplicate {pending_id} is already resolved as {pending.resolution!r}"
        )

    existing = (
        session.get(Transaction, pending.existing_transaction_id)
        if pending.existing_transaction_id is not None
        else None
    )
    draft = TransactionDraft.from_snapshot(pending.new_transaction_data)
    survivor: Transaction | None = existing

    if resolution == DuplicateResolution.ACCEPT_NEW:
        account = resolve_account(
            session,
            user_id=user_id,
            bank_account_id=draft.bank_account_id,
            credit_card_id=draft.credit_card_id,
        )
        enrichment = enrich_explicit(session, user_id=user_id, draft=draft, account=account)
        if existing is not None:
            unlink_transaction(session, existing)
            session.delete(existing)
            session.flush()
        survivor = insert_transaction(session, user_id=user_id, draft=draft, enrichment=enrichment)
    elif resolution == DuplicateResolution.MERGE:
        if existing is None:
            raise DuplicateResolutionError(
                f"pending duplicate {pending_id}: existing transaction no longer exists; "
                "expected 'accept_new' or 'keep_existing'"
            )
        _merge_into(session, existing, draft, user_id)

    pending.resolved = True
    pending.resolution = resolution.value
    pending.resolved_at = datetime.now(UTC)
    session.flush()
    _logger.info(
        "duplicates:resolved user_id=%d pending_id=%d resolution=%s survivor_id=%s",
        user_id,
        pending_id,
        resolution.value,
        survivor.id if survivor is not None else None,
    )
    return survivor


__all__ = [
    "DuplicateKind",
    "DuplicateMatch",
    "DuplicateResolution",
    "WriteOutcome",
    "WriteResult",
    "check_duplicate",
    "create_pending_duplicate",
    "description_similarity",
    "find_exact_duplicate",
    "find_near_duplicate",
    "list_pending_duplicates",
    "resolve_pending_duplicate",
    "write_draft",
]
