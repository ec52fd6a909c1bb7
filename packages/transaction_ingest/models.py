"""Data models shared across the ingestion pipeline.

- :class:`TransactionDraft` is the transient, parsed candidate produced by
  every format parser. Amounts are carried as an unsigned magnitude plus an
  explicit :class:`TransactionType`; :attr:`TransactionDraft.signed_amount`
  applies the ledger sign convention (negative expense, positive income).
- :class:`ImportRequest` / :class:`ImportSummary` are the import contract.
- :class:`CategorizationRequest` / :class:`CategorizationResult` are the
  categorization lookup contract.
- :class:`ReconciliationResult` is the output of a reconciliation pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class TransactionType(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"

    @classmethod
    def from_signed(cls, amount: Decimal) -> TransactionType:
        # Zero is treated as income, matching bank exports that never sign credits.
        return cls.INCOME if amount >= 0 else cls.EXPENSE


class TransactionStatus(StrEnum):
    PENDING = "pending"
    EXECUTED = "executed"


class ImportStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


class ReconciliationStatus(StrEnum):
    NOT_RECONCILED = "not_reconciled"
    PRIMARY = "reconciled_as_primary"
    SECONDARY = "reconciled_as_secondary"


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransactionDraft:
    """A parsed, not yet persisted transaction."""

    description: str
    amount: Decimal
    execution_date: datetime
    type: TransactionType
    source: str
    status: TransactionStatus = TransactionStatus.EXECUTED
    external_id: str | None = None
    merchant_name: str | None = None
    merchant_category_code: str | None = None
    category_name: str | None = None
    tag_names: tuple[str, ...] = ()
    bank_account_id: int | None = None
    credit_card_id: int | None = None
    # 1-based position in the source file, for user-facing error messages.
    row_index: int | None = None

    @property
    def signed_amount(self) -> Decimal:
        magnitude = abs(self.amount)
        return -magnitude if self.type == TransactionType.EXPENSE else magnitude

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe view stored alongside pending duplicates."""

        return {
            "description": self.description,
            "amount": f"{self.signed_amount:.2f}",
            "execution_date": self.execution_date.isoformat(),
            "type": str(self.type),
            "status": str(self.status),
            "source": self.source,
            "external_id": self.external_id,
            "merchant_name": self.merchant_name,
            "merchant_category_code": self.merchant_category_code,
            "category_name": self.category_name,
            "tag_names": list(self.tag_names),
            "bank_account_id": self.bank_account_id,
            "credit_card_id": self.credit_card_id,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> TransactionDraft:
        return cls(
            description=data["description"],
            amount=abs(Decimal(data["amount"])),
            execution_date=datetime.fromisoformat(data["execution_date"]),
            type=TransactionType(data["type"]),
            status=TransactionStatus(data.get("status") or TransactionStatus.EXECUTED),
            source=data["source"],
            external_id=data.get("external_id"),
            merchant_name=data.get("merchant_name"),
            merchant_category_code=data.get("merchant_category_code"),
            category_name=data.get("category_name"),
            tag_names=tuple(data.get("tag_names") or ()),
            bank_account_id=data.get("bank_account_id"),
            credit_card_id=data.get("credit_card_id"),
        )


# ---------------------------------------------------------------------------
# Import contract
# ---------------------------------------------------------------------------


class ImportRequest(BaseModel):
    """Input for one import run.

    ``payload`` is raw file content or its base64 text. Exactly one of
    ``bank_account_id`` / ``credit_card_id`` must be set; the orchestrator
    reports violations as a fatal :class:`~transaction_ingest.errors.AccountReferenceError`.
    ``format_tag`` selects a registered parser; when omitted the payload is
    read as delimited text using ``column_mapping``.
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    payload: bytes | str
    format_tag: str | None = None
    column_mapping: dict[str, str] | None = None
    bank_account_id: int | None = None
    credit_card_id: int | None = None
    file_name: str | None = None
    date_format: str = "yyyy-MM-dd"
    source: str | None = None

    @field_validator("format_tag")
    @classmethod
    def _normalize_tag(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None


@dataclass(frozen=True, slots=True)
class ImportSummary:
    import_id: int
    status: ImportStatus
    total: int = 0
    created: int = 0
    duplicates_handled: int = 0
    pending_duplicates_created: int = 0
    failed: int = 0
    errors: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Categorization contract
# ---------------------------------------------------------------------------


class CategorizationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    merchant_name: str | None = None
    merchant_category_code: str | None = None
    description: str
    amount: Decimal
    type: TransactionType


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    category_id: int
    category_name: str
    # 0..1; 1.0 is reserved for manual overrides.
    confidence: float
    tier: str


# ---------------------------------------------------------------------------
# Reconciliation contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReconciliationMatch:
    link_id: int
    primary_id: int
    secondary_id: int
    date_delta_days: int
    amount_delta: Decimal
    merchant_name: str | None


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    reconciled_count: int
    matches: tuple[ReconciliationMatch, ...] = ()
    # ids of provider-origin rows that found no bank-side counterpart
    unreconciled: tuple[int, ...] = field(default_factory=tuple)


__all__ = [
    "CategorizationRequest",
    "CategorizationResult",
    "ImportRequest",
    "ImportStatus",
    "ImportSummary",
    "ReconciliationMatch",
    "ReconciliationResult",
    "ReconciliationStatus",
    "TransactionDraft",
    "TransactionStatus",
    "TransactionType",
]
