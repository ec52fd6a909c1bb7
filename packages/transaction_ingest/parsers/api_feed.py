"""Open-banking API feed (GoCardless Bank Account Data ``/transactions``).

The payload is the provider's JSON body::

    {"transactions": {"booked": [...], "pending": [...]}}

Records are validated individually with pydantic; a record that fails
validation or has no usable date/amount is skipped without affecting the
rest of the feed.

Bank feeds describe payments poorly: remittance fields are frequently
truncated codes ("POS 1234") or boilerplate ("Instant transfer"). The
description is therefore assembled by precedence: counterparty name first,
then each remittance text that passes :func:`is_meaningful`, and finally an
end-to-end id or a generic label.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from ..errors import FormatError, PayloadDecodeError
from ..models import TransactionDraft, TransactionStatus, TransactionType
from ..normalizers import parse_amount, parse_date
from .base import BankFileParser, ParseOptions, decode_text

_MAX_DESCRIPTION = 255
_MIN_DESCRIPTION = 5
_SHORT_CODE_RE = re.compile(r"^[A-Z0-9\s\-_]{1,15}$", re.IGNORECASE)
_BOILERPLATE = ("bank transaction", "instant transfer")
_PROVIDER_MERCHANT_RE = re.compile(r"paypal.*?\*\s*([^*\s]+)", re.IGNORECASE)
_NOT_PROVIDED = "NOTPROVIDED"


class FeedAmount(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    amount: str
    currency: str = "EUR"


class FeedTransaction(BaseModel):
    """Subset of the provider transaction schema that drafts are built from."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    transaction_id: str | None = None
    internal_transaction_id: str | None = None
    booking_date: str | None = None
    value_date: str | None = None
    transaction_amount: FeedAmount
    creditor_name: str | None = None
    debtor_name: str | None = None
    remittance_information_unstructured: str | None = None
    remittance_information_structured: str | None = None
    remittance_information_unstructured_array: list[str] | None = None
    additional_information: str | None = None
    end_to_end_id: str | None = None
    bank_transaction_code: str | None = None
    merchant_category_code: str | None = None


def is_meaningful(text: str | None) -> bool:
    """Return True for remittance text worth showing to a human.

    Rejects short strings, bare bank codes, and provider boilerplate.
    """

    if not text:
        return False
    t = text.strip()
    if len(t) <= 10:
        return False
    if _SHORT_CODE_RE.match(t):
        return False
    lowered = t.lower()
    return not any(b in lowered for b in _BOILERPLATE)


def build_description(tx: FeedTransaction, tx_type: TransactionType) -> str:
    counterparty = tx.creditor_name if tx_type == TransactionType.EXPENSE else tx.debtor_name
    parts: list[str] = []
    if counterparty and counterparty.strip():
        parts.append(counterparty.strip())

    remittance: list[str | None] = [
        tx.remittance_information_unstructured,
        tx.remittance_information_structured,
        tx.additional_information,
        *(tx.remittance_information_unstructured_array or []),
    ]
    for text in remittance:
        if not is_meaningful(text):
            continue
        t = " ".join((text or "").split())
        if any(t.lower() in p.lower() or p.lower() in t.lower() for p in parts):
            continue
        parts.append(t)

    description = " | ".join(parts)
    mcc = tx.merchant_category_code
    lowered = description.lower()
    if description and mcc and "mcc" not in lowered and "merchant" not in lowered:
        description = f"{description} (MCC: {mcc})"

    if len(description.strip()) < _MIN_DESCRIPTION:
        if tx.end_to_end_id and tx.end_to_end_id.upper() != _NOT_PROVIDED:
            description = f"Transaction: {tx.end_to_end_id}"
        elif tx.bank_transaction_code:
            description = f"Bank Transaction: {tx.bank_transaction_code}"
        else:
            description = "Bank Transaction"

    return " ".join(description.split())[:_MAX_DESCRIPTION]


def extract_merchant(tx: FeedTransaction, tx_type: TransactionType, description: str) -> str | None:
    """Prefer the merchant named after a provider marker (``PAYPAL *ACME``)."""

    m = _PROVIDER_MERCHANT_RE.search(description)
    if m and len(m.group(1)) > 3:
        return m.group(1)
    counterparty = tx.creditor_name if tx_type == TransactionType.EXPENSE else tx.debtor_name
    return counterparty.strip() if counterparty and counterparty.strip() else None


def extract_tags(tx: FeedTransaction) -> tuple[str, ...]:
    tags: list[str] = []
    if tx.bank_transaction_code:
        tags.append(f"bank_code_{tx.bank_transaction_code.lower()}")
    tags.append("external_transfer" if tx.debtor_name else "bank_transaction")
    currency = (tx.transaction_amount.currency or "EUR").upper()
    if currency != "EUR":
        tags.append(f"currency_{currency.lower()}")
    tags.append("gocardless_import")
    return tuple(tags)


class GoCardlessParser(BankFileParser):
    format_tag = "gocardless"
    default_source = "gocardless"
    date_format = "yyyy-MM-dd"

    def parse_file(self, data: bytes, options: ParseOptions) -> list[TransactionDraft]:
        try:
            body = json.loads(decode_text(data))
        except json.JSONDecodeError as e:
            raise PayloadDecodeError(
                f"{self.format_tag}: payload is not valid JSON (line {e.lineno}, column {e.colno})"
            ) from e

        out: list[TransactionDraft] = []
        for row_index, (raw, status) in enumerate(self._records(body), start=1):
            draft = self._record_to_draft(raw, status, options, row_index=row_index)
            if draft is not None:
                out.append(draft)
        return out

    @staticmethod
    def _records(body: Any) -> Iterator[tuple[Any, TransactionStatus]]:
        if isinstance(body, list):
            for raw in body:
                yield raw, TransactionStatus.EXECUTED
            return
        if not isinstance(body, dict):
            return
        container = body.get("transactions", body)
        if not isinstance(container, dict):
            return
        for raw in container.get("booked") or []:
            yield raw, TransactionStatus.EXECUTED
        for raw in container.get("pending") or []:
            yield raw, TransactionStatus.PENDING

    def _record_to_draft(
        self,
        raw: Any,
        status: TransactionStatus,
        options: ParseOptions,
        *,
        row_index: int,
    ) -> TransactionDraft | None:
        try:
            tx = FeedTransaction.model_validate(raw)
        except ValidationError as e:
            self._skip(
                options, row_index, f"invalid record ({e.error_count()} validation errors)"
            )
            return None

        raw_date = tx.booking_date or tx.value_date
        if not raw_date:
            self._skip(options, row_index, "missing booking and value date")
            return None
        try:
            execution_date = parse_date(raw_date, self._date_format(options))
            signed = parse_amount(tx.transaction_amount.amount)
        except FormatError as e:
            self._skip(options, row_index, e)
            return None
        if signed == 0:
            self._ignore(row_index, "zero amount")
            return None

        tx_type = TransactionType.from_signed(signed)
        description = build_description(tx, tx_type)
        if status == TransactionStatus.PENDING:
            description = f"[PENDING] {description}"[:_MAX_DESCRIPTION]

        return self._make_draft(
            options,
            description=description,
            amount=signed,
            execution_date=execution_date,
            row_index=row_index,
            tx_type=tx_type,
            status=status,
            external_id=tx.transaction_id or tx.internal_transaction_id,
            merchant_name=extract_merchant(tx, tx_type, description),
            merchant_category_code=tx.merchant_category_code,
            tag_names=extract_tags(tx),
        )


__all__ = [
    "FeedTransaction",
    "GoCardlessParser",
    "build_description",
    "extract_merchant",
    "extract_tags",
    "is_meaningful",
]
