"""Delimited-text inputs: the PayPal activity export and user-mapped CSV files.

Both read RFC 4180 text through the stdlib :mod:`csv` module after sniffing
the delimiter (``,``, ``;`` or tab; Italian exports favour ``;``).

- :class:`PayPalCsvParser` is a registered format. It keeps completed
  payments only and emits provider-origin drafts (source ``paypal``) whose
  description carries the ``PAYPAL *<merchant>`` marker used by
  cross-source reconciliation.
- :class:`ColumnMappedCsvParser` backs the generic import path. The caller
  maps arbitrary header names to canonical fields; each row yields either a
  draft or a :class:`~transaction_ingest.errors.RowError` so the orchestrator
  can count failures per row.
"""

from __future__ import annotations

import csv
from collections.abc import Iterator, Mapping
from io import StringIO

from ..errors import ColumnMappingError, FormatError, RowError
from ..models import TransactionDraft, TransactionType
from ..normalizers import parse_amount, parse_date
from .base import BankFileParser, ParseOptions, decode_text

_SNIFF_BYTES = 4096


def _read_csv_rows(csv_text: str) -> tuple[list[str], list[dict[str, str]]]:
    sample = csv_text[:_SNIFF_BYTES]
    try:
        dialect: type[csv.Dialect] | csv.Dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    with StringIO(csv_text) as f:
        reader = csv.DictReader(f, dialect=dialect)
        header = [h.strip() for h in (reader.fieldnames or [])]
        rows: list[dict[str, str]] = []
        for row in reader:
            # Drop the ``None`` key DictReader uses for surplus cells.
            rows.append(
                {k.strip(): (v or "").strip() for k, v in row.items() if isinstance(k, str)}
            )
        return header, rows


# ---------------------------------------------------------------------------
# PayPal activity export
# ---------------------------------------------------------------------------

_PAYPAL_COMPLETED = "completata"
_PAYPAL_CARD_FUNDING = "versamento generico con carta"


class PayPalCsvParser(BankFileParser):
    """PayPal "Attività" CSV (Italian headers ``Data, Nome, Tipo, Stato, Valuta, Importo``)."""

    format_tag = "paypal"
    default_source = "paypal"

    def parse_file(self, data: bytes, options: ParseOptions) -> list[TransactionDraft]:
        _header, rows = _read_csv_rows(decode_text(data))
        out: list[TransactionDraft] = []
        date_format = self._date_format(options)
        for row_index, row in enumerate(rows, start=2):
            if row.get("Stato", "").lower() != _PAYPAL_COMPLETED:
                continue
            if row.get("Tipo", "").lower() == _PAYPAL_CARD_FUNDING:
                continue
            name = row.get("Nome", "")
            if not name:
                self._skip(options, row_index, "missing counterparty name")
                continue
            try:
                execution_date = parse_date(row.get("Data"), date_format)
                amount = parse_amount(row.get("Importo"))
            except FormatError as e:
                self._skip(options, row_index, e)
                continue
            if amount == 0:
                self._ignore(row_index, "zero amount")
                continue
            out.append(
                self._make_draft(
                    options,
                    description=f"PAYPAL *{name}",
                    amount=amount,
                    execution_date=execution_date,
                    row_index=row_index,
                    external_id=row.get("Codice transazione") or None,
                    merchant_name=name,
                )
            )
        return out


# ---------------------------------------------------------------------------
# Generic, user-mapped CSV
# ---------------------------------------------------------------------------

REQUIRED_FIELDS: tuple[str, ...] = ("description", "amount", "execution_date")
OPTIONAL_FIELDS: tuple[str, ...] = ("type", "category", "tags", "external_id", "merchant")

# camelCase spellings accepted from API callers
_FIELD_ALIASES: dict[str, str] = {
    "executionDate": "execution_date",
    "categoryName": "category",
    "tagNames": "tags",
    "externalId": "external_id",
    "merchantName": "merchant",
}

_INCOME_WORDS = frozenset({"income", "entrata", "credit", "in"})
_EXPENSE_WORDS = frozenset({"expense", "uscita", "debit", "out"})


def normalize_column_mapping(mapping: Mapping[str, str] | None) -> dict[str, str]:
    """Return ``{canonical_field: header}`` or raise :class:`ColumnMappingError`."""

    if not mapping:
        raise ColumnMappingError(
            "a column mapping is required when no format is given; "
            f"expected headers for: {', '.join(REQUIRED_FIELDS)}"
        )
    out: dict[str, str] = {}
    for key, header in mapping.items():
        field = _FIELD_ALIASES.get(key, key)
        if field not in REQUIRED_FIELDS and field not in OPTIONAL_FIELDS:
            raise ColumnMappingError(
                f"unknown mapped field {key!r}; expected one of: "
                f"{', '.join(REQUIRED_FIELDS + OPTIONAL_FIELDS)}"
            )
        if header and header.strip():
            out[field] = header.strip()
    missing = [f for f in REQUIRED_FIELDS if f not in out]
    if missing:
        raise ColumnMappingError(f"column mapping is missing required fields: {', '.join(missing)}")
    return out


class ColumnMappedCsvParser:
    """Generic delimited-text reader driven by a caller-supplied column mapping."""

    default_source = "csv_import"

    def __init__(self, column_mapping: Mapping[str, str] | None, *, date_format: str) -> None:
        self.mapping = normalize_column_mapping(column_mapping)
        self.date_format = date_format

    def parse_rows(
        self, data: bytes, options: ParseOptions
    ) -> Iterator[TransactionDraft | RowError]:
        header, rows = _read_csv_rows(decode_text(data))
        absent = [h for h in self.mapping.values() if h not in header]
        if absent:
            raise ColumnMappingError(
                f"mapped columns not found in file header: {', '.join(absent)}; "
                f"header is: {', '.join(header)}"
            )
        for row_index, row in enumerate(rows, start=2):
            try:
                yield self._row_to_draft(row, options, row_index=row_index)
            except FormatError as e:
                yield RowError(row_index, str(e))
            except RowError as e:
                yield e

    def _get(self, row: Mapping[str, str], field: str) -> str:
        header = self.mapping.get(field)
        return row.get(header, "").strip() if header else ""

    def _row_to_draft(
        self, row: Mapping[str, str], options: ParseOptions, *, row_index: int
    ) -> TransactionDraft:
        description = self._get(row, "description")
        if not description:
            raise RowError(row_index, "missing required field 'description'")
        raw_amount = self._get(row, "amount")
        if not raw_amount:
            raise RowError(row_index, "missing required field 'amount'")
        raw_date = self._get(row, "execution_date")
        if not raw_date:
            raise RowError(row_index, "missing required field 'execution_date'")

        signed = parse_amount(raw_amount)
        execution_date = parse_date(raw_date, self.date_format)

        raw_type = self._get(row, "type").lower()
        if raw_type in _INCOME_WORDS:
            tx_type = TransactionType.INCOME
        elif raw_type in _EXPENSE_WORDS:
            tx_type = TransactionType.EXPENSE
        elif raw_type:
            raise RowError(row_index, f"invalid type {raw_type!r}; expected 'income' or 'expense'")
        else:
            tx_type = TransactionType.from_signed(signed)

        tags = tuple(t.strip() for t in self._get(row, "tags").split(",") if t.strip())
        return TransactionDraft(
            description=" ".join(description.split()),
            amount=abs(signed),
            execution_date=execution_date,
            type=tx_type,
            source=options.source or self.default_source,
            external_id=self._get(row, "external_id") or None,
            merchant_name=self._get(row, "merchant") or None,
            category_name=self._get(row, "category") or None,
            tag_names=tags,
            bank_account_id=options.bank_account_id,
            credit_card_id=options.credit_card_id,
            row_index=row_index,
        )


__all__ = [
    "ColumnMappedCsvParser",
    "PayPalCsvParser",
    "normalize_column_mapping",
]
