"""Spreadsheet exports (BNL and Fineco ``.xlsx`` movement lists).

Banks prepend a variable number of banner rows (account holder, period,
balances) before the real header, and have changed column layouts over the
years. The parser therefore scans for the first row that satisfies one of its
:class:`SheetLayout` definitions and reads data rows by header position.

Two amount styles are supported:
- separate credit/debit columns (``Entrate`` / ``Uscite``): the populated
  column decides the type;
- a single signed amount column (legacy ``Importo``, or a fixed fallback
  position when the header is blank).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO
from typing import Any
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import FormatError, PayloadDecodeError
from ..models import TransactionDraft, TransactionType
from ..normalizers import parse_amount, parse_date
from .base import BankFileParser, ParseOptions

_HEADER_SCAN_LIMIT = 50


@dataclass(frozen=True, slots=True)
class SheetLayout:
    """Column naming for one historical export layout.

    Header names are matched case-insensitively after trimming.
    """

    name: str
    date_header: str
    description_headers: tuple[str, ...]
    required_headers: tuple[str, ...]
    # At least one of these must also be present when non-empty.
    any_of_headers: tuple[str, ...] = ()
    credit_header: str | None = None
    debit_header: str | None = None
    amount_header: str | None = None
    # Zero-based column holding the signed amount when ``amount_header`` is absent.
    amount_fallback_index: int | None = None
    # Short label rendered as a ``[Tag: ...]`` suffix on the description.
    label_header: str | None = None
    # Colon-separated tag path (e.g. ``Casa:Utenze``) emitted as tag hints.
    tags_header: str | None = None

    def matches(self, header: dict[str, int]) -> bool:
        if not all(h.lower() in header for h in self.required_headers):
            return False
        return not self.any_of_headers or any(h.lower() in header for h in self.any_of_headers)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class SpreadsheetParser(BankFileParser):
    """Header-detecting reader over one or more :class:`SheetLayout` variants."""

    layouts: tuple[SheetLayout, ...] = ()

    def parse_file(self, data: bytes, options: ParseOptions) -> list[TransactionDraft]:
        rows = self._read_rows(data)
        found = self._find_header(rows)
        if found is None:
            expected = "; ".join(layout.name for layout in self.layouts)
            raise PayloadDecodeError(
                f"{self.format_tag}: no recognizable header row in the first "
                f"{_HEADER_SCAN_LIMIT} rows; expected layout: {expected}"
            )
        header_idx, layout, columns = found

        out: list[TransactionDraft] = []
        for offset, row in enumerate(rows[header_idx + 1 :], start=header_idx + 2):
            if all(_is_blank(v) for v in row):
                continue
            try:
                draft = self._row_to_draft(row, layout, columns, options, row_index=offset)
            except FormatError as e:
                self._skip(options, offset, e)
                continue
            if draft is not None:
                out.append(draft)
        return out

    # ---- internals ----------------------------------------------------------

    def _read_rows(self, data: bytes) -> list[tuple[Any, ...]]:
        try:
            wb = load_workbook(BytesIO(data), read_only=True, data_only=True)
        except (InvalidFileException, BadZipFile, KeyError, OSError) as e:
            raise PayloadDecodeError(
                f"{self.format_tag}: payload is not a readable .xlsx workbook ({e})"
            ) from e
        try:
            ws = wb.worksheets[0]
            return [tuple(r) for r in ws.iter_rows(values_only=True)]
        finally:
            wb.close()

    def _find_header(
        self, rows: Sequence[tuple[Any, ...]]
    ) -> tuple[int, SheetLayout, dict[str, int]] | None:
        for idx, row in enumerate(rows[:_HEADER_SCAN_LIMIT]):
            columns: dict[str, int] = {}
            for col, value in enumerate(row):
                key = _cell_text(value).lower()
                if key and key not in columns:
                    columns[key] = col
            for layout in self.layouts:
                if layout.matches(columns):
                    return idx, layout, columns
        return None

    def _row_to_draft(
        self,
        row: tuple[Any, ...],
        layout: SheetLayout,
        columns: dict[str, int],
        options: ParseOptions,
        *,
        row_index: int,
    ) -> TransactionDraft | None:
        def cell(header: str | None) -> Any:
            if header is None:
                return None
            col = columns.get(header.lower())
            if col is None or col >= len(row):
                return None
            return row[col]

        raw_date = cell(layout.date_header)
        if _is_blank(raw_date):
            self._skip(options, row_index, "missing date")
            return None

        parts = [_cell_text(cell(h)) for h in layout.description_headers]
        description = " ".join(p for p in parts if p)
        if not description:
            self._skip(options, row_index, "missing description")
            return None

        execution_date = parse_date(raw_date, self._date_format(options))
        amount, tx_type = self._amount_and_type(row, layout, cell)
        if amount == 0:
            self._ignore(row_index, "zero amount")
            return None

        label = _cell_text(cell(layout.label_header))
        if label:
            description = f"{description} [Tag: {label}]"

        tags: tuple[str, ...] = ()
        raw_tags = _cell_text(cell(layout.tags_header))
        if raw_tags:
            tags = tuple(t.strip() for t in raw_tags.split(":") if t.strip())

        return self._make_draft(
            options,
            description=description,
            amount=amount,
            execution_date=execution_date,
            row_index=row_index,
            tx_type=tx_type,
            tag_names=tags,
        )

    def _amount_and_type(
        self, row: tuple[Any, ...], layout: SheetLayout, cell: Any
    ) -> tuple[Decimal, TransactionType]:
        if layout.credit_header or layout.debit_header:
            credit_raw = cell(layout.credit_header)
            debit_raw = cell(layout.debit_header)
            credit = Decimal(0) if _is_blank(credit_raw) else abs(parse_amount(credit_raw))
            debit = Decimal(0) if _is_blank(debit_raw) else abs(parse_amount(debit_raw))
            if credit > 0:
                return credit, TransactionType.INCOME
            return debit, TransactionType.EXPENSE

        raw = cell(layout.amount_header)
        if _is_blank(raw) and layout.amount_fallback_index is not None:
            idx = layout.amount_fallback_index
            raw = row[idx] if idx < len(row) else None
        if _is_blank(raw):
            return Decimal(0), TransactionType.EXPENSE
        signed = parse_amount(raw)
        return abs(signed), TransactionType.from_signed(signed)


class BnlXlsParser(SpreadsheetParser):
    format_tag = "bnl_xls"
    layouts = (
        SheetLayout(
            name="bnl_movements",
            date_header="Data",
            description_headers=("Descrizione", "Descrizione_Completa"),
            required_headers=("Data",),
            any_of_headers=("Entrate", "Uscite"),
            credit_header="Entrate",
            debit_header="Uscite",
        ),
        SheetLayout(
            name="bnl_legacy",
            date_header="Data contabile",
            description_headers=("Descrizione", "Descrizione_Completa"),
            required_headers=("Data contabile",),
            amount_header="Importo",
            amount_fallback_index=4,
        ),
    )


class FinecoParser(SpreadsheetParser):
    format_tag = "fineco"
    layouts = (
        SheetLayout(
            name="fineco_movements",
            date_header="Data",
            description_headers=("Descrizione_Completa",),
            required_headers=("Data", "Descrizione_Completa"),
            credit_header="Entrate",
            debit_header="Uscite",
            label_header="Descrizione",
            tags_header="Moneymap",
        ),
    )


__all__ = ["BnlXlsParser", "FinecoParser", "SheetLayout", "SpreadsheetParser"]
