"""HTML-table exports (Webank movement pages, CartaImpronta card statements).

These "exports" are saved web pages, sometimes delivered as base64 text. The
target table is located by element id when the bank provides one, otherwise
by a structural heuristic: the first table whose header row has at least
``min_header_cells`` header cells. Data rows are the ``<tr>`` elements with at
least ``min_cells`` ``<td>`` cells.

Markup is read with the standard-library :class:`html.parser.HTMLParser`,
which tolerates the unclosed tags these pages are full of.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from html.parser import HTMLParser

from ..errors import FormatError, PayloadDecodeError
from ..logging_setup import get_logger
from ..models import TransactionDraft, TransactionType
from ..normalizers import parse_amount, parse_date
from .base import (
    BankFileParser,
    ParseOptions,
    decode_base64_payload,
    decode_text,
    looks_like_base64,
)

_logger = get_logger("transaction_ingest.parsers.html_table")

# ---------------------------------------------------------------------------
# Table extraction
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class HtmlRow:
    cells: list[str] = field(default_factory=list)
    header_cells: int = 0


@dataclass(slots=True)
class HtmlTable:
    element_id: str | None
    rows: list[HtmlRow] = field(default_factory=list)

    @property
    def data_rows(self) -> list[list[str]]:
        return [r.cells for r in self.rows if r.header_cells == 0]

    def max_header_cells(self) -> int:
        return max((r.header_cells for r in self.rows), default=0)


class _TableCollector(HTMLParser):
    """Collect every table (nested ones included) as rows of cell text."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.tables: list[HtmlTable] = []
        self._stack: list[HtmlTable] = []
        self._row: HtmlRow | None = None
        self._cell: list[str] | None = None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "table":
            self._close_cell()
            table = HtmlTable(element_id=dict(attrs).get("id"))
            self.tables.append(table)
            self._stack.append(table)
        elif tag == "tr" and self._stack:
            self._close_cell()
            self._row = HtmlRow()
            self._stack[-1].rows.append(self._row)
        elif tag in ("td", "th") and self._row is not None:
            self._close_cell()
            self._cell = []
            if tag == "th":
                self._row.header_cells += 1
        elif tag == "br" and self._cell is not None:
            self._cell.append(" ")

    def handle_endtag(self, tag: str) -> None:
        if tag in ("td", "th"):
            self._close_cell()
        elif tag == "tr":
            self._close_cell()
            self._row = None
        elif tag == "table" and self._stack:
            self._close_cell()
            self._stack.pop()
            self._row = None

    def handle_data(self, data: str) -> None:
        if self._cell is not None:
            self._cell.append(data)

    def _close_cell(self) -> None:
        if self._cell is not None and self._row is not None:
            self._row.cells.append(" ".join("".join(self._cell).split()))
        self._cell = None


def extract_tables(html: str) -> list[HtmlTable]:
    collector = _TableCollector()
    collector.feed(html)
    collector.close()
    return collector.tables


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_AMOUNT_JUNK_RE = re.compile(r"[^\d.,+\-]")


class HtmlTableParser(BankFileParser):
    """Configurable reader for one bank's HTML table layout."""

    table_id: str | None = None
    # 0 disables the header heuristic: rows are taken from every table.
    min_header_cells: int = 0
    min_cells: int = 5
    date_col: int = 0
    amount_col: int = 1
    description_col: int = 2
    # Every row has this type when set (card statements list only charges).
    fixed_type: TransactionType | None = None

    def parse_file(self, data: bytes, options: ParseOptions) -> list[TransactionDraft]:
        html = self._decode(data)
        tables = extract_tables(html)
        rows = self._select_rows(tables)

        out: list[TransactionDraft] = []
        date_format = self._date_format(options)
        for row_index, cells in enumerate(rows, start=1):
            if len(cells) < self.min_cells:
                continue
            description = cells[self.description_col]
            if not description:
                self._skip(options, row_index, "missing description")
                continue
            try:
                execution_date = parse_date(cells[self.date_col], date_format)
                amount = parse_amount(_AMOUNT_JUNK_RE.sub("", cells[self.amount_col]))
            except FormatError as e:
                self._skip(options, row_index, e)
                continue
            if amount == 0:
                self._ignore(row_index, "zero amount")
                continue
            out.append(
                self._make_draft(
                    options,
                    description=description,
                    amount=amount,
                    execution_date=execution_date,
                    row_index=row_index,
                    tx_type=self.fixed_type,
                )
            )
        return out

    def _decode(self, data: bytes) -> str:
        if looks_like_base64(data):
            try:
                return decode_text(decode_base64_payload(data))
            except PayloadDecodeError as e:
                # Not base64 after all; read it as markup.
                _logger.debug(
                    "parse:base64_fallback format=%s bytes=%d error=%s",
                    self.format_tag,
                    len(data),
                    e,
                )
        return decode_text(data)

    def _select_rows(self, tables: list[HtmlTable]) -> list[list[str]]:
        if self.table_id is not None:
            for table in tables:
                if table.element_id == self.table_id:
                    return table.data_rows
        if self.min_header_cells > 0:
            for table in tables:
                if table.max_header_cells() >= self.min_header_cells:
                    return table.data_rows
            return []
        return [row for table in tables for row in table.data_rows]


class WebankParser(HtmlTableParser):
    format_tag = "webank"
    min_cells = 6
    date_col = 1  # value date; column 0 is the booking date
    amount_col = 2
    description_col = 4


class CartaImprontaParser(HtmlTableParser):
    format_tag = "carta_impronta"
    table_id = "CCMO_CAIM"
    min_header_cells = 5
    min_cells = 5
    date_col = 0
    amount_col = 1  # EUR amount; column 2 holds the original-currency amount
    description_col = 4
    fixed_type = TransactionType.EXPENSE


__all__ = [
    "CartaImprontaParser",
    "HtmlTable",
    "HtmlTableParser",
    "WebankParser",
    "extract_tables",
]
