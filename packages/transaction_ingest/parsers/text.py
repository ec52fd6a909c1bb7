"""Fixed-row-pattern text exports (BNL ``.txt`` statements).

Each movement is one line::

    <seq> <dd/MM/yyyy booking> <dd/MM/yyyy value> <causale> <description...> <signed amount>

Header, footer and balance lines do not match the row pattern and are
ignored silently; lines that match but carry an unparseable date or amount
are logged and skipped.
"""

from __future__ import annotations

import re

from ..errors import FormatError
from ..models import TransactionDraft
from ..normalizers import parse_amount, parse_date
from .base import BankFileParser, ParseOptions, decode_text

_ROW_RE = re.compile(
    r"^\d+\s+(\d{2}/\d{2}/\d{4})\s+\d{2}/\d{2}/\d{4}\s+\d+\s+(.*?)\s+([+-]?[0-9.,]+)$"
)


class BnlTxtParser(BankFileParser):
    format_tag = "bnl_txt"

    def parse_file(self, data: bytes, options: ParseOptions) -> list[TransactionDraft]:
        out: list[TransactionDraft] = []
        date_format = self._date_format(options)
        for line_no, line in enumerate(decode_text(data).splitlines(), start=1):
            m = _ROW_RE.match(line.strip())
            if m is None:
                continue
            raw_date, description, raw_amount = m.groups()
            if not description.strip():
                self._skip(options, line_no, "empty description")
                continue
            try:
                execution_date = parse_date(raw_date, date_format)
                amount = parse_amount(raw_amount)
            except FormatError as e:
                self._skip(options, line_no, e)
                continue
            if amount == 0:
                self._ignore(line_no, "zero amount")
                continue
            out.append(
                self._make_draft(
                    options,
                    description=description,
                    amount=amount,
                    execution_date=execution_date,
                    row_index=line_no,
                )
            )
        return out


__all__ = ["BnlTxtParser"]
