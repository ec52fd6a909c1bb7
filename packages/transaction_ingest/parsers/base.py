"""Parser contract shared by every bank/provider format.

A parser turns raw bytes into :class:`~transaction_ingest.models.TransactionDraft`
objects and never touches the database. Every implementation follows the same
rules:

- malformed rows are logged, reported through ``ParseOptions.row_errors``
  and skipped, never fatal for the file;
- amounts are emitted as an unsigned magnitude plus an explicit type;
- the caller's bank-account / credit-card association is attached verbatim;
- tag-name hints may be attached for resolution downstream.
"""

from __future__ import annotations

import base64
import binascii
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import ClassVar

from ..errors import PayloadDecodeError, RowError
from ..logging_setup import get_logger
from ..models import TransactionDraft, TransactionStatus, TransactionType

_logger = get_logger("transaction_ingest.parsers")

_B64_RE = re.compile(rb"^[A-Za-z0-9+/=]+$")
_B64_MIN_LEN = 20


@dataclass(frozen=True, slots=True)
class ParseOptions:
    bank_account_id: int | None = None
    credit_card_id: int | None = None
    # Overrides the parser's default source tag (e.g. "gocardless_paypal").
    source: str | None = None
    # Overrides the parser's native date layout.
    date_format: str | None = None
    column_mapping: Mapping[str, str] | None = field(default=None)
    # Filled by the parser with rows it had to skip; one list per parse call.
    row_errors: list[RowError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def looks_like_base64(data: bytes) -> bool:
    """Heuristic: restricted alphabet, length multiple of 4, longer than 20.

    Internal whitespace disqualifies the payload, so plain-text exports made of
    letters, digits and slashes are never mistaken for base64.
    """

    compact = data.strip()
    return len(compact) > _B64_MIN_LEN and len(compact) % 4 == 0 and bool(_B64_RE.match(compact))


def decode_base64_payload(data: bytes) -> bytes:
    compact = data.strip()
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        preview = compact[:24].decode("ascii", errors="replace")
        raise PayloadDecodeError(
            f"payload {preview!r}... looks base64-encoded but could not be decoded; "
            "expected standard base64 text"
        ) from e


def decode_text(data: bytes) -> str:
    """Decode exported text, accepting UTF-8 (with or without BOM) or Latin-1."""

    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class BankFileParser(ABC):
    """Base class for format parsers; subclasses implement :meth:`parse_file`."""

    format_tag: ClassVar[str]
    default_source: ClassVar[str] = "file_import"
    date_format: ClassVar[str] = "dd/MM/yyyy"

    @abstractmethod
    def parse_file(self, data: bytes, options: ParseOptions) -> list[TransactionDraft]:
        raise NotImplementedError

    # ---- helpers for subclasses ---------------------------------------------

    def _source(self, options: ParseOptions) -> str:
        return options.source or self.default_source

    def _date_format(self, options: ParseOptions) -> str:
        return options.date_format or self.date_format

    def _make_draft(
        self,
        options: ParseOptions,
        *,
        description: str,
        amount: Decimal,
        execution_date: datetime,
        row_index: int,
        tx_type: TransactionType | None = None,
        status: TransactionStatus = TransactionStatus.EXECUTED,
        external_id: str | None = None,
        merchant_name: str | None = None,
        merchant_category_code: str | None = None,
        category_name: str | None = None,
        tag_names: tuple[str, ...] = (),
    ) -> TransactionDraft:
        """Build a draft from a signed amount unless ``tx_type`` is given explicitly."""

        if tx_type is None:
            tx_type = TransactionType.from_signed(amount)
        return TransactionDraft(
            description=" ".join(description.split()),
            amount=abs(amount),
            execution_date=execution_date,
            type=tx_type,
            source=self._source(options),
            status=status,
            external_id=external_id,
            merchant_name=merchant_name,
            merchant_category_code=merchant_category_code,
            category_name=category_name,
            tag_names=tag_names,
            bank_account_id=options.bank_account_id,
            credit_card_id=options.credit_card_id,
            row_index=row_index,
        )

    def _skip(self, options: ParseOptions, row_index: int, reason: object) -> None:
        """Log a malformed row and record it as a row-level failure."""

        _logger.warning(
            "parse:row_skipped format=%s row=%d reason=%s",
            self.format_tag,
            row_index,
            reason,
        )
        options.row_errors.append(RowError(row_index, str(reason)))

    def _ignore(self, row_index: int, reason: str) -> None:
        # Rows with nothing to import (e.g. zero amounts) are not failures.
        _logger.debug(
            "parse:row_ignored format=%s row=%d reason=%s", self.format_tag, row_index, reason
        )


__all__ = [
    "BankFileParser",
    "ParseOptions",
    "decode_base64_payload",
    "decode_text",
    "looks_like_base64",
]
