"""Closed registry of supported import formats.

The set of formats is fixed: :class:`BankFormat` enumerates every tag and
:data:`PARSERS` maps each one to a stateless parser instance. There is no
plugin discovery; an unknown tag is reported by :func:`get_parser` as an
:class:`~transaction_ingest.errors.UnsupportedFormatError`, which aborts the
import before any row is read.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType

from ..errors import UnsupportedFormatError
from .api_feed import GoCardlessParser
from .base import (
    BankFileParser,
    ParseOptions,
    decode_base64_payload,
    decode_text,
    looks_like_base64,
)
from .delimited import ColumnMappedCsvParser, PayPalCsvParser
from .html_table import CartaImprontaParser, WebankParser
from .spreadsheet import BnlXlsParser, FinecoParser
from .text import BnlTxtParser


class BankFormat(StrEnum):
    BNL_TXT = "bnl_txt"
    BNL_XLS = "bnl_xls"
    FINECO = "fineco"
    WEBANK = "webank"
    CARTA_IMPRONTA = "carta_impronta"
    GOCARDLESS = "gocardless"
    PAYPAL = "paypal"


PARSERS: Mapping[BankFormat, BankFileParser] = MappingProxyType(
    {
        BankFormat.BNL_TXT: BnlTxtParser(),
        BankFormat.BNL_XLS: BnlXlsParser(),
        BankFormat.FINECO: FinecoParser(),
        BankFormat.WEBANK: WebankParser(),
        BankFormat.CARTA_IMPRONTA: CartaImprontaParser(),
        BankFormat.GOCARDLESS: GoCardlessParser(),
        BankFormat.PAYPAL: PayPalCsvParser(),
    }
)


def supported_formats() -> tuple[str, ...]:
    return tuple(f.value for f in BankFormat)


def get_parser(format_tag: str | BankFormat) -> BankFileParser:
    """Return the parser registered for ``format_tag``.

    Tags are matched case-insensitively; ``-`` and spaces are read as ``_``.
    """

    key = str(format_tag).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return PARSERS[BankFormat(key)]
    except ValueError as e:
        raise UnsupportedFormatError(str(format_tag), supported_formats()) from e


__all__ = [
    "PARSERS",
    "BankFileParser",
    "BankFormat",
    "ColumnMappedCsvParser",
    "ParseOptions",
    "decode_base64_payload",
    "decode_text",
    "get_parser",
    "looks_like_base64",
    "supported_formats",
]
