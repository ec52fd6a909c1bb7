"""Locale-aware amount/date parsing and text normalization.

Bank exports disagree on decimal separators ("1.234,56" vs "1,234.56") and
date layouts ("31/12/2023", "2023-12-31", "20231231"). The helpers here turn
those raw strings (or already-typed spreadsheet cells) into ``Decimal`` and
``datetime`` values, raising :class:`~transaction_ingest.errors.FormatError`
with the offending value and the expected format on failure.

Dates are always rebuilt at local noon so later conversions between naive
and zoned timestamps can never push a transaction onto the neighbouring day.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from .errors import FormatError

__all__ = [
    "at_local_noon",
    "normalize_text",
    "parse_amount",
    "parse_date",
    "to_strptime_format",
]

# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

_AMOUNT_EXPECTED = "a decimal amount such as '1.234,56' or '1,234.56'"
_CURRENCY_MARKERS: tuple[str, ...] = ("EUR", "USD", "GBP", "€", "$", "£")
_SPACES_RE = re.compile(r"[\s']+")


def _strip_markers(s: str) -> tuple[str, bool]:
    # Iteratively strip sign, currency marker and surrounding parentheses until
    # stable so any ordering ("-€ 12,50", "(12.50 EUR)", "12,50-") works.
    negative = False
    while True:
        changed = False
        if s.startswith("+"):
            s = s[1:].strip()
            changed = True
        elif s.startswith("-"):
            negative = True
            s = s[1:].strip()
            changed = True
        elif s.endswith("-") and len(s) > 1:
            negative = True
            s = s[:-1].strip()
            changed = True
        for marker in _CURRENCY_MARKERS:
            if s.upper().startswith(marker):
                s = s[len(marker) :].strip()
                changed = True
            elif s.upper().endswith(marker):
                s = s[: -len(marker)].strip()
                changed = True
        if s.startswith("(") and s.endswith(")") and len(s) >= 2:
            negative = True
            s = s[1:-1].strip()
            changed = True
        if not changed:
            return s, negative


def _resolve_separators(s: str) -> str:
    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        # Rightmost separator is the decimal point.
        if s.rfind(",") > s.rfind("."):
            return s.replace(".", "").replace(",", ".")
        return s.replace(",", "")
    if has_comma:
        if s.count(",") == 1:
            return s.replace(",", ".")
        # "1,234,567": several commas can only be grouping.
        return s.replace(",", "")
    if s.count(".") > 1:
        return s.replace(".", "")
    return s


def parse_amount(raw: str | int | float | Decimal | None) -> Decimal:
    """Parse a localized amount string into a signed ``Decimal``.

    Separator rules:
    - both ``.`` and ``,`` present: the rightmost one is the decimal separator;
    - only ``,`` present: it is the decimal separator;
    - otherwise the string is parsed directly.

    Leading/trailing signs, parentheses, currency symbols/codes and grouping
    spaces are tolerated.
    """

    if isinstance(raw, bool):
        raise FormatError(raw, _AMOUNT_EXPECTED)
    if isinstance(raw, Decimal):
        if not raw.is_finite():
            raise FormatError(raw, _AMOUNT_EXPECTED)
        return raw
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise FormatError(raw, _AMOUNT_EXPECTED)
        return Decimal(repr(raw))
    if raw is None:
        raise FormatError(raw, _AMOUNT_EXPECTED)

    s = _SPACES_RE.sub("", str(raw).strip())
    if not s:
        raise FormatError(raw, _AMOUNT_EXPECTED)
    s, negative = _strip_markers(s)
    s = _resolve_separators(s)
    if not s or not re.fullmatch(r"\d*\.?\d+|\d+\.", s):
        raise FormatError(raw, _AMOUNT_EXPECTED)
    try:
        value = Decimal(s)
    except InvalidOperation as exc:
        raise FormatError(raw, _AMOUNT_EXPECTED) from exc
    return -value if negative else value


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"yyyy|YYYY|yy|YY|MM|dd|DD|HH|mm|ss")
_TOKENS: dict[str, str] = {
    "yyyy": "%Y",
    "YYYY": "%Y",
    "yy": "%y",
    "YY": "%y",
    "MM": "%m",
    "dd": "%d",
    "DD": "%d",
    "HH": "%H",
    "mm": "%M",
    "ss": "%S",
}

_ISO_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}"
    r"(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)?(?:Z|[+-]\d{2}:?\d{2})?$"
)

# Tried in order after the primary format; day-first wins over month-first
# because every supported bank exports European dates.
_COMMON_FORMATS: tuple[str, ...] = (
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%m.%d.%Y",
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%Y%m%d",
    "%d/%m/%y",
    "%d.%m.%y",
)


def to_strptime_format(fmt: str) -> str:
    """Translate ``dd/MM/yyyy``-style patterns into ``strptime`` directives.

    Patterns that already contain ``%`` directives are returned unchanged.
    """

    if "%" in fmt:
        return fmt
    return _TOKEN_RE.sub(lambda m: _TOKENS[m.group(0)], fmt)


def at_local_noon(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        value = value.date()
    return datetime(value.year, value.month, value.day, 12, 0, 0)


def _try_strptime(s: str, fmt: str) -> datetime | None:
    try:
        return datetime.strptime(s, fmt)
    except ValueError:
        return None


def _try_iso(s: str) -> datetime | None:
    if not _ISO_RE.match(s):
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_date(
    raw: str | date | datetime | None,
    primary_format: str = "yyyy-MM-dd",
    *,
    fallback: date | datetime | None = None,
) -> datetime:
    """Parse ``raw`` into a naive ``datetime`` at local noon.

    Attempt order: unambiguous ISO input, ``primary_format``, then the common
    patterns above. Strings carrying a trailing time component are retried on
    their date part alone. When every attempt fails, ``fallback`` is returned
    if given; otherwise a ``FormatError`` naming ``primary_format`` is raised.
    """

    if isinstance(raw, (date, datetime)):
        return at_local_noon(raw)

    s = "" if raw is None else str(raw).strip()
    if s:
        iso = _try_iso(s)
        if iso is not None:
            return at_local_noon(iso)

        primary = to_strptime_format(primary_format)
        candidates = [s]
        head = s.split()[0]
        if head != s:
            candidates.append(head)
        for candidate in candidates:
            for fmt in (primary, *_COMMON_FORMATS):
                parsed = _try_strptime(candidate, fmt)
                if parsed is not None:
                    return at_local_noon(parsed)

    if fallback is not None:
        return at_local_noon(fallback)
    raise FormatError(raw, f"a date in format {primary_format!r}")


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)


def normalize_text(value: str | None) -> str:
    """Lowercase, replace punctuation with spaces, and collapse whitespace.

    Applied identically to both sides of every merchant, keyword, and
    description comparison.
    """

    if not value:
        return ""
    return " ".join(_PUNCT_RE.sub(" ", value.lower()).split())
