"""Exception hierarchy for ``transaction_ingest``.

Two failure classes exist:

- Pipeline-level (fatal): :class:`UnsupportedFormatError`,
  :class:`PayloadDecodeError`, :class:`ColumnMappingError` and
  :class:`AccountReferenceError`. They abort an import before any row is
  persisted.
- Row-level (non-fatal): :class:`FormatError` and :class:`RowError`. The
  offending row is logged, counted and skipped.

Messages are user-facing: they carry the offending value, the expected format
and, for rows, the row index. They never embed tracebacks.
"""

from __future__ import annotations

from typing import Any


class IngestError(Exception):
    """Base class for every error raised by this package."""


class FormatError(IngestError, ValueError):
    """A value could not be parsed in the expected format."""

    def __init__(self, value: Any, expected: str, *, row_index: int | None = None) -> None:
        self.value = value
        self.expected = expected
        self.row_index = row_index
        super().__init__(self._render())

    def _render(self) -> str:
        msg = f"invalid value {self.value!r}; expected {self.expected}"
        if self.row_index is not None:
            msg = f"row {self.row_index}: {msg}"
        return msg


class UnsupportedFormatError(IngestError, ValueError):
    def __init__(self, format_tag: str, supported: tuple[str, ...]) -> None:
        self.format_tag = format_tag
        self.supported = supported
        super().__init__(
            f"unsupported format {format_tag!r}; expected one of: {', '.join(supported)}"
        )


class PayloadDecodeError(IngestError, ValueError):
    """The payload looked base64-encoded (or was declared so) but did not decode."""


class ColumnMappingError(IngestError, ValueError):
    """The generic delimited-text path was used without a usable column mapping."""


class AccountReferenceError(IngestError, ValueError):
    """The account reference is missing, ambiguous, or not owned by the user."""


class RowError(IngestError):
    """A single input row could not be turned into a transaction."""

    def __init__(self, row_index: int, reason: str) -> None:
        self.row_index = row_index
        self.reason = reason
        super().__init__(f"row {row_index}: {reason}")


class ImportFailedError(IngestError):
    """Raised after an import run was marked FAILED in its ImportLog."""

    def __init__(self, import_id: int, cause: BaseException) -> None:
        self.import_id = import_id
        self.cause = cause
        super().__init__(f"import {import_id} failed: {cause}")


class DuplicateResolutionError(IngestError, ValueError):
    """A pending duplicate could not be resolved as requested."""


class ReconciliationError(IngestError, ValueError):
    """A reconciliation link could not be found or changed."""


class CategoryNotFoundError(IngestError, ValueError):
    def __init__(self, category_id: int, user_id: int) -> None:
        self.category_id = category_id
        self.user_id = user_id
        super().__init__(f"category {category_id!r} not found for user {user_id}")


__all__ = [
    "AccountReferenceError",
    "CategoryNotFoundError",
    "ColumnMappingError",
    "DuplicateResolutionError",
    "FormatError",
    "ImportFailedError",
    "IngestError",
    "PayloadDecodeError",
    "ReconciliationError",
    "RowError",
    "UnsupportedFormatError",
]
