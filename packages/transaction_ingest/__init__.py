"""Public interface for the ``transaction_ingest`` package.

Symbol re-exports only: the API entrypoints, the request/result models, the
settings object, and the error hierarchy.
"""

from .api import (
    default_categorizer,
    detect_recurring_patterns,
    import_transactions,
    learn_from_correction,
    lookup_category,
    merchant_stats,
    reconcile_transactions,
    resolve_pending_duplicate,
    unlink_reconciliation,
)
from .config import IngestSettings
from .errors import (
    AccountReferenceError,
    CategoryNotFoundError,
    ColumnMappingError,
    DuplicateResolutionError,
    FormatError,
    ImportFailedError,
    IngestError,
    PayloadDecodeError,
    ReconciliationError,
    RowError,
    UnsupportedFormatError,
)
from .models import (
    CategorizationRequest,
    CategorizationResult,
    ImportRequest,
    ImportStatus,
    ImportSummary,
    ReconciliationResult,
    TransactionDraft,
    TransactionType,
)

__all__ = [
    # API
    "default_categorizer",
    "detect_recurring_patterns",
    "import_transactions",
    "learn_from_correction",
    "lookup_category",
    "merchant_stats",
    "reconcile_transactions",
    "resolve_pending_duplicate",
    "unlink_reconciliation",
    # Settings
    "IngestSettings",
    # Models
    "CategorizationRequest",
    "CategorizationResult",
    "ImportRequest",
    "ImportStatus",
    "ImportSummary",
    "ReconciliationResult",
    "TransactionDraft",
    "TransactionType",
    # Errors
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
