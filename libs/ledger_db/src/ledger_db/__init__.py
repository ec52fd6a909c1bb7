"""ledger_db: shared database library (SQLAlchemy ORM + session helpers).

Public exports
--------------
- ``Base`` and ``metadata`` for schema creation
- ORM models in ``ledger_db.models.ledger`` (re-exported for convenience)
- Engine/session helpers in ``ledger_db.client``
"""

from __future__ import annotations

from .models.ledger import (
    BankAccount,
    Base,
    Category,
    CreditCard,
    ImportLog,
    MerchantCategorization,
    PendingDuplicate,
    ReconciliationLink,
    Tag,
    Transaction,
)

metadata = Base.metadata

__all__ = [
    "Base",
    "metadata",
    "BankAccount",
    "Category",
    "CreditCard",
    "ImportLog",
    "MerchantCategorization",
    "PendingDuplicate",
    "ReconciliationLink",
    "Tag",
    "Transaction",
]
