"""Shared SQLAlchemy models registry for the ledger database.

Currently includes the ledger domain models used by ``transaction_ingest``.
"""

from .ledger import (
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
    transaction_tags,
)

__all__ = [
    "Base",
    "BankAccount",
    "Category",
    "CreditCard",
    "ImportLog",
    "MerchantCategorization",
    "PendingDuplicate",
    "ReconciliationLink",
    "Tag",
    "Transaction",
    "transaction_tags",
]
