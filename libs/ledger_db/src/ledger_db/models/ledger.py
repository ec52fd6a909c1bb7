from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# BIGINT on server databases; INTEGER on SQLite so the rowid alias autoincrements.
_PK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


# ---------------------------
# Accounts
# ---------------------------


class BankAccount(Base):
    __tablename__ = "ledger_bank_accounts"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class CreditCard(Base):
    __tablename__ = "ledger_credit_cards"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Day of month the statement is billed; clamped to month length when applied.
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_account_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_bank_accounts.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("billing_day >= 1 AND billing_day <= 31", name="ck_ledger_cc_billing_day"),
    )


# ---------------------------
# Reference: categories and tags
# ---------------------------


class Category(Base):
    __tablename__ = "ledger_categories"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Free-form keyword phrases used by the keyword-matching fallback.
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_ledger_category_user_name"),)


class Tag(Base):
    __tablename__ = "ledger_tags"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_ledger_tag_user_name"),)


transaction_tags = Table(
    "ledger_transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        _PK,
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", _PK, ForeignKey("ledger_tags.id", ondelete="CASCADE"), primary_key=True),
)


# ---------------------------
# Import runs
# ---------------------------


class ImportLog(Base):
    __tablename__ = "ledger_import_logs"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    format: Mapped[str | None] = mapped_column(String(64), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_handled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_duplicates_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Ordered, human-readable run messages (row failures, suppressed duplicates).
    logs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status in ('pending','processing','completed','partially_completed','failed')",
            name="ck_ledger_import_status",
        ),
    )


# ---------------------------
# Core: transactions
# ---------------------------


class Transaction(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    # Signed: negative for expenses, positive for income.
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'executed'")
    )
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    # Stored at local noon so date arithmetic never shifts across midnight.
    execution_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    billing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    merchant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    merchant_category_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    category_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_categories.id", ondelete="SET NULL"), nullable=True
    )
    category_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    bank_account_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_bank_accounts.id", ondelete="CASCADE"), nullable=True
    )
    credit_card_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_credit_cards.id", ondelete="CASCADE"), nullable=True
    )
    reconciliation_status: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=text("'not_reconciled'")
    )
    reconciled_with_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True
    )
    import_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_import_logs.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    category: Mapped[Category | None] = relationship(lazy="joined")
    tags: Mapped[list[Tag]] = relationship(secondary=transaction_tags, lazy="selectin")

    __table_args__ = (
        CheckConstraint("type in ('income','expense')", name="ck_ledger_tx_type"),
        CheckConstraint("status in ('pending','executed')", name="ck_ledger_tx_status"),
        CheckConstraint(
            "(type = 'expense' AND amount <= 0) OR (type = 'income' AND amount >= 0)",
            name="ck_ledger_tx_amount_sign",
        ),
        CheckConstraint(
            (
                "(bank_account_id IS NOT NULL AND credit_card_id IS NULL) OR "
                "(bank_account_id IS NULL AND credit_card_id IS NOT NULL)"
            ),
            name="ck_ledger_tx_single_account",
        ),
        CheckConstraint(
            (
                "reconciliation_status in "
                "('not_reconciled','reconciled_as_primary','reconciled_as_secondary')"
            ),
            name="ck_ledger_tx_reconciliation_status",
        ),
        CheckConstraint(
            "category_confidence IS NULL"
            " OR (category_confidence >= 0 AND category_confidence <= 1)",
            name="ck_ledger_tx_category_confidence",
        ),
        Index("ix_ledger_tx_user_external_id", "user_id", "external_id"),
        Index("ix_ledger_tx_user_execution_date", "user_id", "execution_date"),
        Index("ix_ledger_tx_user_reconciliation", "user_id", "reconciliation_status"),
    )


class ReconciliationLink(Base):
    __tablename__ = "ledger_reconciliation_links"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    primary_transaction_id: Mapped[int] = mapped_column(
        _PK,
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    secondary_transaction_id: Mapped[int] = mapped_column(
        _PK,
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    date_delta_days: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_delta: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    # Bank text before enrichment; restored on unlink.
    original_primary_description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Duplicate review queue
# ---------------------------


class PendingDuplicate(Base):
    __tablename__ = "ledger_pending_duplicates"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    existing_transaction_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True
    )
    existing_transaction_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    new_transaction_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    similarity: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    source_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "resolution IS NULL OR resolution in ('accept_new','keep_existing','merge')",
            name="ck_ledger_pending_dup_resolution",
        ),
    )


# ---------------------------
# Merchant categorization memory
# ---------------------------


class MerchantCategorization(Base):
    __tablename__ = "ledger_merchant_categorizations"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Normalized form (lowercase, punctuation stripped, whitespace collapsed).
    merchant_name: Mapped[str] = mapped_column(String, nullable=False)
    # "none" when the source carried no merchant category code.
    merchant_category_code: Mapped[str] = mapped_column(String(8), nullable=False)
    suggested_category_id: Mapped[int] = mapped_column(
        _PK, ForeignKey("ledger_categories.id", ondelete="CASCADE"), nullable=False
    )
    average_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Bounded list of {"category_id", "confidence", "source", "at"} entries.
    category_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    first_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    suggested_category: Mapped[Category] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "merchant_name",
            "merchant_category_code",
            name="uq_ledger_merchant_user_name_code",
        ),
        CheckConstraint(
            "average_confidence >= 0 AND average_confidence <= 1",
            name="ck_ledger_merchant_confidence",
        ),
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
