# ruff: noqa: I001
"""Ledger core tables: accounts, categories, transactions, review queue, merchant memory.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2024-03-01
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# BIGINT on server databases; INTEGER on SQLite so the rowid alias autoincrements.
_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _id() -> sa.Column:
    return sa.Column("id", _PK, primary_key=True, autoincrement=True)


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    # ledger_bank_accounts
    op.create_table(
        "ledger_bank_accounts",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_ledger_bank_accounts_user_id", "ledger_bank_accounts", ["user_id"], unique=False
    )

    # ledger_credit_cards
    op.create_table(
        "ledger_credit_cards",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("billing_day", sa.Integer(), nullable=False),
        sa.Column(
            "bank_account_id",
            _PK,
            sa.ForeignKey("ledger_bank_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _created_at(),
        sa.CheckConstraint(
            "billing_day >= 1 AND billing_day <= 31", name="ck_ledger_cc_billing_day"
        ),
    )
    op.create_index(
        "ix_ledger_credit_cards_user_id", "ledger_credit_cards", ["user_id"], unique=False
    )

    # ledger_categories / ledger_tags
    op.create_table(
        "ledger_categories",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("keywords", sa.JSON(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "name", name="uq_ledger_category_user_name"),
    )
    op.create_index("ix_ledger_categories_user_id", "ledger_categories", ["user_id"], unique=False)

    op.create_table(
        "ledger_tags",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_ledger_tag_user_name"),
    )
    op.create_index("ix_ledger_tags_user_id", "ledger_tags", ["user_id"], unique=False)

    # ledger_import_logs
    op.create_table(
        "ledger_import_logs",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("format", sa.String(length=64), nullable=True),
        sa.Column("file_name", sa.String(), nullable=True),
        sa.Column("total_records", sa.Integer(), nullable=False),
        sa.Column("processed_records", sa.Integer(), nullable=False),
        sa.Column("successful_records", sa.Integer(), nullable=False),
        sa.Column("failed_records", sa.Integer(), nullable=False),
        sa.Column("created_count", sa.Integer(), nullable=False),
        sa.Column("duplicates_handled", sa.Integer(), nullable=False),
        sa.Column("pending_duplicates_created", sa.Integer(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("logs", sa.JSON(), nullable=False),
        _created_at("started_at"),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status in ('pending','processing','completed','partially_completed','failed')",
            name="ck_ledger_import_status",
        ),
    )
    op.create_index(
        "ix_ledger_import_logs_user_id", "ledger_import_logs", ["user_id"], unique=False
    )

    # ledger_transactions
    op.create_table(
        "ledger_transactions",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'executed'")
        ),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("execution_date", sa.DateTime(), nullable=False),
        sa.Column("billing_date", sa.Date(), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("merchant_name", sa.String(), nullable=True),
        sa.Column("merchant_category_code", sa.String(length=8), nullable=True),
        sa.Column(
            "category_id",
            _PK,
            sa.ForeignKey("ledger_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("category_confidence", sa.Float(), nullable=True),
        sa.Column(
            "bank_account_id",
            _PK,
            sa.ForeignKey("ledger_bank_accounts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "credit_card_id",
            _PK,
            sa.ForeignKey("ledger_credit_cards.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "reconciliation_status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'not_reconciled'"),
        ),
        sa.Column(
            "reconciled_with_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "import_id",
            _PK,
            sa.ForeignKey("ledger_import_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _created_at(),
        sa.CheckConstraint("type in ('income','expense')", name="ck_ledger_tx_type"),
        sa.CheckConstraint("status in ('pending','executed')", name="ck_ledger_tx_status"),
        sa.CheckConstraint(
            "(type = 'expense' AND amount <= 0) OR (type = 'income' AND amount >= 0)",
            name="ck_ledger_tx_amount_sign",
        ),
        sa.CheckConstraint(
            "(bank_account_id IS NOT NULL AND credit_card_id IS NULL) OR "
            "(bank_account_id IS NULL AND credit_card_id IS NOT NULL)",
            name="ck_ledger_tx_single_account",
        ),
        sa.CheckConstraint(
            "reconciliation_status in "
            "('not_reconciled','reconciled_as_primary','reconciled_as_secondary')",
            name="ck_ledger_tx_reconciliation_status",
        ),
        sa.CheckConstraint(
            "category_confidence IS NULL"
            " OR (category_confidence >= 0 AND category_confidence <= 1)",
            name="ck_ledger_tx_category_confidence",
        ),
    )
    op.create_index(
        "ix_ledger_tx_user_external_id", "ledger_transactions", ["user_id", "external_id"]
    )
    op.create_index(
        "ix_ledger_tx_user_execution_date", "ledger_transactions", ["user_id", "execution_date"]
    )
    op.create_index(
        "ix_ledger_tx_user_reconciliation",
        "ledger_transactions",
        ["user_id", "reconciliation_status"],
    )

    op.create_table(
        "ledger_transaction_tags",
        sa.Column(
            "transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id", _PK, sa.ForeignKey("ledger_tags.id", ondelete="CASCADE"), primary_key=True
        ),
    )

    # ledger_reconciliation_links
    op.create_table(
        "ledger_reconciliation_links",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "primary_transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "secondary_transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("date_delta_days", sa.Integer(), nullable=False),
        sa.Column("amount_delta", sa.Numeric(18, 2), nullable=False),
        sa.Column("original_primary_description", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_ledger_reconciliation_links_user_id",
        "ledger_reconciliation_links",
        ["user_id"],
        unique=False,
    )

    # ledger_pending_duplicates
    op.create_table(
        "ledger_pending_duplicates",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "existing_transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("existing_transaction_data", sa.JSON(), nullable=False),
        sa.Column("new_transaction_data", sa.JSON(), nullable=False),
        sa.Column("similarity", sa.Float(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("source_reference", sa.String(), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("resolution", sa.String(length=32), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "resolution IS NULL OR resolution in ('accept_new','keep_existing','merge')",
            name="ck_ledger_pending_dup_resolution",
        ),
    )
    op.create_index(
        "ix_ledger_pending_duplicates_user_id",
        "ledger_pending_duplicates",
        ["user_id"],
        unique=False,
    )

    # ledger_merchant_categorizations
    op.create_table(
        "ledger_merchant_categorizations",
        _id(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("merchant_name", sa.String(), nullable=False),
        sa.Column("merchant_category_code", sa.String(length=8), nullable=False),
        sa.Column(
            "suggested_category_id",
            _PK,
            sa.ForeignKey("ledger_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("average_confidence", sa.Float(), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("category_history", sa.JSON(), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "merchant_name",
            "merchant_category_code",
            name="uq_ledger_merchant_user_name_code",
        ),
        sa.CheckConstraint(
            "average_confidence >= 0 AND average_confidence <= 1",
            name="ck_ledger_merchant_confidence",
        ),
    )


def downgrade() -> None:
    op.drop_table("ledger_merchant_categorizations")
    op.drop_index("ix_ledger_pending_duplicates_user_id", table_name="ledger_pending_duplicates")
    op.drop_table("ledger_pending_duplicates")
    op.drop_index(
        "ix_ledger_reconciliation_links_user_id", table_name="ledger_reconciliation_links"
    )
    op.drop_table("ledger_reconciliation_links")
    op.drop_table("ledger_transaction_tags")
    op.drop_index("ix_ledger_tx_user_reconciliation", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_user_execution_date", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_user_external_id", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_index("ix_ledger_import_logs_user_id", table_name="ledger_import_logs")
    op.drop_table("ledger_import_logs")
    op.drop_index("ix_ledger_tags_user_id", table_name="ledger_tags")
    op.drop_table("ledger_tags")
    op.drop_index("ix_ledger_categories_user_id", table_name="ledger_categories")
    op.drop_table("ledger_categories")
    op.drop_index("ix_ledger_credit_cards_user_id", table_name="ledger_credit_cards")
    op.drop_table("ledger_credit_cards")
    op.drop_index("ix_ledger_bank_accounts_user_id", table_name="ledger_bank_accounts")
    op.drop_table("ledger_bank_accounts")
