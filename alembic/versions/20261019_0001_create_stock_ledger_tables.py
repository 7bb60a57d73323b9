"""create stock ledger tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_TRANSACTION_TYPES = (
    "IN_NEW_BATCH",
    "INITIAL_STOCK",
    "ADJUST_ADD",
    "OUT_DISPENSE",
    "ADJUST_SUB",
    "DISPOSAL_EXPIRED",
    "DISPOSAL_DAMAGED",
    "RETURN_SUPPLIER",
)

_LEDGER_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "medicines"):
        op.create_table(
            "medicines",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("generic_name", sa.String(length=255), nullable=True),
            sa.Column("strength", sa.String(length=100), nullable=True),
            sa.Column("form", sa.String(length=100), nullable=True),
            sa.Column("unit_of_measure", sa.String(length=50), nullable=False, server_default="unit"),
            sa.Column("reorder_level", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    if _table_exists(inspector, "medicines") and not _index_exists(inspector, "medicines", "ix_medicines_name"):
        op.create_index("ix_medicines_name", "medicines", ["name"], unique=False)

    if not _table_exists(inspector, "suppliers"):
        op.create_table(
            "suppliers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "batches"):
        op.create_table(
            "batches",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("medicine_id", sa.String(length=36), nullable=False),
            sa.Column("supplier_id", sa.String(length=36), nullable=False),
            sa.Column("batch_number", sa.String(length=100), nullable=False),
            sa.Column("quantity_received", sa.Integer(), nullable=False),
            sa.Column("current_quantity", sa.Integer(), nullable=False),
            sa.Column("manufacture_date", sa.Date(), nullable=True),
            sa.Column("expiry_date", sa.Date(), nullable=False),
            _created_at(),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("current_quantity >= 0", name="ck_batches_current_quantity_non_negative"),
            sa.CheckConstraint("quantity_received >= 0", name="ck_batches_quantity_received_non_negative"),
            sa.CheckConstraint(
                "manufacture_date IS NULL OR expiry_date >= manufacture_date",
                name="ck_batches_expiry_after_manufacture",
            ),
            sa.ForeignKeyConstraint(["medicine_id"], ["medicines.id"]),
            sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    if _table_exists(inspector, "batches"):
        if not _index_exists(inspector, "batches", "ix_batches_medicine_id"):
            op.create_index("ix_batches_medicine_id", "batches", ["medicine_id"], unique=False)
        if not _index_exists(inspector, "batches", "ix_batches_supplier_id"):
            op.create_index("ix_batches_supplier_id", "batches", ["supplier_id"], unique=False)
        if not _index_exists(inspector, "batches", "ix_batches_expiry_date"):
            op.create_index("ix_batches_expiry_date", "batches", ["expiry_date"], unique=False)
        if not _index_exists(inspector, "batches", "ix_batches_medicine_expiry"):
            op.create_index(
                "ix_batches_medicine_expiry",
                "batches",
                ["medicine_id", "expiry_date"],
                unique=False,
            )
        if not _index_exists(inspector, "batches", "ux_batches_medicine_batch_number_active"):
            op.create_index(
                "ux_batches_medicine_batch_number_active",
                "batches",
                ["medicine_id", "batch_number"],
                unique=True,
                postgresql_where=sa.text("deleted_at IS NULL"),
                sqlite_where=sa.text("deleted_at IS NULL"),
            )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "stock_ledger"):
        allowed = ", ".join(f"'{value}'" for value in _TRANSACTION_TYPES)
        op.create_table(
            "stock_ledger",
            sa.Column("id", _LEDGER_ID, nullable=False, autoincrement=True),
            sa.Column("medicine_id", sa.String(length=36), nullable=False),
            sa.Column("batch_id", sa.String(length=36), nullable=True),
            sa.Column("transaction_type", sa.String(length=32), nullable=False),
            sa.Column("quantity_change", sa.Integer(), nullable=False),
            sa.Column("quantity_after_transaction", sa.Integer(), nullable=False),
            sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("related_transaction_id", _LEDGER_ID, nullable=True),
            _created_at(),
            sa.CheckConstraint(f"transaction_type IN ({allowed})", name="ck_stock_ledger_transaction_type"),
            sa.CheckConstraint(
                "quantity_after_transaction >= 0",
                name="ck_stock_ledger_quantity_after_non_negative",
            ),
            sa.ForeignKeyConstraint(["medicine_id"], ["medicines.id"]),
            sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
            sa.ForeignKeyConstraint(["related_transaction_id"], ["stock_ledger.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    if _table_exists(inspector, "stock_ledger"):
        if not _index_exists(inspector, "stock_ledger", "ix_stock_ledger_medicine_id"):
            op.create_index("ix_stock_ledger_medicine_id", "stock_ledger", ["medicine_id"], unique=False)
        if not _index_exists(inspector, "stock_ledger", "ix_stock_ledger_batch_id"):
            op.create_index("ix_stock_ledger_batch_id", "stock_ledger", ["batch_id"], unique=False)
        if not _index_exists(inspector, "stock_ledger", "ix_stock_ledger_user_id"):
            op.create_index("ix_stock_ledger_user_id", "stock_ledger", ["user_id"], unique=False)
        if not _index_exists(inspector, "stock_ledger", "ix_stock_ledger_batch_transaction_date"):
            op.create_index(
                "ix_stock_ledger_batch_transaction_date",
                "stock_ledger",
                ["batch_id", "transaction_date", "id"],
                unique=False,
            )
        if not _index_exists(inspector, "stock_ledger", "ix_stock_ledger_medicine_transaction_date"):
            op.create_index(
                "ix_stock_ledger_medicine_transaction_date",
                "stock_ledger",
                ["medicine_id", "transaction_date"],
                unique=False,
            )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "medicine_stock_summaries"):
        op.create_table(
            "medicine_stock_summaries",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("medicine_id", sa.String(length=36), nullable=False),
            sa.Column("total_quantity_in_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column(
                "last_updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.CheckConstraint(
                "total_quantity_in_stock >= 0",
                name="ck_medicine_stock_summaries_total_non_negative",
            ),
            sa.ForeignKeyConstraint(["medicine_id"], ["medicines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("medicine_id", name="uq_medicine_stock_summaries_medicine_id"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in ("medicine_stock_summaries", "stock_ledger", "batches", "suppliers", "medicines"):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
