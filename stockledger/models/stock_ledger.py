from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.core.errors import LedgerEntryImmutable
from stockledger.db.base import Base
from stockledger.services.transaction_types import StockTransactionType

_TRANSACTION_TYPE_VALUES = ", ".join(f"'{member.value}'" for member in StockTransactionType)

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
LedgerId = BigInteger().with_variant(Integer, "sqlite")


class StockLedgerEntry(Base):
    """
    One row per stock movement. quantity_change is signed (positive = stock in).
    Rows are write-once: the ORM refuses updates and deletes.
    """
    __tablename__ = "stock_ledger"

    # Integer key so insertion order breaks ties between equal transaction dates.
    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    medicine_id: Mapped[str] = mapped_column(String(36), ForeignKey("medicines.id"), nullable=False, index=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("batches.id"), nullable=True, index=True)

    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity_change: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after_transaction: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_transaction_id: Mapped[Optional[int]] = mapped_column(
        LedgerId, ForeignKey("stock_ledger.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            f"transaction_type IN ({_TRANSACTION_TYPE_VALUES})",
            name="ck_stock_ledger_transaction_type",
        ),
        CheckConstraint("quantity_after_transaction >= 0", name="ck_stock_ledger_quantity_after_non_negative"),
        Index("ix_stock_ledger_batch_transaction_date", "batch_id", "transaction_date", "id"),
        Index("ix_stock_ledger_medicine_transaction_date", "medicine_id", "transaction_date"),
    )


@event.listens_for(StockLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target: StockLedgerEntry) -> None:
    raise LedgerEntryImmutable(f"Stock ledger entry {target.id} cannot be updated", ledger_entry_id=target.id)


@event.listens_for(StockLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target: StockLedgerEntry) -> None:
    raise LedgerEntryImmutable(f"Stock ledger entry {target.id} cannot be deleted", ledger_entry_id=target.id)
