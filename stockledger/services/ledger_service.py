from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.errors import LedgerEntryNotFound
from stockledger.models.batch import Batch
from stockledger.models.stock_ledger import StockLedgerEntry
from stockledger.services.transaction_types import StockTransactionType


@dataclass(frozen=True)
class LedgerCheck:
    batch_id: str
    current_quantity: int
    replayed_quantity: int
    entry_count: int
    last_quantity_after_transaction: int | None

    @property
    def consistent(self) -> bool:
        if self.replayed_quantity != self.current_quantity:
            return False
        if self.last_quantity_after_transaction is None:
            return True
        return self.last_quantity_after_transaction == self.current_quantity


def append_ledger_entry(
    db: Session,
    *,
    medicine_id: str,
    batch_id: str | None,
    transaction_type: StockTransactionType,
    quantity_change: int,
    quantity_after_transaction: int,
    transaction_date: datetime,
    user_id: str | None = None,
    notes: str | None = None,
    related_transaction_id: int | None = None,
) -> StockLedgerEntry:
    entry = StockLedgerEntry(
        medicine_id=medicine_id,
        batch_id=batch_id,
        transaction_type=transaction_type.value,
        quantity_change=quantity_change,
        quantity_after_transaction=quantity_after_transaction,
        transaction_date=transaction_date,
        user_id=user_id,
        notes=notes,
        related_transaction_id=related_transaction_id,
    )
    db.add(entry)
    db.flush()
    return entry


def get_ledger_entry(db: Session, entry_id: int) -> StockLedgerEntry:
    entry = db.get(StockLedgerEntry, entry_id)
    if not entry:
        raise LedgerEntryNotFound(entry_id)
    return entry


def list_ledger_entries(
    db: Session,
    *,
    medicine_id: str | None = None,
    batch_id: str | None = None,
    transaction_type: StockTransactionType | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[int, list[StockLedgerEntry]]:
    count_stmt = select(func.count(StockLedgerEntry.id))
    stmt = select(StockLedgerEntry)
    filters = []
    if medicine_id:
        filters.append(StockLedgerEntry.medicine_id == medicine_id)
    if batch_id:
        filters.append(StockLedgerEntry.batch_id == batch_id)
    if transaction_type:
        filters.append(StockLedgerEntry.transaction_type == transaction_type.value)
    if filters:
        count_stmt = count_stmt.where(*filters)
        stmt = stmt.where(*filters)

    total = int(db.execute(count_stmt).scalar_one())
    stmt = (
        stmt.order_by(StockLedgerEntry.transaction_date.desc(), StockLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return total, list(db.execute(stmt).scalars().all())


def batch_entries_in_order(db: Session, batch_id: str) -> list[StockLedgerEntry]:
    return list(
        db.execute(
            select(StockLedgerEntry)
            .where(StockLedgerEntry.batch_id == batch_id)
            .order_by(StockLedgerEntry.transaction_date.asc(), StockLedgerEntry.id.asc())
        ).scalars().all()
    )


def replay_batch_quantity(db: Session, batch_id: str) -> int:
    return sum(entry.quantity_change for entry in batch_entries_in_order(db, batch_id))


def verify_batch_ledger(db: Session, batch: Batch) -> LedgerCheck:
    """Replay a batch's ledger and compare it with the stored quantity."""
    entries = batch_entries_in_order(db, batch.id)
    last_by_insertion = max(entries, key=lambda entry: entry.id) if entries else None
    return LedgerCheck(
        batch_id=batch.id,
        current_quantity=batch.current_quantity,
        replayed_quantity=sum(entry.quantity_change for entry in entries),
        entry_count=len(entries),
        last_quantity_after_transaction=(
            last_by_insertion.quantity_after_transaction if last_by_insertion else None
        ),
    )
