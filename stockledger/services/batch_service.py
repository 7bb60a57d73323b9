import uuid
from datetime import date, timedelta

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from stockledger.core.errors import (
    BatchNotFound,
    DuplicateBatchNumber,
    StockLockTimeout,
    StockPersistenceError,
)
from stockledger.models.batch import Batch

# PostgreSQL SQLSTATE for lock_not_available.
_PG_LOCK_NOT_AVAILABLE = "55P03"


def get_batch(db: Session, batch_id: str) -> Batch:
    batch = db.execute(
        select(Batch).where(Batch.id == batch_id, Batch.deleted_at.is_(None))
    ).scalar_one_or_none()
    if not batch:
        raise BatchNotFound(batch_id)
    return batch


def lock_batch(db: Session, batch_id: str, *, timeout_seconds: float) -> Batch:
    """
    Re-read a batch under an exclusive row lock held until commit/rollback.

    populate_existing discards any stale copy already in the identity map so the
    quantity checked is the last committed one.
    """
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_seconds * 1000)}ms'"))
    stmt = (
        select(Batch)
        .where(Batch.id == batch_id, Batch.deleted_at.is_(None))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    try:
        batch = db.execute(stmt).scalar_one_or_none()
    except OperationalError as exc:
        if getattr(exc.orig, "pgcode", None) == _PG_LOCK_NOT_AVAILABLE or "lock" in str(exc.orig).lower():
            raise StockLockTimeout(batch_id, timeout_seconds) from exc
        raise StockPersistenceError(batch_id=batch_id) from exc
    if not batch:
        raise BatchNotFound(batch_id)
    return batch


def batch_number_taken(db: Session, *, medicine_id: str, batch_number: str) -> bool:
    existing = db.execute(
        select(Batch.id).where(
            Batch.medicine_id == medicine_id,
            Batch.batch_number == batch_number,
            Batch.deleted_at.is_(None),
        )
    ).first()
    return existing is not None


def create_batch(
    db: Session,
    *,
    medicine_id: str,
    supplier_id: str,
    batch_number: str,
    quantity: int,
    expiry_date: date,
    manufacture_date: date | None = None,
) -> Batch:
    if batch_number_taken(db, medicine_id=medicine_id, batch_number=batch_number):
        raise DuplicateBatchNumber(medicine_id, batch_number)

    batch = Batch(
        id=str(uuid.uuid4()),
        medicine_id=medicine_id,
        supplier_id=supplier_id,
        batch_number=batch_number,
        quantity_received=quantity,
        current_quantity=quantity,
        manufacture_date=manufacture_date,
        expiry_date=expiry_date,
    )
    db.add(batch)
    try:
        db.flush()
    except IntegrityError as exc:
        # Another request registered the same number between the check and the flush.
        raise DuplicateBatchNumber(medicine_id, batch_number) from exc
    return batch


def set_current_quantity(batch: Batch, quantity: int) -> Batch:
    if quantity < 0:
        raise ValueError(f"Batch {batch.id} quantity cannot go below zero ({quantity})")
    batch.current_quantity = quantity
    return batch


def live_stock_conditions(*, medicine_id: str, as_of: date, exclude_batch_id: str | None = None) -> list:
    """A medicine's non-deleted batches expiring on or after ``as_of``."""
    conditions = [
        Batch.medicine_id == medicine_id,
        Batch.expiry_date >= as_of,
        Batch.deleted_at.is_(None),
    ]
    if exclude_batch_id:
        conditions.append(Batch.id != exclude_batch_id)
    return conditions


def sum_on_hand(
    db: Session,
    *,
    medicine_id: str,
    as_of: date,
    exclude_batch_id: str | None = None,
) -> int:
    stmt = select(func.coalesce(func.sum(Batch.current_quantity), 0)).where(
        *live_stock_conditions(medicine_id=medicine_id, as_of=as_of, exclude_batch_id=exclude_batch_id)
    )
    return int(db.execute(stmt).scalar_one())


def list_expiring_batches(
    db: Session,
    *,
    as_of: date,
    within_days: int,
    offset: int = 0,
    limit: int = 100,
) -> tuple[int, list[Batch]]:
    conditions = (
        Batch.current_quantity > 0,
        Batch.expiry_date > as_of,
        Batch.expiry_date <= as_of + timedelta(days=within_days),
        Batch.deleted_at.is_(None),
    )
    total = int(db.execute(select(func.count(Batch.id)).where(*conditions)).scalar_one())
    rows = db.execute(
        select(Batch)
        .where(*conditions)
        .order_by(Batch.expiry_date.asc(), Batch.batch_number.asc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return total, list(rows)
