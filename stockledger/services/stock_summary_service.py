import uuid

from sqlalchemy import DateTime, String, case, func, literal, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from stockledger.core import clock
from stockledger.models.batch import Batch
from stockledger.models.medicine import Medicine
from stockledger.models.stock_summary import MedicineStockSummary
from stockledger.services.batch_service import live_stock_conditions, sum_on_hand

_UPSERT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def compute_medicine_quantity_after(
    db: Session,
    *,
    medicine_id: str,
    signed_change: int,
    exclude_batch_id: str | None = None,
) -> int:
    """
    Point-in-time medicine total for ledger rows that are not tied to a batch:
    every other non-expired batch plus the change being recorded.
    """
    others = sum_on_hand(
        db,
        medicine_id=medicine_id,
        as_of=clock.today(),
        exclude_batch_id=exclude_batch_id,
    )
    return others + signed_change


def get_medicine_stock_summary(db: Session, medicine_id: str) -> MedicineStockSummary | None:
    return db.execute(
        select(MedicineStockSummary).where(MedicineStockSummary.medicine_id == medicine_id)
    ).scalar_one_or_none()


def refresh_medicine_stock_summary(db: Session, medicine_id: str) -> MedicineStockSummary:
    """
    Rebuild one medicine's summary from the batches table and upsert it.

    On PostgreSQL and SQLite the sum and the upsert are one INSERT ... SELECT
    statement, so a refresh always writes a total it read under its own write
    lock. Each write is a complete recomputation; nothing is patched.
    """
    as_of = clock.today()
    refreshed_at = clock.utcnow()

    dialect_name = db.get_bind().dialect.name
    insert_factory = _UPSERT_INSERTS.get(dialect_name)
    if insert_factory is not None:
        total = func.coalesce(func.sum(Batch.current_quantity), 0)
        source = select(
            literal(str(uuid.uuid4()), String(36)),
            literal(medicine_id, String(36)),
            case((total < 0, 0), else_=total),
            literal(refreshed_at, DateTime(timezone=True)),
        ).where(*live_stock_conditions(medicine_id=medicine_id, as_of=as_of))
        stmt = insert_factory(MedicineStockSummary).from_select(
            ["id", "medicine_id", "total_quantity_in_stock", "last_updated_at"],
            source,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["medicine_id"],
            set_={
                "total_quantity_in_stock": stmt.excluded.total_quantity_in_stock,
                "last_updated_at": stmt.excluded.last_updated_at,
            },
        )
        db.execute(stmt)
    else:
        summary = get_medicine_stock_summary(db, medicine_id)
        if summary is None:
            summary = MedicineStockSummary(id=str(uuid.uuid4()), medicine_id=medicine_id)
            db.add(summary)
        summary.total_quantity_in_stock = max(sum_on_hand(db, medicine_id=medicine_id, as_of=as_of), 0)
        summary.last_updated_at = refreshed_at
        db.flush()

    return db.execute(
        select(MedicineStockSummary)
        .where(MedicineStockSummary.medicine_id == medicine_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def backfill_stock_summaries(db: Session, *, only_missing: bool = True) -> int:
    """
    Recompute summaries in bulk. With only_missing, just the medicines that never
    had one; otherwise every medicine, which also drops batches that expired
    since their last transaction.
    """
    stmt = select(Medicine.id).order_by(Medicine.name.asc())
    if only_missing:
        stmt = stmt.where(
            ~select(MedicineStockSummary.id)
            .where(MedicineStockSummary.medicine_id == Medicine.id)
            .exists()
        )
    medicine_ids = list(db.execute(stmt).scalars().all())
    for medicine_id in medicine_ids:
        refresh_medicine_stock_summary(db, medicine_id)
    db.commit()
    return len(medicine_ids)
