import json
import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core import clock
from stockledger.core.config import settings
from stockledger.models.batch import Batch
from stockledger.models.medicine import Medicine
from stockledger.models.stock_summary import MedicineStockSummary
from stockledger.services.batch_service import list_expiring_batches
from stockledger.services.stock_transaction_service import TransactionResult

logger = logging.getLogger("stockledger.stock")


@dataclass(frozen=True)
class LowStockSignal:
    medicine_id: str
    batch_id: str | None
    quantity: int
    threshold: int


def low_stock_threshold(medicine: Medicine, *, override: int | None = None) -> int:
    if override is not None:
        return override
    return medicine.reorder_level if medicine.reorder_level > 0 else settings.low_stock_default_threshold


def evaluate_low_stock(result: TransactionResult) -> LowStockSignal | None:
    """
    Compare the quantity a transaction left behind with the medicine's reorder
    level. Batch transactions are judged on the batch, batch-less entries on the
    medicine total they recorded.
    """
    threshold = low_stock_threshold(result.medicine)
    quantity = result.batch.current_quantity if result.batch is not None else result.resulting_quantity
    if quantity > threshold:
        return None

    signal = LowStockSignal(
        medicine_id=result.medicine.id,
        batch_id=result.batch.id if result.batch is not None else None,
        quantity=quantity,
        threshold=threshold,
    )
    logger.info(
        json.dumps(
            {
                "event": "low_stock",
                "medicine_id": signal.medicine_id,
                "batch_id": signal.batch_id,
                "quantity": signal.quantity,
                "threshold": signal.threshold,
            }
        )
    )
    return signal


def list_low_stock_medicines(
    db: Session,
    *,
    threshold: int | None = None,
    offset: int = 0,
    limit: int = 100,
) -> tuple[int, list[tuple[Medicine, int, int]]]:
    """Medicines whose summarised stock is at or below their threshold, lowest first."""
    rows = db.execute(
        select(Medicine, func.coalesce(MedicineStockSummary.total_quantity_in_stock, 0))
        .outerjoin(MedicineStockSummary, MedicineStockSummary.medicine_id == Medicine.id)
        .order_by(Medicine.name.asc())
    ).all()

    flagged: list[tuple[Medicine, int, int]] = []
    for medicine, total in rows:
        limit_threshold = low_stock_threshold(medicine, override=threshold)
        if int(total) <= limit_threshold:
            flagged.append((medicine, int(total), limit_threshold))
    flagged.sort(key=lambda item: item[1])
    return len(flagged), flagged[offset : offset + limit]


def list_expiring_stock(
    db: Session,
    *,
    within_days: int | None = None,
    offset: int = 0,
    limit: int = 100,
) -> tuple[int, list[Batch]]:
    return list_expiring_batches(
        db,
        as_of=clock.today(),
        within_days=within_days or settings.expiry_warning_days,
        offset=offset,
        limit=limit,
    )
