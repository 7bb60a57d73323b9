from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stockledger.core import clock
from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db
from stockledger.core.errors import MedicineNotFound
from stockledger.models.medicine import Medicine
from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.stock import (
    BatchOut,
    ExpiringBatchListOut,
    ExpiringBatchOut,
    LedgerCheckOut,
    LedgerEntryOut,
    LedgerListOut,
    LowStockFlagOut,
    LowStockListOut,
    LowStockMedicineOut,
    StockSummaryOut,
    StockTransactionIn,
    StockTransactionOut,
    SummaryRebuildIn,
    SummaryRebuildOut,
    TransactionTypeListOut,
    TransactionTypeOut,
)
from stockledger.services.batch_service import get_batch
from stockledger.services.ledger_service import list_ledger_entries, verify_batch_ledger
from stockledger.services.stock_alert_service import (
    evaluate_low_stock,
    list_expiring_stock,
    list_low_stock_medicines,
)
from stockledger.services.stock_summary_service import (
    backfill_stock_summaries,
    get_medicine_stock_summary,
)
from stockledger.services.stock_transaction_service import TransactionRequest, process_transaction
from stockledger.services.transaction_types import StockTransactionType, parse_transaction_type

router = APIRouter(prefix="/stock", tags=["stock"])


def _pagination(*, total: int, limit: int, offset: int, count: int) -> PaginationMeta:
    return PaginationMeta(
        total=total,
        limit=limit,
        offset=offset,
        count=count,
        has_next=(offset + count) < total,
    )


@router.post(
    "/transactions",
    response_model=StockTransactionOut,
    status_code=201,
    summary="Record a stock movement",
    responses=error_responses(400, 404, 409, 422, 500, 503),
)
def create_stock_transaction(payload: StockTransactionIn, db: Session = Depends(get_db)):
    result = process_transaction(
        db,
        TransactionRequest(
            transaction_type=payload.transaction_type,
            medicine_id=payload.medicine_id,
            batch_id=payload.batch_id,
            quantity=payload.quantity,
            notes=payload.notes,
            transaction_date=payload.transaction_date,
            user_id=payload.user_id,
            supplier_id=payload.supplier_id,
            batch_number=payload.batch_number,
            manufacture_date=payload.manufacture_date,
            expiry_date=payload.expiry_date,
            create_new_batch=payload.create_new_batch,
            related_transaction_id=payload.related_transaction_id,
        ),
    )
    signal = evaluate_low_stock(result)
    return StockTransactionOut(
        message=result.message,
        transaction_type=result.transaction_type.value,
        ledger_entry=LedgerEntryOut.model_validate(result.ledger_entry),
        batch=BatchOut.model_validate(result.batch) if result.batch is not None else None,
        summary=StockSummaryOut.model_validate(result.summary) if result.summary is not None else None,
        low_stock=(
            LowStockFlagOut(quantity=signal.quantity, threshold=signal.threshold) if signal is not None else None
        ),
    )


@router.get(
    "/transaction-types",
    response_model=TransactionTypeListOut,
    summary="List supported stock transaction types",
)
def list_transaction_types():
    return TransactionTypeListOut(
        items=[
            TransactionTypeOut(
                value=member.value,
                label=member.label,
                is_increasing=member.is_increasing,
                requires_existing_batch=member.requires_existing_batch,
            )
            for member in StockTransactionType
        ]
    )


@router.get(
    "/batches/{batch_id}",
    response_model=BatchOut,
    summary="Get batch stock",
    responses=error_responses(404, 500),
)
def get_batch_stock(batch_id: str, db: Session = Depends(get_db)):
    return BatchOut.model_validate(get_batch(db, batch_id))


@router.get(
    "/batches/{batch_id}/ledger-check",
    response_model=LedgerCheckOut,
    summary="Replay a batch ledger against its stored quantity",
    responses=error_responses(404, 500),
)
def check_batch_ledger(batch_id: str, db: Session = Depends(get_db)):
    check = verify_batch_ledger(db, get_batch(db, batch_id))
    return LedgerCheckOut(
        batch_id=check.batch_id,
        current_quantity=check.current_quantity,
        replayed_quantity=check.replayed_quantity,
        entry_count=check.entry_count,
        last_quantity_after_transaction=check.last_quantity_after_transaction,
        consistent=check.consistent,
    )


@router.get(
    "/ledger",
    response_model=LedgerListOut,
    summary="List stock ledger entries",
    responses=error_responses(400, 422, 500),
)
def list_stock_ledger(
    medicine_id: str | None = Query(default=None, description="Optional medicine filter"),
    batch_id: str | None = Query(default=None, description="Optional batch filter"),
    transaction_type: str | None = Query(default=None, description="Optional transaction type filter"),
    limit: int = Query(default=50, ge=1, le=200, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
):
    total, rows = list_ledger_entries(
        db,
        medicine_id=medicine_id,
        batch_id=batch_id,
        transaction_type=parse_transaction_type(transaction_type) if transaction_type else None,
        offset=offset,
        limit=limit,
    )
    items = [LedgerEntryOut.model_validate(row) for row in rows]
    return LedgerListOut(
        items=items,
        pagination=_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/summaries/{medicine_id}",
    response_model=StockSummaryOut,
    summary="Get cached medicine stock total",
    responses=error_responses(404, 500),
)
def get_stock_summary(medicine_id: str, db: Session = Depends(get_db)):
    if db.get(Medicine, medicine_id) is None:
        raise MedicineNotFound(medicine_id)
    summary = get_medicine_stock_summary(db, medicine_id)
    if summary is None:
        # Never transacted and not yet backfilled.
        return StockSummaryOut(medicine_id=medicine_id, total_quantity_in_stock=0)
    return StockSummaryOut.model_validate(summary)


@router.post(
    "/summaries/rebuild",
    response_model=SummaryRebuildOut,
    summary="Recompute medicine stock summaries",
    responses=error_responses(422, 500, 503),
)
def rebuild_stock_summaries(payload: SummaryRebuildIn, db: Session = Depends(get_db)):
    refreshed = backfill_stock_summaries(db, only_missing=payload.only_missing)
    return SummaryRebuildOut(refreshed=refreshed)


@router.get(
    "/alerts/low-stock",
    response_model=LowStockListOut,
    summary="List medicines at or below their reorder level",
    responses=error_responses(422, 500),
)
def list_low_stock(
    threshold: int | None = Query(
        default=None,
        ge=0,
        description="Optional global threshold override. Defaults to medicine reorder level or configured default.",
    ),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    total, rows = list_low_stock_medicines(db, threshold=threshold, offset=offset, limit=limit)
    items = [
        LowStockMedicineOut(
            medicine_id=medicine.id,
            name=medicine.name,
            reorder_level=medicine.reorder_level,
            threshold=limit_threshold,
            stock=stock,
        )
        for medicine, stock, limit_threshold in rows
    ]
    return LowStockListOut(
        items=items,
        pagination=_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/alerts/expiring",
    response_model=ExpiringBatchListOut,
    summary="List batches with stock that expire soon",
    responses=error_responses(422, 500),
)
def list_expiring(
    within_days: int | None = Query(
        default=None,
        ge=1,
        le=3650,
        description="Warning window in days. Defaults to EXPIRY_WARNING_DAYS.",
    ),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    total, batches = list_expiring_stock(db, within_days=within_days, offset=offset, limit=limit)
    today = clock.today()
    items = [
        ExpiringBatchOut(
            batch_id=batch.id,
            medicine_id=batch.medicine_id,
            batch_number=batch.batch_number,
            current_quantity=batch.current_quantity,
            expiry_date=batch.expiry_date,
            days_to_expiry=(batch.expiry_date - today).days,
        )
        for batch in batches
    ]
    return ExpiringBatchListOut(
        items=items,
        pagination=_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )
