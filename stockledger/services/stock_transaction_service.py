"""Stock transaction engine.

``process_transaction`` is the only way stock quantities change. Each call is
one terminal transition:

    lock batch (if any) -> re-read under lock -> validate -> mutate batch
    -> append ledger entry -> commit -> refresh medicine summary

Any error before the commit rolls the whole unit back, so a failed call leaves
neither a ledger row nor a quantity change behind. The summary is a cache and
is refreshed in its own unit after the commit.
"""

import json
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from stockledger.core import clock
from stockledger.core.config import settings
from stockledger.core.errors import (
    BaselineBelowOnHand,
    InsufficientStock,
    InvalidQuantitySign,
    InvalidTransactionRequest,
    MedicineNotFound,
    MissingRequiredReference,
    StockLedgerError,
    StockPersistenceError,
    SupplierNotFound,
)
from stockledger.models.batch import Batch
from stockledger.models.medicine import Medicine, Supplier
from stockledger.models.stock_ledger import StockLedgerEntry
from stockledger.models.stock_summary import MedicineStockSummary
from stockledger.services.batch_locks import BatchLockRegistry, batch_locks
from stockledger.services.batch_service import create_batch, lock_batch, set_current_quantity
from stockledger.services.ledger_service import append_ledger_entry, get_ledger_entry
from stockledger.services.stock_summary_service import (
    compute_medicine_quantity_after,
    refresh_medicine_stock_summary,
)
from stockledger.services.transaction_types import (
    DECREASING_TYPES,
    ZERO_QUANTITY_TYPES,
    StockTransactionType,
    parse_transaction_type,
)

logger = logging.getLogger("stockledger.stock")


@dataclass(frozen=True)
class TransactionRequest:
    transaction_type: StockTransactionType | str
    medicine_id: str | None
    quantity: int
    batch_id: str | None = None
    notes: str | None = None
    transaction_date: datetime | None = None
    user_id: str | None = None
    # Batch-creating flows only
    supplier_id: str | None = None
    batch_number: str | None = None
    manufacture_date: date | None = None
    expiry_date: date | None = None
    # INITIAL_STOCK: open a new batch instead of targeting one / none
    create_new_batch: bool = False
    related_transaction_id: int | None = None


@dataclass(frozen=True)
class TransactionResult:
    transaction_type: StockTransactionType
    medicine: Medicine
    batch: Batch | None
    ledger_entry: StockLedgerEntry
    summary: MedicineStockSummary | None
    message: str

    @property
    def resulting_quantity(self) -> int:
        return self.ledger_entry.quantity_after_transaction


@dataclass
class _Context:
    db: Session
    transaction_type: StockTransactionType
    request: TransactionRequest
    medicine: Medicine
    signed_quantity: int
    transaction_date: datetime
    lock_timeout: float
    baseline_override: bool


def resolve_signed_quantity(transaction_type: StockTransactionType, magnitude: int) -> int:
    """The one place a movement's sign is decided. Caller-supplied signs are ignored."""
    magnitude = abs(int(magnitude))
    return -magnitude if transaction_type in DECREASING_TYPES else magnitude


def creates_batch(transaction_type: StockTransactionType, request: TransactionRequest) -> bool:
    if transaction_type == StockTransactionType.IN_NEW_BATCH:
        return True
    return transaction_type == StockTransactionType.INITIAL_STOCK and request.create_new_batch


def locked_batch_id(transaction_type: StockTransactionType, request: TransactionRequest) -> str | None:
    """Batch whose row must be locked for this request, if any."""
    if creates_batch(transaction_type, request):
        return None
    if transaction_type.requires_existing_batch:
        return request.batch_id
    if transaction_type == StockTransactionType.INITIAL_STOCK:
        return request.batch_id
    return None


# ── Request checks ────────────────────────────────────────────


def _validate_request(transaction_type: StockTransactionType, request: TransactionRequest) -> None:
    label = transaction_type.label

    if not request.medicine_id:
        raise MissingRequiredReference("medicine_id", label)

    quantity = request.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidTransactionRequest("Quantity must be a whole number.", quantity=repr(quantity))
    if quantity < 0:
        raise InvalidTransactionRequest(
            "Quantity must be an unsigned magnitude; the transaction type decides the direction.",
            quantity=quantity,
        )
    if quantity == 0 and transaction_type not in ZERO_QUANTITY_TYPES:
        raise InvalidTransactionRequest(f"Quantity must be at least 1 for {label}.", quantity=quantity)

    if request.create_new_batch and transaction_type != StockTransactionType.INITIAL_STOCK:
        raise InvalidTransactionRequest(
            f"create_new_batch only applies to {StockTransactionType.INITIAL_STOCK.label}."
        )
    if request.create_new_batch and request.batch_id:
        raise InvalidTransactionRequest("Provide either batch_id or create_new_batch, not both.")
    if transaction_type == StockTransactionType.IN_NEW_BATCH and request.batch_id:
        raise InvalidTransactionRequest(f"batch_id must not be set for {label}; a new batch is created.")

    if transaction_type.requires_existing_batch and not request.batch_id:
        raise MissingRequiredReference("batch_id", label)

    if creates_batch(transaction_type, request):
        if not request.supplier_id:
            raise MissingRequiredReference("supplier_id", label)
        missing = [
            field
            for field in ("batch_number", "expiry_date")
            if not getattr(request, field)
        ]
        if missing:
            raise InvalidTransactionRequest(
                f"{', '.join(missing)} required to create a batch.",
                missing_fields=missing,
            )
        if request.manufacture_date and request.expiry_date < request.manufacture_date:
            raise InvalidTransactionRequest(
                "Expiry date must be on or after the manufacture date.",
                manufacture_date=request.manufacture_date.isoformat(),
                expiry_date=request.expiry_date.isoformat(),
            )


def _resolve_transaction_date(value: datetime | None) -> datetime:
    now = clock.utcnow()
    if value is None:
        return now
    resolved = clock.as_utc(value)
    if resolved > now:
        raise InvalidTransactionRequest(
            "Transaction date cannot be in the future.",
            transaction_date=resolved.isoformat(),
        )
    return resolved


def _check_sign(transaction_type: StockTransactionType, quantity_change: int) -> None:
    if transaction_type in DECREASING_TYPES:
        valid = quantity_change < 0
    elif transaction_type in ZERO_QUANTITY_TYPES:
        valid = quantity_change >= 0
    else:
        valid = quantity_change > 0
    if valid:
        return
    logger.error(
        json.dumps(
            {
                "event": "stock_invariant_violation",
                "transaction_type": transaction_type.value,
                "quantity_change": quantity_change,
            }
        )
    )
    raise InvalidQuantitySign(transaction_type.value, quantity_change)


def _get_medicine(db: Session, medicine_id: str) -> Medicine:
    medicine = db.get(Medicine, medicine_id)
    if not medicine:
        raise MedicineNotFound(medicine_id)
    return medicine


def _ensure_supplier(db: Session, supplier_id: str) -> None:
    exists = db.execute(select(Supplier.id).where(Supplier.id == supplier_id)).first()
    if not exists:
        raise SupplierNotFound(supplier_id)


# ── Handlers ──────────────────────────────────────────────────


def _append(
    ctx: _Context,
    *,
    batch_id: str | None,
    quantity_change: int,
    quantity_after: int,
    notes: str | None = None,
) -> StockLedgerEntry:
    return append_ledger_entry(
        ctx.db,
        medicine_id=ctx.medicine.id,
        batch_id=batch_id,
        transaction_type=ctx.transaction_type,
        quantity_change=quantity_change,
        quantity_after_transaction=quantity_after,
        transaction_date=ctx.transaction_date,
        user_id=ctx.request.user_id,
        notes=notes if notes is not None else ctx.request.notes,
        related_transaction_id=ctx.request.related_transaction_id,
    )


def _locked_batch(ctx: _Context) -> Batch:
    batch = lock_batch(ctx.db, ctx.request.batch_id, timeout_seconds=ctx.lock_timeout)
    if batch.medicine_id != ctx.medicine.id:
        raise InvalidTransactionRequest(
            f"Batch {batch.batch_number} does not belong to medicine {ctx.medicine.name}.",
            batch_id=batch.id,
            medicine_id=ctx.medicine.id,
        )
    return batch


def _receive_new_batch(ctx: _Context) -> tuple[Batch, StockLedgerEntry]:
    _check_sign(ctx.transaction_type, ctx.signed_quantity)
    request = ctx.request
    _ensure_supplier(ctx.db, request.supplier_id)
    batch = create_batch(
        ctx.db,
        medicine_id=ctx.medicine.id,
        supplier_id=request.supplier_id,
        batch_number=request.batch_number.strip(),
        quantity=ctx.signed_quantity,
        manufacture_date=request.manufacture_date,
        expiry_date=request.expiry_date,
    )
    entry = _append(
        ctx,
        batch_id=batch.id,
        quantity_change=ctx.signed_quantity,
        quantity_after=batch.current_quantity,
        notes=request.notes or f"Received new batch {batch.batch_number}",
    )
    return batch, entry


def _reduce_batch(ctx: _Context) -> tuple[Batch, StockLedgerEntry]:
    _check_sign(ctx.transaction_type, ctx.signed_quantity)
    batch = _locked_batch(ctx)
    attempted = -ctx.signed_quantity
    if batch.current_quantity < attempted:
        raise InsufficientStock(
            attempted=attempted,
            available=batch.current_quantity,
            batch_id=batch.id,
            batch_number=batch.batch_number,
            transaction_label=ctx.transaction_type.label,
        )
    new_quantity = batch.current_quantity + ctx.signed_quantity
    set_current_quantity(batch, new_quantity)
    entry = _append(ctx, batch_id=batch.id, quantity_change=ctx.signed_quantity, quantity_after=new_quantity)
    return batch, entry


def _increase_batch(ctx: _Context) -> tuple[Batch, StockLedgerEntry]:
    _check_sign(ctx.transaction_type, ctx.signed_quantity)
    batch = _locked_batch(ctx)
    new_quantity = batch.current_quantity + ctx.signed_quantity
    set_current_quantity(batch, new_quantity)
    entry = _append(ctx, batch_id=batch.id, quantity_change=ctx.signed_quantity, quantity_after=new_quantity)
    return batch, entry


def _apply_initial_baseline(ctx: _Context) -> tuple[Batch, StockLedgerEntry]:
    """
    Opening count on an existing batch. With baseline override on, the count
    becomes the batch quantity and the ledger records the delta actually applied,
    so replaying the ledger still reproduces current_quantity.
    """
    batch = _locked_batch(ctx)
    if ctx.baseline_override:
        baseline = ctx.signed_quantity
        if baseline < batch.current_quantity:
            raise BaselineBelowOnHand(baseline=baseline, on_hand=batch.current_quantity, batch_id=batch.id)
        quantity_change = baseline - batch.current_quantity
        new_quantity = baseline
    else:
        quantity_change = ctx.signed_quantity
        new_quantity = batch.current_quantity + quantity_change
    _check_sign(ctx.transaction_type, quantity_change)
    set_current_quantity(batch, new_quantity)
    entry = _append(ctx, batch_id=batch.id, quantity_change=quantity_change, quantity_after=new_quantity)
    return batch, entry


def _record_batchless_initial_stock(ctx: _Context) -> tuple[None, StockLedgerEntry]:
    _check_sign(ctx.transaction_type, ctx.signed_quantity)
    quantity_after = compute_medicine_quantity_after(
        ctx.db,
        medicine_id=ctx.medicine.id,
        signed_change=ctx.signed_quantity,
    )
    entry = _append(ctx, batch_id=None, quantity_change=ctx.signed_quantity, quantity_after=quantity_after)
    return None, entry


def _record_initial_stock(ctx: _Context) -> tuple[Batch | None, StockLedgerEntry]:
    if ctx.request.create_new_batch:
        return _receive_new_batch(ctx)
    if ctx.request.batch_id:
        return _apply_initial_baseline(ctx)
    return _record_batchless_initial_stock(ctx)


_Handler = Callable[[_Context], tuple[Batch | None, StockLedgerEntry]]

_HANDLERS: dict[StockTransactionType, _Handler] = {
    StockTransactionType.IN_NEW_BATCH: _receive_new_batch,
    StockTransactionType.INITIAL_STOCK: _record_initial_stock,
    StockTransactionType.ADJUST_ADD: _increase_batch,
    **{transaction_type: _reduce_batch for transaction_type in DECREASING_TYPES},
}


# ── Entry point ───────────────────────────────────────────────


def _log_rejection(request: TransactionRequest, exc: StockLedgerError) -> None:
    payload = {
        "event": "stock_transaction_rejected",
        "transaction_type": str(getattr(request.transaction_type, "value", request.transaction_type)),
        "medicine_id": request.medicine_id,
        "batch_id": request.batch_id,
        "user_id": request.user_id,
        "kind": exc.kind,
        "error_code": exc.error_code,
        "message": exc.message,
    }
    if exc.kind in {"invariant", "infrastructure"}:
        logger.error(json.dumps(payload, default=str))
    else:
        logger.warning(json.dumps(payload, default=str))


def _refresh_summary(db: Session, medicine_id: str) -> MedicineStockSummary | None:
    try:
        summary = refresh_medicine_stock_summary(db, medicine_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        # The movement is already committed; the cache is rebuilt on the next
        # transaction for this medicine or by backfill_stock_summaries.
        logger.error(
            json.dumps(
                {
                    "event": "stock_summary_refresh_failed",
                    "medicine_id": medicine_id,
                    "error": str(exc),
                }
            )
        )
        return None
    return summary


def process_transaction(
    db: Session,
    request: TransactionRequest,
    *,
    locks: BatchLockRegistry = batch_locks,
    lock_timeout: float | None = None,
    baseline_override: bool | None = None,
) -> TransactionResult:
    try:
        transaction_type = parse_transaction_type(request.transaction_type)
        _validate_request(transaction_type, request)
        transaction_date = _resolve_transaction_date(request.transaction_date)
        ctx = _Context(
            db=db,
            transaction_type=transaction_type,
            request=request,
            medicine=_get_medicine(db, request.medicine_id),
            signed_quantity=resolve_signed_quantity(transaction_type, request.quantity),
            transaction_date=transaction_date,
            lock_timeout=lock_timeout if lock_timeout is not None else settings.batch_lock_timeout_seconds,
            baseline_override=(
                baseline_override if baseline_override is not None else settings.initial_stock_baseline_override
            ),
        )
        if request.related_transaction_id is not None:
            get_ledger_entry(db, request.related_transaction_id)

        handler = _HANDLERS[transaction_type]
        target = locked_batch_id(transaction_type, request)
        guard = locks.hold(target, timeout=ctx.lock_timeout) if target else nullcontext()
        with guard:
            batch, entry = handler(ctx)
            db.commit()
    except StockLedgerError as exc:
        db.rollback()
        _log_rejection(request, exc)
        raise
    except OperationalError as exc:
        db.rollback()
        error = StockPersistenceError(medicine_id=request.medicine_id, batch_id=request.batch_id)
        _log_rejection(request, error)
        raise error from exc
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        json.dumps(
            {
                "event": "stock_transaction_committed",
                "ledger_entry_id": entry.id,
                "transaction_type": transaction_type.value,
                "medicine_id": ctx.medicine.id,
                "batch_id": entry.batch_id,
                "quantity_change": entry.quantity_change,
                "quantity_after_transaction": entry.quantity_after_transaction,
                "user_id": entry.user_id,
            }
        )
    )

    summary = _refresh_summary(db, ctx.medicine.id)
    return TransactionResult(
        transaction_type=transaction_type,
        medicine=ctx.medicine,
        batch=batch,
        ledger_entry=entry,
        summary=summary,
        message=f"{transaction_type.label} processed successfully.",
    )
