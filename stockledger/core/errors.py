"""Error taxonomy for the stock ledger.

Every failure the engine reports is a ``StockLedgerError``. The ``kind``
attribute groups them the way callers react to them:

  - ``caller``         bad input or a missing reference; nothing was mutated
  - ``business_rule``  the request is well formed but violates a stock rule
  - ``invariant``      a programming error upstream; logged loudly, never corrected
  - ``infrastructure`` lock timeout or commit failure; safe to retry
"""

from typing import Any


class StockLedgerError(Exception):
    kind = "caller"
    status_code = 400
    error_code = "stock_error"
    default_message = "Stock transaction failed"
    retryable = False

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = {key: value for key, value in context.items() if value is not None}
        super().__init__(self.message)

    def details(self) -> dict[str, Any]:
        return dict(self.context)


# ── Caller / input errors ─────────────────────────────────────


class UnsupportedTransactionType(StockLedgerError):
    error_code = "unsupported_transaction_type"
    default_message = "Unsupported transaction type"

    def __init__(self, value: Any):
        super().__init__(f"Unsupported transaction type: {value}", transaction_type=str(value))


class MissingRequiredReference(StockLedgerError):
    status_code = 422
    error_code = "missing_reference"
    default_message = "A required reference is missing"

    def __init__(self, field: str, transaction_label: str):
        super().__init__(
            f"{field} is required for {transaction_label}.",
            field=field,
        )


class InvalidTransactionRequest(StockLedgerError):
    status_code = 422
    error_code = "invalid_transaction"
    default_message = "Invalid stock transaction"


class MedicineNotFound(StockLedgerError):
    status_code = 404
    error_code = "medicine_not_found"
    default_message = "Medicine not found"

    def __init__(self, medicine_id: str):
        super().__init__(f"Medicine not found: {medicine_id}", medicine_id=medicine_id)


class BatchNotFound(StockLedgerError):
    status_code = 404
    error_code = "batch_not_found"
    default_message = "Batch not found"

    def __init__(self, batch_id: str):
        super().__init__(f"Batch not found: {batch_id}", batch_id=batch_id)


class SupplierNotFound(StockLedgerError):
    status_code = 404
    error_code = "supplier_not_found"
    default_message = "Supplier not found"

    def __init__(self, supplier_id: str):
        super().__init__(f"Supplier not found: {supplier_id}", supplier_id=supplier_id)


class LedgerEntryNotFound(StockLedgerError):
    status_code = 404
    error_code = "ledger_entry_not_found"
    default_message = "Ledger entry not found"

    def __init__(self, entry_id: int):
        super().__init__(f"Ledger entry not found: {entry_id}", ledger_entry_id=entry_id)


class DuplicateBatchNumber(StockLedgerError):
    status_code = 409
    error_code = "duplicate_batch_number"
    default_message = "Batch number already exists for this medicine"

    def __init__(self, medicine_id: str, batch_number: str):
        super().__init__(
            f"Batch number {batch_number} already exists for this medicine.",
            medicine_id=medicine_id,
            batch_number=batch_number,
        )


# ── Business rule violations ──────────────────────────────────


class InsufficientStock(StockLedgerError):
    kind = "business_rule"
    status_code = 422
    error_code = "insufficient_stock"
    default_message = "There is not enough stock available to complete this transaction."

    def __init__(
        self,
        *,
        attempted: int,
        available: int,
        batch_id: str,
        batch_number: str | None = None,
        transaction_label: str | None = None,
    ):
        self.attempted = attempted
        self.available = available
        self.batch_id = batch_id
        self.batch_number = batch_number
        action = transaction_label or "remove"
        super().__init__(
            f"Cannot {action} {attempted} units. "
            f"Only {available} units available in batch {batch_number or batch_id}.",
            attempted=attempted,
            available=available,
            batch_id=batch_id,
            batch_number=batch_number,
        )


class BaselineBelowOnHand(StockLedgerError):
    kind = "business_rule"
    status_code = 422
    error_code = "baseline_below_on_hand"
    default_message = "Initial stock baseline is below the quantity on hand"

    def __init__(self, *, baseline: int, on_hand: int, batch_id: str):
        super().__init__(
            f"Initial stock of {baseline} units is below the {on_hand} units already on hand. "
            "Record an Adjustment (Subtract) instead.",
            baseline=baseline,
            on_hand=on_hand,
            batch_id=batch_id,
        )


# ── Invariant violations (programming errors) ─────────────────


class InvalidQuantitySign(StockLedgerError):
    kind = "invariant"
    status_code = 500
    error_code = "invalid_quantity_sign"
    default_message = "Quantity sign does not match the transaction direction"

    def __init__(self, transaction_type: str, signed_quantity: int):
        super().__init__(
            f"{transaction_type} cannot apply a quantity change of {signed_quantity}.",
            transaction_type=transaction_type,
            signed_quantity=signed_quantity,
        )


class LedgerEntryImmutable(StockLedgerError):
    kind = "invariant"
    status_code = 500
    error_code = "ledger_entry_immutable"
    default_message = "Stock ledger entries cannot be changed once written"


# ── Infrastructure ────────────────────────────────────────────


class StockLockTimeout(StockLedgerError):
    kind = "infrastructure"
    status_code = 503
    error_code = "stock_lock_timeout"
    default_message = "Batch is busy, please retry"
    retryable = True

    def __init__(self, batch_id: str, timeout_seconds: float):
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for batch {batch_id}. Please retry.",
            batch_id=batch_id,
            timeout_seconds=timeout_seconds,
        )


class StockPersistenceError(StockLedgerError):
    kind = "infrastructure"
    status_code = 503
    error_code = "stock_persistence_error"
    default_message = "Stock database temporarily unavailable. Please try again."
    retryable = True
