"""Closed taxonomy of stock movements.

Direction and batch requirements live here as static data; the transaction
engine uses them to decide the sign of a movement and the request schema uses
them to decide which fields are required. New types are added here, never at
runtime.
"""

from enum import Enum

from stockledger.core.errors import UnsupportedTransactionType


class StockTransactionType(str, Enum):
    IN_NEW_BATCH = "IN_NEW_BATCH"  # stock in from a newly received batch
    INITIAL_STOCK = "INITIAL_STOCK"  # opening count when the system is set up
    ADJUST_ADD = "ADJUST_ADD"  # found stock, recount correction upwards
    OUT_DISPENSE = "OUT_DISPENSE"  # dispensed / sold
    ADJUST_SUB = "ADJUST_SUB"  # recount correction downwards
    DISPOSAL_EXPIRED = "DISPOSAL_EXPIRED"
    DISPOSAL_DAMAGED = "DISPOSAL_DAMAGED"
    RETURN_SUPPLIER = "RETURN_SUPPLIER"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def is_increasing(self) -> bool:
        return self in INCREASING_TYPES

    @property
    def is_decreasing(self) -> bool:
        return self in DECREASING_TYPES

    @property
    def requires_existing_batch(self) -> bool:
        return self in BATCH_REQUIRED_TYPES


_LABELS: dict[StockTransactionType, str] = {
    StockTransactionType.IN_NEW_BATCH: "New Batch Received",
    StockTransactionType.INITIAL_STOCK: "Initial Stock Entry",
    StockTransactionType.ADJUST_ADD: "Adjustment (Add)",
    StockTransactionType.OUT_DISPENSE: "Dispensed/Sold",
    StockTransactionType.ADJUST_SUB: "Adjustment (Subtract)",
    StockTransactionType.DISPOSAL_EXPIRED: "Disposal (Expired)",
    StockTransactionType.DISPOSAL_DAMAGED: "Disposal (Damaged)",
    StockTransactionType.RETURN_SUPPLIER: "Return to Supplier",
}

INCREASING_TYPES: frozenset[StockTransactionType] = frozenset(
    {
        StockTransactionType.IN_NEW_BATCH,
        StockTransactionType.INITIAL_STOCK,
        StockTransactionType.ADJUST_ADD,
    }
)

DECREASING_TYPES: frozenset[StockTransactionType] = frozenset(
    {
        StockTransactionType.OUT_DISPENSE,
        StockTransactionType.ADJUST_SUB,
        StockTransactionType.DISPOSAL_EXPIRED,
        StockTransactionType.DISPOSAL_DAMAGED,
        StockTransactionType.RETURN_SUPPLIER,
    }
)

# INITIAL_STOCK may target an existing batch but does not have to.
BATCH_REQUIRED_TYPES: frozenset[StockTransactionType] = DECREASING_TYPES | {StockTransactionType.ADJUST_ADD}

# Only an opening count may record a zero quantity.
ZERO_QUANTITY_TYPES: frozenset[StockTransactionType] = frozenset({StockTransactionType.INITIAL_STOCK})


def parse_transaction_type(value: "StockTransactionType | str") -> StockTransactionType:
    if isinstance(value, StockTransactionType):
        return value
    try:
        return StockTransactionType(str(value).strip().upper())
    except ValueError:
        raise UnsupportedTransactionType(value) from None


def transaction_type_choices() -> dict[str, str]:
    return {member.value: member.label for member in StockTransactionType}
