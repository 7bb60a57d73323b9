from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stockledger.core import clock
from stockledger.schemas.common import PaginationMeta


class StockTransactionIn(BaseModel):
    transaction_type: str = Field(
        ...,
        description="One of GET /stock/transaction-types. The type decides the direction of the movement.",
    )
    medicine_id: str
    batch_id: str | None = Field(
        default=None,
        description="Required for dispense, adjustments, disposals and returns.",
    )
    quantity: int = Field(..., ge=0, description="Unsigned number of units. Only Initial Stock Entry accepts 0.")
    notes: str | None = Field(default=None, max_length=1000)
    transaction_date: datetime | None = Field(
        default=None,
        description="When the movement happened. Defaults to now; naive values are read as UTC.",
    )
    user_id: str | None = Field(default=None, max_length=36)

    supplier_id: str | None = None
    batch_number: str | None = Field(default=None, min_length=1, max_length=100)
    manufacture_date: date | None = None
    expiry_date: date | None = None
    create_new_batch: bool = Field(
        default=False,
        description="Initial Stock Entry only: open a new batch from supplier_id/batch_number/expiry_date.",
    )
    related_transaction_id: int | None = Field(default=None, ge=1)

    @field_validator("transaction_date")
    @classmethod
    def validate_transaction_date_not_future(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return value
        if clock.as_utc(value) > clock.utcnow():
            raise ValueError("Transaction date cannot be in the future.")
        return value

    @field_validator("manufacture_date")
    @classmethod
    def validate_manufacture_date(cls, value: date | None) -> date | None:
        if value is not None and value > clock.today():
            raise ValueError("Manufacture date cannot be in the future.")
        return value

    @field_validator("expiry_date")
    @classmethod
    def validate_expiry_date(cls, value: date | None) -> date | None:
        if value is not None and value < clock.today():
            raise ValueError("Expiry date must be today or in the future.")
        return value

    @model_validator(mode="after")
    def validate_batch_dates(self) -> "StockTransactionIn":
        if self.manufacture_date and self.expiry_date and self.expiry_date <= self.manufacture_date:
            raise ValueError("Expiry date must be after the manufacture date.")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "transaction_type": "OUT_DISPENSE",
                "medicine_id": "medicine-id-here",
                "batch_id": "batch-id-here",
                "quantity": 2,
                "notes": "Walk-in prescription",
            }
        }
    )


class TransactionTypeOut(BaseModel):
    value: str
    label: str
    is_increasing: bool
    requires_existing_batch: bool


class TransactionTypeListOut(BaseModel):
    items: list[TransactionTypeOut]


class BatchOut(BaseModel):
    id: str
    medicine_id: str
    supplier_id: str
    batch_number: str
    quantity_received: int
    current_quantity: int
    manufacture_date: date | None = None
    expiry_date: date

    model_config = ConfigDict(from_attributes=True)


class LedgerEntryOut(BaseModel):
    id: int
    medicine_id: str
    batch_id: str | None = None
    transaction_type: str
    quantity_change: int
    quantity_after_transaction: int
    transaction_date: datetime
    user_id: str | None = None
    notes: str | None = None
    related_transaction_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class StockSummaryOut(BaseModel):
    medicine_id: str
    total_quantity_in_stock: int
    last_updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class LowStockFlagOut(BaseModel):
    quantity: int
    threshold: int


class StockTransactionOut(BaseModel):
    message: str
    transaction_type: str
    ledger_entry: LedgerEntryOut
    batch: BatchOut | None = None
    summary: StockSummaryOut | None = None
    low_stock: LowStockFlagOut | None = None


class LedgerListOut(BaseModel):
    items: list[LedgerEntryOut]
    pagination: PaginationMeta


class LedgerCheckOut(BaseModel):
    batch_id: str
    current_quantity: int
    replayed_quantity: int
    entry_count: int
    last_quantity_after_transaction: int | None = None
    consistent: bool


class SummaryRebuildIn(BaseModel):
    only_missing: bool = True


class SummaryRebuildOut(BaseModel):
    refreshed: int


class LowStockMedicineOut(BaseModel):
    medicine_id: str
    name: str
    reorder_level: int
    threshold: int
    stock: int


class LowStockListOut(BaseModel):
    items: list[LowStockMedicineOut]
    pagination: PaginationMeta


class ExpiringBatchOut(BaseModel):
    batch_id: str
    medicine_id: str
    batch_number: str
    current_quantity: int
    expiry_date: date
    days_to_expiry: int


class ExpiringBatchListOut(BaseModel):
    items: list[ExpiringBatchOut]
    pagination: PaginationMeta
