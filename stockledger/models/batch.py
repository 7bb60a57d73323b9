from datetime import date, datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base


class Batch(Base):
    """
    One physical lot of a medicine. current_quantity is only ever written by the
    stock transaction engine, under the batch lock.
    """
    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    medicine_id: Mapped[str] = mapped_column(String(36), ForeignKey("medicines.id"), nullable=False, index=True)
    supplier_id: Mapped[str] = mapped_column(String(36), ForeignKey("suppliers.id"), nullable=False, index=True)
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    quantity_received: Mapped[int] = mapped_column(Integer, nullable=False)
    current_quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    manufacture_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
    # Soft removal is owned by the batch maintenance screens, not the ledger.
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("current_quantity >= 0", name="ck_batches_current_quantity_non_negative"),
        CheckConstraint("quantity_received >= 0", name="ck_batches_quantity_received_non_negative"),
        CheckConstraint(
            "manufacture_date IS NULL OR expiry_date >= manufacture_date",
            name="ck_batches_expiry_after_manufacture",
        ),
        Index("ix_batches_medicine_expiry", "medicine_id", "expiry_date"),
        Index(
            "ux_batches_medicine_batch_number_active",
            "medicine_id",
            "batch_number",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )
