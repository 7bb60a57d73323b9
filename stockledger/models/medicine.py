from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base


class Medicine(Base):
    """Catalog entry. Maintained by the catalog screens; the ledger only reads it."""

    __tablename__ = "medicines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    generic_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    strength: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # e.g., 500mg
    form: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # e.g., tablet, syrup
    unit_of_measure: Mapped[str] = mapped_column(String(50), nullable=False, default="unit", server_default="unit")
    # 0 means "use LOW_STOCK_DEFAULT_THRESHOLD"
    reorder_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_medicines_name", "name"),
    )


class Supplier(Base):
    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
