from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base


class MedicineStockSummary(Base):
    """
    Cached total of non-expired on-hand stock per medicine. Always rebuilt from
    the batches table, never patched incrementally.
    """
    __tablename__ = "medicine_stock_summaries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    medicine_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("medicines.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    total_quantity_in_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("total_quantity_in_stock >= 0", name="ck_medicine_stock_summaries_total_non_negative"),
    )
