import enum
import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.currency_precision import AmountConverter
from .base import Base


class SweepStatus(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class SweepRecord(Base):
    """Append-only ledger row, one per broadcast sweep transaction."""
    __tablename__ = "sweeps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    deposit_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount_swept_wei: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    gas_cost_wei: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    # Unique so a retried run can never credit the same transaction twice.
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    status: Mapped[SweepStatus] = mapped_column(
        Enum(SweepStatus, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=SweepStatus.SUCCESS,
    )
    swept_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=func.now())
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    network: Mapped[str] = mapped_column(String(32), nullable=False, default="ethereum")

    user = relationship("User", back_populates="sweeps")

    __table_args__ = (
        Index("ix_sweeps_swept_at", "swept_at"),
        Index("ix_sweeps_user_id_swept_at", "user_id", "swept_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "deposit_address": self.deposit_address,
            "amount_swept_wei": str(int(self.amount_swept_wei)),
            "amount_swept": str(AmountConverter.from_smallest_units(self.amount_swept_wei)),
            "gas_cost_wei": str(int(self.gas_cost_wei)),
            "transaction_hash": self.transaction_hash,
            "status": self.status.value,
            "swept_at": self.swept_at.isoformat() if self.swept_at else None,
            "block_number": self.block_number,
            "network": self.network,
        }
