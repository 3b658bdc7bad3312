import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.currency_precision import AmountConverter
from .base import Timestamped
from .sweep import SweepRecord, SweepStatus  # noqa: F401


class User(Timestamped):
    """Marketplace account, reduced to the custodial wallet fields."""
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Assigned together once, never rotated independently.
    deposit_address: Mapped[str | None] = mapped_column(String(42), unique=True, index=True, nullable=True)
    encrypted_private_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Custodial balances in wei; Numeric loads as Decimal, callers convert with int()
    internal_balance_wei: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False, default=0)
    weth_balance_wei: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False, default=0)

    last_swept_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    last_sweep_amount_wei: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)
    last_sweep_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    sweeps = relationship("SweepRecord", back_populates="user", order_by="SweepRecord.swept_at")

    @property
    def has_wallet(self) -> bool:
        return bool(self.deposit_address and self.encrypted_private_key)

    @property
    def internal_balance(self) -> Decimal:
        return AmountConverter.from_smallest_units(self.internal_balance_wei, 'ETH')

    @property
    def weth_balance(self) -> Decimal:
        return AmountConverter.from_smallest_units(self.weth_balance_wei, 'WETH')

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
