import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Shared by the user and ledger models.
Base = declarative_base()


class Timestamped(Base):
    """
    Abstract base for mutable rows: `created_at` is set on insert,
    `updated_at` on every update. Append-only tables do not use it.
    """
    __abstract__ = True
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())
