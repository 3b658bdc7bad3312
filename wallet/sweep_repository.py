import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import User
from db.sweep import SweepRecord, SweepStatus
from shared.crypto.errors import DuplicateSweepError, LedgerError
from shared.currency_precision import Wei
from shared.logger import setup_logging

logger = setup_logging(__name__)


class SweepRepository:
    """User-record store used by the sweep job"""

    def __init__(self, session: Session):
        self.session = session

    def load_sweepable_users(self) -> List[User]:
        """Users with a provisioned deposit wallet, in stable id order"""
        return (
            self.session.query(User)
            .filter(
                User.deposit_address.isnot(None),
                User.encrypted_private_key.isnot(None),
            )
            .order_by(User.id)
            .all()
        )

    def lock_user(self, user_id: int) -> bool:
        """Row-lock a user until the current transaction ends.

        False when another process already holds the lock, so two sweepers
        sharing the database never sign for the same deposit address at once.
        SQLite has no row locks and always grants it.
        """
        locked = (
            self.session.query(User.id)
            .filter(User.id == user_id)
            .with_for_update(skip_locked=True)
            .first()
        )
        return locked is not None

    def end_transaction(self):
        """Release row locks and discard anything left uncommitted"""
        try:
            self.session.rollback()
        except SQLAlchemyError:
            # The connection is gone; the session reconnects on next use.
            logger.exception("Rollback failed while ending sweep transaction")

    def sweep_exists(self, tx_hash: str) -> bool:
        return self.session.query(SweepRecord.id).filter_by(transaction_hash=tx_hash).first() is not None

    def record_sweep(self, user: User, amount: Wei, gas_cost: Wei, tx_hash: str,
                     status: SweepStatus = SweepStatus.SUCCESS,
                     block_number: Optional[int] = None,
                     network: str = "ethereum") -> SweepRecord:
        """Credit the custodial balance, stamp the audit fields and append the ledger row.

        All three writes commit together or not at all.
        """
        now = datetime.datetime.utcnow()
        try:
            if self.sweep_exists(tx_hash):
                raise DuplicateSweepError(tx_hash)

            user.internal_balance_wei = int(user.internal_balance_wei or 0) + amount
            user.last_swept_at = now
            user.last_sweep_amount_wei = amount
            user.last_sweep_tx_hash = tx_hash

            record = SweepRecord(
                user_id=user.id,
                user_email=user.email,
                deposit_address=user.deposit_address,
                amount_swept_wei=amount,
                gas_cost_wei=gas_cost,
                transaction_hash=tx_hash,
                status=status,
                swept_at=now,
                block_number=block_number,
                network=network,
            )
            self.session.add(record)
            self.session.commit()
            return record
        except IntegrityError as e:
            self.session.rollback()
            # SQLite and Postgres both name the violated column or constraint.
            if "transaction_hash" in str(e.orig):
                raise DuplicateSweepError(tx_hash) from e
            raise LedgerError(f"Ledger write rejected for {tx_hash}: {e.orig}") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LedgerError(f"Ledger write failed for {tx_hash}: {e}") from e

    def get_sweep_history(self, user_id: Optional[int] = None, limit: int = 50) -> List[SweepRecord]:
        q = self.session.query(SweepRecord)
        if user_id is not None:
            q = q.filter(SweepRecord.user_id == user_id)
        return q.order_by(SweepRecord.swept_at.desc(), SweepRecord.id.desc()).limit(limit).all()
