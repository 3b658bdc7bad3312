"""
Crypto Sweeper Service
Sweeps deposited ETH from per-user deposit addresses into the treasury wallet.

Per user the sweep walks Idle -> Checking -> (Skipped | Planning ->
Submitting -> Confirming -> Recording -> Done) | Failed. Every error
below this class is turned into a SweepOutcome so one wallet can never
abort the batch it runs in.

Known gap: if the process dies after a transfer is broadcast but before
the ledger write commits, the funds reach the treasury without a
custodial credit. The next run sees the drained address and skips it;
nothing detects or repairs the missing credit automatically.
"""

import enum
import threading
from dataclasses import dataclass
from typing import Optional, Set

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from db.models import User
from db.sweep import SweepStatus
from shared.crypto.clients.evm_client import ChainClient, TransactionHandle
from shared.crypto.errors import (
    DecryptionError,
    LedgerError,
    NetworkError,
    SubmissionError,
)
from shared.crypto.key_vault import KeyVault
from shared.currency_precision import AmountConverter, Wei
from shared.logger import setup_logging
from wallet.sweep_planner import plan
from wallet.sweep_repository import SweepRepository

logger = setup_logging(__name__)


class SweepState(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    SKIPPED = "skipped"
    PLANNING = "planning"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


class OutcomeKind(enum.Enum):
    SWEPT = "swept"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SweepOutcome:
    """Result of one user's sweep attempt"""
    user_id: int
    deposit_address: str
    kind: OutcomeKind
    amount: Wei = 0
    gas_cost: Wei = 0
    tx_hash: Optional[str] = None
    status: Optional[SweepStatus] = None
    block_number: Optional[int] = None
    reason: str = ""
    failed_in: Optional[SweepState] = None

    @property
    def swept(self) -> bool:
        return self.kind is OutcomeKind.SWEPT

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "deposit_address": self.deposit_address,
            "outcome": self.kind.value,
            "amount_wei": str(self.amount),
            "gas_cost_wei": str(self.gas_cost),
            "tx_hash": self.tx_hash,
            "status": self.status.value if self.status else None,
            "block_number": self.block_number,
            "reason": self.reason,
            "failed_in": self.failed_in.value if self.failed_in else None,
        }


class SweepExecutor:
    """Sweeps one user's deposit address into the treasury"""

    def __init__(self, vault: KeyVault, chain: ChainClient, treasury_address: str,
                 network: str = "ethereum", confirmation_timeout: float = 120,
                 poll_interval: float = 2.0):
        self.vault = vault
        self.chain = chain
        self.treasury_address = treasury_address
        self.network = network
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()

    def _claim(self, user_id: int) -> bool:
        with self._in_flight_lock:
            if user_id in self._in_flight:
                return False
            self._in_flight.add(user_id)
            return True

    def _release(self, user_id: int):
        with self._in_flight_lock:
            self._in_flight.discard(user_id)

    def _enter(self, user: User, state: SweepState, **context):
        logger.info(
            f"Sweep {state.value}",
            extra={"context": {"user_id": user.id, "deposit_address": user.deposit_address,
                               "state": state.value, **context}},
        )

    def _fail(self, user: User, state: SweepState, reason: str, **fields) -> SweepOutcome:
        context = {"user_id": user.id, "deposit_address": user.deposit_address,
                   "state": SweepState.FAILED.value, "failed_in": state.value}
        if fields.get("tx_hash"):
            context["tx_hash"] = fields["tx_hash"]
        logger.error(f"Sweep failed while {state.value}: {reason}", extra={"context": context})
        return SweepOutcome(
            user_id=user.id,
            deposit_address=user.deposit_address,
            kind=OutcomeKind.FAILED,
            reason=reason,
            failed_in=state,
            **fields,
        )

    def sweep_user(self, user: User, repository: SweepRepository,
                   stop_event: Optional[threading.Event] = None) -> SweepOutcome:
        """Sweep one user. Never raises for per-user failures.

        Setting stop_event cuts a confirmation wait short; a transfer that
        was already broadcast is still recorded, as pending.
        """
        try:
            user_id, address = user.id, user.deposit_address
        except SQLAlchemyError as e:
            repository.end_transaction()
            user_id = inspect(user).identity[0]
            logger.error("Could not read user row", extra={"context": {"user_id": user_id, "reason": str(e)}})
            return SweepOutcome(user_id=user_id, deposit_address=None, kind=OutcomeKind.FAILED,
                                reason=f"could not read user row: {e}", failed_in=SweepState.IDLE)

        if not self._claim(user_id):
            return self._fail(user, SweepState.IDLE, "sweep already in progress for this user")
        try:
            if not repository.lock_user(user_id):
                return self._fail(user, SweepState.IDLE, "sweep already in progress in another process")
            return self._sweep(user, repository, stop_event)
        except Exception as e:
            logger.exception(
                "Unexpected error during sweep",
                extra={"context": {"user_id": user_id, "deposit_address": address}},
            )
            return SweepOutcome(user_id=user_id, deposit_address=address, kind=OutcomeKind.FAILED,
                                reason=f"unexpected error: {e!r}", failed_in=SweepState.IDLE)
        finally:
            repository.end_transaction()
            self._release(user_id)

    def _sweep(self, user: User, repository: SweepRepository,
               stop_event: Optional[threading.Event]) -> SweepOutcome:
        address = user.deposit_address

        self._enter(user, SweepState.CHECKING)
        try:
            balance = self.chain.get_balance(address)
            fee = self.chain.get_fee_estimate()
        except NetworkError as e:
            return self._fail(user, SweepState.CHECKING, str(e))

        self._enter(user, SweepState.PLANNING, balance_wei=balance,
                    gas_price_gwei=str(AmountConverter.to_gwei(fee.gas_price)), gas_limit=fee.gas_limit)
        decision = plan(balance, fee.gas_price, fee.gas_limit)
        if not decision.should_sweep:
            self._enter(user, SweepState.SKIPPED, reason=decision.reason,
                        balance_wei=balance, gas_cost_wei=decision.gas_cost)
            return SweepOutcome(
                user_id=user.id,
                deposit_address=address,
                kind=OutcomeKind.SKIPPED,
                gas_cost=decision.gas_cost,
                reason=decision.reason,
            )

        self._enter(user, SweepState.SUBMITTING, amount_wei=decision.amount,
                    treasury_address=self.treasury_address)
        try:
            signer = self.vault.load_signer(user.encrypted_private_key, address)
            handle = self.chain.submit_transfer(
                signer, self.treasury_address, decision.amount, fee.gas_price, fee.gas_limit
            )
        except DecryptionError as e:
            return self._fail(user, SweepState.SUBMITTING, str(e))
        except SubmissionError as e:
            return self._fail(user, SweepState.SUBMITTING, str(e))

        status, block_number = SweepStatus.SUCCESS, None
        if self.confirmation_timeout > 0:
            self._enter(user, SweepState.CONFIRMING, tx_hash=handle.tx_hash)
            try:
                receipt = self.chain.wait_for_receipt(
                    handle.tx_hash, timeout=self.confirmation_timeout,
                    poll_interval=self.poll_interval, stop_event=stop_event,
                )
            except Exception:
                logger.exception(
                    "Confirmation wait failed, recording sweep as pending",
                    extra={"context": {"user_id": user.id, "tx_hash": handle.tx_hash}},
                )
                receipt = None
            except BaseException:
                # A broadcast transfer is always recorded, even when interrupted.
                self._record(user, repository, handle, decision.gas_cost, SweepStatus.PENDING, None)
                raise
            if receipt is None:
                logger.warning(
                    "No receipt before timeout or stop, recording sweep as pending",
                    extra={"context": {"user_id": user.id, "tx_hash": handle.tx_hash}},
                )
                status = SweepStatus.PENDING
            elif not receipt.succeeded:
                return self._fail(user, SweepState.CONFIRMING, "transaction reverted on chain",
                                  tx_hash=handle.tx_hash, block_number=receipt.block_number)
            else:
                block_number = receipt.block_number

        return self._record(user, repository, handle, decision.gas_cost, status, block_number)

    def _record(self, user: User, repository: SweepRepository, handle: TransactionHandle,
                gas_cost: Wei, status: SweepStatus, block_number: Optional[int]) -> SweepOutcome:
        # The user row is about to be expired by the commit or rollback.
        user_id, address = user.id, user.deposit_address
        self._enter(user, SweepState.RECORDING, tx_hash=handle.tx_hash)
        try:
            repository.record_sweep(
                user,
                amount=handle.value,
                gas_cost=gas_cost,
                tx_hash=handle.tx_hash,
                status=status,
                block_number=block_number,
                network=self.network,
            )
        except LedgerError as e:
            logger.error(
                "Transfer broadcast but ledger write failed; credit needs manual reconciliation",
                extra={"context": {"user_id": user_id, "tx_hash": handle.tx_hash,
                                   "amount_wei": handle.value, "reason": str(e)}},
            )
            return SweepOutcome(
                user_id=user_id,
                deposit_address=address,
                kind=OutcomeKind.FAILED,
                amount=handle.value,
                gas_cost=gas_cost,
                tx_hash=handle.tx_hash,
                reason=str(e),
                failed_in=SweepState.RECORDING,
            )

        logger.info(
            f"Sweep done: {AmountConverter.format_display_amount(handle.value)} to treasury",
            extra={"context": {"user_id": user_id, "deposit_address": address,
                               "state": SweepState.DONE.value, "tx_hash": handle.tx_hash,
                               "amount_wei": handle.value, "gas_cost_wei": gas_cost,
                               "status": status.value, "block_number": block_number}},
        )
        return SweepOutcome(
            user_id=user_id,
            deposit_address=address,
            kind=OutcomeKind.SWEPT,
            amount=handle.value,
            gas_cost=gas_cost,
            tx_hash=handle.tx_hash,
            status=status,
            block_number=block_number,
        )
