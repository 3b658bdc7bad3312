#!/usr/bin/env python3
"""
Crypto Reserve Scheduler
Runs the deposit sweep on a fixed cadence and on operator request.

Runs are single-flight: a run that would overlap one already in progress
is refused rather than queued. Users are processed one at a time with a
pause between them to stay under node rate limits, and stop() ends a run
between two users, never in the middle of one. A transfer already
broadcast when stop() arrives skips the rest of its confirmation wait
and is recorded as pending.
"""

import threading
import time
import datetime
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import schedule
from sqlalchemy.orm import Session

from shared.crypto.clients.evm_client import ChainClient
from shared.crypto.key_vault import KeyVault
from shared.currency_precision import AmountConverter, Wei
from shared.logger import setup_logging
from shared.sweep_config import SweepSettings
from wallet.crypto_sweeper_service import OutcomeKind, SweepExecutor, SweepOutcome
from wallet.sweep_repository import SweepRepository

logger = setup_logging(__name__)


@dataclass
class SweepRunSummary:
    trigger: str
    started_at: datetime.datetime
    swept: List[SweepOutcome] = field(default_factory=list)
    skipped: List[SweepOutcome] = field(default_factory=list)
    failed: List[SweepOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0
    cancelled: bool = False

    def add(self, outcome: SweepOutcome):
        if outcome.kind is OutcomeKind.SWEPT:
            self.swept.append(outcome)
        elif outcome.kind is OutcomeKind.SKIPPED:
            self.skipped.append(outcome)
        else:
            self.failed.append(outcome)

    @property
    def total_swept_wei(self) -> Wei:
        return sum(o.amount for o in self.swept)

    def to_dict(self):
        return {
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "cancelled": self.cancelled,
            "counts": {
                "swept": len(self.swept),
                "skipped": len(self.skipped),
                "failed": len(self.failed),
            },
            "total_swept_wei": str(self.total_swept_wei),
            "total_swept": str(AmountConverter.from_smallest_units(self.total_swept_wei)),
            "swept": [o.to_dict() for o in self.swept],
            "skipped": [o.to_dict() for o in self.skipped],
            "failed": [o.to_dict() for o in self.failed],
        }


class SweepScheduler:
    """Scheduler for deposit sweeps"""

    def __init__(self, executor: Optional[SweepExecutor], session_factory: Callable[[], Session],
                 interval_minutes: int = 3, user_delay_seconds: float = 1.0):
        self.executor = executor
        self.session_factory = session_factory
        self.interval_minutes = interval_minutes
        self.user_delay_seconds = user_delay_seconds
        self.last_summary: Optional[SweepRunSummary] = None
        self._run_lock = threading.Lock()
        self._run_thread: Optional[threading.Thread] = None
        # Set by stop(); driver-started runs watch it directly.
        self._shutdown = threading.Event()
        # Cancel flag of the current or most recent run.
        self._cancel = threading.Event()
        self._jobs = schedule.Scheduler()
        self.scheduler_thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.executor is not None

    @property
    def running(self) -> bool:
        return self.scheduler_thread is not None and self.scheduler_thread.is_alive()

    def is_sweeping(self) -> bool:
        return self._run_lock.locked()

    def run_once(self, trigger: str = "scheduled",
                 cancel: Optional[threading.Event] = None) -> Optional[SweepRunSummary]:
        """Run one sweep over every wallet-provisioned user.

        Returns None when sweeping is disabled or another run holds the lock.
        Each run gets its own cancel flag unless one is passed in, so a past
        stop() never cancels a later manual run.
        """
        if not self.enabled:
            logger.warning("Sweep requested but sweeping is disabled by configuration",
                           extra={"context": {"trigger": trigger}})
            return None
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Sweep run already in progress, refusing overlapping run",
                           extra={"context": {"trigger": trigger}})
            return None
        try:
            self._cancel = cancel or threading.Event()
            self._run_thread = threading.current_thread()
            return self._run(trigger, self._cancel)
        finally:
            self._run_thread = None
            self._run_lock.release()

    def trigger_manual(self) -> Optional[SweepRunSummary]:
        return self.run_once(trigger="manual")

    def _run(self, trigger: str, cancel: threading.Event) -> SweepRunSummary:
        summary = SweepRunSummary(trigger=trigger, started_at=datetime.datetime.utcnow())
        started = time.monotonic()
        session = self.session_factory()
        try:
            repository = SweepRepository(session)
            users = repository.load_sweepable_users()
            logger.info(f"Sweep cycle starting, {len(users)} users to check",
                        extra={"context": {"trigger": trigger, "users": len(users)}})

            for index, user in enumerate(users):
                if cancel.is_set():
                    summary.cancelled = True
                    break
                if index > 0 and self.user_delay_seconds > 0:
                    if cancel.wait(self.user_delay_seconds):
                        summary.cancelled = True
                        break
                summary.add(self.executor.sweep_user(user, repository, stop_event=cancel))
        finally:
            session.close()

        summary.duration_seconds = time.monotonic() - started
        self.last_summary = summary
        logger.info(
            f"Sweep cycle complete in {summary.duration_seconds:.1f}s: "
            f"{len(summary.swept)} swept, {len(summary.skipped)} skipped, {len(summary.failed)} failed",
            extra={"context": {
                "trigger": trigger,
                "swept": len(summary.swept),
                "skipped": len(summary.skipped),
                "failed": len(summary.failed),
                "total_swept_wei": summary.total_swept_wei,
                "cancelled": summary.cancelled,
            }},
        )
        return summary

    def _scheduled_run(self, trigger: str = "scheduled"):
        if self._shutdown.is_set():
            return
        try:
            self.run_once(trigger=trigger, cancel=self._shutdown)
        except Exception:
            # Loading users can still fail (database down); keep the driver alive.
            logger.exception("Scheduled sweep run failed")

    def start(self, run_immediately: bool = False):
        """Start the background scheduler.

        With run_immediately the driver thread sweeps once right away,
        tagged "startup", before settling into the interval.
        """
        if not self.enabled:
            logger.warning("Sweep scheduler not started: sweeping is disabled by configuration")
            return
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self._shutdown.clear()
        self._jobs.clear()
        self._jobs.every(self.interval_minutes).minutes.do(self._scheduled_run)
        self.scheduler_thread = threading.Thread(
            target=self._run_scheduler, args=(run_immediately,), name="sweep-scheduler", daemon=True
        )
        self.scheduler_thread.start()
        logger.info(f"Sweep scheduler started, running every {self.interval_minutes} minutes")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop the scheduler and cancel any run in progress.

        The run ends after its current user, which cuts a confirmation wait
        short and records the transfer as pending. Blocks until that run has
        released the run lock, for at most timeout seconds when given.
        Returns False if a run was still in progress when the wait ended.
        """
        self._shutdown.set()
        self._cancel.set()
        current = threading.current_thread()
        if self.scheduler_thread and self.scheduler_thread is not current:
            self.scheduler_thread.join(timeout=timeout)
            if not self.scheduler_thread.is_alive():
                self.scheduler_thread = None
        self._jobs.clear()

        idle = True
        if self._run_thread is not current:
            idle = self._run_lock.acquire(timeout=-1 if timeout is None else timeout)
            if idle:
                self._run_lock.release()
        if idle:
            logger.info("Sweep scheduler stopped")
        else:
            logger.error("Sweep scheduler stop timed out with a run still in progress",
                         extra={"context": {"timeout": timeout}})
        return idle

    def _run_scheduler(self, run_immediately: bool = False):
        if run_immediately:
            self._scheduled_run(trigger="startup")
        while not self._shutdown.is_set():
            self._jobs.run_pending()
            self._shutdown.wait(1)


def build_scheduler(settings: Optional[SweepSettings] = None,
                    session_factory: Optional[Callable[[], Session]] = None,
                    vault: Optional[KeyVault] = None,
                    chain: Optional[ChainClient] = None) -> SweepScheduler:
    """Wire the sweep components from settings.

    Missing node URL or treasury address yields a scheduler that logs and
    does nothing instead of failing the host process.
    """
    settings = settings or SweepSettings.from_env()
    if session_factory is None:
        from db.connection import get_session
        session_factory = get_session

    executor = None
    if settings.sweeping_enabled():
        vault = vault or KeyVault(settings.encryption_key)
        chain = chain or ChainClient(settings.chain_config())
        executor = SweepExecutor(
            vault=vault,
            chain=chain,
            treasury_address=settings.treasury_address,
            network=settings.network,
            confirmation_timeout=settings.confirmation_timeout,
        )
    return SweepScheduler(
        executor,
        session_factory,
        interval_minutes=settings.interval_minutes,
        user_delay_seconds=settings.user_delay_seconds,
    )


def main():
    """Run the sweep scheduler as a standalone worker"""
    logger.info("Sweep scheduler worker starting")
    from db.connection import init_db
    init_db()

    scheduler = build_scheduler()
    if not scheduler.enabled:
        return
    # Sweeps only ever run on the driver thread, so an interrupt here never lands mid-sweep.
    scheduler.start(run_immediately=True)
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    finally:
        scheduler.stop()
        logger.info("Sweep scheduler worker stopped")


if __name__ == "__main__":
    main()
