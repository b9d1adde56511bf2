"""Background sweeps: daily wallet resets and pending-transaction expiry."""

import logging
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Settings, get_settings
from .qr import QrPaymentProtocol
from .transactions import TransactionService
from .wallets import WalletStore

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs the two independent sweeps on a background thread pool.

    Each pass is exposed as a plain method too, so tests and one-off admin
    commands can drive a sweep synchronously without starting the scheduler.
    """

    def __init__(
        self,
        wallets: WalletStore,
        transactions: TransactionService,
        qr: QrPaymentProtocol,
        settings: Optional[Settings] = None,
    ):
        self.wallets = wallets
        self.transactions = transactions
        self.qr = qr
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(2)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30},
            timezone="UTC",
        )

    def setup_jobs(self):
        config = self.settings.scheduler
        self.scheduler.add_job(
            self.run_wallet_reset_pass,
            trigger=IntervalTrigger(seconds=config.wallet_reset_interval_seconds),
            id="wallet_daily_reset",
            name="Reset Daily Wallet Counters",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_expiry_pass,
            trigger=IntervalTrigger(seconds=config.expiry_sweep_interval_seconds),
            id="transaction_expiry",
            name="Expire Pending Transactions",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def start(self):
        if not self.settings.scheduler.enabled:
            logger.info("Sweep scheduler disabled by configuration")
            return
        if self.scheduler.running:
            return
        self.setup_jobs()
        self.scheduler.start()
        logger.info(
            "Sweep scheduler started (wallet reset every %ss, expiry every %ss)",
            self.settings.scheduler.wallet_reset_interval_seconds,
            self.settings.scheduler.expiry_sweep_interval_seconds,
        )

    def shutdown(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Sweep scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def run_wallet_reset_pass(self) -> int:
        try:
            return self.wallets.reset_all_wallets()
        except Exception:
            logger.exception("Wallet reset sweep failed")
            return 0

    def run_expiry_pass(self) -> dict:
        result = {"transactions_expired": 0, "qr_codes_expunged": 0}
        try:
            result["transactions_expired"] = self.transactions.mark_expired_transactions()
        except Exception:
            logger.exception("Transaction expiry sweep failed")
        try:
            result["qr_codes_expunged"] = self.qr.expunge_expired()
        except Exception:
            logger.exception("QR code expunge failed")
        return result
