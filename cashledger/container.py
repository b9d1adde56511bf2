from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from .aml_monitor import AmlMonitor
from .clock import Clock, utcnow
from .config import Settings, get_settings
from .limits import OrganizationLimitValidator
from .notifications import NotificationService
from .qr import QrPaymentProtocol
from .scheduler import SweepScheduler
from .settlements import SettlementWorkflow
from .storage import InMemoryStorage
from .transactions import TransactionService
from .wallets import WalletStore


@dataclass
class CashLedger:
    """All services wired against one store, one clock and one settings object."""

    storage: InMemoryStorage
    settings: Settings
    clock: Clock
    wallets: WalletStore = field(init=False)
    limits: OrganizationLimitValidator = field(init=False)
    aml: AmlMonitor = field(init=False)
    transactions: TransactionService = field(init=False)
    qr: QrPaymentProtocol = field(init=False)
    notifications: NotificationService = field(init=False)
    settlements: SettlementWorkflow = field(init=False)
    scheduler: SweepScheduler = field(init=False)

    def __post_init__(self):
        self.wallets = WalletStore(self.storage, self.settings, self.clock)
        self.limits = OrganizationLimitValidator(self.storage, self.settings, self.clock)
        self.aml = AmlMonitor(self.storage, self.settings, self.clock)
        self.transactions = TransactionService(
            self.storage, self.wallets, self.limits, self.aml, self.settings, self.clock,
        )
        self.qr = QrPaymentProtocol(self.storage, self.settings, self.clock)
        self.notifications = NotificationService(self.storage, self.settings.currency, self.clock)
        self.settlements = SettlementWorkflow(
            self.storage, self.wallets, self.notifications, self.settings, self.clock,
        )
        self.scheduler = SweepScheduler(self.wallets, self.transactions, self.qr, self.settings)


def build_ledger(
    storage: Optional[InMemoryStorage] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> CashLedger:
    return CashLedger(
        storage=storage if storage is not None else InMemoryStorage(seed=True),
        settings=settings or get_settings(),
        clock=clock or utcnow,
    )


@lru_cache()
def get_container() -> CashLedger:
    return build_ledger()
