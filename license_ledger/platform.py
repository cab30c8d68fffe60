from typing import Optional

from .benefits import BenefitScheduleEngine
from .commissions import ReferralCommissionEngine
from .config import Settings, get_settings
from .notifications import NotificationHub
from .otp import OtpGate
from .purchases import PurchaseService
from .service import BalanceLedger
from .storage import InMemoryStorage
from .withdrawals import WithdrawalEngine


class LedgerPlatform:
    """Wires every engine onto one shared store.

    Usage:
        platform = LedgerPlatform()
        result = platform.purchases.confirm(purchase.id)
        platform.benefits.release_due()
        platform.commissions.unlock_due()
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationHub] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.notifications = notifications or NotificationHub()

        self.ledger = BalanceLedger(self.storage, self.settings)
        self.otp = OtpGate(self.storage, self.settings)
        self.benefits = BenefitScheduleEngine(self.ledger, self.storage, self.settings)
        self.commissions = ReferralCommissionEngine(self.ledger, self.storage, self.settings)
        self.withdrawals = WithdrawalEngine(
            self.ledger, self.otp, self.storage, self.settings, self.notifications
        )
        self.purchases = PurchaseService(
            self.ledger, self.benefits, self.commissions, self.storage, self.settings
        )
        self.benefits.on_completed = self.purchases.mark_completed
