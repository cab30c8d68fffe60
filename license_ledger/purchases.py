from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence
from uuid import UUID

from loguru import logger
from pydantic import BaseModel

from .benefits import BenefitScheduleEngine
from .commissions import ReferralCommissionEngine
from .config import Settings, get_settings
from .errors import (
    AccountInactiveError,
    AlreadySettledError,
    InvalidStateTransitionError,
    RecordNotFoundError,
    ScheduleAlreadyExistsError,
    TransientLedgerError,
    ValidationError,
)
from .models import (
    BenefitSchedule,
    CommissionRecord,
    PackageConfig,
    Purchase,
    PurchaseStatus,
    ScheduleStatus,
)
from .service import BalanceLedger
from .storage import PURCHASES, USERS, ConcurrencyConflict, InMemoryStorage


ALLOWED_TRANSITIONS = {
    PurchaseStatus.PENDING_PAYMENT: {
        PurchaseStatus.CONFIRMING, PurchaseStatus.CONFIRMED,
        PurchaseStatus.REJECTED, PurchaseStatus.EXPIRED,
    },
    PurchaseStatus.CONFIRMING: {
        PurchaseStatus.CONFIRMED, PurchaseStatus.REJECTED, PurchaseStatus.EXPIRED,
    },
    PurchaseStatus.CONFIRMED: {PurchaseStatus.ACTIVE, PurchaseStatus.REJECTED},
    PurchaseStatus.ACTIVE: {PurchaseStatus.COMPLETED, PurchaseStatus.REJECTED},
    PurchaseStatus.COMPLETED: set(),
    PurchaseStatus.REJECTED: set(),
    PurchaseStatus.EXPIRED: set(),
}


class ConfirmationResult(BaseModel):
    purchase: Purchase
    schedule: BenefitSchedule
    commissions: list[CommissionRecord]


class PurchaseService:
    """Checkout lifecycle of a license purchase.

    Confirmation is the event the engines hang off: it records the
    investment, creates the benefit schedule and settles referral
    commissions before the purchase goes active.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        benefits: BenefitScheduleEngine,
        commissions: ReferralCommissionEngine,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.benefits = benefits
        self.commissions = commissions
        self.storage = storage or ledger.storage
        self.settings = settings or get_settings()

    def default_package(self, package_id: str = "DEFAULT") -> PackageConfig:
        return PackageConfig(
            package_id=package_id,
            daily_rate=self.settings.default_daily_rate,
            benefit_days=self.settings.default_benefit_days,
            pause_days=self.settings.default_pause_days,
            total_cycles=self.settings.default_total_cycles,
            cap_percent=self.settings.default_cap_percent,
        )

    def create_purchase(
        self,
        user_id: UUID,
        principal: Decimal,
        package: Optional[PackageConfig] = None,
        now: Optional[datetime] = None,
    ) -> Purchase:
        if now is None:
            now = datetime.now(timezone.utc)

        user = self.storage.get(USERS, user_id)
        if user is None:
            raise RecordNotFoundError(f"User {user_id} not found")
        if not user.is_active:
            raise AccountInactiveError(f"Account {user_id} is not active")
        if Decimal(principal) <= 0:
            raise ValidationError("Purchase principal must be positive")

        purchase = self.storage.insert(PURCHASES, Purchase(
            user_id=user_id,
            principal=Decimal(principal),
            currency=self.settings.currency,
            package=package or self.default_package(),
            created_at=now,
        ))
        logger.info(
            f"Purchase created purchase={purchase.id} user={user_id} "
            f"principal={purchase.principal} package={purchase.package.package_id}"
        )
        return purchase

    def get_purchase(self, purchase_id: UUID) -> Purchase:
        purchase = self.storage.get(PURCHASES, purchase_id)
        if purchase is None:
            raise RecordNotFoundError(f"Purchase {purchase_id} not found")
        return purchase

    def list_for_user(self, user_id: UUID) -> list[Purchase]:
        purchases = self.storage.find(PURCHASES, lambda p: p.user_id == user_id)
        return sorted(purchases, key=lambda p: p.created_at, reverse=True)

    def submit_payment(
        self, purchase_id: UUID, tx_hash: str, now: Optional[datetime] = None
    ) -> Purchase:
        if not tx_hash:
            raise ValidationError("Transaction hash is required")
        return self._transition(purchase_id, PurchaseStatus.CONFIRMING, now, tx_hash=tx_hash)

    def confirm(
        self,
        purchase_id: UUID,
        referral_chain: Optional[Sequence[UUID]] = None,
        now: Optional[datetime] = None,
    ) -> ConfirmationResult:
        """Confirm a paid purchase and run its side effects.

        A purchase left in CONFIRMED by an earlier failed attempt is resumed:
        the investment, schedule and commission steps each run at most once
        per purchase, so calling confirm again finishes the job.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        purchase = self.get_purchase(purchase_id)
        if purchase.status == PurchaseStatus.CONFIRMED:
            logger.warning(f"Resuming confirmation of purchase {purchase_id}")
        else:
            purchase = self._transition(purchase_id, PurchaseStatus.CONFIRMED, now)

        self.ledger.record_investment(
            purchase.user_id, purchase.currency, purchase.principal,
            reference_id=purchase.id, now=now,
        )
        try:
            schedule = self.benefits.create_for_purchase(purchase, now=now)
        except ScheduleAlreadyExistsError:
            schedule = self.benefits.get_schedule(purchase.id)
        try:
            commissions = self.commissions.settle_for_purchase(
                purchase, referral_chain=referral_chain, now=now
            )
        except AlreadySettledError:
            commissions = self.commissions.list_for_purchase(purchase.id)
        purchase = self._transition(purchase_id, PurchaseStatus.ACTIVE, now)

        logger.info(
            f"Purchase confirmed purchase={purchase.id} schedule={schedule.id} "
            f"commissions={len(commissions)}"
        )
        return ConfirmationResult(
            purchase=purchase, schedule=schedule, commissions=commissions
        )

    def reject(
        self, purchase_id: UUID, reason: str = "", now: Optional[datetime] = None
    ) -> Purchase:
        """Reject an unpaid purchase or reverse a confirmed one.

        Reversal cancels the benefit schedule and every still-locked
        commission. Benefits and commissions already credited stay on the
        ledger.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        purchase = self._transition(purchase_id, PurchaseStatus.REJECTED, now, reason=reason)
        if purchase.confirmed_at is not None:
            self._reverse_side_effects(purchase, now)
        return purchase

    def expire(self, purchase_id: UUID, now: Optional[datetime] = None) -> Purchase:
        return self._transition(purchase_id, PurchaseStatus.EXPIRED, now)

    def mark_completed(self, schedule: BenefitSchedule) -> Purchase:
        """Completion hook for the benefit engine."""
        purchase = self.get_purchase(schedule.purchase_id)
        if purchase.status != PurchaseStatus.ACTIVE:
            logger.warning(
                f"Schedule {schedule.id} completed but purchase {purchase.id} "
                f"is {purchase.status.value}; left as is"
            )
            return purchase
        return self._transition(
            schedule.purchase_id, PurchaseStatus.COMPLETED, schedule.completed_at
        )

    def _reverse_side_effects(self, purchase: Purchase, now: datetime) -> None:
        try:
            schedule = self.benefits.get_schedule(purchase.id)
        except RecordNotFoundError:
            schedule = None
        if schedule is not None and schedule.status in (
            ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED
        ):
            try:
                self.benefits.cancel(schedule.id)
            except InvalidStateTransitionError:
                logger.warning(
                    f"Schedule {schedule.id} finished while reversing purchase {purchase.id}"
                )

        cancelled = self.commissions.cancel_for_purchase(purchase.id, now=now)
        logger.info(
            f"Purchase reversed purchase={purchase.id} "
            f"schedule={'cancelled' if schedule is not None else 'none'} "
            f"commissions_cancelled={len(cancelled)}"
        )

    def _transition(
        self,
        purchase_id: UUID,
        target: PurchaseStatus,
        now: Optional[datetime],
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Purchase:
        if now is None:
            now = datetime.now(timezone.utc)

        for _ in range(self.settings.cas_max_retries):
            purchase = self.get_purchase(purchase_id)
            if target not in ALLOWED_TRANSITIONS[purchase.status]:
                raise InvalidStateTransitionError(
                    f"Cannot move purchase {purchase_id} from "
                    f"{purchase.status.value} to {target.value}"
                )
            previous = purchase.status
            purchase.status = target
            if tx_hash:
                purchase.tx_hash = tx_hash
            if target == PurchaseStatus.CONFIRMED:
                purchase.confirmed_at = now
            elif target == PurchaseStatus.COMPLETED:
                purchase.completed_at = now
            elif target in (PurchaseStatus.REJECTED, PurchaseStatus.EXPIRED):
                purchase.rejected_at = now
                purchase.rejection_reason = reason or None
            try:
                purchase = self.storage.compare_and_set(PURCHASES, purchase)
            except ConcurrencyConflict:
                continue
            logger.info(
                f"Purchase {purchase_id} {previous.value} -> {target.value}"
            )
            return purchase

        raise TransientLedgerError(f"Purchase {purchase_id} kept changing; retry")
