from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from uuid import UUID

from loguru import logger

from .config import Settings, get_settings
from .errors import (
    AlreadySettledError,
    InvalidStateTransitionError,
    LedgerServiceError,
    RecordNotFoundError,
    TransientLedgerError,
)
from .models import (
    CommissionRecord,
    CommissionSettlement,
    CommissionStatus,
    Purchase,
    ReasonCode,
    SweepResult,
    quantize_money,
)
from .service import BalanceLedger
from .storage import (
    COMMISSIONS,
    SETTLEMENTS,
    USERS,
    ConcurrencyConflict,
    DuplicateKeyError,
    InMemoryStorage,
)


class ReferralCommissionEngine:
    """Creates locked commissions at purchase confirmation and unlocks them
    once their per-level delay has passed."""

    def __init__(
        self,
        ledger: BalanceLedger,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.storage = storage or ledger.storage
        self.settings = settings or get_settings()

    def settle_for_purchase(
        self,
        purchase: Purchase,
        referral_chain: Optional[Sequence[UUID]] = None,
        now: Optional[datetime] = None,
    ) -> list[CommissionRecord]:
        """Create one locked commission per referrer level.

        `referral_chain` lists referrers from the direct one upwards; when it
        is omitted the chain is walked through the users' `referred_by`.
        Runs at most once per purchase.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        try:
            settlement = self.storage.insert(
                SETTLEMENTS, CommissionSettlement(id=purchase.id, settled_at=now)
            )
        except DuplicateKeyError:
            raise AlreadySettledError(
                f"Commissions for purchase {purchase.id} were already settled"
            )

        chain = self.resolve_chain(purchase.user_id, referral_chain)
        records = []
        for level, recipient_id in enumerate(chain, start=1):
            level_config = self.settings.commission_level(level)
            record = CommissionRecord(
                purchase_id=purchase.id,
                buyer_user_id=purchase.user_id,
                recipient_user_id=recipient_id,
                level=level,
                rate=level_config.rate,
                amount=quantize_money(purchase.principal * level_config.rate),
                currency=purchase.currency,
                unlock_at=now + timedelta(days=level_config.unlock_days),
                created_at=now,
            )
            records.append(self.storage.insert(COMMISSIONS, record))
            logger.info(
                f"Commission locked purchase={purchase.id} level={level} "
                f"recipient={recipient_id} amount={record.amount} "
                f"unlock_at={record.unlock_at.isoformat()}"
            )

        settlement.commission_ids = [r.id for r in records]
        self.storage.compare_and_set(SETTLEMENTS, settlement)

        if not records:
            logger.info(f"No referrers for purchase={purchase.id}; nothing to settle")
        return records

    def resolve_chain(
        self,
        buyer_id: UUID,
        referral_chain: Optional[Sequence[UUID]] = None,
    ) -> list[UUID]:
        """Referrers from level 1 upwards, bounded by the configured depth.

        Stops at the first gap, at the buyer, or at a user already seen.
        """
        max_depth = self.settings.max_referral_depth
        seen = {buyer_id}
        chain: list[UUID] = []

        if referral_chain is not None:
            candidates = iter(referral_chain)

            def next_referrer(_current: UUID) -> Optional[UUID]:
                return next(candidates, None)
        else:
            next_referrer = self._referrer_of

        current = buyer_id
        while len(chain) < max_depth:
            referrer = next_referrer(current)
            if referrer is None or referrer in seen:
                break
            chain.append(referrer)
            seen.add(referrer)
            current = referrer
        return chain

    def unlock_due(self, now: Optional[datetime] = None) -> SweepResult:
        if now is None:
            now = datetime.now(timezone.utc)

        result = SweepResult()
        due = self.storage.find(
            COMMISSIONS,
            lambda c: c.status == CommissionStatus.LOCKED and c.unlock_at <= now,
        )
        for record in sorted(due, key=lambda c: c.unlock_at):
            record.status = CommissionStatus.UNLOCKED
            record.unlocked_at = now
            try:
                record = self.storage.compare_and_set(COMMISSIONS, record)
            except ConcurrencyConflict:
                logger.debug(f"Commission {record.id} taken by another sweep")
                continue

            result.processed += 1
            try:
                entry = self.ledger.adjust(
                    record.recipient_user_id,
                    record.currency,
                    record.amount,
                    ReasonCode.REFERRAL_COMMISSION,
                    reference_id=record.id,
                    metadata={"purchase_id": str(record.purchase_id), "level": record.level},
                    now=now,
                )
            except LedgerServiceError as e:
                logger.error(f"Commission credit failed commission={record.id} error={e}")
                self._relock(record.id)
                result.failed += 1
                result.errors.append(f"{record.id}: {e}")
                continue

            self._attach_entry(record.id, entry.id)
            result.released += 1
            result.amount += record.amount
            logger.info(
                f"Commission unlocked commission={record.id} "
                f"recipient={record.recipient_user_id} amount={record.amount}"
            )

        logger.info(
            f"Commission sweep now={now.isoformat()} unlocked={result.released} "
            f"failed={result.failed} amount={result.amount}"
        )
        return result

    def cancel_for_purchase(
        self, purchase_id: UUID, now: Optional[datetime] = None
    ) -> list[CommissionRecord]:
        """Cancel the still-locked commissions of a reversed purchase."""
        if now is None:
            now = datetime.now(timezone.utc)

        cancelled = []
        for record in self.list_for_purchase(purchase_id):
            if record.status != CommissionStatus.LOCKED:
                continue
            record.status = CommissionStatus.CANCELLED
            record.cancelled_at = now
            try:
                cancelled.append(self.storage.compare_and_set(COMMISSIONS, record))
            except ConcurrencyConflict:
                logger.warning(
                    f"Commission {record.id} changed while cancelling; left as is"
                )
        logger.info(f"Commissions cancelled purchase={purchase_id} count={len(cancelled)}")
        return cancelled

    def mark_withdrawn(
        self, commission_id: UUID, now: Optional[datetime] = None
    ) -> CommissionRecord:
        if now is None:
            now = datetime.now(timezone.utc)

        record = self.get_commission(commission_id)
        if record.status != CommissionStatus.UNLOCKED:
            raise InvalidStateTransitionError(
                f"Cannot mark a {record.status.value} commission as withdrawn"
            )
        record.status = CommissionStatus.WITHDRAWN
        record.withdrawn_at = now
        try:
            return self.storage.compare_and_set(COMMISSIONS, record)
        except ConcurrencyConflict:
            raise TransientLedgerError(f"Commission {commission_id} changed; retry")

    def get_commission(self, commission_id: UUID) -> CommissionRecord:
        record = self.storage.get(COMMISSIONS, commission_id)
        if record is None:
            raise RecordNotFoundError(f"Commission {commission_id} not found")
        return record

    def list_for_user(self, user_id: UUID) -> list[CommissionRecord]:
        records = self.storage.find(COMMISSIONS, lambda c: c.recipient_user_id == user_id)
        return sorted(records, key=lambda c: c.created_at)

    def list_for_purchase(self, purchase_id: UUID) -> list[CommissionRecord]:
        records = self.storage.find(COMMISSIONS, lambda c: c.purchase_id == purchase_id)
        return sorted(records, key=lambda c: c.level)

    def _referrer_of(self, user_id: UUID) -> Optional[UUID]:
        user = self.storage.get(USERS, user_id)
        return user.referred_by if user is not None else None

    def _relock(self, commission_id: UUID) -> None:
        # The credit never happened, so the unlock is undone rather than lost.
        for _ in range(self.settings.cas_max_retries):
            record = self.get_commission(commission_id)
            if record.status != CommissionStatus.UNLOCKED or record.ledger_entry_id:
                return
            record.status = CommissionStatus.LOCKED
            record.unlocked_at = None
            try:
                self.storage.compare_and_set(COMMISSIONS, record)
                return
            except ConcurrencyConflict:
                continue
        logger.error(f"Could not relock commission {commission_id} after failed credit")

    def _attach_entry(self, commission_id: UUID, entry_id: UUID) -> None:
        for _ in range(self.settings.cas_max_retries):
            record = self.get_commission(commission_id)
            record.ledger_entry_id = entry_id
            try:
                self.storage.compare_and_set(COMMISSIONS, record)
                return
            except ConcurrencyConflict:
                continue
        logger.error(
            f"Commission {commission_id} credited by entry {entry_id} "
            f"but the entry id could not be recorded"
        )
