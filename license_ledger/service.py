from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from loguru import logger

from .config import Settings, get_settings
from .errors import (
    InsufficientFundsError,
    LedgerServiceError,
    PendingWithdrawalExistsError,
    ReservationNotHeldError,
    TransientLedgerError,
    ValidationError,
)
from .models import (
    ZERO,
    BalanceSnapshot,
    IntegrityReport,
    InvestmentRecord,
    LedgerEntry,
    LedgerHistoryResponse,
    ReasonCode,
    UserBalance,
    quantize_money,
)
from .storage import (
    BALANCES,
    INVESTMENTS,
    LEDGER_ENTRIES,
    ConcurrencyConflict,
    DuplicateKeyError,
    InMemoryStorage,
)


CREDIT_REASONS = frozenset({
    ReasonCode.DAILY_BENEFIT,
    ReasonCode.REFERRAL_COMMISSION,
})

# Mutator contract: takes the freshly read snapshot, mutates it in place and
# returns (applied available delta, extra entry metadata).
Mutator = Callable[[BalanceSnapshot], tuple[Decimal, dict]]


class BalanceLedger:
    """Single source of truth for per-user balances.

    Every change goes through one compare-and-set on the user's balance
    document and appends an immutable ledger entry carrying the balance
    after the change.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def adjust(
        self,
        user_id: UUID,
        currency: str,
        delta: Decimal,
        reason: ReasonCode,
        *,
        reference_id: Optional[UUID] = None,
        metadata: Optional[dict] = None,
        must_succeed: bool = False,
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Apply a signed delta to the available balance.

        Debits that would take available below zero raise
        InsufficientFundsError, unless `must_succeed` is set (reconciliation
        path) in which case available is floored at zero and the shortfall is
        recorded on the entry.
        """
        delta = quantize_money(delta)
        if delta == ZERO:
            raise ValidationError("Adjustment delta must be non-zero")

        def mutate(balance: BalanceSnapshot) -> tuple[Decimal, dict]:
            extra: dict = {}
            applied = delta
            new_available = balance.available + delta
            if new_available < ZERO:
                if not must_succeed:
                    raise InsufficientFundsError(
                        f"Available {balance.available} cannot cover {-delta} "
                        f"for user {user_id}"
                    )
                extra["shortfall"] = str(-new_available)
                applied = -balance.available
                new_available = ZERO

            if reason == ReasonCode.WITHDRAWAL_RESERVED:
                if delta > ZERO:
                    raise ValidationError("A reservation must be a debit")
                if balance.active_withdrawal_id not in (None, reference_id):
                    raise PendingWithdrawalExistsError(
                        f"User {user_id} already has withdrawal "
                        f"{balance.active_withdrawal_id} in flight"
                    )
                balance.reserved += -applied
                balance.active_withdrawal_id = reference_id
            elif reason == ReasonCode.WITHDRAWAL_RELEASED:
                if delta < ZERO:
                    raise ValidationError("A reservation release must be a credit")
                _require_hold(balance, reference_id)
                balance.reserved = max(ZERO, balance.reserved - delta)
                balance.active_withdrawal_id = None
            elif reason in CREDIT_REASONS:
                if delta < ZERO:
                    raise ValidationError(f"{reason.value} must be a credit")
                balance.total_earned += delta

            balance.available = new_available
            return applied, extra

        return self._commit(
            user_id, currency, reason, mutate,
            reference_id=reference_id, metadata=metadata, now=now,
        )

    def consume_reservation(
        self,
        user_id: UUID,
        currency: str,
        amount: Decimal,
        *,
        reference_id: UUID,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Turn a reservation into a completed withdrawal.

        Available is untouched (the funds left it at reservation time); the
        reserved amount moves into total_withdrawn and the in-flight hold is
        cleared.
        """
        amount = quantize_money(amount)

        def mutate(balance: BalanceSnapshot) -> tuple[Decimal, dict]:
            _require_hold(balance, reference_id)
            balance.reserved = max(ZERO, balance.reserved - amount)
            balance.total_withdrawn += amount
            balance.active_withdrawal_id = None
            return ZERO, {"consumed": str(amount)}

        return self._commit(
            user_id, currency, ReasonCode.WITHDRAWAL_COMPLETED, mutate,
            reference_id=reference_id, metadata=metadata, now=now,
        )

    def record_investment(
        self,
        user_id: UUID,
        currency: str,
        amount: Decimal,
        *,
        reference_id: UUID,
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Track a confirmed purchase; the principal is paid on-chain, not
        from available.

        Recorded at most once per purchase (`reference_id`): a repeated call
        returns the entry of the first one.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        amount = quantize_money(amount)

        try:
            self.storage.insert(INVESTMENTS, InvestmentRecord(
                id=reference_id, user_id=user_id, amount=amount, recorded_at=now,
            ))
        except DuplicateKeyError:
            recorded = self.storage.find(
                LEDGER_ENTRIES,
                lambda e: e.reference_id == reference_id
                and e.reason == ReasonCode.PURCHASE,
            )
            if recorded:
                return recorded[0]
            raise TransientLedgerError(
                f"Investment of purchase {reference_id} is being recorded; retry"
            )

        def mutate(balance: BalanceSnapshot) -> tuple[Decimal, dict]:
            balance.total_invested += amount
            return ZERO, {"invested": str(amount)}

        try:
            entry = self._commit(
                user_id, currency, ReasonCode.PURCHASE, mutate,
                reference_id=reference_id, now=now,
            )
        except LedgerServiceError:
            self.storage.delete(INVESTMENTS, reference_id)
            raise

        record = self.storage.get(INVESTMENTS, reference_id)
        record.ledger_entry_id = entry.id
        self.storage.compare_and_set(INVESTMENTS, record)
        return entry

    def _commit(
        self,
        user_id: UUID,
        currency: str,
        reason: ReasonCode,
        mutate: Mutator,
        *,
        reference_id: Optional[UUID] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        if now is None:
            now = datetime.now(timezone.utc)

        for attempt in range(1, self.settings.cas_max_retries + 1):
            balance = self._load_or_create(user_id, currency)
            balance_before = balance.available
            applied, extra = mutate(balance)
            balance.updated_at = now

            try:
                self.storage.compare_and_set(BALANCES, balance)
            except ConcurrencyConflict:
                logger.warning(
                    f"Balance conflict user={user_id} reason={reason.value} "
                    f"attempt={attempt}/{self.settings.cas_max_retries}"
                )
                continue

            entry = LedgerEntry(
                user_id=user_id,
                currency=currency,
                delta=applied,
                reason=reason,
                balance_before=balance_before,
                balance_after=balance.available,
                reference_id=reference_id,
                created_at=now,
                metadata={**(metadata or {}), **extra},
            )
            entry = self.storage.insert(LEDGER_ENTRIES, entry)
            logger.info(
                f"Ledger adjust user={user_id} reason={reason.value} "
                f"delta={applied} available={balance.available} "
                f"reference={reference_id}"
            )
            return entry

        logger.error(
            f"Balance update gave up user={user_id} reason={reason.value} "
            f"after {self.settings.cas_max_retries} attempts"
        )
        raise TransientLedgerError(
            f"Balance for user {user_id} kept changing; retry later"
        )

    def _load_or_create(self, user_id: UUID, currency: str) -> BalanceSnapshot:
        key = BalanceSnapshot.key(user_id, currency)
        balance = self.storage.get(BALANCES, key)
        if balance is not None:
            return balance
        try:
            return self.storage.insert(
                BALANCES,
                BalanceSnapshot(id=key, user_id=user_id, currency=currency),
            )
        except DuplicateKeyError:
            return self.storage.get(BALANCES, key)

    def get_snapshot(self, user_id: UUID, currency: str) -> BalanceSnapshot:
        balance = self.storage.get(BALANCES, BalanceSnapshot.key(user_id, currency))
        return balance or BalanceSnapshot(
            id=BalanceSnapshot.key(user_id, currency),
            user_id=user_id,
            currency=currency,
        )

    def get_balance(self, user_id: UUID, currency: str = "USDT") -> UserBalance:
        balance = self.get_snapshot(user_id, currency)
        entries = self._entries_for(user_id, currency)
        last_entry = max(entries, key=lambda e: e.created_at) if entries else None

        return UserBalance(
            user_id=user_id,
            currency=currency,
            available=balance.available,
            reserved=balance.reserved,
            total_invested=balance.total_invested,
            total_earned=balance.total_earned,
            total_withdrawn=balance.total_withdrawn,
            has_active_withdrawal=balance.active_withdrawal_id is not None,
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def get_history(
        self,
        user_id: UUID,
        currency: str = "USDT",
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        all_entries = self._entries_for(user_id, currency)
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=self.get_snapshot(user_id, currency).available,
        )

    def verify_integrity(self, user_id: UUID, currency: str = "USDT") -> IntegrityReport:
        """Compare the balance document against the sum of its entries."""
        available = self.get_snapshot(user_id, currency).available
        ledger_sum = sum((e.delta for e in self._entries_for(user_id, currency)), ZERO)
        consistent = ledger_sum == available
        if not consistent:
            logger.error(
                f"Ledger integrity mismatch user={user_id} currency={currency} "
                f"available={available} ledger_sum={ledger_sum}"
            )
        return IntegrityReport(
            user_id=user_id,
            currency=currency,
            available=available,
            ledger_sum=ledger_sum,
            consistent=consistent,
        )

    def _entries_for(self, user_id: UUID, currency: str) -> list[LedgerEntry]:
        return self.storage.find(
            LEDGER_ENTRIES,
            lambda e: e.user_id == user_id and e.currency == currency,
        )


def _require_hold(balance: BalanceSnapshot, reference_id: Optional[UUID]) -> None:
    # Release and consume clear the hold in the same write, so a second
    # settlement of one reservation finds no hold and is refused.
    if reference_id is None or balance.active_withdrawal_id != reference_id:
        raise ReservationNotHeldError(
            f"No reservation held for {reference_id} on user {balance.user_id}"
        )
