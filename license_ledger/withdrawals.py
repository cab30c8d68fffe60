"""
Withdrawal engine.

State machine:
    PENDING -> APPROVED -> PROCESSING -> COMPLETED
    PENDING | APPROVED | PROCESSING -> REJECTED

Requesting a withdrawal reserves the amount on the ledger (available ->
reserved) and sets the user's in-flight hold in the same write; completing
consumes the reservation, rejecting releases it back to available. The
transfer itself happens outside the ledger, which only records intent and
status.
"""

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger
from pydantic import BaseModel

from .config import Settings, get_settings
from .errors import (
    AccountInactiveError,
    InsufficientBalanceError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidStateTransitionError,
    LedgerServiceError,
    OtpVerificationError,
    PendingWithdrawalExistsError,
    RecordNotFoundError,
    ReservationNotHeldError,
    TransientLedgerError,
    ValidationError,
)
from .models import (
    ACTIVE_WITHDRAWAL_STATUSES,
    ZERO,
    OtpPurpose,
    ReasonCode,
    SweepResult,
    WithdrawalOutcome,
    WithdrawalRequest,
    WithdrawalStatus,
    quantize_money,
)
from .notifications import NotificationHub
from .otp import OtpGate
from .service import BalanceLedger
from .storage import (
    BALANCES,
    LEDGER_ENTRIES,
    USERS,
    WITHDRAWALS,
    ConcurrencyConflict,
    InMemoryStorage,
)


BEP20_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_valid_address(address: str, network: str = "BEP20") -> bool:
    if network == "BEP20":
        return bool(BEP20_ADDRESS.fullmatch(address or ""))
    return False


class FinalizeDetail(BaseModel):
    tx_hash: Optional[str] = None
    actual_fee: Optional[Decimal] = None
    reason: Optional[str] = None


class WithdrawalEngine:
    def __init__(
        self,
        ledger: BalanceLedger,
        otp: OtpGate,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationHub] = None,
    ):
        self.ledger = ledger
        self.otp = otp
        self.storage = storage or ledger.storage
        self.settings = settings or get_settings()
        self.notifications = notifications or NotificationHub()

    def request_withdrawal(
        self,
        user_id: UUID,
        amount: Decimal,
        address: str,
        pin: str,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        if now is None:
            now = datetime.now(timezone.utc)
        currency = self.settings.currency
        amount = Decimal(amount)

        user = self.storage.get(USERS, user_id)
        if user is None:
            raise RecordNotFoundError(f"User {user_id} not found")
        if not user.is_active:
            raise AccountInactiveError(f"Account {user_id} is not active")

        self._validate_amount(amount)
        if not is_valid_address(address, self.settings.network):
            raise InvalidAddressError(
                "Invalid BEP20 address format. Must be 0x followed by 40 "
                "hexadecimal characters"
            )

        balance = self.ledger.get_snapshot(user_id, currency)
        if balance.active_withdrawal_id is not None or self._has_active_request(user_id):
            raise PendingWithdrawalExistsError(
                f"User {user_id} already has a withdrawal in progress"
            )
        if amount > balance.available:
            raise InsufficientBalanceError(
                f"Requested {amount} exceeds available {balance.available}"
            )

        verification = self.otp.verify(user_id, pin, OtpPurpose.WITHDRAWAL, now=now)
        if not verification.valid:
            raise OtpVerificationError(verification.reason)

        withdrawal_id = uuid4()
        try:
            reservation = self.ledger.adjust(
                user_id,
                currency,
                -amount,
                ReasonCode.WITHDRAWAL_RESERVED,
                reference_id=withdrawal_id,
                metadata={"address": address},
                now=now,
            )
        except InsufficientFundsError as e:
            raise InsufficientBalanceError(str(e))

        try:
            withdrawal = self._create_request(
                WithdrawalRequest(
                    id=withdrawal_id,
                    user_id=user_id,
                    amount=quantize_money(amount),
                    currency=currency,
                    network=self.settings.network,
                    destination_address=address,
                    balance_before=reservation.balance_before,
                    network_fee=self.settings.withdrawal_network_fee,
                    requested_at=now,
                )
            )
        except Exception as record_error:
            logger.exception(
                f"Withdrawal record creation failed; releasing reservation "
                f"withdrawal={withdrawal_id} user={user_id} amount={amount}"
            )
            self._release_unrecorded(
                user_id, currency, amount, withdrawal_id, record_error, now
            )
            raise

        logger.info(
            f"Withdrawal requested withdrawal={withdrawal.id} user={user_id} "
            f"amount={withdrawal.amount} balance_before={withdrawal.balance_before}"
        )
        self.notifications.withdrawal_state_changed(withdrawal, None, now)
        return withdrawal

    def approve(self, withdrawal_id: UUID, now: Optional[datetime] = None) -> WithdrawalRequest:
        return self._advance(
            withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED, now
        )

    def mark_processing(
        self,
        withdrawal_id: UUID,
        tx_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        return self._advance(
            withdrawal_id,
            WithdrawalStatus.APPROVED,
            WithdrawalStatus.PROCESSING,
            now,
            tx_hash=tx_hash,
        )

    def finalize(
        self,
        withdrawal_id: UUID,
        outcome: WithdrawalOutcome,
        detail: Optional[FinalizeDetail] = None,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        """Move a request to a terminal state and settle its reservation.

        COMPLETED consumes the reservation; REJECTED returns it to available.
        Finalizing an already terminal request raises
        InvalidStateTransitionError.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        detail = detail or FinalizeDetail()
        target = WithdrawalStatus(outcome.value)

        for _ in range(self.settings.cas_max_retries):
            withdrawal = self.get_withdrawal(withdrawal_id)
            if withdrawal.is_terminal():
                raise InvalidStateTransitionError(
                    f"Withdrawal {withdrawal_id} is already {withdrawal.status.value}"
                )
            previous = withdrawal.status
            withdrawal.status = target
            if detail.tx_hash:
                withdrawal.tx_hash = detail.tx_hash
            if target == WithdrawalStatus.COMPLETED:
                withdrawal.completed_at = now
                withdrawal.actual_fee = detail.actual_fee
            else:
                withdrawal.rejected_at = now
                withdrawal.error_message = detail.reason
            try:
                withdrawal = self.storage.compare_and_set(WITHDRAWALS, withdrawal)
            except ConcurrencyConflict:
                continue
            break
        else:
            raise TransientLedgerError(f"Withdrawal {withdrawal_id} kept changing; retry")

        logger.info(
            f"Withdrawal finalized withdrawal={withdrawal_id} "
            f"{previous.value} -> {target.value}"
        )
        withdrawal = self._settle_reservation(withdrawal, now)
        self.notifications.withdrawal_state_changed(withdrawal, previous, now)
        return withdrawal

    def settle_reservations(self, now: Optional[datetime] = None) -> SweepResult:
        """Settle terminal requests whose reservation settlement did not
        complete, then release holds that never got a withdrawal record.

        A hold without a record is only released once its reservation entry
        is older than `orphan_reservation_grace_seconds`, so a request still
        being created is left alone.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        result = SweepResult()
        self._release_orphaned_holds(result, now)
        unsettled = self.storage.find(
            WITHDRAWALS, lambda w: w.is_terminal() and not w.reservation_settled
        )
        for withdrawal in unsettled:
            result.processed += 1
            try:
                self._settle_reservation(withdrawal, now)
            except TransientLedgerError as e:
                logger.error(f"Reservation settlement failed withdrawal={withdrawal.id}")
                result.failed += 1
                result.errors.append(f"{withdrawal.id}: {e}")
                continue
            result.released += 1
            result.amount += withdrawal.amount
        if result.processed:
            logger.info(
                f"Reservation sweep settled={result.released} failed={result.failed}"
            )
        return result

    def get_withdrawal(self, withdrawal_id: UUID) -> WithdrawalRequest:
        withdrawal = self.storage.get(WITHDRAWALS, withdrawal_id)
        if withdrawal is None:
            raise RecordNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def list_for_user(self, user_id: UUID) -> list[WithdrawalRequest]:
        withdrawals = self.storage.find(WITHDRAWALS, lambda w: w.user_id == user_id)
        return sorted(withdrawals, key=lambda w: w.requested_at, reverse=True)

    def _create_request(self, withdrawal: WithdrawalRequest) -> WithdrawalRequest:
        return self.storage.insert(WITHDRAWALS, withdrawal)

    def _release_unrecorded(
        self,
        user_id: UUID,
        currency: str,
        amount: Decimal,
        withdrawal_id: UUID,
        record_error: Exception,
        now: datetime,
    ) -> None:
        """Give back a reservation whose withdrawal record was never written.

        Never raises: the caller re-raises the record error. A hold that
        cannot be released here is picked up by `settle_reservations`.
        """
        release_error: Optional[Exception] = None
        for _ in range(self.settings.cas_max_retries):
            try:
                self.ledger.adjust(
                    user_id,
                    currency,
                    amount,
                    ReasonCode.WITHDRAWAL_RELEASED,
                    reference_id=withdrawal_id,
                    metadata={"compensation": "record_creation_failed"},
                    must_succeed=True,
                    now=now,
                )
                return
            except ReservationNotHeldError:
                return
            except LedgerServiceError as e:
                release_error = e

        logger.error(
            f"Reservation left held withdrawal={withdrawal_id} user={user_id} "
            f"amount={amount} record_error={record_error!r} "
            f"release_error={release_error!r}"
        )

    def _release_orphaned_holds(self, result: SweepResult, now: datetime) -> None:
        grace = timedelta(seconds=self.settings.orphan_reservation_grace_seconds)
        held = self.storage.find(BALANCES, lambda b: b.active_withdrawal_id is not None)
        for balance in held:
            hold = balance.active_withdrawal_id
            if self.storage.get(WITHDRAWALS, hold) is not None:
                continue
            reservations = self.storage.find(
                LEDGER_ENTRIES,
                lambda e: e.reference_id == hold
                and e.reason == ReasonCode.WITHDRAWAL_RESERVED,
            )
            if not reservations or reservations[0].created_at + grace > now:
                continue

            amount = -reservations[0].delta
            result.processed += 1
            try:
                self.ledger.adjust(
                    balance.user_id,
                    balance.currency,
                    amount,
                    ReasonCode.WITHDRAWAL_RELEASED,
                    reference_id=hold,
                    metadata={"compensation": "orphaned_hold"},
                    must_succeed=True,
                    now=now,
                )
            except ReservationNotHeldError:
                result.skipped += 1
                continue
            except TransientLedgerError as e:
                logger.error(f"Orphaned hold release failed withdrawal={hold}")
                result.failed += 1
                result.errors.append(f"{hold}: {e}")
                continue
            logger.warning(
                f"Released orphaned hold withdrawal={hold} user={balance.user_id} "
                f"amount={amount}"
            )
            result.released += 1
            result.amount += amount

    def _validate_amount(self, amount: Decimal) -> None:
        if amount <= ZERO:
            raise ValidationError("Withdrawal amount must be positive")
        if quantize_money(amount) != amount:
            raise ValidationError("Withdrawal amount supports at most 2 decimals")
        if amount < self.settings.min_withdrawal:
            raise ValidationError(
                f"Minimum withdrawal is {self.settings.min_withdrawal} {self.settings.currency}"
            )
        if self.settings.max_withdrawal is not None and amount > self.settings.max_withdrawal:
            raise ValidationError(
                f"Maximum withdrawal is {self.settings.max_withdrawal} {self.settings.currency}"
            )

    def _has_active_request(self, user_id: UUID) -> bool:
        return bool(self.storage.find(
            WITHDRAWALS,
            lambda w: w.user_id == user_id and w.status in ACTIVE_WITHDRAWAL_STATUSES,
        ))

    def _advance(
        self,
        withdrawal_id: UUID,
        expected: WithdrawalStatus,
        target: WithdrawalStatus,
        now: Optional[datetime],
        tx_hash: Optional[str] = None,
    ) -> WithdrawalRequest:
        if now is None:
            now = datetime.now(timezone.utc)

        for _ in range(self.settings.cas_max_retries):
            withdrawal = self.get_withdrawal(withdrawal_id)
            if withdrawal.status != expected:
                raise InvalidStateTransitionError(
                    f"Cannot move withdrawal {withdrawal_id} from "
                    f"{withdrawal.status.value} to {target.value}"
                )
            withdrawal.status = target
            if target == WithdrawalStatus.APPROVED:
                withdrawal.approved_at = now
            else:
                withdrawal.processing_at = now
            if tx_hash:
                withdrawal.tx_hash = tx_hash
            try:
                withdrawal = self.storage.compare_and_set(WITHDRAWALS, withdrawal)
            except ConcurrencyConflict:
                continue

            logger.info(
                f"Withdrawal {withdrawal_id} {expected.value} -> {target.value}"
            )
            self.notifications.withdrawal_state_changed(withdrawal, expected, now)
            return withdrawal

        raise TransientLedgerError(f"Withdrawal {withdrawal_id} kept changing; retry")

    def _settle_reservation(
        self, withdrawal: WithdrawalRequest, now: datetime
    ) -> WithdrawalRequest:
        try:
            if withdrawal.status == WithdrawalStatus.COMPLETED:
                metadata = {"tx_hash": withdrawal.tx_hash}
                if withdrawal.actual_fee is not None:
                    metadata["actual_fee"] = str(withdrawal.actual_fee)
                self.ledger.consume_reservation(
                    withdrawal.user_id,
                    withdrawal.currency,
                    withdrawal.amount,
                    reference_id=withdrawal.id,
                    metadata=metadata,
                    now=now,
                )
            else:
                self.ledger.adjust(
                    withdrawal.user_id,
                    withdrawal.currency,
                    withdrawal.amount,
                    ReasonCode.WITHDRAWAL_RELEASED,
                    reference_id=withdrawal.id,
                    metadata={"reason": withdrawal.error_message},
                    must_succeed=True,
                    now=now,
                )
        except ReservationNotHeldError:
            logger.warning(
                f"Reservation of withdrawal {withdrawal.id} was already settled"
            )

        for _ in range(self.settings.cas_max_retries):
            current = self.get_withdrawal(withdrawal.id)
            if current.reservation_settled:
                return current
            current.reservation_settled = True
            try:
                return self.storage.compare_and_set(WITHDRAWALS, current)
            except ConcurrencyConflict:
                continue
        raise TransientLedgerError(
            f"Withdrawal {withdrawal.id} settled but the flag could not be saved"
        )
