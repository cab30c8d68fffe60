"""
Unit Tests for the Withdrawal Engine

Tests cover:
1. Request validation and the OTP gate
2. Reservation on request, release on reject, consume on complete
3. One in-flight withdrawal per user
4. Compensation when the request record cannot be written
5. Notification failures
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from license_ledger.errors import (
    AccountInactiveError,
    InsufficientBalanceError,
    InvalidAddressError,
    InvalidStateTransitionError,
    OtpVerificationError,
    PendingWithdrawalExistsError,
    RecordNotFoundError,
    TransientLedgerError,
    ValidationError,
)
from license_ledger.models import (
    OtpFailureReason,
    ReasonCode,
    WithdrawalOutcome,
    WithdrawalStatus,
)
from license_ledger.withdrawals import FinalizeDetail, is_valid_address

from .helpers import INACTIVE_ID, REFERRER_ID, T0, UNKNOWN_ID, VALID_ADDRESS


@pytest.fixture
def request_withdrawal(platform, issue_pin):
    def _request(amount: str = "50", address: str = VALID_ADDRESS, user_id=REFERRER_ID):
        pin = issue_pin(user_id)
        return platform.withdrawals.request_withdrawal(
            user_id, Decimal(amount), address, pin, now=T0
        )

    return _request


class TestRequest:
    def test_request_reserves_amount(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")

        withdrawal = request_withdrawal("50")

        assert withdrawal.status == WithdrawalStatus.PENDING
        assert withdrawal.balance_before == Decimal("100.00")
        assert withdrawal.network == "BEP20"
        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("50.00")
        assert balance.reserved == Decimal("50.00")
        assert balance.has_active_withdrawal

    def test_insufficient_balance_leaves_no_trace(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "50")

        with pytest.raises(InsufficientBalanceError):
            request_withdrawal("100")

        assert platform.withdrawals.list_for_user(REFERRER_ID) == []
        history = platform.ledger.get_history(REFERRER_ID)
        assert history.total_count == 1
        assert history.current_balance == Decimal("50.00")

    def test_second_request_while_pending(self, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        request_withdrawal("20")

        with pytest.raises(PendingWithdrawalExistsError):
            request_withdrawal("20")

    @pytest.mark.parametrize("address", [
        "742d35Cc6634C0532925a3b844Bc9e7595f0bEb0",
        "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb",
        "0xZZ2d35Cc6634C0532925a3b844Bc9e7595f0bEb0",
        VALID_ADDRESS + "\n",
        " " + VALID_ADDRESS,
        "",
    ])
    def test_invalid_address(self, fund, request_withdrawal, address):
        fund(REFERRER_ID, "100")

        with pytest.raises(InvalidAddressError):
            request_withdrawal("50", address=address)

    @pytest.mark.parametrize("amount", ["5", "10.001", "-20"])
    def test_invalid_amount(self, fund, request_withdrawal, amount):
        fund(REFERRER_ID, "100")

        with pytest.raises(ValidationError):
            request_withdrawal(amount)

    def test_inactive_account(self, request_withdrawal):
        with pytest.raises(AccountInactiveError):
            request_withdrawal("50", user_id=INACTIVE_ID)

    def test_unknown_user(self, request_withdrawal):
        with pytest.raises(RecordNotFoundError):
            request_withdrawal("50", user_id=UNKNOWN_ID)

    def test_wrong_pin(self, platform, fund, issue_pin):
        fund(REFERRER_ID, "100")
        pin = issue_pin(REFERRER_ID)
        wrong = "".join(str((int(c) + 1) % 10) for c in pin)

        with pytest.raises(OtpVerificationError) as exc_info:
            platform.withdrawals.request_withdrawal(
                REFERRER_ID, Decimal("50"), VALID_ADDRESS, wrong, now=T0
            )

        assert exc_info.value.reason == OtpFailureReason.MISMATCH
        assert platform.ledger.get_balance(REFERRER_ID).available == Decimal("100.00")

    def test_pin_required(self, platform, fund):
        fund(REFERRER_ID, "100")

        with pytest.raises(OtpVerificationError) as exc_info:
            platform.withdrawals.request_withdrawal(
                REFERRER_ID, Decimal("50"), VALID_ADDRESS, "123456", now=T0
            )

        assert exc_info.value.reason == OtpFailureReason.NOT_FOUND

    def test_record_failure_releases_reservation(self, platform, fund, request_withdrawal, monkeypatch):
        fund(REFERRER_ID, "100")

        def failing_create(withdrawal):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(platform.withdrawals, "_create_request", failing_create)
        with pytest.raises(RuntimeError):
            request_withdrawal("50")

        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("100.00")
        assert balance.reserved == Decimal("0.00")
        assert not balance.has_active_withdrawal
        reasons = [e.reason for e in platform.ledger.get_history(REFERRER_ID).entries]
        assert ReasonCode.WITHDRAWAL_RELEASED in reasons
        assert platform.ledger.verify_integrity(REFERRER_ID).consistent

    def test_release_retried_after_record_failure(self, platform, fund, request_withdrawal, monkeypatch):
        fund(REFERRER_ID, "100")
        original_adjust = platform.ledger.adjust
        failures = []

        def failing_create(withdrawal):
            raise RuntimeError("database unavailable")

        def flaky_adjust(*args, **kwargs):
            if args[3] == ReasonCode.WITHDRAWAL_RELEASED and not failures:
                failures.append(args[3])
                raise TransientLedgerError("balance busy")
            return original_adjust(*args, **kwargs)

        monkeypatch.setattr(platform.withdrawals, "_create_request", failing_create)
        monkeypatch.setattr(platform.ledger, "adjust", flaky_adjust)
        with pytest.raises(RuntimeError):
            request_withdrawal("50")

        assert failures
        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("100.00")
        assert not balance.has_active_withdrawal

    def test_sweep_releases_hold_left_by_failed_compensation(self, platform, fund, request_withdrawal, monkeypatch):
        """Record write and release both fail: the record error surfaces and
        the reservation sweep gives the hold back after the grace period."""
        fund(REFERRER_ID, "100")
        original_adjust = platform.ledger.adjust

        def failing_create(withdrawal):
            raise RuntimeError("database unavailable")

        def release_fails(*args, **kwargs):
            if args[3] == ReasonCode.WITHDRAWAL_RELEASED:
                raise TransientLedgerError("balance busy")
            return original_adjust(*args, **kwargs)

        monkeypatch.setattr(platform.withdrawals, "_create_request", failing_create)
        monkeypatch.setattr(platform.ledger, "adjust", release_fails)
        with pytest.raises(RuntimeError, match="database unavailable"):
            request_withdrawal("50")

        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("50.00")
        assert balance.has_active_withdrawal

        monkeypatch.setattr(platform.ledger, "adjust", original_adjust)
        early = platform.withdrawals.settle_reservations(now=T0 + timedelta(minutes=1))
        assert early.processed == 0
        assert platform.ledger.get_balance(REFERRER_ID).has_active_withdrawal

        result = platform.withdrawals.settle_reservations(now=T0 + timedelta(minutes=10))

        assert result.released == 1
        assert result.amount == Decimal("50.00")
        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("100.00")
        assert balance.reserved == Decimal("0.00")
        assert not balance.has_active_withdrawal
        assert platform.ledger.verify_integrity(REFERRER_ID).consistent

        monkeypatch.undo()
        assert request_withdrawal("50").status == WithdrawalStatus.PENDING

    def test_sweep_leaves_recorded_holds_alone(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        withdrawal = request_withdrawal("50")

        result = platform.withdrawals.settle_reservations(now=T0 + timedelta(days=1))

        assert result.processed == 0
        assert platform.ledger.get_balance(REFERRER_ID).reserved == Decimal("50.00")
        assert platform.withdrawals.get_withdrawal(withdrawal.id).status == WithdrawalStatus.PENDING


class TestFinalize:
    def test_reject_restores_available(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        withdrawal = request_withdrawal("50")

        rejected = platform.withdrawals.finalize(
            withdrawal.id, WithdrawalOutcome.REJECTED, FinalizeDetail(reason="bad address")
        )

        assert rejected.status == WithdrawalStatus.REJECTED
        assert rejected.error_message == "bad address"
        assert rejected.reservation_settled
        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("100.00")
        assert balance.reserved == Decimal("0.00")
        assert balance.total_withdrawn == Decimal("0.00")

    def test_full_lifecycle_completes(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        withdrawal = request_withdrawal("50")

        platform.withdrawals.approve(withdrawal.id)
        platform.withdrawals.mark_processing(withdrawal.id, tx_hash="0xabc")
        completed = platform.withdrawals.finalize(
            withdrawal.id,
            WithdrawalOutcome.COMPLETED,
            FinalizeDetail(actual_fee=Decimal("0.8")),
        )

        assert completed.status == WithdrawalStatus.COMPLETED
        assert completed.tx_hash == "0xabc"
        assert completed.actual_fee == Decimal("0.8")
        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("50.00")
        assert balance.reserved == Decimal("0.00")
        assert balance.total_withdrawn == Decimal("50.00")

    def test_finalize_terminal_fails(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        withdrawal = request_withdrawal("50")
        platform.withdrawals.finalize(withdrawal.id, WithdrawalOutcome.REJECTED)

        with pytest.raises(InvalidStateTransitionError):
            platform.withdrawals.finalize(withdrawal.id, WithdrawalOutcome.COMPLETED)

        assert platform.ledger.get_balance(REFERRER_ID).available == Decimal("100.00")

    def test_approve_only_from_pending(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        withdrawal = request_withdrawal("50")
        platform.withdrawals.approve(withdrawal.id)

        with pytest.raises(InvalidStateTransitionError):
            platform.withdrawals.approve(withdrawal.id)

    def test_new_request_after_finalize(self, platform, fund, request_withdrawal):
        fund(REFERRER_ID, "100")
        first = request_withdrawal("30")
        platform.withdrawals.finalize(first.id, WithdrawalOutcome.COMPLETED)

        second = request_withdrawal("30")

        assert second.id != first.id
        assert platform.ledger.get_balance(REFERRER_ID).available == Decimal("40.00")

    def test_sweep_settles_interrupted_finalize(self, platform, fund, request_withdrawal, monkeypatch):
        fund(REFERRER_ID, "100")
        withdrawal = request_withdrawal("50")
        original_adjust = platform.ledger.adjust

        def failing_adjust(*args, **kwargs):
            raise TransientLedgerError("balance busy")

        monkeypatch.setattr(platform.ledger, "adjust", failing_adjust)
        with pytest.raises(TransientLedgerError):
            platform.withdrawals.finalize(withdrawal.id, WithdrawalOutcome.REJECTED)
        monkeypatch.setattr(platform.ledger, "adjust", original_adjust)

        assert not platform.withdrawals.get_withdrawal(withdrawal.id).reservation_settled
        result = platform.withdrawals.settle_reservations()

        assert result.released == 1
        assert platform.withdrawals.get_withdrawal(withdrawal.id).reservation_settled
        assert platform.ledger.get_balance(REFERRER_ID).available == Decimal("100.00")
        assert platform.withdrawals.settle_reservations().processed == 0


class TestNotifications:
    def test_listener_receives_transitions(self, platform, fund, request_withdrawal):
        events = []
        platform.notifications.subscribe_withdrawals(events.append)
        fund(REFERRER_ID, "100")

        withdrawal = request_withdrawal("50")
        platform.withdrawals.finalize(withdrawal.id, WithdrawalOutcome.REJECTED)

        assert [e.external_status for e in events] == ["PENDING", "CANCELLED"]
        assert events[1].previous_status == WithdrawalStatus.PENDING

    def test_failing_listener_does_not_break_flow(self, platform, fund, request_withdrawal):
        def broken(event):
            raise ConnectionError("telegram down")

        platform.notifications.subscribe_withdrawals(broken)
        fund(REFERRER_ID, "100")

        withdrawal = request_withdrawal("50")

        assert platform.withdrawals.get_withdrawal(withdrawal.id).status == WithdrawalStatus.PENDING


def test_address_format():
    assert is_valid_address(VALID_ADDRESS)
    assert not is_valid_address(VALID_ADDRESS + "\n")
    assert not is_valid_address(VALID_ADDRESS, network="TRC20")
