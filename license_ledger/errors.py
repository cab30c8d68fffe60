from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    NOT_FOUND = "NOT_FOUND"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    PENDING_WITHDRAWAL_EXISTS = "PENDING_WITHDRAWAL_EXISTS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    SCHEDULE_ALREADY_EXISTS = "SCHEDULE_ALREADY_EXISTS"
    SCHEDULE_NOT_ACTIVE = "SCHEDULE_NOT_ACTIVE"
    DAY_NOT_DUE = "DAY_NOT_DUE"
    OTP_VERIFICATION_FAILED = "OTP_VERIFICATION_FAILED"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    TRANSIENT_CONFLICT = "TRANSIENT_CONFLICT"


class LedgerServiceError(Exception):
    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value


class ValidationError(LedgerServiceError):
    code = ErrorCode.VALIDATION_ERROR


class InvalidAddressError(ValidationError):
    code = ErrorCode.INVALID_ADDRESS


class RecordNotFoundError(LedgerServiceError):
    code = ErrorCode.NOT_FOUND


class AccountInactiveError(LedgerServiceError):
    code = ErrorCode.ACCOUNT_INACTIVE


class PendingWithdrawalExistsError(LedgerServiceError):
    code = ErrorCode.PENDING_WITHDRAWAL_EXISTS


class InsufficientBalanceError(LedgerServiceError):
    code = ErrorCode.INSUFFICIENT_BALANCE


class InsufficientFundsError(LedgerServiceError):
    """Raised by the ledger when a debit would make available negative."""

    code = ErrorCode.INSUFFICIENT_FUNDS


class AlreadySettledError(LedgerServiceError):
    code = ErrorCode.ALREADY_SETTLED


class ScheduleAlreadyExistsError(LedgerServiceError):
    code = ErrorCode.SCHEDULE_ALREADY_EXISTS


class ScheduleNotActiveError(LedgerServiceError):
    code = ErrorCode.SCHEDULE_NOT_ACTIVE


class DayNotDueError(LedgerServiceError):
    code = ErrorCode.DAY_NOT_DUE


class InvalidStateTransitionError(LedgerServiceError):
    code = ErrorCode.INVALID_STATE_TRANSITION


class TransientLedgerError(LedgerServiceError):
    """Compare-and-set kept conflicting past the retry bound."""

    code = ErrorCode.TRANSIENT_CONFLICT


class OtpVerificationError(LedgerServiceError):
    code = ErrorCode.OTP_VERIFICATION_FAILED

    def __init__(self, reason, message: str = ""):
        super().__init__(message or f"OTP verification failed: {reason.value}")
        self.reason = reason


class ReservationNotHeldError(InvalidStateTransitionError):
    """The withdrawal reservation was already released or consumed."""
