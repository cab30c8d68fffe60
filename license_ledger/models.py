from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class ReasonCode(str, Enum):
    PURCHASE = "PURCHASE"
    DAILY_BENEFIT = "DAILY_BENEFIT"
    REFERRAL_COMMISSION = "REFERRAL_COMMISSION"
    WITHDRAWAL_RESERVED = "WITHDRAWAL_RESERVED"
    WITHDRAWAL_RELEASED = "WITHDRAWAL_RELEASED"
    WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"


class PurchaseStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DayStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RELEASED = "released"
    SKIPPED = "skipped"


class CommissionStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WithdrawalOutcome(str, Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"


class OtpPurpose(str, Enum):
    WITHDRAWAL = "withdrawal"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_ACTIVATION = "account_activation"


class OtpFailureReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    ATTEMPTS_EXCEEDED = "ATTEMPTS_EXCEEDED"
    MISMATCH = "MISMATCH"


ACTIVE_WITHDRAWAL_STATUSES = frozenset(
    {WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING}
)
TERMINAL_WITHDRAWAL_STATUSES = frozenset(
    {WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED}
)


# External representations. These are the only status mappings used by the
# API layer; clients never see the internal enum values directly.

_PURCHASE_EXTERNAL = {
    PurchaseStatus.PENDING_PAYMENT: "pending",
    PurchaseStatus.CONFIRMING: "hash_submitted",
    PurchaseStatus.CONFIRMED: "confirmed",
    PurchaseStatus.ACTIVE: "confirmed",
    PurchaseStatus.COMPLETED: "completed",
    PurchaseStatus.REJECTED: "rejected",
    PurchaseStatus.EXPIRED: "rejected",
}

_SCHEDULE_EXTERNAL = {
    ScheduleStatus.ACTIVE: "ACTIVE",
    ScheduleStatus.PAUSED: "PENDING",
    ScheduleStatus.COMPLETED: "CONFIRMED",
    ScheduleStatus.CANCELLED: "CANCELLED",
}

_WITHDRAWAL_EXTERNAL = {
    WithdrawalStatus.PENDING: "PENDING",
    WithdrawalStatus.APPROVED: "CONFIRMED",
    WithdrawalStatus.PROCESSING: "ACTIVE",
    WithdrawalStatus.COMPLETED: "COMPLETED",
    WithdrawalStatus.REJECTED: "CANCELLED",
}

_COMMISSION_EXTERNAL = {
    CommissionStatus.LOCKED: "PENDING",
    CommissionStatus.UNLOCKED: "CONFIRMED",
    CommissionStatus.WITHDRAWN: "ACTIVE",
    CommissionStatus.CANCELLED: "CANCELLED",
}


def external_purchase_status(status: PurchaseStatus) -> str:
    return _PURCHASE_EXTERNAL[status]


def external_schedule_status(status: ScheduleStatus) -> str:
    return _SCHEDULE_EXTERNAL[status]


def external_withdrawal_status(status: WithdrawalStatus) -> str:
    return _WITHDRAWAL_EXTERNAL[status]


def external_commission_status(status: CommissionStatus) -> str:
    return _COMMISSION_EXTERNAL[status]


class Document(BaseModel):
    """Base for every persisted record. `version` backs compare-and-set."""

    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class UserAccount(Document):
    id: UUID
    username: str
    is_active: bool = True
    referred_by: Optional[UUID] = None


class PackageConfig(BaseModel):
    package_id: str
    name: str = "License"
    daily_rate: Decimal = Field(..., gt=0, le=1)
    benefit_days: int = Field(..., ge=1)
    pause_days: int = Field(default=0, ge=0)
    total_cycles: int = Field(..., ge=1)
    cap_percent: Decimal = Field(default=Decimal("100"), ge=0, le=1000)

    @property
    def cycle_length(self) -> int:
        return self.benefit_days + self.pause_days


class PackageRecord(Document):
    id: str
    config: PackageConfig
    created_at: datetime


class Purchase(Document):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    principal: Decimal
    currency: str = "USDT"
    package: PackageConfig
    status: PurchaseStatus = PurchaseStatus.PENDING_PAYMENT
    tx_hash: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class DayState(BaseModel):
    status: DayStatus = DayStatus.PENDING
    amount: Decimal = ZERO
    released_at: Optional[datetime] = None
    ledger_entry_id: Optional[UUID] = None
    error: Optional[str] = None


class BenefitSchedule(Document):
    id: UUID = Field(default_factory=uuid4)
    purchase_id: UUID
    user_id: UUID
    currency: str = "USDT"
    principal: Decimal
    daily_rate: Decimal
    daily_amount: Decimal
    benefit_days: int
    pause_days: int
    total_cycles: int
    cap_percent: Decimal
    days_released: int = 0
    amount_released: Decimal = ZERO
    status_by_day: dict[int, DayState] = Field(default_factory=dict)
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    start_at: datetime
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def cycle_length(self) -> int:
        return self.benefit_days + self.pause_days

    @property
    def total_days(self) -> int:
        return self.cycle_length * self.total_cycles

    @property
    def payout_days(self) -> int:
        return self.benefit_days * self.total_cycles

    @property
    def cap_amount(self) -> Decimal:
        return quantize_money(self.principal * self.cap_percent / Decimal("100"))

    @property
    def amount_in_flight(self) -> Decimal:
        return sum(
            (d.amount for d in self.status_by_day.values() if d.status == DayStatus.PROCESSING),
            ZERO,
        )

    def is_pause_day(self, day_index: int) -> bool:
        return day_index % self.cycle_length >= self.benefit_days

    def day_state(self, day_index: int) -> DayState:
        return self.status_by_day.get(day_index) or DayState()


class CommissionRecord(Document):
    id: UUID = Field(default_factory=uuid4)
    purchase_id: UUID
    buyer_user_id: UUID
    recipient_user_id: UUID
    level: int
    rate: Decimal
    amount: Decimal
    currency: str = "USDT"
    status: CommissionStatus = CommissionStatus.LOCKED
    unlock_at: datetime
    created_at: datetime
    unlocked_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    ledger_entry_id: Optional[UUID] = None


class CommissionSettlement(Document):
    id: UUID  # the purchase id
    settled_at: datetime
    commission_ids: list[UUID] = Field(default_factory=list)


class InvestmentRecord(Document):
    id: UUID  # the purchase id
    user_id: UUID
    amount: Decimal
    recorded_at: datetime
    ledger_entry_id: Optional[UUID] = None


class WithdrawalRequest(Document):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    amount: Decimal
    currency: str = "USDT"
    network: str = "BEP20"
    destination_address: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    balance_before: Decimal
    network_fee: Decimal = ZERO
    actual_fee: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    reservation_settled: bool = False
    requested_at: datetime
    approved_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WITHDRAWAL_STATUSES


class BalanceSnapshot(Document):
    id: str  # "<user_id>:<currency>"
    user_id: UUID
    currency: str
    available: Decimal = ZERO
    reserved: Decimal = ZERO
    total_invested: Decimal = ZERO
    total_earned: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    active_withdrawal_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def key(user_id: UUID, currency: str) -> str:
        return f"{user_id}:{currency}"


class LedgerEntry(Document):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    currency: str
    delta: Decimal
    reason: ReasonCode
    balance_before: Decimal
    balance_after: Decimal
    reference_id: Optional[UUID] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)


class OtpChallenge(Document):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    purpose: OtpPurpose
    pin_hash: bytes
    created_at: datetime
    expires_at: datetime
    remaining_attempts: int
    used: bool = False
    superseded: bool = False


class IssuedPin(BaseModel):
    pin: str
    challenge_id: UUID
    expires_at: datetime


class OtpVerification(BaseModel):
    valid: bool
    reason: Optional[OtpFailureReason] = None
    challenge_id: Optional[UUID] = None


class DayRelease(BaseModel):
    schedule_id: UUID
    day_index: int
    status: DayStatus
    amount: Decimal = ZERO
    already_processed: bool = False
    in_progress: bool = False
    schedule_status: ScheduleStatus
    ledger_entry_id: Optional[UUID] = None


class SweepResult(BaseModel):
    processed: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0
    amount: Decimal = ZERO
    errors: list[str] = Field(default_factory=list)


class UserBalance(BaseModel):
    user_id: UUID
    currency: str
    available: Decimal
    reserved: Decimal
    total_invested: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal
    has_active_withdrawal: bool
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class IntegrityReport(BaseModel):
    user_id: UUID
    currency: str
    available: Decimal
    ledger_sum: Decimal
    consistent: bool


# API request/response schemas

class CreatePurchaseRequest(BaseModel):
    user_id: UUID
    principal: Decimal = Field(..., gt=0)
    package_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "660e8400-e29b-41d4-a716-446655440001",
            "principal": 1000.00,
            "package_id": "PKG_STANDARD"
        }
    })


class SubmitPaymentRequest(BaseModel):
    tx_hash: str = Field(..., min_length=1)


class ConfirmPurchaseRequest(BaseModel):
    referral_chain: Optional[list[UUID]] = Field(
        default=None, description="Referrers from the direct one upwards"
    )


class RejectPurchaseRequest(BaseModel):
    reason: str = Field(..., description="Reason for rejection")


class IssueOtpRequest(BaseModel):
    user_id: UUID
    purpose: OtpPurpose = OtpPurpose.WITHDRAWAL


class IssueOtpResponse(BaseModel):
    challenge_id: UUID
    expires_at: datetime
    delivered: bool


class CreateWithdrawalRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    destination_address: str
    pin: str = Field(..., min_length=4, max_length=10)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 50.00,
            "destination_address": "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0",
            "pin": "123456"
        }
    })


class ProcessWithdrawalRequest(BaseModel):
    tx_hash: Optional[str] = None


class FinalizeWithdrawalRequest(BaseModel):
    outcome: WithdrawalOutcome
    tx_hash: Optional[str] = None
    actual_fee: Optional[Decimal] = Field(default=None, ge=0)
    reason: Optional[str] = None


class SweepRequest(BaseModel):
    as_of: Optional[datetime] = None


class UpdateCapRequest(BaseModel):
    cap_percent: Decimal = Field(..., ge=0, le=1000)


class PurchaseView(BaseModel):
    purchase: Purchase
    external_status: str

    @classmethod
    def of(cls, purchase: Purchase) -> "PurchaseView":
        return cls(purchase=purchase, external_status=external_purchase_status(purchase.status))


class ScheduleView(BaseModel):
    schedule: BenefitSchedule
    external_status: str
    cap_amount: Decimal
    total_days: int
    payout_days: int

    @classmethod
    def of(cls, schedule: BenefitSchedule) -> "ScheduleView":
        return cls(
            schedule=schedule,
            external_status=external_schedule_status(schedule.status),
            cap_amount=schedule.cap_amount,
            total_days=schedule.total_days,
            payout_days=schedule.payout_days,
        )


class CommissionView(BaseModel):
    commission: CommissionRecord
    external_status: str

    @classmethod
    def of(cls, commission: CommissionRecord) -> "CommissionView":
        return cls(
            commission=commission,
            external_status=external_commission_status(commission.status),
        )


class WithdrawalView(BaseModel):
    withdrawal: WithdrawalRequest
    external_status: str

    @classmethod
    def of(cls, withdrawal: WithdrawalRequest) -> "WithdrawalView":
        return cls(
            withdrawal=withdrawal,
            external_status=external_withdrawal_status(withdrawal.status),
        )


class ConfirmPurchaseResponse(BaseModel):
    purchase: PurchaseView
    schedule: ScheduleView
    commissions: list[CommissionView]
    message: str
