"""
Accrual, Settlement and Withdrawal Ledger for License Purchases

This package provides:
- A balance ledger with atomic compare-and-set adjustments and immutable entries
- Daily benefit schedules: cycles, pause days, lifetime profit cap, idempotent release
- Multi-level referral commissions: locked at confirmation, unlocked by sweep
- USDT (BEP20) withdrawals: OTP-gated reservation, approve/complete/reject
- One-time PINs bound to a user and a purpose
"""

from .benefits import BenefitScheduleEngine
from .commissions import ReferralCommissionEngine
from .models import (
    BalanceSnapshot,
    BenefitSchedule,
    CommissionRecord,
    LedgerEntry,
    Purchase,
    ReasonCode,
    WithdrawalRequest,
)
from .otp import OtpGate
from .platform import LedgerPlatform
from .purchases import PurchaseService
from .service import BalanceLedger
from .withdrawals import WithdrawalEngine

__all__ = [
    "BalanceLedger",
    "BalanceSnapshot",
    "BenefitSchedule",
    "BenefitScheduleEngine",
    "CommissionRecord",
    "LedgerEntry",
    "LedgerPlatform",
    "OtpGate",
    "Purchase",
    "PurchaseService",
    "ReasonCode",
    "ReferralCommissionEngine",
    "WithdrawalEngine",
    "WithdrawalRequest",
]
