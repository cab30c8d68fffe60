from datetime import datetime
from decimal import Decimal
from uuid import UUID

import pytest

from license_ledger.config import Settings
from license_ledger.models import OtpPurpose, ReasonCode, UserAccount
from license_ledger.platform import LedgerPlatform
from license_ledger.storage import USERS, InMemoryStorage

from .helpers import INACTIVE_ID, T0, UPLINE_ID


@pytest.fixture
def settings():
    """Settings with the cheapest bcrypt cost and no file sink."""
    return Settings(otp_bcrypt_rounds=4, log_file=None)


@pytest.fixture
def storage():
    storage = InMemoryStorage(seed=True)
    storage.insert(USERS, UserAccount(id=UPLINE_ID, username="upline"))
    storage.insert(USERS, UserAccount(id=INACTIVE_ID, username="inactive", is_active=False))
    return storage


@pytest.fixture
def platform(storage, settings):
    return LedgerPlatform(storage=storage, settings=settings)


@pytest.fixture
def fund(platform):
    """Credit a user's available balance through the ledger."""

    def _fund(user_id: UUID, amount: str, now: datetime = T0):
        return platform.ledger.adjust(
            user_id,
            "USDT",
            Decimal(amount),
            ReasonCode.ADMIN_ADJUSTMENT,
            now=now,
        )

    return _fund


@pytest.fixture
def issue_pin(platform):
    def _issue(user_id: UUID, now: datetime = T0) -> str:
        return platform.otp.issue(user_id, OtpPurpose.WITHDRAWAL, now=now).pin

    return _issue
