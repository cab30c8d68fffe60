from datetime import timedelta
from decimal import Decimal

import pytest

from license_ledger.errors import (
    AlreadySettledError,
    InvalidStateTransitionError,
    TransientLedgerError,
)
from license_ledger.models import CommissionStatus, ReasonCode

from .helpers import BUYER_ID, INACTIVE_ID, REFERRER_ID, T0, UPLINE_ID


@pytest.fixture
def purchase(platform):
    return platform.purchases.create_purchase(BUYER_ID, Decimal("1000"), now=T0)


class TestSettlement:
    def test_direct_referrer_gets_one_commission(self, platform):
        """A buyer with one referrer and no second level yields exactly one record."""
        purchase = platform.purchases.create_purchase(BUYER_ID, Decimal("1000"), now=T0)

        result = platform.purchases.confirm(purchase.id, now=T0)

        assert len(result.commissions) == 1
        commission = result.commissions[0]
        assert commission.recipient_user_id == REFERRER_ID
        assert commission.level == 1
        assert commission.amount == Decimal("100.00")
        assert commission.status == CommissionStatus.LOCKED
        assert commission.unlock_at == T0 + timedelta(days=9)

    def test_settles_once_per_purchase(self, platform, purchase):
        platform.commissions.settle_for_purchase(purchase, now=T0)

        with pytest.raises(AlreadySettledError):
            platform.commissions.settle_for_purchase(purchase, now=T0)

        assert len(platform.commissions.list_for_purchase(purchase.id)) == 1

    def test_explicit_chain_two_levels(self, platform, purchase):
        records = platform.commissions.settle_for_purchase(
            purchase, referral_chain=[REFERRER_ID, UPLINE_ID], now=T0
        )

        assert [r.level for r in records] == [1, 2]
        assert records[1].recipient_user_id == UPLINE_ID
        assert records[1].unlock_at == T0 + timedelta(days=17)

    def test_chain_bounded_by_configured_depth(self, platform, purchase):
        records = platform.commissions.settle_for_purchase(
            purchase, referral_chain=[REFERRER_ID, UPLINE_ID, INACTIVE_ID], now=T0
        )

        assert len(records) == 2

    @pytest.mark.parametrize("chain,expected", [
        ([BUYER_ID], []),
        ([REFERRER_ID, BUYER_ID], [REFERRER_ID]),
        ([REFERRER_ID, REFERRER_ID], [REFERRER_ID]),
    ])
    def test_chain_stops_on_cycles(self, platform, chain, expected):
        assert platform.commissions.resolve_chain(BUYER_ID, chain) == expected

    def test_no_referrer_no_commission(self, platform):
        purchase = platform.purchases.create_purchase(UPLINE_ID, Decimal("500"), now=T0)

        assert platform.commissions.settle_for_purchase(purchase, now=T0) == []
        with pytest.raises(AlreadySettledError):
            platform.commissions.settle_for_purchase(purchase, now=T0)


class TestUnlock:
    def test_unlock_credits_once(self, platform, purchase):
        platform.commissions.settle_for_purchase(purchase, now=T0)

        early = platform.commissions.unlock_due(now=T0 + timedelta(days=8))
        due = platform.commissions.unlock_due(now=T0 + timedelta(days=9))
        again = platform.commissions.unlock_due(now=T0 + timedelta(days=10))

        assert early.released == 0
        assert due.released == 1
        assert due.amount == Decimal("100.00")
        assert again.released == 0

        balance = platform.ledger.get_balance(REFERRER_ID)
        assert balance.available == Decimal("100.00")
        assert balance.total_earned == Decimal("100.00")

        record = platform.commissions.list_for_user(REFERRER_ID)[0]
        assert record.status == CommissionStatus.UNLOCKED
        entry = platform.ledger.get_history(REFERRER_ID).entries[0]
        assert entry.reason == ReasonCode.REFERRAL_COMMISSION
        assert record.ledger_entry_id == entry.id

    def test_failed_credit_relocks(self, platform, purchase, monkeypatch):
        platform.commissions.settle_for_purchase(purchase, now=T0)

        def failing_adjust(*args, **kwargs):
            raise TransientLedgerError("balance busy")

        monkeypatch.setattr(platform.ledger, "adjust", failing_adjust)
        result = platform.commissions.unlock_due(now=T0 + timedelta(days=9))

        assert result.failed == 1
        record = platform.commissions.list_for_purchase(purchase.id)[0]
        assert record.status == CommissionStatus.LOCKED

    def test_cancelled_commissions_never_unlock(self, platform, purchase):
        platform.commissions.settle_for_purchase(purchase, now=T0)

        cancelled = platform.commissions.cancel_for_purchase(purchase.id, now=T0)
        result = platform.commissions.unlock_due(now=T0 + timedelta(days=30))

        assert len(cancelled) == 1
        assert result.released == 0
        assert platform.ledger.get_balance(REFERRER_ID).available == Decimal("0.00")

    def test_mark_withdrawn_requires_unlock(self, platform, purchase):
        record = platform.commissions.settle_for_purchase(purchase, now=T0)[0]

        with pytest.raises(InvalidStateTransitionError):
            platform.commissions.mark_withdrawn(record.id)

        platform.commissions.unlock_due(now=T0 + timedelta(days=9))
        withdrawn = platform.commissions.mark_withdrawn(record.id)
        assert withdrawn.status == CommissionStatus.WITHDRAWN
