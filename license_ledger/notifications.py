"""
Outbound signals for the delivery collaborators (Telegram, e-mail, websockets).

Delivery is fire-and-forget: a failing listener is logged and never fails the
state transition that emitted the signal.
"""

from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from loguru import logger
from pydantic import BaseModel

from .models import (
    IssuedPin,
    OtpPurpose,
    WithdrawalRequest,
    WithdrawalStatus,
    external_withdrawal_status,
)


class WithdrawalStateChanged(BaseModel):
    withdrawal_id: UUID
    user_id: UUID
    previous_status: Optional[WithdrawalStatus] = None
    status: WithdrawalStatus
    external_status: str
    amount: str
    occurred_at: datetime


WithdrawalListener = Callable[[WithdrawalStateChanged], None]
PinDelivery = Callable[[UUID, OtpPurpose, IssuedPin], None]


class NotificationHub:
    def __init__(self):
        self._withdrawal_listeners: list[WithdrawalListener] = []
        self._pin_delivery: Optional[PinDelivery] = None

    def subscribe_withdrawals(self, listener: WithdrawalListener) -> None:
        self._withdrawal_listeners.append(listener)

    def set_pin_delivery(self, delivery: PinDelivery) -> None:
        self._pin_delivery = delivery

    def withdrawal_state_changed(
        self,
        withdrawal: WithdrawalRequest,
        previous_status: Optional[WithdrawalStatus],
        occurred_at: datetime,
    ) -> None:
        event = WithdrawalStateChanged(
            withdrawal_id=withdrawal.id,
            user_id=withdrawal.user_id,
            previous_status=previous_status,
            status=withdrawal.status,
            external_status=external_withdrawal_status(withdrawal.status),
            amount=str(withdrawal.amount),
            occurred_at=occurred_at,
        )
        for listener in self._withdrawal_listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Withdrawal notification failed withdrawal={withdrawal.id} "
                    f"status={withdrawal.status.value}"
                )

    def deliver_pin(self, user_id: UUID, purpose: OtpPurpose, issued: IssuedPin) -> bool:
        """Hand a fresh PIN to the delivery collaborator. Returns whether it
        was handed off."""
        if self._pin_delivery is None:
            logger.warning(
                f"No PIN delivery configured user={user_id} purpose={purpose.value}"
            )
            return False
        try:
            self._pin_delivery(user_id, purpose, issued)
        except Exception:
            logger.exception(
                f"PIN delivery failed user={user_id} purpose={purpose.value} "
                f"challenge={issued.challenge_id}"
            )
            return False
        return True
