"""
One-time PIN gate.

PINs are bound to a (user, purpose) pair, hashed with bcrypt before they are
stored and never written to the logs. Issuing a new PIN supersedes any
unused one for the same pair, so at most one challenge is live per pair.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import bcrypt
from loguru import logger

from .config import Settings, get_settings
from .errors import TransientLedgerError
from .models import (
    IssuedPin,
    OtpChallenge,
    OtpFailureReason,
    OtpPurpose,
    OtpVerification,
)
from .storage import OTP_CHALLENGES, ConcurrencyConflict, InMemoryStorage


class OtpGate:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def issue(
        self,
        user_id: UUID,
        purpose: OtpPurpose,
        now: Optional[datetime] = None,
    ) -> IssuedPin:
        if now is None:
            now = datetime.now(timezone.utc)

        self._supersede_open_challenges(user_id, purpose)

        pin = self._generate_pin()
        challenge = OtpChallenge(
            user_id=user_id,
            purpose=purpose,
            pin_hash=bcrypt.hashpw(
                pin.encode(), bcrypt.gensalt(rounds=self.settings.otp_bcrypt_rounds)
            ),
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl_seconds(purpose)),
            remaining_attempts=self.settings.otp_max_attempts,
        )
        challenge = self.storage.insert(OTP_CHALLENGES, challenge)

        logger.info(
            f"OTP issued user={user_id} purpose={purpose.value} "
            f"challenge={challenge.id} expires_at={challenge.expires_at.isoformat()}"
        )
        return IssuedPin(pin=pin, challenge_id=challenge.id, expires_at=challenge.expires_at)

    def verify(
        self,
        user_id: UUID,
        pin: str,
        purpose: OtpPurpose,
        now: Optional[datetime] = None,
    ) -> OtpVerification:
        if now is None:
            now = datetime.now(timezone.utc)

        for _ in range(self.settings.cas_max_retries):
            challenge = self._latest_open_challenge(user_id, purpose)
            if challenge is None:
                logger.warning(f"OTP not found user={user_id} purpose={purpose.value}")
                return OtpVerification(valid=False, reason=OtpFailureReason.NOT_FOUND)

            if now >= challenge.expires_at:
                logger.warning(
                    f"OTP expired user={user_id} purpose={purpose.value} "
                    f"challenge={challenge.id}"
                )
                return OtpVerification(
                    valid=False, reason=OtpFailureReason.EXPIRED, challenge_id=challenge.id
                )

            if challenge.remaining_attempts <= 0:
                logger.warning(
                    f"OTP attempts exhausted user={user_id} purpose={purpose.value} "
                    f"challenge={challenge.id}"
                )
                return OtpVerification(
                    valid=False,
                    reason=OtpFailureReason.ATTEMPTS_EXCEEDED,
                    challenge_id=challenge.id,
                )

            matches = bcrypt.checkpw(pin.encode(), challenge.pin_hash)
            if matches:
                challenge.used = True
            else:
                challenge.remaining_attempts -= 1

            try:
                self.storage.compare_and_set(OTP_CHALLENGES, challenge)
            except ConcurrencyConflict:
                # Raced by another verification; re-read the challenge.
                continue

            if matches:
                logger.info(
                    f"OTP verified user={user_id} purpose={purpose.value} "
                    f"challenge={challenge.id}"
                )
                return OtpVerification(valid=True, challenge_id=challenge.id)

            logger.warning(
                f"Invalid OTP attempt user={user_id} purpose={purpose.value} "
                f"challenge={challenge.id} remaining={challenge.remaining_attempts}"
            )
            return OtpVerification(
                valid=False, reason=OtpFailureReason.MISMATCH, challenge_id=challenge.id
            )

        logger.error(
            f"OTP verification gave up user={user_id} purpose={purpose.value} "
            f"after {self.settings.cas_max_retries} attempts"
        )
        raise TransientLedgerError(
            f"OTP challenge for user {user_id} kept changing; retry"
        )

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired, used and superseded challenges."""
        if now is None:
            now = datetime.now(timezone.utc)
        stale = self.storage.find(
            OTP_CHALLENGES,
            lambda c: c.used or c.superseded or c.expires_at <= now,
        )
        deleted = sum(1 for c in stale if self.storage.delete(OTP_CHALLENGES, c.id))
        logger.info(f"Expired OTPs cleaned up count={deleted}")
        return deleted

    def _generate_pin(self) -> str:
        length = self.settings.otp_pin_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    def _ttl_seconds(self, purpose: OtpPurpose) -> int:
        return {
            OtpPurpose.WITHDRAWAL: self.settings.otp_ttl_withdrawal_seconds,
            OtpPurpose.PASSWORD_RESET: self.settings.otp_ttl_password_reset_seconds,
            OtpPurpose.ACCOUNT_ACTIVATION: self.settings.otp_ttl_account_activation_seconds,
        }[purpose]

    def _open_challenges(self, user_id: UUID, purpose: OtpPurpose) -> list[OtpChallenge]:
        return self.storage.find(
            OTP_CHALLENGES,
            lambda c: (
                c.user_id == user_id
                and c.purpose == purpose
                and not c.used
                and not c.superseded
            ),
        )

    def _latest_open_challenge(
        self, user_id: UUID, purpose: OtpPurpose
    ) -> Optional[OtpChallenge]:
        open_challenges = self._open_challenges(user_id, purpose)
        if not open_challenges:
            return None
        return max(open_challenges, key=lambda c: c.created_at)

    def _supersede_open_challenges(self, user_id: UUID, purpose: OtpPurpose) -> None:
        open_challenges = self._open_challenges(user_id, purpose)
        for challenge in open_challenges:
            for _ in range(self.settings.cas_max_retries):
                if challenge is None or challenge.used or challenge.superseded:
                    break
                challenge.superseded = True
                try:
                    self.storage.compare_and_set(OTP_CHALLENGES, challenge)
                    break
                except ConcurrencyConflict:
                    challenge = self.storage.get(OTP_CHALLENGES, challenge.id)
