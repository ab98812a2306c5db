from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from warden.logging import get_logger
from warden.service.crypto import ALPHANUMERIC, DIGITS, random_string, sha256_hex
from warden.service.errors import InvalidVerificationCode
from warden.storage.common import AuthStore
from warden.storage.models import VerificationCode, utcnow

logger = get_logger(__name__)

MAGIC_LINK_CODE_LENGTH = 32
OTP_CODE_LENGTH = 8


def generate_magic_link_code() -> str:
    return random_string(MAGIC_LINK_CODE_LENGTH, ALPHANUMERIC)


def generate_otp_code() -> str:
    return random_string(OTP_CODE_LENGTH, DIGITS)


class VerificationCodeManager:
    """Issues and single-use consumes out-of-band codes.

    Only ``sha256(code)`` is ever stored; the plaintext exists in the message
    sent to the user and nowhere else.
    """

    def __init__(self, store: AuthStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def create(
        self,
        account_id: str,
        provider: str,
        code: str,
        *,
        ttl: timedelta,
        verifier: Optional[str] = None,
        email_verified: Optional[str] = None,
        phone_verified: Optional[str] = None,
    ) -> VerificationCode:
        with self.store.transaction():
            # A newer code supersedes any pending one for the same account
            while True:
                existing = self.store.get_verification_code_by_account(account_id)
                if existing is None:
                    break
                self.store.delete_verification_code(existing.id)
            return self.store.create_verification_code(
                account_id,
                provider,
                sha256_hex(code),
                self._clock() + ttl,
                verifier=verifier,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )

    def consume(
        self,
        code: str,
        *,
        verifier: Optional[str] = None,
        provider: Optional[str] = None,
        require_verifier: bool = False,
    ) -> VerificationCode:
        """Delete the code and return it, or raise if it cannot be used.

        The record is deleted before any check so that a code presented with
        the wrong verifier or provider is burnt as well. With
        ``require_verifier`` only codes bound to ``verifier`` are accepted.
        """
        with self.store.transaction():
            record = self.store.get_verification_code_by_hash(sha256_hex(code))
            if record is None:
                raise InvalidVerificationCode()
            self.store.delete_verification_code(record.id)
        if record.verifier is not None and record.verifier != verifier:
            logger.info("verification_code_verifier_mismatch", account_id=record.account_id)
            raise InvalidVerificationCode()
        if require_verifier and (verifier is None or record.verifier is None):
            logger.info("verification_code_unbound", account_id=record.account_id)
            raise InvalidVerificationCode()
        if record.expires_at <= self._clock():
            logger.info("verification_code_expired", account_id=record.account_id)
            raise InvalidVerificationCode()
        if provider is not None and record.provider != provider:
            logger.info(
                "verification_code_provider_mismatch",
                account_id=record.account_id,
                provider=provider,
            )
            raise InvalidVerificationCode()
        return record
