from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.service.errors import AccountAlreadyExists, AccountNotFound
from warden.service.linking import AccountWithUser, LinkingPolicy, LinkRequest
from warden.service.providers.base import BaseProvider
from warden.service.ratelimit import RateLimiter
from warden.service.sessions import AuthContext
from warden.storage.common import AuthStore

logger = get_logger(__name__)


class CredentialsFailure(str, Enum):
    INVALID_ACCOUNT_ID = "InvalidAccountId"
    TOO_MANY_FAILED_ATTEMPTS = "TooManyFailedAttempts"
    INVALID_SECRET = "InvalidSecret"


class SecretHasher:
    """argon2id hashing for account secrets.

    Providers may supply their own object with the same two methods to keep
    hashes imported from another system verifiable.
    """

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def verify(self, stored_hash: Optional[str], secret: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


class CredentialStore:
    """Account operations for providers that hold a secret."""

    def __init__(
        self,
        store: AuthStore,
        linking: LinkingPolicy,
        rate_limiter: RateLimiter,
        *,
        hasher: Optional[SecretHasher] = None,
    ) -> None:
        self.store = store
        self.linking = linking
        self.rate_limiter = rate_limiter
        self.hasher = hasher or SecretHasher()

    def _hasher_for(self, provider: BaseProvider) -> SecretHasher:
        return getattr(provider, "hasher", None) or self.hasher

    async def create_account_from_credentials(
        self,
        provider: BaseProvider,
        account_id: str,
        *,
        secret: Optional[str] = None,
        profile: Optional[dict] = None,
        should_link_via_email: bool = False,
        should_link_via_phone: bool = False,
        current: Optional[AuthContext] = None,
    ) -> AccountWithUser:
        hasher = self._hasher_for(provider)
        existing = self.store.get_account(provider.id, account_id)
        if existing is not None:
            if secret is not None and not hasher.verify(existing.secret, secret):
                logger.info("account_already_exists", provider=provider.id)
                raise AccountAlreadyExists(detail={"provider": provider.id})
            return AccountWithUser(account=existing, user=self.store.get_user(existing.user_id))
        return await self.linking.upsert_user_and_account(
            LinkRequest(
                provider=provider,
                profile=dict(profile or {}),
                provider_account_id=account_id,
                secret=hasher.hash(secret) if secret is not None else None,
                should_link_via_email=should_link_via_email,
                should_link_via_phone=should_link_via_phone,
            ),
            current=current,
        )

    def retrieve_account(self, provider: BaseProvider, account_id: str) -> AccountWithUser:
        account = self.store.get_account(provider.id, account_id)
        if account is None:
            raise AccountNotFound(detail={"provider": provider.id})
        return AccountWithUser(account=account, user=self.store.get_user(account.user_id))

    def retrieve_account_with_credentials(
        self,
        provider: BaseProvider,
        account_id: str,
        secret: Optional[str] = None,
    ) -> Union[AccountWithUser, CredentialsFailure]:
        """Look up an account and check its secret under the rate limiter.

        The limiter is consulted before the secret is compared, so a limited
        account costs no hashing work and reveals nothing about the secret.
        """
        hasher = self._hasher_for(provider)
        with self.store.transaction():
            account = self.store.get_account(provider.id, account_id)
            if account is None:
                return CredentialsFailure.INVALID_ACCOUNT_ID
            if secret is not None:
                if self.rate_limiter.is_limited(account.id):
                    logger.info("credentials_rate_limited", account_id=account.id)
                    return CredentialsFailure.TOO_MANY_FAILED_ATTEMPTS
                if not hasher.verify(account.secret, secret):
                    self.rate_limiter.record_failure(account.id)
                    logger.info("credentials_invalid_secret", account_id=account.id)
                    return CredentialsFailure.INVALID_SECRET
                self.rate_limiter.reset(account.id)
            return AccountWithUser(account=account, user=self.store.get_user(account.user_id))

    def modify_account_credentials(
        self, provider: BaseProvider, account_id: str, secret: str
    ) -> None:
        with self.store.transaction():
            account = self.store.get_account(provider.id, account_id)
            if account is None:
                raise AccountNotFound(detail={"provider": provider.id})
            self.store.patch_account(account.id, secret=self._hasher_for(provider).hash(secret))
        logger.info("account_credentials_modified", account_id=account.id)
