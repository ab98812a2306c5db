from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from warden.logging import get_logger
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.sessions import AuthContext
from warden.storage.common import AuthStore
from warden.storage.models import Account, User, utcnow

logger = get_logger(__name__)

# Profile keys that map onto User columns; everything else lands in User.meta
_USER_FIELDS = {"name", "email", "phone", "image", "is_anonymous"}
_PROFILE_FLAGS = {"id", "email_verified", "phone_verified"}

MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass
class AccountWithUser:
    account: Account
    user: User


@dataclass
class LinkingCallbacks:
    """Hooks into user creation.

    ``create_or_update_user(existing_user_id, profile, provider)`` replaces
    the default linking and must return the user id to attach the account to.
    ``after_user_created_or_updated(user_id, existing_user_id, profile,
    provider)`` runs after every upsert. Both may be sync or async.
    """

    create_or_update_user: Optional[Callable[..., MaybeAwaitable]] = None
    after_user_created_or_updated: Optional[Callable[..., MaybeAwaitable]] = None


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class LinkRequest:
    provider: BaseProvider
    profile: dict[str, Any]
    provider_account_id: Optional[str] = None
    existing_account: Optional[Account] = None
    secret: Optional[str] = None
    should_link_via_email: bool = False
    should_link_via_phone: bool = False


class LinkingPolicy:
    """Decides which user a new or returning account belongs to.

    Identities merge only through a *verified* email or phone that exactly one
    existing user holds. A match on an unverified address, or matches that
    point to two different users, always produce a fresh user instead.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        callbacks: Optional[LinkingCallbacks] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.callbacks = callbacks or LinkingCallbacks()
        self._clock = clock

    async def upsert_user_and_account(
        self,
        request: LinkRequest,
        *,
        current: Optional[AuthContext] = None,
    ) -> AccountWithUser:
        existing = request.existing_account
        existing_user_id = existing.user_id if existing is not None else None
        provider = request.provider
        profile = request.profile

        if self.callbacks.create_or_update_user is not None:
            user_id = await _resolve(
                self.callbacks.create_or_update_user(existing_user_id, profile, provider)
            )
            account = self._create_or_update_account(user_id, request)
        else:
            # user and account writes commit together
            with self.store.transaction():
                user_id = self._default_create_or_update_user(existing_user_id, request)
                account = self._create_or_update_account(user_id, request)

        if self.callbacks.after_user_created_or_updated is not None:
            await _resolve(
                self.callbacks.after_user_created_or_updated(
                    user_id, existing_user_id, profile, provider
                )
            )
        if current is not None and current.user_id != user_id:
            logger.info(
                "linking_dropped_foreign_session",
                session_id=current.session_id,
                user_id=user_id,
            )
            self.store.delete_session(current.session_id)
        user = self.store.get_user(user_id)
        return AccountWithUser(account=account, user=user)

    def _default_create_or_update_user(
        self, existing_user_id: Optional[str], request: LinkRequest
    ) -> str:
        provider = request.provider
        profile = request.profile
        email = profile.get("email")
        phone = profile.get("phone")

        email_verified = profile.get("email_verified")
        if email_verified is None:
            email_verified = provider.allows_email_account_linking
        phone_verified = bool(profile.get("phone_verified"))
        link_via_email = (
            request.should_link_via_email
            or bool(email_verified)
            or provider.type == ProviderType.EMAIL
        )
        link_via_phone = (
            request.should_link_via_phone
            or phone_verified
            or provider.type == ProviderType.PHONE
        )

        with self.store.transaction():
            user_id = existing_user_id
            if user_id is not None and self.store.get_user(user_id) is None:
                logger.warning("linking_account_user_missing", user_id=user_id)
                user_id = None

            if user_id is None:
                by_email = (
                    self._unique_verified_user(self.store.find_users_by_verified_email(email))
                    if isinstance(email, str) and link_via_email
                    else None
                )
                by_phone = (
                    self._unique_verified_user(self.store.find_users_by_verified_phone(phone))
                    if isinstance(phone, str) and link_via_phone
                    else None
                )
                if by_email is not None and by_phone is not None and by_email != by_phone:
                    logger.info("linking_ambiguous_match", provider=provider.id)
                    user_id = None
                else:
                    user_id = by_email or by_phone
                if user_id is not None:
                    logger.info("account_linked_to_user", provider=provider.id, user_id=user_id)

            changes = self._user_changes(profile, bool(email_verified), phone_verified)
            if user_id is not None:
                if "meta" in changes:
                    current_meta = self.store.get_user(user_id).meta or {}
                    changes["meta"] = {**current_meta, **changes["meta"]}
                self.store.patch_user(user_id, **changes)
                return user_id
            user = self.store.create_user(**changes)
            logger.info("user_created", user_id=user.id, provider=provider.id)
            return user.id

    @staticmethod
    def _unique_verified_user(users: list[User]) -> Optional[str]:
        if len(users) != 1:
            return None
        return users[0].id

    def _user_changes(
        self, profile: dict[str, Any], email_verified: bool, phone_verified: bool
    ) -> dict[str, Any]:
        now = self._clock()
        changes: dict[str, Any] = {}
        meta: dict[str, Any] = {}
        for key, value in profile.items():
            if key in _PROFILE_FLAGS:
                continue
            if key in _USER_FIELDS:
                changes[key] = value
            else:
                meta[key] = value
        if email_verified and profile.get("email"):
            changes["email_verification_time"] = now
        if phone_verified and profile.get("phone"):
            changes["phone_verification_time"] = now
        if meta:
            changes["meta"] = meta
        return changes

    def _create_or_update_account(self, user_id: str, request: LinkRequest) -> Account:
        profile = request.profile
        with self.store.transaction():
            account = request.existing_account
            if account is None:
                account = self.store.create_account(
                    user_id,
                    request.provider.id,
                    request.provider_account_id,
                    secret=request.secret,
                )
            elif account.user_id != user_id:
                account = self.store.patch_account(account.id, user_id=user_id)
            if profile.get("email_verified") and profile.get("email"):
                account = self.store.patch_account(account.id, email_verified=profile["email"])
            if profile.get("phone_verified") and profile.get("phone"):
                account = self.store.patch_account(account.id, phone_verified=profile["phone"])
            return account
