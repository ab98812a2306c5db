from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional

from warden.logging import get_logger
from warden.service.codes import generate_magic_link_code
from warden.service.crypto import sha256_hex
from warden.service.errors import (
    AuthError,
    DeliveryError,
    InvalidVerificationCode,
    MissingRequiredParam,
    TooManyFailedAttempts,
)
from warden.service.linking import AccountWithUser, LinkRequest
from warden.service.outcomes import SignedIn, SignInResult, Started
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.sessions import AuthContext

if TYPE_CHECKING:
    from warden.service.signin import AuthEngine

logger = get_logger(__name__)


@dataclass
class EmailProvider(BaseProvider):
    """One-time code or magic link delivered to an email address.

    ``send_verification_request(identifier, *, url, token, expires, provider,
    params)`` is the delivery collaborator; it may be sync or async and any
    exception it raises surfaces as :class:`DeliveryError`.
    """

    type: ClassVar[ProviderType] = ProviderType.EMAIL
    identifier_param: ClassVar[str] = "email"

    send_verification_request: Optional[Callable[..., Any]] = None
    generate_verification_token: Optional[Callable[[], str]] = None
    max_age_seconds: Optional[int] = None
    normalize_identifier: Optional[Callable[[str], str]] = None

    def identifier(self, params: dict[str, Any]) -> Optional[str]:
        value = params.get(self.identifier_param)
        if not isinstance(value, str) or not value.strip():
            return None
        value = value.strip()
        if self.normalize_identifier is not None:
            value = self.normalize_identifier(value)
        return value

    def profile_for(self, identifier: str, *, verified: bool = False) -> dict[str, Any]:
        profile: dict[str, Any] = {self.identifier_param: identifier}
        if verified:
            profile[f"{self.identifier_param}_verified"] = True
        return profile


@dataclass
class PhoneProvider(EmailProvider):
    """Same flow as :class:`EmailProvider`, keyed by phone number."""

    type: ClassVar[ProviderType] = ProviderType.PHONE
    identifier_param: ClassVar[str] = "phone"


async def handle_email_or_phone(
    engine: "AuthEngine",
    provider: EmailProvider,
    params: dict[str, Any],
    *,
    account_id: Optional[str] = None,
    verifier: Optional[str] = None,
    auth: Optional[AuthContext] = None,
) -> SignInResult:
    if "code" not in params:
        return await send_code(engine, provider, params, account_id=account_id, auth=auth)
    result = await verify_code(engine, provider, params, verifier=verifier, auth=auth)
    return SignedIn(engine.sessions.sign_in(result.user.id, current=auth))


async def send_code(
    engine: "AuthEngine",
    provider: EmailProvider,
    params: dict[str, Any],
    *,
    account_id: Optional[str] = None,
    auth: Optional[AuthContext] = None,
) -> Started:
    identifier = provider.identifier(params)
    if identifier is None:
        raise MissingRequiredParam(detail={"param": provider.identifier_param})
    url_base = engine.redirect_url(params.get("redirectTo"))

    if account_id is not None:
        account = engine.store.get_account_by_id(account_id)
        if account is None:
            raise MissingRequiredParam(detail={"param": "account_id"})
    else:
        existing = engine.store.get_account(provider.id, identifier)
        linked = await engine.linking.upsert_user_and_account(
            LinkRequest(
                provider=provider,
                profile=provider.profile_for(identifier),
                provider_account_id=identifier,
                existing_account=existing,
            ),
            current=auth,
        )
        account = linked.account

    token = (
        provider.generate_verification_token()
        if provider.generate_verification_token is not None
        else generate_magic_link_code()
    )
    ttl = timedelta(
        seconds=provider.max_age_seconds or engine.settings.verification_code_ttl_minutes * 60
    )
    stamp = {f"{provider.identifier_param}_verified": identifier}
    record = engine.codes.create(account.id, provider.id, token, ttl=ttl, **stamp)

    if provider.send_verification_request is None:
        logger.error("verification_sender_missing", provider=provider.id)
        raise DeliveryError(detail={"provider": provider.id})
    try:
        sent = provider.send_verification_request(
            identifier,
            url=engine.add_query(url_base, code=token, **{provider.identifier_param: identifier}),
            token=token,
            expires=record.expires_at,
            provider=provider,
            params=params,
        )
        if inspect.isawaitable(sent):
            await sent
    except AuthError:
        raise
    except Exception as exc:
        logger.error(
            "verification_send_failed",
            provider=provider.id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise DeliveryError(detail={"provider": provider.id}) from exc
    logger.info("verification_code_sent", provider=provider.id, account_id=account.id)
    return Started()


def presented_address(provider: Optional[BaseProvider], params: dict[str, Any]) -> Optional[str]:
    """The email or phone a code is redeemed for, normalised by ``provider`` when it can."""
    if isinstance(provider, EmailProvider):
        return provider.identifier(params)
    for name in (EmailProvider.identifier_param, PhoneProvider.identifier_param):
        value = params.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def verify_code(
    engine: "AuthEngine",
    provider: Optional[BaseProvider],
    params: dict[str, Any],
    *,
    verifier: Optional[str] = None,
    auth: Optional[AuthContext] = None,
) -> AccountWithUser:
    """Consume a code and mark the address it was sent to as verified.

    Failed comparisons are rate limited per address. A request that names no
    address can only redeem a code bound to its verifier (the OAuth completion
    code), and is limited per verifier instead.
    """
    code = params.get("code")
    if not isinstance(code, str) or not code:
        raise InvalidVerificationCode()

    address = presented_address(provider, params)
    if address is not None:
        limit_key = address
    elif verifier:
        limit_key = f"verifier:{sha256_hex(verifier)}"
    else:
        raise MissingRequiredParam(
            "A verification code needs the address it was sent to",
            detail={"params": [EmailProvider.identifier_param, PhoneProvider.identifier_param]},
        )
    if engine.rate_limiter.is_limited(limit_key):
        raise TooManyFailedAttempts()

    try:
        record = engine.codes.consume(
            code,
            verifier=verifier,
            provider=provider.id if provider is not None else None,
            require_verifier=address is None,
        )
        account = engine.store.get_account_by_id(record.account_id)
        if account is None:
            logger.info("verification_code_account_missing", account_id=record.account_id)
            raise InvalidVerificationCode()
        stamped = record.email_verified or record.phone_verified
        if address is not None and stamped is not None and stamped != address:
            logger.info("verification_code_identifier_mismatch", provider=record.provider)
            raise InvalidVerificationCode()
    except InvalidVerificationCode:
        engine.rate_limiter.record_failure(limit_key)
        raise

    engine.rate_limiter.reset(limit_key)

    if record.email_verified is None and record.phone_verified is None:
        return AccountWithUser(account=account, user=engine.store.get_user(account.user_id))

    profile: dict[str, Any] = {}
    if record.email_verified is not None:
        profile.update(email=record.email_verified, email_verified=True)
    if record.phone_verified is not None:
        profile.update(phone=record.phone_verified, phone_verified=True)
    code_provider = provider or engine.get_provider(record.provider)
    return await engine.linking.upsert_user_and_account(
        LinkRequest(provider=code_provider, profile=profile, existing_account=account),
        current=auth,
    )
