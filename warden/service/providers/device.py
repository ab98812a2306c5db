from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional
from urllib.parse import quote

from warden.logging import get_logger
from warden.service.crypto import ALPHANUMERIC, random_string, sha256_hex
from warden.service.errors import (
    AuthError,
    DeviceAuthorizationPending,
    DeviceCodeDenied,
    DeviceCodeExpired,
    DeviceError,
    DeviceInvalidCode,
    DeviceSlowDown,
    NotSignedIn,
)
from warden.service.outcomes import DeviceCode, SignedIn, SignInResult
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.sessions import AuthContext
from warden.storage.errors import ConstraintViolation
from warden.storage.models import DeviceAuthorization

if TYPE_CHECKING:
    from warden.service.signin import AuthEngine

logger = get_logger(__name__)

DEVICE_CODE_LENGTH = 40
# Consonants only, so user codes never spell words and survive being read aloud
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ"
USER_CODE_LENGTH = 8
_USER_CODE_ATTEMPTS = 5

STATUS_PENDING = "pending"
STATUS_AUTHORIZED = "authorized"
STATUS_DENIED = "denied"


@dataclass
class DeviceProvider(BaseProvider):
    """OAuth 2.0 device authorization grant (RFC 8628)."""

    type: ClassVar[ProviderType] = ProviderType.DEVICE

    id: str = "device"
    expires_in: int = 900
    interval: int = 5
    verification_uri: Optional[str] = None


def format_user_code(raw: str) -> str:
    half = len(raw) // 2
    return f"{raw[:half]}-{raw[half:]}"


def normalize_user_code(user_code: str) -> str:
    compact = "".join(ch for ch in user_code.upper() if ch.isalnum())
    return format_user_code(compact)


async def handle_device(
    engine: "AuthEngine",
    provider: DeviceProvider,
    params: dict[str, Any],
    *,
    auth: Optional[AuthContext] = None,
) -> SignInResult:
    flow = params.get("flow")
    if flow is None:
        return start(engine, provider)
    if flow == "poll":
        return poll(engine, params.get("deviceCode"))
    if flow == "verify":
        user_code = params.get("userCode")
        if not user_code:
            raise DeviceError(code="DEVICE_INVALID_USER_CODE")
        return SignedIn(approve(engine, user_code, auth))
    raise DeviceError(code="DEVICE_UNKNOWN_FLOW", detail={"flow": flow})


def start(engine: "AuthEngine", provider: DeviceProvider) -> DeviceCode:
    device_code = random_string(DEVICE_CODE_LENGTH, ALPHANUMERIC)
    expires_at = engine.clock() + timedelta(seconds=provider.expires_in)
    for attempt in range(_USER_CODE_ATTEMPTS):
        user_code = format_user_code(random_string(USER_CODE_LENGTH, USER_CODE_ALPHABET))
        try:
            engine.store.create_device_authorization(
                device_code_hash=sha256_hex(device_code),
                user_code=user_code,
                expires_at=expires_at,
                interval=provider.interval,
            )
            break
        except ConstraintViolation:
            logger.warning("device_user_code_collision", attempt=attempt)
    else:
        raise DeviceError(code="INTERNAL_ERROR")

    verification_uri = (
        provider.verification_uri or f"{engine.settings.require('site_url')}/device"
    )
    logger.info("device_authorization_started", provider=provider.id)
    return DeviceCode(
        device_code=device_code,
        user_code=user_code,
        verification_uri=verification_uri,
        verification_uri_complete=f"{verification_uri}?user_code={quote(user_code)}",
        expires_in=provider.expires_in,
        interval=provider.interval,
    )


def poll(engine: "AuthEngine", device_code: Optional[str]) -> SignedIn:
    """One RFC 8628 token request; every non-terminal answer is an exception.

    Poll bookkeeping is committed before the answer is raised, so a slow-down
    or a denial is remembered by the next poll.
    """
    if not device_code:
        raise DeviceError(code="DEVICE_MISSING_FLOW")
    now = engine.clock()
    answer: Optional[AuthError] = None
    with engine.store.transaction():
        record = engine.store.get_device_by_code_hash(sha256_hex(device_code))
        if record is None:
            raise DeviceInvalidCode()
        if record.expires_at <= now:
            engine.store.delete_device(record.id)
            answer = DeviceCodeExpired()
        elif (
            record.last_polled_at is not None
            and (now - record.last_polled_at).total_seconds() < record.interval
        ):
            engine.store.patch_device(record.id, last_polled_at=now)
            answer = DeviceSlowDown(detail={"interval": record.interval})
        elif record.status == STATUS_PENDING:
            engine.store.patch_device(record.id, last_polled_at=now)
            answer = DeviceAuthorizationPending()
        else:
            engine.store.delete_device(record.id)
            if record.status == STATUS_DENIED:
                logger.info("device_authorization_denied", device_id=record.id)
                answer = DeviceCodeDenied()
    if answer is not None:
        raise answer

    logger.info("device_authorization_completed", user_id=record.user_id)
    return SignedIn(engine.sessions.sign_in(record.user_id, session_id=record.session_id))


def _decide(
    engine: "AuthEngine",
    user_code: str,
    auth: Optional[AuthContext],
    apply: Callable[[DeviceAuthorization, AuthContext], None],
) -> DeviceAuthorization:
    """Run ``apply`` on the pending record behind ``user_code``."""
    if auth is None:
        raise NotSignedIn()
    if not user_code:
        raise DeviceError(code="DEVICE_INVALID_USER_CODE")
    with engine.store.transaction():
        record = engine.store.get_device_by_user_code(normalize_user_code(user_code))
        if record is None:
            raise DeviceError(code="DEVICE_INVALID_USER_CODE")
        expired = record.expires_at <= engine.clock()
        if expired:
            engine.store.delete_device(record.id)
        elif record.status != STATUS_PENDING:
            raise DeviceError(code="DEVICE_ALREADY_AUTHORIZED")
        else:
            apply(record, auth)
    if expired:
        raise DeviceCodeExpired()
    return record


def approve(engine: "AuthEngine", user_code: str, auth: Optional[AuthContext]) -> None:
    """Bind a pending device code to the signed-in user.

    The device gets its own session; tokens are only minted when it polls.
    """

    def authorize(record: DeviceAuthorization, ctx: AuthContext) -> None:
        session = engine.sessions.create_session(ctx.user_id)
        engine.store.patch_device(
            record.id, status=STATUS_AUTHORIZED, user_id=ctx.user_id, session_id=session.id
        )

    record = _decide(engine, user_code, auth, authorize)
    logger.info("device_authorization_approved", user_id=auth.user_id, device_id=record.id)


def deny(engine: "AuthEngine", user_code: str, auth: Optional[AuthContext]) -> None:
    record = _decide(
        engine,
        user_code,
        auth,
        lambda pending, ctx: engine.store.patch_device(
            pending.id, status=STATUS_DENIED, user_id=ctx.user_id
        ),
    )
    logger.info("device_authorization_rejected", user_id=auth.user_id, device_id=record.id)
