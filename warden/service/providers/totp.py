from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Optional
from urllib.parse import quote, urlencode

from warden.logging import get_logger
from warden.service.errors import TooManyFailedAttempts, TotpError
from warden.service.outcomes import SignedIn, SignInResult, TotpSetup
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.sessions import AuthContext

if TYPE_CHECKING:
    from warden.service.signin import AuthEngine

logger = get_logger(__name__)

SECRET_BYTES = 20


@dataclass
class TotpProvider(BaseProvider):
    """RFC 6238 second factor (HMAC-SHA1, as authenticator apps expect)."""

    type: ClassVar[ProviderType] = ProviderType.TOTP

    id: str = "totp"
    issuer: Optional[str] = None
    digits: int = 6
    period: int = 30


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")


def generate_totp(secret: str, counter: int, *, digits: int = 6) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def match_totp(
    secret: str,
    code: str,
    *,
    now: datetime,
    period: int = 30,
    digits: int = 6,
    window: int = 1,
) -> Optional[int]:
    """Return the time step ``code`` belongs to, allowing +/- ``window`` steps."""
    current = int(now.timestamp() // period)
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, current + offset, digits=digits)
        # SECURITY: Use constant-time comparison to prevent timing attacks
        if generated and hmac.compare_digest(generated, code):
            return current + offset
    return None


def build_otpauth_uri(
    secret: str, account_name: str, *, issuer: str, digits: int = 6, period: int = 30
) -> str:
    label = quote(f"{issuer}:{account_name}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": period,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def _stashed_user_id(engine: "AuthEngine", verifier: Optional[str]):
    if not verifier:
        raise TotpError(code="TOTP_MISSING_VERIFIER")
    record = engine.verifiers.get(verifier)
    if record is None or not record.signature:
        raise TotpError(code="TOTP_INVALID_VERIFIER")
    try:
        user_id = json.loads(record.signature).get("userId")
    except (ValueError, AttributeError):
        user_id = None
    if not user_id:
        raise TotpError(code="TOTP_INVALID_VERIFIER")
    return record, user_id


def _check_code(engine: "AuthEngine", totp, code: str) -> None:
    limiter_key = f"totp:{totp.user_id}"
    if engine.rate_limiter.is_limited(limiter_key):
        raise TooManyFailedAttempts()
    now = engine.clock()
    step = match_totp(totp.secret, code, now=now, period=totp.period, digits=totp.digits)
    last_step = (
        int(totp.last_used_at.timestamp() // totp.period) if totp.last_used_at else None
    )
    if step is None or (last_step is not None and step <= last_step):
        engine.rate_limiter.record_failure(limiter_key)
        logger.info("totp_code_rejected", user_id=totp.user_id, replay=step is not None)
        raise TotpError(code="TOTP_INVALID_CODE")
    engine.rate_limiter.reset(limiter_key)
    # Stamp the step start so the same code cannot be replayed
    engine.store.patch_totp(
        totp.id, last_used_at=datetime.fromtimestamp(step * totp.period, tz=now.tzinfo)
    )


def _required_code(params: dict[str, Any]) -> str:
    code = params.get("code")
    if not isinstance(code, str) or not code:
        raise TotpError(code="TOTP_MISSING_CODE")
    return code


async def handle_totp(
    engine: "AuthEngine",
    provider: TotpProvider,
    params: dict[str, Any],
    *,
    verifier: Optional[str] = None,
    auth: Optional[AuthContext] = None,
) -> SignInResult:
    flow = params.get("flow")
    if flow == "setup":
        return setup(engine, provider, params, auth=auth)
    if flow == "confirm":
        return confirm(engine, params, verifier=verifier, auth=auth)
    if flow == "verify":
        return verify(engine, params, verifier=verifier, auth=auth)
    if flow is None:
        raise TotpError(code="TOTP_MISSING_FLOW")
    raise TotpError(code="TOTP_UNKNOWN_FLOW", detail={"flow": flow})


def setup(
    engine: "AuthEngine",
    provider: TotpProvider,
    params: dict[str, Any],
    *,
    auth: Optional[AuthContext],
) -> TotpSetup:
    if auth is None:
        raise TotpError(code="TOTP_AUTH_REQUIRED")
    user = engine.store.get_user(auth.user_id)
    secret = generate_secret()
    record = engine.store.create_totp(
        auth.user_id,
        secret,
        digits=provider.digits,
        period=provider.period,
        name=params.get("name"),
    )
    verifier = engine.verifiers.create(
        session_id=auth.session_id, signature=json.dumps({"userId": auth.user_id})
    )
    issuer = provider.issuer or engine.settings.totp_issuer
    account_name = (user.email if user is not None else None) or auth.user_id
    logger.info("totp_setup_started", user_id=auth.user_id, totp_id=record.id)
    return TotpSetup(
        uri=build_otpauth_uri(
            secret, account_name, issuer=issuer, digits=provider.digits, period=provider.period
        ),
        secret=secret,
        verifier=verifier,
        totp_id=record.id,
    )


def confirm(
    engine: "AuthEngine",
    params: dict[str, Any],
    *,
    verifier: Optional[str],
    auth: Optional[AuthContext],
) -> SignedIn:
    code = _required_code(params)
    totp_id = params.get("totpId")
    if not totp_id:
        raise TotpError(code="TOTP_MISSING_ID")
    record, user_id = _stashed_user_id(engine, verifier)
    totp = engine.store.get_totp(totp_id)
    if totp is None or totp.user_id != user_id:
        raise TotpError(code="TOTP_NOT_FOUND")
    if totp.verified:
        raise TotpError(code="TOTP_ALREADY_VERIFIED")
    _check_code(engine, totp, code)
    engine.store.patch_totp(totp.id, verified=True)
    engine.verifiers.delete(record.id)
    logger.info("totp_enrollment_confirmed", user_id=user_id, totp_id=totp.id)
    return SignedIn(engine.sessions.sign_in(user_id, current=auth))


def verify(
    engine: "AuthEngine",
    params: dict[str, Any],
    *,
    verifier: Optional[str],
    auth: Optional[AuthContext],
) -> SignedIn:
    code = _required_code(params)
    record, user_id = _stashed_user_id(engine, verifier)
    totp = engine.store.get_verified_totp(user_id)
    if totp is None:
        raise TotpError(code="TOTP_NO_ENROLLMENT")
    _check_code(engine, totp, code)
    engine.verifiers.delete(record.id)

    # Finish the session the password step opened without tokens
    pending = engine.store.get_session(record.session_id) if record.session_id else None
    if pending is not None and pending.user_id == user_id:
        return SignedIn(engine.sessions.sign_in(user_id, session_id=pending.id))
    return SignedIn(engine.sessions.sign_in(user_id, current=auth))
