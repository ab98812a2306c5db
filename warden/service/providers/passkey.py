from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Optional
from urllib.parse import urlparse

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import decode_credential_public_key
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    CredentialDeviceType,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from warden.logging import get_logger
from warden.service.crypto import b64url_decode, b64url_encode
from warden.service.errors import PasskeyCounterRegression, PasskeyError
from warden.service.outcomes import PasskeyOptions, SignedIn, SignInResult
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.sessions import AuthContext
from warden.storage.models import Passkey

if TYPE_CHECKING:
    from warden.service.signin import AuthEngine

logger = get_logger(__name__)

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

_TRANSPORTS = {transport.value for transport in AuthenticatorTransport}


@dataclass
class PasskeyProvider(BaseProvider):
    """WebAuthn registration and assertion, server side only."""

    type: ClassVar[ProviderType] = ProviderType.PASSKEY

    id: str = "passkey"
    rp_id: Optional[str] = None
    rp_name: Optional[str] = None
    origin: Optional[str] = None
    user_verification: str = "preferred"
    attestation: str = "none"
    challenge_ttl_seconds: int = 300


def _rp_id(engine: "AuthEngine", provider: PasskeyProvider) -> str:
    rp_id = provider.rp_id or engine.settings.passkey_rp_id
    if rp_id:
        return rp_id
    return urlparse(engine.settings.require("site_url")).hostname


def _origin(engine: "AuthEngine", provider: PasskeyProvider) -> str:
    return (
        provider.origin
        or engine.settings.passkey_origin
        or engine.settings.require("site_url")
    )


def _descriptors(passkeys: Iterable[Passkey]) -> list[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=b64url_decode(passkey.credential_id),
            transports=[
                AuthenticatorTransport(t) for t in passkey.transports if t in _TRANSPORTS
            ]
            or None,
        )
        for passkey in passkeys
    ]


def _stash_challenge(
    engine: "AuthEngine", provider: PasskeyProvider, challenge: bytes, session_id: Optional[str]
) -> str:
    return engine.verifiers.create(
        session_id=session_id,
        signature=b64url_encode(challenge),
        ttl=timedelta(seconds=provider.challenge_ttl_seconds),
    )


def _credential(params: dict[str, Any]) -> dict[str, Any]:
    """The browser's ``PublicKeyCredential`` as a dict, given as JSON text or already parsed."""
    credential = params.get("credential")
    if isinstance(credential, str):
        try:
            credential = json.loads(credential)
        except ValueError as exc:
            raise PasskeyError(code="PASSKEY_INVALID_CLIENT_DATA") from exc
    if not isinstance(credential, dict):
        raise PasskeyError(code="PASSKEY_INVALID_CLIENT_DATA", detail={"param": "credential"})
    return credential


def _credential_id(credential: dict[str, Any]) -> Optional[str]:
    raw_id = credential.get("rawId") or credential.get("id")
    if not isinstance(raw_id, str) or not raw_id:
        return None
    try:
        return b64url_encode(b64url_decode(raw_id))
    except ValueError:
        return None


def _verification_failed(step: str, exc: Exception) -> PasskeyError:
    logger.info("passkey_verification_failed", step=step, reason=str(exc))
    return PasskeyError(code="PASSKEY_VERIFICATION_FAILED", detail={"reason": str(exc)})


async def handle_passkey(
    engine: "AuthEngine",
    provider: PasskeyProvider,
    params: dict[str, Any],
    *,
    verifier: Optional[str] = None,
    auth: Optional[AuthContext] = None,
) -> SignInResult:
    flow = params.get("flow")
    if flow == "register-options":
        return register_options(engine, provider, auth=auth)
    if flow == "register-verify":
        return register_verify(engine, provider, params, verifier=verifier, auth=auth)
    if flow == "auth-options":
        return auth_options(engine, provider, params)
    if flow == "auth-verify":
        return auth_verify(engine, provider, params, verifier=verifier, auth=auth)
    if flow is None:
        raise PasskeyError(code="PASSKEY_MISSING_FLOW")
    raise PasskeyError(code="PASSKEY_UNKNOWN_FLOW", detail={"flow": flow})


def register_options(
    engine: "AuthEngine", provider: PasskeyProvider, *, auth: Optional[AuthContext]
) -> PasskeyOptions:
    if auth is None:
        raise PasskeyError(code="PASSKEY_AUTH_REQUIRED")
    user = engine.store.get_user(auth.user_id)
    user_name = (user.email or user.phone) if user is not None else None
    rp_id = _rp_id(engine, provider)

    options = generate_registration_options(
        rp_id=rp_id,
        rp_name=provider.rp_name or engine.settings.passkey_rp_name or rp_id,
        user_id=auth.user_id.encode(),
        user_name=user_name or auth.user_id,
        user_display_name=(user.name if user is not None else None) or user_name or auth.user_id,
        timeout=provider.challenge_ttl_seconds * 1000,
        attestation=AttestationConveyancePreference(provider.attestation),
        authenticator_selection=AuthenticatorSelectionCriteria(
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement(provider.user_verification),
        ),
        exclude_credentials=_descriptors(engine.store.list_user_passkeys(auth.user_id)),
        supported_pub_key_algs=SUPPORTED_ALGORITHMS,
    )
    verifier = _stash_challenge(engine, provider, options.challenge, auth.session_id)
    return PasskeyOptions(options=json.loads(options_to_json(options)), verifier=verifier)


def register_verify(
    engine: "AuthEngine",
    provider: PasskeyProvider,
    params: dict[str, Any],
    *,
    verifier: Optional[str],
    auth: Optional[AuthContext],
) -> SignedIn:
    if auth is None:
        raise PasskeyError(code="PASSKEY_AUTH_REQUIRED")
    if not verifier:
        raise PasskeyError(code="PASSKEY_MISSING_VERIFIER")
    record = engine.verifiers.get(verifier)
    if record is None or record.session_id != auth.session_id or not record.signature:
        raise PasskeyError(code="PASSKEY_INVALID_CHALLENGE")

    credential = _credential(params)
    try:
        verification = verify_registration_response(
            credential=credential,
            expected_challenge=b64url_decode(record.signature),
            expected_rp_id=_rp_id(engine, provider),
            expected_origin=_origin(engine, provider),
            require_user_verification=provider.user_verification == "required",
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )
    except (WebAuthnException, ValueError) as exc:
        raise _verification_failed("register", exc) from exc

    algorithm = int(decode_credential_public_key(verification.credential_public_key).alg)
    response = credential.get("response") or {}
    engine.store.create_passkey(
        user_id=auth.user_id,
        credential_id=b64url_encode(verification.credential_id),
        public_key=verification.credential_public_key,
        algorithm=algorithm,
        counter=verification.sign_count,
        transports=list(response.get("transports") or []),
        device_type=(
            "multi-device"
            if verification.credential_device_type == CredentialDeviceType.MULTI_DEVICE
            else "single-device"
        ),
        backed_up=verification.credential_backed_up,
        name=params.get("name"),
    )
    engine.verifiers.delete(record.id)
    logger.info("passkey_registered", user_id=auth.user_id, algorithm=algorithm)
    return SignedIn(engine.sessions.sign_in(auth.user_id, current=auth))


def auth_options(
    engine: "AuthEngine", provider: PasskeyProvider, params: dict[str, Any]
) -> PasskeyOptions:
    allowed: list[Passkey] = []
    email = params.get("email")
    if isinstance(email, str) and email:
        users = engine.store.find_users_by_verified_email(email)
        if len(users) == 1:
            allowed = engine.store.list_user_passkeys(users[0].id)

    options = generate_authentication_options(
        rp_id=_rp_id(engine, provider),
        timeout=provider.challenge_ttl_seconds * 1000,
        allow_credentials=_descriptors(allowed),
        user_verification=UserVerificationRequirement(provider.user_verification),
    )
    verifier = _stash_challenge(engine, provider, options.challenge, None)
    return PasskeyOptions(options=json.loads(options_to_json(options)), verifier=verifier)


def auth_verify(
    engine: "AuthEngine",
    provider: PasskeyProvider,
    params: dict[str, Any],
    *,
    verifier: Optional[str],
    auth: Optional[AuthContext],
) -> SignedIn:
    if not verifier:
        raise PasskeyError(code="PASSKEY_MISSING_VERIFIER")
    record = engine.verifiers.get(verifier)
    if record is None or not record.signature:
        raise PasskeyError(code="PASSKEY_INVALID_CHALLENGE")

    credential = _credential(params)
    credential_id = _credential_id(credential)
    passkey = engine.store.get_passkey_by_credential_id(credential_id) if credential_id else None
    if passkey is None:
        raise PasskeyError(code="PASSKEY_UNKNOWN_CREDENTIAL")

    try:
        # Counter regression is judged below, where zero counters are allowed.
        verification = verify_authentication_response(
            credential=credential,
            expected_challenge=b64url_decode(record.signature),
            expected_rp_id=_rp_id(engine, provider),
            expected_origin=_origin(engine, provider),
            credential_public_key=passkey.public_key,
            credential_current_sign_count=0,
            require_user_verification=provider.user_verification == "required",
        )
    except (WebAuthnException, ValueError) as exc:
        raise _verification_failed("authenticate", exc) from exc

    presented = verification.new_sign_count
    if passkey.counter != 0 and presented != 0 and presented <= passkey.counter:
        logger.warning(
            "passkey_counter_regression",
            user_id=passkey.user_id,
            stored=passkey.counter,
            presented=presented,
        )
        raise PasskeyCounterRegression()

    engine.store.patch_passkey(
        passkey.id,
        counter=presented,
        backed_up=verification.credential_backed_up,
        last_used_at=engine.clock(),
    )
    engine.verifiers.delete(record.id)
    logger.info("passkey_authenticated", user_id=passkey.user_id)
    return SignedIn(engine.sessions.sign_in(passkey.user_id, current=auth))
