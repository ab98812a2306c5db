from __future__ import annotations

import inspect
import json
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional, Union

from warden.logging import get_logger
from warden.service.accounts import CredentialsFailure, SecretHasher
from warden.service.errors import (
    ConfigurationError,
    InvalidCredentials,
    InvalidPassword,
    MissingRequiredParam,
    TooManyFailedAttempts,
)
from warden.service.outcomes import SignedIn, SignInResult, Started, TotpRequired
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.providers.email import EmailProvider, send_code, verify_code
from warden.service.sessions import AuthContext

if TYPE_CHECKING:
    from warden.service.signin import AuthEngine

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

# authorize() returns {"user_id": ..., "session_id"?: ...}, None to reject
# softly, or Started when it kicked off an out-of-band verification
AuthorizeResult = Union[dict, None, Started]


@dataclass
class CredentialsProvider(BaseProvider):
    """Provider whose ``authorize(params, engine, auth)`` callable decides."""

    type: ClassVar[ProviderType] = ProviderType.CREDENTIALS

    authorize: Optional[Callable[..., Any]] = None
    hasher: Optional[SecretHasher] = None

    async def run_authorize(
        self, params: dict[str, Any], engine: "AuthEngine", auth: Optional[AuthContext]
    ) -> AuthorizeResult:
        if self.authorize is None:
            raise ConfigurationError(
                "credentials provider has no authorize callable",
                detail={"provider": self.id},
            )
        result = self.authorize(params, engine, auth)
        if inspect.isawaitable(result):
            result = await result
        return result


def default_password_requirements(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidPassword()


@dataclass
class Password(CredentialsProvider):
    """Email and password sign-in with optional reset and verification.

    ``params["flow"]`` selects one of ``signUp``, ``signIn``, ``reset``,
    ``reset-verification`` or ``email-verification``. ``reset`` and
    ``verify`` are email providers used to deliver the respective codes;
    when ``verify`` is set, sign-up and sign-in of an unverified account send
    a verification code instead of signing in.
    """

    id: str = "password"
    profile: Optional[Callable[[dict[str, Any]], dict[str, Any]]] = None
    validate_password_requirements: Callable[[str], None] = default_password_requirements
    reset: Optional[EmailProvider] = None
    verify: Optional[EmailProvider] = None

    def _profile(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.profile is not None:
            return self.profile(params)
        email = params.get("email")
        if not isinstance(email, str) or not email:
            raise MissingRequiredParam(detail={"param": "email"})
        return {"email": email}

    @staticmethod
    def _email(params: dict[str, Any]) -> str:
        email = params.get("email")
        if not isinstance(email, str) or not email:
            raise MissingRequiredParam(detail={"param": "email"})
        return email

    @staticmethod
    def _password(params: dict[str, Any], key: str = "password") -> str:
        password = params.get(key)
        if not isinstance(password, str) or not password:
            raise MissingRequiredParam(detail={"param": key})
        return password

    async def run_authorize(
        self, params: dict[str, Any], engine: "AuthEngine", auth: Optional[AuthContext]
    ) -> AuthorizeResult:
        flow = params.get("flow")
        if flow == "signUp":
            profile = self._profile(params)
            email = profile.get("email") or self._email(params)
            password = self._password(params)
            self.validate_password_requirements(password)
            created = await engine.accounts.create_account_from_credentials(
                self,
                email,
                secret=password,
                profile=profile,
                should_link_via_email=self.verify is not None,
                current=auth,
            )
            account, user = created.account, created.user
        elif flow == "signIn":
            email = self._email(params)
            password = self._password(params)
            retrieved = engine.accounts.retrieve_account_with_credentials(self, email, password)
            if retrieved is CredentialsFailure.TOO_MANY_FAILED_ATTEMPTS:
                raise TooManyFailedAttempts()
            if isinstance(retrieved, CredentialsFailure):
                raise InvalidCredentials()
            account, user = retrieved.account, retrieved.user
        elif flow == "reset":
            if self.reset is None:
                raise ConfigurationError(
                    f"Password reset is not enabled for {self.id}", detail={"provider": self.id}
                )
            found = engine.accounts.retrieve_account(self, self._email(params))
            return await send_code(engine, self.reset, params, account_id=found.account.id)
        elif flow == "reset-verification":
            if self.reset is None:
                raise ConfigurationError(
                    f"Password reset is not enabled for {self.id}", detail={"provider": self.id}
                )
            new_password = self._password(params, "newPassword")
            self.validate_password_requirements(new_password)
            verified = await verify_code(engine, self.reset, params, auth=auth)
            engine.accounts.modify_account_credentials(
                self, verified.account.provider_account_id, new_password
            )
            # A reset credential must not leave older sessions alive
            engine.sessions.invalidate_sessions(verified.user.id)
            logger.info("password_reset_completed", user_id=verified.user.id)
            return {"user_id": verified.user.id}
        elif flow == "email-verification":
            if self.verify is None:
                raise ConfigurationError(
                    f"Email verification is not enabled for {self.id}",
                    detail={"provider": self.id},
                )
            if "code" not in params:
                found = engine.accounts.retrieve_account(self, self._email(params))
                return await send_code(engine, self.verify, params, account_id=found.account.id)
            verified = await verify_code(engine, self.verify, params, auth=auth)
            return {"user_id": verified.user.id}
        else:
            raise MissingRequiredParam(
                "Missing `flow` param, it must be one of "
                '"signUp", "signIn", "reset", "reset-verification" or "email-verification"',
                detail={"param": "flow"},
            )

        if self.verify is not None and not account.email_verified:
            return await send_code(engine, self.verify, params, account_id=account.id)
        return {"user_id": user.id}


@dataclass
class Anonymous(CredentialsProvider):
    """Signs in a brand-new anonymous user on every call."""

    id: str = "anonymous"
    profile: Optional[Callable[[dict[str, Any]], dict[str, Any]]] = None

    async def run_authorize(
        self, params: dict[str, Any], engine: "AuthEngine", auth: Optional[AuthContext]
    ) -> AuthorizeResult:
        profile = self.profile(params) if self.profile is not None else {}
        created = await engine.accounts.create_account_from_credentials(
            self,
            str(uuid.uuid4()),
            profile={**profile, "is_anonymous": True},
            current=auth,
        )
        return {"user_id": created.user.id}


async def handle_credentials(
    engine: "AuthEngine",
    provider: CredentialsProvider,
    params: dict[str, Any],
    *,
    auth: Optional[AuthContext] = None,
) -> SignInResult:
    result = await provider.run_authorize(params, engine, auth)
    if result is None:
        return SignedIn(None)
    if isinstance(result, Started):
        return result
    user_id = result["user_id"]
    session_id = result.get("session_id")

    if engine.store.get_verified_totp(user_id) is not None:
        pending = engine.sessions.sign_in(
            user_id, session_id=session_id, current=auth, generate_tokens=False
        )
        verifier = engine.verifiers.create(
            session_id=pending.session_id,
            signature=json.dumps({"userId": user_id}),
        )
        logger.info("totp_challenge_required", user_id=user_id, provider=provider.id)
        return TotpRequired(verifier=verifier)

    return SignedIn(engine.sessions.sign_in(user_id, session_id=session_id, current=auth))
