from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from warden.config import Settings
from warden.logging import get_logger
from warden.service.accounts import CredentialStore
from warden.service.apikeys import ApiKeyManager
from warden.service.codes import VerificationCodeManager
from warden.service.errors import (
    AuthError,
    MissingRequiredParam,
    OAuthMissingProvider,
    ProviderNotConfigured,
    UnsupportedProviderType,
)
from warden.service.linking import LinkingCallbacks, LinkingPolicy
from warden.service.outcomes import (
    DeviceCode,
    PasskeyOptions,
    Redirect,
    RefreshTokens,
    SignedIn,
    SignInResult,
    Started,
    TotpRequired,
    TotpSetup,
)
from warden.service.providers import device as device_flow
from warden.service.providers.base import BaseProvider, ProviderType, validate_redirect
from warden.service.providers.credentials import handle_credentials
from warden.service.providers.device import handle_device
from warden.service.providers.email import handle_email_or_phone, verify_code
from warden.service.providers.oauth import (
    OAuthCompletion,
    OAuthProvider,
    complete_oauth,
    start_oauth,
)
from warden.service.providers.passkey import handle_passkey
from warden.service.providers.totp import handle_totp
from warden.service.ratelimit import RateLimiter
from warden.service.sessions import AuthContext, SessionEngine
from warden.service.tokens import TokenSigner
from warden.service.verifiers import VerifierManager
from warden.storage.common import AuthStore
from warden.storage.models import utcnow

logger = get_logger(__name__)

__all__ = [
    "AuthEngine",
    "DeviceCode",
    "PasskeyOptions",
    "Redirect",
    "RefreshTokens",
    "SignedIn",
    "SignInResult",
    "Started",
    "TotpRequired",
    "TotpSetup",
]


class AuthEngine:
    """Entry point that turns provider interactions into sessions and tokens.

    All collaborators share one store, one settings object and one clock, so
    tests can drive the whole engine with a fake clock and a
    :class:`~warden.storage.memory.MemoryStore`.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        providers: Iterable[BaseProvider] = (),
        *,
        callbacks: Optional[LinkingCallbacks] = None,
        allowed_api_key_scopes: Optional[dict[str, list[str]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.providers: dict[str, BaseProvider] = {}
        for provider in providers:
            if provider.id in self.providers:
                raise ProviderNotConfigured(
                    f"Duplicate provider id {provider.id}", detail={"provider": provider.id}
                )
            self.providers[provider.id] = provider

        self.signer = TokenSigner(settings)
        self.sessions = SessionEngine(store, settings, signer=self.signer, clock=clock)
        self.verifiers = VerifierManager(store, settings, clock=clock)
        self.codes = VerificationCodeManager(store, clock=clock)
        self.rate_limiter = RateLimiter(store, settings, clock=clock)
        self.linking = LinkingPolicy(store, callbacks=callbacks, clock=clock)
        self.accounts = CredentialStore(store, self.linking, self.rate_limiter)
        self.api_keys = ApiKeyManager(
            store, settings, allowed_scopes=allowed_api_key_scopes, clock=clock
        )

    # -- helpers shared by provider handlers ---------------------------------

    def get_provider(self, provider_id: str) -> BaseProvider:
        provider = self.providers.get(provider_id)
        if provider is None:
            logger.warning("provider_not_configured", provider=provider_id)
            raise ProviderNotConfigured(
                f"Provider `{provider_id}` is not configured", detail={"provider": provider_id}
            )
        return provider

    def redirect_url(self, redirect_to: Optional[str] = None) -> str:
        """Absolute URL of a validated ``redirectTo`` (default: the site root)."""
        site_url = self.settings.require("site_url")
        target = validate_redirect(redirect_to, site_url)
        if not target:
            return site_url
        if target.startswith("/"):
            return f"{site_url}{target}"
        return target

    @staticmethod
    def add_query(url: str, **params: str) -> str:
        parsed = urlparse(url)
        query = [(k, v) for k, v in parse_qsl(parsed.query) if k not in params]
        query.extend(params.items())
        return urlunparse(parsed._replace(query=urlencode(query)))

    # -- public operations -------------------------------------------------

    def authenticate(self, access_token: Optional[str]) -> Optional[AuthContext]:
        return self.sessions.authenticate(access_token)

    async def sign_in(
        self,
        provider_id: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        *,
        account_id: Optional[str] = None,
        verifier: Optional[str] = None,
        refresh_token: Optional[str] = None,
        auth: Optional[AuthContext] = None,
    ) -> SignInResult:
        params = dict(params or {})
        try:
            return await self._dispatch(
                provider_id,
                params,
                account_id=account_id,
                verifier=verifier,
                refresh_token=refresh_token,
                auth=auth,
            )
        except AuthError as exc:
            if exc.expected:
                logger.info("sign_in_rejected", provider=provider_id, error=exc.code)
            else:
                logger.error(
                    "sign_in_failed", provider=provider_id, error=exc.code, detail=exc.detail
                )
            raise

    async def _dispatch(
        self,
        provider_id: Optional[str],
        params: dict[str, Any],
        *,
        account_id: Optional[str],
        verifier: Optional[str],
        refresh_token: Optional[str],
        auth: Optional[AuthContext],
    ) -> SignInResult:
        if provider_id is None and refresh_token is not None:
            refreshed = self.sessions.refresh(refresh_token)
            if refreshed is None:
                return SignedIn(None)
            return RefreshTokens(tokens=refreshed.tokens)

        if provider_id is None and params.get("code") is not None:
            verified = await verify_code(self, None, params, verifier=verifier, auth=auth)
            return SignedIn(self.sessions.sign_in(verified.user.id, current=auth))

        if provider_id is None:
            raise MissingRequiredParam(code="SIGN_IN_MISSING_PARAMS")

        provider = self.get_provider(provider_id)
        if provider.type == ProviderType.CREDENTIALS:
            return await handle_credentials(self, provider, params, auth=auth)
        elif provider.type in (ProviderType.EMAIL, ProviderType.PHONE):
            return await handle_email_or_phone(
                self, provider, params, account_id=account_id, verifier=verifier, auth=auth
            )
        elif provider.type == ProviderType.OAUTH:
            if params.get("code") is None:
                return await start_oauth(self, provider, params, auth=auth)
            verified = await verify_code(self, provider, params, verifier=verifier, auth=auth)
            return SignedIn(self.sessions.sign_in(verified.user.id, current=auth))
        elif provider.type == ProviderType.PASSKEY:
            return await handle_passkey(self, provider, params, verifier=verifier, auth=auth)
        elif provider.type == ProviderType.TOTP:
            return await handle_totp(self, provider, params, verifier=verifier, auth=auth)
        elif provider.type == ProviderType.DEVICE:
            return await handle_device(self, provider, params, auth=auth)
        raise UnsupportedProviderType(detail={"provider": provider_id})

    async def oauth_callback(
        self,
        provider_id: Optional[str],
        code: str,
        state: Optional[str],
        verifier: Optional[str],
        *,
        redirect_to: Optional[str] = None,
    ) -> OAuthCompletion:
        if not provider_id:
            raise OAuthMissingProvider()
        provider = self.get_provider(provider_id)
        if not isinstance(provider, OAuthProvider):
            raise UnsupportedProviderType(detail={"provider": provider_id})
        return await complete_oauth(
            self, provider, code, state, verifier, redirect_to=redirect_to
        )

    def sign_out(self, auth: Optional[AuthContext]) -> Optional[dict]:
        return self.sessions.sign_out(auth)

    def approve_device(self, user_code: str, auth: Optional[AuthContext]) -> None:
        device_flow.approve(self, user_code, auth)

    def deny_device(self, user_code: str, auth: Optional[AuthContext]) -> None:
        device_flow.deny(self, user_code, auth)

    def invalidate_sessions(self, user_id: str, except_ids: Iterable[str] = ()) -> int:
        return self.sessions.invalidate_sessions(user_id, except_ids)
