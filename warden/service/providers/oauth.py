from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional
from urllib.parse import urlencode

import httpx

from warden.config import Settings
from warden.logging import get_logger
from warden.service.codes import generate_otp_code
from warden.service.crypto import b64url_encode
from warden.service.errors import (
    OAuthInvalidProfile,
    OAuthInvalidState,
    OAuthMissingVerifier,
    OAuthProviderError,
    ProviderNotConfigured,
)
from warden.service.linking import LinkRequest
from warden.service.outcomes import Redirect
from warden.service.providers.base import BaseProvider, ProviderType
from warden.service.sessions import AuthContext

if TYPE_CHECKING:
    from warden.service.signin import AuthEngine

logger = get_logger(__name__)


def _google_profile(userinfo: dict) -> dict:
    return {
        "id": userinfo.get("id") or userinfo.get("sub"),
        "email": userinfo.get("email"),
        "email_verified": userinfo.get("verified_email", userinfo.get("email_verified")),
        "name": userinfo.get("name"),
        "image": userinfo.get("picture"),
    }


def _github_profile(userinfo: dict) -> dict:
    uid = userinfo.get("id")
    return {
        "id": str(uid) if uid is not None else None,
        "email": userinfo.get("email"),
        "name": userinfo.get("name") or userinfo.get("login"),
        "image": userinfo.get("avatar_url"),
    }


def _microsoft_profile(userinfo: dict) -> dict:
    return {
        "id": userinfo.get("id"),
        "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
        "name": userinfo.get("displayName"),
        # Graph needs a separate call for photos
        "image": None,
    }


def _default_profile(userinfo: dict) -> dict:
    return {
        "id": userinfo.get("id") or userinfo.get("sub"),
        "email": userinfo.get("email"),
        "email_verified": userinfo.get("email_verified"),
        "name": userinfo.get("name"),
        "image": userinfo.get("picture"),
    }


# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "authorization_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
        "profile": _google_profile,
    },
    "github": {
        "authorization_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
        "profile": _github_profile,
    },
    "microsoft": {
        "authorization_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
        "profile": _microsoft_profile,
    },
}

GITHUB_EMAILS_URL = "https://api.github.com/user/emails"


@dataclass
class OAuthCompletion:
    """Result of a provider callback: the client redirects to ``redirect``
    and then signs in with ``code`` and its verifier."""

    code: str
    redirect: str
    verifier: str


@dataclass
class OAuthProvider(BaseProvider):
    type: ClassVar[ProviderType] = ProviderType.OAUTH

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    scope: str = ""
    redirect_uri: Optional[str] = None
    allow_dangerous_email_account_linking: bool = True
    profile: Callable[[dict], dict] = _default_profile
    authorization_params: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0

    @property
    def allows_email_account_linking(self) -> bool:
        return self.allow_dangerous_email_account_linking

    @classmethod
    def preset(cls, name: str, settings: Settings, **overrides: Any) -> "OAuthProvider":
        """Build one of the bundled google/github/microsoft configurations."""
        if name not in OAUTH_PROVIDERS:
            raise ProviderNotConfigured(f"Unsupported OAuth provider: {name}")
        config = dict(OAUTH_PROVIDERS[name])
        client_id = getattr(settings, f"oauth_{name}_client_id")
        client_secret = getattr(settings, f"oauth_{name}_client_secret")
        params: dict[str, Any] = {
            "id": name,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": settings.oauth_redirect_uri,
            **config,
        }
        if name == "google":
            params["authorization_params"] = {"access_type": "offline", "prompt": "consent"}
        params.update(overrides)
        return cls(**params)

    def callback_uri(self, settings: Settings) -> str:
        if self.redirect_uri:
            return self.redirect_uri
        return f"{settings.require('site_url')}/api/auth/callback/{self.id}"

    def create_authorization_url(
        self, *, state: str, code_challenge: str, redirect_uri: str
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            **self.authorization_params,
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, *, code_verifier: Optional[str], redirect_uri: str
    ) -> dict:
        """Trade the authorization code for the provider's userinfo document."""
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            token_data["code_verifier"] = code_verifier
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, follow_redirects=False
            ) as client:
                token_response = await client.post(
                    self.token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.id)
                    raise OAuthProviderError(detail={"provider": self.id})

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                # GitHub requires a special header
                if self.id == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(self.userinfo_url, headers=userinfo_headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error(
                        "oauth_userinfo_invalid_format",
                        provider=self.id,
                        type=type(userinfo).__name__,
                    )
                    raise OAuthProviderError(detail={"provider": self.id})

                # GitHub only exposes a private address through the emails endpoint
                if self.id == "github" and not userinfo.get("email"):
                    emails_response = await client.get(GITHUB_EMAILS_URL, headers=userinfo_headers)
                    if emails_response.status_code == 200:
                        primary = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            userinfo["email"] = primary
                            userinfo["email_verified"] = True
                return userinfo
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.id,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise OAuthProviderError(detail={"provider": self.id}) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.id, error=str(exc))
            raise OAuthProviderError(detail={"provider": self.id}) from exc

    def parse_profile(self, userinfo: dict) -> dict:
        profile = self.profile(userinfo)
        if self.id == "github" and userinfo.get("email_verified"):
            profile["email_verified"] = True
        return {key: value for key, value in profile.items() if value is not None}


def _pkce_challenge(code_verifier: str) -> str:
    return b64url_encode(hashlib.sha256(code_verifier.encode()).digest())


async def start_oauth(
    engine: "AuthEngine",
    provider: OAuthProvider,
    params: dict[str, Any],
    *,
    auth: Optional[AuthContext] = None,
) -> Redirect:
    if not provider.client_id or not provider.authorization_url:
        logger.warning("oauth_not_configured", provider=provider.id)
        raise ProviderNotConfigured(
            f"OAuth provider {provider.id} is not configured", detail={"provider": provider.id}
        )
    # Fail before creating state for a redirect target we would refuse later
    engine.redirect_url(params.get("redirectTo"))
    state = secrets.token_urlsafe(32)
    code_verifier = secrets.token_urlsafe(64)
    verifier = engine.verifiers.create(
        session_id=auth.session_id if auth is not None else None,
        signature=state,
        code_verifier=code_verifier,
    )
    url = provider.create_authorization_url(
        state=state,
        code_challenge=_pkce_challenge(code_verifier),
        redirect_uri=provider.callback_uri(engine.settings),
    )
    logger.info("oauth_started", provider=provider.id)
    return Redirect(redirect=url, verifier=verifier)


async def complete_oauth(
    engine: "AuthEngine",
    provider: OAuthProvider,
    code: str,
    state: Optional[str],
    verifier: Optional[str],
    *,
    redirect_to: Optional[str] = None,
) -> OAuthCompletion:
    """Handle the provider callback and mint the short completion code."""
    if not verifier:
        raise OAuthMissingVerifier()
    record = engine.verifiers.get(verifier)
    if record is None:
        raise OAuthMissingVerifier()
    if not state or record.signature is None or not hmac.compare_digest(record.signature, state):
        engine.verifiers.delete(verifier)
        logger.warning("oauth_state_mismatch", provider=provider.id)
        raise OAuthInvalidState()

    userinfo = await provider.exchange_code(
        code,
        code_verifier=record.code_verifier,
        redirect_uri=provider.callback_uri(engine.settings),
    )
    profile = provider.parse_profile(userinfo)
    provider_account_id = profile.get("id")
    if not provider_account_id:
        logger.error("oauth_identity_missing_uid", provider=provider.id)
        raise OAuthInvalidProfile()
    provider_account_id = str(provider_account_id)

    current = None
    if record.session_id is not None:
        session = engine.store.get_session(record.session_id)
        if session is not None:
            current = AuthContext(user_id=session.user_id, session_id=session.id)

    linked = await engine.linking.upsert_user_and_account(
        LinkRequest(
            provider=provider,
            profile=profile,
            provider_account_id=provider_account_id,
            existing_account=engine.store.get_account(provider.id, provider_account_id),
        ),
        current=current,
    )
    engine.verifiers.delete(verifier)

    completion_code = generate_otp_code()
    engine.codes.create(
        linked.account.id,
        provider.id,
        completion_code,
        ttl=timedelta(seconds=engine.settings.oauth_code_ttl_seconds),
        verifier=verifier,
    )
    logger.info("oauth_exchange_success", provider=provider.id, user_id=linked.user.id)
    return OAuthCompletion(
        code=completion_code,
        redirect=engine.add_query(engine.redirect_url(redirect_to), code=completion_code),
        verifier=verifier,
    )
