from __future__ import annotations

from typing import Optional

# Stable error codes and their default messages. Transport adapters map the
# code, never the message, to wire-level responses.
AUTH_ERRORS: dict[str, str] = {
    "PROVIDER_NOT_CONFIGURED": "The requested auth provider is not configured.",
    "MISSING_ENV_VAR": "A required configuration value is missing.",
    "NOT_SIGNED_IN": "You must be signed in to perform this action.",
    "INVALID_CREDENTIALS": "Invalid credentials.",
    "TOO_MANY_FAILED_ATTEMPTS": "Too many failed attempts. Try again later.",
    "INVALID_PASSWORD": "Password does not meet the requirements.",
    "INVALID_VERIFICATION_CODE": "Invalid or expired verification code.",
    "INVALID_REFRESH_TOKEN": "Invalid refresh token.",
    "SIGN_IN_MISSING_PARAMS": "Sign-in requires a provider, a code or a refresh token.",
    "MISSING_PARAM": "A required parameter is missing.",
    "UNSUPPORTED_PROVIDER_TYPE": "Unsupported provider type.",
    "INVALID_REDIRECT": "Invalid redirect target.",
    "EMAIL_SEND_FAILED": "Failed to deliver the verification message.",
    "INVALID_API_KEY": "Invalid API key.",
    "API_KEY_REVOKED": "API key has been revoked.",
    "API_KEY_EXPIRED": "API key has expired.",
    "API_KEY_RATE_LIMITED": "API key rate limit exceeded.",
    "API_KEY_INVALID_SCOPE": "Requested API key scope is not allowed.",
    "OAUTH_MISSING_PROVIDER": "OAuth callback is missing the provider.",
    "OAUTH_MISSING_VERIFIER": "OAuth flow is missing its verifier.",
    "OAUTH_INVALID_STATE": "OAuth state does not match.",
    "OAUTH_PROVIDER_ERROR": "OAuth provider returned an error.",
    "OAUTH_INVALID_PROFILE": "OAuth profile is missing an id.",
    "ACCOUNT_ALREADY_EXISTS": "Account already exists.",
    "ACCOUNT_NOT_FOUND": "Account not found.",
    "INVALID_VERIFIER": "Invalid or expired verifier.",
    "PASSKEY_INVALID_CLIENT_DATA": "Invalid passkey client data.",
    "PASSKEY_INVALID_CHALLENGE": "Passkey challenge does not match.",
    "PASSKEY_VERIFICATION_FAILED": "Passkey response failed verification.",
    "PASSKEY_UNKNOWN_CREDENTIAL": "Unknown passkey credential.",
    "PASSKEY_COUNTER_ERROR": "Passkey signature counter did not increase.",
    "PASSKEY_MISSING_FLOW": "Missing passkey flow parameter.",
    "PASSKEY_UNKNOWN_FLOW": "Unknown passkey flow.",
    "PASSKEY_AUTH_REQUIRED": "Passkey registration requires a signed-in user.",
    "PASSKEY_MISSING_VERIFIER": "Passkey flow is missing its verifier.",
    "TOTP_AUTH_REQUIRED": "TOTP enrollment requires a signed-in user.",
    "TOTP_MISSING_VERIFIER": "TOTP flow is missing its verifier.",
    "TOTP_MISSING_CODE": "Missing TOTP code.",
    "TOTP_MISSING_ID": "Missing TOTP enrollment id.",
    "TOTP_NOT_FOUND": "TOTP enrollment not found.",
    "TOTP_ALREADY_VERIFIED": "TOTP enrollment is already verified.",
    "TOTP_INVALID_CODE": "Invalid TOTP code.",
    "TOTP_INVALID_VERIFIER": "Invalid or expired TOTP verifier.",
    "TOTP_NO_ENROLLMENT": "No verified TOTP enrollment.",
    "TOTP_MISSING_FLOW": "Missing TOTP flow parameter.",
    "TOTP_UNKNOWN_FLOW": "Unknown TOTP flow.",
    "DEVICE_MISSING_FLOW": "Missing device code.",
    "DEVICE_UNKNOWN_FLOW": "Unknown device flow.",
    "DEVICE_AUTHORIZATION_PENDING": "Device authorization is pending.",
    "DEVICE_SLOW_DOWN": "Polling too frequently.",
    "DEVICE_CODE_EXPIRED": "Device code expired.",
    "DEVICE_CODE_DENIED": "Device authorization was denied.",
    "DEVICE_INVALID_CODE": "Unknown device code.",
    "DEVICE_INVALID_USER_CODE": "Invalid user code.",
    "DEVICE_ALREADY_AUTHORIZED": "Device code was already handled.",
    "INTERNAL_ERROR": "Internal error.",
}


class AuthError(Exception):
    """Base class for authentication failures.

    Every error carries a stable ``code`` from :data:`AUTH_ERRORS`. ``expected``
    separates outcomes of ordinary use (bad password, pending device poll) from
    broken integrations (missing configuration, unreachable OAuth provider);
    only the latter are logged as failures.
    """

    code: str = "INTERNAL_ERROR"
    expected: bool = True

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        if code is not None:
            self.code = code
        self.message = message or AUTH_ERRORS.get(self.code, self.code)
        super().__init__(self.message)
        self.detail = detail or {}

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ConfigurationError(AuthError):
    """Engine is misconfigured; fatal at startup, not per request."""
    code = "PROVIDER_NOT_CONFIGURED"
    expected = False


class ProviderNotConfigured(ConfigurationError):
    code = "PROVIDER_NOT_CONFIGURED"


class MissingEnvVar(ConfigurationError):
    code = "MISSING_ENV_VAR"


class NotSignedIn(AuthError):
    code = "NOT_SIGNED_IN"


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"


class TooManyFailedAttempts(AuthError):
    code = "TOO_MANY_FAILED_ATTEMPTS"


class InvalidPassword(AuthError):
    code = "INVALID_PASSWORD"


class InvalidVerificationCode(AuthError):
    code = "INVALID_VERIFICATION_CODE"


class InvalidRefreshToken(AuthError):
    code = "INVALID_REFRESH_TOKEN"


class MissingRequiredParam(AuthError):
    code = "MISSING_PARAM"


class UnsupportedProviderType(AuthError):
    code = "UNSUPPORTED_PROVIDER_TYPE"


class InvalidRedirect(AuthError):
    code = "INVALID_REDIRECT"


class DeliveryError(AuthError):
    """The delivery collaborator failed to send a code."""
    code = "EMAIL_SEND_FAILED"
    expected = False


class InvalidVerifier(AuthError):
    code = "INVALID_VERIFIER"


class AccountAlreadyExists(AuthError):
    code = "ACCOUNT_ALREADY_EXISTS"


class AccountNotFound(AuthError):
    code = "ACCOUNT_NOT_FOUND"


class OAuthError(AuthError):
    code = "OAUTH_PROVIDER_ERROR"


class OAuthMissingProvider(OAuthError):
    code = "OAUTH_MISSING_PROVIDER"


class OAuthMissingVerifier(OAuthError):
    code = "OAUTH_MISSING_VERIFIER"


class OAuthInvalidState(OAuthError):
    code = "OAUTH_INVALID_STATE"


class OAuthProviderError(OAuthError):
    code = "OAUTH_PROVIDER_ERROR"
    expected = False


class OAuthInvalidProfile(OAuthError):
    code = "OAUTH_INVALID_PROFILE"


class PasskeyError(AuthError):
    """Passkey ceremony failure; ``code`` names the failed step."""
    code = "PASSKEY_VERIFICATION_FAILED"


class PasskeyCounterRegression(PasskeyError):
    code = "PASSKEY_COUNTER_ERROR"


class TotpError(AuthError):
    code = "TOTP_INVALID_CODE"


class DeviceError(AuthError):
    code = "DEVICE_INVALID_USER_CODE"


class DeviceAuthorizationPending(DeviceError):
    code = "DEVICE_AUTHORIZATION_PENDING"


class DeviceSlowDown(DeviceError):
    code = "DEVICE_SLOW_DOWN"


class DeviceCodeExpired(DeviceError):
    code = "DEVICE_CODE_EXPIRED"


class DeviceCodeDenied(DeviceError):
    code = "DEVICE_CODE_DENIED"


class DeviceInvalidCode(DeviceError):
    code = "DEVICE_INVALID_CODE"


class ApiKeyError(AuthError):
    code = "INVALID_API_KEY"


class InvalidApiKey(ApiKeyError):
    code = "INVALID_API_KEY"


class ApiKeyRevoked(ApiKeyError):
    code = "API_KEY_REVOKED"


class ApiKeyExpired(ApiKeyError):
    code = "API_KEY_EXPIRED"


class ApiKeyRateLimited(ApiKeyError):
    code = "API_KEY_RATE_LIMITED"


class ApiKeyInvalidScope(ApiKeyError):
    code = "API_KEY_INVALID_SCOPE"


__all__ = [
    "AUTH_ERRORS",
    "AuthError",
    "ConfigurationError",
    "ProviderNotConfigured",
    "MissingEnvVar",
    "NotSignedIn",
    "InvalidCredentials",
    "TooManyFailedAttempts",
    "InvalidPassword",
    "InvalidVerificationCode",
    "InvalidRefreshToken",
    "MissingRequiredParam",
    "UnsupportedProviderType",
    "InvalidRedirect",
    "DeliveryError",
    "InvalidVerifier",
    "AccountAlreadyExists",
    "AccountNotFound",
    "OAuthError",
    "OAuthMissingProvider",
    "OAuthMissingVerifier",
    "OAuthInvalidState",
    "OAuthProviderError",
    "OAuthInvalidProfile",
    "PasskeyError",
    "PasskeyCounterRegression",
    "TotpError",
    "DeviceError",
    "DeviceAuthorizationPending",
    "DeviceSlowDown",
    "DeviceCodeExpired",
    "DeviceCodeDenied",
    "DeviceInvalidCode",
    "ApiKeyError",
    "InvalidApiKey",
    "ApiKeyRevoked",
    "ApiKeyExpired",
    "ApiKeyRateLimited",
    "ApiKeyInvalidScope",
]
