from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger
from warden.service.errors import MissingEnvVar

logger = get_logger(__name__)

DEFAULT_STATE_ROOT = "/var/lib/warden"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Engine settings, built once at process start and passed explicitly."""

    site_url: str | None = env_field(
        None, "SITE_URL", description="Canonical frontend URL; redirects and WebAuthn origin derive from it"
    )
    state_root: str = env_field(DEFAULT_STATE_ROOT, "STATE_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")

    # Sessions and refresh rotation
    session_total_duration_minutes: int = env_field(
        30 * 24 * 60, "SESSION_TOTAL_DURATION_MINUTES"
    )
    session_inactive_duration_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_INACTIVE_DURATION_MINUTES",
        description="Lifetime of each refresh token; rotation extends the session lineage by this much",
    )
    refresh_reuse_window_seconds: int = env_field(
        10,
        "REFRESH_REUSE_WINDOW_SECONDS",
        description="Grace period in which replaying a used refresh token returns its successor",
    )

    # Brute-force protection
    sign_in_max_failed_attempts: int = env_field(10, "SIGN_IN_MAX_FAILED_ATTEMPTS")
    sign_in_rate_limit_window_minutes: int = env_field(
        60, "SIGN_IN_RATE_LIMIT_WINDOW_MINUTES"
    )

    # Verification codes and verifiers
    verification_code_ttl_minutes: int = env_field(24 * 60, "VERIFICATION_CODE_TTL_MINUTES")
    oauth_code_ttl_seconds: int = env_field(120, "OAUTH_CODE_TTL_SECONDS")
    verifier_ttl_minutes: int = env_field(10, "VERIFIER_TTL_MINUTES")

    # Second factors
    totp_secret_key: str | None = env_field(None, "TOTP_SECRET_KEY")
    totp_issuer: str = env_field("Warden", "TOTP_ISSUER")
    passkey_rp_id: str | None = env_field(None, "PASSKEY_RP_ID")
    passkey_rp_name: str | None = env_field(None, "PASSKEY_RP_NAME")
    passkey_origin: str | None = env_field(None, "PASSKEY_ORIGIN")

    # API keys
    api_key_prefix: str = env_field("sk_live_", "API_KEY_PREFIX")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    def require(self, name: str) -> Any:
        """Return a setting that a configured feature cannot run without."""
        value = getattr(self, name)
        if value in (None, ""):
            field = type(self).model_fields[name]
            extra = field.json_schema_extra or {}
            env_name = extra.get("env", name.upper()) if isinstance(extra, dict) else name.upper()
            logger.error("missing_env_var", setting=name, env=env_name)
            raise MissingEnvVar(f"Missing environment variable `{env_name}`", detail={"env": env_name})
        return value

    @field_validator("site_url", "oauth_redirect_uri", "passkey_origin")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        if not value:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"expected an absolute http(s) URL, got {value!r}")
        return value.rstrip("/")

    @field_validator(
        "access_token_ttl_minutes",
        "session_total_duration_minutes",
        "session_inactive_duration_minutes",
        "sign_in_max_failed_attempts",
        "sign_in_rate_limit_window_minutes",
        "verification_code_ttl_minutes",
        "oauth_code_ttl_seconds",
        "verifier_ttl_minutes",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("refresh_reuse_window_seconds")
    @classmethod
    def _validate_reuse_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated signing secret so access tokens survive restarts
        fs_root = Path(os.getenv("STATE_ROOT", DEFAULT_STATE_ROOT))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                _unlink_quietly(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise MissingEnvVar(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_ROOT writable",
                detail={"env": "JWT_SECRET"},
            ) from exc
        return generated


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
