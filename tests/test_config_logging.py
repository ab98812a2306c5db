"""Tests for settings loading and log redaction."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import structlog
from pydantic import ValidationError

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import (
    _add_correlation_id,
    _redact_secrets,
    configure_logging,
    redact_value,
    set_correlation_id,
)
from warden.service.errors import AUTH_ERRORS, InvalidCredentials, MissingEnvVar
from warden.service.tokens import TokenSigner


class TestRedaction:
    """Tests for the secret-redacting log processor."""

    def test_secret_keys_are_redacted(self):
        """Test credential-like keys never reach the renderer intact."""
        event = {
            "event": "sign_in",
            "password": "hunter2-hunter2",
            "refresh_token": "abcdef.123456",
            "verification_code": "12345678",
            "email": "ada@example.com",
            "identifier": "ada@example.com",
            "user_id": "user-1",
        }
        result = _redact_secrets(None, "info", dict(event))

        assert result["password"] == "hu***r2"
        assert "abcdef" not in result["refresh_token"]
        assert result["verification_code"] == "12***78"
        assert result["email"] == "ad***om"
        assert result["identifier"] == "ad***om"
        assert result["user_id"] == "user-1"
        assert result["event"] == "sign_in"

    def test_short_values_fully_masked(self):
        """Test values of four characters or fewer are masked entirely."""
        assert redact_value("1234") == "***"

    def test_non_string_values_untouched(self):
        """Test numeric values under secret-like keys are left alone."""
        result = _redact_secrets(None, "info", {"event": "x", "token_count": 3})
        assert result["token_count"] == 3

    def test_nested_detail_is_redacted(self):
        """Test secrets inside detail payloads are masked as well."""
        result = _redact_secrets(
            None,
            "error",
            {
                "event": "sign_in_failed",
                "detail": {"provider": "email", "email": "ada@example.com"},
                "attempts": [{"phone": "+15550100"}],
            },
        )

        assert result["detail"] == {"provider": "email", "email": "ad***om"}
        assert result["attempts"] == [{"phone": "+1***00"}]

    def test_configure_logging_reads_arguments(self):
        """Test explicit arguments override the environment."""
        with patch("warden.logging.structlog.configure") as mock_configure:
            configure_logging("DEBUG", json_output=True, development_mode=False)

        processors = mock_configure.call_args.kwargs["processors"]
        assert _redact_secrets in processors
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_correlation_id_added(self):
        """Test the correlation id processor tags events."""
        cid = set_correlation_id("corr-1")
        result = _add_correlation_id(None, "info", {"event": "x"})
        assert result["correlation_id"] == cid == "corr-1"


class TestSettings:
    """Tests for settings validation and env loading."""

    def test_require_returns_value(self, settings):
        """Test require hands back a configured value."""
        assert settings.require("site_url") == "https://app.example.com"

    def test_require_missing_raises(self):
        """Test require names the missing environment variable."""
        settings = Settings(jwt_secret="x" * 40, site_url=None)
        with pytest.raises(MissingEnvVar) as exc:
            settings.require("site_url")
        assert exc.value.detail == {"env": "SITE_URL"}
        assert exc.value.expected is False

    def test_site_url_trailing_slash_stripped(self):
        """Test URLs are normalised without a trailing slash."""
        settings = Settings(jwt_secret="x" * 40, site_url="https://app.example.com/")
        assert settings.site_url == "https://app.example.com"

    def test_site_url_must_be_absolute(self):
        """Test relative site URLs are rejected."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, site_url="app.example.com")

    def test_positive_durations(self):
        """Test zero durations are rejected."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, sign_in_max_failed_attempts=0)

    def test_negative_reuse_window_rejected(self):
        """Test a negative grace window is rejected."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, refresh_reuse_window_seconds=-1)

    def test_from_env_reads_environment(self, monkeypatch):
        """Test settings pick up their environment variables."""
        monkeypatch.setenv("SIGN_IN_MAX_FAILED_ATTEMPTS", "3")
        monkeypatch.setenv("API_KEY_PREFIX", "wk_")
        reset_settings_cache()

        settings = get_settings()

        assert settings.sign_in_max_failed_attempts == 3
        assert settings.api_key_prefix == "wk_"
        assert get_settings() is settings

    def test_generated_jwt_secret_is_persisted(self, tmp_path, monkeypatch):
        """Test a missing JWT secret is generated once and reused."""
        monkeypatch.setenv("STATE_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


class TestErrors:
    """Tests for the error envelope."""

    def test_default_message_from_code(self):
        """Test errors fall back to the catalogue message."""
        exc = InvalidCredentials()
        assert exc.to_dict() == {
            "code": "INVALID_CREDENTIALS",
            "message": AUTH_ERRORS["INVALID_CREDENTIALS"],
        }

    def test_detail_included(self):
        """Test detail is part of the envelope when present."""
        exc = InvalidCredentials("nope", detail={"provider": "password"})
        assert exc.to_dict()["detail"] == {"provider": "password"}


class TestTokenSigner:
    """Tests for access token signing."""

    @pytest.fixture
    def signer(self, settings):
        return TokenSigner(settings)

    def test_expired_token_rejected(self, signer):
        """Test tokens past exp plus leeway are rejected."""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        token = signer.mint_access_token("u", "s", now=now)
        later = now + timedelta(minutes=61)

        assert signer.decode(token, now=now) is not None
        assert signer.decode(token, now=later) is None

    def test_tampered_token_rejected(self, signer):
        """Test a modified signature fails verification."""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        token = signer.mint_access_token("u", "s", now=now)
        tampered = token[:-2] + ("AA" if not token.endswith("AA") else "BB")

        assert signer.decode(tampered, now=now) is None

    def test_other_algorithm_rejected(self, signer):
        """Test tokens declaring a non-HS256 algorithm are rejected."""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        with patch("warden.service.tokens.logger") as mock_logger:
            token = signer.mint_access_token("u", "s", now=now)
            header, payload, sig = token.split(".")
            none_header = "eyJhbGciOiJub25lIiwidHlwIjoiSldUIn0"
            assert signer.decode(f"{none_header}.{payload}.{sig}", now=now) is None
        mock_logger.warning.assert_called_once_with("jwt_invalid_algorithm")

    def test_subject_parsing(self, signer):
        """Test subjects must hold exactly one divider."""
        assert signer.parse_subject({"sub": "u|s"}) == ("u", "s")
        assert signer.parse_subject({"sub": "u|s|x"}) is None
        assert signer.parse_subject({"sub": "|s"}) is None
