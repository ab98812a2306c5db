"""Tests for sessions and refresh-token rotation.

Covers:
- Token pair format and access token claims
- Rotation of an unused token
- Grace-window replay returning the same successor
- Reuse detection invalidating the subtree
- Sign-out and session invalidation
"""

from unittest.mock import patch

import pytest

from warden.service import sessions as sessions_module
from warden.service.sessions import (
    AuthContext,
    SessionEngine,
    format_refresh_token,
    parse_refresh_token,
)
from warden.service.tokens import TokenSigner


@pytest.fixture
def session_engine(memory_store, settings, clock):
    return SessionEngine(memory_store, settings, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(email="rotate@example.com")


def _active_tokens(store, session_id):
    return [t for t in store.list_refresh_tokens(session_id) if t.first_used_at is None]


class TestTokenIssue:
    """Tests for session creation and token pairs."""

    def test_refresh_token_format(self, session_engine, user):
        """Test refresh tokens encode token id and session id."""
        info = session_engine.sign_in(user.id)
        token_id, session_id = parse_refresh_token(info.tokens.refresh_token)

        assert session_id == info.session_id
        assert info.tokens.refresh_token == format_refresh_token(token_id, session_id)

    def test_parse_rejects_malformed_tokens(self):
        """Test malformed refresh tokens do not parse."""
        assert parse_refresh_token("no-divider") is None
        assert parse_refresh_token("a.b.c") is None
        assert parse_refresh_token(".session") is None

    def test_access_token_subject_and_claims(self, session_engine, user, settings, clock):
        """Test access token carries user|session subject and standard claims."""
        info = session_engine.sign_in(user.id)
        payload = TokenSigner(settings).decode(info.tokens.token, now=clock())

        assert payload["sub"] == f"{user.id}|{info.session_id}"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["exp"] > payload["iat"]

    def test_authenticate_resolves_context(self, session_engine, user):
        """Test a fresh access token resolves to the caller identity."""
        info = session_engine.sign_in(user.id)
        ctx = session_engine.authenticate(info.tokens.token)

        assert ctx == AuthContext(user_id=user.id, session_id=info.session_id)

    def test_authenticate_fails_after_sign_out(self, session_engine, user):
        """Test access tokens of a deleted session no longer authenticate."""
        info = session_engine.sign_in(user.id)
        session_engine.sign_out(AuthContext(user.id, info.session_id))

        assert session_engine.authenticate(info.tokens.token) is None

    def test_session_without_tokens(self, session_engine, user, memory_store):
        """Test a session can be opened without minting tokens."""
        info = session_engine.sign_in(user.id, generate_tokens=False)

        assert info.tokens is None
        assert memory_store.get_session(info.session_id) is not None


class TestRotation:
    """Tests for refresh token rotation."""

    def test_rotation_returns_new_token(self, session_engine, user):
        """Test redeeming an unused token returns a different token."""
        info = session_engine.sign_in(user.id)
        refreshed = session_engine.refresh(info.tokens.refresh_token)

        assert refreshed is not None
        assert refreshed.session_id == info.session_id
        assert refreshed.tokens.refresh_token != info.tokens.refresh_token

    def test_at_most_one_active_token(self, session_engine, user, memory_store, clock):
        """Test every rotation leaves exactly one active token in the session."""
        info = session_engine.sign_in(user.id)
        current = info.tokens.refresh_token
        for _ in range(4):
            clock.advance(seconds=30)
            current = session_engine.refresh(current).tokens.refresh_token
            assert len(_active_tokens(memory_store, info.session_id)) == 1

    def test_grace_window_returns_same_successor(self, session_engine, user, clock):
        """Test replaying a used token within the window returns the same successor."""
        info = session_engine.sign_in(user.id)
        first = session_engine.refresh(info.tokens.refresh_token)
        clock.advance(seconds=5)
        replay = session_engine.refresh(info.tokens.refresh_token)

        assert replay is not None
        assert replay.tokens.refresh_token == first.tokens.refresh_token

    def test_grace_window_replay_keeps_single_active(self, session_engine, user, memory_store, clock):
        """Test grace-window replays do not mint extra tokens."""
        info = session_engine.sign_in(user.id)
        session_engine.refresh(info.tokens.refresh_token)
        clock.advance(seconds=2)
        session_engine.refresh(info.tokens.refresh_token)

        assert len(_active_tokens(memory_store, info.session_id)) == 1
        assert len(memory_store.list_refresh_tokens(info.session_id)) == 2

    def test_reuse_outside_window_invalidates_subtree(self, session_engine, user, clock):
        """Test reuse after the window fails and kills the successor too."""
        info = session_engine.sign_in(user.id)
        successor = session_engine.refresh(info.tokens.refresh_token)
        clock.advance(seconds=11)

        assert session_engine.refresh(info.tokens.refresh_token) is None
        assert session_engine.refresh(successor.tokens.refresh_token) is None

    def test_reuse_logs_warning(self, session_engine, user, clock):
        """Test reuse detection emits a warning event."""
        info = session_engine.sign_in(user.id)
        session_engine.refresh(info.tokens.refresh_token)
        clock.advance(minutes=1)
        with patch.object(sessions_module, "logger") as mock_logger:
            session_engine.refresh(info.tokens.refresh_token)

        events = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert "refresh_token_reuse_detected" in events

    def test_unrelated_session_survives_reuse(self, session_engine, user, clock):
        """Test reuse detection only touches the offending session."""
        first = session_engine.sign_in(user.id)
        second = session_engine.sign_in(user.id)
        session_engine.refresh(first.tokens.refresh_token)
        clock.advance(minutes=1)
        session_engine.refresh(first.tokens.refresh_token)

        assert session_engine.refresh(second.tokens.refresh_token) is not None

    def test_expired_token_fails_and_drops_session(self, session_engine, user, memory_store, clock):
        """Test an expired refresh token fails closed and removes the session."""
        info = session_engine.sign_in(user.id)
        clock.advance(days=31)

        assert session_engine.refresh(info.tokens.refresh_token) is None
        assert memory_store.get_session(info.session_id) is None

    def test_session_mismatch_fails(self, session_engine, user):
        """Test a token presented with another session id fails."""
        first = session_engine.sign_in(user.id)
        second = session_engine.sign_in(user.id)
        token_id, _ = parse_refresh_token(first.tokens.refresh_token)

        assert session_engine.refresh(format_refresh_token(token_id, second.session_id)) is None

    def test_malformed_token_fails(self, session_engine):
        """Test garbage refresh tokens fail closed."""
        assert session_engine.refresh("garbage") is None


class TestSignOut:
    """Tests for sign-out and bulk invalidation."""

    def test_sign_out_returns_ids(self, session_engine, user, memory_store):
        """Test sign-out deletes the session and reports its ids."""
        info = session_engine.sign_in(user.id)
        result = session_engine.sign_out(AuthContext(user.id, info.session_id))

        assert result == {"user_id": user.id, "session_id": info.session_id}
        assert memory_store.list_refresh_tokens(info.session_id) == []

    def test_sign_out_when_not_signed_in(self, session_engine):
        """Test sign-out without a caller returns None."""
        assert session_engine.sign_out(None) is None

    def test_refresh_after_sign_out_fails(self, session_engine, user):
        """Test refresh tokens die with their session."""
        info = session_engine.sign_in(user.id)
        session_engine.sign_out(AuthContext(user.id, info.session_id))

        assert session_engine.refresh(info.tokens.refresh_token) is None

    def test_invalidate_sessions_keeps_exceptions(self, session_engine, user, memory_store):
        """Test bulk invalidation spares the listed sessions."""
        keep = session_engine.sign_in(user.id)
        session_engine.sign_in(user.id)
        session_engine.sign_in(user.id)

        removed = session_engine.invalidate_sessions(user.id, except_ids=[keep.session_id])

        assert removed == 2
        assert [s.id for s in memory_store.list_user_sessions(user.id)] == [keep.session_id]

    def test_sign_in_replaces_current_session(self, session_engine, user, memory_store):
        """Test signing in again drops the caller's previous session."""
        first = session_engine.sign_in(user.id)
        second = session_engine.sign_in(
            user.id, current=AuthContext(user.id, first.session_id)
        )

        assert memory_store.get_session(first.session_id) is None
        assert memory_store.get_session(second.session_id) is not None
