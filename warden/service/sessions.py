from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.tokens import TokenSigner
from warden.storage.common import AuthStore
from warden.storage.errors import ConstraintViolation
from warden.storage.models import RefreshToken, Session, utcnow

logger = get_logger(__name__)

# Refresh tokens travel as "{refresh_token_id}.{session_id}"
REFRESH_TOKEN_DIVIDER = "."


@dataclass
class AuthContext:
    """Identity of the caller, resolved from a valid access token."""

    user_id: str
    session_id: str


@dataclass
class TokenPair:
    token: str
    refresh_token: str


@dataclass
class SessionInfo:
    user_id: str
    session_id: str
    tokens: Optional[TokenPair] = None


def format_refresh_token(token_id: str, session_id: str) -> str:
    return f"{token_id}{REFRESH_TOKEN_DIVIDER}{session_id}"


def parse_refresh_token(raw: str) -> Optional[tuple[str, str]]:
    if not isinstance(raw, str):
        return None
    parts = raw.split(REFRESH_TOKEN_DIVIDER)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


class SessionEngine:
    """Sessions and the refresh-token rotation tree.

    Each session owns a tree of refresh tokens linked by ``parent_id``. The
    active token is the newest one that has never been redeemed; every
    operation here keeps that to at most one per session by doing its reads
    and writes inside a single store transaction.

    Redeeming an unused token marks it used and mints a child. Replaying a
    used token shortly afterwards (``refresh_reuse_window_seconds``) returns
    the successor that was already minted, which absorbs client retries.
    Replaying it later is treated as theft: every token below it is forced
    stale and the caller gets ``None``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        signer: Optional[TokenSigner] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer or TokenSigner(settings)
        self._clock = clock
        self.total_duration = timedelta(minutes=settings.session_total_duration_minutes)
        self.inactive_duration = timedelta(minutes=settings.session_inactive_duration_minutes)
        self.reuse_window = timedelta(seconds=settings.refresh_reuse_window_seconds)

    def _now(self) -> datetime:
        return self._clock()

    # -- sessions ----------------------------------------------------------

    def create_session(self, user_id: str) -> Session:
        now = self._now()
        with self.store.transaction():
            session = self.store.create_session(user_id, now + self.total_duration)
            self.store.create_refresh_token(session.id, now + self.inactive_duration)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    def sign_in(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        current: Optional[AuthContext] = None,
        generate_tokens: bool = True,
    ) -> SessionInfo:
        """Attach the user to a session and optionally mint tokens for it.

        Without an explicit ``session_id`` the caller's current session, if
        any, is replaced by a new one; a signed-in session never silently
        turns into another user's session.
        """
        if session_id is None:
            if current is not None:
                if current.user_id != user_id:
                    logger.info(
                        "session_identity_switch",
                        previous_user_id=current.user_id,
                        user_id=user_id,
                    )
                self.delete_session(current.session_id)
            session_id = self.create_session(user_id).id
        else:
            session = self.store.get_session(session_id)
            if session is None or session.user_id != user_id:
                raise ConstraintViolation(
                    "session does not belong to user", {"session_id": session_id}
                )
        tokens = self.issue_tokens(user_id, session_id) if generate_tokens else None
        return SessionInfo(user_id=user_id, session_id=session_id, tokens=tokens)

    def delete_session(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)

    def sign_out(self, current: Optional[AuthContext]) -> Optional[dict]:
        if current is None:
            return None
        session = self.store.get_session(current.session_id)
        if session is None:
            return None
        self.store.delete_session(session.id)
        logger.info("signed_out", user_id=session.user_id, session_id=session.id)
        return {"user_id": session.user_id, "session_id": session.id}

    def invalidate_sessions(self, user_id: str, except_ids: Iterable[str] = ()) -> int:
        keep = set(except_ids)
        removed = 0
        with self.store.transaction():
            for session in self.store.list_user_sessions(user_id):
                if session.id not in keep and self.store.delete_session(session.id):
                    removed += 1
        if removed:
            logger.info("sessions_invalidated", user_id=user_id, count=removed)
        return removed

    def authenticate(self, access_token: Optional[str]) -> Optional[AuthContext]:
        if not access_token:
            return None
        now = self._now()
        payload = self.signer.decode(access_token, now=now)
        if payload is None:
            return None
        subject = self.signer.parse_subject(payload)
        if subject is None:
            return None
        user_id, session_id = subject
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id or session.expires_at <= now:
            return None
        return AuthContext(user_id=user_id, session_id=session_id)

    # -- tokens ------------------------------------------------------------

    def issue_tokens(self, user_id: str, session_id: str) -> TokenPair:
        now = self._now()
        with self.store.transaction():
            active = self.store.get_active_refresh_token(session_id)
            if active is None:
                active = self.store.create_refresh_token(
                    session_id, now + self.inactive_duration
                )
        return self._pair(user_id, session_id, active, now)

    def _pair(
        self, user_id: str, session_id: str, refresh: RefreshToken, now: datetime
    ) -> TokenPair:
        return TokenPair(
            token=self.signer.mint_access_token(user_id, session_id, now=now),
            refresh_token=format_refresh_token(refresh.id, session_id),
        )

    def refresh(self, raw_refresh_token: str) -> Optional[SessionInfo]:
        """Redeem a refresh token; ``None`` means the caller must sign in again."""
        parsed = parse_refresh_token(raw_refresh_token)
        if parsed is None:
            logger.info("refresh_token_malformed")
            return None
        token_id, session_id = parsed
        now = self._now()
        with self.store.transaction():
            token = self.store.get_refresh_token(token_id)
            session = self.store.get_session(session_id)
            if token is None or session is None or token.session_id != session_id:
                logger.info(
                    "refresh_token_invalid",
                    session_found=session is not None,
                    token_found=token is not None,
                )
                return None
            if session.expires_at <= now or token.expires_at <= now:
                logger.info("refresh_token_expired", session_id=session_id)
                self.store.delete_session(session_id)
                return None
            successor = self._rotate(token, now)
            if successor is None:
                return None
        return SessionInfo(
            user_id=session.user_id,
            session_id=session_id,
            tokens=self._pair(session.user_id, session_id, successor, now),
        )

    def _rotate(self, token: RefreshToken, now: datetime) -> Optional[RefreshToken]:
        if token.first_used_at is None:
            self.store.patch_refresh_token(token.id, first_used_at=now)
            return self._mint_child(token, now)
        if now - token.first_used_at < self.reuse_window:
            active = self.store.get_active_refresh_token(token.session_id)
            if active is None:
                return self._mint_child(token, now)
            if self._descends_from(active, token.id):
                return active
        logger.warning(
            "refresh_token_reuse_detected",
            session_id=token.session_id,
            refresh_token_id=token.id,
        )
        self._invalidate_subtree(token, now)
        return None

    def _mint_child(self, parent: RefreshToken, now: datetime) -> RefreshToken:
        return self.store.create_refresh_token(
            parent.session_id, now + self.inactive_duration, parent_id=parent.id
        )

    def _descends_from(self, token: RefreshToken, ancestor_id: str) -> bool:
        seen: set[str] = set()
        current: Optional[RefreshToken] = token
        while current is not None and current.id not in seen:
            if current.parent_id == ancestor_id:
                return True
            seen.add(current.id)
            current = (
                self.store.get_refresh_token(current.parent_id) if current.parent_id else None
            )
        return False

    def _invalidate_subtree(self, root: RefreshToken, now: datetime) -> int:
        stale_at = now - self.reuse_window
        queue = deque([root])
        seen: set[str] = set()
        count = 0
        while queue:
            token = queue.popleft()
            if token.id in seen:
                continue
            seen.add(token.id)
            if token.first_used_at is None or token.first_used_at > stale_at:
                self.store.patch_refresh_token(token.id, first_used_at=stale_at)
                count += 1
            queue.extend(self.store.list_refresh_token_children(token.session_id, token.id))
        return count
