from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.crypto import ALPHANUMERIC, random_string, sha256_hex
from warden.service.errors import (
    ApiKeyExpired,
    ApiKeyInvalidScope,
    ApiKeyRateLimited,
    ApiKeyRevoked,
    InvalidApiKey,
)
from warden.storage.common import AuthStore
from warden.storage.models import ApiKey, utcnow

logger = get_logger(__name__)

KEY_RANDOM_LENGTH = 32
# Random characters kept after the prefix in the display form, e.g. "sk_live_aB3x..."
VISIBLE_PREFIX_EXTRA_CHARS = 4
WILDCARD = "*"


@dataclass
class ScopeChecker:
    scopes: List[dict] = field(default_factory=list)

    def can(self, resource: str, action: str) -> bool:
        for scope in self.scopes:
            actions = scope.get("actions") or []
            if scope.get("resource") in (resource, WILDCARD) and (
                action in actions or WILDCARD in actions
            ):
                return True
        return False


@dataclass
class CreatedApiKey:
    """The raw key is only ever available here, right after creation."""

    key_id: str
    key: str
    prefix: str


@dataclass
class VerifiedApiKey:
    key_id: str
    user_id: str
    scopes: ScopeChecker


def validate_scopes(requested: Iterable[dict], allowed: Optional[dict[str, list[str]]]) -> None:
    """Check requested scopes against ``{resource: [actions]}``; ``None`` allows all."""
    if allowed is None:
        return
    for scope in requested:
        resource = scope.get("resource")
        allowed_actions = allowed.get(resource)
        if allowed_actions is None:
            raise ApiKeyInvalidScope(
                f'Unknown resource "{resource}" in API key scopes. '
                f"Allowed resources: {', '.join(allowed)}",
                detail={"resource": resource},
            )
        for action in scope.get("actions") or []:
            if action != WILDCARD and action not in allowed_actions:
                raise ApiKeyInvalidScope(
                    f'Unknown action "{action}" for resource "{resource}". '
                    f"Allowed actions: {', '.join(allowed_actions)}",
                    detail={"resource": resource, "action": action},
                )


class ApiKeyManager:
    """Opaque bearer keys for programmatic access.

    Keys are ``{prefix}{32 alphanumerics}``; only their sha256 is stored. A
    key may carry its own request budget that refills linearly over its
    window, the same shape as the sign-in limiter.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        allowed_scopes: Optional[dict[str, list[str]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.prefix = settings.api_key_prefix
        self.allowed_scopes = allowed_scopes
        self._clock = clock

    def create(
        self,
        user_id: str,
        name: str,
        *,
        scopes: Optional[List[dict]] = None,
        expires_at: Optional[datetime] = None,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> CreatedApiKey:
        scopes = list(scopes or [])
        validate_scopes(scopes, self.allowed_scopes)
        raw = f"{self.prefix}{random_string(KEY_RANDOM_LENGTH, ALPHANUMERIC)}"
        display_prefix = f"{raw[: len(self.prefix) + VISIBLE_PREFIX_EXTRA_CHARS]}..."
        record = self.store.create_api_key(
            user_id=user_id,
            name=name,
            hashed_key=sha256_hex(raw),
            prefix=display_prefix,
            scopes=scopes,
            expires_at=expires_at,
            max_requests=max_requests,
            window_seconds=window_seconds,
        )
        logger.info("api_key_created", user_id=user_id, key_id=record.id)
        return CreatedApiKey(key_id=record.id, key=raw, prefix=display_prefix)

    def verify(self, raw_key: str) -> VerifiedApiKey:
        if not raw_key or not raw_key.startswith(self.prefix):
            raise InvalidApiKey()
        now = self._clock()
        with self.store.transaction():
            record = self.store.get_api_key_by_hash(sha256_hex(raw_key))
            if record is None:
                raise InvalidApiKey()
            if record.revoked:
                raise ApiKeyRevoked()
            if record.expires_at is not None and record.expires_at <= now:
                raise ApiKeyExpired()
            changes: dict = {"last_used_at": now}
            limited = False
            if record.max_requests and record.window_seconds:
                limited, remaining = self._consume(record, now)
                changes.update(attempts_left=remaining, last_request_at=now)
            self.store.patch_api_key(record.id, **changes)
        if limited:
            logger.info("api_key_rate_limited", key_id=record.id)
            raise ApiKeyRateLimited()
        return VerifiedApiKey(
            key_id=record.id, user_id=record.user_id, scopes=ScopeChecker(list(record.scopes))
        )

    @staticmethod
    def _consume(record: ApiKey, now: datetime) -> tuple[bool, float]:
        if record.attempts_left is None or record.last_request_at is None:
            return False, float(record.max_requests - 1)
        elapsed = max(0.0, (now - record.last_request_at).total_seconds())
        refilled = min(
            float(record.max_requests),
            record.attempts_left + elapsed * record.max_requests / record.window_seconds,
        )
        if refilled < 1:
            return True, refilled
        return False, refilled - 1

    def list(self, user_id: str) -> List[ApiKey]:
        return self.store.list_user_api_keys(user_id)

    def revoke(self, key_id: str, *, user_id: Optional[str] = None) -> None:
        with self.store.transaction():
            record = self.store.get_api_key(key_id)
            if record is None or (user_id is not None and record.user_id != user_id):
                raise InvalidApiKey()
            self.store.patch_api_key(key_id, revoked=True)
        logger.info("api_key_revoked", key_id=key_id)
