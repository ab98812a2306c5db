from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from warden.config import Settings
from warden.service.errors import InvalidVerifier
from warden.storage.common import AuthStore
from warden.storage.models import Verifier, utcnow


class VerifierManager:
    """Short-lived correlators that carry a multi-step flow across requests."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=settings.verifier_ttl_minutes)
        self._clock = clock

    def create(
        self,
        *,
        session_id: Optional[str] = None,
        signature: Optional[str] = None,
        code_verifier: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> str:
        with self.store.transaction():
            verifier = self.store.create_verifier(
                self._clock() + (ttl or self.ttl), session_id=session_id
            )
            if signature is not None or code_verifier is not None:
                self.store.patch_verifier(
                    verifier.id, signature=signature, code_verifier=code_verifier
                )
        return verifier.id

    def sign(self, verifier_id: str, signature: str) -> None:
        """Attach a signature (OAuth state, challenge hash, stashed payload)."""
        with self.store.transaction():
            if self.get(verifier_id) is None:
                raise InvalidVerifier()
            self.store.patch_verifier(verifier_id, signature=signature)

    def get(self, verifier_id: str) -> Optional[Verifier]:
        verifier = self.store.get_verifier(verifier_id)
        if verifier is None:
            return None
        if verifier.expires_at <= self._clock():
            self.store.delete_verifier(verifier_id)
            return None
        return verifier

    def get_by_signature(self, signature: str) -> Optional[Verifier]:
        verifier = self.store.get_verifier_by_signature(signature)
        if verifier is None:
            return None
        return self.get(verifier.id)

    def consume(self, verifier_id: str) -> Optional[Verifier]:
        """Return a live verifier and delete it so it cannot be replayed."""
        with self.store.transaction():
            verifier = self.get(verifier_id)
            if verifier is not None:
                self.store.delete_verifier(verifier_id)
            return verifier

    def delete(self, verifier_id: str) -> None:
        self.store.delete_verifier(verifier_id)
