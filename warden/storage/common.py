"""Store contract and serialization helpers shared by store implementations.

The engine only talks to storage through :class:`AuthStore`. Every method is
atomic on its own; multi-step mutations wrap their calls in
``store.transaction()`` so a rotation or a rate-limit update can never be
observed half applied.
"""

from __future__ import annotations

import base64
import dataclasses
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, List, Optional, Protocol, Type, TypeVar

from warden.storage.models import (
    Account,
    ApiKey,
    DeviceAuthorization,
    Passkey,
    RateLimitRecord,
    RefreshToken,
    Session,
    TotpSecret,
    User,
    VerificationCode,
    Verifier,
)

T = TypeVar("T")


class AuthStore(Protocol):
    def transaction(self) -> AbstractContextManager: ...

    # users
    def create_user(self, **fields: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def patch_user(self, user_id: str, **changes: Any) -> User: ...

    def find_users_by_verified_email(self, email: str) -> List[User]: ...

    def find_users_by_verified_phone(self, phone: str) -> List[User]: ...

    # accounts
    def create_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        secret: Optional[str] = None,
        email_verified: Optional[str] = None,
        phone_verified: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, provider: str, provider_account_id: str) -> Optional[Account]: ...

    def get_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def patch_account(self, account_id: str, **changes: Any) -> Account: ...

    def list_user_accounts(self, user_id: str) -> List[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...

    # sessions and refresh tokens
    def create_session(self, user_id: str, expires_at: datetime) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def create_refresh_token(
        self, session_id: str, expires_at: datetime, parent_id: Optional[str] = None
    ) -> RefreshToken: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def patch_refresh_token(self, token_id: str, **changes: Any) -> RefreshToken: ...

    def list_refresh_tokens(self, session_id: str) -> List[RefreshToken]: ...

    def list_refresh_token_children(
        self, session_id: str, parent_id: str
    ) -> List[RefreshToken]: ...

    def get_active_refresh_token(self, session_id: str) -> Optional[RefreshToken]: ...

    # verification codes and verifiers
    def create_verification_code(
        self,
        account_id: str,
        provider: str,
        code_hash: str,
        expires_at: datetime,
        *,
        verifier: Optional[str] = None,
        email_verified: Optional[str] = None,
        phone_verified: Optional[str] = None,
    ) -> VerificationCode: ...

    def get_verification_code_by_hash(self, code_hash: str) -> Optional[VerificationCode]: ...

    def get_verification_code_by_account(self, account_id: str) -> Optional[VerificationCode]: ...

    def delete_verification_code(self, code_id: str) -> bool: ...

    def create_verifier(
        self, expires_at: datetime, session_id: Optional[str] = None
    ) -> Verifier: ...

    def get_verifier(self, verifier_id: str) -> Optional[Verifier]: ...

    def get_verifier_by_signature(self, signature: str) -> Optional[Verifier]: ...

    def patch_verifier(self, verifier_id: str, **changes: Any) -> Verifier: ...

    def delete_verifier(self, verifier_id: str) -> bool: ...

    # rate limits
    def get_rate_limit(self, identifier: str) -> Optional[RateLimitRecord]: ...

    def put_rate_limit(self, record: RateLimitRecord) -> None: ...

    def delete_rate_limit(self, identifier: str) -> bool: ...

    # second factors
    def create_passkey(self, **fields: Any) -> Passkey: ...

    def get_passkey_by_credential_id(self, credential_id: str) -> Optional[Passkey]: ...

    def list_user_passkeys(self, user_id: str) -> List[Passkey]: ...

    def patch_passkey(self, passkey_id: str, **changes: Any) -> Passkey: ...

    def create_totp(
        self,
        user_id: str,
        secret: str,
        *,
        digits: int = 6,
        period: int = 30,
        name: Optional[str] = None,
    ) -> TotpSecret: ...

    def get_totp(self, totp_id: str) -> Optional[TotpSecret]: ...

    def get_verified_totp(self, user_id: str) -> Optional[TotpSecret]: ...

    def patch_totp(self, totp_id: str, **changes: Any) -> TotpSecret: ...

    # device authorization
    def create_device_authorization(self, **fields: Any) -> DeviceAuthorization: ...

    def get_device_by_code_hash(self, device_code_hash: str) -> Optional[DeviceAuthorization]: ...

    def get_device_by_user_code(self, user_code: str) -> Optional[DeviceAuthorization]: ...

    def patch_device(self, device_id: str, **changes: Any) -> DeviceAuthorization: ...

    def delete_device(self, device_id: str) -> bool: ...

    # api keys
    def create_api_key(self, **fields: Any) -> ApiKey: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]: ...

    def get_api_key_by_hash(self, hashed_key: str) -> Optional[ApiKey]: ...

    def list_user_api_keys(self, user_id: str) -> List[ApiKey]: ...

    def patch_api_key(self, key_id: str, **changes: Any) -> ApiKey: ...


def to_jsonable(record: Any) -> dict:
    """Flatten a model dataclass into JSON-compatible primitives."""
    data = {}
    for f in dataclasses.fields(record):
        value = getattr(record, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, bytes):
            value = base64.b64encode(value).decode("ascii")
        data[f.name] = value
    return data


def from_jsonable(cls: Type[T], data: dict) -> T:
    """Rebuild a model dataclass from :func:`to_jsonable` output."""
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        # annotations are strings under postponed evaluation
        annotation = str(f.type)
        if value is not None and "datetime" in annotation:
            value = datetime.fromisoformat(value)
        elif value is not None and "bytes" in annotation:
            value = base64.b64decode(value)
        kwargs[f.name] = value
    return cls(**kwargs)


__all__ = ["AuthStore", "to_jsonable", "from_jsonable"]
