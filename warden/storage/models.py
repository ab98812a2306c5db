from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    image: Optional[str] = None
    email_verification_time: Optional[datetime] = None
    phone_verification_time: Optional[datetime] = None
    is_anonymous: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Account:
    """One provider's credential binding to a user."""

    id: str
    user_id: str
    provider: str
    provider_account_id: str
    secret: Optional[str] = None
    email_verified: Optional[str] = None
    phone_verified: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    """A node of a session's rotation tree; ``first_used_at`` unset means active."""

    id: str
    session_id: str
    expires_at: datetime
    parent_id: Optional[str] = None
    first_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class VerificationCode:
    id: str
    account_id: str
    provider: str
    code_hash: str
    expires_at: datetime
    verifier: Optional[str] = None
    email_verified: Optional[str] = None
    phone_verified: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Verifier:
    id: str
    expires_at: datetime
    session_id: Optional[str] = None
    signature: Optional[str] = None
    # PKCE code_verifier of an OAuth flow
    code_verifier: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RateLimitRecord:
    identifier: str
    attempts_left: float
    last_attempt_at: datetime


@dataclass
class Passkey:
    id: str
    user_id: str
    credential_id: str
    public_key: bytes
    algorithm: int
    counter: int = 0
    transports: List[str] = field(default_factory=list)
    device_type: str = "single-device"
    backed_up: bool = False
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class TotpSecret:
    id: str
    user_id: str
    secret: str
    digits: int = 6
    period: int = 30
    verified: bool = False
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class DeviceAuthorization:
    id: str
    device_code_hash: str
    user_code: str
    expires_at: datetime
    interval: int
    status: str = "pending"
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    last_polled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ApiKey:
    id: str
    user_id: str
    name: str
    hashed_key: str
    prefix: str
    scopes: List[Dict] = field(default_factory=list)
    revoked: bool = False
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    max_requests: Optional[int] = None
    window_seconds: Optional[int] = None
    attempts_left: Optional[float] = None
    last_request_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
