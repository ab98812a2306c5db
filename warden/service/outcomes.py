"""Result shapes of :meth:`warden.service.signin.AuthEngine.sign_in`.

A sign-in call ends in exactly one of these. Handlers that need another round
trip return one of the pending shapes together with a verifier the client must
echo back on the next call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from warden.service.sessions import SessionInfo, TokenPair


@dataclass
class SignedIn:
    """``signed_in`` is ``None`` when the credentials were rejected softly."""

    signed_in: Optional[SessionInfo]


@dataclass
class RefreshTokens:
    tokens: TokenPair


@dataclass
class Started:
    """An out-of-band code was sent; the client waits for the user."""

    started: bool = True


@dataclass
class Redirect:
    redirect: str
    verifier: str


@dataclass
class PasskeyOptions:
    options: dict[str, Any] = field(default_factory=dict)
    verifier: str = ""


@dataclass
class TotpRequired:
    verifier: str


@dataclass
class TotpSetup:
    uri: str
    secret: str
    verifier: str
    totp_id: str


@dataclass
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


SignInResult = Union[
    SignedIn,
    RefreshTokens,
    Started,
    Redirect,
    PasskeyOptions,
    TotpRequired,
    TotpSetup,
    DeviceCode,
]
