from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.crypto import b64url_decode, b64url_encode

logger = get_logger(__name__)

# Access token subject is "{user_id}|{session_id}"
TOKEN_SUB_CLAIM_DIVIDER = "|"


class TokenSigner:
    """HS256 access tokens.

    Tokens are stateless; the session engine decides when one is minted and
    the session record decides whether it still means anything.
    """

    def __init__(self, settings: Settings, *, leeway_seconds: int = 30) -> None:
        self.settings = settings
        self._leeway = timedelta(seconds=leeway_seconds)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return b64url_encode(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = b64url_encode(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: datetime) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(b64url_decode(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(b64url_decode(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= (now - self._leeway).timestamp():
            return None
        return payload

    def mint_access_token(self, user_id: str, session_id: str, *, now: datetime) -> str:
        expires = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self.encode(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": f"{user_id}{TOKEN_SUB_CLAIM_DIVIDER}{session_id}",
                "iat": int(now.timestamp()),
                "exp": int(expires.timestamp()),
            }
        )

    def parse_subject(self, payload: dict[str, Any]) -> Optional[tuple[str, str]]:
        sub = payload.get("sub")
        if not isinstance(sub, str) or sub.count(TOKEN_SUB_CLAIM_DIVIDER) != 1:
            return None
        user_id, session_id = sub.split(TOKEN_SUB_CLAIM_DIVIDER)
        if not user_id or not session_id:
            return None
        return user_id, session_id
