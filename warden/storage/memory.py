from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from warden.logging import get_logger
from warden.storage.common import from_jsonable, to_jsonable
from warden.storage.errors import ConstraintViolation, RecordNotFound, UnreadableSecret
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
    new_id,
)

# table name -> model class, in persistence order
_TABLES = {
    "users": User,
    "accounts": Account,
    "sessions": Session,
    "refresh_tokens": RefreshToken,
    "verification_codes": VerificationCode,
    "verifiers": Verifier,
    "rate_limits": RateLimitRecord,
    "passkeys": Passkey,
    "totp_secrets": TotpSecret,
    "devices": DeviceAuthorization,
    "api_keys": ApiKey,
}


def _copy(record):
    return dataclasses.replace(record) if record is not None else None


class MemoryStore:
    """In-memory reference implementation of the auth store contract.

    All tables live in dicts guarded by a single re-entrant lock, which makes
    every method atomic and lets callers group several calls with
    :meth:`transaction`. Records handed out are copies; the only way to change
    stored state is through the store's own methods. When ``fs_root`` is given
    the whole state is written to ``fs_root/state/auth_store.json`` after each
    mutation and reloaded on construction.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        totp_encryption_key: Optional[str] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.verification_codes: Dict[str, VerificationCode] = {}
        self.verifiers: Dict[str, Verifier] = {}
        self.rate_limits: Dict[str, RateLimitRecord] = {}
        self.passkeys: Dict[str, Passkey] = {}
        self.totp_secrets: Dict[str, TotpSecret] = {}
        self.devices: Dict[str, DeviceAuthorization] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        # RLock so transaction() can wrap calls that take the lock again
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._totp_cipher = self._build_totp_cipher(totp_encryption_key)
        if self.fs_root is not None:
            self._load_state()

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Group several calls; if the block raises, every table is restored.

        Nested blocks join the outermost one, which owns the snapshot.
        """
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {table: dict(getattr(self, table)) for table in _TABLES}
            self._tx_depth = 1
            try:
                yield self
            except Exception:
                for table, records in snapshot.items():
                    setattr(self, table, records)
                self._persist_state()
                self.logger.info("store_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    # -- encryption of TOTP secrets at rest ---------------------------------

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_totp_cipher(self, key_material: Optional[str]) -> Fernet:
        material = key_material or os.getenv("TOTP_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material and self.fs_root is not None:
            key_path = self.fs_root / ".totp_key"
            if key_path.exists():
                material = key_path.read_text().strip()
            else:
                material = Fernet.generate_key().decode()
                key_path.write_text(material)
                os.chmod(key_path, 0o600)
        if not material:
            # Nothing to persist to, so secrets only need to outlive this process
            self.logger.warning("totp_cipher_ephemeral_key")
            material = Fernet.generate_key().decode()
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: str) -> str:
        return self._totp_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._totp_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("totp_secret_decrypt_failed")
            raise UnreadableSecret("totp secret cannot be decrypted") from exc

    def _plain_totp(self, record: Optional[TotpSecret]) -> Optional[TotpSecret]:
        if record is None:
            return None
        return dataclasses.replace(record, secret=self._decrypt_secret(record.secret))

    # -- users --------------------------------------------------------------

    def create_user(self, **fields: Any) -> User:
        with self._data_lock:
            user = User(id=new_id(), **fields)
            self.users[user.id] = user
            self._persist_state()
            return _copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return _copy(self.users.get(user_id))

    def patch_user(self, user_id: str, **changes: Any) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            self.users[user_id] = dataclasses.replace(user, **changes)
            self._persist_state()
            return _copy(self.users[user_id])

    def find_users_by_verified_email(self, email: str) -> List[User]:
        with self._data_lock:
            return [
                _copy(u)
                for u in self.users.values()
                if u.email == email and u.email_verification_time is not None
            ]

    def find_users_by_verified_phone(self, phone: str) -> List[User]:
        with self._data_lock:
            return [
                _copy(u)
                for u in self.users.values()
                if u.phone == phone and u.phone_verification_time is not None
            ]

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        secret: Optional[str] = None,
        email_verified: Optional[str] = None,
        phone_verified: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if self._find_account(provider, provider_account_id) is not None:
                raise ConstraintViolation(
                    "account already exists",
                    {"provider": provider, "field": "provider_account_id"},
                )
            account = Account(
                id=new_id(),
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
                secret=secret,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return _copy(account)

    def _find_account(self, provider: str, provider_account_id: str) -> Optional[Account]:
        return next(
            (
                a
                for a in self.accounts.values()
                if a.provider == provider and a.provider_account_id == provider_account_id
            ),
            None,
        )

    def get_account(self, provider: str, provider_account_id: str) -> Optional[Account]:
        with self._data_lock:
            return _copy(self._find_account(provider, provider_account_id))

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return _copy(self.accounts.get(account_id))

    def patch_account(self, account_id: str, **changes: Any) -> Account:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise RecordNotFound("account not found", {"account_id": account_id})
            if "user_id" in changes and changes["user_id"] not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": changes["user_id"]})
            self.accounts[account_id] = dataclasses.replace(account, **changes)
            self._persist_state()
            return _copy(self.accounts[account_id])

    def list_user_accounts(self, user_id: str) -> List[Account]:
        with self._data_lock:
            return [_copy(a) for a in self.accounts.values() if a.user_id == user_id]

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            for code_id, code in list(self.verification_codes.items()):
                if code.account_id == account_id:
                    self.verification_codes.pop(code_id, None)
            self._persist_state()
            return True

    # -- sessions and refresh tokens -----------------------------------------

    def create_session(self, user_id: str, expires_at: datetime) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            session = Session(id=new_id(), user_id=user_id, expires_at=expires_at)
            self.sessions[session.id] = session
            self._persist_state()
            return _copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return _copy(self.sessions.get(session_id))

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [_copy(s) for s in self.sessions.values() if s.user_id == user_id]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session together with every refresh token it owns."""
        with self._data_lock:
            existed = self.sessions.pop(session_id, None) is not None
            stale = [t.id for t in self.refresh_tokens.values() if t.session_id == session_id]
            for token_id in stale:
                self.refresh_tokens.pop(token_id, None)
            if existed or stale:
                self._persist_state()
            return existed

    def create_refresh_token(
        self, session_id: str, expires_at: datetime, parent_id: Optional[str] = None
    ) -> RefreshToken:
        with self._data_lock:
            if session_id not in self.sessions:
                raise ConstraintViolation("session does not exist", {"session_id": session_id})
            token = RefreshToken(
                id=new_id(),
                session_id=session_id,
                expires_at=expires_at,
                parent_id=parent_id,
            )
            self.refresh_tokens[token.id] = token
            self._persist_state()
            return _copy(token)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return _copy(self.refresh_tokens.get(token_id))

    def patch_refresh_token(self, token_id: str, **changes: Any) -> RefreshToken:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None:
                raise RecordNotFound("refresh token not found", {"token_id": token_id})
            self.refresh_tokens[token_id] = dataclasses.replace(token, **changes)
            self._persist_state()
            return _copy(self.refresh_tokens[token_id])

    def list_refresh_tokens(self, session_id: str) -> List[RefreshToken]:
        """Tokens of a session in creation order."""
        with self._data_lock:
            return [_copy(t) for t in self.refresh_tokens.values() if t.session_id == session_id]

    def list_refresh_token_children(
        self, session_id: str, parent_id: str
    ) -> List[RefreshToken]:
        with self._data_lock:
            return [
                _copy(t)
                for t in self.refresh_tokens.values()
                if t.session_id == session_id and t.parent_id == parent_id
            ]

    def get_active_refresh_token(self, session_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            active = None
            # dict order is insertion order, so the last match is the newest
            for token in self.refresh_tokens.values():
                if token.session_id == session_id and token.first_used_at is None:
                    active = token
            return _copy(active)

    # -- verification codes and verifiers ------------------------------------

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
    ) -> VerificationCode:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if any(c.code_hash == code_hash for c in self.verification_codes.values()):
                raise ConstraintViolation("verification code collision", {"field": "code_hash"})
            code = VerificationCode(
                id=new_id(),
                account_id=account_id,
                provider=provider,
                code_hash=code_hash,
                expires_at=expires_at,
                verifier=verifier,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )
            self.verification_codes[code.id] = code
            self._persist_state()
            return _copy(code)

    def get_verification_code_by_hash(self, code_hash: str) -> Optional[VerificationCode]:
        with self._data_lock:
            return _copy(
                next(
                    (c for c in self.verification_codes.values() if c.code_hash == code_hash),
                    None,
                )
            )

    def get_verification_code_by_account(self, account_id: str) -> Optional[VerificationCode]:
        with self._data_lock:
            return _copy(
                next(
                    (c for c in self.verification_codes.values() if c.account_id == account_id),
                    None,
                )
            )

    def delete_verification_code(self, code_id: str) -> bool:
        with self._data_lock:
            if self.verification_codes.pop(code_id, None) is None:
                return False
            self._persist_state()
            return True

    def create_verifier(
        self, expires_at: datetime, session_id: Optional[str] = None
    ) -> Verifier:
        with self._data_lock:
            verifier = Verifier(id=new_id(), expires_at=expires_at, session_id=session_id)
            self.verifiers[verifier.id] = verifier
            self._persist_state()
            return _copy(verifier)

    def get_verifier(self, verifier_id: str) -> Optional[Verifier]:
        with self._data_lock:
            return _copy(self.verifiers.get(verifier_id))

    def get_verifier_by_signature(self, signature: str) -> Optional[Verifier]:
        with self._data_lock:
            return _copy(
                next((v for v in self.verifiers.values() if v.signature == signature), None)
            )

    def patch_verifier(self, verifier_id: str, **changes: Any) -> Verifier:
        with self._data_lock:
            verifier = self.verifiers.get(verifier_id)
            if verifier is None:
                raise RecordNotFound("verifier not found", {"verifier_id": verifier_id})
            self.verifiers[verifier_id] = dataclasses.replace(verifier, **changes)
            self._persist_state()
            return _copy(self.verifiers[verifier_id])

    def delete_verifier(self, verifier_id: str) -> bool:
        with self._data_lock:
            if self.verifiers.pop(verifier_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- rate limits -------------------------------------------------------

    def get_rate_limit(self, identifier: str) -> Optional[RateLimitRecord]:
        with self._data_lock:
            return _copy(self.rate_limits.get(identifier))

    def put_rate_limit(self, record: RateLimitRecord) -> None:
        with self._data_lock:
            self.rate_limits[record.identifier] = _copy(record)
            self._persist_state()

    def delete_rate_limit(self, identifier: str) -> bool:
        with self._data_lock:
            if self.rate_limits.pop(identifier, None) is None:
                return False
            self._persist_state()
            return True

    # -- passkeys ----------------------------------------------------------

    def create_passkey(self, **fields: Any) -> Passkey:
        with self._data_lock:
            if fields.get("user_id") not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": fields.get("user_id")})
            credential_id = fields.get("credential_id")
            if any(p.credential_id == credential_id for p in self.passkeys.values()):
                raise ConstraintViolation("passkey already registered", {"field": "credential_id"})
            passkey = Passkey(id=new_id(), **fields)
            self.passkeys[passkey.id] = passkey
            self._persist_state()
            return _copy(passkey)

    def get_passkey_by_credential_id(self, credential_id: str) -> Optional[Passkey]:
        with self._data_lock:
            return _copy(
                next(
                    (p for p in self.passkeys.values() if p.credential_id == credential_id),
                    None,
                )
            )

    def list_user_passkeys(self, user_id: str) -> List[Passkey]:
        with self._data_lock:
            return [_copy(p) for p in self.passkeys.values() if p.user_id == user_id]

    def patch_passkey(self, passkey_id: str, **changes: Any) -> Passkey:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            if passkey is None:
                raise RecordNotFound("passkey not found", {"passkey_id": passkey_id})
            self.passkeys[passkey_id] = dataclasses.replace(passkey, **changes)
            self._persist_state()
            return _copy(self.passkeys[passkey_id])

    # -- totp --------------------------------------------------------------

    def create_totp(
        self,
        user_id: str,
        secret: str,
        *,
        digits: int = 6,
        period: int = 30,
        name: Optional[str] = None,
    ) -> TotpSecret:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for totp", {"user_id": user_id})
            record = TotpSecret(
                id=new_id(),
                user_id=user_id,
                secret=self._encrypt_secret(secret),
                digits=digits,
                period=period,
                name=name,
            )
            self.totp_secrets[record.id] = record
            self._persist_state()
            return dataclasses.replace(record, secret=secret)

    def get_totp(self, totp_id: str) -> Optional[TotpSecret]:
        with self._data_lock:
            return self._plain_totp(self.totp_secrets.get(totp_id))

    def get_verified_totp(self, user_id: str) -> Optional[TotpSecret]:
        with self._data_lock:
            return self._plain_totp(
                next(
                    (
                        t
                        for t in self.totp_secrets.values()
                        if t.user_id == user_id and t.verified
                    ),
                    None,
                )
            )

    def patch_totp(self, totp_id: str, **changes: Any) -> TotpSecret:
        with self._data_lock:
            record = self.totp_secrets.get(totp_id)
            if record is None:
                raise RecordNotFound("totp enrollment not found", {"totp_id": totp_id})
            if "secret" in changes:
                changes["secret"] = self._encrypt_secret(changes["secret"])
            self.totp_secrets[totp_id] = dataclasses.replace(record, **changes)
            self._persist_state()
            return self._plain_totp(self.totp_secrets[totp_id])

    # -- device authorization ------------------------------------------------

    def create_device_authorization(self, **fields: Any) -> DeviceAuthorization:
        with self._data_lock:
            user_code = fields.get("user_code")
            if any(d.user_code == user_code for d in self.devices.values()):
                raise ConstraintViolation("user code collision", {"field": "user_code"})
            device = DeviceAuthorization(id=new_id(), **fields)
            self.devices[device.id] = device
            self._persist_state()
            return _copy(device)

    def get_device_by_code_hash(self, device_code_hash: str) -> Optional[DeviceAuthorization]:
        with self._data_lock:
            return _copy(
                next(
                    (d for d in self.devices.values() if d.device_code_hash == device_code_hash),
                    None,
                )
            )

    def get_device_by_user_code(self, user_code: str) -> Optional[DeviceAuthorization]:
        with self._data_lock:
            return _copy(
                next((d for d in self.devices.values() if d.user_code == user_code), None)
            )

    def patch_device(self, device_id: str, **changes: Any) -> DeviceAuthorization:
        with self._data_lock:
            device = self.devices.get(device_id)
            if device is None:
                raise RecordNotFound("device authorization not found", {"device_id": device_id})
            self.devices[device_id] = dataclasses.replace(device, **changes)
            self._persist_state()
            return _copy(self.devices[device_id])

    def delete_device(self, device_id: str) -> bool:
        with self._data_lock:
            if self.devices.pop(device_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- api keys ----------------------------------------------------------

    def create_api_key(self, **fields: Any) -> ApiKey:
        with self._data_lock:
            if fields.get("user_id") not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": fields.get("user_id")})
            key = ApiKey(id=new_id(), **fields)
            self.api_keys[key.id] = key
            self._persist_state()
            return _copy(key)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            return _copy(self.api_keys.get(key_id))

    def get_api_key_by_hash(self, hashed_key: str) -> Optional[ApiKey]:
        with self._data_lock:
            return _copy(
                next((k for k in self.api_keys.values() if k.hashed_key == hashed_key), None)
            )

    def list_user_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            return [_copy(k) for k in self.api_keys.values() if k.user_id == user_id]

    def patch_api_key(self, key_id: str, **changes: Any) -> ApiKey:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key is None:
                raise RecordNotFound("api key not found", {"key_id": key_id})
            self.api_keys[key_id] = dataclasses.replace(key, **changes)
            self._persist_state()
            return _copy(self.api_keys[key_id])

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            table: [to_jsonable(record) for record in getattr(self, table).values()]
            for table in _TABLES
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for table, model in _TABLES.items():
            records = [from_jsonable(model, raw) for raw in data.get(table, [])]
            key = "identifier" if model is RateLimitRecord else "id"
            setattr(self, table, {getattr(r, key): r for r in records})
        self.logger.info(
            "auth_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True


__all__ = ["MemoryStore"]
