from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for failures raised by an auth store implementation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A write would break a uniqueness rule or reference a missing parent."""


class RecordNotFound(StoreError):
    """A patch targeted a record that is not in the store."""


class UnreadableSecret(StoreError):
    """An encrypted column could not be decrypted with the configured key."""


__all__ = ["ConstraintViolation", "RecordNotFound", "StoreError", "UnreadableSecret"]
