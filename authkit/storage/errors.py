from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the identity store cannot be reached or times out."""


class CacheUnavailable(Exception):
    """Raised when the token cache cannot be reached or times out."""


__all__ = ["ConstraintViolation", "StorageUnavailable", "CacheUnavailable"]
