from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a storage backend fails to complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


__all__ = ["StorageError", "ConstraintViolation"]
