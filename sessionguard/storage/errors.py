from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a storage backend cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageTimeout(StorageError):
    """Raised when a storage call does not return within the caller's deadline."""


__all__ = ["StorageError", "StorageTimeout"]
