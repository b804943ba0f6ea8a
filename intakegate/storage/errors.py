from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeout(Exception):
    """The durable store did not answer within its configured timeout."""


class CacheTimeout(Exception):
    """Redis did not answer within its socket timeout."""


__all__ = ["ConstraintViolation", "StoreTimeout", "CacheTimeout"]
