from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConcurrencyConflict(Exception):
    """Raised when a compare-and-swap on a refresh record finds it already revoked."""

    def __init__(self, record_id: str, message: str = "refresh record already revoked"):
        super().__init__(message)
        self.record_id = record_id
        self.message = message


__all__ = ["ConstraintViolation", "ConcurrencyConflict"]
