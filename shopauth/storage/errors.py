from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the shared store cannot be reached within its deadline."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"shared store unavailable during {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable"]
