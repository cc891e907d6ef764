"""Typed trade failures.

Each error also subclasses the closest builtin (LookupError, PermissionError,
ValueError, RuntimeError), so plain `except PermissionError` handlers catch it.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

NOT_FOUND = "NOT_FOUND"
PERMISSION_DENIED = "PERMISSION_DENIED"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
INVALID_STATE = "INVALID_STATE"
CONFLICT = "CONFLICT"


class TradeError(Exception):
    code = "TRADE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    @property
    def trade_id(self) -> Optional[str]:
        return self.details.get("trade_id")

    @property
    def instance_id(self) -> Optional[str]:
        return self.details.get("instance_id")

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}

    def __str__(self) -> str:
        return self.message


class NotFoundError(TradeError, LookupError):
    code = NOT_FOUND


class PermissionDeniedError(TradeError, PermissionError):
    code = PERMISSION_DENIED


class InvalidArgumentError(TradeError, ValueError):
    code = INVALID_ARGUMENT


class InvalidStateError(TradeError, ValueError):
    code = INVALID_STATE

    @property
    def current_status(self) -> Optional[str]:
        return self.details.get("status")


class ConflictError(TradeError, RuntimeError):
    """Ownership drifted between proposal and exchange. Safe to retry/re-propose."""
    code = CONFLICT
