"""Shared error codes, exceptions and operation results.

Public mutation APIs of the toggle engine report failures through
``OperationResult`` instead of raising, so that callers in UI or business
code never crash because of the feature flag subsystem.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    FEATURE_NOT_FOUND = "FEATURE_NOT_FOUND"
    STORAGE_ERROR = "STORAGE_ERROR"
    REMOTE_ERROR = "REMOTE_ERROR"
    REMOTE_TIMEOUT = "REMOTE_TIMEOUT"
    INVALID_CONFIG = "INVALID_CONFIG"
    ANALYTICS_ERROR = "ANALYTICS_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ToggleError(Exception):
    """Base class for feature toggle errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message}


class StorageError(ToggleError):
    """Raised when the local key/value store cannot be read or written."""

    code = ErrorCode.STORAGE_ERROR


class RemoteConfigError(ToggleError):
    """Raised when the remote configuration source cannot be fetched or parsed."""

    code = ErrorCode.REMOTE_ERROR


class FeatureNotFoundError(ToggleError):
    """Raised when an operation needs a configuration that does not exist."""

    code = ErrorCode.FEATURE_NOT_FOUND

    def __init__(self, feature: str):
        super().__init__(f"Feature not found: {feature}")
        self.feature = feature


class ConfigurationError(ToggleError):
    """Raised for invalid engine settings."""

    code = ErrorCode.INVALID_CONFIG


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an engine operation."""

    success: bool
    error: Optional[str] = None
    code: Optional[ErrorCode] = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls) -> "OperationResult":
        return cls(success=True)

    @classmethod
    def failure(cls, error: Exception | str, code: Optional[ErrorCode] = None) -> "OperationResult":
        if isinstance(error, ToggleError):
            return cls(success=False, error=error.message, code=code or error.code)
        return cls(success=False, error=str(error), code=code or ErrorCode.INTERNAL_ERROR)

    def raise_for_error(self) -> None:
        """Raise ``ToggleError`` if the operation failed."""
        if not self.success:
            raise ToggleError(self.error or "operation failed", self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "code": self.code.value if self.code else None,
        }


__all__ = [
    "ErrorCode",
    "ToggleError",
    "StorageError",
    "RemoteConfigError",
    "FeatureNotFoundError",
    "ConfigurationError",
    "OperationResult",
]
