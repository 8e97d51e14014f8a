# =============================================================================
# bp_core/errors/exceptions.py
# Custom Exception Hierarchy for BP Tracker
# =============================================================================

from typing import Optional, Dict, Any, List


class BPTrackerError(Exception):
    """
    Base exception for all BP Tracker errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "BP_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# DATA LAYER EXCEPTIONS
# =============================================================================

class PayloadValidationError(BPTrackerError):
    """Raised when an entity payload fails its schema checks"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        issues: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if issues:
            details["issues"] = issues

        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details=details,
            **kwargs,
        )

    @property
    def issues(self) -> List[Dict[str, Any]]:
        return self.details.get("issues", [])


class StorageError(BPTrackerError):
    """Raised when the local durable store cannot be read or written"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key

        super().__init__(
            message=message,
            code="OFFLINE_STORAGE_ERROR",
            details=details,
            **kwargs,
        )


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class ConflictResolutionError(BPTrackerError):
    """Raised when a conflict cannot be resolved with the chosen strategy"""

    def __init__(
        self,
        message: str,
        strategy: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if strategy:
            details["strategy"] = strategy
        if table:
            details["table"] = table

        super().__init__(
            message=message,
            code="CONFLICT_RESOLUTION_ERROR",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(BPTrackerError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
