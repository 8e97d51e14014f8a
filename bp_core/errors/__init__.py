# =============================================================================
# bp_core/errors/__init__.py
# Centralized Error Handling for BP Tracker
# =============================================================================

from .exceptions import (
    BPTrackerError,
    PayloadValidationError,
    StorageError,
    ConflictResolutionError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    safe_execute,
)

__all__ = [
    # Exceptions
    "BPTrackerError",
    "PayloadValidationError",
    "StorageError",
    "ConflictResolutionError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "safe_execute",
]
