# =============================================================================
# bp_core/data/remote.py
# Remote data facade contract (typed results per entity operation)
# =============================================================================
"""
Contract between the offline layer and whatever backend stores the data.

Every operation returns a RemoteResult instead of raising, so a sync pass
can classify failures per record: a CONFLICT code marks a resolvable
divergence, everything else is treated as transient.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


# Error codes
CONFLICT = "CONFLICT"
NOT_FOUND = "NOT_FOUND"
DUPLICATE = "DUPLICATE"
NETWORK_ERROR = "NETWORK_ERROR"
VALIDATION_ERROR = "VALIDATION_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class RemoteError:
    """Typed error returned by a facade operation."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_conflict(self) -> bool:
        return self.code == CONFLICT

    @property
    def server_record(self) -> Optional[Dict[str, Any]]:
        """Current server row, when the backend reported it with a conflict."""
        return self.details.get("server_record")


@dataclass
class RemoteResult:
    """{data, error} pair; exactly one of them is meaningful."""
    data: Any = None
    error: Optional[RemoteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Any = None) -> RemoteResult:
        return cls(data=data, error=None)

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> RemoteResult:
        return cls(data=None, error=RemoteError(code, message, details or {}))


class EntityGateway(Protocol):
    """Per-entity operations the sync layer relies on."""

    def create(self, payload: Dict[str, Any]) -> RemoteResult: ...

    def update(self, record_id: str, payload: Dict[str, Any]) -> RemoteResult: ...

    def soft_delete(self, record_id: str) -> RemoteResult: ...

    def fetch(self, record_id: str) -> RemoteResult: ...


class DataFacade(Protocol):
    """Resolves the gateway for an entity table."""

    def entity(self, table: str) -> EntityGateway: ...
