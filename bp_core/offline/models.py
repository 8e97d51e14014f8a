# =============================================================================
# bp_core/offline/models.py
# Queue, conflict and sync-pass records
# =============================================================================

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MutationAction(str, Enum):
    """Kind of local change waiting in the queue."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ConflictType(str, Enum):
    """How a queued change diverges from the server record."""
    UPDATE_VS_UPDATE = "update_vs_update"
    UPDATE_VS_DELETE = "update_vs_delete"


class ConflictResolution(str, Enum):
    """Strategy applied to a confirmed conflict."""
    LOCAL = "local"
    SERVER = "server"
    MERGE = "merge"


@dataclass
class QueuedMutation:
    """One pending local change."""
    table: str
    action: MutationAction
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    synced: bool = False
    conflict: bool = False

    @property
    def record_id(self) -> Optional[str]:
        """Server id of the target entity."""
        return self.payload.get("id")

    @property
    def local_id(self) -> Optional[str]:
        return self.payload.get("local_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "action": self.action.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "synced": self.synced,
            "conflict": self.conflict,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> QueuedMutation:
        return cls(
            id=data["id"],
            table=data["table"],
            action=MutationAction(data["action"]),
            payload=dict(data.get("payload") or {}),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            synced=bool(data.get("synced", False)),
            conflict=bool(data.get("conflict", False)),
        )


@dataclass
class ConflictDetails:
    """Divergence between a queued change and the current server record."""
    record_id: str
    table: str
    local_data: Dict[str, Any]
    server_data: Dict[str, Any]
    conflict_type: ConflictType
    fields: List[str]
    detected_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncError:
    """A record that failed during a sync pass (mutation is None for pass-level errors)."""
    mutation: Optional[QueuedMutation]
    error: str
    code: Optional[str] = None


@dataclass
class SyncResult:
    """Outcome of one sync pass."""
    success: bool = True
    synced: List[QueuedMutation] = field(default_factory=list)
    conflicts: List[QueuedMutation] = field(default_factory=list)
    conflict_details: List[ConflictDetails] = field(default_factory=list)
    errors: List[SyncError] = field(default_factory=list)

    @classmethod
    def rejected(cls, reason: str) -> SyncResult:
        """A pass that did no work at all."""
        return cls(success=False, errors=[SyncError(mutation=None, error=reason)])


@dataclass
class StrategyRecommendation:
    strategy: ConflictResolution
    reason: str
    confidence: int


@dataclass
class ConflictSummary:
    """Advisory description of a conflict for the UI."""
    title: str
    description: str
    recommendations: List[StrategyRecommendation]
