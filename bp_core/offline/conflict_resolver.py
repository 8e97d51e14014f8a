# =============================================================================
# bp_core/offline/conflict_resolver.py
# Sync Conflict Detection and Resolution
# =============================================================================
"""
SyncConflictResolver - Decides whether a queued change and the current server
record really diverge, and builds the record to apply once the user picks a
strategy.

Strategies:
- local:  the queued change overwrites the server record
- server: the queued change is discarded
- merge:  entity-specific reconciliation (notes concatenated, clinical
          values taken from the most recent measurement)

The resolver is stateless; persisting the outcome is the caller's job.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from bp_core.data.schemas import CONFLICT_FIELDS, MEDICATIONS, READINGS, SYMPTOMS, TIME_FIELDS
from bp_core.errors import ConflictResolutionError
from bp_core.logging import get_logger
from bp_core.offline.models import (
    ConflictDetails,
    ConflictResolution,
    ConflictSummary,
    ConflictType,
    MutationAction,
    QueuedMutation,
    StrategyRecommendation,
    parse_timestamp,
    utcnow,
)

logger = get_logger(__name__)

# Fields whose divergence points at clinical data
CLINICAL_FIELDS = ("systolic", "diastolic", "heart_rate", "severity", "dosage")

# Fields holding timestamps (compared as instants, not strings)
DATETIME_FIELDS = frozenset(TIME_FIELDS.values()) | {"created_at", "updated_at"}

READING_CLINICAL_FIELDS = ("systolic", "diastolic", "heart_rate", "reading_time")
READING_CONTEXT_FIELDS = ("stress_level", "sleep_hours", "activity_before_reading", "position", "arm_used")
MEDICATION_DOSE_FIELDS = ("dosage", "dosage_unit", "taken_at")


def _values_equal(field_name: str, local: Any, server: Any) -> bool:
    if field_name in DATETIME_FIELDS:
        local_time, server_time = parse_timestamp(local), parse_timestamp(server)
        if local_time is not None and server_time is not None:
            return local_time == server_time
    return local == server


def _join_text(server_text: Optional[str], local_text: Optional[str], label: str) -> Optional[str]:
    """Concatenate two free-text values so neither side is lost."""
    if local_text and server_text and local_text != server_text:
        return f"{server_text}\n\n{label}: {local_text}"
    return local_text or server_text


def _is_later(local_value: Any, server_value: Any) -> bool:
    local_time = parse_timestamp(local_value)
    server_time = parse_timestamp(server_value)
    if local_time is None:
        return False
    return server_time is None or local_time > server_time


class SyncConflictResolver:
    """
    Conflict detection, resolution and advisory summaries.

    Usage:
        resolver = SyncConflictResolver()
        conflict = resolver.detect_conflict(mutation, server_record)
        if conflict:
            record = resolver.resolve(conflict, "merge")
    """

    # =========================================================================
    # DETECTION
    # =========================================================================

    @staticmethod
    def local_view(mutation: QueuedMutation) -> Dict[str, Any]:
        """The record as the queued change wants it to be."""
        local = dict(mutation.payload)
        if mutation.action == MutationAction.DELETE:
            local["is_deleted"] = True
        return local

    def describe(
        self,
        mutation: QueuedMutation,
        server_record: Dict[str, Any],
        fields: Optional[List[str]] = None,
    ) -> ConflictDetails:
        """Build ConflictDetails for a mutation without re-checking divergence."""
        conflict_type = (
            ConflictType.UPDATE_VS_DELETE
            if mutation.action == MutationAction.DELETE
            else ConflictType.UPDATE_VS_UPDATE
        )
        return ConflictDetails(
            record_id=mutation.id,
            table=mutation.table,
            local_data=self.local_view(mutation),
            server_data=dict(server_record or {}),
            conflict_type=conflict_type,
            fields=list(fields or []),
        )

    def diverging_fields(self, mutation: QueuedMutation, server_record: Dict[str, Any]) -> List[str]:
        """Conflict-relevant fields the queued change sets to a different value."""
        local = self.local_view(mutation)
        candidates = list(CONFLICT_FIELDS.get(mutation.table, []))
        if mutation.action == MutationAction.DELETE:
            candidates.append("is_deleted")

        return [
            name for name in candidates
            if name in local and not _values_equal(name, local[name], server_record.get(name))
        ]

    def detect_conflict(
        self,
        mutation: QueuedMutation,
        server_record: Optional[Dict[str, Any]],
    ) -> Optional[ConflictDetails]:
        """
        Check a queued change against the current server record.

        Returns None when there is no server record, when the server copy was
        last modified at or before the change was captured, or when none of
        the entity's conflict fields differ.
        """
        if not server_record:
            return None

        server_updated = parse_timestamp(
            server_record.get("updated_at") or server_record.get("created_at")
        )
        if server_updated is None or server_updated <= mutation.created_at:
            return None

        fields = self.diverging_fields(mutation, server_record)
        if not fields:
            return None

        conflict = self.describe(mutation, server_record, fields)
        logger.info(
            f"Conflict on {mutation.table} ({conflict.conflict_type.value}): "
            f"{', '.join(fields)}"
        )
        return conflict

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(
        self,
        conflict: ConflictDetails,
        strategy: Any,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Compute the record to apply for a conflict.

        Args:
            conflict: Details from detect_conflict (or describe)
            strategy: "local", "server", "merge" or a ConflictResolution
            custom_fields: Explicit field values for a merge

        Raises:
            ConflictResolutionError: Unknown strategy
        """
        try:
            strategy = ConflictResolution(getattr(strategy, "value", strategy))
        except ValueError:
            raise ConflictResolutionError(
                f"Invalid resolution strategy: {strategy}",
                strategy=str(strategy),
                table=conflict.table,
            )

        if strategy == ConflictResolution.SERVER:
            return dict(conflict.server_data)

        if strategy == ConflictResolution.LOCAL:
            resolved = {**conflict.server_data, **conflict.local_data}
        elif custom_fields:
            resolved = {**conflict.server_data, **custom_fields}
        else:
            resolved = self._merge(conflict)

        resolved["updated_at"] = utcnow().isoformat()
        resolved["sync_status"] = "synced"
        return resolved

    def _merge(self, conflict: ConflictDetails) -> Dict[str, Any]:
        if conflict.table == READINGS:
            return self._merge_reading(conflict.local_data, conflict.server_data)
        if conflict.table == SYMPTOMS:
            return self._merge_symptom(conflict.local_data, conflict.server_data)
        if conflict.table == MEDICATIONS:
            return self._merge_medication(conflict.local_data, conflict.server_data)
        raise ConflictResolutionError(
            f"No merge policy for {conflict.table}",
            strategy=ConflictResolution.MERGE.value,
            table=conflict.table,
        )

    @staticmethod
    def _merge_reading(local: Dict[str, Any], server: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(server)

        # Clinical values follow the most recent measurement
        if _is_later(local.get("reading_time"), server.get("reading_time")):
            for name in READING_CLINICAL_FIELDS:
                if name in local:
                    merged[name] = local[name]

        merged["notes"] = _join_text(server.get("notes"), local.get("notes"), "[Local update]")

        for name in READING_CONTEXT_FIELDS:
            if local.get(name) is not None:
                merged[name] = local[name]

        return merged

    @staticmethod
    def _merge_symptom(local: Dict[str, Any], server: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(server)

        for name in ("severity", "duration_minutes"):
            if local.get(name) is not None:
                merged[name] = local[name]

        merged["notes"] = _join_text(server.get("notes"), local.get("notes"), "[Updated]")
        return merged

    @staticmethod
    def _merge_medication(local: Dict[str, Any], server: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(server)

        if _is_later(local.get("taken_at"), server.get("taken_at")):
            for name in MEDICATION_DOSE_FIELDS:
                if name in local:
                    merged[name] = local[name]

        for name in ("taken_with_food", "effectiveness_rating"):
            if local.get(name) is not None:
                merged[name] = local[name]

        merged["side_effects"] = _join_text(
            server.get("side_effects"), local.get("side_effects"), "[Additional]"
        )
        return merged

    # =========================================================================
    # UI HELPERS
    # =========================================================================

    def summarize(self, conflict: ConflictDetails) -> ConflictSummary:
        """Describe a conflict and rank the strategies worth offering."""
        field_count = len(conflict.fields)
        table = conflict.table.replace("_", " ")

        title = f"Sync Conflict in {table}"
        description = (
            f"Your local changes conflict with server updates in {field_count} "
            f"field{'s' if field_count != 1 else ''}: {', '.join(conflict.fields)}"
        )

        return ConflictSummary(
            title=title,
            description=description,
            recommendations=self._recommend(conflict),
        )

    @staticmethod
    def _recommend(conflict: ConflictDetails) -> List[StrategyRecommendation]:
        fields = set(conflict.fields)
        has_notes = "notes" in fields or "side_effects" in fields
        has_timestamp = bool(fields & set(TIME_FIELDS.values()))
        has_clinical = bool(fields & set(CLINICAL_FIELDS))

        if conflict.conflict_type == ConflictType.UPDATE_VS_DELETE:
            recommendations = [
                StrategyRecommendation(
                    ConflictResolution.SERVER,
                    "The record changed on the server after you deleted it",
                    70,
                ),
                StrategyRecommendation(
                    ConflictResolution.LOCAL,
                    "Delete the record anyway",
                    65,
                ),
            ]
        elif has_clinical and has_timestamp:
            recommendations = [
                StrategyRecommendation(
                    ConflictResolution.MERGE,
                    "Combines clinical data with user context",
                    90,
                ),
                StrategyRecommendation(
                    ConflictResolution.LOCAL,
                    "Your recent changes include important clinical data",
                    75,
                ),
            ]
        elif has_notes:
            recommendations = [
                StrategyRecommendation(
                    ConflictResolution.MERGE,
                    "Preserves both sets of notes and context",
                    85,
                ),
            ]
        else:
            recommendations = [
                StrategyRecommendation(
                    ConflictResolution.LOCAL,
                    "Your recent changes should take precedence",
                    80,
                ),
                StrategyRecommendation(
                    ConflictResolution.SERVER,
                    "Use the server version to maintain consistency",
                    60,
                ),
            ]

        return sorted(recommendations, key=lambda r: r.confidence, reverse=True)
