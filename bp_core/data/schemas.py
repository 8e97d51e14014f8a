# =============================================================================
# bp_core/data/schemas.py
# Entity schemas for offline mutations (readings, symptoms, medications)
# =============================================================================
"""
Pydantic schemas for every entity the offline queue accepts.

Each entity has one schema per mutation action:
- INSERT: the full record (user_id and clinical values required)
- UPDATE: every field optional, server ``id`` required
- DELETE: server ``id`` only

validate_payload() is the single boundary check used before anything is
written to the local queue.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from bp_core.errors import PayloadValidationError


# =============================================================================
# TABLES
# =============================================================================

READINGS = "blood_pressure_readings"
SYMPTOMS = "symptom_entries"
MEDICATIONS = "medication_entries"

ENTITY_TABLES = (READINGS, SYMPTOMS, MEDICATIONS)

# Time field each entity is ordered by (newest first in listings)
TIME_FIELDS = {
    READINGS: "reading_time",
    SYMPTOMS: "occurred_at",
    MEDICATIONS: "taken_at",
}

# Fields compared when a queued change meets a newer server record
CONFLICT_FIELDS = {
    READINGS: [
        "systolic", "diastolic", "heart_rate", "reading_time",
        "position", "arm_used", "notes", "stress_level", "sleep_hours",
    ],
    SYMPTOMS: [
        "symptom_id", "custom_symptom_name", "severity",
        "duration_minutes", "notes", "occurred_at",
    ],
    MEDICATIONS: [
        "medication_id", "custom_medication_name", "dosage", "dosage_unit",
        "frequency", "taken_at", "prescribed_by", "side_effects",
        "taken_with_food", "effectiveness_rating",
    ],
}

# Fields that exist only in the local snapshot, never sent to Supabase
LOCAL_ONLY_FIELDS = ("sync_status",)

Position = Literal["sitting", "lying", "standing"]
ArmUsed = Literal["left", "right"]
MedicationRoute = Literal["oral", "injection", "topical", "other"]
SyncStatus = Literal["pending", "synced", "conflict"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _not_in_future(value: Optional[datetime], label: str) -> Optional[datetime]:
    if value is not None and _as_utc(value) > datetime.now(timezone.utc):
        raise ValueError(f"{label} cannot be in the future")
    return value


def _diastolic_below_systolic(value: Optional[int], systolic: Optional[int]) -> Optional[int]:
    if systolic is not None and value is not None and systolic <= value:
        raise ValueError("Systolic pressure must be higher than diastolic pressure")
    return value


# =============================================================================
# BASE MODELS
# =============================================================================

class _EntityPayload(BaseModel):
    """Bookkeeping fields shared by every entity snapshot."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: Optional[str] = None
    local_id: Optional[str] = None
    sync_status: Optional[SyncStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: Optional[bool] = None


class _UpdatePayload(_EntityPayload):
    id: str = Field(min_length=1)


class DeletePayload(_EntityPayload):
    """Soft delete only needs the server id."""
    id: str = Field(min_length=1)


# =============================================================================
# BLOOD PRESSURE READINGS
# =============================================================================

class ReadingInsert(_EntityPayload):
    user_id: str = Field(min_length=1)
    systolic: int = Field(ge=70, le=250)
    diastolic: int = Field(ge=40, le=150)
    heart_rate: Optional[int] = Field(default=None, ge=40, le=200)
    reading_time: datetime
    position: Optional[Position] = None
    arm_used: Optional[ArmUsed] = None
    device_used: Optional[str] = Field(default=None, max_length=100)
    weight_kg: Optional[float] = Field(default=None, ge=30, le=300)
    notes: Optional[str] = Field(default=None, max_length=1000)
    activity_before_reading: Optional[str] = Field(default=None, max_length=200)
    stress_level: Optional[int] = Field(default=None, ge=1, le=10)
    sleep_hours: Optional[float] = Field(default=None, ge=0, le=24)
    medication_taken: Optional[bool] = None
    felt_symptoms: Optional[bool] = None
    is_manual_entry: Optional[bool] = None
    created_by: Optional[str] = None

    @field_validator("diastolic")
    @classmethod
    def check_pressure_order(cls, value, info):
        return _diastolic_below_systolic(value, info.data.get("systolic"))

    @field_validator("reading_time")
    @classmethod
    def check_reading_time(cls, value):
        return _not_in_future(value, "Reading time")


class ReadingUpdate(_UpdatePayload):
    systolic: Optional[int] = Field(default=None, ge=70, le=250)
    diastolic: Optional[int] = Field(default=None, ge=40, le=150)
    heart_rate: Optional[int] = Field(default=None, ge=40, le=200)
    reading_time: Optional[datetime] = None
    position: Optional[Position] = None
    arm_used: Optional[ArmUsed] = None
    device_used: Optional[str] = Field(default=None, max_length=100)
    weight_kg: Optional[float] = Field(default=None, ge=30, le=300)
    notes: Optional[str] = Field(default=None, max_length=1000)
    activity_before_reading: Optional[str] = Field(default=None, max_length=200)
    stress_level: Optional[int] = Field(default=None, ge=1, le=10)
    sleep_hours: Optional[float] = Field(default=None, ge=0, le=24)
    medication_taken: Optional[bool] = None
    felt_symptoms: Optional[bool] = None

    @field_validator("diastolic")
    @classmethod
    def check_pressure_order(cls, value, info):
        return _diastolic_below_systolic(value, info.data.get("systolic"))

    @field_validator("reading_time")
    @classmethod
    def check_reading_time(cls, value):
        return _not_in_future(value, "Reading time")


# =============================================================================
# SYMPTOM ENTRIES
# =============================================================================

class SymptomEntryInsert(_EntityPayload):
    user_id: str = Field(min_length=1)
    reading_id: Optional[str] = None
    symptom_id: Optional[str] = None
    custom_symptom_name: Optional[str] = Field(default=None, max_length=100)
    severity: Optional[int] = Field(default=None, ge=1, le=10)
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    notes: Optional[str] = Field(default=None, max_length=500)
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def check_occurred_at(cls, value):
        return _not_in_future(value, "Occurrence time")

    @model_validator(mode="after")
    def check_symptom_named(self):
        if not (self.symptom_id or self.custom_symptom_name):
            raise ValueError("Either select a symptom or provide a custom symptom name")
        return self


class SymptomEntryUpdate(_UpdatePayload):
    reading_id: Optional[str] = None
    symptom_id: Optional[str] = None
    custom_symptom_name: Optional[str] = Field(default=None, max_length=100)
    severity: Optional[int] = Field(default=None, ge=1, le=10)
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    notes: Optional[str] = Field(default=None, max_length=500)
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def check_occurred_at(cls, value):
        return _not_in_future(value, "Occurrence time")


# =============================================================================
# MEDICATION ENTRIES
# =============================================================================

class MedicationEntryInsert(_EntityPayload):
    user_id: str = Field(min_length=1)
    reading_id: Optional[str] = None
    medication_id: Optional[str] = None
    custom_medication_name: Optional[str] = Field(default=None, max_length=100)
    dosage: str = Field(min_length=1, max_length=50)
    dosage_unit: Optional[str] = Field(default=None, max_length=20)
    frequency: Optional[str] = Field(default=None, max_length=100)
    route: Optional[MedicationRoute] = None
    taken_at: Optional[datetime] = None
    prescribed_by: Optional[str] = Field(default=None, max_length=200)
    taken_with_food: Optional[bool] = None
    missed_dose: Optional[bool] = None
    side_effects: Optional[str] = Field(default=None, max_length=500)
    effectiveness_rating: Optional[int] = Field(default=None, ge=1, le=5)

    @field_validator("taken_at")
    @classmethod
    def check_taken_at(cls, value):
        return _not_in_future(value, "Taken time")

    @model_validator(mode="after")
    def check_medication_named(self):
        if not (self.medication_id or self.custom_medication_name):
            raise ValueError("Either select a medication or provide a custom medication name")
        return self


class MedicationEntryUpdate(_UpdatePayload):
    reading_id: Optional[str] = None
    medication_id: Optional[str] = None
    custom_medication_name: Optional[str] = Field(default=None, max_length=100)
    dosage: Optional[str] = Field(default=None, min_length=1, max_length=50)
    dosage_unit: Optional[str] = Field(default=None, max_length=20)
    frequency: Optional[str] = Field(default=None, max_length=100)
    route: Optional[MedicationRoute] = None
    taken_at: Optional[datetime] = None
    prescribed_by: Optional[str] = Field(default=None, max_length=200)
    taken_with_food: Optional[bool] = None
    missed_dose: Optional[bool] = None
    side_effects: Optional[str] = Field(default=None, max_length=500)
    effectiveness_rating: Optional[int] = Field(default=None, ge=1, le=5)

    @field_validator("taken_at")
    @classmethod
    def check_taken_at(cls, value):
        return _not_in_future(value, "Taken time")


# =============================================================================
# VALIDATION ENTRY POINT
# =============================================================================

SCHEMAS: Dict[tuple, Type[BaseModel]] = {
    (READINGS, "INSERT"): ReadingInsert,
    (READINGS, "UPDATE"): ReadingUpdate,
    (READINGS, "DELETE"): DeletePayload,
    (SYMPTOMS, "INSERT"): SymptomEntryInsert,
    (SYMPTOMS, "UPDATE"): SymptomEntryUpdate,
    (SYMPTOMS, "DELETE"): DeletePayload,
    (MEDICATIONS, "INSERT"): MedicationEntryInsert,
    (MEDICATIONS, "UPDATE"): MedicationEntryUpdate,
    (MEDICATIONS, "DELETE"): DeletePayload,
}


def format_validation_errors(error: ValidationError) -> List[Dict[str, Any]]:
    """Flatten a pydantic ValidationError into field/message/code dicts."""
    issues = []
    for issue in error.errors():
        message = issue["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        issues.append({
            "field": ".".join(str(part) for part in issue["loc"]) or "payload",
            "message": message,
            "code": issue["type"],
        })
    return issues


def validate_payload(table: str, action: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a mutation payload against its entity schema.

    Args:
        table: Entity table name
        action: INSERT, UPDATE or DELETE (MutationAction or str)
        payload: Raw payload from the caller

    Returns:
        JSON-ready dict containing only the fields the caller supplied

    Raises:
        PayloadValidationError: Unknown table/action or schema failure
    """
    action_name = str(getattr(action, "value", action)).upper()
    schema = SCHEMAS.get((table, action_name))
    if schema is None:
        raise PayloadValidationError(
            f"Unsupported mutation {action_name} on {table}",
            table=table,
        )

    if not isinstance(payload, dict):
        raise PayloadValidationError(
            f"Payload for {table} must be a mapping",
            table=table,
        )

    try:
        model = schema.model_validate(payload)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {table.replace('_', ' ')} data",
            table=table,
            issues=format_validation_errors(e),
        )

    return model.model_dump(mode="json", exclude_unset=True)


def apply_insert_defaults(table: str, entity: Dict[str, Any], now_iso: str) -> Dict[str, Any]:
    """Fill the defaults the backend would otherwise assign on insert."""
    entity = dict(entity)
    if table == READINGS:
        entity.setdefault("is_manual_entry", True)
        entity["medication_taken"] = bool(entity.get("medication_taken", False))
        entity["felt_symptoms"] = bool(entity.get("felt_symptoms", False))
        entity.setdefault("created_by", "user")
    elif table == SYMPTOMS:
        entity["occurred_at"] = entity.get("occurred_at") or now_iso
    elif table == MEDICATIONS:
        entity["taken_at"] = entity.get("taken_at") or now_iso
        entity["missed_dose"] = bool(entity.get("missed_dose", False))
        entity["dosage_unit"] = entity.get("dosage_unit") or "mg"
        entity["route"] = entity.get("route") or "oral"
    return entity
