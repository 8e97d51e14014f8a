# =============================================================================
# bp_core/data/__init__.py
# Entity schemas and the remote data facade
# =============================================================================

from bp_core.data.remote import RemoteError, RemoteResult, EntityGateway, DataFacade
from bp_core.data.schemas import (
    READINGS,
    SYMPTOMS,
    MEDICATIONS,
    ENTITY_TABLES,
    validate_payload,
)

__all__ = [
    "RemoteError",
    "RemoteResult",
    "EntityGateway",
    "DataFacade",
    "READINGS",
    "SYMPTOMS",
    "MEDICATIONS",
    "ENTITY_TABLES",
    "validate_payload",
]
