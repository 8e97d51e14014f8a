# =============================================================================
# bp_core/data/supabase_client.py
# Supabase Client Configuration for BP Tracker
# Remote data facade over the readings / symptoms / medications tables
# =============================================================================

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import streamlit as st
from postgrest.exceptions import APIError

from bp_core.config import SyncSettings, load_settings
from bp_core.data.remote import (
    CONFLICT,
    DUPLICATE,
    NETWORK_ERROR,
    NOT_FOUND,
    UNKNOWN_ERROR,
    RemoteResult,
)
from bp_core.data.schemas import ENTITY_TABLES, LOCAL_ONLY_FIELDS
from bp_core.logging import get_logger

logger = get_logger(__name__)

# Postgres unique_violation
PG_UNIQUE_VIOLATION = "23505"


def get_supabase_client(settings: Optional[SyncSettings] = None):
    """
    Initialize and return a Supabase client.

    Credentials come from SyncSettings (Streamlit secrets or environment).

    Raises:
        ConfigurationError: If URL or key are missing
    """
    from supabase import create_client, Client

    settings = settings or load_settings()
    url, key = settings.require_supabase()

    client: Client = create_client(url, key)
    logger.info("Supabase client created")
    return client


@st.cache_resource(ttl=3600)  # Cache for 1 hour, then refresh
def get_cached_supabase_client(url: str, key: str):
    """
    Get cached Supabase client (reused across sessions).

    Keyed on the credentials so a settings change builds a new client.
    """
    return get_supabase_client(SyncSettings(supabase_url=url, supabase_key=key))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_remote(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop snapshot-only bookkeeping before sending a row to Supabase."""
    return {k: v for k, v in payload.items() if k not in LOCAL_ONLY_FIELDS}


def _api_failure(error: APIError, operation: str, table: str) -> RemoteResult:
    code = getattr(error, "code", None) or UNKNOWN_ERROR
    message = getattr(error, "message", None) or str(error)
    logger.error(f"Supabase {operation} on {table} failed: [{code}] {message}")

    if code == PG_UNIQUE_VIOLATION:
        return RemoteResult.failure(DUPLICATE, message, {"pg_code": code})
    return RemoteResult.failure(str(code), message, {"details": getattr(error, "details", None)})


def _network_failure(error: Exception, operation: str, table: str) -> RemoteResult:
    logger.warning(f"Supabase {operation} on {table} unreachable: {error}")
    return RemoteResult.failure(NETWORK_ERROR, f"Network error: {error}")


class SupabaseEntityService:
    """
    Supabase gateway for one entity table.

    Every method returns a RemoteResult; no exception escapes except
    programming errors.
    """

    def __init__(self, table_name: str, client=None):
        """
        Initialize service for a specific table.

        Args:
            table_name: Name of the Supabase table
            client: Supabase client (built from settings when omitted)
        """
        self.table_name = table_name
        if client is None:
            settings = load_settings()
            url, key = settings.require_supabase()
            client = get_cached_supabase_client(url, key)
        self.client = client

    def _table(self):
        return self.client.table(self.table_name)

    def create(self, payload: Dict[str, Any]) -> RemoteResult:
        """Insert a single record and return the stored row."""
        try:
            response = self._table().insert(_to_remote(payload)).execute()
        except APIError as e:
            return _api_failure(e, "insert", self.table_name)
        except httpx.HTTPError as e:
            return _network_failure(e, "insert", self.table_name)

        rows = response.data or []
        return RemoteResult.success(rows[0] if rows else payload)

    def update(self, record_id: str, payload: Dict[str, Any]) -> RemoteResult:
        """
        Update a record unless the server copy is newer than the payload.

        The payload's ``updated_at`` is the version the local change was
        based on; a server row modified after it yields CONFLICT carrying
        the current row in ``details["server_record"]``.
        """
        data = _to_remote(payload)
        data.pop("id", None)
        base_version = data.get("updated_at")

        try:
            query = self._table().update(data).eq("id", record_id)
            if base_version:
                query = query.lte("updated_at", base_version)
            response = query.execute()
        except APIError as e:
            return _api_failure(e, "update", self.table_name)
        except httpx.HTTPError as e:
            return _network_failure(e, "update", self.table_name)

        rows = response.data or []
        if rows:
            return RemoteResult.success(rows[0])

        # Nothing matched: either the row is gone or it moved on
        current = self.fetch(record_id)
        if current.ok:
            return RemoteResult.failure(
                CONFLICT,
                f"Record {record_id} in {self.table_name} was modified on the server",
                {"server_record": current.data},
            )
        return current

    def soft_delete(self, record_id: str) -> RemoteResult:
        """Flag a record as deleted; data is True if a row was flagged."""
        try:
            response = (
                self._table()
                .update({"is_deleted": True, "updated_at": _now_iso()})
                .eq("id", record_id)
                .execute()
            )
        except APIError as e:
            return _api_failure(e, "soft delete", self.table_name)
        except httpx.HTTPError as e:
            return _network_failure(e, "soft delete", self.table_name)

        return RemoteResult.success(bool(response.data))

    def fetch(self, record_id: str) -> RemoteResult:
        """Fetch a single record by server id."""
        try:
            response = (
                self._table()
                .select("*")
                .eq("id", record_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            return _api_failure(e, "fetch", self.table_name)
        except httpx.HTTPError as e:
            return _network_failure(e, "fetch", self.table_name)

        rows = response.data or []
        if not rows:
            return RemoteResult.failure(NOT_FOUND, f"Record {record_id} not found in {self.table_name}")
        return RemoteResult.success(rows[0])


class SupabaseDataFacade:
    """Hands out one SupabaseEntityService per entity table."""

    def __init__(self, client=None):
        self.client = client
        self._services: Dict[str, SupabaseEntityService] = {}

    def entity(self, table: str) -> SupabaseEntityService:
        if table not in ENTITY_TABLES:
            raise ValueError(f"Unsupported table: {table}")
        if table not in self._services:
            self._services[table] = SupabaseEntityService(table, client=self.client)
        return self._services[table]
