# =============================================================================
# bp_core/config/settings.py
# Settings loader (Streamlit secrets -> environment -> defaults)
# =============================================================================
"""
SyncSettings - configuration for the offline sync layer.

Expected secrets.toml format:

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

    [offline]
    db_path = "local_data/bp_tracker.db"
    auto_sync = true

Environment variables (SUPABASE_URL, SUPABASE_KEY, BP_TRACKER_DB_PATH,
BP_TRACKER_AUTO_SYNC) are used when no secrets file is configured.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import streamlit as st

from bp_core.errors import ConfigurationError
from bp_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DB_PATH = Path("local_data") / "bp_tracker.db"
STORAGE_PREFIX = "bp_tracker"


@dataclass
class SyncSettings:
    """Configuration for local storage, connectivity checks and Supabase."""
    db_path: Path = DEFAULT_DB_PATH
    storage_prefix: str = STORAGE_PREFIX
    auto_sync: bool = True
    check_interval_online: int = 30
    check_interval_offline: int = 10
    connection_timeout: int = 5
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def require_supabase(self) -> tuple:
        """Return (url, key) or raise if the backend is not configured."""
        if not self.supabase_url:
            raise ConfigurationError("Supabase URL is not configured", config_key="supabase.url")
        if not self.supabase_key:
            raise ConfigurationError("Supabase key is not configured", config_key="supabase.key")
        return self.supabase_url, self.supabase_key


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _read_secrets() -> Dict[str, Dict[str, Any]]:
    """Read the [supabase] and [offline] sections from Streamlit secrets."""
    sections: Dict[str, Dict[str, Any]] = {}
    try:
        for section in ("supabase", "offline"):
            if section in st.secrets:
                sections[section] = dict(st.secrets[section])
    except Exception as e:
        # st.secrets raises when no secrets.toml exists
        logger.debug(f"Streamlit secrets not available: {e}")
    return sections


def load_settings(**overrides: Any) -> SyncSettings:
    """
    Build SyncSettings from secrets, then environment, then defaults.

    Args:
        **overrides: Explicit values that win over every other source

    Returns:
        SyncSettings instance
    """
    secrets = _read_secrets()
    supabase = secrets.get("supabase", {})
    offline = secrets.get("offline", {})

    values: Dict[str, Any] = {
        "supabase_url": supabase.get("url") or os.getenv("SUPABASE_URL"),
        "supabase_key": supabase.get("key") or os.getenv("SUPABASE_KEY"),
    }

    db_path = offline.get("db_path") or os.getenv("BP_TRACKER_DB_PATH")
    if db_path:
        values["db_path"] = Path(db_path)

    auto_sync = offline.get("auto_sync", os.getenv("BP_TRACKER_AUTO_SYNC"))
    if auto_sync is not None:
        values["auto_sync"] = _parse_bool(auto_sync)

    for key in ("check_interval_online", "check_interval_offline", "connection_timeout"):
        if key in offline:
            try:
                values[key] = int(offline[key])
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid value for offline.{key}",
                    config_key=f"offline.{key}",
                    expected_type="int",
                )

    values.update(overrides)
    return SyncSettings(**values)
