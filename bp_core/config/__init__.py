# =============================================================================
# bp_core/config/__init__.py
# Runtime configuration for BP Tracker
# =============================================================================

from .settings import SyncSettings, load_settings

__all__ = ["SyncSettings", "load_settings"]
