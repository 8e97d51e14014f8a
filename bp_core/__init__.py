# =============================================================================
# bp_core/__init__.py
# BP Tracker - offline-first data core
# =============================================================================
"""
Core package for the BP Tracker pregnancy blood-pressure log.

The offline sync layer lives in ``bp_core.offline``; the Supabase data
facade in ``bp_core.data``.
"""

__version__ = "0.3.0"
