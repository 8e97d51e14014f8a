# =============================================================================
# bp_core/offline/connection_manager.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionManager - Detects and monitors internet/Supabase connectivity.

Features:
- Connection probing (public DNS + Supabase host)
- Periodic health checks on a background thread
- Listener callbacks on online/offline transitions
- Thread-safe singleton accessor
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlparse

from bp_core.config import SyncSettings, load_settings
from bp_core.logging import get_logger

logger = get_logger(__name__)

StatusListener = Callable[[bool], None]


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Full connectivity (Internet + Supabase)
    OFFLINE = "offline"         # No connectivity
    DEGRADED = "degraded"       # Internet OK but Supabase unavailable
    CHECKING = "checking"       # Currently checking status
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    internet_available: bool = False
    supabase_available: bool = False
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class ConnectionManager:
    """
    Tracks connectivity and notifies listeners when it flips.

    Usage:
        monitor = get_connection_manager()
        unsubscribe = monitor.on_status_change(lambda online: print(online))
        if monitor.is_online:
            ...
        unsubscribe()
    """

    _instance: Optional[ConnectionManager] = None
    _lock = threading.Lock()

    PROBE_HOSTS = [
        ("8.8.8.8", 53),        # Google DNS
        ("1.1.1.1", 53),        # Cloudflare DNS
        ("208.67.222.222", 53), # OpenDNS
    ]

    def __init__(self, settings: Optional[SyncSettings] = None):
        """Initialize connection manager (use get_connection_manager() for the shared one)."""
        self.settings = settings or SyncSettings()
        self._state = ConnectionState()
        self._listeners: List[StatusListener] = []
        self._listeners_lock = threading.Lock()
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._initialized = False
        self._checking = False

    @classmethod
    def get_instance(cls, settings: Optional[SyncSettings] = None) -> ConnectionManager:
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = ConnectionManager(settings or load_settings())
        return cls._instance

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        """Check if we have full connectivity."""
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    @property
    def is_checking(self) -> bool:
        """True while a connection check is running."""
        return self._checking

    def initialize(self, start_monitoring: bool = True) -> None:
        """
        Run a first check and optionally start background monitoring.

        Args:
            start_monitoring: Whether to start background monitoring
        """
        if self._initialized:
            return

        self.check_connection()

        if start_monitoring:
            self.start_monitoring()

        self._initialized = True
        logger.info(f"ConnectionManager initialized. Status: {self._state.status.value}")

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    def _apply_status(self, status: ConnectionStatus, was_online: bool) -> None:
        """Store the new status and notify listeners if online-ness flipped."""
        self._state.status = status
        if status == ConnectionStatus.ONLINE:
            self._state.last_online = datetime.now()
            self._state.consecutive_failures = 0
            self._state.error_message = None

        if was_online != self.is_online:
            logger.info(f"Connection status changed: online={was_online} -> online={self.is_online}")
            self._notify_listeners()

    def check_connection(self) -> ConnectionState:
        """
        Perform a connection check and update state.

        Returns:
            Updated ConnectionState
        """
        was_online = self.is_online
        # Status keeps its last value until the checks finish
        self._checking = True
        self._state.last_check = datetime.now()

        try:
            internet_ok = self._check_internet()
            supabase_ok = internet_ok and self._check_supabase()
        finally:
            self._checking = False

        self._state.internet_available = internet_ok
        self._state.supabase_available = supabase_ok

        if internet_ok and supabase_ok:
            status = ConnectionStatus.ONLINE
        elif internet_ok:
            status = ConnectionStatus.DEGRADED
            self._state.consecutive_failures += 1
        else:
            status = ConnectionStatus.OFFLINE
            self._state.consecutive_failures += 1

        self._apply_status(status, was_online)
        return self._state

    def set_online(self, online: bool) -> None:
        """Record a connectivity change reported by the environment (browser, OS hook)."""
        was_online = self.is_online
        self._state.internet_available = online
        self._state.supabase_available = online
        self._state.last_check = datetime.now()
        self._apply_status(
            ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE,
            was_online,
        )

    def force_offline(self) -> None:
        """Force offline mode (user preference or testing)."""
        self.set_online(False)
        logger.info("Forced offline mode")

    # =========================================================================
    # PROBES
    # =========================================================================

    def _probe(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.settings.connection_timeout):
                return True
        except OSError:
            return False

    def _check_internet(self) -> bool:
        """Check internet connectivity by reaching well-known hosts."""
        return any(self._probe(host, port) for host, port in self.PROBE_HOSTS)

    def _check_supabase(self) -> bool:
        """Check that the configured Supabase host accepts connections."""
        if not self.settings.supabase_url:
            # No backend configured - local-only mode
            return True

        parsed = urlparse(self.settings.supabase_url)
        if not parsed.hostname:
            self._state.error_message = f"Invalid Supabase URL: {self.settings.supabase_url}"
            return False

        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        reachable = self._probe(parsed.hostname, port)
        if not reachable:
            self._state.error_message = f"Supabase host {parsed.hostname} unreachable"
        return reachable

    # =========================================================================
    # BACKGROUND MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor"
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        while not self._stop_monitoring.is_set():
            interval = (
                self.settings.check_interval_online
                if self.is_online
                else self.settings.check_interval_offline
            )

            if self._stop_monitoring.wait(timeout=interval):
                break

            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def on_status_change(self, callback: StatusListener) -> Callable[[], None]:
        """
        Register a listener for online/offline transitions.

        Args:
            callback: Called with True when connectivity returns, False when lost

        Returns:
            Function that removes the listener
        """
        with self._listeners_lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify_listeners(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)

        online = self.is_online
        for callback in listeners:
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Error in connection listener: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": ConnectionStatus.CHECKING.value if self._checking else self._state.status.value,
            "is_online": self.is_online,
            "internet": self._state.internet_available,
            "supabase": self._state.supabase_available,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }


def get_connection_manager(start_monitoring: bool = True) -> ConnectionManager:
    """
    Get the process-wide ConnectionManager, checked and monitoring.

    Returns:
        ConnectionManager singleton
    """
    manager = ConnectionManager.get_instance()
    manager.initialize(start_monitoring=start_monitoring)
    return manager
