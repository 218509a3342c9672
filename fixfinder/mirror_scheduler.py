"""
Mirror Scheduler for the local git mirror.

Handles:
- Scheduled refreshes (every N minutes)
- Manual trigger
- Status reporting

A successful refresh drops the cached tag/branch lists (and every result
derived from them) so the next lookup sees the new refs.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .cache import MetadataCache
from .errors import LocalGraphUnavailable
from .local_graph import LocalGraphAccessor
from .logging_utils import logger

DEFAULT_INTERVAL_MINUTES = 30


class MirrorScheduler:
    """Runs ``graph.refresh()`` on an interval in a background thread."""

    def __init__(self, graph: LocalGraphAccessor, cache: MetadataCache, interval_minutes: int = DEFAULT_INTERVAL_MINUTES):
        self.graph = graph
        self.cache = cache
        self.interval_minutes = interval_minutes
        self.interval_seconds = interval_minutes * 60
        self.running = False
        self.scheduler_thread: Optional[threading.Thread] = None
        self.refreshing = False
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.next_run_at: Optional[datetime] = None
        self._wake = threading.Event()
        self._run_lock = threading.Lock()

    def start(self) -> None:
        """Start the scheduler in background thread."""
        if self.running:
            logger.warn("mirror_scheduler_already_running")
            return
        if not self.graph.available:
            logger.info("mirror_scheduler_disabled", reason="no local mirror")
            return

        self.running = True
        self.scheduler_thread = threading.Thread(target=self._scheduler_loop, daemon=True, name="mirror-refresh")
        self.scheduler_thread.start()
        logger.info("mirror_scheduler_started", interval_minutes=self.interval_minutes)

    def stop(self) -> None:
        """Stop the scheduler."""
        self.running = False
        self._wake.set()
        if self.scheduler_thread:
            self.scheduler_thread.join(timeout=5)
        logger.info("mirror_scheduler_stopped")

    def trigger_manual(self) -> bool:
        """Ask for an immediate refresh.

        Returns:
            True if triggered, False if a refresh is already running or no mirror exists
        """
        if not self.graph.available:
            return False
        if self.refreshing:
            logger.warn("mirror_refresh_already_running")
            return False
        logger.info("mirror_manual_trigger_requested")
        if self.running:
            self._wake.set()
        else:
            threading.Thread(target=self.run_once, daemon=True, name="mirror-refresh-once").start()
        return True

    def get_status(self) -> Dict:
        status = {
            "running": self.running,
            "refreshing": self.refreshing,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "nextRunAt": self.next_run_at.isoformat() if self.next_run_at else None,
            "intervalMinutes": self.interval_minutes,
            "lastError": self.last_error,
            "graph": self.graph.status(),
        }
        if self.next_run_at:
            now = datetime.now(timezone.utc)
            status["secondsUntilNextRun"] = max(0, int((self.next_run_at - now).total_seconds()))
        return status

    def run_once(self) -> bool:
        """Refresh the mirror now; returns True on success."""
        if not self._run_lock.acquire(blocking=False):
            return False
        self.refreshing = True
        started = time.monotonic()
        try:
            self.graph.refresh()
        except LocalGraphUnavailable as e:
            self.last_error = str(e)
            logger.error("mirror_refresh_failed", error=str(e))
            return False
        else:
            self.last_error = None
            self.cache.invalidate_tags()
            logger.info("mirror_refresh_done", seconds=round(time.monotonic() - started, 2))
            return True
        finally:
            self.last_run_at = datetime.now(timezone.utc)
            self.refreshing = False
            self._run_lock.release()

    def _scheduler_loop(self) -> None:
        """Main scheduler loop (runs in background thread)."""
        while self.running:
            self.run_once()
            self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
            # Sleeps until the interval elapses or a manual trigger/stop wakes it.
            self._wake.wait(timeout=self.interval_seconds)
            self._wake.clear()
