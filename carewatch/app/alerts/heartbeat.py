"""
heartbeat.py — Periodic sweep over the connection registry.

Two loops on the event loop:
    • heartbeat — every SSE_HEARTBEAT_INTERVAL_SECONDS, ping all handles so
      half-open or stalled connections are pruned without waiting for the
      next real send
    • stats     — every SSE_STATS_INTERVAL_SECONDS, log connection counts
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from carewatch.app.alerts.registry import ConnectionRegistry
from carewatch.app.core.config import settings

logger = logging.getLogger(__name__)


class HeartbeatScheduler:

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        interval_seconds: Optional[float] = None,
        stats_interval_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.interval_seconds = interval_seconds or settings.SSE_HEARTBEAT_INTERVAL_SECONDS
        self.stats_interval_seconds = stats_interval_seconds or settings.SSE_STATS_INTERVAL_SECONDS
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self.beats = 0

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop(), name="sse-heartbeat"),
            asyncio.create_task(self._stats_loop(), name="sse-stats"),
        ]
        logger.info(
            "Heartbeat scheduler started (every %.0fs, stats every %.0fs)",
            self.interval_seconds, self.stats_interval_seconds,
        )

    async def stop(self) -> None:
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Heartbeat scheduler stopped")

    def beat(self) -> int:
        """One sweep; returns the number of pruned connections."""
        self.beats += 1
        return self.registry.heartbeat()

    async def _heartbeat_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.beat()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    async def _stats_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.stats_interval_seconds)
            users = self.registry.connected_user_count()
            total = self.registry.connection_count()
            if total:
                logger.info(
                    "SSE connections: %d users, %d total", users, total,
                    extra={"connection_count": total},
                )
