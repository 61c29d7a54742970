"""
read_tracker.py — Per-recipient read state and unread counts.

Read state is independent of processing state: a RESOLVED alert can still be
unread for a guardian, and reading an alert never moves its status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from carewatch.app.alerts.channels.live_push import unread_payload
from carewatch.app.alerts.entities import AlertRecipient, EmergencyAlert
from carewatch.app.alerts.models import PushEvent, UnreadCounts
from carewatch.app.alerts.registry import ConnectionRegistry
from carewatch.app.alerts.store import AlertStore
from carewatch.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

NotificationCounter = Callable[[int], Awaitable[int]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _no_notifications(user_id: int) -> int:
    return 0


class ReadTracker:

    def __init__(
        self,
        store: AlertStore,
        registry: ConnectionRegistry,
        *,
        notification_counter: Optional[NotificationCounter] = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.registry = registry
        # General notifications are counted elsewhere; only their unread total is mixed in.
        self._count_notifications = notification_counter or _no_notifications
        self._clock = clock

    async def mark_read(self, alert_id: int, user_id: int) -> AlertRecipient:
        """Idempotent. Only the first mark stamps read_at and pushes a count."""
        row, changed = await self.store.mark_read(alert_id, user_id, self._clock())
        if row is None:
            raise NotFoundError("AlertRecipient", alert_id=alert_id, user_id=user_id)
        if changed:
            logger.debug("Alert %s read by %s", alert_id, user_id, extra={"alert_id": alert_id})
            await self.push_unread_count(user_id)
        return row

    async def mark_all_read(self, user_id: int) -> int:
        """Bulk mark; exactly one unread-count push with zero emergency unread."""
        now = self._clock()
        marked = await self.store.mark_all_read(user_id, now)
        counts = UnreadCounts(
            emergency_unread=0,
            notification_unread=await self._count_notifications(user_id),
        )
        self.registry.send(user_id, PushEvent.UNREAD_COUNT, unread_payload(counts, now))
        logger.info("Marked %d alert(s) read for user %s", marked, user_id, extra={"user_id": user_id})
        return marked

    async def unread_count(self, user_id: int) -> int:
        return await self.store.count_unread(user_id)

    async def unread_counts(self, user_id: int) -> UnreadCounts:
        return UnreadCounts(
            emergency_unread=await self.store.count_unread(user_id),
            notification_unread=await self._count_notifications(user_id),
        )

    async def unread_list(self, user_id: int) -> List[Tuple[AlertRecipient, EmergencyAlert]]:
        """Unread rows with their alerts, CRITICAL first, newest first."""
        return await self.store.unread_with_alerts(user_id)

    async def push_unread_count(self, user_id: int) -> bool:
        counts = await self.unread_counts(user_id)
        return self.registry.send(
            user_id, PushEvent.UNREAD_COUNT, unread_payload(counts, self._clock()),
        )
