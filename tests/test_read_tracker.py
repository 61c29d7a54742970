"""
test_read_tracker.py — Per-recipient read state, unread counts, and the
unread-count pushes that follow read changes.

Run with:
    pytest tests/test_read_tracker.py -v
"""

from __future__ import annotations

import json

import pytest

from carewatch.app.alerts.alert_service import no_response_alert_command
from carewatch.app.alerts.models import AlertStatus
from carewatch.app.alerts.read_tracker import ReadTracker
from carewatch.app.container import AlertContainer
from carewatch.app.core.errors import NotFoundError


def _frames(conn):
    out = []
    while conn.pending():
        item = conn._queue.get_nowait()
        if hasattr(item, "event"):
            out.append((item.event, json.loads(item.data)))
    return out


async def _make_alerts(container, clock, n: int):
    alerts = []
    for i in range(n):
        alerts.append(await container.alerts.create_alert(
            no_response_alert_command(1, attempt_count=3 + i, last_attempt_time=None),
        ))
        clock.advance(minutes=1)
    await container.dispatcher.join()
    return alerts


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Single reads
# ═══════════════════════════════════════════════════════════════════════════

class TestMarkRead:

    async def test_first_read_stamps_and_pushes(self, container, clock):
        (alert,) = await _make_alerts(container, clock, 1)
        conn = container.registry.subscribe(20)
        _frames(conn)

        row = await container.read_tracker.mark_read(alert.id, 20)
        first_read_at = row.read_at
        assert row.is_read is True
        assert first_read_at == clock()

        frames = _frames(conn)
        assert [e for e, _ in frames] == ["unread-count"]
        assert frames[0][1]["emergencyUnread"] == 0

    async def test_second_read_changes_nothing(self, container, clock):
        (alert,) = await _make_alerts(container, clock, 1)
        first = await container.read_tracker.mark_read(alert.id, 20)
        conn = container.registry.subscribe(20)
        _frames(conn)

        clock.advance(hours=1)
        again = await container.read_tracker.mark_read(alert.id, 20)
        assert again.read_at == first.read_at
        assert _frames(conn) == []

    async def test_non_recipient(self, container, clock):
        (alert,) = await _make_alerts(container, clock, 1)
        with pytest.raises(NotFoundError):
            await container.read_tracker.mark_read(alert.id, 11)

    async def test_read_state_is_separate_from_status(self, container, clock):
        (alert,) = await _make_alerts(container, clock, 1)
        await container.alerts.process_alert(alert.id, 10, AlertStatus.RESOLVED, "완료")
        assert await container.read_tracker.unread_count(20) == 1

        await container.read_tracker.mark_read(alert.id, 20)
        stored = await container.store.get_alert(alert.id)
        assert stored.status is AlertStatus.RESOLVED
        # Other recipients keep their own state.
        assert await container.read_tracker.unread_count(10) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Bulk reads & counts
# ═══════════════════════════════════════════════════════════════════════════

class TestMarkAllRead:

    async def test_marks_only_unread_and_pushes_once(self, container, clock):
        alerts = await _make_alerts(container, clock, 7)
        await container.read_tracker.mark_read(alerts[0].id, 20)
        await container.read_tracker.mark_read(alerts[1].id, 20)
        assert await container.read_tracker.unread_count(20) == 5

        conn = container.registry.subscribe(20)
        _frames(conn)

        assert await container.read_tracker.mark_all_read(20) == 5
        frames = _frames(conn)
        assert len(frames) == 1
        event, payload = frames[0]
        assert event == "unread-count"
        assert payload["emergencyUnread"] == 0
        assert await container.read_tracker.unread_count(20) == 0

        row = await container.store.get_recipient(alerts[0].id, 20)
        assert row.read_at is not None

    async def test_nothing_unread(self, container):
        assert await container.read_tracker.mark_all_read(20) == 0

    async def test_only_the_callers_rows(self, container, clock):
        await _make_alerts(container, clock, 2)
        await container.read_tracker.mark_all_read(20)
        assert await container.read_tracker.unread_count(10) == 2


class TestUnreadCounts:

    async def test_notifications_are_mixed_in(self, container, clock):
        await _make_alerts(container, clock, 2)

        async def three_notifications(user_id: int) -> int:
            return 3

        tracker = ReadTracker(
            container.store, container.registry,
            notification_counter=three_notifications, clock=clock,
        )
        counts = await tracker.unread_counts(20)
        assert counts.emergency_unread == 2
        assert counts.notification_unread == 3
        assert counts.total_unread == 5

    async def test_container_passes_counter_through(
        self, container, config, database, directory, provider, clock,
    ):
        await _make_alerts(container, clock, 1)
        asked = []

        async def notifications(user_id: int) -> int:
            asked.append(user_id)
            return 4

        wired = AlertContainer(
            config, database=database, directory=directory, provider=provider,
            clock=clock, notification_counter=notifications,
        )
        counts = await wired.read_tracker.unread_counts(20)
        assert (counts.emergency_unread, counts.notification_unread) == (1, 4)
        assert asked == [20]
        assert (await container.read_tracker.unread_counts(20)).notification_unread == 0

    async def test_push_without_connection(self, container):
        assert await container.read_tracker.push_unread_count(20) is False

    async def test_unread_list_newest_first(self, container, clock):
        alerts = await _make_alerts(container, clock, 3)
        rows = await container.read_tracker.unread_list(20)
        assert [a.id for _, a in rows] == [a.id for a in reversed(alerts)]
