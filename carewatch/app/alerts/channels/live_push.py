"""
live_push.py — Payloads for the live push channel.

Event                  Payload
─────────────────────  ──────────────────────────────────────────────────
emergency-alert        alertId, severity, category, title, subjectName,
                       subjectAge, createdAt, timeAgo
alert-status-update    alertId, status, timestamp
unread-count           emergencyUnread, notificationUnread, totalUnread,
                       timestamp
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from carewatch.app.alerts.entities import EmergencyAlert
from carewatch.app.alerts.models import AlertStatus, UnreadCounts


def time_ago(when: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Relative label: 방금 전 / N분 전 / N시간 전 / N일 전, then the plain date."""
    if when is None:
        return ""
    now = now or datetime.now(timezone.utc)
    minutes = int((now - when).total_seconds() // 60)
    if minutes < 1:
        return "방금 전"
    if minutes < 60:
        return f"{minutes}분 전"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}시간 전"
    days = hours // 24
    if days < 7:
        return f"{days}일 전"
    return when.date().isoformat()


def alert_payload(
    alert: EmergencyAlert,
    subject_name: Optional[str],
    subject_age: Optional[int],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "alertId": alert.id,
        "severity": alert.severity.value,
        "category": alert.category.value,
        "title": alert.title,
        "subjectId": alert.subject_id,
        "subjectName": subject_name,
        "subjectAge": subject_age,
        "createdAt": alert.created_at.isoformat(),
        "timeAgo": time_ago(alert.created_at, now),
    }


def status_payload(alert_id: int, status: AlertStatus, now: datetime) -> Dict[str, Any]:
    return {
        "alertId": alert_id,
        "status": status.value,
        "timestamp": now.isoformat(),
    }


def unread_payload(counts: UnreadCounts, now: datetime) -> Dict[str, Any]:
    return {
        "emergencyUnread": counts.emergency_unread,
        "notificationUnread": counts.notification_unread,
        "totalUnread": counts.total_unread,
        "timestamp": now.isoformat(),
    }
