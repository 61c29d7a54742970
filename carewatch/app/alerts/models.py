"""
models.py — Shared value types for the emergency alert subsystem.

Defines:
    • Severity        — CRITICAL / WARNING
    • AlertCategory   — HEALTH / MENTAL / NO_RESPONSE
    • AlertStatus     — processing state machine
    • ReceiverRole    — ADMIN / COUNSELOR / GUARDIAN
    • SmsStatus       — SMS ledger delivery state
    • SmsMessageType  — alert and non-alert SMS kinds
    • PushEvent       — live push event names
    • ResolvedRecipient, Page — plain data carriers

═══════════════════════════════════════════════════════════════════════════
ALERT STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    PENDING ──► IN_PROGRESS ──► RESOLVED
       │             │
       │             └────────► ESCALATED
       ├──────────────────────► RESOLVED
       └──────────────────────► ESCALATED

    IN_PROGRESS is reachable only from PENDING, once.
    RESOLVED and ESCALATED are terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Generic, List, Optional, TypeVar

from carewatch.app.core.errors import InvalidTransitionError

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING  = "WARNING"

    @property
    def label(self) -> str:
        return _SEVERITY_LABELS[self]

    @property
    def rank(self) -> int:
        """Sort key: CRITICAL first."""
        return 0 if self is Severity.CRITICAL else 1


class AlertCategory(str, Enum):
    HEALTH      = "HEALTH"
    MENTAL      = "MENTAL"
    NO_RESPONSE = "NO_RESPONSE"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]


class AlertStatus(str, Enum):
    PENDING     = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED    = "RESOLVED"
    ESCALATED   = "ESCALATED"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    @property
    def rank(self) -> int:
        """Work-queue sort key: PENDING, then IN_PROGRESS, then closed."""
        if self is AlertStatus.PENDING:
            return 0
        if self is AlertStatus.IN_PROGRESS:
            return 1
        return 2


class ReceiverRole(str, Enum):
    ADMIN     = "ADMIN"
    COUNSELOR = "COUNSELOR"
    GUARDIAN  = "GUARDIAN"


class SmsStatus(str, Enum):
    PENDING   = "PENDING"
    SENT      = "SENT"
    DELIVERED = "DELIVERED"
    FAILED    = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SmsStatus.DELIVERED, SmsStatus.FAILED)


class SmsMessageType(str, Enum):
    EMERGENCY_CRITICAL = "EMERGENCY_CRITICAL"
    EMERGENCY_WARNING  = "EMERGENCY_WARNING"
    INQUIRY_REPLY      = "INQUIRY_REPLY"
    COMPLAINT_REPLY    = "COMPLAINT_REPLY"
    ACCESS_APPROVED    = "ACCESS_APPROVED"
    ACCESS_REJECTED    = "ACCESS_REJECTED"
    SYSTEM             = "SYSTEM"

    @classmethod
    def for_severity(cls, severity: Severity) -> "SmsMessageType":
        if severity is Severity.CRITICAL:
            return cls.EMERGENCY_CRITICAL
        return cls.EMERGENCY_WARNING


class PushEvent(str, Enum):
    CONNECTED           = "connected"
    EMERGENCY_ALERT     = "emergency-alert"
    ALERT_STATUS_UPDATE = "alert-status-update"
    NOTIFICATION        = "notification"
    UNREAD_COUNT        = "unread-count"
    HEARTBEAT           = "heartbeat"


_SEVERITY_LABELS = {
    Severity.CRITICAL: "긴급",
    Severity.WARNING: "주의",
}

_CATEGORY_LABELS = {
    AlertCategory.HEALTH: "건강위험",
    AlertCategory.MENTAL: "정서위험",
    AlertCategory.NO_RESPONSE: "연속미응답",
}

_STATUS_LABELS = {
    AlertStatus.PENDING: "미처리",
    AlertStatus.IN_PROGRESS: "처리중",
    AlertStatus.RESOLVED: "처리완료",
    AlertStatus.ESCALATED: "상위보고",
}

ALERT_REFERENCE_TYPE = "emergency_alerts"


# ═══════════════════════════════════════════════════════════════════════════
# State machine
# ═══════════════════════════════════════════════════════════════════════════

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({
        AlertStatus.IN_PROGRESS,
        AlertStatus.RESOLVED,
        AlertStatus.ESCALATED,
    }),
    AlertStatus.IN_PROGRESS: frozenset({
        AlertStatus.RESOLVED,
        AlertStatus.ESCALATED,
    }),
    AlertStatus.RESOLVED: frozenset(),
    AlertStatus.ESCALATED: frozenset(),
}

PROCESS_TARGETS = frozenset({
    AlertStatus.IN_PROGRESS,
    AlertStatus.RESOLVED,
    AlertStatus.ESCALATED,
})


def ensure_transition(alert_id: int, current: AlertStatus, target: AlertStatus) -> None:
    """Raise InvalidTransitionError unless current → target is legal."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(alert_id, current.value, target.value)


# ═══════════════════════════════════════════════════════════════════════════
# Data carriers
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ResolvedRecipient:
    """One human who must hear about an alert."""
    receiver_id: int
    role: ReceiverRole
    sms_required: bool


@dataclass
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    page: int = 0
    size: int = 20
    total: int = 0

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size

    def to_dict(self, item_fn=None) -> Dict[str, Any]:
        items = [item_fn(i) for i in self.items] if item_fn else list(self.items)
        return {
            "items": items,
            "page": self.page,
            "size": self.size,
            "total": self.total,
            "total_pages": self.total_pages,
        }


@dataclass
class AlertStats:
    total: int = 0
    critical: int = 0
    warning: int = 0
    pending: int = 0
    in_progress: int = 0
    resolved: int = 0
    escalated: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "critical": self.critical,
            "warning": self.warning,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "resolved": self.resolved,
            "escalated": self.escalated,
        }


@dataclass
class UnreadCounts:
    emergency_unread: int = 0
    notification_unread: int = 0

    @property
    def total_unread(self) -> int:
        return self.emergency_unread + self.notification_unread


@dataclass(frozen=True)
class Actor:
    """Caller identity as resolved by the upstream auth gateway."""
    user_id: int
    role: ReceiverRole
    name: Optional[str] = None
