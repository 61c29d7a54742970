"""
entities.py — Durable records of the alert subsystem (SQLAlchemy ORM).

Tables:
    emergency_alerts            — one row per alert, append-only audit trail
    emergency_alert_recipients  — one row per (alert, receiver), read + SMS state
    sms_logs                    — SMS delivery ledger, one row per attempted send

Recipients hold the alert id, not an object back-pointer; the store joins
explicitly when a query needs both.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from carewatch.app.alerts.models import (
    AlertCategory,
    AlertStatus,
    ReceiverRole,
    Severity,
    SmsMessageType,
    SmsStatus,
    ensure_transition,
)
from carewatch.app.core.database import Base, UTCDateTime


def _enum(enum_cls) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True)


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyAlert(Base):
    __tablename__ = "emergency_alerts"
    __table_args__ = (
        Index("idx_ea_subject_time", "subject_id", "created_at"),
        Index("idx_ea_status_severity", "status", "severity", "created_at"),
        Index("idx_ea_counselor_status", "assigned_counselor_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    call_session_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    severity: Mapped[Severity] = mapped_column(_enum(Severity), nullable=False)
    category: Mapped[AlertCategory] = mapped_column(_enum(AlertCategory), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    danger_keywords: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    transcript_excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[AlertStatus] = mapped_column(
        _enum(AlertStatus), nullable=False, default=AlertStatus.PENDING,
    )
    assigned_counselor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_by_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    @property
    def is_critical(self) -> bool:
        return self.severity is Severity.CRITICAL

    def transition(
        self,
        target: AlertStatus,
        *,
        actor_id: int,
        note: Optional[str],
        now: datetime,
    ) -> None:
        """Apply a state-machine move; raises InvalidTransitionError unchanged."""
        ensure_transition(self.id, self.status, target)
        self.status = target
        self.processed_by_id = actor_id
        if target in (AlertStatus.RESOLVED, AlertStatus.ESCALATED):
            self.processed_at = now
            self.resolution_note = note
        self.updated_at = now

    def to_created_dict(self) -> Dict[str, Any]:
        return {
            "alertId": self.id,
            "subjectId": self.subject_id,
            "severity": self.severity.value,
            "category": self.category.value,
            "title": self.title,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }

    def to_processed_dict(self) -> Dict[str, Any]:
        return {
            **self.to_created_dict(),
            "processedById": self.processed_by_id,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "resolutionNote": self.resolution_note,
            "updatedAt": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<EmergencyAlert {self.id} {self.severity.value}/{self.status.value}>"


# ═══════════════════════════════════════════════════════════════════════════
# Recipient
# ═══════════════════════════════════════════════════════════════════════════

class AlertRecipient(Base):
    __tablename__ = "emergency_alert_recipients"
    __table_args__ = (
        UniqueConstraint("alert_id", "receiver_id", name="uq_ear_alert_receiver"),
        Index("idx_ear_receiver_read", "receiver_id", "is_read", "created_at"),
        Index("idx_ear_alert", "alert_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(Integer, nullable=False)
    receiver_id: Mapped[int] = mapped_column(Integer, nullable=False)
    receiver_role: Mapped[ReceiverRole] = mapped_column(_enum(ReceiverRole), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sms_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sms_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sms_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sms_delivery_status: Mapped[Optional[SmsStatus]] = mapped_column(
        _enum(SmsStatus), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def mark_read(self, now: datetime) -> bool:
        """Returns True only on the first mark."""
        if self.is_read:
            return False
        self.is_read = True
        self.read_at = now
        return True

    def mark_sms_sent(self, now: datetime) -> None:
        self.sms_sent = True
        self.sms_sent_at = now
        self.sms_delivery_status = SmsStatus.SENT

    def mark_sms_failed(self) -> None:
        self.sms_delivery_status = SmsStatus.FAILED

    def mark_sms_delivered(self) -> None:
        self.sms_delivery_status = SmsStatus.DELIVERED


# ═══════════════════════════════════════════════════════════════════════════
# SMS ledger
# ═══════════════════════════════════════════════════════════════════════════

class SmsLog(Base):
    __tablename__ = "sms_logs"
    __table_args__ = (
        Index("idx_sms_dedup", "receiver_phone", "message_type", "reference_id", "created_at"),
        Index("idx_sms_status", "status", "created_at"),
        Index("idx_sms_external_id", "external_message_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    receiver_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    receiver_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    message_type: Mapped[SmsMessageType] = mapped_column(
        SAEnum(SmsMessageType, native_enum=False, length=30, validate_strings=True),
        nullable=False,
    )
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    short_link: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[SmsStatus] = mapped_column(
        _enum(SmsStatus), nullable=False, default=SmsStatus.PENDING,
    )
    external_message_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def mark_sent(self, external_id: Optional[str], now: datetime) -> None:
        self.status = SmsStatus.SENT
        self.external_message_id = external_id
        self.sent_at = now

    def mark_delivered(self, now: datetime) -> None:
        self.status = SmsStatus.DELIVERED
        self.delivered_at = now

    def mark_failed(self, error: str) -> None:
        self.status = SmsStatus.FAILED
        self.error_message = error[:1000]
