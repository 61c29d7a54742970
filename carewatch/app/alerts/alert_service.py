"""
alert_service.py — Alert lifecycle: creation, fanout, processing, scoped reads.

═══════════════════════════════════════════════════════════════════════════
CREATION FLOW
═══════════════════════════════════════════════════════════════════════════

    risk signal (call agent)
          │
          ▼
    1. subject exists?                  NotFoundError otherwise
    2. snapshot active counselor        later reassignment does not touch it
    3. resolve recipients               counselor ∪ guardian ∪ region admins
    4. one transaction                  alert PENDING + all recipient rows
          │
          ▼  return to caller ────────────────────────────────────────────┐
          │                                                               │
    5. dispatcher job: push `emergency-alert` to connected recipients     │
    6. dispatcher job per SMS-required recipient: SmsDeliveryWorker       │
                                                                          │
    Delivery jobs may fail independently; the durable record stays. ◄─────┘

═══════════════════════════════════════════════════════════════════════════
ACCESS
═══════════════════════════════════════════════════════════════════════════

    Role        Sees                                           May process
    ─────────   ────────────────────────────────────────────   ───────────
    COUNSELOR   subjects actively assigned, or snapshot match  yes
    ADMIN       subjects inside jurisdiction (none = all)      yes
    GUARDIAN    linked subjects                                no

    Any recipient of an alert may read its detail.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from carewatch.app.alerts.channels.live_push import alert_payload, status_payload, time_ago
from carewatch.app.alerts.directory import Directory, DirectoryUser, Guardianship, Subject
from carewatch.app.alerts.dispatcher import DeliveryDispatcher
from carewatch.app.alerts.entities import AlertRecipient, EmergencyAlert
from carewatch.app.alerts.models import (
    PROCESS_TARGETS,
    Actor,
    AlertCategory,
    AlertStats,
    AlertStatus,
    Page,
    PushEvent,
    ReceiverRole,
    Severity,
)
from carewatch.app.alerts.read_tracker import ReadTracker
from carewatch.app.alerts.recipients import RecipientResolver, RegionHierarchy
from carewatch.app.alerts.registry import ConnectionRegistry
from carewatch.app.alerts.sms_worker import SmsDeliveryWorker
from carewatch.app.alerts.store import RECENT_ORDER, WORK_ORDER, AlertStore
from carewatch.app.core.errors import AccessDeniedError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class CreateAlertCommand:
    subject_id: int
    severity: Severity
    category: AlertCategory
    title: str
    description: str
    call_session_id: Optional[int] = None
    danger_keywords: Optional[List[str]] = None
    transcript_excerpt: Optional[str] = None


def health_alert_command(
    subject_id: int,
    *,
    call_session_id: Optional[int] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    danger_keywords: Optional[List[str]] = None,
    transcript_excerpt: Optional[str] = None,
) -> CreateAlertCommand:
    return CreateAlertCommand(
        subject_id=subject_id,
        severity=Severity.CRITICAL,
        category=AlertCategory.HEALTH,
        title=title or "건강 위험 감지",
        description=description or "통화 중 건강 위험 키워드가 감지되었습니다.",
        call_session_id=call_session_id,
        danger_keywords=danger_keywords,
        transcript_excerpt=transcript_excerpt,
    )


def mental_alert_command(
    subject_id: int,
    *,
    is_critical: bool,
    call_session_id: Optional[int] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    danger_keywords: Optional[List[str]] = None,
    transcript_excerpt: Optional[str] = None,
) -> CreateAlertCommand:
    """is_critical: self-harm indications. Otherwise low mood / loneliness."""
    return CreateAlertCommand(
        subject_id=subject_id,
        severity=Severity.CRITICAL if is_critical else Severity.WARNING,
        category=AlertCategory.MENTAL,
        title=title or "정서 위험 감지",
        description=description or "통화 중 정서 위험 표현이 감지되었습니다.",
        call_session_id=call_session_id,
        danger_keywords=danger_keywords,
        transcript_excerpt=transcript_excerpt,
    )


def no_response_alert_command(
    subject_id: int, *, attempt_count: int, last_attempt_time: Optional[str],
) -> CreateAlertCommand:
    return CreateAlertCommand(
        subject_id=subject_id,
        severity=Severity.WARNING,
        category=AlertCategory.NO_RESPONSE,
        title=f"{attempt_count}회 연속 통화 미응답",
        description=(
            f"어르신이 {attempt_count}회 연속 통화에 응답하지 않았습니다. "
            f"마지막 시도: {last_attempt_time or '-'}"
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Views
# ═══════════════════════════════════════════════════════════════════════════

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class AlertSummary:
    alert: EmergencyAlert
    subject: Optional[Subject]
    guardian: Optional[DirectoryUser] = None
    now: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        a = self.alert
        d: Dict[str, Any] = {
            "alertId": a.id,
            "severity": a.severity.value,
            "severityText": a.severity.label,
            "category": a.category.value,
            "categoryText": a.category.label,
            "title": a.title,
            "description": a.description,
            "status": a.status.value,
            "statusText": a.status.label,
            "subjectId": a.subject_id,
            "subjectName": self.subject.name if self.subject else None,
            "subjectAge": self.subject.age() if self.subject else None,
            "createdAt": a.created_at.isoformat(),
            "timeAgo": time_ago(a.created_at, self.now),
        }
        if self.guardian is not None:
            d["guardianName"] = self.guardian.name
            d["guardianPhone"] = self.guardian.phone
        return d


@dataclass
class AlertDetail:
    alert: EmergencyAlert
    subject: Optional[Subject]
    guardian: Optional[DirectoryUser] = None
    guardianship: Optional[Guardianship] = None
    counselor: Optional[DirectoryUser] = None
    processor: Optional[DirectoryUser] = None
    recipient: Optional[AlertRecipient] = None

    def to_dict(self) -> Dict[str, Any]:
        a, s = self.alert, self.subject
        d: Dict[str, Any] = {
            "alertId": a.id,
            "severity": a.severity.value,
            "severityText": a.severity.label,
            "category": a.category.value,
            "categoryText": a.category.label,
            "title": a.title,
            "description": a.description,
            "dangerKeywords": a.danger_keywords or [],
            "transcriptExcerpt": a.transcript_excerpt,
            "status": a.status.value,
            "statusText": a.status.label,
            "callSessionId": a.call_session_id,
            "subject": {
                "id": a.subject_id,
                "name": s.name if s else None,
                "age": s.age() if s else None,
                "gender": s.gender if s else None,
                "phone": s.phone if s else None,
                "address": s.address if s else None,
            },
            "guardian": None,
            "counselor": None,
            "process": None,
            "createdAt": a.created_at.isoformat(),
            "updatedAt": a.updated_at.isoformat(),
        }
        if self.guardian is not None:
            d["guardian"] = {
                "id": self.guardian.id,
                "name": self.guardian.name,
                "phone": self.guardian.phone,
                "relation": self.guardianship.relation if self.guardianship else None,
            }
        if self.counselor is not None:
            d["counselor"] = {
                "id": self.counselor.id,
                "name": self.counselor.name,
                "phone": self.counselor.phone,
                "department": self.counselor.department,
            }
        if a.processed_by_id is not None:
            d["process"] = {
                "processedById": a.processed_by_id,
                "processedByName": self.processor.name if self.processor else None,
                "processedAt": _iso(a.processed_at),
                "resolutionNote": a.resolution_note,
            }
        if self.recipient is not None:
            d["isRead"] = self.recipient.is_read
            d["readAt"] = _iso(self.recipient.read_at)
        return d


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle manager
# ═══════════════════════════════════════════════════════════════════════════

class AlertLifecycleManager:

    def __init__(
        self,
        *,
        store: AlertStore,
        directory: Directory,
        resolver: RecipientResolver,
        registry: ConnectionRegistry,
        dispatcher: DeliveryDispatcher,
        sms_worker: SmsDeliveryWorker,
        read_tracker: ReadTracker,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.directory = directory
        self.resolver = resolver
        self.registry = registry
        self.dispatcher = dispatcher
        self.sms_worker = sms_worker
        self.read_tracker = read_tracker
        self._clock = clock

    @property
    def hierarchy(self) -> RegionHierarchy:
        return self.resolver.hierarchy

    # ── Writes ──

    async def create_alert(self, command: CreateAlertCommand) -> EmergencyAlert:
        if not command.title or not command.title.strip():
            raise ValidationError("title must not be blank", field="title")

        subject = await self.directory.get_subject(command.subject_id)
        if subject is None:
            raise NotFoundError("Subject", subject_id=command.subject_id)

        counselor_id = await self.directory.active_counselor_for(subject.id)
        recipients = await self.resolver.resolve(subject, command.severity, counselor_id)

        now = self._clock()
        alert = EmergencyAlert(
            subject_id=subject.id,
            call_session_id=command.call_session_id,
            severity=command.severity,
            category=command.category,
            title=command.title.strip(),
            description=command.description,
            danger_keywords=command.danger_keywords or None,
            transcript_excerpt=command.transcript_excerpt,
            status=AlertStatus.PENDING,
            assigned_counselor_id=counselor_id,
            created_at=now,
            updated_at=now,
        )
        alert, rows = await self.store.create_with_recipients(alert, recipients, now)

        logger.info(
            "Alert %s created: %s/%s subject=%s recipients=%d",
            alert.id, alert.severity.value, alert.category.value, subject.id, len(rows),
            extra={"alert_id": alert.id, "recipient_count": len(rows)},
        )

        self.dispatcher.submit(
            f"push:{alert.id}",
            functools.partial(self._push_new_alert, alert, rows, subject),
        )
        for row in rows:
            if row.sms_required and not self.dispatcher.submit(
                f"sms:{alert.id}:{row.receiver_id}",
                functools.partial(self.sms_worker.deliver_alert_sms, alert, row),
            ):
                # Surface it to the resend sweep.
                await self.store.mark_sms_failed(alert.id, row.receiver_id)
        return alert

    async def process_alert(
        self,
        alert_id: int,
        actor_id: int,
        target: AlertStatus,
        note: Optional[str] = None,
    ) -> EmergencyAlert:
        if target not in PROCESS_TARGETS:
            raise ValidationError(f"{target.value} is not a processing target", field="status")

        user = await self.directory.get_user(actor_id)
        if user is None:
            raise NotFoundError("User", user_id=actor_id)
        existing = await self.store.get_alert(alert_id)
        if existing is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        await self._ensure_can_process(Actor(user.id, user.role, user.name), existing)

        alert = await self.store.transition(
            alert_id, target, actor_id=actor_id, note=note, now=self._clock(),
        )
        logger.info(
            "Alert %s → %s by %s", alert.id, alert.status.value, actor_id,
            extra={"alert_id": alert.id, "user_id": actor_id},
        )

        recipients = await self.store.recipients_of(alert.id)
        delivered = self.registry.send_many(
            [r.receiver_id for r in recipients],
            PushEvent.ALERT_STATUS_UPDATE,
            status_payload(alert.id, alert.status, alert.updated_at),
        )
        logger.debug("Status update for alert %s pushed to %d user(s)", alert.id, delivered)
        return alert

    async def resend_failed_sms(self) -> int:
        """Operator sweep: queue a fresh attempt for each failed or never-attempted alert SMS."""
        failed = await self.store.failed_sms_recipients(self._missed_cutoff())
        queued = 0
        for row, alert in failed:
            if self.dispatcher.submit(
                f"sms-resend:{alert.id}:{row.receiver_id}",
                functools.partial(self.sms_worker.deliver_alert_sms, alert, row),
            ):
                queued += 1
        logger.info("Queued %d failed SMS for resend", queued)
        return queued

    async def _push_new_alert(
        self, alert: EmergencyAlert, rows: List[AlertRecipient], subject: Subject,
    ) -> int:
        payload = alert_payload(alert, subject.name, subject.age(), self._clock())
        delivered = self.registry.send_many(
            [r.receiver_id for r in rows], PushEvent.EMERGENCY_ALERT, payload,
        )
        for row in rows:
            if self.registry.is_connected(row.receiver_id):
                await self.read_tracker.push_unread_count(row.receiver_id)
        logger.info(
            "Alert %s pushed live to %d/%d recipient(s)", alert.id, delivered, len(rows),
            extra={"alert_id": alert.id, "recipient_count": delivered},
        )
        return delivered

    # ── Reads ──

    async def get_detail(self, alert_id: int, actor: Actor) -> AlertDetail:
        """Scoped read. A recipient reading the detail marks it read."""
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        recipient = await self.store.get_recipient(alert_id, actor.user_id)
        if recipient is None:
            await self._ensure_can_view(actor, alert)
        else:
            recipient = await self.read_tracker.mark_read(alert_id, actor.user_id)

        subject = await self.directory.get_subject(alert.subject_id)
        guardianship = await self.directory.guardian_for(alert.subject_id)
        return AlertDetail(
            alert=alert,
            subject=subject,
            guardian=await self.directory.get_user(guardianship.guardian_id) if guardianship else None,
            guardianship=guardianship,
            counselor=(
                await self.directory.get_user(alert.assigned_counselor_id)
                if alert.assigned_counselor_id else None
            ),
            processor=(
                await self.directory.get_user(alert.processed_by_id)
                if alert.processed_by_id else None
            ),
            recipient=recipient,
        )

    async def list_for_counselor(self, actor: Actor, page: int = 0, size: int = 20) -> Page[AlertSummary]:
        self._require_role(actor, ReceiverRole.COUNSELOR)
        subject_ids = await self.directory.subjects_for_counselor(actor.user_id)
        result = await self.store.page_alerts(subject_ids, page=page, size=size, order=WORK_ORDER)
        return await self._summarise(result, with_guardian=True)

    async def list_pending_for_counselor(self, actor: Actor) -> List[AlertSummary]:
        self._require_role(actor, ReceiverRole.COUNSELOR)
        subject_ids = await self.directory.subjects_for_counselor(actor.user_id)
        alerts = await self.store.pending_for_subjects(subject_ids)
        return [await self._summary(a, with_guardian=True) for a in alerts]

    async def list_for_admin(self, actor: Actor, page: int = 0, size: int = 20) -> Page[AlertSummary]:
        self._require_role(actor, ReceiverRole.ADMIN)
        subject_ids = await self._admin_subject_scope(actor.user_id)
        result = await self.store.page_alerts(subject_ids, page=page, size=size, order=WORK_ORDER)
        return await self._summarise(result, with_guardian=True)

    async def list_for_guardian(self, actor: Actor, page: int = 0, size: int = 20) -> Page[AlertSummary]:
        self._require_role(actor, ReceiverRole.GUARDIAN)
        subject_ids = await self.directory.subjects_for_guardian(actor.user_id)
        result = await self.store.page_alerts(subject_ids, page=page, size=size, order=RECENT_ORDER)
        return await self._summarise(result, with_guardian=False)

    async def unread_list(self, actor: Actor) -> List[Dict[str, Any]]:
        rows = await self.read_tracker.unread_list(actor.user_id)
        items = []
        for recipient, alert in rows:
            summary = await self._summary(alert, with_guardian=False)
            items.append({
                "alertId": alert.id,
                "alert": summary.to_dict(),
                "isRead": recipient.is_read,
                "readAt": _iso(recipient.read_at),
            })
        return items

    async def stats(self, actor: Actor) -> AlertStats:
        """System-wide counts, not narrowed by jurisdiction."""
        self._require_role(actor, ReceiverRole.ADMIN)
        return await self.store.stats()

    async def stats_for_counselor(self, actor: Actor) -> AlertStats:
        self._require_role(actor, ReceiverRole.COUNSELOR)
        return await self.store.stats(await self.directory.subjects_for_counselor(actor.user_id))

    async def failed_sms(self) -> List[Dict[str, Any]]:
        rows = await self.store.failed_sms_recipients(self._missed_cutoff())
        return [
            {
                "alertId": alert.id,
                "receiverId": row.receiver_id,
                "receiverRole": row.receiver_role.value,
                "severity": alert.severity.value,
                "smsStatus": row.sms_delivery_status.value if row.sms_delivery_status else None,
                "createdAt": row.created_at.isoformat(),
            }
            for row, alert in rows
        ]

    def _missed_cutoff(self) -> datetime:
        """Rows with no SMS outcome older than the dedup window were never attempted."""
        return self._clock() - self.sms_worker.dedup_window

    # ── Access ──

    @staticmethod
    def _require_role(actor: Actor, role: ReceiverRole) -> None:
        if actor.role is not role:
            raise AccessDeniedError(
                f"{role.value} role required", user_id=actor.user_id, role=actor.role.value,
            )

    async def _admin_subject_scope(self, admin_id: int) -> Optional[List[int]]:
        """None when the admin's jurisdiction is the whole country."""
        jurisdiction = await self.directory.admin_jurisdiction(admin_id)
        if jurisdiction is None:
            return None
        prefix = self.hierarchy.jurisdiction_prefix(jurisdiction)
        if not prefix:
            return None
        return await self.directory.subjects_in_region(prefix)

    async def _can_view(self, actor: Actor, alert: EmergencyAlert) -> bool:
        if actor.role is ReceiverRole.COUNSELOR:
            if alert.assigned_counselor_id == actor.user_id:
                return True
            return await self.directory.active_counselor_for(alert.subject_id) == actor.user_id
        if actor.role is ReceiverRole.GUARDIAN:
            link = await self.directory.guardian_for(alert.subject_id)
            return link is not None and link.guardian_id == actor.user_id
        jurisdiction = await self.directory.admin_jurisdiction(actor.user_id)
        if jurisdiction is None:
            return True
        subject = await self.directory.get_subject(alert.subject_id)
        return subject is not None and self.hierarchy.covers(jurisdiction, subject.region_code)

    async def _ensure_can_view(self, actor: Actor, alert: EmergencyAlert) -> None:
        if not await self._can_view(actor, alert):
            raise AccessDeniedError("No access to this alert", alert_id=alert.id, user_id=actor.user_id)

    async def _ensure_can_process(self, actor: Actor, alert: EmergencyAlert) -> None:
        if actor.role is ReceiverRole.GUARDIAN:
            raise AccessDeniedError("Guardians cannot process alerts", alert_id=alert.id)
        if await self.store.get_recipient(alert.id, actor.user_id) is not None:
            return
        await self._ensure_can_view(actor, alert)

    # ── Summaries ──

    async def _summary(self, alert: EmergencyAlert, *, with_guardian: bool) -> AlertSummary:
        subject = await self.directory.get_subject(alert.subject_id)
        guardian = None
        if with_guardian:
            link = await self.directory.guardian_for(alert.subject_id)
            if link is not None:
                guardian = await self.directory.get_user(link.guardian_id)
        return AlertSummary(alert, subject, guardian, self._clock())

    async def _summarise(self, page: Page[EmergencyAlert], *, with_guardian: bool) -> Page[AlertSummary]:
        items = [await self._summary(a, with_guardian=with_guardian) for a in page.items]
        return Page(items=items, page=page.page, size=page.size, total=page.total)
