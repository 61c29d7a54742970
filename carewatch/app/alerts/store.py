"""
store.py — Alert persistence (the only module that issues SQL).

Every public coroutine opens and closes its own session; callers never hold
a session across a delivery-channel call.

Orderings:
    work queue   — status rank (PENDING, IN_PROGRESS, closed), newest first
    pending      — CRITICAL first, newest first
    guardian     — newest first
    unread       — CRITICAL first, newest first
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, func, or_, select, update

from carewatch.app.alerts.entities import AlertRecipient, EmergencyAlert, SmsLog
from carewatch.app.alerts.models import (
    AlertStats,
    AlertStatus,
    Page,
    ResolvedRecipient,
    Severity,
    SmsMessageType,
    SmsStatus,
)
from carewatch.app.core.database import Database
from carewatch.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

_status_rank = case(
    (EmergencyAlert.status == AlertStatus.PENDING, 0),
    (EmergencyAlert.status == AlertStatus.IN_PROGRESS, 1),
    else_=2,
)

_severity_rank = case(
    (EmergencyAlert.severity == Severity.CRITICAL, 0),
    else_=1,
)

WORK_ORDER = (_status_rank, EmergencyAlert.created_at.desc(), EmergencyAlert.id.desc())
RECENT_ORDER = (EmergencyAlert.created_at.desc(), EmergencyAlert.id.desc())
URGENT_ORDER = (_severity_rank, EmergencyAlert.created_at.desc(), EmergencyAlert.id.desc())


class AlertStore:

    def __init__(self, database: Database):
        self._db = database

    # ═══════════════════════════════════════════════════════════════════════
    # Alerts
    # ═══════════════════════════════════════════════════════════════════════

    async def create_with_recipients(
        self,
        alert: EmergencyAlert,
        recipients: Sequence[ResolvedRecipient],
        now: datetime,
    ) -> Tuple[EmergencyAlert, List[AlertRecipient]]:
        """Alert row and all recipient rows commit together or not at all."""
        async with self._db.session() as session:
            async with session.begin():
                session.add(alert)
                await session.flush()
                rows = [
                    AlertRecipient(
                        alert_id=alert.id,
                        receiver_id=r.receiver_id,
                        receiver_role=r.role,
                        is_read=False,
                        sms_required=r.sms_required,
                        sms_sent=False,
                        created_at=now,
                    )
                    for r in recipients
                ]
                session.add_all(rows)
        return alert, rows

    async def get_alert(self, alert_id: int) -> Optional[EmergencyAlert]:
        async with self._db.session() as session:
            return await session.get(EmergencyAlert, alert_id)

    async def transition(
        self,
        alert_id: int,
        target: AlertStatus,
        *,
        actor_id: int,
        note: Optional[str],
        now: datetime,
    ) -> EmergencyAlert:
        async with self._db.session() as session:
            async with session.begin():
                alert = (await session.execute(
                    select(EmergencyAlert)
                    .where(EmergencyAlert.id == alert_id)
                    .with_for_update()
                )).scalar_one_or_none()
                if alert is None:
                    raise NotFoundError("Alert", alert_id=alert_id)
                alert.transition(target, actor_id=actor_id, note=note, now=now)
        return alert

    async def page_alerts(
        self,
        subject_ids: Optional[Sequence[int]],
        *,
        page: int,
        size: int,
        order=WORK_ORDER,
    ) -> Page[EmergencyAlert]:
        """`subject_ids=None` means unscoped; an empty list yields nothing."""
        if subject_ids is not None and not subject_ids:
            return Page(items=[], page=page, size=size, total=0)

        stmt = select(EmergencyAlert)
        count_stmt = select(func.count(EmergencyAlert.id))
        if subject_ids is not None:
            stmt = stmt.where(EmergencyAlert.subject_id.in_(list(subject_ids)))
            count_stmt = count_stmt.where(EmergencyAlert.subject_id.in_(list(subject_ids)))

        async with self._db.session() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            items = (await session.execute(
                stmt.order_by(*order).offset(page * size).limit(size)
            )).scalars().all()
        return Page(items=list(items), page=page, size=size, total=total)

    async def pending_for_subjects(self, subject_ids: Sequence[int]) -> List[EmergencyAlert]:
        if not subject_ids:
            return []
        async with self._db.session() as session:
            result = await session.execute(
                select(EmergencyAlert)
                .where(
                    EmergencyAlert.subject_id.in_(list(subject_ids)),
                    EmergencyAlert.status == AlertStatus.PENDING,
                )
                .order_by(*URGENT_ORDER)
            )
            return list(result.scalars().all())

    async def stats(self, subject_ids: Optional[Sequence[int]] = None) -> AlertStats:
        stats = AlertStats()
        if subject_ids is not None and not subject_ids:
            return stats

        stmt = select(
            EmergencyAlert.severity, EmergencyAlert.status, func.count(EmergencyAlert.id),
        ).group_by(EmergencyAlert.severity, EmergencyAlert.status)
        if subject_ids is not None:
            stmt = stmt.where(EmergencyAlert.subject_id.in_(list(subject_ids)))

        async with self._db.session() as session:
            rows = (await session.execute(stmt)).all()

        for severity, status, count in rows:
            stats.total += count
            if severity is Severity.CRITICAL:
                stats.critical += count
            else:
                stats.warning += count
            if status is AlertStatus.PENDING:
                stats.pending += count
            elif status is AlertStatus.IN_PROGRESS:
                stats.in_progress += count
            elif status is AlertStatus.RESOLVED:
                stats.resolved += count
            else:
                stats.escalated += count
        return stats

    # ═══════════════════════════════════════════════════════════════════════
    # Recipients
    # ═══════════════════════════════════════════════════════════════════════

    async def recipients_of(self, alert_id: int) -> List[AlertRecipient]:
        async with self._db.session() as session:
            result = await session.execute(
                select(AlertRecipient)
                .where(AlertRecipient.alert_id == alert_id)
                .order_by(AlertRecipient.id)
            )
            return list(result.scalars().all())

    async def get_recipient(self, alert_id: int, receiver_id: int) -> Optional[AlertRecipient]:
        async with self._db.session() as session:
            return (await session.execute(
                select(AlertRecipient).where(
                    AlertRecipient.alert_id == alert_id,
                    AlertRecipient.receiver_id == receiver_id,
                )
            )).scalar_one_or_none()

    async def mark_read(
        self, alert_id: int, receiver_id: int, now: datetime,
    ) -> Tuple[Optional[AlertRecipient], bool]:
        """Returns (row, changed). `changed` is False when already read."""
        async with self._db.session() as session:
            async with session.begin():
                row = (await session.execute(
                    select(AlertRecipient)
                    .where(
                        AlertRecipient.alert_id == alert_id,
                        AlertRecipient.receiver_id == receiver_id,
                    )
                    .with_for_update()
                )).scalar_one_or_none()
                if row is None:
                    return None, False
                changed = row.mark_read(now)
        return row, changed

    async def mark_all_read(self, receiver_id: int, now: datetime) -> int:
        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(AlertRecipient)
                    .where(
                        AlertRecipient.receiver_id == receiver_id,
                        AlertRecipient.is_read.is_(False),
                    )
                    .values(is_read=True, read_at=now)
                )
        return result.rowcount or 0

    async def count_unread(self, receiver_id: int) -> int:
        async with self._db.session() as session:
            return (await session.execute(
                select(func.count(AlertRecipient.id)).where(
                    AlertRecipient.receiver_id == receiver_id,
                    AlertRecipient.is_read.is_(False),
                )
            )).scalar_one()

    async def unread_with_alerts(
        self, receiver_id: int,
    ) -> List[Tuple[AlertRecipient, EmergencyAlert]]:
        async with self._db.session() as session:
            result = await session.execute(
                select(AlertRecipient, EmergencyAlert)
                .join(EmergencyAlert, EmergencyAlert.id == AlertRecipient.alert_id)
                .where(
                    AlertRecipient.receiver_id == receiver_id,
                    AlertRecipient.is_read.is_(False),
                )
                .order_by(*URGENT_ORDER)
            )
            return [(r, a) for r, a in result.all()]

    async def failed_sms_recipients(
        self, stale_before: Optional[datetime] = None,
    ) -> List[Tuple[AlertRecipient, EmergencyAlert]]:
        """
        FAILED rows, plus (with `stale_before`) rows whose SMS was never
        attempted: no outcome recorded and created before the cutoff.
        """
        missed = AlertRecipient.sms_delivery_status == SmsStatus.FAILED
        if stale_before is not None:
            missed = or_(missed, and_(
                AlertRecipient.sms_sent.is_(False),
                AlertRecipient.sms_delivery_status.is_(None),
                AlertRecipient.created_at < stale_before,
            ))
        async with self._db.session() as session:
            result = await session.execute(
                select(AlertRecipient, EmergencyAlert)
                .join(EmergencyAlert, EmergencyAlert.id == AlertRecipient.alert_id)
                .where(AlertRecipient.sms_required.is_(True), missed)
                .order_by(AlertRecipient.created_at.desc(), AlertRecipient.id.desc())
            )
            return [(r, a) for r, a in result.all()]

    async def mark_sms_failed(self, alert_id: int, receiver_id: int) -> bool:
        """Flag a recipient whose SMS never reached the provider."""
        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(AlertRecipient)
                    .where(
                        AlertRecipient.alert_id == alert_id,
                        AlertRecipient.receiver_id == receiver_id,
                        AlertRecipient.sms_sent.is_(False),
                    )
                    .values(sms_delivery_status=SmsStatus.FAILED)
                )
        return bool(result.rowcount)

    # ═══════════════════════════════════════════════════════════════════════
    # SMS ledger
    # ═══════════════════════════════════════════════════════════════════════

    async def recent_sms_exists(
        self,
        phone: str,
        message_type: SmsMessageType,
        reference_id: Optional[int],
        since: datetime,
    ) -> bool:
        """Any non-failed row for the dedup key created after `since`."""
        ref_clause = (
            SmsLog.reference_id.is_(None) if reference_id is None
            else SmsLog.reference_id == reference_id
        )
        async with self._db.session() as session:
            found = (await session.execute(
                select(SmsLog.id).where(
                    SmsLog.receiver_phone == phone,
                    SmsLog.message_type == message_type,
                    ref_clause,
                    SmsLog.created_at > since,
                    SmsLog.status != SmsStatus.FAILED,
                ).limit(1)
            )).first()
        return found is not None

    async def add_sms_log(self, log: SmsLog) -> SmsLog:
        async with self._db.session() as session:
            async with session.begin():
                session.add(log)
        return log

    async def complete_sms(
        self,
        log_id: int,
        *,
        now: datetime,
        external_id: Optional[str] = None,
        error: Optional[str] = None,
        recipient_key: Optional[Tuple[int, int]] = None,
    ) -> SmsLog:
        """Record the provider outcome on the ledger row (and recipient, if any)."""
        async with self._db.session() as session:
            async with session.begin():
                log = await session.get(SmsLog, log_id)
                if log is None:
                    raise NotFoundError("SmsLog", sms_log_id=log_id)
                if error is None:
                    log.mark_sent(external_id, now)
                else:
                    log.mark_failed(error)

                if recipient_key is not None:
                    alert_id, receiver_id = recipient_key
                    row = (await session.execute(
                        select(AlertRecipient).where(
                            AlertRecipient.alert_id == alert_id,
                            AlertRecipient.receiver_id == receiver_id,
                        )
                    )).scalar_one_or_none()
                    if row is not None:
                        if error is None:
                            row.mark_sms_sent(now)
                        else:
                            row.mark_sms_failed()
        return log

    async def apply_delivery_receipt(
        self,
        external_id: str,
        status: SmsStatus,
        *,
        now: datetime,
        error: Optional[str] = None,
    ) -> Optional[SmsLog]:
        """Move a SENT row to DELIVERED/FAILED. Terminal rows stay put."""
        async with self._db.session() as session:
            async with session.begin():
                log = (await session.execute(
                    select(SmsLog).where(SmsLog.external_message_id == external_id)
                )).scalar_one_or_none()
                if log is None or log.status.is_terminal:
                    return log
                if status is SmsStatus.DELIVERED:
                    log.mark_delivered(now)
                elif status is SmsStatus.FAILED:
                    log.mark_failed(error or "provider reported failure")
                else:
                    return log

                if log.reference_id is not None and log.receiver_id is not None:
                    row = (await session.execute(
                        select(AlertRecipient).where(
                            AlertRecipient.alert_id == log.reference_id,
                            AlertRecipient.receiver_id == log.receiver_id,
                        )
                    )).scalar_one_or_none()
                    if row is not None and log.message_type in (
                        SmsMessageType.EMERGENCY_CRITICAL, SmsMessageType.EMERGENCY_WARNING,
                    ):
                        if status is SmsStatus.DELIVERED:
                            row.mark_sms_delivered()
                        else:
                            row.mark_sms_failed()
        return log

    async def sms_logs_for(self, reference_type: str, reference_id: int) -> List[SmsLog]:
        async with self._db.session() as session:
            result = await session.execute(
                select(SmsLog)
                .where(
                    SmsLog.reference_type == reference_type,
                    SmsLog.reference_id == reference_id,
                )
                .order_by(SmsLog.created_at.desc(), SmsLog.id.desc())
            )
            return list(result.scalars().all())

    async def sms_status_counts(self) -> Dict[str, int]:
        async with self._db.session() as session:
            rows = (await session.execute(
                select(SmsLog.status, func.count(SmsLog.id)).group_by(SmsLog.status)
            )).all()
        return {status.value: count for status, count in rows}
