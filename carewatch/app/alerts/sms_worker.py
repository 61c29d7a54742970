"""
sms_worker.py — Out-of-band SMS delivery with dedup and a delivery ledger.

Runs inside dispatcher jobs, never on the request path. One call handles
one recipient, so a provider failure for one human cannot touch another.

═══════════════════════════════════════════════════════════════════════════
PER-RECIPIENT FLOW
═══════════════════════════════════════════════════════════════════════════

    normalise phone ──► no phone? ───────────────────────► SKIPPED
          │
          ▼
    dedup window hit? (phone, type, reference) ──────────► SUPPRESSED
          │                                                 (no row, no call)
          ▼
    SmsLog PENDING  ──►  provider: body part, link part
          │                    │
          │           ok ──────┴────── error
          ▼                              ▼
    SmsLog SENT + sid               SmsLog FAILED + error
    recipient SMS sent              recipient SMS failed
                                    (no retry; resend sweep picks it up)

The dedup check tolerates races: two near-simultaneous identical sends may
both pass it. Delivery is at-least-once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from carewatch.app.alerts.channels.sms_gateway import (
    SmsProvider,
    link_for_role,
    normalize_phone,
    render_alert_body,
    render_link_message,
    render_notice,
)
from carewatch.app.alerts.directory import Directory
from carewatch.app.alerts.entities import AlertRecipient, EmergencyAlert, SmsLog
from carewatch.app.alerts.models import (
    ALERT_REFERENCE_TYPE,
    SmsMessageType,
    SmsStatus,
)
from carewatch.app.alerts.store import AlertStore
from carewatch.app.core.config import settings
from carewatch.app.core.errors import SmsProviderError
from carewatch.app.core.logging_config import mask_phone

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SmsDispatchOutcome(str, Enum):
    SENT       = "sent"
    FAILED     = "failed"
    SUPPRESSED = "suppressed"   # dedup window hit
    SKIPPED    = "skipped"      # no usable phone number


NOTICE_REFERENCE_TYPES = {
    SmsMessageType.INQUIRY_REPLY: "inquiries",
    SmsMessageType.COMPLAINT_REPLY: "complaints",
    SmsMessageType.ACCESS_APPROVED: "access_requests",
    SmsMessageType.ACCESS_REJECTED: "access_requests",
    SmsMessageType.SYSTEM: None,
}

# Provider receipt status → ledger status. Anything else is in flight.
RECEIPT_STATUSES = {
    "delivered": SmsStatus.DELIVERED,
    "failed": SmsStatus.FAILED,
    "undelivered": SmsStatus.FAILED,
}


class SmsDeliveryWorker:

    def __init__(
        self,
        store: AlertStore,
        directory: Directory,
        provider: SmsProvider,
        *,
        dedup_window_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.directory = directory
        self.provider = provider
        window = settings.SMS_DEDUP_WINDOW_SECONDS if dedup_window_seconds is None else dedup_window_seconds
        self.dedup_window = timedelta(seconds=window)
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════════════
    # Alert SMS
    # ═══════════════════════════════════════════════════════════════════════

    async def deliver_alert_sms(
        self, alert: EmergencyAlert, recipient: AlertRecipient,
    ) -> SmsDispatchOutcome:
        user = await self.directory.get_user(recipient.receiver_id)
        phone = normalize_phone(user.phone if user else None)
        if not phone:
            logger.warning(
                "No phone for receiver %s, alert %s SMS skipped",
                recipient.receiver_id, alert.id,
                extra={"alert_id": alert.id, "user_id": recipient.receiver_id},
            )
            return SmsDispatchOutcome.SKIPPED

        message_type = SmsMessageType.for_severity(alert.severity)
        if await self._recently_sent(phone, message_type, alert.id):
            return SmsDispatchOutcome.SUPPRESSED

        subject = await self.directory.get_subject(alert.subject_id)
        body = render_alert_body(
            recipient.receiver_role,
            alert.severity,
            subject.name if subject else "",
            subject.age(self._clock().date()) if subject else None,
            alert.title,
        )
        link = link_for_role(recipient.receiver_role)
        link_message = render_link_message(link)

        log = await self.store.add_sms_log(SmsLog(
            receiver_id=recipient.receiver_id,
            receiver_phone=phone,
            message_type=message_type,
            reference_type=ALERT_REFERENCE_TYPE,
            reference_id=alert.id,
            message_content=body + "\n" + link_message,
            short_link=link,
            status=SmsStatus.PENDING,
            created_at=self._clock(),
        ))

        return await self._send_parts(
            log, phone, [body, link_message],
            recipient_key=(alert.id, recipient.receiver_id),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Non-alert notices
    # ═══════════════════════════════════════════════════════════════════════

    async def send_notice_sms(
        self,
        receiver_id: int,
        message_type: SmsMessageType,
        *,
        reference_id: Optional[int] = None,
        subject_name: Optional[str] = None,
        text: Optional[str] = None,
    ) -> SmsDispatchOutcome:
        """Inquiry/complaint replies, access decisions, system notices."""
        if message_type not in NOTICE_REFERENCE_TYPES:
            raise ValueError(f"{message_type.value} is not a notice type")
        user = await self.directory.get_user(receiver_id)
        phone = normalize_phone(user.phone if user else None)
        if not phone:
            logger.warning("No phone for receiver %s, %s notice skipped", receiver_id, message_type.value)
            return SmsDispatchOutcome.SKIPPED

        if await self._recently_sent(phone, message_type, reference_id):
            return SmsDispatchOutcome.SUPPRESSED

        message, link = render_notice(message_type, subject_name=subject_name, text=text)
        log = await self.store.add_sms_log(SmsLog(
            receiver_id=receiver_id,
            receiver_phone=phone,
            message_type=message_type,
            reference_type=NOTICE_REFERENCE_TYPES[message_type],
            reference_id=reference_id,
            message_content=message,
            short_link=link,
            status=SmsStatus.PENDING,
            created_at=self._clock(),
        ))
        return await self._send_parts(log, phone, [message])

    # ═══════════════════════════════════════════════════════════════════════
    # Delivery receipts
    # ═══════════════════════════════════════════════════════════════════════

    async def handle_delivery_receipt(
        self, external_id: str, provider_status: str, error: Optional[str] = None,
    ) -> Optional[SmsLog]:
        status = RECEIPT_STATUSES.get(provider_status.lower())
        if status is None:
            logger.debug("Receipt %s for %s ignored (in flight)", provider_status, external_id)
            return None
        log = await self.store.apply_delivery_receipt(
            external_id, status, now=self._clock(), error=error,
        )
        if log is None:
            logger.warning("Receipt for unknown message %s", external_id)
        else:
            logger.info(
                "SMS %s receipt: %s → %s", log.id, provider_status, log.status.value,
                extra={"sms_log_id": log.id},
            )
        return log

    # ═══════════════════════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════════════════════

    async def _recently_sent(
        self, phone: str, message_type: SmsMessageType, reference_id: Optional[int],
    ) -> bool:
        since = self._clock() - self.dedup_window
        if await self.store.recent_sms_exists(phone, message_type, reference_id, since):
            logger.debug(
                "SMS suppressed by dedup window: %s %s ref=%s",
                mask_phone(phone), message_type.value, reference_id,
            )
            return True
        return False

    async def _send_parts(
        self,
        log: SmsLog,
        phone: str,
        parts: List[str],
        *,
        recipient_key: Optional[Tuple[int, int]] = None,
    ) -> SmsDispatchOutcome:
        external_id = None
        try:
            for part in parts:
                external_id = await self.provider.send(phone, part)
        except Exception as exc:
            error = exc.message if isinstance(exc, SmsProviderError) else f"{type(exc).__name__}: {exc}"
            await self.store.complete_sms(
                log.id, now=self._clock(), error=error, recipient_key=recipient_key,
            )
            logger.error(
                "SMS %s to %s failed: %s", log.id, mask_phone(phone), error,
                extra={"sms_log_id": log.id, "alert_id": log.reference_id},
            )
            return SmsDispatchOutcome.FAILED

        await self.store.complete_sms(
            log.id, now=self._clock(), external_id=external_id, recipient_key=recipient_key,
        )
        logger.info(
            "SMS %s sent to %s (%s, %d part(s), sid=%s)",
            log.id, mask_phone(phone), log.message_type.value, len(parts), external_id,
            extra={"sms_log_id": log.id, "alert_id": log.reference_id},
        )
        return SmsDispatchOutcome.SENT
