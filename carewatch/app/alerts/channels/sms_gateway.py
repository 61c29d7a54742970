"""
sms_gateway.py — SMS delivery channel: providers, phone format, message text.

Delivery mechanism:
    • Providers: Twilio (production) or simulation (development / tests)
    • Payload: Korean text is sent as UCS-2, so each part is kept within
      SMS_SEGMENT_LIMIT (67 chars) to avoid concatenated-segment breaks
    • Delivery receipts arrive later via the status callback endpoint

═══════════════════════════════════════════════════════════════════════════
ALERT MESSAGE LAYOUT (two provider calls per recipient)
═══════════════════════════════════════════════════════════════════════════

    Part 1 (body)                         Part 2 (link)
    ─────────────────────────────         ───────────────────────────
    [긴급] 김영희(82세)                    상세 확인:
    어르신 위험 감지됨                     https://.../guardian/alerts
    담당 생활지원사님이 확인 후 ...

    Counselor / admin body:
    [긴급] 담당 어르신
    김영희(82세) 위험 감지
    <alert title, max 20 chars>

    "[긴급]" for CRITICAL, "[알림]" for WARNING.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from carewatch.app.alerts.models import ReceiverRole, Severity, SmsMessageType
from carewatch.app.core.config import Settings, settings
from carewatch.app.core.errors import SmsProviderError
from carewatch.app.core.logging_config import mask_phone

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^0-9]")

NAME_MAX = 10
TITLE_MAX = 20


# ═══════════════════════════════════════════════════════════════════════════
# Phone numbers
# ═══════════════════════════════════════════════════════════════════════════

def normalize_phone(phone: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    """
    To E.164. Numbers already starting with "+" pass through; otherwise
    separators are stripped and a leading trunk "0" becomes the country code.

        010-1234-5678  → +821012345678
    """
    if phone is None:
        return None
    phone = phone.strip()
    if not phone:
        return None
    if phone.startswith("+"):
        return phone
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return None
    if digits.startswith("0"):
        digits = (country_code or settings.SMS_DEFAULT_COUNTRY_CODE) + digits[1:]
    return "+" + digits


# ═══════════════════════════════════════════════════════════════════════════
# Message text
# ═══════════════════════════════════════════════════════════════════════════

def truncate(text: Optional[str], max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def clip_segment(text: str, limit: Optional[int] = None) -> str:
    """Last-resort cut so one part never spills into a second segment."""
    limit = limit or settings.SMS_SEGMENT_LIMIT
    return text if len(text) <= limit else text[:limit]


def _age_label(age: Optional[int]) -> str:
    return f"{age}세" if age is not None else "나이 미상"


def render_alert_body(
    role: ReceiverRole,
    severity: Severity,
    subject_name: str,
    subject_age: Optional[int],
    title: str,
) -> str:
    prefix = "[긴급]" if severity is Severity.CRITICAL else "[알림]"
    name = truncate(subject_name, NAME_MAX)
    age = _age_label(subject_age)

    if role is ReceiverRole.GUARDIAN:
        body = (
            f"{prefix} {name}({age})\n"
            "어르신 위험 감지됨\n"
            "담당 생활지원사님이 확인 후 연락 드릴 예정입니다."
        )
    else:
        body = (
            f"{prefix} 담당 어르신\n"
            f"{name}({age}) 위험 감지\n"
            f"{truncate(title, TITLE_MAX)}"
        )
    return clip_segment(body)


def link_for_role(role: ReceiverRole, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.SMS_LINK_BASE_URL).rstrip("/")
    if role is ReceiverRole.GUARDIAN:
        return f"{base}/guardian/alerts"
    if role is ReceiverRole.COUNSELOR:
        return f"{base}/counselor/alerts"
    return f"{base}/admin"


def render_link_message(link: str) -> str:
    return "상세 확인:\n" + link


@dataclass(frozen=True)
class NoticeTemplate:
    link_path: str
    text: str


NOTICE_TEMPLATES = {
    SmsMessageType.INQUIRY_REPLY: NoticeTemplate(
        "guardian/inquiry", "등록하신 문의에 답변이 등록되었습니다.\n확인: {link}",
    ),
    SmsMessageType.COMPLAINT_REPLY: NoticeTemplate(
        "guardian/complaint", "등록하신 민원에 답변이 등록되었습니다.\n확인: {link}",
    ),
    SmsMessageType.ACCESS_APPROVED: NoticeTemplate(
        "guardian/access", "{subject_name} 어르신의 민감정보 열람 권한이 승인되었습니다.\n확인: {link}",
    ),
    SmsMessageType.ACCESS_REJECTED: NoticeTemplate(
        "guardian/access", "{subject_name} 어르신의 민감정보 열람 권한 요청이 거절되었습니다.\n사유 확인: {link}",
    ),
    SmsMessageType.SYSTEM: NoticeTemplate(
        "", "{text}",
    ),
}


def render_notice(
    message_type: SmsMessageType,
    *,
    subject_name: Optional[str] = None,
    text: Optional[str] = None,
    base_url: Optional[str] = None,
) -> Tuple[str, str]:
    """Returns (message, link) for a non-alert notice."""
    template = NOTICE_TEMPLATES.get(message_type)
    if template is None:
        raise ValueError(f"{message_type.value} is not a notice type")
    base = (base_url or settings.SMS_LINK_BASE_URL).rstrip("/")
    link = f"{base}/{template.link_path}" if template.link_path else base
    body = template.text.format(
        link=link,
        subject_name=truncate(subject_name, NAME_MAX) or "",
        text=text or "",
    )
    return f"{settings.SMS_BRAND}\n{body}", link


# ═══════════════════════════════════════════════════════════════════════════
# Providers
# ═══════════════════════════════════════════════════════════════════════════

class SmsProvider(abc.ABC):
    """Sends one text. Returns the provider message id or raises SmsProviderError."""

    name = "abstract"

    @abc.abstractmethod
    async def send(self, to: str, body: str) -> str: ...


@dataclass
class SentSms:
    to: str
    body: str
    message_id: str


@dataclass
class SimulatedSmsProvider(SmsProvider):
    """
    Logs instead of sending. Numbers in `failing_numbers` raise
    SmsProviderError so failure paths can be exercised end to end.
    """

    failing_numbers: Set[str] = field(default_factory=set)
    sent: List[SentSms] = field(default_factory=list)
    name = "simulation"

    async def send(self, to: str, body: str) -> str:
        if to in self.failing_numbers:
            raise SmsProviderError(self.name, "simulated failure", to=mask_phone(to))
        message_id = "SM" + uuid.uuid4().hex
        self.sent.append(SentSms(to, body, message_id))
        logger.info(
            "[SMS] simulated → %s: %d chars '%s'",
            mask_phone(to), len(body),
            body.replace("\n", " ")[:40] + ("..." if len(body) > 40 else ""),
        )
        return message_id


class TwilioSmsProvider(SmsProvider):
    """Twilio REST client; the blocking call runs in a worker thread."""

    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        messaging_service_sid: Optional[str] = None,
        from_number: Optional[str] = None,
    ):
        if not (messaging_service_sid or from_number):
            raise ValueError("Twilio needs a messaging service SID or a from number")
        self._client = TwilioClient(account_sid, auth_token)
        self._messaging_service_sid = messaging_service_sid
        self._from_number = from_number
        logger.info(
            "Twilio SMS provider ready (sender=%s)",
            (messaging_service_sid or from_number or "")[:6] + "****",
        )

    def _create(self, to: str, body: str) -> str:
        kwargs = {"body": body, "to": to}
        if self._messaging_service_sid:
            kwargs["messaging_service_sid"] = self._messaging_service_sid
        else:
            kwargs["from_"] = self._from_number
        message = self._client.messages.create(**kwargs)
        return message.sid

    async def send(self, to: str, body: str) -> str:
        try:
            return await asyncio.to_thread(self._create, to, body)
        except TwilioRestException as exc:
            raise SmsProviderError(self.name, exc.msg, code=exc.code) from exc


def build_provider(config: Optional[Settings] = None) -> SmsProvider:
    config = config or settings
    if config.SMS_PROVIDER == "simulation":
        return SimulatedSmsProvider()
    if config.SMS_PROVIDER == "twilio":
        if not (config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN):
            raise ValueError("SMS_PROVIDER=twilio requires TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN")
        return TwilioSmsProvider(
            config.TWILIO_ACCOUNT_SID,
            config.TWILIO_AUTH_TOKEN,
            messaging_service_sid=config.TWILIO_MESSAGING_SERVICE_SID,
            from_number=config.TWILIO_FROM_NUMBER,
        )
    raise ValueError(f"Unknown SMS provider: {config.SMS_PROVIDER}")
