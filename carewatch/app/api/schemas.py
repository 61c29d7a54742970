"""
Pydantic schemas for the emergency-alert API.

Request bodies use the camelCase field names the call agent and web client
send. Responses are built from the domain objects' `to_dict()`.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from carewatch.app.alerts.models import AlertCategory, AlertStatus, Severity


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Internal (call agent → alerts)
# ---------------------------------------------------------------------------

class CreateAlertRequest(_CamelModel):
    """Request body for POST /api/internal/emergency-alerts."""
    subject_id: int = Field(..., alias="subjectId", gt=0, examples=[101])
    call_session_id: Optional[int] = Field(None, alias="callSessionId", examples=[5501])
    severity: Severity = Field(..., examples=["CRITICAL"])
    category: AlertCategory = Field(..., examples=["HEALTH"])
    title: str = Field(..., min_length=1, max_length=200, examples=["호흡 곤란 호소"])
    description: str = Field(..., min_length=1, examples=["통화 중 숨이 차다고 반복 언급"])
    danger_keywords: Optional[List[str]] = Field(None, alias="dangerKeywords", examples=[["숨", "가슴"]])
    transcript_excerpt: Optional[str] = Field(None, alias="transcriptExcerpt")

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()


class HealthAlertRequest(_CamelModel):
    """CRITICAL / HEALTH with a default title."""
    subject_id: int = Field(..., alias="subjectId", gt=0)
    call_session_id: Optional[int] = Field(None, alias="callSessionId")
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    danger_keywords: Optional[List[str]] = Field(None, alias="dangerKeywords")
    transcript_excerpt: Optional[str] = Field(None, alias="transcriptExcerpt")


class MentalAlertRequest(HealthAlertRequest):
    """MENTAL; CRITICAL when `isCritical`, WARNING otherwise."""
    is_critical: bool = Field(False, alias="isCritical")


class NoResponseAlertRequest(_CamelModel):
    subject_id: int = Field(..., alias="subjectId", gt=0)
    attempt_count: int = Field(..., alias="attemptCount", ge=1, examples=[3])
    last_attempt_time: Optional[str] = Field(
        None, alias="lastAttemptTime", examples=["2026-03-02T14:30:00+09:00"],
    )


class DeliveryReceipt(_CamelModel):
    """Provider status callback. Field names follow the provider's form."""
    message_sid: str = Field(..., alias="MessageSid", min_length=1)
    message_status: str = Field(..., alias="MessageStatus", min_length=1)
    error_message: Optional[str] = Field(None, alias="ErrorMessage")


# ---------------------------------------------------------------------------
# End-user
# ---------------------------------------------------------------------------

class ProcessAlertRequest(BaseModel):
    """Request body for POST /api/emergency-alerts/{id}/process."""
    status: AlertStatus = Field(..., examples=["RESOLVED"])
    note: Optional[str] = Field(None, max_length=2000, examples=["보호자 통화 후 병원 이송 확인"])

    @field_validator("status")
    @classmethod
    def not_pending(cls, v: AlertStatus) -> AlertStatus:
        if v is AlertStatus.PENDING:
            raise ValueError("PENDING is not a processing target")
        return v


class UnreadCountResponse(BaseModel):
    count: int


class MarkAllReadResponse(BaseModel):
    marked: int
