"""
test_models.py — Value types, the alert state machine, entity mutators,
and the error hierarchy.

Run with:
    pytest tests/test_models.py -v
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from carewatch.app.alerts.directory import Subject
from carewatch.app.alerts.entities import AlertRecipient, EmergencyAlert, SmsLog
from carewatch.app.alerts.models import (
    ALLOWED_TRANSITIONS,
    PROCESS_TARGETS,
    AlertCategory,
    AlertStats,
    AlertStatus,
    Page,
    PushEvent,
    ReceiverRole,
    Severity,
    SmsMessageType,
    SmsStatus,
    UnreadCounts,
    ensure_transition,
)
from carewatch.app.core.errors import (
    CareWatchError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from carewatch.app.core.logging_config import mask_phone

NOW = datetime(2026, 3, 2, 5, 0, tzinfo=timezone.utc)


def _make_alert(status: AlertStatus = AlertStatus.PENDING, **overrides) -> EmergencyAlert:
    fields = dict(
        id=7,
        subject_id=1,
        severity=Severity.CRITICAL,
        category=AlertCategory.HEALTH,
        title="호흡 곤란 호소",
        description="숨이 차다고 반복 언급",
        status=status,
        assigned_counselor_id=10,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return EmergencyAlert(**fields)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Enums
# ═══════════════════════════════════════════════════════════════════════════

class TestEnums:

    def test_severity_rank_puts_critical_first(self):
        assert Severity.CRITICAL.rank < Severity.WARNING.rank

    def test_status_rank_orders_work_queue(self):
        ranks = [s.rank for s in (AlertStatus.PENDING, AlertStatus.IN_PROGRESS, AlertStatus.RESOLVED)]
        assert ranks == sorted(ranks)
        assert AlertStatus.RESOLVED.rank == AlertStatus.ESCALATED.rank

    def test_labels_present_for_every_member(self):
        for enum_cls in (Severity, AlertCategory, AlertStatus):
            for member in enum_cls:
                assert member.label

    def test_sms_type_follows_severity(self):
        assert SmsMessageType.for_severity(Severity.CRITICAL) is SmsMessageType.EMERGENCY_CRITICAL
        assert SmsMessageType.for_severity(Severity.WARNING) is SmsMessageType.EMERGENCY_WARNING

    def test_sms_terminal_states(self):
        assert SmsStatus.DELIVERED.is_terminal
        assert SmsStatus.FAILED.is_terminal
        assert not SmsStatus.PENDING.is_terminal
        assert not SmsStatus.SENT.is_terminal

    def test_push_event_wire_names(self):
        assert {e.value for e in PushEvent} == {
            "connected", "emergency-alert", "alert-status-update",
            "notification", "unread-count", "heartbeat",
        }


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: State machine
# ═══════════════════════════════════════════════════════════════════════════

class TestStateMachine:

    @pytest.mark.parametrize("target", [
        AlertStatus.IN_PROGRESS, AlertStatus.RESOLVED, AlertStatus.ESCALATED,
    ])
    def test_pending_moves_anywhere_forward(self, target):
        ensure_transition(1, AlertStatus.PENDING, target)

    def test_in_progress_only_once(self):
        with pytest.raises(InvalidTransitionError):
            ensure_transition(1, AlertStatus.IN_PROGRESS, AlertStatus.IN_PROGRESS)

    @pytest.mark.parametrize("terminal", [AlertStatus.RESOLVED, AlertStatus.ESCALATED])
    @pytest.mark.parametrize("target", list(AlertStatus))
    def test_terminal_states_accept_nothing(self, terminal, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(9, terminal, target)
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["current_status"] == terminal.value

    def test_nothing_returns_to_pending(self):
        for current, targets in ALLOWED_TRANSITIONS.items():
            assert AlertStatus.PENDING not in targets

    def test_terminal_flag(self):
        assert AlertStatus.RESOLVED.is_terminal
        assert AlertStatus.ESCALATED.is_terminal
        assert not AlertStatus.PENDING.is_terminal

    def test_process_targets_exclude_pending(self):
        assert AlertStatus.PENDING not in PROCESS_TARGETS
        assert len(PROCESS_TARGETS) == 3


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Entity mutators
# ═══════════════════════════════════════════════════════════════════════════

class TestEmergencyAlertTransition:

    def test_resolve_stamps_processor_time_and_note(self):
        alert = _make_alert()
        later = NOW + timedelta(minutes=5)
        alert.transition(AlertStatus.RESOLVED, actor_id=10, note="handled", now=later)
        assert alert.status is AlertStatus.RESOLVED
        assert alert.processed_by_id == 10
        assert alert.processed_at == later
        assert alert.resolution_note == "handled"
        assert alert.updated_at == later

    def test_start_records_processor_without_closing(self):
        alert = _make_alert()
        alert.transition(AlertStatus.IN_PROGRESS, actor_id=10, note=None, now=NOW)
        assert alert.status is AlertStatus.IN_PROGRESS
        assert alert.processed_by_id == 10
        assert alert.processed_at is None

    def test_illegal_move_leaves_alert_unchanged(self):
        alert = _make_alert(AlertStatus.ESCALATED, processed_by_id=31, resolution_note="상위 보고")
        with pytest.raises(InvalidTransitionError):
            alert.transition(AlertStatus.RESOLVED, actor_id=10, note="x", now=NOW + timedelta(hours=1))
        assert alert.status is AlertStatus.ESCALATED
        assert alert.processed_by_id == 31
        assert alert.resolution_note == "상위 보고"
        assert alert.updated_at == NOW

    def test_created_dict_shape(self):
        d = _make_alert().to_created_dict()
        assert set(d) == {"alertId", "subjectId", "severity", "category", "title", "status", "createdAt"}
        assert d["status"] == "PENDING"
        assert d["severity"] == "CRITICAL"


class TestRecipientAndLedgerMutators:

    def test_mark_read_first_time_only(self):
        row = AlertRecipient(alert_id=1, receiver_id=20, receiver_role=ReceiverRole.GUARDIAN, is_read=False)
        assert row.mark_read(NOW) is True
        assert row.mark_read(NOW + timedelta(minutes=1)) is False
        assert row.read_at == NOW

    def test_sms_fields(self):
        row = AlertRecipient(alert_id=1, receiver_id=20, receiver_role=ReceiverRole.GUARDIAN, sms_sent=False)
        row.mark_sms_sent(NOW)
        assert row.sms_sent and row.sms_sent_at == NOW
        assert row.sms_delivery_status is SmsStatus.SENT
        row.mark_sms_delivered()
        assert row.sms_delivery_status is SmsStatus.DELIVERED

    def test_failed_error_is_truncated(self):
        log = SmsLog(receiver_phone="+821000000000", message_type=SmsMessageType.SYSTEM, message_content="x")
        log.mark_failed("e" * 5000)
        assert log.status is SmsStatus.FAILED
        assert len(log.error_message) == 1000


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Data carriers
# ═══════════════════════════════════════════════════════════════════════════

class TestDataCarriers:

    def test_page_total_pages(self):
        assert Page(items=[], page=0, size=20, total=0).total_pages == 0
        assert Page(items=[], page=0, size=20, total=41).total_pages == 3

    def test_page_to_dict_maps_items(self):
        page = Page(items=[1, 2], page=1, size=2, total=4)
        d = page.to_dict(lambda i: i * 10)
        assert d["items"] == [10, 20]
        assert d["total_pages"] == 2

    def test_unread_total(self):
        assert UnreadCounts(emergency_unread=3, notification_unread=2).total_unread == 5

    def test_stats_dict(self):
        d = AlertStats(total=3, critical=2, warning=1, pending=3).to_dict()
        assert d["total"] == 3 and d["in_progress"] == 0

    def test_subject_age(self):
        s = Subject(1, "김순자", "1168010100", birth_date=date(1941, 3, 2))
        assert s.age(date(2026, 3, 1)) == 84
        assert s.age(date(2026, 3, 2)) == 85
        assert Subject(2, "x", "1100000000").age() is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Errors & log hygiene
# ═══════════════════════════════════════════════════════════════════════════

class TestErrors:

    def test_not_found_carries_identifiers(self):
        err = NotFoundError("Alert", alert_id=42)
        assert isinstance(err, CareWatchError)
        assert err.status_code == 404
        assert err.details == {"resource": "Alert", "alert_id": 42}

    def test_validation_field(self):
        err = ValidationError("bad", field="title")
        assert err.status_code == 422
        assert err.details["field"] == "title"


class TestMaskPhone:

    def test_masks_middle(self):
        assert mask_phone("+821012345678") == "+82****5678"

    def test_short_or_missing(self):
        assert mask_phone(None) == "****"
        assert mask_phone("1234") == "****"
