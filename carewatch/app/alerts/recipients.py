"""
recipients.py — Who must hear about an alert.

═══════════════════════════════════════════════════════════════════════════
JURISDICTION MATCHING
═══════════════════════════════════════════════════════════════════════════

Region codes are 10-digit administrative codes laid out as a hierarchy:

    11 680 101 00
    │   │   │   └── village   (digits 9-10)
    │   │   └────── town      (digits 6-8)
    │   └────────── district  (digits 3-5)
    └────────────── province  (digits 1-2)

An admin's code is cut at the shallowest configured level after which only
zeros remain. "1168000000" → prefix "11680" → covers every subject whose
code starts with "11680". A full code covers only itself; all zeros covers
the whole country. Level boundaries come from REGION_HIERARCHY_DIGITS.

═══════════════════════════════════════════════════════════════════════════
RESOLUTION
═══════════════════════════════════════════════════════════════════════════

    snapshot counselor (0..1) ∪ linked guardian (0..1) ∪ jurisdiction admins (0..N)

deduplicated by receiver id, first role wins in that order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from carewatch.app.alerts.directory import AdminProfile, Directory, Subject
from carewatch.app.alerts.models import ReceiverRole, ResolvedRecipient, Severity
from carewatch.app.core.config import settings

logger = logging.getLogger(__name__)


class RegionHierarchy:
    """Prefix semantics over hierarchical administrative region codes."""

    def __init__(self, level_digits: Optional[Sequence[int]] = None):
        digits = sorted(set(level_digits or settings.REGION_HIERARCHY_DIGITS))
        if not digits or digits[0] <= 0:
            raise ValueError("region hierarchy needs at least one positive level length")
        self.level_digits: List[int] = digits

    def jurisdiction_prefix(self, region_code: str) -> str:
        code = region_code.strip()
        if not code.strip("0"):
            return ""
        for depth in self.level_digits:
            if depth >= len(code):
                break
            if not code[depth:].strip("0"):
                return code[:depth]
        return code

    def covers(self, jurisdiction_code: str, region_code: str) -> bool:
        return region_code.startswith(self.jurisdiction_prefix(jurisdiction_code))

    def admins_covering(
        self, admins: Iterable[AdminProfile], region_code: str,
    ) -> List[AdminProfile]:
        return [a for a in admins if self.covers(a.region_code, region_code)]


def sms_required_for(severity: Severity, warning_sms_enabled: bool) -> bool:
    if severity is Severity.CRITICAL:
        return True
    return warning_sms_enabled


def resolve_recipients(
    severity: Severity,
    counselor_id: Optional[int],
    guardian_id: Optional[int],
    admin_ids: Iterable[int],
    *,
    warning_sms_enabled: bool = False,
) -> List[ResolvedRecipient]:
    """Pure fanout: distinct (receiver, role) pairs with the SMS flag set."""
    sms_required = sms_required_for(severity, warning_sms_enabled)
    resolved: Dict[int, ResolvedRecipient] = {}

    def _add(receiver_id: Optional[int], role: ReceiverRole) -> None:
        if receiver_id is None or receiver_id in resolved:
            return
        resolved[receiver_id] = ResolvedRecipient(receiver_id, role, sms_required)

    _add(counselor_id, ReceiverRole.COUNSELOR)
    _add(guardian_id, ReceiverRole.GUARDIAN)
    for admin_id in admin_ids:
        _add(admin_id, ReceiverRole.ADMIN)

    return list(resolved.values())


@dataclass
class RecipientResolver:
    """Looks up the collaborators, then delegates to `resolve_recipients`."""

    directory: Directory
    hierarchy: RegionHierarchy
    warning_sms_enabled: bool = False

    async def resolve(
        self,
        subject: Subject,
        severity: Severity,
        snapshot_counselor_id: Optional[int],
    ) -> List[ResolvedRecipient]:
        guardianship = await self.directory.guardian_for(subject.id)
        admins = self.hierarchy.admins_covering(
            await self.directory.list_admins(), subject.region_code,
        )
        recipients = resolve_recipients(
            severity,
            snapshot_counselor_id,
            guardianship.guardian_id if guardianship else None,
            [a.user_id for a in admins],
            warning_sms_enabled=self.warning_sms_enabled,
        )
        logger.debug(
            "Resolved %d recipients for subject %s (counselor=%s, guardian=%s, admins=%d)",
            len(recipients), subject.id, snapshot_counselor_id,
            guardianship.guardian_id if guardianship else None, len(admins),
        )
        return recipients
