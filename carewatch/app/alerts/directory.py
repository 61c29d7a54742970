"""
directory.py — People-side collaborator consumed by the alert subsystem.

User, subject, assignment, guardianship and admin-jurisdiction management
live outside this service. The alert code only needs the narrow lookups
declared on `Directory`. `InMemoryDirectory` backs development, tests and
demos, and can be seeded from a JSON file:

    {
      "users":         [{"id": 10, "name": "...", "phone": "010-...", "role": "COUNSELOR"}],
      "subjects":      [{"id": 1, "name": "...", "birth_date": "1941-03-02",
                         "region_code": "1168010100", "phone": "...", "address": "..."}],
      "assignments":   [{"subject_id": 1, "counselor_id": 10, "active": true}],
      "guardianships": [{"subject_id": 1, "guardian_id": 20, "relation": "SON"}],
      "admins":        [{"user_id": 30, "region_code": "1168000000"}]
    }
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from carewatch.app.alerts.models import ReceiverRole

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DirectoryUser:
    id: int
    name: str
    role: ReceiverRole
    phone: Optional[str] = None
    department: Optional[str] = None


@dataclass(frozen=True)
class Subject:
    """The monitored elderly person."""
    id: int
    name: str
    region_code: str
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    def age(self, today: Optional[date] = None) -> Optional[int]:
        if self.birth_date is None:
            return None
        today = today or date.today()
        years = today.year - self.birth_date.year
        if (today.month, today.day) < (self.birth_date.month, self.birth_date.day):
            years -= 1
        return years


@dataclass(frozen=True)
class Guardianship:
    guardian_id: int
    relation: Optional[str] = None


@dataclass(frozen=True)
class AdminProfile:
    user_id: int
    region_code: str


# ═══════════════════════════════════════════════════════════════════════════
# Interface
# ═══════════════════════════════════════════════════════════════════════════

class Directory(abc.ABC):
    """Read-only lookups into the people side of the platform."""

    @abc.abstractmethod
    async def get_subject(self, subject_id: int) -> Optional[Subject]: ...

    @abc.abstractmethod
    async def get_user(self, user_id: int) -> Optional[DirectoryUser]: ...

    @abc.abstractmethod
    async def active_counselor_for(self, subject_id: int) -> Optional[int]: ...

    @abc.abstractmethod
    async def guardian_for(self, subject_id: int) -> Optional[Guardianship]: ...

    @abc.abstractmethod
    async def list_admins(self) -> List[AdminProfile]: ...

    @abc.abstractmethod
    async def admin_jurisdiction(self, admin_id: int) -> Optional[str]: ...

    @abc.abstractmethod
    async def subjects_for_counselor(self, counselor_id: int) -> List[int]: ...

    @abc.abstractmethod
    async def subjects_for_guardian(self, guardian_id: int) -> List[int]: ...

    @abc.abstractmethod
    async def subjects_in_region(self, region_prefix: str) -> List[int]: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryDirectory(Directory):

    def __init__(self) -> None:
        self._users: Dict[int, DirectoryUser] = {}
        self._subjects: Dict[int, Subject] = {}
        self._assignments: Dict[int, int] = {}      # subject → active counselor
        self._guardians: Dict[int, Guardianship] = {}
        self._admins: Dict[int, AdminProfile] = {}

    # ── Mutation (seeding) ──

    def add_user(self, user: DirectoryUser) -> DirectoryUser:
        self._users[user.id] = user
        return user

    def add_subject(self, subject: Subject) -> Subject:
        self._subjects[subject.id] = subject
        return subject

    def assign_counselor(self, subject_id: int, counselor_id: Optional[int]) -> None:
        if counselor_id is None:
            self._assignments.pop(subject_id, None)
        else:
            self._assignments[subject_id] = counselor_id

    def link_guardian(self, subject_id: int, guardian_id: int, relation: Optional[str] = None) -> None:
        self._guardians[subject_id] = Guardianship(guardian_id, relation)

    def add_admin(self, user_id: int, region_code: str) -> None:
        self._admins[user_id] = AdminProfile(user_id, region_code)

    # ── Lookups ──

    async def get_subject(self, subject_id: int) -> Optional[Subject]:
        return self._subjects.get(subject_id)

    async def get_user(self, user_id: int) -> Optional[DirectoryUser]:
        return self._users.get(user_id)

    async def active_counselor_for(self, subject_id: int) -> Optional[int]:
        return self._assignments.get(subject_id)

    async def guardian_for(self, subject_id: int) -> Optional[Guardianship]:
        return self._guardians.get(subject_id)

    async def list_admins(self) -> List[AdminProfile]:
        return list(self._admins.values())

    async def admin_jurisdiction(self, admin_id: int) -> Optional[str]:
        profile = self._admins.get(admin_id)
        return profile.region_code if profile else None

    async def subjects_for_counselor(self, counselor_id: int) -> List[int]:
        return [s for s, c in self._assignments.items() if c == counselor_id]

    async def subjects_for_guardian(self, guardian_id: int) -> List[int]:
        return [s for s, g in self._guardians.items() if g.guardian_id == guardian_id]

    async def subjects_in_region(self, region_prefix: str) -> List[int]:
        return [
            s.id for s in self._subjects.values()
            if s.region_code.startswith(region_prefix)
        ]

    # ── Loading ──

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InMemoryDirectory":
        directory = cls()
        for u in data.get("users", []):
            directory.add_user(DirectoryUser(
                id=int(u["id"]),
                name=u["name"],
                role=ReceiverRole(u["role"]),
                phone=u.get("phone"),
                department=u.get("department"),
            ))
        for s in data.get("subjects", []):
            birth = s.get("birth_date")
            directory.add_subject(Subject(
                id=int(s["id"]),
                name=s["name"],
                region_code=str(s["region_code"]),
                birth_date=date.fromisoformat(birth) if birth else None,
                gender=s.get("gender"),
                phone=s.get("phone"),
                address=s.get("address"),
            ))
        for a in data.get("assignments", []):
            if a.get("active", True):
                directory.assign_counselor(int(a["subject_id"]), int(a["counselor_id"]))
        for g in data.get("guardianships", []):
            directory.link_guardian(int(g["subject_id"]), int(g["guardian_id"]), g.get("relation"))
        for adm in data.get("admins", []):
            directory.add_admin(int(adm["user_id"]), str(adm["region_code"]))
        return directory

    @classmethod
    def from_file(cls, path: str) -> "InMemoryDirectory":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        directory = cls.from_dict(raw)
        logger.info(
            "Directory seeded from %s: %d users, %d subjects, %d admins",
            path, len(directory._users), len(directory._subjects), len(directory._admins),
        )
        return directory
