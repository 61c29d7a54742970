"""
Shared fixtures: a file-backed sqlite database per test, a seeded people
directory, a recording SMS provider, a controllable clock, and a started
container wired from all of them.

Seeded people:

    subject 1  김순자  1168010100 (Seoul Gangnam)   counselor 10, guardian 20
    subject 2  박영수  2611010100 (Busan)           counselor 11, no guardian
    subject 3  이말순  1168010200                   no counselor, no guardian

    admin 30  1168000000   district     → covers subjects 1, 3
    admin 31  1100000000   province     → covers subjects 1, 3
    admin 32  2600000000   province     → covers subject 2
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from carewatch.app.alerts.channels.sms_gateway import SimulatedSmsProvider
from carewatch.app.alerts.directory import DirectoryUser, InMemoryDirectory, Subject
from carewatch.app.alerts.models import ReceiverRole
from carewatch.app.container import AlertContainer
from carewatch.app.core.config import Settings
from carewatch.app.core.database import Database

START = datetime(2026, 3, 2, 5, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable wall clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _seed_directory() -> InMemoryDirectory:
    d = InMemoryDirectory()
    d.add_user(DirectoryUser(10, "최상담", ReceiverRole.COUNSELOR, "010-1111-0010", "강남복지센터"))
    d.add_user(DirectoryUser(11, "정상담", ReceiverRole.COUNSELOR, "010-1111-0011", "해운대복지센터"))
    d.add_user(DirectoryUser(20, "김보호", ReceiverRole.GUARDIAN, "010-2222-0020"))
    d.add_user(DirectoryUser(30, "강남관리", ReceiverRole.ADMIN, "010-3333-0030"))
    d.add_user(DirectoryUser(31, "서울관리", ReceiverRole.ADMIN, "010-3333-0031"))
    d.add_user(DirectoryUser(32, "부산관리", ReceiverRole.ADMIN, "010-3333-0032"))

    d.add_subject(Subject(1, "김순자", "1168010100", date(1941, 3, 2), "F", "010-9999-0001", "서울 강남구"))
    d.add_subject(Subject(2, "박영수", "2611010100", date(1938, 7, 15), "M", "010-9999-0002", "부산 해운대구"))
    d.add_subject(Subject(3, "이말순", "1168010200", None, "F", None, "서울 강남구"))

    d.assign_counselor(1, 10)
    d.assign_counselor(2, 11)
    d.link_guardian(1, 20, "DAUGHTER")

    d.add_admin(30, "1168000000")
    d.add_admin(31, "1100000000")
    d.add_admin(32, "2600000000")
    return d


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory() -> InMemoryDirectory:
    return _seed_directory()


@pytest.fixture
def provider() -> SimulatedSmsProvider:
    return SimulatedSmsProvider()


@pytest.fixture
def config() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_CREATE_TABLES=False,
        DELIVERY_WORKERS=1,
        INTERNAL_API_KEY="test-internal-key",
        SMS_PROVIDER="simulation",
        WARNING_SMS_ENABLED=False,
        SSE_HEARTBEAT_INTERVAL_SECONDS=3600.0,
        SSE_STATS_INTERVAL_SECONDS=3600.0,
    )


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}", echo=False)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def container(config, database, directory, provider, clock):
    c = AlertContainer(config, database=database, directory=directory, provider=provider, clock=clock)
    await c.start()
    yield c
    await c.stop()
