"""
Shared fixtures: an in-memory sqlite database, a controllable clock and
services wired to both. Environment must be set before any project import.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PORTAL_BASE_URL"] = "https://portal.schoolpix.test"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["ADMIN_API_TOKEN_SHA256"] = ""
os.environ["SMTP_HOST"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["REDIS_URL"] = ""
os.environ["PORTAL_RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["ADMIN_RATE_LIMIT_PER_MINUTE"] = "100000"

from datetime import datetime, timedelta

import pytest

from core.database import Base, SessionLocal, engine, init_db
from models.school import Event, Folder, LegacySubjectToken, Student
from utils.access_tokens import AccessTokenService
from utils.token_store import LegacyTokenAdapter, SqlTokenStore
from utils.usage_tracker import InlineUsageRecorder

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def database():
    init_db()
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def store(database):
    return SqlTokenStore(database)


@pytest.fixture
def legacy(database):
    return LegacyTokenAdapter(database)


@pytest.fixture
def usage(store):
    return InlineUsageRecorder(store.record_usage)


@pytest.fixture
def tokens(store, legacy, clock, usage):
    return AccessTokenService(store, legacy=legacy, clock=clock, usage=usage)


def _add(session_factory, *rows):
    db = session_factory()
    try:
        for row in rows:
            db.add(row)
        db.commit()
        for row in rows:
            db.refresh(row)
    finally:
        db.close()
    return rows


@pytest.fixture
def add_rows(database):
    def _inner(*rows):
        return _add(database, *rows)
    return _inner


@pytest.fixture
def event(add_rows):
    (row,) = add_rows(Event(
        id="evt-spring",
        name="Spring Portraits",
        school_name="Maple Grove Elementary",
        photographer_contact="studio@schoolpix.test",
        status="active",
    ))
    return row


@pytest.fixture
def students(add_rows, event):
    return list(add_rows(
        Student(id="stu-1", event_id=event.id, first_name="Ava", last_name="Jones",
                parent_email="pat.jones@example.com", parent_phone="5551234567"),
        Student(id="stu-2", event_id=event.id, first_name="Ben", last_name="Jones",
                parent_email="Pat.Jones@example.com", parent_phone="5551234567"),
        Student(id="stu-3", event_id=event.id, first_name="Cleo", last_name="Smith",
                parent_email="sam@example.com", parent_phone=None),
    ))


@pytest.fixture
def legacy_rows(add_rows, event, students, clock):
    return add_rows(
        LegacySubjectToken(subject_id="stu-3", token="LegacySubjectTokenValue01",
                           expires_at=clock() + timedelta(days=10)),
        Folder(id="fld-1", event_id=event.id, name="Class 3B", is_published=True,
               share_token="LegacyFolderShareToken001", share_expires_at=None),
    )
