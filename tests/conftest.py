"""Pytest configuration and fixtures."""

import os

# The module-level engine in autoreach.models is built at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ADMIN_EMAIL", "")

from datetime import datetime

import pytest

from autoreach.models import build_engine, build_session_factory, init_db
from autoreach.engine.automation import AutomationEngine
from autoreach.engine.followup_scheduler import FollowupScheduler
from autoreach.settings import save_setting
from autoreach.store.customers import create_customer, insert_email
from fakes import FakeClock, FakeGrader, FakeAnalyst, FakeComposer, FakeMailer

DEFAULT_CONTACTS = [
    {"name": "Dana Reyes", "title": "Owner", "email": "dana@acme-roofing.example", "is_key": True},
    {"name": "Sam Ortiz", "title": "Office Manager", "email": "office@acme-roofing.example", "is_key": False},
]


@pytest.fixture
def session_factory(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'autoreach.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    # Monday
    return FakeClock(datetime(2026, 10, 19, 10, 0, 0))


@pytest.fixture
def make_customer(session_factory):
    def _make(name="Acme Roofing", contacts=None):
        with session_factory() as db:
            return create_customer(
                db, name, website="https://acme-roofing.example",
                contacts=DEFAULT_CONTACTS if contacts is None else contacts,
            )
    return _make


@pytest.fixture
def make_email(session_factory):
    def _make(customer_id, subject="Quick question", body="Hi there"):
        with session_factory() as db:
            return insert_email(db, customer_id, "initial", subject, body)
    return _make


@pytest.fixture
def set_setting(session_factory):
    def _set(key, value):
        with session_factory() as db:
            save_setting(db, key, value)
    return _set


@pytest.fixture
def grader():
    return FakeGrader()


@pytest.fixture
def analyst():
    return FakeAnalyst()


@pytest.fixture
def composer(session_factory):
    return FakeComposer(session_factory)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def scheduler(session_factory, composer, mailer, clock):
    return FollowupScheduler(composer, mailer, session_factory=session_factory, clock=clock)


@pytest.fixture
def engine(session_factory, grader, analyst, composer, scheduler):
    return AutomationEngine(grader, analyst, composer, scheduler, session_factory=session_factory)
