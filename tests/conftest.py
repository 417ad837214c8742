"""
Shared fixtures: in-memory database, controllable clock and a recording
notification dispatcher.
"""
import os

# Settings are read at import time; configure before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("SKIP_EMAIL_IN_DEV", "true")
os.environ.setdefault("PURGE_SCHEDULER_ENABLED", "false")
os.environ.setdefault("EXPOSE_CODES_IN_RESPONSE", "false")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from foodiemap.core.database import init_db
from foodiemap.models import AccountStatus, Admin, User
from foodiemap.services.auth_service import AuthService
from foodiemap.services.email_service import NotificationDispatcher

T0 = datetime(2025, 1, 1, 12, 0, 0)
PASSWORD = "s3cret-pass"


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def dispatch(self, notification) -> None:
        if self.fail:
            raise RuntimeError("mail API down")
        self.sent.append(notification)

    def last_code(self, identity_key: str) -> str:
        for notification in reversed(self.sent):
            if notification.identity_key == identity_key:
                return notification.code
        raise AssertionError(f"no code sent to {identity_key}")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database so that two sessions use two real connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def make_user(db, email="diner@example.com", status=AccountStatus.ACTIVE, requested_at=None, **extra) -> User:
    user = User(
        email=email,
        name=extra.pop("name", "Diner"),
        password_hash=extra.pop("password_hash", AuthService.hash_password(PASSWORD)),
        status=status.value,
        deletion_requested_at=requested_at,
        **extra,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_admin(db, email="ops@example.com", role="admin", permissions=None, is_active=True) -> Admin:
    admin = Admin(
        email=email,
        name="Operator",
        password_hash=AuthService.hash_password(PASSWORD),
        role=role,
        permissions=permissions or [],
        is_active=is_active,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin
