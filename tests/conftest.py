import os
import sys, pathlib
sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
from datetime import datetime, timedelta

import pytest

from contratrack.bot import build_services
from contratrack.db import init_db, make_engine, make_session_factory
from contratrack.permissions import Role
from contratrack.compliance.models import ContraventionType, Course, Employee, Severity


class Clock:
    """Settable ``now`` callable shared by every service under test."""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, employee, event_type, payload):
        self.sent.append((employee.id, event_type, payload))

    def events(self, event_type=None):
        return [s for s in self.sent if event_type is None or s[1] == event_type]


class Seeder:
    def __init__(self, session):
        self.session = session
        self._n = 0

    def employee(self, name=None, role=Role.USER, chat_id=None, active=True):
        self._n += 1
        name = name or f"Employee {self._n}"
        emp = Employee(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            role=role,
            is_active=active,
            telegram_chat_id=chat_id,
        )
        self.session.add(emp)
        self.session.commit()
        return emp

    def ctype(self, points=1, severity=Severity.LOW, name=None, active=True):
        self._n += 1
        ct = ContraventionType(
            category="Procurement",
            name=name or f"Type {self._n}",
            default_severity=severity,
            default_points=points,
            is_active=active,
        )
        self.session.add(ct)
        self.session.commit()
        return ct

    def course(self, name="Procurement Compliance Training", mandatory=True, active=True):
        course = Course(name=name, is_mandatory=mandatory, is_active=active)
        self.session.add(course)
        self.session.commit()
        return course


@pytest.fixture
def engine():
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    sess = make_session_factory(engine)()
    yield sess
    sess.close()


@pytest.fixture
def clock():
    return Clock(datetime(2025, 6, 2, 9, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(session, notifier, clock):
    return build_services(session, notifier, now=clock)


@pytest.fixture
def seed(session):
    return Seeder(session)
