import os
from datetime import datetime, timedelta
from decimal import Decimal

os.environ.setdefault("CIRC_DB", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from circulation_desk.core.config import Settings
from circulation_desk.core.database import init_db
from circulation_desk.models.models import Patron, PatronStatus, Role, Title
from circulation_desk.services.circulation import CirculationService


class Clock:
    """Settable stand-in for utcnow."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def clock():
    return Clock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        log_level="INFO",
        loan_period_days=14,
        fine_rate_per_day=Decimal("10.00"),
        reserve_only_when_unavailable=False,
    )


@pytest.fixture
def events():
    return []


@pytest.fixture
def circulation(db, settings, events, clock):
    return CirculationService(db, settings=settings, publish=events.append, clock=clock)


@pytest.fixture
def make_patron(db):
    counter = iter(range(1, 10_000))

    def _make(role=Role.MEMBER, status=PatronStatus.ACTIVE, name=None):
        n = next(counter)
        patron = Patron(
            full_name=name or f"Patron {n}",
            email=f"patron{n}@example.com",
            role=role,
            status=status,
        )
        db.add(patron)
        db.commit()
        return patron

    return _make


@pytest.fixture
def make_title(db):
    def _make(total=2, available=None, title="Dune", author="Frank Herbert"):
        row = Title(
            title=title,
            author=author,
            total_copies=total,
            available_copies=total if available is None else available,
        )
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture
def librarian(make_patron):
    return make_patron(Role.LIBRARIAN, name="Libby Librarian")


@pytest.fixture
def member(make_patron):
    return make_patron(Role.MEMBER, name="Alice Reader")
