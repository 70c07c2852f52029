import os

# Must be set before fieldops is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["ENABLE_IDLE_MONITOR"] = "false"
os.environ["TZ_DEFAULT"] = "UTC"
os.environ["RATE_LIMIT"] = "10000/minute"

from datetime import date, datetime, time, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldops.auth.security import create_access_token
from fieldops.db import Base, get_db
from fieldops.main import app
from fieldops.models.models import EmployeeProfile, Role, Site, User
from fieldops.services import interventions as svc
from fieldops.services.clock import FixedClock, get_clock


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 7, 0, tzinfo=timezone.utc))


@pytest.fixture
def client(session_factory, clock):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(username: str, *roles: str, manager: User = None) -> User:
        role_objs = []
        for name in roles:
            role = db.query(Role).filter(Role.name == name).first()
            if role is None:
                role = Role(name=name)
                db.add(role)
            role_objs.append(role)
        user = User(username=username, email=f"{username}@example.com", roles=role_objs)
        db.add(user)
        db.flush()
        if manager is not None:
            db.add(EmployeeProfile(user_id=user.id, first_name=username, manager_user_id=manager.id))
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def supervisor(make_user):
    return make_user("sam.supervisor", "supervisor")


@pytest.fixture
def agent(make_user, supervisor):
    return make_user("alex.agent", "agent", manager=supervisor)


@pytest.fixture
def other_agent(make_user):
    return make_user("robin.agent", "agent")


@pytest.fixture
def admin(make_user):
    return make_user("ada.admin", "admin")


@pytest.fixture
def site(db):
    site = Site(name="Tower A", address="1 Main St", lat=45.0, lng=-73.0, radius_m=50, timezone="UTC")
    db.add(site)
    db.commit()
    db.refresh(site)
    return site


@pytest.fixture
def make_intervention(db, clock, site, supervisor):
    def _make(
        agents,
        scheduled_date: date = date(2024, 6, 1),
        start: time = time(8, 0),
        end: time = time(10, 0),
        code: str = None,
        target_site: Site = None,
    ):
        return svc.create_intervention(
            db,
            clock,
            site_id=(target_site or site).id,
            scheduled_date=scheduled_date,
            scheduled_start_time=start,
            scheduled_end_time=end,
            assigned_agent_ids=[a.id for a in agents],
            intervention_code=code,
            created_by=supervisor.id,
        )

    return _make


@pytest.fixture
def auth():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}

    return _headers
