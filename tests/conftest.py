import os
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")

from hallbook.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from hallbook.auth import get_password_hash  # noqa: E402
from hallbook.database import Base, SessionLocal, engine  # noqa: E402
from hallbook.identity import Principal  # noqa: E402
from hallbook.models import Hall, RegistrationStatus, RoleEnum, User  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.halls.app import app as halls_app  # noqa: E402
from services.halls.app import hall_status_cache  # noqa: E402
from services.notifications.app import app as notifications_app  # noqa: E402
from services.users.app import app as users_app  # noqa: E402

PASSWORD = "Passw0rd!"


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    hall_status_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def users_client() -> Generator[TestClient, None, None]:
    with TestClient(users_app) as client:
        yield client


@pytest.fixture()
def halls_client() -> Generator[TestClient, None, None]:
    with TestClient(halls_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


@pytest.fixture()
def notifications_client() -> Generator[TestClient, None, None]:
    with TestClient(notifications_app) as client:
        yield client


@pytest.fixture()
def make_user(db_session) -> Callable[..., Principal]:
    """Insert a user row directly and return its principal."""

    counter = {"n": 0}

    def _make(
        role: RoleEnum = RoleEnum.FACULTY,
        registration_status: RegistrationStatus = RegistrationStatus.APPROVED,
        is_active: bool = True,
        email: str = "",
    ) -> Principal:
        counter["n"] += 1
        user = User(
            name=f"User {counter['n']}",
            email=email or f"user{counter['n']}@campus.edu",
            hashed_password=get_password_hash(PASSWORD),
            role=role,
            registration_status=registration_status,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return Principal.from_user(user)

    return _make


@pytest.fixture()
def make_hall(db_session) -> Callable[..., Hall]:
    counter = {"n": 0}

    def _make(capacity: int = 100, **fields) -> Hall:
        counter["n"] += 1
        hall = Hall(name=fields.pop("name", f"Hall {counter['n']}"), capacity=capacity, location="Main Block", **fields)
        db_session.add(hall)
        db_session.commit()
        db_session.refresh(hall)
        return hall

    return _make
