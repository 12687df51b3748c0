import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EXPIRY_WORKER_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-length-for-hs256"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from parking_reservations import crud, models, schemas
from parking_reservations.database import Base, SessionLocal, engine
from parking_reservations.main import app
from parking_reservations.security import create_access_token, hash_password

# Fixed clock used by service-level tests; far enough ahead that HTTP tests
# built on it are never "in the past".
BASE = datetime(2030, 6, 1, 9, 0)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def make_user(db, email, name="Test User", role=models.UserRole.USER, password="secret123"):
    return crud.create_user(
        db,
        schemas.UserCreate(name=name, email=email, password=password),
        hashed_password=hash_password(password),
        role=role,
    )


def make_spot(db, spot_number="A1", hourly_rate=7.5, spot_type=models.SpotType.STANDARD,
              location="Downtown Garage", features=None, coordinates=(27.7, 85.3)):
    return crud.create_spot(db, schemas.SpotCreate(
        spot_number=spot_number,
        location=location,
        address="1 Main Street",
        coordinates=schemas.Coordinates(lat=coordinates[0], lon=coordinates[1]),
        type=spot_type,
        hourly_rate=hourly_rate,
        features=features or [],
    ))


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def at(hours: float) -> datetime:
    return BASE + timedelta(hours=hours)


@pytest.fixture
def user(db):
    return make_user(db, "driver@example.com", name="Driver")


@pytest.fixture
def other_user(db):
    return make_user(db, "other@example.com", name="Other Driver")


@pytest.fixture
def admin(db):
    return make_user(db, "boss@example.com", name="Boss", role=models.UserRole.ADMIN)


@pytest.fixture
def spot(db):
    return make_spot(db)


@pytest.fixture
def vehicle():
    return schemas.VehicleInfo(license_plate="ba 1 pa 2345", make="Toyota", model="Corolla",
                               color="white")
