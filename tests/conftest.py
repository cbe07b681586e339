# tests/conftest.py
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.db import Base, get_db
from marketplace.main import app
from marketplace.api.routes import get_geocoder
from marketplace import crud


class FakeGeocoder:
    """In-memory stand-in for ZipGeocoder.

    ``places`` maps ZIP -> (lat, lng); ZIPs in ``failing`` raise instead of
    answering. Every lookup is recorded in ``calls``.
    """

    def __init__(self, places=None, failing=()):
        self.places = dict(places or {})
        self.failing = set(failing)
        self.calls = []
        self.reverse = {}

    async def coordinates_for_zip(self, zip_code):
        self.calls.append(zip_code)
        if zip_code in self.failing:
            raise ConnectionError(f"lookup failed for {zip_code}")
        return self.places.get(zip_code)

    async def place_for_zip(self, zip_code):
        coords = await self.coordinates_for_zip(zip_code)
        if coords is None:
            return None
        return {"city": f"City {zip_code}", "state": "TX", "lat": coords[0], "lng": coords[1]}

    async def zip_for_coordinates(self, lat, lng):
        return self.reverse.get((lat, lng))


DALLAS = (32.7787, -96.8217)


@pytest.fixture
def make_geocoder():
    return FakeGeocoder


@pytest.fixture
def geocoder():
    return FakeGeocoder({
        "75201": DALLAS,
        "75202": (DALLAS[0] + 0.05, DALLAS[1]),
        "75204": (DALLAS[0] + 0.1, DALLAS[1]),
        "75290": (DALLAS[0] + 3.0, DALLAS[1]),
    })


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def client(db, geocoder):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_geocoder] = lambda: geocoder
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def users(db):
    seller = crud.upsert_user(db, "seller-1", {"email": "sam@grace.org", "name": "Sam", "zip_code": "75201"})
    buyer = crud.upsert_user(db, "buyer-1", {"email": "bea@hope.org", "name": "Bea", "zip_code": "75202"})
    return seller, buyer
