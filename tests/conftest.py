"""
Shared test fixtures.

The `client` fixture wires the FastAPI app to:
  • an in-memory SQLite database (StaticPool, one connection for all threads)
  • an OTP gatekeeper and quota tracker driven by a manual clock
  • a recording SMS sender (no provider calls)
"""

from __future__ import annotations

import datetime as dt
import re

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app, get_db, get_otp_gatekeeper, get_quota_tracker
from app.models import Base
from app.otp import OtpGatekeeper
from app.quota import QuotaTracker
from app.rate_limit import limiter
from app.sms import SmsSendError


# ── Helpers ────────────────────────────────────────────────────────────────


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, utc: dt.datetime | None = None) -> None:
        self._t = 1_000.0
        self._utc = utc or dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.timezone.utc)

    def now(self) -> float:
        return self._t

    def utcnow(self) -> dt.datetime:
        return self._utc

    def advance(self, seconds: float) -> None:
        self._t += float(seconds)
        self._utc += dt.timedelta(seconds=seconds)

    def set_utcnow(self, value: dt.datetime) -> None:
        self._utc = value


class RecordingSender:
    """SMS sender double; keeps every message and can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def __call__(self, *, to_phone: str, text: str) -> str:
        if self.fail:
            raise SmsSendError("provider down")
        self.sent.append((to_phone, text))
        return f"msg-{len(self.sent)}"

    def last_code(self, phone: str) -> str:
        for to, text in reversed(self.sent):
            if to == phone:
                m = re.search(r"code is: (\d+)", text)
                assert m, text
                return m.group(1)
        raise AssertionError(f"no SMS sent to {phone}")


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture()
def gatekeeper(clock, sender) -> OtpGatekeeper:
    return OtpGatekeeper(sender=sender, clock=clock)


@pytest.fixture()
def tracker(clock) -> QuotaTracker:
    return QuotaTracker(clock=clock)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def client(session_factory, gatekeeper, tracker):
    def _get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_otp_gatekeeper] = lambda: gatekeeper
    app.dependency_overrides[get_quota_tracker] = lambda: tracker
    limiter.reset()

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
    limiter.reset()


# ── API helpers ────────────────────────────────────────────────────────────


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def register(client: TestClient, *, email: str, role: str = "guest", name: str = "Test User") -> dict:
    resp = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": "secret123", "city": "Chennai", "role": role},
    )
    assert resp.status_code == 201, resp.text
    # Each helper caller picks its identity through the bearer header.
    client.cookies.clear()
    return resp.json()


PROPERTY_PAYLOAD = {
    "title": "Sunny two bedroom flat",
    "description": "A bright and airy flat close to the metro with a balcony and a fully fitted kitchen.",
    "city": "Chennai",
    "address": "12 Beach Road",
    "rent_type": "entire_property",
    "rent_amount": 15000,
    "coordinates": {"latitude": 13.08, "longitude": 80.27},
    "max_guests": 4,
    "bedrooms": 2,
    "amenities": ["WiFi", "Parking"],
    "images": [],
}
