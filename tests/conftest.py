"""
Shared fixtures: in-memory SQLite store, recording channel, no-op pacing.

DATABASE_URL is pointed at SQLite before any backend module is imported so
the module-level engine never needs a PostgreSQL server.
"""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/15")

from typing import List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from backend.app.core.database import Base, build_engine, build_session_factory
from backend.app.emergency.dispatcher import DeliveryDispatcher
from backend.app.emergency.lifecycle import AlertLifecycle
from backend.app.emergency.models import Contact, DeliveryStatus, SendOutcome
from backend.app.emergency.store import AlertStore


class RecordingChannel:
    """NotificationChannel double: records every send, fails chosen phones."""

    def __init__(self, *, configured: bool = True, failing: Optional[Set[str]] = None):
        self.configured = configured
        self.failing = failing or set()
        self.sent: List[Tuple[str, str]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def send(self, recipient_phone: str, body: str) -> SendOutcome:
        self.sent.append((recipient_phone, body))
        if recipient_phone in self.failing:
            return SendOutcome(status=DeliveryStatus.FAILED, error="Invalid 'To' number")
        if not self.configured:
            return SendOutcome(status=DeliveryStatus.SIMULATED, provider_id=f"SIM{len(self.sent)}")
        return SendOutcome(status=DeliveryStatus.SENT, provider_id=f"SM{len(self.sent):04d}")

    @property
    def recipients(self) -> List[str]:
        return [phone for phone, _ in self.sent]


class RecordingSleep:
    """Awaitable sleep replacement that only records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_contact(name: str = "Ann", phone: str = "9876543210", *, is_primary: bool = False) -> Contact:
    return Contact(name=name, phone=phone, relationship="family", is_primary=is_primary)


@pytest_asyncio.fixture
async def store():
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield AlertStore(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def dispatcher(channel, sleep) -> DeliveryDispatcher:
    return DeliveryDispatcher(channel, pacing_seconds=1.0, sleep=sleep)


@pytest.fixture
def lifecycle(store, dispatcher) -> AlertLifecycle:
    return AlertLifecycle(store, dispatcher)
