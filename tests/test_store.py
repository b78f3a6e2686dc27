"""
test_store.py — AlertStore against in-memory SQLite (aiosqlite).

Run with:
    pytest tests/test_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from backend.app.core.errors import ConflictError, NotFoundError, PersistenceError
from backend.app.emergency.models import (
    Alert,
    AlertStatus,
    AlertType,
    DeliveryRecord,
    DeliveryStatus,
    Location,
)
from backend.app.emergency.store import AlertStore

from tests.conftest import make_contact

T0 = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)


def _make_alert(
    code: str = "EMERGENCY-AAA-00001",
    owner_id: str = "u1",
    created_at: datetime = T0,
) -> Alert:
    return Alert(
        owner_id=owner_id,
        tracking_code=code,
        location=Location(lat=12.9, lng=77.6),
        message="Emergency SOS Alert",
        alert_type=AlertType.SOS,
        delivery_ledger=(
            DeliveryRecord(
                name="Ann", phone="9876543210",
                delivery_status=DeliveryStatus.SENT,
                provider_message_id="SM1", sent_at=created_at,
            ),
        ),
        owner_name="User",
        created_at=created_at,
    )


class TestContactLists:

    @pytest.mark.asyncio
    async def test_missing_owner_returns_none(self, store):
        assert await store.get_contact_list("nobody") is None

    @pytest.mark.asyncio
    async def test_save_then_read_preserves_order_and_flags(self, store):
        contacts = [make_contact("Ann", "1", is_primary=True), make_contact("Bob", "2")]
        saved = await store.save_contact_list("u1", contacts)

        assert len(saved) == 2
        loaded = await store.get_contact_list("u1")
        assert [c.name for c in loaded.contacts] == ["Ann", "Bob"]
        assert [c.name for c in loaded.primary_contacts] == ["Ann"]
        assert loaded.contacts[0].relationship == "family"

    @pytest.mark.asyncio
    async def test_upsert_replaces_and_bumps_updated_at(self, store):
        first = await store.save_contact_list("u1", [make_contact("Ann", "1")])
        await asyncio.sleep(0.01)
        second = await store.save_contact_list("u1", [make_contact("Cat", "3")])

        assert [c.name for c in second.contacts] == ["Cat"]
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_empty_list_is_stored(self, store):
        await store.save_contact_list("u1", [])
        loaded = await store.get_contact_list("u1")
        assert loaded is not None
        assert len(loaded) == 0


class TestAlerts:

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_round_trips(self, store):
        created = await store.create_alert(_make_alert())
        assert created.id is not None

        loaded = await store.get_alert_by_id(created.id)
        assert loaded.tracking_code == "EMERGENCY-AAA-00001"
        assert loaded.status == AlertStatus.ACTIVE
        assert loaded.location == Location(lat=12.9, lng=77.6)
        assert loaded.created_at == T0
        assert loaded.resolved_at is None
        assert loaded.delivery_ledger[0].provider_message_id == "SM1"
        assert loaded.delivery_ledger[0].delivery_status == DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_duplicate_tracking_code_conflicts(self, store):
        await store.create_alert(_make_alert())
        with pytest.raises(ConflictError):
            await store.create_alert(_make_alert())

    @pytest.mark.asyncio
    async def test_tracking_code_exists(self, store):
        assert not await store.tracking_code_exists("EMERGENCY-AAA-00001")
        await store.create_alert(_make_alert())
        assert await store.tracking_code_exists("EMERGENCY-AAA-00001")

    @pytest.mark.asyncio
    async def test_lookup_by_tracking_code(self, store):
        await store.create_alert(_make_alert())
        assert (await store.get_alert_by_tracking_code("EMERGENCY-AAA-00001")).owner_id == "u1"
        assert await store.get_alert_by_tracking_code("EMERGENCY-NOPE-00000") is None

    @pytest.mark.asyncio
    async def test_unknown_id_returns_none(self, store):
        assert await store.get_alert_by_id(9999) is None

    @pytest.mark.asyncio
    async def test_owner_alerts_newest_first_and_limited(self, store):
        for i in range(5):
            await store.create_alert(
                _make_alert(code=f"EMERGENCY-AAA-0000{i}", created_at=T0 + timedelta(minutes=i))
            )
        await store.create_alert(_make_alert(code="EMERGENCY-BBB-00000", owner_id="u2"))

        alerts = await store.get_alerts_by_owner("u1", limit=3)
        assert [a.tracking_code for a in alerts] == [
            "EMERGENCY-AAA-00004", "EMERGENCY-AAA-00003", "EMERGENCY-AAA-00002",
        ]
        assert len(await store.get_alerts_by_owner("u1")) == 5


class TestResolve:

    @pytest.mark.asyncio
    async def test_resolve_transitions_once(self, store):
        created = await store.create_alert(_make_alert())

        resolved, transitioned = await store.resolve_alert(created.id)
        assert transitioned is True
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_at is not None

        again, transitioned_again = await store.resolve_alert(created.id)
        assert transitioned_again is False
        assert again.status == AlertStatus.RESOLVED
        assert again.resolved_at == resolved.resolved_at

    @pytest.mark.asyncio
    async def test_unknown_id_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.resolve_alert(12345)


class TestCounts:

    @pytest.mark.asyncio
    async def test_count_by_status(self, store):
        a = await store.create_alert(_make_alert(code="EMERGENCY-AAA-00001"))
        await store.create_alert(_make_alert(code="EMERGENCY-AAA-00002"))
        await store.create_alert(_make_alert(code="EMERGENCY-BBB-00001", owner_id="u2"))
        await store.resolve_alert(a.id)

        assert await store.count_alerts("u1") == 2
        assert await store.count_alerts("u1", AlertStatus.ACTIVE) == 1
        assert await store.count_alerts("u1", AlertStatus.RESOLVED) == 1
        assert await store.count_alerts("nobody") == 0


class TestFailures:

    @pytest.mark.asyncio
    async def test_driver_errors_become_persistence_errors(self):
        class BrokenSession:
            async def __aenter__(self):
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))

            async def __aexit__(self, *exc):
                return False

        broken = AlertStore(lambda: BrokenSession())
        with pytest.raises(PersistenceError):
            await broken.get_contact_list("u1")
