"""
test_lifecycle.py — SOS trigger / resolve orchestration end to end against
the in-memory store and a recording channel.

Covers:
    • Trigger: validation, no-contacts, fan-out, persisted ledger, defaults
    • Tracking code clash handling
    • Resolve: single transition, primary-only notification, not found
    • Duplicate-trigger policy via the idempotency cache
    • Cancellation shielding and shutdown draining

Run with:
    pytest tests/test_lifecycle.py -v
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import pytest

from backend.app.core import cache as cache_module
from backend.app.core.errors import (
    ConflictError,
    NoContactsError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from backend.app.emergency.dispatcher import DeliveryDispatcher
from backend.app.emergency.lifecycle import POLICY_IDEMPOTENCY_KEY, AlertLifecycle
from backend.app.emergency.models import (
    AlertStatus,
    AlertType,
    DeliveryStatus,
    Location,
)

from tests.conftest import RecordingChannel, RecordingSleep, make_contact

BANGALORE = Location(lat=12.9, lng=77.6)
ANN_PHONE = "9876543210"
BOB_PHONE = "9123456780"


async def _save_ann_and_bob(lifecycle: AlertLifecycle, owner_id: str = "u1") -> None:
    await lifecycle.save_contacts(owner_id, [
        make_contact("Ann", ANN_PHONE, is_primary=True),
        make_contact("Bob", BOB_PHONE),
    ])


class FakeCache:
    """In-process stand-in for the Redis helpers used by the lifecycle."""

    def __init__(self, available: bool = True):
        self.available = available
        self.data: Dict[str, Any] = {}

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> Optional[bool]:
        if not self.available:
            return None
        if key in self.data:
            return False
        self.data[key] = value
        return True

    async def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        self.data.pop(key, None)
        return True


@pytest.fixture
def fake_cache(monkeypatch) -> FakeCache:
    fake = FakeCache()
    monkeypatch.setattr(cache_module, "cache_set_if_absent", fake.set_if_absent)
    monkeypatch.setattr(cache_module, "cache_get", fake.get)
    monkeypatch.setattr(cache_module, "cache_set", fake.set)
    monkeypatch.setattr(cache_module, "cache_delete", fake.delete)
    return fake


class GatedChannel(RecordingChannel):
    """Blocks every send until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, recipient_phone, body):
        self.started.set()
        await self.release.wait()
        return await super().send(recipient_phone, body)


# ═══════════════════════════════════════════════════════════════════════════
# Trigger
# ═══════════════════════════════════════════════════════════════════════════

class TestTrigger:

    @pytest.mark.asyncio
    async def test_owner_without_contacts_sends_nothing(self, lifecycle, channel, store):
        with pytest.raises(NoContactsError):
            await lifecycle.trigger_sos("u1", BANGALORE)
        assert channel.sent == []
        assert await store.count_alerts("u1") == 0

    @pytest.mark.asyncio
    async def test_empty_contact_list_sends_nothing(self, lifecycle, channel):
        await lifecycle.save_contacts("u1", [])
        with pytest.raises(NoContactsError):
            await lifecycle.trigger_sos("u1", BANGALORE)
        assert channel.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("location", [None, Location(lat=None, lng=77.6), Location(lat=12.9, lng=None)])
    async def test_missing_coordinates_rejected(self, lifecycle, channel, location):
        await _save_ann_and_bob(lifecycle)
        with pytest.raises(ValidationError):
            await lifecycle.trigger_sos("u1", location)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_missing_owner_rejected(self, lifecycle):
        with pytest.raises(ValidationError):
            await lifecycle.trigger_sos("", BANGALORE)

    @pytest.mark.asyncio
    async def test_notifies_every_contact_and_persists_once(self, lifecycle, channel, store):
        await _save_ann_and_bob(lifecycle)

        summary = await lifecycle.trigger_sos(
            "u1", BANGALORE, AlertType.MEDICAL, "Fell down", "Priya",
        )

        assert summary.total == 2
        assert summary.sent == 2
        assert summary.failed == 0
        assert summary.map_link == "https://www.google.com/maps?q=12.9,77.6"
        assert summary.provider_configured is True
        assert channel.recipients == [ANN_PHONE, BOB_PHONE]
        assert all("Priya has triggered" in body for _, body in channel.sent)
        assert all(summary.tracking_code in body for _, body in channel.sent)

        stored = await store.get_alert_by_tracking_code(summary.tracking_code)
        assert stored.id == summary.alert_id
        assert stored.status == AlertStatus.ACTIVE
        assert stored.alert_type == AlertType.MEDICAL
        assert [r.name for r in stored.delivery_ledger] == ["Ann", "Bob"]
        assert await store.count_alerts("u1") == 1

    @pytest.mark.asyncio
    async def test_defaults_applied(self, lifecycle, channel, store):
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)

        stored = await store.get_alert_by_tracking_code(summary.tracking_code)
        assert stored.message == "Emergency SOS Alert"
        assert stored.owner_name == "User"
        assert stored.alert_type == AlertType.SOS
        assert "Someone has triggered" in channel.sent[0][1]
        assert "*Alert Type:* SOS" in channel.sent[0][1]

    @pytest.mark.asyncio
    async def test_partial_failure_still_succeeds(self, store, sleep):
        channel = RecordingChannel(failing={BOB_PHONE})
        lifecycle = AlertLifecycle(store, DeliveryDispatcher(channel, sleep=sleep))
        await _save_ann_and_bob(lifecycle)

        summary = await lifecycle.trigger_sos("u1", BANGALORE)

        assert (summary.sent, summary.failed, summary.total) == (1, 1, 2)
        stored = await store.get_alert_by_tracking_code(summary.tracking_code)
        assert [r.delivery_status for r in stored.delivery_ledger] == [
            DeliveryStatus.SENT, DeliveryStatus.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_simulated_mode_reported(self, store, sleep):
        lifecycle = AlertLifecycle(
            store, DeliveryDispatcher(RecordingChannel(configured=False), sleep=sleep),
        )
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        assert summary.provider_configured is False
        assert summary.sent == 2

    @pytest.mark.asyncio
    async def test_each_trigger_gets_its_own_code(self, lifecycle, store):
        await _save_ann_and_bob(lifecycle)
        first = await lifecycle.trigger_sos("u1", BANGALORE)
        second = await lifecycle.trigger_sos("u1", BANGALORE)
        assert first.tracking_code != second.tracking_code
        assert await store.count_alerts("u1") == 2


    @pytest.mark.asyncio
    async def test_persistence_failure_logs_ledger(self, lifecycle, channel, store, monkeypatch, caplog):
        await _save_ann_and_bob(lifecycle)

        async def broken(alert):
            raise PersistenceError("create_alert", "connection reset")

        monkeypatch.setattr(store, "create_alert", broken)

        with caplog.at_level(logging.ERROR, logger="backend.app.emergency.lifecycle"):
            with pytest.raises(PersistenceError):
                await lifecycle.trigger_sos("u1", BANGALORE)

        assert channel.recipients == [ANN_PHONE, BOB_PHONE]
        [record] = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert "not persisted" in record.getMessage()
        assert record.tracking_code in channel.sent[0][1]
        assert [entry["phone"] for entry in record.delivery_ledger] == [ANN_PHONE, BOB_PHONE]
        assert all(entry["delivery_status"] == "sent" for entry in record.delivery_ledger)


class TestTrackingCodeClash:

    @pytest.mark.asyncio
    async def test_regenerates_once(self, store, dispatcher, channel):
        codes = iter(["EMERGENCY-A-00001", "EMERGENCY-A-00001", "EMERGENCY-A-00002"])
        lifecycle = AlertLifecycle(store, dispatcher, track_id_factory=lambda: next(codes))
        await _save_ann_and_bob(lifecycle)

        first = await lifecycle.trigger_sos("u1", BANGALORE)
        second = await lifecycle.trigger_sos("u1", BANGALORE)

        assert first.tracking_code == "EMERGENCY-A-00001"
        assert second.tracking_code == "EMERGENCY-A-00002"

    @pytest.mark.asyncio
    async def test_second_clash_is_conflict_without_sends(self, store, dispatcher, channel):
        lifecycle = AlertLifecycle(store, dispatcher, track_id_factory=lambda: "EMERGENCY-A-00001")
        await _save_ann_and_bob(lifecycle)
        await lifecycle.trigger_sos("u1", BANGALORE)
        sends_before = len(channel.sent)

        with pytest.raises(ConflictError):
            await lifecycle.trigger_sos("u1", BANGALORE)
        assert len(channel.sent) == sends_before


# ═══════════════════════════════════════════════════════════════════════════
# Resolve
# ═══════════════════════════════════════════════════════════════════════════

class TestResolve:

    @pytest.mark.asyncio
    async def test_resolution_goes_to_primary_only(self, lifecycle, channel):
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        channel.sent.clear()

        result = await lifecycle.resolve(summary.alert_id)

        assert result.transitioned is True
        assert result.alert.status == AlertStatus.RESOLVED
        assert result.alert.resolved_at is not None
        assert channel.recipients == [ANN_PHONE]
        assert "*EMERGENCY RESOLVED*" in channel.sent[0][1]
        assert summary.tracking_code in channel.sent[0][1]
        assert result.notifications.stats() == {"sent": 1, "failed": 0, "total": 1}

    @pytest.mark.asyncio
    async def test_second_resolve_sends_nothing(self, lifecycle, channel):
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        first = await lifecycle.resolve(summary.alert_id)
        channel.sent.clear()

        second = await lifecycle.resolve(summary.alert_id)

        assert second.transitioned is False
        assert second.alert.status == AlertStatus.RESOLVED
        assert second.alert.resolved_at == first.alert.resolved_at
        assert second.notifications.total == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_unknown_alert_not_found_without_sends(self, lifecycle, channel):
        with pytest.raises(NotFoundError):
            await lifecycle.resolve(4242)
        assert channel.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("alert_id", ["abc", "", None])
    async def test_malformed_id_not_found(self, lifecycle, channel, alert_id):
        with pytest.raises(NotFoundError):
            await lifecycle.resolve(alert_id)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_current_primary_is_notified(self, lifecycle, channel):
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        await lifecycle.save_contacts("u1", [
            make_contact("Ann", ANN_PHONE),
            make_contact("Bob", BOB_PHONE, is_primary=True),
        ])
        channel.sent.clear()

        await lifecycle.resolve(summary.alert_id)

        assert channel.recipients == [BOB_PHONE]

    @pytest.mark.asyncio
    async def test_no_primary_contacts(self, lifecycle, channel):
        await lifecycle.save_contacts("u1", [make_contact("Bob", BOB_PHONE)])
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        channel.sent.clear()

        result = await lifecycle.resolve(summary.alert_id)

        assert result.transitioned is True
        assert result.notifications.total == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_failed_notification_does_not_fail_resolve(self, store, sleep):
        channel = RecordingChannel(failing={ANN_PHONE})
        lifecycle = AlertLifecycle(store, DeliveryDispatcher(channel, sleep=sleep))
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)

        result = await lifecycle.resolve(summary.alert_id)

        assert result.alert.status == AlertStatus.RESOLVED
        assert result.notifications.failed_count == 1

    @pytest.mark.asyncio
    async def test_contact_lookup_error_degrades_to_no_sends(self, lifecycle, channel, store, monkeypatch):
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        channel.sent.clear()

        async def broken(owner_id):
            raise RuntimeError("store offline")

        monkeypatch.setattr(store, "get_contact_list", broken)
        result = await lifecycle.resolve(summary.alert_id)

        assert result.transitioned is True
        assert result.notifications.total == 0
        assert channel.sent == []


# ═══════════════════════════════════════════════════════════════════════════
# Thin operations
# ═══════════════════════════════════════════════════════════════════════════

class TestContactsAndQueries:

    @pytest.mark.asyncio
    async def test_save_and_get_contacts(self, lifecycle):
        assert await lifecycle.get_contacts("u1") == []
        assert await lifecycle.save_contacts("u1", [make_contact("Ann", ANN_PHONE)]) == 1
        assert [c.name for c in await lifecycle.get_contacts("u1")] == ["Ann"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, phone", [("", ANN_PHONE), ("Ann", "")])
    async def test_contact_needs_name_and_phone(self, lifecycle, name, phone):
        with pytest.raises(ValidationError):
            await lifecycle.save_contacts("u1", [make_contact(name, phone)])

    @pytest.mark.asyncio
    async def test_track(self, lifecycle):
        await _save_ann_and_bob(lifecycle)
        summary = await lifecycle.trigger_sos("u1", BANGALORE)
        assert (await lifecycle.track(summary.tracking_code)).id == summary.alert_id
        with pytest.raises(NotFoundError):
            await lifecycle.track("EMERGENCY-NOPE-00000")

    @pytest.mark.asyncio
    async def test_list_alerts(self, lifecycle):
        await _save_ann_and_bob(lifecycle)
        first = await lifecycle.trigger_sos("u1", BANGALORE)
        second = await lifecycle.trigger_sos("u1", BANGALORE)

        alerts = await lifecycle.list_alerts("u1")
        assert {a.tracking_code for a in alerts} == {first.tracking_code, second.tracking_code}
        assert len(await lifecycle.list_alerts("u1", limit=1)) == 1
        with pytest.raises(ValidationError):
            await lifecycle.list_alerts("u1", limit=0)

    @pytest.mark.asyncio
    async def test_stats(self, lifecycle):
        await _save_ann_and_bob(lifecycle)
        first = await lifecycle.trigger_sos("u1", BANGALORE)
        await lifecycle.trigger_sos("u1", BANGALORE)
        await lifecycle.resolve(first.alert_id)

        assert await lifecycle.stats("u1") == {
            "total_alerts": 2,
            "active_alerts": 1,
            "resolved_alerts": 1,
            "emergency_contacts": 2,
        }
        assert (await lifecycle.stats("nobody"))["emergency_contacts"] == 0

    def test_unknown_policy_rejected(self, store, dispatcher):
        with pytest.raises(ValueError):
            AlertLifecycle(store, dispatcher, duplicate_policy="drop")


# ═══════════════════════════════════════════════════════════════════════════
# Duplicate-trigger policy
# ═══════════════════════════════════════════════════════════════════════════

class TestIdempotency:

    @pytest.fixture
    def keyed(self, store, dispatcher) -> AlertLifecycle:
        return AlertLifecycle(store, dispatcher, duplicate_policy=POLICY_IDEMPOTENCY_KEY)

    @pytest.mark.asyncio
    async def test_replay_returns_same_summary_without_sends(self, keyed, channel, store, fake_cache):
        await _save_ann_and_bob(keyed)
        first = await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        sends = len(channel.sent)

        second = await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")

        assert second == first
        assert len(channel.sent) == sends
        assert await store.count_alerts("u1") == 1

    @pytest.mark.asyncio
    async def test_different_keys_dispatch_separately(self, keyed, store, fake_cache):
        await _save_ann_and_bob(keyed)
        await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k2")
        await keyed.trigger_sos("u1", BANGALORE)
        assert await store.count_alerts("u1") == 3

    @pytest.mark.asyncio
    async def test_in_progress_duplicate_conflicts(self, keyed, channel, fake_cache):
        await _save_ann_and_bob(keyed)
        fake_cache.data["sos:idem:u1:k1"] = {"state": "pending"}

        with pytest.raises(ConflictError):
            await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        assert channel.sent == []
        assert fake_cache.data["sos:idem:u1:k1"] == {"state": "pending"}

    @pytest.mark.asyncio
    async def test_failed_trigger_releases_key(self, keyed, fake_cache):
        with pytest.raises(NoContactsError):
            await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        assert "sos:idem:u1:k1" not in fake_cache.data

    @pytest.mark.asyncio
    async def test_cancelled_caller_keeps_key_and_retry_replays(self, store, fake_cache):
        channel = GatedChannel()
        keyed = AlertLifecycle(
            store, DeliveryDispatcher(channel, sleep=RecordingSleep()),
            duplicate_policy=POLICY_IDEMPOTENCY_KEY,
        )
        await _save_ann_and_bob(keyed)

        caller = asyncio.ensure_future(
            keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        )
        await channel.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        assert fake_cache.data["sos:idem:u1:k1"] == {"state": "pending"}

        with pytest.raises(ConflictError):
            await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")

        channel.release.set()
        await keyed.shutdown(timeout=5)
        cached = fake_cache.data["sos:idem:u1:k1"]
        assert cached.get("state") != "pending"

        retry = await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")

        assert retry.tracking_code == cached["tracking_code"]
        assert channel.recipients == [ANN_PHONE, BOB_PHONE]
        assert await store.count_alerts("u1") == 1

    @pytest.mark.asyncio
    async def test_dispatch_cancelled_at_shutdown_releases_key(self, store, fake_cache):
        channel = GatedChannel()
        keyed = AlertLifecycle(
            store, DeliveryDispatcher(channel, sleep=RecordingSleep()),
            duplicate_policy=POLICY_IDEMPOTENCY_KEY,
        )
        await _save_ann_and_bob(keyed)

        caller = asyncio.ensure_future(
            keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        )
        await channel.started.wait()
        await keyed.shutdown(timeout=0.01)

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert "sos:idem:u1:k1" not in fake_cache.data

    @pytest.mark.asyncio
    async def test_cache_unavailable_proceeds(self, keyed, store, fake_cache):
        fake_cache.available = False
        await _save_ann_and_bob(keyed)
        await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        await keyed.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        assert await store.count_alerts("u1") == 2

    @pytest.mark.asyncio
    async def test_allow_policy_ignores_key(self, lifecycle, store, fake_cache):
        await _save_ann_and_bob(lifecycle)
        await lifecycle.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        await lifecycle.trigger_sos("u1", BANGALORE, idempotency_key="k1")
        assert await store.count_alerts("u1") == 2
        assert fake_cache.data == {}


# ═══════════════════════════════════════════════════════════════════════════
# Cancellation & shutdown
# ═══════════════════════════════════════════════════════════════════════════

class TestShutdown:

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_dispatch(self, store):
        channel = GatedChannel()
        lifecycle = AlertLifecycle(store, DeliveryDispatcher(channel, sleep=RecordingSleep()))
        await _save_ann_and_bob(lifecycle)

        caller = asyncio.ensure_future(lifecycle.trigger_sos("u1", BANGALORE))
        await channel.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert lifecycle.inflight_count == 1
        channel.release.set()
        await lifecycle.shutdown(timeout=5)

        assert channel.recipients == [ANN_PHONE, BOB_PHONE]
        assert await store.count_alerts("u1") == 1
        assert lifecycle.inflight_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_after_timeout(self, store):
        channel = GatedChannel()
        lifecycle = AlertLifecycle(store, DeliveryDispatcher(channel, sleep=RecordingSleep()))
        await _save_ann_and_bob(lifecycle)

        caller = asyncio.ensure_future(lifecycle.trigger_sos("u1", BANGALORE))
        await channel.started.wait()

        await lifecycle.shutdown(timeout=0.01)

        assert lifecycle.inflight_count == 0
        with pytest.raises(asyncio.CancelledError):
            await caller
        assert await store.count_alerts("u1") == 0

    @pytest.mark.asyncio
    async def test_shutdown_idle_is_noop(self, lifecycle):
        await lifecycle.shutdown(timeout=0.01)
        assert lifecycle.inflight_count == 0
