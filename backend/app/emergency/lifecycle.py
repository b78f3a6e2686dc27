"""
lifecycle.py — SOS trigger / resolve orchestration.

═══════════════════════════════════════════════════════════════════════════
TRIGGER FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │ 1. Validate location │  missing lat/lng → ValidationError
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 2. Load contacts     │  none / empty → NoContactsError (zero sends)
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 3. Tracking code     │  checked against the store, one regeneration
    └─────────┬────────────┘  on clash, second clash → ConflictError
              ▼
    ┌──────────────────────┐
    │ 4. Compose + dispatch│  paced, sequential, every contact
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 5. Persist once      │  Alert(status=active, ledger=records)
    └─────────┬────────────┘
              ▼
         TriggerSummary

Steps 3-5 run in a task that is shielded from the caller: a dropped HTTP
request does not cancel a half-finished dispatch. In-flight tasks are
tracked so shutdown() can drain them (or cancel them at process exit).
The same task records the idempotency outcome: it caches the summary on
success and releases the key on failure, whatever happened to the caller.

═══════════════════════════════════════════════════════════════════════════
RESOLVE FLOW
═══════════════════════════════════════════════════════════════════════════

    store.resolve_alert(id)            guarded active → resolved
        │
        ├── transitioned  → compose resolution, dispatch to the owner's
        │                   *current* primary contacts (best effort)
        └── already done  → no sends; first resolved_at kept

═══════════════════════════════════════════════════════════════════════════
DUPLICATE TRIGGERS
═══════════════════════════════════════════════════════════════════════════

    policy "allow"            every request dispatches (no dedupe)
    policy "idempotency_key"  requests with the same key for the same owner:
                                first       → claims key, dispatches
                                concurrent  → ConflictError
                                later       → cached summary replayed
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from backend.app.core import cache
from backend.app.core.errors import (
    ConflictError,
    EmergencyAPIError,
    NoContactsError,
    NotFoundError,
    ValidationError,
)
from backend.app.emergency.composer import (
    compose_alert_message,
    compose_resolution_message,
)
from backend.app.emergency.dispatcher import DeliveryDispatcher
from backend.app.emergency.models import (
    DEFAULT_OWNER_NAME,
    DEFAULT_STORED_MESSAGE,
    Alert,
    AlertStatus,
    AlertType,
    Contact,
    DispatchResult,
    Location,
    ResolutionResult,
    TriggerSummary,
)
from backend.app.emergency.store import AlertStore
from backend.app.emergency.track_id import generate_track_id

logger = logging.getLogger(__name__)

POLICY_ALLOW = "allow"
POLICY_IDEMPOTENCY_KEY = "idempotency_key"
DUPLICATE_POLICIES = (POLICY_ALLOW, POLICY_IDEMPOTENCY_KEY)

_PENDING = "pending"


def _idempotency_cache_key(owner_id: str, key: str) -> str:
    return f"sos:idem:{owner_id}:{key}"


class AlertLifecycle:
    """
    Orchestrates contacts, SOS triggers and resolution.

    Parameters
    ----------
    store : AlertStore
    dispatcher : DeliveryDispatcher
    duplicate_policy : str
        "allow" or "idempotency_key".
    idempotency_ttl : int
        Seconds a completed trigger summary stays replayable.
    """

    def __init__(
        self,
        store: AlertStore,
        dispatcher: DeliveryDispatcher,
        *,
        duplicate_policy: str = POLICY_ALLOW,
        idempotency_ttl: int = 86400,
        track_id_factory: Callable[[], str] = generate_track_id,
    ):
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(
                f"Unknown duplicate policy {duplicate_policy!r}; "
                f"expected one of {DUPLICATE_POLICIES}"
            )
        self.store = store
        self.dispatcher = dispatcher
        self.duplicate_policy = duplicate_policy
        self.idempotency_ttl = idempotency_ttl
        self._track_id_factory = track_id_factory
        self._inflight: Set[asyncio.Task] = set()

    @property
    def provider_configured(self) -> bool:
        return self.dispatcher.channel.is_configured

    # ═══════════════════════════════════════════════════════════════════
    # Contacts
    # ═══════════════════════════════════════════════════════════════════

    async def save_contacts(self, owner_id: str, contacts: Sequence[Contact]) -> int:
        """Upsert the owner's contact list; returns the number saved."""
        if not owner_id:
            raise ValidationError("owner_id is required", field="owner_id")
        for index, contact in enumerate(contacts):
            if not contact.name or not contact.phone:
                raise ValidationError(
                    "Each contact must have a name and phone number.",
                    field=f"contacts[{index}]",
                )
        saved = await self.store.save_contact_list(owner_id, contacts)
        return len(saved)

    async def get_contacts(self, owner_id: str) -> List[Contact]:
        contact_list = await self.store.get_contact_list(owner_id)
        return list(contact_list.contacts) if contact_list else []

    # ═══════════════════════════════════════════════════════════════════
    # Trigger
    # ═══════════════════════════════════════════════════════════════════

    async def trigger_sos(
        self,
        owner_id: str,
        location: Optional[Location],
        alert_type: Optional[AlertType] = None,
        message: Optional[str] = None,
        owner_name: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> TriggerSummary:
        """
        Raise an SOS and notify every emergency contact.

        Raises
        ------
        ValidationError
            owner_id or location coordinates missing.
        NoContactsError
            The owner has no saved contacts. Nothing is sent.
        ConflictError
            Tracking code clashed twice, or a duplicate idempotent request
            is still in progress.
        """
        if not owner_id:
            raise ValidationError("owner_id is required", field="owner_id")
        if location is None or location.lat is None or location.lng is None:
            raise ValidationError("location with lat and lng is required", field="location")

        use_key = self.duplicate_policy == POLICY_IDEMPOTENCY_KEY and bool(idempotency_key)
        cache_key = _idempotency_cache_key(owner_id, idempotency_key) if use_key else None

        if cache_key:
            replay = await self._claim_idempotency_key(cache_key, owner_id)
            if replay is not None:
                return replay

        try:
            contact_list = await self.store.get_contact_list(owner_id)
            if contact_list is None or len(contact_list) == 0:
                raise NoContactsError(owner_id)
        except BaseException:
            if cache_key:
                await cache.cache_delete(cache_key)
            raise

        # From here the task owns the key: a cancelled caller leaves it alone.
        task = asyncio.ensure_future(
            self._run_keyed_trigger(
                cache_key,
                owner_id,
                location,
                alert_type or AlertType.SOS,
                message,
                owner_name,
                tuple(contact_list.contacts),
            )
        )
        self._track(task)
        return await asyncio.shield(task)

    async def _run_keyed_trigger(self, cache_key: Optional[str], *args: Any) -> TriggerSummary:
        """Run the trigger, then cache its summary or release the key."""
        try:
            summary = await self._run_trigger(*args)
        except BaseException:
            if cache_key:
                await cache.cache_delete(cache_key)
            raise
        if cache_key:
            await cache.cache_set(cache_key, summary.to_dict(), ttl=self.idempotency_ttl)
        return summary

    async def _claim_idempotency_key(self, cache_key: str, owner_id: str) -> Optional[TriggerSummary]:
        """Claim the key; returns a cached summary when this is a replay."""
        claimed = await cache.cache_set_if_absent(
            cache_key, {"state": _PENDING}, ttl=self.idempotency_ttl,
        )
        if claimed is None:
            logger.warning(
                "Idempotency cache unavailable — dispatching without dedupe",
                extra={"owner_id": owner_id},
            )
            return None
        if claimed:
            return None

        existing: Optional[Dict[str, Any]] = await cache.cache_get(cache_key)
        if existing and existing.get("state") != _PENDING and "tracking_code" in existing:
            logger.info(
                "Replaying SOS summary for duplicate request",
                extra={"owner_id": owner_id, "tracking_code": existing["tracking_code"]},
            )
            return TriggerSummary.from_dict(existing)

        raise ConflictError(
            "An SOS with this Idempotency-Key is already being dispatched",
            owner_id=owner_id,
        )

    async def _reserve_tracking_code(self) -> str:
        """Generate a code not yet in the store; one regeneration allowed."""
        code = self._track_id_factory()
        if not await self.store.tracking_code_exists(code):
            return code

        logger.warning("Tracking code %s already taken — regenerating", code)
        retry = self._track_id_factory()
        if await self.store.tracking_code_exists(retry):
            raise ConflictError(
                "Could not generate a unique tracking code",
                attempted=[code, retry],
            )
        return retry

    async def _run_trigger(
        self,
        owner_id: str,
        location: Location,
        alert_type: AlertType,
        message: Optional[str],
        owner_name: Optional[str],
        contacts: Sequence[Contact],
    ) -> TriggerSummary:
        tracking_code = await self._reserve_tracking_code()
        created_at = datetime.now(timezone.utc)

        logger.info(
            "SOS triggered by %s — notifying %d contacts",
            owner_id, len(contacts),
            extra={
                "owner_id": owner_id,
                "tracking_code": tracking_code,
                "contact_count": len(contacts),
            },
        )

        body = compose_alert_message(
            owner_name, location, alert_type, message, tracking_code, created_at,
        )
        result = await self.dispatcher.dispatch(contacts, body, tracking_code=tracking_code)

        try:
            alert = await self.store.create_alert(
                Alert(
                    owner_id=owner_id,
                    tracking_code=tracking_code,
                    location=location,
                    message=message or DEFAULT_STORED_MESSAGE,
                    alert_type=alert_type,
                    status=AlertStatus.ACTIVE,
                    delivery_ledger=result.records,
                    owner_name=owner_name or DEFAULT_OWNER_NAME,
                    created_at=created_at,
                )
            )
        except EmergencyAPIError as exc:
            logger.error(
                "SOS %s dispatched but not persisted: %s",
                tracking_code, exc.message,
                extra={
                    "owner_id": owner_id,
                    "tracking_code": tracking_code,
                    "delivery_ledger": [r.to_dict() for r in result.records],
                },
            )
            raise

        return TriggerSummary(
            alert_id=alert.id,
            tracking_code=tracking_code,
            map_link=location.maps_link,
            sent=result.sent_count,
            failed=result.failed_count,
            total=len(contacts),
            provider_configured=self.provider_configured,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Resolve
    # ═══════════════════════════════════════════════════════════════════

    async def resolve(self, alert_id: Union[int, str]) -> ResolutionResult:
        """
        Mark an alert resolved and tell the owner's primary contacts.

        Only the call that performs the transition sends notifications;
        resolving twice keeps the first resolved_at and sends nothing.

        Raises
        ------
        NotFoundError
            Unknown or malformed alert id. Nothing is sent.
        """
        try:
            numeric_id = int(alert_id)
        except (TypeError, ValueError):
            raise NotFoundError("Alert", alert_id=str(alert_id))

        alert, transitioned = await self.store.resolve_alert(numeric_id)
        if not transitioned:
            return ResolutionResult(alert=alert, transitioned=False)

        task = asyncio.ensure_future(self._notify_resolution(alert))
        self._track(task)
        notifications = await asyncio.shield(task)
        return ResolutionResult(alert=alert, transitioned=True, notifications=notifications)

    async def _notify_resolution(self, alert: Alert) -> DispatchResult:
        """Best effort: any failure degrades to an empty / partial result."""
        try:
            contact_list = await self.store.get_contact_list(alert.owner_id)
            primaries = contact_list.primary_contacts if contact_list else []
            if not primaries:
                logger.info(
                    "No primary contacts to notify of resolution",
                    extra={"tracking_code": alert.tracking_code},
                )
                return DispatchResult()

            body = compose_resolution_message(
                alert.tracking_code, alert.resolved_at or datetime.now(timezone.utc),
            )
            return await self.dispatcher.dispatch(
                primaries, body, tracking_code=alert.tracking_code,
            )
        except Exception:
            logger.exception(
                "Resolution notification failed for %s", alert.tracking_code,
                extra={"tracking_code": alert.tracking_code},
            )
            return DispatchResult()

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    async def list_alerts(self, owner_id: str, limit: int = 10) -> List[Alert]:
        if limit < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        return await self.store.get_alerts_by_owner(owner_id, limit)

    async def track(self, tracking_code: str) -> Alert:
        alert = await self.store.get_alert_by_tracking_code(tracking_code)
        if alert is None:
            raise NotFoundError("Alert", tracking_code=tracking_code)
        return alert

    async def stats(self, owner_id: str) -> Dict[str, int]:
        total = await self.store.count_alerts(owner_id)
        active = await self.store.count_alerts(owner_id, AlertStatus.ACTIVE)
        resolved = await self.store.count_alerts(owner_id, AlertStatus.RESOLVED)
        contact_list = await self.store.get_contact_list(owner_id)
        return {
            "total_alerts": total,
            "active_alerts": active,
            "resolved_alerts": resolved,
            "emergency_contacts": len(contact_list) if contact_list else 0,
        }

    # ═══════════════════════════════════════════════════════════════════
    # In-flight tracking / shutdown
    # ═══════════════════════════════════════════════════════════════════

    def _track(self, task: asyncio.Task) -> None:
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Wait up to ``timeout`` for running dispatches, then cancel the rest."""
        pending = set(self._inflight)
        if not pending:
            return
        logger.info("Waiting for %d in-flight dispatches", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d unfinished dispatches at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
