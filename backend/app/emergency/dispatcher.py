"""
dispatcher.py — Paced sequential fan-out to an ordered contact list.

═══════════════════════════════════════════════════════════════════════════
DISPATCH LOOP
═══════════════════════════════════════════════════════════════════════════

    for contact in contacts (list order):
        outcome = await channel.send(contact.phone, body)
        ledger.append(DeliveryRecord(contact, outcome, sent_at=now))
        sent | simulated → sent_count += 1
        failed           → failed_count += 1
        if more contacts remain:
            await sleep(pacing_seconds)          # provider rate limit

Sends are strictly one at a time so the provider never sees a burst and
the ledger order always equals the contact order. The pause is an
``await``: other requests keep running on the event loop while one
dispatch waits.

A failed contact never stops the loop. ``sent_count + failed_count`` always
equals ``len(contacts)``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

from backend.app.core.errors import ProviderError
from backend.app.emergency.channels import NotificationChannel
from backend.app.emergency.models import (
    Contact,
    DeliveryRecord,
    DeliveryStatus,
    DispatchResult,
    SendOutcome,
)

logger = logging.getLogger(__name__)

DEFAULT_PACING_SECONDS = 1.0

Sleeper = Callable[[float], Awaitable[None]]


class DeliveryDispatcher:
    """
    Sends one body to many contacts through a NotificationChannel.

    Parameters
    ----------
    channel : NotificationChannel
    pacing_seconds : float
        Pause between consecutive sends.
    sleep : callable
        Awaitable sleep; injectable so tests need not wait.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        *,
        pacing_seconds: float = DEFAULT_PACING_SECONDS,
        sleep: Optional[Sleeper] = None,
    ):
        if pacing_seconds < 0:
            raise ValueError("pacing_seconds cannot be negative")
        self.channel = channel
        self.pacing_seconds = pacing_seconds
        self._sleep = sleep or asyncio.sleep

    async def _send_one(self, contact: Contact, body: str) -> SendOutcome:
        try:
            return await self.channel.send(contact.phone, body)
        except ProviderError as exc:
            # Channels should already convert these; keep the loop going regardless.
            logger.error("Provider error escaped channel for %s: %s", contact.phone, exc.message)
            return SendOutcome(status=DeliveryStatus.FAILED, error=exc.message)
        except Exception as exc:
            logger.exception("Unexpected channel failure for %s", contact.phone)
            return SendOutcome(status=DeliveryStatus.FAILED, error=str(exc) or type(exc).__name__)

    async def dispatch(
        self,
        contacts: Sequence[Contact],
        body: str,
        *,
        tracking_code: Optional[str] = None,
    ) -> DispatchResult:
        """
        Notify every contact in order.

        Returns
        -------
        DispatchResult
            One DeliveryRecord per contact, plus sent/failed counts.
        """
        started = time.perf_counter()
        records: List[DeliveryRecord] = []
        sent_count = 0
        failed_count = 0

        for index, contact in enumerate(contacts):
            outcome = await self._send_one(contact, body)
            records.append(
                DeliveryRecord(
                    name=contact.name,
                    phone=contact.phone,
                    delivery_status=outcome.status,
                    provider_message_id=outcome.provider_id,
                    sent_at=datetime.now(timezone.utc),
                    error=outcome.error,
                )
            )

            if outcome.status.is_success:
                sent_count += 1
            else:
                failed_count += 1
                logger.warning(
                    "Delivery to %s (%s) failed: %s",
                    contact.name, contact.phone, outcome.error,
                    extra={"tracking_code": tracking_code, "recipient": contact.phone},
                )

            if index < len(contacts) - 1 and self.pacing_seconds > 0:
                await self._sleep(self.pacing_seconds)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Dispatch complete: %d/%d delivered, %d failed (%.0fms)",
            sent_count, len(contacts), failed_count, duration_ms,
            extra={
                "tracking_code": tracking_code,
                "contact_count": len(contacts),
                "sent_count": sent_count,
                "failed_count": failed_count,
                "duration_ms": duration_ms,
            },
        )

        return DispatchResult(
            records=tuple(records),
            sent_count=sent_count,
            failed_count=failed_count,
        )
