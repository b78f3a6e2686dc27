"""
channels — Messaging provider backends.

Each channel exposes:
    await send(recipient_phone, body) → SendOutcome

Channels never raise for provider failures; they return a FAILED outcome.
Pacing between sends lives in the dispatcher.
"""

from __future__ import annotations

from typing import Protocol

from backend.app.emergency.models import SendOutcome


class NotificationChannel(Protocol):
    """Capability consumed by DeliveryDispatcher."""

    @property
    def is_configured(self) -> bool: ...

    async def send(self, recipient_phone: str, body: str) -> SendOutcome: ...
