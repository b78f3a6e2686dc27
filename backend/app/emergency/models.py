"""
models.py — Shared data structures for the SOS alert subsystem.

Defines:
    • AlertType       — what kind of emergency was raised
    • AlertStatus     — alert state machine (active → resolved)
    • DeliveryStatus  — per-contact send outcome
    • Location        — lat/lng pair + map link
    • Contact         — one emergency contact (owned by a ContactList)
    • ContactList     — an owner's ordered contacts
    • SendOutcome     — what the notification channel reports for one send
    • DeliveryRecord  — immutable ledger entry for one notified contact
    • DispatchResult  — ledger + counts produced by one fan-out
    • Alert           — a raised SOS with its embedded delivery ledger
    • TriggerSummary / ResolutionResult — orchestrator return values

═══════════════════════════════════════════════════════════════════════════
OWNERSHIP
═══════════════════════════════════════════════════════════════════════════

Contact and DeliveryRecord have no identity of their own. They live inside
their parent (ContactList.contacts / Alert.delivery_ledger), are frozen, and
are persisted as embedded JSON. The ledger is a tuple: written once when the
Alert is built after dispatch, never appended to afterwards.

═══════════════════════════════════════════════════════════════════════════
ALERT STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    active ──resolve()──▶ resolved      (terminal, resolved_at stamped once)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

MAPS_URL_TEMPLATE = "https://www.google.com/maps?q={lat},{lng}"

DEFAULT_STORED_MESSAGE = "Emergency SOS Alert"
DEFAULT_OWNER_NAME = "User"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    SOS      = "sos"
    ACCIDENT = "accident"
    MEDICAL  = "medical"
    THREAT   = "threat"
    OTHER    = "other"


class AlertStatus(str, Enum):
    ACTIVE   = "active"
    RESOLVED = "resolved"


class DeliveryStatus(str, Enum):
    """Outcome of a single send."""
    SENT      = "sent"       # accepted by the provider
    SIMULATED = "simulated"  # provider unconfigured — logged, not sent
    FAILED    = "failed"     # provider refused / transport error

    @property
    def is_success(self) -> bool:
        return self in (DeliveryStatus.SENT, DeliveryStatus.SIMULATED)


# ═══════════════════════════════════════════════════════════════════════════
# Value Types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    lat: float
    lng: float

    @property
    def maps_link(self) -> str:
        return MAPS_URL_TEMPLATE.format(lat=self.lat, lng=self.lng)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Contact:
    """
    An emergency contact.

    Attributes
    ----------
    name : str
    phone : str
        As entered by the owner; normalised only at send time.
    relationship : str | None
    is_primary : bool
        Primary contacts also receive the resolution notification.
    """
    name: str
    phone: str
    relationship: Optional[str] = None
    is_primary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phone": self.phone,
            "relationship": self.relationship,
            "is_primary": self.is_primary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contact":
        return cls(
            name=data["name"],
            phone=data["phone"],
            relationship=data.get("relationship"),
            is_primary=bool(data.get("is_primary", False)),
        )


@dataclass
class ContactList:
    """One per owner — upserted as a whole."""
    owner_id: str
    contacts: Tuple[Contact, ...] = ()
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def primary_contacts(self) -> List[Contact]:
        return [c for c in self.contacts if c.is_primary]

    def __len__(self) -> int:
        return len(self.contacts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "contacts": [c.to_dict() for c in self.contacts],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class SendOutcome:
    """What NotificationChannel.send reports for one recipient."""
    status: DeliveryStatus
    provider_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DeliveryRecord:
    """Ledger entry: the outcome of notifying one contact, captured at send time."""
    name: str
    phone: str
    delivery_status: DeliveryStatus
    provider_message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=_now)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phone": self.phone,
            "delivery_status": self.delivery_status.value,
            "provider_message_id": self.provider_message_id,
            "sent_at": _iso(self.sent_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryRecord":
        sent_at = data.get("sent_at")
        return cls(
            name=data["name"],
            phone=data["phone"],
            delivery_status=DeliveryStatus(data["delivery_status"]),
            provider_message_id=data.get("provider_message_id"),
            sent_at=datetime.fromisoformat(sent_at) if sent_at else _now(),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class DispatchResult:
    """Ordered ledger and counts from one DeliveryDispatcher run."""
    records: Tuple[DeliveryRecord, ...] = ()
    sent_count: int = 0
    failed_count: int = 0

    @property
    def total(self) -> int:
        return len(self.records)

    def stats(self) -> Dict[str, int]:
        return {
            "sent": self.sent_count,
            "failed": self.failed_count,
            "total": self.total,
        }


@dataclass
class Alert:
    """
    A raised SOS.

    ``id`` is assigned by the store on creation and is None before that.
    ``tracking_code`` is the externally shareable identifier.
    """
    owner_id: str
    tracking_code: str
    location: Location
    message: str = DEFAULT_STORED_MESSAGE
    alert_type: AlertType = AlertType.SOS
    status: AlertStatus = AlertStatus.ACTIVE
    delivery_ledger: Tuple[DeliveryRecord, ...] = ()
    owner_name: str = DEFAULT_OWNER_NAME
    created_at: datetime = field(default_factory=_now)
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    def with_id(self, alert_id: int) -> "Alert":
        return replace(self, id=alert_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id) if self.id is not None else None,
            "owner_id": self.owner_id,
            "tracking_code": self.tracking_code,
            "location": self.location.to_dict(),
            "map_link": self.location.maps_link,
            "message": self.message,
            "alert_type": self.alert_type.value,
            "status": self.status.value,
            "contacts_notified": [r.to_dict() for r in self.delivery_ledger],
            "owner_name": self.owner_name,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
        }


@dataclass(frozen=True)
class TriggerSummary:
    """Returned by AlertLifecycle.trigger_sos."""
    alert_id: int
    tracking_code: str
    map_link: str
    sent: int
    failed: int
    total: int
    provider_configured: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": str(self.alert_id),
            "tracking_code": self.tracking_code,
            "map_link": self.map_link,
            "provider_configured": self.provider_configured,
            "stats": {"sent": self.sent, "failed": self.failed, "total": self.total},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerSummary":
        stats = data.get("stats", {})
        return cls(
            alert_id=int(data["alert_id"]),
            tracking_code=data["tracking_code"],
            map_link=data["map_link"],
            sent=int(stats.get("sent", 0)),
            failed=int(stats.get("failed", 0)),
            total=int(stats.get("total", 0)),
            provider_configured=bool(data.get("provider_configured", False)),
        )


@dataclass(frozen=True)
class ResolutionResult:
    """Returned by AlertLifecycle.resolve."""
    alert: Alert
    transitioned: bool
    notifications: DispatchResult = field(default_factory=DispatchResult)


def contacts_from_dicts(items: Sequence[Dict[str, Any]]) -> Tuple[Contact, ...]:
    return tuple(Contact.from_dict(item) for item in items)
