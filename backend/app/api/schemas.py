"""
Pydantic schemas for the emergency SOS API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.emergency.models import AlertType, Contact, Location


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ContactInput(BaseModel):
    """One emergency contact as entered by the user."""
    name: str = Field(..., min_length=1, examples=["Ann"])
    phone: str = Field(..., min_length=1, examples=["9876543210"])
    relationship: Optional[str] = Field(None, examples=["sister"])
    is_primary: bool = Field(False, description="Primary contacts are told when the alert is resolved")

    @field_validator("name", "phone")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    def to_domain(self) -> Contact:
        return Contact(
            name=self.name,
            phone=self.phone,
            relationship=self.relationship,
            is_primary=self.is_primary,
        )


class SaveContactsRequest(BaseModel):
    """Request body for POST /api/emergency/contacts. Replaces the whole list."""
    owner_id: str = Field(..., min_length=1, examples=["u1"])
    contacts: List[ContactInput] = Field(default_factory=list)


class LocationInput(BaseModel):
    """
    Coordinates from browser geolocation. Either may be missing when the
    device could not get a fix; the trigger then fails with 400.
    """
    lat: Optional[float] = Field(None, ge=-90.0, le=90.0, examples=[12.9])
    lng: Optional[float] = Field(None, ge=-180.0, le=180.0, examples=[77.6])

    def to_domain(self) -> Optional[Location]:
        if self.lat is None or self.lng is None:
            return None
        return Location(lat=self.lat, lng=self.lng)


class SosRequest(BaseModel):
    """Request body for POST /api/emergency/sos."""
    owner_id: str = Field(..., min_length=1, examples=["u1"])
    location: Optional[LocationInput] = None
    message: Optional[str] = Field(None, examples=["Car broke down on the highway"])
    alert_type: AlertType = Field(AlertType.SOS, examples=["medical"])
    owner_name: Optional[str] = Field(None, examples=["Priya"])
