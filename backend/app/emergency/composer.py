"""
composer.py — WhatsApp message templates for SOS and resolution notices.

Pure formatting, no side effects. Field values are embedded as given
(no escaping of WhatsApp markup).

Alert template:

    🚨 *EMERGENCY ALERT* 🚨

    {owner_name} has triggered an emergency SOS!

    📍 *Location:*
    https://www.google.com/maps?q={lat},{lng}

    📋 *Alert Type:* {ALERT_TYPE}
    💬 *Message:* {message}
    🆔 *Tracking ID:* {tracking_code}
    ⏰ *Time:* {created_at}
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from backend.app.emergency.models import AlertType, Location

DEFAULT_ALERT_MESSAGE = "Emergency assistance needed!"
ANONYMOUS_OWNER = "Someone"
TIME_FORMAT = "%d %b %Y, %I:%M:%S %p %Z"


def build_maps_link(location: Location) -> str:
    return location.maps_link


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIME_FORMAT).strip()


def compose_alert_message(
    owner_name: Optional[str],
    location: Location,
    alert_type: Union[AlertType, str],
    message: Optional[str],
    tracking_code: str,
    created_at: datetime,
) -> str:
    """Render the SOS notification body sent to every contact."""
    type_label = alert_type.value if isinstance(alert_type, AlertType) else str(alert_type)

    return "\n".join([
        "🚨 *EMERGENCY ALERT* 🚨",
        "",
        f"{owner_name or ANONYMOUS_OWNER} has triggered an emergency SOS!",
        "",
        "📍 *Location:*",
        build_maps_link(location),
        "",
        f"📋 *Alert Type:* {type_label.upper()}",
        "",
        f"💬 *Message:* {message or DEFAULT_ALERT_MESSAGE}",
        "",
        f"🆔 *Tracking ID:* {tracking_code}",
        "",
        f"⏰ *Time:* {format_timestamp(created_at)}",
        "",
        "Please check on them immediately or contact emergency services if needed.",
        "",
        "This is an automated emergency alert.",
    ])


def compose_resolution_message(tracking_code: str, resolved_at: datetime) -> str:
    """Render the all-clear sent to primary contacts."""
    return "\n".join([
        "✅ *EMERGENCY RESOLVED*",
        "",
        f"The emergency alert (ID: {tracking_code}) has been marked as resolved.",
        "",
        f"⏰ *Resolved at:* {format_timestamp(resolved_at)}",
        "",
        "Thank you for your quick response!",
    ])
