"""
whatsapp.py — WhatsApp delivery channel via the Twilio Messages API.

Delivery mechanism:
    • HTTP POST (form-encoded, basic auth) to Twilio's Messages resource
    • Sender and recipient addressed as ``whatsapp:+<E.164 digits>``
    • Provider message SID returned as the delivery identifier

═══════════════════════════════════════════════════════════════════════════
PROVIDER CALL
═══════════════════════════════════════════════════════════════════════════

    App  →  POST {base}/Accounts/{sid}/Messages.json  →  Twilio  →  WhatsApp
              From=whatsapp:+14155238886
              To=whatsapp:+919876543210
              Body=<alert text>

    2xx  → {"sid": "SM...", "status": "queued", ...}    → SENT
    4xx/5xx → {"code": 21211, "message": "..."}          → FAILED
    transport error (timeout, DNS, reset)                → FAILED

═══════════════════════════════════════════════════════════════════════════
SIMULATION MODE
═══════════════════════════════════════════════════════════════════════════

If any of account SID / auth token / sender is missing, the channel never
touches the network: it logs the recipient and full body and returns
SIMULATED with a local ``SIM...`` id. The decision is made once from the
injected ChannelConfig, not per call.

═══════════════════════════════════════════════════════════════════════════
PHONE NORMALISATION
═══════════════════════════════════════════════════════════════════════════

    "+91 98765-43210"  → whatsapp:+919876543210   (explicit prefix kept)
    "98765 43210"      → whatsapp:+919876543210   (10 digits → default CC)
    "9123456780"       → whatsapp:+919123456780
    "+1 415 555 0100"  → whatsapp:+14155550100
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from backend.app.core.config import Settings
from backend.app.core.errors import ProviderError
from backend.app.emergency.models import DeliveryStatus, SendOutcome

logger = logging.getLogger(__name__)

PROVIDER_NAME = "twilio_whatsapp"
WHATSAPP_ADDRESS_PREFIX = "whatsapp:"
NATIONAL_NUMBER_LENGTH = 10

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class ChannelConfig:
    """
    Messaging provider credentials and tuning, read once at startup.

    Attributes
    ----------
    account_sid, auth_token : str | None
        Twilio credentials.
    sender : str | None
        WhatsApp-enabled sender, e.g. ``whatsapp:+14155238886``.
    default_country_code : str
        Prepended to bare 10-digit national numbers.
    api_base_url : str
    timeout_seconds : float
    """
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    sender: Optional[str] = None
    default_country_code: str = "91"
    api_base_url: str = "https://api.twilio.com/2010-04-01"
    timeout_seconds: float = 15.0

    def __post_init__(self) -> None:
        if not self.default_country_code.isdigit():
            raise ValueError(
                f"default_country_code must be digits, got {self.default_country_code!r}"
            )
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.is_configured and not _NON_DIGITS.sub("", self.sender or ""):
            raise ValueError(f"sender has no phone digits: {self.sender!r}")

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.sender)

    @property
    def messages_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/Accounts/{self.account_sid}/Messages.json"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChannelConfig":
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID or None,
            auth_token=settings.TWILIO_AUTH_TOKEN or None,
            sender=settings.TWILIO_WHATSAPP_FROM or None,
            default_country_code=settings.WHATSAPP_DEFAULT_COUNTRY_CODE,
            api_base_url=settings.TWILIO_API_BASE_URL,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )


def normalize_phone(phone: str, default_country_code: str = "91") -> str:
    """
    Reduce ``phone`` to E.164 digits (no ``+``).

    A number written with a leading ``+`` already carries its country code.
    Otherwise a bare 10-digit national number gets ``default_country_code``.
    """
    raw = phone.strip()
    digits = _NON_DIGITS.sub("", raw)
    if not raw.startswith("+") and len(digits) == NATIONAL_NUMBER_LENGTH:
        digits = default_country_code + digits
    return digits


def to_whatsapp_address(phone: str, default_country_code: str = "91") -> str:
    return f"{WHATSAPP_ADDRESS_PREFIX}+{normalize_phone(phone, default_country_code)}"


def _sender_address(sender: str) -> str:
    if sender.startswith(WHATSAPP_ADDRESS_PREFIX):
        return sender
    return f"{WHATSAPP_ADDRESS_PREFIX}+{_NON_DIGITS.sub('', sender)}"


def _simulated_id() -> str:
    return f"SIM{int(time.time() * 1000)}{uuid.uuid4().hex[:6].upper()}"


def _provider_error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if not isinstance(data, dict):
        return f"HTTP {response.status_code}: {response.text[:200]}"
    message = data.get("message") or response.reason_phrase
    code = data.get("code")
    return f"{message} (code {code})" if code else str(message)


class WhatsAppChannel:
    """
    NotificationChannel backed by Twilio's WhatsApp API.

    Usage:
        channel = WhatsAppChannel(ChannelConfig.from_settings(settings))
        outcome = await channel.send("9876543210", body)
        await channel.close()
    """

    def __init__(
        self,
        config: ChannelConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None

        if config.is_configured:
            logger.info("WhatsApp channel configured (sender %s)", config.sender)
        else:
            logger.warning(
                "Messaging provider credentials not configured — "
                "WhatsApp messages will be simulated",
            )

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client (only if this channel created it)."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, recipient_phone: str, body: str) -> SendOutcome:
        """
        Send ``body`` to ``recipient_phone``.

        Returns
        -------
        SendOutcome
            SIMULATED when unconfigured, SENT with the provider SID on
            success, FAILED with the provider error text otherwise.
        """
        if not self.config.is_configured:
            sim_id = _simulated_id()
            logger.info(
                "[WHATSAPP/SIM] → %s (%s)\n%s",
                recipient_phone, sim_id, body,
                extra={"recipient": recipient_phone, "delivery_status": "simulated"},
            )
            return SendOutcome(status=DeliveryStatus.SIMULATED, provider_id=sim_id)

        try:
            sid = await self._post_message(recipient_phone, body)
        except ProviderError as exc:
            logger.error(
                "[WHATSAPP] Failed for %s: %s", recipient_phone, exc.message,
                extra={"recipient": recipient_phone, "delivery_status": "failed"},
            )
            return SendOutcome(status=DeliveryStatus.FAILED, error=exc.message)

        logger.info(
            "[WHATSAPP] Sent to %s: %s", recipient_phone, sid,
            extra={"recipient": recipient_phone, "delivery_status": "sent"},
        )
        return SendOutcome(status=DeliveryStatus.SENT, provider_id=sid)

    async def _post_message(self, recipient_phone: str, body: str) -> str:
        """POST one message; returns the SID or raises ProviderError."""
        form = {
            "From": _sender_address(self.config.sender or ""),
            "To": to_whatsapp_address(recipient_phone, self.config.default_country_code),
            "Body": body,
        }
        client = await self._get_client()
        try:
            response = await client.post(
                self.config.messages_url,
                data=form,
                auth=(self.config.account_sid or "", self.config.auth_token or ""),
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(
                PROVIDER_NAME, str(exc) or type(exc).__name__, to=form["To"],
            ) from exc

        if response.is_error:
            raise ProviderError(
                PROVIDER_NAME, _provider_error_text(response),
                to=form["To"], http_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        sid = data.get("sid") if isinstance(data, dict) else None
        if not sid:
            raise ProviderError(
                PROVIDER_NAME, "Provider response missing message sid", to=form["To"],
            )
        return sid
