"""
Event Builder Module

Assembles Conversions API events from intent calls and classified bookings:
- identity bundle merging (booking PII + remembered attribution tokens)
- value / currency / content policy
- event_time policy with clamping into the accepted look-back window
"""
from typing import Any, Callable, Dict, Optional
from datetime import datetime, timezone
import math
import time

from loguru import logger

from config import Settings
from models.conversion import (
    AttributionRecord,
    BookingEnvelope,
    CustomData,
    EventCategory,
    IntentRequest,
    OutboundEvent,
    UserData,
)
from modules.normalizer import hash_identity, hash_token

# Epoch values above this are taken to be milliseconds
_MILLISECOND_THRESHOLD = 1e11


def _to_epoch_seconds(source: Any) -> Optional[float]:
    if source is None or isinstance(source, bool):
        return None
    if isinstance(source, datetime):
        if source.tzinfo is None:
            source = source.replace(tzinfo=timezone.utc)
        return source.timestamp()
    if isinstance(source, (int, float)):
        seconds = float(source)
    else:
        text = str(source).strip()
        if not text:
            return None
        try:
            seconds = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return _to_epoch_seconds(parsed)
    if math.isfinite(seconds) and abs(seconds) > _MILLISECOND_THRESHOLD:
        seconds = seconds / 1000.0
    return seconds


class EventBuilder:
    """Builds intent and purchase events according to the configured policies"""

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def clamp_event_time(self, source: Any) -> int:
        """
        Epoch seconds for source, clamped to [now - max age, now].

        Unparseable or non-finite input, future times and times older than the
        look-back window all become now rather than rejecting the event.
        """
        now = self.now()
        seconds = _to_epoch_seconds(source)
        if seconds is None or not math.isfinite(seconds):
            return now
        if seconds > now:
            return now
        if now - seconds > self.settings.max_event_age_days * 86400:
            logger.debug(f"event_time {int(seconds)} outside look-back window, using now")
            return now
        return int(seconds)

    def _hash(self, kind: str, value: Any) -> Optional[str]:
        return hash_token(kind, value, self.settings.default_country_calling_code)

    def build_intent_event(
        self,
        request: IntentRequest,
        event_id: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> OutboundEvent:
        """Intent event: identity from the request, no value/currency"""
        identity = hash_identity(request.identity(), self.settings.default_country_calling_code)
        user_data = UserData(
            **identity,
            client_ip_address=client_ip or None,
            client_user_agent=user_agent or None,
            fbc=request.fbc,
            fbp=request.fbp,
        )
        event_time = self.clamp_event_time(request.event_time)
        return OutboundEvent(
            event_name=request.event_name or self.settings.intent_event_name,
            event_time=event_time,
            event_source_url=request.event_source_url or self.settings.event_source_url,
            event_id=event_id,
            user_data=user_data,
            category=EventCategory.INTENT,
        )

    def attribution_record_from_event(self, event: OutboundEvent) -> AttributionRecord:
        """The part of an intent event worth remembering for later bookings"""
        data = event.user_data
        return AttributionRecord(
            fbc=data.fbc,
            fbp=data.fbp,
            em=data.em,
            ph=data.ph,
            fn=data.fn,
            ln=data.ln,
            client_ip_address=data.client_ip_address,
            client_user_agent=data.client_user_agent,
        )

    def booking_identity(self, envelope: BookingEnvelope) -> Dict[str, str]:
        """Hashed identity tokens carried by the booking's client record"""
        identity = hash_identity(envelope.booking.client, self.settings.default_country_calling_code)
        if "country" not in identity and self.settings.default_country:
            identity["country"] = self._hash("country", self.settings.default_country)
        return identity

    def _user_data(
        self,
        envelope: BookingEnvelope,
        attribution: Optional[AttributionRecord],
        client_ip: Optional[str],
        user_agent: Optional[str]
    ) -> UserData:
        merged: Dict[str, Optional[str]] = {}
        if attribution is not None:
            merged.update({
                "em": attribution.em,
                "ph": attribution.ph,
                "fn": attribution.fn,
                "ln": attribution.ln,
                "fbc": attribution.fbc,
                "fbp": attribution.fbp,
                "client_ip_address": attribution.client_ip_address,
                "client_user_agent": attribution.client_user_agent,
            })
        # Booking PII is fresher than what the intent carried
        merged.update(self.booking_identity(envelope))
        if envelope.fbc:
            merged["fbc"] = envelope.fbc
        if envelope.fbp:
            merged["fbp"] = envelope.fbp
        if not merged.get("client_ip_address"):
            merged["client_ip_address"] = client_ip or None
        if not merged.get("client_user_agent"):
            merged["client_user_agent"] = user_agent or None
        return UserData(**{k: v for k, v in merged.items() if v})

    def resolve_value(self, envelope: BookingEnvelope) -> float:
        """Conversion value under the configured policy; 0 when no reliable price exists"""
        policy = self.settings.value_policy
        if policy == "fixed":
            return self.settings.default_value
        if policy == "zero":
            return 0.0

        prices = [item.price for item in envelope.booking.line_items if item.price is not None]
        line_total = sum(prices)
        if policy == "line_items":
            return round(line_total, 2)

        # sale: the recorded payment, else the booked service prices, else the payload total
        if envelope.sale is not None and envelope.sale.amount is not None:
            return round(envelope.sale.amount, 2)
        if prices:
            return round(line_total, 2)
        if envelope.booking.total_amount is not None:
            return round(envelope.booking.total_amount, 2)
        return 0.0

    def content_name(self, envelope: BookingEnvelope) -> str:
        names = [item.name for item in envelope.booking.line_items if item.name]
        return ", ".join(names) if names else self.settings.default_content_name

    def event_id_for(self, envelope: BookingEnvelope, attribution_key: Optional[str]) -> str:
        """Attribution key when known, otherwise a stable id derived from the booking"""
        if attribution_key:
            return attribution_key
        native_id = envelope.booking.id or (envelope.sale.id if envelope.sale else None)
        if not native_id:
            native_id = str(self.now())
        return f"{self.settings.fallback_event_id_prefix}{native_id}"

    def build_purchase_event(
        self,
        envelope: BookingEnvelope,
        attribution: Optional[AttributionRecord] = None,
        attribution_key: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> OutboundEvent:
        """Purchase-equivalent event for an online, attributed booking"""
        if self.settings.event_time_policy == "created":
            event_time = self.clamp_event_time(envelope.booking.created_at)
        else:
            event_time = self.now()

        currency = (envelope.sale.currency if envelope.sale else None) or self.settings.default_currency
        value = self.resolve_value(envelope)

        return OutboundEvent(
            event_name=self.settings.purchase_event_name,
            event_time=event_time,
            event_source_url=self.settings.event_source_url,
            event_id=self.event_id_for(envelope, attribution_key),
            user_data=self._user_data(envelope, attribution, client_ip, user_agent),
            custom_data=CustomData(
                value=max(value, 0.0),
                currency=currency,
                content_name=self.content_name(envelope),
            ),
            category=EventCategory.PURCHASE,
        )

    @staticmethod
    def build_payload(event: OutboundEvent, test_event_code: Optional[str] = None) -> Dict[str, Any]:
        """Request body for the Conversions API; test_event_code must be top-level"""
        body: Dict[str, Any] = {"data": [event.to_api_dict()]}
        if test_event_code:
            body["test_event_code"] = test_event_code
        return body
