"""
Data models for conversion bridging

Inbound webhook bodies from the scheduling platform come in several shapes
(appointment vs booking, client vs customer, sale vs payment, camelCase vs
snake_case). They are mapped onto the canonical models below exactly once,
in BookingEnvelope.from_payload / IntentRequest, so the rest of the pipeline
only ever sees one shape.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum
import math
import re

SHA256_HEX_PATTERN = re.compile(r'^[0-9a-f]{64}$')


class EventCategory(str, Enum):
    """Outbound event categories"""
    INTENT = "intent"
    PURCHASE = "purchase"


class PayloadKind(str, Enum):
    """Inbound payload variants resolved at the webhook boundary"""
    INTENT = "intent"
    BOOKING_ONLY = "booking_only"
    BOOKING_WITH_SALE = "booking_with_sale"


class SkipReason(str, Enum):
    """Why an inbound webhook was acknowledged without forwarding"""
    MALFORMED_PAYLOAD = "malformed_payload"
    MANUAL_BOOKING = "manual_booking"
    INELIGIBLE_STATUS = "ineligible_status"
    NO_ATTRIBUTION = "no_attribution"
    DUPLICATE = "duplicate"


class ResultStatus(str, Enum):
    ACCEPTED = "accepted"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


# ============================================================================
# Field lookup helpers
# ============================================================================

def first_present(data: Optional[Dict[str, Any]], *keys: str) -> Any:
    """Return the first non-empty value among keys"""
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def to_float(value: Any) -> Optional[float]:
    """Parse a money amount; None when missing or not a finite number"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def to_flag(value: Any) -> Optional[bool]:
    """Interpret an explicit boolean-ish signal; None when absent"""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("true", "yes", "y", "1", "online"):
        return True
    if text in ("false", "no", "n", "0", "offline"):
        return False
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


# ============================================================================
# Identity
# ============================================================================

class IdentityFields(BaseModel):
    """Raw (or already hashed) identity values for one person"""
    em: Optional[str] = None
    ph: Optional[str] = None
    fn: Optional[str] = None
    ln: Optional[str] = None
    ct: Optional[str] = None
    st: Optional[str] = None
    zp: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None

    @field_validator('*', mode='before')
    @classmethod
    def coerce_to_str(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> 'IdentityFields':
        """Map the known field-name variants onto the canonical identity shape"""
        data = _as_dict(data)
        return cls(
            em=first_present(data, "em", "email", "email_address", "emailAddress"),
            ph=first_present(data, "ph", "phone", "mobile", "phone_number", "phoneNumber", "mobile_phone"),
            fn=first_present(data, "fn", "first_name", "firstName", "given_name"),
            ln=first_present(data, "ln", "last_name", "lastName", "family_name"),
            ct=first_present(data, "ct", "city"),
            st=first_present(data, "st", "state", "province", "region"),
            zp=first_present(data, "zp", "zip", "postal_code", "postalCode", "postcode"),
            country=first_present(data, "country", "country_code", "countryCode"),
            external_id=first_present(data, "external_id", "externalId", "id", "customer_id", "customerId"),
        )

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class UserData(BaseModel):
    """Outbound user_data block: hashed tokens plus network and browser matchers only"""
    em: Optional[str] = None
    ph: Optional[str] = None
    fn: Optional[str] = None
    ln: Optional[str] = None
    ct: Optional[str] = None
    st: Optional[str] = None
    zp: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None

    @field_validator('em', 'ph', 'fn', 'ln', 'ct', 'st', 'zp', 'country', 'external_id')
    @classmethod
    def validate_hashed(cls, v: Optional[str]) -> Optional[str]:
        """Identity fields must already be SHA-256 tokens"""
        if v is None:
            return v
        if not SHA256_HEX_PATTERN.match(v):
            raise ValueError('user_data identity fields must be SHA-256 hex tokens')
        return v


class CustomData(BaseModel):
    value: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    content_name: Optional[str] = None


class OutboundEvent(BaseModel):
    """One event in a Conversions API request"""
    event_name: str = Field(..., min_length=1)
    event_time: int = Field(..., ge=0)
    action_source: str = "website"
    event_source_url: Optional[str] = None
    event_id: str = Field(..., min_length=1)
    user_data: UserData
    custom_data: Optional[CustomData] = None
    category: EventCategory = Field(default=EventCategory.PURCHASE, exclude=True)

    def to_api_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ============================================================================
# Attribution
# ============================================================================

class AttributionRecord(BaseModel):
    """Hashed identity and click tokens remembered from an intent event"""
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    em: Optional[str] = None
    ph: Optional[str] = None
    fn: Optional[str] = None
    ln: Optional[str] = None
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    created_at: float = 0.0

    def has_ad_signal(self) -> bool:
        return bool(self.fbc or self.fbp)


# ============================================================================
# Inbound payloads
# ============================================================================

class IntentRequest(BaseModel):
    """Client-side checkout intent call"""
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    event_source_url: Optional[str] = None
    event_time: Optional[Any] = None
    user_data: Dict[str, Any] = Field(default_factory=dict)
    test_event_code: Optional[str] = None

    @field_validator('event_id', 'event_name', 'test_event_code', mode='before')
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def kind(self) -> PayloadKind:
        return PayloadKind.INTENT

    @property
    def fbc(self) -> Optional[str]:
        return first_present(self.user_data, "fbc", "_fbc")

    @property
    def fbp(self) -> Optional[str]:
        return first_present(self.user_data, "fbp", "_fbp")

    def identity(self) -> IdentityFields:
        return IdentityFields.from_mapping(self.user_data)


class LineItem(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None


class BookingRecord(BaseModel):
    """Canonical booking/appointment"""
    id: Optional[str] = None
    status: Optional[str] = None
    online_signal: Optional[bool] = None
    channels: List[str] = Field(default_factory=list)
    created_at: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    referrer: Optional[str] = None
    notes: Optional[str] = None
    line_items: List[LineItem] = Field(default_factory=list)
    total_amount: Optional[float] = None
    client: IdentityFields = Field(default_factory=IdentityFields)

    @field_validator('id', 'status', 'referrer', 'notes', mode='before')
    @classmethod
    def coerce_to_str(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v)


CURRENCY_CODE = re.compile(r'^[A-Z]{3}$')


class SaleRecord(BaseModel):
    id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    created_at: Optional[Any] = None

    @field_validator('currency', mode='before')
    @classmethod
    def normalize_currency(cls, v: Any) -> Optional[str]:
        code = str(v).strip().upper() if v is not None else ""
        if not CURRENCY_CODE.match(code):
            return None
        return code


ONLINE_SIGNAL_KEYS = (
    "online_booking", "onlineBooking", "is_online", "isOnline",
    "booked_online", "bookedOnline", "is_online_booking", "isOnlineBooking",
)
CHANNEL_KEYS = (
    "source", "channel", "booking_source", "bookingSource", "origin",
    "created_by_type", "createdByType", "creator_type", "creatorType", "booked_by",
)
SERVICE_LIST_KEYS = ("services", "line_items", "lineItems", "items")


def _line_items(appt: Dict[str, Any]) -> List[LineItem]:
    items = []
    for key in SERVICE_LIST_KEYS:
        entries = appt.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict):
                items.append(LineItem(
                    name=first_present(entry, "name", "service_name", "serviceName", "title"),
                    price=to_float(first_present(entry, "price", "amount", "total")),
                ))
            elif isinstance(entry, str):
                items.append(LineItem(name=entry))
        if items:
            return items
    name = first_present(appt, "service_name", "serviceName", "service")
    price = to_float(first_present(appt, "price", "total_price"))
    if name or price is not None:
        items.append(LineItem(name=str(name) if name else None, price=price))
    return items


class BookingEnvelope(BaseModel):
    """A booking webhook resolved to one of the booking payload variants"""
    kind: PayloadKind
    booking: BookingRecord
    sale: Optional[SaleRecord] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    test_event_code: Optional[str] = None

    @field_validator('fbc', 'fbp', mode='before')
    @classmethod
    def coerce_token(cls, v: Any) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        return str(v).strip()

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> 'BookingEnvelope':
        """Map every known inbound variant onto the canonical booking shape"""
        appt = _as_dict(first_present(raw, "appointment", "booking")) or raw
        client_raw = (
            first_present(raw, "client", "customer")
            or first_present(appt, "client", "customer")
        )
        sale_raw = _as_dict(first_present(raw, "sale", "payment"))

        online_value = first_present(appt, *ONLINE_SIGNAL_KEYS)
        if online_value is None:
            online_value = first_present(raw, *ONLINE_SIGNAL_KEYS)

        sources = [appt] if appt is raw else [appt, raw]
        channels = []
        for source in sources:
            for key in CHANNEL_KEYS:
                value = source.get(key)
                if isinstance(value, str) and value.strip():
                    channels.append(value.strip())

        metadata = {}
        for source in reversed(sources):
            for key in ("metadata", "custom_fields", "customFields"):
                metadata.update(_as_dict(source.get(key)))

        booking_id = first_present(appt, "id", "appointment_id", "booking_id") or first_present(raw, "id")
        booking = BookingRecord(
            id=str(booking_id) if booking_id is not None else None,
            status=first_present(appt, "status", "state") or first_present(raw, "status"),
            online_signal=to_flag(online_value),
            channels=channels,
            created_at=(
                first_present(appt, "created_at", "createdAt")
                or first_present(raw, "timestamp", "created_at")
                or first_present(appt, "start_time", "startTime")
                or first_present(sale_raw, "created_at", "createdAt")
            ),
            metadata=metadata,
            referrer=first_present(appt, "referrer", "referrer_url", "referrerUrl", "landing_url")
            or first_present(raw, "referrer", "referrer_url"),
            notes=first_present(appt, "notes", "note", "comments", "client_notes")
            or first_present(raw, "notes"),
            line_items=_line_items(appt),
            total_amount=to_float(first_present(raw, "total_amount", "amount")),
            client=IdentityFields.from_mapping(_as_dict(client_raw)),
        )

        sale = None
        if sale_raw:
            sale_id = first_present(sale_raw, "id", "sale_id")
            amount = first_present(sale_raw, "amount", "total", "total_amount")
            if amount is None:
                amount = first_present(raw, "total_amount", "amount")
            sale = SaleRecord(
                id=str(sale_id) if sale_id is not None else None,
                amount=to_float(amount),
                currency=first_present(sale_raw, "currency", "currency_code"),
                created_at=first_present(sale_raw, "created_at", "createdAt"),
            )

        test_code = first_present(raw, "test_event_code")
        return cls(
            kind=PayloadKind.BOOKING_WITH_SALE if sale else PayloadKind.BOOKING_ONLY,
            booking=booking,
            sale=sale,
            fbc=first_present(raw, "fbc") or first_present(appt, "fbc"),
            fbp=first_present(raw, "fbp") or first_present(appt, "fbp"),
            test_event_code=str(test_code) if test_code else None,
        )
