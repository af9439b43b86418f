"""Models package for the Booking Conversions Bridge"""
from .conversion import (
    EventCategory,
    PayloadKind,
    SkipReason,
    ResultStatus,
    IdentityFields,
    UserData,
    CustomData,
    OutboundEvent,
    AttributionRecord,
    IntentRequest,
    LineItem,
    BookingRecord,
    SaleRecord,
    BookingEnvelope
)

__all__ = [
    'EventCategory',
    'PayloadKind',
    'SkipReason',
    'ResultStatus',
    'IdentityFields',
    'UserData',
    'CustomData',
    'OutboundEvent',
    'AttributionRecord',
    'IntentRequest',
    'LineItem',
    'BookingRecord',
    'SaleRecord',
    'BookingEnvelope'
]
