"""
Booking Classifier Module

Decides whether a booking is an online, ad-attributable conversion worth
reporting:
- online vs manual/staff-created (fail-closed without an explicit signal)
- status eligibility (optionally confirmed-only)
- explicit attribution key extraction from metadata, referrer or notes
"""
from typing import Optional
from urllib.parse import urlparse, parse_qs, unquote_plus
import re

from loguru import logger

from models.conversion import AttributionRecord, BookingRecord, SkipReason

MANUAL_MARKERS = ("admin", "manual", "staff", "internal", "front desk", "front_desk", "phone", "walk")
INELIGIBLE_STATUSES = {
    "cancelled", "canceled", "declined", "no_show", "noshow", "no-show",
    "rejected", "deleted",
}
ELIGIBLE_STATUSES = {"booked", "confirmed", "scheduled", "pending", "accepted"}
CONFIRMED_STATUS = "confirmed"
METADATA_KEY_NAMES = ("eid", "event_id", "attribution_key", "attribution_id")
ATTRIBUTION_QUERY_PARAM = "eid"
_NOTES_KEY = re.compile(r'(?:^|[?&\s;,])eid=([^&\s;,]+)', re.IGNORECASE)


def _normalize_status(status: Optional[str]) -> str:
    return (status or "").strip().lower().replace(" ", "_")


class BookingClassifier:
    """Stateless booking classification with a confirmed-only policy flag"""

    def __init__(self, require_confirmed_status: bool = False):
        self.require_confirmed_status = require_confirmed_status

    def manual_marker(self, booking: BookingRecord) -> Optional[str]:
        """Return the channel string carrying an admin/manual/staff marker, if any"""
        for channel in booking.channels:
            lowered = channel.lower()
            if any(marker in lowered for marker in MANUAL_MARKERS):
                return channel
        return None

    def is_online_booking(self, booking: BookingRecord) -> bool:
        """
        True only with an explicit online-booking signal.

        An explicit signal wins over any channel string. Without one the
        booking is treated as manual, whether or not a staff marker is present.
        """
        if booking.online_signal is True:
            return True
        marker = self.manual_marker(booking)
        if marker:
            logger.debug(f"Booking {booking.id} carries manual marker '{marker}'")
        return False

    def is_eligible_status(self, booking: BookingRecord) -> bool:
        status = _normalize_status(booking.status)
        if not status:
            return not self.require_confirmed_status
        if status in INELIGIBLE_STATUSES:
            return False
        if self.require_confirmed_status:
            return status == CONFIRMED_STATUS
        return status in ELIGIBLE_STATUSES

    def extract_attribution_key(self, booking: BookingRecord) -> Optional[str]:
        """
        Find an explicit attribution key.

        Priority: structured metadata, then the eid query parameter of the
        referrer URL, then an eid=... fragment in the notes. Most bookings
        have none; that is not an error.
        """
        for name in METADATA_KEY_NAMES:
            value = booking.metadata.get(name)
            if value is not None and str(value).strip():
                return str(value).strip()

        if booking.referrer:
            params = parse_qs(urlparse(booking.referrer).query)
            values = params.get(ATTRIBUTION_QUERY_PARAM)
            if values and values[0].strip():
                return values[0].strip()

        if booking.notes:
            match = _NOTES_KEY.search(booking.notes)
            if match:
                key = unquote_plus(match.group(1)).strip()
                if key:
                    return key

        return None

    def has_attribution(
        self,
        explicit_key: Optional[str],
        record: Optional[AttributionRecord]
    ) -> bool:
        """Explicit key, or a looked-up record carrying click/browser ids"""
        if explicit_key:
            return True
        return record is not None and record.has_ad_signal()

    def classify(self, booking: BookingRecord) -> Optional[SkipReason]:
        """First policy reason to skip this booking, or None if it may proceed"""
        if not self.is_online_booking(booking):
            return SkipReason.MANUAL_BOOKING
        if not self.is_eligible_status(booking):
            return SkipReason.INELIGIBLE_STATUS
        return None
