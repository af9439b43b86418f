"""
Conversion Pipeline Module

Per-webhook orchestration:
- intent: build intent event -> remember attribution -> deliver (background)
- booking: classify -> resolve attribution (explicit key, else PII) ->
  dedup -> build purchase event -> deliver -> mark sent on success

Policy skips and delivery failures are reported in the PipelineResult, never
raised, so the inbound caller can always be acknowledged.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import hmac
import uuid

from loguru import logger

from config import Settings
from models.conversion import (
    AttributionRecord,
    BookingEnvelope,
    IntentRequest,
    OutboundEvent,
    ResultStatus,
    SkipReason,
)
from modules.classifier import BookingClassifier
from modules.delivery import ConversionsApiClient
from modules.event_builder import EventBuilder
from modules.exceptions import AuthenticationError, BridgeError
from modules.logging_utils import log_with_context
from modules.normalizer import hash_name_combo
from modules.stores import (
    AttributionStore,
    DedupStore,
    InMemoryAttributionStore,
    InMemoryDedupStore,
)


def verify_shared_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time shared secret check; no configured secret means no check"""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@dataclass
class PipelineContext:
    """Everything a pipeline run needs, passed explicitly"""
    settings: Settings
    attribution_store: AttributionStore
    dedup_store: DedupStore
    classifier: BookingClassifier
    builder: EventBuilder
    client: ConversionsApiClient

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> 'PipelineContext':
        parts = {
            "attribution_store": InMemoryAttributionStore(settings.attribution_window_seconds),
            "dedup_store": InMemoryDedupStore(settings.dedup_window_seconds),
            "classifier": BookingClassifier(settings.require_confirmed_status),
            "builder": EventBuilder(settings),
        }
        parts.update(overrides)
        if "client" not in parts:
            parts["client"] = ConversionsApiClient.from_settings(settings)
        return cls(settings=settings, **parts)


@dataclass
class PipelineResult:
    status: ResultStatus
    event_id: Optional[str] = None
    reason: Optional[SkipReason] = None
    error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = field(default=None, repr=False)
    response: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status.value}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.reason:
            body["reason"] = self.reason.value
        if self.error:
            body["error"] = self.error
        return body


def skipped(reason: SkipReason, event_id: Optional[str] = None) -> PipelineResult:
    return PipelineResult(status=ResultStatus.SKIPPED, reason=reason, event_id=event_id)


class ConversionPipeline:
    """Wires classifier, stores, builder and delivery client per inbound webhook"""

    def __init__(self, context: PipelineContext):
        self.context = context

    def authenticate(self, provided: Optional[str]) -> None:
        """Raise AuthenticationError unless the booking webhook secret matches"""
        if not verify_shared_secret(provided, self.context.settings.webhook_secret):
            raise AuthenticationError("booking webhook", "invalid shared secret")

    # ------------------------------------------------------------------
    # Intent
    # ------------------------------------------------------------------

    def handle_intent(
        self,
        request: IntentRequest,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> PipelineResult:
        """Build the intent event and remember its attribution; delivery is separate"""
        ctx = self.context
        event_id = request.event_id or uuid.uuid4().hex
        event = ctx.builder.build_intent_event(request, event_id, client_ip, user_agent)
        ctx.attribution_store.put(event_id, ctx.builder.attribution_record_from_event(event))

        log_with_context("info", f"Intent {event.event_name} stored for attribution key {event_id}")
        return PipelineResult(
            status=ResultStatus.ACCEPTED,
            event_id=event_id,
            payload=ctx.builder.build_payload(event, request.test_event_code),
        )

    def deliver_intent(self, result: PipelineResult) -> PipelineResult:
        """Deliver a built intent payload; failures are logged, not raised"""
        try:
            response = self.context.client.deliver(result.payload)
        except BridgeError as e:
            log_with_context("error", f"Intent {result.event_id} delivery failed: {e}")
            return PipelineResult(status=ResultStatus.FAILED, event_id=result.event_id, error=str(e))
        return PipelineResult(status=ResultStatus.SENT, event_id=result.event_id, response=response)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def resolve_attribution(
        self,
        envelope: BookingEnvelope
    ) -> Tuple[Optional[str], Optional[str], Optional[AttributionRecord]]:
        """
        Find the attribution for a booking.

        Returns (explicit_key, resolved_key, record). The explicit key comes
        from the booking itself; otherwise the PII index may supply one.
        """
        ctx = self.context
        explicit_key = ctx.classifier.extract_attribution_key(envelope.booking)
        if explicit_key:
            return explicit_key, explicit_key, ctx.attribution_store.get(explicit_key)

        if not ctx.settings.pii_fallback_enabled:
            return None, None, None

        identity = ctx.builder.booking_identity(envelope)
        key = ctx.attribution_store.find_by_identity(
            em=identity.get("em"),
            ph=identity.get("ph"),
            name_combo=hash_name_combo(identity.get("fn"), identity.get("ln")),
        )
        if not key:
            return None, None, None
        logger.info(f"Booking {envelope.booking.id} matched attribution key {key} by PII")
        return None, key, ctx.attribution_store.get(key)

    def handle_booking(
        self,
        envelope: BookingEnvelope,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        test_event_code: Optional[str] = None
    ) -> PipelineResult:
        ctx = self.context
        booking = envelope.booking

        reason = ctx.classifier.classify(booking)
        if reason:
            log_with_context("info", f"Booking {booking.id} skipped: {reason.value}")
            return skipped(reason)

        explicit_key, key, record = self.resolve_attribution(envelope)
        if not ctx.classifier.has_attribution(explicit_key, record):
            log_with_context("info", f"Booking {booking.id} skipped: no advertising signal")
            return skipped(SkipReason.NO_ATTRIBUTION)

        event: OutboundEvent = ctx.builder.build_purchase_event(envelope, record, key, client_ip, user_agent)
        payload = ctx.builder.build_payload(event, test_event_code or envelope.test_event_code)
        if not ctx.dedup_store.reserve(event.event_id):
            log_with_context("info", f"Booking {booking.id} skipped: event {event.event_id} already sent")
            return skipped(SkipReason.DUPLICATE, event.event_id)

        delivered = False
        try:
            response = ctx.client.deliver(payload)
            ctx.dedup_store.mark_sent(event.event_id)
            delivered = True
        except BridgeError as e:
            log_with_context("error", f"Purchase {event.event_id} delivery failed: {e}")
            return PipelineResult(
                status=ResultStatus.FAILED,
                event_id=event.event_id,
                error=str(e),
                payload=payload,
            )
        finally:
            # Only a delivered event may keep its claim
            if not delivered:
                ctx.dedup_store.release(event.event_id)

        log_with_context("info", f"Purchase {event.event_id} delivered for booking {booking.id}")
        return PipelineResult(
            status=ResultStatus.SENT,
            event_id=event.event_id,
            payload=payload,
            response=response,
        )
