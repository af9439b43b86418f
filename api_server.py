"""
FastAPI Server for the Booking Conversions Bridge

Provides endpoints for:
- Checkout intent calls from the website
- Booking/sale webhooks from the scheduling platform
- Health checks and system status
"""
from fastapi import FastAPI, HTTPException, Depends, Request, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ValidationError
from typing import Optional, List, Dict, Any, Tuple
from loguru import logger
import json
import uvicorn

from config import settings, Settings
from models.conversion import BookingEnvelope, IntentRequest, ResultStatus, SkipReason
from modules.exceptions import AuthenticationError, PayloadError
from modules.health_check import HealthChecker
from modules.logging_utils import (
    configure_logging_with_correlation,
    generate_correlation_id,
    set_correlation_id,
)
from modules.pipeline import (
    ConversionPipeline,
    PipelineContext,
    PipelineResult,
    skipped,
)


# ============================================================================
# FastAPI App Setup
# ============================================================================

configure_logging_with_correlation(settings.log_level, settings.log_file_path)

app = FastAPI(
    title="Booking Conversions Bridge",
    description="Forwards checkout intents and online bookings to the Meta Conversions API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Initialize components
health_checker = HealthChecker()
pipeline_context = PipelineContext.from_settings(settings)
pipeline = ConversionPipeline(pipeline_context)

if not settings.meta_configured:
    logger.error("Missing META_PIXEL_ID or META_ACCESS_TOKEN; events will not be delivered")


# ============================================================================
# Request/Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    timestamp: str
    components: List[Dict[str, Any]]
    summary: Dict[str, int]


class WebhookResponse(BaseModel):
    """Acknowledgement returned to webhook callers"""
    status: str
    event_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


# ============================================================================
# Dependency Injection
# ============================================================================

def get_settings() -> Settings:
    return settings


def get_pipeline() -> ConversionPipeline:
    return pipeline


async def add_correlation_id():
    """Add correlation ID to request context"""
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


def client_metadata(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Caller IP (first X-Forwarded-For hop, else socket peer) and user agent"""
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client:
        ip = request.client.host
    return ip or None, request.headers.get("user-agent") or None


async def read_json_body(request: Request) -> Dict[str, Any]:
    """
    Parse a JSON object body sent as application/json or text/plain

    Raises:
        PayloadError: If the body is not a JSON object
    """
    raw = await request.body()
    try:
        data = json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError) as e:
        raise PayloadError(str(e))
    if not isinstance(data, dict):
        raise PayloadError("body is not a JSON object")
    return data


# ============================================================================
# Health & Status Endpoints
# ============================================================================

@app.get("/", tags=["Status"])
async def root():
    """Root endpoint"""
    return {
        "service": "Booking Conversions Bridge",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/health", response_model=HealthResponse, tags=["Status"])
async def health_check(
    correlation_id: str = Depends(add_correlation_id),
    current: ConversionPipeline = Depends(get_pipeline),
    config: Settings = Depends(get_settings)
):
    """
    Health check of configuration and in-memory stores

    Expired attribution and dedup entries are swept before reporting.
    """
    context = current.context
    for store in (context.attribution_store, context.dedup_store):
        sweep = getattr(store, "sweep", None)
        if sweep:
            sweep()
    return health_checker.check_all(config, context)


# ============================================================================
# Webhook Endpoints
# ============================================================================

@app.post("/webhooks/intent", response_model=WebhookResponse, response_model_exclude_none=True, tags=["Webhooks"])
@app.post("/capi/initiate-checkout", response_model=WebhookResponse, response_model_exclude_none=True, tags=["Webhooks"])
async def intent_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    correlation_id: str = Depends(add_correlation_id),
    current: ConversionPipeline = Depends(get_pipeline)
):
    """
    Receive a checkout intent from the website

    The attribution record is stored before responding; the intent event
    itself is delivered in the background.
    """
    try:
        data = await read_json_body(request)
        if not data.get("test_event_code") and request.query_params.get("test_event_code"):
            data["test_event_code"] = request.query_params["test_event_code"]
        intent = IntentRequest.model_validate(data)
        ip, user_agent = client_metadata(request)
        result = current.handle_intent(intent, ip, user_agent)
    except (PayloadError, ValidationError) as e:
        logger.warning(f"Intent call skipped: {e}")
        return skipped(SkipReason.MALFORMED_PAYLOAD).to_dict()

    background_tasks.add_task(current.deliver_intent, result)
    return result.to_dict()


@app.post("/webhooks/booking", response_model=WebhookResponse, response_model_exclude_none=True, tags=["Webhooks"])
@app.post("/webhooks/mangomint", response_model=WebhookResponse, response_model_exclude_none=True, tags=["Webhooks"])
async def booking_webhook(
    request: Request,
    correlation_id: str = Depends(add_correlation_id),
    current: ConversionPipeline = Depends(get_pipeline)
):
    """
    Receive a booking/sale webhook from the scheduling platform

    Always acknowledged with 200 (skip reasons and delivery failures are in
    the body) except when the shared secret is wrong, which returns 401.
    """
    provided = request.headers.get("x-webhook-secret") or request.query_params.get("secret")
    try:
        current.authenticate(provided)
    except AuthenticationError as e:
        logger.warning(f"Booking webhook rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    try:
        envelope = BookingEnvelope.from_payload(await read_json_body(request))
    except (PayloadError, ValidationError) as e:
        logger.warning(f"Booking webhook skipped: {e}")
        return skipped(SkipReason.MALFORMED_PAYLOAD).to_dict()

    ip, user_agent = client_metadata(request)
    test_event_code = request.query_params.get("test_event_code")
    try:
        result: PipelineResult = await run_in_threadpool(
            current.handle_booking, envelope, ip, user_agent, test_event_code
        )
    except Exception as e:
        # Upstream retries aggressively on errors, so never surface a 5xx here
        logger.exception(f"Booking webhook processing error: {e}")
        return PipelineResult(status=ResultStatus.FAILED, error=str(e)).to_dict()

    return result.to_dict()


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    logger.info("Starting Booking Conversions Bridge...")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower()
    )
