import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Annotated, Callable, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse, PlainTextResponse
from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import VoiceResponse

from chatrelay import admin
from chatrelay.autoreply import ReplyGenerator, build_generator
from chatrelay.broadcaster import Broadcaster
from chatrelay.config import Settings, get_settings
from chatrelay.dependencies import get_app_settings, get_message_router, get_store
from chatrelay.errors import NotFoundError, RelayError, SignatureError, ValidationError
from chatrelay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from chatrelay.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from chatrelay.providers import InboundPayload, MessagingGateway, build_gateway
from chatrelay.routing import InboundEvent, MessageRouter
from chatrelay.schemas import (
    ErrorResponse,
    HealthResponse,
    MessageDetailResponse,
    MessageResponse,
    SendMessageRequest,
)
from chatrelay.sessions import SessionResolver
from chatrelay.storage import ConversationStore, create_store
from chatrelay.utils import utcnow


logger = logging.getLogger(__name__)

WEBHOOK_KINDS = ("sms", "whatsapp", "voice")
VOICE_GREETING = "Thank you for calling. Your call has been received."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Create tables
    - Shutdown: Release database connections
    """
    app.state.store.init_db()
    yield
    app.state.store.dispose()


# =============================================================================
# Health Check Routes
# =============================================================================

health_router = APIRouter()


@health_router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@health_router.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    store: Annotated[ConversationStore, Depends(get_store)],
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 (Service Unavailable) otherwise.
    """
    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


@health_router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - webhook_requests_total: Webhook outcomes by kind and result
    - auto_reply_total: Automated reply outcomes
    - provider_sends_total: Provider deliveries by channel type and result
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Webhook Routes
# =============================================================================

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _twiml(kind: str) -> Response:
    if kind == "voice":
        twiml = VoiceResponse()
        twiml.say(VOICE_GREETING, voice="alice")
        twiml.pause(length=1)
        twiml.say("Goodbye!")
    else:
        twiml = MessagingResponse()
    return Response(content=str(twiml), media_type="application/xml")


async def _verified_form(request: Request, kind: str, settings: Settings) -> dict:
    """
    Read the webhook body and, when enabled, check the provider signature.

    Twilio posts form fields. SNS posts a JSON envelope, announced by the
    x-amz-sns-message-type header.

    Raises:
        SignatureError: the signature does not match (403)
    """
    if request.headers.get("x-amz-sns-message-type"):
        try:
            form = json.loads(await request.body())
        except ValueError as e:
            record_webhook_outcome(kind, "validation_error")
            raise ValidationError("sns body is not valid json") from e
        if not isinstance(form, dict):
            record_webhook_outcome(kind, "validation_error")
            raise ValidationError("sns body must be a json object")
    else:
        form = dict(await request.form())
    if not settings.WEBHOOK_SIGNATURE_VALIDATION:
        return form

    gateway = request.app.state.gateway
    url = f"{settings.WEBHOOK_BASE_URL.rstrip('/')}{request.url.path}"
    signature = request.headers.get("X-Twilio-Signature")
    if not gateway.validate_inbound_signature(url, form, signature):
        record_webhook_outcome(kind, "invalid_signature")
        log_webhook_data(request=request, kind=kind, result="invalid_signature")
        raise SignatureError("invalid signature")
    return form


def _parse_payload(request: Request, kind: str, form: dict, gateway: MessagingGateway) -> InboundPayload:
    try:
        return gateway.parse_inbound_payload(form, kind)
    except ValidationError:
        record_webhook_outcome(kind, "validation_error")
        log_webhook_data(request=request, kind=kind, result="validation_error")
        raise


async def _handle_provider_event(
    request: Request,
    kind: str,
    background_tasks: BackgroundTasks,
    settings: Settings,
    message_router: MessageRouter,
) -> Response:
    """
    Shared body of the sms/whatsapp/voice webhooks.

    Validation failures are rejected with 400 before anything is stored.
    Anything that goes wrong after that is logged and the provider still
    gets its acknowledgment, so it does not retry an event we already hold.
    """
    logger.info(f"{kind} webhook request received")
    form = await _verified_form(request, kind, settings)
    payload = _parse_payload(request, kind, form, message_router.gateway)

    missing = [
        name for name, value in (("From", payload.from_number), ("To", payload.to_number))
        if not value
    ]
    if kind != "voice" and not payload.body:
        missing.append("Body")
    if missing:
        logger.error(f"Missing required fields in {kind} webhook: {', '.join(missing)}")
        record_webhook_outcome(kind, "validation_error")
        log_webhook_data(
            request=request,
            kind=kind,
            provider_message_id=payload.provider_message_id,
            result="validation_error",
        )
        raise ValidationError(f"missing required fields: {', '.join(missing)}")

    event = InboundEvent(
        communication_type=kind,
        remote_number=payload.from_number,
        local_number=payload.to_number,
        body=payload.body,
        provider_message_id=payload.provider_message_id,
        media_count=payload.num_media,
        media_urls=payload.media_urls,
        profile_name=payload.profile_name,
    )

    try:
        routed = await message_router.handle_inbound(event, schedule=background_tasks.add_task)
    except Exception:
        logger.exception(f"Error processing {kind} webhook")
        record_webhook_outcome(kind, "error")
        log_webhook_data(
            request=request,
            kind=kind,
            provider_message_id=payload.provider_message_id,
            result="error",
        )
        return _twiml(kind)

    result = "duplicate" if routed.duplicate else "accepted"
    logger.info(f"{kind} event from {payload.from_number} stored in session {routed.message.session_id}")
    record_webhook_outcome(kind, result)
    log_webhook_data(
        request=request,
        kind=kind,
        provider_message_id=payload.provider_message_id,
        session_id=routed.message.session_id,
        result=result,
    )
    return _twiml(kind)


@webhook_router.post(
    "/sms",
    responses={
        400: {"model": ErrorResponse, "description": "Missing From, To or Body"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def sms_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Annotated[Settings, Depends(get_app_settings)],
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
) -> Response:
    """Inbound SMS/MMS from the provider. Responds with empty TwiML."""
    return await _handle_provider_event(request, "sms", background_tasks, settings, message_router)


@webhook_router.post(
    "/whatsapp",
    responses={
        400: {"model": ErrorResponse, "description": "Missing From, To or Body"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Annotated[Settings, Depends(get_app_settings)],
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
) -> Response:
    """Inbound WhatsApp message; numbers arrive with a whatsapp: prefix."""
    return await _handle_provider_event(request, "whatsapp", background_tasks, settings, message_router)


@webhook_router.post(
    "/voice",
    responses={
        400: {"model": ErrorResponse, "description": "Missing From or To"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def voice_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Annotated[Settings, Depends(get_app_settings)],
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
) -> Response:
    """Incoming call. Logged as a call message and answered with a short greeting."""
    return await _handle_provider_event(request, "voice", background_tasks, settings, message_router)


@webhook_router.post("/status", response_class=PlainTextResponse)
async def status_webhook(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
) -> str:
    """
    Delivery status callback for messages we sent.

    Unknown message ids and unknown statuses are acknowledged and ignored.
    """
    form = await _verified_form(request, "status", settings)
    payload = _parse_payload(request, "status", form, message_router.gateway)
    logger.info(f"Received status callback: {payload.provider_message_id} -> {payload.status}")

    try:
        message = await message_router.handle_status_callback(payload.provider_message_id, payload.status)
    except Exception:
        logger.exception("Error processing status callback")
        record_webhook_outcome("status", "error")
        log_webhook_data(
            request=request,
            kind="status",
            provider_message_id=payload.provider_message_id,
            result="error",
        )
        return "OK"

    result = "updated" if message is not None else "ignored"
    record_webhook_outcome("status", result)
    log_webhook_data(
        request=request,
        kind="status",
        provider_message_id=payload.provider_message_id,
        session_id=message.session_id if message is not None else None,
        result=result,
    )
    return "OK"


@webhook_router.get("/health")
async def webhook_health(
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
) -> dict:
    """Lists the webhook endpoints and how the messaging provider is configured."""
    return {
        "status": "ok",
        "message": "Webhook endpoints are active",
        "endpoints": {kind: f"/webhooks/{kind}" for kind in (*WEBHOOK_KINDS, "status")},
        "provider": message_router.gateway.configuration_status(),
    }


# =============================================================================
# Messages Routes
# =============================================================================

messages_router = APIRouter(prefix="/messages", tags=["messages"])


@messages_router.get("/channel/{channel_id}", response_model=list[MessageResponse])
async def list_channel_messages(
    channel_id: str,
    store: Annotated[ConversationStore, Depends(get_store)],
    session_id: Annotated[Optional[str], Query(description="Only messages of this session")] = None,
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
):
    """
    List a channel's messages, newest first.

    Query Parameters:
        - session_id: Restrict to one session
        - limit: Maximum messages per page (default 50, min 1, max 500)
        - offset: Number of messages to skip (default 0)
    """
    logger.info(f"GET /messages/channel/{channel_id}: session_id={session_id}, limit={limit}, offset={offset}")
    messages = await store.list_channel_messages(
        channel_id, session_id=session_id, limit=limit, offset=offset
    )
    logger.debug(f"Retrieved {len(messages)} messages for channel {channel_id}")
    return messages


@messages_router.get("/{message_id}", response_model=MessageDetailResponse)
async def get_message(
    message_id: str,
    store: Annotated[ConversationStore, Depends(get_store)],
):
    message = await store.get_message(message_id)
    if message is None:
        raise NotFoundError("Message", message_id)
    return message


@messages_router.post(
    "",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid message"},
        404: {"model": ErrorResponse, "description": "Unknown channel or session"},
    },
)
async def send_message(
    body: SendMessageRequest,
    background_tasks: BackgroundTasks,
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
):
    """
    Operator entry point for composing a message in the chat UI.

    The message is stored and broadcast before the response is sent. A
    "contact" message is also delivered to remote_number; a "user" message
    triggers the automated reply in the background.
    """
    routed = await message_router.handle_outbound_user_send(
        channel_id=body.channel_id,
        content=body.content,
        sender=body.sender,
        communication_type=body.communication_type,
        remote_number=body.remote_number,
        local_number=body.local_number,
        session_id=body.session_id,
        message_type=body.type,
        schedule=background_tasks.add_task,
    )
    return routed.message


# =============================================================================
# Realtime Route
# =============================================================================

realtime_router = APIRouter()


@realtime_router.websocket("/ws/channels/{channel_id}")
async def channel_stream(websocket: WebSocket, channel_id: str):
    """Pushes every message stored for channel_id as a new_message event."""
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    broadcaster.join(channel_id, websocket)
    try:
        await websocket.accept()
        # Client frames are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Realtime subscriber left channel {channel_id}")
    finally:
        broadcaster.leave(channel_id, websocket)


# =============================================================================
# Application factory
# =============================================================================

async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ConversationStore] = None,
    gateway: Optional[MessagingGateway] = None,
    generator: Optional[ReplyGenerator] = None,
    broadcaster: Optional[Broadcaster] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """
    Build the application and wire its collaborators.

    Anything not passed in is built from settings; tests pass fakes.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    store = store or create_store(settings.DATABASE_URL, initialize=False)
    gateway = gateway or build_gateway(settings)
    generator = generator or build_generator(settings)
    broadcaster = broadcaster or Broadcaster()

    resolver = SessionResolver(store, idle_window=timedelta(seconds=settings.SESSION_IDLE_WINDOW_SECONDS))
    message_router = MessageRouter(
        store=store,
        resolver=resolver,
        gateway=gateway,
        generator=generator,
        broadcaster=broadcaster,
        auto_reply_enabled=settings.AUTO_REPLY_ENABLED,
        reply_timeout_seconds=settings.AUTO_REPLY_TIMEOUT_SECONDS,
        provider_timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        clock=clock or utcnow,
    )

    app = FastAPI(
        title="Chat Relay API",
        description="Multi-channel chat relay for SMS, WhatsApp and voice conversations",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.broadcaster = broadcaster
    app.state.message_router = message_router

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(RelayError, relay_error_handler)

    app.include_router(health_router)
    app.include_router(webhook_router)
    app.include_router(messages_router)
    app.include_router(admin.router)
    app.include_router(realtime_router)

    logger.info(
        f"Chat relay configured: gateway={gateway.name}, generator={generator.name}, "
        f"auto_reply={'on' if settings.AUTO_REPLY_ENABLED else 'off'}"
    )
    return app


app = create_app()
