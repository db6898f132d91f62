import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Annotated, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from convo_mirror.config import Settings, get_settings, settings as app_settings
from convo_mirror.errors import AuthenticationFailure, MalformedPayload, Misconfiguration
from convo_mirror.history import HistoryClient
from convo_mirror.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from convo_mirror.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from convo_mirror.processor import ProcessOutcome, WebhookEventProcessor
from convo_mirror.reconciler import HistoricalReconciler
from convo_mirror.schemas import (
    BackfillResponse,
    Conversation,
    ConversationsListResponse,
    HealthResponse,
    MessagesListResponse,
)
from convo_mirror.signatures import require_valid_signature
from convo_mirror.storage import SqlConversationStore, check_db_health, init_db
from convo_mirror.store import ConversationStore


SIGNATURE_HEADER = "openphone-signature"

# Setup structured JSON logging
setup_logging(app_settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Conversation Mirror",
    description="Mirrors provider SMS/voice conversations from webhooks and message history",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

_store = SqlConversationStore()


def get_store() -> ConversationStore:
    """Store adapter shared by the webhook path and the reconciler."""
    return _store


def get_processor(store: ConversationStore = Depends(get_store)) -> WebhookEventProcessor:
    return WebhookEventProcessor(store)


def get_reconciler(
    store: ConversationStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> HistoricalReconciler:
    client = HistoryClient(
        base_url=settings.PROVIDER_API_BASE_URL,
        timeout=settings.HISTORY_TIMEOUT_SECONDS,
    )
    return HistoricalReconciler(
        store,
        client,
        page_size=settings.HISTORY_PAGE_SIZE,
        lookback=timedelta(days=settings.HISTORY_LOOKBACK_DAYS),
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(
    response: Response,
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WEBHOOK_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_class=PlainTextResponse,
    responses={
        401: {"description": "Missing, malformed or mismatched signature"},
        422: {"description": "Malformed event payload"},
        500: {"description": "Webhook secret not configured"},
    }
)
async def webhook(
    request: Request,
    signature: Annotated[Optional[str], Header(alias=SIGNATURE_HEADER)] = None,
    settings: Settings = Depends(get_settings),
    processor: WebhookEventProcessor = Depends(get_processor),
) -> PlainTextResponse:
    """
    Apply one provider webhook event to the conversation store.

    - Verifies `openphone-signature: hmac;1;<unix-ms>;<base64>` over the raw body
    - Idempotent: repeated delivery of the same message id only refreshes status
    - Unrecognized event types answer 200 `Ignored` so the provider does not retry
    """
    # Read raw body; the signature covers these exact bytes
    raw_body = await request.body()

    try:
        require_valid_signature(
            signature,
            raw_body,
            settings.WEBHOOK_SECRET,
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        )
    except Misconfiguration as e:
        logger.error(f"Rejecting webhook: {e}")
        record_webhook_outcome("misconfigured")
        log_webhook_data(request, result="misconfigured")
        return PlainTextResponse("Webhook secret not configured", status_code=500)
    except AuthenticationFailure as e:
        # Reason is logged, never returned to the caller
        logger.warning(f"Webhook signature rejected: {e}")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        return PlainTextResponse("invalid signature", status_code=401)

    try:
        document = json.loads(raw_body)
        # Store writes block; keep them off the event loop
        result = await run_in_threadpool(processor.process, document)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, result="validation_error")
        return PlainTextResponse("Malformed payload", status_code=422)
    except MalformedPayload as e:
        logger.error(f"Malformed webhook event: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, result="validation_error")
        return PlainTextResponse("Malformed payload", status_code=422)

    if result.outcome == ProcessOutcome.IGNORED:
        record_webhook_outcome("ignored")
        log_webhook_data(request, result="ignored", event_type=result.event_type)
        return PlainTextResponse("Ignored")

    if result.conflict:
        outcome = "conflict"
    else:
        outcome = "duplicate" if result.duplicate else "accepted"
    record_webhook_outcome(outcome)
    log_webhook_data(
        request,
        result=outcome,
        message_id=result.message_id,
        event_type=result.event_type,
        conversation_id=result.conversation_id,
        dup=result.duplicate,
    )
    return PlainTextResponse("OK")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
def list_conversations(
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    store: ConversationStore = Depends(get_store),
) -> ConversationsListResponse:
    """Conversations ordered by lastActivityAt, most recent first."""
    return ConversationsListResponse(data=store.list_conversations(limit=limit), limit=limit)


@app.get("/conversations/{conversation_id}", response_model=Conversation)
def get_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
) -> Conversation:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")
    return conversation


@app.get("/conversations/{conversation_id}/messages", response_model=MessagesListResponse)
def list_messages(
    conversation_id: str,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    after: Annotated[Optional[datetime], Query(description="Only messages created after this time")] = None,
    store: ConversationStore = Depends(get_store),
) -> MessagesListResponse:
    """Messages ordered by createdAt ascending."""
    messages = store.list_messages(conversation_id, created_after=after, limit=limit)
    return MessagesListResponse(data=messages, limit=limit)


@app.post(
    "/conversations/{conversation_id}/backfill",
    response_model=BackfillResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def backfill_conversation(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    authorization: Annotated[Optional[str], Header()] = None,
    settings: Settings = Depends(get_settings),
    store: ConversationStore = Depends(get_store),
    reconciler: HistoricalReconciler = Depends(get_reconciler),
) -> BackfillResponse:
    """
    Schedule a best-effort back-fill of the conversation from provider history.

    The credential is the caller's bearer token, falling back to PROVIDER_API_KEY.
    The run happens after the response is sent; failures are only logged.
    """
    if store.get_conversation(conversation_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")

    credential = None
    if authorization and authorization.lower().startswith("bearer "):
        credential = authorization[7:].strip() or None
    credential = credential or settings.PROVIDER_API_KEY
    if not credential:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="provider credential required")

    background_tasks.add_task(reconciler.reconcile, conversation_id, credential)
    logger.info(f"Backfill scheduled for conversation {conversation_id}")
    return BackfillResponse(conversation_id=conversation_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
