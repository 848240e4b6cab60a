import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status

from inquiry_sync.config import settings
from inquiry_sync.gateway import DuplicateInquiryError, GatewayError, HttpStoreGateway
from inquiry_sync.ledger import AcknowledgementLedger
from inquiry_sync.logging_utils import RequestLoggingMiddleware, log_action_data, setup_logging
from inquiry_sync.metrics import get_metrics, get_metrics_content_type
from inquiry_sync.notifications import NotificationCenter
from inquiry_sync.registry import (
    AccountSession,
    ApprovalSideEffectError,
    InquiryNotFoundError,
    InquiryRegistry,
)
from inquiry_sync.schemas import (
    AcceptedResponse,
    AllowedActionsResponse,
    ErrorResponse,
    HealthResponse,
    Inquiry,
    InquiryCreate,
    InquiryListResponse,
    Message,
    MessageListResponse,
    NotificationListResponse,
    SendMessageRequest,
    SessionRequest,
    SessionResponse,
    StatusUpdateRequest,
)
from inquiry_sync.status import InvalidStatusTransition, allowed_transitions
from inquiry_sync.storage import check_db_health, init_db
from inquiry_sync.thread import EmptyMessageError


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_http_gateway(session: AccountSession) -> HttpStoreGateway:
    """Default gateway factory: one REST client per signed-in account."""
    return HttpStoreGateway(
        settings.STORE_URL,
        session.account_id,
        api_key=settings.STORE_API_KEY,
        timeout=settings.STORE_TIMEOUT_SECONDS,
    )


async def end_session(app: FastAPI, reset_ledger: bool = False) -> bool:
    """Tear down the active registry, if any. Returns False when no session existed."""
    registry = app.state.registry
    if registry is None:
        return False
    app.state.registry = None
    await registry.stop()
    if reset_ledger:
        registry.ledger.reset()

    gateway, app.state.gateway = app.state.gateway, None
    aclose = getattr(gateway, "aclose", None)
    if aclose is not None:
        await aclose()
    logger.info(f"Session ended for account {registry.account_id}")
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize local storage
    - Shutdown: Stop polling for the active session
    """
    init_db()
    yield
    await end_session(app)


app = FastAPI(
    title="Inquiry Sync API",
    description="Adoption inquiry and chat synchronization core",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.gateway_factory = build_http_gateway
app.state.gateway = None
app.state.registry = None
app.state.notifier = NotificationCenter()

app.add_middleware(RequestLoggingMiddleware)


def get_registry(request: Request) -> InquiryRegistry:
    registry = request.app.state.registry
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="no active session"
        )
    return registry


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. STORE_URL is set (non-empty)
    2. Local storage is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.STORE_URL:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="STORE_URL not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Local storage not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Session Routes
# =============================================================================

@app.post("/session", response_model=SessionResponse)
async def start_session(body: SessionRequest, request: Request) -> SessionResponse:
    """
    Sign the local user in: load their ledger, fetch inquiries once and start
    the registry poll. An existing session is ended first.
    """
    await end_session(request.app)

    session = AccountSession(account_id=body.account_id, role=body.role)
    gateway = request.app.state.gateway_factory(session)
    registry = InquiryRegistry(
        session,
        inquiry_gateway=gateway,
        message_gateway=gateway,
        pet_gateway=gateway,
        ledger=AcknowledgementLedger(session.account_id),
        notifier=request.app.state.notifier,
    )
    request.app.state.gateway = gateway
    request.app.state.registry = registry
    await registry.start()

    logger.info(f"Session started for {body.role.value} account {body.account_id}")
    return SessionResponse(account_id=body.account_id, role=body.role)


@app.delete("/session", response_model=AcceptedResponse)
async def stop_session(request: Request, reset_ledger: bool = False) -> AcceptedResponse:
    """
    Sign out: stop every poll. With reset_ledger=true the account's
    acknowledgement ledger is cleared as well.
    """
    ended = await end_session(request.app, reset_ledger=reset_ledger)
    return AcceptedResponse(status="ok" if ended else "no_session")


# =============================================================================
# Inquiry Routes
# =============================================================================

@app.get("/inquiries", response_model=InquiryListResponse)
async def list_inquiries(registry: InquiryRegistry = Depends(get_registry)) -> InquiryListResponse:
    """
    Inquiries visible to the current account with the derived unread count.
    """
    inquiries = registry.inquiries
    return InquiryListResponse(
        data=inquiries,
        total=len(inquiries),
        unread_count=registry.unread_count,
    )


@app.post(
    "/inquiries",
    response_model=AcceptedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"model": ErrorResponse, "description": "Inquiry already submitted"},
        502: {"model": ErrorResponse, "description": "Remote store error"},
    }
)
async def create_inquiry(
    body: InquiryCreate,
    request: Request,
    registry: InquiryRegistry = Depends(get_registry),
) -> AcceptedResponse:
    """Submit a new inquiry; the list is refreshed from the store afterwards."""
    try:
        await registry.create(body)
    except DuplicateInquiryError as e:
        log_action_data(request, action="create_inquiry", result="duplicate")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except GatewayError as e:
        log_action_data(request, action="create_inquiry", result="gateway_error")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    log_action_data(request, action="create_inquiry", result="created")
    return AcceptedResponse(status="created")


@app.post(
    "/inquiries/{inquiry_id}/acknowledge",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def acknowledge_inquiry(
    inquiry_id: str,
    request: Request,
    registry: InquiryRegistry = Depends(get_registry),
) -> AcceptedResponse:
    """
    Mark an inquiry as seen. Read-state sync and the automatic move to
    Contacted continue in the background.
    """
    registry.acknowledge(inquiry_id)
    log_action_data(request, inquiry_id=inquiry_id, action="acknowledge", result="ok")
    return AcceptedResponse()


@app.get(
    "/inquiries/{inquiry_id}/actions",
    response_model=AllowedActionsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def inquiry_actions(
    inquiry_id: str,
    registry: InquiryRegistry = Depends(get_registry),
) -> AllowedActionsResponse:
    """Status changes the current role may offer for this inquiry."""
    inquiry = registry.get(inquiry_id)
    if inquiry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="inquiry not found")
    return AllowedActionsResponse(
        inquiry_id=inquiry.id,
        status=inquiry.status,
        actions=allowed_transitions(inquiry.status, registry.role),
    )


@app.put(
    "/inquiries/{inquiry_id}/status",
    response_model=Inquiry,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown inquiry"},
        409: {"model": ErrorResponse, "description": "Transition not allowed"},
        502: {"model": ErrorResponse, "description": "Remote store error"},
    }
)
async def update_inquiry_status(
    inquiry_id: str,
    body: StatusUpdateRequest,
    request: Request,
    registry: InquiryRegistry = Depends(get_registry),
) -> Inquiry:
    """
    Change an inquiry's status. Approving also marks the pet as adopted; if
    that part fails the inquiry stays approved and 502 is returned.
    """
    try:
        updated = await registry.set_status(inquiry_id, body.status)
    except InquiryNotFoundError:
        log_action_data(request, inquiry_id=inquiry_id, action="set_status", result="not_found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="inquiry not found")
    except InvalidStatusTransition as e:
        log_action_data(request, inquiry_id=inquiry_id, action="set_status", result="invalid_transition")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ApprovalSideEffectError as e:
        log_action_data(request, inquiry_id=inquiry_id, action="set_status", result="pet_update_failed")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except GatewayError as e:
        log_action_data(request, inquiry_id=inquiry_id, action="set_status", result="gateway_error")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    log_action_data(request, inquiry_id=inquiry_id, action="set_status", result=body.status.value)
    return updated


# =============================================================================
# Thread Routes
# =============================================================================

async def _open_thread(registry: InquiryRegistry, inquiry_id: str):
    try:
        return await registry.open_thread(inquiry_id)
    except InquiryNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="inquiry not found")


@app.post("/inquiries/{inquiry_id}/thread", response_model=MessageListResponse)
async def open_thread(
    inquiry_id: str,
    registry: InquiryRegistry = Depends(get_registry),
) -> MessageListResponse:
    """Open the conversation and start polling it."""
    thread = await _open_thread(registry, inquiry_id)
    return MessageListResponse(inquiry_id=inquiry_id, data=thread.messages)


@app.delete("/inquiries/{inquiry_id}/thread", response_model=AcceptedResponse)
async def close_thread(
    inquiry_id: str,
    registry: InquiryRegistry = Depends(get_registry),
) -> AcceptedResponse:
    closed = await registry.close_thread(inquiry_id)
    return AcceptedResponse(status="closed" if closed else "not_open")


@app.get(
    "/inquiries/{inquiry_id}/messages",
    response_model=MessageListResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown inquiry"},
        409: {"model": ErrorResponse, "description": "Thread is not open"},
    }
)
async def list_thread_messages(
    inquiry_id: str,
    registry: InquiryRegistry = Depends(get_registry),
) -> MessageListResponse:
    """
    Current message list, deduplicated and ordered by timestamp ascending.

    Read-only: the thread must have been opened with POST /thread first.
    """
    if registry.get(inquiry_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="inquiry not found")
    thread = registry.thread(inquiry_id)
    if thread is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="thread is not open")
    return MessageListResponse(inquiry_id=inquiry_id, data=thread.messages)


@app.post(
    "/inquiries/{inquiry_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown inquiry"},
        422: {"description": "Empty message"},
        502: {"model": ErrorResponse, "description": "Remote store error"},
    }
)
async def send_thread_message(
    inquiry_id: str,
    body: SendMessageRequest,
    request: Request,
    registry: InquiryRegistry = Depends(get_registry),
) -> Message:
    thread = await _open_thread(registry, inquiry_id)
    try:
        message = await thread.send(body.text)
    except EmptyMessageError as e:
        log_action_data(request, inquiry_id=inquiry_id, action="send_message", result="empty")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except GatewayError as e:
        log_action_data(request, inquiry_id=inquiry_id, action="send_message", result="gateway_error")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    log_action_data(request, inquiry_id=inquiry_id, action="send_message", result="sent")
    return message


# =============================================================================
# Notification Routes
# =============================================================================

@app.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(request: Request) -> NotificationListResponse:
    return NotificationListResponse(data=request.app.state.notifier.recent)


@app.delete("/notifications/{notification_id}", response_model=AcceptedResponse)
async def dismiss_notification(notification_id: str, request: Request) -> AcceptedResponse:
    if not request.app.state.notifier.dismiss(notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
    return AcceptedResponse(status="dismissed")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
