import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from inquiry_sync.metrics import record_http_request


# Bound per HTTP request and per account session; copied onto every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
account_id_ctx: ContextVar[Optional[str]] = ContextVar("account_id", default=None)

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx),
    ("account_id", account_id_ctx),
)

# Third-party loggers that would otherwise log every outbound poll request
_QUIET_LOGGERS = ("httpx", "httpcore")

_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

REQUEST_ID_HEADER = "X-Request-ID"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, `level` and the bound context IDs."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = created.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value and field not in log_record:
                log_record[field] = value


def setup_logging(log_level: str = "INFO"):
    """
    Send every log line to stdout as JSON.

    Uvicorn's own loggers share the handler; its access log is disabled in
    favour of RequestLoggingMiddleware.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request.

    Log keys: ts, level, request_id, account_id (when signed in), method,
    path, status, latency_ms. Inquiry routes add inquiry_id, action and
    result through log_action_data().

    An incoming X-Request-ID is reused; otherwise one is generated. It is
    echoed on the response either way.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        registry = getattr(request.app.state, "registry", None)
        request_token = request_id_ctx.set(request_id)
        account_token = account_id_ctx.set(registry.account_id if registry is not None else None)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            elapsed = time.perf_counter() - started

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "action_log_data", {}),
            }
            logging.getLogger("inquiry_sync.requests").log(
                _level_for_status(response.status_code), "Request completed", extra=log_data
            )
            return response
        finally:
            account_id_ctx.reset(account_token)
            request_id_ctx.reset(request_token)


def log_action_data(
    request: Request,
    inquiry_id: Optional[str] = None,
    action: Optional[str] = None,
    result: Optional[str] = None,
):
    """
    Attach inquiry-action fields to the request log written by the middleware.

    Args:
        request: FastAPI request object
        inquiry_id: Inquiry the action targeted
        action: acknowledge, set_status, send_message, create_inquiry
        result: ok, created, sent, not_found, invalid_transition, gateway_error, ...
    """
    fields = {"inquiry_id": inquiry_id, "action": action, "result": result}
    request.state.action_log_data = {k: v for k, v in fields.items() if v is not None}
