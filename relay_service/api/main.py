"""Relay Service API.

FastAPI application providing the HTTP surface of the relay:
- POST /v1/send: Accept an email for delivery (queued)
- GET /v1/messages/{id}: Message status with its event log
- GET /queue/status: Job queue statistics
- GET /health: Service health check

Security features:
- Bearer API key authentication with scopes
- Per-project rate limiting
- Sanitized error responses

Version: 2.0.0
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Callable

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from relay_service.api.schemas import (
    ErrorResponse,
    HealthResponse,
    MessageOut,
    MessageResponse,
    QueueCounts,
    QueueStatusResponse,
    SendEmailData,
    SendEmailResponse,
)
from relay_service.config import RelayConfig
from relay_service.core.exceptions import (
    AuthenticationError,
    PolicyError,
    RelayServiceError,
    TemplateRenderError,
)
from relay_service.core.logger import get_logger, setup_logging
from relay_service.database.connection import Database
from relay_service.database.messages import MessageStore
from relay_service.database.projects import ProjectStore
from relay_service.database.queue import JobQueue
from relay_service.models.jobs import SEND_EMAIL_QUEUE, WEBHOOK_QUEUE
from relay_service.models.requests import SendEmailRequest
from relay_service.services.auth import (
    SCOPE_LOGS_READ,
    SCOPE_SEND_EMAIL,
    ApiKeyAuthenticator,
    AuthContext,
)
from relay_service.services.send import SendService

logger = get_logger(__name__)


# =============================================================================
# Application State (Dependency Injection)
# =============================================================================
@dataclass
class AppState:
    """Application state container for dependency injection."""

    config: RelayConfig
    db: Database | None = None
    send_service: SendService | None = None
    authenticator: ApiKeyAuthenticator | None = None
    messages: MessageStore | None = None
    queue: JobQueue | None = None


app_state: AppState | None = None


def _require(name: str):
    if not app_state or getattr(app_state, name) is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return getattr(app_state, name)


def get_config() -> RelayConfig:
    """Dependency: Get application configuration."""
    return _require("config")


def get_send_service() -> SendService:
    return _require("send_service")


def get_authenticator() -> ApiKeyAuthenticator:
    return _require("authenticator")


def get_message_store() -> MessageStore:
    return _require("messages")


def get_queue() -> JobQueue:
    return _require("queue")


# =============================================================================
# API Key Authentication
# =============================================================================
bearer_scheme = HTTPBearer(auto_error=False)


def require_scope(scope: str) -> Callable[..., AuthContext]:
    """Dependency factory: authenticate the bearer key and check one scope."""

    def dependency(
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
        authenticator: Annotated[ApiKeyAuthenticator, Depends(get_authenticator)],
    ) -> AuthContext:
        if credentials is None:
            raise AuthenticationError("API key required")

        context = authenticator.authenticate_bearer(credentials.credentials)
        if not context.has_scope(scope):
            logger.warning(f"API key {context.api_key.id} lacks scope {scope}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"API key does not have the {scope} scope",
            )
        return context

    return dependency


# =============================================================================
# Error Mapping
# =============================================================================
POLICY_STATUS = {
    PolicyError.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    PolicyError.RECIPIENT_SUPPRESSED: status.HTTP_400_BAD_REQUEST,
    PolicyError.TEMPLATE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    PolicyError.MISSING_CONTENT: status.HTTP_400_BAD_REQUEST,
    PolicyError.PROJECT_INACTIVE: status.HTTP_403_FORBIDDEN,
    PolicyError.IDEMPOTENCY_CONFLICT: status.HTTP_409_CONFLICT,
}


def _error_response(
    status_code: int, code: str, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
        headers=headers,
    )


async def policy_error_handler(request: Request, exc: PolicyError) -> JSONResponse:
    status_code = POLICY_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    headers = {"Retry-After": "60"} if status_code == 429 else None
    return _error_response(status_code, exc.code, exc.message, headers)


async def authentication_error_handler(
    request: Request, exc: AuthenticationError
) -> JSONResponse:
    return _error_response(
        status.HTTP_401_UNAUTHORIZED,
        "UNAUTHORIZED",
        str(exc),
        {"WWW-Authenticate": "Bearer"},
    )


async def template_error_handler(request: Request, exc: TemplateRenderError) -> JSONResponse:
    return _error_response(status.HTTP_400_BAD_REQUEST, "TEMPLATE_RENDER_ERROR", str(exc))


def register_exception_handlers(application: FastAPI) -> None:
    application.add_exception_handler(PolicyError, policy_error_handler)
    application.add_exception_handler(AuthenticationError, authentication_error_handler)
    application.add_exception_handler(TemplateRenderError, template_error_handler)


# =============================================================================
# Module-level Configuration
# =============================================================================
_config = RelayConfig()


# =============================================================================
# Lifespan Context Manager
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    global app_state

    app_state = AppState(config=_config)

    setup_logging(
        log_level=_config.LOG_LEVEL,
        enable_file=_config.LOG_TO_FILE,
        settings=_config,
    )

    try:
        db = Database(_config)
        app_state.db = db
        app_state.send_service = SendService.from_database(db, _config)
        app_state.authenticator = ApiKeyAuthenticator(ProjectStore(db))
        app_state.messages = app_state.send_service.messages
        app_state.queue = app_state.send_service.queue
        logger.info(f"Database connected: schema {_config.SCHEMA_NAME}")
    except RelayServiceError as e:
        logger.error(f"Failed to start API: {e}")
        raise

    yield  # Application runs here

    logger.info(f"Shutting down {_config.SERVICE_NAME}...")
    if app_state and app_state.db:
        app_state.db.close()
    logger.info(f"{_config.SERVICE_NAME} stopped")


# =============================================================================
# FastAPI Application
# =============================================================================
def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    application = FastAPI(
        title=_config.SERVICE_NAME,
        description="Transactional email relay: HTTP and SMTP submission with queued delivery",
        version=_config.SERVICE_VERSION,
        lifespan=lifespan,
    )
    register_exception_handlers(application)
    return application


app = create_app()


# =============================================================================
# API Endpoints
# =============================================================================
@app.post(
    "/v1/send",
    response_model=SendEmailResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "Recipient suppressed or no content"},
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Missing scope or inactive project"},
        404: {"model": ErrorResponse, "description": "Template not found"},
        409: {"model": ErrorResponse, "description": "Idempotency key in use"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
)
def send_email(
    request: SendEmailRequest,
    auth: Annotated[AuthContext, Depends(require_scope(SCOPE_SEND_EMAIL))],
    send_service: Annotated[SendService, Depends(get_send_service)],
    idempotency_key: Annotated[str | None, Header(max_length=255)] = None,
) -> SendEmailResponse:
    """Queue an email for delivery.

    The ``Idempotency-Key`` header (or the ``idempotencyKey`` body field)
    makes retries safe: a repeated key returns the first response.
    """
    try:
        result = send_service.send(
            auth.project_id,
            request,
            api_key_id=auth.api_key.id,
            idempotency_key=idempotency_key,
        )
    except (PolicyError, TemplateRenderError):
        raise
    except RelayServiceError as e:
        logger.error(f"Failed to queue email: {e}", exc_info=True)
        # Return sanitized error to client (intentionally not chaining)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process email request",
        ) from None

    return SendEmailResponse(data=SendEmailData(**result))


@app.get(
    "/v1/messages/{message_id}",
    response_model=MessageResponse,
    response_model_by_alias=True,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        404: {"model": ErrorResponse, "description": "Message not found"},
    },
)
def get_message(
    message_id: str,
    auth: Annotated[AuthContext, Depends(require_scope(SCOPE_LOGS_READ))],
    messages: Annotated[MessageStore, Depends(get_message_store)],
) -> MessageResponse | JSONResponse:
    """Get one message of the caller's project with its events, oldest first."""
    message = messages.get_message(message_id, auth.project_id)
    if message is None:
        return _error_response(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Message not found")

    events = messages.get_events(message.id)
    return MessageResponse(data=MessageOut.from_record(message, events))


@app.get(
    "/queue/status",
    response_model=QueueStatusResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
)
def get_queue_status_endpoint(
    queue: Annotated[JobQueue, Depends(get_queue)],
    _auth: Annotated[AuthContext, Depends(require_scope(SCOPE_LOGS_READ))],
) -> QueueStatusResponse:
    """Get job counts for the send-email and webhook queues."""
    try:
        queues = {}
        for queue_name in (SEND_EMAIL_QUEUE, WEBHOOK_QUEUE):
            stats = queue.get_queue_stats(queue_name)
            queues[queue_name] = QueueCounts(
                waiting=stats.waiting_count,
                active=stats.active_count,
                delayed=stats.delayed_count,
                completed=stats.completed_count,
                failed=stats.failed_count,
                success_rate=round(stats.success_rate, 2),
            )
        return QueueStatusResponse(queues=queues)

    except RelayServiceError as e:
        logger.error(f"Failed to get queue status: {e}", exc_info=True)
        # Return sanitized error to client (intentionally not chaining)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve queue status",
        ) from None


@app.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": ErrorResponse, "description": "Service unhealthy"}},
)
def health_check(
    queue: Annotated[JobQueue, Depends(get_queue)],
    config: Annotated[RelayConfig, Depends(get_config)],
) -> HealthResponse | JSONResponse:
    """Check service health.

    No authentication required - used by load balancers and monitoring.
    """
    db_status = "ok" if queue.health_check() else "error"
    overall_status = "ok" if db_status == "ok" else "degraded"

    response = HealthResponse(
        status=overall_status,
        db=db_status,
        transport=config.TRANSPORT_MODE,
        version=config.SERVICE_VERSION,
    )

    if overall_status != "ok":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


# =============================================================================
# Entry Point
# =============================================================================
def run():
    """Run the API server."""
    import uvicorn

    logger.info(
        f"Starting {_config.SERVICE_NAME} on {_config.API_HOST}:{_config.API_PORT}"
    )
    uvicorn.run(
        "relay_service.api.main:app",
        host=_config.API_HOST,
        port=_config.API_PORT,
        reload=False,
    )


if __name__ == "__main__":
    run()
