"""FastAPI application for contractor invoice retrieval.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Generate-if-missing invoice links
- Streamed PDF fallback when links cannot be signed
- Structured error responses
- Prometheus metrics for monitoring

Caller identity is resolved upstream and forwarded in the ``X-User-Id``
header; this service never verifies tokens itself.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from services.api import metrics
from services.invoices.errors import (
    AccessDenied,
    BuildInProgress,
    InvoiceError,
    NotFound,
    StorageUnavailable,
)
from services.invoices.factory import create_orchestrator
from services.invoices.orchestrator import GenerationOrchestrator
from services.invoices.schema import InvoiceLink
from services.shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, bool] = {}


class InvoiceLinkData(BaseModel):
    """Download link details, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    expires_in: int = Field(alias="expiresIn")
    invoice_number: str = Field(alias="invoiceNumber")


class InvoiceResponse(BaseModel):
    """Successful invoice request response."""

    status: str = "success"
    message: str | None = None
    data: InvoiceLinkData


def _error(status_code: int, state: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": state, "message": message})


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Resolve the orchestrator built for this application."""
    return request.app.state.orchestrator


def get_caller_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated user id forwarded by the auth gateway.

    Raises:
        HTTPException: 401 if the header is missing
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    return x_user_id


def _serve_invoice(
    action: Callable[[str, str], InvoiceLink],
    orchestrator: GenerationOrchestrator,
    submission_id: str,
    caller_id: str,
    message: str | None = None,
) -> Response | InvoiceResponse:
    """Run an orchestrator action and map its outcome to an HTTP response."""
    try:
        link = action(submission_id, caller_id)
    except NotFound as e:
        logger.info(f"Invoice request for {submission_id} not found: {e}")
        return _error(status.HTTP_404_NOT_FOUND, "error", "Submission not found")
    except AccessDenied:
        return _error(
            status.HTTP_403_FORBIDDEN,
            "error",
            "Access denied. You can only view your own invoices.",
        )
    except BuildInProgress:
        return _error(
            status.HTTP_202_ACCEPTED,
            "generating",
            "Invoice is being generated. Please retry shortly.",
        )
    except StorageUnavailable as e:
        logger.error(f"Signed URL unavailable for {submission_id}, streaming instead: {e}")
        return _stream_invoice(orchestrator, submission_id, caller_id)
    except InvoiceError as e:
        logger.error(f"Invoice request for {submission_id} failed: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "failed", str(e))

    logger.info(f"Returning signed URL for {link.storage_path} (cached: {link.cached})")
    return InvoiceResponse(
        message=message,
        data=InvoiceLinkData(
            url=link.url,
            expires_in=link.expires_in,
            invoice_number=link.invoice_number,
        ),
    )


def _stream_invoice(
    orchestrator: GenerationOrchestrator, submission_id: str, caller_id: str
) -> Response:
    try:
        data, filename = orchestrator.fetch_artifact(submission_id, caller_id)
    except InvoiceError as e:
        logger.error(f"Fallback download failed for {submission_id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "error", "Failed to retrieve invoice")

    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


def create_app(
    settings: Settings | None = None,
    orchestrator: GenerationOrchestrator | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        orchestrator: Prebuilt orchestrator (built on startup if omitted)

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = create_orchestrator(settings)
        logger.info(f"{settings.service_name} {settings.service_version} started")
        yield
        logger.info(f"{settings.service_name} shutting down")

    app = FastAPI(
        title="Contractor Invoicing Service",
        description="Invoice generation and delivery for contractor submissions",
        version=settings.service_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Middleware to collect request metrics.

        Tracks:
        - Request count by method, endpoint, and status
        - Request duration by method and endpoint
        """
        # Skip metrics for /metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Label by route template so submission ids don't explode cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        metrics.http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        metrics.http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health_check() -> HealthResponse:
        """Health check endpoint for liveness checks.

        Returns:
            Health status information
        """
        return HealthResponse(
            status="healthy", version=settings.service_version, service=settings.service_name
        )

    @app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
    def readiness_check(
        response: Response,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
    ) -> ReadinessResponse:
        """Readiness check endpoint for Kubernetes readiness checks.

        Reports storage and database reachability; 503 when either is down.
        """
        try:
            database_ok = orchestrator.submissions.ping()
        except Exception as e:
            logger.warning(f"Database readiness check failed: {e}")
            database_ok = False

        checks = {"storage": orchestrator.store.health_check(), "database": database_ok}
        ready = all(checks.values())
        if not ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(ready=ready, checks=checks)

    @app.get("/metrics", tags=["Monitoring"])
    def get_metrics() -> Response:
        """Prometheus metrics endpoint.

        Returns:
            Prometheus metrics in text format
        """
        metrics_data, content_type = metrics.get_metrics()
        return Response(content=metrics_data, media_type=content_type)

    @app.get(
        "/api/v1/submissions/{submission_id}/invoice",
        response_model=InvoiceResponse,
        tags=["Invoices"],
    )
    def get_invoice(
        submission_id: str,
        caller_id: str = Depends(get_caller_id),  # noqa: B008
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
    ) -> Response | InvoiceResponse:
        """Get a time-limited download link for a submission's invoice.

        Generates the invoice on demand when it does not exist yet or the
        last attempt failed.

        ## Responses

        - **200**: `{status: "success", data: {url, expiresIn, invoiceNumber}}`
        - **200 (application/pdf)**: PDF streamed directly when no link could be signed
        - **202**: another request is still generating this invoice; retry shortly
        - **401**: missing `X-User-Id` header
        - **403**: the submission belongs to another contractor
        - **404**: unknown submission
        - **500**: `{status: "failed", message}` when generation failed
        """
        logger.info(f"Invoice request for submission {submission_id} by {caller_id}")
        return _serve_invoice(orchestrator.get_or_create, orchestrator, submission_id, caller_id)

    @app.post(
        "/api/v1/submissions/{submission_id}/regenerate-invoice",
        response_model=InvoiceResponse,
        tags=["Invoices"],
    )
    def regenerate_invoice(
        submission_id: str,
        caller_id: str = Depends(get_caller_id),  # noqa: B008
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
    ) -> Response | InvoiceResponse:
        """Rebuild a submission's invoice, replacing the stored PDF.

        The invoice number is kept. Responses match the GET endpoint.
        """
        logger.info(f"Regenerate request for submission {submission_id} by {caller_id}")
        return _serve_invoice(
            orchestrator.force_regenerate,
            orchestrator,
            submission_id,
            caller_id,
            message="Invoice regenerated successfully",
        )

    return app


app = create_app()
