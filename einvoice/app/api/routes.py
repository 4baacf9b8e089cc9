import asyncio
import logging
import uuid
from typing import Annotated, List, Optional, Set

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from einvoice.app.core.errors import (
    AuthError,
    GatewayError,
    TransportError,
)
from einvoice.app.core.wiring import SubmissionServices
from einvoice.app.events import BatchEventChannel
from einvoice.app.schemas.invoice import InvoiceItem
from einvoice.app.schemas.submission import (
    BatchResult,
    DocumentOutcome,
    TokenProbe,
)

logger = logging.getLogger("einvoice.api")

router = APIRouter(tags=["e-Invoice Submission"])


# =============================================================================
# Request bodies
# =============================================================================

class SubmitBatchRequest(BaseModel):
    items: List[InvoiceItem]


class ReconcileRequest(BaseModel):
    outcomes: List[DocumentOutcome]


class CancelDocumentRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=300)


# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Audit trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


def get_services(request: Request) -> SubmissionServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("submission services not initialized")
    return services


Services = Annotated[SubmissionServices, Depends(get_services)]
CorrelationId = Annotated[str, Depends(get_correlation_id)]


def _gateway_failure(exc: Exception, correlation_id: str) -> HTTPException:
    """Map a batch-global failure to the status the caller sees."""
    if isinstance(exc, TransportError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_502_BAD_GATEWAY

    detail = {"error_type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, GatewayError):
        detail["status_code"] = exc.status_code
        detail["code"] = exc.code

    logger.error(
        "request_failed",
        extra={
            "trace_id": correlation_id,
            "error_type": type(exc).__name__,
            "status_code": code,
        },
    )
    return HTTPException(
        status_code=code,
        detail=detail,
        headers={"X-Correlation-ID": correlation_id},
    )


# =============================================================================
# POST /connect
# =============================================================================

@router.post(
    "/connect",
    summary="Verify intake service credentials",
    response_model=TokenProbe,
    responses={502: {"description": "Token request failed"}},
)
async def connect(services: Services, correlation_id: CorrelationId) -> TokenProbe:
    """Force a credential renewal. The token itself is never returned."""
    try:
        return await services.credentials.probe()
    except AuthError as exc:
        raise _gateway_failure(exc, correlation_id) from exc


# =============================================================================
# POST /submissions
# =============================================================================

@router.post(
    "/submissions",
    summary="Submit a batch of finalized invoices",
    response_model=BatchResult,
    responses={
        502: {"description": "Intake service rejected the call"},
        503: {"description": "Intake service unreachable"},
    },
)
async def submit_batch(
    body: SubmitBatchRequest,
    services: Services,
    correlation_id: CorrelationId,
) -> BatchResult:
    """
    Validate, encode, submit and poll one batch.

    Always returns one outcome per item, in request order. Per-item
    failures appear in the outcomes, including documents still pending
    when polling gives up (TimedOut); only batch-global failures produce
    an error response.
    """
    logger.info(
        "batch_request_received",
        extra={"trace_id": correlation_id, "items": len(body.items)},
    )

    try:
        outcomes = await services.orchestrator.submit_batch(
            body.items, batch_id=correlation_id
        )
    except GatewayError as exc:
        raise _gateway_failure(exc, correlation_id) from exc

    return BatchResult.from_outcomes(outcomes)


# =============================================================================
# POST /submissions/stream
# =============================================================================

# Strong references; the loop only keeps weak ones to running tasks
_running_batches: Set["asyncio.Task[None]"] = set()


@router.post(
    "/submissions/stream",
    summary="Submit a batch and stream progress as Server-Sent Events",
    response_class=StreamingResponse,
)
async def submit_batch_stream(
    body: SubmitBatchRequest,
    services: Services,
    correlation_id: CorrelationId,
) -> StreamingResponse:
    """
    Same pipeline as POST /submissions, reported as it runs.

    The final batch_completed event carries the outcomes. A client
    disconnect does not cancel the batch: documents may already exist
    remotely.
    """
    channel = BatchEventChannel()

    async def run_batch() -> None:
        try:
            await services.orchestrator.submit_batch(
                body.items, emitter=channel, batch_id=correlation_id
            )
        except Exception:
            # batch_failed was already emitted
            logger.warning(
                "streamed_batch_failed", extra={"trace_id": correlation_id}
            )
        finally:
            await channel.close()

    task = asyncio.create_task(run_batch())
    _running_batches.add(task)
    task.add_done_callback(_running_batches.discard)

    async def event_stream():
        try:
            async for event in channel.stream():
                yield event.to_sse_payload()
        except asyncio.CancelledError:
            logger.info(
                "stream_client_disconnected", extra={"trace_id": correlation_id}
            )
            raise

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Correlation-ID": correlation_id,
        },
    )


# =============================================================================
# POST /submissions/reconcile
# =============================================================================

@router.post(
    "/submissions/reconcile",
    summary="Refresh unconfirmed outcomes from document details",
    response_model=BatchResult,
)
async def reconcile(
    body: ReconcileRequest,
    services: Services,
    correlation_id: CorrelationId,
) -> BatchResult:
    try:
        outcomes = await services.reconciler.reconcile(body.outcomes)
    except AuthError as exc:
        raise _gateway_failure(exc, correlation_id) from exc

    return BatchResult.from_outcomes(outcomes)


# =============================================================================
# POST /documents/{document_uuid}/cancel
# =============================================================================

@router.post(
    "/documents/{document_uuid}/cancel",
    summary="Cancel a previously accepted document",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def cancel_document(
    document_uuid: str,
    body: CancelDocumentRequest,
    services: Services,
    correlation_id: CorrelationId,
) -> None:
    try:
        await services.gateway.cancel_document(document_uuid, body.reason)
    except GatewayError as exc:
        raise _gateway_failure(exc, correlation_id) from exc
