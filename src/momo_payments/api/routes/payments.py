"""Payment API endpoints."""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import PlainTextResponse

from momo_payments.api.dependencies import (
    Components,
    DbSession,
    UserId,
    Verifier,
    require_admin,
    require_admin_if_configured,
)
from momo_payments.api.schemas import (
    AdminTriggerRequest,
    ErrorResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    SessionStatusResponse,
    StatusRequest,
    SweepResponse,
    WebhookResponse,
)
from momo_payments.errors import ForbiddenError
from momo_payments.metrics import MetricsCollector
from momo_payments.services.initiation import InitiatePayment, PaymentInitiator
from momo_payments.services.monitor import StuckSessionMonitor
from momo_payments.services.reconciler import OrderReconciler
from momo_payments.services.session_store import SessionStore
from momo_payments.services.webhook_verifier import IngestResult

router = APIRouter(prefix="/payments", tags=["payments"])

STATUS_MESSAGES = {
    "pending": "Waiting for payment confirmation from mobile money provider.",
    "processing": "Payment is being processed. Please check your phone for confirmation.",
    "failed": "Payment failed. Please try again or use a different payment method.",
    "expired": "Payment session expired. Please start a new payment.",
}


def status_message(status: str, has_order: bool) -> str:
    """Customer-facing text for a session status."""
    if status == "completed":
        if has_order:
            return "Payment completed and order created successfully"
        return "Payment completed, order is being processed"
    return STATUS_MESSAGES.get(status, "Payment status unknown")


def _webhook_response(result: IngestResult) -> WebhookResponse:
    return WebhookResponse(
        outcome=result.outcome,
        duplicate=result.duplicate,
        reference=result.reference,
        status=result.status,
    )


# ============================================================================
# Initiation
# ============================================================================


@router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def initiate_payment(
    db: DbSession,
    components: Components,
    user_id: UserId,
    payload: InitiatePaymentRequest,
) -> InitiatePaymentResponse:
    """Create a payment session and push the prompt to the buyer's phone."""
    initiator = PaymentInitiator(db, components.gateway, components.config)
    result = await initiator.initiate(
        user_id,
        InitiatePayment(
            amount=payload.amount,
            currency=payload.currency.upper(),
            provider=payload.provider,
            phone_number=payload.phone_number,
            order_data=payload.order_data,
        ),
    )
    return InitiatePaymentResponse(
        transaction_reference=result.reference,
        status=result.status,
        message=result.message,
        is_duplicate=result.is_duplicate,
        gateway_transaction_id=result.gateway_transaction_id,
    )


# ============================================================================
# Webhooks
# ============================================================================


@router.post(
    "/webhooks",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def receive_webhook(request: Request, verifier: Verifier) -> WebhookResponse:
    """Gateway callback. Verified against the raw body bytes."""
    body = await request.body()
    result = await verifier.ingest(body, request.headers, source="gateway")
    return _webhook_response(result)


@router.post(
    "/admin/trigger",
    response_model=WebhookResponse,
    dependencies=[Depends(require_admin)],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def admin_trigger(
    db: DbSession,
    verifier: Verifier,
    payload: AdminTriggerRequest,
) -> WebhookResponse:
    """Replay a callback for one session through the normal ingestion path."""
    session = await SessionStore(db).get(payload.reference)
    result = await verifier.replay(
        session.reference,
        payload.status.upper(),
        payload.gateway_transaction_id or session.gateway_transaction_id,
        source="admin",
        extra={"manual_trigger": True},
    )
    return _webhook_response(result)


# ============================================================================
# Status
# ============================================================================


@router.post(
    "/status",
    response_model=SessionStatusResponse,
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def payment_status(
    db: DbSession,
    components: Components,
    user_id: UserId,
    payload: StatusRequest,
) -> SessionStatusResponse:
    """Current session status and the order it most likely paid for.

    Only the user who started the session may read it.
    """
    session = await SessionStore(db).get(payload.reference)
    if session.user_id != user_id:
        raise ForbiddenError("Payment session belongs to another user")
    order = await OrderReconciler(db, components.config.reconciler).find_order(session)
    return SessionStatusResponse(
        reference=session.reference,
        status=session.status,
        message=status_message(session.status, order is not None),
        amount=session.amount,
        currency=session.currency,
        provider=session.provider,
        order_id=order.id if order is not None else None,
        gateway_transaction_id=session.gateway_transaction_id,
        failure_reason=session.failure_reason,
        updated_at=session.updated_at,
    )


# ============================================================================
# Operations
# ============================================================================


@router.api_route(
    "/monitor",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    dependencies=[Depends(require_admin_if_configured)],
    responses={401: {"model": ErrorResponse}},
)
async def run_monitor(
    db: DbSession,
    components: Components,
    verifier: Verifier,
) -> SweepResponse:
    """Run one stuck-session sweep."""
    monitor = StuckSessionMonitor(
        db, verifier, components.gateway, components.config.monitor
    )
    report = await monitor.sweep()
    return SweepResponse.model_validate(report.to_dict())


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(db: DbSession, components: Components) -> PlainTextResponse:
    """Prometheus metrics."""
    collector = MetricsCollector(db, stale_after=components.config.monitor.stale_after)
    collected = await collector.collect()
    return PlainTextResponse(
        collected.to_prometheus(),
        media_type="text/plain; version=0.0.4",
    )
