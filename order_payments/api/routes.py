"""
API routes for order payments.

Domain errors propagate to the application's PaymentSystemError handler,
which renders them with their HTTP status.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_payments.core.models import Requester
from order_payments.monitoring.metrics import metrics

from .dependencies import PaymentServices, get_admin, get_requester, get_services
from .schemas import (
    BeginPaymentResponse,
    CancelOrderRequest,
    ConnectivityResponse,
    HealthCheckResponse,
    LedgerPurgeRequest,
    LedgerPurgeResponse,
    OrderResponse,
    PaymentStatusResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@order_router.post(
    "/{order_id}/pay",
    response_model=BeginPaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Begin a card payment",
    description="Create a payment authorization for the order and return its client secret",
)
async def begin_payment(
    order_id: str,
    requester: Requester = Depends(get_requester),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_begin_payment_request", order_id=order_id, user_id=str(requester.user_id))
    return await services.orchestrator.begin_payment(order_id, requester.user_id)


@order_router.get(
    "/{order_id}/payment-status",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Local payment state plus the gateway's live authorization state",
)
async def get_payment_status(
    order_id: str,
    requester: Requester = Depends(get_requester),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.status_service.get_status(order_id, requester)


@order_router.put(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order",
)
async def cancel_order(
    order_id: str,
    body: Optional[CancelOrderRequest] = None,
    requester: Requester = Depends(get_requester),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.orchestrator.cancel_order(
        order_id, requester, reason=body.reason if body else None
    )
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "order_status": order.order_status.value,
        "payment_status": order.payment_status.value,
        "is_paid": order.is_paid,
        "cancellation_reason": order.cancellation_reason,
    }


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and apply Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    The raw body is passed through untouched; the signature covers the
    exact bytes.
    """
    body = await request.body()
    result = await services.reconciler.handle_event(body, stripe_signature)
    logger.info(
        "api_webhook_processed",
        event_id=result["event_id"],
        event_type=result["event_type"],
        status=result["status"],
    )
    return result


@admin_router.post(
    "/ledger/purge",
    response_model=LedgerPurgeResponse,
    summary="Purge old ledger entries",
    description="Delete processed-event records older than the retention window",
)
async def purge_ledger(
    body: Optional[LedgerPurgeRequest] = None,
    admin: Requester = Depends(get_admin),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    retention_days = services.settings.processed_event_retention_days
    if body is not None and body.retention_days is not None:
        retention_days = body.retention_days

    deleted = await services.ledger.purge_older_than(timedelta(days=retention_days))
    metrics.record_ledger_purge(deleted)
    logger.info(
        "api_ledger_purged",
        deleted=deleted,
        retention_days=retention_days,
        admin_id=str(admin.user_id),
    )
    return {"deleted": deleted, "retention_days": retention_days}


@admin_router.get(
    "/gateway/connectivity",
    response_model=ConnectivityResponse,
    summary="Gateway connectivity check",
    description="Create a minimal test authorization and cancel it",
)
async def gateway_connectivity(
    admin: Requester = Depends(get_admin),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.gateway.check_connectivity()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: PaymentServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: PaymentServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: PaymentServices = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
