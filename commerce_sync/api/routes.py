"""
API routes: webhook ingestion, operator endpoints, monitoring.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.errors import (
    AdapterError,
    AuthenticationFailure,
    EndpointNotConfigured,
    PaymentOperationError,
    SyncOperationError,
    UnknownChannel,
)
from commerce_sync.core.states import SyncOperation
from commerce_sync.database.connection import get_db
from commerce_sync.integrations.channels.base import TrackingInfo
from commerce_sync.integrations.stripe_client import StripeError
from commerce_sync.services import ServiceContainer

from .schemas import (
    FulfillmentRequest,
    HealthCheckResponse,
    LoyaltyBalanceResponse,
    MarketplaceRefundRequest,
    RefundRequest,
    RefundResponse,
    SyncRunResponse,
    SyncStatusResponse,
    WebhookAckResponse,
)

logger = structlog.get_logger(__name__)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def require_admin_key(
    services: ServiceContainer = Depends(get_services),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> None:
    """Guard operator endpoints when an admin key is configured."""
    expected = services.settings.admin_api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
sync_router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_admin_key)])
payment_router = APIRouter(
    prefix="/payments", tags=["payments"], dependencies=[Depends(require_admin_key)]
)
order_router = APIRouter(
    prefix="/orders", tags=["orders"], dependencies=[Depends(require_admin_key)]
)
customer_router = APIRouter(
    prefix="/customers", tags=["customers"], dependencies=[Depends(require_admin_key)]
)
monitoring_router = APIRouter(tags=["monitoring"])


def parse_operation(operation: str) -> SyncOperation:
    try:
        return SyncOperation(operation.replace("-", "_"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown sync operation {operation!r}",
        )


@webhook_router.post(
    "/{channel_key}",
    response_model=WebhookAckResponse,
    response_model_exclude_none=True,
    summary="Payment processor webhook endpoint",
    description="Verify, deduplicate, route and apply a processor event",
)
async def receive_webhook(
    channel_key: str,
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle processor webhook events.

    Every verified delivery is acknowledged with 200, including duplicates and
    events routed away from this endpoint.
    """
    body = await request.body()

    try:
        ack = await services.gateway.ingest(body, stripe_signature, channel_key)
    except AuthenticationFailure as e:
        logger.warning("api_webhook_signature_rejected", endpoint=channel_key, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except UnknownChannel as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except EndpointNotConfigured as e:
        logger.error("api_webhook_endpoint_not_configured", endpoint=channel_key)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except Exception as e:
        logger.error("api_webhook_unexpected_error", endpoint=channel_key, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    return ack.to_dict()


@sync_router.post(
    "/{channel}/{operation}",
    response_model=SyncRunResponse,
    response_model_exclude_none=True,
    summary="Trigger a sync run",
    description="Run catalog_push or order_pull now; 202 if that run is already active",
)
async def trigger_sync(
    channel: str,
    operation: str,
    response: Response,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    sync_operation = parse_operation(operation)
    logger.info("api_sync_trigger_requested", channel=channel, operation=sync_operation.value)

    try:
        result = await services.scheduler.trigger(channel, sync_operation)
    except UnknownChannel as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if result.get("status") == "already_running":
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@sync_router.get(
    "/{channel}/status",
    response_model=SyncStatusResponse,
    summary="Sync status",
    description="Recent sync runs and in-flight operations for a channel",
)
async def sync_status(
    channel: str,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.scheduler.sync_status(channel)
    except UnknownChannel as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@payment_router.post(
    "/{processor_reference}/refund",
    response_model=RefundResponse,
    response_model_exclude_none=True,
    summary="Refund a payment",
    description="Create a full or partial refund through the payment processor",
)
async def refund_payment(
    processor_reference: str,
    request: RefundRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Refund a payment."""
    logger.info(
        "api_refund_payment_request",
        processor_reference=processor_reference,
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    try:
        return await services.state_machine.refund(
            processor_reference,
            amount_cents=request.amount_cents,
            reason=request.reason,
        )
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentOperationError as e:
        logger.warning(
            "api_refund_payment_rejected", processor_reference=processor_reference, error=str(e)
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StripeError as e:
        logger.error(
            "api_refund_payment_processor_error",
            processor_reference=processor_reference,
            error=str(e),
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@order_router.post(
    "/{order_id}/fulfillments",
    summary="Push fulfillment",
    description="Send tracking to the marketplace and mark the order shipped",
)
async def push_fulfillment(
    order_id: str,
    request: FulfillmentRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    tracking = TrackingInfo(tracking_number=request.tracking_number, carrier=request.carrier)
    try:
        return await services.engine.push_fulfillment(order_id, request.channel, tracking)
    except (LookupError, UnknownChannel) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AdapterError as e:
        logger.error("api_fulfillment_failed", order_id=order_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@order_router.post(
    "/{order_id}/marketplace-refunds",
    summary="Refund a marketplace order",
    description="Issue a refund through the marketplace the order came from",
)
async def refund_marketplace_order(
    order_id: str,
    request: MarketplaceRefundRequest,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.engine.refund_marketplace_order(
            order_id,
            request.channel,
            amount_cents=request.amount_cents,
            reason=request.reason,
            line_ref=request.line_ref,
        )
    except (LookupError, UnknownChannel) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SyncOperationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AdapterError as e:
        logger.error("api_marketplace_refund_failed", order_id=order_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@customer_router.get(
    "/{customer_ref}/loyalty",
    response_model=LoyaltyBalanceResponse,
    summary="Loyalty balance",
)
async def loyalty_balance(
    customer_ref: str,
    services: ServiceContainer = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    balance = await services.loyalty.balance(db, customer_ref.lower())
    return {"customer_ref": customer_ref.lower(), "balance": balance}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
