"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    FulfillmentRequest,
    MarketplaceRefundRequest,
    RefundRequest,
    RefundResponse,
    WebhookAckResponse,
)

__all__ = [
    "create_app",
    "FulfillmentRequest",
    "MarketplaceRefundRequest",
    "RefundRequest",
    "RefundResponse",
    "WebhookAckResponse",
]
