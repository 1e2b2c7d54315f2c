"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned for every accepted webhook delivery."""

    received: bool = Field(default=True, description="Delivery was accepted")
    status: str = Field(..., description="processed, duplicate, ignored or unhandled")
    event_id: str = Field(..., description="Processor event id")
    event_type: str = Field(..., description="Processor event type")
    endpoint: str = Field(..., description="Webhook endpoint key")
    message: Optional[str] = Field(default=None, description="Why the event was not processed")
    result: Optional[Dict[str, Any]] = Field(default=None, description="State machine outcome")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "received": True,
                    "status": "processed",
                    "event_id": "evt_1NqQ0b2eZvKYlo2C",
                    "event_type": "payment_intent.succeeded",
                    "endpoint": "stripe",
                    "result": {"action": "payment_succeeded", "order_status": "confirmed"},
                }
            ]
        }
    }


class RefundRequest(BaseModel):
    """Request schema for refunding a payment through the processor."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Amount to refund in cents (None = full refund)"
    )
    reason: Optional[str] = Field(
        default=None, description="Reason: duplicate, fraudulent or requested_by_customer"
    )

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: Optional[str]) -> Optional[str]:
        """Validate refund reason."""
        if v is not None and v not in ("duplicate", "fraudulent", "requested_by_customer"):
            raise ValueError("Reason must be duplicate, fraudulent or requested_by_customer")
        return v


class RefundResponse(BaseModel):
    processor_reference: str
    refund_id: str
    refund_status: str
    amount_cents: int
    full_refund: bool
    payment_status: Optional[str] = None
    order_status: Optional[str] = None


class FulfillmentRequest(BaseModel):
    """Request schema for pushing shipment tracking to a marketplace."""

    channel: str = Field(..., description="Marketplace channel key")
    tracking_number: str = Field(..., min_length=1, description="Carrier tracking number")
    carrier: str = Field(..., min_length=1, description="Shipping carrier code (e.g. ROYAL_MAIL)")


class MarketplaceRefundRequest(BaseModel):
    """Request schema for refunding a marketplace order."""

    channel: str = Field(..., description="Marketplace channel key")
    amount_cents: int = Field(..., gt=0, description="Amount to refund in cents")
    reason: str = Field(default="BUYER_CANCEL", description="Marketplace refund reason code")
    line_ref: Optional[str] = Field(default=None, description="Order line to refund (None = order)")


class SyncRunResponse(BaseModel):
    """Summary of one sync run, or a busy marker when a run is already active."""

    status: str
    channel: Optional[str] = None
    operation: Optional[str] = None
    sync_log_id: Optional[int] = None
    succeeded: Optional[bool] = None
    processed: Optional[int] = None
    failed: Optional[int] = None
    skipped: Optional[int] = None
    api_calls: Optional[int] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    watermark: Optional[str] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class SyncStatusResponse(BaseModel):
    channel: str
    running: List[str]
    last_success: Dict[str, Optional[str]]
    runs: List[SyncRunResponse]


class LoyaltyBalanceResponse(BaseModel):
    customer_ref: str
    balance: int


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
