"""
Stripe API client with retry logic and error classification.

Implements:
- Webhook signature verification
- Refunds with exponential backoff for transient errors
- Circuit breaker pattern
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from commerce_sync.config import Settings
from commerce_sync.core.errors import AuthenticationFailure
from commerce_sync.core.events import ProcessorEvent

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type is not StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling Stripe for `timeout` seconds after `failure_threshold`
    consecutive failures, then lets calls through in half-open state.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check whether a call may proceed.

        Raises:
            StripeError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self.state = "half_open"
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class StripeClient:
    """
    Wrapper for the Stripe API.

    Features:
    - Webhook signature verification against per-endpoint secrets
    - Refunds with automatic retry and exponential backoff
    - Circuit breaker pattern
    - Error classification
    """

    def __init__(self, settings: Settings, circuit_breaker: Optional[CircuitBreaker] = None):
        """Initialize Stripe client."""
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def verify_webhook(
        payload: bytes,
        signature: Optional[str],
        secret: str,
        tolerance: int = 300,
    ) -> ProcessorEvent:
        """
        Verify a webhook signature and parse the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Endpoint signing secret
            tolerance: Maximum payload age in seconds

        Returns:
            ProcessorEvent: Verified event

        Raises:
            AuthenticationFailure: If the signature is missing or invalid, or the
                payload is not UTF-8
        """
        if not signature:
            raise AuthenticationFailure("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            logger.error("webhook_payload_not_utf8", error=str(e))
            raise AuthenticationFailure("Webhook payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise AuthenticationFailure(f"Invalid webhook signature: {str(e)}") from e

        event = ProcessorEvent.from_payload(body)
        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        return StripeError(message=str(error), error_type=error_type, original_error=error)

    async def _call(self, func: Any, **kwargs: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop behind the circuit breaker."""
        self.circuit_breaker.before_call()
        try:
            result = await asyncio.get_running_loop().run_in_executor(
                None, lambda: func(**kwargs)
            )
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            raise self._handle_stripe_error(e) from e
        self.circuit_breaker.on_success()
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_cents: Optional partial refund amount
            reason: Optional refund reason (duplicate, fraudulent, requested_by_customer)
            idempotency_key: Optional idempotency key

        Returns:
            Dict[str, Any]: id, status and amount of the created refund

        Raises:
            StripeError: If refund creation fails
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
        )

        kwargs: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents:
            kwargs["amount"] = amount_cents
        if reason:
            kwargs["reason"] = reason
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        refund = await self._call(stripe.Refund.create, **kwargs)

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return {"id": refund.id, "status": refund.status, "amount": refund.amount}
