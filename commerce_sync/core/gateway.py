"""
Event ingestion gateway for payment-processor webhooks.

Implements:
- Signature verification against a per-endpoint secret
- Deduplication through the event dedup ledger
- Payload-based routing predicates per endpoint
- One transaction per delivery: dedup record + state transition commit together
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import structlog

from commerce_sync.config import WebhookEndpointConfig
from commerce_sync.core.dedup_ledger import EventDedupLedger
from commerce_sync.core.errors import (
    AuthenticationFailure,
    DuplicateEvent,
    EndpointNotConfigured,
    UnknownChannel,
)
from commerce_sync.core.events import ProcessorEvent
from commerce_sync.core.reconciliation import PaymentReconciliationStateMachine
from commerce_sync.core.routing import RoutingPredicate
from commerce_sync.database.connection import Database
from commerce_sync.integrations.stripe_client import StripeClient
from commerce_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class Ack:
    """Acknowledgement returned to the processor (HTTP 200)."""

    status: str  # processed, duplicate, ignored, unhandled
    event_id: str
    event_type: str
    endpoint: str
    message: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "received": True,
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "endpoint": self.endpoint,
        }
        if self.message:
            body["message"] = self.message
        if self.result:
            body["result"] = self.result
        return body


@dataclass(frozen=True)
class WebhookEndpoint:
    key: str
    secret: Optional[str]
    predicate: RoutingPredicate
    tolerance: int = 300

    @classmethod
    def from_config(cls, key: str, config: WebhookEndpointConfig) -> "WebhookEndpoint":
        return cls(
            key=key,
            secret=config.secret,
            predicate=RoutingPredicate(config.routing_mode, config.identities),
            tolerance=config.signature_tolerance_seconds,
        )


class EventIngestionGateway:
    """
    Verifies, deduplicates, routes and applies webhook deliveries.

    Only AuthenticationFailure, UnknownChannel, EndpointNotConfigured and
    truly unexpected exceptions escape ingest(); everything else is an Ack.
    """

    def __init__(
        self,
        database: Database,
        endpoints: Mapping[str, WebhookEndpoint],
        state_machine: PaymentReconciliationStateMachine,
        ledger: Optional[EventDedupLedger] = None,
    ):
        self.database = database
        self.endpoints = dict(endpoints)
        self.state_machine = state_machine
        self.ledger = ledger or EventDedupLedger()

        logger.info("event_gateway_initialized", endpoints=sorted(self.endpoints))

    @classmethod
    def from_settings(
        cls,
        database: Database,
        endpoint_configs: Mapping[str, WebhookEndpointConfig],
        state_machine: PaymentReconciliationStateMachine,
    ) -> "EventIngestionGateway":
        endpoints = {
            key: WebhookEndpoint.from_config(key, config)
            for key, config in endpoint_configs.items()
        }
        return cls(database, endpoints, state_machine)

    def _endpoint(self, channel_key: str) -> WebhookEndpoint:
        endpoint = self.endpoints.get(channel_key)
        if endpoint is None:
            raise UnknownChannel(f"No webhook endpoint configured for {channel_key!r}")
        if not endpoint.secret:
            logger.error("webhook_secret_not_configured", endpoint=channel_key)
            raise EndpointNotConfigured(f"Webhook secret for {channel_key!r} is not configured")
        return endpoint

    def verify(
        self, raw_body: bytes, signature_header: Optional[str], channel_key: str
    ) -> ProcessorEvent:
        """
        Verify a delivery's signature for the given endpoint.

        Raises:
            AuthenticationFailure: On a missing or invalid signature or a non-UTF-8 body
        """
        endpoint = self._endpoint(channel_key)
        try:
            return StripeClient.verify_webhook(
                raw_body, signature_header, endpoint.secret or "", endpoint.tolerance
            )
        except AuthenticationFailure:
            metrics.record_signature_failure(channel_key)
            raise

    async def ingest(
        self, raw_body: bytes, signature_header: Optional[str], channel_key: str
    ) -> Ack:
        """
        Ingest one webhook delivery.

        Args:
            raw_body: Raw request body
            signature_header: Stripe-Signature header value
            channel_key: Endpoint key from the request path

        Returns:
            Ack: Acknowledgement for processed, duplicate, ignored and
                unhandled deliveries

        Raises:
            AuthenticationFailure: Bad or missing signature (no processing, no dedup write)
            UnknownChannel: Endpoint key not configured
            EndpointNotConfigured: Endpoint has no signing secret
        """
        start_time = time.time()
        endpoint = self._endpoint(channel_key)
        event = self.verify(raw_body, signature_header, channel_key)

        log = logger.bind(event_id=event.id, event_type=event.type, endpoint=channel_key)

        ack = await self._process(endpoint, event, log)
        metrics.record_webhook_event(channel_key, event.type, ack.status, time.time() - start_time)
        return ack

    async def _process(self, endpoint: WebhookEndpoint, event: ProcessorEvent, log: Any) -> Ack:
        async with self.database.session() as db:
            if await self.ledger.is_processed(db, event.id):
                log.info("webhook_event_already_processed")
                return self._duplicate(endpoint, event)

        decision = endpoint.predicate(event)
        if not decision.accepted:
            log.info(
                "webhook_event_routed_away", reason=decision.reason, identity=decision.identity
            )
            return Ack(
                status="ignored",
                event_id=event.id,
                event_type=event.type,
                endpoint=endpoint.key,
                message=f"Event ignored by {endpoint.key} endpoint: {decision.reason}",
            )

        session = self.database.session()
        try:
            await self.ledger.record(session, event.id, event.type, endpoint.key)
            result = await self.state_machine.apply(session, event, endpoint.key)
            await session.commit()
        except DuplicateEvent:
            await session.rollback()
            log.info("webhook_event_processed_concurrently")
            return self._duplicate(endpoint, event)
        except BaseException:
            # Dedup record is rolled back with the transition: redelivery is safe.
            await session.rollback()
            log.error("webhook_event_processing_failed", exc_info=True)
            raise
        finally:
            await session.close()

        status = "unhandled" if result.get("action") == "unhandled" else "processed"
        log.info("webhook_event_processed", status=status, action=result.get("action"))
        return Ack(
            status=status,
            event_id=event.id,
            event_type=event.type,
            endpoint=endpoint.key,
            result=result,
        )

    @staticmethod
    def _duplicate(endpoint: WebhookEndpoint, event: ProcessorEvent) -> Ack:
        return Ack(
            status="duplicate",
            event_id=event.id,
            event_type=event.type,
            endpoint=endpoint.key,
            message="Event already processed",
        )
