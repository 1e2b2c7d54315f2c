"""
Tests for payer-identity routing predicates.
"""
from typing import Any, Dict, Optional

import pytest

from commerce_sync.core.events import ProcessorEvent
from commerce_sync.core.routing import RoutingPredicate, payer_identity


def event(event_type: str, obj: Optional[Dict[str, Any]] = None) -> ProcessorEvent:
    return ProcessorEvent(id="evt_1", type=event_type, object=obj or {})


def checkout(email: Optional[str]) -> ProcessorEvent:
    return event("checkout.session.completed", {"customer_details": {"email": email}})


class TestPayerIdentity:
    """Test suite for identity extraction."""

    @pytest.mark.unit
    def test_checkout_session_identity(self) -> None:
        """Test that checkout sessions use customer_details.email, lower-cased."""
        assert payer_identity(checkout("QA.Tester@Example.com")) == "qa.tester@example.com"

    @pytest.mark.unit
    def test_checkout_session_falls_back_to_customer_email(self) -> None:
        """Test the customer_email fallback."""
        found = payer_identity(
            event("checkout.session.completed", {"customer_email": "a@example.com"})
        )
        assert found == "a@example.com"

    @pytest.mark.unit
    def test_payment_intent_identity(self) -> None:
        """Test that payment intents use receipt_email."""
        intent = event("payment_intent.succeeded", {"receipt_email": "b@example.com"})
        assert payer_identity(intent) == "b@example.com"

    @pytest.mark.unit
    def test_missing_identity(self) -> None:
        """Test that events without an email yield None."""
        assert payer_identity(event("payment_intent.succeeded")) is None


class TestRoutingPredicate:
    """Test suite for allow/deny routing."""

    @pytest.mark.unit
    def test_all_mode_accepts_everything(self) -> None:
        """Test that the general endpoint accepts every event."""
        predicate = RoutingPredicate("all")
        assert predicate(checkout("anyone@example.com")).accepted

    @pytest.mark.unit
    def test_allow_list(self) -> None:
        """Test that an allow-list endpoint only accepts listed payers."""
        predicate = RoutingPredicate("allow_list", ["tester@example.com"])

        assert predicate(checkout("tester@example.com")).accepted
        rejected = predicate(checkout("customer@example.com"))
        assert not rejected.accepted
        assert rejected.identity == "customer@example.com"

    @pytest.mark.unit
    def test_deny_list(self) -> None:
        """Test that a deny-list endpoint rejects listed payers and accepts the rest."""
        predicate = RoutingPredicate("deny_list", ["tester@example.com"])

        assert not predicate(checkout("Tester@Example.com")).accepted
        assert predicate(checkout("customer@example.com")).accepted

    @pytest.mark.unit
    def test_missing_identity_on_restricted_endpoints(self) -> None:
        """Test that payers without an email go to the deny-list side only."""
        allow = RoutingPredicate("allow_list", ["tester@example.com"])
        deny = RoutingPredicate("deny_list", ["tester@example.com"])

        assert not allow(checkout(None)).accepted
        assert deny(checkout(None)).accepted

    @pytest.mark.unit
    def test_non_identity_events_pass_every_predicate(self) -> None:
        """Test that disputes and refunds are never routed by identity."""
        dispute = event("charge.dispute.created", {"id": "dp_1"})
        for predicate in (
            RoutingPredicate("allow_list", ["tester@example.com"]),
            RoutingPredicate("deny_list", ["tester@example.com"]),
        ):
            assert predicate(dispute).accepted

    @pytest.mark.unit
    def test_complementary_predicates_accept_exactly_once(self) -> None:
        """Test that a shared identity list routes each event to exactly one endpoint."""
        identities = ["tester@example.com"]
        allow = RoutingPredicate("allow_list", identities)
        deny = RoutingPredicate("deny_list", identities)

        for email in ("tester@example.com", "customer@example.com", None):
            accepted = [p(checkout(email)).accepted for p in (allow, deny)]
            assert accepted.count(True) == 1

    @pytest.mark.unit
    def test_unknown_mode_rejected(self) -> None:
        """Test that a misconfigured routing mode fails fast."""
        with pytest.raises(ValueError):
            RoutingPredicate("sometimes")
