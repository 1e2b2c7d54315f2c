"""
Webhook routing predicates.

A predicate decides, from the event payload alone, whether an endpoint
processes an event. Several endpoints can receive the same processor event
(e.g. a restricted test endpoint and the general production endpoint); the
predicates make sure exactly one of them acts on it. Predicates are pure.
"""
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

from commerce_sync.core.events import ProcessorEvent

# Only these event kinds carry a payer identity; all others pass every predicate.
IDENTITY_ROUTED_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        "checkout.session.completed",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
    }
)

ROUTING_MODES = ("all", "allow_list", "deny_list")


@dataclass(frozen=True)
class RoutingDecision:
    accepted: bool
    reason: str
    identity: Optional[str] = None


def payer_identity(event: ProcessorEvent) -> Optional[str]:
    """
    Extract the paying identity (email) from an event, lower-cased.

    Checkout sessions carry it in customer_details.email (or customer_email);
    payment intents carry it in receipt_email.
    """
    obj = event.object
    if event.type == "checkout.session.completed":
        email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
    else:
        email = obj.get("receipt_email")
    if not email:
        return None
    return str(email).strip().lower()


class RoutingPredicate:
    """
    Allow/deny routing over payer identities.

    Modes:
        all: accept everything
        allow_list: accept identity-routed events only for listed identities
        deny_list: accept identity-routed events except for listed identities
    """

    def __init__(self, mode: str = "all", identities: Iterable[str] = ()):
        if mode not in ROUTING_MODES:
            raise ValueError(f"Unknown routing mode {mode!r}; expected one of {ROUTING_MODES}")
        self.mode = mode
        self.identities = frozenset(i.strip().lower() for i in identities if i.strip())

    def __call__(self, event: ProcessorEvent) -> RoutingDecision:
        if self.mode == "all":
            return RoutingDecision(True, "endpoint accepts all events")
        if event.type not in IDENTITY_ROUTED_EVENT_TYPES:
            return RoutingDecision(True, f"{event.type} is not routed by payer identity")

        identity = payer_identity(event)
        listed = identity is not None and identity in self.identities

        if self.mode == "allow_list":
            if listed:
                return RoutingDecision(True, "payer identity is on the allow-list", identity)
            return RoutingDecision(
                False, f"endpoint only accepts allow-listed payers, received: {identity}", identity
            )

        if listed:
            return RoutingDecision(
                False, f"payer {identity} is handled by a restricted endpoint", identity
            )
        return RoutingDecision(True, "payer identity is not on the deny-list", identity)

    def __repr__(self) -> str:
        return f"RoutingPredicate(mode={self.mode!r}, identities={sorted(self.identities)!r})"
