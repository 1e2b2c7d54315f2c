"""Parsed payment-processor events and payload accessors."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ProcessorEvent:
    """A verified payment-processor event, reduced to the parts we act on."""

    id: str
    type: str
    object: Dict[str, Any]
    created: Optional[int] = None
    livemode: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: bytes | str) -> "ProcessorEvent":
        """
        Parse a raw webhook body.

        Raises:
            ValueError: If the body is not a processor event
        """
        data = json.loads(payload)
        if not isinstance(data, dict) or "id" not in data or "type" not in data:
            raise ValueError("Webhook body is not a processor event")
        obj = (data.get("data") or {}).get("object") or {}
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            object=obj,
            created=data.get("created"),
            livemode=bool(data.get("livemode", False)),
            raw=data,
        )

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.get("metadata") or {}

    @property
    def order_id(self) -> Optional[str]:
        """Canonical order id carried in the object's metadata."""
        value = self.metadata.get("orderId") or self.metadata.get("order_id")
        return str(value) if value else None

    @property
    def created_at(self) -> Optional[datetime]:
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


def timestamp_to_datetime(value: Optional[int]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
