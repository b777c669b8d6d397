from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class Product(str, Enum):
    REGISTRY = "registry"
    BRAIN = "brain"
    SPORTS = "sports"
    X3O = "x3o"
    SPORTINTEL = "sportintel"


class EventType(str, Enum):
    INSTALL = "install"
    DISCOVERY = "discovery"
    USAGE = "usage"
    CONVERSION = "conversion"
    REFERRAL = "referral"


# wire names older clients still send
EVENT_TYPE_ALIASES = {"ecosystem_referral": EventType.REFERRAL.value}


def utc_naive(ts: datetime) -> datetime:
    """Normalize to naive UTC, the storage convention for every timestamp column."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class EcosystemEventData:
    """Validated, immutable event as it flows from the gateway into the aggregators."""
    event_id: str
    timestamp: datetime
    product: str
    event_type: str
    participant_hash: str | None = None
    session_id: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def referral_destination(self) -> str | None:
        dest = self.metadata.get("referral_destination") or self.metadata.get("destination")
        return str(dest) if dest else None

    @property
    def catalog_item_id(self) -> str | None:
        item = self.metadata.get("catalog_item_id") or self.metadata.get("server_slug")
        return str(item) if item else None
