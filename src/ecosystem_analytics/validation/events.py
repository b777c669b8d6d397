from __future__ import annotations
from pydantic import BaseModel, Field, ValidationError, field_validator
from datetime import datetime
from typing import Any, Dict
from ecosystem_analytics.exceptions import ClientValidationError
from ecosystem_analytics.models.events import EcosystemEventData, EventType, Product, EVENT_TYPE_ALIASES, utc_naive, utcnow

REQUIRED_FIELDS = ("event_id", "product", "event_type")


class EcosystemEventSchema(BaseModel):
    event_id: str = Field(min_length=1, max_length=128)
    product: Product
    event_type: EventType
    timestamp: datetime | None = None
    participant_hash: str | None = Field(None, min_length=1, max_length=64)
    session_id: str | None = Field(None, max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type", mode="before")
    @classmethod
    def _legacy_event_type(cls, v):
        if isinstance(v, str):
            return EVENT_TYPE_ALIASES.get(v, v)
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, v):
        return {} if v is None else v


def validate_event(evt: Any, max_metadata_keys: int = 100) -> EcosystemEventData:
    """Validate one raw payload into an immutable event or raise ClientValidationError."""
    if not isinstance(evt, dict):
        raise ClientValidationError("not_an_object")
    event_id = evt.get("event_id") if isinstance(evt.get("event_id"), str) else None
    missing = [f for f in REQUIRED_FIELDS if evt.get(f) in (None, "")]
    if missing:
        raise ClientValidationError(f"missing_required:{','.join(missing)}", event_id=event_id)
    try:
        parsed = EcosystemEventSchema(**evt)
    except ValidationError as ve:
        err = ve.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        raise ClientValidationError(f"validation_error:{loc}:{err.get('msg', 'invalid')}", event_id=event_id)
    if len(parsed.metadata) > max_metadata_keys:
        raise ClientValidationError("too_many_metadata_keys", event_id=event_id)
    data = EcosystemEventData(
        event_id=parsed.event_id,
        timestamp=utc_naive(parsed.timestamp) if parsed.timestamp else utcnow(),
        product=parsed.product.value,
        event_type=parsed.event_type.value,
        participant_hash=parsed.participant_hash,
        session_id=parsed.session_id,
        metadata=parsed.metadata,
    )
    if data.event_type == EventType.REFERRAL.value:
        validate_referral(data.product, data.referral_destination, event_id=data.event_id)
    return data


def validate_referral(source: str, destination: str | None, event_id: str | None = None) -> None:
    if not destination:
        raise ClientValidationError("missing_referral_destination", event_id=event_id)
    if destination not in {p.value for p in Product}:
        raise ClientValidationError(f"unknown_referral_destination:{destination}", event_id=event_id)
    if destination == source:
        raise ClientValidationError("self_referral", event_id=event_id)
