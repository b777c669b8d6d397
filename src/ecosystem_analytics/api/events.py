from __future__ import annotations
from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, List
from ecosystem_analytics.api.deps import get_gateway, require_signature
from ecosystem_analytics.exceptions import ClientValidationError
from ecosystem_analytics.ingestion.gateway import IngestionGateway

router = APIRouter(prefix="/events", tags=["events"], dependencies=[Depends(require_signature)])


class BatchIn(BaseModel):
    # items stay untyped so one malformed event cannot fail the whole request
    events: List[Any] = Field(default_factory=list)


@router.post("")
def ingest_event(payload: Any = Body(...), gateway: IngestionGateway = Depends(get_gateway)):
    try:
        result = gateway.ingest(payload)
    except ClientValidationError as e:
        return JSONResponse(status_code=400, content={"accepted": False, "event_id": e.event_id, "reason": e.reason})
    return {"accepted": result.accepted, "duplicate": result.duplicate, "event_id": result.event_id}


@router.post("/batch")
def ingest_batch(body: BatchIn, gateway: IngestionGateway = Depends(get_gateway)):
    result = gateway.ingest_batch(body.events)
    # persistence failures are retryable: a 5xx keeps the whole batch in the client queue
    status = 503 if result.persistence_failures else 200
    return JSONResponse(status_code=status, content=result.to_dict())
