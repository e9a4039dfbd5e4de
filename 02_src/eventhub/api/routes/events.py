"""Event ingestion route for producers that cannot reach the broker."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ...broker import exchange_for
from ...errors import BrokerUnavailableError, MalformedEnvelopeError
from ...models import EventEnvelope


class PublishEventRequest(BaseModel):
    """Request model for publishing an event."""

    event_type: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    target_user_id: str | None = None
    room_id: str | None = None
    event_id: str | None = None
    timestamp: datetime | None = None
    source: str | None = None


class PublishEventResponse(BaseModel):
    """Response model for a published event."""

    event_id: str
    exchange: str


def create_events_router(app) -> APIRouter:
    """Create event ingestion router."""
    router = APIRouter(prefix="/api/events", tags=["events"])

    @router.post("", response_model=PublishEventResponse, status_code=202)
    async def publish_event(request: PublishEventRequest) -> dict:
        """Publish an envelope to the broker; delivery happens asynchronously."""
        fields = request.model_dump(exclude_none=True)
        try:
            envelope = EventEnvelope(**fields)
            published = await app.publisher.publish(envelope)
        except MalformedEnvelopeError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except BrokerUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"event_id": published.event_id, "exchange": exchange_for(published.event_type)}

    return router
