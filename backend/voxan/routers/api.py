from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from ..deps import Services, get_services
from ..errors import PersistenceError, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter()


class OutboundCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone: str | None = None
    assistant_id: str | None = Field(default=None, alias="assistantId")
    name: str | None = None


@router.get("/health")
def health(services: Services = Depends(get_services)) -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "services": {
            "calendar": "stub" if services.settings.calendar.use_stub else "google",
            "database": services.storage_backend,
        },
    }


@router.get("/api/dashboard")
def dashboard(services: Services = Depends(get_services)) -> dict:
    try:
        return services.dashboard.snapshot()
    except PersistenceError as exc:
        logger.warning("dashboard_query_failed", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message
        )


@router.post("/api/call")
async def trigger_call(
    payload: OutboundCallRequest, services: Services = Depends(get_services)
) -> dict:
    metadata = {"name": payload.name} if payload.name else None
    try:
        result = await services.outbound.trigger(
            payload.phone, payload.assistant_id, metadata=metadata
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except UpstreamUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
    return {
        "message": "Call triggered",
        "phone": result.phone,
        "assistantId": result.assistant_id,
        "callId": result.call_id,
        "status": result.status,
    }
