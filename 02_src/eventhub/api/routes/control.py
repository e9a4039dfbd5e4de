"""Control API routes."""

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


class SweepResponse(BaseModel):
    """Response model for a manual retry sweep."""

    status: str
    attempted: int


def create_control_router(app) -> APIRouter:
    """Create control router (operators and test harnesses only)."""
    router = APIRouter(prefix="/api/control", tags=["control"])

    @router.post("/reset", response_model=StatusResponse)
    async def reset_system() -> dict:
        """Reset system data between test runs."""
        try:
            await app.reset()
            return {"status": "ok"}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/sweep", response_model=SweepResponse)
    async def sweep_retries() -> dict:
        """Attempt every due webhook retry now instead of waiting for the timer."""
        try:
            attempted = await app.dispatcher.sweep_once()
            return {"status": "ok", "attempted": attempted}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
