from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from searchhub.connectors.factory import supported_platforms
from searchhub.schemas import ConnectorConfig
from searchhub.services.aggregator import AggregationManager

router = APIRouter(prefix="/connectors", tags=["connectors"])


def get_manager(request: Request) -> AggregationManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Search service is not ready")
    return manager


@router.get("")
def list_connectors(manager: AggregationManager = Depends(get_manager)):
    return {
        "supported": supported_platforms(),
        "loaded": [
            {"platform": platform, "in_flight": manager.in_flight(platform)}
            for platform in manager.list_connectors()
        ],
    }


@router.post("")
async def load_connector(payload: ConnectorConfig, manager: AggregationManager = Depends(get_manager)):
    try:
        await manager.load_connector(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"platform": payload.platform, "loaded": True}


@router.delete("/{platform}")
async def unload_connector(platform: str, manager: AggregationManager = Depends(get_manager)):
    if not await manager.unload_connector(platform):
        raise HTTPException(status_code=404, detail="Connector not loaded")
    return {"platform": platform, "loaded": False}


@router.post("/{platform}/reload")
async def reload_connector(platform: str, manager: AggregationManager = Depends(get_manager)):
    if not await manager.reload_connector(platform):
        raise HTTPException(status_code=404, detail="Connector not loaded")
    return {"platform": platform, "loaded": True}
