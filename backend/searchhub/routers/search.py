from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from searchhub.errors import RequestValidationError
from searchhub.routers.connectors import get_manager
from searchhub.schemas import CacheStats, MetricsSnapshot, SearchRequest, SearchResponse
from searchhub.services.aggregator import AggregationManager

router = APIRouter(prefix="/search", tags=["search"])


@router.post("", response_model=SearchResponse)
async def search(
    payload: SearchRequest,
    search_id: Optional[str] = Query(default=None, min_length=1, max_length=128),
    manager: AggregationManager = Depends(get_manager),
):
    try:
        return await manager.search(payload, search_id=search_id)
    except RequestValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/cancel-all")
def cancel_all(manager: AggregationManager = Depends(get_manager)):
    return {"cancelled": manager.cancel_all()}


@router.post("/{search_id}/cancel")
def cancel_search(search_id: str, manager: AggregationManager = Depends(get_manager)):
    if not manager.cancel(search_id):
        raise HTTPException(status_code=404, detail="No active search with this id")
    return {"cancelled": True}


@router.delete("/cache")
def clear_cache(manager: AggregationManager = Depends(get_manager)):
    return {"cleared": manager.clear_cache()}


@router.get("/cache/stats", response_model=CacheStats)
def cache_stats(manager: AggregationManager = Depends(get_manager)):
    return manager.get_cache_stats()


@router.get("/metrics", response_model=MetricsSnapshot)
def metrics(manager: AggregationManager = Depends(get_manager)):
    return manager.get_metrics()


@router.post("/metrics/reset")
def reset_metrics(manager: AggregationManager = Depends(get_manager)):
    manager.reset_metrics()
    return {"ok": True}
