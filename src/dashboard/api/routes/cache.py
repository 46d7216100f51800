"""Cache maintenance routes."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dashboard.api.deps import get_cache
from dashboard.cache.multilevel import MultiLevelCache

router = APIRouter()


class CacheClearRequest(BaseModel):
    prefix: Optional[str] = None  # None clears everything


class CacheClearResponse(BaseModel):
    cleared_count: int


@router.post("/clear", response_model=CacheClearResponse)
async def clear_cache(
    request: Optional[CacheClearRequest] = None,
    cache: MultiLevelCache = Depends(get_cache),
):
    prefix = request.prefix if request is not None else None
    if prefix:
        cleared = cache.delete_by_prefix(prefix)
    else:
        cleared = cache.clear()
    return CacheClearResponse(cleared_count=cleared)


@router.get("/stats")
async def cache_stats(cache: MultiLevelCache = Depends(get_cache)) -> Dict[str, Any]:
    return cache.get_stats().to_dict()
