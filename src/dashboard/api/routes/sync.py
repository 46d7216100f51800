"""Sync trigger and status routes."""
import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, model_validator

from dashboard.api.deps import get_sync_service
from dashboard.gripp.entities import UnknownEntityTypeError, get_spec
from dashboard.gripp.sync_service import SyncService
from dashboard.models.sync import SyncStatus

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncRangeRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def _check_range(self):
        if (self.start_date is None) != (self.end_date is None):
            raise ValueError("start_date and end_date must be given together")
        if self.start_date is not None and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    @property
    def date_range(self):
        if self.start_date is None:
            return None
        return self.start_date, self.end_date


class SyncAllRequest(SyncRangeRequest):
    background: bool = False


class SyncAllResponse(BaseModel):
    success: bool
    results: Dict[str, bool]


class SyncStatusResponse(BaseModel):
    entity_type: str
    last_run_at: datetime
    outcome: str
    message: Optional[str]
    duration_ms: int
    records_fetched: int
    records_persisted: int
    records_skipped: int
    windows_failed: int

    @classmethod
    def from_row(cls, row: SyncStatus) -> "SyncStatusResponse":
        return cls(**row.model_dump())


async def _do_sync_all(service: SyncService, start: Optional[date], end: Optional[date]) -> None:
    """Background task: run a full sync; outcomes land in SyncStatus."""
    result = await service.sync_all(start, end)
    logger.info("Background sync finished: success=%s %s", result.success, result.summary())


@router.post("/all")
async def trigger_sync_all(
    request: SyncAllRequest,
    background_tasks: BackgroundTasks,
    service: SyncService = Depends(get_sync_service),
):
    """
    Sync every entity type. With background=true the request returns
    immediately and the sync runs after the response is sent.
    """
    if request.background:
        background_tasks.add_task(_do_sync_all, service, request.start_date, request.end_date)
        return {"message": "Sync started"}

    result = await service.sync_all(request.start_date, request.end_date)
    return SyncAllResponse(success=result.success, results=result.summary())


@router.get("/status", response_model=List[SyncStatusResponse])
async def sync_status(service: SyncService = Depends(get_sync_service)):
    """Latest stored status for every entity type that has run."""
    return [SyncStatusResponse.from_row(row) for row in service.get_status()]


@router.post("/{entity_type}", response_model=SyncStatusResponse)
async def trigger_sync_entity(
    entity_type: str,
    request: Optional[SyncRangeRequest] = None,
    service: SyncService = Depends(get_sync_service),
):
    """Sync one entity type in the foreground and return its new status."""
    try:
        get_spec(entity_type)
    except UnknownEntityTypeError:
        raise HTTPException(status_code=404, detail=f"Unknown entity type: {entity_type}")

    date_range = request.date_range if request is not None else None
    status = await service.sync_entity_type(entity_type, date_range)
    return SyncStatusResponse.from_row(status)
