"""Per-entity sync status model."""
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncStatus(SQLModel, table=True):
    """Latest sync outcome for one entity type. Overwritten on every run."""

    entity_type: str = Field(primary_key=True)
    last_run_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: str = "success"  # "success", "error"
    message: Optional[str] = None
    duration_ms: int = 0
    records_fetched: int = 0
    records_persisted: int = 0
    records_skipped: int = 0
    windows_failed: int = 0
