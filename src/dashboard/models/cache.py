"""SQLite-backed rows for the durable cache tier."""
import time
from typing import Optional

from sqlmodel import Field, SQLModel


class CacheRecord(SQLModel, table=True):
    key: str = Field(primary_key=True, max_length=512)
    value: str  # JSON-serialized value
    created_at: float = Field(default_factory=time.time)
    expires_at: float = Field(index=True)  # Unix timestamp
    metadata_json: Optional[str] = None
