"""
Durable cache tier backed by the CacheRecord table.

Values are stored as JSON. Keys are namespaced ("cache:<key>") so the table
can be shared with other key spaces; callers only ever see logical keys.

Every method may raise SQLAlchemy or serialization errors. MultiLevelCache
catches and logs them: the cache is not the system of record.
"""
import json
from typing import List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import delete, func
from sqlmodel import Session, select

from dashboard.cache.entry import CacheEntry, CacheTier
from dashboard.models.cache import CacheRecord

DEFAULT_NAMESPACE = "cache:"


class SqlCacheTier:
    def __init__(self, engine, namespace: str = DEFAULT_NAMESPACE):
        self.engine = engine
        self.namespace = namespace

    def _stored_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _logical_key(self, stored_key: str) -> str:
        return stored_key[len(self.namespace):]

    def read(self, key: str) -> Optional[CacheEntry]:
        with Session(self.engine) as s:
            row = s.get(CacheRecord, self._stored_key(key))
            if row is None:
                return None
            return CacheEntry(
                value=json.loads(row.value),
                created_at=row.created_at,
                expires_at=row.expires_at,
                tier=CacheTier.DURABLE,
                metadata=json.loads(row.metadata_json) if row.metadata_json else None,
            )

    def write(self, key: str, entry: CacheEntry) -> None:
        # Serialize before touching the DB so a bad value never leaves a partial row.
        value = json.dumps(entry.value, default=to_jsonable_python)
        metadata = json.dumps(entry.metadata, default=to_jsonable_python) if entry.metadata else None
        with Session(self.engine) as s:
            s.merge(CacheRecord(
                key=self._stored_key(key),
                value=value,
                created_at=entry.created_at,
                expires_at=entry.expires_at,
                metadata_json=metadata,
            ))
            s.commit()

    def remove(self, key: str) -> bool:
        with Session(self.engine) as s:
            result = s.exec(delete(CacheRecord).where(CacheRecord.key == self._stored_key(key)))
            s.commit()
            return result.rowcount > 0

    def keys(self) -> List[str]:
        with Session(self.engine) as s:
            stored = s.exec(
                select(CacheRecord.key).where(CacheRecord.key.startswith(self.namespace))
            ).all()
        return [self._logical_key(k) for k in stored]

    def clear(self) -> int:
        with Session(self.engine) as s:
            result = s.exec(delete(CacheRecord).where(CacheRecord.key.startswith(self.namespace)))
            s.commit()
            return result.rowcount

    def count(self) -> int:
        with Session(self.engine) as s:
            return s.exec(
                select(func.count()).select_from(CacheRecord).where(
                    CacheRecord.key.startswith(self.namespace)
                )
            ).one()

    def byte_size(self) -> int:
        """Approximate stored size: key plus serialized value lengths."""
        with Session(self.engine) as s:
            total = s.exec(
                select(func.sum(func.length(CacheRecord.key) + func.length(CacheRecord.value))).where(
                    CacheRecord.key.startswith(self.namespace)
                )
            ).one()
        return int(total or 0)
