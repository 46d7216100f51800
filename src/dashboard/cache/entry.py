"""Cache entry and tier types shared by both cache tiers."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class CacheTier(str, Enum):
    FAST = "fast"  # in-process dict, lost on restart
    DURABLE = "durable"  # SQLite table, survives restarts


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    expires_at: float
    tier: CacheTier = CacheTier.FAST
    metadata: Optional[Dict[str, Any]] = None
    mirrored: bool = False  # fast-tier copy of a durable entry

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)
