"""
SyncService: orchestrates fetching Gripp entities and persisting them to the DB.

Flow for one entity type:
  1. Acquire the entity type's lock (one sync per type at a time)
  2. Fetch through the ChunkedPaginator, windowed and/or fanned out per employee
  3. Normalize rows; rows that fail validation are skipped and counted
  4. In one transaction: delete the rows being replaced, then upsert in batches
  5. Commit if anything was persisted, otherwise roll back
  6. After commit: invalidate the entity's cache prefixes
  7. Overwrite the entity's SyncStatus row

Delete scope: date-partitioned entities only lose rows inside windows that were
fetched completely. Other entities are replaced as a whole table, but only
when every window completed; otherwise rows are upserted over the existing
table and nothing is deleted.

Upserts use one INSERT ... ON CONFLICT DO UPDATE per batch inside a SAVEPOINT.
A batch that fails is replayed one record per SAVEPOINT so a single bad record
is skipped without losing the rest.

Failures never propagate out of sync_entity_type(): they end up in the
returned SyncStatus with outcome="error".
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from dashboard.config import get_settings
from dashboard.gripp.client import equals
from dashboard.gripp.entities import (
    ENTITY_SPECS,
    FOUNDATIONAL_TYPES,
    SYNC_ORDER,
    EntitySpec,
    UnknownEntityTypeError,
    get_spec,
)
from dashboard.gripp.normalizer import RecordValidationError
from dashboard.gripp.paginator import ChunkedPaginator, EntityFilter, FetchResult
from dashboard.gripp.retry import RetryPolicy
from dashboard.models.entities import Employee
from dashboard.models.sync import SyncStatus

logger = logging.getLogger(__name__)

__all__ = ["SyncService", "SyncAllResult", "UnknownEntityTypeError"]

DateRange = Tuple[date, date]


@dataclass
class SyncAllResult:
    success: bool
    results: Dict[str, SyncStatus] = field(default_factory=dict)

    def summary(self) -> Dict[str, bool]:
        return {name: status.outcome == "success" for name, status in self.results.items()}


@dataclass
class _RunOutcome:
    success: bool
    message: str
    fetched: int = 0
    persisted: int = 0
    skipped: int = 0
    windows_failed: int = 0
    committed: bool = False


class SyncService:
    """Orchestrates Gripp → DB sync for one or all entity types."""

    def __init__(self, client, engine, cache=None, settings=None, paginator=None):
        """
        Args:
            client: GrippClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (see dashboard.db.engine.build_engine).
            cache: MultiLevelCache to invalidate after a commit, or None.
            settings: Settings override; defaults to get_settings().
            paginator: ChunkedPaginator override; built from settings if None.
        """
        self.client = client
        self.engine = engine
        self.cache = cache
        self.settings = settings or get_settings()
        self.paginator = paginator or ChunkedPaginator(
            client,
            retry_policy=RetryPolicy(
                max_retries=self.settings.sync_max_retries,
                base_delay=self.settings.sync_base_delay_seconds,
            ),
            page_size=self.settings.sync_page_size,
            chunk_days=self.settings.sync_chunk_days,
            page_delay=self.settings.sync_page_delay_seconds,
            window_delay=self.settings.sync_window_delay_seconds,
        )
        self.batch_size = max(1, self.settings.sync_batch_size)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def sync_entity_type(
        self, entity_type: str, date_range: Optional[DateRange] = None
    ) -> SyncStatus:
        """
        Sync one entity type.

        Args:
            entity_type: A key of ENTITY_SPECS, e.g. "hours".
            date_range: Inclusive (start, end). Ignored for entities that are
                not date-partitioned. None fetches everything.

        Returns:
            The SyncStatus row written for this run.

        Raises:
            UnknownEntityTypeError: entity_type is not registered.
            ValueError: date_range start is after its end.
        """
        spec = get_spec(entity_type)
        if date_range is not None and date_range[0] > date_range[1]:
            raise ValueError(f"start {date_range[0]} is after end {date_range[1]}")

        lock = self._locks.setdefault(spec.name, asyncio.Lock())
        if lock.locked():
            logger.info("Sync for %s already running, waiting", spec.name)

        async with lock:
            started = time.monotonic()
            logger.info("Sync %s starting (range=%s)", spec.name, date_range or "all")
            try:
                outcome = await self._run(spec, date_range)
            except Exception as exc:
                logger.exception("Sync %s failed", spec.name)
                outcome = _RunOutcome(success=False, message=str(exc) or exc.__class__.__name__)

            if outcome.committed:
                self._invalidate(spec)

            duration_ms = int((time.monotonic() - started) * 1000)
            status = self._write_status(spec.name, outcome, duration_ms)
            logger.info(
                "Sync %s finished: %s (%s) in %dms",
                spec.name, status.outcome, status.message, duration_ms,
            )
            return status

    async def sync_all(self, start: Optional[date] = None, end: Optional[date] = None) -> SyncAllResult:
        """
        Sync every entity type in dependency order.

        Date-partitioned types get [start, end]; the rest are fetched whole.
        Overall success needs the foundational types (employees, contracts).
        """
        date_range = (start, end) if start is not None and end is not None else None
        results: Dict[str, SyncStatus] = {}
        for entity_type in SYNC_ORDER:
            spec = ENTITY_SPECS[entity_type]
            results[entity_type] = await self.sync_entity_type(
                entity_type, date_range if spec.date_partitioned else None
            )

        success = all(results[name].outcome == "success" for name in FOUNDATIONAL_TYPES)
        failed = [name for name, status in results.items() if status.outcome != "success"]
        if failed:
            logger.warning("sync_all finished with failures: %s", ", ".join(failed))
        return SyncAllResult(success=success, results=results)

    def get_status(self, entity_type: Optional[str] = None) -> List[SyncStatus]:
        """Stored statuses, all or for one entity type, ordered by entity type."""
        with Session(self.engine) as s:
            query = select(SyncStatus).order_by(SyncStatus.entity_type)
            if entity_type is not None:
                query = query.where(SyncStatus.entity_type == entity_type)
            return list(s.exec(query).all())

    # ─── Fetch ────────────────────────────────────────────────────────────────

    async def _run(self, spec: EntitySpec, date_range: Optional[DateRange]) -> _RunOutcome:
        fetch_range = date_range if spec.date_partitioned else None
        fetch = await self._fetch(spec, fetch_range)
        windows_failed = len(fetch.failed_windows)

        if not fetch.records:
            if fetch.failed_windows:
                return _RunOutcome(
                    success=False,
                    message=f"No records fetched; {windows_failed} window(s) failed: {fetch.errors[0]}",
                    windows_failed=windows_failed,
                )
            if spec.critical:
                return _RunOutcome(success=False, message="Upstream returned no records; existing data kept")
            return _RunOutcome(success=True, message="No records to sync")

        rows, invalid = self._normalize(spec, fetch.records)
        outcome = self._persist(spec, fetch, rows)
        outcome.fetched = fetch.deduplicated_count
        outcome.skipped += invalid
        outcome.windows_failed = windows_failed
        if outcome.success and windows_failed:
            outcome.message += f"; {windows_failed} window(s) failed"
        return outcome

    async def _fetch(self, spec: EntitySpec, date_range: Optional[DateRange]) -> FetchResult:
        base = EntityFilter(method=spec.method, date_field=spec.date_field, orderings=spec.orderings)
        if spec.fan_out_field is None:
            return await self.paginator.fetch_all(base, date_range)

        employee_ids = self._employee_ids()
        if not employee_ids:
            logger.info("No employees stored; fetching %s without per-employee fan-out", spec.name)
            return await self.paginator.fetch_all(base, date_range)

        filters = [
            EntityFilter(
                method=spec.method,
                filters=(equals(spec.fan_out_field, employee_id),),
                date_field=spec.date_field,
                orderings=spec.orderings,
            )
            for employee_id in employee_ids
        ]
        return await self.paginator.fetch_fan_out(
            filters,
            date_range,
            fan_out=self.settings.sync_fan_out,
            group_delay=self.settings.sync_group_delay_seconds,
        )

    def _employee_ids(self) -> List[int]:
        with Session(self.engine) as s:
            return list(s.exec(select(Employee.id).order_by(Employee.id)).all())

    def _normalize(self, spec: EntitySpec, records: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
        rows = []
        invalid = 0
        synced_at = datetime.now(timezone.utc)
        for raw in records:
            try:
                row = spec.normalize(raw)
            except RecordValidationError as exc:
                invalid += 1
                logger.warning("Skipping invalid %s record: %s", spec.name, exc)
                continue
            row["synced_at"] = synced_at
            rows.append(row)
        return rows, invalid

    # ─── Persist ──────────────────────────────────────────────────────────────

    def _persist(self, spec: EntitySpec, fetch: FetchResult, rows: List[Dict[str, Any]]) -> _RunOutcome:
        with Session(self.engine) as s:
            try:
                deleted = self._delete_existing(s, spec, fetch)
                persisted, skipped = self._upsert(s, spec, rows)
                if persisted == 0:
                    s.rollback()
                    logger.error(
                        "Sync %s persisted none of %d records; rolled back", spec.name, len(rows)
                    )
                    return _RunOutcome(
                        success=False,
                        message=f"No records persisted out of {fetch.deduplicated_count} fetched; rolled back",
                        skipped=skipped,
                    )
                s.commit()
            except Exception:
                s.rollback()
                logger.error("Sync %s transaction rolled back", spec.name)
                raise

        logger.info(
            "Sync %s committed: %d deleted, %d persisted, %d skipped",
            spec.name, deleted, persisted, skipped,
        )
        return _RunOutcome(
            success=True,
            message=f"Synced {persisted} records",
            persisted=persisted,
            skipped=skipped,
            committed=True,
        )

    def _delete_existing(self, s: Session, spec: EntitySpec, fetch: FetchResult) -> int:
        table = spec.model.__table__
        if spec.date_partitioned:
            column = table.c[spec.partition_column]
            deleted = 0
            for window in fetch.complete_windows:
                stmt = delete(table)
                if window.is_bounded:
                    stmt = stmt.where(column >= window.start, column <= window.end)
                deleted += s.exec(stmt).rowcount
            return deleted

        if not fetch.complete:
            logger.warning(
                "Sync %s: %d window(s) failed, upserting without replacing the table",
                spec.name, len(fetch.failed_windows),
            )
            return 0
        return s.exec(delete(table)).rowcount

    def _upsert(self, s: Session, spec: EntitySpec, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
        persisted = 0
        skipped = 0
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start:start + self.batch_size]
            try:
                with s.begin_nested():
                    self._execute_upsert(s, spec, batch)
                persisted += len(batch)
                continue
            except SQLAlchemyError as exc:
                logger.warning(
                    "Batch of %d %s records failed (%s); retrying one by one",
                    len(batch), spec.name, exc.__class__.__name__,
                )

            for row in batch:
                try:
                    with s.begin_nested():
                        self._execute_upsert(s, spec, [row])
                    persisted += 1
                except SQLAlchemyError as exc:
                    skipped += 1
                    logger.warning("Skipping %s record %s: %s", spec.name, row.get("id"), exc)
        return persisted, skipped

    def _execute_upsert(self, s: Session, spec: EntitySpec, rows: List[Dict[str, Any]]) -> None:
        stmt = sqlite_insert(spec.model.__table__).values(rows)
        updates = {name: stmt.excluded[name] for name in rows[0] if name != "id"}
        s.exec(stmt.on_conflict_do_update(index_elements=["id"], set_=updates))

    # ─── Status and cache ─────────────────────────────────────────────────────

    def _invalidate(self, spec: EntitySpec) -> None:
        if self.cache is None:
            return
        for prefix in spec.cache_prefixes:
            try:
                self.cache.delete_by_prefix(prefix)
            except Exception as exc:
                logger.error("Cache invalidation for %r failed: %s", prefix, exc)

    def _write_status(self, entity_type: str, outcome: _RunOutcome, duration_ms: int) -> SyncStatus:
        """Overwrite the stored status. If the write fails the unsaved status is returned."""
        fields = dict(
            last_run_at=datetime.now(timezone.utc),
            outcome="success" if outcome.success else "error",
            message=outcome.message,
            duration_ms=duration_ms,
            records_fetched=outcome.fetched,
            records_persisted=outcome.persisted,
            records_skipped=outcome.skipped,
            windows_failed=outcome.windows_failed,
        )
        try:
            with Session(self.engine) as s:
                status = s.get(SyncStatus, entity_type) or SyncStatus(entity_type=entity_type)
                for name, value in fields.items():
                    setattr(status, name, value)
                s.add(status)
                s.commit()
                s.refresh(status)
                return status
        except SQLAlchemyError as exc:
            logger.error("Could not store sync status for %s: %s", entity_type, exc)
            return SyncStatus(entity_type=entity_type, **fields)
