"""
Read-through report routes.

Every route serves from the MultiLevelCache and only hits the DB on a miss.
Keys start with the entity name ("hours:2025-01-01:2025-01-31:all") so a sync
of that entity invalidates them; the cross-entity summary lives under
"dashboard:", which every sync invalidates.

Loaders use the request Session and commit once they have read, so no read
transaction is held while the durable tier writes. On a hit the Session is
never used.
"""
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from dashboard.api.deps import get_cache, get_session
from dashboard.cache.entry import CacheTier
from dashboard.cache.multilevel import MultiLevelCache, cache_key
from dashboard.config import get_settings
from dashboard.models.entities import AbsenceLine, Contract, Employee, Hour, Invoice, Project

router = APIRouter()

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday")


def _load_rows(session: Session, query) -> List[Dict[str, Any]]:
    rows = [row.model_dump(mode="json") for row in session.exec(query).all()]
    session.commit()
    return rows


def _check_range(start_date: date, end_date: date) -> None:
    if start_date > end_date:
        raise HTTPException(status_code=422, detail="start_date must not be after end_date")


async def _cached(cache: MultiLevelCache, key: str, factory):
    return await cache.get_or_set(
        key, factory, ttl=get_settings().cache_report_ttl_seconds, tier=CacheTier.DURABLE
    )


def contract_hours_on(contract: Contract, day: date) -> float:
    """Scheduled hours for `day`. Even/odd follows the ISO week number."""
    if day.weekday() >= len(_WEEKDAYS):
        return 0.0
    if day < contract.start_date or (contract.end_date is not None and day > contract.end_date):
        return 0.0
    parity = "even" if day.isocalendar()[1] % 2 == 0 else "odd"
    return getattr(contract, f"hours_{_WEEKDAYS[day.weekday()]}_{parity}")


def expected_hours(contracts: Iterable[Contract], start: date, end: date) -> float:
    contracts = list(contracts)
    total = 0.0
    day = start
    while day <= end:
        total += sum(contract_hours_on(c, day) for c in contracts)
        day += timedelta(days=1)
    return total


@router.get("/employees")
async def employee_report(
    include_inactive: bool = False,
    session: Session = Depends(get_session),
    cache: MultiLevelCache = Depends(get_cache),
):
    query = select(Employee).order_by(Employee.lastname, Employee.firstname)
    if not include_inactive:
        query = query.where(Employee.active == True)  # noqa: E712
    return await _cached(
        cache, cache_key("employees", "list", include_inactive), lambda: _load_rows(session, query)
    )


@router.get("/projects")
async def project_report(
    include_archived: bool = False,
    session: Session = Depends(get_session),
    cache: MultiLevelCache = Depends(get_cache),
):
    query = select(Project).order_by(Project.name)
    if not include_archived:
        query = query.where(Project.archived == False)  # noqa: E712
    return await _cached(
        cache, cache_key("projects", "list", include_archived), lambda: _load_rows(session, query)
    )


@router.get("/hours")
async def hours_report(
    start_date: date,
    end_date: date,
    employee_id: Optional[int] = None,
    session: Session = Depends(get_session),
    cache: MultiLevelCache = Depends(get_cache),
):
    """Hour registrations in [start_date, end_date], optionally for one employee."""
    _check_range(start_date, end_date)
    query = (
        select(Hour)
        .where(Hour.date >= start_date, Hour.date <= end_date)
        .order_by(Hour.date, Hour.id)
    )
    if employee_id is not None:
        query = query.where(Hour.employee_id == employee_id)

    key = cache_key("hours", start_date.isoformat(), end_date.isoformat(), employee_id or "all")
    return await _cached(cache, key, lambda: _load_rows(session, query))


@router.get("/invoices")
async def invoice_report(
    status: Optional[str] = None,
    session: Session = Depends(get_session),
    cache: MultiLevelCache = Depends(get_cache),
):
    """Invoices newest first; `status` is one of paid, unpaid, overdue."""
    query = select(Invoice).order_by(Invoice.date.desc(), Invoice.id.desc())
    if status:
        query = query.where(Invoice.status == status)
    return await _cached(
        cache, cache_key("invoices", "list", status or "all"), lambda: _load_rows(session, query)
    )


def _summarize(s: Session, start_date: date, end_date: date) -> List[Dict[str, Any]]:
    employees = s.exec(
        select(Employee).where(Employee.active == True).order_by(Employee.id)  # noqa: E712
    ).all()

    contracts = defaultdict(list)
    for contract in s.exec(select(Contract)).all():
        contracts[contract.employee_id].append(contract)

    written: Dict[int, float] = defaultdict(float)
    for hour in s.exec(
        select(Hour).where(Hour.date >= start_date, Hour.date <= end_date)
    ).all():
        written[hour.employee_id] += hour.amount

    absent: Dict[int, float] = defaultdict(float)
    for line in s.exec(
        select(AbsenceLine).where(AbsenceLine.date >= start_date, AbsenceLine.date <= end_date)
    ).all():
        absent[line.employee_id] += line.amount

    summary = [
        {
            "employee_id": e.id,
            "name": f"{e.firstname} {e.lastname}".strip(),
            "expected_hours": expected_hours(contracts[e.id], start_date, end_date),
            "written_hours": written[e.id],
            "absence_hours": absent[e.id],
        }
        for e in employees
    ]
    s.commit()
    return summary


@router.get("/summary")
async def summary_report(
    start_date: date,
    end_date: date,
    session: Session = Depends(get_session),
    cache: MultiLevelCache = Depends(get_cache),
):
    """
    Per active employee: contract hours expected in the range, hours written,
    and absence hours taken.
    """
    _check_range(start_date, end_date)
    key = cache_key("dashboard", "summary", start_date.isoformat(), end_date.isoformat())
    return await _cached(cache, key, lambda: _summarize(session, start_date, end_date))
