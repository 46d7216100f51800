"""Mirrored Gripp entities: employees, contracts, projects, absence, hours, invoices.

Primary keys are the upstream-assigned Gripp ids, never generated locally.
"""
import datetime as dt
from typing import Optional

from sqlmodel import Field, SQLModel


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _upstream_id():
    return Field(primary_key=True, sa_column_kwargs={"autoincrement": False})


class Employee(SQLModel, table=True):
    id: int = _upstream_id()
    firstname: str = ""
    lastname: str = ""
    email: str = ""
    active: bool = True
    function: str = ""
    department_id: Optional[int] = None
    department_name: str = ""
    synced_at: dt.datetime = Field(default_factory=_utcnow)


class Contract(SQLModel, table=True):
    """Employment contract; weekly schedule alternates between even and odd weeks."""

    id: int = _upstream_id()
    employee_id: int = Field(index=True)

    hours_monday_even: float = 0.0
    hours_tuesday_even: float = 0.0
    hours_wednesday_even: float = 0.0
    hours_thursday_even: float = 0.0
    hours_friday_even: float = 0.0
    hours_monday_odd: float = 0.0
    hours_tuesday_odd: float = 0.0
    hours_wednesday_odd: float = 0.0
    hours_thursday_odd: float = 0.0
    hours_friday_odd: float = 0.0

    start_date: dt.date
    end_date: Optional[dt.date] = None  # None = open-ended
    internal_price_per_hour: Optional[float] = None
    synced_at: dt.datetime = Field(default_factory=_utcnow)


class Project(SQLModel, table=True):
    id: int = _upstream_id()
    number: Optional[int] = None
    name: str
    company_name: str = ""
    archived: bool = False
    deadline: Optional[dt.date] = None
    total_excl_vat: Optional[float] = None
    synced_at: dt.datetime = Field(default_factory=_utcnow)


class AbsenceLine(SQLModel, table=True):
    """One day of an absence request (leave, sickness, holiday)."""

    id: int = _upstream_id()
    absence_request_id: Optional[int] = Field(default=None, index=True)
    employee_id: int = Field(index=True)
    date: dt.date = Field(index=True)
    amount: float = 0.0  # hours
    type_name: str = ""
    status_name: str = ""
    description: str = ""
    synced_at: dt.datetime = Field(default_factory=_utcnow)


class Hour(SQLModel, table=True):
    """A worked-hours registration."""

    id: int = _upstream_id()
    employee_id: int = Field(index=True)
    project_id: Optional[int] = Field(default=None, index=True)
    project_name: Optional[str] = None
    date: dt.date = Field(index=True)
    amount: float = 0.0
    description: str = ""
    status_name: str = ""
    synced_at: dt.datetime = Field(default_factory=_utcnow)


class Invoice(SQLModel, table=True):
    id: int = _upstream_id()
    number: str = ""
    date: dt.date = Field(index=True)
    due_date: Optional[dt.date] = None
    company_id: Optional[int] = None
    company_name: str = ""
    subject: str = ""
    total_incl_vat: float = 0.0
    total_excl_vat: float = 0.0
    total_open_incl_vat: Optional[float] = None
    is_paid: bool = False
    status: str = "unpaid"  # "paid", "unpaid", "overdue"
    synced_at: dt.datetime = Field(default_factory=_utcnow)
