"""
Registry of synced entity types.

Each EntitySpec says where an entity comes from upstream, how its rows are
normalized, where they are stored, and how a resync scopes its delete:

  - date-partitioned entities (absences, hours) are fetched in date windows
    and only the windows that were fetched completely are replaced;
  - the rest are replaced as a whole table.

SYNC_ORDER is a dependency order: absence and hours aggregation join against
employees and contracts, so those go first.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from sqlmodel import SQLModel

from dashboard.gripp import normalizer
from dashboard.models.entities import AbsenceLine, Contract, Employee, Hour, Invoice, Project

REPORT_CACHE_PREFIX = "dashboard:"


@dataclass(frozen=True)
class EntitySpec:
    name: str
    method: str  # Gripp JSON-RPC list method
    model: Type[SQLModel]
    normalize: Callable[[Dict[str, Any]], Dict[str, Any]]
    date_field: Optional[str] = None  # upstream filter field for windowed fetches
    partition_column: Optional[str] = None  # local date column for range-scoped deletes
    fan_out_field: Optional[str] = None  # one request stream per employee on this field
    critical: bool = False
    orderings: Tuple[Dict[str, str], ...] = ()

    @property
    def date_partitioned(self) -> bool:
        return self.partition_column is not None

    @property
    def cache_prefixes(self) -> Tuple[str, ...]:
        return (f"{self.name}:", REPORT_CACHE_PREFIX)


ENTITY_SPECS: Dict[str, EntitySpec] = {
    spec.name: spec
    for spec in (
        EntitySpec(
            name="employees",
            method="employee.get",
            model=Employee,
            normalize=normalizer.normalize_employee,
            critical=True,
            orderings=({"field": "employee.id", "direction": "asc"},),
        ),
        EntitySpec(
            name="contracts",
            method="employmentcontract.get",
            model=Contract,
            normalize=normalizer.normalize_contract,
            fan_out_field="employmentcontract.employee",
            critical=True,
            orderings=({"field": "employmentcontract.startdate", "direction": "asc"},),
        ),
        EntitySpec(
            name="projects",
            method="project.get",
            model=Project,
            normalize=normalizer.normalize_project,
            orderings=({"field": "project.id", "direction": "asc"},),
        ),
        EntitySpec(
            name="absences",
            method="absencerequestline.get",
            model=AbsenceLine,
            normalize=normalizer.normalize_absence_line,
            date_field="absencerequestline.date",
            partition_column="date",
        ),
        EntitySpec(
            name="hours",
            method="hour.get",
            model=Hour,
            normalize=normalizer.normalize_hour,
            date_field="hour.date",
            partition_column="date",
            fan_out_field="hour.employee",
        ),
        EntitySpec(
            name="invoices",
            method="invoice.get",
            model=Invoice,
            normalize=normalizer.normalize_invoice,
            orderings=({"field": "invoice.date", "direction": "desc"},),
        ),
    )
}

SYNC_ORDER: Tuple[str, ...] = ("employees", "contracts", "projects", "absences", "hours", "invoices")
FOUNDATIONAL_TYPES: Tuple[str, ...] = tuple(n for n in SYNC_ORDER if ENTITY_SPECS[n].critical)


class UnknownEntityTypeError(KeyError):
    """Raised for an entity type that is not in the registry."""


def get_spec(entity_type: str) -> EntitySpec:
    try:
        return ENTITY_SPECS[entity_type]
    except KeyError:
        raise UnknownEntityTypeError(entity_type)
