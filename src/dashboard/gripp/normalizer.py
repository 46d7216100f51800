"""
Gripp API row normalizer.

Converts raw rows from Gripp list endpoints into clean field dicts that map
directly onto the SQLModel entity columns. No DB access here; the sync
service handles persistence.

Rows are validated here, at the boundary. A row that cannot be mapped raises
RecordValidationError and is skipped by the caller; nothing downstream has to
second-guess the payload shape.

Gripp conventions handled here:

  References are objects:    {"id": 12, "searchname": "Jane Doe"}
  Dates are objects:         {"date": "2025-01-15 00:00:00.000000",
                              "timezone_type": 3, "timezone": "Europe/Amsterdam"}
  Money is usually a string: "1234.50"
"""
from datetime import date, datetime
from typing import Any, Dict, Optional


class RecordValidationError(ValueError):
    """Raised when an upstream row is missing a required field or is malformed."""


# ─── Field helpers ────────────────────────────────────────────────────────────

def record_id(raw: Dict[str, Any]) -> int:
    """Return the upstream id as an int, or raise RecordValidationError."""
    if not isinstance(raw, dict):
        raise RecordValidationError(f"Row is not an object: {raw!r}")
    value = raw.get("id")
    if isinstance(value, bool):
        raise RecordValidationError(f"Row has a non-numeric id: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"Row has no usable id: {value!r}")


def parse_gripp_date(value: Any) -> Optional[date]:
    """Parse a Gripp date object or plain date string. Returns None if empty."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("date")
        if not value:
            return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise RecordValidationError(f"Unrecognized date value: {value!r}")
    try:
        return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        raise RecordValidationError(f"Unparseable date: {value!r}")


def _ref_id(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("id")
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _ref_name(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("searchname") or value.get("name") or "")
    return ""


def _money(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"Unparseable amount: {value!r}")


def _required_date(raw: Dict[str, Any], key: str) -> date:
    parsed = parse_gripp_date(raw.get(key))
    if parsed is None:
        raise RecordValidationError(f"Row {raw.get('id')} is missing {key}")
    return parsed


def _required_ref(raw: Dict[str, Any], key: str) -> int:
    ref = _ref_id(raw.get(key))
    if ref is None:
        raise RecordValidationError(f"Row {raw.get('id')} is missing {key}.id")
    return ref


# ─── Entity normalizers ───────────────────────────────────────────────────────

def normalize_employee(raw: Dict[str, Any]) -> Dict[str, Any]:
    function = raw.get("function")
    return {
        "id": record_id(raw),
        "firstname": raw.get("firstname") or "",
        "lastname": raw.get("lastname") or "",
        "email": raw.get("email") or "",
        "active": bool(raw.get("active", True)),
        "function": function if isinstance(function, str) else _ref_name(function),
        "department_id": _ref_id(raw.get("department")),
        "department_name": _ref_name(raw.get("department")),
    }


_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday")


def normalize_contract(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Contract rows carry ten schedule fields: one per weekday for even and odd weeks."""
    fields: Dict[str, Any] = {
        "id": record_id(raw),
        "employee_id": _required_ref(raw, "employee"),
        "start_date": _required_date(raw, "startdate"),
        "end_date": parse_gripp_date(raw.get("enddate")),
        "internal_price_per_hour": _money(raw.get("internal_price_per_hour")),
    }
    for parity in ("even", "odd"):
        for day in _WEEKDAYS:
            key = f"hours_{day}_{parity}"
            fields[key] = _money(raw.get(key)) or 0.0
    return fields


def normalize_project(raw: Dict[str, Any]) -> Dict[str, Any]:
    name = raw.get("name") or raw.get("searchname")
    if not name:
        raise RecordValidationError(f"Project {raw.get('id')} has no name")
    number = raw.get("number")
    return {
        "id": record_id(raw),
        "number": int(number) if isinstance(number, (int, str)) and str(number).isdigit() else None,
        "name": name,
        "company_name": _ref_name(raw.get("company")),
        "archived": bool(raw.get("archived", False)),
        "deadline": parse_gripp_date(raw.get("deadline")),
        "total_excl_vat": _money(raw.get("totalexclvat")),
    }


def normalize_absence_line(raw: Dict[str, Any]) -> Dict[str, Any]:
    """One absencerequestline row. The parent request carries type and employee."""
    request = raw.get("absencerequest") if isinstance(raw.get("absencerequest"), dict) else {}
    employee_id = _ref_id(raw.get("employee")) or _ref_id(request.get("employee"))
    if employee_id is None:
        raise RecordValidationError(f"Absence line {raw.get('id')} has no employee")
    return {
        "id": record_id(raw),
        "absence_request_id": _ref_id(request) or _ref_id(raw.get("absencerequest")),
        "employee_id": employee_id,
        "date": _required_date(raw, "date"),
        "amount": _money(raw.get("amount")) or 0.0,
        "type_name": _ref_name(request.get("absencetype")) or _ref_name(raw.get("absencetype")),
        "status_name": _ref_name(raw.get("absencerequeststatus")) or _ref_name(raw.get("status")),
        "description": raw.get("description") or request.get("comment") or "",
    }


def normalize_hour(raw: Dict[str, Any]) -> Dict[str, Any]:
    project = raw.get("offerprojectbase") or raw.get("project")
    return {
        "id": record_id(raw),
        "employee_id": _required_ref(raw, "employee"),
        "project_id": _ref_id(project),
        "project_name": _ref_name(project) or None,
        "date": _required_date(raw, "date"),
        "amount": _money(raw.get("amount")) or 0.0,
        "description": raw.get("description") or "",
        "status_name": _ref_name(raw.get("status")),
    }


def normalize_invoice(raw: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    """
    Invoices are paid when nothing is left open (totalopeninclvat == 0).
    Unpaid invoices past their expiry date are overdue.
    """
    today = today or date.today()
    total_open = _money(raw.get("totalopeninclvat"))
    is_paid = total_open is not None and abs(total_open) < 0.005
    due_date = parse_gripp_date(raw.get("expirydate"))
    if is_paid:
        status = "paid"
    elif due_date is not None and due_date < today:
        status = "overdue"
    else:
        status = "unpaid"

    return {
        "id": record_id(raw),
        "number": str(raw.get("number") or ""),
        "date": _required_date(raw, "date"),
        "due_date": due_date,
        "company_id": _ref_id(raw.get("company")),
        "company_name": _ref_name(raw.get("company")),
        "subject": raw.get("subject") or raw.get("description") or "",
        "total_incl_vat": _money(raw.get("totalinclvat")) or 0.0,
        "total_excl_vat": _money(raw.get("totalexclvat")) or 0.0,
        "total_open_incl_vat": total_open,
        "is_paid": is_paid,
        "status": status,
    }
