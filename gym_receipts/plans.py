import logging
from datetime import date, datetime
from typing import Dict, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta

from .exceptions import InvalidDateError
from .models import ACTIVE, EXPIRED, EXPIRING_SOON, PlanCatalogEntry

DATE_FORMAT = "%Y-%m-%d"
EXPIRING_SOON_DAYS = 7
DEFAULT_PLAN_TYPE = "monthly"
DEFAULT_DURATION_MONTHS = 1

FALLBACK_PLANS: Dict[str, int] = {
    "monthly": 1,
    "quarterly": 3,
    "half_yearly": 6,
    "yearly": 12,
}

DateLike = Union[date, datetime, str]


def parse_date(value: Optional[DateLike]) -> date:
    """Parses a date, a datetime or a 'YYYY-MM-DD' string (an ISO time part is ignored).

    Raises InvalidDateError for empty or malformed input.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        raise InvalidDateError(f"Invalid date: {value!r}")
    date_part = value.strip().split("T")[0].split(" ")[0]
    try:
        return datetime.strptime(date_part, DATE_FORMAT).date()
    except ValueError:
        raise InvalidDateError(f"Invalid date: {value!r}. Expected YYYY-MM-DD.")


def try_parse_date(value: Optional[DateLike]) -> Optional[date]:
    try:
        return parse_date(value)
    except InvalidDateError:
        return None


def _positive_months(value) -> Optional[int]:
    try:
        months = int(value)
    except (TypeError, ValueError):
        return None
    return months if months > 0 else None


def find_plan(
    plan_key: str, catalog: Sequence[PlanCatalogEntry]
) -> Optional[PlanCatalogEntry]:
    """Finds the catalog entry for a selected plan key.

    Fields are tried in priority order: name, duration_type, then the stringified id.
    Comparison is case-insensitive.
    """
    if not plan_key:
        return None
    key = str(plan_key).strip().lower()
    for field_name in ("name", "duration_type", "id"):
        for entry in catalog:
            value = getattr(entry, field_name)
            if value is not None and str(value).strip().lower() == key:
                return entry
    return None


def resolve_duration(plan_key: str, catalog: Sequence[PlanCatalogEntry]) -> int:
    """Returns the plan duration in months.

    A matched catalog entry with a usable duration_months wins; otherwise the static
    fallback table is consulted; anything else is a single month.
    """
    entry = find_plan(plan_key, catalog)
    if entry is not None:
        months = _positive_months(entry.duration_months)
        if months is not None:
            return months
        logging.warning(
            f"Plan '{plan_key}' matched catalog entry {entry.id} without a valid duration_months."
        )
    key = str(plan_key or "").strip().lower()
    if key in FALLBACK_PLANS:
        return FALLBACK_PLANS[key]
    return DEFAULT_DURATION_MONTHS


def plan_fee_defaults(entry: Optional[PlanCatalogEntry]) -> Dict[str, object]:
    """Fee defaults a selected plan copies into the receipt form."""
    if entry is None:
        return {}
    defaults: Dict[str, object] = {}
    if entry.price is not None:
        defaults["package_fee"] = float(entry.price)
    if entry.registration_fee is not None:
        defaults["registration_fee"] = float(entry.registration_fee)
    if entry.discount is not None:
        defaults["discount"] = float(entry.discount)
    if entry.payment_method:
        defaults["payment_type"] = entry.payment_method
    return defaults


def compute_end_date(start_date: DateLike, months: int) -> str:
    # relativedelta clamps to the last day of the target month: 2024-01-31 + 1 -> 2024-02-29
    start = parse_date(start_date)
    end = start + relativedelta(months=months)
    return end.strftime(DATE_FORMAT)


def classify_membership(end_date: Optional[DateLike], today: Optional[date] = None) -> str:
    today = today or date.today()
    expiry = try_parse_date(end_date)
    if expiry is None:
        return EXPIRED
    if expiry < today:
        return EXPIRED
    days_until_expiry = (expiry - today).days
    if 0 < days_until_expiry <= EXPIRING_SOON_DAYS:
        return EXPIRING_SOON
    return ACTIVE
