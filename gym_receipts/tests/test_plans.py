from datetime import date, datetime, timedelta

import pytest

from gym_receipts.exceptions import InvalidDateError
from gym_receipts.models import ACTIVE, EXPIRED, EXPIRING_SOON, PlanCatalogEntry
from gym_receipts.plans import (
    classify_membership,
    compute_end_date,
    find_plan,
    parse_date,
    plan_fee_defaults,
    resolve_duration,
    try_parse_date,
)

TODAY = date(2024, 6, 15)


def test_fallback_plan_durations():
    assert resolve_duration("yearly", []) == 12
    assert resolve_duration("Half_Yearly", []) == 6
    assert resolve_duration("quarterly", []) == 3
    assert resolve_duration("unknown_plan", []) == 1
    assert resolve_duration("", []) == 1


def test_name_match_beats_id_match():
    catalog = [
        PlanCatalogEntry(id="gold", name="Silver", duration_type="custom", duration_months=2),
        PlanCatalogEntry(id="p2", name="Gold", duration_type="custom", duration_months=5),
    ]
    assert resolve_duration("gold", catalog) == 5
    assert find_plan("GOLD", catalog).id == "p2"


def test_duration_type_match_beats_id_match():
    catalog = [
        PlanCatalogEntry(id="quarterly", name="Basic", duration_type="custom", duration_months=9),
        PlanCatalogEntry(id="p2", name="Summer Deal", duration_type="quarterly", duration_months=4),
    ]
    assert resolve_duration("Quarterly", catalog) == 4


def test_id_match_is_stringified():
    catalog = [PlanCatalogEntry(id=42, name="Annual Pro", duration_type="custom", duration_months=12)]
    assert resolve_duration("42", catalog) == 12


def test_match_with_invalid_duration_falls_back_without_searching_further():
    catalog = [
        PlanCatalogEntry(id="p1", name="yearly", duration_type="yearly", duration_months=0),
        PlanCatalogEntry(id="p2", name="Other", duration_type="yearly", duration_months=7),
    ]
    # The name match wins even though its duration is unusable, so the static table decides
    assert resolve_duration("yearly", catalog) == 12


def test_match_with_unparseable_duration_and_unknown_key_defaults_to_one_month():
    catalog = [PlanCatalogEntry(id="p1", name="Promo", duration_months="abc")]
    assert resolve_duration("promo", catalog) == 1


def test_plan_fee_defaults_only_copies_present_fields():
    entry = PlanCatalogEntry(id="p1", name="Gold", duration_months=3, price=4500.0, payment_method="upi")
    assert plan_fee_defaults(entry) == {"package_fee": 4500.0, "payment_type": "upi"}
    assert plan_fee_defaults(None) == {}


def test_end_date_clamps_to_end_of_month():
    assert compute_end_date("2024-01-31", 1) == "2024-02-29"
    assert compute_end_date("2023-01-31", 1) == "2023-02-28"
    assert compute_end_date("2024-03-31", 6) == "2024-09-30"


def test_end_date_accepts_dates_and_iso_timestamps():
    assert compute_end_date(date(2024, 5, 10), 12) == "2025-05-10"
    assert compute_end_date(datetime(2024, 5, 10, 18, 30), 3) == "2024-08-10"
    assert compute_end_date("2024-05-10T08:00:00.000Z", 1) == "2024-06-10"


@pytest.mark.parametrize("bad_value", ["", None, "Invalid Date", "10/05/2024", "2024-13-01"])
def test_unparseable_start_date_raises(bad_value):
    with pytest.raises(InvalidDateError):
        compute_end_date(bad_value, 1)


def test_try_parse_date_returns_none_for_garbage():
    assert try_parse_date("not a date") is None
    assert parse_date("2024-02-29") == date(2024, 2, 29)


def test_classification_boundaries():
    assert classify_membership(TODAY + timedelta(days=7), TODAY) == EXPIRING_SOON
    assert classify_membership(TODAY + timedelta(days=1), TODAY) == EXPIRING_SOON
    assert classify_membership(TODAY + timedelta(days=8), TODAY) == ACTIVE
    assert classify_membership(TODAY, TODAY) == ACTIVE
    assert classify_membership(TODAY - timedelta(days=1), TODAY) == EXPIRED
    assert classify_membership(None, TODAY) == EXPIRED


def test_unparseable_end_date_is_expired():
    assert classify_membership("Invalid Date", TODAY) == EXPIRED
    assert classify_membership("2024-06-20T00:00:00", TODAY) == EXPIRING_SOON
