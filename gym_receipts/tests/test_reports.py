import os
from datetime import date

import openpyxl
import pytest

from gym_receipts.models import EXPIRED, EXPIRING_SOON, PARTIAL_PAYMENT, PAYMENT, Member, Receipt
from gym_receipts.reports import (
    due_amounts_frame,
    expiry_frame,
    export_monthly_report,
    monthly_summary,
    receipts_frame,
)

TODAY = date(2024, 6, 15)


def make_receipt(number: str, member_id: str, paid: float, due: float, transaction_type: str) -> Receipt:
    return Receipt(
        id=f"r-{number}",
        receipt_number=number,
        member_id=member_id,
        member_name=f"Member {member_id}",
        amount=paid + due,
        amount_paid=paid,
        due_amount=due,
        transaction_type=transaction_type,
        receipt_tag="New Membership",
        created_at="2024-06-15 10:30:00",
        created_by="frontdesk",
    )


@pytest.fixture
def receipts():
    return [
        make_receipt("RCP000001", "m1", 1200.0, 800.0, PARTIAL_PAYMENT),
        make_receipt("RCP000002", "m3", 2000.0, 0.0, PAYMENT),
    ]


def test_due_amounts_frame_lists_outstanding_members(receipts):
    members = [
        Member(id="m1", name="Asha", package_fee=2000.0),
        Member(id="m2", name="Ravi", package_fee=2500.0, registration_fee=500.0),
        Member(id="m3", name="Neha", package_fee=2000.0),
    ]
    by_member = {"m1": [receipts[0]], "m3": [receipts[1]]}
    df = due_amounts_frame(members, by_member)
    assert list(df["Member ID"]) == ["m2", "m1"]
    assert list(df["Due"]) == [3000.0, 800.0]


def test_expiry_frame_orders_by_days_left():
    members = [
        Member(id="a", name="Expired", subscription_end_date="2024-06-01"),
        Member(id="b", name="No Plan"),
        Member(id="c", name="Soon", subscription_end_date="2024-06-20"),
        Member(id="d", name="Later", subscription_end_date="2024-07-10"),
        Member(id="e", name="Far", subscription_end_date="2024-12-31"),
    ]
    df = expiry_frame(members, today=TODAY)
    assert list(df["Member ID"]) == ["b", "a", "c", "d"]
    assert df.loc[0, "End Date"] == "Invalid Date"
    assert df.loc[0, "Status"] == EXPIRED
    assert df.loc[2, "Status"] == EXPIRING_SOON
    assert df.loc[1, "Days Left"] == -14


def test_monthly_summary_totals(receipts):
    summary = monthly_summary(receipts).set_index("Metric")["Value"].to_dict()
    assert summary["Total Collected"] == 3200.0
    assert summary["Total Outstanding"] == 800.0
    assert summary["Receipts"] == 2
    assert summary[f"Collected ({PAYMENT})"] == 2000.0
    assert summary[f"Collected ({PARTIAL_PAYMENT})"] == 1200.0


def test_receipts_frame_formats_dates(receipts):
    df = receipts_frame(receipts)
    assert list(df["Date"]) == ["2024-06-15", "2024-06-15"]


def test_export_monthly_report(tmp_path, receipts):
    save_path = str(tmp_path / "receipts_june.xlsx")
    success, message = export_monthly_report(receipts, 2024, 6, save_path)
    assert success is True
    assert save_path in message

    workbook = openpyxl.load_workbook(save_path)
    assert workbook.sheetnames == ["Summary", "Receipts"]
    assert workbook["Summary"]["A1"].value == "Receipts Summary - June 2024"
    assert workbook["Summary"]["A3"].value == "Metric"
    assert workbook["Receipts"]["A2"].value == "Receipt No"
    assert workbook["Receipts"]["A3"].value == "RCP000001"
    assert workbook["Receipts"]["A2"].font.bold is True


def test_export_without_receipts_writes_nothing(tmp_path):
    save_path = str(tmp_path / "empty.xlsx")
    success, message = export_monthly_report([], 2024, 6, save_path)
    assert success is True
    assert message == "No receipts found for June 2024. Report not generated."
    assert not os.path.exists(save_path)


def test_export_to_missing_directory_fails(tmp_path, receipts):
    save_path = str(tmp_path / "missing" / "report.xlsx")
    success, message = export_monthly_report(receipts, 2024, 6, save_path)
    assert success is False
    assert message.startswith("An error occurred during report generation")
