import sqlite3
from datetime import date, timedelta

import pytest

from gym_receipts.database import create_database
from gym_receipts.database_manager import DatabaseManager
from gym_receipts.exceptions import PersistenceError
from gym_receipts.models import (
    PAYMENT,
    TAG_NEW_MEMBERSHIP,
    Member,
    PlanCatalogEntry,
    Receipt,
    TaxLine,
    TaxRule,
)


@pytest.fixture
def db_manager() -> DatabaseManager:
    conn = create_database(":memory:")
    conn.execute("PRAGMA foreign_keys = ON;")
    manager = DatabaseManager(connection=conn)
    yield manager
    conn.close()


def today_str():
    return date.today().strftime("%Y-%m-%d")


def future_date_str(days: int):
    return (date.today() + timedelta(days=days)).strftime("%Y-%m-%d")


def add_test_member(db_manager: DatabaseManager, **overrides) -> Member:
    data = dict(
        id=None,
        name="Test Member",
        mobile_no="9000000001",
        plan_type="monthly",
        subscription_start_date=today_str(),
        subscription_end_date=future_date_str(30),
        package_fee=2000.0,
        membership_fees=2000.0,
    )
    data.update(overrides)
    member = db_manager.add_member(Member(**data))
    assert member is not None and member.id is not None
    return member


def build_receipt(member_id: str, **overrides) -> Receipt:
    data = dict(
        id=None,
        receipt_number=None,
        member_id=member_id,
        member_name="Test Member",
        amount=2000.0,
        amount_paid=2000.0,
        due_amount=0.0,
        transaction_type=PAYMENT,
        receipt_tag=TAG_NEW_MEMBERSHIP,
        created_at="2024-06-15 10:00:00",
        created_by="tester",
        package_fee=2000.0,
    )
    data.update(overrides)
    return Receipt(**data)


def test_add_and_get_member(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    fetched = db_manager.get_member_by_id(member.id)
    assert fetched == member
    assert [m.id for m in db_manager.get_all_members()] == [member.id]
    assert db_manager.get_member_by_id("missing") is None


def test_update_member_patch(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    assert db_manager.update_member(member.id, {"paid_amount": 750.0, "plan_type": "yearly"}) is True
    fetched = db_manager.get_member_by_id(member.id)
    assert fetched.paid_amount == 750.0
    assert fetched.plan_type == "yearly"
    assert db_manager.update_member("missing", {"paid_amount": 1.0}) is False
    with pytest.raises(ValueError):
        db_manager.update_member(member.id, {"id": "other"})


def test_master_packages_round_trip(db_manager: DatabaseManager):
    db_manager.add_master_package(PlanCatalogEntry(id=None, name="Yearly Pro", duration_type="yearly", duration_months=12, price=12000.0))
    db_manager.add_master_package(PlanCatalogEntry(id=None, name="Monthly", duration_type="monthly", duration_months=1, price=1500.0, registration_fee=500.0))
    db_manager.add_master_package(PlanCatalogEntry(id=None, name="Retired", duration_type="custom", duration_months=2, price=100.0, is_active=False))

    packages = db_manager.master_packages_get_all()
    assert [p.name for p in packages] == ["Monthly", "Yearly Pro"]
    assert packages[0].registration_fee == 500.0
    assert packages[0].is_active is True
    assert len(db_manager.master_packages_get_all(active_only=False)) == 3
    with pytest.raises(ValueError):
        db_manager.add_master_package(PlanCatalogEntry(id=None, name="Broken", duration_months=0))


def test_tax_settings_only_active(db_manager: DatabaseManager):
    db_manager.add_tax_setting(TaxRule(id=None, name="GST", tax_type="gst", percentage=18.0, is_inclusive=True))
    db_manager.add_tax_setting(TaxRule(id=None, name="Old VAT", tax_type="vat", percentage=5.0, is_active=False))
    taxes = db_manager.master_tax_settings_get_all()
    assert len(taxes) == 1
    assert taxes[0].is_inclusive is True


def test_receipt_numbers_increment(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    first = db_manager.create_receipt(build_receipt(member.id))
    second = db_manager.create_receipt(build_receipt(member.id, created_at="2024-06-16 10:00:00"))
    assert first.receipt_number == "RCP000001"
    assert second.receipt_number == "RCP000002"


def test_create_receipt_with_tax_lines(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    line = TaxLine("t1", "GST", "gst", 18.0, False, 2000.0, 360.0)
    receipt = db_manager.create_receipt(build_receipt(member.id, tax_amount=360.0, tax_breakdown=[line]))
    fetched = db_manager.get_receipt_by_id(receipt.id)
    assert fetched.tax_breakdown == [line]
    assert fetched.is_current_version is True


def test_create_receipt_version_supersedes_original(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    original = db_manager.create_receipt(build_receipt(member.id))
    version = build_receipt(
        member.id,
        receipt_number=original.receipt_number,
        amount_paid=1500.0,
        due_amount=500.0,
        original_receipt_id=original.id,
        version_number=2,
        updated_at="2024-06-20 09:00:00",
    )
    assert db_manager.create_receipt_version(original.id, version) is not None

    history = db_manager.get_receipt_history(original.id)
    assert [r.version_number for r in history] == [1, 2]
    assert history[0].is_current_version is False
    assert history[0].superseded_at == "2024-06-20 09:00:00"
    assert history[0].amount_paid == 2000.0
    assert history[1].is_current_version is True

    assert [r.id for r in db_manager.get_receipts_by_member_id(member.id)] == [version.id]
    assert len(db_manager.get_receipts_by_member_id(member.id, current_only=False)) == 2
    # A superseded version cannot be superseded again
    assert db_manager.create_receipt_version(original.id, build_receipt(member.id)) is None


def test_delete_current_version_restores_previous(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    original = db_manager.create_receipt(build_receipt(member.id))
    version = build_receipt(member.id, original_receipt_id=original.id, version_number=2)
    db_manager.create_receipt_version(original.id, version)

    deleted = db_manager.delete_receipt(version.id)
    assert deleted.id == version.id
    restored = db_manager.get_receipt_by_id(original.id)
    assert restored.is_current_version is True
    assert restored.superseded_at is None
    assert db_manager.delete_receipt("missing") is None


def test_save_with_member_update_is_atomic(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    with pytest.raises(PersistenceError):
        db_manager.save_receipt_with_member_update(
            build_receipt(member.id), "missing-member", {"paid_amount": 2000.0}
        )
    assert db_manager.get_receipts_by_member_id(member.id, current_only=False) == []

    with pytest.raises(PersistenceError):
        db_manager.save_receipt_with_member_update(
            build_receipt(member.id), member.id, {"not_a_column": 1}
        )
    assert db_manager.get_receipts_by_member_id(member.id, current_only=False) == []

    saved = db_manager.save_receipt_with_member_update(
        build_receipt(member.id), member.id, {"paid_amount": 2000.0}
    )
    assert saved.id is not None
    assert db_manager.get_member_by_id(member.id).paid_amount == 2000.0


def test_member_due_amount(db_manager: DatabaseManager):
    member = add_test_member(db_manager, registration_fee=500.0)
    db_manager.create_receipt(build_receipt(member.id, amount=2500.0, amount_paid=1000.0, due_amount=1500.0))
    assert db_manager.get_member_due_amount(member.id) == 1500.0
    assert db_manager.get_member_due_amount("missing") is None


def test_receipts_for_month(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    db_manager.create_receipt(build_receipt(member.id, created_at="2024-06-15 10:00:00"))
    db_manager.create_receipt(build_receipt(member.id, created_at="2024-07-01 10:00:00"))
    june = db_manager.get_receipts_for_month(2024, 6)
    assert len(june) == 1
    assert june[0].created_at.startswith("2024-06")


def test_delete_member_removes_receipts(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    db_manager.create_receipt(build_receipt(member.id))
    assert db_manager.delete_member(member.id) is True
    cursor = db_manager.conn.cursor()
    cursor.execute("SELECT COUNT(*) FROM receipts")
    assert cursor.fetchone()[0] == 0
    assert db_manager.delete_member(member.id) is False


def test_receipt_for_unknown_member_fails_foreign_key(db_manager: DatabaseManager):
    assert db_manager.create_receipt(build_receipt("no-such-member")) is None
    cursor = db_manager.conn.cursor()
    cursor.execute("SELECT COUNT(*) FROM receipts")
    assert cursor.fetchone()[0] == 0
    assert isinstance(db_manager.conn, sqlite3.Connection)


def test_receipt_numbers_continue_past_six_digits(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    db_manager.create_receipt(build_receipt(member.id, receipt_number="RCP999999"))
    db_manager.create_receipt(build_receipt(member.id, receipt_number="RCP1000000"))
    assert db_manager.generate_receipt_number() == "RCP1000001"


def test_requested_transaction_type_is_stored(db_manager: DatabaseManager):
    member = add_test_member(db_manager)
    receipt = db_manager.create_receipt(
        build_receipt(member.id, transaction_type="partial_payment", requested_transaction_type="renewal")
    )
    fetched = db_manager.get_receipt_by_id(receipt.id)
    assert fetched.transaction_type == "partial_payment"
    assert fetched.requested_transaction_type == "renewal"
