import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .exceptions import PersistenceError
from .models import (
    RECEIPT_CATEGORY_MEMBER,
    Member,
    PlanCatalogEntry,
    Receipt,
    TaxLine,
    TaxRule,
)
from .reconciliation import TIMESTAMP_FORMAT, compute_member_due

# Basic logging configuration (can be overridden by application's config)
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)

RECEIPT_NUMBER_PREFIX = "RCP"

MEMBER_COLUMNS = (
    "id", "name", "mobile_no", "email", "custom_member_id", "payment_mode", "plan_type",
    "subscription_start_date", "subscription_end_date", "subscription_status",
    "registration_fee", "package_fee", "membership_fees", "discount", "paid_amount", "status",
)
MEMBER_UPDATABLE_FIELDS = frozenset(MEMBER_COLUMNS) - {"id"}

RECEIPT_COLUMNS = (
    "id", "receipt_number", "member_id", "member_name", "amount", "amount_paid", "due_amount",
    "payment_type", "payment_mode", "description", "receipt_category", "transaction_type",
    "receipt_tag", "requested_transaction_type", "plan_type", "subscription_start_date",
    "subscription_end_date", "registration_fee", "package_fee", "discount", "base_amount",
    "tax_amount", "created_at", "updated_at", "created_by", "original_receipt_id",
    "version_number", "is_current_version", "superseded_at",
)


def _generate_id() -> str:
    return uuid.uuid4().hex


def _timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


class DatabaseManager:
    def __init__(self, connection: sqlite3.Connection):
        self.conn = connection
        self.conn.row_factory = sqlite3.Row

    # Members

    def add_member(self, member: Member) -> Optional[Member]:
        """Adds a new member. Generates the id when the member has none.
        Returns the member object with id, or None if an error occurs.
        """
        cursor = self.conn.cursor()
        if not member.id:
            member.id = _generate_id()
        values = [getattr(member, column) for column in MEMBER_COLUMNS]
        placeholders = ", ".join("?" for _ in MEMBER_COLUMNS)
        try:
            cursor.execute(
                f"INSERT INTO members ({', '.join(MEMBER_COLUMNS)}, created_at) VALUES ({placeholders}, ?)",
                (*values, _timestamp()),
            )
            self.conn.commit()
            logging.info(f"Member '{member.name}' added with ID {member.id}.")
            return member
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in add_member for '{member.name}': {e}", exc_info=True
            )
            return None

    def get_member_by_id(self, member_id: str) -> Optional[Member]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(MEMBER_COLUMNS)} FROM members WHERE id = ?", (member_id,)
            )
            row = cursor.fetchone()
            return Member(**row) if row else None
        except sqlite3.Error as e:
            logging.error(
                f"Database error in get_member_by_id for ID {member_id}: {e}", exc_info=True
            )
            return None

    def get_all_members(self) -> List[Member]:
        """Retrieves all members from the database."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(MEMBER_COLUMNS)} FROM members ORDER BY name ASC"
            )
            return [Member(**row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(f"Database error in get_all_members: {e}", exc_info=True)
            return []

    def _apply_member_update(self, cursor: sqlite3.Cursor, member_id: str, fields: Dict[str, Any]) -> int:
        unknown = set(fields) - MEMBER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown member fields: {', '.join(sorted(unknown))}")
        if not fields:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor.execute(
            f"UPDATE members SET {assignments}, updated_at = ? WHERE id = ?",
            (*fields.values(), _timestamp(), member_id),
        )
        return cursor.rowcount

    def update_member(self, member_id: str, fields: Dict[str, Any]) -> bool:
        """Patches the given member columns.
        Raises ValueError for columns that cannot be updated.
        Returns True if the member was updated, False otherwise.
        """
        cursor = self.conn.cursor()
        try:
            if not fields:
                logging.info(f"No fields provided to update for member ID {member_id}.")
                return True
            changed = self._apply_member_update(cursor, member_id, fields)
            self.conn.commit()
            if changed == 0:
                logging.warning(f"Member with ID {member_id} not found for update.")
                return False
            logging.info(f"Member ID {member_id} updated successfully.")
            return True
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in update_member for ID {member_id}: {e}", exc_info=True
            )
            return False

    def delete_member(self, member_id: str) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "DELETE FROM receipt_tax_mapping WHERE receipt_id IN (SELECT id FROM receipts WHERE member_id = ?)",
                (member_id,),
            )
            cursor.execute("DELETE FROM receipts WHERE member_id = ?", (member_id,))
            cursor.execute("DELETE FROM members WHERE id = ?", (member_id,))
            deleted = cursor.rowcount
            self.conn.commit()
            if deleted == 0:
                logging.warning(f"No member found with ID {member_id} to delete.")
                return False
            logging.info(f"Member ID {member_id} deleted successfully.")
            return True
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in delete_member for ID {member_id}: {e}", exc_info=True
            )
            return False

    # Master settings

    def add_master_package(self, package: PlanCatalogEntry) -> Optional[PlanCatalogEntry]:
        """Adds a package to the master catalog.
        Raises ValueError if duration_months is not a positive integer.
        """
        if package.duration_months is None or int(package.duration_months) <= 0:
            raise ValueError("duration_months must be a positive integer.")
        cursor = self.conn.cursor()
        if not package.id:
            package.id = _generate_id()
        try:
            cursor.execute(
                """
                INSERT INTO master_packages (
                    id, name, duration_type, duration_months, price,
                    registration_fee, discount, payment_method, is_active, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    package.id,
                    package.name,
                    package.duration_type or "custom",
                    int(package.duration_months),
                    package.price or 0.0,
                    package.registration_fee,
                    package.discount,
                    package.payment_method,
                    1 if package.is_active else 0,
                    _timestamp(),
                ),
            )
            self.conn.commit()
            logging.info(f"Package '{package.name}' added with ID {package.id}.")
            return package
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in add_master_package for '{package.name}': {e}", exc_info=True
            )
            return None

    def master_packages_get_all(self, active_only: bool = True) -> List[PlanCatalogEntry]:
        try:
            cursor = self.conn.cursor()
            sql = """
            SELECT id, name, duration_type, duration_months, price, registration_fee,
                   discount, payment_method, is_active
            FROM master_packages
            """
            if active_only:
                sql += " WHERE is_active = 1"
            sql += " ORDER BY duration_months ASC"
            cursor.execute(sql)
            packages = []
            for row in cursor.fetchall():
                data = dict(row)
                data["is_active"] = bool(data["is_active"])
                packages.append(PlanCatalogEntry(**data))
            return packages
        except sqlite3.Error as e:
            logging.error(f"Database error in master_packages_get_all: {e}", exc_info=True)
            return []

    def add_tax_setting(self, tax: TaxRule) -> Optional[TaxRule]:
        cursor = self.conn.cursor()
        if not tax.id:
            tax.id = _generate_id()
        try:
            cursor.execute(
                """
                INSERT INTO master_tax_settings (id, name, tax_type, percentage, is_inclusive, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tax.id,
                    tax.name,
                    tax.tax_type,
                    tax.percentage,
                    1 if tax.is_inclusive else 0,
                    1 if tax.is_active else 0,
                    _timestamp(),
                ),
            )
            self.conn.commit()
            logging.info(f"Tax setting '{tax.name}' added with ID {tax.id}.")
            return tax
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in add_tax_setting for '{tax.name}': {e}", exc_info=True
            )
            return None

    def master_tax_settings_get_all(self) -> List[TaxRule]:
        """Active tax settings, ordered by tax type."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT id, name, tax_type, percentage, is_inclusive, is_active
                FROM master_tax_settings WHERE is_active = 1 ORDER BY tax_type ASC
                """
            )
            taxes = []
            for row in cursor.fetchall():
                data = dict(row)
                data["is_inclusive"] = bool(data["is_inclusive"])
                data["is_active"] = bool(data["is_active"])
                taxes.append(TaxRule(**data))
            return taxes
        except sqlite3.Error as e:
            logging.error(f"Database error in master_tax_settings_get_all: {e}", exc_info=True)
            return []

    # Receipts

    def generate_receipt_number(self) -> str:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT receipt_number FROM receipts WHERE receipt_number LIKE ?
            ORDER BY CAST(substr(receipt_number, ?) AS INTEGER) DESC LIMIT 1
            """,
            (f"{RECEIPT_NUMBER_PREFIX}%", len(RECEIPT_NUMBER_PREFIX) + 1),
        )
        row = cursor.fetchone()
        last = 0
        if row:
            try:
                last = int(row["receipt_number"][len(RECEIPT_NUMBER_PREFIX):])
            except ValueError:
                logging.warning(f"Unexpected receipt number format: {row['receipt_number']}")
        return f"{RECEIPT_NUMBER_PREFIX}{last + 1:06d}"

    @staticmethod
    def _row_to_receipt(row: sqlite3.Row) -> Receipt:
        data = dict(row)
        data["is_current_version"] = bool(data["is_current_version"])
        return Receipt(**data)

    def _insert_receipt(self, cursor: sqlite3.Cursor, receipt: Receipt) -> Receipt:
        if not receipt.id:
            receipt.id = _generate_id()
        if not receipt.receipt_number:
            receipt.receipt_number = self.generate_receipt_number()
        if not receipt.receipt_category:
            receipt.receipt_category = RECEIPT_CATEGORY_MEMBER
        values = []
        for column in RECEIPT_COLUMNS:
            value = getattr(receipt, column)
            if column == "is_current_version":
                value = 1 if value else 0
            values.append(value)
        placeholders = ", ".join("?" for _ in RECEIPT_COLUMNS)
        cursor.execute(
            f"INSERT INTO receipts ({', '.join(RECEIPT_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        for line in receipt.tax_breakdown:
            cursor.execute(
                """
                INSERT INTO receipt_tax_mapping (
                    receipt_id, tax_setting_id, tax_name, tax_type, tax_percentage,
                    is_inclusive, base_amount, tax_amount, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    receipt.id,
                    line.tax_setting_id,
                    line.tax_name,
                    line.tax_type,
                    line.tax_percentage,
                    1 if line.is_inclusive else 0,
                    line.base_amount,
                    line.tax_amount,
                    receipt.created_at,
                ),
            )
        return receipt

    def _mark_superseded(self, cursor: sqlite3.Cursor, receipt_id: str, superseded_at: str) -> int:
        cursor.execute(
            "UPDATE receipts SET is_current_version = 0, superseded_at = ? WHERE id = ? AND is_current_version = 1",
            (superseded_at, receipt_id),
        )
        return cursor.rowcount

    def create_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        """Inserts a receipt (and its tax lines).
        Returns the receipt with id and receipt_number, or None if an error occurs.
        """
        cursor = self.conn.cursor()
        try:
            self._insert_receipt(cursor, receipt)
            self.conn.commit()
            logging.info(
                f"Receipt {receipt.receipt_number} created for member ID {receipt.member_id}."
            )
            return receipt
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in create_receipt for member ID {receipt.member_id}: {e}",
                exc_info=True,
            )
            return None

    def create_receipt_version(self, superseded_id: str, receipt: Receipt) -> Optional[Receipt]:
        """Inserts a new version and marks the receipt it replaces as superseded."""
        cursor = self.conn.cursor()
        try:
            if self._mark_superseded(cursor, superseded_id, receipt.updated_at or _timestamp()) == 0:
                self.conn.rollback()
                logging.warning(
                    f"Receipt {superseded_id} not found or already superseded; version not created."
                )
                return None
            self._insert_receipt(cursor, receipt)
            self.conn.commit()
            logging.info(
                f"Receipt {receipt.receipt_number} version {receipt.version_number} created "
                f"(supersedes {superseded_id})."
            )
            return receipt
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in create_receipt_version for {superseded_id}: {e}",
                exc_info=True,
            )
            return None

    def save_receipt_with_member_update(
        self,
        receipt: Receipt,
        member_id: str,
        member_fields: Dict[str, Any],
        superseded_id: Optional[str] = None,
    ) -> Receipt:
        """Writes the receipt, supersedes the previous version and patches the member
        in a single transaction. Raises PersistenceError after rolling back.
        """
        cursor = self.conn.cursor()
        try:
            if superseded_id:
                stamp = receipt.updated_at or _timestamp()
                if self._mark_superseded(cursor, superseded_id, stamp) == 0:
                    raise PersistenceError(
                        f"Receipt {superseded_id} not found or already superseded."
                    )
            self._insert_receipt(cursor, receipt)
            if self._apply_member_update(cursor, member_id, member_fields) == 0:
                raise PersistenceError(f"Member with ID {member_id} not found for update.")
            self.conn.commit()
            logging.info(
                f"Receipt {receipt.receipt_number} (version {receipt.version_number}) saved and "
                f"member ID {member_id} updated."
            )
            return receipt
        except PersistenceError:
            self.conn.rollback()
            logging.error(f"Receipt for member ID {member_id} rolled back.", exc_info=True)
            raise
        except (sqlite3.Error, ValueError) as e:
            self.conn.rollback()
            logging.error(
                f"Database error saving receipt for member ID {member_id}: {e}", exc_info=True
            )
            raise PersistenceError(f"Could not save receipt: {e}") from e

    def get_receipt_by_id(self, receipt_id: str) -> Optional[Receipt]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(RECEIPT_COLUMNS)} FROM receipts WHERE id = ?", (receipt_id,)
            )
            row = cursor.fetchone()
            if not row:
                return None
            receipt = self._row_to_receipt(row)
            receipt.tax_breakdown = self.get_receipt_taxes(receipt_id)
            return receipt
        except sqlite3.Error as e:
            logging.error(
                f"Database error in get_receipt_by_id for {receipt_id}: {e}", exc_info=True
            )
            return None

    def get_receipts_by_member_id(self, member_id: str, current_only: bool = True) -> List[Receipt]:
        """Member receipts, oldest first. Superseded versions are skipped unless current_only is False."""
        try:
            cursor = self.conn.cursor()
            sql = f"""
            SELECT {', '.join(RECEIPT_COLUMNS)} FROM receipts
            WHERE member_id = ? AND (receipt_category IS NULL OR receipt_category = ?)
            """
            if current_only:
                sql += " AND is_current_version = 1"
            sql += " ORDER BY created_at ASC, receipt_number ASC, version_number ASC"
            cursor.execute(sql, (member_id, RECEIPT_CATEGORY_MEMBER))
            return [self._row_to_receipt(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(
                f"Database error in get_receipts_by_member_id for member {member_id}: {e}",
                exc_info=True,
            )
            return []

    def get_receipt_history(self, original_receipt_id: str) -> List[Receipt]:
        """All versions of a receipt, oldest version first."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT {', '.join(RECEIPT_COLUMNS)} FROM receipts
                WHERE id = ? OR original_receipt_id = ?
                ORDER BY version_number ASC, created_at ASC
                """,
                (original_receipt_id, original_receipt_id),
            )
            return [self._row_to_receipt(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(
                f"Database error in get_receipt_history for {original_receipt_id}: {e}",
                exc_info=True,
            )
            return []

    def get_receipt_taxes(self, receipt_id: str) -> List[TaxLine]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT tax_setting_id, tax_name, tax_type, tax_percentage, is_inclusive,
                       base_amount, tax_amount
                FROM receipt_tax_mapping WHERE receipt_id = ? ORDER BY tax_type ASC
                """,
                (receipt_id,),
            )
            lines = []
            for row in cursor.fetchall():
                data = dict(row)
                data["is_inclusive"] = bool(data["is_inclusive"])
                lines.append(TaxLine(**data))
            return lines
        except sqlite3.Error as e:
            logging.error(
                f"Database error in get_receipt_taxes for {receipt_id}: {e}", exc_info=True
            )
            return []

    def delete_receipt(self, receipt_id: str) -> Optional[Receipt]:
        """Deletes one receipt record.
        If it was the current version, the latest remaining version of the same receipt
        becomes current again. Returns the deleted receipt, or None.
        """
        receipt = self.get_receipt_by_id(receipt_id)
        if receipt is None:
            logging.warning(f"No receipt found with ID {receipt_id} to delete.")
            return None
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM receipt_tax_mapping WHERE receipt_id = ?", (receipt_id,))
            cursor.execute("DELETE FROM receipts WHERE id = ?", (receipt_id,))
            if receipt.is_current_version:
                chain_id = receipt.original_receipt_id or receipt.id
                cursor.execute(
                    """
                    UPDATE receipts SET is_current_version = 1, superseded_at = NULL
                    WHERE id = (
                        SELECT id FROM receipts WHERE id = ? OR original_receipt_id = ?
                        ORDER BY version_number DESC LIMIT 1
                    )
                    """,
                    (chain_id, chain_id),
                )
            self.conn.commit()
            logging.info(f"Receipt ID {receipt_id} deleted successfully.")
            return receipt
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(
                f"Database error in delete_receipt for ID {receipt_id}: {e}", exc_info=True
            )
            return None

    def get_member_due_amount(self, member_id: str) -> Optional[float]:
        member = self.get_member_by_id(member_id)
        if member is None:
            logging.warning(f"Member with ID {member_id} not found for due amount.")
            return None
        return compute_member_due(member, self.get_receipts_by_member_id(member_id))

    def get_receipts_for_month(self, year: int, month: int) -> List[Receipt]:
        """Current member receipts created in the given month, oldest first."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT {', '.join(RECEIPT_COLUMNS)} FROM receipts
                WHERE strftime('%Y', created_at) = ? AND strftime('%m', created_at) = ?
                AND (receipt_category IS NULL OR receipt_category = ?)
                AND is_current_version = 1
                ORDER BY created_at ASC
                """,
                (str(year), f"{month:02d}", RECEIPT_CATEGORY_MEMBER),
            )
            return [self._row_to_receipt(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logging.error(
                f"Database error in get_receipts_for_month for {year}-{month:02d}: {e}",
                exc_info=True,
            )
            return []
