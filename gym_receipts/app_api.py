import logging
import threading
from dataclasses import asdict
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from .database import DB_FILE, initialize_database
from .database_manager import DatabaseManager
from .draft import ReceiptDraft
from .events import (
    MEMBER_DATA_UPDATED,
    RECEIPT_CREATED,
    RECEIPT_DELETED,
    RECEIPT_UPDATED,
    EventBus,
)
from .exceptions import PersistenceError, ValidationError
from .models import RENEWAL, Receipt, ReceiptInput
from .reconciliation import (
    create_or_version_receipt,
    plan_due_payment,
    receipt_chain_id,
    reconcile,
)

Result = Tuple[bool, str, Optional[Receipt]]


class AppAPI:
    """
    API layer for the gym receipts core.
    Acts as a bridge between the UI and the reconciliation and persistence layers.
    Returns (success, message, receipt) so the UI can show the message as-is.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        if db_manager is None:
            conn = initialize_database(DB_FILE)
            if conn is None:
                raise PersistenceError(f"Could not open database {DB_FILE}.")
            db_manager = DatabaseManager(connection=conn)
        self.db_manager: DatabaseManager = db_manager
        self.events: EventBus = event_bus or EventBus()
        self._member_locks: Dict[str, threading.RLock] = {}
        self._member_locks_guard = threading.Lock()
        # One sqlite connection is shared, so its transactions must not interleave
        self._db_lock = threading.RLock()

    def _member_lock(self, member_id: str) -> threading.RLock:
        with self._member_locks_guard:
            return self._member_locks.setdefault(str(member_id), threading.RLock())

    # Catalogs

    def new_receipt_draft(self, today: Optional[date] = None) -> ReceiptDraft:
        """Form state with a fresh snapshot of the package and tax catalogs."""
        with self._db_lock:
            catalog = self.db_manager.master_packages_get_all()
            taxes = self.db_manager.master_tax_settings_get_all()
        return ReceiptDraft(catalog=catalog, taxes=taxes, today=today)

    # Receipts

    def submit_receipt(
        self,
        data: ReceiptInput,
        existing_receipt_id: Optional[str] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Result:
        """Creates a receipt, or a new version of existing_receipt_id, and updates the member.

        Both writes happen in one transaction; nothing is stored when either fails.
        """
        if not data.member_id:
            return False, "Please select a member before creating the receipt.", None

        with self._member_lock(data.member_id):
            with self._db_lock:
                member = self.db_manager.get_member_by_id(data.member_id)
                if member is None:
                    return False, f"Member with ID {data.member_id} not found.", None
                existing = None
                if existing_receipt_id:
                    existing = self.db_manager.get_receipt_by_id(existing_receipt_id)
                    if existing is None:
                        return False, f"Receipt {existing_receipt_id} not found.", None
                    if not existing.is_current_version:
                        return False, f"Receipt {existing_receipt_id} has been superseded and cannot be edited.", None
                    if str(existing.member_id) != str(member.id):
                        logging.warning(
                            f"Edit of receipt {existing.receipt_number} for member {existing.member_id} "
                            f"submitted under member {member.id}; rejected."
                        )
                        return False, f"Receipt {existing.receipt_number} belongs to another member and cannot be moved.", None
                member_receipts = self.db_manager.get_receipts_by_member_id(member.id)
                catalog = self.db_manager.master_packages_get_all()

            try:
                result = reconcile(
                    member,
                    data,
                    member_receipts=member_receipts,
                    catalog=catalog,
                    existing=existing,
                    today=today,
                    now=now,
                )
            except ValidationError as e:
                logging.warning(f"Receipt for member {data.member_id} rejected: {e}")
                return False, str(e), None

            receipt = create_or_version_receipt(existing, result.receipt, now=now)
            try:
                with self._db_lock:
                    saved = self.db_manager.save_receipt_with_member_update(
                        receipt,
                        member.id,
                        asdict(result.member_patch),
                        superseded_id=existing.id if existing else None,
                    )
            except PersistenceError as e:
                return False, f"Failed to save receipt: {e}", None

        self.events.publish(RECEIPT_UPDATED if existing else RECEIPT_CREATED, saved)
        self.events.publish(MEMBER_DATA_UPDATED, member.id)
        if existing:
            message = f"Receipt {saved.receipt_number} updated (version {saved.version_number})."
        elif result.requested_transaction_type == RENEWAL:
            message = "Member subscription renewed and member data updated successfully!"
        else:
            message = "Receipt created and member information updated successfully!"
        return True, message, saved

    def pay_due(
        self,
        member_id: str,
        amount: float,
        payment_type: str = "cash",
        created_by: str = "system",
        today: Optional[date] = None,
    ) -> Result:
        """Records a payment against the member's outstanding due amount."""
        with self._member_lock(member_id):
            with self._db_lock:
                member = self.db_manager.get_member_by_id(member_id)
                if member is None:
                    return False, "Member not found", None
                receipts = self.db_manager.get_receipts_by_member_id(member_id)
            try:
                receipt, fields = plan_due_payment(
                    member, receipts, amount, payment_type=payment_type,
                    created_by=created_by, today=today,
                )
            except ValidationError as e:
                return False, str(e), None
            try:
                with self._db_lock:
                    saved = self.db_manager.save_receipt_with_member_update(receipt, member_id, fields)
            except PersistenceError as e:
                return False, f"Failed to record due payment: {e}", None

        self.events.publish(RECEIPT_CREATED, saved)
        self.events.publish(MEMBER_DATA_UPDATED, member_id)
        return True, f"Payment of {amount} recorded. Remaining due: {saved.due_amount}.", saved

    def delete_receipt(self, receipt_id: str) -> Result:
        with self._db_lock:
            receipt = self.db_manager.get_receipt_by_id(receipt_id)
        if receipt is None:
            return False, f"Receipt {receipt_id} not found.", None
        with self._member_lock(receipt.member_id):
            with self._db_lock:
                deleted = self.db_manager.delete_receipt(receipt_id)
        if deleted is None:
            return False, f"Failed to delete receipt {receipt_id}.", None
        self.events.publish(RECEIPT_DELETED, deleted)
        self.events.publish(MEMBER_DATA_UPDATED, deleted.member_id)
        return True, f"Receipt {deleted.receipt_number} deleted.", deleted

    def get_receipt_history(self, receipt_id: str) -> List[Receipt]:
        with self._db_lock:
            receipt = self.db_manager.get_receipt_by_id(receipt_id)
            if receipt is None:
                return []
            return self.db_manager.get_receipt_history(receipt_chain_id(receipt))

    def get_member_receipts(self, member_id: str, current_only: bool = True) -> List[Receipt]:
        with self._db_lock:
            return self.db_manager.get_receipts_by_member_id(member_id, current_only=current_only)

    def get_member_due_amount(self, member_id: str) -> Optional[float]:
        with self._db_lock:
            return self.db_manager.get_member_due_amount(member_id)
