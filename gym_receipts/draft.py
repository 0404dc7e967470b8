from datetime import date
from typing import Optional, Sequence

from .exceptions import ValidationError
from .models import (
    EXPIRED,
    PAYMENT,
    RENEWAL,
    TRANSACTION_TYPES,
    FeeBreakdown,
    Member,
    PlanCatalogEntry,
    ReceiptInput,
    TaxCalculation,
    TaxRule,
)
from .plans import (
    DATE_FORMAT,
    DEFAULT_PLAN_TYPE,
    classify_membership,
    compute_end_date,
    find_plan,
    parse_date,
    plan_fee_defaults,
    resolve_duration,
)
from .reconciliation import compute_fee_total, default_transaction_type
from .taxes import TaxSelection, apply_tax


class ReceiptDraft:
    """State of the receipt form between member selection and submit.

    Mirrors the defaults the form applies as fields change: the end date follows the plan and
    start date, the total follows the fees and taxes, and amount_paid follows the total until
    the user types an amount.
    """

    def __init__(
        self,
        catalog: Sequence[PlanCatalogEntry] = (),
        taxes: Sequence[TaxRule] = (),
        today: Optional[date] = None,
    ):
        self.catalog = tuple(catalog)
        self.tax_selection = TaxSelection(taxes)
        self.today = today or date.today()
        self.member: Optional[Member] = None
        self.membership_status: Optional[str] = None
        self.transaction_type = PAYMENT
        self.plan_type = DEFAULT_PLAN_TYPE
        self.start_date: Optional[str] = self.today.strftime(DATE_FORMAT)
        self.end_date: Optional[str] = None
        self.fees = FeeBreakdown()
        self.total_amount = 0.0
        self.amount_paid = 0.0
        self.amount_paid_edited = False
        self.tax_result: Optional[TaxCalculation] = None
        self.payment_type = "cash"
        self.description = ""

    def select_member(self, member: Member) -> str:
        """Loads a member into the form and returns their membership status."""
        self.member = member
        self.membership_status = classify_membership(member.subscription_end_date, self.today)
        self.transaction_type = default_transaction_type(self.membership_status)
        self.start_date = self.today.strftime(DATE_FORMAT)
        self.plan_type = member.plan_type or DEFAULT_PLAN_TYPE
        if member.payment_mode:
            self.payment_type = member.payment_mode
        self.fees = FeeBreakdown(
            registration_fee=member.registration_fee or 0.0,
            package_fee=member.package_fee or member.membership_fees or 0.0,
            discount=member.discount or 0.0,
        )
        self.amount_paid = 0.0
        self.amount_paid_edited = False
        self._recompute_end_date()
        self._recompute_total()
        return self.membership_status

    def select_plan(self, plan_key: str) -> None:
        self.plan_type = plan_key
        defaults = plan_fee_defaults(find_plan(plan_key, self.catalog))
        if "payment_type" in defaults:
            self.payment_type = defaults.pop("payment_type")
        if defaults:
            self.set_fees(**defaults)
        self._recompute_end_date()

    def set_start_date(self, start_date) -> None:
        self.start_date = parse_date(start_date).strftime(DATE_FORMAT)
        self._recompute_end_date()

    def override_end_date(self, end_date) -> None:
        self.end_date = parse_date(end_date).strftime(DATE_FORMAT)

    def set_transaction_type(self, transaction_type: str) -> None:
        if transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction_type: {transaction_type}")
        if self.membership_status == EXPIRED and transaction_type != RENEWAL:
            raise ValidationError("Membership has expired. Only a renewal can be recorded.")
        self.transaction_type = transaction_type

    def set_fees(
        self,
        registration_fee: Optional[float] = None,
        package_fee: Optional[float] = None,
        discount: Optional[float] = None,
    ) -> float:
        if registration_fee is not None:
            self.fees.registration_fee = registration_fee
        if package_fee is not None:
            self.fees.package_fee = package_fee
        if discount is not None:
            self.fees.discount = discount
        return self._recompute_total()

    def select_tax(self, tax_id: str) -> float:
        self.tax_selection.select(tax_id)
        return self._recompute_total()

    def deselect_tax(self, tax_id: str) -> float:
        self.tax_selection.deselect(tax_id)
        return self._recompute_total()

    def override_total(self, total_amount: float) -> None:
        if total_amount < 0:
            raise ValidationError("Total amount cannot be negative.")
        self.total_amount = total_amount
        self._sync_amount_paid()

    def set_amount_paid(self, amount_paid: float) -> None:
        self.amount_paid = amount_paid
        self.amount_paid_edited = True

    @property
    def due_amount(self) -> float:
        return max(0.0, self.total_amount - self.amount_paid)

    def _recompute_end_date(self) -> None:
        if self.start_date:
            months = resolve_duration(self.plan_type, self.catalog)
            self.end_date = compute_end_date(self.start_date, months)

    def _recompute_total(self) -> float:
        base = compute_fee_total(
            self.fees.registration_fee, self.fees.package_fee, self.fees.discount
        )
        selected = self.tax_selection.selected
        if selected:
            self.tax_result = apply_tax(base, selected)
            self.total_amount = self.tax_result.total_amount
        else:
            self.tax_result = None
            self.total_amount = base
        self._sync_amount_paid()
        return self.total_amount

    def _sync_amount_paid(self) -> None:
        if not self.amount_paid_edited or not self.amount_paid:
            self.amount_paid = self.total_amount

    def to_input(self, created_by: str = "Unknown") -> ReceiptInput:
        if self.member is None:
            raise ValidationError("Please select a member before creating the receipt.")
        return ReceiptInput(
            member_id=self.member.id,
            member_name=self.member.name,
            plan_type=self.plan_type,
            subscription_start_date=self.start_date,
            subscription_end_date=self.end_date,
            fees=FeeBreakdown(
                registration_fee=self.fees.registration_fee,
                package_fee=self.fees.package_fee,
                discount=self.fees.discount,
            ),
            total_amount=self.total_amount,
            amount_paid=self.amount_paid,
            transaction_type=self.transaction_type,
            taxes=self.tax_selection.selected,
            payment_type=self.payment_type,
            payment_mode=self.member.payment_mode,
            description=self.description,
            created_by=created_by,
        )
