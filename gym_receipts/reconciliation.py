"""Payment reconciliation for member receipts.

Everything here is pure: functions take the member, the submitted form data and the
member's receipts, and return a receipt record plus the member fields to update.
Writing either of them is the job of gym_receipts.app_api.
"""
import logging
from dataclasses import replace
from datetime import date, datetime
from typing import List, Optional, Sequence, Tuple

from .exceptions import ValidationError
from .models import (
    ACTIVE,
    ADJUSTMENT,
    EXPIRED,
    PARTIAL_PAYMENT,
    PAYMENT,
    RENEWAL,
    TAG_NEW_MEMBERSHIP,
    TAG_PAYMENT,
    TAG_RENEWAL,
    TRANSACTION_TYPES,
    Member,
    MemberPatch,
    PlanCatalogEntry,
    Receipt,
    ReceiptInput,
    Reconciliation,
)
from .plans import (
    DATE_FORMAT,
    classify_membership,
    compute_end_date,
    parse_date,
    resolve_duration,
)
from .taxes import apply_tax

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
# Only these requested types add the payment to the member's cumulative paid amount
ACCUMULATING_TYPES = (RENEWAL, PAYMENT)


def _now_str(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def default_transaction_type(membership_status: str) -> str:
    """Expired members (including ones that never had a subscription) must renew."""
    return RENEWAL if membership_status == EXPIRED else PAYMENT


def compute_fee_total(registration_fee: float, package_fee: float, discount: float) -> float:
    total = (registration_fee or 0) + (package_fee or 0) - (discount or 0)
    return max(0.0, float(total))


def compute_due(total_amount: float, amount_paid: float) -> float:
    return max(0.0, float((total_amount or 0) - (amount_paid or 0)))


def classify_transaction(requested: str, due_amount: float, amount_paid: float) -> str:
    """Any payment that leaves a balance is recorded as a partial payment."""
    if requested not in TRANSACTION_TYPES:
        raise ValidationError(f"Invalid transaction_type: {requested}")
    if due_amount > 0 and amount_paid > 0:
        return PARTIAL_PAYMENT
    return requested


def tag_receipt(transaction_type: str, is_first_receipt: bool) -> str:
    if transaction_type == RENEWAL:
        return TAG_RENEWAL
    if is_first_receipt:
        return TAG_NEW_MEMBERSHIP
    return TAG_PAYMENT


def receipt_chain_id(receipt: Receipt) -> Optional[str]:
    return receipt.original_receipt_id or receipt.id


def counted_paid(receipt: Receipt) -> float:
    """Amount a stored receipt added to the member's cumulative paid amount."""
    requested = receipt.requested_transaction_type
    if requested is None:
        # Rows written without the requested type: only adjustments were left out
        counts = receipt.transaction_type != ADJUSTMENT
    else:
        counts = requested in ACCUMULATING_TYPES
    return (receipt.amount_paid or 0.0) if counts else 0.0


def create_or_version_receipt(
    existing: Optional[Receipt], data: Receipt, now: Optional[datetime] = None
) -> Receipt:
    """Returns the receipt record to insert.

    For an edit, `existing` is only marked superseded; its amounts and dates are left as
    they were so the full history stays queryable through original_receipt_id.
    """
    if existing is None:
        return replace(
            data,
            original_receipt_id=None,
            version_number=1,
            is_current_version=True,
            superseded_at=None,
        )

    stamp = _now_str(now)
    new_receipt = replace(
        data,
        id=None if data.id == existing.id else data.id,
        receipt_number=data.receipt_number or existing.receipt_number,
        original_receipt_id=receipt_chain_id(existing),
        version_number=(existing.version_number or 1) + 1,
        is_current_version=True,
        superseded_at=None,
        updated_at=stamp,
    )
    existing.is_current_version = False
    existing.superseded_at = stamp
    return new_receipt


def apply_member_side_effects(
    member: Member, data: ReceiptInput, previous_paid: float = 0.0
) -> MemberPatch:
    """Member fields updated by a receipt.

    previous_paid is what the version being replaced added to the cumulative paid amount
    (see counted_paid). It is taken back out before the new version is counted.
    """
    paid_amount = (member.paid_amount or 0.0) - (previous_paid or 0.0)
    if data.transaction_type in ACCUMULATING_TYPES:
        paid_amount += data.amount_paid or 0.0
    return MemberPatch(
        plan_type=data.plan_type,
        subscription_start_date=data.subscription_start_date,
        subscription_end_date=data.subscription_end_date,
        subscription_status=ACTIVE,
        registration_fee=data.fees.registration_fee or 0.0,
        package_fee=data.fees.package_fee or 0.0,
        membership_fees=data.fees.package_fee or 0.0,
        discount=data.fees.discount or 0.0,
        paid_amount=max(0.0, paid_amount),
    )


def validate_receipt_input(data: ReceiptInput) -> None:
    if not data.member_id:
        raise ValidationError("Please select a member before creating the receipt.")
    fees = data.fees
    if fees.package_fee is None or fees.package_fee <= 0:
        raise ValidationError("Package fee must be greater than 0.")
    for label, value in (
        ("Registration fee", fees.registration_fee),
        ("Discount", fees.discount),
        ("Total amount", data.total_amount),
        ("Amount paid", data.amount_paid),
    ):
        if value is not None and value < 0:
            raise ValidationError(f"{label} cannot be negative.")
    if (data.amount_paid or 0) > (data.total_amount or 0):
        raise ValidationError(
            f"Amount paid ({data.amount_paid}) cannot exceed total amount ({data.total_amount})."
        )
    if data.transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Invalid transaction_type: {data.transaction_type}")
    parse_date(data.subscription_start_date)


def resolve_period(
    data: ReceiptInput, catalog: Sequence[PlanCatalogEntry]
) -> Tuple[str, str]:
    """Start and end date for the receipt. A manual end date is kept as entered."""
    start = parse_date(data.subscription_start_date)
    if data.subscription_end_date:
        end = parse_date(data.subscription_end_date)
        return start.strftime(DATE_FORMAT), end.strftime(DATE_FORMAT)
    months = resolve_duration(data.plan_type, catalog)
    return start.strftime(DATE_FORMAT), compute_end_date(start, months)


def reconcile(
    member: Optional[Member],
    data: ReceiptInput,
    member_receipts: Sequence[Receipt] = (),
    catalog: Sequence[PlanCatalogEntry] = (),
    existing: Optional[Receipt] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Reconciliation:
    """Derives the receipt and member update for one form submission.

    member_receipts are the member's current receipt versions; existing is the receipt
    being edited, if any. existing is not modified here.
    """
    if member is None:
        raise ValidationError("Please select a member before creating the receipt.")
    validate_receipt_input(data)
    if str(member.id) != str(data.member_id):
        raise ValidationError(
            f"Receipt member {data.member_id} does not match selected member {member.id}."
        )
    if existing is not None and str(existing.member_id) != str(member.id):
        raise ValidationError(
            f"Receipt {existing.receipt_number} belongs to another member."
        )

    start_str, end_str = resolve_period(data, catalog)
    data = replace(data, subscription_start_date=start_str, subscription_end_date=end_str)

    # total_amount is authoritative (taxed or overridden in the form); the tax breakdown
    # is recomputed from the fee total for the receipt_tax_mapping rows
    fee_total = compute_fee_total(
        data.fees.registration_fee, data.fees.package_fee, data.fees.discount
    )
    tax = apply_tax(fee_total, data.taxes) if data.taxes else None
    total_amount = data.total_amount
    amount_paid = data.amount_paid or 0.0
    due_amount = compute_due(total_amount, amount_paid)
    requested = data.transaction_type
    transaction_type = classify_transaction(requested, due_amount, amount_paid)
    if transaction_type != requested:
        logging.info(
            f"Transaction for member {member.id} reclassified from {requested} to {transaction_type} "
            f"(due {due_amount})."
        )

    edited_chain = receipt_chain_id(existing) if existing else None
    other_receipts = [r for r in member_receipts if receipt_chain_id(r) != edited_chain]
    receipt_tag = tag_receipt(requested, is_first_receipt=not other_receipts)

    receipt = Receipt(
        id=existing.id if existing else None,
        receipt_number=existing.receipt_number if existing else None,
        member_id=str(member.id),
        member_name=data.member_name or member.name,
        amount=total_amount,
        amount_paid=amount_paid,
        due_amount=due_amount,
        transaction_type=transaction_type,
        receipt_tag=receipt_tag,
        requested_transaction_type=requested,
        created_at=_now_str(now),
        created_by=data.created_by,
        payment_type=data.payment_type,
        payment_mode=data.payment_mode or member.payment_mode,
        description=data.description or _describe(requested, data.plan_type, member.name),
        plan_type=data.plan_type,
        subscription_start_date=start_str,
        subscription_end_date=end_str,
        registration_fee=data.fees.registration_fee or 0.0,
        package_fee=data.fees.package_fee,
        discount=data.fees.discount or 0.0,
        base_amount=tax.base_amount if tax else fee_total,
        tax_amount=tax.tax_amount if tax else 0.0,
        tax_breakdown=list(tax.breakdown) if tax else [],
    )
    previous_paid = counted_paid(existing) if existing else 0.0
    patch = apply_member_side_effects(member, data, previous_paid=previous_paid)
    return Reconciliation(
        receipt=receipt,
        member_patch=patch,
        requested_transaction_type=requested,
        membership_status=classify_membership(member.subscription_end_date, today),
    )


def _describe(transaction_type: str, plan_type: str, member_name: str) -> str:
    label = (plan_type or "").replace("_", " ").title()
    if transaction_type == RENEWAL:
        return f"Membership renewal - {label} - {member_name}"
    return f"Payment for {label} - {member_name}"


def member_fee_total(member: Member) -> float:
    package_fee = member.package_fee or member.membership_fees or 0.0
    return compute_fee_total(member.registration_fee, package_fee, member.discount)


def total_paid(receipts: Sequence[Receipt]) -> float:
    return sum((r.amount_paid or 0.0) for r in receipts if r.is_current_version)


def compute_member_due(member: Member, receipts: Sequence[Receipt]) -> float:
    """Outstanding balance: the member's fee total less everything paid on current receipts."""
    return compute_due(member_fee_total(member), total_paid(receipts))


def plan_due_payment(
    member: Member,
    receipts: Sequence[Receipt],
    amount: float,
    payment_type: str = "cash",
    created_by: str = "system",
    now: Optional[datetime] = None,
    today: Optional[date] = None,
) -> Tuple[Receipt, dict]:
    """Receipt and member fields for a payment against the member's outstanding due.

    The receipt records only this payment; the member's paid_amount becomes the new
    receipts total.
    """
    fee_total = member_fee_total(member)
    already_paid = total_paid(receipts)
    current_due = compute_due(fee_total, already_paid)
    if current_due <= 0:
        raise ValidationError("No due amount found for this member.")
    if amount is None or amount <= 0:
        raise ValidationError("Payment amount must be greater than 0.")
    if amount > current_due:
        raise ValidationError(
            f"Payment amount ({amount}) cannot exceed due amount ({current_due})."
        )

    new_total_paid = already_paid + amount
    new_due = compute_due(fee_total, new_total_paid)
    remarks = "Full due cleared" if new_due == 0 else "Partial due cleared"
    receipt = Receipt(
        id=None,
        receipt_number=None,
        member_id=str(member.id),
        member_name=member.name,
        amount=fee_total,
        amount_paid=amount,
        due_amount=new_due,
        transaction_type=classify_transaction(PAYMENT, new_due, amount),
        receipt_tag=TAG_PAYMENT,
        requested_transaction_type=PAYMENT,
        created_at=_now_str(now),
        created_by=created_by,
        payment_type=payment_type,
        payment_mode=payment_type,
        description=f"Due Payment - {remarks} ({amount} of {current_due} due)",
        plan_type=member.plan_type,
        subscription_start_date=member.subscription_start_date,
        subscription_end_date=member.subscription_end_date,
        registration_fee=member.registration_fee or 0.0,
        package_fee=member.package_fee or member.membership_fees or 0.0,
        discount=member.discount or 0.0,
        base_amount=fee_total,
    )
    fields = {"paid_amount": new_total_paid}
    if new_due == 0 and classify_membership(member.subscription_end_date, today) != EXPIRED:
        fields["status"] = ACTIVE
    return receipt, fields


def current_versions(receipts: Sequence[Receipt]) -> List[Receipt]:
    return [r for r in receipts if r.is_current_version]
