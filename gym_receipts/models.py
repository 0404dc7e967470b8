from dataclasses import dataclass, field
from typing import List, Optional, Tuple

# Transaction types accepted on a receipt
PAYMENT = "payment"
PARTIAL_PAYMENT = "partial_payment"
RENEWAL = "renewal"
ADJUSTMENT = "adjustment"
TRANSACTION_TYPES = (PAYMENT, PARTIAL_PAYMENT, RENEWAL, ADJUSTMENT)

# Membership status values
ACTIVE = "active"
EXPIRING_SOON = "expiring_soon"
EXPIRED = "expired"

# Human readable receipt tags
TAG_NEW_MEMBERSHIP = "New Membership"
TAG_RENEWAL = "Renewal"
TAG_PAYMENT = "Payment"

RECEIPT_CATEGORY_MEMBER = "member"


@dataclass
class PlanCatalogEntry:
    id: Optional[str]
    name: str
    duration_type: Optional[str] = None
    duration_months: Optional[int] = None
    price: Optional[float] = None
    registration_fee: Optional[float] = None
    discount: Optional[float] = None
    payment_method: Optional[str] = None
    is_active: bool = True


@dataclass
class TaxRule:
    id: Optional[str]
    name: str
    tax_type: str  # cgst, sgst, igst, gst, vat, service_tax, other
    percentage: float
    is_inclusive: bool = False
    is_active: bool = True


@dataclass
class TaxLine:
    tax_setting_id: str
    tax_name: str
    tax_type: str
    tax_percentage: float
    is_inclusive: bool
    base_amount: float
    tax_amount: float


@dataclass
class TaxCalculation:
    base_amount: float
    tax_amount: float
    total_amount: float
    breakdown: List[TaxLine] = field(default_factory=list)


@dataclass
class FeeBreakdown:
    registration_fee: float = 0.0
    package_fee: float = 0.0
    discount: float = 0.0


@dataclass
class Member:
    id: Optional[str]
    name: str
    mobile_no: Optional[str] = None
    email: Optional[str] = None
    custom_member_id: Optional[str] = None
    payment_mode: Optional[str] = None
    plan_type: Optional[str] = None
    subscription_start_date: Optional[str] = None  # YYYY-MM-DD
    subscription_end_date: Optional[str] = None  # YYYY-MM-DD
    subscription_status: Optional[str] = None
    registration_fee: float = 0.0
    package_fee: float = 0.0
    membership_fees: float = 0.0  # Legacy mirror of package_fee
    discount: float = 0.0
    paid_amount: float = 0.0
    status: str = ACTIVE


@dataclass
class MemberPatch:
    plan_type: str
    subscription_start_date: str
    subscription_end_date: str
    subscription_status: str
    registration_fee: float
    package_fee: float
    membership_fees: float
    discount: float
    paid_amount: float


@dataclass
class ReceiptInput:
    member_id: Optional[str]
    member_name: str
    plan_type: str
    subscription_start_date: Optional[str]
    subscription_end_date: Optional[str]
    fees: FeeBreakdown
    total_amount: float
    amount_paid: float
    transaction_type: str = PAYMENT
    taxes: Tuple[TaxRule, ...] = ()
    payment_type: str = "cash"
    payment_mode: Optional[str] = None
    description: str = ""
    created_by: str = "Unknown"


@dataclass
class Receipt:
    id: Optional[str]
    receipt_number: Optional[str]
    member_id: str
    member_name: str
    amount: float
    amount_paid: float
    due_amount: float
    transaction_type: str
    receipt_tag: str
    created_at: str
    created_by: str
    payment_type: str = "cash"
    payment_mode: Optional[str] = None
    description: str = ""
    receipt_category: str = RECEIPT_CATEGORY_MEMBER
    # Type chosen on the form, before partial-payment reclassification
    requested_transaction_type: Optional[str] = None
    plan_type: Optional[str] = None
    subscription_start_date: Optional[str] = None
    subscription_end_date: Optional[str] = None
    registration_fee: float = 0.0
    package_fee: float = 0.0
    discount: float = 0.0
    base_amount: float = 0.0
    tax_amount: float = 0.0
    original_receipt_id: Optional[str] = None
    version_number: int = 1
    is_current_version: bool = True
    superseded_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Not stored on the receipts row, written to receipt_tax_mapping instead
    tax_breakdown: List[TaxLine] = field(default_factory=list)


@dataclass
class Reconciliation:
    receipt: Receipt
    member_patch: MemberPatch
    requested_transaction_type: str
    membership_status: str
