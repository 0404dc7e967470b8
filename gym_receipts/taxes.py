import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import ValidationError
from .models import TaxCalculation, TaxLine, TaxRule

INCLUSIVE = "inclusive"
EXCLUSIVE = "exclusive"


def tax_class(tax: TaxRule) -> str:
    return INCLUSIVE if tax.is_inclusive else EXCLUSIVE


class TaxSelection:
    """Selected taxes for one receipt.

    Works like two dropdowns: one slot for an inclusive tax and one for an exclusive tax.
    Selecting a tax replaces whatever was selected in the same slot.
    """

    def __init__(self, taxes: Sequence[TaxRule]):
        self.taxes: Tuple[TaxRule, ...] = tuple(taxes)
        self._slots: Dict[str, Optional[TaxRule]] = {INCLUSIVE: None, EXCLUSIVE: None}

    def _lookup(self, tax_id: str) -> TaxRule:
        for tax in self.taxes:
            if str(tax.id) == str(tax_id):
                return tax
        raise ValidationError(f"Tax setting {tax_id} not found.")

    def select(self, tax_id: str) -> Optional[TaxRule]:
        """Selects a tax and returns the tax it displaced, if any."""
        tax = self._lookup(tax_id)
        if not tax.is_active:
            raise ValidationError(f"Tax setting '{tax.name}' is not active.")
        slot = tax_class(tax)
        previous = self._slots[slot]
        self._slots[slot] = tax
        if previous is not None and previous.id != tax.id:
            logging.info(f"Tax '{previous.name}' replaced by '{tax.name}' in {slot} slot.")
        return previous

    def deselect(self, tax_id: str) -> None:
        for slot, tax in self._slots.items():
            if tax is not None and str(tax.id) == str(tax_id):
                self._slots[slot] = None

    def clear(self) -> None:
        self._slots = {INCLUSIVE: None, EXCLUSIVE: None}

    def is_selected(self, tax_id: str) -> bool:
        return any(tax is not None and str(tax.id) == str(tax_id) for tax in self._slots.values())

    @property
    def selected(self) -> Tuple[TaxRule, ...]:
        return tuple(tax for tax in (self._slots[INCLUSIVE], self._slots[EXCLUSIVE]) if tax)


def _round(amount: float) -> float:
    return round(amount, 2)


def apply_tax(base_amount: float, selected_taxes: Sequence[TaxRule]) -> TaxCalculation:
    """Computes tax on a base amount.

    Inclusive tax is carved out of the base (base * p / (100 + p)) and is reported in the
    breakdown only; exclusive tax (base * p / 100) is added to the total.
    At most one tax per class is honoured, the last one listed.
    """
    base = max(0.0, float(base_amount or 0))
    by_class: Dict[str, TaxRule] = {}
    for tax in selected_taxes:
        by_class[tax_class(tax)] = tax

    breakdown: List[TaxLine] = []
    added = 0.0
    for slot in (INCLUSIVE, EXCLUSIVE):
        tax = by_class.get(slot)
        if tax is None:
            continue
        pct = float(tax.percentage or 0)
        if pct < 0:
            raise ValidationError(f"Tax '{tax.name}' has a negative percentage.")
        if slot == INCLUSIVE:
            amount = _round(base * pct / (100 + pct))
        else:
            amount = _round(base * pct / 100)
            added += amount
        breakdown.append(
            TaxLine(
                tax_setting_id=str(tax.id),
                tax_name=tax.name,
                tax_type=tax.tax_type,
                tax_percentage=pct,
                is_inclusive=tax.is_inclusive,
                base_amount=base,
                tax_amount=amount,
            )
        )

    tax_amount = _round(sum(line.tax_amount for line in breakdown))
    return TaxCalculation(
        base_amount=base,
        tax_amount=tax_amount,
        total_amount=_round(base + added),
        breakdown=breakdown,
    )
