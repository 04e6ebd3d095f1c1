from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from xero_sync.domain.models import InvoiceStatus, LocalPayment, PaymentStatus

_CENT = Decimal("0.01")
_SETTLED_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class InvoiceTotals:
    amount_paid: Decimal
    amount_due: Decimal
    status: InvoiceStatus


def compute_invoice_totals(total: Decimal, payments: Iterable[LocalPayment]) -> InvoiceTotals:
    """Derives paid/due/status from the full payment set, never from a running increment."""
    paid = sum(
        (payment.amount for payment in payments if payment.status is PaymentStatus.COMPLETED),
        Decimal("0"),
    ).quantize(_CENT)
    due = max(Decimal(total) - paid, Decimal("0")).quantize(_CENT)
    if paid > 0 and due <= _SETTLED_TOLERANCE:
        status = InvoiceStatus.PAID
    elif paid > 0:
        status = InvoiceStatus.PARTIAL
    else:
        status = InvoiceStatus.DRAFT
    return InvoiceTotals(amount_paid=paid, amount_due=due, status=status)


def amount_variance(expected: Decimal, actual: Decimal) -> Decimal:
    if expected == 0:
        return Decimal("0") if actual == 0 else Decimal("1")
    return abs(Decimal(actual) - Decimal(expected)) / abs(Decimal(expected))


def exceeds_variance(expected: Decimal, actual: Decimal, threshold: float) -> bool:
    return amount_variance(expected, actual) > Decimal(str(threshold))
