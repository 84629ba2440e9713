"""Line and document totals.

Everything here is a pure function of its arguments: no workbook access, no
logging side effects, no accumulated state. Recomputing the same lines always
yields the same totals.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from .constants import PURCHASE_ORDER_TAX_RATE, DocumentKind

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class PricedLine(Protocol):
    """Anything carrying the fields a total is computed from."""

    quantity: int
    unit_price: Decimal
    discount: Decimal
    tax_rate: Decimal


@dataclass(frozen=True)
class LineInput:
    """A line as submitted by a caller, before it is persisted.

    ``item_id`` captures the catalog entry chosen for the line; when omitted
    the engine resolves it by ``item_name`` at the moment the line is saved.
    """

    item_name: str
    quantity: int
    unit_price: Decimal
    description: str = ""
    discount: Decimal = ZERO
    tax_rate: Decimal = ZERO
    item_id: Optional[str] = None


@dataclass(frozen=True)
class DocumentTotals:
    """Aggregate amounts stored on a document header."""

    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


def line_gross(line: PricedLine) -> Decimal:
    """Return ``quantity × unit_price`` before discount and tax."""

    return Decimal(line.quantity) * Decimal(line.unit_price)


def line_tax(line: PricedLine) -> Decimal:
    """Return the tax owed on the post-discount amount of an invoice or quotation line."""

    return (line_gross(line) - Decimal(line.discount)) * Decimal(line.tax_rate) / HUNDRED


def line_total(line: PricedLine, kind: DocumentKind) -> Decimal:
    """Compute the stored total of a single line.

    Invoice and quotation lines apply their own discount and tax rate;
    purchase order lines are plain ``quantity × unit_price``.
    """

    if DocumentKind(kind) is DocumentKind.PURCHASE_ORDER:
        return line_gross(line)
    after_discount = line_gross(line) - Decimal(line.discount)
    return after_discount * (1 + Decimal(line.tax_rate) / HUNDRED)


def document_totals(lines: Iterable[PricedLine], kind: DocumentKind) -> DocumentTotals:
    """Aggregate a document's lines into subtotal, discount, tax and total.

    Args:
        lines (Iterable[PricedLine]): Lines of the document.
        kind (DocumentKind): Document family, which decides the tax rule.

    Returns:
        DocumentTotals: ``total == subtotal - discount + tax`` for invoices and
            quotations; for purchase orders the discount is zero and the tax is
            a flat 10% of the subtotal.
    """

    lines = list(lines)
    subtotal = sum((line_gross(line) for line in lines), ZERO)

    if DocumentKind(kind) is DocumentKind.PURCHASE_ORDER:
        tax = subtotal * PURCHASE_ORDER_TAX_RATE
        return DocumentTotals(subtotal=subtotal, discount=ZERO, tax=tax, total=subtotal + tax)

    discount = sum((Decimal(line.discount) for line in lines), ZERO)
    tax = sum((line_tax(line) for line in lines), ZERO)
    return DocumentTotals(subtotal=subtotal, discount=discount, tax=tax, total=subtotal - discount + tax)


def totals_balance(totals: DocumentTotals, tolerance: Decimal = Decimal("1e-9")) -> bool:
    """Return whether ``totals`` satisfy ``total == subtotal - discount + tax``."""

    return abs(totals.subtotal - totals.discount + totals.tax - totals.total) <= tolerance
