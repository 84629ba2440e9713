"""Enumerations and fixed rates shared across the tradedocs modules.

Keeps document kinds, status vocabularies, number prefixes, and sheet names
in one place so the data access layer, the consistency engine, and the CLI
agree on the same identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_MIN_STOCK = 5
DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_LINE_TAX_RATE = Decimal("10")

# Purchase orders carry no per-line tax; a flat rate applies to the subtotal.
PURCHASE_ORDER_TAX_RATE = Decimal("0.10")


class DocumentKind(str, Enum):
    """Enumerate the three document families managed by the engine."""

    INVOICE = "invoice"
    QUOTATION = "quotation"
    PURCHASE_ORDER = "purchase_order"


class NumberPrefix(str, Enum):
    """Prefixes used when building human-readable document numbers."""

    INVOICE = "INV"
    QUOTATION = "QUO"
    PURCHASE_ORDER = "PO"


class InvoiceStatus(str, Enum):
    """Stored and derived invoice states."""

    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    # Derived from the due date; never persisted.
    OVERDUE = "overdue"


class QuotationStatus(str, Enum):
    """Quotation states."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PurchaseOrderStatus(str, Enum):
    """Purchase order states."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CUSTOMERS = "Customers"
    ITEMS = "Items"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"
    QUOTATIONS = "Quotations"
    QUOTATION_ITEMS = "QuotationItems"
    PURCHASE_ORDERS = "PurchaseOrders"
    PURCHASE_ORDER_ITEMS = "PurchaseOrderItems"
    SEQUENCES = "Sequences"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_MIN_STOCK",
    "DEFAULT_PAYMENT_TERMS_DAYS",
    "DEFAULT_LINE_TAX_RATE",
    "PURCHASE_ORDER_TAX_RATE",
    "DocumentKind",
    "NumberPrefix",
    "InvoiceStatus",
    "QuotationStatus",
    "PurchaseOrderStatus",
    "SheetName",
]
