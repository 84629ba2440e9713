"""Business logic layer for tradedocs.

This module is the document lifecycle manager. It orchestrates create,
update, delete and status changes for invoices, quotations and purchase
orders, calling the sequence generator, the line calculator and the
inventory ledger in a fixed order. It consumes the Data Access Layer (DAL)
for all I/O.

The workbook offers no multi-record transaction, so every multi-step
operation records an undo step after each write. When a later step fails the
recorded steps run in reverse before the original error is re-raised. The
document-number counter is deliberately not rolled back: a failed create
leaves a gap in the sequence rather than risking a reused number.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import calculator, data_manager, ledger, log, sequence
from .calculator import LineInput
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    DocumentKind,
    InvoiceStatus,
    NumberPrefix,
    PurchaseOrderStatus,
    QuotationStatus,
)
from .errors import (
    BusinessRuleViolation,
    GuardError,
    InsufficientStockError,
    InvalidTransitionError,
    LedgerInconsistencyError,
    MissingReferenceError,
    ValidationError,
)

__all__ = [
    "BusinessRuleViolation",
    "GuardError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "LedgerInconsistencyError",
    "MissingReferenceError",
    "ValidationError",
]

ZERO = Decimal("0")
CONVERSION_NOTE = "Converted from Quotation #{number}. {notes}"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: data_manager.WorkbookStore = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "store", data_manager.WorkbookStore(self.workbook))


@dataclass(frozen=True)
class DocumentType:
    """Static rules for one document family."""

    kind: DocumentKind
    prefix: NumberPrefix
    statuses: type[Enum]
    initial_status: str
    counterparty_field: str
    secondary_date_field: str
    editable_fields: FrozenSet[str]
    transitions: FrozenSet[Tuple[str, str]]
    has_discount: bool = True


DOCUMENT_TYPES: Dict[DocumentKind, DocumentType] = {
    DocumentKind.INVOICE: DocumentType(
        kind=DocumentKind.INVOICE,
        prefix=NumberPrefix.INVOICE,
        statuses=InvoiceStatus,
        initial_status=InvoiceStatus.DRAFT.value,
        counterparty_field="customer_id",
        secondary_date_field="due_date",
        editable_fields=frozenset({"customer_id", "date", "due_date", "notes"}),
        transitions=frozenset({
            (InvoiceStatus.DRAFT.value, InvoiceStatus.PENDING.value),
            (InvoiceStatus.PENDING.value, InvoiceStatus.PAID.value),
            (InvoiceStatus.PAID.value, InvoiceStatus.PENDING.value),
        }),
    ),
    DocumentKind.QUOTATION: DocumentType(
        kind=DocumentKind.QUOTATION,
        prefix=NumberPrefix.QUOTATION,
        statuses=QuotationStatus,
        initial_status=QuotationStatus.DRAFT.value,
        counterparty_field="customer_id",
        secondary_date_field="valid_until",
        editable_fields=frozenset({"customer_id", "date", "valid_until", "notes", "payment_terms"}),
        transitions=frozenset({
            (QuotationStatus.DRAFT.value, QuotationStatus.PENDING.value),
            (QuotationStatus.PENDING.value, QuotationStatus.APPROVED.value),
            (QuotationStatus.PENDING.value, QuotationStatus.REJECTED.value),
        }),
    ),
    DocumentKind.PURCHASE_ORDER: DocumentType(
        kind=DocumentKind.PURCHASE_ORDER,
        prefix=NumberPrefix.PURCHASE_ORDER,
        statuses=PurchaseOrderStatus,
        initial_status=PurchaseOrderStatus.PENDING.value,
        counterparty_field="vendor_id",
        secondary_date_field="expected_delivery",
        editable_fields=frozenset({"vendor_id", "date", "expected_delivery", "notes"}),
        transitions=frozenset({
            (PurchaseOrderStatus.PENDING.value, PurchaseOrderStatus.COMPLETED.value),
            (PurchaseOrderStatus.PENDING.value, PurchaseOrderStatus.CANCELLED.value),
            (PurchaseOrderStatus.COMPLETED.value, PurchaseOrderStatus.PENDING.value),
            (PurchaseOrderStatus.COMPLETED.value, PurchaseOrderStatus.CANCELLED.value),
            (PurchaseOrderStatus.CANCELLED.value, PurchaseOrderStatus.PENDING.value),
            (PurchaseOrderStatus.CANCELLED.value, PurchaseOrderStatus.COMPLETED.value),
        }),
        has_discount=False,
    ),
}


@dataclass(frozen=True)
class DocumentView:
    """A document joined with its counterparty for display."""

    document: Any
    counterparty: Optional[data_manager.CustomerRow]
    status: str


@dataclass(frozen=True)
class DashboardSummary:
    """Headline figures shown on the dashboard."""

    total_revenue: Decimal
    pending_amount: Decimal
    outstanding_invoices: int
    total_quotations: int
    total_purchase_orders: int
    low_stock_items: List[data_manager.ItemRow]


class _Compensation:
    """Undo log for one multi-step operation."""

    def __init__(self, operation: str):
        self.operation = operation
        self._steps: List[Tuple[str, Callable[[], Any]]] = []

    def push(self, description: str, step: Callable[[], Any]) -> None:
        self._steps.append((description, step))

    def run(self, error: Exception) -> None:
        """Execute recorded undo steps newest first.

        Raises:
            LedgerInconsistencyError: If an undo step itself fails, leaving the
                records in a state that needs manual attention.
        """

        log.error("%s failed (%s); undoing %d step(s)", self.operation, error, len(self._steps))
        while self._steps:
            description, step = self._steps.pop()
            try:
                step()
            except Exception as undo_error:
                log.critical(
                    "Could not undo '%s' after %s failed: %s",
                    description,
                    self.operation,
                    undo_error,
                )
                raise LedgerInconsistencyError(
                    f"{self.operation} failed and could not be fully undone ({description})"
                ) from undo_error


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _document_type(kind: DocumentKind) -> DocumentType:
    try:
        return DOCUMENT_TYPES[DocumentKind(kind)]
    except ValueError as exc:
        raise ValidationError(f"Unknown document kind: {kind}") from exc


def _document_id(document: Any) -> str:
    if isinstance(document, data_manager.InvoiceRow):
        return document.invoice_id
    if isinstance(document, data_manager.QuotationRow):
        return document.quotation_id
    return document.po_id


def _as_iso_date(value: Any) -> str:
    if isinstance(value, date):
        return value.isoformat()[:10]
    return "" if value is None else str(value)


def _parse_date(value: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        log.warning("Ignoring unparseable date '%s'", value)
        return None


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Customers and catalog items
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return customers ordered by name."""
    return sorted(context.store.customers.list_all(), key=lambda customer: customer.name.lower())


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    customer = context.store.customers.get(customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return customer


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    address: str = "",
    phone: str = "",
    email: str = "",
    now: Optional[datetime] = None,
) -> data_manager.CustomerRow:
    """Register a customer; customers also act as purchase-order vendors."""
    if not name or not name.strip():
        raise ValidationError("Customer name is required")
    customer = context.store.customers.create(
        {"name": name.strip(), "address": address, "phone": phone, "email": email},
        now=_resolve_timestamp(now),
    )
    log.info("Added customer '%s' (%s)", customer.name, customer.customer_id)
    return customer


def update_customer(context: RuntimeContext, customer_id: str, /, **changes: Any) -> data_manager.CustomerRow:
    """Edit contact fields of an existing customer. The id never changes."""
    get_customer(context, customer_id)
    allowed = {"name", "address", "phone", "email"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"Cannot edit customer field(s): {', '.join(sorted(unknown))}")
    if "name" in changes and not str(changes["name"]).strip():
        raise ValidationError("Customer name is required")
    return context.store.customers.update(customer_id, changes)


def list_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    """Return catalog items ordered by name."""
    return sorted(context.store.items.list_all(), key=lambda item: item.name.lower())


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve a catalog item by id.

    Raises:
        MissingReferenceError: If ``item_id`` is unknown.
    """
    item = context.store.items.get(item_id)
    if item is None:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}")
    return item


def find_item_by_name(context: RuntimeContext, name: str) -> Optional[data_manager.ItemRow]:
    """Return the catalog item named ``name``, if any."""
    return ledger.resolve_item(context.store, name)


def add_item(
    context: RuntimeContext,
    *,
    name: str,
    price: Decimal,
    stock: int = 0,
    min_stock: Optional[int] = None,
    description: str = "",
    now: Optional[datetime] = None,
) -> data_manager.ItemRow:
    """Register a catalog item.

    Names must be unique because older lines without a captured item id are
    still matched to the catalog by name.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Item name is required")
    if find_item_by_name(context, name) is not None:
        raise ValidationError(f"An item named '{name}' already exists")
    require_nonnegative_money(Decimal(str(price)))
    item = context.store.items.create(
        {
            "name": name,
            "description": description,
            "price": Decimal(str(price)),
            "stock": int(stock),
            "min_stock": context.settings.min_stock if min_stock is None else int(min_stock),
        },
        now=_resolve_timestamp(now),
    )
    log.info("Added item '%s' (%s) with stock %d", item.name, item.item_id, item.stock)
    return item


def update_item(context: RuntimeContext, item_id: str, /, **changes: Any) -> data_manager.ItemRow:
    """Edit a catalog item, including manual stock corrections."""
    item = get_item(context, item_id)
    allowed = {"name", "description", "price", "stock", "min_stock"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"Cannot edit item field(s): {', '.join(sorted(unknown))}")
    if "name" in changes:
        new_name = str(changes["name"]).strip()
        if not new_name:
            raise ValidationError("Item name is required")
        clash = find_item_by_name(context, new_name)
        if clash is not None and clash.item_id != item_id:
            raise ValidationError(f"An item named '{new_name}' already exists")
        changes["name"] = new_name
    if "price" in changes:
        changes["price"] = Decimal(str(changes["price"]))
        require_nonnegative_money(changes["price"])
    for key in ("stock", "min_stock"):
        if key in changes:
            changes[key] = int(changes[key])
    updated = context.store.items.update(item_id, changes)
    if "stock" in changes:
        log.info("Manual stock correction for '%s': %d -> %d", item.name, item.stock, updated.stock)
    return updated


def list_low_stock_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    """Return items below their restock threshold."""
    return ledger.list_low_stock(context.store)


# ---------------------------------------------------------------------------
# Document reads
# ---------------------------------------------------------------------------


def get_document(context: RuntimeContext, kind: DocumentKind, document_id: str) -> Any:
    """Return one document header.

    Raises:
        MissingReferenceError: If no document of ``kind`` has ``document_id``.
    """
    doc_type = _document_type(kind)
    document = context.store.documents(doc_type.kind).get(document_id)
    if document is None:
        log.warning("%s lookup failed for id '%s'", doc_type.kind.value, document_id)
        raise MissingReferenceError(f"Unknown {doc_type.kind.value} id: {document_id}")
    return document


def get_document_lines(context: RuntimeContext, kind: DocumentKind, document_id: str) -> List[data_manager.LineItemRow]:
    """Return the stored lines of a document."""
    doc_type = _document_type(kind)
    get_document(context, doc_type.kind, document_id)
    return context.store.lines(doc_type.kind).lines_for(document_id)


def list_documents(
    context: RuntimeContext,
    kind: DocumentKind,
    *,
    today: Optional[date] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[Any] = None,
    date_to: Optional[Any] = None,
) -> List[DocumentView]:
    """List documents newest first, joined with their counterparty.

    Invoice views report the derived ``overdue`` status where it applies.

    Args:
        status: Keep only documents whose displayed status matches exactly,
            so ``overdue`` selects late invoices.
        search: Case-insensitive text matched against the number, the
            counterparty name and the displayed status.
        date_from: Earliest document date to keep, inclusive.
        date_to: Latest document date to keep, inclusive.
    """
    doc_type = _document_type(kind)
    today = today or _resolve_timestamp(None).date()
    term = (search or "").strip().lower()
    lower = _as_iso_date(date_from) if date_from else None
    upper = _as_iso_date(date_to) if date_to else None
    customers = {customer.customer_id: customer for customer in context.store.customers.iter_records()}
    views = []
    for document in context.store.documents(doc_type.kind).list_all():
        shown = document.status
        if doc_type.kind is DocumentKind.INVOICE:
            shown = effective_invoice_status(document, today)
        counterparty = customers.get(getattr(document, doc_type.counterparty_field))
        if status and shown != status:
            continue
        if term:
            haystack = (document.number, counterparty.name if counterparty else "", shown)
            if not any(term in (value or "").lower() for value in haystack):
                continue
        if lower and (not document.date or document.date < lower):
            continue
        if upper and (not document.date or document.date > upper):
            continue
        views.append(DocumentView(document=document, counterparty=counterparty, status=shown))
    return views


def effective_invoice_status(invoice: data_manager.InvoiceRow, today: date) -> str:
    """Return the stored status, or ``overdue`` for a pending invoice past its due date."""
    if invoice.status != InvoiceStatus.PENDING.value:
        return invoice.status
    due = _parse_date(invoice.due_date)
    if due is not None and due < today:
        return InvoiceStatus.OVERDUE.value
    return invoice.status


def is_quotation_expired(quotation: data_manager.QuotationRow, today: date) -> bool:
    """Display-only flag: the quotation's validity date has passed.

    Nothing happens automatically when a quotation expires.
    """
    valid_until = _parse_date(quotation.valid_until)
    return valid_until is not None and valid_until < today


def calculate_dashboard_summary(context: RuntimeContext, *, today: Optional[date] = None) -> DashboardSummary:
    """Produce the headline revenue, receivable and stock figures."""
    today = today or _resolve_timestamp(None).date()
    invoices = context.store.documents(DocumentKind.INVOICE).list_all()
    total_revenue = sum(
        (invoice.total for invoice in invoices if invoice.status == InvoiceStatus.PAID.value),
        ZERO,
    )
    pending_amount = sum(
        (
            invoice.total
            for invoice in invoices
            if effective_invoice_status(invoice, today)
            in (InvoiceStatus.PENDING.value, InvoiceStatus.OVERDUE.value)
        ),
        ZERO,
    )
    summary = DashboardSummary(
        total_revenue=total_revenue,
        pending_amount=pending_amount,
        outstanding_invoices=sum(1 for invoice in invoices if invoice.status == InvoiceStatus.PENDING.value),
        total_quotations=len(context.store.documents(DocumentKind.QUOTATION).list_all()),
        total_purchase_orders=len(context.store.documents(DocumentKind.PURCHASE_ORDER).list_all()),
        low_stock_items=ledger.list_low_stock(context.store),
    )
    log.debug(
        "Calculated dashboard summary: revenue=%s pending=%s low_stock=%d",
        summary.total_revenue,
        summary.pending_amount,
        len(summary.low_stock_items),
    )
    return summary


# ---------------------------------------------------------------------------
# Document lifecycle
# ---------------------------------------------------------------------------


def create_document(
    context: RuntimeContext,
    kind: DocumentKind,
    header: Mapping[str, Any],
    lines: Sequence[LineInput],
    *,
    now: Optional[datetime] = None,
) -> Any:
    """Validate, number, total, persist, and (for invoices) deduct stock.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        kind (DocumentKind): Document family to create.
        header (Mapping[str, Any]): Header fields: the counterparty id, dates,
            notes, optional ``payment_terms`` (quotations) and an optional
            initial ``status``.
        lines (Sequence[LineInput]): At least one line.
        now (datetime | None): Clock override used for numbering and dates.

    Returns:
        The persisted document row.

    Raises:
        ValidationError: Missing counterparty, bad line values, or (invoices)
            a line asking for more than the current stock. Raised before
            anything is written.
        MissingReferenceError: Unknown counterparty or captured item id.
        LedgerInconsistencyError: A failure could not be fully undone.
    """
    doc_type = _document_type(kind)
    store = context.store
    now = _resolve_timestamp(now)
    today = now.date()

    values = _validate_header(doc_type, header, allow_status=True)
    _require_counterparty(context, doc_type, values.get(doc_type.counterparty_field))
    status = _initial_status(doc_type, values.pop("status", None))
    prepared = _prepare_lines(context, doc_type, lines)
    if doc_type.kind is DocumentKind.INVOICE:
        _check_stock(store, prepared)

    values.setdefault("date", today.isoformat())
    if doc_type.kind is DocumentKind.PURCHASE_ORDER:
        values.setdefault(doc_type.secondary_date_field, "")
    else:
        values.setdefault(
            doc_type.secondary_date_field,
            (today + timedelta(days=context.settings.payment_terms_days)).isoformat(),
        )
    values.setdefault("notes", "")
    if doc_type.kind is DocumentKind.QUOTATION:
        values.setdefault("payment_terms", "")

    number = _allocate_number(store, doc_type, now)
    totals = calculator.document_totals(prepared, doc_type.kind)
    record_values = {
        **values,
        "number": number,
        "status": status,
        **_totals_fields(doc_type, totals),
    }

    undo = _Compensation(f"create {doc_type.kind.value} {number}")
    documents = store.documents(doc_type.kind)
    line_repo = store.lines(doc_type.kind)
    try:
        document = documents.create(record_values, now=now)
        document_id = _document_id(document)
        undo.push("remove document", lambda: documents.delete(document_id))
        undo.push("remove lines", lambda: line_repo.delete_for(document_id))
        saved_lines = _write_lines(line_repo, doc_type, document_id, prepared)
        if doc_type.kind is DocumentKind.INVOICE:
            _apply_stock(store, ledger.deltas_for_lines(saved_lines, -1), undo)
    except Exception as exc:
        undo.run(exc)
        raise

    log.info(
        "Created %s '%s' with %d line(s), total=%s, status=%s",
        doc_type.kind.value,
        number,
        len(prepared),
        totals.total,
        status,
    )
    return document


def update_document(
    context: RuntimeContext,
    kind: DocumentKind,
    document_id: str,
    patch: Optional[Mapping[str, Any]] = None,
    lines: Optional[Sequence[LineInput]] = None,
) -> Any:
    """Edit header fields and optionally replace every line.

    Replacing invoice lines first credits back the old quantities, then
    deducts the new ones. Quotation and purchase order lines are swapped
    without touching stock; a purchase order only moves stock when its status
    crosses ``completed``.

    Raises:
        GuardError: The purchase order is already ``completed``. Nothing is
            written.
        ValidationError: The patch touches a non-editable field or the new
            lines are invalid.
        MissingReferenceError: Unknown document or counterparty.
        LedgerInconsistencyError: A failure could not be fully undone.
    """
    doc_type = _document_type(kind)
    store = context.store
    document = get_document(context, doc_type.kind, document_id)

    if doc_type.kind is DocumentKind.PURCHASE_ORDER and document.status == PurchaseOrderStatus.COMPLETED.value:
        log.warning("Rejected edit of received purchase order '%s'", document.number)
        raise GuardError(f"Cannot edit a received purchase order ({document.number})")

    changes = _validate_header(doc_type, patch or {}, allow_status=False)
    if doc_type.counterparty_field in changes:
        _require_counterparty(context, doc_type, changes[doc_type.counterparty_field])
    prepared = _prepare_lines(context, doc_type, lines) if lines is not None else None

    undo = _Compensation(f"update {doc_type.kind.value} {document.number}")
    documents = store.documents(doc_type.kind)
    line_repo = store.lines(doc_type.kind)
    try:
        if prepared is not None:
            old_lines = line_repo.lines_for(document_id)
            if doc_type.kind is DocumentKind.INVOICE:
                # The reversal must land before the new deduction.
                _apply_stock(store, ledger.deltas_for_lines(old_lines, 1), undo)
            line_repo.delete_for(document_id)
            undo.push("restore previous lines", lambda: _restore_lines(line_repo, document_id, old_lines))
            saved_lines = _write_lines(line_repo, doc_type, document_id, prepared)
            if doc_type.kind is DocumentKind.INVOICE:
                _apply_stock(store, ledger.deltas_for_lines(saved_lines, -1), undo)
            changes.update(_totals_fields(doc_type, calculator.document_totals(prepared, doc_type.kind)))

        if changes:
            previous = {name: getattr(document, name) for name in changes}
            updated = documents.update(document_id, changes)
            undo.push("restore header", lambda: documents.update(document_id, previous))
        else:
            updated = document
    except Exception as exc:
        undo.run(exc)
        raise

    log.info(
        "Updated %s '%s' (fields: %s%s)",
        doc_type.kind.value,
        document.number,
        ", ".join(sorted(changes)) or "none",
        "; lines replaced" if prepared is not None else "",
    )
    return updated


def delete_document(context: RuntimeContext, kind: DocumentKind, document_id: str) -> Any:
    """Remove a document and its lines. Stock is never adjusted here.

    Deleting an invoice keeps its stock deduction and deleting a completed
    purchase order keeps its stock credit. This is a known, accepted gap that
    is logged loudly every time it happens.
    """
    doc_type = _document_type(kind)
    store = context.store
    document = get_document(context, doc_type.kind, document_id)
    lines = store.lines(doc_type.kind).lines_for(document_id)

    store.lines(doc_type.kind).delete_for(document_id)
    store.documents(doc_type.kind).delete(document_id)

    stock_kept = (
        doc_type.kind is DocumentKind.INVOICE
        or (
            doc_type.kind is DocumentKind.PURCHASE_ORDER
            and document.status == PurchaseOrderStatus.COMPLETED.value
        )
    )
    if stock_kept and lines:
        log.warning(
            "Deleted %s '%s' WITHOUT reversing its stock effect (%s)",
            doc_type.kind.value,
            document.number,
            ", ".join(f"{line.item_name} x{line.quantity}" for line in lines),
        )
    else:
        log.info("Deleted %s '%s'", doc_type.kind.value, document.number)
    return document


def update_status(context: RuntimeContext, kind: DocumentKind, document_id: str, new_status: str) -> Any:
    """Move a document to ``new_status`` if the pair is allowed.

    Purchase orders credit their line quantities when entering ``completed``
    and debit them again when leaving it. Setting the current status again is
    a no-op.

    Raises:
        ValidationError: Unknown status, or an attempt to store the derived
            invoice ``overdue`` status.
        InvalidTransitionError: The pair is not allowed for the document type.
        MissingReferenceError: Unknown document.
    """
    doc_type = _document_type(kind)
    store = context.store
    document = get_document(context, doc_type.kind, document_id)
    target = _coerce_status(doc_type, new_status)
    current = document.status

    if target == current:
        log.info("%s '%s' already %s", doc_type.kind.value, document.number, current)
        return document
    if (current, target) not in doc_type.transitions:
        log.warning(
            "Rejected %s '%s' status change %s -> %s",
            doc_type.kind.value,
            document.number,
            current,
            target,
        )
        raise InvalidTransitionError(
            f"Cannot move {doc_type.kind.value} from '{current}' to '{target}'"
        )

    undo = _Compensation(f"{doc_type.kind.value} {document.number} {current} -> {target}")
    documents = store.documents(doc_type.kind)
    try:
        updated = documents.update(document_id, {"status": target})
        undo.push("restore status", lambda: documents.update(document_id, {"status": current}))
        if doc_type.kind is DocumentKind.PURCHASE_ORDER:
            completed = PurchaseOrderStatus.COMPLETED.value
            if target == completed:
                lines = store.lines(doc_type.kind).lines_for(document_id)
                _apply_stock(store, ledger.deltas_for_lines(lines, 1), undo)
            elif current == completed:
                lines = store.lines(doc_type.kind).lines_for(document_id)
                _apply_stock(store, ledger.deltas_for_lines(lines, -1), undo)
    except Exception as exc:
        undo.run(exc)
        raise

    log.info("%s '%s' status %s -> %s", doc_type.kind.value, document.number, current, target)
    return updated


def convert_quotation_to_invoice(
    context: RuntimeContext,
    quotation_id: str,
    *,
    now: Optional[datetime] = None,
) -> data_manager.InvoiceRow:
    """Create a pending invoice from an approved quotation.

    Amounts and line totals are copied verbatim, not recomputed. The invoice
    number is the quotation number with ``QUO`` swapped for ``INV``. No stock
    check runs and no stock is deducted.

    Raises:
        GuardError: The quotation is not approved or was already converted.
        MissingReferenceError: Unknown quotation.
    """
    store = context.store
    now = _resolve_timestamp(now)
    quotation = get_document(context, DocumentKind.QUOTATION, quotation_id)
    if quotation.status != QuotationStatus.APPROVED.value:
        raise GuardError(
            f"Only approved quotations can be converted ({quotation.number} is {quotation.status})"
        )

    number = quotation.number.replace(NumberPrefix.QUOTATION.value, NumberPrefix.INVOICE.value, 1)
    invoices = store.documents(DocumentKind.INVOICE)
    if invoices.find(number=number):
        raise GuardError(f"Quotation {quotation.number} was already converted to invoice {number}")

    today = now.date()
    source_lines = store.lines(DocumentKind.QUOTATION).lines_for(quotation_id)
    invoice_lines = store.lines(DocumentKind.INVOICE)
    undo = _Compensation(f"convert quotation {quotation.number}")
    try:
        invoice = invoices.create(
            {
                "number": number,
                "customer_id": quotation.customer_id,
                "date": today.isoformat(),
                "due_date": (today + timedelta(days=context.settings.payment_terms_days)).isoformat(),
                "subtotal": quotation.subtotal,
                "discount": quotation.discount,
                "tax": quotation.tax,
                "total": quotation.total,
                "notes": CONVERSION_NOTE.format(number=quotation.number, notes=quotation.notes),
                "status": InvoiceStatus.PENDING.value,
            },
            now=now,
        )
        undo.push("remove invoice", lambda: invoices.delete(invoice.invoice_id))
        undo.push("remove invoice lines", lambda: invoice_lines.delete_for(invoice.invoice_id))
        for line in source_lines:
            invoice_lines.create(_line_values(line, invoice.invoice_id))
    except Exception as exc:
        undo.run(exc)
        raise

    log.warning(
        "Converted quotation '%s' to invoice '%s' without stock check or deduction",
        quotation.number,
        number,
    )
    return invoice


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: Any) -> None:
    """Validate that a line quantity is a whole number greater than zero.

    Raises:
        ValidationError: If ``quantity`` is zero, negative or fractional.
    """
    try:
        value = Decimal(str(quantity))
    except InvalidOperation:
        value = None
    if (
        isinstance(quantity, bool)
        or value is None
        or not value.is_finite()
        or value != value.to_integral_value()
        or value <= 0
    ):
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero or not a finite number.
    """
    if not amount.is_finite() or amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


def _validate_header(doc_type: DocumentType, header: Mapping[str, Any], *, allow_status: bool) -> Dict[str, Any]:
    allowed = set(doc_type.editable_fields)
    if allow_status:
        allowed.add("status")
    unknown = set(header) - allowed
    if unknown:
        hint = " (use update_status to change status)" if "status" in unknown else ""
        raise ValidationError(
            f"Cannot set {doc_type.kind.value} field(s): {', '.join(sorted(unknown))}{hint}"
        )
    values = dict(header)
    for name in ("date", doc_type.secondary_date_field):
        if name in values:
            values[name] = _as_iso_date(values[name])
    if "notes" in values and values["notes"] is None:
        values["notes"] = ""
    return values


def _require_counterparty(context: RuntimeContext, doc_type: DocumentType, counterparty_id: Optional[str]) -> None:
    if not counterparty_id:
        role = "vendor" if doc_type.kind is DocumentKind.PURCHASE_ORDER else "customer"
        log.error("Rejected %s without a %s", doc_type.kind.value, role)
        raise ValidationError(f"Please select a {role}")
    get_customer(context, counterparty_id)


def _coerce_status(doc_type: DocumentType, value: str) -> str:
    try:
        status = doc_type.statuses(getattr(value, "value", value)).value
    except ValueError as exc:
        raise ValidationError(f"Unknown {doc_type.kind.value} status: {value}") from exc
    if status == InvoiceStatus.OVERDUE.value and doc_type.kind is DocumentKind.INVOICE:
        raise ValidationError("'overdue' is derived from the due date and cannot be set")
    return status


def _initial_status(doc_type: DocumentType, requested: Optional[str]) -> str:
    if requested is None:
        return doc_type.initial_status
    status = _coerce_status(doc_type, requested)
    if doc_type.kind is DocumentKind.PURCHASE_ORDER and status == PurchaseOrderStatus.COMPLETED.value:
        # Receipt must go through update_status so the stock credit happens.
        raise ValidationError("A purchase order cannot be created as completed")
    return status


def _prepare_lines(context: RuntimeContext, doc_type: DocumentType, lines: Optional[Sequence[LineInput]]) -> List[LineInput]:
    if not lines:
        raise ValidationError("At least one line item is required")
    prepared = []
    for line in lines:
        if not line.item_name or not line.item_name.strip():
            raise ValidationError("Every line needs an item name")
        require_positive_quantity(line.quantity)
        unit_price = Decimal(str(line.unit_price))
        require_nonnegative_money(unit_price)
        if doc_type.has_discount:
            discount = Decimal(str(line.discount))
            tax_rate = Decimal(str(line.tax_rate))
            require_nonnegative_money(discount)
            require_nonnegative_money(tax_rate)
        else:
            discount = tax_rate = ZERO

        item_id = line.item_id
        if item_id:
            get_item(context, item_id)
        else:
            # Capture the catalog id now so renames cannot break the link later.
            item = ledger.resolve_item(context.store, line.item_name)
            item_id = item.item_id if item is not None else None

        prepared.append(
            replace(
                line,
                item_name=line.item_name.strip(),
                quantity=int(line.quantity),
                unit_price=unit_price,
                discount=discount,
                tax_rate=tax_rate,
                item_id=item_id,
            )
        )
    return prepared


def _check_stock(store: data_manager.WorkbookStore, lines: Sequence[LineInput]) -> None:
    requested: Dict[str, int] = {}
    names: Dict[str, str] = {}
    for line in lines:
        if line.item_id is None:
            continue
        requested[line.item_id] = requested.get(line.item_id, 0) + line.quantity
        names[line.item_id] = line.item_name
    for item_id, quantity in requested.items():
        item = store.items.get(item_id)
        if item is not None and item.stock < quantity:
            log.error("Insufficient stock for '%s': available %d, requested %d", item.name, item.stock, quantity)
            raise InsufficientStockError(names[item_id], item.stock, quantity)


def _allocate_number(store: data_manager.WorkbookStore, doc_type: DocumentType, now: datetime) -> str:
    # Converted invoices reuse their quotation's counter value, so the
    # invoice sequence may run into a number that is already taken.
    documents = store.documents(doc_type.kind)
    while True:
        number = sequence.next_number(store, doc_type.prefix.value, now)
        if not documents.find(number=number):
            return number
        log.warning("Skipping %s number '%s', already in use", doc_type.kind.value, number)


def _totals_fields(doc_type: DocumentType, totals: calculator.DocumentTotals) -> Dict[str, Decimal]:
    values = {"subtotal": totals.subtotal, "tax": totals.tax, "total": totals.total}
    if doc_type.has_discount:
        values["discount"] = totals.discount
    return values


def _write_lines(
    line_repo: data_manager.SheetRepository,
    doc_type: DocumentType,
    document_id: str,
    lines: Sequence[LineInput],
) -> List[data_manager.LineItemRow]:
    return [
        line_repo.create(
            {
                "parent_id": document_id,
                "item_id": line.item_id,
                "item_name": line.item_name,
                "description": line.description,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "discount": line.discount,
                "tax_rate": line.tax_rate,
                "total": calculator.line_total(line, doc_type.kind),
            }
        )
        for line in lines
    ]


def _line_values(line: data_manager.LineItemRow, parent_id: str) -> Dict[str, Any]:
    return {
        "parent_id": parent_id,
        "item_id": line.item_id,
        "item_name": line.item_name,
        "description": line.description,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "discount": line.discount,
        "tax_rate": line.tax_rate,
        "total": line.total,
    }


def _restore_lines(
    line_repo: data_manager.SheetRepository,
    document_id: str,
    lines: Sequence[data_manager.LineItemRow],
) -> None:
    line_repo.delete_for(document_id)
    for line in lines:
        line_repo.create(_line_values(line, document_id))


def _apply_stock(store: data_manager.WorkbookStore, deltas: Sequence[ledger.StockDelta], undo: _Compensation) -> None:
    """Apply ``deltas`` and register their exact inverse on the undo log."""
    try:
        applied = ledger.apply_deltas(store, deltas)
    except LedgerInconsistencyError as exc:
        partial = exc.applied
        undo.push("reverse partial stock change", lambda: ledger.apply_deltas(store, ledger.reverse(partial)))
        raise
    undo.push("reverse stock change", lambda: ledger.apply_deltas(store, ledger.reverse(applied)))
