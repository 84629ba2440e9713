"""Data access layer for tradedocs.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection access: one :class:`SheetRepository` per worksheet exposing the
   list/get/create/update/delete contract, bundled by :class:`WorkbookStore`
   together with the document-number counters.
"""


from __future__ import annotations

import configparser
import uuid
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_MIN_STOCK, DEFAULT_PAYMENT_TERMS_DAYS, DocumentKind, SheetName


CONFIG_FILE_NAME = "config.ini"
COUNTER_KEY_COLUMN = "CounterKey"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    payment_terms_days: int = DEFAULT_PAYMENT_TERMS_DAYS
    min_stock: int = DEFAULT_MIN_STOCK


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    address: str
    phone: str
    email: str
    created_at: str


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    name: str
    description: str
    price: Decimal
    stock: int
    min_stock: int
    created_at: str


@dataclass(frozen=True)
class LineItemRow:
    """One line of an invoice, quotation, or purchase order."""

    line_id: str
    parent_id: str
    item_id: Optional[str]
    item_name: str
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    tax_rate: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    number: str
    customer_id: str
    date: str
    due_date: str
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    notes: str
    status: str
    created_at: str


@dataclass(frozen=True)
class QuotationRow:
    """In-memory view of a row from the ``Quotations`` sheet."""

    quotation_id: str
    number: str
    customer_id: str
    date: str
    valid_until: str
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    notes: str
    payment_terms: str
    status: str
    created_at: str


@dataclass(frozen=True)
class PurchaseOrderRow:
    """In-memory view of a row from the ``PurchaseOrders`` sheet."""

    po_id: str
    number: str
    vendor_id: str
    date: str
    expected_delivery: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    notes: str
    status: str
    created_at: str


@dataclass(frozen=True)
class CounterRow:
    """In-memory view of a row from the ``Sequences`` sheet."""

    counter_key: str
    value: int


@dataclass(frozen=True)
class TableSpec:
    """Describe how one worksheet maps onto a record dataclass."""

    sheet: SheetName
    record_type: type
    key_field: str
    deserialize: Callable[[Sequence[object]], Any]
    parent_field: Optional[str] = None
    newest_first: bool = False

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in fields(self.record_type))

    @property
    def headers(self) -> List[str]:
        return [column_header(name) for name in self.field_names]


class Repository(Protocol):
    """Storage contract consumed by the consistency engine.

    Any backend (workbook, relational database, remote API) can stand behind
    the engine as long as it offers these operations per collection.
    """

    def list_all(self) -> List[Any]: ...

    def get(self, record_id: str) -> Optional[Any]: ...

    def create(self, values: Mapping[str, Any]) -> Any: ...

    def update(self, record_id: str, changes: Mapping[str, Any]) -> Any: ...

    def delete(self, record_id: str) -> bool: ...


def column_header(field_name: str) -> str:
    """Translate a snake_case field name into the worksheet header title.

    ``"customer_id"`` becomes ``"CustomerID"`` and ``"po_id"`` becomes
    ``"POID"`` so headers read like the rest of the workbook.
    """

    parts = field_name.split("_")
    return "".join(part.upper() if part in {"id", "po"} else part.capitalize() for part in parts)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Defaults]`` is optional and
    falls back to a 30 day payment term and a restock threshold of 5. Relative
    ``DataFile`` entries are anchored to ``base_path`` (or the current working
    directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If a numeric default cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    payment_terms_days = parser.getint(
        "Defaults", "PaymentTermsDays", fallback=DEFAULT_PAYMENT_TERMS_DAYS)
    min_stock = parser.getint("Defaults", "MinStock", fallback=DEFAULT_MIN_STOCK)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        payment_terms_days=payment_terms_days,
        min_stock=min_stock,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    key_col_index = _header_map(workbook[sheet_name]).get(key_column)
    if key_col_index is None:
        raise KeyError(f"Unknown column: {key_column}")

    for row_idx, row in enumerate(workbook[sheet_name].iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_record(record: Any) -> List[object]:
    """Convert a record dataclass into its worksheet column ordering.

    Decimal values are kept as :class:`~decimal.Decimal` so openpyxl writes
    them as numbers.
    """

    return [getattr(record, f.name) for f in fields(record)]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw ``Customers`` row into a :class:`CustomerRow`."""

    customer_id, name, address, phone, email, created_at = _pad(raw_row, 6)
    return CustomerRow(
        customer_id=_text(customer_id),
        name=_text(name),
        address=_text(address),
        phone=_text(phone),
        email=_text(email),
        created_at=_text(created_at),
    )


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw ``Items`` row into an :class:`ItemRow`.

    Stock is coerced to ``int`` and may be negative; a blank ``MinStock``
    falls back to the default restock threshold.
    """

    item_id, name, description, price, stock, min_stock, created_at = _pad(raw_row, 7)
    return ItemRow(
        item_id=_text(item_id),
        name=_text(name),
        description=_text(description),
        price=_decimal(price),
        stock=_integer(stock),
        min_stock=_integer(min_stock, default=DEFAULT_MIN_STOCK),
        created_at=_text(created_at),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw line-item row from any of the three line sheets."""

    (
        line_id,
        parent_id,
        item_id,
        item_name,
        description,
        quantity,
        unit_price,
        discount,
        tax_rate,
        total,
    ) = _pad(raw_row, 10)
    return LineItemRow(
        line_id=_text(line_id),
        parent_id=_text(parent_id),
        item_id=_optional_text(item_id),
        item_name=_text(item_name),
        description=_text(description),
        quantity=_integer(quantity),
        unit_price=_decimal(unit_price),
        discount=_decimal(discount),
        tax_rate=_decimal(tax_rate),
        total=_decimal(total),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    """Convert a raw ``Invoices`` row into an :class:`InvoiceRow`."""

    (
        invoice_id,
        number,
        customer_id,
        date,
        due_date,
        subtotal,
        discount,
        tax,
        total,
        notes,
        status,
        created_at,
    ) = _pad(raw_row, 12)
    return InvoiceRow(
        invoice_id=_text(invoice_id),
        number=_text(number),
        customer_id=_text(customer_id),
        date=_text(date),
        due_date=_text(due_date),
        subtotal=_decimal(subtotal),
        discount=_decimal(discount),
        tax=_decimal(tax),
        total=_decimal(total),
        notes=_text(notes),
        status=_text(status),
        created_at=_text(created_at),
    )


def deserialize_quotation(raw_row: Sequence[object]) -> QuotationRow:
    """Convert a raw ``Quotations`` row into a :class:`QuotationRow`."""

    (
        quotation_id,
        number,
        customer_id,
        date,
        valid_until,
        subtotal,
        discount,
        tax,
        total,
        notes,
        payment_terms,
        status,
        created_at,
    ) = _pad(raw_row, 13)
    return QuotationRow(
        quotation_id=_text(quotation_id),
        number=_text(number),
        customer_id=_text(customer_id),
        date=_text(date),
        valid_until=_text(valid_until),
        subtotal=_decimal(subtotal),
        discount=_decimal(discount),
        tax=_decimal(tax),
        total=_decimal(total),
        notes=_text(notes),
        payment_terms=_text(payment_terms),
        status=_text(status),
        created_at=_text(created_at),
    )


def deserialize_purchase_order(raw_row: Sequence[object]) -> PurchaseOrderRow:
    """Convert a raw ``PurchaseOrders`` row into a :class:`PurchaseOrderRow`."""

    (
        po_id,
        number,
        vendor_id,
        date,
        expected_delivery,
        subtotal,
        tax,
        total,
        notes,
        status,
        created_at,
    ) = _pad(raw_row, 11)
    return PurchaseOrderRow(
        po_id=_text(po_id),
        number=_text(number),
        vendor_id=_text(vendor_id),
        date=_text(date),
        expected_delivery=_text(expected_delivery),
        subtotal=_decimal(subtotal),
        tax=_decimal(tax),
        total=_decimal(total),
        notes=_text(notes),
        status=_text(status),
        created_at=_text(created_at),
    )


def deserialize_counter(raw_row: Sequence[object]) -> CounterRow:
    """Convert a raw ``Sequences`` row into a :class:`CounterRow`."""

    counter_key, value = _pad(raw_row, 2)
    return CounterRow(counter_key=_text(counter_key), value=_integer(value))


TABLES: Dict[SheetName, TableSpec] = {
    SheetName.CUSTOMERS: TableSpec(SheetName.CUSTOMERS, CustomerRow, "customer_id", deserialize_customer),
    SheetName.ITEMS: TableSpec(SheetName.ITEMS, ItemRow, "item_id", deserialize_item),
    SheetName.INVOICES: TableSpec(
        SheetName.INVOICES, InvoiceRow, "invoice_id", deserialize_invoice, newest_first=True),
    SheetName.INVOICE_ITEMS: TableSpec(
        SheetName.INVOICE_ITEMS, LineItemRow, "line_id", deserialize_line_item, parent_field="parent_id"),
    SheetName.QUOTATIONS: TableSpec(
        SheetName.QUOTATIONS, QuotationRow, "quotation_id", deserialize_quotation, newest_first=True),
    SheetName.QUOTATION_ITEMS: TableSpec(
        SheetName.QUOTATION_ITEMS, LineItemRow, "line_id", deserialize_line_item, parent_field="parent_id"),
    SheetName.PURCHASE_ORDERS: TableSpec(
        SheetName.PURCHASE_ORDERS, PurchaseOrderRow, "po_id", deserialize_purchase_order, newest_first=True),
    SheetName.PURCHASE_ORDER_ITEMS: TableSpec(
        SheetName.PURCHASE_ORDER_ITEMS, LineItemRow, "line_id", deserialize_line_item, parent_field="parent_id"),
    SheetName.SEQUENCES: TableSpec(SheetName.SEQUENCES, CounterRow, "counter_key", deserialize_counter),
}

DOCUMENT_SHEETS: Dict[DocumentKind, tuple[SheetName, SheetName]] = {
    DocumentKind.INVOICE: (SheetName.INVOICES, SheetName.INVOICE_ITEMS),
    DocumentKind.QUOTATION: (SheetName.QUOTATIONS, SheetName.QUOTATION_ITEMS),
    DocumentKind.PURCHASE_ORDER: (SheetName.PURCHASE_ORDERS, SheetName.PURCHASE_ORDER_ITEMS),
}


def generate_record_id() -> str:
    """Return a short random identifier for a new row."""

    return uuid.uuid4().hex[:12]


class SheetRepository:
    """Worksheet-backed implementation of :class:`Repository`.

    Every call reads the worksheet directly so that writes made through one
    repository are immediately visible to any other reader of the same
    workbook.
    """

    def __init__(self, workbook: Workbook, spec: TableSpec):
        self.workbook = workbook
        self.spec = spec

    @property
    def sheet_name(self) -> str:
        return self.spec.sheet.value

    def iter_records(self) -> Iterable[Any]:
        """Yield records in sheet order, skipping fully empty rows."""

        sheet = self.workbook[self.sheet_name]
        for raw in sheet.iter_rows(min_row=2, values_only=True):
            if any(cell is not None for cell in raw):
                yield self.spec.deserialize(raw)

    def list_all(self) -> List[Any]:
        """Return every record, newest first for document collections."""

        records = list(self.iter_records())
        if self.spec.newest_first:
            records.sort(key=lambda record: record.created_at, reverse=True)
        return records

    def get(self, record_id: str) -> Optional[Any]:
        for record in self.iter_records():
            if getattr(record, self.spec.key_field) == record_id:
                return record
        return None

    def find(self, **criteria: Any) -> List[Any]:
        """Return records whose attributes equal every supplied criterion."""

        return [
            record
            for record in self.iter_records()
            if all(getattr(record, name) == value for name, value in criteria.items())
        ]

    def create(self, values: Mapping[str, Any], *, now: Optional[datetime] = None) -> Any:
        """Append a new row, assigning its identifier and creation timestamp.

        Raises:
            KeyError: If ``values`` names a field the collection does not have.
        """

        unknown = set(values) - set(self.spec.field_names)
        if unknown:
            raise KeyError(f"Unknown {self.sheet_name} field(s): {', '.join(sorted(unknown))}")

        payload = dict(values)
        payload[self.spec.key_field] = generate_record_id()
        if "created_at" in self.spec.field_names:
            payload["created_at"] = (now or datetime.now(UTC)).isoformat()
        record = self.spec.record_type(**payload)
        self.workbook[self.sheet_name].append(serialize_record(record))
        log.debug("Created %s row '%s'", self.sheet_name, payload[self.spec.key_field])
        return record

    def update(self, record_id: str, changes: Mapping[str, Any]) -> Any:
        """Overwrite selected fields of an existing row and return the new record.

        Raises:
            KeyError: If the row or any referenced field cannot be found.
        """

        row_index = self._locate(record_id)
        if row_index is None:
            raise KeyError(f"{self.sheet_name} row not found: {record_id}")

        forbidden = {self.spec.key_field, "created_at"} & set(changes)
        if forbidden:
            raise KeyError(f"Read-only {self.sheet_name} field(s): {', '.join(sorted(forbidden))}")
        unknown = set(changes) - set(self.spec.field_names)
        if unknown:
            raise KeyError(f"Unknown {self.sheet_name} field(s): {', '.join(sorted(unknown))}")

        sheet = self.workbook[self.sheet_name]
        current = self.spec.deserialize([cell.value for cell in sheet[row_index]])
        updated = replace(current, **changes)
        for column, value in enumerate(serialize_record(updated), start=1):
            sheet.cell(row=row_index, column=column, value=value)
        return updated

    def delete(self, record_id: str) -> bool:
        """Remove a row; returns ``False`` when nothing matched."""

        row_index = self._locate(record_id)
        if row_index is None:
            return False
        self.workbook[self.sheet_name].delete_rows(row_index, 1)
        return True

    def lines_for(self, parent_id: str) -> List[Any]:
        """Return the child rows owned by ``parent_id`` in insertion order."""

        return self.find(**{self._parent_field(): parent_id})

    def delete_for(self, parent_id: str) -> int:
        """Remove every child row owned by ``parent_id``; returns the count."""

        parent_field = self._parent_field()
        position = self.spec.field_names.index(parent_field)
        sheet = self.workbook[self.sheet_name]
        doomed = [
            row_idx
            for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
            if len(row) > position and row[position] is not None and str(row[position]) == parent_id
        ]
        # Delete bottom-up so earlier indices stay valid.
        for row_idx in reversed(doomed):
            sheet.delete_rows(row_idx, 1)
        return len(doomed)

    def _parent_field(self) -> str:
        if self.spec.parent_field is None:
            raise KeyError(f"{self.sheet_name} has no parent column")
        return self.spec.parent_field

    def _locate(self, record_id: str) -> Optional[int]:
        return locate_row(self.workbook, self.sheet_name, column_header(self.spec.key_field), record_id)


class WorkbookStore:
    """Bundle of every collection plus the document-number counters."""

    def __init__(self, workbook: Workbook):
        self.workbook = workbook
        self.customers = SheetRepository(workbook, TABLES[SheetName.CUSTOMERS])
        self.items = SheetRepository(workbook, TABLES[SheetName.ITEMS])
        self._documents = {
            kind: SheetRepository(workbook, TABLES[header_sheet])
            for kind, (header_sheet, _) in DOCUMENT_SHEETS.items()
        }
        self._lines = {
            kind: SheetRepository(workbook, TABLES[line_sheet])
            for kind, (_, line_sheet) in DOCUMENT_SHEETS.items()
        }

    def documents(self, kind: DocumentKind) -> SheetRepository:
        return self._documents[DocumentKind(kind)]

    def lines(self, kind: DocumentKind) -> SheetRepository:
        return self._lines[DocumentKind(kind)]

    def read_counter(self, key: str) -> int:
        """Return the last value handed out for ``key`` (0 when unused)."""

        sheet_name = SheetName.SEQUENCES.value
        row_index = locate_row(self.workbook, sheet_name, COUNTER_KEY_COLUMN, key)
        if row_index is None:
            return 0
        return deserialize_counter([cell.value for cell in self.workbook[sheet_name][row_index]]).value

    def increment_counter(self, key: str) -> int:
        """Advance the counter for ``key`` by one and return the new value.

        The write lands in the workbook before the value is returned, so a
        caller can never observe a number whose counter was not advanced.
        """

        sheet_name = SheetName.SEQUENCES.value
        sheet = self.workbook[sheet_name]
        row_index = locate_row(self.workbook, sheet_name, COUNTER_KEY_COLUMN, key)
        if row_index is None:
            sheet.append(serialize_record(CounterRow(counter_key=key, value=1)))
            return 1
        current = deserialize_counter([cell.value for cell in sheet[row_index]]).value
        sheet.cell(row=row_index, column=2, value=current + 1)
        return current + 1


def _header_map(sheet: Any) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _pad(raw_row: Sequence[object], width: int) -> tuple:
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


def _text(raw: object) -> str:
    return "" if raw is None else str(raw)


def _optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _integer(raw: object, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))
