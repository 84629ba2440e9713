"""Command-line entry points for tradedocs.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the calls consumed by the business layer. The
invoice, quotation and purchase order commands share one shape, so their
specs are produced per document family from the same registrars.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .calculator import LineInput
from .constants import DEFAULT_LINE_TAX_RATE, DocumentKind


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class DocumentCommandFamily:
    """Naming for one document family's sub-commands and options."""

    kind: DocumentKind
    command_prefix: str
    label: str
    id_option: str
    counterparty_option: str
    secondary_date_option: str
    extra_options: Sequence[str] = ()


DOCUMENT_FAMILIES: Dict[DocumentKind, DocumentCommandFamily] = {
    DocumentKind.INVOICE: DocumentCommandFamily(
        kind=DocumentKind.INVOICE,
        command_prefix="invoice",
        label="invoice",
        id_option="invoice_id",
        counterparty_option="customer_id",
        secondary_date_option="due_date",
    ),
    DocumentKind.QUOTATION: DocumentCommandFamily(
        kind=DocumentKind.QUOTATION,
        command_prefix="quote",
        label="quotation",
        id_option="quotation_id",
        counterparty_option="customer_id",
        secondary_date_option="valid_until",
        extra_options=("payment_terms",),
    ),
    DocumentKind.PURCHASE_ORDER: DocumentCommandFamily(
        kind=DocumentKind.PURCHASE_ORDER,
        command_prefix="po",
        label="purchase order",
        id_option="po_id",
        counterparty_option="vendor_id",
        secondary_date_option="expected_delivery",
    ),
}


def _flag(field_name: str) -> str:
    return "--" + field_name.replace("_", "-")


def parse_line_argument(text: str) -> LineInput:
    """Parse ``NAME:QTY:PRICE[:DISCOUNT[:TAX_RATE]]`` into a line.

    The tax rate defaults to 10 percent like the entry forms do. Purchase order
    lines ignore discount and tax rate.

    Raises:
        argparse.ArgumentTypeError: If the value does not follow the format.
    """
    parts = text.split(":")
    if not 3 <= len(parts) <= 5 or not parts[0].strip():
        raise argparse.ArgumentTypeError(
            f"invalid line '{text}': expected NAME:QTY:PRICE[:DISCOUNT[:TAX_RATE]]"
        )
    try:
        quantity = int(parts[1])
        unit_price = Decimal(parts[2])
        discount = Decimal(parts[3]) if len(parts) > 3 else Decimal("0")
        tax_rate = Decimal(parts[4]) if len(parts) > 4 else DEFAULT_LINE_TAX_RATE
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"invalid number in line '{text}'") from exc
    return LineInput(
        item_name=parts[0].strip(),
        quantity=quantity,
        unit_price=unit_price,
        discount=discount,
        tax_rate=tax_rate,
    )


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tradedocs",
        description="Invoices, quotations and purchase orders kept in an Excel workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as document creation and status changes."""
    specs = {
        "add-customer": register_add_customer_command(subparsers),
        "add-item": register_add_item_command(subparsers),
    }
    for family in DOCUMENT_FAMILIES.values():
        for spec in register_document_commands(family):
            specs[spec.name] = spec
    specs["quote-convert"] = register_convert_command(subparsers)
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "documents": register_documents_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a customer (customers double as vendors)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--address", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--email", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a catalog item in the Items sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--min-stock", type=int, default=None)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_document_commands(family: DocumentCommandFamily) -> List[CommandSpec]:
    """Build the create, update, status and delete specs for one document family."""

    def add_header_options(parser: argparse.ArgumentParser, *, counterparty_required: bool) -> None:
        parser.add_argument(_flag(family.counterparty_option), required=counterparty_required, default=None)
        parser.add_argument("--date", default=None)
        parser.add_argument(_flag(family.secondary_date_option), default=None)
        parser.add_argument("--notes", default=None)
        for option in family.extra_options:
            parser.add_argument(_flag(option), default=None)

    def create_registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        name = f"{family.command_prefix}-create"
        parser = action.add_parser(name, help=f"Create a {family.label}.")
        add_header_options(parser, counterparty_required=True)
        parser.add_argument("--status", default=None)
        parser.add_argument("--line", dest="lines", action="append", type=parse_line_argument, required=True,
                            help="NAME:QTY:PRICE[:DISCOUNT[:TAX_RATE]]; repeat per line.")
        parser.set_defaults(command=name, kind=family.kind.value)
        return parser

    def update_registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        name = f"{family.command_prefix}-update"
        parser = action.add_parser(name, help=f"Edit a {family.label}; --line replaces every line.")
        parser.add_argument(_flag(family.id_option), dest="document_id", required=True)
        add_header_options(parser, counterparty_required=False)
        parser.add_argument("--line", dest="lines", action="append", type=parse_line_argument, default=None)
        parser.set_defaults(command=name, kind=family.kind.value)
        return parser

    def status_registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        name = f"{family.command_prefix}-status"
        parser = action.add_parser(name, help=f"Change the status of a {family.label}.")
        parser.add_argument(_flag(family.id_option), dest="document_id", required=True)
        parser.add_argument("--status", required=True)
        parser.set_defaults(command=name, kind=family.kind.value)
        return parser

    def delete_registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        name = f"{family.command_prefix}-delete"
        parser = action.add_parser(name, help=f"Delete a {family.label} and its lines.")
        parser.add_argument(_flag(family.id_option), dest="document_id", required=True)
        parser.set_defaults(command=name, kind=family.kind.value)
        return parser

    prefix = family.command_prefix
    return [
        CommandSpec(f"{prefix}-create", f"Create a {family.label}.", create_registrar, run_document_create),
        CommandSpec(f"{prefix}-update", f"Edit a {family.label}.", update_registrar, run_document_update),
        CommandSpec(f"{prefix}-status", f"Change {family.label} status.", status_registrar, run_document_status),
        CommandSpec(f"{prefix}-delete", f"Delete a {family.label}.", delete_registrar, run_document_delete),
    ]


def register_convert_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote-convert``."""
    name = "quote-convert"
    help_text = "Turn an approved quotation into a pending invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--quotation-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_convert)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only list items below their threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_documents_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``documents``."""
    name = "documents"
    help_text = "List invoices, quotations or purchase orders, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in DocumentKind], required=True)
        parser.add_argument("--status", default=None, help="Only list documents shown with this status.")
        parser.add_argument("--search", default=None, help="Match number, counterparty or status text.")
        parser.add_argument("--from", dest="date_from", default=None, help="Earliest date, YYYY-MM-DD.")
        parser.add_argument("--to", dest="date_to", default=None, help="Latest date, YYYY-MM-DD.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_documents_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display revenue, receivables and low-stock alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_header(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect the header fields given on the command line, skipping omitted ones."""
    family = DOCUMENT_FAMILIES[DocumentKind(args.kind)]
    names = [family.counterparty_option, "date", family.secondary_date_option, "notes", *family.extra_options]
    header = {name: getattr(args, name) for name in names if getattr(args, name, None) is not None}
    if getattr(args, "status", None) is not None and args.command.endswith("-create"):
        header["status"] = args.status
    return header


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(
        context,
        name=args.name,
        address=args.address,
        phone=args.phone,
        email=args.email,
    )
    print(customer.customer_id)
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.add_item(
        context,
        name=args.name,
        price=Decimal(args.price),
        stock=args.stock,
        min_stock=args.min_stock,
        description=args.description,
    )
    print(item.item_id)
    return 0


def run_document_create(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create a document of ``args.kind`` and print its number."""
    document = core_logic.create_document(context, DocumentKind(args.kind), translate_header(args), args.lines)
    print(document.number)
    return 0


def run_document_update(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Apply header edits and optional line replacement."""
    core_logic.update_document(
        context,
        DocumentKind(args.kind),
        args.document_id,
        translate_header(args),
        args.lines,
    )
    return 0


def run_document_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Move a document to a new status."""
    core_logic.update_status(context, DocumentKind(args.kind), args.document_id, args.status)
    return 0


def run_document_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete a document together with its lines."""
    core_logic.delete_document(context, DocumentKind(args.kind), args.document_id)
    return 0


def run_convert(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Convert an approved quotation and print the new invoice number."""
    invoice = core_logic.convert_quotation_to_invoice(context, args.quotation_id)
    print(invoice.number)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    items = core_logic.list_low_stock_items(context) if args.low else core_logic.list_items(context)
    for item in items:
        flag = " LOW" if item.stock < item.min_stock else ""
        print(f"{item.name}\t{item.stock}\t(min {item.min_stock}){flag}")
    return 0


def run_documents_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the document listing workflow."""
    views = core_logic.list_documents(
        context,
        DocumentKind(args.kind),
        status=args.status,
        search=args.search,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    for view in views:
        counterparty = view.counterparty.name if view.counterparty is not None else "-"
        print(f"{view.document.number}\t{view.document.date}\t{counterparty}\t{view.document.total}\t{view.status}")
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard reporting workflow."""
    summary = core_logic.calculate_dashboard_summary(context)
    print(f"Total revenue:        {summary.total_revenue}")
    print(f"Pending amount:       {summary.pending_amount}")
    print(f"Outstanding invoices: {summary.outstanding_invoices}")
    print(f"Quotations:           {summary.total_quotations}")
    print(f"Purchase orders:      {summary.total_purchase_orders}")
    for item in summary.low_stock_items:
        print(f"Low stock: {item.name} ({item.stock} left, min {item.min_stock})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
