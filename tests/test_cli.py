"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from tradedocs import cli, core_logic
from tradedocs.calculator import LineInput
from tradedocs.constants import DEFAULT_LINE_TAX_RATE, DocumentKind


WRITE_COMMANDS = {
    "add-customer",
    "add-item",
    "invoice-create",
    "invoice-update",
    "invoice-status",
    "invoice-delete",
    "quote-create",
    "quote-update",
    "quote-status",
    "quote-delete",
    "quote-convert",
    "po-create",
    "po-update",
    "po-status",
    "po-delete",
}

READ_COMMANDS = {
    "stock",
    "documents",
    "dashboard",
}


def _parse(spec_factory, argv):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = spec_factory(subparsers)
    spec.register(subparsers)
    return parser.parse_args(argv)


def _document_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    for family in cli.DOCUMENT_FAMILIES.values():
        for spec in cli.register_document_commands(family):
            spec.register(subparsers)
    return parser


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_returns_argument_parser():
    """build_parser should produce a configured ArgumentParser instance."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "tradedocs"


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every write and read sub-command."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
    for name in WRITE_COMMANDS:
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Line parsing
# ---------------------------------------------------------------------------


def test_parse_line_argument_minimal_form():
    """NAME:QTY:PRICE uses no discount and the default tax rate."""

    line = cli.parse_line_argument("Widget:3:100")

    assert line == LineInput("Widget", 3, Decimal("100"), discount=Decimal("0"), tax_rate=DEFAULT_LINE_TAX_RATE)


def test_parse_line_argument_full_form():
    """Discount and tax rate can be given explicitly."""

    line = cli.parse_line_argument("Server Maintenance:2:2000000:50000:11")

    assert line.item_name == "Server Maintenance"
    assert line.discount == Decimal("50000")
    assert line.tax_rate == Decimal("11")


@pytest.mark.parametrize("value", ["Widget", "Widget:3", ":3:100", "Widget:x:100", "Widget:1.5:100", "W:1:2:3:4:5"])
def test_parse_line_argument_rejects_malformed_values(value):
    """Malformed lines surface argparse type errors."""

    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_line_argument(value)


# ---------------------------------------------------------------------------
# Write command registrations
# ---------------------------------------------------------------------------


def test_register_add_customer_command_configures_arguments():
    """add-customer should accept contact details."""

    namespace = _parse(
        cli.register_add_customer_command,
        ["add-customer", "--name", "PT Maju Jaya", "--email", "info@majujaya.com"],
    )
    assert namespace.name == "PT Maju Jaya"
    assert namespace.email == "info@majujaya.com"
    assert namespace.phone == ""


def test_register_add_item_command_configures_arguments():
    """add-item should accept price, stock and threshold."""

    namespace = _parse(
        cli.register_add_item_command,
        ["add-item", "--name", "Widget", "--price", "9.99", "--stock", "12", "--min-stock", "3"],
    )
    assert namespace.price == "9.99"
    assert namespace.stock == 12
    assert namespace.min_stock == 3


def test_invoice_create_collects_repeated_lines():
    """Each --line flag contributes one parsed line."""

    namespace = _document_parser().parse_args(
        ["invoice-create", "--customer-id", "C1", "--line", "Widget:1:10", "--line", "Gadget:2:20:0:0"]
    )

    assert namespace.kind == DocumentKind.INVOICE.value
    assert [line.item_name for line in namespace.lines] == ["Widget", "Gadget"]
    assert namespace.due_date is None


def test_po_create_uses_vendor_and_delivery_options():
    """Purchase order commands name the vendor and expected delivery."""

    namespace = _document_parser().parse_args(
        ["po-create", "--vendor-id", "V1", "--expected-delivery", "2026-04-01", "--line", "Widget:5:20"]
    )

    assert namespace.vendor_id == "V1"
    assert namespace.expected_delivery == "2026-04-01"


def test_quote_update_lines_are_optional():
    """Updates without --line leave lines untouched."""

    namespace = _document_parser().parse_args(["quote-update", "--quotation-id", "Q1", "--payment-terms", "Net 14"])

    assert namespace.document_id == "Q1"
    assert namespace.lines is None
    assert namespace.payment_terms == "Net 14"


def test_create_requires_a_line():
    """Creating a document without lines is a usage error."""

    with pytest.raises(SystemExit):
        _document_parser().parse_args(["invoice-create", "--customer-id", "C1"])


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_header_skips_omitted_options():
    """Only options given on the command line reach the patch."""

    args = argparse.Namespace(
        command="invoice-update", kind="invoice", customer_id=None, date="2026-03-01", due_date=None, notes="hi",
    )

    assert cli.translate_header(args) == {"date": "2026-03-01", "notes": "hi"}


def test_translate_header_includes_status_on_create():
    """An initial status is forwarded only by create commands."""

    args = argparse.Namespace(
        command="quote-create", kind="quotation", customer_id="C1", date=None, valid_until=None, notes=None,
        payment_terms="Net 30", status="pending",
    )

    assert cli.translate_header(args) == {"customer_id": "C1", "payment_terms": "Net 30", "status": "pending"}


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    config_path = tmp_path / "config.ini"
    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_path
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor associated with the command."""

    called = {}

    def execute(ctx: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = ctx
        return 0

    spec = cli.CommandSpec("catalog-test", "help", lambda s: s.add_parser("catalog-test"), execute)
    result = cli.dispatch_command(context, argparse.Namespace(command="catalog-test"), {"catalog-test": spec})

    assert result == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_document_create_invokes_bll(context, monkeypatch, capsys):
    """run_document_create should pass the header and lines through and print the number."""

    called = {}

    def fake_create(ctx, kind, header, lines):
        called.update(kind=kind, header=header, lines=lines)
        return argparse.Namespace(number="INV/202603/0001")

    monkeypatch.setattr(cli.core_logic, "create_document", fake_create)
    lines = [LineInput("Widget", 1, Decimal("1"))]
    args = argparse.Namespace(
        command="invoice-create", kind="invoice", customer_id="C1", date=None, due_date=None, notes=None,
        status=None, lines=lines,
    )

    assert cli.run_document_create(context, args) == 0
    assert called == {"kind": DocumentKind.INVOICE, "header": {"customer_id": "C1"}, "lines": lines}
    assert capsys.readouterr().out.strip() == "INV/202603/0001"


def test_run_document_status_invokes_bll(context, monkeypatch):
    """run_document_status should forward kind, id and status."""

    called = {}
    monkeypatch.setattr(
        cli.core_logic, "update_status", lambda ctx, kind, doc_id, status: called.update(args=(kind, doc_id, status))
    )

    args = argparse.Namespace(kind="purchase_order", document_id="P1", status="completed")
    assert cli.run_document_status(context, args) == 0
    assert called["args"] == (DocumentKind.PURCHASE_ORDER, "P1", "completed")


def test_run_convert_prints_invoice_number(context, monkeypatch, capsys):
    """run_convert should print the number of the new invoice."""

    monkeypatch.setattr(
        cli.core_logic, "convert_quotation_to_invoice", lambda ctx, quotation_id: argparse.Namespace(number="INV/1")
    )

    assert cli.run_convert(context, argparse.Namespace(quotation_id="Q1")) == 0
    assert capsys.readouterr().out.strip() == "INV/1"


def test_run_stock_report_lists_items(context, capsys):
    """run_stock_report should print every item and flag low ones."""

    core_logic.add_item(context, name="Widget", price=Decimal("1"), stock=10)
    core_logic.add_item(context, name="Bolt", price=Decimal("1"), stock=1)

    assert cli.run_stock_report(context, argparse.Namespace(low=False)) == 0
    out = capsys.readouterr().out
    assert "Widget\t10" in out
    assert "Bolt\t1\t(min 5) LOW" in out

    cli.run_stock_report(context, argparse.Namespace(low=True))
    assert "Widget" not in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.GuardError("Cannot edit a received purchase order"), 2),
        (core_logic.InsufficientStockError("Widget", 1, 3), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_handles_read_only_workbooks(context, monkeypatch):
    """persist_workbook should translate permission problems."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_and_persists(monkeypatch, runtime_context):
    """main should execute the parsed command and persist on success."""

    parser = _stub_parser(command="dashboard")
    command_table = {"dashboard": cli.CommandSpec("dashboard", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    assert cli.main(["dashboard"]) == 0
    assert called["persisted"] is runtime_context
    assert called["args"].command == "dashboard"


def test_main_does_not_persist_on_bll_errors(monkeypatch, runtime_context):
    """main should surface business rule violations without saving."""

    parser = _stub_parser(command="po-update")
    command_table = {"po-update": cli.CommandSpec("po-update", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.GuardError("Cannot edit a received purchase order")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["po-update"]) == 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
