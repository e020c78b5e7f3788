"""Command-line entry points for the trade ledger.

All orchestration in this module is limited to argparse wiring, calling the
report functions of :mod:`trade_ledger.core_logic` and printing their results
as plain text tables.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import VoucherType
from .errors import BusinessRuleViolation


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="trade-ledger",
        description="Stock valuation and party ledger reports for the trade ledger workbook.",
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
    read_specs = register_read_commands(subparsers)
    write_specs = register_write_commands(subparsers)
    return build_command_table([*read_specs.values(), *write_specs.values()])


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only report commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "warehouses": register_warehouses_command(subparsers),
        "alerts": register_alerts_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "outstanding": register_outstanding_command(subparsers),
        "bills": register_bills_command(subparsers),
        "aging": register_aging_command(subparsers),
        "profit": register_profit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the archive workflow commands, the only ones that save the workbook."""
    specs = {
        "archive": register_archive_command(subparsers),
        "restore": register_restore_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display classified stock per lot and location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", type=_iso_date, default=None)
        parser.add_argument("--location", dest="location_id", default=None)
        parser.add_argument("--lot", dest="lot_query", default=None, help="Case-insensitive lot number filter.")
        parser.add_argument("--from", dest="first_stocked_from", type=_iso_date, default=None)
        parser.add_argument("--to", dest="first_stocked_to", type=_iso_date, default=None)
        parser.add_argument("--include-closed", action="store_true")
        parser.add_argument("--include-archived", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_warehouses_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``warehouses``."""
    name = "warehouses"
    help_text = "Display stock totals per warehouse."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_warehouses_report)


def register_alerts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``alerts``."""
    name = "alerts"
    help_text = "List low and dead stock alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_alerts_report)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Display a party statement with running balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--from", dest="start", type=_iso_date, default=None)
        parser.add_argument("--to", dest="end", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report)


def register_outstanding_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``outstanding``."""
    name = "outstanding"
    help_text = "Display receivable and payable balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_outstanding_report)


def register_bills_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bills``."""
    name = "bills"
    help_text = "Display open sale and purchase bills."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", default=None)
        parser.add_argument(
            "--kind",
            choices=[VoucherType.SALE.value, VoucherType.PURCHASE.value],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bills_report)


def register_aging_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``aging``."""
    name = "aging"
    help_text = "Bucket open sale bills by days overdue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", type=_iso_date, default=None)
        parser.add_argument("--party-id", default=None)
        parser.add_argument("--detail", action="store_true", help="List the bills in each bucket.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_aging_report)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display monthly revenue, cost, and profit summaries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="start", type=_iso_date, default=None)
        parser.add_argument("--to", dest="end", type=_iso_date, default=None)
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def register_archive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``archive``."""
    name = "archive"
    help_text = "Hide a closed lot from stock reports."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot", dest="lot_number", required=True)
        parser.add_argument("--location", dest="location_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Return an archived lot to stock reports."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot", dest="lot_number", required=True)
        parser.add_argument("--location", dest="location_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


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


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def format_amount(value: Decimal) -> str:
    return f"{value:,.2f}"


def format_balance(value: Decimal) -> str:
    """Render a signed balance as ``1,234.00 Dr`` or ``1,234.00 Cr``."""
    side = "Cr" if value < 0 else "Dr"
    return f"{format_amount(abs(value))} {side}"


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the classified stock snapshot."""
    snapshot = core_logic.stock_snapshot(
        context,
        as_of=args.as_of,
        location_id=args.location_id,
        lot_query=args.lot_query,
        first_stocked_from=args.first_stocked_from,
        first_stocked_to=args.first_stocked_to,
        include_closed=args.include_closed,
        include_archived=args.include_archived,
    )
    print(f"{'Lot':<16}{'Location':<12}{'Bags':>10}{'Weight':>14}{'Rate':>10}{'Value':>16}{'Days':>6}  Status")
    for entry in snapshot.entries:
        position = entry.position
        print(
            f"{position.lot_number:<16}{position.location_id:<12}{position.bags:>10}"
            f"{format_amount(position.weight):>14}{format_amount(position.effective_rate):>10}"
            f"{format_amount(entry.value):>16}{position.days_in_stock:>6}  {entry.status.value}"
        )
    print(
        f"Total: {snapshot.total_bags} bags, {format_amount(snapshot.total_weight)} kg, "
        f"value {format_amount(snapshot.total_value)}"
    )
    return 0


def run_warehouses_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock totals per warehouse."""
    for summary in core_logic.warehouse_totals(context, as_of=args.as_of):
        print(
            f"{summary.location_id:<12}{summary.lot_count:>5} lots{summary.bags:>10} bags"
            f"{format_amount(summary.weight):>14} kg{format_amount(summary.value):>16}"
        )
    return 0


def run_alerts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print low and dead stock alerts."""
    alerts = core_logic.stock_alerts(context, as_of=args.as_of)
    for alert in alerts:
        print(f"[{alert.status.value}] {alert.message}")
    if not alerts:
        print("No stock alerts.")
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a party statement."""
    statement = core_logic.party_ledger(context, args.party_id, start=args.start, end=args.end)
    print(f"{statement.party_name} ({statement.party_id}) {statement.start} to {statement.end}")
    print(f"Opening balance: {format_balance(statement.opening_balance)}")
    for entry in statement.entries:
        effect = entry.effect
        debit = format_amount(effect.debit) if effect.debit else ""
        credit = format_amount(effect.credit) if effect.credit else ""
        if effect.informational:
            debit = f"({format_amount(effect.memo_amount)})"
        print(
            f"{effect.date.isoformat()}  {effect.description:<48}{debit:>16}{credit:>16}"
            f"{format_balance(entry.running_balance):>20}"
        )
    print(f"Totals: debit {format_amount(statement.total_debit)}, credit {format_amount(statement.total_credit)}")
    print(f"Closing balance: {format_balance(statement.closing_balance)}")
    return 0


def run_outstanding_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print receivable and payable party balances."""
    report = core_logic.outstanding_balances(context, as_of=args.as_of)
    for title, items in (("Receivable", report.receivables), ("Payable", report.payables)):
        print(f"{title}:")
        for item in items:
            idle = "" if item.days_since_last_transaction is None else f"  {item.days_since_last_transaction}d idle"
            print(f"  {item.party_id:<12}{item.name:<28}{format_balance(item.balance):>20}{idle}")
    print(f"Total receivable: {format_amount(report.total_receivable)}")
    print(f"Total payable: {format_amount(report.total_payable)}")
    return 0


def run_bills_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print open bills with their due amounts."""
    kind = VoucherType(args.kind) if args.kind else None
    for bill in core_logic.open_bills(context, party_id=args.party_id, voucher_type=kind):
        print(
            f"{bill.date.isoformat()}  {bill.voucher_type.value:<9}{bill.reference:<14}{bill.party_id:<12}"
            f"{format_amount(bill.total):>14}{format_amount(bill.allocated):>14}{format_amount(bill.due):>14}"
        )
    return 0


def run_aging_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print aging bucket totals and, optionally, their bills."""
    report = core_logic.aging_report(context, as_of=args.as_of, party_id=args.party_id)
    for summary in report.buckets:
        print(f"{summary.bucket.value:<8}{summary.count:>5} bills{format_amount(summary.total):>16}")
        if args.detail:
            for item in summary.bills:
                print(
                    f"    {item.bill.reference:<14}{item.bill.party_id:<12}{item.days_overdue:>5}d"
                    f"{format_amount(item.due):>14}"
                )
    print(f"Total outstanding: {format_amount(report.total)}")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print monthly profit totals and headline figures."""
    report = core_logic.profit_report(context, start=args.start, end=args.end, customer_id=args.customer_id)
    for month in report.monthly():
        print(
            f"{month.month}{month.sale_count:>5} sales{format_amount(month.revenue):>16}"
            f"{format_amount(month.cost_of_goods_sold):>16}{format_amount(month.gross_profit):>14}"
            f"{format_amount(month.net_profit):>14}"
        )
    print(f"Net profit: {format_amount(report.total_net_profit)}")
    print(f"Average per sale: {format_amount(report.average_profit_per_sale)}")
    best = report.best_sale()
    if best is not None:
        print(f"Best sale: {best[0]} ({format_amount(best[1])})")
    return 0


def run_archive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Archive a closed lot-location position."""
    core_logic.archive_position(context, args.lot_number, args.location_id)
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Restore an archived lot-location position."""
    core_logic.restore_position(context, args.lot_number, args.location_id)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
