"""Command-line entry points for the monthly reconciliation toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and rendering results as plain text. Keeping the CLI thin ensures the
same parser configuration can be reused by tests, scripts, or any alternative
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import ClosingEventType
from .exceptions import IntegrityError, PersistenceError, ReconciliationError


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
        prog="monthly-recon",
        description="Reconcile monthly sales and manage the period closing.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
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
    """Declare commands that change the store."""
    specs = {
        "import": register_import_command(subparsers),
        "resolve": register_resolve_command(subparsers),
        "commissions": register_commissions_command(subparsers),
        "validate": register_period_command("validate", "Record the management validation.", run_validate),
        "close": register_period_command("close", "Close the period and lock its ledger.", run_close),
        "reopen": register_period_command("reopen", "Reopen a closed period.", run_reopen),
        "timeline": register_timeline_command(subparsers),
        "reset": register_reset_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands such as summaries and checklists."""
    specs = {
        "summary": register_period_command("summary", "Show the period totals.", run_summary),
        "checklist": register_period_command("checklist", "Run the pre-close checklist.", run_checklist),
        "simulate": register_period_command("simulate", "Preview the closing snapshot.", run_simulate),
        "ledger": register_ledger_command(subparsers),
        "closed": register_closed_command(subparsers),
        "decisions": register_period_command("decisions", "List the recorded divergence decisions.", run_decisions),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_period_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a command whose only argument is ``--period``."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", required=True, help="Period identifier (YYYY-MM).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Import a movement and/or invoice workbook into its period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--movement", type=Path, default=None, help="Normalized movement workbook.")
        parser.add_argument("--invoices", type=Path, default=None, help="Normalized invoice workbook.")
        parser.add_argument("--period", default=None, help="Override the period derived from the files.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import)


def register_resolve_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``resolve``."""
    name = "resolve"
    help_text = "Resolve pending divergences in queue order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", required=True)
        parser.add_argument(
            "--decision",
            dest="decisions",
            action="append",
            default=[],
            help="Decision for the next divergence: a seller code, 1, 2, 3, 4, DATE_MOV or DATE_XML. Repeatable.",
        )
        parser.add_argument("--note", default="", help="Note stored with every recorded decision.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_resolve)


def register_commissions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``commissions``."""
    name = "commissions"
    help_text = "Recalculate and store the commission forecast."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_commissions)


def register_timeline_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``timeline``."""
    name = "timeline"
    help_text = "Show the period timeline, optionally recording a manual event first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", required=True)
        parser.add_argument(
            "--event-type",
            choices=[member.value for member in ClosingEventType],
            default=None,
        )
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_timeline)


def register_reset_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reset``."""
    name = "reset"
    help_text = "Erase the report, ledger, commissions, decisions and closing state of a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", required=True)
        parser.add_argument("--yes", action="store_true", help="Confirm the irreversible reset.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reset)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "List ledger entries, optionally for a single period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger)


def register_closed_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``closed``."""
    name = "closed"
    help_text = "List closed periods, most recent first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_closed)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


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


def format_money(value: Decimal) -> str:
    return f"{value:,.2f}"


def emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def translate_import(args: argparse.Namespace) -> core_logic.ImportCommand:
    """Translate CLI args into an import command object."""
    return core_logic.ImportCommand(
        movement_path=args.movement,
        invoice_path=args.invoices,
        period=args.period,
    )


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the import workflow via the BLL."""
    result = core_logic.import_files(context, translate_import(args))
    report = result.report
    emit([f"Period {report.period}: {len(report.invoices)} invoices, {report.pending_count} pending divergences"])
    emit(
        f"  [{invoice.severity.value}] {invoice.invoice_key}: {invoice.divergence_reason}"
        for invoice in report.pending_divergences
    )
    return 0


def run_resolve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Apply the supplied decisions; succeed only when the queue is exhausted."""
    result = core_logic.apply_resolutions(context, args.period, args.decisions, note=args.note)
    if not result.workflow.completed:
        current = result.workflow.current
        emit([
            f"{result.workflow.remaining} divergences still pending; nothing saved.",
            f"Next: {current.invoice_key} ({current.divergence_reason})",
        ])
        return 2
    if result.outcome is not None:
        emit([f"Resolved {result.outcome.resolved_count} divergences ({result.outcome.dropped_count} ignored)."])
    else:
        emit(["No pending divergences."])
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period summary workflow."""
    summary = core_logic.summarize_period(context, args.period)
    emit([
        f"Sales with invoice:    {format_money(summary.total_with_invoice)}",
        f"Sales without invoice: {format_money(summary.total_without_invoice)}",
        f"Total sales:           {format_money(summary.total_sales)}",
        f"Returns:               {format_money(summary.total_returns)}",
        f"Expenses:              {format_money(summary.total_expenses)}",
        f"Expected balance:      {format_money(summary.expected_balance)}",
    ])
    emit(f"  {method}: {format_money(amount)}" for method, amount in summary.totals_by_method.items())
    return 0


def run_commissions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the commission recalculation workflow."""
    records = core_logic.recalculate_commissions(context, args.period)
    emit(
        f"{record.line.seller}: base {format_money(record.line.base)} x {record.line.rate}% = "
        f"{format_money(record.line.commission)}"
        for record in records
    )
    return 0


def run_checklist(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the pre-close checklist."""
    items = core_logic.run_checklist(context, args.period)
    emit(f"[{item.status.value}] {item.label}: {item.message}" for item in items)
    return 0


def run_simulate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the close simulation."""
    snapshot = core_logic.simulate_close(context, args.period)
    emit([
        f"Imported days: {snapshot.imported_days}",
        f"Gross sales:   {format_money(snapshot.gross_sales)}",
        f"Returns:       {format_money(snapshot.returns)}",
        f"Expenses:      {format_money(snapshot.expenses)}",
        f"Net:           {format_money(snapshot.net)}",
        f"Commissions:   {format_money(snapshot.commission_total)}",
    ])
    emit(f"ALERT: {alert}" for alert in snapshot.blocking_alerts)
    return 0


def run_validate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.validate_period(context, args.period)
    return 0


def run_close(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the close workflow via the BLL."""
    state = core_logic.close_period(context, args.period)
    emit([f"Period {state.period} closed by {state.closed_by}."])
    return 0


def run_reopen(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reopen workflow via the BLL."""
    state = core_logic.reopen_period(context, args.period)
    emit([f"Period {state.period} reopened."])
    return 0


def run_timeline(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record an optional manual event, then print the timeline."""
    if args.event_type is not None:
        if not args.description:
            raise ValueError("--description is required with --event-type")
        core_logic.record_timeline_event(context, args.period, ClosingEventType(args.event_type), args.description)
    events = core_logic.get_timeline(context, args.period)
    emit(
        f"{event.timestamp.isoformat()} {event.event_type.value:<12} {event.user}: {event.description}"
        for event in events
    )
    return 0


def run_ledger(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger listing."""
    entries = core_logic.list_ledger(context, args.period)
    emit(
        f"{entry.entry_date.isoformat()} {entry.event_type.value:<10} {entry.origin_id:<12} "
        f"{entry.seller:<10} {format_money(entry.amount):>14}{' [locked]' if entry.is_locked else ''}"
        for entry in entries
    )
    return 0


def run_closed(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the closed-period listing."""
    states = core_logic.list_closed_periods(context)
    emit(f"{state.period} closed by {state.closed_by} at {state.closed_at.isoformat()}" for state in states)
    return 0


def run_decisions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the decision trail listing."""
    records = core_logic.list_decisions(context, args.period)
    emit(
        f"{record.decided_at.isoformat()} {record.invoice_key:<12} {record.action.value:<18} "
        f"{record.final_seller or '(ignored)':<12} {record.user}{': ' + record.note if record.note else ''}"
        for record in records
    )
    return 0


def run_reset(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period reset after explicit confirmation."""
    if not args.yes:
        log.warning("Reset of %s not confirmed; pass --yes to proceed", args.period)
        return 2
    core_logic.reset_period(context, args.period)
    emit([f"Period {args.period} reset."])
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (IntegrityError, PersistenceError)):
        log.error("%s", error)
        return 1
    if isinstance(error, ReconciliationError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
