"""Orchestration layer for the monthly reconciliation engine.

This module wires the pure reconciliation, resolution, commission and closing
rules to the workbook store. It consumes the Data Access Layer (DAL) for all
I/O while ensuring every mutation passes through the domain rules and the
closed-period guard.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .closing import ClosingStateMachine
from .commissions import compute_commissions
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ChecklistFlag,
    ClosingEventType,
    CommissionStatus,
)
from .exceptions import NotFoundError, PeriodClosedError, ValidationError
from .importers import WorkbookImportReader
from .ledger import build_ledger_entries
from .ports import ImportReader
from .reconciliation import (
    build_report,
    calculate_summary,
    classify_and_detect,
    derive_period,
    merge_report,
    totals_by_method,
)
from .records import (
    ChecklistItem,
    ClosingEvent,
    ClosingState,
    CommissionRecord,
    ConsolidatedSummary,
    DecisionRecord,
    InvoiceRecord,
    LedgerEntry,
    MonthlyReport,
    MovementBatch,
    PeriodSummary,
    validate_period_id,
)
from .resolution import (
    DivergenceResolutionWorkflow,
    ResolutionOutcome,
    parse_decision,
    record_decision,
    resolve_divergence,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, store and import reader used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: data_manager.WorkbookStore
    reader: ImportReader = field(default_factory=WorkbookImportReader)


@dataclass(frozen=True)
class ImportCommand:
    """User intent for importing a movement and/or invoice workbook."""

    movement_path: Optional[Path] = None
    invoice_path: Optional[Path] = None
    period: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ImportResult:
    report: MonthlyReport
    workflow: DivergenceResolutionWorkflow
    merged: bool


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of applying a batch of operator decisions.

    ``report`` and ``decisions`` are only set when the queue was exhausted
    and the resolved report was saved.
    """

    workflow: DivergenceResolutionWorkflow
    outcome: Optional[ResolutionOutcome] = None
    report: Optional[MonthlyReport] = None
    decisions: Tuple[DecisionRecord, ...] = ()


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

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
    return RuntimeContext(settings=settings, workbook=workbook, store=data_manager.WorkbookStore(workbook))


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


def build_state_machine(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> ClosingStateMachine:
    """Create a :class:`ClosingStateMachine` configured from ``context``.

    A fixed ``timestamp`` pins the machine clock, which keeps every event of
    a single command on the same instant.
    """

    settings = context.settings
    clock = (lambda: timestamp) if timestamp is not None else None
    return ClosingStateMachine(
        context.store,
        operator=settings.operator,
        clock=clock,
        rates=settings.commission_rates,
        default_rate=settings.default_rate,
        seller_labels=settings.seller_labels,
    )


def ensure_period_open(context: RuntimeContext, period: str) -> ClosingState:
    """Return the closing state of ``period`` or refuse edits on a closed one.

    Raises:
        PeriodClosedError: If the period is CLOSED.
    """

    state = build_state_machine(context).get_state(period)
    if state.is_closed:
        log.error("Edit refused: period %s is closed", period)
        raise PeriodClosedError(period)
    return state


def load_report(context: RuntimeContext, period: str) -> MonthlyReport:
    validate_period_id(period)
    return context.store.load_report(period)


def save_report(context: RuntimeContext, report: MonthlyReport, *, timestamp: Optional[datetime] = None) -> None:
    """Persist ``report`` and re-derive its ledger.

    The period ledger is cleared before the report is written, so a locked
    ledger aborts the save before any report row changes.

    Raises:
        LedgerLockedError: If the period ledger is locked.
    """

    when = _resolve_timestamp(timestamp)
    store = context.store
    cleared = store.clear_ledger_period(report.period)
    store.save_report(report)
    entries = build_ledger_entries(report, created_at=when)
    store.ingest_ledger_events(entries)
    log.info(
        "Saved report %s (%d invoices); ledger re-derived (%d removed, %d added)",
        report.period,
        len(report.invoices),
        cleared,
        len(entries),
    )


def _import_period(
    command: ImportCommand,
    batch: MovementBatch,
    xml_by_key: Dict[str, InvoiceRecord],
) -> str:
    period = command.period or derive_period(xml_by_key, batch.invoices_by_key, batch.no_invoice_sales)
    if period is None:
        log.error("Import contains no dated records and no period was given")
        raise ValidationError("Unable to determine the period of an empty import")
    return validate_period_id(period)


def import_files(context: RuntimeContext, command: ImportCommand) -> ImportResult:
    """Import, classify and save a movement and/or invoice batch.

    A period without a saved report gets a fresh report; otherwise the batch
    is merged into the saved one. The closing checklist import flags are set
    for whichever files were supplied, and the timeline records the import
    and any outstanding divergences.

    Args:
        context (RuntimeContext): Active runtime context.
        command (ImportCommand): Files to import and an optional period
            override.

    Returns:
        ImportResult: Saved report plus a resolution workflow over its pending
            divergences.

    Raises:
        ValidationError: If no file is given, the period cannot be derived or
            is malformed.
        PeriodClosedError: If the target period is closed.
        FileNotFoundError: If an import workbook is missing.
    """

    if command.movement_path is None and command.invoice_path is None:
        raise ValidationError("At least one of the movement or invoice workbooks is required")

    when = _resolve_timestamp(command.timestamp)
    settings = context.settings
    store = context.store

    reader = context.reader
    batch = reader.read_movement_batch(command.movement_path) if command.movement_path is not None else MovementBatch()
    xml_by_key: Dict[str, InvoiceRecord] = {}
    if command.invoice_path is not None:
        xml_by_key = reader.read_invoice_batch(command.invoice_path, store.load_buyer_directory())

    period = _import_period(command, batch, xml_by_key)
    ensure_period_open(context, period)

    try:
        existing: Optional[MonthlyReport] = store.load_report(period)
    except NotFoundError:
        existing = None

    known_keys = [invoice.invoice_key for invoice in existing.invoices] if existing is not None else []
    result = classify_and_detect(
        batch.invoices_by_key,
        xml_by_key,
        known_keys=known_keys,
        missing_xml_policy=settings.missing_xml_policy,
        date_tolerance_days=settings.date_tolerance_days,
        seller_labels=settings.seller_labels,
    )
    fresh = build_report(
        period,
        result.invoices,
        no_invoice_sales=batch.no_invoice_sales,
        expenses=batch.expenses,
        now=when,
    )
    report = merge_report(existing, fresh, now=when) if existing is not None else fresh
    save_report(context, report, timestamp=when)

    machine = build_state_machine(context, timestamp=when)
    if command.movement_path is not None:
        machine.set_checklist_flag(period, ChecklistFlag.MOVEMENT_IMPORTED, True)
    if command.invoice_path is not None:
        machine.set_checklist_flag(period, ChecklistFlag.INVOICES_IMPORTED, True)
    machine.set_checklist_flag(period, ChecklistFlag.RECONCILED, True)
    pending = report.pending_count
    machine.set_checklist_flag(period, ChecklistFlag.DIVERGENCES_RESOLVED, pending == 0)

    machine.record_event(
        period,
        ClosingEventType.IMPORT,
        f"Imported {len(result.invoices)} invoices, {len(batch.no_invoice_sales)} sales without invoice "
        f"and {len(batch.expenses)} expenses ({'merged' if existing is not None else 'new report'})",
    )
    if pending:
        machine.record_event(period, ClosingEventType.DIVERGENCE, f"{pending} divergences awaiting resolution")

    log.info("Imported batch into %s: %d pending divergences", period, pending)
    return ImportResult(
        report=report,
        workflow=DivergenceResolutionWorkflow.start(report.invoices),
        merged=existing is not None,
    )


def start_resolution(context: RuntimeContext, period: str) -> DivergenceResolutionWorkflow:
    """Open a resolution workflow over the pending divergences of ``period``."""

    return DivergenceResolutionWorkflow.start(load_report(context, period).invoices)


def apply_resolutions(
    context: RuntimeContext,
    period: str,
    decisions: Sequence[str],
    *,
    note: str = "",
    timestamp: Optional[datetime] = None,
) -> ResolutionResult:
    """Apply operator decisions, in queue order, to the pending divergences.

    The report is saved only when the decisions exhaust the queue; a partial
    run leaves the store untouched so the operator can start over. A complete
    run also appends one audit row per decision to the decision trail.

    Args:
        context (RuntimeContext): Active runtime context.
        period (str): Period whose divergences are being resolved.
        decisions (Sequence[str]): Decision codes in queue order.
        note (str): Free-text note stored on every decision row.
        timestamp (datetime | None): Fixed time for the saved rows.

    Raises:
        PeriodClosedError: If the period is closed.
        NotFoundError: If the period has no report.
        IntegrityError: If a decision code is not recognized.
        ValidationError: If more decisions than pending divergences are given.
    """

    ensure_period_open(context, period)
    report = load_report(context, period)
    labels = context.settings.seller_labels
    workflow = DivergenceResolutionWorkflow.start(report.invoices)

    outcome: Optional[ResolutionOutcome] = None
    applied = []
    for code in decisions:
        decision = parse_decision(code, seller_labels=labels)
        before = workflow.current
        step = resolve_divergence(workflow, decision, seller_labels=labels)
        index = workflow.queue[workflow.current_index].invoice_index
        applied.append((before, step.workflow.invoices[index], decision))
        workflow = step.workflow
        outcome = step.outcome

    if not workflow.completed:
        log.warning(
            "%d divergences for %s still awaiting a decision; nothing was saved",
            workflow.remaining,
            period,
        )
        return ResolutionResult(workflow=workflow)

    if outcome is None:
        log.info("No pending divergences for %s", period)
        return ResolutionResult(workflow=workflow, report=report)

    when = _resolve_timestamp(timestamp)
    resolved = replace(
        report,
        invoices=outcome.invoices,
        totals_by_method=totals_by_method(outcome.invoices, report.no_invoice_sales),
        resolved_divergences=report.resolved_divergences + outcome.resolved_count,
        last_updated_at=when,
    )
    save_report(context, resolved, timestamp=when)
    trail = tuple(
        record_decision(period, before, after, decision, user=context.settings.operator, decided_at=when, note=note)
        for before, after, decision in applied
    )
    context.store.save_decisions(trail)

    machine = build_state_machine(context, timestamp=when)
    machine.set_checklist_flag(period, ChecklistFlag.DIVERGENCES_RESOLVED, True)
    machine.record_event(
        period,
        ClosingEventType.DIVERGENCE,
        f"{outcome.resolved_count} divergences resolved ({outcome.dropped_count} ignored)",
    )
    return ResolutionResult(workflow=workflow, outcome=outcome, report=resolved, decisions=trail)


def list_decisions(context: RuntimeContext, period: str) -> List[DecisionRecord]:
    """Return the decision trail of ``period`` in the order it was recorded."""

    return context.store.load_decisions(validate_period_id(period))


def summarize_period(context: RuntimeContext, period: str) -> PeriodSummary:
    return calculate_summary(load_report(context, period), seller_labels=context.settings.seller_labels)


def recalculate_commissions(
    context: RuntimeContext,
    period: str,
    *,
    timestamp: Optional[datetime] = None,
) -> List[CommissionRecord]:
    """Recompute and persist the commission forecast for ``period``.

    Raises:
        PeriodClosedError: If the period is closed.
        NotFoundError: If the period has no report.
    """

    ensure_period_open(context, period)
    settings = context.settings
    report = load_report(context, period)
    when = _resolve_timestamp(timestamp)
    breakdown = compute_commissions(
        report,
        rates=settings.commission_rates,
        default_rate=settings.default_rate,
        seller_labels=settings.seller_labels,
    )
    records = context.store.save_commissions(
        period,
        breakdown,
        status=CommissionStatus.FORECAST,
        created_at=when,
    )
    build_state_machine(context, timestamp=when).set_checklist_flag(period, ChecklistFlag.COMMISSION_COMPUTED, True)
    log.info("Recalculated commissions for %s: total %s", period, breakdown.total_commission)
    return records


def validate_period(context: RuntimeContext, period: str, *, timestamp: Optional[datetime] = None) -> ClosingState:
    """Record the management validation milestone for ``period``."""

    ensure_period_open(context, period)
    return build_state_machine(context, timestamp=timestamp).set_checklist_flag(period, ChecklistFlag.VALIDATED, True)


def simulate_close(context: RuntimeContext, period: str) -> ConsolidatedSummary:
    return build_state_machine(context).simulate_close(period)


def run_checklist(context: RuntimeContext, period: str) -> List[ChecklistItem]:
    return build_state_machine(context).run_pre_close_checklist(period)


def close_period(context: RuntimeContext, period: str, *, timestamp: Optional[datetime] = None) -> ClosingState:
    return build_state_machine(context, timestamp=timestamp).close(period)


def reopen_period(context: RuntimeContext, period: str, *, timestamp: Optional[datetime] = None) -> ClosingState:
    return build_state_machine(context, timestamp=timestamp).reopen(period)


def list_closed_periods(context: RuntimeContext) -> List[ClosingState]:
    return build_state_machine(context).list_closed_periods()


def get_timeline(context: RuntimeContext, period: str) -> List[ClosingEvent]:
    return list(build_state_machine(context).get_state(period).timeline)


def record_timeline_event(
    context: RuntimeContext,
    period: str,
    event_type: ClosingEventType,
    description: str,
    *,
    timestamp: Optional[datetime] = None,
) -> ClosingEvent:
    return build_state_machine(context, timestamp=timestamp).record_event(period, event_type, description)


def list_ledger(context: RuntimeContext, period: Optional[str] = None) -> List[LedgerEntry]:
    if period is not None:
        validate_period_id(period)
    return context.store.load_ledger(period)


def reset_period(context: RuntimeContext, period: str, *, timestamp: Optional[datetime] = None) -> ClosingState:
    """Erase every trace of ``period`` and start a fresh closing state.

    The report, ledger (locked or not), commission lines, decision trail and
    closing state are deleted; the closing state is then recreated with a new
    timeline.
    """

    validate_period_id(period)
    store = context.store
    store.unlock_ledger_period(period)
    cleared = store.clear_ledger_period(period)
    store.delete_report(period)
    store.delete_commissions(period)
    store.delete_decisions(period)
    store.delete_closing_state(period)
    log.warning("Reset period %s (%d ledger entries removed)", period, cleared)
    return build_state_machine(context, timestamp=timestamp).get_state(period)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Args:
        context (RuntimeContext): Runtime context whose workbook should be
            saved.

    Raises:
        PersistenceError: If the workbook cannot be written.
    """
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return replace(context, workbook=workbook, store=data_manager.WorkbookStore(workbook))


__all__ = [
    "RuntimeContext",
    "ImportCommand",
    "ImportResult",
    "ResolutionResult",
    "load_runtime_context",
    "ensure_schema_version",
    "build_state_machine",
    "ensure_period_open",
    "load_report",
    "save_report",
    "import_files",
    "start_resolution",
    "apply_resolutions",
    "list_decisions",
    "summarize_period",
    "recalculate_commissions",
    "validate_period",
    "simulate_close",
    "run_checklist",
    "close_period",
    "reopen_period",
    "list_closed_periods",
    "get_timeline",
    "record_timeline_event",
    "list_ledger",
    "reset_period",
    "persist_context",
    "refresh_context",
]
