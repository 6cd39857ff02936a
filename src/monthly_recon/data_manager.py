"""Data access layer for the monthly reconciliation store.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and atomically persisting the
   Excel file.
3. Sheet operations: (de)serializing the reconciliation aggregates, exposed
   through :class:`WorkbookStore`, which implements the persistence ports
   declared in :mod:`monthly_recon.ports`.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_COMMISSION_RATE,
    DEFAULT_COMMISSION_RATES,
    DEFAULT_SELLER_LABELS,
    ChecklistFlag,
    ClosingEventType,
    ClosingStatus,
    CommissionStatus,
    DecisionAction,
    DivergenceKind,
    DivergenceStatus,
    FiscalStatus,
    InvoiceType,
    LedgerEventType,
    LedgerSubtype,
    MissingXmlPolicy,
    SheetName,
)
from .exceptions import NotFoundError, PersistenceError
from .ledger import ensure_unlocked, lock_entries, unlock_entries
from .records import (
    ClosingChecklist,
    ClosingEvent,
    ClosingState,
    CommissionBreakdown,
    CommissionLine,
    CommissionRecord,
    ConsolidatedSummary,
    DecisionRecord,
    ExpenseEntry,
    LedgerEntry,
    MonthlyReport,
    NoInvoiceSale,
    ReconciledInvoice,
)


CONFIG_FILE_NAME = "config.ini"
REPORTS_SHEET = SheetName.REPORTS.value
INVOICES_SHEET = SheetName.INVOICES.value
NO_INVOICE_SALES_SHEET = SheetName.NO_INVOICE_SALES.value
EXPENSES_SHEET = SheetName.EXPENSES.value
METHOD_TOTALS_SHEET = SheetName.METHOD_TOTALS.value
CLOSING_STATES_SHEET = SheetName.CLOSING_STATES.value
TIMELINE_SHEET = SheetName.TIMELINE.value
SUMMARIES_SHEET = SheetName.SUMMARIES.value
SUMMARY_SELLERS_SHEET = SheetName.SUMMARY_SELLERS.value
LEDGER_SHEET = SheetName.LEDGER.value
COMMISSIONS_SHEET = SheetName.COMMISSIONS.value
DECISIONS_SHEET = SheetName.DECISIONS.value
BUYERS_SHEET = SheetName.BUYERS.value

REPORT_CHILD_SHEETS = (INVOICES_SHEET, NO_INVOICE_SALES_SHEET, EXPENSES_SHEET, METHOD_TOTALS_SHEET)
CLOSING_CHILD_SHEETS = (TIMELINE_SHEET, SUMMARIES_SHEET, SUMMARY_SELLERS_SHEET)

FLAG_COLUMNS: Mapping[ChecklistFlag, str] = {
    ChecklistFlag.MOVEMENT_IMPORTED: "MovementImported",
    ChecklistFlag.INVOICES_IMPORTED: "InvoicesImported",
    ChecklistFlag.RECONCILED: "Reconciled",
    ChecklistFlag.DIVERGENCES_RESOLVED: "DivergencesResolved",
    ChecklistFlag.COMMISSION_COMPUTED: "CommissionComputed",
    ChecklistFlag.VALIDATED: "Validated",
}

_TRUE_STRINGS = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    operator: str
    default_rate: Decimal = DEFAULT_COMMISSION_RATE
    missing_xml_policy: MissingXmlPolicy = MissingXmlPolicy.FLAG
    date_tolerance_days: int = 0
    seller_labels: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_SELLER_LABELS))
    commission_rates: Mapping[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_COMMISSION_RATES))


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

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
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults] Operator`` are mandatory. The
    ``[Reconciliation]``, ``[Sellers]`` and ``[CommissionRates]`` sections are
    optional and fall back to the built-in seller table and rates. Seller codes
    and names are upper-cased so lookups stay case-insensitive.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        operator = parser.get("Defaults", "Operator")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    default_rate = Decimal(parser.get("Defaults", "DefaultRate", fallback=str(DEFAULT_COMMISSION_RATE)))
    flag_missing = parser.getboolean("Reconciliation", "MissingXmlIsDivergence", fallback=True)
    tolerance = parser.getint("Reconciliation", "DateToleranceDays", fallback=0)

    if parser.has_section("Sellers"):
        seller_labels = {code.upper(): name.strip().upper() for code, name in parser.items("Sellers")}
    else:
        seller_labels = dict(DEFAULT_SELLER_LABELS)

    if parser.has_section("CommissionRates"):
        rates = {name.upper(): Decimal(value) for name, value in parser.items("CommissionRates")}
    else:
        rates = dict(DEFAULT_COMMISSION_RATES)

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        operator=operator,
        default_rate=default_rate,
        missing_xml_policy=MissingXmlPolicy.FLAG if flag_missing else MissingXmlPolicy.ACCEPT,
        date_tolerance_days=tolerance,
        seller_labels=seller_labels,
        commission_rates=rates,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``master_workbook.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at an explicitly provided destination.

    The workbook is first written next to ``destination`` and then moved over
    it with :func:`os.replace`, so a failed write leaves the previous file
    untouched. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.

    Raises:
        PersistenceError: If the workbook cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    temporary = dest.with_name(f".{dest.name}.tmp")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(temporary)
        os.replace(temporary, dest)
    except OSError as exc:
        log.error("Failed to save workbook '%s': %s", dest, exc)
        if temporary.exists():
            temporary.unlink()
        raise PersistenceError(f"Unable to save workbook '{dest}': {exc}", cause=exc) from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Return a ``{header title: 1-based column index}`` map for a sheet."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[Any, ...]]:
    """Yield the non-empty data rows of ``sheet_name`` as raw value tuples."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    rows = locate_rows(workbook, sheet_name, key_column, key_value)
    return rows[0] if rows else None


def locate_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> List[int]:
    """Return every 1-based row index whose ``key_column`` equals ``key_value``."""

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name]
    return [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]


def delete_rows_where(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Remove every row matching ``key_value`` and return how many were removed."""

    sheet = workbook[sheet_name]
    rows = locate_rows(workbook, sheet_name, key_column, key_value)
    for row_idx in reversed(rows):
        sheet.delete_rows(row_idx, 1)
    return len(rows)


def update_cells(workbook: Workbook, sheet_name: str, row_index: int, *, field_values: Mapping[str, Any]) -> None:
    """Write ``field_values`` into the named columns of one row.

    Raises:
        KeyError: If a referenced column is missing.
    """

    columns = header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for name, value in field_values.items():
        if name not in columns:
            raise KeyError(f"Unknown {sheet_name} field: {name}")
        sheet.cell(row=row_index, column=columns[name], value=value)


# ---------------------------------------------------------------------------
# Cell conversions
# ---------------------------------------------------------------------------


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Row serializers
# ---------------------------------------------------------------------------


def serialize_report(report: MonthlyReport) -> list[object]:
    return [report.period, _iso(report.created_at), _iso(report.last_updated_at), report.resolved_divergences]


def serialize_invoice(period: str, record: ReconciledInvoice) -> list[object]:
    """Convert a reconciled invoice into the ``Invoices`` column ordering."""

    return [
        period,
        record.invoice_key,
        record.invoice_type.value,
        record.amount,
        _iso(record.effective_date),
        _iso(record.emission_date),
        _iso(record.payment_date),
        record.movement_seller,
        record.xml_seller,
        record.corrected_seller,
        record.final_seller,
        record.divergence_status.value,
        ",".join(kind.value for kind in record.divergence_kinds) or None,
        record.divergence_reason,
        record.buyer,
        record.payment_method,
        record.payment_detail,
        record.note,
        record.fiscal_status.value,
        record.original_invoice_key,
    ]


def deserialize_invoice(raw_row: Sequence[object]) -> ReconciledInvoice:
    """Convert a raw ``Invoices`` row into a :class:`ReconciledInvoice`."""

    (
        _period,
        invoice_key,
        invoice_type,
        amount,
        effective_date,
        emission_date,
        payment_date,
        movement_seller,
        xml_seller,
        corrected_seller,
        final_seller,
        divergence_status,
        divergence_kinds,
        divergence_reason,
        buyer,
        payment_method,
        payment_detail,
        note,
        fiscal_status,
        original_invoice_key,
    ) = raw_row[:20]

    kinds = tuple(DivergenceKind(kind) for kind in str(divergence_kinds).split(",")) if divergence_kinds else ()
    return ReconciledInvoice(
        invoice_key=str(invoice_key),
        invoice_type=InvoiceType(invoice_type),
        amount=_to_decimal(amount),
        effective_date=_to_date(effective_date),
        emission_date=_to_date(emission_date),
        payment_date=_to_date(payment_date),
        movement_seller=_opt_str(movement_seller),
        xml_seller=_opt_str(xml_seller),
        corrected_seller=_opt_str(corrected_seller),
        final_seller=_opt_str(final_seller),
        divergence_status=DivergenceStatus(divergence_status),
        divergence_kinds=kinds,
        divergence_reason=_opt_str(divergence_reason),
        buyer=_opt_str(buyer),
        payment_method=_opt_str(payment_method),
        payment_detail=_opt_str(payment_detail),
        note=_opt_str(note),
        fiscal_status=FiscalStatus(fiscal_status or FiscalStatus.NORMAL.value),
        original_invoice_key=_opt_str(original_invoice_key),
    )


def serialize_no_invoice_sale(period: str, record: NoInvoiceSale) -> list[object]:
    return [
        period,
        _iso(record.sale_date),
        record.seller,
        record.amount,
        record.payment_method,
        record.payment_detail,
        record.description,
    ]


def deserialize_no_invoice_sale(raw_row: Sequence[object]) -> NoInvoiceSale:
    _period, sale_date, seller, amount, payment_method, payment_detail, description = raw_row[:7]
    return NoInvoiceSale(
        sale_date=_to_date(sale_date),
        seller=_opt_str(seller),
        amount=_to_decimal(amount),
        payment_method=str(payment_method) if payment_method is not None else "CASH",
        description=str(description) if description is not None else "",
        payment_detail=_opt_str(payment_detail),
    )


def serialize_expense(period: str, record: ExpenseEntry) -> list[object]:
    return [period, _iso(record.expense_date), record.description, record.amount, record.category]


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseEntry:
    _period, expense_date, description, amount, category = raw_row[:5]
    return ExpenseEntry(
        expense_date=_to_date(expense_date),
        description=str(description) if description is not None else "",
        amount=_to_decimal(amount),
        category=_opt_str(category),
    )


def serialize_closing_state(state: ClosingState) -> list[object]:
    return [
        state.period,
        state.status.value,
        *(state.checklist.get(flag) for flag in FLAG_COLUMNS),
        _iso(state.created_at),
        _iso(state.updated_at),
        _iso(state.closed_at),
        state.closed_by,
    ]


def serialize_event(period: str, event: ClosingEvent) -> list[object]:
    return [period, event.event_id, _iso(event.timestamp), event.event_type.value, event.user, event.description]


def deserialize_event(raw_row: Sequence[object]) -> ClosingEvent:
    _period, event_id, timestamp, event_type, user, description = raw_row[:6]
    return ClosingEvent(
        event_id=str(event_id),
        timestamp=_to_datetime(timestamp),
        event_type=ClosingEventType(event_type),
        user=str(user) if user is not None else "",
        description=str(description) if description is not None else "",
    )


def serialize_summary(summary: ConsolidatedSummary) -> list[object]:
    return [
        summary.period,
        _iso(summary.generated_at),
        summary.imported_days,
        summary.gross_sales,
        summary.returns,
        summary.expenses,
        summary.net,
        summary.commission_total,
        "|".join(summary.blocking_alerts) or None,
    ]


def serialize_commission_line(period: str, line: CommissionLine) -> list[object]:
    return [period, line.seller, line.gross_sales, line.returns, line.base, line.rate, line.commission]


def deserialize_commission_line(raw_row: Sequence[object]) -> CommissionLine:
    _period, seller, gross, returns, base, rate, commission = raw_row[:7]
    return CommissionLine(
        seller=str(seller),
        gross_sales=_to_decimal(gross),
        returns=_to_decimal(returns),
        base=_to_decimal(base),
        rate=_to_decimal(rate),
        commission=_to_decimal(commission),
    )


def serialize_ledger_entry(entry: LedgerEntry) -> list[object]:
    return [
        entry.entry_id,
        entry.period,
        _iso(entry.entry_date),
        entry.event_type.value,
        entry.subtype.value,
        entry.origin_id,
        entry.seller,
        entry.amount,
        entry.description,
        _iso(entry.created_at),
        entry.is_locked,
    ]


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntry:
    (
        entry_id,
        period,
        entry_date,
        event_type,
        subtype,
        origin_id,
        seller,
        amount,
        description,
        created_at,
        is_locked,
    ) = raw_row[:11]
    return LedgerEntry(
        entry_id=str(entry_id),
        period=str(period),
        entry_date=_to_date(entry_date),
        event_type=LedgerEventType(event_type),
        subtype=LedgerSubtype(subtype),
        origin_id=str(origin_id),
        seller=str(seller) if seller is not None else "",
        amount=_to_decimal(amount),
        description=str(description) if description is not None else "",
        created_at=_to_datetime(created_at),
        is_locked=_to_bool(is_locked),
    )


def serialize_commission_record(record: CommissionRecord) -> list[object]:
    return [
        *serialize_commission_line(record.period, record.line),
        record.status.value,
        _iso(record.created_at),
    ]


def deserialize_commission_record(raw_row: Sequence[object]) -> CommissionRecord:
    status, created_at = raw_row[7:9]
    return CommissionRecord(
        period=str(raw_row[0]),
        line=deserialize_commission_line(raw_row),
        status=CommissionStatus(status),
        created_at=_to_datetime(created_at),
    )


def serialize_decision(record: DecisionRecord) -> list[object]:
    return [
        record.period,
        record.decision_id,
        record.invoice_key,
        ",".join(kind.value for kind in record.divergence_kinds) or None,
        record.action.value,
        record.seller_code,
        record.final_seller,
        record.user,
        record.note or None,
        _iso(record.decided_at),
    ]


def deserialize_decision(raw_row: Sequence[object]) -> DecisionRecord:
    period, decision_id, invoice_key, kinds, action, seller_code, final_seller, user, note, decided_at = raw_row[:10]
    return DecisionRecord(
        decision_id=str(decision_id),
        period=str(period),
        invoice_key=str(invoice_key),
        divergence_kinds=tuple(DivergenceKind(kind) for kind in str(kinds).split(",")) if kinds else (),
        action=DecisionAction(action),
        decided_at=_to_datetime(decided_at),
        user=str(user) if user is not None else "",
        seller_code=_opt_str(seller_code),
        final_seller=_opt_str(final_seller),
        note=str(note) if note is not None else "",
    )


# ---------------------------------------------------------------------------
# Workbook-backed store
# ---------------------------------------------------------------------------


class WorkbookStore:
    """Persistence ports implemented over one in-memory ``openpyxl`` workbook.

    Writes mutate the workbook only; nothing reaches the disk until the caller
    commits with :func:`save_workbook` (see
    :func:`monthly_recon.core_logic.persist_context`).
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def _rows_for(self, sheet_name: str, period: str, *, column: int = 0) -> List[Tuple[Any, ...]]:
        return [raw for raw in iter_rows(self.workbook, sheet_name) if raw[column] == period]

    def _append(self, sheet_name: str, values: Sequence[object]) -> None:
        self.workbook[sheet_name].append(list(values))

    # Reports ---------------------------------------------------------------

    def load_report(self, period: str) -> MonthlyReport:
        """Rebuild the :class:`MonthlyReport` stored for ``period``.

        Raises:
            NotFoundError: If no report row exists for ``period``.
        """

        rows = self._rows_for(REPORTS_SHEET, period)
        if not rows:
            raise NotFoundError(f"No report found for period {period}")
        _period, created_at, last_updated_at, resolved = rows[0][:4]

        totals: Dict[str, Decimal] = {}
        for raw in self._rows_for(METHOD_TOTALS_SHEET, period):
            totals[str(raw[1])] = _to_decimal(raw[2])

        return MonthlyReport(
            period=period,
            invoices=tuple(deserialize_invoice(raw) for raw in self._rows_for(INVOICES_SHEET, period)),
            no_invoice_sales=tuple(
                deserialize_no_invoice_sale(raw) for raw in self._rows_for(NO_INVOICE_SALES_SHEET, period)
            ),
            expenses=tuple(deserialize_expense(raw) for raw in self._rows_for(EXPENSES_SHEET, period)),
            totals_by_method=totals,
            resolved_divergences=int(resolved or 0),
            created_at=_to_datetime(created_at),
            last_updated_at=_to_datetime(last_updated_at),
        )

    def save_report(self, report: MonthlyReport) -> None:
        """Replace every row belonging to ``report.period`` with ``report``."""

        self.delete_report(report.period)
        self._append(REPORTS_SHEET, serialize_report(report))
        for invoice in report.invoices:
            if not invoice.dropped:
                self._append(INVOICES_SHEET, serialize_invoice(report.period, invoice))
        for sale in report.no_invoice_sales:
            self._append(NO_INVOICE_SALES_SHEET, serialize_no_invoice_sale(report.period, sale))
        for expense in report.expenses:
            self._append(EXPENSES_SHEET, serialize_expense(report.period, expense))
        for method, amount in report.totals_by_method.items():
            self._append(METHOD_TOTALS_SHEET, [report.period, method, amount])
        log.debug("Buffered report %s (%d invoices)", report.period, len(report.invoices))

    def delete_report(self, period: str) -> None:
        removed = delete_rows_where(self.workbook, REPORTS_SHEET, "Period", period)
        for sheet_name in REPORT_CHILD_SHEETS:
            delete_rows_where(self.workbook, sheet_name, "Period", period)
        if removed:
            log.debug("Removed report rows for %s", period)

    def list_report_periods(self) -> List[str]:
        return sorted({str(raw[0]) for raw in iter_rows(self.workbook, REPORTS_SHEET)})

    # Closing states --------------------------------------------------------

    def load_closing_state(self, period: str) -> ClosingState:
        """Rebuild the :class:`ClosingState` stored for ``period``.

        Raises:
            NotFoundError: If no closing row exists for ``period``.
        """

        rows = self._rows_for(CLOSING_STATES_SHEET, period)
        if not rows:
            raise NotFoundError(f"No closing state found for period {period}")
        raw = rows[0]
        flags = raw[2:8]
        created_at, updated_at, closed_at, closed_by = raw[8:12]
        checklist = ClosingChecklist(
            **{flag.value: _to_bool(value) for flag, value in zip(FLAG_COLUMNS, flags)}
        )

        summary: Optional[ConsolidatedSummary] = None
        summary_rows = self._rows_for(SUMMARIES_SHEET, period)
        if summary_rows:
            (
                _period,
                generated_at,
                imported_days,
                gross,
                returns,
                expenses,
                net,
                commission_total,
                alerts,
            ) = summary_rows[0][:9]
            summary = ConsolidatedSummary(
                period=period,
                generated_at=_to_datetime(generated_at),
                imported_days=int(imported_days or 0),
                gross_sales=_to_decimal(gross),
                returns=_to_decimal(returns),
                expenses=_to_decimal(expenses),
                net=_to_decimal(net),
                commission_total=_to_decimal(commission_total),
                seller_lines=tuple(
                    deserialize_commission_line(line) for line in self._rows_for(SUMMARY_SELLERS_SHEET, period)
                ),
                blocking_alerts=tuple(str(alerts).split("|")) if alerts else (),
            )

        return ClosingState(
            period=period,
            status=ClosingStatus(raw[1]),
            checklist=checklist,
            timeline=tuple(deserialize_event(event) for event in self._rows_for(TIMELINE_SHEET, period)),
            consolidated_summary=summary,
            created_at=_to_datetime(created_at),
            updated_at=_to_datetime(updated_at),
            closed_at=_to_datetime(closed_at),
            closed_by=_opt_str(closed_by),
        )

    def save_closing_state(self, state: ClosingState) -> None:
        """Replace the rows of ``state.period`` with ``state``.

        Every row is serialized before the old rows are removed, so a state
        that cannot be serialized leaves the stored one untouched.
        """

        rows: List[Tuple[str, Sequence[object]]] = [(CLOSING_STATES_SHEET, serialize_closing_state(state))]
        rows.extend((TIMELINE_SHEET, serialize_event(state.period, event)) for event in state.timeline)
        if state.consolidated_summary is not None:
            rows.append((SUMMARIES_SHEET, serialize_summary(state.consolidated_summary)))
            rows.extend(
                (SUMMARY_SELLERS_SHEET, serialize_commission_line(state.period, line))
                for line in state.consolidated_summary.seller_lines
            )
        self.delete_closing_state(state.period)
        for sheet_name, values in rows:
            self._append(sheet_name, values)

    def _closing_row(self, period: str) -> int:
        row_index = locate_row(self.workbook, CLOSING_STATES_SHEET, "Period", period)
        if row_index is None:
            raise NotFoundError(f"No closing state found for period {period}")
        return row_index

    def set_checklist_flag(self, period: str, flag: ChecklistFlag, value: bool, *, updated_at: datetime) -> None:
        update_cells(
            self.workbook,
            CLOSING_STATES_SHEET,
            self._closing_row(period),
            field_values={FLAG_COLUMNS[flag]: bool(value), "UpdatedAt": _iso(updated_at)},
        )

    def append_timeline_event(self, period: str, event: ClosingEvent) -> None:
        row_index = self._closing_row(period)
        self._append(TIMELINE_SHEET, serialize_event(period, event))
        update_cells(self.workbook, CLOSING_STATES_SHEET, row_index, field_values={"UpdatedAt": _iso(event.timestamp)})

    def list_closing_states(self) -> List[ClosingState]:
        periods = sorted({str(raw[0]) for raw in iter_rows(self.workbook, CLOSING_STATES_SHEET)})
        return [self.load_closing_state(period) for period in periods]

    def delete_closing_state(self, period: str) -> None:
        delete_rows_where(self.workbook, CLOSING_STATES_SHEET, "Period", period)
        for sheet_name in CLOSING_CHILD_SHEETS:
            delete_rows_where(self.workbook, sheet_name, "Period", period)

    # Ledger ------------------------------------------------------------------

    def _set_ledger_lock(self, period: str, locked: bool) -> int:
        # Row indices and loaded entries are both in sheet order.
        rows = locate_rows(self.workbook, LEDGER_SHEET, "Period", period)
        toggle = lock_entries if locked else unlock_entries
        updated = toggle(self.load_ledger(period), period)
        column = header_map(self.workbook, LEDGER_SHEET)["IsLocked"]
        sheet = self.workbook[LEDGER_SHEET]
        for row_idx, entry in zip(rows, updated):
            sheet.cell(row=row_idx, column=column, value=entry.is_locked)
        return len(updated)

    def lock_ledger_period(self, period: str) -> int:
        count = self._set_ledger_lock(period, True)
        log.info("Locked %d ledger entries for %s", count, period)
        return count

    def unlock_ledger_period(self, period: str) -> int:
        count = self._set_ledger_lock(period, False)
        log.info("Unlocked %d ledger entries for %s", count, period)
        return count

    def ingest_ledger_events(self, entries: Sequence[LedgerEntry]) -> None:
        for entry in entries:
            self._append(LEDGER_SHEET, serialize_ledger_entry(entry))

    def clear_ledger_period(self, period: str) -> int:
        """Delete the ledger of ``period``.

        Raises:
            LedgerLockedError: If any entry of the period is locked.
        """

        ensure_unlocked(self.load_ledger(period), period)
        return delete_rows_where(self.workbook, LEDGER_SHEET, "Period", period)

    def load_ledger(self, period: Optional[str] = None) -> List[LedgerEntry]:
        entries = [deserialize_ledger_entry(raw) for raw in iter_rows(self.workbook, LEDGER_SHEET)]
        if period is None:
            return entries
        return [entry for entry in entries if entry.period == period]

    # Commissions -------------------------------------------------------------

    def save_commissions(
        self,
        period: str,
        breakdown: CommissionBreakdown,
        *,
        status: CommissionStatus,
        created_at: datetime,
    ) -> List[CommissionRecord]:
        delete_rows_where(self.workbook, COMMISSIONS_SHEET, "Period", period)
        records = [
            CommissionRecord(period=period, line=line, status=status, created_at=created_at)
            for line in breakdown.lines
        ]
        for record in records:
            self._append(COMMISSIONS_SHEET, serialize_commission_record(record))
        return records

    def load_commissions(self, period: str) -> List[CommissionRecord]:
        return [deserialize_commission_record(raw) for raw in self._rows_for(COMMISSIONS_SHEET, period)]

    def delete_commissions(self, period: str) -> int:
        return delete_rows_where(self.workbook, COMMISSIONS_SHEET, "Period", period)

    # Decisions ---------------------------------------------------------------

    def save_decisions(self, records: Sequence[DecisionRecord]) -> None:
        """Append decision audit rows; earlier rows are never rewritten."""

        for record in records:
            self._append(DECISIONS_SHEET, serialize_decision(record))
        if records:
            log.debug("Buffered %d decision rows", len(records))

    def load_decisions(self, period: str) -> List[DecisionRecord]:
        return [deserialize_decision(raw) for raw in self._rows_for(DECISIONS_SHEET, period)]

    def delete_decisions(self, period: str) -> int:
        return delete_rows_where(self.workbook, DECISIONS_SHEET, "Period", period)

    # Buyers ------------------------------------------------------------------

    def load_buyer_directory(self) -> Dict[str, str]:
        return {
            str(document).strip(): str(name).strip()
            for document, name, *_rest in iter_rows(self.workbook, BUYERS_SHEET)
            if document is not None and name is not None
        }


__all__ = [
    "CONFIG_FILE_NAME",
    "FLAG_COLUMNS",
    "ConfigSettings",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "refresh_workbook",
    "header_map",
    "iter_rows",
    "locate_row",
    "locate_rows",
    "delete_rows_where",
    "update_cells",
    "serialize_invoice",
    "deserialize_invoice",
    "serialize_ledger_entry",
    "deserialize_ledger_entry",
    "WorkbookStore",
]
