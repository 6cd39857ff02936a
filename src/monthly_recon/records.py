"""Normalized record types shared by every layer of the reconciliation engine.

The dataclasses in this module are the in-memory view of both the ephemeral
import records (movement and fiscal invoice rows) and the durable aggregates
persisted per period (reconciled invoices, monthly reports, closing states and
ledger entries). All of them are frozen; mutations go through
:func:`dataclasses.replace` so every rule produces a new value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from .constants import (
    DEFAULT_PAYMENT_METHOD,
    DIVERGENCE_SEVERITY,
    INVOICED_PAYMENT_METHOD,
    ChecklistFlag,
    ChecklistStatus,
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
    Severity,
)
from .exceptions import ValidationError


PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class MovementRecord:
    """One invoice's appearance in the daily cash/movement spreadsheet."""

    invoice_key: str
    payment_date: date
    seller: Optional[str]
    payment_method: str
    amount: Decimal
    payment_detail: Optional[str] = None


@dataclass(frozen=True)
class InvoiceRecord:
    """One invoice's appearance in the fiscal (XML) documents."""

    invoice_key: str
    emission_date: date
    seller: Optional[str]
    buyer: str
    amount: Decimal
    note: Optional[str] = None
    fiscal_status: FiscalStatus = FiscalStatus.NORMAL
    is_return: bool = False
    original_invoice_key: Optional[str] = None
    corrected_seller: Optional[str] = None
    buyer_document: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.fiscal_status is not FiscalStatus.NORMAL


@dataclass(frozen=True)
class ReconciledInvoice:
    """Durable unit of truth for one invoice key.

    ``emission_date`` is only set when fiscal evidence exists and
    ``payment_date`` only when the movement spreadsheet lists the key, so both
    double as presence markers for the two sources. ``divergence_kinds`` keeps
    every rule that matched, in evaluation order, even after the operator has
    resolved the record.
    """

    invoice_key: str
    invoice_type: InvoiceType
    amount: Decimal
    effective_date: date
    emission_date: Optional[date] = None
    payment_date: Optional[date] = None
    movement_seller: Optional[str] = None
    xml_seller: Optional[str] = None
    corrected_seller: Optional[str] = None
    final_seller: Optional[str] = None
    divergence_status: DivergenceStatus = DivergenceStatus.OK
    divergence_kinds: Tuple[DivergenceKind, ...] = ()
    divergence_reason: Optional[str] = None
    buyer: Optional[str] = None
    payment_method: Optional[str] = None
    payment_detail: Optional[str] = None
    note: Optional[str] = None
    fiscal_status: FiscalStatus = FiscalStatus.NORMAL
    original_invoice_key: Optional[str] = None
    dropped: bool = False

    @property
    def has_xml(self) -> bool:
        return self.emission_date is not None

    @property
    def has_movement(self) -> bool:
        return self.payment_date is not None

    @property
    def is_divergent(self) -> bool:
        return self.divergence_status is DivergenceStatus.DIVERGENT

    @property
    def is_cancelled(self) -> bool:
        return self.fiscal_status is not FiscalStatus.NORMAL

    @property
    def divergence_kind(self) -> Optional[DivergenceKind]:
        """Primary divergence kind (the first rule that matched)."""

        return self.divergence_kinds[0] if self.divergence_kinds else None

    @property
    def severity(self) -> Optional[Severity]:
        if not self.divergence_kinds:
            return None
        if any(DIVERGENCE_SEVERITY[kind] is Severity.CRITICAL for kind in self.divergence_kinds):
            return Severity.CRITICAL
        return Severity.WARNING

    @property
    def payment_method_label(self) -> str:
        """Bucket used when totalling amounts per payment method."""

        if self.invoice_type is InvoiceType.INVOICED:
            return INVOICED_PAYMENT_METHOD
        return self.payment_method or DEFAULT_PAYMENT_METHOD


@dataclass(frozen=True)
class NoInvoiceSale:
    """Over-the-counter sale with no matching fiscal document."""

    sale_date: date
    seller: Optional[str]
    amount: Decimal
    payment_method: str
    description: str
    payment_detail: Optional[str] = None


@dataclass(frozen=True)
class ExpenseEntry:
    """Manually entered cash outflow for a day."""

    expense_date: date
    description: str
    amount: Decimal
    category: Optional[str] = None

    @property
    def contribution(self) -> Decimal:
        """Signed effect on the period total; expenses always reduce it."""

        return -abs(self.amount)


@dataclass(frozen=True)
class MovementBatch:
    """Normalized content of one movement spreadsheet import."""

    invoices_by_key: Mapping[str, MovementRecord] = field(default_factory=dict)
    no_invoice_sales: Tuple[NoInvoiceSale, ...] = ()
    expenses: Tuple[ExpenseEntry, ...] = ()


@dataclass(frozen=True)
class DivergenceQueueItem:
    """Workflow cursor entry pointing at a divergent invoice."""

    invoice_index: int
    position: int


@dataclass(frozen=True)
class ClassificationResult:
    invoices: Tuple[ReconciledInvoice, ...]
    queue: Tuple[DivergenceQueueItem, ...]


@dataclass(frozen=True)
class MonthlyReport:
    """Aggregate root for one calendar period (``YYYY-MM``)."""

    period: str
    invoices: Tuple[ReconciledInvoice, ...] = ()
    no_invoice_sales: Tuple[NoInvoiceSale, ...] = ()
    expenses: Tuple[ExpenseEntry, ...] = ()
    totals_by_method: Mapping[str, Decimal] = field(default_factory=dict)
    resolved_divergences: int = 0
    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    @property
    def pending_divergences(self) -> Tuple[ReconciledInvoice, ...]:
        return tuple(invoice for invoice in self.invoices if invoice.is_divergent)

    @property
    def pending_count(self) -> int:
        return len(self.pending_divergences)


@dataclass(frozen=True)
class PeriodSummary:
    """Totals recomputed from scratch for a monthly report."""

    total_with_invoice: Decimal
    total_without_invoice: Decimal
    total_sales: Decimal
    total_expenses: Decimal
    total_returns: Decimal
    expected_balance: Decimal
    totals_by_method: Dict[str, Decimal]
    totals_by_seller: Dict[str, Decimal]


@dataclass(frozen=True)
class CommissionLine:
    """Per-seller commission figures for one period."""

    seller: str
    gross_sales: Decimal
    returns: Decimal
    base: Decimal
    rate: Decimal
    commission: Decimal


@dataclass(frozen=True)
class CommissionBreakdown:
    lines: Tuple[CommissionLine, ...]
    total_commission: Decimal


@dataclass(frozen=True)
class CommissionRecord:
    """Commission line persisted for a period with its payment status."""

    period: str
    line: CommissionLine
    status: CommissionStatus
    created_at: datetime


@dataclass(frozen=True)
class ConsolidatedSummary:
    """Snapshot produced by the close simulation and frozen on close."""

    period: str
    generated_at: datetime
    imported_days: int
    gross_sales: Decimal
    returns: Decimal
    expenses: Decimal
    net: Decimal
    commission_total: Decimal
    seller_lines: Tuple[CommissionLine, ...] = ()
    blocking_alerts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ClosingEvent:
    event_id: str
    timestamp: datetime
    event_type: ClosingEventType
    user: str
    description: str


@dataclass(frozen=True)
class DecisionRecord:
    """Audit row for one operator decision on a divergent invoice.

    ``final_seller`` is ``None`` when the decision dropped the invoice.
    """

    decision_id: str
    period: str
    invoice_key: str
    divergence_kinds: Tuple[DivergenceKind, ...]
    action: DecisionAction
    decided_at: datetime
    user: str
    seller_code: Optional[str] = None
    final_seller: Optional[str] = None
    note: str = ""


@dataclass(frozen=True)
class ClosingChecklist:
    """Persisted checklist flags for a closing period."""

    movement_imported: bool = False
    invoices_imported: bool = False
    reconciled: bool = False
    divergences_resolved: bool = False
    commission_computed: bool = False
    validated: bool = False

    def get(self, flag: ChecklistFlag) -> bool:
        return getattr(self, flag.value)

    def with_flag(self, flag: ChecklistFlag, value: bool) -> "ClosingChecklist":
        return replace(self, **{flag.value: value})


@dataclass(frozen=True)
class ClosingState:
    """Per-period closing workflow state."""

    period: str
    status: ClosingStatus = ClosingStatus.IN_PROGRESS
    checklist: ClosingChecklist = field(default_factory=ClosingChecklist)
    timeline: Tuple[ClosingEvent, ...] = ()
    consolidated_summary: Optional[ConsolidatedSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status is ClosingStatus.CLOSED


@dataclass(frozen=True)
class ChecklistItem:
    """Outcome of one pre-close check evaluated at call time."""

    item_id: str
    label: str
    status: ChecklistStatus
    message: str
    block: str


@dataclass(frozen=True)
class LedgerEntry:
    """Append-only fact derived from a reconciled invoice, sale, or expense."""

    entry_id: str
    period: str
    entry_date: date
    event_type: LedgerEventType
    subtype: LedgerSubtype
    origin_id: str
    seller: str
    amount: Decimal
    description: str
    created_at: datetime
    is_locked: bool = False


def validate_period_id(period: str) -> str:
    """Return ``period`` unchanged when it matches ``YYYY-MM``.

    Raises:
        ValidationError: If the identifier is malformed.
    """

    if not isinstance(period, str) or not PERIOD_PATTERN.match(period):
        raise ValidationError(f"Invalid period identifier '{period}' (expected YYYY-MM)")
    return period


def period_of(moment: date) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


__all__ = [
    "PERIOD_PATTERN",
    "MovementRecord",
    "InvoiceRecord",
    "ReconciledInvoice",
    "NoInvoiceSale",
    "ExpenseEntry",
    "MovementBatch",
    "DivergenceQueueItem",
    "ClassificationResult",
    "MonthlyReport",
    "PeriodSummary",
    "CommissionLine",
    "CommissionBreakdown",
    "CommissionRecord",
    "ConsolidatedSummary",
    "ClosingEvent",
    "DecisionRecord",
    "ClosingChecklist",
    "ClosingState",
    "ChecklistItem",
    "LedgerEntry",
    "validate_period_id",
    "period_of",
]
