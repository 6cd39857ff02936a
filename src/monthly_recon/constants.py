"""Enumerations shared across the monthly reconciliation modules.

Centralises domain constants so that the data access layer (DAL), the
reconciliation and closing rules, and the CLI rely on a single source of
truth for identifiers that end up persisted in the workbook.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.1.0"

DEFAULT_COMMISSION_RATE = Decimal("3.0")

DEFAULT_SELLER_LABELS: Mapping[str, str] = {
    "B": "BRAGA",
    "E": "ENEIAS",
    "T": "TARCISIO",
    "C": "CARLOS",
}

DEFAULT_COMMISSION_RATES: Mapping[str, Decimal] = {
    "ENEIAS": Decimal("4.5"),
    "CARLOS": Decimal("4.5"),
    "TARCISIO": Decimal("3.0"),
    "BRAGA": Decimal("3.0"),
}

# Movement payment methods that describe a term sale rather than cash received.
TERM_PAYMENT_METHODS = frozenset({"INVOICED", "TERM", "FATURADO", "A PRAZO"})

DEFAULT_PAYMENT_METHOD = "CASH"
INVOICED_PAYMENT_METHOD = "INVOICED"


class InvoiceType(str, Enum):
    """Provisional classification assigned to every reconciled invoice."""

    PAID_SAME_DAY = "PAID_SAME_DAY"
    INVOICED = "INVOICED"
    RETURN = "RETURN"


class DivergenceStatus(str, Enum):
    OK = "OK"
    DIVERGENT = "DIVERGENT"


class DivergenceKind(str, Enum):
    """Divergence rules, listed in evaluation order."""

    SELLER_MISMATCH = "SELLER_MISMATCH"
    DATE_MISMATCH = "DATE_MISMATCH"
    MISSING_XML = "MISSING_XML"
    ORPHAN_RETURN = "ORPHAN_RETURN"


class Severity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


DIVERGENCE_SEVERITY: Mapping[DivergenceKind, Severity] = {
    DivergenceKind.SELLER_MISMATCH: Severity.WARNING,
    DivergenceKind.DATE_MISMATCH: Severity.WARNING,
    DivergenceKind.MISSING_XML: Severity.CRITICAL,
    DivergenceKind.ORPHAN_RETURN: Severity.CRITICAL,
}


class FiscalStatus(str, Enum):
    NORMAL = "NORMAL"
    CANCELLED = "CANCELLED"
    DENIED = "DENIED"


class MissingXmlPolicy(str, Enum):
    """How the orchestrator treats a paid invoice that has no fiscal document."""

    FLAG = "FLAG"
    ACCEPT = "ACCEPT"


class SellerPlaceholder(str, Enum):
    """Seller identity used when no concrete seller could be attributed."""

    UNASSIGNED = "UNASSIGNED"


class DecisionAction(str, Enum):
    """Closed set of operator decisions accepted by the resolution workflow."""

    ASSIGN_SELLER = "ASSIGN_SELLER"
    USE_MOVEMENT = "USE_MOVEMENT"
    USE_CORRECTED = "USE_CORRECTED"
    USE_XML = "USE_XML"
    USE_MOVEMENT_DATE = "USE_MOVEMENT_DATE"
    USE_XML_DATE = "USE_XML_DATE"
    IGNORE = "IGNORE"


# Short codes typed by operators at the resolution prompt.
DECISION_CODES: Mapping[str, DecisionAction] = {
    "1": DecisionAction.USE_MOVEMENT,
    "2": DecisionAction.USE_CORRECTED,
    "3": DecisionAction.USE_XML,
    "4": DecisionAction.IGNORE,
    "DATE_MOV": DecisionAction.USE_MOVEMENT_DATE,
    "DATE_XML": DecisionAction.USE_XML_DATE,
    "IGNORE": DecisionAction.IGNORE,
}


class ClosingStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"


class ChecklistFlag(str, Enum):
    """Persisted closing milestones, in the order an operator reaches them."""

    MOVEMENT_IMPORTED = "movement_imported"
    INVOICES_IMPORTED = "invoices_imported"
    RECONCILED = "reconciled"
    DIVERGENCES_RESOLVED = "divergences_resolved"
    COMMISSION_COMPUTED = "commission_computed"
    VALIDATED = "validated"


CHECKLIST_LABELS: Mapping[ChecklistFlag, str] = {
    ChecklistFlag.MOVEMENT_IMPORTED: "Daily movement imported",
    ChecklistFlag.INVOICES_IMPORTED: "Fiscal invoices imported",
    ChecklistFlag.RECONCILED: "Automatic reconciliation completed",
    ChecklistFlag.DIVERGENCES_RESOLVED: "Divergences resolved",
    ChecklistFlag.COMMISSION_COMPUTED: "Commissions computed",
    ChecklistFlag.VALIDATED: "Management validation",
}


class ClosingEventType(str, Enum):
    IMPORT = "IMPORT"
    CONCILIATION = "CONCILIATION"
    DIVERGENCE = "DIVERGENCE"
    COMMISSION = "COMMISSION"
    VALIDATION = "VALIDATION"
    CLOSE = "CLOSE"
    REOPEN = "REOPEN"
    ALERT = "ALERT"


class ChecklistStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    BLOCKED = "BLOCKED"


class LedgerEventType(str, Enum):
    SALE = "SALE"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"


class LedgerSubtype(str, Enum):
    INVOICED = "INVOICED"
    CASH = "CASH"
    REVERSAL = "REVERSAL"


class CommissionStatus(str, Enum):
    FORECAST = "FORECAST"
    PAID = "PAID"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    REPORTS = "Reports"
    INVOICES = "Invoices"
    NO_INVOICE_SALES = "NoInvoiceSales"
    EXPENSES = "Expenses"
    METHOD_TOTALS = "MethodTotals"
    CLOSING_STATES = "ClosingStates"
    TIMELINE = "Timeline"
    SUMMARIES = "Summaries"
    SUMMARY_SELLERS = "SummarySellers"
    LEDGER = "Ledger"
    COMMISSIONS = "Commissions"
    DECISIONS = "Decisions"
    BUYERS = "Buyers"


class ImportSheetName(str, Enum):
    """Sheets expected in the normalized movement and invoice workbooks."""

    MOVEMENTS = "Movements"
    NO_INVOICE_SALES = "NoInvoiceSales"
    EXPENSES = "Expenses"
    INVOICES = "Invoices"


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.REPORTS.value: [
        "Period",
        "CreatedAt",
        "LastUpdatedAt",
        "ResolvedDivergences",
    ],
    SheetName.INVOICES.value: [
        "Period",
        "InvoiceKey",
        "Type",
        "Amount",
        "EffectiveDate",
        "EmissionDate",
        "PaymentDate",
        "MovementSeller",
        "XmlSeller",
        "CorrectedSeller",
        "FinalSeller",
        "DivergenceStatus",
        "DivergenceKinds",
        "DivergenceReason",
        "Buyer",
        "PaymentMethod",
        "PaymentDetail",
        "Note",
        "FiscalStatus",
        "OriginalInvoiceKey",
    ],
    SheetName.NO_INVOICE_SALES.value: [
        "Period",
        "Date",
        "Seller",
        "Amount",
        "PaymentMethod",
        "PaymentDetail",
        "Description",
    ],
    SheetName.EXPENSES.value: [
        "Period",
        "Date",
        "Description",
        "Amount",
        "Category",
    ],
    SheetName.METHOD_TOTALS.value: [
        "Period",
        "PaymentMethod",
        "Amount",
    ],
    SheetName.CLOSING_STATES.value: [
        "Period",
        "Status",
        "MovementImported",
        "InvoicesImported",
        "Reconciled",
        "DivergencesResolved",
        "CommissionComputed",
        "Validated",
        "CreatedAt",
        "UpdatedAt",
        "ClosedAt",
        "ClosedBy",
    ],
    SheetName.TIMELINE.value: [
        "Period",
        "EventID",
        "Timestamp",
        "EventType",
        "User",
        "Description",
    ],
    SheetName.SUMMARIES.value: [
        "Period",
        "GeneratedAt",
        "ImportedDays",
        "GrossSales",
        "Returns",
        "Expenses",
        "Net",
        "CommissionTotal",
        "BlockingAlerts",
    ],
    SheetName.SUMMARY_SELLERS.value: [
        "Period",
        "Seller",
        "GrossSales",
        "Returns",
        "Base",
        "Rate",
        "Commission",
    ],
    SheetName.LEDGER.value: [
        "EntryID",
        "Period",
        "Date",
        "EventType",
        "Subtype",
        "OriginID",
        "Seller",
        "Amount",
        "Description",
        "CreatedAt",
        "IsLocked",
    ],
    SheetName.COMMISSIONS.value: [
        "Period",
        "Seller",
        "GrossSales",
        "Returns",
        "Base",
        "Rate",
        "Commission",
        "Status",
        "CreatedAt",
    ],
    SheetName.DECISIONS.value: [
        "Period",
        "DecisionID",
        "InvoiceKey",
        "DivergenceKinds",
        "Action",
        "SellerCode",
        "FinalSeller",
        "User",
        "Note",
        "DecidedAt",
    ],
    SheetName.BUYERS.value: [
        "Document",
        "BuyerName",
    ],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_COMMISSION_RATE",
    "DEFAULT_SELLER_LABELS",
    "DEFAULT_COMMISSION_RATES",
    "TERM_PAYMENT_METHODS",
    "DEFAULT_PAYMENT_METHOD",
    "INVOICED_PAYMENT_METHOD",
    "InvoiceType",
    "DivergenceStatus",
    "DivergenceKind",
    "Severity",
    "DIVERGENCE_SEVERITY",
    "FiscalStatus",
    "MissingXmlPolicy",
    "SellerPlaceholder",
    "DecisionAction",
    "DECISION_CODES",
    "ClosingStatus",
    "ChecklistFlag",
    "CHECKLIST_LABELS",
    "ClosingEventType",
    "ChecklistStatus",
    "LedgerEventType",
    "LedgerSubtype",
    "CommissionStatus",
    "SheetName",
    "ImportSheetName",
    "SHEET_COLUMNS",
]
