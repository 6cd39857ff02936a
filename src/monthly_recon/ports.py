"""Ports for reading import batches and persisting reconciliation aggregates.

The rule modules and the closing state machine only depend on these
protocols. :class:`monthly_recon.data_manager.WorkbookStore` and
:class:`monthly_recon.importers.WorkbookImportReader` are the workbook-backed
implementations; tests substitute ``Mock`` objects or in-memory doubles.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from .constants import ChecklistFlag, CommissionStatus
    from .records import (
        ClosingEvent,
        ClosingState,
        CommissionBreakdown,
        CommissionRecord,
        DecisionRecord,
        InvoiceRecord,
        LedgerEntry,
        MonthlyReport,
        MovementBatch,
    )


@runtime_checkable
class ImportReader(Protocol):
    """Reads normalized movement and fiscal invoice batches."""

    def read_movement_batch(self, path: Path) -> MovementBatch: ...

    def read_invoice_batch(self, path: Path, buyer_directory: Mapping[str, str]) -> Dict[str, InvoiceRecord]: ...


@runtime_checkable
class ReportStore(Protocol):
    """Persistence contract for monthly reports."""

    def load_report(self, period: str) -> MonthlyReport: ...

    def save_report(self, report: MonthlyReport) -> None: ...

    def delete_report(self, period: str) -> None: ...

    def list_report_periods(self) -> List[str]: ...


@runtime_checkable
class ClosingStore(Protocol):
    """Persistence contract for closing states and their timelines."""

    def load_closing_state(self, period: str) -> ClosingState: ...

    def save_closing_state(self, state: ClosingState) -> None: ...

    def set_checklist_flag(self, period: str, flag: ChecklistFlag, value: bool, *, updated_at: datetime) -> None: ...

    def append_timeline_event(self, period: str, event: ClosingEvent) -> None: ...

    def list_closing_states(self) -> List[ClosingState]: ...

    def delete_closing_state(self, period: str) -> None: ...


@runtime_checkable
class LedgerStore(Protocol):
    """Persistence contract for the derived ledger."""

    def lock_ledger_period(self, period: str) -> int: ...

    def unlock_ledger_period(self, period: str) -> int: ...

    def ingest_ledger_events(self, entries: Sequence[LedgerEntry]) -> None: ...

    def clear_ledger_period(self, period: str) -> int: ...

    def load_ledger(self, period: Optional[str] = None) -> List[LedgerEntry]: ...


@runtime_checkable
class CommissionStore(Protocol):
    """Persistence contract for computed commission lines."""

    def save_commissions(
        self,
        period: str,
        breakdown: CommissionBreakdown,
        *,
        status: CommissionStatus,
        created_at: datetime,
    ) -> List[CommissionRecord]: ...

    def load_commissions(self, period: str) -> List[CommissionRecord]: ...

    def delete_commissions(self, period: str) -> int: ...


@runtime_checkable
class DecisionStore(Protocol):
    """Append-only audit trail of divergence decisions."""

    def save_decisions(self, records: Sequence[DecisionRecord]) -> None: ...

    def load_decisions(self, period: str) -> List[DecisionRecord]: ...

    def delete_decisions(self, period: str) -> int: ...


@runtime_checkable
class BuyerDirectory(Protocol):
    """Lookup of buyer names by fiscal document number."""

    def load_buyer_directory(self) -> Dict[str, str]: ...


@runtime_checkable
class PeriodStore(ReportStore, ClosingStore, LedgerStore, Protocol):
    """Collaborators needed to drive the closing of a period."""


@runtime_checkable
class ReconciliationStore(PeriodStore, CommissionStore, DecisionStore, BuyerDirectory, Protocol):
    """Everything the orchestration layer needs from a single backing store."""


__all__ = [
    "ImportReader",
    "ReportStore",
    "ClosingStore",
    "LedgerStore",
    "CommissionStore",
    "DecisionStore",
    "BuyerDirectory",
    "PeriodStore",
    "ReconciliationStore",
]
