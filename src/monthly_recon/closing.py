"""Monthly closing state machine.

A period moves between two states, ``IN_PROGRESS`` and ``CLOSED``. While in
progress the checklist flags record operator milestones and every first
completion is written to the period timeline. Closing requires a report with
no pending divergences, freezes a consolidated snapshot of the totals, and
locks the period ledger. Reopening is always allowed and undoes the lock and
the snapshot while keeping the full timeline.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, List, Mapping, Optional

from . import log
from .commissions import compute_commissions
from .constants import (
    CHECKLIST_LABELS,
    DEFAULT_COMMISSION_RATE,
    DEFAULT_COMMISSION_RATES,
    DEFAULT_SELLER_LABELS,
    ChecklistFlag,
    ChecklistStatus,
    ClosingEventType,
    ClosingStatus,
)
from .exceptions import NotFoundError, PendingDivergencesError, ValidationError
from .ports import PeriodStore
from .reconciliation import calculate_summary
from .records import (
    ChecklistItem,
    ClosingChecklist,
    ClosingEvent,
    ClosingState,
    ConsolidatedSummary,
    MonthlyReport,
    validate_period_id,
)


FLAG_EVENT_TYPES: Mapping[ChecklistFlag, ClosingEventType] = {
    ChecklistFlag.COMMISSION_COMPUTED: ClosingEventType.COMMISSION,
    ChecklistFlag.VALIDATED: ClosingEventType.VALIDATION,
}

NO_SALES_ALERT = "Report has no recorded sales."


def _utc_now() -> datetime:
    return datetime.now(UTC)


def build_snapshot(
    report: MonthlyReport,
    *,
    generated_at: datetime,
    rates: Mapping[str, Decimal] = DEFAULT_COMMISSION_RATES,
    default_rate: Decimal = DEFAULT_COMMISSION_RATE,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> ConsolidatedSummary:
    """Compute the consolidated totals that a close would freeze.

    Args:
        report (MonthlyReport): Report to summarize.
        generated_at (datetime): Timestamp recorded on the snapshot.
        rates (Mapping[str, Decimal]): Commission rate table.
        default_rate (Decimal): Fallback commission rate.
        seller_labels (Mapping[str, str]): Register code to seller name map.

    Returns:
        ConsolidatedSummary: Totals recomputed from the report lists, the
            per-seller commission lines and any blocking alerts.
    """

    summary = calculate_summary(report, seller_labels=seller_labels)
    breakdown = compute_commissions(
        report,
        rates=rates,
        default_rate=default_rate,
        seller_labels=seller_labels,
    )
    imported_days = {
        invoice.emission_date or invoice.effective_date
        for invoice in report.invoices
        if not invoice.dropped
    }
    alerts = (NO_SALES_ALERT,) if summary.total_sales == Decimal("0") else ()
    return ConsolidatedSummary(
        period=report.period,
        generated_at=generated_at,
        imported_days=len(imported_days),
        gross_sales=summary.total_sales,
        returns=summary.total_returns,
        expenses=summary.total_expenses,
        net=summary.expected_balance,
        commission_total=breakdown.total_commission,
        seller_lines=breakdown.lines,
        blocking_alerts=alerts,
    )


class ClosingStateMachine:
    """Drive the closing workflow of monthly periods against a store.

    Args:
        store (PeriodStore): Report, closing-state and ledger persistence.
        operator (str): Name recorded on timeline events and on close.
        clock (Callable[[], datetime] | None): Time source; defaults to UTC
            wall-clock time.
        rates (Mapping[str, Decimal]): Commission rate table for snapshots.
        default_rate (Decimal): Fallback commission rate.
        seller_labels (Mapping[str, str]): Register code to seller name map.
    """

    def __init__(
        self,
        store: PeriodStore,
        *,
        operator: str = "SYSTEM",
        clock: Optional[Callable[[], datetime]] = None,
        rates: Mapping[str, Decimal] = DEFAULT_COMMISSION_RATES,
        default_rate: Decimal = DEFAULT_COMMISSION_RATE,
        seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
    ) -> None:
        self.store = store
        self.operator = operator
        self._clock = clock or _utc_now
        self.rates = rates
        self.default_rate = default_rate
        self.seller_labels = seller_labels

    def _event(self, event_type: ClosingEventType, description: str) -> ClosingEvent:
        return ClosingEvent(
            event_id=uuid.uuid4().hex,
            timestamp=self._clock(),
            event_type=event_type,
            user=self.operator,
            description=description,
        )

    def get_state(self, period: str) -> ClosingState:
        """Load the closing state, creating it on first access.

        A newly created state starts IN_PROGRESS with every flag cleared and a
        single IMPORT event marking the opening of the period.

        Raises:
            ValidationError: If ``period`` is not a ``YYYY-MM`` identifier.
        """

        validate_period_id(period)
        try:
            return self.store.load_closing_state(period)
        except NotFoundError:
            now = self._clock()
            state = ClosingState(
                period=period,
                status=ClosingStatus.IN_PROGRESS,
                checklist=ClosingChecklist(),
                timeline=(self._event(ClosingEventType.IMPORT, f"Period {period} opened"),),
                created_at=now,
                updated_at=now,
            )
            self.store.save_closing_state(state)
            log.info("Opened closing state for period %s", period)
            return state

    def set_checklist_flag(self, period: str, flag: ChecklistFlag, value: bool) -> ClosingState:
        """Update one checklist flag.

        Writes on a closed period, and writes that do not change the flag,
        leave the state untouched. A false to true transition appends a
        milestone event to the timeline.

        Returns:
            ClosingState: State after the update.
        """

        state = self.get_state(period)
        if state.is_closed:
            log.warning("Ignoring %s=%s on closed period %s", flag.value, value, period)
            return state
        if state.checklist.get(flag) == value:
            return state

        now = self._clock()
        self.store.set_checklist_flag(period, flag, value, updated_at=now)
        timeline = state.timeline
        if value:
            event = self._event(
                FLAG_EVENT_TYPES.get(flag, ClosingEventType.CONCILIATION),
                f"Step completed: {CHECKLIST_LABELS[flag]}",
            )
            self.store.append_timeline_event(period, event)
            timeline = timeline + (event,)
        log.info("Checklist flag %s set to %s for %s", flag.value, value, period)
        return replace(state, checklist=state.checklist.with_flag(flag, value), timeline=timeline, updated_at=now)

    def record_event(self, period: str, event_type: ClosingEventType, description: str) -> ClosingEvent:
        """Append a free-form event to the period timeline."""

        self.get_state(period)
        event = self._event(event_type, description)
        self.store.append_timeline_event(period, event)
        log.info("Recorded %s event for %s: %s", event_type.value, period, description)
        return event

    def simulate_close(self, period: str) -> ConsolidatedSummary:
        """Compute the snapshot a close would freeze, without side effects.

        Raises:
            NotFoundError: If no report exists for ``period``.
        """

        validate_period_id(period)
        report = self.store.load_report(period)
        return self._snapshot(report)

    def _snapshot(self, report: MonthlyReport) -> ConsolidatedSummary:
        return build_snapshot(
            report,
            generated_at=self._clock(),
            rates=self.rates,
            default_rate=self.default_rate,
            seller_labels=self.seller_labels,
        )

    def close(self, period: str) -> ClosingState:
        """Close ``period``, freezing its snapshot and locking its ledger.

        Returns:
            ClosingState: The CLOSED state that was persisted.

        Raises:
            ValidationError: If the period is already closed.
            PendingDivergencesError: If the report still has DIVERGENT
                records.
            NotFoundError: If no report exists for ``period``.
        """

        state = self.get_state(period)
        if state.is_closed:
            log.error("Period %s is already closed", period)
            raise ValidationError(f"Period {period} is already closed")

        report = self.store.load_report(period)
        pending = report.pending_count
        if pending:
            log.error("Cannot close %s: %d pending divergences", period, pending)
            raise PendingDivergencesError(period, pending)

        snapshot = self._snapshot(report)
        locked = self.store.lock_ledger_period(period)
        now = self._clock()
        closed = replace(
            state,
            status=ClosingStatus.CLOSED,
            consolidated_summary=snapshot,
            timeline=state.timeline + (self._event(ClosingEventType.CLOSE, "Monthly closing completed and locked"),),
            updated_at=now,
            closed_at=now,
            closed_by=self.operator,
        )
        try:
            self.store.save_closing_state(closed)
        except Exception:
            log.error("Failed to persist closing of %s; restoring previous state", period)
            self.store.unlock_ledger_period(period)
            self.store.save_closing_state(state)
            raise
        log.info("Closed period %s (%d ledger entries locked)", period, locked)
        return closed

    def reopen(self, period: str) -> ClosingState:
        """Return ``period`` to IN_PROGRESS, unlocking its ledger."""

        state = self.get_state(period)
        unlocked = self.store.unlock_ledger_period(period)
        reopened = replace(
            state,
            status=ClosingStatus.IN_PROGRESS,
            consolidated_summary=None,
            timeline=state.timeline + (self._event(ClosingEventType.REOPEN, "Period reopened for corrections"),),
            updated_at=self._clock(),
            closed_at=None,
            closed_by=None,
        )
        self.store.save_closing_state(reopened)
        log.info("Reopened period %s (%d ledger entries unlocked)", period, unlocked)
        return reopened

    def run_pre_close_checklist(self, period: str) -> List[ChecklistItem]:
        """Evaluate the pre-close checks for ``period``.

        Only BLOCKED items prevent a close; the commission item is advisory.
        """

        state = self.get_state(period)
        try:
            report: Optional[MonthlyReport] = self.store.load_report(period)
        except NotFoundError:
            report = None

        imported = state.checklist.movement_imported and state.checklist.invoices_imported
        pending = report.pending_count if report is not None else 0
        computed = state.checklist.commission_computed
        return [
            ChecklistItem(
                item_id="IMPORT",
                label="File import",
                status=ChecklistStatus.OK if imported else ChecklistStatus.BLOCKED,
                message="Files imported." if imported else "Movement and invoice files must be imported.",
                block="IMPORT",
            ),
            ChecklistItem(
                item_id="DIVERGENCE",
                label="Divergence resolution",
                status=ChecklistStatus.BLOCKED if pending else ChecklistStatus.OK,
                message=(
                    f"There are {pending} pending divergences in the report."
                    if pending
                    else "All divergences resolved."
                ),
                block="CONSISTENCY",
            ),
            ChecklistItem(
                item_id="COMMISSION",
                label="Commission calculation",
                status=ChecklistStatus.OK if computed else ChecklistStatus.WARNING,
                message="Commissions computed." if computed else "Recomputing commissions is recommended.",
                block="RULES",
            ),
        ]

    def list_closed_periods(self) -> List[ClosingState]:
        """Return closed periods, most recent first."""

        closed = [state for state in self.store.list_closing_states() if state.is_closed]
        return sorted(closed, key=lambda state: state.period, reverse=True)


__all__ = [
    "FLAG_EVENT_TYPES",
    "NO_SALES_ALERT",
    "build_snapshot",
    "ClosingStateMachine",
]
