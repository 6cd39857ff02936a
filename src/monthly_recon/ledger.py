"""Derivation of the read-side ledger and its period lock discipline.

The ledger is never edited directly. It is rebuilt from a saved report every
time the report changes, and its entries are locked while the period is
closed so that no re-derivation can silently alter a closed month.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import InvoiceType, LedgerEventType, LedgerSubtype, SellerPlaceholder
from .exceptions import LedgerLockedError
from .records import LedgerEntry, MonthlyReport


STORE_SELLER = "STORE"


def generate_entry_id(*, when: datetime, sequence: int, prefix: str = "L") -> str:
    """Return a sortable ledger identifier ``{prefix}{timestamp}-{sequence}``."""

    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{sequence:05d}"


def build_ledger_entries(report: MonthlyReport, *, created_at: datetime) -> Tuple[LedgerEntry, ...]:
    """Translate a monthly report into unlocked ledger entries.

    Invoices become SALE or RETURN facts (subtype INVOICED for term sales,
    CASH otherwise), no-invoice sales become cash SALE facts, and expenses
    become negative ADJUSTMENT/REVERSAL facts attributed to the store.
    Dropped and fiscally cancelled invoices produce no entry.

    Args:
        report (MonthlyReport): Report to derive entries from.
        created_at (datetime): Timestamp stamped on every entry and used to
            generate identifiers.

    Returns:
        tuple[LedgerEntry, ...]: Entries in report order.
    """

    entries: List[LedgerEntry] = []

    def _append(**values) -> None:
        entries.append(
            LedgerEntry(
                entry_id=generate_entry_id(when=created_at, sequence=len(entries)),
                period=report.period,
                created_at=created_at,
                **values,
            )
        )

    for invoice in report.invoices:
        if invoice.dropped or invoice.is_cancelled:
            continue
        is_return = invoice.invoice_type is InvoiceType.RETURN
        _append(
            entry_date=invoice.effective_date,
            event_type=LedgerEventType.RETURN if is_return else LedgerEventType.SALE,
            subtype=LedgerSubtype.INVOICED if invoice.invoice_type is InvoiceType.INVOICED else LedgerSubtype.CASH,
            origin_id=invoice.invoice_key,
            seller=invoice.final_seller or SellerPlaceholder.UNASSIGNED.value,
            amount=invoice.amount,
            description=f"Invoice {invoice.invoice_key} ({invoice.invoice_type.value})",
        )

    for index, sale in enumerate(report.no_invoice_sales):
        _append(
            entry_date=sale.sale_date,
            event_type=LedgerEventType.SALE,
            subtype=LedgerSubtype.CASH,
            origin_id=f"SNF-{index}",
            seller=sale.seller or SellerPlaceholder.UNASSIGNED.value,
            amount=sale.amount,
            description=f"Sale without invoice: {sale.description}",
        )

    for index, expense in enumerate(report.expenses):
        _append(
            entry_date=expense.expense_date,
            event_type=LedgerEventType.ADJUSTMENT,
            subtype=LedgerSubtype.REVERSAL,
            origin_id=f"OUT-{index}",
            seller=STORE_SELLER,
            amount=expense.contribution,
            description=f"Cash outflow: {expense.description}",
        )

    log.debug("Derived %d ledger entries for %s", len(entries), report.period)
    return tuple(entries)


def lock_entries(entries: Iterable[LedgerEntry], period: str) -> Tuple[LedgerEntry, ...]:
    """Return ``entries`` with every row of ``period`` locked."""

    return tuple(replace(entry, is_locked=True) if entry.period == period else entry for entry in entries)


def unlock_entries(entries: Iterable[LedgerEntry], period: str) -> Tuple[LedgerEntry, ...]:
    """Return ``entries`` with every row of ``period`` unlocked."""

    return tuple(replace(entry, is_locked=False) if entry.period == period else entry for entry in entries)


def ensure_unlocked(entries: Sequence[LedgerEntry], period: str) -> None:
    """Refuse to rewrite a period whose ledger is locked.

    Raises:
        LedgerLockedError: If any entry of ``period`` is locked.
    """

    locked = sum(1 for entry in entries if entry.period == period and entry.is_locked)
    if locked:
        log.error("Ledger for %s has %d locked entries", period, locked)
        raise LedgerLockedError(period, locked)


def ledger_balance(entries: Iterable[LedgerEntry], period: Optional[str] = None) -> Decimal:
    """Sum entry amounts, optionally restricted to one period."""

    return sum((entry.amount for entry in entries if period is None or entry.period == period), Decimal("0"))


__all__ = [
    "STORE_SELLER",
    "generate_entry_id",
    "build_ledger_entries",
    "lock_entries",
    "unlock_entries",
    "ensure_unlocked",
    "ledger_balance",
]
