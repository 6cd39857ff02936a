"""Per-seller commission computation over a reconciled monthly report."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Mapping, Tuple

from . import log
from .constants import (
    DEFAULT_COMMISSION_RATE,
    DEFAULT_COMMISSION_RATES,
    DEFAULT_SELLER_LABELS,
    DivergenceKind,
    InvoiceType,
)
from .reconciliation import seller_label
from .records import CommissionBreakdown, CommissionLine, MonthlyReport, ReconciledInvoice


ZERO = Decimal("0")
CENT = Decimal("0.01")


def _is_commissionable(invoice: ReconciledInvoice) -> bool:
    if invoice.dropped or invoice.is_cancelled:
        return False
    return DivergenceKind.ORPHAN_RETURN not in invoice.divergence_kinds


def rate_for(
    seller: str,
    rates: Mapping[str, Decimal] = DEFAULT_COMMISSION_RATES,
    default_rate: Decimal = DEFAULT_COMMISSION_RATE,
) -> Decimal:
    """Look up the percentage applied to ``seller`` (already normalized)."""

    return Decimal(str(rates.get(seller, default_rate)))


def compute_commissions(
    report: MonthlyReport,
    *,
    rates: Mapping[str, Decimal] = DEFAULT_COMMISSION_RATES,
    default_rate: Decimal = DEFAULT_COMMISSION_RATE,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> CommissionBreakdown:
    """Compute the commission owed to each seller for ``report``.

    Invoices and no-invoice sales are grouped by normalized seller. Negative
    amounts and RETURN records count as returns; everything else counts as
    gross sales. Fiscally cancelled invoices and returns without an
    identifiable original sale are left out of the base.

    Args:
        report (MonthlyReport): Reconciled report for one period.
        rates (Mapping[str, Decimal]): Percent rate per normalized seller.
        default_rate (Decimal): Percent applied to sellers absent from
            ``rates``.
        seller_labels (Mapping[str, str]): Register code to seller name map.

    Returns:
        CommissionBreakdown: One line per seller, in first-seen order, plus
            the period total. Amounts are rounded half-up to cents.
    """

    accumulated: Dict[str, Tuple[Decimal, Decimal]] = {}

    def _add(seller: str, amount: Decimal, is_return: bool) -> None:
        gross, returns = accumulated.get(seller, (ZERO, ZERO))
        if is_return:
            returns += abs(amount)
        else:
            gross += amount
        accumulated[seller] = (gross, returns)

    skipped = 0
    for invoice in report.invoices:
        if not _is_commissionable(invoice):
            skipped += 1
            continue
        _add(
            seller_label(invoice.final_seller, seller_labels),
            invoice.amount,
            invoice.amount < ZERO or invoice.invoice_type is InvoiceType.RETURN,
        )
    for sale in report.no_invoice_sales:
        _add(seller_label(sale.seller, seller_labels), sale.amount, sale.amount < ZERO)

    lines: List[CommissionLine] = []
    total = ZERO
    for seller, (gross, returns) in accumulated.items():
        rate = rate_for(seller, rates, default_rate)
        base = gross - returns
        commission = (base * rate / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
        lines.append(
            CommissionLine(
                seller=seller,
                gross_sales=gross,
                returns=returns,
                base=base,
                rate=rate,
                commission=commission,
            )
        )
        total += commission

    log.debug(
        "Computed commissions for %s: %d sellers, %d invoices excluded, total %s",
        report.period,
        len(lines),
        skipped,
        total,
    )
    return CommissionBreakdown(lines=tuple(lines), total_commission=total)


__all__ = ["compute_commissions", "rate_for"]
