"""Unit tests for per-seller commission computation."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from monthly_recon import commissions
from monthly_recon.constants import DivergenceKind, DivergenceStatus, FiscalStatus, InvoiceType
from monthly_recon.records import MonthlyReport, NoInvoiceSale


def _lines_by_seller(breakdown):
    return {line.seller: line for line in breakdown.lines}


def test_commission_nets_returns_against_gross(reconciled_factory):
    """1000 in sales with 100 returned at 4.5% pays 40.50."""

    report = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("A", "1000.00", seller="E"),
            reconciled_factory("R", "-100.00", invoice_type=InvoiceType.RETURN, seller="ENEIAS"),
        ),
    )

    breakdown = commissions.compute_commissions(report)
    line = _lines_by_seller(breakdown)["ENEIAS"]

    assert line.gross_sales == Decimal("1000.00")
    assert line.returns == Decimal("100.00")
    assert line.base == Decimal("900.00")
    assert line.rate == Decimal("4.5")
    assert line.commission == Decimal("40.50")
    assert breakdown.total_commission == Decimal("40.50")


def test_unknown_seller_uses_default_rate(reconciled_factory):
    """Sellers without a configured rate fall back to the default rate."""

    report = MonthlyReport(period="2024-05", invoices=(reconciled_factory("A", "200.00", seller="NEWBIE"),))

    breakdown = commissions.compute_commissions(report, rates={}, default_rate=Decimal("2.5"))

    assert breakdown.lines[0].seller == "NEWBIE"
    assert breakdown.lines[0].commission == Decimal("5.00")


def test_excluded_records_do_not_count(reconciled_factory):
    """Dropped, cancelled and orphan-return records stay out of the base."""

    report = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("A", "100.00", seller="BRAGA"),
            reconciled_factory("D", "500.00", seller="BRAGA", dropped=True),
            reconciled_factory("X", "500.00", seller="BRAGA", fiscal_status=FiscalStatus.CANCELLED),
            reconciled_factory(
                "O",
                "-80.00",
                invoice_type=InvoiceType.RETURN,
                seller="BRAGA",
                status=DivergenceStatus.DIVERGENT,
                divergence_kinds=(DivergenceKind.ORPHAN_RETURN,),
            ),
        ),
    )

    line = _lines_by_seller(commissions.compute_commissions(report))["BRAGA"]

    assert line.gross_sales == Decimal("100.00")
    assert line.returns == Decimal("0")
    assert line.commission == Decimal("3.00")


def test_no_invoice_sales_are_commissioned(reconciled_factory):
    """Sales without invoice count for their seller, negatives as returns."""

    report = MonthlyReport(
        period="2024-05",
        no_invoice_sales=(
            NoInvoiceSale(date(2024, 5, 2), "t", Decimal("300.00"), "CASH", "Counter"),
            NoInvoiceSale(date(2024, 5, 3), "T", Decimal("-20.00"), "CASH", "Refund"),
        ),
    )

    line = _lines_by_seller(commissions.compute_commissions(report))["TARCISIO"]

    assert line.gross_sales == Decimal("300.00")
    assert line.returns == Decimal("20.00")
    assert line.commission == Decimal("8.40")


def test_lines_follow_first_seen_order(reconciled_factory):
    """Lines are emitted in the order sellers first appear."""

    report = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("A", "10.00", seller="C"),
            reconciled_factory("B", "10.00", seller="B"),
            reconciled_factory("C", "10.00", seller="CARLOS"),
        ),
    )

    breakdown = commissions.compute_commissions(report)

    assert [line.seller for line in breakdown.lines] == ["CARLOS", "BRAGA"]


def test_commission_rounds_half_up_to_cents(reconciled_factory):
    """A half cent rounds up."""

    report = MonthlyReport(period="2024-05", invoices=(reconciled_factory("A", "1.00", seller="E"),))

    breakdown = commissions.compute_commissions(report)

    assert breakdown.lines[0].commission == Decimal("0.05")


@pytest.mark.parametrize(
    "seller, expected",
    [
        ("ENEIAS", Decimal("4.5")),
        ("BRAGA", Decimal("3.0")),
        ("NOBODY", Decimal("1.0")),
    ],
)
def test_rate_for_looks_up_table(seller, expected):
    """rate_for reads the table and falls back to the default."""

    assert commissions.rate_for(seller, default_rate=Decimal("1.0")) == expected


def test_compute_commissions_is_idempotent(reconciled_factory):
    """Computing twice over the same report yields identical breakdowns."""

    report = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("A", "1000.00", seller="E"),
            reconciled_factory("B", "333.33", seller="BRAGA"),
            reconciled_factory("R", "-100.00", invoice_type=InvoiceType.RETURN, seller="ENEIAS"),
        ),
        no_invoice_sales=(NoInvoiceSale(date(2024, 5, 3), "T", Decimal("50.00"), "CASH", "Counter"),),
    )

    first = commissions.compute_commissions(report)
    second = commissions.compute_commissions(report)

    assert first == second
    assert [line.seller for line in second.lines] == ["ENEIAS", "BRAGA", "TARCISIO"]
