"""Unit tests for invoice classification, divergence detection and report totals."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from monthly_recon import reconciliation
from monthly_recon.constants import (
    DivergenceKind,
    DivergenceStatus,
    FiscalStatus,
    InvoiceType,
    MissingXmlPolicy,
    Severity,
)
from monthly_recon.exceptions import IntegrityError
from monthly_recon.records import (
    DivergenceQueueItem,
    ExpenseEntry,
    MonthlyReport,
    NoInvoiceSale,
)


CREATED = datetime(2024, 5, 31, 18, 0, tzinfo=UTC)
UPDATED = datetime(2024, 6, 2, 8, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Seller normalization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "code, expected",
    [
        ("e", "ENEIAS"),
        ("E", "ENEIAS"),
        (" Braga ", "BRAGA"),
        ("Someone New", "SOMEONE NEW"),
        (None, "UNASSIGNED"),
        ("   ", "UNASSIGNED"),
    ],
)
def test_seller_label_normalizes_codes_and_names(code, expected):
    """Register codes expand to names and every label is upper-cased."""

    assert reconciliation.seller_label(code) == expected


def test_is_term_method_recognizes_invoiced_methods():
    """Term payment methods are matched regardless of case."""

    assert reconciliation.is_term_method("invoiced")
    assert reconciliation.is_term_method("A PRAZO")
    assert not reconciliation.is_term_method("PIX")
    assert not reconciliation.is_term_method(None)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def test_classify_movement_only_is_paid_same_day(movement_factory):
    """A key present only in the movement sheet is a same-day cash sale."""

    movement = movement_factory("K1", seller="C", amount=Decimal("80.00"))
    record = reconciliation.classify_invoice("K1", movement, None)

    assert record.invoice_type is InvoiceType.PAID_SAME_DAY
    assert record.amount == Decimal("80.00")
    assert record.effective_date == movement.payment_date
    assert record.final_seller == "C"
    assert not record.has_xml
    assert record.has_movement


def test_classify_cash_movement_with_xml_uses_payment_date(movement_factory, invoice_factory):
    """Cash movements make the invoice same-day and date it by payment."""

    movement = movement_factory("K1", payment_date=date(2024, 5, 11))
    xml = invoice_factory("K1", emission_date=date(2024, 5, 10))
    record = reconciliation.classify_invoice("K1", movement, xml)

    assert record.invoice_type is InvoiceType.PAID_SAME_DAY
    assert record.effective_date == date(2024, 5, 11)
    assert record.emission_date == date(2024, 5, 10)
    assert record.buyer == "ACME LTDA"


def test_classify_term_movement_is_invoiced(movement_factory, invoice_factory):
    """Term payment methods keep the sale in the invoiced bucket."""

    movement = movement_factory("K1", payment_method="INVOICED", payment_date=date(2024, 5, 20))
    xml = invoice_factory("K1", emission_date=date(2024, 5, 10))
    record = reconciliation.classify_invoice("K1", movement, xml)

    assert record.invoice_type is InvoiceType.INVOICED
    assert record.effective_date == date(2024, 5, 10)


def test_classify_xml_only_is_invoiced(invoice_factory):
    """Fiscal documents without cash evidence are term sales."""

    record = reconciliation.classify_invoice("K1", None, invoice_factory("K1"))

    assert record.invoice_type is InvoiceType.INVOICED
    assert record.payment_date is None
    assert record.movement_seller is None


def test_classify_return_flag_negates_amount(invoice_factory):
    """Return documents become RETURN records with a negative amount."""

    xml = invoice_factory("R1", amount=Decimal("150.00"), is_return=True, original_invoice_key="K1")
    record = reconciliation.classify_invoice("R1", None, xml)

    assert record.invoice_type is InvoiceType.RETURN
    assert record.amount == Decimal("-150.00")
    assert record.original_invoice_key == "K1"


def test_classify_negative_amount_is_return(movement_factory, invoice_factory):
    """A negative fiscal amount is treated as a return even when paid in cash."""

    record = reconciliation.classify_invoice(
        "R2",
        movement_factory("R2"),
        invoice_factory("R2", amount=Decimal("-40.00")),
    )

    assert record.invoice_type is InvoiceType.RETURN
    assert record.amount == Decimal("-40.00")


def test_classify_cancelled_invoice_is_return(invoice_factory):
    """Cancelled documents are classified as returns and keep their status."""

    xml = invoice_factory("K9", fiscal_status=FiscalStatus.CANCELLED)
    record = reconciliation.classify_invoice("K9", None, xml)

    assert record.invoice_type is InvoiceType.RETURN
    assert record.is_cancelled


def test_classify_without_sources_raises():
    """Classifying a key with no evidence at all is an internal error."""

    with pytest.raises(IntegrityError):
        reconciliation.classify_invoice("GHOST", None, None)


# ---------------------------------------------------------------------------
# Divergence detection
# ---------------------------------------------------------------------------


def test_detect_matching_sources_marks_ok(movement_factory, invoice_factory):
    """Matching seller and date produce an OK record with a final seller."""

    record = reconciliation.classify_invoice("K1", movement_factory("K1", seller="E"), invoice_factory("K1"))
    checked = reconciliation.detect_divergences(record)

    assert checked.divergence_status is DivergenceStatus.OK
    assert checked.divergence_kinds == ()
    assert checked.final_seller == "E"
    assert checked.severity is None


def test_detect_seller_mismatch(movement_factory, invoice_factory):
    """Different normalized sellers are a warning-level divergence."""

    record = reconciliation.classify_invoice(
        "K2",
        movement_factory("K2", seller="C"),
        invoice_factory("K2", seller="Tarcisio"),
    )
    checked = reconciliation.detect_divergences(record)

    assert checked.is_divergent
    assert checked.divergence_kinds == (DivergenceKind.SELLER_MISMATCH,)
    assert checked.severity is Severity.WARNING
    assert "CARLOS" in checked.divergence_reason
    assert "TARCISIO" in checked.divergence_reason
    assert checked.final_seller is None


def test_detect_blank_seller_is_not_a_mismatch(movement_factory, invoice_factory):
    """A missing seller on one side does not count as a conflict."""

    record = reconciliation.classify_invoice(
        "K3",
        movement_factory("K3", seller=None),
        invoice_factory("K3", seller="BRAGA"),
    )
    checked = reconciliation.detect_divergences(record)

    assert checked.divergence_status is DivergenceStatus.OK
    assert checked.final_seller == "BRAGA"


def test_detect_date_mismatch_respects_tolerance(movement_factory, invoice_factory):
    """Same-day sales whose dates drift beyond the tolerance are flagged."""

    record = reconciliation.classify_invoice(
        "K4",
        movement_factory("K4", payment_date=date(2024, 5, 12)),
        invoice_factory("K4", emission_date=date(2024, 5, 10)),
    )

    strict = reconciliation.detect_divergences(record)
    lenient = reconciliation.detect_divergences(record, date_tolerance_days=2)

    assert strict.divergence_kinds == (DivergenceKind.DATE_MISMATCH,)
    assert lenient.divergence_status is DivergenceStatus.OK


def test_detect_keeps_every_matching_kind_in_order(movement_factory, invoice_factory):
    """Several rules can match the same record; the first is the primary kind."""

    record = reconciliation.classify_invoice(
        "K5",
        movement_factory("K5", seller="C", payment_date=date(2024, 5, 14)),
        invoice_factory("K5", seller="BRAGA", emission_date=date(2024, 5, 10)),
    )
    checked = reconciliation.detect_divergences(record)

    assert checked.divergence_kinds == (DivergenceKind.SELLER_MISMATCH, DivergenceKind.DATE_MISMATCH)
    assert checked.divergence_kind is DivergenceKind.SELLER_MISMATCH


def test_detect_missing_xml_follows_policy(movement_factory):
    """Movement-only sales are critical divergences unless the policy accepts them."""

    record = reconciliation.classify_invoice("K6", movement_factory("K6", seller="T"), None)

    flagged = reconciliation.detect_divergences(record, missing_xml_policy=MissingXmlPolicy.FLAG)
    accepted = reconciliation.detect_divergences(record, missing_xml_policy=MissingXmlPolicy.ACCEPT)

    assert flagged.divergence_kinds == (DivergenceKind.MISSING_XML,)
    assert flagged.severity is Severity.CRITICAL
    assert accepted.divergence_status is DivergenceStatus.OK
    assert accepted.final_seller == "T"


def test_detect_orphan_return(invoice_factory):
    """Returns that reference no known sale are critical divergences."""

    xml = invoice_factory("R1", is_return=True, original_invoice_key="K404")
    record = reconciliation.classify_invoice("R1", None, xml)

    orphan = reconciliation.detect_divergences(record, known_keys={"K1"})
    matched = reconciliation.detect_divergences(record, known_keys={"K404"})

    assert orphan.divergence_kinds == (DivergenceKind.ORPHAN_RETURN,)
    assert orphan.severity is Severity.CRITICAL
    assert matched.divergence_status is DivergenceStatus.OK
    assert matched.final_seller == "ENEIAS"


def test_detect_cancelled_invoice_is_not_orphan(invoice_factory):
    """Cancelled documents are not returns that need an original sale."""

    record = reconciliation.classify_invoice("K9", None, invoice_factory("K9", fiscal_status=FiscalStatus.DENIED))
    checked = reconciliation.detect_divergences(record)

    assert checked.divergence_status is DivergenceStatus.OK


def test_resolve_vendor_falls_back_to_unassigned(reconciled_factory):
    """Records with no seller anywhere are attributed to the placeholder."""

    record = reconciled_factory("K1", "10.00", seller=None)
    assert reconciliation.resolve_vendor(record) == "UNASSIGNED"


# ---------------------------------------------------------------------------
# Batch classification
# ---------------------------------------------------------------------------


def test_classify_and_detect_orders_xml_keys_first(movement_factory, invoice_factory):
    """Fiscal keys come first, then movement-only keys, and the queue follows."""

    movements = {
        "B": movement_factory("B"),
        "C": movement_factory("C", seller="C"),
    }
    invoices = {
        "A": invoice_factory("A"),
        "B": invoice_factory("B"),
    }

    result = reconciliation.classify_and_detect(movements, invoices)

    assert [record.invoice_key for record in result.invoices] == ["A", "B", "C"]
    assert [record.invoice_type for record in result.invoices] == [
        InvoiceType.INVOICED,
        InvoiceType.PAID_SAME_DAY,
        InvoiceType.PAID_SAME_DAY,
    ]
    assert result.queue == (DivergenceQueueItem(invoice_index=2, position=0),)


def test_classify_and_detect_return_may_offset_same_batch(invoice_factory):
    """A return referencing a sale in the same batch is not orphaned."""

    invoices = {
        "A": invoice_factory("A"),
        "R": invoice_factory("R", is_return=True, original_invoice_key="A"),
    }

    result = reconciliation.classify_and_detect({}, invoices)

    assert result.queue == ()
    assert result.invoices[1].invoice_type is InvoiceType.RETURN


def test_classify_and_detect_uses_known_keys(invoice_factory):
    """Keys from a previously saved report can be offset by later returns."""

    invoices = {"R": invoice_factory("R", is_return=True, original_invoice_key="OLD")}

    orphan = reconciliation.classify_and_detect({}, invoices)
    offset = reconciliation.classify_and_detect({}, invoices, known_keys=["OLD"])

    assert len(orphan.queue) == 1
    assert offset.queue == ()


def test_build_divergence_queue_lists_divergent_positions(reconciled_factory):
    """The queue indexes DIVERGENT records in list order."""

    invoices = [
        reconciled_factory("A", "1.00", status=DivergenceStatus.DIVERGENT),
        reconciled_factory("B", "1.00"),
        reconciled_factory("C", "1.00", status=DivergenceStatus.DIVERGENT),
    ]

    queue = reconciliation.build_divergence_queue(invoices)

    assert queue == (
        DivergenceQueueItem(invoice_index=0, position=0),
        DivergenceQueueItem(invoice_index=2, position=1),
    )


# ---------------------------------------------------------------------------
# Totals and summary
# ---------------------------------------------------------------------------


def test_totals_by_method_buckets_amounts(reconciled_factory):
    """Invoiced sales are bucketed apart from the movement payment methods."""

    invoices = [
        reconciled_factory("A", "100.00"),
        reconciled_factory("B", "50.00", invoice_type=InvoiceType.INVOICED),
        reconciled_factory("C", "25.00", payment_method="PIX"),
        reconciled_factory("D", "999.00", dropped=True),
        reconciled_factory("E", "999.00", fiscal_status=FiscalStatus.CANCELLED),
    ]
    sales = [NoInvoiceSale(date(2024, 5, 3), "T", Decimal("20.00"), "PIX", "Counter")]

    totals = reconciliation.totals_by_method(invoices, sales)

    assert totals == {
        "CASH": Decimal("100.00"),
        "INVOICED": Decimal("50.00"),
        "PIX": Decimal("45.00"),
    }


def test_calculate_summary_recomputes_totals(reconciled_factory):
    """Summary totals come from the lists, excluding cancelled invoices."""

    report = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("A", "1000.00", seller="E"),
            reconciled_factory("R", "-100.00", invoice_type=InvoiceType.RETURN, seller="ENEIAS"),
            reconciled_factory("X", "300.00", seller="BRAGA", fiscal_status=FiscalStatus.CANCELLED),
        ),
        no_invoice_sales=(NoInvoiceSale(date(2024, 5, 3), "T", Decimal("50.00"), "CASH", "Counter"),),
        expenses=(ExpenseEntry(date(2024, 5, 4), "Cleaning", Decimal("30.00")),),
    )

    summary = reconciliation.calculate_summary(report)

    assert summary.total_with_invoice == Decimal("900.00")
    assert summary.total_without_invoice == Decimal("50.00")
    assert summary.total_sales == Decimal("950.00")
    assert summary.total_returns == Decimal("100.00")
    assert summary.total_expenses == Decimal("30.00")
    assert summary.expected_balance == Decimal("920.00")
    assert summary.totals_by_seller == {"ENEIAS": Decimal("900.00"), "TARCISIO": Decimal("50.00")}


def test_calculate_summary_of_empty_report_is_zero():
    """An empty report has zero totals across the board."""

    summary = reconciliation.calculate_summary(MonthlyReport(period="2024-05"))

    assert summary.total_sales == Decimal("0")
    assert summary.expected_balance == Decimal("0")
    assert summary.totals_by_method == {}


# ---------------------------------------------------------------------------
# Report assembly
# ---------------------------------------------------------------------------


def test_build_report_sets_timestamps_and_totals(reconciled_factory):
    """Fresh reports start with no resolved divergences and current totals."""

    report = reconciliation.build_report("2024-05", [reconciled_factory("A", "10.00")], now=CREATED)

    assert report.created_at == CREATED
    assert report.last_updated_at == CREATED
    assert report.resolved_divergences == 0
    assert report.totals_by_method == {"CASH": Decimal("10.00")}


def test_merge_report_replaces_keeps_and_appends(reconciled_factory):
    """Merging replaces shared keys in place and appends new keys."""

    existing = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("A", "10.00"),
            reconciled_factory("B", "20.00"),
        ),
        expenses=(ExpenseEntry(date(2024, 5, 1), "Old", Decimal("5.00")),),
        resolved_divergences=3,
        created_at=CREATED,
        last_updated_at=CREATED,
    )
    batch = MonthlyReport(
        period="2024-05",
        invoices=(
            reconciled_factory("B", "25.00"),
            reconciled_factory("C", "30.00"),
        ),
        expenses=(ExpenseEntry(date(2024, 5, 2), "New", Decimal("7.00")),),
    )

    merged = reconciliation.merge_report(existing, batch, now=UPDATED)

    assert [(record.invoice_key, record.amount) for record in merged.invoices] == [
        ("A", Decimal("10.00")),
        ("B", Decimal("25.00")),
        ("C", Decimal("30.00")),
    ]
    assert [expense.description for expense in merged.expenses] == ["Old", "New"]
    assert merged.totals_by_method == {"CASH": Decimal("65.00")}
    assert merged.resolved_divergences == 3
    assert merged.created_at == CREATED
    assert merged.last_updated_at == UPDATED


def test_derive_period_prefers_fiscal_dates(movement_factory, invoice_factory):
    """Fiscal emission dates decide the period before movement dates."""

    xml = {"K1": invoice_factory("K1", emission_date=date(2024, 4, 30))}
    movements = {"K1": movement_factory("K1", payment_date=date(2024, 5, 2))}

    assert reconciliation.derive_period(xml, movements) == "2024-04"
    assert reconciliation.derive_period({}, movements) == "2024-05"


def test_derive_period_falls_back_to_sales_then_none():
    """Sales without invoice date an import that has no invoices at all."""

    sales = [NoInvoiceSale(date(2024, 12, 24), "T", Decimal("1.00"), "CASH", "Gift")]

    assert reconciliation.derive_period({}, {}, sales) == "2024-12"
    assert reconciliation.derive_period({}) is None
