"""Reconciliation rules: classification, divergence detection and merging.

Every function in this module is a pure computation over the record types in
:mod:`monthly_recon.records`. Nothing here touches the workbook; the
orchestration layer (:mod:`monthly_recon.core_logic`) feeds the functions with
normalized import batches and persists what they return.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import (
    DEFAULT_SELLER_LABELS,
    TERM_PAYMENT_METHODS,
    DivergenceKind,
    DivergenceStatus,
    InvoiceType,
    MissingXmlPolicy,
    SellerPlaceholder,
)
from .exceptions import IntegrityError
from .records import (
    ClassificationResult,
    DivergenceQueueItem,
    ExpenseEntry,
    InvoiceRecord,
    MonthlyReport,
    MovementRecord,
    NoInvoiceSale,
    PeriodSummary,
    ReconciledInvoice,
    period_of,
)


ZERO = Decimal("0")


def seller_label(code: Optional[str], labels: Mapping[str, str] = DEFAULT_SELLER_LABELS) -> str:
    """Return the normalized identity used to compare and group sellers.

    Single-letter register codes are expanded through ``labels`` and every
    value is upper-cased, so ``"e"``, ``"E"`` and ``"Eneias"`` all collapse to
    ``"ENEIAS"``. Missing codes map to :attr:`SellerPlaceholder.UNASSIGNED`.
    """

    if code is None or not str(code).strip():
        return SellerPlaceholder.UNASSIGNED.value
    normalized = str(code).strip().upper()
    return labels.get(normalized, normalized)


def is_term_method(payment_method: Optional[str]) -> bool:
    return payment_method is not None and payment_method.strip().upper() in TERM_PAYMENT_METHODS


def classify_invoice(
    invoice_key: str,
    movement: Optional[MovementRecord],
    xml: Optional[InvoiceRecord],
) -> ReconciledInvoice:
    """Build the provisional :class:`ReconciledInvoice` for one invoice key.

    Args:
        invoice_key (str): Key shared by both sources.
        movement (MovementRecord | None): Cash/movement evidence, if any.
        xml (InvoiceRecord | None): Fiscal evidence, if any.

    Returns:
        ReconciledInvoice: Record carrying a provisional type and effective
            date. Divergence fields are left at their defaults for
            :func:`detect_divergences` to fill in.

    Raises:
        IntegrityError: If neither source holds the key. Keys are taken from
            the union of both sources, so this only happens on a caller bug.
    """

    if xml is None and movement is None:
        log.error("Invoice key '%s' has neither movement nor fiscal evidence", invoice_key)
        raise IntegrityError(f"Invoice key '{invoice_key}' has no movement or XML evidence")

    if xml is None:
        return ReconciledInvoice(
            invoice_key=invoice_key,
            invoice_type=InvoiceType.PAID_SAME_DAY,
            amount=movement.amount,
            effective_date=movement.payment_date,
            payment_date=movement.payment_date,
            movement_seller=movement.seller,
            final_seller=movement.seller,
            payment_method=movement.payment_method,
            payment_detail=movement.payment_detail,
        )

    reverses_sale = xml.is_return or xml.amount < ZERO
    if reverses_sale or xml.is_cancelled:
        invoice_type = InvoiceType.RETURN
    elif movement is not None and not is_term_method(movement.payment_method):
        invoice_type = InvoiceType.PAID_SAME_DAY
    else:
        invoice_type = InvoiceType.INVOICED

    if invoice_type is InvoiceType.PAID_SAME_DAY:
        effective_date = movement.payment_date
    else:
        effective_date = xml.emission_date

    return ReconciledInvoice(
        invoice_key=invoice_key,
        invoice_type=invoice_type,
        amount=-abs(xml.amount) if reverses_sale else xml.amount,
        effective_date=effective_date,
        emission_date=xml.emission_date,
        payment_date=movement.payment_date if movement is not None else None,
        movement_seller=movement.seller if movement is not None else None,
        xml_seller=xml.seller,
        corrected_seller=xml.corrected_seller,
        buyer=xml.buyer,
        payment_method=movement.payment_method if movement is not None else None,
        payment_detail=movement.payment_detail if movement is not None else None,
        note=xml.note,
        fiscal_status=xml.fiscal_status,
        original_invoice_key=xml.original_invoice_key,
    )


def resolve_vendor(invoice: ReconciledInvoice) -> str:
    """Pick the authoritative seller for a non-divergent record.

    Same-day cash sales belong to whoever rang the register; invoiced and
    return records belong to the seller named on the fiscal document. When the
    preferred side is blank the other side is used, and a record with no
    seller on either side is attributed to the unassigned placeholder.
    """

    if invoice.invoice_type is InvoiceType.PAID_SAME_DAY:
        candidates = (invoice.movement_seller, invoice.xml_seller)
    else:
        candidates = (invoice.xml_seller, invoice.movement_seller)
    for candidate in candidates:
        if candidate is not None and str(candidate).strip():
            return candidate
    return SellerPlaceholder.UNASSIGNED.value


def detect_divergences(
    invoice: ReconciledInvoice,
    *,
    known_keys: Collection[str] = (),
    missing_xml_policy: MissingXmlPolicy = MissingXmlPolicy.FLAG,
    date_tolerance_days: int = 0,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> ReconciledInvoice:
    """Apply the divergence rules to a classified invoice.

    Rules are evaluated in the order of :class:`DivergenceKind` and every
    matching kind is kept. A record that matches nothing is marked OK and gets
    its ``final_seller`` from :func:`resolve_vendor`.

    Args:
        invoice (ReconciledInvoice): Output of :func:`classify_invoice`.
        known_keys (Collection[str]): Invoice keys a return may offset.
        missing_xml_policy (MissingXmlPolicy): Whether movement-only records
            are divergences.
        date_tolerance_days (int): Allowed distance, in calendar days, between
            payment and emission dates of a same-day sale.
        seller_labels (Mapping[str, str]): Register code to seller name map
            used to compare sellers.

    Returns:
        ReconciledInvoice: The record with divergence fields populated.
    """

    kinds: List[DivergenceKind] = []
    reasons: List[str] = []

    if invoice.has_xml and invoice.has_movement:
        movement_seller = invoice.movement_seller
        xml_seller = invoice.xml_seller
        if (
            movement_seller is not None
            and xml_seller is not None
            and seller_label(movement_seller, seller_labels) != seller_label(xml_seller, seller_labels)
        ):
            kinds.append(DivergenceKind.SELLER_MISMATCH)
            reasons.append(
                f"Seller differs: movement {seller_label(movement_seller, seller_labels)} "
                f"vs invoice {seller_label(xml_seller, seller_labels)}"
            )

        if invoice.invoice_type is InvoiceType.PAID_SAME_DAY:
            distance = abs((invoice.payment_date - invoice.emission_date).days)
            if distance > date_tolerance_days:
                kinds.append(DivergenceKind.DATE_MISMATCH)
                reasons.append(
                    f"Payment date {invoice.payment_date.isoformat()} differs from "
                    f"emission date {invoice.emission_date.isoformat()}"
                )

    if not invoice.has_xml and missing_xml_policy is MissingXmlPolicy.FLAG:
        kinds.append(DivergenceKind.MISSING_XML)
        reasons.append("Movement lists a paid invoice with no fiscal document")

    if (
        invoice.invoice_type is InvoiceType.RETURN
        and not invoice.is_cancelled
        and (invoice.original_invoice_key is None or invoice.original_invoice_key not in known_keys)
    ):
        kinds.append(DivergenceKind.ORPHAN_RETURN)
        reasons.append("Return has no identifiable original sale to offset")

    if not kinds:
        return replace(
            invoice,
            divergence_status=DivergenceStatus.OK,
            divergence_kinds=(),
            divergence_reason=None,
            final_seller=resolve_vendor(invoice),
        )

    log.debug("Invoice '%s' flagged as %s", invoice.invoice_key, ", ".join(kind.value for kind in kinds))
    return replace(
        invoice,
        divergence_status=DivergenceStatus.DIVERGENT,
        divergence_kinds=tuple(kinds),
        divergence_reason="; ".join(reasons),
    )


def classify_and_detect(
    movement_by_key: Mapping[str, MovementRecord],
    xml_by_key: Mapping[str, InvoiceRecord],
    *,
    known_keys: Collection[str] = (),
    missing_xml_policy: MissingXmlPolicy = MissingXmlPolicy.FLAG,
    date_tolerance_days: int = 0,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> ClassificationResult:
    """Classify every invoice key and queue the divergent ones.

    Keys are visited in fiscal-document order followed by movement-only keys
    in spreadsheet order; that visiting order is the queue order presented to
    the operator.

    Args:
        movement_by_key (Mapping[str, MovementRecord]): Movement evidence.
        xml_by_key (Mapping[str, InvoiceRecord]): Fiscal evidence.
        known_keys (Collection[str]): Extra invoice keys (for example from a
            previously saved report) that returns may reference.
        missing_xml_policy (MissingXmlPolicy): Forwarded to the detector.
        date_tolerance_days (int): Forwarded to the detector.
        seller_labels (Mapping[str, str]): Forwarded to the detector.

    Returns:
        ClassificationResult: Reconciled invoices plus the divergence queue.
    """

    keys: List[str] = list(xml_by_key)
    keys.extend(key for key in movement_by_key if key not in xml_by_key)
    offsettable = set(keys) | set(known_keys)

    invoices: List[ReconciledInvoice] = []
    queue: List[DivergenceQueueItem] = []
    for key in keys:
        classified = classify_invoice(key, movement_by_key.get(key), xml_by_key.get(key))
        checked = detect_divergences(
            classified,
            known_keys=offsettable,
            missing_xml_policy=missing_xml_policy,
            date_tolerance_days=date_tolerance_days,
            seller_labels=seller_labels,
        )
        if checked.is_divergent:
            queue.append(DivergenceQueueItem(invoice_index=len(invoices), position=len(queue)))
        invoices.append(checked)

    log.info("Classified %d invoice keys (%d divergent)", len(invoices), len(queue))
    return ClassificationResult(invoices=tuple(invoices), queue=tuple(queue))


def build_divergence_queue(invoices: Sequence[ReconciledInvoice]) -> Tuple[DivergenceQueueItem, ...]:
    """Rebuild the queue of DIVERGENT records in list order."""

    indexes = [index for index, invoice in enumerate(invoices) if invoice.is_divergent]
    return tuple(DivergenceQueueItem(invoice_index=index, position=position) for position, index in enumerate(indexes))


def _counts_towards_totals(invoice: ReconciledInvoice) -> bool:
    return not invoice.dropped and not invoice.is_cancelled


def totals_by_method(
    invoices: Iterable[ReconciledInvoice],
    no_invoice_sales: Iterable[NoInvoiceSale],
) -> Dict[str, Decimal]:
    """Sum signed amounts per payment-method bucket."""

    totals: Dict[str, Decimal] = {}
    for invoice in invoices:
        if not _counts_towards_totals(invoice):
            continue
        method = invoice.payment_method_label
        totals[method] = totals.get(method, ZERO) + invoice.amount
    for sale in no_invoice_sales:
        method = sale.payment_method or "CASH"
        totals[method] = totals.get(method, ZERO) + sale.amount
    return totals


def calculate_summary(
    report: MonthlyReport,
    *,
    seller_labels: Mapping[str, str] = DEFAULT_SELLER_LABELS,
) -> PeriodSummary:
    """Recompute every period total from the report's lists.

    Fiscally cancelled invoices are left out entirely. Negative amounts and
    RETURN records are accumulated as returns while still contributing their
    signed amount to the sales totals. Expenses are summed as magnitudes and
    subtracted from the sales total to obtain the expected balance.
    """

    total_with_invoice = ZERO
    total_without_invoice = ZERO
    total_returns = ZERO
    by_seller: Dict[str, Decimal] = {}

    for invoice in report.invoices:
        if not _counts_towards_totals(invoice):
            continue
        if invoice.amount < ZERO or invoice.invoice_type is InvoiceType.RETURN:
            total_returns += abs(invoice.amount)
        total_with_invoice += invoice.amount
        seller = seller_label(invoice.final_seller, seller_labels)
        by_seller[seller] = by_seller.get(seller, ZERO) + invoice.amount

    for sale in report.no_invoice_sales:
        if sale.amount < ZERO:
            total_returns += abs(sale.amount)
        total_without_invoice += sale.amount
        seller = seller_label(sale.seller, seller_labels)
        by_seller[seller] = by_seller.get(seller, ZERO) + sale.amount

    total_expenses = sum((abs(expense.amount) for expense in report.expenses), ZERO)
    total_sales = total_with_invoice + total_without_invoice

    return PeriodSummary(
        total_with_invoice=total_with_invoice,
        total_without_invoice=total_without_invoice,
        total_sales=total_sales,
        total_expenses=total_expenses,
        total_returns=total_returns,
        expected_balance=total_sales - total_expenses,
        totals_by_method=totals_by_method(report.invoices, report.no_invoice_sales),
        totals_by_seller=by_seller,
    )


def build_report(
    period: str,
    invoices: Sequence[ReconciledInvoice],
    *,
    no_invoice_sales: Sequence[NoInvoiceSale] = (),
    expenses: Sequence[ExpenseEntry] = (),
    now: Optional[datetime] = None,
) -> MonthlyReport:
    """Assemble a fresh :class:`MonthlyReport` with recomputed totals."""

    return MonthlyReport(
        period=period,
        invoices=tuple(invoices),
        no_invoice_sales=tuple(no_invoice_sales),
        expenses=tuple(expenses),
        totals_by_method=totals_by_method(invoices, no_invoice_sales),
        resolved_divergences=0,
        created_at=now,
        last_updated_at=now,
    )


def merge_report(
    existing: MonthlyReport,
    new_batch: MonthlyReport,
    *,
    now: Optional[datetime] = None,
) -> MonthlyReport:
    """Merge a freshly classified batch into a previously saved report.

    Invoice keys present in both reports take the new classification at the
    position the saved record occupied; keys only in the saved report are kept
    as they are; keys only in the new batch are appended in batch order.
    No-invoice sales and expenses are appended without deduplication. Totals
    are recomputed from the merged lists.

    Args:
        existing (MonthlyReport): Report loaded from the store.
        new_batch (MonthlyReport): Report built from the re-imported files.
        now (datetime | None): Timestamp recorded as ``last_updated_at``.

    Returns:
        MonthlyReport: The merged report, keeping the saved report's identity,
            creation time, and resolved-divergence count.
    """

    incoming = {invoice.invoice_key: invoice for invoice in new_batch.invoices}
    merged: List[ReconciledInvoice] = []
    replaced = 0
    for invoice in existing.invoices:
        replacement = incoming.pop(invoice.invoice_key, None)
        if replacement is None:
            merged.append(invoice)
        else:
            merged.append(replacement)
            replaced += 1
    appended = [invoice for invoice in new_batch.invoices if invoice.invoice_key in incoming]
    merged.extend(appended)

    sales = existing.no_invoice_sales + new_batch.no_invoice_sales
    expenses = existing.expenses + new_batch.expenses
    log.info(
        "Merged batch into report %s: %d replaced, %d appended, %d kept",
        existing.period,
        replaced,
        len(appended),
        len(existing.invoices) - replaced,
    )
    return replace(
        existing,
        invoices=tuple(merged),
        no_invoice_sales=sales,
        expenses=expenses,
        totals_by_method=totals_by_method(merged, sales),
        last_updated_at=now if now is not None else existing.last_updated_at,
    )


def derive_period(
    xml_by_key: Mapping[str, InvoiceRecord],
    movement_by_key: Optional[Mapping[str, MovementRecord]] = None,
    no_invoice_sales: Sequence[NoInvoiceSale] = (),
) -> Optional[str]:
    """Infer the ``YYYY-MM`` period of an import from its first dated record.

    Fiscal emission dates take precedence, then movement payment dates, then
    no-invoice sale dates. Returns ``None`` for an empty import.
    """

    for record in xml_by_key.values():
        return period_of(record.emission_date)
    for movement in (movement_by_key or {}).values():
        return period_of(movement.payment_date)
    for sale in no_invoice_sales:
        return period_of(sale.sale_date)
    return None


__all__ = [
    "seller_label",
    "is_term_method",
    "classify_invoice",
    "resolve_vendor",
    "detect_divergences",
    "classify_and_detect",
    "build_divergence_queue",
    "totals_by_method",
    "calculate_summary",
    "build_report",
    "merge_report",
    "derive_period",
]
