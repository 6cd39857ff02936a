"""Readers for the normalized movement and invoice import workbooks.

Raw cash spreadsheets and XML archives are normalized upstream into two small
workbooks. The movement workbook carries the ``Movements``,
``NoInvoiceSales`` and ``Expenses`` sheets; the invoice workbook carries a
single ``Invoices`` sheet. Columns are matched by header title, so extra
columns and column order do not matter.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import FiscalStatus, ImportSheetName
from .exceptions import ValidationError
from .records import ExpenseEntry, InvoiceRecord, MovementBatch, MovementRecord, NoInvoiceSale


FINAL_CONSUMER = "FINAL CONSUMER"

IMPORT_COLUMNS: Mapping[str, Sequence[str]] = {
    ImportSheetName.MOVEMENTS.value: [
        "InvoiceKey",
        "PaymentDate",
        "Seller",
        "PaymentMethod",
        "Amount",
        "PaymentDetail",
    ],
    ImportSheetName.NO_INVOICE_SALES.value: [
        "Date",
        "Seller",
        "Amount",
        "PaymentMethod",
        "PaymentDetail",
        "Description",
    ],
    ImportSheetName.EXPENSES.value: [
        "Date",
        "Description",
        "Amount",
        "Category",
    ],
    ImportSheetName.INVOICES.value: [
        "InvoiceKey",
        "EmissionDate",
        "Seller",
        "Buyer",
        "BuyerDocument",
        "Amount",
        "Note",
        "FiscalStatus",
        "IsReturn",
        "OriginalInvoiceKey",
        "CorrectedSeller",
    ],
}

_TRUE_VALUES = {"1", "TRUE", "YES", "Y", "X"}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _required_text(value: Any, column: str, row_number: int) -> str:
    text = _text(value)
    if text is None:
        raise ValidationError(f"Row {row_number}: column '{column}' is required")
    return text


def _coerce_date(value: Any, column: str, row_number: int) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _text(value)
    if text is None:
        raise ValidationError(f"Row {row_number}: column '{column}' is required")
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValidationError(f"Row {row_number}: invalid date '{text}' in column '{column}'") from exc


def _coerce_amount(value: Any, column: str, row_number: int) -> Decimal:
    if value is None:
        raise ValidationError(f"Row {row_number}: column '{column}' is required")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Row {row_number}: invalid amount '{value}' in column '{column}'") from exc


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = _text(value)
    return text is not None and text.upper() in _TRUE_VALUES


def _coerce_fiscal_status(value: Any, row_number: int) -> FiscalStatus:
    text = _text(value)
    if text is None:
        return FiscalStatus.NORMAL
    try:
        return FiscalStatus(text.upper())
    except ValueError as exc:
        raise ValidationError(f"Row {row_number}: unknown fiscal status '{text}'") from exc


def iter_sheet_records(workbook: Workbook, sheet_name: str, *, required: bool = True) -> Iterable[Tuple[int, Dict[str, Any]]]:
    """Yield ``(row_number, {header: value})`` pairs for a worksheet.

    Empty rows are skipped. When ``required`` is false a missing sheet yields
    nothing instead of failing.

    Raises:
        ValidationError: If the sheet is required but absent, or if one of the
            expected headers from :data:`IMPORT_COLUMNS` is missing.
    """

    if sheet_name not in workbook.sheetnames:
        if required:
            raise ValidationError(f"Import workbook is missing the '{sheet_name}' sheet")
        return

    sheet = workbook[sheet_name]
    rows = sheet.iter_rows(values_only=True)
    header_row = next(rows, None)
    headers = [_text(cell) for cell in header_row] if header_row else []
    missing = [column for column in IMPORT_COLUMNS[sheet_name] if column not in headers]
    if missing:
        raise ValidationError(f"Sheet '{sheet_name}' is missing columns: {', '.join(missing)}")

    for row_number, raw in enumerate(rows, start=2):
        if not any(cell is not None for cell in raw):
            continue
        yield row_number, {header: raw[index] for index, header in enumerate(headers) if header and index < len(raw)}


def _open_import_workbook(path: Path) -> Workbook:
    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Import workbook not found: {path}")
    return openpyxl.load_workbook(path, read_only=True, data_only=True)


def read_movement_batch(path: Path) -> MovementBatch:
    """Load a normalized movement workbook.

    Args:
        path (Path): Location of the movement workbook.

    Returns:
        MovementBatch: Movement records keyed by invoice key, no-invoice sales
            and expenses.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValidationError: If a sheet, column, or cell is malformed.
    """

    workbook = _open_import_workbook(path)
    try:
        movements: Dict[str, MovementRecord] = {}
        for row_number, row in iter_sheet_records(workbook, ImportSheetName.MOVEMENTS.value):
            record = MovementRecord(
                invoice_key=_required_text(row.get("InvoiceKey"), "InvoiceKey", row_number),
                payment_date=_coerce_date(row.get("PaymentDate"), "PaymentDate", row_number),
                seller=_text(row.get("Seller")),
                payment_method=(_text(row.get("PaymentMethod")) or "CASH").upper(),
                amount=_coerce_amount(row.get("Amount"), "Amount", row_number),
                payment_detail=_text(row.get("PaymentDetail")),
            )
            if record.invoice_key in movements:
                log.warning("Duplicate movement for invoice '%s' at row %d; keeping the last one", record.invoice_key, row_number)
            movements[record.invoice_key] = record

        sales: List[NoInvoiceSale] = []
        for row_number, row in iter_sheet_records(workbook, ImportSheetName.NO_INVOICE_SALES.value, required=False):
            sale = NoInvoiceSale(
                sale_date=_coerce_date(row.get("Date"), "Date", row_number),
                seller=_text(row.get("Seller")),
                amount=_coerce_amount(row.get("Amount"), "Amount", row_number),
                payment_method=(_text(row.get("PaymentMethod")) or "CASH").upper(),
                description=_text(row.get("Description")) or "",
                payment_detail=_text(row.get("PaymentDetail")),
            )
            sales.append(sale)

        expenses: List[ExpenseEntry] = []
        for row_number, row in iter_sheet_records(workbook, ImportSheetName.EXPENSES.value, required=False):
            expenses.append(
                ExpenseEntry(
                    expense_date=_coerce_date(row.get("Date"), "Date", row_number),
                    description=_text(row.get("Description")) or "",
                    amount=_coerce_amount(row.get("Amount"), "Amount", row_number),
                    category=_text(row.get("Category")),
                )
            )
    finally:
        workbook.close()

    log.info(
        "Read movement batch '%s': %d movements, %d sales without invoice, %d expenses",
        path,
        len(movements),
        len(sales),
        len(expenses),
    )
    return MovementBatch(
        invoices_by_key=movements,
        no_invoice_sales=tuple(sales),
        expenses=tuple(expenses),
    )


def read_invoice_batch(path: Path, buyer_directory: Optional[Mapping[str, str]] = None) -> Dict[str, InvoiceRecord]:
    """Load a normalized invoice workbook keyed by invoice key.

    Blank buyer names are looked up in ``buyer_directory`` by buyer document
    and otherwise reported as the final consumer.

    Args:
        path (Path): Location of the invoice workbook.
        buyer_directory (Mapping[str, str] | None): Buyer names by document.

    Returns:
        dict[str, InvoiceRecord]: Fiscal records in sheet order.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValidationError: If a sheet, column, or cell is malformed, or if an
            invoice key appears twice.
    """

    directory = buyer_directory or {}
    workbook = _open_import_workbook(path)
    try:
        invoices: Dict[str, InvoiceRecord] = {}
        for row_number, row in iter_sheet_records(workbook, ImportSheetName.INVOICES.value):
            key = _required_text(row.get("InvoiceKey"), "InvoiceKey", row_number)
            if key in invoices:
                raise ValidationError(f"Row {row_number}: duplicate invoice key '{key}'")
            document = _text(row.get("BuyerDocument"))
            buyer = _text(row.get("Buyer")) or directory.get(document or "", FINAL_CONSUMER)
            invoices[key] = InvoiceRecord(
                invoice_key=key,
                emission_date=_coerce_date(row.get("EmissionDate"), "EmissionDate", row_number),
                seller=_text(row.get("Seller")),
                buyer=buyer,
                amount=_coerce_amount(row.get("Amount"), "Amount", row_number),
                note=_text(row.get("Note")),
                fiscal_status=_coerce_fiscal_status(row.get("FiscalStatus"), row_number),
                is_return=_coerce_bool(row.get("IsReturn")),
                original_invoice_key=_text(row.get("OriginalInvoiceKey")),
                corrected_seller=_text(row.get("CorrectedSeller")),
                buyer_document=document,
            )
    finally:
        workbook.close()

    log.info("Read invoice batch '%s': %d invoices", path, len(invoices))
    return invoices


class WorkbookImportReader:
    """:class:`monthly_recon.ports.ImportReader` backed by openpyxl."""

    def read_movement_batch(self, path: Path) -> MovementBatch:
        return read_movement_batch(path)

    def read_invoice_batch(self, path: Path, buyer_directory: Mapping[str, str]) -> Dict[str, InvoiceRecord]:
        return read_invoice_batch(path, buyer_directory)


__all__ = [
    "FINAL_CONSUMER",
    "IMPORT_COLUMNS",
    "iter_sheet_records",
    "read_movement_batch",
    "read_invoice_batch",
    "WorkbookImportReader",
]
