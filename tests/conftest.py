"""Shared pytest fixtures and utilities for the monthly reconciliation tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional, Sequence

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from monthly_recon import constants, core_logic, data_manager  # noqa: E402
from monthly_recon.constants import DivergenceStatus, FiscalStatus, InvoiceType  # noqa: E402
from monthly_recon.importers import IMPORT_COLUMNS  # noqa: E402
from monthly_recon.records import InvoiceRecord, MovementRecord, ReconciledInvoice  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OPERATOR = "MANAGER"
FIXED_NOW = datetime(2024, 6, 1, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Operator = {operator}\n"
    "DefaultRate = 3.0\n\n"
    "[Reconciliation]\n"
    "MissingXmlIsDivergence = {missing_xml}\n"
    "DateToleranceDays = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    operator: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        buyers: Optional[Mapping[str, str]] = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, buyers=buyers, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def store(master_workbook_path: Path) -> data_manager.WorkbookStore:
    """Workbook-backed store over a fresh, empty master workbook."""

    return data_manager.WorkbookStore(data_manager.open_workbook(master_workbook_path))


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        operator: str = DEFAULT_OPERATOR,
        missing_xml: str = "yes",
        buyers: Optional[Mapping[str, str]] = None,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", buyers=buyers)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                operator=operator,
                missing_xml=missing_xml,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            operator=operator,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


@pytest.fixture
def movement_factory() -> Callable[..., MovementRecord]:
    """Build movement rows with sensible defaults for May 2024."""

    def _make(
        invoice_key: str = "K1",
        *,
        payment_date: date = date(2024, 5, 10),
        seller: Optional[str] = "E",
        payment_method: str = "CASH",
        amount: Decimal = Decimal("100.00"),
        payment_detail: Optional[str] = None,
    ) -> MovementRecord:
        return MovementRecord(
            invoice_key=invoice_key,
            payment_date=payment_date,
            seller=seller,
            payment_method=payment_method,
            amount=amount,
            payment_detail=payment_detail,
        )

    return _make


@pytest.fixture
def invoice_factory() -> Callable[..., InvoiceRecord]:
    """Build fiscal invoice rows with sensible defaults for May 2024."""

    def _make(
        invoice_key: str = "K1",
        *,
        emission_date: date = date(2024, 5, 10),
        seller: Optional[str] = "ENEIAS",
        buyer: str = "ACME LTDA",
        amount: Decimal = Decimal("100.00"),
        fiscal_status: FiscalStatus = FiscalStatus.NORMAL,
        is_return: bool = False,
        original_invoice_key: Optional[str] = None,
        corrected_seller: Optional[str] = None,
    ) -> InvoiceRecord:
        return InvoiceRecord(
            invoice_key=invoice_key,
            emission_date=emission_date,
            seller=seller,
            buyer=buyer,
            amount=amount,
            fiscal_status=fiscal_status,
            is_return=is_return,
            original_invoice_key=original_invoice_key,
            corrected_seller=corrected_seller,
        )

    return _make


@pytest.fixture
def reconciled_factory() -> Callable[..., ReconciledInvoice]:
    """Build already reconciled invoices for summary, ledger and closing tests."""

    def _make(
        invoice_key: str,
        amount: str,
        *,
        invoice_type: InvoiceType = InvoiceType.PAID_SAME_DAY,
        seller: Optional[str] = "ENEIAS",
        effective_date: date = date(2024, 5, 10),
        status: DivergenceStatus = DivergenceStatus.OK,
        **overrides: object,
    ) -> ReconciledInvoice:
        values = dict(
            invoice_key=invoice_key,
            invoice_type=invoice_type,
            amount=Decimal(amount),
            effective_date=effective_date,
            emission_date=effective_date,
            payment_date=effective_date if invoice_type is InvoiceType.PAID_SAME_DAY else None,
            movement_seller=seller,
            xml_seller=seller,
            final_seller=seller,
            divergence_status=status,
            payment_method="CASH" if invoice_type is InvoiceType.PAID_SAME_DAY else None,
        )
        values.update(overrides)
        return ReconciledInvoice(**values)

    return _make


# ---------------------------------------------------------------------------
# Import workbooks
# ---------------------------------------------------------------------------


@pytest.fixture
def import_workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Write a normalized import workbook with the given sheets and rows.

    Each sheet gets the standard header row from ``IMPORT_COLUMNS``; rows are
    written in header order.
    """

    def _create(filename: str, sheets: Mapping[str, Sequence[Sequence[object]]]) -> Path:
        workbook = openpyxl.Workbook()
        workbook.remove(workbook.active)
        for sheet_name, rows in sheets.items():
            worksheet = workbook.create_sheet(title=sheet_name)
            worksheet.append(list(IMPORT_COLUMNS[sheet_name]))
            for row in rows:
                worksheet.append(list(row))
        destination = tmp_path / "imports" / filename
        destination.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(destination)
        return destination

    return _create


@pytest.fixture
def may_import_files(import_workbook_factory: Callable[..., Path]) -> tuple[Path, Path]:
    """Movement and invoice workbooks for May 2024 with one seller divergence.

    * ``NF-1``: paid same day by ENEIAS on both sides.
    * ``NF-2``: paid same day, register says CARLOS but the invoice says
      TARCISIO (seller mismatch).
    * ``NF-3``: invoiced sale with no movement.
    * ``NF-4``: return of ``NF-1``.
    Plus one sale without invoice and one expense.
    """

    movement_path = import_workbook_factory(
        "movement_2024_05.xlsx",
        {
            "Movements": [
                ["NF-1", "2024-05-10", "E", "cash", 1000, None],
                ["NF-2", "2024-05-11", "C", "PIX", 200, "pix 123"],
            ],
            "NoInvoiceSales": [
                ["2024-05-12", "T", 50, "CASH", None, "Counter sale"],
            ],
            "Expenses": [
                ["2024-05-12", "Cleaning supplies", 30, "SUPPLIES"],
            ],
        },
    )
    invoice_path = import_workbook_factory(
        "invoices_2024_05.xlsx",
        {
            "Invoices": [
                ["NF-1", "2024-05-10", "ENEIAS", "ACME LTDA", "111", 1000, None, None, None, None, None],
                ["NF-2", "2024-05-11", "TARCISIO", "BETA SA", "222", 200, None, None, None, None, None],
                ["NF-3", "2024-05-15", "BRAGA", None, "333", 400, None, None, None, None, None],
                ["NF-4", "2024-05-20", "ENEIAS", "ACME LTDA", "111", 100, "Return", None, "yes", "NF-1", None],
            ],
        },
    )
    return movement_path, invoice_path


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="monthly-recon", description="Monthly reconciliation")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
