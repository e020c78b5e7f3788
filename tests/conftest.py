"""Shared pytest fixtures and utilities for trade ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from trade_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from trade_ledger.constants import BalanceType, PartyType, SettlementType  # noqa: E402
from trade_ledger.records import (  # noqa: E402
    Allocation,
    Expense,
    LocationTransfer,
    MasterParty,
    Purchase,
    PurchaseLine,
    Receipt,
    Sale,
    SaleLine,
    TransactionLog,
    TransferItem,
)
from trade_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_WAREHOUSE_ID = "WH-MAIN"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[FinancialYear]\n"
    "StartMonth = 4\n\n"
    "[Defaults]\n"
    "DefaultWarehouse = {default_warehouse_id}\n"
)


def D(value: str | int) -> Decimal:
    """Shorthand for building exact decimals in test data."""

    return Decimal(str(value))


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_warehouse_id: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        default_warehouse_id: str = DEFAULT_WAREHOUSE_ID,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, default_warehouse_id=default_warehouse_id, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_warehouse_id: str = DEFAULT_WAREHOUSE_ID,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir_name, default_warehouse_id=default_warehouse_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                default_warehouse_id=default_warehouse_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_warehouse_id=default_warehouse_id,
            schema_version=schema_version,
            business_name=business_name,
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
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="trade-ledger", description="Trade ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        business_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_warehouse_id=DEFAULT_WAREHOUSE_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for orchestration tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def parties() -> tuple[MasterParty, ...]:
    """Master parties shared by the engine tests."""

    return (
        MasterParty("SUP-1", "Ravi Agro", PartyType.SUPPLIER),
        MasterParty("AGT-1", "Mandi Agent", PartyType.AGENT),
        MasterParty("CUS-1", "Kiran Mills", PartyType.CUSTOMER),
        MasterParty("CUS-2", "Sharma Foods", PartyType.CUSTOMER, D(1200), BalanceType.DR),
        MasterParty("BRK-1", "City Brokers", PartyType.BROKER),
        MasterParty("TRN-1", "Fast Movers", PartyType.TRANSPORTER, D(300), BalanceType.CR),
        MasterParty(DEFAULT_WAREHOUSE_ID, "Main Warehouse", PartyType.WAREHOUSE),
        MasterParty("WH-2", "Town Godown", PartyType.WAREHOUSE),
    )


@pytest.fixture
def lot_purchase() -> Purchase:
    """Lot A1: 100 bags, 5000 kg at 20 with 500 of expenses (landed 20.10/kg)."""

    return Purchase(
        purchase_id="P-1",
        date=date(2024, 4, 10),
        location_id=DEFAULT_WAREHOUSE_ID,
        supplier_id="SUP-1",
        agent_id="AGT-1",
        lines=(PurchaseLine("A1", D(100), D(5000), D(20)),),
        expenses=(
            Expense("Hamali", D(200)),
            Expense("Commission", D(300), party_id="AGT-1"),
        ),
    )


@pytest.fixture
def lot_transfer() -> LocationTransfer:
    """Half of lot A1 moved to WH-2 as lot A1-T with 250 of freight."""

    return LocationTransfer(
        transfer_id="T-1",
        date=date(2024, 4, 12),
        from_warehouse_id=DEFAULT_WAREHOUSE_ID,
        to_warehouse_id="WH-2",
        items=(TransferItem("A1", "A1-T", D(50), D(2500)),),
        expenses=(Expense("Freight", D(250), party_id="TRN-1"),),
    )


@pytest.fixture
def lot_sale() -> Sale:
    """1000 kg of the transferred lot billed at 16,250 to CUS-1."""

    return Sale(
        sale_id="S-1",
        date=date(2024, 4, 20),
        location_id="WH-2",
        customer_id="CUS-1",
        bill_number="B-100",
        lines=(SaleLine("A1-T", D(20), D(1000), D("16.25")),),
    )


@pytest.fixture
def lot_receipt() -> Receipt:
    return Receipt(
        voucher_id="R-1",
        date=date(2024, 4, 25),
        party_id="CUS-1",
        amount=D(10000),
        settlement_type=SettlementType.AGAINST_BILL,
        allocations=(Allocation("S-1", D(10000)),),
    )


@pytest.fixture
def trading_log(
    parties: tuple[MasterParty, ...],
    lot_purchase: Purchase,
    lot_transfer: LocationTransfer,
    lot_sale: Sale,
    lot_receipt: Receipt,
) -> TransactionLog:
    """Purchase, transfer, sale and part receipt of a single lot."""

    return TransactionLog(
        parties=parties,
        purchases=(lot_purchase,),
        transfers=(lot_transfer,),
        sales=(lot_sale,),
        receipts=(lot_receipt,),
    )
