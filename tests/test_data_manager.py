"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from trade_ledger import data_manager  # noqa: E402
from trade_ledger.constants import BalanceType, PartyType, SheetName
from trade_ledger.records import LedgerEntry, MasterParty, SaleReturn


def D(value) -> Decimal:
    return Decimal(str(value))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "reports" / "2024"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Traders"
    assert parser.get("Defaults", "DefaultWarehouse") == "WH-MAIN"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_warehouse_id == "WH-MAIN"
    assert settings.financial_year_start_month == 4
    assert settings.valuation == data_manager.ValuationSettings()


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_reads_valuation_overrides(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=book.xlsx\nBusinessName=X\nSchemaVersion=1.0.0\n"
        "[FinancialYear]\nStartMonth=1\n"
        "[Valuation]\nDeadStockDays=365\nLowStockBags=2.5\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.financial_year_start_month == 1
    assert settings.valuation.dead_stock_days == 365
    assert settings.valuation.low_stock_bags == D("2.5")
    assert settings.valuation.slow_moving_days == 90
    assert settings.default_warehouse_id is None


@pytest.mark.parametrize(
    "extra",
    [
        "[FinancialYear]\nStartMonth=13\n",
        "[Valuation]\nDeadStockTurnover=lots\n",
        "[Valuation]\nSlowMovingDays=ninety\n",
    ],
)
def test_parse_settings_rejects_bad_optional_values(tmp_path, extra):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=book.xlsx\nBusinessName=X\nSchemaVersion=1.0.0\n" + extra)
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {sheet.value for sheet in SheetName}


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, MasterParty("CUS-9", "Late Buyer", PartyType.CUSTOMER))
    copy_path = tmp_path / "copies" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[SheetName.PARTIES.value].iter_rows(min_row=2, values_only=True))
    assert ("CUS-9", "Late Buyer", "Customer", 0, "Dr", None) in rows

    original = data_manager.open_workbook(master_workbook_path)
    assert original[SheetName.PARTIES.value].max_row == 2


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, MasterParty("CUS-9", "Late Buyer", PartyType.CUSTOMER))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not workbook
    assert [party.party_id for party in data_manager.iter_parties(refreshed)] == ["WH-MAIN"]


# ---------------------------------------------------------------------------
# Sheet readers
# ---------------------------------------------------------------------------


def test_iter_sheet_rows_keys_by_header_and_skips_blank_rows():
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = SheetName.ALLOCATIONS.value
    sheet.append(["Amount", "VoucherID", "BillID"])
    sheet.append([100, "R-1", "S-1"])
    sheet.append([None, None, None])
    sheet.append([50, "R-1", "S-2"])

    rows = list(data_manager.iter_sheet_rows(workbook, SheetName.ALLOCATIONS))
    assert rows == [
        {"Amount": 100, "VoucherID": "R-1", "BillID": "S-1"},
        {"Amount": 50, "VoucherID": "R-1", "BillID": "S-2"},
    ]


def test_iter_sheet_rows_missing_sheet_raises():
    with pytest.raises(KeyError, match="Sales"):
        list(data_manager.iter_sheet_rows(openpyxl.Workbook(), SheetName.SALES))


def test_iter_parties_defaults_blank_cells(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[SheetName.PARTIES.value].append(["CUS-7", None, "Customer", None, None])

    parties = {party.party_id: party for party in data_manager.iter_parties(workbook)}
    assert parties["CUS-7"].name == "CUS-7"
    assert parties["CUS-7"].opening_balance == D(0)
    assert parties["CUS-7"].opening_balance_type == BalanceType.DR
    assert data_manager.SHEET_COLUMNS[SheetName.PARTIES] == (
        "PartyID", "Name", "PartyType", "OpeningBalance", "OpeningBalanceType",
    )


def test_readers_accept_datetime_and_iso_dates(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[SheetName.LEDGER_ENTRIES.value]
    sheet.append(["J-1", datetime(2024, 4, 1, 9, 30), "Interest", 15, None, "CUS-1", None, None])
    sheet.append(["J-2", "2024-04-02", "Interest", None, "7.5", "CUS-1", None, None])

    first, second = data_manager.iter_ledger_entries(workbook)
    assert first.date == date(2024, 4, 1)
    assert first.debit == D(15)
    assert second.date == date(2024, 4, 2)
    assert second.credit == D("7.5")


def test_readers_reject_blank_required_cells(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[SheetName.PAYMENTS.value].append(["V-1", date(2024, 4, 1), None, 100, None, None, None])

    with pytest.raises(ValueError, match="PartyID"):
        list(data_manager.iter_payments(workbook))


def test_readers_reject_non_numeric_amounts(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[SheetName.PAYMENTS.value].append(["V-1", date(2024, 4, 1), "SUP-1", "abc", None, None, None])

    with pytest.raises(ValueError, match="abc"):
        list(data_manager.iter_payments(workbook))


# ---------------------------------------------------------------------------
# Round trip through the workbook
# ---------------------------------------------------------------------------


def test_append_and_load_transaction_log_round_trip(master_workbook_path, trading_log):
    workbook = data_manager.open_workbook(master_workbook_path)
    for party in trading_log.parties:
        if party.party_id != "WH-MAIN":
            data_manager.append_record(workbook, party)
    for record in (*trading_log.purchases, *trading_log.transfers, *trading_log.sales, *trading_log.receipts):
        data_manager.append_record(workbook, record)
    data_manager.save_workbook(workbook, master_workbook_path)

    loaded = data_manager.load_transaction_log(data_manager.open_workbook(master_workbook_path))

    assert {party.party_id for party in loaded.parties} == {party.party_id for party in trading_log.parties}
    assert loaded.purchases == trading_log.purchases
    assert loaded.transfers == trading_log.transfers
    assert loaded.sales == trading_log.sales
    assert loaded.receipts == trading_log.receipts
    assert loaded.archived_lots == frozenset()


def test_expenses_attach_to_their_own_voucher_kind(master_workbook_path, lot_purchase):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, lot_purchase)
    workbook[SheetName.EXPENSES.value].append(["Sale", "P-1", "Freight", 999, None])

    (purchase,) = data_manager.iter_purchases(workbook)
    assert purchase.expenses == lot_purchase.expenses


def test_serialize_record_spans_every_sheet(lot_sale):
    rows = data_manager.serialize_record(lot_sale)

    assert set(rows) == {SheetName.SALES, SheetName.SALE_LINES, SheetName.EXPENSES}
    assert rows[SheetName.SALES][0]["BilledAmount"] == D(16250)
    assert rows[SheetName.EXPENSES] == []


def test_serialize_record_rejects_unknown_types():
    with pytest.raises(TypeError, match="str"):
        data_manager.serialize_record("not a record")


def test_append_record_rejects_sheet_without_column():
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = SheetName.SALE_RETURNS.value
    sheet.append(["ReturnID", "Date"])

    record = SaleReturn("SR-1", date(2024, 4, 1), "S-1", "A1", D(1), D(50), D(800))
    with pytest.raises(KeyError, match="OriginalSaleID"):
        data_manager.append_record(workbook, record)


def test_append_record_writes_enum_values(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(
        workbook,
        MasterParty("TRN-2", "Night Haul", PartyType.TRANSPORTER, D(40), BalanceType.CR),
    )
    last_row = [cell.value for cell in workbook[SheetName.PARTIES.value][3]]
    assert last_row[2:5] == ["Transporter", D(40), "Cr"]


def test_archived_lot_markers_round_trip(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_archived_lot(workbook, ("A1", "WH-MAIN"), archived_on=date(2024, 6, 1))
    data_manager.append_archived_lot(workbook, ("B2", "WH-2"), archived_on=date(2024, 6, 1))

    assert set(data_manager.iter_archived_lots(workbook)) == {("A1", "WH-MAIN"), ("B2", "WH-2")}
    assert data_manager.remove_archived_lot(workbook, ("A1", "WH-MAIN")) is True
    assert data_manager.remove_archived_lot(workbook, ("A1", "WH-MAIN")) is False
    assert list(data_manager.iter_archived_lots(workbook)) == [("B2", "WH-2")]


def test_journal_entries_load_with_optional_links(master_workbook_path):
    entry = LedgerEntry("J-1", date(2024, 4, 1), "Round off", credit=D("0.5"), party_id="CUS-1")
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, entry)

    assert tuple(data_manager.iter_ledger_entries(workbook)) == (entry,)
