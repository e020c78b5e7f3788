"""Data access layer for the trade ledger.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: turning worksheet rows into immutable transaction
   records, assembling the :class:`~trade_ledger.records.TransactionLog`, and
   appending records back for fixtures and bootstrap scripts.

Worksheets are read through their header row, so column order inside a
sheet does not matter.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import ZERO, BalanceType, PartyType, SettlementType, SheetName, VoucherType
from .records import (
    Allocation,
    Expense,
    LedgerEntry,
    LocationTransfer,
    LotKey,
    MasterParty,
    Payment,
    Purchase,
    PurchaseLine,
    PurchaseReturn,
    Receipt,
    Sale,
    SaleLine,
    SaleReturn,
    TransactionLog,
    TransferItem,
)


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Dict[SheetName, Tuple[str, ...]] = {
    SheetName.PARTIES: ("PartyID", "Name", "PartyType", "OpeningBalance", "OpeningBalanceType"),
    SheetName.PURCHASES: ("PurchaseID", "Date", "LocationID", "SupplierID", "AgentID", "Notes"),
    SheetName.PURCHASE_LINES: ("PurchaseID", "LotNumber", "Bags", "NetWeight", "Rate", "GoodsValue"),
    SheetName.SALES: (
        "SaleID",
        "Date",
        "LocationID",
        "CustomerID",
        "BrokerID",
        "BillNumber",
        "CutAmount",
        "BilledAmount",
        "BrokerCommission",
        "Notes",
    ),
    SheetName.SALE_LINES: ("SaleID", "LotNumber", "Bags", "NetWeight", "Rate", "GoodsValue", "CostOfGoodsSold"),
    SheetName.TRANSFERS: ("TransferID", "Date", "FromWarehouseID", "ToWarehouseID", "Notes"),
    SheetName.TRANSFER_LINES: (
        "TransferID",
        "OriginalLotNumber",
        "NewLotNumber",
        "Bags",
        "NetWeight",
        "GrossWeight",
        "PreTransferLandedCost",
    ),
    SheetName.EXPENSES: ("VoucherType", "VoucherID", "Account", "Amount", "PartyID"),
    SheetName.PURCHASE_RETURNS: (
        "ReturnID",
        "Date",
        "OriginalPurchaseID",
        "OriginalLotNumber",
        "BagsReturned",
        "NetWeightReturned",
        "OriginalPurchaseRate",
        "ReturnAmount",
        "Notes",
    ),
    SheetName.SALE_RETURNS: (
        "ReturnID",
        "Date",
        "OriginalSaleID",
        "OriginalLotNumber",
        "BagsReturned",
        "NetWeightReturned",
        "ReturnAmount",
        "Notes",
    ),
    SheetName.PAYMENTS: ("VoucherID", "Date", "PartyID", "Amount", "SettlementType", "Method", "Notes"),
    SheetName.RECEIPTS: (
        "VoucherID",
        "Date",
        "PartyID",
        "Amount",
        "CashDiscount",
        "SettlementType",
        "Method",
        "Notes",
    ),
    SheetName.ALLOCATIONS: ("VoucherID", "BillID", "Amount"),
    SheetName.LEDGER_ENTRIES: ("EntryID", "Date", "Account", "Debit", "Credit", "PartyID", "VoucherID", "Narration"),
    SheetName.ARCHIVED_LOTS: ("LotNumber", "LocationID", "ArchivedOn"),
}


Record = Union[
    MasterParty,
    Purchase,
    PurchaseReturn,
    Sale,
    SaleReturn,
    LocationTransfer,
    Payment,
    Receipt,
    LedgerEntry,
]


@dataclass(frozen=True)
class ValuationSettings:
    """Thresholds read from the optional ``[Valuation]`` section."""

    dead_stock_days: int = 180
    dead_stock_turnover: Decimal = Decimal("0.10")
    slow_moving_days: int = 90
    slow_moving_turnover: Decimal = Decimal("0.25")
    fast_moving_turnover: Decimal = Decimal("0.75")
    low_stock_bags: Decimal = Decimal("5")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    financial_year_start_month: int = 4
    default_warehouse_id: Optional[str] = None
    valuation: ValuationSettings = ValuationSettings()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Callers receive the parser even if optional sections are missing;
    validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _parse_valuation(parser: configparser.ConfigParser) -> ValuationSettings:
    defaults = ValuationSettings()
    if not parser.has_section("Valuation"):
        return defaults
    section = parser["Valuation"]
    try:
        return ValuationSettings(
            dead_stock_days=section.getint("DeadStockDays", defaults.dead_stock_days),
            dead_stock_turnover=Decimal(section.get("DeadStockTurnover", str(defaults.dead_stock_turnover))),
            slow_moving_days=section.getint("SlowMovingDays", defaults.slow_moving_days),
            slow_moving_turnover=Decimal(section.get("SlowMovingTurnover", str(defaults.slow_moving_turnover))),
            fast_moving_turnover=Decimal(section.get("FastMovingTurnover", str(defaults.fast_moving_turnover))),
            low_stock_bags=Decimal(section.get("LowStockBags", str(defaults.low_stock_bags))),
        )
    except (ValueError, InvalidOperation) as exc:
        raise ValueError(f"Invalid [Valuation] setting: {exc}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[FinancialYear]``, ``[Valuation]``
    and ``[Defaults]`` are optional and fall back to their documented
    defaults. Relative ``DataFile`` paths are expanded against ``base_path``
    when provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional numeric setting cannot be parsed or the
            financial year start month is outside 1-12.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    start_month = parser.getint("FinancialYear", "StartMonth", fallback=4)
    if not 1 <= start_month <= 12:
        raise ValueError(f"FinancialYear.StartMonth must be between 1 and 12, got {start_month}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        financial_year_start_month=start_month,
        default_warehouse_id=parser.get("Defaults", "DefaultWarehouse", fallback=None),
        valuation=_parse_valuation(parser),
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``master_workbook.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _required_text(row: Mapping[str, object], column: str) -> str:
    text = _text(row.get(column))
    if text is None:
        raise ValueError(f"Column '{column}' is required but blank")
    return text


def _decimal(value: object, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def _date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        return date.fromisoformat(value.strip()[:10])
    raise ValueError(f"Not a date: {value!r}")


def _cell(value: Any) -> Any:
    if isinstance(value, (PartyType, BalanceType, SettlementType, VoucherType)):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Sheet readers
# ---------------------------------------------------------------------------


def iter_sheet_rows(workbook: Workbook, sheet_name: SheetName) -> Iterator[Dict[str, object]]:
    """Yield each populated row of ``sheet_name`` as a header-keyed mapping.

    Header and completely empty rows are skipped.

    Raises:
        KeyError: If the workbook has no sheet named ``sheet_name``.
    """

    if sheet_name.value not in workbook.sheetnames:
        raise KeyError(f"Worksheet not found: {sheet_name.value}")

    rows = workbook[sheet_name.value].iter_rows(values_only=True)
    header = next(rows, None)
    if header is None:
        return
    columns = [str(cell).strip() if cell is not None else "" for cell in header]
    for raw in rows:
        if any(cell is not None for cell in raw):
            yield dict(zip(columns, raw))


def _group_by(workbook: Workbook, sheet_name: SheetName, column: str) -> Dict[str, List[Dict[str, object]]]:
    grouped: Dict[str, List[Dict[str, object]]] = defaultdict(list)
    for row in iter_sheet_rows(workbook, sheet_name):
        grouped[_required_text(row, column)].append(row)
    return grouped


def _expenses_by_voucher(workbook: Workbook) -> Dict[Tuple[str, str], Tuple[Expense, ...]]:
    grouped: Dict[Tuple[str, str], List[Expense]] = defaultdict(list)
    for row in iter_sheet_rows(workbook, SheetName.EXPENSES):
        key = (_required_text(row, "VoucherType"), _required_text(row, "VoucherID"))
        grouped[key].append(
            Expense(
                account=_required_text(row, "Account"),
                amount=_decimal(row.get("Amount")),
                party_id=_text(row.get("PartyID")),
            )
        )
    return {key: tuple(expenses) for key, expenses in grouped.items()}


def _allocations_by_voucher(workbook: Workbook) -> Dict[str, Tuple[Allocation, ...]]:
    grouped: Dict[str, List[Allocation]] = defaultdict(list)
    for row in iter_sheet_rows(workbook, SheetName.ALLOCATIONS):
        grouped[_required_text(row, "VoucherID")].append(
            Allocation(bill_id=_required_text(row, "BillID"), amount=_decimal(row.get("Amount")))
        )
    return {voucher_id: tuple(allocations) for voucher_id, allocations in grouped.items()}


def iter_parties(workbook: Workbook) -> Iterator[MasterParty]:
    for row in iter_sheet_rows(workbook, SheetName.PARTIES):
        yield MasterParty(
            party_id=_required_text(row, "PartyID"),
            name=_text(row.get("Name")) or _required_text(row, "PartyID"),
            party_type=PartyType(_required_text(row, "PartyType")),
            opening_balance=_decimal(row.get("OpeningBalance")),
            opening_balance_type=BalanceType(_text(row.get("OpeningBalanceType")) or BalanceType.DR.value),
        )


def iter_purchases(workbook: Workbook) -> Iterator[Purchase]:
    """Yield purchases with their lines and expenses attached."""

    lines = _group_by(workbook, SheetName.PURCHASE_LINES, "PurchaseID")
    expenses = _expenses_by_voucher(workbook)
    for row in iter_sheet_rows(workbook, SheetName.PURCHASES):
        purchase_id = _required_text(row, "PurchaseID")
        yield Purchase(
            purchase_id=purchase_id,
            date=_date(row.get("Date")),
            location_id=_required_text(row, "LocationID"),
            supplier_id=_required_text(row, "SupplierID"),
            agent_id=_text(row.get("AgentID")),
            lines=tuple(
                PurchaseLine(
                    lot_number=_required_text(line, "LotNumber"),
                    bags=_decimal(line.get("Bags")),
                    net_weight=_decimal(line.get("NetWeight")),
                    rate=_decimal(line.get("Rate")),
                    goods_value=_decimal(line.get("GoodsValue"), default=None),
                )
                for line in lines.get(purchase_id, ())
            ),
            expenses=expenses.get((VoucherType.PURCHASE.value, purchase_id), ()),
            notes=_text(row.get("Notes")),
        )


def iter_sales(workbook: Workbook) -> Iterator[Sale]:
    lines = _group_by(workbook, SheetName.SALE_LINES, "SaleID")
    expenses = _expenses_by_voucher(workbook)
    for row in iter_sheet_rows(workbook, SheetName.SALES):
        sale_id = _required_text(row, "SaleID")
        yield Sale(
            sale_id=sale_id,
            date=_date(row.get("Date")),
            location_id=_required_text(row, "LocationID"),
            customer_id=_required_text(row, "CustomerID"),
            broker_id=_text(row.get("BrokerID")),
            bill_number=_text(row.get("BillNumber")),
            lines=tuple(
                SaleLine(
                    lot_number=_required_text(line, "LotNumber"),
                    bags=_decimal(line.get("Bags")),
                    net_weight=_decimal(line.get("NetWeight")),
                    rate=_decimal(line.get("Rate")),
                    goods_value=_decimal(line.get("GoodsValue"), default=None),
                    cost_of_goods_sold=_decimal(line.get("CostOfGoodsSold"), default=None),
                )
                for line in lines.get(sale_id, ())
            ),
            expenses=expenses.get((VoucherType.SALE.value, sale_id), ()),
            cut_amount=_decimal(row.get("CutAmount")),
            billed_amount=_decimal(row.get("BilledAmount"), default=None),
            broker_commission=_decimal(row.get("BrokerCommission")),
            notes=_text(row.get("Notes")),
        )


def iter_transfers(workbook: Workbook) -> Iterator[LocationTransfer]:
    items = _group_by(workbook, SheetName.TRANSFER_LINES, "TransferID")
    expenses = _expenses_by_voucher(workbook)
    for row in iter_sheet_rows(workbook, SheetName.TRANSFERS):
        transfer_id = _required_text(row, "TransferID")
        yield LocationTransfer(
            transfer_id=transfer_id,
            date=_date(row.get("Date")),
            from_warehouse_id=_required_text(row, "FromWarehouseID"),
            to_warehouse_id=_required_text(row, "ToWarehouseID"),
            items=tuple(
                TransferItem(
                    original_lot_number=_required_text(item, "OriginalLotNumber"),
                    new_lot_number=_required_text(item, "NewLotNumber"),
                    bags=_decimal(item.get("Bags")),
                    net_weight=_decimal(item.get("NetWeight")),
                    gross_weight=_decimal(item.get("GrossWeight"), default=None),
                    pre_transfer_landed_cost=_decimal(item.get("PreTransferLandedCost"), default=None),
                )
                for item in items.get(transfer_id, ())
            ),
            expenses=expenses.get((VoucherType.TRANSFER.value, transfer_id), ()),
            notes=_text(row.get("Notes")),
        )


def iter_purchase_returns(workbook: Workbook) -> Iterator[PurchaseReturn]:
    for row in iter_sheet_rows(workbook, SheetName.PURCHASE_RETURNS):
        yield PurchaseReturn(
            return_id=_required_text(row, "ReturnID"),
            date=_date(row.get("Date")),
            original_purchase_id=_required_text(row, "OriginalPurchaseID"),
            original_lot_number=_required_text(row, "OriginalLotNumber"),
            bags_returned=_decimal(row.get("BagsReturned")),
            net_weight_returned=_decimal(row.get("NetWeightReturned")),
            original_purchase_rate=_decimal(row.get("OriginalPurchaseRate")),
            return_amount=_decimal(row.get("ReturnAmount"), default=None),
            notes=_text(row.get("Notes")),
        )


def iter_sale_returns(workbook: Workbook) -> Iterator[SaleReturn]:
    for row in iter_sheet_rows(workbook, SheetName.SALE_RETURNS):
        yield SaleReturn(
            return_id=_required_text(row, "ReturnID"),
            date=_date(row.get("Date")),
            original_sale_id=_required_text(row, "OriginalSaleID"),
            original_lot_number=_required_text(row, "OriginalLotNumber"),
            bags_returned=_decimal(row.get("BagsReturned")),
            net_weight_returned=_decimal(row.get("NetWeightReturned")),
            return_amount=_decimal(row.get("ReturnAmount")),
            notes=_text(row.get("Notes")),
        )


def _settlement(row: Mapping[str, object]) -> SettlementType:
    return SettlementType(_text(row.get("SettlementType")) or SettlementType.ON_ACCOUNT.value)


def iter_payments(workbook: Workbook) -> Iterator[Payment]:
    allocations = _allocations_by_voucher(workbook)
    for row in iter_sheet_rows(workbook, SheetName.PAYMENTS):
        voucher_id = _required_text(row, "VoucherID")
        yield Payment(
            voucher_id=voucher_id,
            date=_date(row.get("Date")),
            party_id=_required_text(row, "PartyID"),
            amount=_decimal(row.get("Amount")),
            settlement_type=_settlement(row),
            allocations=allocations.get(voucher_id, ()),
            method=_text(row.get("Method")),
            notes=_text(row.get("Notes")),
        )


def iter_receipts(workbook: Workbook) -> Iterator[Receipt]:
    allocations = _allocations_by_voucher(workbook)
    for row in iter_sheet_rows(workbook, SheetName.RECEIPTS):
        voucher_id = _required_text(row, "VoucherID")
        yield Receipt(
            voucher_id=voucher_id,
            date=_date(row.get("Date")),
            party_id=_required_text(row, "PartyID"),
            amount=_decimal(row.get("Amount")),
            cash_discount=_decimal(row.get("CashDiscount")),
            settlement_type=_settlement(row),
            allocations=allocations.get(voucher_id, ()),
            method=_text(row.get("Method")),
            notes=_text(row.get("Notes")),
        )


def iter_ledger_entries(workbook: Workbook) -> Iterator[LedgerEntry]:
    for row in iter_sheet_rows(workbook, SheetName.LEDGER_ENTRIES):
        yield LedgerEntry(
            entry_id=_required_text(row, "EntryID"),
            date=_date(row.get("Date")),
            account=_text(row.get("Account")) or "",
            debit=_decimal(row.get("Debit")),
            credit=_decimal(row.get("Credit")),
            party_id=_text(row.get("PartyID")),
            voucher_id=_text(row.get("VoucherID")),
            narration=_text(row.get("Narration")),
        )


def iter_archived_lots(workbook: Workbook) -> Iterator[LotKey]:
    for row in iter_sheet_rows(workbook, SheetName.ARCHIVED_LOTS):
        yield (_required_text(row, "LotNumber"), _required_text(row, "LocationID"))


def load_transaction_log(workbook: Workbook) -> TransactionLog:
    """Read every sheet and assemble an immutable :class:`TransactionLog`.

    Args:
        workbook (Workbook): Workbook laid out as in :data:`SHEET_COLUMNS`.

    Returns:
        TransactionLog: Records in worksheet row order.

    Raises:
        KeyError: If a required worksheet is missing.
        ValueError: If a required cell is blank or a value cannot be parsed.
    """

    transaction_log = TransactionLog(
        parties=tuple(iter_parties(workbook)),
        purchases=tuple(iter_purchases(workbook)),
        purchase_returns=tuple(iter_purchase_returns(workbook)),
        sales=tuple(iter_sales(workbook)),
        sale_returns=tuple(iter_sale_returns(workbook)),
        transfers=tuple(iter_transfers(workbook)),
        payments=tuple(iter_payments(workbook)),
        receipts=tuple(iter_receipts(workbook)),
        ledger_entries=tuple(iter_ledger_entries(workbook)),
        archived_lots=frozenset(iter_archived_lots(workbook)),
    )
    log.debug(
        "Loaded transaction log: %d purchases, %d sales, %d transfers, %d payments, %d receipts",
        len(transaction_log.purchases),
        len(transaction_log.sales),
        len(transaction_log.transfers),
        len(transaction_log.payments),
        len(transaction_log.receipts),
    )
    return transaction_log


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _expense_rows(voucher_type: VoucherType, voucher_id: str, expenses: Iterable[Expense]) -> List[Dict[str, object]]:
    return [
        {
            "VoucherType": voucher_type,
            "VoucherID": voucher_id,
            "Account": expense.account,
            "Amount": expense.amount,
            "PartyID": expense.party_id,
        }
        for expense in expenses
    ]


def _allocation_rows(voucher_id: str, allocations: Iterable[Allocation]) -> List[Dict[str, object]]:
    return [
        {"VoucherID": voucher_id, "BillID": allocation.bill_id, "Amount": allocation.amount}
        for allocation in allocations
    ]


def serialize_record(record: Record) -> Dict[SheetName, List[Dict[str, object]]]:
    """Convert ``record`` into header-keyed rows for every sheet it spans.

    Raises:
        TypeError: If ``record`` is not a supported record type.
    """

    if isinstance(record, MasterParty):
        return {
            SheetName.PARTIES: [
                {
                    "PartyID": record.party_id,
                    "Name": record.name,
                    "PartyType": record.party_type,
                    "OpeningBalance": record.opening_balance,
                    "OpeningBalanceType": record.opening_balance_type,
                }
            ]
        }
    if isinstance(record, Purchase):
        return {
            SheetName.PURCHASES: [
                {
                    "PurchaseID": record.purchase_id,
                    "Date": record.date,
                    "LocationID": record.location_id,
                    "SupplierID": record.supplier_id,
                    "AgentID": record.agent_id,
                    "Notes": record.notes,
                }
            ],
            SheetName.PURCHASE_LINES: [
                {
                    "PurchaseID": record.purchase_id,
                    "LotNumber": line.lot_number,
                    "Bags": line.bags,
                    "NetWeight": line.net_weight,
                    "Rate": line.rate,
                    "GoodsValue": line.goods_value,
                }
                for line in record.lines
            ],
            SheetName.EXPENSES: _expense_rows(VoucherType.PURCHASE, record.purchase_id, record.expenses),
        }
    if isinstance(record, Sale):
        return {
            SheetName.SALES: [
                {
                    "SaleID": record.sale_id,
                    "Date": record.date,
                    "LocationID": record.location_id,
                    "CustomerID": record.customer_id,
                    "BrokerID": record.broker_id,
                    "BillNumber": record.bill_number,
                    "CutAmount": record.cut_amount,
                    "BilledAmount": record.billed_amount,
                    "BrokerCommission": record.broker_commission,
                    "Notes": record.notes,
                }
            ],
            SheetName.SALE_LINES: [
                {
                    "SaleID": record.sale_id,
                    "LotNumber": line.lot_number,
                    "Bags": line.bags,
                    "NetWeight": line.net_weight,
                    "Rate": line.rate,
                    "GoodsValue": line.goods_value,
                    "CostOfGoodsSold": line.cost_of_goods_sold,
                }
                for line in record.lines
            ],
            SheetName.EXPENSES: _expense_rows(VoucherType.SALE, record.sale_id, record.expenses),
        }
    if isinstance(record, LocationTransfer):
        return {
            SheetName.TRANSFERS: [
                {
                    "TransferID": record.transfer_id,
                    "Date": record.date,
                    "FromWarehouseID": record.from_warehouse_id,
                    "ToWarehouseID": record.to_warehouse_id,
                    "Notes": record.notes,
                }
            ],
            SheetName.TRANSFER_LINES: [
                {
                    "TransferID": record.transfer_id,
                    "OriginalLotNumber": item.original_lot_number,
                    "NewLotNumber": item.new_lot_number,
                    "Bags": item.bags,
                    "NetWeight": item.net_weight,
                    "GrossWeight": item.gross_weight,
                    "PreTransferLandedCost": item.pre_transfer_landed_cost,
                }
                for item in record.items
            ],
            SheetName.EXPENSES: _expense_rows(VoucherType.TRANSFER, record.transfer_id, record.expenses),
        }
    if isinstance(record, PurchaseReturn):
        return {
            SheetName.PURCHASE_RETURNS: [
                {
                    "ReturnID": record.return_id,
                    "Date": record.date,
                    "OriginalPurchaseID": record.original_purchase_id,
                    "OriginalLotNumber": record.original_lot_number,
                    "BagsReturned": record.bags_returned,
                    "NetWeightReturned": record.net_weight_returned,
                    "OriginalPurchaseRate": record.original_purchase_rate,
                    "ReturnAmount": record.return_amount,
                    "Notes": record.notes,
                }
            ]
        }
    if isinstance(record, SaleReturn):
        return {
            SheetName.SALE_RETURNS: [
                {
                    "ReturnID": record.return_id,
                    "Date": record.date,
                    "OriginalSaleID": record.original_sale_id,
                    "OriginalLotNumber": record.original_lot_number,
                    "BagsReturned": record.bags_returned,
                    "NetWeightReturned": record.net_weight_returned,
                    "ReturnAmount": record.return_amount,
                    "Notes": record.notes,
                }
            ]
        }
    if isinstance(record, Payment):
        return {
            SheetName.PAYMENTS: [
                {
                    "VoucherID": record.voucher_id,
                    "Date": record.date,
                    "PartyID": record.party_id,
                    "Amount": record.amount,
                    "SettlementType": record.settlement_type,
                    "Method": record.method,
                    "Notes": record.notes,
                }
            ],
            SheetName.ALLOCATIONS: _allocation_rows(record.voucher_id, record.allocations),
        }
    if isinstance(record, Receipt):
        return {
            SheetName.RECEIPTS: [
                {
                    "VoucherID": record.voucher_id,
                    "Date": record.date,
                    "PartyID": record.party_id,
                    "Amount": record.amount,
                    "CashDiscount": record.cash_discount,
                    "SettlementType": record.settlement_type,
                    "Method": record.method,
                    "Notes": record.notes,
                }
            ],
            SheetName.ALLOCATIONS: _allocation_rows(record.voucher_id, record.allocations),
        }
    if isinstance(record, LedgerEntry):
        return {
            SheetName.LEDGER_ENTRIES: [
                {
                    "EntryID": record.entry_id,
                    "Date": record.date,
                    "Account": record.account,
                    "Debit": record.debit,
                    "Credit": record.credit,
                    "PartyID": record.party_id,
                    "VoucherID": record.voucher_id,
                    "Narration": record.narration,
                }
            ]
        }
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def _append_row(workbook: Workbook, sheet_name: SheetName, values: Mapping[str, object]) -> None:
    sheet = workbook[sheet_name.value]
    header = [cell.value for cell in sheet[1]]
    unknown = set(values) - set(header)
    if unknown:
        raise KeyError(f"Unknown {sheet_name.value} columns: {', '.join(sorted(unknown))}")
    sheet.append([_cell(values.get(column)) for column in header])


def append_record(workbook: Workbook, record: Record) -> None:
    """Append ``record`` to every worksheet it spans.

    Args:
        workbook (Workbook): Workbook laid out as in :data:`SHEET_COLUMNS`.
        record (Record): Transaction or party record to persist.

    Raises:
        KeyError: If a target sheet lacks a column the record writes.
        TypeError: If ``record`` is not a supported record type.
    """

    for sheet_name, rows in serialize_record(record).items():
        for values in rows:
            _append_row(workbook, sheet_name, values)


def append_archived_lot(workbook: Workbook, key: LotKey, *, archived_on: date) -> None:
    lot_number, location_id = key
    _append_row(
        workbook,
        SheetName.ARCHIVED_LOTS,
        {"LotNumber": lot_number, "LocationID": location_id, "ArchivedOn": archived_on},
    )


def remove_archived_lot(workbook: Workbook, key: LotKey) -> bool:
    """Delete the archive marker for ``key``; return whether one existed."""

    lot_number, location_id = key
    sheet = workbook[SheetName.ARCHIVED_LOTS.value]
    header_map = {cell.value: idx for idx, cell in enumerate(sheet[1])}
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if (
            _text(row[header_map["LotNumber"]]) == lot_number
            and _text(row[header_map["LocationID"]]) == location_id
        ):
            sheet.delete_rows(row_idx)
            return True
    return False
