"""Enumerations and tolerances shared across the trade ledger modules.

Centralises domain constants so that the workbook adapter, the replay engines
and the command-line layer rely on a single source of truth for identifiers
and numeric thresholds.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

ZERO = Decimal("0")

# Bags within this distance of zero mark a lot-location position as closed.
CLOSED_POSITION_EPSILON = Decimal("0.001")

# Party balances and bill dues smaller than this are treated as settled.
BALANCE_EPSILON = Decimal("0.01")


class PartyType(str, Enum):
    """Enumerate the master party categories."""

    CUSTOMER = "Customer"
    SUPPLIER = "Supplier"
    AGENT = "Agent"
    BROKER = "Broker"
    TRANSPORTER = "Transporter"
    EXPENSE = "Expense"
    WAREHOUSE = "Warehouse"


class BalanceType(str, Enum):
    """Side of an opening or closing balance."""

    DR = "Dr"
    CR = "Cr"


class SettlementType(str, Enum):
    """How a payment or receipt is applied to a party account."""

    ON_ACCOUNT = "OnAccount"
    AGAINST_BILL = "AgainstBill"


class VoucherType(str, Enum):
    """Enumerate the transaction record kinds held in the log."""

    PURCHASE = "Purchase"
    PURCHASE_RETURN = "PurchaseReturn"
    SALE = "Sale"
    SALE_RETURN = "SaleReturn"
    TRANSFER = "LocationTransfer"
    PAYMENT = "Payment"
    RECEIPT = "Receipt"
    JOURNAL = "LedgerEntry"


# Same-day processing order for the cost-flow replay.
COST_FLOW_ORDER: tuple[VoucherType, ...] = (
    VoucherType.PURCHASE,
    VoucherType.TRANSFER,
    VoucherType.SALE_RETURN,
    VoucherType.SALE,
    VoucherType.PURCHASE_RETURN,
)


class PositionSource(str, Enum):
    """How a lot-location position first came into existence."""

    PURCHASE = "Purchase"
    TRANSFER = "Transfer"


class StockStatus(str, Enum):
    """Valuation classification of a lot-location position."""

    ZERO_STOCK = "Zero Stock"
    DEAD_STOCK = "Dead Stock"
    LOW_STOCK = "Low Stock"
    FAST_MOVING = "Fast-moving"
    SLOW_MOVING = "Slow-moving"
    IN_STOCK = "In Stock"


class AgingBucket(str, Enum):
    """Days-overdue buckets for open sale bills."""

    CURRENT = "Current"
    DAYS_31_60 = "31-60"
    DAYS_61_90 = "61-90"
    OVER_90 = "90+"


class AnomalyKind(str, Enum):
    """Data-integrity findings raised during a replay."""

    DANGLING_REFERENCE = "DanglingReference"
    ZERO_WEIGHT = "ZeroWeight"
    NEGATIVE_BALANCE = "NegativeBalance"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PARTIES = "Parties"
    PURCHASES = "Purchases"
    PURCHASE_LINES = "PurchaseLines"
    SALES = "Sales"
    SALE_LINES = "SaleLines"
    TRANSFERS = "Transfers"
    TRANSFER_LINES = "TransferLines"
    EXPENSES = "Expenses"
    PURCHASE_RETURNS = "PurchaseReturns"
    SALE_RETURNS = "SaleReturns"
    PAYMENTS = "Payments"
    RECEIPTS = "Receipts"
    ALLOCATIONS = "Allocations"
    LEDGER_ENTRIES = "LedgerEntries"
    ARCHIVED_LOTS = "ArchivedLots"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ZERO",
    "CLOSED_POSITION_EPSILON",
    "BALANCE_EPSILON",
    "PartyType",
    "BalanceType",
    "SettlementType",
    "VoucherType",
    "COST_FLOW_ORDER",
    "PositionSource",
    "StockStatus",
    "AgingBucket",
    "AnomalyKind",
    "SheetName",
]
