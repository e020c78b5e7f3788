"""Immutable transaction records consumed by the replay engines.

Every record is created once by an external entry workflow and either
replaced wholesale or deleted; the engines only read them. Monetary values,
weights and bag counts are :class:`~decimal.Decimal` instances so balance
arithmetic stays exact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from .constants import ZERO, BalanceType, PartyType, SettlementType


LotKey = Tuple[str, str]


def sum_decimals(values: Iterable[Decimal]) -> Decimal:
    """Add up decimals starting from an exact zero."""

    total = ZERO
    for value in values:
        total += value
    return total


@dataclass(frozen=True)
class MasterParty:
    """Entry of the master party directory."""

    party_id: str
    name: str
    party_type: PartyType
    opening_balance: Decimal = ZERO
    opening_balance_type: BalanceType = BalanceType.DR

    @property
    def signed_opening_balance(self) -> Decimal:
        """Opening balance with Dr as positive and Cr as negative."""
        if self.opening_balance_type == BalanceType.CR:
            return -self.opening_balance
        return self.opening_balance


@dataclass(frozen=True)
class Expense:
    """Expense line attached to a purchase, sale, or transfer voucher."""

    account: str
    amount: Decimal
    party_id: Optional[str] = None


@dataclass(frozen=True)
class PurchaseLine:
    lot_number: str
    bags: Decimal
    net_weight: Decimal
    rate: Decimal
    goods_value: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.goods_value is None:
            object.__setattr__(self, "goods_value", self.net_weight * self.rate)


@dataclass(frozen=True)
class Purchase:
    """Inward purchase voucher covering one or more lots at one location."""

    purchase_id: str
    date: date
    location_id: str
    supplier_id: str
    lines: Tuple[PurchaseLine, ...]
    agent_id: Optional[str] = None
    expenses: Tuple[Expense, ...] = ()
    notes: Optional[str] = None

    @property
    def total_goods_value(self) -> Decimal:
        return sum_decimals(line.goods_value for line in self.lines)

    @property
    def total_net_weight(self) -> Decimal:
        return sum_decimals(line.net_weight for line in self.lines)

    @property
    def total_expenses(self) -> Decimal:
        return sum_decimals(expense.amount for expense in self.expenses)

    @property
    def expense_per_kg(self) -> Decimal:
        """Share of the voucher's own expenses carried by each kilogram."""
        weight = self.total_net_weight
        if weight <= ZERO:
            return ZERO
        return self.total_expenses / weight

    def landed_cost_per_kg(self, line: PurchaseLine) -> Decimal:
        """Base rate of ``line`` plus the per-kg expense share."""
        return line.rate + self.expense_per_kg

    def line_for_lot(self, lot_number: str) -> Optional[PurchaseLine]:
        for line in self.lines:
            if line.lot_number == lot_number:
                return line
        return None


@dataclass(frozen=True)
class PurchaseReturn:
    """Goods sent back to the supplier of an earlier purchase."""

    return_id: str
    date: date
    original_purchase_id: str
    original_lot_number: str
    bags_returned: Decimal
    net_weight_returned: Decimal
    original_purchase_rate: Decimal
    return_amount: Optional[Decimal] = None
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if self.return_amount is None:
            object.__setattr__(
                self,
                "return_amount",
                self.net_weight_returned * self.original_purchase_rate,
            )


@dataclass(frozen=True)
class TransferItem:
    original_lot_number: str
    new_lot_number: str
    bags: Decimal
    net_weight: Decimal
    gross_weight: Optional[Decimal] = None
    pre_transfer_landed_cost: Optional[Decimal] = None

    @property
    def expense_weight(self) -> Decimal:
        """Weight used to apportion transfer expenses (gross when recorded)."""
        return self.gross_weight if self.gross_weight is not None else self.net_weight


@dataclass(frozen=True)
class LocationTransfer:
    """Movement of lots from one warehouse to another."""

    transfer_id: str
    date: date
    from_warehouse_id: str
    to_warehouse_id: str
    items: Tuple[TransferItem, ...]
    expenses: Tuple[Expense, ...] = ()
    notes: Optional[str] = None

    @property
    def total_expenses(self) -> Decimal:
        return sum_decimals(expense.amount for expense in self.expenses)

    @property
    def total_gross_weight(self) -> Decimal:
        return sum_decimals(item.expense_weight for item in self.items)

    @property
    def per_kg_expense(self) -> Decimal:
        weight = self.total_gross_weight
        if weight <= ZERO:
            return ZERO
        return self.total_expenses / weight


@dataclass(frozen=True)
class SaleLine:
    lot_number: str
    bags: Decimal
    net_weight: Decimal
    rate: Decimal
    goods_value: Optional[Decimal] = None
    cost_of_goods_sold: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.goods_value is None:
            object.__setattr__(self, "goods_value", self.net_weight * self.rate)


@dataclass(frozen=True)
class Sale:
    """Outward sale bill, optionally routed through a broker.

    ``billed_amount`` defaults to the goods value less any ``cut_amount``.
    When a broker is named the broker becomes the primary debtor for the
    billed amount and is credited with ``broker_commission``.
    """

    sale_id: str
    date: date
    location_id: str
    customer_id: str
    lines: Tuple[SaleLine, ...]
    broker_id: Optional[str] = None
    bill_number: Optional[str] = None
    expenses: Tuple[Expense, ...] = ()
    cut_amount: Decimal = ZERO
    billed_amount: Optional[Decimal] = None
    broker_commission: Decimal = ZERO
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if self.billed_amount is None:
            object.__setattr__(self, "billed_amount", self.total_goods_value - self.cut_amount)

    @property
    def total_goods_value(self) -> Decimal:
        return sum_decimals(line.goods_value for line in self.lines)

    @property
    def total_net_weight(self) -> Decimal:
        return sum_decimals(line.net_weight for line in self.lines)

    @property
    def total_expenses(self) -> Decimal:
        return sum_decimals(expense.amount for expense in self.expenses)

    @property
    def primary_debtor_id(self) -> str:
        return self.broker_id or self.customer_id

    @property
    def reference(self) -> str:
        return self.bill_number or self.sale_id

    def line_index_for_lot(self, lot_number: str) -> Optional[int]:
        for index, line in enumerate(self.lines):
            if line.lot_number == lot_number:
                return index
        return None


@dataclass(frozen=True)
class SaleReturn:
    """Goods taken back from the customer of an earlier sale."""

    return_id: str
    date: date
    original_sale_id: str
    original_lot_number: str
    bags_returned: Decimal
    net_weight_returned: Decimal
    return_amount: Decimal
    notes: Optional[str] = None


@dataclass(frozen=True)
class Allocation:
    """Portion of a payment or receipt applied to one bill."""

    bill_id: str
    amount: Decimal


@dataclass(frozen=True)
class Payment:
    """Money paid out to a party."""

    voucher_id: str
    date: date
    party_id: str
    amount: Decimal
    settlement_type: SettlementType = SettlementType.ON_ACCOUNT
    allocations: Tuple[Allocation, ...] = ()
    method: Optional[str] = None
    notes: Optional[str] = None

    @property
    def settled_amount(self) -> Decimal:
        """Amount available for allocation against bills."""
        return self.amount


@dataclass(frozen=True)
class Receipt:
    """Money received from a party, optionally with a cash discount."""

    voucher_id: str
    date: date
    party_id: str
    amount: Decimal
    settlement_type: SettlementType = SettlementType.ON_ACCOUNT
    allocations: Tuple[Allocation, ...] = ()
    cash_discount: Decimal = ZERO
    method: Optional[str] = None
    notes: Optional[str] = None

    @property
    def settled_amount(self) -> Decimal:
        return self.amount + self.cash_discount


@dataclass(frozen=True)
class LedgerEntry:
    """Manual or derived journal line booked against a party."""

    entry_id: str
    date: date
    account: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    party_id: Optional[str] = None
    voucher_id: Optional[str] = None
    narration: Optional[str] = None


@dataclass(frozen=True)
class TransactionLog:
    """Fully materialized, immutable snapshot of the transaction store."""

    parties: Tuple[MasterParty, ...] = ()
    purchases: Tuple[Purchase, ...] = ()
    purchase_returns: Tuple[PurchaseReturn, ...] = ()
    sales: Tuple[Sale, ...] = ()
    sale_returns: Tuple[SaleReturn, ...] = ()
    transfers: Tuple[LocationTransfer, ...] = ()
    payments: Tuple[Payment, ...] = ()
    receipts: Tuple[Receipt, ...] = ()
    ledger_entries: Tuple[LedgerEntry, ...] = ()
    archived_lots: FrozenSet[LotKey] = field(default_factory=frozenset)

    def parties_by_id(self) -> Dict[str, MasterParty]:
        return {party.party_id: party for party in self.parties}

    def purchases_by_id(self) -> Dict[str, Purchase]:
        return {purchase.purchase_id: purchase for purchase in self.purchases}

    def sales_by_id(self) -> Dict[str, Sale]:
        return {sale.sale_id: sale for sale in self.sales}


__all__ = [
    "LotKey",
    "sum_decimals",
    "MasterParty",
    "Expense",
    "PurchaseLine",
    "Purchase",
    "PurchaseReturn",
    "TransferItem",
    "LocationTransfer",
    "SaleLine",
    "Sale",
    "SaleReturn",
    "Allocation",
    "Payment",
    "Receipt",
    "LedgerEntry",
    "TransactionLog",
]
