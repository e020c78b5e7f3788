"""Party ledger engine: statements, outstanding balances and bill dues.

Every voucher in the transaction log is turned into zero or more
:class:`PartyEffect` records using one sign table (debit increases what the
party owes us, credit decreases it). Statements, the global outstanding view
and the aging report all consume the same effects, so they cannot drift
apart.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple, Union

from . import log
from .constants import BALANCE_EPSILON, ZERO, AnomalyKind, BalanceType, PartyType, SettlementType, VoucherType
from .cost_flow import Anomaly
from .errors import AllocationError, MissingReferenceError
from .records import (
    Allocation,
    LedgerEntry,
    LocationTransfer,
    Payment,
    Receipt,
    TransactionLog,
    sum_decimals,
)


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartyEffect:
    """Signed impact of one voucher on one party account.

    Informational effects carry a ``memo_amount`` for display but never move
    the balance (a broker sale shown on the end customer's account).
    """

    party_id: str
    date: date
    voucher_type: VoucherType
    voucher_id: str
    sequence: int
    description: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    informational: bool = False
    memo_amount: Decimal = ZERO

    @property
    def amount(self) -> Decimal:
        return self.debit - self.credit

    @property
    def is_debit_bearing(self) -> bool:
        return self.informational or self.debit > ZERO


@dataclass(frozen=True)
class PartyEffectIndex:
    """Effects grouped per party, in emission order, plus skipped references."""

    by_party: Dict[str, Tuple[PartyEffect, ...]]
    anomalies: Tuple[Anomaly, ...] = ()

    def effects_for(self, party_id: str) -> Tuple[PartyEffect, ...]:
        return self.by_party.get(party_id, ())


def derive_transfer_ledger_entries(transfers: Tuple[LocationTransfer, ...]) -> Tuple[LedgerEntry, ...]:
    """Turn transfer expenses that name a party into credit ledger entries."""

    entries: List[LedgerEntry] = []
    for transfer in transfers:
        for index, expense in enumerate(transfer.expenses):
            if not expense.party_id or expense.amount == ZERO:
                continue
            entries.append(
                LedgerEntry(
                    entry_id=f"{transfer.transfer_id}-EXP{index + 1}",
                    date=transfer.date,
                    account=expense.account,
                    credit=expense.amount,
                    party_id=expense.party_id,
                    voucher_id=transfer.transfer_id,
                    narration=(
                        f"{expense.account} for transfer {transfer.from_warehouse_id} "
                        f"to {transfer.to_warehouse_id}"
                    ),
                )
            )
    return tuple(entries)


class _EffectCollector:
    def __init__(self) -> None:
        self.effects: List[PartyEffect] = []
        self.anomalies: List[Anomaly] = []
        self._sequence = 0

    def emit(self, party_id: str, when: date, voucher_type: VoucherType, voucher_id: str,
             description: str, *, debit: Decimal = ZERO, credit: Decimal = ZERO,
             informational: bool = False, memo_amount: Decimal = ZERO) -> None:
        self.effects.append(
            PartyEffect(
                party_id=party_id,
                date=when,
                voucher_type=voucher_type,
                voucher_id=voucher_id,
                sequence=self._sequence,
                description=description,
                debit=debit,
                credit=credit,
                informational=informational,
                memo_amount=memo_amount,
            )
        )
        self._sequence += 1

    def dangling(self, voucher_type: VoucherType, voucher_id: str, message: str) -> None:
        self.anomalies.append(
            Anomaly(kind=AnomalyKind.DANGLING_REFERENCE, voucher_type=voucher_type,
                    voucher_id=voucher_id, message=message)
        )
        log.warning("Skipping %s '%s': %s", voucher_type.value, voucher_id, message)


def iter_party_effects(transaction_log: TransactionLog, anomalies: Optional[List[Anomaly]] = None) -> Iterator[PartyEffect]:
    """Yield every party effect in the log.

    Args:
        transaction_log (TransactionLog): Snapshot to replay.
        anomalies (list[Anomaly] | None): Receives skipped dangling references.

    Yields:
        PartyEffect: Effects in voucher-kind then input order.
    """

    collector = _EffectCollector()
    purchases = transaction_log.purchases_by_id()
    sales = transaction_log.sales_by_id()

    for sale in transaction_log.sales:
        label = f"Sale bill {sale.reference}"
        collector.emit(sale.primary_debtor_id, sale.date, VoucherType.SALE, sale.sale_id, label,
                       debit=sale.billed_amount)
        if sale.broker_id and sale.broker_id != sale.customer_id:
            collector.emit(sale.customer_id, sale.date, VoucherType.SALE, sale.sale_id,
                           f"{label} via broker {sale.broker_id}",
                           informational=True, memo_amount=sale.billed_amount)
            if sale.broker_commission > ZERO:
                collector.emit(sale.broker_id, sale.date, VoucherType.SALE, sale.sale_id,
                               f"Commission on {label}", credit=sale.broker_commission)

    for purchase in transaction_log.purchases:
        collector.emit(purchase.supplier_id, purchase.date, VoucherType.PURCHASE, purchase.purchase_id,
                       f"Purchase {purchase.purchase_id}", credit=purchase.total_goods_value)
        for expense in purchase.expenses:
            if not expense.party_id or expense.amount == ZERO:
                continue
            if expense.party_id == purchase.agent_id:
                description = f"Commission on purchase {purchase.purchase_id}"
            else:
                description = f"{expense.account} on purchase {purchase.purchase_id}"
            collector.emit(expense.party_id, purchase.date, VoucherType.PURCHASE, purchase.purchase_id,
                           description, credit=expense.amount)

    for purchase_return in transaction_log.purchase_returns:
        original = purchases.get(purchase_return.original_purchase_id)
        if original is None:
            collector.dangling(VoucherType.PURCHASE_RETURN, purchase_return.return_id,
                               f"original purchase '{purchase_return.original_purchase_id}' not found")
            continue
        collector.emit(original.supplier_id, purchase_return.date, VoucherType.PURCHASE_RETURN,
                       purchase_return.return_id, f"Return against purchase {original.purchase_id}",
                       debit=purchase_return.return_amount)

    for sale_return in transaction_log.sale_returns:
        original_sale = sales.get(sale_return.original_sale_id)
        if original_sale is None:
            collector.dangling(VoucherType.SALE_RETURN, sale_return.return_id,
                               f"original sale '{sale_return.original_sale_id}' not found")
            continue
        collector.emit(original_sale.primary_debtor_id, sale_return.date, VoucherType.SALE_RETURN,
                       sale_return.return_id, f"Return against bill {original_sale.reference}",
                       credit=sale_return.return_amount)

    for payment in transaction_log.payments:
        collector.emit(payment.party_id, payment.date, VoucherType.PAYMENT, payment.voucher_id,
                       f"Payment {payment.voucher_id}", debit=payment.amount)

    for receipt in transaction_log.receipts:
        collector.emit(receipt.party_id, receipt.date, VoucherType.RECEIPT, receipt.voucher_id,
                       f"Receipt {receipt.voucher_id}", credit=receipt.amount)
        if receipt.cash_discount > ZERO:
            collector.emit(receipt.party_id, receipt.date, VoucherType.RECEIPT, receipt.voucher_id,
                           f"Cash discount on receipt {receipt.voucher_id}", credit=receipt.cash_discount)

    for entry in derive_transfer_ledger_entries(transaction_log.transfers):
        collector.emit(entry.party_id, entry.date, VoucherType.TRANSFER, entry.voucher_id,
                       entry.narration or entry.account, debit=entry.debit, credit=entry.credit)

    for entry in transaction_log.ledger_entries:
        if not entry.party_id:
            continue
        collector.emit(entry.party_id, entry.date, VoucherType.JOURNAL, entry.entry_id,
                       entry.narration or entry.account, debit=entry.debit, credit=entry.credit)

    if anomalies is not None:
        anomalies.extend(collector.anomalies)
    yield from collector.effects


def index_party_effects(transaction_log: TransactionLog) -> PartyEffectIndex:
    """Group the log's effects per party id."""

    anomalies: List[Anomaly] = []
    grouped: Dict[str, List[PartyEffect]] = defaultdict(list)
    for effect in iter_party_effects(transaction_log, anomalies):
        grouped[effect.party_id].append(effect)
    return PartyEffectIndex(
        by_party={party_id: tuple(effects) for party_id, effects in grouped.items()},
        anomalies=tuple(anomalies),
    )


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


def _balance_type(balance: Decimal) -> BalanceType:
    return BalanceType.CR if balance < ZERO else BalanceType.DR


@dataclass(frozen=True)
class StatementEntry:
    effect: PartyEffect
    running_balance: Decimal

    @property
    def running_type(self) -> BalanceType:
        return _balance_type(self.running_balance)


@dataclass(frozen=True)
class PartyStatement:
    """Ledger of one party over an inclusive date range."""

    party_id: str
    party_name: str
    start: Optional[date]
    end: Optional[date]
    opening_balance: Decimal
    entries: Tuple[StatementEntry, ...]
    total_debit: Decimal
    total_credit: Decimal
    closing_balance: Decimal

    @property
    def opening_type(self) -> BalanceType:
        return _balance_type(self.opening_balance)

    @property
    def closing_type(self) -> BalanceType:
        return _balance_type(self.closing_balance)


def _period_sort_key(effect: PartyEffect) -> tuple:
    return (effect.date, 0 if effect.is_debit_bearing else 1, effect.sequence)


def party_statement(
    transaction_log: TransactionLog,
    party_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    index: Optional[PartyEffectIndex] = None,
) -> PartyStatement:
    """Build the two-pass ledger statement of ``party_id``.

    Effects dated before ``start`` are folded into the opening balance; the
    remaining effects up to ``end`` (inclusive) are listed with a running
    balance. Same-day effects list debit-bearing entries first.

    Args:
        transaction_log (TransactionLog): Snapshot to replay.
        party_id (str): Master party identifier.
        start (date | None): First day of the period; ``None`` means no
            history pass.
        end (date | None): Last day of the period; ``None`` means open ended.
        index (PartyEffectIndex | None): Pre-computed effects to reuse.

    Returns:
        PartyStatement: Opening balance, entries, totals and closing balance.

    Raises:
        MissingReferenceError: If ``party_id`` is not a master party.
    """

    party = transaction_log.parties_by_id().get(party_id)
    if party is None:
        raise MissingReferenceError(f"Party '{party_id}' not found in the party master.")

    effects = (index or index_party_effects(transaction_log)).effects_for(party_id)

    opening = party.signed_opening_balance
    period: List[PartyEffect] = []
    for effect in effects:
        if start is not None and effect.date < start:
            opening += effect.amount
        elif end is None or effect.date <= end:
            period.append(effect)

    running = opening
    total_debit = ZERO
    total_credit = ZERO
    entries: List[StatementEntry] = []
    for effect in sorted(period, key=_period_sort_key):
        running += effect.amount
        total_debit += effect.debit
        total_credit += effect.credit
        entries.append(StatementEntry(effect=effect, running_balance=running))

    log.debug("Statement for %s has %d entries", party_id, len(entries))
    return PartyStatement(
        party_id=party.party_id,
        party_name=party.name,
        start=start,
        end=end,
        opening_balance=opening,
        entries=tuple(entries),
        total_debit=total_debit,
        total_credit=total_credit,
        closing_balance=running,
    )


# ---------------------------------------------------------------------------
# Global outstanding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutstandingBalance:
    party_id: str
    name: str
    party_type: PartyType
    balance: Decimal
    last_transaction_date: Optional[date]
    days_since_last_transaction: Optional[int]

    @property
    def balance_type(self) -> BalanceType:
        return _balance_type(self.balance)


@dataclass(frozen=True)
class OutstandingReport:
    receivables: Tuple[OutstandingBalance, ...]
    payables: Tuple[OutstandingBalance, ...]
    anomalies: Tuple[Anomaly, ...] = ()

    @property
    def total_receivable(self) -> Decimal:
        return sum_decimals(item.balance for item in self.receivables)

    @property
    def total_payable(self) -> Decimal:
        """Total owed to parties, as a positive number."""
        return -sum_decimals(item.balance for item in self.payables)


def compute_outstanding(
    transaction_log: TransactionLog,
    *,
    as_of: Optional[date] = None,
    index: Optional[PartyEffectIndex] = None,
) -> OutstandingReport:
    """Fold the full history of every master party into a signed balance.

    Parties whose balance magnitude exceeds ``BALANCE_EPSILON`` are reported as
    receivable (largest first) or payable (largest amount owed first).
    """

    reference = as_of or date.today()
    index = index or index_party_effects(transaction_log)
    receivables: List[OutstandingBalance] = []
    payables: List[OutstandingBalance] = []

    for party in transaction_log.parties:
        effects = index.effects_for(party.party_id)
        balance = party.signed_opening_balance + sum_decimals(effect.amount for effect in effects)
        if abs(balance) <= BALANCE_EPSILON:
            continue
        last_date = max((effect.date for effect in effects), default=None)
        item = OutstandingBalance(
            party_id=party.party_id,
            name=party.name,
            party_type=party.party_type,
            balance=balance,
            last_transaction_date=last_date,
            days_since_last_transaction=(reference - last_date).days if last_date else None,
        )
        (receivables if balance > ZERO else payables).append(item)

    receivables.sort(key=lambda item: (-item.balance, item.party_id))
    payables.sort(key=lambda item: (item.balance, item.party_id))
    log.info("Outstanding: %d receivable, %d payable parties", len(receivables), len(payables))
    return OutstandingReport(receivables=tuple(receivables), payables=tuple(payables), anomalies=index.anomalies)


# ---------------------------------------------------------------------------
# Bills and allocations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BillDue:
    """Open amount of one sale or purchase bill."""

    bill_id: str
    voucher_type: VoucherType
    party_id: str
    date: date
    reference: str
    total: Decimal
    allocated: Decimal

    @property
    def due(self) -> Decimal:
        """Remaining amount; negative when the bill is over-allocated."""
        return self.total - self.allocated

    @property
    def is_open(self) -> bool:
        return self.due > BALANCE_EPSILON

    @property
    def is_over_allocated(self) -> bool:
        return self.due < -BALANCE_EPSILON


@dataclass(frozen=True)
class AllocationPlan:
    allocations: Tuple[Allocation, ...]
    unallocated: Decimal

    @property
    def allocated(self) -> Decimal:
        return sum_decimals(allocation.amount for allocation in self.allocations)


@dataclass(frozen=True)
class AllocationIssue:
    voucher_id: str
    bill_id: Optional[str]
    message: str
    excess: Decimal


def _allocated_by_bill(transaction_log: TransactionLog, exclude_voucher_id: Optional[str]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for voucher in (*transaction_log.payments, *transaction_log.receipts):
        if voucher.voucher_id == exclude_voucher_id:
            continue
        if voucher.settlement_type != SettlementType.AGAINST_BILL:
            continue
        for allocation in voucher.allocations:
            totals[allocation.bill_id] += allocation.amount
    return totals


def bill_dues(
    transaction_log: TransactionLog,
    *,
    party_id: Optional[str] = None,
    voucher_type: Optional[VoucherType] = None,
    exclude_voucher_id: Optional[str] = None,
    open_only: bool = False,
) -> Tuple[BillDue, ...]:
    """Compute the due amount of every sale and purchase bill.

    Args:
        transaction_log (TransactionLog): Snapshot to inspect.
        party_id (str | None): Keep only bills owed by or to this party.
        voucher_type (VoucherType | None): ``SALE`` or ``PURCHASE`` to keep
            one side only.
        exclude_voucher_id (str | None): Payment or receipt being edited,
            whose allocations are ignored.
        open_only (bool): Drop bills whose due is within ``BALANCE_EPSILON``
            of zero or negative.

    Returns:
        tuple[BillDue, ...]: Bills ordered oldest first.
    """

    allocated = _allocated_by_bill(transaction_log, exclude_voucher_id)
    bills: List[BillDue] = []
    if voucher_type in (None, VoucherType.SALE):
        for sale in transaction_log.sales:
            bills.append(
                BillDue(
                    bill_id=sale.sale_id,
                    voucher_type=VoucherType.SALE,
                    party_id=sale.primary_debtor_id,
                    date=sale.date,
                    reference=sale.reference,
                    total=sale.billed_amount,
                    allocated=allocated.get(sale.sale_id, ZERO),
                )
            )
    if voucher_type in (None, VoucherType.PURCHASE):
        for purchase in transaction_log.purchases:
            bills.append(
                BillDue(
                    bill_id=purchase.purchase_id,
                    voucher_type=VoucherType.PURCHASE,
                    party_id=purchase.supplier_id,
                    date=purchase.date,
                    reference=purchase.purchase_id,
                    total=purchase.total_goods_value,
                    allocated=allocated.get(purchase.purchase_id, ZERO),
                )
            )

    selected = [
        bill
        for bill in bills
        if (party_id is None or bill.party_id == party_id) and (not open_only or bill.is_open)
    ]
    selected.sort(key=lambda bill: (bill.date, bill.bill_id))
    return tuple(selected)


def auto_allocate(
    transaction_log: TransactionLog,
    party_id: str,
    amount: Decimal,
    *,
    voucher_type: VoucherType = VoucherType.SALE,
    exclude_voucher_id: Optional[str] = None,
) -> AllocationPlan:
    """Spread ``amount`` over the party's open bills, oldest bill first."""

    remaining = amount
    allocations: List[Allocation] = []
    for bill in bill_dues(
        transaction_log,
        party_id=party_id,
        voucher_type=voucher_type,
        exclude_voucher_id=exclude_voucher_id,
        open_only=True,
    ):
        if remaining <= ZERO:
            break
        portion = min(remaining, bill.due)
        allocations.append(Allocation(bill_id=bill.bill_id, amount=portion))
        remaining -= portion
    return AllocationPlan(allocations=tuple(allocations), unallocated=remaining)


def check_allocations(transaction_log: TransactionLog, voucher: Union[Payment, Receipt]) -> Tuple[AllocationIssue, ...]:
    """List the ways ``voucher`` over-allocates.

    The voucher's allocations are compared against its settled amount
    (``amount`` plus cash discount for receipts) and against each bill's due
    computed without the voucher's own stored allocations.
    """

    issues: List[AllocationIssue] = []
    allocated_total = sum_decimals(allocation.amount for allocation in voucher.allocations)
    excess_total = allocated_total - voucher.settled_amount
    if excess_total > BALANCE_EPSILON:
        issues.append(
            AllocationIssue(
                voucher_id=voucher.voucher_id,
                bill_id=None,
                message=f"Allocations {allocated_total} exceed voucher amount {voucher.settled_amount}",
                excess=excess_total,
            )
        )

    bills = {bill.bill_id: bill for bill in bill_dues(transaction_log, exclude_voucher_id=voucher.voucher_id)}
    for allocation in voucher.allocations:
        bill = bills.get(allocation.bill_id)
        if bill is None:
            issues.append(
                AllocationIssue(
                    voucher_id=voucher.voucher_id,
                    bill_id=allocation.bill_id,
                    message=f"Bill '{allocation.bill_id}' not found",
                    excess=allocation.amount,
                )
            )
            continue
        excess = allocation.amount - bill.due
        if excess > BALANCE_EPSILON:
            issues.append(
                AllocationIssue(
                    voucher_id=voucher.voucher_id,
                    bill_id=bill.bill_id,
                    message=f"Allocation {allocation.amount} exceeds due {bill.due} on bill {bill.reference}",
                    excess=excess,
                )
            )
    return tuple(issues)


def validate_allocations(transaction_log: TransactionLog, voucher: Union[Payment, Receipt]) -> None:
    """Raise :class:`AllocationError` when ``voucher`` over-allocates.

    Raises:
        AllocationError: Carrying the issues found by :func:`check_allocations`.
    """

    issues = check_allocations(transaction_log, voucher)
    if issues:
        log.warning("Voucher '%s' rejected with %d allocation issue(s)", voucher.voucher_id, len(issues))
        raise AllocationError(
            f"Voucher '{voucher.voucher_id}' over-allocates: " + "; ".join(issue.message for issue in issues),
            issues,
        )


__all__ = [
    "PartyEffect",
    "PartyEffectIndex",
    "derive_transfer_ledger_entries",
    "iter_party_effects",
    "index_party_effects",
    "StatementEntry",
    "PartyStatement",
    "party_statement",
    "OutstandingBalance",
    "OutstandingReport",
    "compute_outstanding",
    "BillDue",
    "AllocationPlan",
    "AllocationIssue",
    "bill_dues",
    "auto_allocate",
    "check_allocations",
    "validate_allocations",
]
