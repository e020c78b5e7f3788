"""Cost-flow ledger: weighted-average landed cost per lot and location.

The ledger replays purchases, location transfers, sales and returns in
chronological order and keeps, for every ``(lot_number, location_id)`` pair,
the bags, weight and accumulated cost currently held there.

Rules:

- Same-day vouchers are processed Purchase, LocationTransfer, SaleReturn,
  Sale, PurchaseReturn; vouchers of one kind keep their input order.
- Issues (sales, transfers out) are costed at the position's current
  weighted-average rate ``cost / weight``.
- A transfer books the moved cost plus its own per-kg expense into the
  destination, so ``cost_in == cost_out + per_kg_expense * weight``.
- Sale returns restore the cost basis consumed by the original sale line,
  never the lot's current rate.
- A sale return dated the same day as its sale waits until that sale has
  been costed.
- Zero-weight positions cost at rate 0; dangling references are skipped.
  Both are reported as :class:`Anomaly` records instead of raising.
- An issue never takes more cost than the position holds, and cost left on
  a position whose weight reaches zero is written off. Accumulated cost
  never goes below zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from . import log
from .constants import (
    CLOSED_POSITION_EPSILON,
    COST_FLOW_ORDER,
    ZERO,
    AnomalyKind,
    PositionSource,
    VoucherType,
)
from .records import (
    LocationTransfer,
    LotKey,
    Purchase,
    PurchaseReturn,
    Sale,
    SaleReturn,
    TransactionLog,
)


# Arithmetic residue below this magnitude is snapped to zero.
_RESIDUE = Decimal("1e-9")

_ORDER_INDEX = {voucher_type: index for index, voucher_type in enumerate(COST_FLOW_ORDER)}


@dataclass(frozen=True)
class Anomaly:
    """Data-integrity finding recorded while replaying the log."""

    kind: AnomalyKind
    voucher_type: VoucherType
    voucher_id: str
    message: str
    lot_key: Optional[LotKey] = None


@dataclass(frozen=True)
class MovementTotals:
    """Cumulative bags and weight for one kind of stock movement."""

    bags: Decimal = ZERO
    weight: Decimal = ZERO


@dataclass(frozen=True)
class TransferMovement:
    """Cost booked out of the source and into the destination for one item."""

    transfer_id: str
    item_index: int
    source_key: LotKey
    destination_key: LotKey
    net_weight: Decimal
    cost_moved_out: Decimal
    expense_added: Decimal
    cost_booked_in: Decimal


@dataclass(frozen=True)
class LotPosition:
    """Read-only view of one lot at one location after the replay."""

    lot_number: str
    location_id: str
    source: PositionSource
    first_date: date
    supplier_id: Optional[str]
    bags: Decimal
    weight: Decimal
    cost: Decimal
    days_in_stock: int
    purchased: MovementTotals
    transferred_in: MovementTotals
    transferred_out: MovementTotals
    sold: MovementTotals
    purchase_returned: MovementTotals
    sale_returned: MovementTotals
    anomalies: Tuple[Anomaly, ...] = ()

    @property
    def key(self) -> LotKey:
        return (self.lot_number, self.location_id)

    @property
    def effective_rate(self) -> Decimal:
        """Cost per kg; zero when the position holds no weight."""
        if self.weight <= ZERO:
            return ZERO
        return self.cost / self.weight

    @property
    def turnover_ratio(self) -> Decimal:
        """Bags moved out (sold or transferred) over bags brought in."""
        inward = self.purchased.bags + self.transferred_in.bags
        if inward <= ZERO:
            return ZERO
        return (self.sold.bags + self.transferred_out.bags) / inward

    @property
    def is_closed(self) -> bool:
        return abs(self.bags) < CLOSED_POSITION_EPSILON

    @property
    def has_anomaly(self) -> bool:
        return bool(self.anomalies)


@dataclass(frozen=True)
class CostFlowResult:
    """Outcome of a cost-flow replay.

    ``positions`` holds every position that ever received stock, sorted by
    lot and location. ``sale_costs`` maps ``(sale_id, line_index)`` to the
    cost of goods sold computed during the replay.
    """

    positions: Tuple[LotPosition, ...]
    sale_costs: Mapping[Tuple[str, int], Decimal]
    transfer_movements: Tuple[TransferMovement, ...]
    anomalies: Tuple[Anomaly, ...]
    as_of: date
    _by_key: Dict[LotKey, LotPosition] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_key", {position.key: position for position in self.positions})

    def position(self, lot_number: str, location_id: str) -> Optional[LotPosition]:
        return self._by_key.get((lot_number, location_id))

    def current_stock(self) -> Tuple[LotPosition, ...]:
        """Positions that still hold bags."""
        return tuple(position for position in self.positions if not position.is_closed)

    def closed_positions(self) -> Tuple[LotPosition, ...]:
        return tuple(position for position in self.positions if position.is_closed)

    def sale_line_cost(self, sale_id: str, line_index: int) -> Optional[Decimal]:
        return self.sale_costs.get((sale_id, line_index))


class _Movement:
    __slots__ = ("bags", "weight")

    def __init__(self) -> None:
        self.bags = ZERO
        self.weight = ZERO

    def add(self, bags: Decimal, weight: Decimal) -> None:
        self.bags += bags
        self.weight += weight

    def freeze(self) -> MovementTotals:
        return MovementTotals(bags=self.bags, weight=self.weight)


@dataclass
class _PositionState:
    """Mutable accumulator for one position; never exposed outside the replay."""

    lot_number: str
    location_id: str
    source: PositionSource
    first_date: date
    supplier_id: Optional[str] = None
    bags: Decimal = ZERO
    weight: Decimal = ZERO
    cost: Decimal = ZERO
    purchased: _Movement = field(default_factory=_Movement)
    transferred_in: _Movement = field(default_factory=_Movement)
    transferred_out: _Movement = field(default_factory=_Movement)
    sold: _Movement = field(default_factory=_Movement)
    purchase_returned: _Movement = field(default_factory=_Movement)
    sale_returned: _Movement = field(default_factory=_Movement)
    anomalies: List[Anomaly] = field(default_factory=list)

    @property
    def key(self) -> LotKey:
        return (self.lot_number, self.location_id)

    @property
    def effective_rate(self) -> Decimal:
        if self.weight <= ZERO:
            return ZERO
        return self.cost / self.weight

    def receive(self, bags: Decimal, weight: Decimal, cost: Decimal) -> None:
        self.bags += bags
        self.weight += weight
        self.cost += cost

    def issue(self, bags: Decimal, weight: Decimal, cost: Decimal) -> Tuple[Decimal, Optional[str]]:
        """Remove stock, taking at most the cost the position holds.

        Returns:
            tuple[Decimal, str | None]: Cost actually taken out and a
                description of any negative balance.
        """
        problems = []
        available = max(self.cost, ZERO)
        if cost > available:
            if cost - available >= _RESIDUE:
                problems.append(f"cost short by {cost - available}")
            cost = available

        self.bags -= bags
        self.weight -= weight
        self.cost -= cost
        if abs(self.bags) < _RESIDUE:
            self.bags = ZERO
        if abs(self.weight) < _RESIDUE:
            self.weight = ZERO
        if abs(self.cost) < _RESIDUE:
            self.cost = ZERO

        if self.cost < ZERO:
            problems.append(f"cost {self.cost} clamped to 0")
            self.cost = ZERO
        if self.weight < -CLOSED_POSITION_EPSILON:
            problems.append(f"weight {self.weight}")
        if self.bags < -CLOSED_POSITION_EPSILON:
            problems.append(f"bags {self.bags}")
        return cost, ", ".join(problems) or None

    def write_off_residue(self) -> Decimal:
        """Drop cost stranded on a position that holds no weight."""
        if self.weight > ZERO or self.cost <= ZERO:
            return ZERO
        residue = self.cost
        self.cost = ZERO
        return residue

    def snapshot(self, as_of: date) -> LotPosition:
        return LotPosition(
            lot_number=self.lot_number,
            location_id=self.location_id,
            source=self.source,
            first_date=self.first_date,
            supplier_id=self.supplier_id,
            bags=self.bags,
            weight=self.weight,
            cost=self.cost,
            days_in_stock=(as_of - self.first_date).days,
            purchased=self.purchased.freeze(),
            transferred_in=self.transferred_in.freeze(),
            transferred_out=self.transferred_out.freeze(),
            sold=self.sold.freeze(),
            purchase_returned=self.purchase_returned.freeze(),
            sale_returned=self.sale_returned.freeze(),
            anomalies=tuple(self.anomalies),
        )


def _in_scope(when: date, start: Optional[date], end: Optional[date]) -> bool:
    if start is not None and when < start:
        return False
    if end is not None and when > end:
        return False
    return True


class CostFlowLedger:
    """Replays one transaction log into lot-location positions.

    A ledger instance is single-use: :meth:`replay` builds fresh state every
    time it is called, so two replays of the same log give identical results.
    """

    def __init__(
        self,
        transaction_log: TransactionLog,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> None:
        self._log = transaction_log
        self._start = start
        self._end = end
        self._purchases = transaction_log.purchases_by_id()
        self._sales = transaction_log.sales_by_id()
        self._positions: Dict[LotKey, _PositionState] = {}
        self._sale_costs: Dict[Tuple[str, int], Decimal] = {}
        self._movements: List[TransferMovement] = []
        self._anomalies: List[Anomaly] = []
        self._costed_sales: Set[str] = set()
        self._deferred_returns: Dict[str, List[SaleReturn]] = {}

    def replay(self, *, as_of: Optional[date] = None) -> CostFlowResult:
        """Process every in-scope voucher and return the resulting positions.

        Args:
            as_of (date | None): Reference date for ``days_in_stock``.
                Defaults to today.

        Returns:
            CostFlowResult: Frozen view of positions, per-line sale costs,
                transfer movements and anomalies.
        """

        self._positions = {}
        self._sale_costs = {}
        self._movements = []
        self._anomalies = []
        self._costed_sales = set()
        self._deferred_returns = {}

        handlers = {
            VoucherType.PURCHASE: self._apply_purchase,
            VoucherType.TRANSFER: self._apply_transfer,
            VoucherType.SALE_RETURN: self._apply_sale_return,
            VoucherType.SALE: self._apply_sale,
            VoucherType.PURCHASE_RETURN: self._apply_purchase_return,
        }
        for _, _, _, voucher_type, record in self._ordered_vouchers():
            handlers[voucher_type](record)

        reference = as_of or date.today()
        positions = tuple(
            state.snapshot(reference)
            for _, state in sorted(self._positions.items(), key=lambda item: item[0])
        )
        log.debug(
            "Cost-flow replay produced %d positions (%d anomalies)",
            len(positions),
            len(self._anomalies),
        )
        return CostFlowResult(
            positions=positions,
            sale_costs=dict(self._sale_costs),
            transfer_movements=tuple(self._movements),
            anomalies=tuple(self._anomalies),
            as_of=reference,
        )

    def _ordered_vouchers(self) -> List[tuple]:
        sources: Iterable[Tuple[VoucherType, Iterable]] = (
            (VoucherType.PURCHASE, self._log.purchases),
            (VoucherType.TRANSFER, self._log.transfers),
            (VoucherType.SALE_RETURN, self._log.sale_returns),
            (VoucherType.SALE, self._log.sales),
            (VoucherType.PURCHASE_RETURN, self._log.purchase_returns),
        )
        events = []
        for voucher_type, records in sources:
            for sequence, record in enumerate(records):
                if _in_scope(record.date, self._start, self._end):
                    events.append((record.date, _ORDER_INDEX[voucher_type], sequence, voucher_type, record))
        events.sort(key=lambda event: event[:3])
        return events

    def _flag(
        self,
        kind: AnomalyKind,
        voucher_type: VoucherType,
        voucher_id: str,
        message: str,
        state: Optional[_PositionState] = None,
        lot_key: Optional[LotKey] = None,
    ) -> None:
        anomaly = Anomaly(
            kind=kind,
            voucher_type=voucher_type,
            voucher_id=voucher_id,
            message=message,
            lot_key=state.key if state is not None else lot_key,
        )
        self._anomalies.append(anomaly)
        if state is not None:
            state.anomalies.append(anomaly)
        log.warning("%s %s '%s': %s", kind.value, voucher_type.value, voucher_id, message)

    def _issue(self, state: _PositionState, voucher_type: VoucherType, voucher_id: str,
               bags: Decimal, weight: Decimal, cost: Decimal) -> Decimal:
        taken, problem = state.issue(bags, weight, cost)
        if problem:
            self._flag(AnomalyKind.NEGATIVE_BALANCE, voucher_type, voucher_id,
                       f"position went negative ({problem})", state)
        residue = state.write_off_residue()
        if residue:
            self._flag(AnomalyKind.ZERO_WEIGHT, voucher_type, voucher_id,
                       f"{residue} of cost left on {state.weight} kg written off", state)
        return taken

    def _issue_rate(self, state: _PositionState, voucher_type: VoucherType, voucher_id: str) -> Decimal:
        if state.weight <= ZERO:
            self._flag(AnomalyKind.ZERO_WEIGHT, voucher_type, voucher_id,
                       f"issued from a position holding {state.weight} kg; costed at 0", state)
            return ZERO
        return state.effective_rate

    def _apply_purchase(self, purchase: Purchase) -> None:
        for line in purchase.lines:
            key = (line.lot_number, purchase.location_id)
            state = self._positions.get(key)
            if state is None:
                state = _PositionState(
                    lot_number=line.lot_number,
                    location_id=purchase.location_id,
                    source=PositionSource.PURCHASE,
                    first_date=purchase.date,
                    supplier_id=purchase.supplier_id,
                )
                self._positions[key] = state
            elif purchase.date < state.first_date:
                state.first_date = purchase.date
            state.receive(line.bags, line.net_weight, line.net_weight * purchase.landed_cost_per_kg(line))
            state.purchased.add(line.bags, line.net_weight)

    def _apply_transfer(self, transfer: LocationTransfer) -> None:
        per_kg_expense = transfer.per_kg_expense
        for index, item in enumerate(transfer.items):
            source_key = (item.original_lot_number, transfer.from_warehouse_id)
            source = self._positions.get(source_key)
            if source is None:
                self._flag(AnomalyKind.DANGLING_REFERENCE, VoucherType.TRANSFER, transfer.transfer_id,
                           f"no stock of lot '{item.original_lot_number}' at '{transfer.from_warehouse_id}'",
                           lot_key=source_key)
                continue

            rate = self._issue_rate(source, VoucherType.TRANSFER, transfer.transfer_id)
            cost_moved = self._issue(source, VoucherType.TRANSFER, transfer.transfer_id,
                                     item.bags, item.net_weight, item.net_weight * rate)
            source.transferred_out.add(item.bags, item.net_weight)

            destination_key = (item.new_lot_number, transfer.to_warehouse_id)
            destination = self._positions.get(destination_key)
            if destination is None:
                destination = _PositionState(
                    lot_number=item.new_lot_number,
                    location_id=transfer.to_warehouse_id,
                    source=PositionSource.TRANSFER,
                    first_date=source.first_date,
                    supplier_id=source.supplier_id,
                )
                self._positions[destination_key] = destination
            expense_added = per_kg_expense * item.net_weight
            destination.receive(item.bags, item.net_weight, cost_moved + expense_added)
            destination.transferred_in.add(item.bags, item.net_weight)

            self._movements.append(
                TransferMovement(
                    transfer_id=transfer.transfer_id,
                    item_index=index,
                    source_key=source_key,
                    destination_key=destination_key,
                    net_weight=item.net_weight,
                    cost_moved_out=cost_moved,
                    expense_added=expense_added,
                    cost_booked_in=cost_moved + expense_added,
                )
            )

    def _apply_sale(self, sale: Sale) -> None:
        for index, line in enumerate(sale.lines):
            key = (line.lot_number, sale.location_id)
            state = self._positions.get(key)
            if state is None:
                self._flag(AnomalyKind.DANGLING_REFERENCE, VoucherType.SALE, sale.sale_id,
                           f"no stock of lot '{line.lot_number}' at '{sale.location_id}'", lot_key=key)
                continue
            rate = self._issue_rate(state, VoucherType.SALE, sale.sale_id)
            cogs = self._issue(state, VoucherType.SALE, sale.sale_id,
                               line.bags, line.net_weight, line.net_weight * rate)
            state.sold.add(line.bags, line.net_weight)
            self._sale_costs[(sale.sale_id, index)] = cogs

        self._costed_sales.add(sale.sale_id)
        for sale_return in self._deferred_returns.pop(sale.sale_id, ()):
            self._apply_sale_return(sale_return)

    def _apply_sale_return(self, sale_return: SaleReturn) -> None:
        sale = self._sales.get(sale_return.original_sale_id)
        if sale is None:
            self._flag(AnomalyKind.DANGLING_REFERENCE, VoucherType.SALE_RETURN, sale_return.return_id,
                       f"original sale '{sale_return.original_sale_id}' not found")
            return
        if sale.sale_id not in self._costed_sales and sale.date == sale_return.date:
            self._deferred_returns.setdefault(sale.sale_id, []).append(sale_return)
            return
        index = sale.line_index_for_lot(sale_return.original_lot_number)
        key = (sale_return.original_lot_number, sale.location_id)
        state = self._positions.get(key)
        if index is None or state is None:
            self._flag(AnomalyKind.DANGLING_REFERENCE, VoucherType.SALE_RETURN, sale_return.return_id,
                       f"lot '{sale_return.original_lot_number}' not found on sale '{sale.sale_id}'", lot_key=key)
            return

        line = sale.lines[index]
        line_cost = self._sale_costs.get((sale.sale_id, index), line.cost_of_goods_sold)
        if line_cost is None or line.net_weight <= ZERO:
            self._flag(AnomalyKind.ZERO_WEIGHT, VoucherType.SALE_RETURN, sale_return.return_id,
                       "original sale line has no cost basis; restored at 0", state)
            restored_cost = ZERO
        else:
            restored_cost = sale_return.net_weight_returned * (line_cost / line.net_weight)
        state.receive(sale_return.bags_returned, sale_return.net_weight_returned, restored_cost)
        state.sale_returned.add(sale_return.bags_returned, sale_return.net_weight_returned)

    def _apply_purchase_return(self, purchase_return: PurchaseReturn) -> None:
        purchase = self._purchases.get(purchase_return.original_purchase_id)
        if purchase is None:
            self._flag(AnomalyKind.DANGLING_REFERENCE, VoucherType.PURCHASE_RETURN, purchase_return.return_id,
                       f"original purchase '{purchase_return.original_purchase_id}' not found")
            return
        key = (purchase_return.original_lot_number, purchase.location_id)
        state = self._positions.get(key)
        if state is None:
            self._flag(AnomalyKind.DANGLING_REFERENCE, VoucherType.PURCHASE_RETURN, purchase_return.return_id,
                       f"no stock of lot '{purchase_return.original_lot_number}' at '{purchase.location_id}'",
                       lot_key=key)
            return
        cost = purchase_return.net_weight_returned * purchase_return.original_purchase_rate
        self._issue(state, VoucherType.PURCHASE_RETURN, purchase_return.return_id,
                    purchase_return.bags_returned, purchase_return.net_weight_returned, cost)
        state.purchase_returned.add(purchase_return.bags_returned, purchase_return.net_weight_returned)


def replay_cost_flow(
    transaction_log: TransactionLog,
    *,
    as_of: Optional[date] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> CostFlowResult:
    """Replay ``transaction_log`` and return every lot-location position.

    Args:
        transaction_log (TransactionLog): Immutable snapshot of the store.
        as_of (date | None): Reference date for ``days_in_stock``.
        start (date | None): Ignore vouchers dated before this day.
        end (date | None): Ignore vouchers dated after this day.

    Returns:
        CostFlowResult: Positions, per-line sale costs, transfer movements
            and anomalies.
    """

    return CostFlowLedger(transaction_log, start=start, end=end).replay(as_of=as_of)


__all__ = [
    "Anomaly",
    "MovementTotals",
    "TransferMovement",
    "LotPosition",
    "CostFlowResult",
    "CostFlowLedger",
    "replay_cost_flow",
]
