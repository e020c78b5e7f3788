"""Valuation reporter built on top of the cost-flow replay.

Everything here is a pure function of a :class:`~trade_ledger.cost_flow.CostFlowResult`:
classification, filtered snapshots, per-warehouse totals and the low-stock
alert stream.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import AbstractSet, Iterable, Iterator, List, Optional, Tuple

from . import log
from .constants import ZERO, StockStatus
from .cost_flow import CostFlowResult, LotPosition
from .errors import BusinessRuleViolation
from .records import LotKey, sum_decimals


@dataclass(frozen=True)
class ValuationThresholds:
    """Tunable limits used by :func:`classify_position`."""

    dead_stock_days: int = 180
    dead_stock_turnover: Decimal = Decimal("0.10")
    slow_moving_days: int = 90
    slow_moving_turnover: Decimal = Decimal("0.25")
    fast_moving_turnover: Decimal = Decimal("0.75")
    low_stock_bags: Decimal = Decimal("5")


DEFAULT_THRESHOLDS = ValuationThresholds()


@dataclass(frozen=True)
class ClassifiedPosition:
    position: LotPosition
    status: StockStatus

    @property
    def value(self) -> Decimal:
        """Stock value carried by the position; zero once it holds no weight."""
        if self.position.weight <= ZERO:
            return ZERO
        return self.position.cost


@dataclass(frozen=True)
class StockSnapshot:
    """Filtered, classified view of every position at one point in time."""

    as_of: date
    entries: Tuple[ClassifiedPosition, ...]

    @property
    def total_bags(self) -> Decimal:
        return sum_decimals(entry.position.bags for entry in self.entries if entry.position.weight > ZERO)

    @property
    def total_weight(self) -> Decimal:
        return sum_decimals(entry.position.weight for entry in self.entries if entry.position.weight > ZERO)

    @property
    def total_value(self) -> Decimal:
        return sum_decimals(entry.value for entry in self.entries)

    def with_status(self, status: StockStatus) -> Tuple[ClassifiedPosition, ...]:
        return tuple(entry for entry in self.entries if entry.status == status)


@dataclass(frozen=True)
class WarehouseSummary:
    location_id: str
    lot_count: int
    bags: Decimal
    weight: Decimal
    value: Decimal

    @property
    def average_rate(self) -> Decimal:
        if self.weight <= ZERO:
            return ZERO
        return self.value / self.weight


@dataclass(frozen=True)
class StockAlert:
    """Event emitted for a position that needs attention."""

    lot_number: str
    location_id: str
    status: StockStatus
    bags: Decimal
    weight: Decimal
    message: str


def classify_position(
    position: LotPosition,
    thresholds: ValuationThresholds = DEFAULT_THRESHOLDS,
) -> StockStatus:
    """Return the first matching status for ``position``.

    Rules are evaluated in priority order: Zero Stock, Dead Stock, Low Stock,
    Fast-moving, Slow-moving, In Stock.

    Args:
        position (LotPosition): Position produced by the cost-flow replay.
        thresholds (ValuationThresholds): Day and turnover limits.

    Returns:
        StockStatus: Classification of the position.
    """

    if position.weight <= ZERO:
        return StockStatus.ZERO_STOCK

    turnover = position.turnover_ratio
    days = position.days_in_stock
    if days > thresholds.dead_stock_days and turnover < thresholds.dead_stock_turnover:
        return StockStatus.DEAD_STOCK
    if position.bags <= thresholds.low_stock_bags:
        return StockStatus.LOW_STOCK
    if turnover >= thresholds.fast_moving_turnover:
        return StockStatus.FAST_MOVING
    if days > thresholds.slow_moving_days and turnover < thresholds.slow_moving_turnover:
        return StockStatus.SLOW_MOVING
    return StockStatus.IN_STOCK


def _matches(
    position: LotPosition,
    location_id: Optional[str],
    lot_query: Optional[str],
    first_stocked_from: Optional[date],
    first_stocked_to: Optional[date],
) -> bool:
    if location_id and position.location_id != location_id:
        return False
    if lot_query and lot_query.lower() not in position.lot_number.lower():
        return False
    if first_stocked_from is not None and position.first_date < first_stocked_from:
        return False
    if first_stocked_to is not None and position.first_date > first_stocked_to:
        return False
    return True


def build_snapshot(
    result: CostFlowResult,
    *,
    thresholds: ValuationThresholds = DEFAULT_THRESHOLDS,
    location_id: Optional[str] = None,
    lot_query: Optional[str] = None,
    first_stocked_from: Optional[date] = None,
    first_stocked_to: Optional[date] = None,
    include_closed: bool = False,
    archived: AbstractSet[LotKey] = frozenset(),
) -> StockSnapshot:
    """Classify the positions of ``result`` that pass the given filters.

    Args:
        result (CostFlowResult): Output of the cost-flow replay.
        thresholds (ValuationThresholds): Classification limits.
        location_id (str | None): Keep only positions held at this location.
        lot_query (str | None): Case-insensitive lot number substring.
        first_stocked_from (date | None): Earliest first-stock date to keep.
        first_stocked_to (date | None): Latest first-stock date to keep.
        include_closed (bool): Keep positions that no longer hold bags.
        archived (AbstractSet[LotKey]): Keys hidden from the snapshot.

    Returns:
        StockSnapshot: Classified entries in lot and location order.
    """

    entries: List[ClassifiedPosition] = []
    for position in result.positions:
        if position.key in archived:
            continue
        if position.is_closed and not include_closed:
            continue
        if not _matches(position, location_id, lot_query, first_stocked_from, first_stocked_to):
            continue
        entries.append(ClassifiedPosition(position=position, status=classify_position(position, thresholds)))
    return StockSnapshot(as_of=result.as_of, entries=tuple(entries))


def warehouse_summary(result: CostFlowResult) -> Tuple[WarehouseSummary, ...]:
    """Aggregate live stock per location, sorted by location id."""

    totals = {}
    for position in result.positions:
        if position.weight <= ZERO or position.is_closed:
            continue
        lots, bags, weight, value = totals.get(position.location_id, (0, ZERO, ZERO, ZERO))
        totals[position.location_id] = (
            lots + 1,
            bags + position.bags,
            weight + position.weight,
            value + position.cost,
        )
    return tuple(
        WarehouseSummary(location_id=location, lot_count=lots, bags=bags, weight=weight, value=value)
        for location, (lots, bags, weight, value) in sorted(totals.items())
    )


def iter_stock_alerts(
    positions: Iterable[LotPosition],
    thresholds: ValuationThresholds = DEFAULT_THRESHOLDS,
    *,
    already_notified: AbstractSet[LotKey] = frozenset(),
) -> Iterator[StockAlert]:
    """Yield one alert per low or dead stock position.

    Callers that deduplicate notifications pass the keys they have already
    announced through ``already_notified``; the generator holds no state of
    its own.
    """

    for position in positions:
        if position.key in already_notified:
            continue
        status = classify_position(position, thresholds)
        if status == StockStatus.LOW_STOCK:
            message = f"Lot {position.lot_number} at {position.location_id} is down to {position.bags} bags"
        elif status == StockStatus.DEAD_STOCK:
            message = (
                f"Lot {position.lot_number} at {position.location_id} has been in stock "
                f"{position.days_in_stock} days with turnover {position.turnover_ratio:.2f}"
            )
        else:
            continue
        yield StockAlert(
            lot_number=position.lot_number,
            location_id=position.location_id,
            status=status,
            bags=position.bags,
            weight=position.weight,
            message=message,
        )


def split_archived(
    positions: Iterable[LotPosition],
    archived: AbstractSet[LotKey],
) -> Tuple[Tuple[LotPosition, ...], Tuple[LotPosition, ...]]:
    """Partition ``positions`` into ``(active, archived)``."""

    active: List[LotPosition] = []
    hidden: List[LotPosition] = []
    for position in positions:
        (hidden if position.key in archived else active).append(position)
    return tuple(active), tuple(hidden)


def ensure_archivable(position: LotPosition) -> None:
    """Raise when ``position`` still holds stock and cannot be archived.

    Raises:
        BusinessRuleViolation: If the position is not closed.
    """

    if not position.is_closed:
        log.warning(
            "Refusing to archive lot '%s' at '%s' holding %s bags",
            position.lot_number,
            position.location_id,
            position.bags,
        )
        raise BusinessRuleViolation(
            f"Lot '{position.lot_number}' at '{position.location_id}' still holds "
            f"{position.bags} bags and cannot be archived."
        )


__all__ = [
    "ValuationThresholds",
    "DEFAULT_THRESHOLDS",
    "ClassifiedPosition",
    "StockSnapshot",
    "WarehouseSummary",
    "StockAlert",
    "classify_position",
    "build_snapshot",
    "warehouse_summary",
    "iter_stock_alerts",
    "split_archived",
    "ensure_archivable",
]
