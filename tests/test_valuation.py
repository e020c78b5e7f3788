"""Unit tests for stock classification, snapshots and alerts."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from trade_ledger.constants import PositionSource, StockStatus
from trade_ledger.cost_flow import LotPosition, MovementTotals, replay_cost_flow
from trade_ledger.errors import BusinessRuleViolation
from trade_ledger.valuation import (
    ValuationThresholds,
    build_snapshot,
    classify_position,
    ensure_archivable,
    iter_stock_alerts,
    split_archived,
    warehouse_summary,
)


def D(value) -> Decimal:
    return Decimal(str(value))


def make_position(
    *,
    lot: str = "L1",
    location: str = "WH-MAIN",
    bags="20",
    weight="1000",
    cost="20000",
    days: int = 10,
    purchased_bags="20",
    sold_bags="0",
    first_date: date = date(2024, 4, 1),
) -> LotPosition:
    return LotPosition(
        lot_number=lot,
        location_id=location,
        source=PositionSource.PURCHASE,
        first_date=first_date,
        supplier_id="SUP-1",
        bags=D(bags),
        weight=D(weight),
        cost=D(cost),
        days_in_stock=days,
        purchased=MovementTotals(D(purchased_bags), D(weight)),
        transferred_in=MovementTotals(),
        transferred_out=MovementTotals(),
        sold=MovementTotals(D(sold_bags), D(0)),
        purchase_returned=MovementTotals(),
        sale_returned=MovementTotals(),
    )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"weight": "0", "bags": "0"}, StockStatus.ZERO_STOCK),
        ({"weight": "-5"}, StockStatus.ZERO_STOCK),
        ({"days": 200, "purchased_bags": "100", "sold_bags": "5", "bags": "3"}, StockStatus.DEAD_STOCK),
        ({"bags": "5", "purchased_bags": "100", "sold_bags": "95"}, StockStatus.LOW_STOCK),
        ({"purchased_bags": "100", "sold_bags": "80", "bags": "20"}, StockStatus.FAST_MOVING),
        ({"days": 120, "purchased_bags": "100", "sold_bags": "20", "bags": "80"}, StockStatus.SLOW_MOVING),
        ({"days": 120, "purchased_bags": "100", "sold_bags": "40", "bags": "60"}, StockStatus.IN_STOCK),
        ({"days": 10}, StockStatus.IN_STOCK),
    ],
)
def test_classify_position_priority_order(overrides, expected):
    """Classification should return the first matching rule."""

    assert classify_position(make_position(**overrides)) == expected


def test_dead_stock_wins_over_low_stock():
    """An old, unmoved lot with few bags should be dead rather than low."""

    position = make_position(days=181, bags="2", purchased_bags="2", sold_bags="0")
    assert classify_position(position) == StockStatus.DEAD_STOCK


def test_classify_position_respects_custom_thresholds():
    thresholds = ValuationThresholds(dead_stock_days=30, dead_stock_turnover=D("0.5"))
    position = make_position(days=31, purchased_bags="100", sold_bags="40", bags="60")
    assert classify_position(position, thresholds) == StockStatus.DEAD_STOCK


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def test_build_snapshot_classifies_live_positions(trading_log):
    result = replay_cost_flow(trading_log, as_of=date(2024, 5, 1))
    snapshot = build_snapshot(result)

    assert [entry.position.key for entry in snapshot.entries] == [("A1", "WH-MAIN"), ("A1-T", "WH-2")]
    assert snapshot.total_weight == D(4000)
    assert snapshot.total_value == D(50250) + D(30300)
    assert snapshot.as_of == date(2024, 5, 1)


def test_build_snapshot_filters_by_location_and_lot_substring(trading_log):
    result = replay_cost_flow(trading_log, as_of=date(2024, 5, 1))

    by_location = build_snapshot(result, location_id="WH-2")
    assert [entry.position.lot_number for entry in by_location.entries] == ["A1-T"]

    by_lot = build_snapshot(result, lot_query="a1-t")
    assert [entry.position.location_id for entry in by_lot.entries] == ["WH-2"]


def test_build_snapshot_filters_by_first_stock_window(trading_log):
    result = replay_cost_flow(trading_log, as_of=date(2024, 5, 1))
    assert build_snapshot(result, first_stocked_from=date(2024, 4, 11)).entries == ()
    assert len(build_snapshot(result, first_stocked_to=date(2024, 4, 10)).entries) == 2


def test_build_snapshot_hides_archived_and_closed_positions(trading_log):
    result = replay_cost_flow(trading_log, as_of=date(2024, 5, 1))
    snapshot = build_snapshot(result, archived=frozenset({("A1", "WH-MAIN")}))
    assert [entry.position.key for entry in snapshot.entries] == [("A1-T", "WH-2")]


def test_warehouse_summary_groups_live_stock(trading_log):
    result = replay_cost_flow(trading_log, as_of=date(2024, 5, 1))
    summaries = warehouse_summary(result)

    assert [summary.location_id for summary in summaries] == ["WH-2", "WH-MAIN"]
    wh2, main = summaries
    assert wh2.bags == D(30)
    assert wh2.value == D(30300)
    assert wh2.average_rate == D("20.2")
    assert main.lot_count == 1
    assert main.weight == D(2500)


# ---------------------------------------------------------------------------
# Alerts and archive helpers
# ---------------------------------------------------------------------------


def test_iter_stock_alerts_yields_low_and_dead_positions():
    positions = [
        make_position(lot="LOW", bags="3", purchased_bags="100", sold_bags="97"),
        make_position(lot="DEAD", days=365, bags="50", purchased_bags="50"),
        make_position(lot="OK"),
    ]
    alerts = list(iter_stock_alerts(positions))
    assert [(alert.lot_number, alert.status) for alert in alerts] == [
        ("LOW", StockStatus.LOW_STOCK),
        ("DEAD", StockStatus.DEAD_STOCK),
    ]
    assert "3 bags" in alerts[0].message


def test_iter_stock_alerts_skips_already_notified_keys():
    position = make_position(lot="LOW", bags="1", purchased_bags="100", sold_bags="99")
    alerts = iter_stock_alerts([position], already_notified=frozenset({position.key}))
    assert list(alerts) == []


def test_split_archived_partitions_positions():
    active = make_position(lot="A")
    hidden = make_position(lot="B")
    assert split_archived([active, hidden], frozenset({hidden.key})) == ((active,), (hidden,))


def test_ensure_archivable_rejects_positions_with_stock():
    with pytest.raises(BusinessRuleViolation, match="cannot be archived"):
        ensure_archivable(make_position(bags="1"))


def test_ensure_archivable_accepts_closed_positions():
    ensure_archivable(make_position(bags="0.0004", weight="0", cost="0"))
