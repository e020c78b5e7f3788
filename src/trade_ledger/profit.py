"""Profit analysis of sale lines against replayed cost of goods sold.

Sale-level amounts (cut, expenses, broker commission) are apportioned to the
lines of a sale by net weight.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from .constants import ZERO
from .cost_flow import CostFlowResult
from .records import Sale, TransactionLog, sum_decimals


@dataclass(frozen=True)
class SaleLineProfit:
    sale_id: str
    line_index: int
    date: date
    customer_id: str
    lot_number: str
    net_weight: Decimal
    goods_value: Decimal
    cut_share: Decimal
    cost_of_goods_sold: Decimal
    expense_share: Decimal
    commission_share: Decimal
    cost_known: bool = True

    @property
    def revenue(self) -> Decimal:
        return self.goods_value - self.cut_share

    @property
    def gross_profit(self) -> Decimal:
        return self.revenue - self.cost_of_goods_sold

    @property
    def net_profit(self) -> Decimal:
        return self.gross_profit - self.expense_share - self.commission_share


@dataclass(frozen=True)
class MonthlyProfit:
    month: str
    sale_count: int
    revenue: Decimal
    cost_of_goods_sold: Decimal
    gross_profit: Decimal
    net_profit: Decimal


@dataclass(frozen=True)
class ProfitReport:
    lines: Tuple[SaleLineProfit, ...]

    @property
    def total_revenue(self) -> Decimal:
        return sum_decimals(line.revenue for line in self.lines)

    @property
    def total_cost(self) -> Decimal:
        return sum_decimals(line.cost_of_goods_sold for line in self.lines)

    @property
    def total_gross_profit(self) -> Decimal:
        return sum_decimals(line.gross_profit for line in self.lines)

    @property
    def total_net_profit(self) -> Decimal:
        return sum_decimals(line.net_profit for line in self.lines)

    @property
    def sale_count(self) -> int:
        return len({line.sale_id for line in self.lines})

    @property
    def average_profit_per_sale(self) -> Decimal:
        count = self.sale_count
        if not count:
            return ZERO
        return self.total_net_profit / count

    def best_sale(self) -> Optional[Tuple[str, Decimal]]:
        """Sale id with the highest net profit, with that profit."""
        totals = OrderedDict()
        for line in self.lines:
            totals[line.sale_id] = totals.get(line.sale_id, ZERO) + line.net_profit
        if not totals:
            return None
        return max(totals.items(), key=lambda item: item[1])

    def monthly(self) -> Tuple[MonthlyProfit, ...]:
        buckets = OrderedDict()
        for line in sorted(self.lines, key=lambda item: (item.date, item.sale_id, item.line_index)):
            buckets.setdefault(line.date.strftime("%Y-%m"), []).append(line)
        return tuple(
            MonthlyProfit(
                month=month,
                sale_count=len({line.sale_id for line in lines}),
                revenue=sum_decimals(line.revenue for line in lines),
                cost_of_goods_sold=sum_decimals(line.cost_of_goods_sold for line in lines),
                gross_profit=sum_decimals(line.gross_profit for line in lines),
                net_profit=sum_decimals(line.net_profit for line in lines),
            )
            for month, lines in buckets.items()
        )


def _share(total: Decimal, weight: Decimal, sale_weight: Decimal, line_count: int) -> Decimal:
    if total == ZERO:
        return ZERO
    if sale_weight <= ZERO:
        return total / line_count
    return total * weight / sale_weight


def _sale_line_profits(sale: Sale, cost_flow: CostFlowResult) -> List[SaleLineProfit]:
    sale_weight = sale.total_net_weight
    line_count = len(sale.lines)
    profits = []
    for index, line in enumerate(sale.lines):
        cogs = cost_flow.sale_line_cost(sale.sale_id, index)
        cost_known = True
        if cogs is None:
            cogs = line.cost_of_goods_sold
        if cogs is None:
            cogs = ZERO
            cost_known = False
        profits.append(
            SaleLineProfit(
                sale_id=sale.sale_id,
                line_index=index,
                date=sale.date,
                customer_id=sale.customer_id,
                lot_number=line.lot_number,
                net_weight=line.net_weight,
                goods_value=line.goods_value,
                cut_share=_share(sale.cut_amount, line.net_weight, sale_weight, line_count),
                cost_of_goods_sold=cogs,
                expense_share=_share(sale.total_expenses, line.net_weight, sale_weight, line_count),
                commission_share=_share(sale.broker_commission, line.net_weight, sale_weight, line_count),
                cost_known=cost_known,
            )
        )
    return profits


def build_profit_report(
    transaction_log: TransactionLog,
    cost_flow: CostFlowResult,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    customer_id: Optional[str] = None,
) -> ProfitReport:
    """Compute per-line profit for the sales dated within ``[start, end]``."""

    lines: List[SaleLineProfit] = []
    for sale in transaction_log.sales:
        if start is not None and sale.date < start:
            continue
        if end is not None and sale.date > end:
            continue
        if customer_id and customer_id not in (sale.customer_id, sale.broker_id):
            continue
        lines.extend(_sale_line_profits(sale, cost_flow))
    return ProfitReport(lines=tuple(lines))


__all__ = ["SaleLineProfit", "MonthlyProfit", "ProfitReport", "build_profit_report"]
