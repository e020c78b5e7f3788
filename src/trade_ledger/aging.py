"""Aging analyzer for open sale bills."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from . import log
from .constants import AgingBucket, VoucherType
from .party_ledger import BillDue, bill_dues
from .records import TransactionLog, sum_decimals


BUCKET_ORDER: Tuple[AgingBucket, ...] = (
    AgingBucket.CURRENT,
    AgingBucket.DAYS_31_60,
    AgingBucket.DAYS_61_90,
    AgingBucket.OVER_90,
)


def bucket_for(days_overdue: int) -> AgingBucket:
    """Map days since the bill date to its bucket; future-dated bills are current."""

    if days_overdue <= 30:
        return AgingBucket.CURRENT
    if days_overdue <= 60:
        return AgingBucket.DAYS_31_60
    if days_overdue <= 90:
        return AgingBucket.DAYS_61_90
    return AgingBucket.OVER_90


@dataclass(frozen=True)
class AgedBill:
    bill: BillDue
    days_overdue: int
    bucket: AgingBucket

    @property
    def due(self) -> Decimal:
        return self.bill.due


@dataclass(frozen=True)
class BucketSummary:
    bucket: AgingBucket
    bills: Tuple[AgedBill, ...]

    @property
    def total(self) -> Decimal:
        return sum_decimals(item.due for item in self.bills)

    @property
    def count(self) -> int:
        return len(self.bills)


@dataclass(frozen=True)
class AgingReport:
    """Open sale bills grouped into days-overdue buckets."""

    as_of: date
    buckets: Tuple[BucketSummary, ...]

    @property
    def total(self) -> Decimal:
        return sum_decimals(summary.total for summary in self.buckets)

    def bucket(self, bucket: AgingBucket) -> BucketSummary:
        for summary in self.buckets:
            if summary.bucket == bucket:
                return summary
        raise KeyError(bucket)

    def by_party(self) -> Dict[str, Decimal]:
        """Total open amount per party across every bucket."""
        totals: Dict[str, Decimal] = defaultdict(Decimal)
        for summary in self.buckets:
            for item in summary.bills:
                totals[item.bill.party_id] += item.due
        return dict(totals)


def build_aging_report(
    transaction_log: TransactionLog,
    *,
    as_of: Optional[date] = None,
    party_id: Optional[str] = None,
) -> AgingReport:
    """Bucket every open sale bill by ``as_of - bill date``.

    Args:
        transaction_log (TransactionLog): Snapshot to inspect.
        as_of (date | None): Reference day, defaults to today.
        party_id (str | None): Restrict the report to one debtor.

    Returns:
        AgingReport: One summary per bucket, always in Current, 31-60, 61-90,
            90+ order, each listing its bills oldest first.
    """

    reference = as_of or date.today()
    grouped: Dict[AgingBucket, List[AgedBill]] = {bucket: [] for bucket in BUCKET_ORDER}
    for bill in bill_dues(transaction_log, party_id=party_id, voucher_type=VoucherType.SALE, open_only=True):
        days = (reference - bill.date).days
        bucket = bucket_for(days)
        grouped[bucket].append(AgedBill(bill=bill, days_overdue=days, bucket=bucket))

    report = AgingReport(
        as_of=reference,
        buckets=tuple(BucketSummary(bucket=bucket, bills=tuple(grouped[bucket])) for bucket in BUCKET_ORDER),
    )
    log.info("Aging report as of %s covers %s outstanding", reference.isoformat(), report.total)
    return report


__all__ = [
    "BUCKET_ORDER",
    "bucket_for",
    "AgedBill",
    "BucketSummary",
    "AgingReport",
    "build_aging_report",
]
