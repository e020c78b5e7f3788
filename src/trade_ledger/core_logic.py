"""Orchestration layer for the trade ledger.

This module binds the workbook-backed data layer to the pure replay engines.
A :class:`RuntimeContext` owns the loaded settings, the live workbook and a
per-context cache of derived results, so repeated reports over the same
workbook do not re-read worksheets or replay the log twice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .aging import AgingReport, build_aging_report
from .constants import EXPECTED_SCHEMA_VERSION, PartyType, VoucherType
from .cost_flow import CostFlowResult, LotPosition, replay_cost_flow
from .errors import BusinessRuleViolation, MissingReferenceError
from .party_ledger import (
    BillDue,
    OutstandingReport,
    PartyEffectIndex,
    PartyStatement,
    bill_dues,
    compute_outstanding,
    index_party_effects,
    party_statement,
)
from .profit import ProfitReport, build_profit_report
from .records import MasterParty, TransactionLog
from .valuation import (
    StockAlert,
    StockSnapshot,
    ValuationThresholds,
    WarehouseSummary,
    build_snapshot,
    ensure_archivable,
    iter_stock_alerts,
    split_archived,
    warehouse_summary,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by reports."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Cache buckets
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries keyed by domain area (``log``,
    ``cost_flow``, ``party_effects``) that store precomputed results.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for the requested bucket.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after the workbook changed.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_log_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction log bucket on demand.

    Returns:
        dict[str, Any]: Bucket holding the ``all`` :class:`TransactionLog` and a
            ``parties_by_id`` lookup.
    """

    bucket = _get_cache_bucket(context, "log")
    if "all" not in bucket:
        transaction_log = data_manager.load_transaction_log(context.workbook)
        bucket["all"] = transaction_log
        bucket["parties_by_id"] = transaction_log.parties_by_id()
        log.debug("Populated log cache with %d parties", len(transaction_log.parties))
    return bucket


def _ensure_party_effects_cache(context: RuntimeContext) -> PartyEffectIndex:
    bucket = _get_cache_bucket(context, "party_effects")
    if "index" not in bucket:
        bucket["index"] = index_party_effects(get_transaction_log(context))
        log.debug("Populated party effects cache for %d parties", len(bucket["index"].by_party))
    return bucket["index"]


def _ensure_cost_flow_cache(context: RuntimeContext, as_of: date) -> CostFlowResult:
    bucket = _get_cache_bucket(context, "cost_flow")
    key = as_of.isoformat()
    if key not in bucket:
        bucket[key] = replay_cost_flow(get_transaction_log(context), as_of=as_of)
        log.debug("Populated cost flow cache for %s", key)
    return bucket[key]


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context with an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before running reports.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to pick up external edits.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an empty
            cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_transaction_log(context: RuntimeContext) -> TransactionLog:
    return _ensure_log_cache(context)["all"]


def list_parties(context: RuntimeContext, *, party_type: Optional[PartyType] = None) -> List[MasterParty]:
    """Return master parties, optionally restricted to one type."""

    parties = get_transaction_log(context).parties
    if party_type is None:
        return list(parties)
    return [party for party in parties if party.party_type == party_type]


def get_party(context: RuntimeContext, party_id: str) -> MasterParty:
    """Return a party by identifier.

    Raises:
        MissingReferenceError: If the party is not in the master.
    """

    party = _ensure_log_cache(context)["parties_by_id"].get(party_id)
    if party is None:
        raise MissingReferenceError(f"Party '{party_id}' not found")
    return party


def financial_year_window(
    when: Optional[date] = None,
    *,
    start_month: int = 4,
    label: Optional[str] = None,
) -> Tuple[date, date]:
    """Return the inclusive first and last day of a financial year.

    The year is either the one containing ``when`` (today by default) or the
    one named by ``label`` in ``"2024-2025"`` form.

    Args:
        when (date | None): Any day inside the wanted year.
        start_month (int): Month the financial year starts in.
        label (str | None): Explicit ``"<start>-<end>"`` year label.

    Returns:
        tuple[date, date]: First and last day of the year.

    Raises:
        ValueError: If ``label`` is malformed or ``start_month`` is not 1-12.
    """

    if not 1 <= start_month <= 12:
        raise ValueError(f"start_month must be between 1 and 12, got {start_month}")

    if label is not None:
        parts = label.split("-")
        if len(parts) != 2 or not all(part.strip().isdigit() for part in parts):
            raise ValueError(f"Financial year label must look like '2024-2025', got {label!r}")
        start_year = int(parts[0])
        if start_month > 1 and int(parts[1]) != start_year + 1:
            raise ValueError(f"Financial year label {label!r} must span consecutive years")
    else:
        when = when or date.today()
        start_year = when.year if when.month >= start_month else when.year - 1

    start = date(start_year, start_month, 1)
    end = date(start_year + 1, start_month, 1) - timedelta(days=1)
    return start, end


def valuation_thresholds(context: RuntimeContext) -> ValuationThresholds:
    settings = context.settings.valuation
    return ValuationThresholds(
        dead_stock_days=settings.dead_stock_days,
        dead_stock_turnover=settings.dead_stock_turnover,
        slow_moving_days=settings.slow_moving_days,
        slow_moving_turnover=settings.slow_moving_turnover,
        fast_moving_turnover=settings.fast_moving_turnover,
        low_stock_bags=settings.low_stock_bags,
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def compute_positions(context: RuntimeContext, *, as_of: Optional[date] = None) -> CostFlowResult:
    """Replay the workbook's cost flow, reusing a cached result per ``as_of``."""

    return _ensure_cost_flow_cache(context, as_of or date.today())


def stock_snapshot(
    context: RuntimeContext,
    *,
    as_of: Optional[date] = None,
    location_id: Optional[str] = None,
    lot_query: Optional[str] = None,
    first_stocked_from: Optional[date] = None,
    first_stocked_to: Optional[date] = None,
    include_closed: bool = False,
    include_archived: bool = False,
) -> StockSnapshot:
    """Classified stock view, hiding archived lots unless asked otherwise."""

    transaction_log = get_transaction_log(context)
    snapshot = build_snapshot(
        compute_positions(context, as_of=as_of),
        thresholds=valuation_thresholds(context),
        location_id=location_id,
        lot_query=lot_query,
        first_stocked_from=first_stocked_from,
        first_stocked_to=first_stocked_to,
        include_closed=include_closed,
        archived=frozenset() if include_archived else transaction_log.archived_lots,
    )
    log.info("Stock snapshot as of %s lists %d positions", snapshot.as_of.isoformat(), len(snapshot.entries))
    return snapshot


def warehouse_totals(context: RuntimeContext, *, as_of: Optional[date] = None) -> Tuple[WarehouseSummary, ...]:
    return warehouse_summary(compute_positions(context, as_of=as_of))


def stock_alerts(context: RuntimeContext, *, as_of: Optional[date] = None) -> List[StockAlert]:
    """Low and dead stock alerts for active (non-archived) positions."""

    result = compute_positions(context, as_of=as_of)
    active, _ = split_archived(result.current_stock(), get_transaction_log(context).archived_lots)
    return list(iter_stock_alerts(active, valuation_thresholds(context)))


def party_ledger(
    context: RuntimeContext,
    party_id: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> PartyStatement:
    """Statement for ``party_id``; missing bounds default to the current financial year.

    Raises:
        MissingReferenceError: If the party is not in the master.
    """

    get_party(context, party_id)
    if start is None or end is None:
        year_start, year_end = financial_year_window(
            start or end, start_month=context.settings.financial_year_start_month
        )
        start = start or year_start
        end = end or year_end
    statement = party_statement(
        get_transaction_log(context),
        party_id,
        start,
        end,
        index=_ensure_party_effects_cache(context),
    )
    log.info(
        "Ledger for %s from %s to %s closes at %s %s",
        party_id,
        start.isoformat(),
        end.isoformat(),
        abs(statement.closing_balance),
        statement.closing_type.value,
    )
    return statement


def outstanding_balances(context: RuntimeContext, *, as_of: Optional[date] = None) -> OutstandingReport:
    return compute_outstanding(
        get_transaction_log(context),
        as_of=as_of,
        index=_ensure_party_effects_cache(context),
    )


def open_bills(
    context: RuntimeContext,
    *,
    party_id: Optional[str] = None,
    voucher_type: Optional[VoucherType] = None,
    exclude_voucher_id: Optional[str] = None,
) -> Tuple[BillDue, ...]:
    """Bills with a due amount, optionally for one party or one side."""

    if party_id is not None:
        get_party(context, party_id)
    return bill_dues(
        get_transaction_log(context),
        party_id=party_id,
        voucher_type=voucher_type,
        exclude_voucher_id=exclude_voucher_id,
        open_only=True,
    )


def aging_report(
    context: RuntimeContext,
    *,
    as_of: Optional[date] = None,
    party_id: Optional[str] = None,
) -> AgingReport:
    if party_id is not None:
        get_party(context, party_id)
    return build_aging_report(get_transaction_log(context), as_of=as_of, party_id=party_id)


def profit_report(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    customer_id: Optional[str] = None,
) -> ProfitReport:
    """Per-line profit for sales in ``[start, end]`` using replayed costs."""

    report = build_profit_report(
        get_transaction_log(context),
        compute_positions(context),
        start=start,
        end=end,
        customer_id=customer_id,
    )
    log.info("Profit report covers %d sales", report.sale_count)
    return report


# ---------------------------------------------------------------------------
# Archive workflow
# ---------------------------------------------------------------------------


def _find_position(context: RuntimeContext, lot_number: str, location_id: str) -> LotPosition:
    position = compute_positions(context).position(lot_number, location_id)
    if position is None:
        raise MissingReferenceError(f"No position for lot '{lot_number}' at '{location_id}'")
    return position


def archive_position(
    context: RuntimeContext,
    lot_number: str,
    location_id: str,
    *,
    archived_on: Optional[date] = None,
) -> None:
    """Hide a closed position from stock reports and persist the workbook.

    Raises:
        MissingReferenceError: If the lot never existed at the location.
        BusinessRuleViolation: If the position still holds stock or is
            already archived.
    """

    ensure_schema_version(context)
    key = (lot_number, location_id)
    if key in get_transaction_log(context).archived_lots:
        raise BusinessRuleViolation(f"Lot '{lot_number}' at '{location_id}' is already archived")
    ensure_archivable(_find_position(context, lot_number, location_id))

    data_manager.append_archived_lot(context.workbook, key, archived_on=archived_on or date.today())
    persist_context(context)
    _invalidate_cache(context, "log")
    log.info("Archived lot '%s' at '%s'", lot_number, location_id)


def restore_position(context: RuntimeContext, lot_number: str, location_id: str) -> None:
    """Bring an archived position back into stock reports.

    Raises:
        MissingReferenceError: If the position is not archived.
    """

    ensure_schema_version(context)
    if not data_manager.remove_archived_lot(context.workbook, (lot_number, location_id)):
        raise MissingReferenceError(f"Lot '{lot_number}' at '{location_id}' is not archived")
    persist_context(context)
    _invalidate_cache(context, "log")
    log.info("Restored lot '%s' at '%s'", lot_number, location_id)
