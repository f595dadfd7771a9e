"""Owner enrichment: turn intersected parcels into selection rows.

Two strategies produce the same rows. The individual strategy issues one
owner query per parcel in windows of ``OWNER_QUERY_CONCURRENCY``; the batch
strategy resolves parcel object ids and fetches all owners with a single
``queryRelatedRecords`` call. A failed owner lookup never drops a parcel: it
yields one placeholder row instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from property_selection.config import PipelineConfig, Translate
from property_selection.constants import OWNER_QUERY_CONCURRENCY
from property_selection.errors import Cancelled, is_cancellation
from property_selection.identity import create_row_id, dedupe, normalize_fnr_key
from property_selection.models import FnrValue, OwnerRecord, ParcelFeature, SelectionRow
from property_selection.privacy import OwnerFormatter, format_owner_info, format_property_with_share


logger = logging.getLogger("psel.enrich")

STRATEGY_INDIVIDUAL = "individual"
STRATEGY_BATCH = "batch"

# Parcels processed between event loop yields in the batch strategy.
YIELD_EVERY = 50


@dataclass(frozen=True)
class Settled:
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def each_always(awaitables: Iterable[Awaitable]) -> List[Settled]:
    """Wait for every awaitable; one failure never cancels its siblings."""

    results = await asyncio.gather(*awaitables, return_exceptions=True)
    return [
        Settled(error=r) if isinstance(r, BaseException) else Settled(value=r)
        for r in results
    ]


@dataclass
class EnrichmentContext:
    queries: Any
    config: PipelineConfig
    translate: Translate
    token: Any = None
    formatter: Optional[OwnerFormatter] = None
    is_current: Optional[Callable[[], bool]] = None

    def check(self):
        """Raise ``Cancelled`` once the request is aborted or superseded."""

        if self.token is not None:
            self.token.raise_if_cancelled()
        if self.is_current is not None and not self.is_current():
            raise Cancelled("request was superseded")

    def format_owner(self, owner: OwnerRecord) -> str:
        unknown = self.translate("unknownOwner")
        mask = self.config.enable_pii_masking
        if self.formatter is not None:
            return self.formatter.format(owner, mask, unknown)
        return format_owner_info(owner, mask, unknown)


@dataclass
class EnrichmentResult:
    rows: List[SelectionRow] = field(default_factory=list)
    fnr_graphic_pairs: List[Tuple[FnrValue, ParcelFeature]] = field(default_factory=list)
    failed_fnrs: List[str] = field(default_factory=list)

    def accumulate(self, parcel: ParcelFeature, rows: List[SelectionRow], max_results: int) -> bool:
        """Append rows up to the cap; True once the cap is reached."""

        remaining = max_results - len(self.rows)
        if remaining <= 0:
            return True
        self.rows.extend(rows[:remaining])
        self.fnr_graphic_pairs.append((parcel.fnr, parcel))
        return len(rows) >= remaining


def prepare_parcels(parcels: Iterable[ParcelFeature], max_results: int) -> List[ParcelFeature]:
    """Usable parcels, unique by fnr, capped before any owner query runs."""

    seen = set()
    out: List[ParcelFeature] = []
    for parcel in parcels or ():
        if parcel is None or parcel.fnr is None or not parcel.geometry:
            continue
        key = normalize_fnr_key(parcel.fnr)
        if key in seen:
            continue
        seen.add(key)
        out.append(parcel)
        if len(out) >= max_results:
            break
    return out


def _base_id(parcel: ParcelFeature, object_id) -> str:
    """Row id stem; parcels without an object id fall back to uuid or fnr."""

    if object_id is not None:
        return create_row_id(parcel.fnr, object_id)
    if parcel.uuid:
        return create_row_id(parcel.fnr, parcel.uuid)
    return str(parcel.fnr)


def _unique_id(base: str, used: set) -> str:
    row_id = base
    suffix = 1
    while row_id in used:
        row_id = f"{base}-{suffix}"
        suffix += 1
    used.add(row_id)
    return row_id


def build_owner_rows(parcel: ParcelFeature, owners: List[OwnerRecord], context: EnrichmentContext) -> List[SelectionRow]:
    unique = dedupe(owners, {"fnr": parcel.fnr, "property_id": parcel.uuid})
    used: set = set()
    rows = []
    for owner in unique:
        object_id = owner.object_id if owner.object_id is not None else parcel.object_id
        rows.append(
            SelectionRow(
                id=_unique_id(_base_id(parcel, object_id), used),
                fnr=parcel.fnr,
                uuid=owner.uuid or parcel.uuid,
                label=format_property_with_share(owner.label or parcel.label, owner.share),
                owner_text=context.format_owner(owner),
                geometry_type=parcel.geometry_type,
                geometry=parcel.geometry,
                raw_owner=owner,
            )
        )
    return rows


def build_placeholder_row(parcel: ParcelFeature, query_failed: bool, context: EnrichmentContext) -> SelectionRow:
    message = context.translate("errorOwnerQueryFailed" if query_failed else "unknownOwner")
    return SelectionRow(
        id=_base_id(parcel, parcel.object_id),
        fnr=parcel.fnr,
        uuid=parcel.uuid,
        label=parcel.label,
        owner_text=message,
        geometry_type=parcel.geometry_type,
        geometry=parcel.geometry,
        raw_owner=OwnerRecord(
            object_id=parcel.object_id,
            fnr=parcel.fnr,
            uuid=parcel.uuid,
            label=parcel.label,
            name=message,
        ),
    )


def build_parcel_rows(parcel, owners, query_failed, context) -> List[SelectionRow]:
    if owners:
        rows = build_owner_rows(parcel, owners, context)
        if rows:
            return rows
    return [build_placeholder_row(parcel, query_failed, context)]


class IndividualStrategy:
    name = STRATEGY_INDIVIDUAL

    async def run(self, parcels: List[ParcelFeature], context: EnrichmentContext) -> EnrichmentResult:
        config = context.config
        max_results = config.max_results
        candidates = prepare_parcels(parcels, max_results)
        result = EnrichmentResult()
        index = 0
        while index < len(candidates):
            context.check()
            left = max_results - len(result.rows)
            if left <= 0:
                break
            size = min(len(candidates) - index, OWNER_QUERY_CONCURRENCY, left)
            window = candidates[index : index + size]
            index += size
            outcomes = await each_always(
                context.queries.owners_by_fnr(p.fnr, config.owner_data_source_id, context.token)
                for p in window
            )
            if any(not o.ok and is_cancellation(o.error) for o in outcomes):
                raise Cancelled("owner queries were cancelled")
            context.check()

            reached = False
            for parcel, outcome in zip(window, outcomes):
                if not outcome.ok:
                    logger.warning(
                        "owner query failed for fnr %s: %s",
                        normalize_fnr_key(parcel.fnr),
                        outcome.error,
                    )
                    result.failed_fnrs.append(normalize_fnr_key(parcel.fnr))
                owners = outcome.value if outcome.ok else []
                rows = build_parcel_rows(parcel, owners or [], not outcome.ok, context)
                if result.accumulate(parcel, rows, max_results):
                    reached = True
                    break
            if reached:
                break
            await asyncio.sleep(0)
        return result


class BatchStrategy:
    name = STRATEGY_BATCH

    async def run(self, parcels: List[ParcelFeature], context: EnrichmentContext) -> EnrichmentResult:
        config = context.config
        max_results = config.max_results
        candidates = prepare_parcels(parcels, max_results)
        result = EnrichmentResult()
        if not candidates:
            return result
        context.check()
        query_failed = False
        try:
            owners_by_fnr = await context.queries.owners_by_relationship(
                [p.fnr for p in candidates],
                config.property_data_source_id,
                config.relationship_id,
                context.token,
                gate=context.check,
            )
        except Exception as exc:
            if is_cancellation(exc):
                raise
            logger.warning("relationship query failed for %d parcels: %s", len(candidates), exc)
            owners_by_fnr = {}
            query_failed = True
        context.check()

        for count, parcel in enumerate(candidates, start=1):
            key = normalize_fnr_key(parcel.fnr)
            if query_failed:
                result.failed_fnrs.append(key)
            rows = build_parcel_rows(parcel, owners_by_fnr.get(key) or [], query_failed, context)
            if result.accumulate(parcel, rows, max_results):
                break
            if count % YIELD_EVERY == 0:
                await asyncio.sleep(0)
                context.check()
        return result


_STRATEGIES = {
    STRATEGY_INDIVIDUAL: IndividualStrategy,
    STRATEGY_BATCH: BatchStrategy,
}


def select_strategy(config: PipelineConfig):
    return BatchStrategy() if config.use_batch_strategy else IndividualStrategy()


async def enrich(parcels, strategy, context: EnrichmentContext) -> EnrichmentResult:
    """Run ``strategy`` (a name or a strategy object) over ``parcels``."""

    if isinstance(strategy, str):
        try:
            strategy = _STRATEGIES[strategy]()
        except KeyError:
            raise ValueError(f"Unknown enrichment strategy: {strategy}") from None
    elif strategy is None:
        strategy = select_strategy(context.config)
    result = await strategy.run(list(parcels or ()), context)
    logger.info(
        "%s enrichment produced %d rows for %d parcels",
        strategy.name,
        len(result.rows),
        len(result.fnr_graphic_pairs),
    )
    return result
