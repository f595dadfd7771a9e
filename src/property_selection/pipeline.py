from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from property_selection.arcgis import LayerCache
from property_selection.config import DataSourceRegistry, PipelineConfig, Translate, make_translator
from property_selection.enrichment import EnrichmentContext, enrich, select_strategy
from property_selection.errors import QUERY_ERROR, Cancelled, QueryError
from property_selection.http_client import AsyncHttpClient
from property_selection.identity import normalize_fnr_key
from property_selection.lifecycle import (
    STATE_ACTIVE,
    STATE_STALE,
    CancellationToken,
    RequestToken,
    RequestTracker,
    TokenPool,
)
from property_selection.models import (
    STATUS_SUCCESS,
    MapPoint,
    PipelineResult,
    SelectionRow,
)
from property_selection.privacy import OwnerFormatter
from property_selection.queries import ArcGISQueryService
from property_selection.reconcile import derive_toggle_state, reconcile, update_raw_results
from property_selection.security import validate_data_sources, validate_map_click


logger = logging.getLogger("psel.pipeline")


class SelectionPipeline:
    """Turns map clicks into selection updates for one user session.

    The pipeline owns its HTTP client, layer cache, owner-format cache and
    token pool. Request ids are per instance, so a click is only ever stale
    relative to later clicks on the same pipeline.
    """

    def __init__(
        self,
        registry: DataSourceRegistry,
        translate: Optional[Translate] = None,
        http: Optional[AsyncHttpClient] = None,
        queries=None,
        token_pool: Optional[TokenPool] = None,
    ):
        self.registry = registry
        self.translate = translate or make_translator()
        self.http = http or AsyncHttpClient()
        self.layers = LayerCache(self.http)
        self.queries = queries or ArcGISQueryService(registry, self.layers)
        self.formatter = OwnerFormatter()
        self.tokens = token_pool or TokenPool()
        self.requests = RequestTracker()
        # Pooled tokens of runs still in flight, by request id.
        self._pooled: Dict[int, CancellationToken] = {}

    def _log(self, entries: List[dict], stage: str, request: Optional[RequestToken], **fields):
        entry = {
            "stage": stage,
            "request_id": request.request_id if request else None,
            "ts": time.time(),
        }
        entry.update(fields)
        entries.append(entry)
        logger.info("%s %s", stage, fields, extra={"request_id": entry["request_id"]})

    def _interrupted(self, request: RequestToken, entries: List[dict]) -> PipelineResult:
        if self.requests.check(request) == STATE_STALE:
            self._log(entries, "stale", request)
            result = PipelineResult.stale(request.request_id)
        else:
            self._log(entries, "cancelled", request)
            result = PipelineResult.cancelled(request.request_id)
        result.log_entries = entries
        return result

    async def run(
        self,
        point: Optional[MapPoint],
        config: PipelineConfig,
        existing_selection: Sequence[SelectionRow] = (),
        token: Optional[CancellationToken] = None,
        raw_results: Optional[Mapping[str, dict]] = None,
    ) -> PipelineResult:
        entries: List[dict] = []
        existing = list(existing_selection or ())

        sources = validate_data_sources(config, self.registry, self.translate)
        if not sources.valid:
            self._log(entries, "validate", None, status="error", reason=sources.failure_reason)
            return self._failure(sources, entries)
        click = validate_map_click(point, self.translate)
        if not click.valid:
            self._log(entries, "validate", None, status="error", reason=click.failure_reason)
            return self._failure(click, entries)

        owns_token = token is None
        if owns_token:
            token = self.tokens.acquire()
        request = self.requests.begin(token)
        # Older pooled runs are superseded; abort their outstanding queries.
        for superseded in self._pooled.values():
            superseded.cancel()
        self._pooled.clear()
        if owns_token:
            self._pooled[request.request_id] = token
        try:
            return await self._run(request, point, config, existing, raw_results, entries)
        except Cancelled:
            return self._interrupted(request, entries)
        except Exception as exc:
            if self.requests.check(request) == STATE_STALE:
                return self._interrupted(request, entries)
            logger.exception("selection pipeline failed")
            self._log(entries, "error", request, error=type(exc).__name__)
            result = PipelineResult.failure(
                QUERY_ERROR, self.translate("errorQueryFailed"), "unexpected_error", request.request_id
            )
            result.log_entries = entries
            return result
        finally:
            if owns_token:
                self._pooled.pop(request.request_id, None)
                self.tokens.release(token)

    def _failure(self, validation, entries, request_id=None) -> PipelineResult:
        result = PipelineResult.failure(
            validation.error_type, validation.message, validation.failure_reason, request_id
        )
        result.log_entries = entries
        return result

    def _gate(self, request: RequestToken):
        """Raise ``Cancelled`` if the request was cancelled or superseded."""

        if self.requests.check(request) != STATE_ACTIVE:
            raise Cancelled("request is no longer current")

    async def _run(self, request, point, config, existing, raw_results, entries) -> PipelineResult:
        token = request.token
        try:
            parcels = await self.queries.parcels_at_point(
                point, config.property_data_source_id, token
            )
        except QueryError as exc:
            self._gate(request)
            logger.warning("parcel query failed: %s", exc)
            self._log(entries, "parcels", request, status="error")
            result = PipelineResult.failure(
                QUERY_ERROR,
                self.translate("errorQueryFailed"),
                "property_query_failed",
                request.request_id,
            )
            result.log_entries = entries
            return result
        self._gate(request)
        self._log(entries, "parcels", request, count=len(parcels))

        if not parcels:
            result = PipelineResult.empty(request.request_id)
            result.log_entries = entries
            return result

        toggle = derive_toggle_state(parcels, existing, config.enable_toggle_removal)
        if toggle is not None:
            self._log(entries, "toggle", request, removed=sorted(toggle.keys_to_remove))
            return PipelineResult(
                status=STATUS_SUCCESS,
                rows_to_process=[],
                updated_rows=toggle.updated_rows,
                to_remove=set(toggle.keys_to_remove),
                raw_query_results=update_raw_results(
                    raw_results, [], parcels, toggle.keys_to_remove, existing
                ),
                request_id=request.request_id,
                log_entries=entries,
            )

        context = EnrichmentContext(
            queries=self.queries,
            config=config,
            translate=self.translate,
            token=token,
            formatter=self.formatter,
            is_current=lambda: self.requests.is_current(request.request_id),
        )
        strategy = select_strategy(config)
        enriched = await enrich(parcels, strategy, context)
        self._gate(request)
        self._log(
            entries,
            "enrich",
            request,
            strategy=strategy.name,
            rows=len(enriched.rows),
            failed=len(enriched.failed_fnrs),
        )

        merged = reconcile(enriched.rows, existing, config.enable_toggle_removal, config.max_results)
        self._log(
            entries,
            "reconcile",
            request,
            added=len(merged.to_add),
            removed=sorted(merged.to_remove),
            total=len(merged.updated_rows),
        )
        return PipelineResult(
            status=STATUS_SUCCESS,
            rows_to_process=enriched.rows,
            updated_rows=merged.updated_rows,
            to_remove=merged.to_remove,
            raw_query_results=update_raw_results(
                raw_results, enriched.rows, parcels, merged.to_remove, existing
            ),
            fnr_graphic_pairs=enriched.fnr_graphic_pairs,
            request_id=request.request_id,
            log_entries=entries,
        )

    async def selection_extent(
        self,
        rows: Sequence[SelectionRow],
        config: PipelineConfig,
        token: Optional[CancellationToken] = None,
    ) -> Optional[Dict[str, Any]]:
        """Bounding extent of the selected parcels, for zooming to a selection."""

        fnrs: Dict[str, Any] = {}
        for row in rows or ():
            fnrs.setdefault(normalize_fnr_key(row.fnr), row.fnr)
        if not fnrs:
            return None
        return await self.queries.extent_for_parcels(
            list(fnrs.values()), config.property_data_source_id, token
        )

    def cancel_pending(self):
        """Cancel every in-flight run that borrowed a pooled token."""

        self.tokens.cancel_all()

    async def close(self):
        self.tokens.cancel_all()
        self.layers.clear()
        self.formatter.clear()
        await self.http.aclose()


async def run_selection_pipeline(
    point: Optional[MapPoint],
    config: PipelineConfig,
    existing_selection: Sequence[SelectionRow] = (),
    token: Optional[CancellationToken] = None,
    *,
    registry: Optional[DataSourceRegistry] = None,
    pipeline: Optional[SelectionPipeline] = None,
) -> PipelineResult:
    """One-shot helper; builds and closes a pipeline unless one is passed in."""

    if pipeline is not None:
        return await pipeline.run(point, config, existing_selection, token)
    pipeline = SelectionPipeline(registry or DataSourceRegistry.from_env())
    try:
        return await pipeline.run(point, config, existing_selection, token)
    finally:
        await pipeline.close()
