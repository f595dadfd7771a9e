import logging
from typing import Callable, List, Optional

from fastapi import FastAPI, HTTPException

from property_selection.api.schemas import (
    ClickRequest,
    ReconcileRequest,
    ReconcileResponse,
    ValidateUrlRequest,
    ValidateUrlResponse,
)
from property_selection.cache import BoundedCache
from property_selection.config import DataSourceRegistry, PipelineConfig
from property_selection.models import MapPoint, SelectionRow
from property_selection.pipeline import SelectionPipeline
from property_selection.reconcile import reconcile
from property_selection.security import validate


logger = logging.getLogger("psel.api")

SESSION_TTL_S = 30 * 60
MAX_SESSIONS = 256


def _rows(payload, field: str):
    try:
        return [SelectionRow.from_dict(item) for item in payload]
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=f"invalid {field}: {exc}") from exc


def health():
    return {"status": "ok"}


def create_app(
    pipeline_factory: Optional[Callable[[], SelectionPipeline]] = None,
    registry: Optional[DataSourceRegistry] = None,
) -> FastAPI:
    """Build the API.

    Layer URLs are server configuration (``PSEL_DATA_SOURCES``); clients only
    name data source ids, so they cannot point the server at arbitrary hosts.
    """

    if pipeline_factory is None:
        shared_registry = registry or DataSourceRegistry.from_env()

        def pipeline_factory():
            return SelectionPipeline(shared_registry)

    # Evicted pipelines wait here until a request or shutdown closes them.
    retired: List[SelectionPipeline] = []

    def retire(pipeline):
        pipeline.cancel_pending()
        retired.append(pipeline)

    async def close_retired():
        while retired:
            pipeline = retired.pop()
            try:
                await pipeline.close()
            except Exception:
                logger.exception("closing an evicted session failed")

    sessions = BoundedCache(
        max_entries=MAX_SESSIONS,
        ttl=SESSION_TTL_S,
        on_evict=retire,
        sliding=True,
    )

    app = FastAPI(title="property_selection")
    app.state.sessions = sessions

    @app.get("/health")
    def health_route():
        return dict(health(), sessions=len(sessions))

    @app.post("/api/validate-url", response_model=ValidateUrlResponse)
    def validate_url_route(req: ValidateUrlRequest):
        return {"valid": validate(req.url, req.allowed_hosts)}

    @app.post("/api/selection/click")
    async def click_route(req: ClickRequest):
        config = PipelineConfig.from_dict(req.config)
        existing = _rows(req.selection, "selection")
        point = MapPoint(req.point.x, req.point.y, req.point.wkid) if req.point else None
        sessions.purge_expired()
        pipeline = sessions.get_or_create(req.session_id, pipeline_factory)
        await close_retired()
        result = await pipeline.run(point, config, existing, raw_results=req.raw_results)
        logger.info(
            "click handled",
            extra={"session": req.session_id, "status": result.status, "request_id": result.request_id},
        )
        return result.to_dict(include_raw_owner=not config.enable_pii_masking)

    @app.post("/api/selection/reconcile", response_model=ReconcileResponse)
    def reconcile_route(req: ReconcileRequest):
        raw = not req.enable_pii_masking
        merged = reconcile(
            _rows(req.new_rows, "new_rows"),
            _rows(req.existing, "existing"),
            req.toggle_enabled,
            req.max_results,
        )
        return {
            "to_add": [row.to_dict(raw) for row in merged.to_add],
            "to_remove": sorted(merged.to_remove),
            "updated_rows": [row.to_dict(raw) for row in merged.updated_rows],
        }

    @app.on_event("shutdown")
    async def close_sessions():
        sessions.clear()
        await close_retired()

    return app


app = create_app()
