"""Spatial, attribute and relationship queries against the parcel and owner layers."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from property_selection.arcgis import (
    LayerCache,
    build_buffer_query_params,
    build_point_query_params,
    build_related_query_params,
    build_where_query_params,
    extract_features,
    extract_related_groups,
)
from property_selection.config import DataSourceRegistry
from property_selection.constants import (
    FIELD_FNR,
    FIELD_LABEL,
    FIELD_OBJECT_ID,
    FIELD_UUID,
    OBJECT_ID_CHUNK_SIZE,
    OWNER_QUERY_CONCURRENCY,
)
from property_selection.enrichment import each_always
from property_selection.errors import (
    Cancelled,
    QueryError,
    SelectionError,
    is_cancellation,
    parse_arcgis_error,
)
from property_selection.geometry import geometry_type_of, serialize_geometry, union_extent
from property_selection.identity import extract_fnr, normalize_fnr_key
from property_selection.models import MapPoint, OwnerRecord, ParcelFeature
from property_selection.security import build_fnr_where_clause


logger = logging.getLogger("psel.query")


def _chunked(seq: Sequence, n: int) -> Iterable[List]:
    n = max(int(n), 1)
    buf: List = []
    for it in seq:
        buf.append(it)
        if len(buf) >= n:
            yield buf
            buf = []
    if buf:
        yield buf


def _check(token, gate=None):
    if token is not None:
        token.raise_if_cancelled()
    if gate is not None:
        gate()


def _fnr_in_clause(fnrs: Iterable) -> str:
    return " OR ".join(build_fnr_where_clause(fnr) for fnr in fnrs)


def _feature_to_parcel(feature: dict, spatial_reference: Optional[dict]) -> ParcelFeature:
    attrs = feature.get("attributes") or {}
    geometry = feature.get("geometry")
    if isinstance(geometry, dict) and spatial_reference and "spatialReference" not in geometry:
        geometry = dict(geometry, spatialReference=spatial_reference)
    object_id = attrs.get(FIELD_OBJECT_ID)
    return ParcelFeature(
        fnr=extract_fnr(attrs),
        uuid=str(attrs.get(FIELD_UUID) or ""),
        label=str(attrs.get(FIELD_LABEL) or ""),
        object_id=object_id if isinstance(object_id, int) and not isinstance(object_id, bool) else None,
        geometry=serialize_geometry(geometry),
        geometry_type=geometry_type_of(geometry),
        attributes=dict(attrs),
    )


class ArcGISQueryService:
    """Issues the layer queries of one pipeline through a shared layer cache."""

    def __init__(self, registry: DataSourceRegistry, layers: LayerCache):
        self.registry = registry
        self.layers = layers

    def _layer(self, data_source_id: str):
        source = self.registry.get(data_source_id)
        if source is None:
            raise QueryError(f"Data source not found: {data_source_id}")
        return self.layers.get(source.url)

    async def _parcels(self, params, data_source_id: str, token, failure: str) -> List[ParcelFeature]:
        _check(token)
        layer = self._layer(data_source_id)
        try:
            payload = await layer.query(params, token=token)
            features = extract_features(payload)
        except SelectionError:
            raise
        except Exception as exc:
            raise QueryError(parse_arcgis_error(exc, failure), url=layer.url) from exc
        _check(token)
        parcels = [_feature_to_parcel(f, payload.get("spatialReference")) for f in features]
        logger.info("parcel query returned %d features", len(parcels), extra={"url": layer.url})
        return parcels

    async def parcels_at_point(self, point: MapPoint, data_source_id: str, token=None) -> List[ParcelFeature]:
        return await self._parcels(
            build_point_query_params(point.to_esri()), data_source_id, token, "Property query failed"
        )

    async def parcels_in_buffer(
        self, point: MapPoint, distance: float, unit: str, data_source_id: str, token=None
    ) -> List[ParcelFeature]:
        """Parcels intersecting a buffer of ``distance`` ``unit`` around ``point``."""

        params = build_buffer_query_params(point.to_esri(), distance, unit)
        return await self._parcels(params, data_source_id, token, "Buffer query failed")

    async def owners_by_fnr(self, fnr, data_source_id: str, token=None) -> List[OwnerRecord]:
        _check(token)
        layer = self._layer(data_source_id)
        try:
            payload = await layer.query(
                build_where_query_params(build_fnr_where_clause(fnr)), token=token
            )
            features = extract_features(payload)
        except SelectionError:
            raise
        except Exception as exc:
            raise QueryError(parse_arcgis_error(exc, "Owner query failed"), url=layer.url) from exc
        _check(token)
        owners = [OwnerRecord.from_attributes(f.get("attributes") or {}) for f in features]
        if not owners:
            logger.debug("owner query returned no records", extra={"fnr": normalize_fnr_key(fnr)})
        return owners

    async def resolve_object_ids(
        self, fnrs: Sequence, data_source_id: str, token=None, gate=None
    ) -> Dict[int, str]:
        """Map parcel object ids to fnr keys, querying in bounded windows of chunks.

        ``gate`` is called before each window and raises to stop early.
        """

        _check(token, gate)
        if not fnrs:
            return {}
        layer = self._layer(data_source_id)
        chunks = list(_chunked(list(fnrs), OBJECT_ID_CHUNK_SIZE))
        out: Dict[int, str] = {}
        for start in range(0, len(chunks), OWNER_QUERY_CONCURRENCY):
            _check(token, gate)
            window = chunks[start : start + OWNER_QUERY_CONCURRENCY]
            outcomes = await each_always(
                layer.query(
                    build_where_query_params(_fnr_in_clause(chunk), [FIELD_FNR, FIELD_OBJECT_ID]),
                    token=token,
                )
                for chunk in window
            )
            errors = [o.error for o in outcomes if not o.ok]
            if any(is_cancellation(e) for e in errors):
                raise Cancelled("request was cancelled")
            if errors:
                if isinstance(errors[0], SelectionError):
                    raise errors[0]
                raise QueryError(
                    parse_arcgis_error(errors[0], "Object id query failed"), url=layer.url
                ) from errors[0]
            for outcome in outcomes:
                for feature in extract_features(outcome.value):
                    attrs = feature.get("attributes") or {}
                    object_id = attrs.get(FIELD_OBJECT_ID)
                    fnr = extract_fnr(attrs)
                    if isinstance(object_id, int) and fnr is not None:
                        out[object_id] = normalize_fnr_key(fnr)
        return out

    async def owners_by_relationship(
        self,
        fnrs: Sequence,
        property_data_source_id: str,
        relationship_id: int,
        token=None,
        gate=None,
    ) -> Dict[str, List[OwnerRecord]]:
        _check(token, gate)
        if not fnrs:
            return {}
        object_ids = await self.resolve_object_ids(fnrs, property_data_source_id, token, gate)
        _check(token, gate)
        if not object_ids:
            return {}
        layer = self._layer(property_data_source_id)
        try:
            payload = await layer.query_related(
                build_related_query_params(sorted(object_ids), relationship_id), token=token
            )
            groups = extract_related_groups(payload)
        except SelectionError:
            raise
        except Exception as exc:
            raise QueryError(parse_arcgis_error(exc, "Relationship query failed"), url=layer.url) from exc
        _check(token)
        owners_by_fnr: Dict[str, List[OwnerRecord]] = {}
        for object_id, fnr_key in object_ids.items():
            records = groups.get(object_id)
            if records:
                owners_by_fnr.setdefault(fnr_key, []).extend(
                    OwnerRecord.from_attributes(attrs) for attrs in records
                )
        logger.info(
            "relationship query resolved owners for %d of %d parcels",
            len(owners_by_fnr),
            len(object_ids),
        )
        return owners_by_fnr

    async def extent_for_parcels(self, fnrs: Sequence, data_source_id: str, token=None) -> Optional[dict]:
        _check(token)
        if not fnrs:
            return None
        layer = self._layer(data_source_id)
        try:
            payload = await layer.query(
                build_where_query_params(_fnr_in_clause(fnrs), [FIELD_FNR], return_geometry=True),
                token=token,
            )
            features = extract_features(payload)
        except SelectionError:
            raise
        except Exception as exc:
            raise QueryError(parse_arcgis_error(exc, "Extent query failed"), url=layer.url) from exc
        _check(token)
        return union_extent(serialize_geometry(f.get("geometry")) for f in features)


async def query_parcels_at_point(point, data_source_id, token=None, *, registry, layers):
    return await ArcGISQueryService(registry, layers).parcels_at_point(point, data_source_id, token)


async def query_parcels_in_buffer(point, distance, unit, data_source_id, token=None, *, registry, layers):
    return await ArcGISQueryService(registry, layers).parcels_in_buffer(point, distance, unit, data_source_id, token)


async def query_owners_by_fnr(fnr, data_source_id, token=None, *, registry, layers):
    return await ArcGISQueryService(registry, layers).owners_by_fnr(fnr, data_source_id, token)


async def resolve_object_ids(fnrs, data_source_id, token=None, *, registry, layers, gate=None):
    return await ArcGISQueryService(registry, layers).resolve_object_ids(fnrs, data_source_id, token, gate)


async def query_owners_by_relationship(
    fnrs, property_data_source_id, relationship_id, token=None, *, registry, layers, gate=None
):
    return await ArcGISQueryService(registry, layers).owners_by_relationship(
        fnrs, property_data_source_id, relationship_id, token, gate
    )


async def query_extent_for_parcels(fnrs, data_source_id, token=None, *, registry, layers):
    return await ArcGISQueryService(registry, layers).extent_for_parcels(fnrs, data_source_id, token)
