import json
from typing import Any, Dict, List, Optional

from property_selection.cache import BoundedCache
from property_selection.errors import QueryError


def build_point_query_params(point_geometry: Dict[str, Any]) -> Dict[str, str]:
    params = {
        "geometry": json.dumps(point_geometry),
        "geometryType": "esriGeometryPoint",
        "spatialRel": "esriSpatialRelIntersects",
        "outFields": "*",
        "returnGeometry": "true",
    }
    wkid = (point_geometry.get("spatialReference") or {}).get("wkid")
    if wkid is not None:
        params["inSR"] = str(wkid)
        params["outSR"] = str(wkid)
    return params


# Buffer units accepted by the layer query endpoint.
BUFFER_UNITS = {
    "meters": "esriSRUnit_Meter",
    "kilometers": "esriSRUnit_Kilometer",
    "feet": "esriSRUnit_Foot",
    "miles": "esriSRUnit_StatuteMile",
}


def build_buffer_query_params(point_geometry: Dict[str, Any], distance: float, unit: str = "meters") -> Dict[str, str]:
    """Point query widened to every feature within ``distance`` of the point."""

    if unit not in BUFFER_UNITS:
        raise ValueError(f"Unsupported buffer unit: {unit}")
    if not distance or distance <= 0:
        raise ValueError("Buffer distance must be positive")
    params = build_point_query_params(point_geometry)
    params["distance"] = repr(float(distance))
    params["units"] = BUFFER_UNITS[unit]
    return params


def build_where_query_params(
    where: str,
    out_fields: Optional[List[str]] = None,
    return_geometry: bool = False,
) -> Dict[str, str]:
    return {
        "where": where,
        "outFields": ",".join(out_fields or ["*"]),
        "returnGeometry": "true" if return_geometry else "false",
    }


def build_related_query_params(
    object_ids: List[int],
    relationship_id: int,
    out_fields: Optional[List[str]] = None,
) -> Dict[str, str]:
    return {
        "objectIds": ",".join(str(oid) for oid in object_ids),
        "relationshipId": str(relationship_id),
        "outFields": ",".join(out_fields or ["*"]),
        "returnGeometry": "false",
    }


def extract_features(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    features = payload.get("features")
    if features is None:
        return []
    if not isinstance(features, list):
        raise QueryError("Malformed query response: features is not a list")
    return [f for f in features if isinstance(f, dict)]


def extract_related_groups(payload: Dict[str, Any]) -> Dict[int, List[Dict[str, Any]]]:
    """``queryRelatedRecords`` response as ``{object_id: [attributes, ...]}``."""

    out: Dict[int, List[Dict[str, Any]]] = {}
    for group in payload.get("relatedRecordGroups") or []:
        if not isinstance(group, dict):
            continue
        object_id = group.get("objectId")
        if not isinstance(object_id, int) or isinstance(object_id, bool):
            continue
        records = out.setdefault(object_id, [])
        for record in group.get("relatedRecords") or []:
            if isinstance(record, dict) and isinstance(record.get("attributes"), dict):
                records.append(record["attributes"])
    return out


class ArcGISLayer:
    """One FeatureServer/MapServer layer endpoint."""

    def __init__(self, url: str, http):
        self.url = url.rstrip("/")
        if self.url.lower().endswith("/query"):
            self.url = self.url[: -len("/query")]
        self.http = http

    async def query(self, params, token=None) -> Dict[str, Any]:
        return await self.http.get_json(f"{self.url}/query", params, token=token)

    async def query_related(self, params, token=None) -> Dict[str, Any]:
        return await self.http.get_json(f"{self.url}/queryRelatedRecords", params, token=token)

    def __repr__(self):
        return f"ArcGISLayer({self.url!r})"


class LayerCache:
    """Layer handles keyed by URL, owned by one pipeline."""

    def __init__(self, http, max_entries: int = 32):
        self.http = http
        self._cache = BoundedCache(max_entries=max_entries)

    def get(self, url: str) -> ArcGISLayer:
        return self._cache.get_or_create(url, lambda: ArcGISLayer(url, self.http))

    def clear(self):
        self._cache.clear()

    def __len__(self):
        return len(self._cache)
