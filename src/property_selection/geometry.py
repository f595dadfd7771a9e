from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


def _coords(pt) -> Optional[List[float]]:
    if (
        isinstance(pt, (list, tuple))
        and len(pt) >= 2
        and isinstance(pt[0], (int, float))
        and isinstance(pt[1], (int, float))
        and not isinstance(pt[0], bool)
        and not isinstance(pt[1], bool)
    ):
        return [float(v) for v in pt if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return None


def _coord_lists(parts) -> List[List[List[float]]]:
    out: List[List[List[float]]] = []
    for part in parts or []:
        if not isinstance(part, (list, tuple)):
            continue
        points = [p for p in (_coords(pt) for pt in part) if p is not None]
        if points:
            out.append(points)
    return out


def geometry_type_of(geom: Optional[Dict[str, Any]]) -> Optional[str]:
    """ArcGIS geometry type name of an ArcGIS JSON geometry."""

    if not isinstance(geom, dict):
        return None
    if "rings" in geom:
        return "polygon"
    if "paths" in geom:
        return "polyline"
    if "points" in geom:
        return "multipoint"
    if "xmin" in geom and "ymax" in geom:
        return "extent"
    if "x" in geom and "y" in geom:
        return "point"
    return None


def serialize_geometry(geom: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Convert ArcGIS JSON geometry to a plain dict usable without an SDK.

    Coordinates are kept in full, nothing is generalized.
    """

    gtype = geometry_type_of(geom)
    if gtype is None:
        return None
    out: Dict[str, Any] = {"type": gtype}
    if gtype == "polygon":
        out["coordinates"] = _coord_lists(geom.get("rings"))
    elif gtype == "polyline":
        out["coordinates"] = _coord_lists(geom.get("paths"))
    elif gtype == "multipoint":
        out["coordinates"] = [p for p in (_coords(pt) for pt in geom.get("points") or []) if p]
    elif gtype == "point":
        point = _coords([geom.get("x"), geom.get("y")])
        if point is None:
            return None
        out["coordinates"] = point
    else:
        try:
            out["extent"] = {k: float(geom[k]) for k in ("xmin", "ymin", "xmax", "ymax")}
        except (TypeError, ValueError, KeyError):
            return None
    spatial_reference = geom.get("spatialReference")
    if isinstance(spatial_reference, dict):
        out["spatialReference"] = dict(spatial_reference)
    return out


def _flatten(serialized: Dict[str, Any]) -> Iterable[List[float]]:
    gtype = serialized.get("type")
    coords = serialized.get("coordinates")
    if gtype in ("polygon", "polyline"):
        for part in coords or []:
            yield from part
    elif gtype == "multipoint":
        yield from coords or []
    elif gtype == "point" and coords:
        yield coords
    elif gtype == "extent":
        ext = serialized["extent"]
        yield [ext["xmin"], ext["ymin"]]
        yield [ext["xmax"], ext["ymax"]]


def union_extent(geometries: Iterable[Optional[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """Bounding extent of serialized geometries, or None if there are none."""

    xmin = ymin = float("inf")
    xmax = ymax = float("-inf")
    spatial_reference = None
    for geom in geometries:
        if not isinstance(geom, dict):
            continue
        if spatial_reference is None and isinstance(geom.get("spatialReference"), dict):
            spatial_reference = geom["spatialReference"]
        for x, y, *_ in _flatten(geom):
            xmin, ymin = min(xmin, x), min(ymin, y)
            xmax, ymax = max(xmax, x), max(ymax, y)
    if xmin == float("inf"):
        return None
    out: Dict[str, Any] = {
        "type": "extent",
        "extent": {"xmin": xmin, "ymin": ymin, "xmax": xmax, "ymax": ymax},
    }
    if spatial_reference is not None:
        out["spatialReference"] = dict(spatial_reference)
    return out
