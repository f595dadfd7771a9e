"""Validation of layer URLs and of values interpolated into ArcGIS queries.

Nothing here touches the network: the checks reject misconfigured or
malicious layer URLs before a query is ever issued.
"""

from __future__ import annotations

import ipaddress
import logging
import math
import re
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit

from property_selection.config import DataSourceRegistry, PipelineConfig, Translate
from property_selection.errors import (
    GEOMETRY_ERROR,
    QUERY_ERROR,
    VALIDATION_ERROR,
    ValidationResult,
    fail,
    ok,
)
from property_selection.models import MapPoint


logger = logging.getLogger("psel.security")

MAX_SAFE_INTEGER = 2**53 - 1

_LAYER_PATH_RE = re.compile(r"/(?:MapServer|FeatureServer)/\d+(?:/query)?$", re.IGNORECASE)
_PRIVATE_172_RE = re.compile(r"^172\.(1[6-9]|2\d|3[0-1])\.")
_SERVICE_RE = re.compile(r"^(.*/(?:MapServer|FeatureServer))/\d+", re.IGNORECASE)


def is_private_host(hostname: str) -> bool:
    normalized = (hostname or "").strip().lower()
    if normalized in {"localhost", "127.0.0.1", "::1", "[::1]"}:
        return True
    if normalized.startswith(("10.", "192.168.", "169.254.")):
        return True
    if _PRIVATE_172_RE.match(normalized):
        return True
    try:
        addr = ipaddress.ip_address(normalized.strip("[]"))
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


def is_host_allowed(hostname: str, allowed_hosts: Optional[Iterable[str]] = None) -> bool:
    allowed = [h for h in (allowed_hosts or ()) if h is not None]
    if not allowed:
        return True
    host = (hostname or "").strip().lower()
    for entry in allowed:
        candidate = str(entry).strip().lower()
        if not candidate:
            continue
        if host == candidate or host.endswith("." + candidate):
            return True
    return False


def validate(url, allowed_hosts: Optional[Iterable[str]] = None) -> bool:
    """True if ``url`` is an https ArcGIS layer URL on a public, allowed host."""

    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
        if parts.scheme.lower() != "https":
            return False
        port = parts.port
        hostname = parts.hostname
    except ValueError:
        return False
    if port not in (None, 443):
        return False
    if not hostname or is_private_host(hostname):
        return False
    if not _LAYER_PATH_RE.search(parts.path):
        return False
    return is_host_allowed(hostname, allowed_hosts)


def build_fnr_where_clause(fnr) -> str:
    """SQL where clause selecting one parcel by fnr, with the value escaped."""

    if isinstance(fnr, bool):
        raise ValueError("Invalid FNR: boolean")
    if isinstance(fnr, float):
        if not math.isfinite(fnr) or not fnr.is_integer():
            raise ValueError(f"Invalid FNR: {fnr!r} must be a finite integer")
        fnr = int(fnr)
    if isinstance(fnr, int):
        if fnr < 0 or fnr > MAX_SAFE_INTEGER:
            raise ValueError(f"Invalid FNR: {fnr} must be a non-negative safe integer")
        return f"FNR = {fnr}"
    if isinstance(fnr, str):
        if not fnr.strip():
            raise ValueError("Invalid FNR: empty string")
        escaped = fnr.replace("'", "''")
        return f"FNR = '{escaped}'"
    raise ValueError(f"Invalid FNR type: {type(fnr).__name__}")


def service_root(url: str) -> Optional[str]:
    """``.../MapServer`` or ``.../FeatureServer`` prefix of a layer URL."""

    match = _SERVICE_RE.match(url or "")
    return match.group(1).lower() if match else None


def validate_data_sources(
    config: PipelineConfig,
    registry: Optional[DataSourceRegistry],
    translate: Translate,
) -> ValidationResult[Tuple[str, str]]:
    """Check both configured layers exist and point at allowed hosts.

    On success ``data`` is the ``(property_url, owner_url)`` pair.
    """

    if not config.property_data_source_id or not config.owner_data_source_id:
        return fail(VALIDATION_ERROR, translate("errorNoDataAvailable"), "missing_data_sources")
    if registry is None:
        return fail(QUERY_ERROR, translate("errorQueryFailed"), "missing_data_source_manager")

    urls = []
    for role, ds_id in (
        ("property", config.property_data_source_id),
        ("owner", config.owner_data_source_id),
    ):
        source = registry.get(ds_id)
        if source is None:
            return fail(VALIDATION_ERROR, translate("errorNoDataAvailable"), f"{role}_data_source_invalid")
        urls.append(source.url)

    for role, url in zip(("property", "owner"), urls):
        if not validate(url, config.allowed_hosts):
            return fail(VALIDATION_ERROR, translate("errorHostNotAllowed"), f"{role}_disallowed_host")

    property_url, owner_url = urls
    if service_root(property_url) != service_root(owner_url):
        logger.warning(
            "Property and owner layers are on different services",
            extra={"property_url": property_url, "owner_url": owner_url},
        )
    return ok((property_url, owner_url))


def validate_map_click(point: Optional[MapPoint], translate: Translate) -> ValidationResult[MapPoint]:
    if point is None:
        return fail(GEOMETRY_ERROR, translate("errorNoMapPoint"), "no_map_point")
    try:
        x = float(point.x)
        y = float(point.y)
    except (TypeError, ValueError):
        return fail(GEOMETRY_ERROR, translate("errorNoMapPoint"), "invalid_map_point")
    if not (math.isfinite(x) and math.isfinite(y)):
        return fail(GEOMETRY_ERROR, translate("errorNoMapPoint"), "invalid_map_point")
    return ok(point)
