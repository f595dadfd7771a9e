from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from property_selection.constants import DEFAULT_MAX_RESULTS
from property_selection.errors import ValidationError
from property_selection.normalize import strip_html


Translate = Callable[[str], str]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return _parse_bool(raw, default)


def _parse_bool(raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return default
    v = str(raw).strip().lower()
    if v in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _parse_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


def normalize_hosts(hosts: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    """Strip markup and whitespace, drop blanks and duplicates, keep order."""

    if hosts is None:
        return ()
    if isinstance(hosts, str):
        hosts = hosts.replace(",", "\n").splitlines()
    seen = []
    for host in hosts:
        text = strip_html(host) if host is not None else ""
        if text and text not in seen:
            seen.append(text)
    return tuple(seen)


def _pick(data: Mapping[str, Any], *keys: str, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class PipelineConfig:
    """Per-widget settings consumed by the selection pipeline."""

    property_data_source_id: Optional[str] = None
    owner_data_source_id: Optional[str] = None
    max_results: int = DEFAULT_MAX_RESULTS
    enable_toggle_removal: bool = True
    enable_pii_masking: bool = True
    allowed_hosts: Tuple[str, ...] = ()
    enable_batch_owner_query: bool = False
    relationship_id: Optional[int] = None

    def __post_init__(self):
        max_results = _parse_int(self.max_results)
        if max_results is None:
            max_results = DEFAULT_MAX_RESULTS
        object.__setattr__(self, "max_results", max(1, max_results))
        object.__setattr__(self, "allowed_hosts", normalize_hosts(self.allowed_hosts))

    @property
    def use_batch_strategy(self) -> bool:
        return (
            self.enable_batch_owner_query
            and self.relationship_id is not None
            and bool(self.property_data_source_id)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        return cls(
            property_data_source_id=_pick(data, "propertyDataSourceId", "property_data_source_id"),
            owner_data_source_id=_pick(data, "ownerDataSourceId", "owner_data_source_id"),
            max_results=_pick(data, "maxResults", "max_results", default=DEFAULT_MAX_RESULTS),
            enable_toggle_removal=_parse_bool(
                _pick(data, "enableToggleRemoval", "enable_toggle_removal"), True
            ),
            enable_pii_masking=_parse_bool(
                _pick(data, "enablePIIMasking", "enable_pii_masking"), True
            ),
            allowed_hosts=_pick(data, "allowedHosts", "allowed_hosts", default=()),
            enable_batch_owner_query=_parse_bool(
                _pick(data, "enableBatchOwnerQuery", "enable_batch_owner_query"), False
            ),
            relationship_id=_parse_int(_pick(data, "relationshipId", "relationship_id")),
        )

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            property_data_source_id=os.getenv("PSEL_PROPERTY_DATA_SOURCE_ID") or None,
            owner_data_source_id=os.getenv("PSEL_OWNER_DATA_SOURCE_ID") or None,
            max_results=os.getenv("PSEL_MAX_RESULTS", DEFAULT_MAX_RESULTS),
            enable_toggle_removal=_env_bool("PSEL_ENABLE_TOGGLE_REMOVAL", True),
            enable_pii_masking=_env_bool("PSEL_ENABLE_PII_MASKING", True),
            allowed_hosts=os.getenv("PSEL_ALLOWED_HOSTS", ""),
            enable_batch_owner_query=_env_bool("PSEL_ENABLE_BATCH_OWNER_QUERY", False),
            relationship_id=_parse_int(os.getenv("PSEL_RELATIONSHIP_ID")),
        )

    def to_dict(self) -> dict:
        return {
            "propertyDataSourceId": self.property_data_source_id,
            "ownerDataSourceId": self.owner_data_source_id,
            "maxResults": self.max_results,
            "enableToggleRemoval": self.enable_toggle_removal,
            "enablePIIMasking": self.enable_pii_masking,
            "allowedHosts": list(self.allowed_hosts),
            "enableBatchOwnerQuery": self.enable_batch_owner_query,
            "relationshipId": self.relationship_id,
        }


@dataclass(frozen=True)
class LayerDataSource:
    id: str
    url: str


@dataclass
class DataSourceRegistry:
    """Lookup of configured layers by data source id."""

    _sources: Dict[str, LayerDataSource] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DataSourceRegistry":
        sources = {}
        for key, value in (mapping or {}).items():
            url = value.get("url") if isinstance(value, Mapping) else value
            if isinstance(url, str) and url.strip():
                sources[str(key)] = LayerDataSource(id=str(key), url=url.strip())
        return cls(sources)

    @classmethod
    def from_env(cls, var: str = "PSEL_DATA_SOURCES") -> "DataSourceRegistry":
        raw = os.getenv(var)
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ValidationError(f"{var} must be a JSON object: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"{var} must be a JSON object")
        return cls.from_mapping(data)

    def get(self, key: Optional[str]) -> Optional[LayerDataSource]:
        if not key:
            return None
        return self._sources.get(str(key))

    def to_array(self) -> List[LayerDataSource]:
        return list(self._sources.values())


DEFAULT_MESSAGES: Dict[str, str] = {
    "unknownOwner": "Unknown owner",
    "errorOwnerQueryFailed": "Owner query failed",
    "errorQueryFailed": "Query failed. Please try again.",
    "errorNoDataAvailable": "No data available",
    "errorNoMapPoint": "No map point was provided",
    "errorHostNotAllowed": "Host is not allowed",
    "errorInvalidUrl": "Enter a valid ArcGIS REST service URL.",
    "widgetNotConfigured": "Configure data sources to get started",
}

SWEDISH_MESSAGES: Dict[str, str] = {
    "unknownOwner": "Okänd ägare",
    "errorOwnerQueryFailed": "Ägarfrågan misslyckades",
    "errorQueryFailed": "Frågan misslyckades. Försök igen.",
    "errorNoDataAvailable": "Ingen data tillgänglig",
    "errorNoMapPoint": "Ingen kartpunkt angavs",
    "errorHostNotAllowed": "Värden är inte tillåten",
    "errorInvalidUrl": "Ange en giltig ArcGIS REST-tjänst-URL.",
    "widgetNotConfigured": "Konfigurera datakällor för att komma igång",
}

_LOCALES = {"en": DEFAULT_MESSAGES, "sv": SWEDISH_MESSAGES}


def messages_for(locale: Optional[str]) -> Dict[str, str]:
    if not locale:
        return DEFAULT_MESSAGES
    return _LOCALES.get(locale.split("-")[0].lower(), DEFAULT_MESSAGES)


def make_translator(messages: Optional[Mapping[str, str]] = None) -> Translate:
    table = dict(DEFAULT_MESSAGES)
    if messages:
        table.update(messages)

    def translate(key: str) -> str:
        return table.get(key, key)

    return translate
