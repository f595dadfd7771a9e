from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from property_selection.constants import (
    FIELD_ADDRESS,
    FIELD_CITY,
    FIELD_FNR,
    FIELD_LABEL,
    FIELD_NAME,
    FIELD_OBJECT_ID,
    FIELD_ORG_NUMBER,
    FIELD_OWNER_LIST,
    FIELD_POSTAL_CODE,
    FIELD_SHARE,
    FIELD_UUID,
)


FnrValue = Union[str, int]

STATUS_EMPTY = "empty"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"
STATUS_STALE = "stale"


@dataclass(frozen=True)
class MapPoint:
    x: float
    y: float
    wkid: Optional[int] = None

    def to_esri(self) -> Dict[str, Any]:
        geom: Dict[str, Any] = {"x": self.x, "y": self.y}
        if self.wkid is not None:
            geom["spatialReference"] = {"wkid": self.wkid}
        return geom


@dataclass
class ParcelFeature:
    fnr: Optional[FnrValue]
    uuid: str
    label: str
    object_id: Optional[int]
    geometry: Optional[Dict[str, Any]]
    geometry_type: Optional[str]
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "fnr": self.fnr,
            "uuid": self.uuid,
            "label": self.label,
            "object_id": self.object_id,
            "geometry": self.geometry,
            "geometry_type": self.geometry_type,
            "attributes": dict(self.attributes),
        }


def _text(value) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class OwnerRecord:
    object_id: Optional[int] = None
    fnr: Optional[FnrValue] = None
    uuid: Optional[str] = None
    label: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    share: Optional[str] = None
    org_number: Optional[str] = None
    owner_list_text: Optional[str] = None

    @classmethod
    def from_attributes(cls, attrs: Mapping[str, Any]) -> "OwnerRecord":
        object_id = attrs.get(FIELD_OBJECT_ID)
        return cls(
            object_id=object_id if isinstance(object_id, int) else None,
            fnr=attrs.get(FIELD_FNR),
            uuid=_text(attrs.get(FIELD_UUID)),
            label=_text(attrs.get(FIELD_LABEL)),
            name=_text(attrs.get(FIELD_NAME)),
            address=_text(attrs.get(FIELD_ADDRESS)),
            postal_code=_text(attrs.get(FIELD_POSTAL_CODE)),
            city=_text(attrs.get(FIELD_CITY)),
            share=_text(attrs.get(FIELD_SHARE)),
            org_number=_text(attrs.get(FIELD_ORG_NUMBER)),
            owner_list_text=_text(attrs.get(FIELD_OWNER_LIST)),
        )

    def to_attributes(self) -> Dict[str, Any]:
        """Owner fields under the service's attribute names."""

        pairs = (
            (FIELD_OBJECT_ID, self.object_id),
            (FIELD_FNR, self.fnr),
            (FIELD_UUID, self.uuid),
            (FIELD_LABEL, self.label),
            (FIELD_NAME, self.name),
            (FIELD_ADDRESS, self.address),
            (FIELD_POSTAL_CODE, self.postal_code),
            (FIELD_CITY, self.city),
            (FIELD_SHARE, self.share),
            (FIELD_ORG_NUMBER, self.org_number),
            (FIELD_OWNER_LIST, self.owner_list_text),
        )
        return {k: v for k, v in pairs if v is not None}


@dataclass(frozen=True)
class SelectionRow:
    id: str
    fnr: FnrValue
    uuid: str
    label: str
    owner_text: str
    geometry_type: Optional[str] = None
    geometry: Optional[Dict[str, Any]] = field(default=None, compare=False, hash=False)
    raw_owner: Optional[OwnerRecord] = None

    def to_dict(self, include_raw_owner: bool = True) -> dict:
        """Plain dict form. Leave out ``raw_owner`` when owner text is masked."""

        return {
            "id": self.id,
            "fnr": self.fnr,
            "uuid": self.uuid,
            "label": self.label,
            "owner_text": self.owner_text,
            "geometry_type": self.geometry_type,
            "geometry": self.geometry,
            "raw_owner": (
                self.raw_owner.to_attributes() if self.raw_owner and include_raw_owner else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SelectionRow":
        raw_owner = data.get("raw_owner")
        return cls(
            id=str(data["id"]),
            fnr=data["fnr"],
            uuid=str(data.get("uuid") or ""),
            label=str(data.get("label") or ""),
            owner_text=str(data.get("owner_text") or ""),
            geometry_type=data.get("geometry_type"),
            geometry=data.get("geometry"),
            raw_owner=OwnerRecord.from_attributes(raw_owner) if isinstance(raw_owner, Mapping) else None,
        )


@dataclass
class PipelineResult:
    status: str
    rows_to_process: List[SelectionRow] = field(default_factory=list)
    updated_rows: List[SelectionRow] = field(default_factory=list)
    to_remove: Set[str] = field(default_factory=set)
    raw_query_results: Dict[str, dict] = field(default_factory=dict)
    fnr_graphic_pairs: List[Tuple[FnrValue, ParcelFeature]] = field(default_factory=list)
    request_id: Optional[int] = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    failure_reason: Optional[str] = None
    log_entries: List[dict] = field(default_factory=list)

    @classmethod
    def empty(cls, request_id=None) -> "PipelineResult":
        return cls(status=STATUS_EMPTY, request_id=request_id)

    @classmethod
    def stale(cls, request_id=None) -> "PipelineResult":
        return cls(status=STATUS_STALE, request_id=request_id)

    @classmethod
    def cancelled(cls, request_id=None) -> "PipelineResult":
        return cls(status=STATUS_CANCELLED, request_id=request_id)

    @classmethod
    def failure(cls, error_type, message, failure_reason, request_id=None) -> "PipelineResult":
        return cls(
            status=STATUS_ERROR,
            request_id=request_id,
            error_type=error_type,
            message=message,
            failure_reason=failure_reason,
        )

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self, include_raw_owner: bool = True) -> dict:
        out = {"status": self.status, "request_id": self.request_id}
        if self.status == STATUS_SUCCESS:
            out.update(
                {
                    "rows_to_process": [r.to_dict(include_raw_owner) for r in self.rows_to_process],
                    "updated_rows": [r.to_dict(include_raw_owner) for r in self.updated_rows],
                    "to_remove": sorted(self.to_remove),
                    "raw_query_results": dict(self.raw_query_results),
                }
            )
        if self.status == STATUS_ERROR:
            out.update(
                {
                    "error_type": self.error_type,
                    "message": self.message,
                    "failure_reason": self.failure_reason,
                }
            )
        return out
