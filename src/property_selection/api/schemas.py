from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PointIn(BaseModel):
    x: float
    y: float
    wkid: Optional[int] = None


class ValidateUrlRequest(BaseModel):
    url: str
    allowed_hosts: List[str] = Field(default_factory=list)


class ValidateUrlResponse(BaseModel):
    valid: bool


class ClickRequest(BaseModel):
    """One map click for a session.

    ``config`` takes the widget settings in camelCase or snake_case; layer
    URLs come from server configuration only.
    """

    session_id: str = "default"
    point: Optional[PointIn] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    selection: List[Dict[str, Any]] = Field(default_factory=list)
    raw_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ReconcileRequest(BaseModel):
    new_rows: List[Dict[str, Any]] = Field(default_factory=list)
    existing: List[Dict[str, Any]] = Field(default_factory=list)
    toggle_enabled: bool = True
    max_results: int = Field(default=100, ge=1)
    enable_pii_masking: bool = True


class ReconcileResponse(BaseModel):
    to_add: List[Dict[str, Any]] = Field(default_factory=list)
    to_remove: List[str] = Field(default_factory=list)
    updated_rows: List[Dict[str, Any]] = Field(default_factory=list)
