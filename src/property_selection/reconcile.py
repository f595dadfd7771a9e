"""Pure merge of freshly fetched rows into the caller's selection."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from property_selection.identity import normalize_fnr_key
from property_selection.models import ParcelFeature, SelectionRow


@dataclass
class ReconcileResult:
    to_add: List[SelectionRow] = field(default_factory=list)
    to_remove: Set[str] = field(default_factory=set)
    updated_rows: List[SelectionRow] = field(default_factory=list)


@dataclass
class ToggleState:
    """Remove-only outcome of re-clicking parcels that are all selected."""

    keys_to_remove: Set[str]
    updated_rows: List[SelectionRow]


def _group_by_fnr(rows: Iterable[SelectionRow]) -> Dict[str, List[SelectionRow]]:
    groups: Dict[str, List[SelectionRow]] = {}
    for row in rows:
        groups.setdefault(normalize_fnr_key(row.fnr), []).append(row)
    return groups


def reconcile(
    new_rows: Sequence[SelectionRow],
    existing: Sequence[SelectionRow],
    toggle_enabled: bool,
    max_results: int,
) -> ReconcileResult:
    """Compute the next selection.

    With toggling on, a row whose parcel is already selected removes that
    whole parcel group instead of being added. Rows whose id is already
    present are skipped. Removals apply before additions and the result is
    cut to ``max_results``, dropping newly added rows first.
    """

    existing = list(existing or ())
    by_fnr = _group_by_fnr(existing)
    seen_ids = {row.id for row in existing}
    to_remove: Set[str] = set()
    to_add: List[SelectionRow] = []

    for row in new_rows or ():
        key = normalize_fnr_key(row.fnr)
        if toggle_enabled and by_fnr.get(key):
            to_remove.add(key)
            continue
        if row.id in seen_ids:
            continue
        seen_ids.add(row.id)
        to_add.append(row)

    kept = [row for row in existing if normalize_fnr_key(row.fnr) not in to_remove]
    updated = (kept + to_add)[: max(int(max_results), 0)]
    return ReconcileResult(to_add=to_add, to_remove=to_remove, updated_rows=updated)


def derive_toggle_state(
    parcels: Sequence[ParcelFeature],
    existing: Sequence[SelectionRow],
    toggle_enabled: bool,
) -> Optional[ToggleState]:
    """Remove-only state when every clicked parcel is already selected, else None."""

    if not toggle_enabled or not existing or not parcels:
        return None
    selected = {normalize_fnr_key(row.fnr) for row in existing}
    keys: Set[str] = set()
    for parcel in parcels:
        if parcel.fnr is None:
            return None
        key = normalize_fnr_key(parcel.fnr)
        if key not in selected:
            return None
        keys.add(key)
    updated = [row for row in existing if normalize_fnr_key(row.fnr) not in keys]
    return ToggleState(keys_to_remove=keys, updated_rows=updated)


def update_raw_results(
    previous: Optional[Mapping[str, dict]],
    rows_to_process: Sequence[SelectionRow],
    parcels: Sequence[ParcelFeature],
    to_remove: Set[str],
    existing: Sequence[SelectionRow],
) -> Dict[str, dict]:
    """Serialized parcel record per selected row id.

    Entries for rows whose parcel was toggled off are dropped.
    """

    updated = dict(previous or {})
    by_fnr = {}
    for parcel in parcels or ():
        if parcel.fnr is not None:
            by_fnr.setdefault(normalize_fnr_key(parcel.fnr), parcel.to_dict())
    for row in rows_to_process or ():
        record = by_fnr.get(normalize_fnr_key(row.fnr))
        if record is not None:
            updated[row.id] = record
    for row in existing or ():
        if normalize_fnr_key(row.fnr) in to_remove:
            updated.pop(row.id, None)
    return updated
