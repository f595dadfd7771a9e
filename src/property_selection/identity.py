import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from property_selection.constants import FIELD_FNR
from property_selection.models import OwnerRecord
from property_selection.normalize import normalize_owner_value


logger = logging.getLogger("psel.identity")

OwnerLike = Union[OwnerRecord, Mapping[str, Any]]


def as_owner_record(owner: OwnerLike) -> Optional[OwnerRecord]:
    if isinstance(owner, OwnerRecord):
        return owner
    if isinstance(owner, Mapping):
        # Feature-shaped entries carry the fields under "attributes".
        attributes = owner.get("attributes")
        if isinstance(attributes, Mapping):
            return OwnerRecord.from_attributes(attributes)
        return OwnerRecord.from_attributes(owner)
    return None


def _present(value) -> bool:
    return value is not None and value != ""


def identity_key(owner: OwnerLike, context: Optional[Dict[str, Any]] = None, sequence_index: int = 0) -> str:
    """Stable identity of an owner record.

    Tried in order: the pre-joined owner list, the identifying attributes,
    the parcel/record identifiers, and finally the position in the input.
    """

    record = as_owner_record(owner)
    context = context or {}
    if record is not None:
        owner_list = normalize_owner_value(record.owner_list_text)
        if owner_list:
            return f"A:{owner_list.lower()}"

        parts = [
            f"{tag}:{normalize_owner_value(value)}"
            for tag, value in (
                ("N", record.name),
                ("B", record.address),
                ("P", record.postal_code),
                ("C", record.city),
                ("O", record.org_number),
                ("S", record.share),
            )
            if _present(value)
        ]
        if parts:
            return "|".join(parts).lower()

        fallback = []
        if _present(context.get("property_id")):
            fallback.append(f"PR:{normalize_owner_value(context['property_id'])}")
        if context.get("fnr") is not None:
            fallback.append(f"FN:{context['fnr']}")
        if record.object_id is not None:
            fallback.append(f"OB:{record.object_id}")
        if _present(record.uuid):
            fallback.append(f"UU:{normalize_owner_value(record.uuid)}")
        if fallback:
            return "|".join(fallback).lower()

    return f"index:{sequence_index}"


def dedupe(owners: Iterable[Any], context: Optional[Dict[str, Any]] = None) -> List[OwnerRecord]:
    """Drop repeated owners, keeping the first occurrence of each identity."""

    seen = set()
    unique: List[OwnerRecord] = []
    for index, owner in enumerate(owners or ()):
        record = as_owner_record(owner)
        if record is None:
            continue
        try:
            key = identity_key(record, context, index)
        except Exception:
            logger.warning("Owner identity failed; keeping record", exc_info=True)
            unique.append(record)
            continue
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def create_row_id(fnr, object_id) -> str:
    return f"{fnr}_{object_id}"


def extract_fnr(attributes: Optional[Mapping[str, Any]]):
    if not attributes:
        return None
    for key in (FIELD_FNR, "fnr"):
        value = attributes.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (str, int)):
            return value
    return None


def normalize_fnr_key(fnr) -> str:
    if fnr is None:
        return ""
    return str(fnr)
