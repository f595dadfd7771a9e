from __future__ import annotations

import re
from typing import List, Optional

from property_selection.cache import BoundedCache
from property_selection.constants import (
    ADDRESS_MASK_ASTERISKS,
    ADDRESS_MASK_KEEP,
    MASK_TOKEN,
    MAX_MASK_ASTERISKS,
    MIN_MASK_LENGTH,
)
from property_selection.identity import OwnerLike, as_owner_record
from property_selection.normalize import strip_html


NBSP = "\u00a0"

_OWNER_ENTRY_RE = re.compile(r"^(.+?)\s*\(([^)]+)\)\s*$")
_SPACES_RE = re.compile(r"\s+")


def _mask_input(value: Optional[str]) -> Optional[str]:
    """Normalized text, or None when it is too short to mask partially."""

    normalized = strip_html(value)
    if len(normalized) < MIN_MASK_LENGTH:
        return None
    return normalized


def mask_name(name: Optional[str]) -> str:
    normalized = _mask_input(name)
    if normalized is None:
        return MASK_TOKEN
    masked = " ".join(
        part[0] + "*" * min(MAX_MASK_ASTERISKS, len(part) - 1)
        for part in normalized.split(" ")
        if part
    )
    # Single-letter words survive masking unchanged.
    if masked == normalized:
        return MASK_TOKEN
    return masked


def mask_address(address: Optional[str]) -> str:
    normalized = _mask_input(address)
    if normalized is None:
        return MASK_TOKEN
    return normalized[:ADDRESS_MASK_KEEP] + "*" * min(
        ADDRESS_MASK_ASTERISKS, len(normalized) - ADDRESS_MASK_KEEP
    )


def _unique_entries(entries) -> List[str]:
    seen = set()
    out = []
    for entry in entries:
        entry = entry.strip()
        if not entry or entry in seen:
            continue
        seen.add(entry)
        out.append(entry)
    return out


def _mask_owner_list_entry(entry: str) -> str:
    match = _OWNER_ENTRY_RE.match(entry)
    if not match:
        return mask_name(entry)
    name, org_number = match.groups()
    return f"{mask_name(name.strip())} ({org_number.strip()})"


def format_owner_list(owner_list_text: str, mask_pii: bool) -> str:
    entries = _unique_entries(strip_html(owner_list_text).split(";"))
    if not mask_pii:
        return "; ".join(entries)
    return "; ".join(e for e in (_mask_owner_list_entry(x) for x in entries) if e)


def _format_individual(owner, mask_pii: bool, unknown_text: str) -> str:
    raw_name = strip_html(owner.name or "") or unknown_text
    name_part = mask_name(raw_name) if mask_pii and raw_name != unknown_text else raw_name

    raw_address = strip_html(owner.address or "")
    address_part = mask_address(raw_address) if mask_pii and raw_address else raw_address

    postal_code = _SPACES_RE.sub("", strip_html(owner.postal_code or ""))
    city = strip_html(owner.city or "")
    org_number = strip_html(owner.org_number or "")

    if postal_code and city:
        locality = f"{postal_code} {city}"
    else:
        locality = postal_code or city

    text = ", ".join(p for p in (name_part, address_part, locality) if p)
    if org_number:
        text = f"{text} ({org_number})"
    return text.strip() or unknown_text


def format_owner_info(owner: OwnerLike, mask_pii: bool, unknown_text: str) -> str:
    """Human readable owner text, masked when ``mask_pii`` is set.

    A pre-joined owner list wins over the individual name/address fields.
    Pure and deterministic.
    """

    record = as_owner_record(owner)
    if record is None:
        return unknown_text
    if record.owner_list_text:
        return format_owner_list(record.owner_list_text, mask_pii)
    return _format_individual(record, mask_pii, unknown_text)


def format_address_only(owner: OwnerLike, mask_pii: bool) -> str:
    record = as_owner_record(owner)
    if record is None:
        return ""
    address = strip_html(record.address or "")
    if mask_pii and address:
        return mask_address(address)
    return address


def format_property_with_share(label, share=None) -> str:
    text = strip_html(label) if label is not None else ""
    share_text = strip_html(share) if share is not None else ""
    if not share_text:
        return text
    return f"{text}{NBSP}({share_text})"


class OwnerFormatter:
    """Memoizes ``format_owner_info`` for the lifetime of one pipeline."""

    def __init__(self, max_entries: int = 2048):
        self._cache = BoundedCache(max_entries=max_entries)

    def format(self, owner: OwnerLike, mask_pii: bool, unknown_text: str) -> str:
        record = as_owner_record(owner)
        if record is None:
            return unknown_text
        key = (record, bool(mask_pii), unknown_text)
        return self._cache.get_or_create(
            key, lambda: format_owner_info(record, mask_pii, unknown_text)
        )

    def clear(self):
        self._cache.clear()

    def __len__(self):
        return len(self._cache)
