"""Tolerant id lookup for provider payloads.

The provider names the same id differently depending on the endpoint
(``id``, ``locationId``, ``_id``, nested ``company.id``...). Every lookup goes
through an explicit, ordered list of candidate paths; the first candidate that
holds a non-empty string wins. Values of any other type are skipped rather
than coerced, so a numeric or object-valued field never becomes an id.
"""

from __future__ import annotations

from typing import Any, Iterable

# List entries (installed locations, company locations)
SUB_ACCOUNT_ID_FIELDS = ("id", "locationId", "_id")

# /users/me probe
AGENCY_ID_PATHS = ("company.id", "agency.id", "companyId")
SUB_ACCOUNT_ID_PATHS = ("location.id", "account.id", "locationId")

# Token endpoint responses
TOKEN_AGENCY_ID_PATHS = ("companyId",)
TOKEN_SUB_ACCOUNT_ID_PATHS = ("locationId",)


def lookup_path(data: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts; None when any hop is missing."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def clean_id(value: Any) -> str | None:
    """Return the trimmed string, or None for non-strings and blanks."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def resolve_id(data: Any, candidates: Iterable[str]) -> str | None:
    """First non-empty trimmed string among ``candidates``, in order."""
    for path in candidates:
        found = clean_id(lookup_path(data, path))
        if found:
            return found
    return None


def extract_entries(payload: Any, keys: Iterable[str] = ("locations", "data")) -> list[dict[str, Any]]:
    """Pull the list of entries out of a listing payload.

    Accepts a bare list or a dict wrapping the list under one of ``keys``.
    Non-dict entries are dropped.
    """
    items: Any = None
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        for key in keys:
            if isinstance(payload.get(key), list):
                items = payload[key]
                break
    if not items:
        return []
    return [item for item in items if isinstance(item, dict)]
