"""
boundaries.py — Project raw Overpass relations onto admin_boundaries rows.

Only a fixed allow-list of OSM tags is kept; everything else on the relation
is dropped. Classification tags that are queried directly (population,
ISO 3166-2 code, Wikidata/Wikipedia references) get their own columns.
"""

import re

# ─── Admin level metadata ─────────────────────────────────────────────────────

ADMIN_LEVEL_METADATA = {
    2:  {"name": "Country",           "priority": 0},
    3:  {"name": "Region",            "priority": 1},
    4:  {"name": "State/Province",    "priority": 2},
    5:  {"name": "Division",          "priority": 3},
    6:  {"name": "District",          "priority": 4},
    7:  {"name": "Sub-district",      "priority": 5},
    8:  {"name": "City/Municipality", "priority": 6},
    9:  {"name": "Ward/Village",      "priority": 7},
    10: {"name": "Neighborhood",      "priority": 8},
    11: {"name": "Block/Locality",    "priority": 9},
}

# Tag keys tried in order when picking the display name
NAME_KEYS = ["name:en", "name", "official_name"]

# Tags copied verbatim into the sparse `tags` JSONB column
RELEVANT_TAG_KEYS = ["name", "name:en", "official_name", "type", "designation", "border_type"]

# Both spellings occur in OSM data
ISO_CODE_KEYS = ["ISO3166-2", "iso3166-2"]


def level_name(admin_level: int) -> str:
    meta = ADMIN_LEVEL_METADATA.get(admin_level)
    return meta["name"] if meta else f"Level {admin_level}"


def _first_tag(tags: dict, keys: list[str]) -> str | None:
    """Return the first value among keys that is a non-blank string."""
    for key in keys:
        value = tags.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def extract_name(tags: dict | None, admin_level: int) -> str:
    """
    Pick the display name: name:en → name → official_name.
    Falls back to "Unnamed Level {admin_level}".
    """
    return _first_tag(tags or {}, NAME_KEYS) or f"Unnamed Level {admin_level}"


def parse_population(value) -> int | None:
    """
    Parse an OSM population tag ("1,234,567", "12 345", "~5000") to an int.
    Only digits are kept; returns None when there are none.
    """
    if value is None:
        return None
    digits = re.sub(r"[^\d]", "", str(value))
    return int(digits) if digits else None


def extract_relevant_tags(tags: dict | None) -> dict | None:
    if not tags:
        return None
    relevant = {key: tags[key] for key in RELEVANT_TAG_KEYS if tags.get(key)}
    return relevant or None


def build_boundary_row(
    element: dict,
    country: dict,
    parent: dict | None,
    admin_level: int,
    custom_level: int,
) -> dict:
    """
    Build the admin_boundaries row for one Overpass element.

    Args:
        element:      Raw Overpass element ({"type", "id", "tags"})
        country:      Root country ({"country_id", "name", "iso2"})
        parent:       Stored parent record, or None for the country itself
        admin_level:  OSM admin_level the element was found at
        custom_level: 0-based depth in this country's discovered hierarchy
    """
    tags = element.get("tags") or {}
    return {
        "osm_id":        str(element["id"]),
        "osm_type":      element.get("type") or "relation",
        "name":          extract_name(tags, admin_level),
        "name_en":       _first_tag(tags, ["name:en"]),
        "official_name": _first_tag(tags, ["official_name", "name"]),
        "admin_level":   admin_level,
        "custom_level":  custom_level,
        "level_name":    level_name(admin_level),
        "iso_code":      _first_tag(tags, ISO_CODE_KEYS),
        "wikidata":      _first_tag(tags, ["wikidata"]),
        "wikipedia":     _first_tag(tags, ["wikipedia"]),
        "population":    parse_population(tags.get("population")),
        "border_type":   _first_tag(tags, ["border_type"]),
        "country_id":    country["country_id"],
        "parent_id":     parent["id"] if parent else None,
        "tags":          extract_relevant_tags(tags),
    }
