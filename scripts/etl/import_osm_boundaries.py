"""
import_osm_boundaries.py — Build the administrative boundary hierarchy of each
country from OpenStreetMap, level by level.

For every country:

  1. Fetch the country relation (admin_level=2) and store it at custom_level 0.
  2. For each boundary in the current frontier, probe admin_level+1,
     admin_level+2, … up to MAX_ADMIN_LEVEL for relations geographically
     inside it. The FIRST level with any result is its child level; deeper
     levels are not probed for that parent (they belong to the children).
  3. Store each child once per run (keyed by OSM id) and link it to the
     frontier boundary with a 'contains' edge.
  4. The newly stored children become the next frontier. Stop when empty.

admin_level is OSM's classification and is sparse per country (many have no
level 3 or 5). custom_level is the depth actually observed here: a child is
always exactly one custom_level below the boundary it was found inside.

A failure while expanding one boundary (Overpass or database) is recorded in
the country's stats and only that subtree is abandoned.
"""

import logging
import os
import time
from datetime import datetime, timezone

import psycopg2
import requests

from boundaries import build_boundary_row, level_name
from overpass import OverpassError

# ─── Constants ────────────────────────────────────────────────────────────────

START_ADMIN_LEVEL = int(os.environ.get("OSM_START_ADMIN_LEVEL", 2))
MAX_ADMIN_LEVEL   = int(os.environ.get("OSM_MAX_ADMIN_LEVEL", 10))
RATE_LIMIT_DELAY  = float(os.environ.get("OSM_RATE_LIMIT_DELAY", 2.0))  # between frontier boundaries
COUNTRY_PAUSE     = float(os.environ.get("OSM_COUNTRY_PAUSE", 3.0))     # between countries

# Failures that abandon one branch rather than the whole country
BRANCH_ERRORS = (OverpassError, requests.RequestException)

logger = logging.getLogger(__name__)


def new_country_stats(country: dict) -> dict:
    return {
        "name":          country.get("name"),
        "iso2":          country.get("iso2"),
        "country_id":    country.get("country_id"),
        "status":        "pending",
        "boundaries":    0,
        "relationships": 0,
        "level_stats":   {},
        "errors":        [],
        "duration":      0.0,
    }


# ─── Level search ─────────────────────────────────────────────────────────────

def find_child_level(
    client,
    parent_osm_id: str,
    parent_admin_level: int,
    max_admin_level: int,
    log: logging.Logger,
) -> tuple[int | None, list[dict]]:
    """
    Probe admin levels below the parent until one has boundaries inside it.

    Returns (admin_level, elements) for the first non-empty level, or
    (None, []) when nothing exists down to max_admin_level.
    """
    for candidate in range(parent_admin_level + 1, max_admin_level + 1):
        elements = client.fetch_child_boundaries(parent_osm_id, candidate)
        if elements:
            return candidate, elements
        log.debug("rel(%s): nothing at admin_level=%d", parent_osm_id, candidate)
    return None, []


# ─── Child storage ────────────────────────────────────────────────────────────

def store_children(
    elements: list[dict],
    parent: dict,
    admin_level: int,
    country: dict,
    store,
    seen: dict,
    edges: set,
    stats: dict,
    log: logging.Logger,
) -> list[dict]:
    """
    Persist child boundaries of one frontier entry and link them to it.

    `seen` maps OSM id → stored record for the current country run. A child
    already in it is not written again; it only gets an edge from this
    parent (upstream data occasionally places one relation inside two
    parents, so the graph is a DAG rather than a tree).

    Returns frontier entries for the children stored for the first time.
    """
    parent_record = parent["record"]
    custom_level  = parent["custom_level"] + 1
    new_entries: list[dict] = []

    for element in elements:
        osm_id = str(element["id"])
        record = seen.get(osm_id)
        is_new = record is None

        if is_new:
            row = build_boundary_row(element, country, parent_record, admin_level, custom_level)
            try:
                record = store.upsert_boundary(row)
            except psycopg2.Error as exc:
                msg = f"Failed to store {row['name']} (rel {osm_id}): {exc}"
                log.error(msg)
                stats["errors"].append(msg)
                continue
            seen[osm_id] = record
            stats["level_stats"][admin_level] = stats["level_stats"].get(admin_level, 0) + 1
        elif record["admin_level"] <= parent["admin_level"]:
            log.warning(
                "rel(%s) reported inside rel(%s) but sits at admin_level=%d ≤ %d — not linking",
                osm_id, parent_record["osm_id"], record["admin_level"], parent["admin_level"],
            )
            continue

        edge = (parent_record["id"], record["id"])
        if edge not in edges:
            try:
                store.ensure_edge(*edge)
                edges.add(edge)
            except psycopg2.Error as exc:
                msg = f"Failed to link rel {parent_record['osm_id']} → rel {osm_id}: {exc}"
                log.error(msg)
                stats["errors"].append(msg)

        if is_new:
            new_entries.append({
                "record":       record,
                "admin_level":  admin_level,
                "custom_level": custom_level,
            })

    return new_entries


# ─── Per-country traversal ────────────────────────────────────────────────────

def process_country(
    country: dict,
    client,
    store,
    start_admin_level: int = START_ADMIN_LEVEL,
    max_admin_level: int = MAX_ADMIN_LEVEL,
    rate_limit_delay: float = RATE_LIMIT_DELAY,
    sleep=time.sleep,
    log: logging.Logger | None = None,
) -> dict:
    """
    Resolve and store the boundary hierarchy of one country.

    Args:
        country:           {"country_id", "name", "iso2"}
        client:            OverpassClient (or anything with the same fetch_* methods)
        store:             BoundaryStore (upsert_boundary / ensure_edge)
        start_admin_level: admin_level of the country relation
        max_admin_level:   deepest admin_level probed
        rate_limit_delay:  seconds to wait between consecutive frontier boundaries
        sleep:             wait function (time.sleep)
        log:               Logger instance

    Returns:
        Stats dict. Overpass and database failures are recorded, not raised.
    """
    if log is None:
        log = logger

    stats = new_country_stats(country)
    started = time.monotonic()
    seen: dict = {}     # OSM id → stored record, this country only
    edges: set = set()  # (from_id, to_id) ensured during this run

    log.info("=" * 70)
    log.info("Processing: %s (%s)", country.get("name"), country.get("iso2") or "N/A")
    log.info("=" * 70)

    try:
        root_element = client.fetch_country_boundary(country["iso2"], start_admin_level)
    except BRANCH_ERRORS as exc:
        msg = f"Could not fetch country boundary: {exc}"
        log.error(msg)
        stats["errors"].append(msg)
        stats["status"] = "error"
        stats["duration"] = time.monotonic() - started
        return stats

    if root_element is None:
        stats["errors"].append("Could not fetch country boundary")
        stats["status"] = "root_not_found"
        stats["duration"] = time.monotonic() - started
        return stats

    row = build_boundary_row(root_element, country, None, start_admin_level, 0)
    try:
        root_record = store.upsert_boundary(row)
    except psycopg2.Error as exc:
        msg = f"Failed to store country boundary {row['name']}: {exc}"
        log.error(msg)
        stats["errors"].append(msg)
        stats["status"] = "error"
        stats["duration"] = time.monotonic() - started
        return stats

    seen[row["osm_id"]] = root_record
    stats["level_stats"][start_admin_level] = 1

    frontier = [{"record": root_record, "admin_level": start_admin_level, "custom_level": 0}]
    expanded = 0

    while frontier:
        log.info(
            "Expanding %d boundaries at custom_level=%d",
            len(frontier), frontier[0]["custom_level"],
        )
        next_frontier: list[dict] = []

        for entry in frontier:
            record = entry["record"]
            if entry["admin_level"] >= max_admin_level:
                log.debug("rel(%s) at max admin_level — leaf", record["osm_id"])
                continue

            if expanded:
                sleep(rate_limit_delay)
            expanded += 1

            try:
                child_level, elements = find_child_level(
                    client, record["osm_id"], entry["admin_level"], max_admin_level, log,
                )
            except BRANCH_ERRORS as exc:
                msg = f"Failed to expand {record['name']} (rel {record['osm_id']}): {exc}"
                log.error(msg)
                stats["errors"].append(msg)
                continue

            if child_level is None:
                continue

            log.info(
                "  %s → %d × %s (admin_level=%d)",
                record["name"], len(elements), level_name(child_level), child_level,
            )
            next_frontier.extend(store_children(
                elements, entry, child_level, country, store, seen, edges, stats, log,
            ))

        frontier = next_frontier

    stats["boundaries"]    = len(seen)
    stats["relationships"] = len(edges)
    stats["status"]        = "done"
    stats["duration"]      = time.monotonic() - started
    log.info(
        "%s: %d boundaries, %d relationships, %d errors in %.1fs",
        country.get("name"), stats["boundaries"], stats["relationships"],
        len(stats["errors"]), stats["duration"],
    )
    return stats


# ─── Main entry point ─────────────────────────────────────────────────────────

def new_summary() -> dict:
    return {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "countries":  [],
        "skipped":    [],
        "totals":     {"boundaries": 0, "relationships": 0, "errors": 0},
        "duration":   0.0,
    }


def import_osm_boundaries(
    countries: list[str] | None,
    store,
    client,
    summary: dict | None = None,
    country_pause: float = COUNTRY_PAUSE,
    sleep=time.sleep,
    log: logging.Logger | None = None,
    **engine_options,
) -> dict:
    """
    Import OSM boundary hierarchies for the selected countries.

    Args:
        countries:      Optional ISO2 codes / names / country ids (None = all)
        store:          BoundaryStore
        client:         OverpassClient
        summary:        Shared summary dict (mutated in-place, so a signal
                        handler can save a partial report)
        country_pause:  Seconds to wait between consecutive countries
        sleep:          wait function (time.sleep)
        log:            Logger instance
        engine_options: start_admin_level / max_admin_level / rate_limit_delay

    Returns:
        The summary dict.
    """
    if log is None:
        log = logger
    if summary is None:
        summary = new_summary()

    started = time.monotonic()
    selected = store.fetch_countries(countries)
    log.info("Found %d countries to process", len(selected))
    if not selected:
        log.warning("No countries found to process")

    for index, country in enumerate(selected):
        if not country.get("iso2"):
            log.warning("Skipping %s — no ISO2 code", country.get("name"))
            summary["skipped"].append({
                "name":       country.get("name"),
                "country_id": country.get("country_id"),
                "reason":     "missing ISO2 code",
            })
            continue

        try:
            stats = process_country(country, client, store, sleep=sleep, log=log, **engine_options)
        except Exception as exc:
            log.error("Unhandled error processing %s: %s", country.get("name"), exc, exc_info=True)
            stats = new_country_stats(country)
            stats["status"] = "error"
            stats["errors"].append(str(exc))

        summary["countries"].append(stats)
        summary["totals"]["boundaries"]    += stats["boundaries"]
        summary["totals"]["relationships"] += stats["relationships"]
        summary["totals"]["errors"]        += len(stats["errors"])

        if index < len(selected) - 1:
            log.info("Waiting %.0fs before next country (rate limit protection)…", country_pause)
            sleep(country_pause)

    summary["duration"] = time.monotonic() - started
    log.info(
        "import_osm_boundaries complete: %d countries, %d boundaries, %d relationships",
        len(summary["countries"]), summary["totals"]["boundaries"],
        summary["totals"]["relationships"],
    )
    return summary
