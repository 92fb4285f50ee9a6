"""Shared fakes for the ETL tests: an in-memory boundary store and a scripted Overpass."""

from datetime import datetime, timezone

import psycopg2
import pytest


def rel(osm_id, name=None, **tags):
    """Build a raw Overpass relation element."""
    element_tags = {"boundary": "administrative"}
    if name is not None:
        element_tags["name"] = name
    element_tags.update({k.replace("__", ":"): v for k, v in tags.items()})
    return {"type": "relation", "id": osm_id, "tags": element_tags}


class FakeStore:
    """BoundaryStore stand-in keeping rows and edges in memory."""

    def __init__(self, countries=None):
        self.countries = countries or []
        self.rows: dict = {}          # osm_id → record
        self.edges: list = []         # (from_id, to_id)
        self.upsert_calls: list = []
        self.edge_calls: list = []
        self.fail_osm_ids: set = set()
        self.fail_edges: set = set()
        self._next_id = 1

    def upsert_boundary(self, row):
        self.upsert_calls.append(row["osm_id"])
        if row["osm_id"] in self.fail_osm_ids:
            raise psycopg2.OperationalError("server closed the connection unexpectedly")
        now = datetime.now(timezone.utc)
        existing = self.rows.get(row["osm_id"])
        if existing:
            existing.update(row)
            existing["updated_at"] = now
        else:
            existing = dict(row, id=self._next_id, created_at=now, updated_at=now)
            self._next_id += 1
            self.rows[row["osm_id"]] = existing
        return dict(existing)

    def ensure_edge(self, from_id, to_id):
        self.edge_calls.append((from_id, to_id))
        if (from_id, to_id) in self.fail_edges:
            raise psycopg2.IntegrityError("insert or update violates foreign key constraint")
        if (from_id, to_id) in self.edges:
            return False
        self.edges.append((from_id, to_id))
        return True

    def fetch_countries(self, selectors=None):
        if not selectors:
            return [dict(c) for c in self.countries]
        codes = {s.upper() for s in selectors}
        return [
            dict(c) for c in self.countries
            if (c.get("iso2") or "").upper() in codes
            or c["name"] in selectors
            or c["country_id"] in selectors
        ]

    def load_hierarchy(self, country_id):
        nodes = [
            {k: r[k] for k in ("id", "osm_id", "name", "admin_level", "custom_level", "parent_id")}
            for r in self.rows.values() if r["country_id"] == country_id
        ]
        ids = {n["id"] for n in nodes}
        return nodes, [e for e in self.edges if e[1] in ids]

    def get(self, osm_id):
        return self.rows[str(osm_id)]

    def at_level(self, admin_level):
        return sorted(r["name"] for r in self.rows.values() if r["admin_level"] == admin_level)


class FakeOverpass:
    """
    Scripted OverpassClient. children maps (parent_osm_id, admin_level) to a
    list of elements; errors maps the same key to an exception to raise.
    """

    def __init__(self, countries=None, children=None, errors=None):
        self.countries = countries or {}
        self.children = children or {}
        self.errors = errors or {}
        self.calls: list = []

    def fetch_country_boundary(self, iso2, admin_level=2):
        self.calls.append(("country", iso2, admin_level))
        error = self.errors.get(iso2)
        if error:
            raise error
        return self.countries.get(iso2)

    def fetch_child_boundaries(self, parent_osm_id, admin_level):
        key = (int(parent_osm_id), admin_level)
        self.calls.append(("children",) + key)
        if key in self.errors:
            raise self.errors[key]
        return list(self.children.get(key, []))

    def child_levels_probed(self, parent_osm_id):
        return [c[2] for c in self.calls if c[0] == "children" and c[1] == parent_osm_id]

    def close(self):
        pass


class RecordingSleep:
    def __init__(self):
        self.calls: list = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def example_country():
    return {"country_id": "country_metadata/EX", "name": "Example", "iso2": "EX"}
