"""
db.py — Shared database connection, schema provisioning and boundary store.

All ETL scripts import from here. Connection parameters are read from
environment variables injected by docker-compose.yml.
"""

import os
import logging
from contextlib import contextmanager

import psycopg2
import psycopg2.extras

logger = logging.getLogger(__name__)

# ─── Connection config (from docker-compose environment) ─────────────────────

DB_CONFIG = {
    "host":     os.environ.get("DB_HOST",     "postgres"),
    "port":     int(os.environ.get("DB_PORT", 5432)),
    "dbname":   os.environ.get("DB_NAME",     "osm_boundaries"),
    "user":     os.environ.get("DB_USER",     "osm_user"),
    "password": os.environ.get("DB_PASSWORD", "osm_password"),
    # TCP keepalives: Overpass queries for large countries keep the
    # connection idle for minutes between writes.
    "keepalives":          1,
    "keepalives_idle":     30,   # send keepalive probe after 30s idle
    "keepalives_interval": 10,   # retry probe every 10s
    "keepalives_count":    5,    # give up after 5 unanswered probes
}

BOUNDARIES_TABLE = "admin_boundaries"
EDGES_TABLE      = "admin_boundary_edges"
COUNTRIES_TABLE  = "country_metadata"


def get_connection() -> psycopg2.extensions.connection:
    """
    Return an open psycopg2 connection.
    Caller is responsible for calling conn.close().
    """
    return psycopg2.connect(**DB_CONFIG)


@contextmanager
def get_cursor(conn: psycopg2.extensions.connection):
    """
    Context manager yielding a DictCursor.
    Commits the transaction on clean exit; rolls back on any exception.
    """
    cur = conn.cursor(cursor_factory=psycopg2.extras.DictCursor)
    try:
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()


# ─── Schema provisioning ──────────────────────────────────────────────────────

# country_metadata is provisioned elsewhere and only read here.
_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS admin_boundaries (
        id            BIGSERIAL PRIMARY KEY,
        osm_id        TEXT        NOT NULL UNIQUE,
        osm_type      TEXT        NOT NULL DEFAULT 'relation',
        name          TEXT        NOT NULL,
        name_en       TEXT,
        official_name TEXT,
        admin_level   SMALLINT    NOT NULL,
        custom_level  SMALLINT    NOT NULL,
        level_name    TEXT,
        iso_code      TEXT,
        wikidata      TEXT,
        wikipedia     TEXT,
        population    BIGINT,
        border_type   TEXT,
        country_id    TEXT        NOT NULL,
        parent_id     BIGINT      REFERENCES admin_boundaries (id),
        tags          JSONB,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_boundaries_country
        ON admin_boundaries (country_id);
    CREATE INDEX IF NOT EXISTS idx_boundaries_level
        ON admin_boundaries (admin_level);
    CREATE INDEX IF NOT EXISTS idx_boundaries_custom_level
        ON admin_boundaries (custom_level);
    CREATE INDEX IF NOT EXISTS idx_boundaries_country_level
        ON admin_boundaries (country_id, admin_level);
    CREATE INDEX IF NOT EXISTS idx_boundaries_country_custom_level
        ON admin_boundaries (country_id, custom_level);
    CREATE INDEX IF NOT EXISTS idx_boundaries_parent
        ON admin_boundaries (parent_id) WHERE parent_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS admin_boundary_edges (
        id           BIGSERIAL PRIMARY KEY,
        from_id      BIGINT      NOT NULL REFERENCES admin_boundaries (id),
        to_id        BIGINT      NOT NULL REFERENCES admin_boundaries (id),
        relationship TEXT        NOT NULL DEFAULT 'contains',
        created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_boundary_edge UNIQUE (from_id, to_id),
        CONSTRAINT ck_boundary_edge_no_self_loop CHECK (from_id <> to_id)
    );

    CREATE INDEX IF NOT EXISTS idx_boundary_edges_to
        ON admin_boundary_edges (to_id);
"""


def ensure_schema(conn: psycopg2.extensions.connection) -> None:
    """
    Create the boundary and edge tables plus their indexes if missing.
    Every statement is IF NOT EXISTS, so this runs on every start.
    """
    with get_cursor(conn) as cur:
        cur.execute(_SCHEMA_SQL)
    logger.info("Schema ready (%s, %s)", BOUNDARIES_TABLE, EDGES_TABLE)


# ─── Boundary upsert ──────────────────────────────────────────────────────────

# Columns must match the row dict produced by boundaries.build_boundary_row().
_BOUNDARY_UPSERT_SQL = """
    INSERT INTO admin_boundaries (
        osm_id,
        osm_type,
        name,
        name_en,
        official_name,
        admin_level,
        custom_level,
        level_name,
        iso_code,
        wikidata,
        wikipedia,
        population,
        border_type,
        country_id,
        parent_id,
        tags,
        created_at,
        updated_at
    )
    VALUES (
        %(osm_id)s,
        %(osm_type)s,
        %(name)s,
        %(name_en)s,
        %(official_name)s,
        %(admin_level)s,
        %(custom_level)s,
        %(level_name)s,
        %(iso_code)s,
        %(wikidata)s,
        %(wikipedia)s,
        %(population)s,
        %(border_type)s,
        %(country_id)s,
        %(parent_id)s,
        %(tags)s,
        NOW(),
        NOW()
    )
    ON CONFLICT (osm_id) DO UPDATE SET
        osm_type      = EXCLUDED.osm_type,
        name          = EXCLUDED.name,
        name_en       = EXCLUDED.name_en,
        official_name = EXCLUDED.official_name,
        admin_level   = EXCLUDED.admin_level,
        custom_level  = EXCLUDED.custom_level,
        level_name    = EXCLUDED.level_name,
        iso_code      = EXCLUDED.iso_code,
        wikidata      = EXCLUDED.wikidata,
        wikipedia     = EXCLUDED.wikipedia,
        population    = EXCLUDED.population,
        border_type   = EXCLUDED.border_type,
        country_id    = EXCLUDED.country_id,
        parent_id     = EXCLUDED.parent_id,
        tags          = EXCLUDED.tags,
        updated_at    = NOW()
    RETURNING id, osm_id, name, admin_level, custom_level, country_id,
              parent_id, created_at, updated_at
"""

_EDGE_INSERT_SQL = """
    INSERT INTO admin_boundary_edges (from_id, to_id, relationship, created_at)
    VALUES (%s, %s, 'contains', NOW())
    ON CONFLICT (from_id, to_id) DO NOTHING
    RETURNING id
"""

_COUNTRIES_SQL = """
    SELECT id::text AS country_id, name, iso2
    FROM   country_metadata
"""

_COUNTRIES_FILTERED_SQL = """
    SELECT id::text AS country_id, name, iso2
    FROM   country_metadata
    WHERE  upper(iso2)  = ANY(%(codes)s)
       OR  name         = ANY(%(selectors)s)
       OR  id::text     = ANY(%(selectors)s)
"""

_HIERARCHY_NODES_SQL = """
    SELECT id, osm_id, name, admin_level, custom_level, parent_id
    FROM   admin_boundaries
    WHERE  country_id = %s
    ORDER  BY custom_level, id
"""

# Edges are scoped by their child so cross-country links still show up.
_HIERARCHY_EDGES_SQL = """
    SELECT e.from_id, e.to_id
    FROM   admin_boundary_edges e
    JOIN   admin_boundaries     c ON c.id = e.to_id
    WHERE  c.country_id = %s
    ORDER  BY e.from_id, e.to_id
"""


class BoundaryStore:
    """
    Idempotent writes of boundary nodes and containment edges.

    Every method runs in its own short transaction (see get_cursor), so a
    rejected write rolls back only itself and the connection stays usable
    for the rest of the run.
    """

    def __init__(self, conn: psycopg2.extensions.connection):
        self.conn = conn

    def upsert_boundary(self, row: dict) -> dict:
        """
        Insert a boundary or overwrite the existing one with the same osm_id.

        id and created_at of an existing row are preserved; every other
        column takes the new value. Returns the stored record.
        """
        params = dict(row)
        params["tags"] = psycopg2.extras.Json(row["tags"]) if row.get("tags") else None
        with get_cursor(self.conn) as cur:
            cur.execute(_BOUNDARY_UPSERT_SQL, params)
            stored = cur.fetchone()
        logger.debug("upsert_boundary: osm_id=%s → id=%s", row["osm_id"], stored["id"])
        return dict(stored)

    def ensure_edge(self, from_id: int, to_id: int) -> bool:
        """
        Create the 'contains' edge from_id → to_id unless it already exists.
        Returns True if a new edge was inserted.
        """
        with get_cursor(self.conn) as cur:
            cur.execute(_EDGE_INSERT_SQL, (from_id, to_id))
            created = cur.fetchone() is not None
        if created:
            logger.debug("ensure_edge: created %s → %s", from_id, to_id)
        return created

    def fetch_countries(self, selectors: list[str] | None = None) -> list[dict]:
        """
        Read root countries from the reference table.

        selectors may mix ISO2 codes (case-insensitive), exact country names
        and country ids. None or an empty list means every country.
        """
        with get_cursor(self.conn) as cur:
            if selectors:
                cur.execute(_COUNTRIES_FILTERED_SQL, {
                    "codes":     [s.upper() for s in selectors],
                    "selectors": list(selectors),
                })
            else:
                cur.execute(_COUNTRIES_SQL)
            rows = cur.fetchall()
        return [dict(r) for r in rows]

    def load_hierarchy(self, country_id: str) -> tuple[list[dict], list[tuple[int, int]]]:
        """Return (nodes, edges) stored for one country."""
        with get_cursor(self.conn) as cur:
            cur.execute(_HIERARCHY_NODES_SQL, (country_id,))
            nodes = [dict(r) for r in cur.fetchall()]
            cur.execute(_HIERARCHY_EDGES_SQL, (country_id,))
            edges = [(r["from_id"], r["to_id"]) for r in cur.fetchall()]
        return nodes, edges
