"""
overpass.py — Overpass API client for administrative boundary relations.

Two query shapes are used:

  country boundary:
    relation["admin_level"="2"]["ISO3166-1:alpha2"="NZ"];

  boundaries at one admin level contained in a parent relation:
    rel(<parent osm id>); map_to_area -> .parentArea;
    rel(area.parentArea)["admin_level"="<L>"]["boundary"="administrative"];

Requests are strictly sequential. Overpass enforces per-client slot limits
and answers bursts with 429s, so parallel requests only get us banned.

Retry policy:
  429 / 5xx / server-side runtime error → wait retry_delay * 2**attempt, retry
  network error (timeout, reset)        → same backoff; re-raised on last attempt
  other 4xx                             → OverpassQueryError immediately
"""

import logging
import os
import time

import requests

# ─── Config ───────────────────────────────────────────────────────────────────

OVERPASS_CONFIG = {
    "url":         os.environ.get("OVERPASS_URL", "https://overpass-api.de/api/interpreter"),
    "timeout":     int(os.environ.get("OVERPASS_TIMEOUT", 250)),       # seconds per call
    "max_retries": int(os.environ.get("OVERPASS_MAX_RETRIES", 3)),
    "retry_delay": float(os.environ.get("OVERPASS_RETRY_DELAY", 5.0)),  # first backoff, seconds
    "user_agent":  os.environ.get("OVERPASS_USER_AGENT", "osm-boundaries-etl/1.0"),
}

logger = logging.getLogger(__name__)


# ─── Errors ───────────────────────────────────────────────────────────────────

class OverpassError(Exception):
    """Base class for every failure raised by OverpassClient."""


class OverpassQueryError(OverpassError):
    """The server rejected the query itself (4xx other than 429)."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body[:200]}")


class OverpassUnavailableError(OverpassError):
    """Transient failures persisted through every retry."""


# ─── Query builders ───────────────────────────────────────────────────────────

def _quote(value: str) -> str:
    """Escape a value for use inside an Overpass QL double-quoted string."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def build_country_query(iso2: str, admin_level: int, timeout: int) -> str:
    return (
        f"[out:json][timeout:{timeout}];\n"
        f'relation["admin_level"="{admin_level}"]["ISO3166-1:alpha2"="{_quote(iso2)}"];\n'
        f"out body;\n"
    )


def build_children_query(parent_osm_id: str | int, admin_level: int, timeout: int) -> str:
    return (
        f"[out:json][timeout:{timeout}];\n"
        f"rel({int(parent_osm_id)});\n"
        f"map_to_area -> .parentArea;\n"
        f"(\n"
        f'  rel(area.parentArea)["admin_level"="{admin_level}"]["boundary"="administrative"];\n'
        f");\n"
        f"out body;\n"
    )


def remove_duplicates(elements: list[dict]) -> list[dict]:
    """
    Collapse elements sharing an OSM id, keeping the first occurrence.
    Order of first appearance is preserved.
    """
    unique: dict = {}
    for element in elements:
        key = str(element.get("id"))
        if key not in unique:
            unique[key] = element
    return list(unique.values())


# ─── Client ───────────────────────────────────────────────────────────────────

class OverpassClient:
    """Sequential Overpass client with exponential backoff."""

    def __init__(
        self,
        url: str = OVERPASS_CONFIG["url"],
        timeout: int = OVERPASS_CONFIG["timeout"],
        max_retries: int = OVERPASS_CONFIG["max_retries"],
        retry_delay: float = OVERPASS_CONFIG["retry_delay"],
        session: requests.Session | None = None,
        sleep=time.sleep,
        log: logging.Logger | None = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.log = log or logger
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = OVERPASS_CONFIG["user_agent"]
        self.session = session

    def close(self) -> None:
        self.session.close()

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    def post_query(self, query: str) -> dict:
        """
        Submit one Overpass QL query and return the decoded JSON payload.

        Raises OverpassQueryError for a rejected query, OverpassUnavailableError
        when transient failures outlast max_retries, and re-raises the
        requests exception if the final attempt fails at the network level.
        """
        last_problem = None

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1

            try:
                response = self.session.post(
                    self.url,
                    data={"data": query},
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                if is_last:
                    raise
                delay = self._backoff(attempt)
                self.log.warning(
                    "Overpass request failed (%s) — retrying in %.0fs (attempt %d/%d)",
                    exc, delay, attempt + 1, self.max_retries,
                )
                self.sleep(delay)
                continue

            status = response.status_code
            if status == 429 or status >= 500:
                last_problem = f"HTTP {status}"
            elif status >= 400:
                raise OverpassQueryError(status, response.text)
            else:
                try:
                    payload = response.json()
                except ValueError as exc:
                    raise OverpassError(f"Overpass returned a non-JSON body: {exc}") from exc
                if not isinstance(payload, dict):
                    raise OverpassError(f"Unexpected Overpass payload type: {type(payload).__name__}")

                # Overpass answers 200 with a remark when the query hit its
                # server-side timeout or memory limit; elements are partial.
                remark = payload.get("remark") or ""
                if "runtime error" not in remark:
                    return payload
                last_problem = remark

            if not is_last:
                delay = self._backoff(attempt)
                self.log.warning(
                    "Overpass busy (%s) — retrying in %.0fs (attempt %d/%d)",
                    last_problem, delay, attempt + 1, self.max_retries,
                )
                self.sleep(delay)

        raise OverpassUnavailableError(
            f"Overpass unavailable after {self.max_retries} attempts: {last_problem}"
        )

    def fetch_country_boundary(self, iso2: str, admin_level: int = 2) -> dict | None:
        """
        Return the country's boundary relation, or None when Overpass has none.
        Communication failures propagate.
        """
        self.log.info("Fetching country boundary for %s (admin_level=%d)", iso2, admin_level)
        payload = self.post_query(build_country_query(iso2, admin_level, self.timeout))
        elements = payload.get("elements") or []
        if not elements:
            self.log.warning("No admin_level=%d boundary found for %s", admin_level, iso2)
            return None
        element = elements[0]
        self.log.info(
            "Found country boundary: %s (rel %s)",
            (element.get("tags") or {}).get("name", iso2), element.get("id"),
        )
        return element

    def fetch_child_boundaries(self, parent_osm_id: str | int, admin_level: int) -> list[dict]:
        """
        Return admin_level boundaries geographically inside the parent relation,
        deduplicated by OSM id. An empty list means none exist at that level.
        """
        self.log.debug("Searching admin_level=%d within rel(%s)", admin_level, parent_osm_id)
        payload = self.post_query(build_children_query(parent_osm_id, admin_level, self.timeout))
        elements = remove_duplicates(payload.get("elements") or [])
        if elements:
            self.log.info(
                "Found %d boundaries at admin_level=%d within rel(%s)",
                len(elements), admin_level, parent_osm_id,
            )
        return elements
