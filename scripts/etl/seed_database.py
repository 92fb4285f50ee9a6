"""
seed_database.py — Command-line entry point for the OSM boundary import.

Runs the pipeline in order:
  1. Verify the database connection (fatal if unreachable)
  2. Provision admin_boundaries / admin_boundary_edges (idempotent)
  3. import_osm_boundaries — Overpass → hierarchy, one country at a time
  4. Final report (log + JSON file), optional hierarchy audit

Usage:
    # Every country in country_metadata
    python seed_database.py

    # Smoke test (New Zealand down to districts)
    python seed_database.py --countries NZ --max-admin-level 6

    # Several countries by ISO2 code, name or id
    python seed_database.py --countries US GB "Pakistan" 5253251

    # Import then audit the stored hierarchy
    python seed_database.py --countries NZ --verify

Options:
    --countries SEL [SEL ...]   ISO2 codes, names or country ids (default: all)
    --start-admin-level N       admin_level of the country relation (default: 2)
    --max-admin-level N         Deepest admin_level probed (default: 10)
    --rate-limit-delay S        Seconds between frontier boundaries (default: 2)
    --country-pause S           Seconds between countries (default: 3)
    --skip-schema               Do not run CREATE TABLE IF NOT EXISTS
    --verify                    Run verify_hierarchy on each imported country
    --log-file PATH             Log file path (default: /etl/osm_boundaries.log)
    --report-file PATH          JSON summary path (default: /etl/osm_boundaries_report.json)
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# ─── Paths ───────────────────────────────────────────────────────────────────

DEFAULT_LOG    = Path("/etl/osm_boundaries.log")
DEFAULT_REPORT = Path("/etl/osm_boundaries_report.json")

# ─── Report persistence ───────────────────────────────────────────────────────

def save_report(summary: dict, report_file: Path):
    """
    Atomically write the run summary to JSON.
    Writes to .tmp first, then renames — crash-safe.
    """
    tmp = report_file.with_suffix(".json.tmp")
    try:
        report_file.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w") as f:
            json.dump(summary, f, indent=2, default=str)
        os.replace(tmp, report_file)
    except OSError as exc:
        logging.error("Failed to save report: %s", exc)


# ─── Logging setup ────────────────────────────────────────────────────────────

def setup_logging(log_file: Path) -> logging.Logger:
    """
    Configure root logger to write to both stdout and a log file.

    Format: 2026-02-22 14:23:01 [INFO ] seed_database: Starting OSM import
    """
    log_format = "%(asctime)s [%(levelname)-5s] %(name)s: %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Console handler (INFO and above)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(log_format, date_format))
    root_logger.addHandler(console_handler)

    # File handler (DEBUG and above, includes every Overpass probe)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(log_format, date_format))
        root_logger.addHandler(file_handler)
    except OSError as exc:
        logging.warning("Could not open log file %s: %s", log_file, exc)

    return logging.getLogger("seed_database")


# ─── DB connection check ──────────────────────────────────────────────────────

def verify_database_connection(log: logging.Logger, retries: int = 5, delay: int = 5) -> bool:
    """
    Attempt to connect to the database, retrying with linear backoff.
    Returns True on success, False after all retries are exhausted.
    """
    import psycopg2
    from db import DB_CONFIG

    for attempt in range(1, retries + 1):
        try:
            conn = psycopg2.connect(**DB_CONFIG)
            conn.close()
            log.info("Database connection verified (attempt %d/%d)", attempt, retries)
            return True
        except psycopg2.OperationalError as exc:
            log.warning(
                "DB connection attempt %d/%d failed: %s",
                attempt, retries, exc
            )
            if attempt < retries:
                wait = delay * attempt
                log.info("Retrying in %ds…", wait)
                time.sleep(wait)

    return False


# ─── Summary printer ─────────────────────────────────────────────────────────

def format_duration(seconds: float) -> str:
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m {int(seconds % 60)}s"


def print_summary(summary: dict, log: logging.Logger):
    """Log the final report: totals, then one block per country."""
    from boundaries import level_name

    totals = summary["totals"]
    lines = [
        "",
        "=" * 70,
        "IMPORT COMPLETED",
        "=" * 70,
        f"  Countries processed:  {len(summary['countries'])}",
        f"  Countries skipped:    {len(summary['skipped'])}",
        f"  Total boundaries:     {totals['boundaries']}",
        f"  Total relationships:  {totals['relationships']}",
        f"  Total errors:         {totals['errors']}",
        f"  Duration:             {format_duration(summary['duration'])}",
    ]

    for c in summary["countries"]:
        lines += [
            "",
            f"  {c['name']} ({c['iso2'] or 'N/A'}) — {c['status']}",
            f"    • Boundaries:    {c['boundaries']}",
            f"    • Relationships: {c['relationships']}",
        ]
        if c["level_stats"]:
            lines.append("    • By level:")
            for level in sorted(c["level_stats"], key=int):
                lines.append(
                    f"        - {level_name(int(level))} ({level}): {c['level_stats'][level]}"
                )
        lines.append(f"    • Time: {c['duration']:.0f}s")
        if c["errors"]:
            lines.append(f"    • Errors: {'; '.join(c['errors'])}")

    for s in summary["skipped"]:
        lines.append(f"  Skipped {s['name']}: {s['reason']}")

    lines.append("=" * 70)
    for line in lines:
        log.info(line)


# ─── Signal handler (graceful Ctrl-C) ────────────────────────────────────────

_summary_ref: dict = {}
_report_file_ref: Path = DEFAULT_REPORT

def _handle_sigint(signum, frame):
    logging.getLogger("seed_database").warning(
        "Interrupted — saving partial report before exit…"
    )
    save_report(_summary_ref, _report_file_ref)
    sys.exit(130)


# ─── Main ─────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    from import_osm_boundaries import (
        COUNTRY_PAUSE, MAX_ADMIN_LEVEL, RATE_LIMIT_DELAY, START_ADMIN_LEVEL,
    )

    parser = argparse.ArgumentParser(
        description="OSM administrative boundary hierarchy import",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--countries", nargs="+", metavar="SEL",
        help="ISO2 codes, country names or country ids (default: all)"
    )
    parser.add_argument(
        "--start-admin-level", type=int, default=START_ADMIN_LEVEL, metavar="N",
        help=f"admin_level of the country relation (default: {START_ADMIN_LEVEL})"
    )
    parser.add_argument(
        "--max-admin-level", type=int, default=MAX_ADMIN_LEVEL, metavar="N",
        help=f"Deepest admin_level probed (default: {MAX_ADMIN_LEVEL})"
    )
    parser.add_argument(
        "--rate-limit-delay", type=float, default=RATE_LIMIT_DELAY, metavar="S",
        help=f"Seconds between frontier boundaries (default: {RATE_LIMIT_DELAY})"
    )
    parser.add_argument(
        "--country-pause", type=float, default=COUNTRY_PAUSE, metavar="S",
        help=f"Seconds between countries (default: {COUNTRY_PAUSE})"
    )
    parser.add_argument(
        "--skip-schema", action="store_true",
        help="Skip CREATE TABLE IF NOT EXISTS for the boundary tables"
    )
    parser.add_argument(
        "--verify", action="store_true",
        help="Audit each imported hierarchy after the import"
    )
    parser.add_argument(
        "--log-file", default=str(DEFAULT_LOG),
        help=f"Log file path (default: {DEFAULT_LOG})"
    )
    parser.add_argument(
        "--report-file", default=str(DEFAULT_REPORT),
        help=f"JSON summary path (default: {DEFAULT_REPORT})"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.max_admin_level <= args.start_admin_level:
        print("--max-admin-level must be greater than --start-admin-level", file=sys.stderr)
        return 2

    log = setup_logging(Path(args.log_file))
    report_file = Path(args.report_file)

    log.info("=" * 70)
    log.info("OSM administrative boundaries — iterative import")
    log.info("=" * 70)
    log.info("Started at %s", datetime.now(timezone.utc).isoformat())
    if args.countries:
        log.info("Filtering to countries: %s", ", ".join(args.countries))
    log.info("admin_level range: %d → %d", args.start_admin_level, args.max_admin_level)

    # ── Verify DB ──
    if not verify_database_connection(log):
        log.error("Cannot connect to database after 5 retries. Is the postgres container up?")
        return 1

    import psycopg2
    from db import BoundaryStore, ensure_schema, get_connection
    from import_osm_boundaries import import_osm_boundaries, new_summary
    from overpass import OverpassClient

    try:
        conn = get_connection()
    except psycopg2.Error as exc:
        log.error("Could not open database connection: %s", exc)
        return 1

    client = OverpassClient(log=log.getChild("overpass"))
    try:
        # ── Schema ──
        if not args.skip_schema:
            try:
                ensure_schema(conn)
            except psycopg2.Error as exc:
                log.error("Schema provisioning failed: %s", exc)
                return 1

        summary = new_summary()

        # Register signal handler so Ctrl-C saves the partial report
        global _summary_ref, _report_file_ref
        _summary_ref      = summary
        _report_file_ref  = report_file
        signal.signal(signal.SIGINT, _handle_sigint)
        signal.signal(signal.SIGTERM, _handle_sigint)

        store = BoundaryStore(conn)
        try:
            import_osm_boundaries(
                countries         = args.countries,
                store             = store,
                client            = client,
                summary           = summary,
                country_pause     = args.country_pause,
                log               = log.getChild("osm"),
                start_admin_level = args.start_admin_level,
                max_admin_level   = args.max_admin_level,
                rate_limit_delay  = args.rate_limit_delay,
            )
        except psycopg2.Error as exc:
            # Only reading country_metadata can get here; per-country
            # failures are recorded in the summary instead.
            log.error("Could not read countries: %s", exc, exc_info=True)
            save_report(summary, report_file)
            return 1

        print_summary(summary, log)
        save_report(summary, report_file)
        log.info("Report written to %s", report_file)

        if args.verify:
            from verify_hierarchy import verify_countries
            country_ids = [c["country_id"] for c in summary["countries"] if c["boundaries"]]
            verify_countries(store, country_ids, log.getChild("verify"))
    finally:
        client.close()
        conn.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
