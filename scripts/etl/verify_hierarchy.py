#!/usr/bin/env python3
"""
verify_hierarchy.py — Audit stored boundary hierarchies. Read-only.

Run: docker compose exec etl python verify_hierarchy.py [COUNTRY_ID ...]

Checks per country:
  1. Depth        — a node with a parent sits exactly one custom_level below
                    it; a node without a parent sits at custom_level 0.
  2. Level order  — every 'contains' edge goes to a strictly higher
                    admin_level.
  3. Acyclicity   — no self-loops, no cycles in the edge set.

Nodes linked from more than one parent are listed but are not violations:
Overpass occasionally reports one relation inside two neighbours.

Exit status is 1 if any country has a violation.
"""

import logging
import sys
from collections import defaultdict

from db import BoundaryStore, get_connection

log = logging.getLogger("verify_hierarchy")


# ─────────────────────────────────────────────────────────────────────────────
# Checks
# ─────────────────────────────────────────────────────────────────────────────

def find_cycle(edges: list[tuple[int, int]]) -> list[int] | None:
    """Return one cycle as a list of node ids, or None if the graph is acyclic."""
    graph = defaultdict(list)
    for src, dst in edges:
        graph[src].append(dst)

    WHITE, GREY, BLACK = 0, 1, 2
    color: dict = defaultdict(int)

    for start in list(graph):
        if color[start] != WHITE:
            continue
        # Iterative DFS; path mirrors the grey nodes on the stack
        stack = [(start, iter(graph[start]))]
        path = [start]
        color[start] = GREY
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node] = BLACK
                stack.pop()
                path.pop()
            elif color[child] == GREY:
                return path[path.index(child):] + [child]
            elif color[child] == WHITE:
                color[child] = GREY
                stack.append((child, iter(graph[child])))
                path.append(child)
    return None


def check_hierarchy(nodes: list[dict], edges: list[tuple[int, int]]) -> dict:
    """
    Check stored nodes/edges of one country against the hierarchy invariants.

    nodes: dicts with id, name, admin_level, custom_level, parent_id
    edges: (from_id, to_id) pairs
    """
    by_id = {n["id"]: n for n in nodes}
    level_counts: dict = defaultdict(int)
    depth_violations: list[str] = []

    for node in nodes:
        level_counts[node["admin_level"]] += 1
        parent = by_id.get(node["parent_id"]) if node["parent_id"] is not None else None
        if node["parent_id"] is None:
            if node["custom_level"] != 0:
                depth_violations.append(
                    f"{node['name']} ({node['id']}) has no parent but custom_level={node['custom_level']}"
                )
        elif parent is not None and node["custom_level"] != parent["custom_level"] + 1:
            depth_violations.append(
                f"{node['name']} ({node['id']}) custom_level={node['custom_level']} "
                f"under {parent['name']} custom_level={parent['custom_level']}"
            )

    level_violations: list[str] = []
    self_loops: list[int] = []
    parents_of: dict = defaultdict(set)

    for src, dst in edges:
        parents_of[dst].add(src)
        if src == dst:
            self_loops.append(src)
            continue
        parent, child = by_id.get(src), by_id.get(dst)
        if parent and child and child["admin_level"] <= parent["admin_level"]:
            level_violations.append(
                f"{parent['name']} (admin_level={parent['admin_level']}) contains "
                f"{child['name']} (admin_level={child['admin_level']})"
            )

    return {
        "nodes":            len(nodes),
        "edges":            len(edges),
        "level_counts":     dict(sorted(level_counts.items())),
        "depth_violations": depth_violations,
        "level_violations": level_violations,
        "self_loops":       self_loops,
        "cycle":            find_cycle([e for e in edges if e[0] != e[1]]),
        "multi_parent":     sorted(n for n, ps in parents_of.items() if len(ps) > 1),
    }


def has_violations(result: dict) -> bool:
    return bool(
        result["depth_violations"]
        or result["level_violations"]
        or result["self_loops"]
        or result["cycle"]
    )


def verify_countries(store, country_ids: list[str], log: logging.Logger = log) -> int:
    """Audit each country and log the results. Returns the number of failing countries."""
    failing = 0
    for country_id in country_ids:
        nodes, edges = store.load_hierarchy(country_id)
        result = check_hierarchy(nodes, edges)

        log.info(
            "%s: %d nodes, %d edges, levels %s",
            country_id, result["nodes"], result["edges"], result["level_counts"],
        )
        for msg in result["depth_violations"]:
            log.warning("%s depth: %s", country_id, msg)
        for msg in result["level_violations"]:
            log.warning("%s level order: %s", country_id, msg)
        if result["self_loops"]:
            log.warning("%s self-loops on %s", country_id, result["self_loops"])
        if result["cycle"]:
            log.warning("%s cycle: %s", country_id, " → ".join(map(str, result["cycle"])))
        if result["multi_parent"]:
            log.info("%s: %d nodes with more than one parent", country_id, len(result["multi_parent"]))

        if has_violations(result):
            failing += 1

    if failing:
        log.warning("%d of %d countries have hierarchy violations", failing, len(country_ids))
    else:
        log.info("All %d hierarchies are consistent.", len(country_ids))
    return failing


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    argv = sys.argv[1:] if argv is None else argv

    conn = get_connection()
    try:
        store = BoundaryStore(conn)
        country_ids = argv or [c["country_id"] for c in store.fetch_countries()]
        failing = verify_countries(store, country_ids)
    finally:
        conn.close()

    return 0 if failing == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
