"""Tests for the read-only hierarchy audit."""

from unittest.mock import MagicMock

from verify_hierarchy import check_hierarchy, find_cycle, has_violations, verify_countries


def node(id, admin_level, custom_level, parent_id=None, name=None):
    return {
        "id": id,
        "name": name or f"n{id}",
        "admin_level": admin_level,
        "custom_level": custom_level,
        "parent_id": parent_id,
    }


def test_consistent_hierarchy():
    nodes = [node(1, 2, 0), node(2, 4, 1, 1), node(3, 4, 1, 1), node(4, 8, 2, 2)]
    edges = [(1, 2), (1, 3), (2, 4)]
    result = check_hierarchy(nodes, edges)

    assert not has_violations(result)
    assert result["level_counts"] == {2: 1, 4: 2, 8: 1}
    assert result["nodes"] == 4
    assert result["edges"] == 3
    assert result["multi_parent"] == []


def test_depth_violations():
    nodes = [node(1, 2, 1), node(2, 4, 3, 1)]
    result = check_hierarchy(nodes, [(1, 2)])
    assert len(result["depth_violations"]) == 2
    assert has_violations(result)


def test_level_order_violation():
    nodes = [node(1, 4, 0), node(2, 4, 1, 1)]
    result = check_hierarchy(nodes, [(1, 2)])
    assert result["level_violations"] == ["n1 (admin_level=4) contains n2 (admin_level=4)"]


def test_multi_parent_is_not_a_violation():
    nodes = [node(1, 2, 0), node(2, 4, 1, 1), node(3, 4, 1, 1), node(4, 6, 2, 2)]
    result = check_hierarchy(nodes, [(1, 2), (1, 3), (2, 4), (3, 4)])
    assert result["multi_parent"] == [4]
    assert not has_violations(result)


def test_self_loop_and_cycle():
    assert find_cycle([(1, 2), (2, 3)]) is None
    assert find_cycle([(1, 2), (2, 3), (3, 1)]) == [1, 2, 3, 1]

    nodes = [node(1, 2, 0), node(2, 4, 1, 1)]
    result = check_hierarchy(nodes, [(1, 1), (1, 2)])
    assert result["self_loops"] == [1]
    assert result["cycle"] is None
    assert has_violations(result)


def test_parent_outside_country_is_ignored():
    result = check_hierarchy([node(5, 4, 1, parent_id=99)], [])
    assert result["depth_violations"] == []


def test_verify_countries_counts_failures():
    store = MagicMock()
    store.load_hierarchy.side_effect = [
        ([node(1, 2, 0), node(2, 4, 1, 1)], [(1, 2)]),
        ([node(3, 2, 0), node(4, 2, 1, 3)], [(3, 4)]),
    ]
    assert verify_countries(store, ["c/1", "c/2"]) == 1
