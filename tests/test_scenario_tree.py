"""
tests/test_scenario_tree.py — Derived scenario hierarchy.

Covers:
    1. baseline / A / B(A) / C shape and insertion order
    2. Dangling parent reference rendered as a root
    3. Cycles and duplicate ids rejected with ConsistencyError
    4. Pre/post-order walks, depth, deep chains without recursion
    5. Parent-chain check used at creation time
    6. Tree built from stored scenarios
"""

import pytest

from planner.core.exceptions import ConsistencyError
from planner.services import scenario_store as store
from planner.services.scenario_tree import (
    assert_acyclic_chain,
    build_tree,
    max_depth,
    walk,
)


def _rec(sid, parent=None, name=None):
    return {"id": sid, "parent_scenario_id": parent, "name": name or f"S{sid}"}


# ═════════════════════════════════════════════════════════════════════════════
# build_tree
# ═════════════════════════════════════════════════════════════════════════════


class TestBuildTree:
    def test_baseline_with_nested_and_sibling_branches(self):
        roots = build_tree([
            _rec(1, None, "baseline"),
            _rec(2, 1, "A"),
            _rec(3, 2, "B"),
            _rec(4, 1, "C"),
        ])
        assert len(roots) == 1
        root = roots[0]
        assert root.record["name"] == "baseline"
        assert [c.record["name"] for c in root.children] == ["A", "C"]
        assert [c.record["name"] for c in root.children[0].children] == ["B"]
        assert root.children[1].children == []

    def test_children_keep_insertion_order(self):
        roots = build_tree([_rec(1), _rec(9, 1), _rec(3, 1), _rec(5, 1)])
        assert [c.id for c in roots[0].children] == [9, 3, 5]

    def test_child_listed_before_parent_still_attaches(self):
        roots = build_tree([_rec(3, 2), _rec(1), _rec(2, 1)])
        assert [r.id for r in roots] == [1]
        assert roots[0].children[0].children[0].id == 3

    def test_dangling_parent_becomes_root(self):
        roots = build_tree([_rec(1), _rec(2, 1), _rec(7, 99)])
        assert [r.id for r in roots] == [1, 7]

    def test_no_node_in_two_children_lists(self):
        roots = build_tree([_rec(1), _rec(2, 1), _rec(3, 1), _rec(4, 2), _rec(5, 3)])
        ids = [n.id for n, _ in walk(roots)]
        assert sorted(ids) == [1, 2, 3, 4, 5]
        assert len(ids) == len(set(ids))

    def test_cycle_rejected(self):
        with pytest.raises(ConsistencyError) as exc:
            build_tree([_rec(1), _rec(2, 3), _rec(3, 2)])
        assert exc.value.details["scenario_ids"] == [2, 3]

    def test_self_parent_rejected(self):
        with pytest.raises(ConsistencyError):
            build_tree([_rec(1), _rec(2, 2)])

    def test_duplicate_id_rejected(self):
        with pytest.raises(ConsistencyError):
            build_tree([_rec(1), _rec(1)])

    def test_empty_input(self):
        assert build_tree([]) == []

    def test_to_dict_nests_children(self):
        roots = build_tree([_rec(1), _rec(2, 1), _rec(3, 2)])
        out = roots[0].to_dict()
        assert out["id"] == 1
        assert out["children"][0]["id"] == 2
        assert out["children"][0]["children"][0]["id"] == 3
        assert out["children"][0]["children"][0]["children"] == []


# ═════════════════════════════════════════════════════════════════════════════
# walk / depth
# ═════════════════════════════════════════════════════════════════════════════


class TestWalk:
    def test_pre_order_with_depth(self):
        roots = build_tree([_rec(1), _rec(2, 1), _rec(3, 2), _rec(4, 1)])
        assert [(n.id, d) for n, d in walk(roots)] == [(1, 0), (2, 1), (3, 2), (4, 1)]

    def test_post_order_yields_children_first(self):
        roots = build_tree([_rec(1), _rec(2, 1), _rec(3, 2), _rec(4, 1)])
        assert [n.id for n, _ in walk(roots, order="post")] == [3, 2, 4, 1]

    def test_depth_bounded_by_longest_chain(self):
        roots = build_tree([_rec(1), _rec(2, 1), _rec(3, 2), _rec(4, 1)])
        assert max_depth(roots) == 2
        assert max_depth(build_tree([_rec(1)])) == 0

    def test_deep_chain_does_not_recurse(self):
        records = [_rec(1)] + [_rec(i, i - 1) for i in range(2, 5001)]
        roots = build_tree(records)
        assert max_depth(roots) == 4999
        out = roots[0].to_dict()
        assert out["children"][0]["id"] == 2

    def test_node_reached_twice_raises(self):
        roots = build_tree([_rec(1), _rec(2, 1)])
        roots[0].children.append(roots[0].children[0])
        with pytest.raises(ConsistencyError):
            list(walk(roots))


# ═════════════════════════════════════════════════════════════════════════════
# assert_acyclic_chain
# ═════════════════════════════════════════════════════════════════════════════


class TestParentChain:
    def test_chain_to_root(self):
        assert assert_acyclic_chain(3, {1: None, 2: 1, 3: 2}) == [3, 2, 1]

    def test_cycle_detected(self):
        with pytest.raises(ConsistencyError, match="Cycle"):
            assert_acyclic_chain(2, {1: 3, 2: 1, 3: 2})

    def test_orphaned_ancestor_detected(self):
        with pytest.raises(ConsistencyError, match="does not exist"):
            assert_acyclic_chain(2, {2: 42})


# ═════════════════════════════════════════════════════════════════════════════
# Stored hierarchy
# ═════════════════════════════════════════════════════════════════════════════


class TestStoredTree:
    def test_tree_from_store(self, baseline):
        a = store.create_scenario({"name": "A"})
        store.create_scenario({"name": "B", "parent_scenario_id": a.id})
        store.create_scenario({"name": "C"})

        tree = store.scenario_tree()
        assert len(tree) == 1
        assert tree[0]["id"] == baseline.id
        assert [c["name"] for c in tree[0]["children"]] == ["A", "C"]
        assert [c["name"] for c in tree[0]["children"][0]["children"]] == ["B"]
