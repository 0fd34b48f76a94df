"""
tests/test_conflict_resolver.py — Strategy application over a DiffSet.

Covers:
    1. Clean entries always applied
    2. favor_source / favor_target / manual outcomes for conflicts
    3. Manual resolution map: complete, partial, unknown keys, bad values
    4. Strategy aliases of the legacy ``resolve_conflicts_as`` field
"""

import pytest

from planner.core.exceptions import ValidationError
from planner.services.conflict_resolver import normalize_strategy, resolve
from planner.services.diff_engine import AssignmentDiff, ChangeType, DiffSet, PhaseDiff


def _asg_entry(person, conflict, change=ChangeType.MODIFIED):
    return AssignmentDiff(
        natural_key=(1, person, 1),
        change_type=change,
        source={"allocation_percentage": 50},
        target={"allocation_percentage": 75},
        base={"allocation_percentage": 60},
        conflict=conflict,
    )


def _diff_set():
    return DiffSet(
        source_scenario_id=2,
        target_scenario_id=1,
        has_base=True,
        entries=[
            _asg_entry(1, conflict=True),
            _asg_entry(2, conflict=False, change=ChangeType.ADDED),
            PhaseDiff(
                natural_key=(1, 4), change_type=ChangeType.MODIFIED,
                source={"start_date": "2026-02-01"}, target={"start_date": "2026-03-01"},
                conflict=True,
            ),
        ],
    )


class TestStrategies:
    def test_favor_source_applies_everything(self):
        result = resolve(_diff_set(), "favor_source")
        assert [e.key for e in result.applied] == [
            "assignment:1:1:1", "assignment:1:2:1", "phase_timeline:1:4",
        ]
        assert result.superseded == []
        assert result.conflicts == []
        assert (result.conflicts_detected, result.conflicts_resolved) == (2, 2)

    def test_favor_target_supersedes_conflicts(self):
        result = resolve(_diff_set(), "favor_target")
        assert [e.key for e in result.applied] == ["assignment:1:2:1"]
        assert [e.key for e in result.superseded] == ["assignment:1:1:1", "phase_timeline:1:4"]
        assert result.is_complete

    def test_manual_without_resolutions_leaves_conflicts(self):
        result = resolve(_diff_set(), "manual")
        assert [e.key for e in result.applied] == ["assignment:1:2:1"]
        assert [e.key for e in result.conflicts] == ["assignment:1:1:1", "phase_timeline:1:4"]
        assert not result.is_complete
        assert result.conflicts_resolved == 0

    def test_manual_with_complete_resolutions(self):
        result = resolve(_diff_set(), "manual", {
            "assignment:1:1:1": "source",
            "phase_timeline:1:4": "target",
        })
        assert result.is_complete
        assert [e.key for e in result.applied] == ["assignment:1:1:1", "assignment:1:2:1"]
        assert [e.key for e in result.superseded] == ["phase_timeline:1:4"]

    def test_manual_with_partial_resolutions_lists_the_rest(self):
        result = resolve(_diff_set(), "manual", {"assignment:1:1:1": "target"})
        assert [e.key for e in result.conflicts] == ["phase_timeline:1:4"]
        assert result.conflicts_resolved == 1

    def test_explicit_pick_overrides_strategy_default(self):
        result = resolve(_diff_set(), "favor_source", {"phase_timeline:1:4": "target"})
        assert [e.key for e in result.superseded] == ["phase_timeline:1:4"]

    def test_no_conflicts_is_trivially_complete(self):
        ds = DiffSet(2, 1, True, [_asg_entry(2, conflict=False, change=ChangeType.ADDED)])
        result = resolve(ds, "manual")
        assert result.is_complete
        assert len(result.applied) == 1

    def test_to_dict(self):
        out = resolve(_diff_set(), "favor_target").to_dict()
        assert out["strategy"] == "favor_target"
        assert out["conflicts_detected"] == 2
        assert len(out["superseded"]) == 2


class TestValidation:
    def test_unknown_strategy(self):
        with pytest.raises(ValidationError):
            resolve(_diff_set(), "newest_wins")

    def test_resolution_for_non_conflict_rejected(self):
        with pytest.raises(ValidationError) as exc:
            resolve(_diff_set(), "manual", {"assignment:1:2:1": "source"})
        assert exc.value.details["unknown_keys"] == ["assignment:1:2:1"]

    def test_resolution_for_missing_key_rejected(self):
        diff_set = _diff_set()
        assert diff_set.get("assignment:1:9:1") is None
        assert diff_set.get("phase_timeline:1:4").conflict is True
        with pytest.raises(ValidationError) as exc:
            resolve(diff_set, "manual", {"assignment:1:9:1": "source", "phase_timeline:1:4": "target"})
        assert exc.value.details["unknown_keys"] == ["assignment:1:9:1"]

    def test_resolution_value_must_be_source_or_target(self):
        with pytest.raises(ValidationError):
            resolve(_diff_set(), "manual", {"assignment:1:1:1": "both"})

    def test_resolutions_must_be_a_mapping(self):
        with pytest.raises(ValidationError):
            resolve(_diff_set(), "manual", ["assignment:1:1:1"])


class TestNormalizeStrategy:
    def test_default_is_manual(self):
        assert normalize_strategy() == "manual"

    def test_merge_strategy_wins_over_alias(self):
        assert normalize_strategy("favor_target", "use_source") == "favor_target"

    @pytest.mark.parametrize("alias,expected", [
        ("use_source", "favor_source"),
        ("use_target", "favor_target"),
        ("manual", "manual"),
        ("favor_source", "favor_source"),
    ])
    def test_aliases(self, alias, expected):
        assert normalize_strategy(None, alias) == expected

    def test_bad_values(self):
        with pytest.raises(ValidationError):
            normalize_strategy("source_wins")
        with pytest.raises(ValidationError):
            normalize_strategy(None, "whatever")
