"""
tests/test_scenario_store.py — Scenario lifecycle and scoped data (service level).

Covers:
    1. Baseline bootstrap is idempotent; only one baseline may exist
    2. Branching copies the parent's scoped data and freezes a snapshot
    3. Lifecycle guards: transitions, read-only scenarios, delete rules
    4. Corrupted hierarchy surfaces as ConsistencyError
    5. Assignment validation and computed dates per date mode
    6. Timeline / override changes that would break dependent assignments
    7. Phase dependencies: CRUD, duplicates, cycles, scenario scoping, cascade
    8. Integrity check
"""

from datetime import date

import pytest

from planner.core.exceptions import (
    ConflictError,
    ConsistencyError,
    NotFoundError,
    ValidationError,
)
from planner.models import db
from planner.models.audit import AuditLog
from planner.models.scenario import (
    PhaseDependency,
    Scenario,
    ScenarioAssignment,
    ScenarioBranchSnapshot,
)
from planner.services import scenario_store as store
from planner.services.merge_coordinator import MergeCoordinator


def _payload(ref, alloc=50, **kw):
    data = {
        "project_id": ref.apollo,
        "person_id": ref.alice,
        "role_id": ref.dev,
        "allocation_percentage": alloc,
        "start_date": "2026-01-01",
        "end_date": "2026-06-30",
    }
    data.update(kw)
    return data


def _timeline(scenario_id, ref, phase=None, start="2026-01-01", end="2026-03-31"):
    row, _ = store.upsert_phase_timeline(scenario_id, {
        "project_id": ref.apollo, "phase_id": phase or ref.design,
        "start_date": start, "end_date": end,
    })
    return row


# ═════════════════════════════════════════════════════════════════════════════
# Baseline & branching
# ═════════════════════════════════════════════════════════════════════════════


class TestBaseline:
    def test_ensure_baseline_is_idempotent(self, baseline):
        again = store.ensure_baseline("Another name")
        assert again.id == baseline.id
        assert Scenario.query.filter_by(scenario_type="baseline").count() == 1

    def test_baseline_has_no_parent(self, baseline):
        assert baseline.parent_scenario_id is None
        assert baseline.is_active

    def test_second_baseline_rejected(self, baseline):
        with pytest.raises(ValidationError):
            store.create_scenario({"name": "Other", "scenario_type": "baseline"})


class TestBranching:
    def test_default_parent_is_baseline(self, baseline):
        branch = store.create_scenario({"name": "Branch"})
        assert branch.parent_scenario_id == baseline.id
        assert branch.scenario_type == "branch"
        assert branch.branch_point is not None

    def test_copies_scoped_data(self, baseline, ref):
        store.upsert_assignment(baseline.id, _payload(ref))
        store.upsert_override(baseline.id, {"project_id": ref.apollo, "priority": 1})
        design = _timeline(baseline.id, ref)
        build = _timeline(baseline.id, ref, ref.build, "2026-04-01", "2026-09-30")
        store.add_dependency(baseline.id, {
            "predecessor_phase_timeline_id": design.id,
            "successor_phase_timeline_id": build.id,
        })

        branch = store.create_scenario({"name": "Branch", "scenario_type": "sandbox"})

        assert store.load_state(branch.id) == store.load_state(baseline.id)
        [dep] = store.list_dependencies(branch.id)
        branch_timelines = {t.id for t in store.list_phase_timelines(branch.id)}
        assert dep.predecessor_phase_timeline_id in branch_timelines
        assert dep.successor_phase_timeline_id in branch_timelines
        # Parent keeps its own rows
        assert len(store.list_dependencies(baseline.id)) == 1

    def test_snapshot_frozen_at_branch_time(self, baseline, ref):
        store.upsert_assignment(baseline.id, _payload(ref, 60))
        branch = store.create_scenario({"name": "Branch"})
        store.upsert_assignment(baseline.id, _payload(ref, 75))

        snapshot = ScenarioBranchSnapshot.query.filter_by(scenario_id=branch.id).one()
        assert snapshot.parent_scenario_id == baseline.id
        key = f"{ref.apollo}:{ref.alice}:{ref.dev}"
        assert snapshot.payload["assignment"][key]["allocation_percentage"] == 60
        assert store.load_branch_base(branch, baseline) == snapshot.payload

    def test_branch_base_only_against_own_parent(self, baseline):
        a = store.create_scenario({"name": "A"})
        b = store.create_scenario({"name": "B"})
        assert store.load_branch_base(a, b) is None

    def test_create_writes_audit_row(self, baseline):
        branch = store.create_scenario({"name": "Branch", "created_by": "planner@example.com"})
        audit = AuditLog.query.filter_by(action="scenario.create").one()
        assert audit.entity_id == str(branch.id)
        assert audit.actor == "planner@example.com"
        assert audit.diff["parent_scenario_id"] == baseline.id

    def test_nested_branch(self, baseline):
        parent = store.create_scenario({"name": "Parent"})
        child = store.create_scenario({"name": "Child", "parent_scenario_id": parent.id})
        assert child.parent_scenario_id == parent.id
        [root] = store.scenario_tree()
        assert root["id"] == baseline.id
        assert root["children"][0]["children"][0]["id"] == child.id

    @pytest.mark.parametrize("data", [
        {},
        {"name": "   "},
        {"name": "X", "scenario_type": "fork"},
        {"name": "X", "parent_scenario_id": 999},
        {"name": "X", "parent_scenario_id": "abc"},
    ])
    def test_invalid_create(self, baseline, data):
        with pytest.raises(ValidationError):
            store.create_scenario(data)
        assert Scenario.query.count() == 1

    def test_cannot_branch_from_archived_parent(self, baseline):
        parent = store.create_scenario({"name": "Parent"})
        store.update_scenario(parent.id, {"status": "archived"})
        with pytest.raises(ValidationError):
            store.create_scenario({"name": "Child", "parent_scenario_id": parent.id})

    def test_corrupted_hierarchy_raises_consistency_error(self, baseline):
        a = store.create_scenario({"name": "A"})
        b = store.create_scenario({"name": "B", "parent_scenario_id": a.id})
        # Simulate a bad write that closed a loop A → B → A
        a.parent_scenario_id = b.id
        db.session.commit()

        with pytest.raises(ConsistencyError):
            store.create_scenario({"name": "C", "parent_scenario_id": b.id})
        with pytest.raises(ConsistencyError):
            store.scenario_tree()


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_rename(self, baseline):
        branch = store.create_scenario({"name": "Branch"})
        store.update_scenario(branch.id, {"name": "Renamed", "description": "why"})
        fresh = store.get_scenario(branch.id)
        assert (fresh.name, fresh.description) == ("Renamed", "why")

    @pytest.mark.parametrize("status", ["merged", "active", "deleted"])
    def test_invalid_transitions(self, baseline, status):
        branch = store.create_scenario({"name": "Branch"})
        store.update_scenario(branch.id, {"status": "archived"})
        with pytest.raises(ValidationError):
            store.update_scenario(branch.id, {"status": status})

    def test_active_cannot_be_marked_merged_directly(self, baseline):
        branch = store.create_scenario({"name": "Branch"})
        with pytest.raises(ValidationError):
            store.update_scenario(branch.id, {"status": "merged"})

    def test_baseline_status_is_fixed(self, baseline):
        with pytest.raises(ValidationError):
            store.update_scenario(baseline.id, {"status": "archived"})

    def test_archived_scenario_is_read_only(self, baseline, ref):
        branch = store.create_scenario({"name": "Branch"})
        store.update_scenario(branch.id, {"status": "archived"})
        with pytest.raises(ValidationError):
            store.upsert_assignment(branch.id, _payload(ref))
        with pytest.raises(ValidationError):
            store.update_scenario(branch.id, {"name": "New"})

    def test_merged_scenario_is_read_only_but_archivable(self, baseline, ref):
        branch = store.create_scenario({"name": "Branch"})
        MergeCoordinator().merge(branch.id, "favor_source")
        with pytest.raises(ValidationError):
            store.upsert_assignment(branch.id, _payload(ref))
        store.update_scenario(branch.id, {"status": "archived"})
        assert store.get_scenario(branch.id).status == "archived"

    def test_delete_leaf_removes_scoped_rows(self, baseline, ref):
        branch = store.create_scenario({"name": "Branch"})
        store.upsert_assignment(branch.id, _payload(ref))
        store.delete_scenario(branch.id)
        with pytest.raises(NotFoundError):
            store.get_scenario(branch.id)
        assert ScenarioAssignment.query.filter_by(scenario_id=branch.id).count() == 0

    def test_delete_guards(self, baseline):
        parent = store.create_scenario({"name": "Parent"})
        store.create_scenario({"name": "Child", "parent_scenario_id": parent.id})
        with pytest.raises(ValidationError):
            store.delete_scenario(baseline.id)
        with pytest.raises(ValidationError):
            store.delete_scenario(parent.id)

    def test_merged_scenario_cannot_be_deleted(self, baseline):
        branch = store.create_scenario({"name": "Branch"})
        MergeCoordinator().merge(branch.id, "favor_source")
        with pytest.raises(ValidationError):
            store.delete_scenario(branch.id)

    def test_list_filters_and_order(self, baseline):
        first = store.create_scenario({"name": "First"})
        second = store.create_scenario({"name": "Second", "scenario_type": "sandbox"})
        store.update_scenario(first.id, {"status": "archived"})

        ids = [s.id for s in store.list_scenarios()]
        assert ids[:2] == [second.id, first.id]
        assert [s.id for s in store.list_scenarios(status="archived")] == [first.id]
        assert [s.id for s in store.list_scenarios(scenario_type="sandbox")] == [second.id]


# ═════════════════════════════════════════════════════════════════════════════
# Assignments & computed dates
# ═════════════════════════════════════════════════════════════════════════════


class TestAssignments:
    def test_upsert_by_natural_key(self, baseline, ref):
        row, created = store.upsert_assignment(baseline.id, _payload(ref, 50))
        assert created is True
        again, created = store.upsert_assignment(baseline.id, _payload(ref, 70))
        assert created is False
        assert again.id == row.id
        assert ScenarioAssignment.query.filter_by(scenario_id=baseline.id).count() == 1

    @pytest.mark.parametrize("override", [
        {"allocation_percentage": 0},
        {"allocation_percentage": 101},
        {"allocation_percentage": None},
        {"allocation_percentage": True},
        {"allocation_percentage": "lots"},
        {"person_id": 999},
        {"role_id": None},
        {"assignment_date_mode": "sprint"},
        {"start_date": "not-a-date"},
        {"start_date": "2026-07-01", "end_date": "2026-06-30"},
    ])
    def test_invalid_payloads(self, baseline, ref, override):
        with pytest.raises(ValidationError):
            store.upsert_assignment(baseline.id, _payload(ref, **override))
        assert ScenarioAssignment.query.count() == 0

    def test_fixed_mode_allows_single_day(self, baseline, ref):
        row, _ = store.upsert_assignment(
            baseline.id, _payload(ref, start_date="2026-05-01", end_date="2026-05-01"),
        )
        assert row.computed_start_date == row.computed_end_date == date(2026, 5, 1)

    def test_phase_mode_uses_default_phase_dates(self, baseline, ref):
        row, _ = store.upsert_assignment(
            baseline.id, _payload(ref, assignment_date_mode="phase", phase_id=ref.design),
        )
        assert (row.computed_start_date, row.computed_end_date) == (date(2026, 1, 1), date(2026, 3, 31))

    def test_phase_mode_prefers_scenario_timeline(self, baseline, ref):
        _timeline(baseline.id, ref, start="2026-02-01", end="2026-04-30")
        row, _ = store.upsert_assignment(
            baseline.id, _payload(ref, assignment_date_mode="phase", phase_id=ref.design),
        )
        assert row.computed_start_date == date(2026, 2, 1)

    def test_phase_mode_requires_phase_of_same_project(self, baseline, ref):
        with pytest.raises(ValidationError):
            store.upsert_assignment(baseline.id, _payload(ref, assignment_date_mode="phase"))
        with pytest.raises(ValidationError):
            store.upsert_assignment(
                baseline.id, _payload(ref, assignment_date_mode="phase", phase_id=ref.launch),
            )

    def test_project_mode_uses_override(self, baseline, ref):
        store.upsert_override(baseline.id, {
            "project_id": ref.apollo, "aspiration_start": "2026-03-01",
        })
        row, _ = store.upsert_assignment(baseline.id, _payload(ref, assignment_date_mode="project"))
        assert (row.computed_start_date, row.computed_end_date) == (date(2026, 3, 1), date(2026, 12, 31))

    def test_timeline_change_refreshes_dependents(self, baseline, ref):
        row, _ = store.upsert_assignment(
            baseline.id, _payload(ref, assignment_date_mode="phase", phase_id=ref.design),
        )
        _timeline(baseline.id, ref, start="2026-01-15", end="2026-05-15")
        row = db.session.get(ScenarioAssignment, row.id)
        assert (row.computed_start_date, row.computed_end_date) == (date(2026, 1, 15), date(2026, 5, 15))

    def test_timeline_change_breaking_dependents_rejected(self, baseline, ref):
        store.upsert_assignment(
            baseline.id, _payload(ref, assignment_date_mode="phase", phase_id=ref.design),
        )
        with pytest.raises(ValidationError) as exc:
            _timeline(baseline.id, ref, start="2026-02-01", end="2026-02-01")
        assert "assignment_id" in exc.value.details
        assert store.list_phase_timelines(baseline.id) == []

    def test_override_breaking_dependents_rejected(self, baseline, ref):
        store.upsert_assignment(baseline.id, _payload(ref, assignment_date_mode="project"))
        with pytest.raises(ValidationError):
            store.upsert_override(baseline.id, {
                "project_id": ref.apollo, "aspiration_start": "2027-01-01",
            })
        assert store.list_overrides(baseline.id) == []

    def test_delete_override_restores_project_dates(self, baseline, ref):
        override, _ = store.upsert_override(baseline.id, {
            "project_id": ref.apollo, "aspiration_finish": "2026-10-31",
        })
        row, _ = store.upsert_assignment(baseline.id, _payload(ref, assignment_date_mode="project"))
        assert row.computed_end_date == date(2026, 10, 31)

        store.delete_override(baseline.id, override.id)
        row = db.session.get(ScenarioAssignment, row.id)
        assert row.computed_end_date == date(2026, 12, 31)

    def test_delete_assignment_scoped_to_scenario(self, baseline, ref):
        row, _ = store.upsert_assignment(baseline.id, _payload(ref))
        branch = store.create_scenario({"name": "Branch"})
        with pytest.raises(NotFoundError):
            store.delete_assignment(branch.id, row.id)
        store.delete_assignment(baseline.id, row.id)
        assert store.list_assignments(baseline.id) == []

    @pytest.mark.parametrize("data", [
        {"priority": 9},
        {"aspiration_start": "2026-06-01", "aspiration_finish": "2026-05-01"},
        {"project_id": 999},
    ])
    def test_invalid_override(self, baseline, ref, data):
        with pytest.raises(ValidationError):
            store.upsert_override(baseline.id, {"project_id": ref.apollo, **data})


# ═════════════════════════════════════════════════════════════════════════════
# Phase dependencies
# ═════════════════════════════════════════════════════════════════════════════


class TestPhaseDependencies:
    @pytest.fixture()
    def timelines(self, baseline, ref):
        design = _timeline(baseline.id, ref)
        build = _timeline(baseline.id, ref, ref.build, "2026-04-01", "2026-09-30")
        return design.id, build.id

    def _link(self, scenario_id, pred, succ, **kw):
        return store.add_dependency(scenario_id, {
            "predecessor_phase_timeline_id": pred,
            "successor_phase_timeline_id": succ,
            **kw,
        })

    def test_add_and_list(self, baseline, timelines):
        design, build = timelines
        dep = self._link(baseline.id, design, build, dependency_type="SS", lag_days=5)
        assert (dep.dependency_type, dep.lag_days) == ("SS", 5)
        assert [d.id for d in store.list_dependencies(baseline.id)] == [dep.id]

    def test_duplicate_rejected(self, baseline, timelines):
        design, build = timelines
        self._link(baseline.id, design, build)
        with pytest.raises(ConflictError):
            self._link(baseline.id, design, build)

    def test_cycle_rejected(self, baseline, timelines):
        design, build = timelines
        self._link(baseline.id, design, build)
        with pytest.raises(ValidationError, match="cycle"):
            self._link(baseline.id, build, design)

    def test_self_loop_rejected(self, baseline, timelines):
        design, _ = timelines
        with pytest.raises(ValidationError):
            self._link(baseline.id, design, design)

    @pytest.mark.parametrize("kw", [{"dependency_type": "XX"}, {"lag_days": -1}])
    def test_bad_attributes(self, baseline, timelines, kw):
        design, build = timelines
        with pytest.raises(ValidationError):
            self._link(baseline.id, design, build, **kw)

    def test_timelines_must_belong_to_scenario(self, baseline, ref, timelines):
        design, _ = timelines
        branch = store.create_scenario({"name": "Branch"})
        [branch_build] = [t for t in store.list_phase_timelines(branch.id) if t.phase_id == ref.build]
        with pytest.raises(ValidationError):
            self._link(baseline.id, design, branch_build.id)

    def test_delete_dependency(self, baseline, timelines):
        design, build = timelines
        dep = self._link(baseline.id, design, build)
        branch = store.create_scenario({"name": "Branch"})
        with pytest.raises(NotFoundError):
            store.delete_dependency(branch.id, dep.id)
        store.delete_dependency(baseline.id, dep.id)
        assert store.list_dependencies(baseline.id) == []

    def test_deleting_timeline_drops_its_links(self, baseline, timelines):
        design, build = timelines
        self._link(baseline.id, design, build)
        store.delete_phase_timeline(baseline.id, design)
        assert PhaseDependency.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Integrity
# ═════════════════════════════════════════════════════════════════════════════


class TestIntegrity:
    def test_clean_scenario_passes(self, baseline, ref):
        store.upsert_assignment(baseline.id, _payload(ref))
        store.verify_integrity(baseline.id)

    def test_missing_computed_dates_detected(self, baseline, ref):
        db.session.add(ScenarioAssignment(
            scenario_id=baseline.id, project_id=ref.apollo, person_id=ref.alice,
            role_id=ref.dev, allocation_percentage=50, assignment_date_mode="fixed",
        ))
        db.session.commit()
        with pytest.raises(ConsistencyError) as exc:
            store.verify_integrity(baseline.id)
        assert exc.value.details["problems"][0]["problem"] == "missing computed dates"
