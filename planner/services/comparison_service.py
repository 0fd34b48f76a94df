"""
ComparisonService — read-only side-by-side view of any two scenarios.

No common ancestor is needed and no strategy is applied: rows are matched by
natural key and reported as added / modified / removed relative to the
``compare_to`` scenario, plus derived impact metrics.  Never writes.
"""

from collections import defaultdict
from datetime import date

from planner.models.scenario import ENTITY_ASSIGNMENT, ENTITY_OVERRIDE, ENTITY_PHASE
from planner.services import scenario_store as store
from planner.services.diff_engine import ChangeType, DiffSet, compute_two_way

# Response section name per entity class
SECTIONS = {
    ENTITY_ASSIGNMENT: "assignments",
    ENTITY_PHASE: "phases",
    ENTITY_OVERRIDE: "projects",
}


def _alloc(state: dict | None) -> float:
    return float(state["allocation_percentage"]) if state else 0.0


def _shift_days(entry) -> int | None:
    s, t = entry.source or {}, entry.target or {}
    if not s.get("start_date") or not t.get("start_date"):
        return None
    return (date.fromisoformat(s["start_date"]) - date.fromisoformat(t["start_date"])).days


class ComparisonService:
    """Compares scenario ``a`` against scenario ``b`` (``b`` is the reference)."""

    @staticmethod
    def compare(a_id: int, b_id: int) -> dict:
        a = store.get_scenario(a_id)
        b = store.get_scenario(b_id)
        a_state = store.load_state(a.id)
        b_state = store.load_state(b.id)
        labels = store.label_maps()

        diff_set = compute_two_way(a_state, b_state, labels, a_id=a.id, b_id=b.id)

        return {
            "scenario1": a.to_dict(),
            "scenario2": b.to_dict(),
            "differences": ComparisonService._differences(diff_set),
            "metrics": ComparisonService._metrics(diff_set, a_state, b_state, labels),
            "summary": diff_set.counts(),
        }

    @staticmethod
    def _differences(diff_set: DiffSet) -> dict:
        out = {section: {ct.value: [] for ct in ChangeType} for section in SECTIONS.values()}
        for entry in diff_set.entries:
            out[SECTIONS[entry.entity_type]][entry.change_type.value].append(entry.to_dict())
        return out

    @staticmethod
    def _metrics(diff_set: DiffSet, a_state: dict, b_state: dict, labels: dict) -> dict:
        assignment_entries = diff_set.for_entity(ENTITY_ASSIGNMENT)

        per_person = defaultdict(float)
        for entry in assignment_entries:
            person_id = entry.natural_key[1]
            per_person[person_id] += _alloc(entry.source) - _alloc(entry.target)

        a_total = sum(_alloc(s) for s in a_state.get(ENTITY_ASSIGNMENT, {}).values())
        b_total = sum(_alloc(s) for s in b_state.get(ENTITY_ASSIGNMENT, {}).values())

        phase_shifts = [
            d for d in (_shift_days(e) for e in diff_set.for_entity(ENTITY_PHASE)
                        if e.change_type == ChangeType.MODIFIED)
            if d is not None
        ]
        projects = {e.natural_key[0] for e in diff_set.entries}

        return {
            "utilization_impact": {
                "total_allocation_delta": round(a_total - b_total, 2),
                "person_allocation_delta": [
                    {
                        "person_id": pid,
                        "person_name": labels.get("person", {}).get(pid),
                        "delta": round(delta, 2),
                    }
                    for pid, delta in sorted(per_person.items())
                    if delta
                ],
            },
            "capacity_impact": {
                "net_assignment_change": (
                    len(a_state.get(ENTITY_ASSIGNMENT, {})) - len(b_state.get(ENTITY_ASSIGNMENT, {}))
                ),
                "people_affected": len({e.natural_key[1] for e in assignment_entries}),
            },
            "timeline_impact": {
                "projects_affected": len(projects),
                "phases_shifted": len(phase_shifts),
                "average_timeline_change_days": (
                    round(sum(phase_shifts) / len(phase_shifts), 1) if phase_shifts else 0
                ),
            },
        }
