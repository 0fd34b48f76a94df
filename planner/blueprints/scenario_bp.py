"""
Capacity Planner
Scenario Blueprint — branching, scoped data, merge and comparison API.

Endpoints:
    Scenarios:
        GET    /api/scenarios                                   — List (created_at desc)
        POST   /api/scenarios                                   — Branch a new scenario
        GET    /api/scenarios/tree                              — Derived hierarchy
        GET    /api/scenarios/<id>                              — Detail (+ counts, branch snapshot)
        PUT    /api/scenarios/<id>                              — Rename / archive
        DELETE /api/scenarios/<id>                              — Delete (never the baseline)

    Scoped data:
        GET/POST /api/scenarios/<id>/assignments                — List / upsert by natural key
        DELETE   /api/scenarios/<id>/assignments/<aid>
        GET/POST /api/scenarios/<id>/project-overrides
        DELETE   /api/scenarios/<id>/project-overrides/<oid>
        GET/POST /api/scenarios/<id>/phase-timelines
        DELETE   /api/scenarios/<id>/phase-timelines/<tid>
        GET/POST /api/scenarios/<id>/phase-dependencies
        DELETE   /api/scenarios/<id>/phase-dependencies/<did>

    Merge & compare:
        POST   /api/scenarios/<id>/merge                        — Merge into parent
        GET    /api/scenarios/<id>/merge-preview?strategy=      — Dry run
        GET    /api/scenarios/<id>/merges                       — Merge history
        GET    /api/scenarios/<id>/compare?to=<id>              — Side-by-side comparison
"""

import logging

from flask import Blueprint, jsonify, request

from planner.blueprints import register_error_handlers
from planner.core.exceptions import ValidationError
from planner.services import scenario_store as store
from planner.services.comparison_service import ComparisonService
from planner.services.merge_coordinator import MergeCoordinator

logger = logging.getLogger(__name__)

scenario_bp = Blueprint("scenario", __name__, url_prefix="/api")
register_error_handlers(scenario_bp)

coordinator = MergeCoordinator()


# ── helpers ──────────────────────────────────────────────────────────────────

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _actor(data: dict) -> str:
    return data.get("actor") or data.get("created_by") or "system"


def _int_arg(name: str, *aliases):
    for key in (name, *aliases):
        raw = request.args.get(key)
        if raw not in (None, ""):
            try:
                return int(raw)
            except ValueError:
                raise ValidationError(f"{key} must be an integer", details={key: raw})
    return None


# ═════════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═════════════════════════════════════════════════════════════════════════════

@scenario_bp.route("/scenarios", methods=["GET"])
def list_scenarios():
    """List scenarios, newest first, with optional status / type filters."""
    scenarios = store.list_scenarios(
        status=request.args.get("status"),
        scenario_type=request.args.get("scenario_type"),
    )
    return jsonify([s.to_dict() for s in scenarios]), 200


@scenario_bp.route("/scenarios", methods=["POST"])
def create_scenario():
    """Branch a scenario off ``parent_scenario_id`` (the baseline by default)."""
    data = _json_body()
    scenario = store.create_scenario(data, actor=_actor(data))
    return jsonify(scenario.to_dict(include_counts=True)), 201


@scenario_bp.route("/scenarios/tree", methods=["GET"])
def scenario_tree():
    return jsonify(store.scenario_tree()), 200


@scenario_bp.route("/scenarios/<int:scenario_id>", methods=["GET"])
def get_scenario(scenario_id):
    scenario = store.get_scenario(scenario_id)
    result = scenario.to_dict(include_counts=True)
    snapshot = scenario.branch_snapshot
    result["branch_snapshot"] = snapshot.to_dict() if snapshot else None
    return jsonify(result), 200


@scenario_bp.route("/scenarios/<int:scenario_id>", methods=["PUT"])
def update_scenario(scenario_id):
    data = _json_body()
    scenario = store.update_scenario(scenario_id, data, actor=_actor(data))
    return jsonify(scenario.to_dict()), 200


@scenario_bp.route("/scenarios/<int:scenario_id>", methods=["DELETE"])
def delete_scenario(scenario_id):
    store.delete_scenario(scenario_id)
    return jsonify({"message": "Scenario deleted", "id": scenario_id}), 200


# ═════════════════════════════════════════════════════════════════════════════
# SCOPED DATA
# ═════════════════════════════════════════════════════════════════════════════

# ── Assignments ──────────────────────────────────────────────────────────────

@scenario_bp.route("/scenarios/<int:scenario_id>/assignments", methods=["GET"])
def list_assignments(scenario_id):
    return jsonify([a.to_dict() for a in store.list_assignments(scenario_id)]), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/assignments", methods=["POST"])
def upsert_assignment(scenario_id):
    """Add an assignment, or update the one with the same (project, person, role)."""
    data = _json_body()
    row, created = store.upsert_assignment(scenario_id, data, actor=_actor(data))
    return jsonify(row.to_dict()), 201 if created else 200


@scenario_bp.route("/scenarios/<int:scenario_id>/assignments/<int:assignment_id>", methods=["DELETE"])
def delete_assignment(scenario_id, assignment_id):
    store.delete_assignment(scenario_id, assignment_id)
    return jsonify({"message": "Assignment deleted", "id": assignment_id}), 200


# ── Project overrides ────────────────────────────────────────────────────────

@scenario_bp.route("/scenarios/<int:scenario_id>/project-overrides", methods=["GET"])
def list_overrides(scenario_id):
    return jsonify([o.to_dict() for o in store.list_overrides(scenario_id)]), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/project-overrides", methods=["POST"])
def upsert_override(scenario_id):
    data = _json_body()
    row, created = store.upsert_override(scenario_id, data, actor=_actor(data))
    return jsonify(row.to_dict()), 201 if created else 200


@scenario_bp.route("/scenarios/<int:scenario_id>/project-overrides/<int:override_id>", methods=["DELETE"])
def delete_override(scenario_id, override_id):
    store.delete_override(scenario_id, override_id)
    return jsonify({"message": "Project override deleted", "id": override_id}), 200


# ── Phase timelines ──────────────────────────────────────────────────────────

@scenario_bp.route("/scenarios/<int:scenario_id>/phase-timelines", methods=["GET"])
def list_phase_timelines(scenario_id):
    return jsonify([t.to_dict() for t in store.list_phase_timelines(scenario_id)]), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/phase-timelines", methods=["POST"])
def upsert_phase_timeline(scenario_id):
    data = _json_body()
    row, created = store.upsert_phase_timeline(scenario_id, data, actor=_actor(data))
    return jsonify(row.to_dict()), 201 if created else 200


@scenario_bp.route("/scenarios/<int:scenario_id>/phase-timelines/<int:timeline_id>", methods=["DELETE"])
def delete_phase_timeline(scenario_id, timeline_id):
    store.delete_phase_timeline(scenario_id, timeline_id)
    return jsonify({"message": "Phase timeline deleted", "id": timeline_id}), 200


# ── Phase dependencies ───────────────────────────────────────────────────────

@scenario_bp.route("/scenarios/<int:scenario_id>/phase-dependencies", methods=["GET"])
def list_dependencies(scenario_id):
    return jsonify([d.to_dict() for d in store.list_dependencies(scenario_id)]), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/phase-dependencies", methods=["POST"])
def add_dependency(scenario_id):
    data = _json_body()
    dep = store.add_dependency(scenario_id, data, actor=_actor(data))
    return jsonify(dep.to_dict()), 201


@scenario_bp.route("/scenarios/<int:scenario_id>/phase-dependencies/<int:dependency_id>", methods=["DELETE"])
def delete_dependency(scenario_id, dependency_id):
    store.delete_dependency(scenario_id, dependency_id)
    return jsonify({"message": "Phase dependency deleted", "id": dependency_id}), 200


# ═════════════════════════════════════════════════════════════════════════════
# MERGE & COMPARE
# ═════════════════════════════════════════════════════════════════════════════

@scenario_bp.route("/scenarios/<int:scenario_id>/merge", methods=["POST"])
def merge_scenario(scenario_id):
    """
    Merge a scenario into its parent.

    Body: ``{merge_strategy?, resolve_conflicts_as?, conflict_resolutions?, merged_by?}``.
    Unresolved conflicts → 409 with ``success: false`` and the conflict list.
    """
    data = _json_body()
    result = coordinator.merge(
        scenario_id,
        data.get("merge_strategy"),
        data.get("conflict_resolutions"),
        merged_by=data.get("merged_by") or _actor(data),
        resolve_conflicts_as=data.get("resolve_conflicts_as"),
    )
    return jsonify(result.to_dict()), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/merge-preview", methods=["GET"])
def merge_preview(scenario_id):
    preview = coordinator.preview(scenario_id, request.args.get("strategy"))
    return jsonify(preview), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/merges", methods=["GET"])
def merge_history(scenario_id):
    include = request.args.get("include_details", "").lower() in ("1", "true", "yes")
    records = MergeCoordinator.merge_history(scenario_id)
    return jsonify([r.to_dict(include_details=include) for r in records]), 200


@scenario_bp.route("/scenarios/<int:scenario_id>/compare", methods=["GET"])
def compare_scenarios(scenario_id):
    """Compare this scenario against ``?to=<id>`` (alias ``compare_to``)."""
    other_id = _int_arg("to", "compare_to")
    if other_id is None:
        raise ValidationError("compare_to parameter is required", details={"to": "required"})
    return jsonify(ComparisonService.compare(scenario_id, other_id)), 200
