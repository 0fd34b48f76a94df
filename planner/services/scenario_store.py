"""
ScenarioStore — Service Layer for scenarios and their scoped data.

Business logic for:
    - Baseline bootstrap:   exactly one baseline, created on startup
    - Branching:            full copy of the parent's scoped data + branch-point snapshot
    - Lifecycle:            update / archive / delete guards
    - Scoped CRUD:          assignments, project overrides, phase timelines, phase dependencies
    - Computed dates:       fixed / phase / project date modes
    - State loading:        natural-key keyed rows for the diff engine
    - Integrity checks:     duplicate keys, dangling FKs, computed-date ordering

Two kinds of write functions live here:
    apply_* / remove_*   flush only; the caller (CRUD entry point or the
                         merge coordinator) owns the transaction
    upsert_* / delete_*  CRUD entry points; validate, write, audit, commit
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import func

from planner.core.exceptions import (
    ConflictError,
    ConsistencyError,
    NotFoundError,
    ValidationError,
)
from planner.models import db
from planner.models.audit import write_audit
from planner.models.resource import Person, Project, ProjectPhase, Role
from planner.models.scenario import (
    ASSIGNMENT_DATE_MODES,
    DEPENDENCY_TYPES,
    ENTITY_ASSIGNMENT,
    ENTITY_OVERRIDE,
    ENTITY_PHASE,
    SCENARIO_TYPES,
    PhaseDependency,
    Scenario,
    ScenarioAssignment,
    ScenarioBranchSnapshot,
    ScenarioPhaseTimeline,
    ScenarioProjectOverride,
    parse_date,
    validate_no_phase_cycle,
    validate_scenario_transition,
)
from planner.services.scenario_tree import assert_acyclic_chain, build_tree

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    ENTITY_ASSIGNMENT: ScenarioAssignment,
    ENTITY_OVERRIDE: ScenarioProjectOverride,
    ENTITY_PHASE: ScenarioPhaseTimeline,
}


def key_str(key) -> str:
    """Natural key tuple → stable string (``"3:7:2"``)."""
    return ":".join(str(k) for k in key)


def natural_key_of(entity_type: str, state: dict) -> tuple:
    """Extract the natural key tuple of an entity from its state dict."""
    return tuple(state.get(f) for f in ENTITY_MODELS[entity_type].NATURAL_KEY)


# ── Coercion ─────────────────────────────────────────────────────────────────


def _as_int(data: dict, field: str, *, required: bool = True):
    value = data.get(field)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: value})


def _as_date(data: dict, field: str):
    try:
        return parse_date(data.get(field))
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field} must be an ISO date (YYYY-MM-DD)", details={field: data.get(field)},
        )


def _require(model, pk, field: str):
    obj = db.session.get(model, pk)
    if obj is None:
        raise ValidationError(
            f"{field}={pk} does not reference an existing {model.__name__}",
            details={field: pk},
        )
    return obj


# ═════════════════════════════════════════════════════════════════════════════
# Scenarios
# ═════════════════════════════════════════════════════════════════════════════


def get_scenario(scenario_id: int) -> Scenario:
    scenario = db.session.get(Scenario, scenario_id)
    if scenario is None:
        raise NotFoundError(resource="Scenario", resource_id=scenario_id)
    return scenario


def get_baseline() -> Scenario | None:
    return Scenario.query.filter_by(scenario_type="baseline").first()


def ensure_baseline(name: str = "Current State Baseline") -> Scenario:
    """Create the baseline scenario if it does not exist yet.  Idempotent."""
    baseline = get_baseline()
    if baseline:
        return baseline
    baseline = Scenario(
        name=name,
        description="Plan of record",
        scenario_type="baseline",
        status="active",
        parent_scenario_id=None,
        created_by="system",
    )
    db.session.add(baseline)
    db.session.commit()
    logger.info("Baseline scenario created id=%s", baseline.id)
    return baseline


def list_scenarios(*, status: str | None = None, scenario_type: str | None = None) -> list[Scenario]:
    """All scenarios, newest first."""
    query = Scenario.query
    if status:
        query = query.filter_by(status=status)
    if scenario_type:
        query = query.filter_by(scenario_type=scenario_type)
    return query.order_by(Scenario.created_at.desc(), Scenario.id.desc()).all()


def scenario_tree() -> list[dict]:
    """Forest of scenarios in creation order within each parent."""
    records = Scenario.query.order_by(Scenario.created_at.asc(), Scenario.id.asc()).all()
    return [root.to_dict() for root in build_tree([s.to_dict() for s in records])]


def _parent_map() -> dict:
    rows = db.session.query(Scenario.id, Scenario.parent_scenario_id).all()
    return {sid: pid for sid, pid in rows}


def _ensure_writable(scenario: Scenario) -> None:
    if not scenario.is_active:
        raise ValidationError(
            f"Scenario '{scenario.name}' is {scenario.status} and cannot be modified",
            details={"status": scenario.status},
        )


def create_scenario(data: dict, actor: str = "system") -> Scenario:
    """
    Branch a new scenario off a parent (the baseline when none is given).

    The parent's assignments, overrides, phase timelines and dependencies
    are copied into the child, and the parent's state is frozen into a
    branch-point snapshot, all in one transaction.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Scenario name is required", details={"name": "required"})
    if len(name) > 200:
        raise ValidationError("Scenario name must be ≤ 200 characters")

    scenario_type = data.get("scenario_type") or "branch"
    if scenario_type not in SCENARIO_TYPES:
        raise ValidationError(
            f"scenario_type must be one of {sorted(SCENARIO_TYPES)}",
            details={"scenario_type": scenario_type},
        )
    if scenario_type == "baseline":
        raise ValidationError("Only one baseline scenario may exist; branch from it instead")

    parent_id = _as_int(data, "parent_scenario_id", required=False)
    if parent_id is None:
        parent = get_baseline()
        if parent is None:
            raise ConsistencyError("No baseline scenario exists")
    else:
        parent = _require(Scenario, parent_id, "parent_scenario_id")
    if not parent.is_active:
        raise ValidationError(
            f"Cannot branch from a {parent.status} scenario",
            details={"parent_scenario_id": parent.id},
        )

    # The stored hierarchy must stay a forest rooted at the baseline
    chain = assert_acyclic_chain(parent.id, _parent_map())
    root = db.session.get(Scenario, chain[-1])
    if not root.is_baseline:
        raise ConsistencyError(
            f"Scenario id={parent.id} does not descend from the baseline",
            details={"chain": chain},
        )

    now = datetime.now(timezone.utc)
    scenario = Scenario(
        name=name,
        description=data.get("description") or "",
        scenario_type=scenario_type,
        status="active",
        parent_scenario_id=parent.id,
        branch_point=now,
        created_by=(data.get("created_by") or actor or "system"),
    )
    db.session.add(scenario)
    db.session.flush()

    copied = _copy_scoped_data(parent.id, scenario.id)
    db.session.add(ScenarioBranchSnapshot(
        scenario_id=scenario.id,
        parent_scenario_id=parent.id,
        captured_at=now,
        payload_json=json.dumps(load_state(parent.id)),
    ))
    write_audit(
        entity_type="scenario", entity_id=scenario.id, action="scenario.create",
        actor=scenario.created_by, scenario_id=scenario.id,
        diff={"parent_scenario_id": parent.id, "scenario_type": scenario_type, "copied": copied},
    )
    db.session.commit()
    logger.info(
        "Scenario created id=%s parent=%s type=%s copied=%s",
        scenario.id, parent.id, scenario_type, copied,
    )
    return scenario


def _copy_scoped_data(parent_id: int, child_id: int) -> dict:
    """Copy every scoped row of the parent into the child; returns per-entity counts."""
    overrides = ScenarioProjectOverride.query.filter_by(scenario_id=parent_id).all()
    for o in overrides:
        db.session.add(ScenarioProjectOverride(
            scenario_id=child_id, project_id=o.project_id, name=o.name,
            priority=o.priority, aspiration_start=o.aspiration_start,
            aspiration_finish=o.aspiration_finish, notes=o.notes,
        ))

    timelines = ScenarioPhaseTimeline.query.filter_by(scenario_id=parent_id).all()
    id_map = {}
    for t in timelines:
        clone = ScenarioPhaseTimeline(
            scenario_id=child_id, project_id=t.project_id, phase_id=t.phase_id,
            start_date=t.start_date, end_date=t.end_date, notes=t.notes,
        )
        db.session.add(clone)
        db.session.flush()
        id_map[t.id] = clone.id

    deps = 0
    if id_map:
        for dep in PhaseDependency.query.filter(
            PhaseDependency.successor_phase_timeline_id.in_(list(id_map))
        ).all():
            db.session.add(PhaseDependency(
                predecessor_phase_timeline_id=id_map[dep.predecessor_phase_timeline_id],
                successor_phase_timeline_id=id_map[dep.successor_phase_timeline_id],
                dependency_type=dep.dependency_type,
                lag_days=dep.lag_days,
            ))
            deps += 1

    assignments = ScenarioAssignment.query.filter_by(scenario_id=parent_id).all()
    for a in assignments:
        db.session.add(ScenarioAssignment(
            scenario_id=child_id, project_id=a.project_id, person_id=a.person_id,
            role_id=a.role_id, phase_id=a.phase_id,
            allocation_percentage=a.allocation_percentage,
            assignment_date_mode=a.assignment_date_mode,
            start_date=a.start_date, end_date=a.end_date,
            computed_start_date=a.computed_start_date,
            computed_end_date=a.computed_end_date,
            notes=a.notes,
        ))
    db.session.flush()
    return {
        ENTITY_ASSIGNMENT: len(assignments),
        ENTITY_OVERRIDE: len(overrides),
        ENTITY_PHASE: len(timelines),
        "phase_dependency": deps,
    }


def update_scenario(scenario_id: int, data: dict, actor: str = "system") -> Scenario:
    """Rename / describe an active scenario, or archive one."""
    scenario = get_scenario(scenario_id)
    changes = {}

    new_status = data.get("status")
    if new_status is not None and new_status != scenario.status:
        if scenario.is_baseline:
            raise ValidationError("The baseline scenario cannot change status")
        if not validate_scenario_transition(scenario.status, new_status):
            raise ValidationError(
                f"Invalid transition: {scenario.status} → {new_status}",
                details={"status": new_status},
            )

    text_fields = [f for f in ("name", "description") if f in data]
    if text_fields:
        _ensure_writable(scenario)
    for field in text_fields:
        val = data[field].strip() if isinstance(data[field], str) else data[field]
        if field == "name" and not val:
            raise ValidationError("Scenario name is required", details={"name": "required"})
        if getattr(scenario, field) != val:
            changes[field] = {"old": getattr(scenario, field), "new": val}
            setattr(scenario, field, val)

    if new_status is not None and new_status != scenario.status:
        changes["status"] = {"old": scenario.status, "new": new_status}
        scenario.status = new_status

    if changes:
        write_audit(
            entity_type="scenario", entity_id=scenario.id, action="scenario.update",
            actor=actor, scenario_id=scenario.id, diff=changes,
        )
    db.session.commit()
    return scenario


def delete_scenario(scenario_id: int, actor: str = "system") -> Scenario:
    """Delete a leaf, non-baseline, non-merged scenario and all its scoped rows."""
    scenario = get_scenario(scenario_id)
    if scenario.is_baseline:
        raise ValidationError("Cannot delete baseline scenario")
    if scenario.status == "merged":
        raise ValidationError("Cannot delete a merged scenario; archive it instead")
    children = Scenario.query.filter_by(parent_scenario_id=scenario.id).count()
    if children:
        raise ValidationError(
            "Cannot delete scenario with child scenarios",
            details={"child_count": children},
        )

    write_audit(
        entity_type="scenario", entity_id=scenario.id, action="scenario.delete",
        actor=actor, scenario_id=scenario.id,
        diff={"name": scenario.name, "parent_scenario_id": scenario.parent_scenario_id},
    )
    db.session.delete(scenario)
    db.session.commit()
    logger.info("Scenario deleted id=%s", scenario_id)
    return scenario


# ═════════════════════════════════════════════════════════════════════════════
# Computed dates
# ═════════════════════════════════════════════════════════════════════════════


def resolve_assignment_dates(mode, start, end, *, phase_dates=None, project_dates=None):
    """
    Derive ``(computed_start, computed_end)`` for one assignment.

    fixed   → the stored dates (single-day allowed)
    phase   → ``phase_dates``   (must satisfy start < end)
    project → ``project_dates`` (must satisfy start < end)
    """
    if mode == "fixed":
        source = (start, end)
    elif mode == "phase":
        source = phase_dates or (None, None)
    else:
        source = project_dates or (None, None)

    c_start, c_end = source
    if c_start is None or c_end is None:
        raise ValidationError(
            f"Cannot compute dates for '{mode}' mode: start and end are required",
            details={"assignment_date_mode": mode},
        )
    if mode == "fixed":
        if c_start > c_end:
            raise ValidationError("start_date must not be after end_date")
    elif not c_start < c_end:
        raise ValidationError(
            f"Computed dates for '{mode}' mode must satisfy start < end",
            details={"computed_start_date": c_start.isoformat(), "computed_end_date": c_end.isoformat()},
        )
    return c_start, c_end


def _phase_dates(scenario_id: int, project_id: int, phase_id: int | None):
    if phase_id is None:
        return None
    timeline = ScenarioPhaseTimeline.query.filter_by(
        scenario_id=scenario_id, project_id=project_id, phase_id=phase_id,
    ).first()
    if timeline:
        return timeline.start_date, timeline.end_date
    phase = db.session.get(ProjectPhase, phase_id)
    return (phase.start_date, phase.end_date) if phase else None


def _project_dates(scenario_id: int, project_id: int):
    project = db.session.get(Project, project_id)
    start = project.aspiration_start if project else None
    finish = project.aspiration_finish if project else None
    override = ScenarioProjectOverride.query.filter_by(
        scenario_id=scenario_id, project_id=project_id,
    ).first()
    if override:
        start = override.aspiration_start or start
        finish = override.aspiration_finish or finish
    return start, finish


def compute_assignment_dates(scenario_id: int, fields: dict):
    return resolve_assignment_dates(
        fields["assignment_date_mode"], fields["start_date"], fields["end_date"],
        phase_dates=_phase_dates(scenario_id, fields["project_id"], fields["phase_id"]),
        project_dates=_project_dates(scenario_id, fields["project_id"]),
    )


def refresh_computed_dates(scenario_id: int, project_id: int | None = None) -> int:
    """Recompute phase/project-mode assignment dates; returns rows changed."""
    query = ScenarioAssignment.query.filter(
        ScenarioAssignment.scenario_id == scenario_id,
        ScenarioAssignment.assignment_date_mode.in_(["phase", "project"]),
    )
    if project_id is not None:
        query = query.filter(ScenarioAssignment.project_id == project_id)

    changed = 0
    for a in query.all():
        start, end = resolve_assignment_dates(
            a.assignment_date_mode, a.start_date, a.end_date,
            phase_dates=_phase_dates(scenario_id, a.project_id, a.phase_id),
            project_dates=_project_dates(scenario_id, a.project_id),
        )
        if (a.computed_start_date, a.computed_end_date) != (start, end):
            a.computed_start_date, a.computed_end_date = start, end
            changed += 1
    db.session.flush()
    return changed


def _check_dependents(scenario_id, project_id, *, phase_id=None, phase_dates=None, project_dates=None):
    """Reject a timeline / override change that would invalidate existing assignments."""
    query = ScenarioAssignment.query.filter_by(scenario_id=scenario_id, project_id=project_id)
    for a in query.all():
        if a.assignment_date_mode == "phase" and phase_id is not None and a.phase_id == phase_id:
            candidate = {"phase_dates": phase_dates}
        elif a.assignment_date_mode == "project" and project_dates is not None:
            candidate = {"project_dates": project_dates}
        else:
            continue
        try:
            resolve_assignment_dates(a.assignment_date_mode, a.start_date, a.end_date, **candidate)
        except ValidationError as exc:
            raise ValidationError(
                f"Change would leave assignment id={a.id} with invalid dates: {exc}",
                details={"assignment_id": a.id},
            )


# ═════════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════════


def validate_assignment_payload(data: dict) -> dict:
    """Normalise an assignment payload and check its references.  No writes."""
    fields = {
        "project_id": _as_int(data, "project_id"),
        "person_id": _as_int(data, "person_id"),
        "role_id": _as_int(data, "role_id"),
        "phase_id": _as_int(data, "phase_id", required=False),
    }

    raw_alloc = data.get("allocation_percentage")
    if raw_alloc is None or isinstance(raw_alloc, bool):
        raise ValidationError(
            "allocation_percentage is required", details={"allocation_percentage": "required"},
        )
    try:
        allocation = float(raw_alloc)
    except (TypeError, ValueError):
        raise ValidationError("allocation_percentage must be a number", details={"allocation_percentage": raw_alloc})
    if not 0 < allocation <= 100:
        raise ValidationError(
            "allocation_percentage must be greater than 0 and at most 100",
            details={"allocation_percentage": raw_alloc},
        )
    fields["allocation_percentage"] = allocation

    mode = data.get("assignment_date_mode") or "fixed"
    if mode not in ASSIGNMENT_DATE_MODES:
        raise ValidationError(
            f"assignment_date_mode must be one of {sorted(ASSIGNMENT_DATE_MODES)}",
            details={"assignment_date_mode": mode},
        )
    fields["assignment_date_mode"] = mode
    fields["start_date"] = _as_date(data, "start_date")
    fields["end_date"] = _as_date(data, "end_date")
    fields["notes"] = data.get("notes") or ""

    _require(Project, fields["project_id"], "project_id")
    _require(Person, fields["person_id"], "person_id")
    _require(Role, fields["role_id"], "role_id")
    if fields["phase_id"] is not None:
        phase = _require(ProjectPhase, fields["phase_id"], "phase_id")
        if phase.project_id != fields["project_id"]:
            raise ValidationError(
                f"phase_id={phase.id} does not belong to project_id={fields['project_id']}",
                details={"phase_id": phase.id},
            )
    elif mode == "phase":
        raise ValidationError("phase_id is required for 'phase' date mode", details={"phase_id": "required"})
    return fields


def apply_assignment(scenario_id: int, data: dict):
    """Insert or update an assignment by natural key.  Flush only.

    Returns ``(assignment, created)``.
    """
    fields = validate_assignment_payload(data)
    c_start, c_end = compute_assignment_dates(scenario_id, fields)

    row = ScenarioAssignment.query.filter_by(
        scenario_id=scenario_id,
        project_id=fields["project_id"],
        person_id=fields["person_id"],
        role_id=fields["role_id"],
    ).first()
    created = row is None
    if created:
        row = ScenarioAssignment(scenario_id=scenario_id)
        db.session.add(row)
    for field, value in fields.items():
        setattr(row, field, value)
    row.computed_start_date = c_start
    row.computed_end_date = c_end
    db.session.flush()
    return row, created


def remove_assignment_by_key(scenario_id: int, key: tuple) -> bool:
    project_id, person_id, role_id = key
    row = ScenarioAssignment.query.filter_by(
        scenario_id=scenario_id, project_id=project_id, person_id=person_id, role_id=role_id,
    ).first()
    if row is None:
        return False
    db.session.delete(row)
    db.session.flush()
    return True


def list_assignments(scenario_id: int) -> list[ScenarioAssignment]:
    get_scenario(scenario_id)
    return (
        ScenarioAssignment.query.filter_by(scenario_id=scenario_id)
        .order_by(ScenarioAssignment.project_id, ScenarioAssignment.person_id, ScenarioAssignment.role_id)
        .all()
    )


def upsert_assignment(scenario_id: int, data: dict, actor: str = "system"):
    """CRUD entry point: add or update an assignment in a scenario."""
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    row, created = apply_assignment(scenario.id, data)
    write_audit(
        entity_type="assignment", entity_id=row.id, action="assignment.upsert",
        actor=actor, scenario_id=scenario.id,
        diff={"created": created, **row.state()},
    )
    db.session.commit()
    return row, created


def delete_assignment(scenario_id: int, assignment_id: int, actor: str = "system") -> None:
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    row = ScenarioAssignment.query.filter_by(id=assignment_id, scenario_id=scenario.id).first()
    if row is None:
        raise NotFoundError(resource="ScenarioAssignment", resource_id=assignment_id)
    write_audit(
        entity_type="assignment", entity_id=row.id, action="assignment.delete",
        actor=actor, scenario_id=scenario.id, diff=row.state(),
    )
    db.session.delete(row)
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# Project overrides
# ═════════════════════════════════════════════════════════════════════════════


def validate_override_payload(data: dict) -> dict:
    fields = {
        "project_id": _as_int(data, "project_id"),
        "priority": _as_int(data, "priority", required=False),
        "aspiration_start": _as_date(data, "aspiration_start"),
        "aspiration_finish": _as_date(data, "aspiration_finish"),
        "notes": data.get("notes") or "",
    }
    name = data.get("name")
    fields["name"] = name.strip() if isinstance(name, str) and name.strip() else None
    if fields["priority"] is not None and not 1 <= fields["priority"] <= 5:
        raise ValidationError("priority must be between 1 and 5", details={"priority": fields["priority"]})
    start, finish = fields["aspiration_start"], fields["aspiration_finish"]
    if start and finish and not start < finish:
        raise ValidationError("aspiration_start must be before aspiration_finish")
    _require(Project, fields["project_id"], "project_id")
    return fields


def apply_override(scenario_id: int, data: dict):
    """Insert or update a project override by natural key.  Flush only."""
    fields = validate_override_payload(data)
    row = ScenarioProjectOverride.query.filter_by(
        scenario_id=scenario_id, project_id=fields["project_id"],
    ).first()
    created = row is None
    if created:
        row = ScenarioProjectOverride(scenario_id=scenario_id)
        db.session.add(row)
    for field, value in fields.items():
        setattr(row, field, value)
    db.session.flush()
    return row, created


def remove_override_by_key(scenario_id: int, key: tuple) -> bool:
    (project_id,) = key
    row = ScenarioProjectOverride.query.filter_by(scenario_id=scenario_id, project_id=project_id).first()
    if row is None:
        return False
    db.session.delete(row)
    db.session.flush()
    return True


def list_overrides(scenario_id: int) -> list[ScenarioProjectOverride]:
    get_scenario(scenario_id)
    return (
        ScenarioProjectOverride.query.filter_by(scenario_id=scenario_id)
        .order_by(ScenarioProjectOverride.project_id)
        .all()
    )


def upsert_override(scenario_id: int, data: dict, actor: str = "system"):
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    fields = validate_override_payload(data)
    project = db.session.get(Project, fields["project_id"])
    _check_dependents(
        scenario.id, fields["project_id"],
        project_dates=(
            fields["aspiration_start"] or project.aspiration_start,
            fields["aspiration_finish"] or project.aspiration_finish,
        ),
    )
    row, created = apply_override(scenario.id, data)
    refresh_computed_dates(scenario.id, row.project_id)
    write_audit(
        entity_type="project_override", entity_id=row.id, action="project_override.upsert",
        actor=actor, scenario_id=scenario.id, diff={"created": created, **row.state()},
    )
    db.session.commit()
    return row, created


def delete_override(scenario_id: int, override_id: int, actor: str = "system") -> None:
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    row = ScenarioProjectOverride.query.filter_by(id=override_id, scenario_id=scenario.id).first()
    if row is None:
        raise NotFoundError(resource="ScenarioProjectOverride", resource_id=override_id)
    project = db.session.get(Project, row.project_id)
    _check_dependents(
        scenario.id, row.project_id,
        project_dates=(project.aspiration_start, project.aspiration_finish),
    )
    write_audit(
        entity_type="project_override", entity_id=row.id, action="project_override.delete",
        actor=actor, scenario_id=scenario.id, diff=row.state(),
    )
    project_id = row.project_id
    db.session.delete(row)
    db.session.flush()
    refresh_computed_dates(scenario.id, project_id)
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# Phase timelines
# ═════════════════════════════════════════════════════════════════════════════


def validate_phase_payload(data: dict) -> dict:
    fields = {
        "project_id": _as_int(data, "project_id"),
        "phase_id": _as_int(data, "phase_id"),
        "start_date": _as_date(data, "start_date"),
        "end_date": _as_date(data, "end_date"),
        "notes": data.get("notes") or "",
    }
    if fields["start_date"] is None or fields["end_date"] is None:
        raise ValidationError("start_date and end_date are required")
    if fields["start_date"] > fields["end_date"]:
        raise ValidationError("start_date must not be after end_date")
    _require(Project, fields["project_id"], "project_id")
    phase = _require(ProjectPhase, fields["phase_id"], "phase_id")
    if phase.project_id != fields["project_id"]:
        raise ValidationError(
            f"phase_id={phase.id} does not belong to project_id={fields['project_id']}",
            details={"phase_id": phase.id},
        )
    return fields


def apply_phase_timeline(scenario_id: int, data: dict):
    """Insert or update a phase timeline by natural key.  Flush only."""
    fields = validate_phase_payload(data)
    row = ScenarioPhaseTimeline.query.filter_by(
        scenario_id=scenario_id, project_id=fields["project_id"], phase_id=fields["phase_id"],
    ).first()
    created = row is None
    if created:
        row = ScenarioPhaseTimeline(scenario_id=scenario_id)
        db.session.add(row)
    for field, value in fields.items():
        setattr(row, field, value)
    db.session.flush()
    return row, created


def remove_phase_timeline_by_key(scenario_id: int, key: tuple) -> bool:
    project_id, phase_id = key
    row = ScenarioPhaseTimeline.query.filter_by(
        scenario_id=scenario_id, project_id=project_id, phase_id=phase_id,
    ).first()
    if row is None:
        return False
    db.session.delete(row)
    db.session.flush()
    return True


def list_phase_timelines(scenario_id: int) -> list[ScenarioPhaseTimeline]:
    get_scenario(scenario_id)
    return (
        ScenarioPhaseTimeline.query.filter_by(scenario_id=scenario_id)
        .order_by(ScenarioPhaseTimeline.project_id, ScenarioPhaseTimeline.start_date)
        .all()
    )


def upsert_phase_timeline(scenario_id: int, data: dict, actor: str = "system"):
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    fields = validate_phase_payload(data)
    _check_dependents(
        scenario.id, fields["project_id"],
        phase_id=fields["phase_id"], phase_dates=(fields["start_date"], fields["end_date"]),
    )
    row, created = apply_phase_timeline(scenario.id, data)
    refresh_computed_dates(scenario.id, row.project_id)
    write_audit(
        entity_type="phase_timeline", entity_id=row.id, action="phase_timeline.upsert",
        actor=actor, scenario_id=scenario.id, diff={"created": created, **row.state()},
    )
    db.session.commit()
    return row, created


def delete_phase_timeline(scenario_id: int, timeline_id: int, actor: str = "system") -> None:
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    row = ScenarioPhaseTimeline.query.filter_by(id=timeline_id, scenario_id=scenario.id).first()
    if row is None:
        raise NotFoundError(resource="ScenarioPhaseTimeline", resource_id=timeline_id)
    phase = db.session.get(ProjectPhase, row.phase_id)
    _check_dependents(
        scenario.id, row.project_id,
        phase_id=row.phase_id, phase_dates=(phase.start_date, phase.end_date),
    )
    write_audit(
        entity_type="phase_timeline", entity_id=row.id, action="phase_timeline.delete",
        actor=actor, scenario_id=scenario.id, diff=row.state(),
    )
    project_id = row.project_id
    db.session.delete(row)
    db.session.flush()
    refresh_computed_dates(scenario.id, project_id)
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# Phase dependencies
# ═════════════════════════════════════════════════════════════════════════════


def list_dependencies(scenario_id: int) -> list[PhaseDependency]:
    get_scenario(scenario_id)
    return (
        PhaseDependency.query
        .join(ScenarioPhaseTimeline, PhaseDependency.successor_phase_timeline_id == ScenarioPhaseTimeline.id)
        .filter(ScenarioPhaseTimeline.scenario_id == scenario_id)
        .order_by(PhaseDependency.id)
        .all()
    )


def add_dependency(scenario_id: int, data: dict, actor: str = "system") -> PhaseDependency:
    """Link two phase timelines of one scenario; the graph must stay acyclic."""
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)

    pred_id = _as_int(data, "predecessor_phase_timeline_id")
    succ_id = _as_int(data, "successor_phase_timeline_id")
    dep_type = data.get("dependency_type") or "FS"
    if dep_type not in DEPENDENCY_TYPES:
        raise ValidationError(
            f"dependency_type must be one of {sorted(DEPENDENCY_TYPES)}",
            details={"dependency_type": dep_type},
        )
    lag_days = _as_int(data, "lag_days", required=False) or 0
    if lag_days < 0:
        raise ValidationError("lag_days must be ≥ 0", details={"lag_days": lag_days})

    for tid, field in ((pred_id, "predecessor_phase_timeline_id"), (succ_id, "successor_phase_timeline_id")):
        timeline = db.session.get(ScenarioPhaseTimeline, tid)
        if timeline is None or timeline.scenario_id != scenario.id:
            raise ValidationError(
                f"{field}={tid} is not a phase timeline of scenario id={scenario.id}",
                details={field: tid},
            )

    if pred_id == succ_id:
        raise ValidationError("A phase cannot depend on itself")
    existing = PhaseDependency.query.filter_by(
        predecessor_phase_timeline_id=pred_id, successor_phase_timeline_id=succ_id,
    ).first()
    if existing:
        raise ConflictError("PhaseDependency", "predecessor→successor", f"{pred_id}→{succ_id}")
    if not validate_no_phase_cycle(db.session, succ_id, pred_id):
        raise ValidationError(
            "Dependency would create a cycle in the phase graph",
            details={"predecessor_phase_timeline_id": pred_id, "successor_phase_timeline_id": succ_id},
        )

    dep = PhaseDependency(
        predecessor_phase_timeline_id=pred_id,
        successor_phase_timeline_id=succ_id,
        dependency_type=dep_type,
        lag_days=lag_days,
    )
    db.session.add(dep)
    db.session.flush()
    write_audit(
        entity_type="phase_dependency", entity_id=dep.id, action="phase_dependency.create",
        actor=actor, scenario_id=scenario.id, diff=dep.to_dict(),
    )
    db.session.commit()
    return dep


def delete_dependency(scenario_id: int, dependency_id: int, actor: str = "system") -> None:
    scenario = get_scenario(scenario_id)
    _ensure_writable(scenario)
    dep = (
        PhaseDependency.query
        .join(ScenarioPhaseTimeline, PhaseDependency.successor_phase_timeline_id == ScenarioPhaseTimeline.id)
        .filter(PhaseDependency.id == dependency_id, ScenarioPhaseTimeline.scenario_id == scenario.id)
        .first()
    )
    if dep is None:
        raise NotFoundError(resource="PhaseDependency", resource_id=dependency_id)
    write_audit(
        entity_type="phase_dependency", entity_id=dep.id, action="phase_dependency.delete",
        actor=actor, scenario_id=scenario.id, diff=dep.to_dict(),
    )
    db.session.delete(dep)
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# State loading & integrity
# ═════════════════════════════════════════════════════════════════════════════


def load_state(scenario_id: int) -> dict:
    """
    Scoped rows of a scenario keyed by natural key.

    Returns ``{entity_type: {key_str: state_dict}}`` — the same shape that is
    frozen into branch-point snapshots.
    """
    state = {}
    for entity_type, model in ENTITY_MODELS.items():
        rows = model.query.filter_by(scenario_id=scenario_id).all()
        state[entity_type] = {key_str(r.natural_key()): r.state() for r in rows}
    return state


def load_branch_base(source: Scenario, target: Scenario) -> dict | None:
    """Branch-point snapshot of ``source`` if ``target`` is the parent it branched from."""
    snapshot = source.branch_snapshot
    if snapshot is None or snapshot.parent_scenario_id != target.id:
        return None
    return snapshot.payload


def label_maps() -> dict:
    """Id → display name for every reference table (diff descriptions)."""
    return {
        "person": dict(db.session.query(Person.id, Person.name).all()),
        "project": dict(db.session.query(Project.id, Project.name).all()),
        "role": dict(db.session.query(Role.id, Role.name).all()),
        "phase": dict(db.session.query(ProjectPhase.id, ProjectPhase.name).all()),
    }


def verify_integrity(scenario_id: int) -> None:
    """
    Check the invariants every scenario must satisfy after a write.

    - no two assignments share (project_id, person_id, role_id)
    - every assignment FK points at an existing row; phase belongs to project
    - computed dates exist and are ordered (strict for phase/project modes)

    Raises ConsistencyError listing the offending rows.
    """
    dupes = (
        db.session.query(
            ScenarioAssignment.project_id, ScenarioAssignment.person_id,
            ScenarioAssignment.role_id, func.count(ScenarioAssignment.id),
        )
        .filter(ScenarioAssignment.scenario_id == scenario_id)
        .group_by(ScenarioAssignment.project_id, ScenarioAssignment.person_id, ScenarioAssignment.role_id)
        .having(func.count(ScenarioAssignment.id) > 1)
        .all()
    )
    if dupes:
        raise ConsistencyError(
            f"Duplicate assignment natural keys in scenario id={scenario_id}",
            details={"keys": [key_str(d[:3]) for d in dupes]},
        )

    people = {pid for (pid,) in db.session.query(Person.id).all()}
    projects = {pid for (pid,) in db.session.query(Project.id).all()}
    roles = {rid for (rid,) in db.session.query(Role.id).all()}
    phases = dict(db.session.query(ProjectPhase.id, ProjectPhase.project_id).all())

    problems = []
    for a in ScenarioAssignment.query.filter_by(scenario_id=scenario_id).all():
        if a.person_id not in people or a.project_id not in projects or a.role_id not in roles:
            problems.append({"assignment_id": a.id, "problem": "dangling reference"})
            continue
        if a.phase_id is not None and phases.get(a.phase_id) != a.project_id:
            problems.append({"assignment_id": a.id, "problem": "phase does not belong to project"})
            continue
        start, end = a.computed_start_date, a.computed_end_date
        if start is None or end is None:
            problems.append({"assignment_id": a.id, "problem": "missing computed dates"})
        elif a.assignment_date_mode == "fixed" and start > end:
            problems.append({"assignment_id": a.id, "problem": "computed start after end"})
        elif a.assignment_date_mode != "fixed" and not start < end:
            problems.append({"assignment_id": a.id, "problem": "computed start not before end"})
    if problems:
        raise ConsistencyError(
            f"Integrity check failed for scenario id={scenario_id}",
            details={"problems": problems},
        )
