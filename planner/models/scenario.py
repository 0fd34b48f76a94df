"""
Capacity Planner
Scenario domain models — branchable planning data.

Models:
    - Scenario:                 a version of the plan (baseline, branch or sandbox)
    - ScenarioAssignment:       person → project/role allocation inside one scenario
    - ScenarioProjectOverride:  per-scenario project priority / aspiration dates
    - ScenarioPhaseTimeline:    per-scenario start/end of a project phase
    - PhaseDependency:          predecessor → successor link between phase timelines
    - ScenarioBranchSnapshot:   immutable capture of the parent at branch time
    - MergeRecord:              append-only audit of every completed merge

Architecture:
    Scenario ──N:1──▶ Scenario            (parent_scenario_id, stored flat;
                                           the tree is derived on demand)
    Scenario ──1:N──▶ ScenarioAssignment / ScenarioProjectOverride / ScenarioPhaseTimeline
    ScenarioPhaseTimeline ──N:M──▶ ScenarioPhaseTimeline  (via PhaseDependency, DAG)
    Scenario ──1:1──▶ ScenarioBranchSnapshot

Lifecycle states:
    Scenario:  active → merged → archived  |  active → archived

Natural keys (identity of "the same" row across scenarios):
    assignment        (project_id, person_id, role_id)
    project_override  (project_id,)
    phase_timeline    (project_id, phase_id)
"""

import json
from datetime import date, datetime, timezone

from planner.models import db


# ── Constants ────────────────────────────────────────────────────────────────

SCENARIO_TYPES = {"baseline", "branch", "sandbox"}
SCENARIO_STATUSES = {"active", "merged", "archived"}

ASSIGNMENT_DATE_MODES = {"fixed", "phase", "project"}
DEPENDENCY_TYPES = {"FS", "SS", "FF", "SF"}

MERGE_STRATEGIES = {"favor_source", "favor_target", "manual"}

# Entity classes tracked by diff / merge
ENTITY_ASSIGNMENT = "assignment"
ENTITY_OVERRIDE = "project_override"
ENTITY_PHASE = "phase_timeline"


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

SCENARIO_TRANSITIONS = {
    "active":   ["archived"],   # → merged only through the merge engine
    "merged":   ["archived"],
    "archived": [],
}


def validate_scenario_transition(old_status, new_status):
    """Return True if a user-driven Scenario status transition is valid."""
    return new_status in SCENARIO_TRANSITIONS.get(old_status, [])


# ── Serialisation helpers ────────────────────────────────────────────────────

def _iso(value):
    return value.isoformat() if value else None


def parse_date(value):
    """Coerce an ISO string (or date/datetime) to ``date``; None passes through."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# ── Cycle Detection ──────────────────────────────────────────────────────────

def validate_no_phase_cycle(session, successor_id, new_predecessor_id):
    """
    Check that adding new_predecessor_id → successor_id keeps the phase graph a DAG.

    Iterative DFS from new_predecessor_id walking backwards through existing
    predecessor links.  Returns True if safe, False if a cycle would form.
    """
    if successor_id == new_predecessor_id:
        return False

    visited = set()
    stack = [new_predecessor_id]

    while stack:
        current = stack.pop()
        if current == successor_id:
            return False
        if current in visited:
            continue
        visited.add(current)

        preds = (
            session.query(PhaseDependency.predecessor_phase_timeline_id)
            .filter(PhaseDependency.successor_phase_timeline_id == current)
            .all()
        )
        for (pred_id,) in preds:
            stack.append(pred_id)

    return True


# ═════════════════════════════════════════════════════════════════════════════
# 1. Scenario
# ═════════════════════════════════════════════════════════════════════════════


class Scenario(db.Model):
    """
    A version of the staffing plan.

    Exactly one ``baseline`` exists (no parent); every other scenario hangs
    off a parent and was forked from it at ``branch_point``.  Once merged,
    a scenario is read-only except for archival.
    """

    __tablename__ = "scenarios"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    scenario_type = db.Column(
        db.String(20), nullable=False, default="branch",
        comment="baseline | branch | sandbox",
    )
    status = db.Column(
        db.String(20), nullable=False, default="active",
        comment="active | merged | archived",
    )

    parent_scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id"),
        nullable=True, index=True,
    )
    branch_point = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships (scoped data only; no parent/children object graph)
    assignments = db.relationship(
        "ScenarioAssignment", backref="scenario", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    project_overrides = db.relationship(
        "ScenarioProjectOverride", backref="scenario", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    phase_timelines = db.relationship(
        "ScenarioPhaseTimeline", backref="scenario", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    branch_snapshot = db.relationship(
        "ScenarioBranchSnapshot", uselist=False,
        foreign_keys="ScenarioBranchSnapshot.scenario_id",
        cascade="all, delete-orphan",
    )

    @property
    def is_baseline(self) -> bool:
        return self.scenario_type == "baseline"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self, include_counts=False):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "scenario_type": self.scenario_type,
            "status": self.status,
            "parent_scenario_id": self.parent_scenario_id,
            "branch_point": _iso(self.branch_point),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_counts:
            result["assignment_count"] = self.assignments.count()
            result["project_override_count"] = self.project_overrides.count()
            result["phase_timeline_count"] = self.phase_timelines.count()
        return result

    def __repr__(self):
        return f"<Scenario {self.id}: {self.name} ({self.scenario_type}/{self.status})>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ScenarioAssignment
# ═════════════════════════════════════════════════════════════════════════════


class ScenarioAssignment(db.Model):
    """
    Allocation of a person to a project in a role, scoped to one scenario.

    ``computed_start_date`` / ``computed_end_date`` are derived from
    ``assignment_date_mode`` by the store and refreshed whenever the phase
    timelines or project overrides of the scenario change.
    """

    __tablename__ = "scenario_assignments"

    NATURAL_KEY = ("project_id", "person_id", "role_id")
    COMPARED_FIELDS = (
        "allocation_percentage", "assignment_date_mode",
        "start_date", "end_date", "phase_id",
    )

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True,
    )
    person_id = db.Column(
        db.Integer, db.ForeignKey("people.id"), nullable=False, index=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id"), nullable=False,
    )
    phase_id = db.Column(
        db.Integer, db.ForeignKey("project_phases.id"), nullable=True,
    )

    allocation_percentage = db.Column(db.Float, nullable=False)
    assignment_date_mode = db.Column(
        db.String(20), nullable=False, default="fixed",
        comment="fixed | phase | project",
    )
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    computed_start_date = db.Column(db.Date, nullable=True)
    computed_end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, default="")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships (read-only lookups for labels)
    project = db.relationship("Project", lazy="joined")
    person = db.relationship("Person", lazy="joined")
    role = db.relationship("Role", lazy="joined")
    phase = db.relationship("ProjectPhase", lazy="joined")

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "scenario_id", "project_id", "person_id", "role_id",
            name="uq_scenario_assignment_natural_key",
        ),
        db.CheckConstraint(
            "allocation_percentage > 0 AND allocation_percentage <= 100",
            name="ck_assignment_allocation_range",
        ),
    )

    def natural_key(self) -> tuple:
        return (self.project_id, self.person_id, self.role_id)

    def state(self) -> dict:
        """JSON-safe row state used by snapshots and the diff engine."""
        return {
            "project_id": self.project_id,
            "person_id": self.person_id,
            "role_id": self.role_id,
            "phase_id": self.phase_id,
            "allocation_percentage": self.allocation_percentage,
            "assignment_date_mode": self.assignment_date_mode,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "notes": self.notes or "",
        }

    def to_dict(self):
        result = {
            "id": self.id,
            "scenario_id": self.scenario_id,
            **self.state(),
            "computed_start_date": _iso(self.computed_start_date),
            "computed_end_date": _iso(self.computed_end_date),
            "project_name": self.project.name if self.project else None,
            "person_name": self.person.name if self.person else None,
            "role_name": self.role.name if self.role else None,
            "phase_name": self.phase.name if self.phase else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        return result

    def __repr__(self):
        return (
            f"<ScenarioAssignment {self.id}: s{self.scenario_id} "
            f"p{self.person_id}→prj{self.project_id} {self.allocation_percentage}%>"
        )


# ═════════════════════════════════════════════════════════════════════════════
# 3. ScenarioProjectOverride
# ═════════════════════════════════════════════════════════════════════════════


class ScenarioProjectOverride(db.Model):
    """Scenario-local change to a project's attributes; the shared Project row is untouched."""

    __tablename__ = "scenario_project_overrides"

    NATURAL_KEY = ("project_id",)
    COMPARED_FIELDS = ("name", "priority", "aspiration_start", "aspiration_finish")

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=False,
    )
    name = db.Column(db.String(200), nullable=True)
    priority = db.Column(db.Integer, nullable=True)
    aspiration_start = db.Column(db.Date, nullable=True)
    aspiration_finish = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, default="")

    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("scenario_id", "project_id", name="uq_scenario_project_override"),
    )

    def natural_key(self) -> tuple:
        return (self.project_id,)

    def state(self) -> dict:
        return {
            "project_id": self.project_id,
            "name": self.name,
            "priority": self.priority,
            "aspiration_start": _iso(self.aspiration_start),
            "aspiration_finish": _iso(self.aspiration_finish),
            "notes": self.notes or "",
        }

    def to_dict(self):
        return {
            "id": self.id,
            "scenario_id": self.scenario_id,
            **self.state(),
            "project_name": self.project.name if self.project else None,
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ScenarioProjectOverride {self.id}: s{self.scenario_id} prj{self.project_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ScenarioPhaseTimeline + PhaseDependency
# ═════════════════════════════════════════════════════════════════════════════


class ScenarioPhaseTimeline(db.Model):
    """Scenario-local start/end of a project phase."""

    __tablename__ = "scenario_phase_timelines"

    NATURAL_KEY = ("project_id", "phase_id")
    COMPARED_FIELDS = ("start_date", "end_date")

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=False,
    )
    phase_id = db.Column(
        db.Integer, db.ForeignKey("project_phases.id"), nullable=False,
    )
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    notes = db.Column(db.Text, default="")

    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", lazy="joined")
    phase = db.relationship("ProjectPhase", lazy="joined")

    # Links are owned by both endpoints; removing a timeline drops its edges.
    predecessor_links = db.relationship(
        "PhaseDependency",
        foreign_keys="PhaseDependency.successor_phase_timeline_id",
        backref="successor", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    successor_links = db.relationship(
        "PhaseDependency",
        foreign_keys="PhaseDependency.predecessor_phase_timeline_id",
        backref="predecessor", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("scenario_id", "project_id", "phase_id", name="uq_scenario_phase_timeline"),
        db.CheckConstraint("start_date <= end_date", name="ck_phase_timeline_dates"),
    )

    def natural_key(self) -> tuple:
        return (self.project_id, self.phase_id)

    def state(self) -> dict:
        return {
            "project_id": self.project_id,
            "phase_id": self.phase_id,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "notes": self.notes or "",
        }

    def to_dict(self):
        return {
            "id": self.id,
            "scenario_id": self.scenario_id,
            **self.state(),
            "project_name": self.project.name if self.project else None,
            "phase_name": self.phase.name if self.phase else None,
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ScenarioPhaseTimeline {self.id}: s{self.scenario_id} prj{self.project_id}/ph{self.phase_id}>"


class PhaseDependency(db.Model):
    """
    Predecessor → successor dependency between two phase timelines of one scenario.
    Types: FS (finish-to-start, default), SS, FF, SF.  ``lag_days`` ≥ 0.
    """

    __tablename__ = "phase_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    predecessor_phase_timeline_id = db.Column(
        db.Integer, db.ForeignKey("scenario_phase_timelines.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    successor_phase_timeline_id = db.Column(
        db.Integer, db.ForeignKey("scenario_phase_timelines.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    dependency_type = db.Column(
        db.String(2), nullable=False, default="FS",
        comment="FS | SS | FF | SF",
    )
    lag_days = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "predecessor_phase_timeline_id", "successor_phase_timeline_id",
            name="uq_phase_dep",
        ),
        db.CheckConstraint(
            "predecessor_phase_timeline_id != successor_phase_timeline_id",
            name="ck_phase_dep_no_self_loop",
        ),
        db.CheckConstraint("lag_days >= 0", name="ck_phase_dep_lag"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "predecessor_phase_timeline_id": self.predecessor_phase_timeline_id,
            "successor_phase_timeline_id": self.successor_phase_timeline_id,
            "dependency_type": self.dependency_type,
            "lag_days": self.lag_days,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return (
            f"<PhaseDependency {self.id}: {self.predecessor_phase_timeline_id}"
            f" -{self.dependency_type}-> {self.successor_phase_timeline_id}>"
        )


# ═════════════════════════════════════════════════════════════════════════════
# 5. ScenarioBranchSnapshot
# ═════════════════════════════════════════════════════════════════════════════


class ScenarioBranchSnapshot(db.Model):
    """
    Immutable capture of the parent's scoped data at the moment a scenario branched.

    ``payload_json`` = {entity_type: {key_str: row_state}} for assignments,
    project overrides and phase timelines.  Serves as the common ancestor of
    the three-way diff when the scenario merges back into its parent.
    """

    __tablename__ = "scenario_branch_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    parent_scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    captured_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    payload_json = db.Column(db.Text, nullable=False, default="{}")

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        payload = self.payload
        return {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "parent_scenario_id": self.parent_scenario_id,
            "captured_at": _iso(self.captured_at),
            "counts": {k: len(v) for k, v in payload.items()},
        }

    def __repr__(self):
        return f"<ScenarioBranchSnapshot s{self.scenario_id} of s{self.parent_scenario_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 6. MergeRecord
# ═════════════════════════════════════════════════════════════════════════════


class MergeRecord(db.Model):
    """
    Append-only record of a completed merge.

    ``details_json`` keeps the applied entries and the source changes that
    were superseded by the target (favor_target / manual "target" picks).
    """

    __tablename__ = "merge_records"
    __table_args__ = (
        db.Index("idx_merge_source", "scenario_id"),
        db.Index("idx_merge_target", "target_scenario_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id"), nullable=False,
    )
    target_scenario_id = db.Column(
        db.Integer, db.ForeignKey("scenarios.id"), nullable=False,
    )
    merge_strategy = db.Column(db.String(20), nullable=False)
    conflicts_detected = db.Column(db.Integer, nullable=False, default=0)
    conflicts_resolved = db.Column(db.Integer, nullable=False, default=0)
    merged_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    merged_by = db.Column(db.String(150), nullable=False, default="system")
    details_json = db.Column(db.Text, default="{}")

    @property
    def details(self) -> dict:
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self, include_details=False):
        result = {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "target_scenario_id": self.target_scenario_id,
            "merge_strategy": self.merge_strategy,
            "conflicts_detected": self.conflicts_detected,
            "conflicts_resolved": self.conflicts_resolved,
            "merged_at": _iso(self.merged_at),
            "merged_by": self.merged_by,
        }
        if include_details:
            result["details"] = self.details
        return result

    def __repr__(self):
        return f"<MergeRecord {self.id}: s{self.scenario_id} → s{self.target_scenario_id}>"
