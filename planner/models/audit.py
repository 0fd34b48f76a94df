"""
Capacity Planner
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for scenario lifecycle events.
"""

import json
from datetime import datetime, timezone

from planner.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "scenario", "assignment", "project_override",
    "phase_timeline", "phase_dependency",
}

AUDIT_ACTIONS = {
    # Scenario lifecycle
    "scenario.create",
    "scenario.update",
    "scenario.delete",
    "scenario.merge",
    # Scenario-scoped data
    "assignment.upsert",
    "assignment.delete",
    "project_override.upsert",
    "project_override.delete",
    "phase_timeline.upsert",
    "phase_timeline.delete",
    "phase_dependency.create",
    "phase_dependency.delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries old→new snapshot for
    field-level changes and merge summaries.  ``request_id`` groups all rows
    written while serving one HTTP request.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_scenario", "scenario_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, nullable=True,
        comment="Scenario the event belongs to; kept as plain int so rows survive deletes",
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="scenario | assignment | project_override | phase_timeline | phase_dependency",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="scenario.merge | assignment.upsert | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    request_id = db.Column(db.String(64), nullable=True, index=True)

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "request_id": self.request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    scenario_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    from planner.middleware.timing import current_request_id

    log = AuditLog(
        scenario_id=scenario_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        request_id=current_request_id(),
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
