"""
Capacity Planner
Reference data models — the shared plan-of-record rows scenarios point at.

Models:
    - Person: someone who can be assigned to projects
    - Role: the capacity a person fills on a project (Developer, PM, ...)
    - Project: a piece of work with a priority and aspiration dates
    - ProjectPhase: default timeline of one phase of a project

These rows are not scenario-scoped. Scenarios reference them by FK and
override project attributes / phase dates through their own tables.
"""

from datetime import datetime, timezone

from planner.models import db


class Person(db.Model):
    """A person whose capacity is planned."""

    __tablename__ = "people"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), default="")
    default_availability_percentage = db.Column(db.Integer, default=100)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "default_availability_percentage": self.default_availability_percentage,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Person {self.id}: {self.name}>"


class Role(db.Model):
    """A role a person fills on a project."""

    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text, default="")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
        }

    def __repr__(self):
        return f"<Role {self.id}: {self.name}>"


class Project(db.Model):
    """
    A project in the portfolio.

    ``aspiration_start`` / ``aspiration_finish`` drive the computed dates of
    assignments in ``project`` date mode unless a scenario overrides them.
    """

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(
        db.Integer, default=3,
        comment="1 (highest) .. 5 (lowest)",
    )
    aspiration_start = db.Column(db.Date, nullable=True)
    aspiration_finish = db.Column(db.Date, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships
    phases = db.relationship(
        "ProjectPhase", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProjectPhase.order_index",
    )

    def to_dict(self, include_phases=False):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "aspiration_start": self.aspiration_start.isoformat() if self.aspiration_start else None,
            "aspiration_finish": self.aspiration_finish.isoformat() if self.aspiration_finish else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_phases:
            result["phases"] = [p.to_dict() for p in self.phases]
        return result

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


class ProjectPhase(db.Model):
    """Default start/end of one phase of a project (plan of record)."""

    __tablename__ = "project_phases"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    order_index = db.Column(db.Integer, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "order_index": self.order_index,
        }

    def __repr__(self):
        return f"<ProjectPhase {self.id}: {self.name}>"
