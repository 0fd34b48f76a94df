"""
Capacity Planner
Resource Blueprint — reference data scenarios point at.

Endpoints:
    GET/POST /api/people                    — List / create people
    GET      /api/people/<id>
    GET/POST /api/roles                     — List / create roles
    GET/POST /api/projects                  — List / create projects
    GET      /api/projects/<id>             — Detail (+ phases)
    GET/POST /api/projects/<id>/phases      — List / create default phase dates
"""

from flask import Blueprint, jsonify, request

from planner.blueprints import register_error_handlers
from planner.core.exceptions import ConflictError, NotFoundError, ValidationError
from planner.models import db
from planner.models.resource import Person, Project, ProjectPhase, Role
from planner.models.scenario import parse_date

resource_bp = Blueprint("resource", __name__, url_prefix="/api")
register_error_handlers(resource_bp)


# ── helpers ──────────────────────────────────────────────────────────────────

def _get_or_404(model, pk):
    obj = db.session.get(model, pk)
    if not obj:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj


def _required_name(data: dict) -> str:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    return name


def _date(data: dict, field: str):
    try:
        return parse_date(data.get(field))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={field: data.get(field)})


# ═════════════════════════════════════════════════════════════════════════════
# PEOPLE & ROLES
# ═════════════════════════════════════════════════════════════════════════════

@resource_bp.route("/people", methods=["GET"])
def list_people():
    return jsonify([p.to_dict() for p in Person.query.order_by(Person.name).all()]), 200


@resource_bp.route("/people", methods=["POST"])
def create_person():
    data = request.get_json(silent=True) or {}
    availability = data.get("default_availability_percentage", 100)
    if not isinstance(availability, int) or not 0 <= availability <= 100:
        raise ValidationError(
            "default_availability_percentage must be an integer between 0 and 100",
            details={"default_availability_percentage": availability},
        )
    person = Person(
        name=_required_name(data),
        email=data.get("email", ""),
        default_availability_percentage=availability,
    )
    db.session.add(person)
    db.session.commit()
    return jsonify(person.to_dict()), 201


@resource_bp.route("/people/<int:person_id>", methods=["GET"])
def get_person(person_id):
    return jsonify(_get_or_404(Person, person_id).to_dict()), 200


@resource_bp.route("/roles", methods=["GET"])
def list_roles():
    return jsonify([r.to_dict() for r in Role.query.order_by(Role.name).all()]), 200


@resource_bp.route("/roles", methods=["POST"])
def create_role():
    data = request.get_json(silent=True) or {}
    name = _required_name(data)
    if Role.query.filter_by(name=name).first():
        raise ConflictError("Role", "name", name)
    role = Role(name=name, description=data.get("description", ""))
    db.session.add(role)
    db.session.commit()
    return jsonify(role.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# PROJECTS & PHASES
# ═════════════════════════════════════════════════════════════════════════════

@resource_bp.route("/projects", methods=["GET"])
def list_projects():
    projects = Project.query.order_by(Project.priority, Project.name).all()
    return jsonify([p.to_dict() for p in projects]), 200


@resource_bp.route("/projects", methods=["POST"])
def create_project():
    data = request.get_json(silent=True) or {}
    name = _required_name(data)
    priority = data.get("priority", 3)
    if not isinstance(priority, int) or not 1 <= priority <= 5:
        raise ValidationError("priority must be an integer between 1 and 5", details={"priority": priority})
    start, finish = _date(data, "aspiration_start"), _date(data, "aspiration_finish")
    if start and finish and not start < finish:
        raise ValidationError("aspiration_start must be before aspiration_finish")

    project = Project(
        name=name,
        description=data.get("description", ""),
        priority=priority,
        aspiration_start=start,
        aspiration_finish=finish,
    )
    db.session.add(project)
    db.session.commit()
    return jsonify(project.to_dict()), 201


@resource_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(_get_or_404(Project, project_id).to_dict(include_phases=True)), 200


@resource_bp.route("/projects/<int:project_id>/phases", methods=["GET"])
def list_phases(project_id):
    project = _get_or_404(Project, project_id)
    return jsonify([p.to_dict() for p in project.phases]), 200


@resource_bp.route("/projects/<int:project_id>/phases", methods=["POST"])
def create_phase(project_id):
    project = _get_or_404(Project, project_id)
    data = request.get_json(silent=True) or {}
    start, end = _date(data, "start_date"), _date(data, "end_date")
    if start and end and start > end:
        raise ValidationError("start_date must not be after end_date")

    phase = ProjectPhase(
        project_id=project.id,
        name=_required_name(data),
        start_date=start,
        end_date=end,
        order_index=data.get("order_index", project.phases.count()),
    )
    db.session.add(phase)
    db.session.commit()
    return jsonify(phase.to_dict()), 201
