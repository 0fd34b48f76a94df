"""Standardised API error responses.

Usage
-----
    from planner.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Scenario not found")
    return api_error(E.VALIDATION_REQUIRED, "name is required")
    return api_error(E.MERGE_CONFLICTS, "Conflicts pending", details={"conflicts": [...]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • MERGE_ prefix for scenario merge outcomes the UI renders distinctly
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Merge – HTTP 400 / 409
    MERGE_INVALID_SOURCE = "MERGE_INVALID_SOURCE"
    MERGE_IN_PROGRESS = "MERGE_IN_PROGRESS"
    MERGE_CONFLICTS = "MERGE_CONFLICTS_PENDING"

    # Server – HTTP 500
    CONSISTENCY = "ERR_CONSISTENCY"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.MERGE_INVALID_SOURCE: 400,
    E.MERGE_IN_PROGRESS: 409,
    E.MERGE_CONFLICTS: 409,
    E.CONSISTENCY: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    with_message: bool = False,
    **extra,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, conflict list, etc.).
    with_message : bool, optional
        Also echo ``message`` under a ``message`` key, as the merge
        endpoint contract expects.
    **extra
        Additional top-level keys merged into the body (e.g. ``success=False``
        for the merge endpoint contract).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if with_message:
        body["message"] = message
    if details:
        body["details"] = details
    body.update(extra)

    return jsonify(body), http_status
