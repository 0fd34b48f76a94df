"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and map each to a consistent HTTP status and error code.

Usage:
    from planner.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Scenario", resource_id=42)
    raise ValidationError("allocation_percentage must be in (0, 100]",
                          details={"allocation_percentage": 120})

Mapping (see planner.utils.errors):
    ValidationError          → 400
    InvalidMergeSourceError  → 400 (permanent, not retryable)
    NotFoundError            → 404
    ConflictError            → 409
    ConflictsPendingError    → 409 (resubmit with resolutions)
    MergeInProgressError     → 409 (retry after backoff)
    ConsistencyError         → 500 (a stored invariant is broken)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Scenario", "Person").
        resource_id: The PK that was looked up.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails validation or a business rule.

    Covers malformed natural keys, missing foreign keys, out-of-range
    allocations, invalid status transitions and writes to immutable
    scenarios. Rejected before any merge lock or transaction is taken.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConflictsPendingError(Exception):
    """Raised when a manual merge still has unresolved conflicts.

    Recoverable: the caller resubmits with a resolution for every conflict
    or picks another strategy. No rows were written.

    Args:
        conflicts: Serialised diff entries (``DiffEntry.to_dict()``) that
            still need a decision.
    """

    def __init__(self, conflicts: list[dict], message: str | None = None) -> None:
        self.conflicts = conflicts
        super().__init__(
            message
            or f"Merge conflicts detected. Manual resolution required ({len(conflicts)} pending)."
        )


class MergeInProgressError(Exception):
    """Raised when another merge holds the lock for the same target scenario.

    Recoverable: retry after a short backoff.
    """

    def __init__(self, target_scenario_id: int, timeout: float | None = None) -> None:
        self.target_scenario_id = target_scenario_id
        self.timeout = timeout
        msg = f"A merge into scenario id={target_scenario_id} is already in progress"
        if timeout is not None:
            msg += f" (waited {timeout:g}s)"
        super().__init__(msg)


class InvalidMergeSourceError(Exception):
    """Raised when a scenario can never be merged (baseline, already merged, no parent).

    Permanent: retrying with the same source will fail the same way.
    """

    def __init__(self, scenario_id: int, reason: str) -> None:
        self.scenario_id = scenario_id
        self.reason = reason
        super().__init__(f"Scenario id={scenario_id} cannot be merged: {reason}")


class ConsistencyError(Exception):
    """Raised when stored data violates a structural invariant.

    Cycles in the scenario hierarchy, orphaned parent references, duplicate
    natural keys or dangling foreign keys found after a write. Indicates an
    earlier write-path bug; always logged, never swallowed.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
