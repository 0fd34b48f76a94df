"""
Capacity Planner
Blueprint registry.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from planner.core.exceptions import (
    ConflictError,
    ConflictsPendingError,
    ConsistencyError,
    InvalidMergeSourceError,
    MergeInProgressError,
    NotFoundError,
    ValidationError,
)
from planner.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Map service-layer exceptions to structured JSON errors on one blueprint.

    Merge outcomes carry ``success: false`` and ``message`` so the UI can tell
    "conflicts detected", "already merged" and "try again" apart.
    """

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(InvalidMergeSourceError)
    def _handle_invalid_source(error: InvalidMergeSourceError):
        return api_error(
            E.MERGE_INVALID_SOURCE, str(error),
            details={"reason": error.reason},
            success=False, with_message=True,
        )

    @bp.errorhandler(MergeInProgressError)
    def _handle_merge_in_progress(error: MergeInProgressError):
        return api_error(
            E.MERGE_IN_PROGRESS, str(error),
            details={"target_scenario_id": error.target_scenario_id},
            success=False, with_message=True, retryable=True,
        )

    @bp.errorhandler(ConflictsPendingError)
    def _handle_conflicts_pending(error: ConflictsPendingError):
        return api_error(
            E.MERGE_CONFLICTS, str(error),
            success=False, with_message=True, conflicts=error.conflicts,
        )

    @bp.errorhandler(ConsistencyError)
    def _handle_consistency(error: ConsistencyError):
        logger.exception("Consistency error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.CONSISTENCY, str(error), details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
