"""
Capacity Planner
Tests — api_error response builder.
"""

from planner.utils.errors import E, api_error


def test_api_error_defaults():
    resp, status = api_error(E.NOT_FOUND, "Scenario id=7 not found")
    assert status == 404
    assert resp.get_json() == {"error": "Scenario id=7 not found", "code": "ERR_NOT_FOUND"}


def test_api_error_echoes_message_with_extra_keys():
    resp, status = api_error(
        E.MERGE_IN_PROGRESS, "Merge already running",
        details={"target_scenario_id": 1},
        success=False, with_message=True, retryable=True,
    )
    body = resp.get_json()
    assert status == 409
    assert body["message"] == "Merge already running"
    assert body["error"] == "Merge already running"
    assert body["success"] is False
    assert body["retryable"] is True
    assert body["details"] == {"target_scenario_id": 1}


def test_api_error_status_override():
    _, status = api_error(E.VALIDATION_INVALID, "bad", status=422)
    assert status == 422
