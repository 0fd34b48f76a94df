"""
Capacity Planner
Tests — log formatters carry scenario and merge context.
"""

import json
import logging

from planner.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(msg="Merge requested", **extra):
    record = logging.LogRecord("planner.merge", logging.INFO, __file__, 1, msg, None, None)
    for key, val in extra.items():
        setattr(record, key, val)
    return record


def test_json_formatter_includes_merge_context():
    line = JSONFormatter().format(_record(
        scenario_id=3, target_scenario_id=1, merge_strategy="favor_source", unrelated="x",
    ))
    entry = json.loads(line)
    assert entry["message"] == "Merge requested"
    assert entry["level"] == "INFO"
    assert entry["scenario_id"] == 3
    assert entry["target_scenario_id"] == 1
    assert entry["merge_strategy"] == "favor_source"
    assert "unrelated" not in entry


def test_readable_formatter_shows_merge_and_duration():
    line = ReadableFormatter().format(_record(
        scenario_id=3, target_scenario_id=1, merge_strategy="manual", duration_ms=12.4,
    ))
    assert "planner.merge: Merge requested [s3→s1 manual] [12ms]" in line


def test_readable_formatter_without_context():
    line = ReadableFormatter().format(_record("Baseline ready"))
    assert line.endswith("planner.merge: Baseline ready")
