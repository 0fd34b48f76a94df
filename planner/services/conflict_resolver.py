"""
ConflictResolver — turns a DiffSet into the list of changes a merge writes.

Pure function of ``(DiffSet, strategy, resolutions)``; no database access.

    favor_source   conflicts take the source's state
    favor_target   conflicts keep the target's state; the source change is
                   reported as superseded
    manual         every conflict needs an explicit "source" / "target" pick
                   in ``resolutions``; anything missing stays unresolved

Explicit per-entry picks win over the strategy default for any strategy.
Clean entries are always applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from planner.core.exceptions import ValidationError
from planner.models.scenario import MERGE_STRATEGIES
from planner.services.diff_engine import DiffEntry, DiffSet

logger = logging.getLogger(__name__)

# Values accepted in the legacy ``resolve_conflicts_as`` field
STRATEGY_ALIASES = {
    "use_source": "favor_source",
    "use_target": "favor_target",
    "manual": "manual",
}

RESOLUTION_CHOICES = {"source", "target"}


def normalize_strategy(merge_strategy: str | None = None,
                       resolve_conflicts_as: str | None = None) -> str:
    """Pick the effective strategy; ``merge_strategy`` wins, default ``manual``."""
    if merge_strategy:
        if merge_strategy not in MERGE_STRATEGIES:
            raise ValidationError(
                f"merge_strategy must be one of {sorted(MERGE_STRATEGIES)}",
                details={"merge_strategy": merge_strategy},
            )
        return merge_strategy
    if resolve_conflicts_as:
        strategy = STRATEGY_ALIASES.get(resolve_conflicts_as) or (
            resolve_conflicts_as if resolve_conflicts_as in MERGE_STRATEGIES else None
        )
        if strategy is None:
            raise ValidationError(
                f"resolve_conflicts_as must be one of {sorted(STRATEGY_ALIASES)}",
                details={"resolve_conflicts_as": resolve_conflicts_as},
            )
        return strategy
    return "manual"


@dataclass
class Resolution:
    """Outcome of resolving one DiffSet."""
    strategy: str
    applied: list[DiffEntry] = field(default_factory=list)
    superseded: list[DiffEntry] = field(default_factory=list)
    conflicts: list[DiffEntry] = field(default_factory=list)
    conflicts_detected: int = 0

    @property
    def conflicts_resolved(self) -> int:
        return self.conflicts_detected - len(self.conflicts)

    @property
    def is_complete(self) -> bool:
        return not self.conflicts

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "conflicts_detected": self.conflicts_detected,
            "conflicts_resolved": self.conflicts_resolved,
            "applied": [e.to_dict() for e in self.applied],
            "superseded": [e.to_dict() for e in self.superseded],
            "conflicts": [e.to_dict() for e in self.conflicts],
        }


def _check_resolutions(diff_set: DiffSet, resolutions: dict) -> None:
    unknown = []
    for key in resolutions:
        entry = diff_set.get(key)
        if entry is None or not entry.conflict:
            unknown.append(key)
    unknown.sort()
    if unknown:
        raise ValidationError(
            "conflict_resolutions references entries that are not conflicts",
            details={"unknown_keys": unknown},
        )
    bad = {k: v for k, v in resolutions.items() if v not in RESOLUTION_CHOICES}
    if bad:
        raise ValidationError(
            f"conflict_resolutions values must be one of {sorted(RESOLUTION_CHOICES)}",
            details={"invalid": bad},
        )


def resolve(diff_set: DiffSet, strategy: str, resolutions: dict | None = None) -> Resolution:
    if strategy not in MERGE_STRATEGIES:
        raise ValidationError(
            f"merge_strategy must be one of {sorted(MERGE_STRATEGIES)}",
            details={"merge_strategy": strategy},
        )
    resolutions = resolutions or {}
    if not isinstance(resolutions, dict):
        raise ValidationError("conflict_resolutions must be an object of entry key → source|target")
    _check_resolutions(diff_set, resolutions)

    default_pick = {"favor_source": "source", "favor_target": "target"}.get(strategy)
    result = Resolution(strategy=strategy, conflicts_detected=len(diff_set.conflicts))

    for entry in diff_set.entries:
        if not entry.conflict:
            result.applied.append(entry)
            continue
        pick = resolutions.get(entry.key, default_pick)
        if pick == "source":
            result.applied.append(entry)
        elif pick == "target":
            result.superseded.append(entry)
        else:
            result.conflicts.append(entry)

    logger.debug(
        "Resolved %d entries with %s: applied=%d superseded=%d unresolved=%d",
        len(diff_set.entries), strategy,
        len(result.applied), len(result.superseded), len(result.conflicts),
    )
    return result
