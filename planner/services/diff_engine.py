"""
DiffEngine — three-way difference between two scenarios.

Compares a source scenario with its merge target using the source's
branch-point snapshot as the common ancestor, for assignments, project
overrides and phase timelines.  Rows are matched by natural key, never by id.

Classification per natural key (s = source, t = target, b = base; equality
is over the entity's compared fields):

    s == t                              → ignored
    s only, no b                        → added     (clean)
    s only, b == s                      → no-op     (target deleted it)
    s only, b != s                      → modified  (conflict: edited vs deleted)
    t only, b == t                      → removed   (clean)
    t only, b != t                      → removed   (conflict: deleted vs edited)
    t only, no b                        → no-op     (target-only row)
    both, t == b                        → modified  (clean: only source changed)
    both, s == b                        → no-op     (only target changed)
    both, otherwise (incl. no b)        → modified  (conflict)

Usage:
    from planner.services.diff_engine import diff
    diff_set = diff(source_id, target_id)
    for entry in diff_set.conflicts:
        print(entry.description)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from planner.models.scenario import (
    ENTITY_ASSIGNMENT,
    ENTITY_OVERRIDE,
    ENTITY_PHASE,
    ScenarioAssignment,
    ScenarioPhaseTimeline,
    ScenarioProjectOverride,
)
from planner.services import scenario_store as store

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


def _label(labels: dict | None, kind: str, pk) -> str:
    if pk is None:
        return "-"
    name = (labels or {}).get(kind, {}).get(pk)
    return name or f"{kind.title()} #{pk}"


@dataclass
class DiffEntry(ABC):
    """One natural key whose state differs between source and target."""
    entity_type: ClassVar[str] = ""
    compared_fields: ClassVar[tuple] = ()

    natural_key: tuple
    change_type: ChangeType
    source: dict | None
    target: dict | None
    base: dict | None = None
    conflict: bool = False
    description: str = ""

    @property
    def key(self) -> str:
        """Stable entry key, e.g. ``assignment:3:7:2``; used by manual resolutions."""
        return f"{self.entity_type}:{store.key_str(self.natural_key)}"

    @property
    def changed_fields(self) -> list[str]:
        s, t = self.source or {}, self.target or {}
        return [f for f in self.compared_fields if s.get(f) != t.get(f)]

    @abstractmethod
    def describe(self, labels: dict | None = None) -> str:
        """One-line, human-readable summary of the change."""

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "entity_type": self.entity_type,
            "natural_key": list(self.natural_key),
            "change_type": self.change_type.value,
            "conflict": self.conflict,
            "changed_fields": self.changed_fields,
            "source": self.source,
            "target": self.target,
            "base": self.base,
            "description": self.description,
        }


def _field_changes(entry: DiffEntry, fields) -> str:
    parts = []
    for f in fields:
        old = (entry.target or {}).get(f)
        new = (entry.source or {}).get(f)
        if old != new:
            parts.append(f"{f} {'-' if old is None else old} → {'-' if new is None else new}")
    return ", ".join(parts)


def _pct(value) -> str:
    return f"{float(value):g}%"


@dataclass
class AssignmentDiff(DiffEntry):
    entity_type: ClassVar[str] = ENTITY_ASSIGNMENT
    compared_fields: ClassVar[tuple] = ScenarioAssignment.COMPARED_FIELDS

    def describe(self, labels: dict | None = None) -> str:
        project_id, person_id, role_id = self.natural_key
        head = (
            f"{_label(labels, 'person', person_id)} → {_label(labels, 'project', project_id)}"
            f" ({_label(labels, 'role', role_id)})"
        )
        s, t = self.source, self.target
        if t is None and self.change_type == ChangeType.ADDED:
            return f"{head}: added at {_pct(s['allocation_percentage'])}"
        if t is None:
            return f"{head}: {_pct(s['allocation_percentage'])} (deleted in target)"
        if s is None:
            return f"{head}: removed (was {_pct(t['allocation_percentage'])})"

        parts = []
        if s.get("allocation_percentage") != t.get("allocation_percentage"):
            parts.append(f"{_pct(t['allocation_percentage'])} → {_pct(s['allocation_percentage'])}")
        rest = _field_changes(self, [f for f in self.compared_fields if f != "allocation_percentage"])
        if rest:
            parts.append(rest)
        return f"{head}: {'; '.join(parts)}"


@dataclass
class OverrideDiff(DiffEntry):
    entity_type: ClassVar[str] = ENTITY_OVERRIDE
    compared_fields: ClassVar[tuple] = ScenarioProjectOverride.COMPARED_FIELDS

    def describe(self, labels: dict | None = None) -> str:
        (project_id,) = self.natural_key
        head = _label(labels, "project", project_id)
        if self.target is None and self.change_type == ChangeType.ADDED:
            return f"{head}: override added"
        if self.target is None:
            return f"{head}: override edited (deleted in target)"
        if self.source is None:
            return f"{head}: override removed"
        return f"{head}: {_field_changes(self, self.compared_fields)}"


@dataclass
class PhaseDiff(DiffEntry):
    entity_type: ClassVar[str] = ENTITY_PHASE
    compared_fields: ClassVar[tuple] = ScenarioPhaseTimeline.COMPARED_FIELDS

    @staticmethod
    def _span(state: dict | None) -> str:
        if not state:
            return "-"
        return f"{state.get('start_date')}..{state.get('end_date')}"

    def describe(self, labels: dict | None = None) -> str:
        project_id, phase_id = self.natural_key
        head = f"{_label(labels, 'project', project_id)} / {_label(labels, 'phase', phase_id)}"
        if self.target is None and self.change_type == ChangeType.ADDED:
            return f"{head}: timeline added {self._span(self.source)}"
        if self.source is None:
            return f"{head}: timeline removed (was {self._span(self.target)})"
        return f"{head}: {self._span(self.target)} → {self._span(self.source)}"


ENTRY_TYPES: dict[str, type[DiffEntry]] = {
    ENTITY_ASSIGNMENT: AssignmentDiff,
    ENTITY_OVERRIDE: OverrideDiff,
    ENTITY_PHASE: PhaseDiff,
}


@dataclass
class DiffSet:
    """All entries of one source → target comparison."""
    source_scenario_id: int | None
    target_scenario_id: int | None
    has_base: bool
    entries: list[DiffEntry] = field(default_factory=list)

    @property
    def conflicts(self) -> list[DiffEntry]:
        return [e for e in self.entries if e.conflict]

    def for_entity(self, entity_type: str) -> list[DiffEntry]:
        return [e for e in self.entries if e.entity_type == entity_type]

    def get(self, key: str) -> DiffEntry | None:
        for e in self.entries:
            if e.key == key:
                return e
        return None

    def counts(self) -> dict:
        out = {et: {ct.value: 0 for ct in ChangeType} for et in ENTRY_TYPES}
        for e in self.entries:
            out[e.entity_type][e.change_type.value] += 1
        return out

    def to_dict(self) -> dict:
        return {
            "source_scenario_id": self.source_scenario_id,
            "target_scenario_id": self.target_scenario_id,
            "has_branch_snapshot": self.has_base,
            "counts": self.counts(),
            "conflict_count": len(self.conflicts),
            "entries": [e.to_dict() for e in self.entries],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Comparison
# ═════════════════════════════════════════════════════════════════════════════

def _same(a: dict, b: dict, fields) -> bool:
    return all(a.get(f) == b.get(f) for f in fields)


def _sorted_keys(*row_maps) -> list[str]:
    keys = set()
    for rows in row_maps:
        keys.update(rows)
    return sorted(keys, key=lambda k: tuple(int(p) for p in k.split(":")))


def _natural_key(entity_type: str, source, target) -> tuple:
    return store.natural_key_of(entity_type, source if source is not None else target)


def three_way(entity_type: str, source_rows: dict, target_rows: dict, base_rows: dict) -> list[DiffEntry]:
    """Classify every natural key of one entity class.  Pure; no database access."""
    entry_cls = ENTRY_TYPES[entity_type]
    fields = entry_cls.compared_fields
    entries = []

    for k in _sorted_keys(source_rows, target_rows):
        s, t, b = source_rows.get(k), target_rows.get(k), base_rows.get(k)

        if s is not None and t is not None and _same(s, t, fields):
            continue

        if t is None:
            if b is None:
                change, conflict = ChangeType.ADDED, False
            elif _same(s, b, fields):
                continue
            else:
                change, conflict = ChangeType.MODIFIED, True
        elif s is None:
            if b is None:
                continue
            change, conflict = ChangeType.REMOVED, not _same(t, b, fields)
        else:
            if b is not None and _same(t, b, fields):
                change, conflict = ChangeType.MODIFIED, False
            elif b is not None and _same(s, b, fields):
                continue
            else:
                change, conflict = ChangeType.MODIFIED, True

        entries.append(entry_cls(
            natural_key=_natural_key(entity_type, s, t),
            change_type=change,
            source=s,
            target=t,
            base=b,
            conflict=conflict,
        ))
    return entries


def two_way(entity_type: str, a_rows: dict, b_rows: dict) -> list[DiffEntry]:
    """Base-less comparison: rows only in ``b`` are reported as removed."""
    entry_cls = ENTRY_TYPES[entity_type]
    entries = []
    for k in _sorted_keys(a_rows, b_rows):
        a, b = a_rows.get(k), b_rows.get(k)
        if a is not None and b is not None:
            if _same(a, b, entry_cls.compared_fields):
                continue
            change = ChangeType.MODIFIED
        elif b is None:
            change = ChangeType.ADDED
        else:
            change = ChangeType.REMOVED
        entries.append(entry_cls(
            natural_key=_natural_key(entity_type, a, b),
            change_type=change,
            source=a,
            target=b,
        ))
    return entries


def _describe_all(entries: list[DiffEntry], labels: dict | None) -> None:
    for e in entries:
        e.description = e.describe(labels)


def compute_three_way(source_state: dict, target_state: dict, base_state: dict | None,
                      labels: dict | None = None, *, source_id=None, target_id=None) -> DiffSet:
    has_base = base_state is not None
    base_state = base_state or {}
    entries = []
    for entity_type in ENTRY_TYPES:
        entries.extend(three_way(
            entity_type,
            source_state.get(entity_type, {}),
            target_state.get(entity_type, {}),
            base_state.get(entity_type, {}),
        ))
    _describe_all(entries, labels)
    return DiffSet(source_id, target_id, has_base=has_base, entries=entries)


def compute_two_way(a_state: dict, b_state: dict, labels: dict | None = None,
                    *, a_id=None, b_id=None) -> DiffSet:
    entries = []
    for entity_type in ENTRY_TYPES:
        entries.extend(two_way(entity_type, a_state.get(entity_type, {}), b_state.get(entity_type, {})))
    _describe_all(entries, labels)
    return DiffSet(a_id, b_id, has_base=False, entries=entries)


def diff(source_id: int, target_id: int) -> DiffSet:
    """Three-way diff of two stored scenarios.  Read-only."""
    source = store.get_scenario(source_id)
    target = store.get_scenario(target_id)

    base = store.load_branch_base(source, target)
    if base is None:
        logger.warning(
            "No branch-point snapshot for scenario id=%s against id=%s; diffing with empty base",
            source.id, target.id,
        )

    result = compute_three_way(
        store.load_state(source.id),
        store.load_state(target.id),
        base,
        store.label_maps(),
        source_id=source.id,
        target_id=target.id,
    )
    logger.debug(
        "Diff s%s → s%s: %d entries, %d conflicts",
        source.id, target.id, len(result.entries), len(result.conflicts),
    )
    return result
