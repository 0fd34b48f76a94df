"""
MergeCoordinator — one scenario merge, end to end.

Flow:
    1. validate the source (exists, not baseline, active, has a parent) and target
    2. take the merge lock of the target (bounded wait, then MergeInProgressError)
    3. re-read the source under the lock
    4. diff (three-way) and resolve with the requested strategy
    5. write overrides → phase timelines → assignments into the target,
       refresh computed dates, verify integrity
    6. MergeRecord + audit row, source status → merged
    7. commit

Everything in 3–7 is one transaction; any exception rolls it back and is
re-raised unchanged.  This is the only place in the service layer that
rolls back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import or_

from planner.core.exceptions import ConflictsPendingError, InvalidMergeSourceError
from planner.models import db
from planner.models.audit import write_audit
from planner.models.scenario import (
    ENTITY_ASSIGNMENT,
    ENTITY_OVERRIDE,
    ENTITY_PHASE,
    MergeRecord,
    Scenario,
)
from planner.services import conflict_resolver
from planner.services import diff_engine
from planner.services import scenario_store as store
from planner.services.conflict_resolver import Resolution
from planner.services.merge_lock import MergeLockRegistry, merge_locks

logger = logging.getLogger(__name__)

# Order matters: computed assignment dates read overrides and timelines
APPLY_ORDER = (
    (ENTITY_OVERRIDE, store.apply_override, store.remove_override_by_key),
    (ENTITY_PHASE, store.apply_phase_timeline, store.remove_phase_timeline_by_key),
    (ENTITY_ASSIGNMENT, store.apply_assignment, store.remove_assignment_by_key),
)


@dataclass
class MergeResult:
    success: bool
    message: str
    source_scenario_id: int
    target_scenario_id: int
    resolution: Resolution
    merge_record: MergeRecord | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "source_scenario_id": self.source_scenario_id,
            "target_scenario_id": self.target_scenario_id,
            "conflicts_detected": self.resolution.conflicts_detected,
            "conflicts_resolved": self.resolution.conflicts_resolved,
            "applied": len(self.resolution.applied),
            "superseded": [e.to_dict() for e in self.resolution.superseded],
            "merge_record": self.merge_record.to_dict() if self.merge_record else None,
        }


class MergeCoordinator:
    """Merges a scenario back into its parent."""

    def __init__(self, locks: MergeLockRegistry | None = None, lock_timeout: float | None = None):
        self.locks = locks or merge_locks
        self._lock_timeout = lock_timeout

    @property
    def lock_timeout(self) -> float:
        if self._lock_timeout is not None:
            return self._lock_timeout
        return float(current_app.config.get("MERGE_LOCK_TIMEOUT_SECONDS", 2))

    # ── Validation ────────────────────────────────────────────────────

    @staticmethod
    def check_source(source: Scenario) -> Scenario:
        """Return the merge target of ``source`` or raise InvalidMergeSourceError."""
        if source.is_baseline:
            raise InvalidMergeSourceError(source.id, "the baseline scenario has no merge target")
        if source.status == "merged":
            raise InvalidMergeSourceError(source.id, "scenario is already merged")
        if not source.is_active:
            raise InvalidMergeSourceError(source.id, f"scenario is {source.status}")
        if source.parent_scenario_id is None:
            raise InvalidMergeSourceError(source.id, "scenario has no parent to merge into")
        target = db.session.get(Scenario, source.parent_scenario_id)
        if target is None:
            raise InvalidMergeSourceError(source.id, "parent scenario no longer exists")
        if not target.is_active:
            raise InvalidMergeSourceError(source.id, f"parent scenario is {target.status}")
        return target

    # ── Merge ─────────────────────────────────────────────────────────

    def merge(
        self,
        source_id: int,
        strategy: str | None = None,
        conflict_resolutions: dict | None = None,
        merged_by: str = "system",
        *,
        resolve_conflicts_as: str | None = None,
    ) -> MergeResult:
        """
        Merge ``source_id`` into its parent.

        Raises:
            NotFoundError:            source does not exist
            ValidationError:          bad strategy / resolutions, or the merged
                                      rows would break a date rule in the target
            InvalidMergeSourceError:  baseline, merged, archived or parentless source
            MergeInProgressError:     target lock busy past the timeout
            ConflictsPendingError:    unresolved conflicts (nothing written)
            ConsistencyError:         target fails the post-write integrity check
        """
        strategy = conflict_resolver.normalize_strategy(strategy, resolve_conflicts_as)
        source = store.get_scenario(source_id)
        target = self.check_source(source)
        merged_by = merged_by or "system"

        logger.info(
            "Merge requested s%s → s%s",
            source.id, target.id,
            extra={"scenario_id": source.id, "target_scenario_id": target.id, "merge_strategy": strategy},
        )

        with self.locks.hold(target.id, timeout=self.lock_timeout):
            try:
                # A merge that held the lock before us may have merged this source
                db.session.refresh(source)
                target = self.check_source(source)

                diff_set = diff_engine.diff(source.id, target.id)
                resolution = conflict_resolver.resolve(diff_set, strategy, conflict_resolutions)
                if resolution.conflicts:
                    logger.info(
                        "Merge s%s → s%s blocked: %d unresolved conflicts",
                        source.id, target.id, len(resolution.conflicts),
                    )
                    raise ConflictsPendingError([e.to_dict() for e in resolution.conflicts])

                counts = self._apply(target.id, resolution)
                store.refresh_computed_dates(target.id)
                store.verify_integrity(target.id)

                record = MergeRecord(
                    scenario_id=source.id,
                    target_scenario_id=target.id,
                    merge_strategy=strategy,
                    conflicts_detected=resolution.conflicts_detected,
                    conflicts_resolved=resolution.conflicts_resolved,
                    merged_by=merged_by,
                    details_json=json.dumps({
                        "had_branch_snapshot": diff_set.has_base,
                        "counts": counts,
                        "applied": [e.to_dict() for e in resolution.applied],
                        "superseded": [e.to_dict() for e in resolution.superseded],
                    }),
                )
                db.session.add(record)
                source.status = "merged"
                db.session.flush()

                write_audit(
                    entity_type="scenario", entity_id=source.id, action="scenario.merge",
                    actor=merged_by, scenario_id=target.id,
                    diff={
                        "merge_record_id": record.id,
                        "target_scenario_id": target.id,
                        "merge_strategy": strategy,
                        "conflicts_detected": record.conflicts_detected,
                        "conflicts_resolved": record.conflicts_resolved,
                        "superseded": [e.key for e in resolution.superseded],
                        "counts": counts,
                    },
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Merge s%s → s%s committed: applied=%d superseded=%d conflicts=%d/%d",
            source.id, target.id, len(resolution.applied), len(resolution.superseded),
            record.conflicts_resolved, record.conflicts_detected,
            extra={"scenario_id": source.id, "target_scenario_id": target.id, "merge_strategy": strategy},
        )
        return MergeResult(
            success=True,
            message=self._summary(resolution),
            source_scenario_id=source.id,
            target_scenario_id=target.id,
            resolution=resolution,
            merge_record=record,
        )

    @staticmethod
    def _apply(target_id: int, resolution: Resolution) -> dict:
        """Write the applied entries into the target.  Flush only."""
        counts = {}
        for entity_type, upsert, remove in APPLY_ORDER:
            written = removed = 0
            for entry in resolution.applied:
                if entry.entity_type != entity_type:
                    continue
                if entry.source is None:
                    removed += int(remove(target_id, entry.natural_key))
                else:
                    upsert(target_id, entry.source)
                    written += 1
            counts[entity_type] = {"written": written, "removed": removed}
        return counts

    @staticmethod
    def _summary(resolution: Resolution) -> str:
        msg = f"Merge completed: {len(resolution.applied)} change(s) applied"
        if resolution.conflicts_detected:
            msg += f", {resolution.conflicts_resolved} conflict(s) resolved with {resolution.strategy}"
        if resolution.superseded:
            msg += f", {len(resolution.superseded)} source change(s) superseded by the target"
        return msg

    # ── Read-only helpers ─────────────────────────────────────────────

    def preview(
        self,
        source_id: int,
        strategy: str | None = None,
        conflict_resolutions: dict | None = None,
    ) -> dict:
        """Dry run: the diff and what a merge with ``strategy`` would do.  No lock, no writes."""
        strategy = conflict_resolver.normalize_strategy(strategy)
        source = store.get_scenario(source_id)
        target = self.check_source(source)
        diff_set = diff_engine.diff(source.id, target.id)
        resolution = conflict_resolver.resolve(diff_set, strategy, conflict_resolutions)
        return {
            "source_scenario_id": source.id,
            "target_scenario_id": target.id,
            "can_merge": resolution.is_complete,
            "merge_in_progress": self.locks.is_locked(target.id),
            "diff": diff_set.to_dict(),
            "resolution": resolution.to_dict(),
        }

    @staticmethod
    def merge_history(scenario_id: int) -> list[MergeRecord]:
        """MergeRecords where the scenario was source or target, newest first."""
        store.get_scenario(scenario_id)
        return (
            MergeRecord.query
            .filter(or_(
                MergeRecord.scenario_id == scenario_id,
                MergeRecord.target_scenario_id == scenario_id,
            ))
            .order_by(MergeRecord.merged_at.desc(), MergeRecord.id.desc())
            .all()
        )
