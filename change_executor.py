"""
================================================================================
 APP ASSET ROTATION - CHANGE EXECUTOR
 ------------------------------------
 Turns recorded Changes into app ad mutations.

 Every write follows the same discipline:
   1. re-validate (campaign enabled, target still linked)
   2. read the ad's collection fresh
   3. enforce the per-type min/max counts
   4. write the whole list back under that type's field mask only
   5. update the Asset Registry

 REPLACE runs ADD first and only then REMOVE, against a second fresh read.
 If the REMOVE half fails the change is FAILED / PARTIAL_REPLACE: the ad
 carries old and new asset, over count but never under it.
================================================================================
"""

import time
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ads_platform import AdAssetCollection, PlatformError
from asset_registry import (
    AssetRegistry, AssetStatus, AssetType, SourceType, TEXT_ASSET_TYPES,
)
from change_requests import (
    ApprovalMode, Change, ChangeAction, ChangeRequestStore, ChangeStatus,
    ExecutionOutcome, SourceKind,
)
from rotation_config import RotationConfig

logger = logging.getLogger("ChangeExecutor")


@dataclass
class ExecutionResult:
    success: bool
    outcome: ExecutionOutcome
    message: str
    partial: bool = False
    resource_name: Optional[str] = None

    @classmethod
    def ok(cls, message: str, resource_name: str = None) -> "ExecutionResult":
        return cls(True, ExecutionOutcome.SUCCESS, message, resource_name=resource_name)

    @classmethod
    def fail(cls, outcome: ExecutionOutcome, message: str) -> "ExecutionResult":
        return cls(False, outcome, message)

    @classmethod
    def resolved(cls, message: str) -> "ExecutionResult":
        """Target already gone: nothing left to do, not a failure."""
        return cls(True, ExecutionOutcome.ASSET_NOT_FOUND, message)


@dataclass
class ExecutionSummary:
    """What one execution sweep did."""
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: str = ""
    processed: int = 0
    executed: int = 0
    failed: int = 0
    deferred: int = 0                 # left in place for the next sweep
    remaining: int = 0                # not reached before the budget ran out
    timed_out: bool = False
    dry_run: bool = False
    outcomes: Dict[str, int] = field(default_factory=dict)
    partials: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def add(self, change: Change, result: ExecutionResult, status: ChangeStatus):
        self.processed += 1
        self.outcomes[result.outcome.value] = self.outcomes.get(result.outcome.value, 0) + 1
        if status == ChangeStatus.EXECUTED:
            self.executed += 1
        elif status == ChangeStatus.FAILED:
            self.failed += 1
            self.errors.append(f"{change.change_id} ({change.action.value} on ad {change.ad_id}): "
                               f"{result.outcome.value}: {result.message}")
        else:
            self.deferred += 1
        if result.partial:
            self.partials.append(change.change_id)

    @property
    def no_action_needed(self) -> bool:
        return self.processed == 0 and self.remaining == 0 and not self.errors

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "processed": self.processed,
            "executed": self.executed,
            "failed": self.failed,
            "deferred": self.deferred,
            "remaining": self.remaining,
            "timed_out": self.timed_out,
            "dry_run": self.dry_run,
            "outcomes": dict(self.outcomes),
            "partials": list(self.partials),
            "errors": list(self.errors),
        }


class _ConcurrentModification(Exception):
    """Collection changed between the read a write was computed from and the write."""
    pass


class ChangeExecutor:
    """
    Executes AUTO and APPROVED changes one at a time against the platform,
    keeping the Change Request Store and Asset Registry in step.
    """

    def __init__(self, platform, registry: AssetRegistry, store: ChangeRequestStore,
                 config: RotationConfig, clock: Callable[[], float] = time.monotonic,
                 persist: bool = True):
        self.platform = platform
        self.registry = registry
        self.store = store
        self.config = config
        self.clock = clock
        self.persist = persist
        self._handlers = {
            ChangeAction.ADD: self._execute_add,
            ChangeAction.REMOVE: self._execute_remove,
            ChangeAction.REPLACE: self._execute_replace,
            ChangeAction.REACTIVATE: self._execute_reactivate,
        }

    # ══════════════════════════════════════════════════════════════════════════
    # SINGLE CHANGE
    # ══════════════════════════════════════════════════════════════════════════

    def execute(self, change: Change) -> ExecutionResult:
        """Run one change. Business failures come back as results, not exceptions."""
        if change.status == ChangeStatus.EXECUTED:
            return ExecutionResult(True, ExecutionOutcome.ALREADY_EXECUTED,
                                   f"{change.change_id} already executed at {change.executed_at}")
        if change.status in (ChangeStatus.REJECTED, ChangeStatus.FAILED):
            return ExecutionResult.fail(ExecutionOutcome.NOT_EXECUTABLE,
                                        f"{change.change_id} is {change.status.value}")
        if change.status == ChangeStatus.PENDING and change.approval_mode != ApprovalMode.AUTO:
            return ExecutionResult.fail(ExecutionOutcome.NOT_EXECUTABLE,
                                        f"{change.change_id} is awaiting approval")

        handler = self._handlers.get(change.action)
        if change.action == ChangeAction.REMOVE and change.has_replacement:
            handler = self._execute_replace
        if handler is None:
            return ExecutionResult.fail(ExecutionOutcome.UNKNOWN_ACTION,
                                        f"No executor for action {change.action}")

        if not self.platform.is_campaign_enabled(change.campaign_id):
            return ExecutionResult.fail(ExecutionOutcome.CAMPAIGN_NOT_ENABLED,
                                        f"Campaign {change.campaign_id} is not enabled")

        try:
            return handler(change)
        except _ConcurrentModification as e:
            return ExecutionResult.fail(ExecutionOutcome.CONCURRENT_MODIFICATION, str(e))

    def execute_and_record(self, change: Change) -> ExecutionResult:
        """Execute, then move the stored change to the status its result implies."""
        current = self.store.get(change.change_id) or change
        logger.info(f"  Executing {current.change_id}: {current.action.value} "
                    f"{current.asset_type.value} on ad {current.ad_id}")
        try:
            result = self.execute(current)
        except Exception as e:
            logger.error(f"  {current.change_id} raised: {e}")
            result = ExecutionResult.fail(ExecutionOutcome.PLATFORM_REJECTED, str(e))

        if result.outcome in (ExecutionOutcome.ALREADY_EXECUTED, ExecutionOutcome.NOT_EXECUTABLE):
            logger.info(f"    -> {result.outcome.value}: {result.message}")
            return result

        if current.change_id not in self.store:
            self._log_result(current, result)
            return result

        if result.outcome == ExecutionOutcome.CONCURRENT_MODIFICATION:
            self.store.record_outcome(current.change_id, result.outcome, result.message)
        else:
            new_status = ChangeStatus.EXECUTED if result.success else ChangeStatus.FAILED
            self.store.update_status(
                current.change_id, new_status,
                outcome=result.outcome,
                message=result.message,
                executed_at=datetime.now().isoformat(),
            )
        self._log_result(current, result)
        return result

    def _log_result(self, change: Change, result: ExecutionResult):
        if result.partial:
            logger.error(f"    -> PARTIAL REPLACE on ad {change.ad_id}: {result.message}")
        elif result.success:
            logger.info(f"    -> {result.outcome.value}: {result.message}")
        else:
            logger.warning(f"    -> {result.outcome.value}: {result.message}")

    # ══════════════════════════════════════════════════════════════════════════
    # SWEEP
    # ══════════════════════════════════════════════════════════════════════════

    def run_sweep(self, deadline_seconds: float = None) -> ExecutionSummary:
        """
        Process every executable change in store order within a wall-clock
        budget. The store is checkpointed after each change, so a sweep cut
        short resumes where it left off.
        """
        budget = deadline_seconds if deadline_seconds is not None else self.config.execution_budget_seconds
        started = self.clock()
        summary = ExecutionSummary(dry_run=not self.persist)

        queue = self.store.executable()
        logger.info("=" * 60)
        logger.info(f"EXECUTION SWEEP: {len(queue)} executable changes (budget {budget}s)")
        logger.info("=" * 60)

        for i, change in enumerate(queue):
            if self.clock() - started >= budget:
                summary.timed_out = True
                summary.remaining = len(queue) - i
                logger.warning(f"Budget of {budget}s spent; {summary.remaining} changes left for next sweep")
                break

            result = self.execute_and_record(change)
            stored = self.store.get(change.change_id)
            summary.add(change, result, stored.status if stored else change.status)
            self.checkpoint()

        summary.finished_at = datetime.now().isoformat()
        logger.info(f"Sweep done: {summary.executed} executed, {summary.failed} failed, "
                    f"{summary.deferred} deferred, {len(summary.partials)} partial, "
                    f"{summary.remaining} remaining")
        return summary

    def checkpoint(self):
        if not self.persist:
            return
        self.store.save()
        self.registry.save()

    # ══════════════════════════════════════════════════════════════════════════
    # ACTIONS
    # ══════════════════════════════════════════════════════════════════════════

    def _read(self, change: Change) -> AdAssetCollection:
        collection = self.platform.get_ad_asset_collection(change.campaign_id, change.ad_group_id)
        if str(collection.ad_id) != str(change.ad_id):
            raise PlatformError(f"Ad group {change.ad_group_id} now holds ad {collection.ad_id}, "
                                f"not {change.ad_id}")
        return collection

    def _write(self, change: Change, base: List[str], new_list: List[str]):
        """Whole-list write for one asset type, computed from `base`."""
        if self.config.verify_before_write:
            latest = self._read(change).assets(change.asset_type)
            if latest != base:
                raise _ConcurrentModification(
                    f"{change.asset_type.value} list on ad {change.ad_id} changed since it was "
                    f"read ({len(base)} -> {len(latest)} entries); retrying next sweep"
                )
        return self.platform.mutate_ad_assets(change.ad_id, change.asset_type, new_list)

    def _target_reference(self, change: Change) -> str:
        record = self.registry.get(change.current_asset_id)
        return record.reference if record else change.current_asset_id

    def _resolve_source(self, change: Change):
        """
        Collection reference for the incoming asset, creating it first for
        EXTERNAL sources. Returns (reference, asset_id, error_result).
        """
        source = change.new_asset_source

        if source.kind == SourceKind.REGISTRY_REUSE:
            record = self.registry.get(source.id)
            if record is None:
                return None, None, ExecutionResult.fail(
                    ExecutionOutcome.ASSET_NOT_FOUND, f"Registry has no asset {source.id}")
            return record.reference, record.asset_id, None

        if source.kind == SourceKind.PLATFORM_NATIVE:
            reference = source.text if change.asset_type in TEXT_ASSET_TYPES and source.text else source.id
            return reference, source.id, None

        # EXTERNAL: reuse an earlier creation from the same source
        existing = self.registry.find_by_source(source.id)
        if existing is not None and existing.asset_type == change.asset_type:
            logger.info(f"    Reusing {existing.asset_id} already created from {source.describe()}")
            return existing.reference, existing.asset_id, None

        payload = {"name": f"{change.asset_type.value.lower()}-{source.id}"[:120]}
        if change.asset_type == AssetType.VIDEO:
            payload["youtube_video_id"] = source.id
        elif change.asset_type == AssetType.IMAGE:
            payload["image_url"] = source.id
        else:
            payload["text"] = source.text or source.id

        created = self.platform.create_asset(change.asset_type, payload)
        if not created.success:
            return None, None, ExecutionResult.fail(
                ExecutionOutcome.PLATFORM_REJECTED,
                f"Asset creation from {source.describe()} rejected: {'; '.join(created.errors)}")

        source_type = source.source_type or (
            SourceType.EXTERNAL_VIDEO if change.asset_type == AssetType.VIDEO else SourceType.EXTERNAL_IMAGE
        )
        record = self.registry.register_created(
            created.resource_name, change.asset_type, source_type,
            source_id=source.id, concept_id=source.concept_id,
            text=payload.get("text", ""), linked=False,
        )
        return record.reference, record.asset_id, None

    def _execute_add(self, change: Change) -> ExecutionResult:
        reference, asset_id, error = self._resolve_source(change)
        if error:
            return error

        collection = self._read(change)
        current = collection.assets(change.asset_type)
        if reference in current:
            record = self.registry.get(asset_id)
            self.registry.mark_active(asset_id, reactivated=bool(record) and record.status == AssetStatus.PAUSED)
            return ExecutionResult.ok(f"{asset_id} already linked to ad {change.ad_id}")

        limit = self.config.max_for(change.asset_type)
        if len(current) >= limit:
            return ExecutionResult.fail(
                ExecutionOutcome.LIMIT_EXCEEDED,
                f"Ad {change.ad_id} already has {len(current)} {change.asset_type.value} assets (max {limit})")

        mutation = self._write(change, current, current + [reference])
        if not mutation.success:
            return ExecutionResult.fail(ExecutionOutcome.PLATFORM_REJECTED,
                                        f"Link rejected: {'; '.join(mutation.errors)}")

        record = self.registry.get(asset_id)
        if record is None:
            self.registry.register_created(
                asset_id, change.asset_type, SourceType.PLATFORM_NATIVE,
                source_id=change.new_asset_source.id,
                concept_id=change.new_asset_source.concept_id,
                text=change.new_asset_source.text,
            )
        else:
            self.registry.mark_active(asset_id, reactivated=record.status == AssetStatus.PAUSED)
        return ExecutionResult.ok(f"Linked {asset_id} to ad {change.ad_id} "
                                  f"({len(current) + 1} {change.asset_type.value})",
                                  resource_name=asset_id)

    def _execute_remove(self, change: Change, pause_missing: bool = True) -> ExecutionResult:
        target = self._target_reference(change)
        collection = self._read(change)
        current = collection.assets(change.asset_type)
        if target not in current:
            if pause_missing:
                self.registry.mark_paused(change.current_asset_id,
                                          f"Not linked at execution ({change.change_id})")
            return ExecutionResult.resolved(f"{change.current_asset_id} no longer on ad {change.ad_id}")

        minimum = self.config.min_for(change.asset_type)
        if len(current) - 1 < minimum:
            return ExecutionResult.fail(
                ExecutionOutcome.LIMIT_EXCEEDED,
                f"Removing {change.current_asset_id} would leave ad {change.ad_id} with "
                f"{len(current) - 1} {change.asset_type.value} assets (min {minimum})")

        mutation = self._write(change, current, [ref for ref in current if ref != target])
        if not mutation.success:
            return ExecutionResult.fail(ExecutionOutcome.PLATFORM_REJECTED,
                                        f"Removal rejected: {'; '.join(mutation.errors)}")

        self.registry.mark_paused(change.current_asset_id, f"{change.action.value} {change.change_id}: "
                                                           f"{change.reason}"[:250])
        return ExecutionResult.ok(f"Removed {change.current_asset_id} from ad {change.ad_id}")

    def _execute_replace(self, change: Change) -> ExecutionResult:
        """ADD, then REMOVE against a fresh read. REMOVE bundled with a replacement runs here too."""
        target = self._target_reference(change)
        if target not in self._read(change).assets(change.asset_type):
            self.registry.mark_paused(change.current_asset_id, f"Not linked at execution ({change.change_id})")
            return ExecutionResult.resolved(f"{change.current_asset_id} no longer on ad {change.ad_id}; "
                                            f"replacement not linked")

        added = self._execute_add(change)
        if not added.success:
            return added

        try:
            removed = self._execute_remove(change, pause_missing=False)
        except (_ConcurrentModification, PlatformError) as e:
            removed = ExecutionResult.fail(ExecutionOutcome.PLATFORM_REJECTED, str(e))

        if removed.success and removed.outcome == ExecutionOutcome.SUCCESS:
            return ExecutionResult.ok(f"Replaced {change.current_asset_id} with "
                                      f"{change.new_asset_source.describe()} on ad {change.ad_id}",
                                      resource_name=added.resource_name)

        return ExecutionResult(
            success=False,
            outcome=ExecutionOutcome.PARTIAL_REPLACE,
            message=f"Added {change.new_asset_source.describe()} but could not remove "
                    f"{change.current_asset_id}: {removed.outcome.value}: {removed.message}",
            partial=True,
            resource_name=added.resource_name,
        )

    def _execute_reactivate(self, change: Change) -> ExecutionResult:
        record = self.registry.get(change.new_asset_source.id)
        if record is None or record.status != AssetStatus.PAUSED:
            return ExecutionResult.resolved(
                f"{change.new_asset_source.id} is not a paused registry asset; nothing to reactivate")
        return self._execute_add(change)
