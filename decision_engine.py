"""
================================================================================
 APP ASSET ROTATION - DECISION ENGINE
 ------------------------------------
 For every asset live on a managed App campaign, decide whether it needs
 action and, when it does, produce a fully specified Change with evidence.

   classify         label + impressions -> SKIP / REMOVE (AUTO) / REPLACE (PENDING)
   find_replacement ranked pick from paused registry assets
   build_change     Change with snapshot and a self-sufficient reason
   analyze_campaign sync registry, read each ad once, classify every row
   propose_additions fill free slots (REACTIVATE, then ADD from new material)

 Labels map to actions through the configured label sets:
   untouchable (PENDING, LEARNING, BEST)  -> SKIP
   auto-remove (LOW)                      -> REMOVE/AUTO once impressions >= threshold
   manual-approval (GOOD)                 -> REPLACE/PENDING if a strictly better
                                             paused asset exists
================================================================================
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from ads_platform import AdAssetCollection, AssetPerformance
from asset_registry import (
    AssetRecord, AssetRegistry, AssetType, PerformanceLabel, PERFORMANCE_RANK, SourceType,
    TEXT_ASSET_TYPES,
)
from change_requests import (
    ApprovalMode, Change, ChangeAction, ChangeRequestStore, ChangeStatus,
    NewAssetSource, SourceKind,
)
from rotation_config import CampaignConfig, RotationConfig

logger = logging.getLogger("DecisionEngine")


class DecisionKind(Enum):
    SKIP = "SKIP"
    REMOVE = "REMOVE"
    REPLACE = "REPLACE"


@dataclass
class Decision:
    kind: DecisionKind
    approval_mode: Optional[ApprovalMode] = None
    candidate: Optional[AssetRecord] = None
    note: str = ""

    @classmethod
    def skip(cls, note: str) -> "Decision":
        return cls(DecisionKind.SKIP, note=note)


@dataclass
class DiscoveredAsset:
    """New creative material from a source connector, not yet on the platform."""
    asset_type: AssetType
    source_id: str                    # YouTube video id, image URL, or the text itself
    source_type: Optional[SourceType] = None
    text: str = ""
    concept_id: str = ""


@dataclass
class CampaignAnalysis:
    campaign_id: str
    evaluated: int = 0
    skipped: int = 0
    changes: List[Change] = field(default_factory=list)


@dataclass
class AnalysisSummary:
    """What one analysis run proposed and auto-executed."""
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: str = ""
    campaigns_analyzed: int = 0
    campaigns_failed: int = 0
    assets_evaluated: int = 0
    skipped: int = 0
    duplicates: int = 0
    auto_executed: int = 0
    auto_failed: int = 0
    auto_deferred: int = 0
    pending_approval: int = 0
    dry_run: bool = False
    changes: List[Change] = field(default_factory=list)
    partials: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def no_action_needed(self) -> bool:
        return not self.changes and not self.errors

    @property
    def query_failed(self) -> bool:
        return self.campaigns_analyzed == 0 and bool(self.errors)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "campaigns_analyzed": self.campaigns_analyzed,
            "campaigns_failed": self.campaigns_failed,
            "assets_evaluated": self.assets_evaluated,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "changes_proposed": len(self.changes),
            "auto_executed": self.auto_executed,
            "auto_failed": self.auto_failed,
            "auto_deferred": self.auto_deferred,
            "pending_approval": self.pending_approval,
            "dry_run": self.dry_run,
            "partials": list(self.partials),
            "errors": list(self.errors),
        }


def _label_above(label: PerformanceLabel) -> Optional[PerformanceLabel]:
    """Lowest ranked label strictly better than `label`."""
    rank = label.rank or 0
    better = [l for l, r in PERFORMANCE_RANK.items() if r > rank]
    return min(better, key=lambda l: l.rank) if better else None


# ══════════════════════════════════════════════════════════════════════════════
# DECISION ENGINE
# ══════════════════════════════════════════════════════════════════════════════

class DecisionEngine:
    """
    Reads performance, keeps the registry in sync and records proposals in
    the Change Request Store. AUTO changes go straight to the executor.
    """

    def __init__(self, platform, registry: AssetRegistry, store: ChangeRequestStore,
                 config: RotationConfig, executor=None):
        self.platform = platform
        self.registry = registry
        self.store = store
        self.config = config
        self.executor = executor

    # ── CLASSIFICATION ───────────────────────────────────────────────────────

    def classify(self, performance: AssetPerformance, exclude: Iterable[str] = (),
                 has_room: bool = True) -> Decision:
        """
        `has_room` is False when the ad is already at the maximum for this
        asset type; removals then carry no bundled replacement.
        """
        label = performance.performance_label
        impressions = performance.impressions

        if label in self.config.untouchable_labels:
            return Decision.skip(f"{label.value} is untouchable")

        if label in self.config.auto_remove_labels:
            threshold = self.config.min_impressions_for_action
            if impressions < threshold:
                return Decision.skip(f"{label.value} with {impressions:,} impressions "
                                     f"(< {threshold:,}): sample too small")
            candidate = None
            if self.config.auto_add_replacement and has_room:
                candidate = self.find_replacement(performance.asset_type, exclude=exclude)
            return Decision(DecisionKind.REMOVE, ApprovalMode.AUTO, candidate)

        if label in self.config.manual_approval_labels:
            candidate = self.find_replacement(performance.asset_type, replacing=label, exclude=exclude)
            if candidate is None:
                return Decision.skip(f"{label.value}: no paused asset strictly better than it")
            return Decision(DecisionKind.REPLACE, ApprovalMode.PENDING, candidate)

        logger.warning(f"  Anomaly: asset {performance.asset_id} has unhandled label "
                       f"{label.value}; skipping")
        return Decision.skip(f"unhandled label {label.value}")

    def find_replacement(self, asset_type: AssetType, replacing: PerformanceLabel = None,
                         exclude: Iterable[str] = ()) -> Optional[AssetRecord]:
        """
        Top-ranked paused candidate of this type, or None. When `replacing`
        is given the candidate's best-ever label must beat it.
        """
        min_label = PerformanceLabel.GOOD
        if replacing is not None:
            min_label = _label_above(replacing)
            if min_label is None:
                return None
        candidates = self.registry.replacement_candidates(asset_type, min_label, exclude)
        return candidates[0] if candidates else None

    # ── CHANGE CONSTRUCTION ──────────────────────────────────────────────────

    def build_change(self, performance: AssetPerformance, decision: Decision,
                     campaign: CampaignConfig, snapshot: AdAssetCollection) -> Change:
        if decision.kind == DecisionKind.REMOVE:
            action = ChangeAction.REMOVE
        elif decision.kind == DecisionKind.REPLACE:
            action = ChangeAction.REPLACE
        else:
            raise ValueError(f"No change to build for a {decision.kind.value} decision")

        label = performance.performance_label.value
        reason = (f"{label} label with {performance.impressions:,} impressions over "
                  f"{self.config.performance_window_days} days")
        if action == ChangeAction.REMOVE:
            reason += (f" (threshold {self.config.min_impressions_for_action:,}): "
                       f"auto-remove underperformer.")
        else:
            reason += f": a proven {decision.candidate.best_performance.value} asset is available."

        source = None
        if decision.candidate is not None:
            candidate = decision.candidate
            source = NewAssetSource(
                kind=SourceKind.REGISTRY_REUSE,
                id=candidate.asset_id,
                text=candidate.text,
                concept_id=candidate.concept_id,
            )
            provenance = candidate.source_type.value
            if candidate.source_id:
                provenance += f" {candidate.source_id}"
            reason += (f" Replacement: {candidate.asset_id} ({provenance}), best-ever "
                       f"{candidate.best_performance.value}, activated "
                       f"{candidate.times_activated}x.")

        return Change(
            campaign_id=campaign.campaign_id,
            ad_group_id=performance.ad_group_id or snapshot.ad_group_id,
            ad_id=performance.ad_id or snapshot.ad_id,
            asset_type=performance.asset_type,
            action=action,
            approval_mode=decision.approval_mode,
            reason=reason,
            current_asset_id=performance.asset_id,
            new_asset_source=source,
            snapshot_of_current_assets=snapshot.assets(performance.asset_type),
        )

    # ── CAMPAIGN ANALYSIS ────────────────────────────────────────────────────

    def analyze_campaign(self, campaign: CampaignConfig, claimed: Set[str] = None,
                         discovered: Iterable[DiscoveredAsset] = ()) -> CampaignAnalysis:
        """
        Sync the registry from this campaign's performance, then classify
        each asset against a single fresh read of its ad.
        """
        claimed = claimed if claimed is not None else set()
        analysis = CampaignAnalysis(campaign_id=campaign.campaign_id)

        rows = self.platform.query_asset_performance(
            campaign.campaign_id, self.config.performance_window_days
        )
        if campaign.ad_group_ids:
            rows = [r for r in rows if r.ad_group_id in campaign.ad_group_ids]
        logger.info(f"Campaign {campaign.name or campaign.campaign_id}: {len(rows)} asset rows")

        for row in rows:
            self.registry.record_performance(row)

        by_ad_group: Dict[str, List[AssetPerformance]] = OrderedDict()
        for row in rows:
            by_ad_group.setdefault(row.ad_group_id, []).append(row)
        for ad_group_id in campaign.ad_group_ids:
            by_ad_group.setdefault(ad_group_id, [])

        collections = []
        for ad_group_id, group_rows in by_ad_group.items():
            snapshot = self.platform.get_ad_asset_collection(campaign.campaign_id, ad_group_id)
            collections.append(snapshot)

            for row in group_rows:
                analysis.evaluated += 1
                current = snapshot.assets(row.asset_type)
                exclude = set(current) | claimed
                has_room = len(current) < self.config.max_for(row.asset_type)
                decision = self.classify(row, exclude=exclude, has_room=has_room)
                if decision.kind == DecisionKind.SKIP:
                    analysis.skipped += 1
                    logger.debug(f"  SKIP {row.asset_id}: {decision.note}")
                    continue
                change = self.build_change(row, decision, campaign, snapshot)
                if decision.candidate is not None:
                    claimed.add(decision.candidate.asset_id)
                analysis.changes.append(change)

        if self.config.fill_free_slots:
            analysis.changes.extend(
                self.propose_additions(campaign, collections, discovered, claimed)
            )
        return analysis

    def propose_additions(self, campaign: CampaignConfig, collections: List[AdAssetCollection],
                          discovered: Iterable[DiscoveredAsset] = (),
                          claimed: Set[str] = None) -> List[Change]:
        """
        Fill free slots (count < max) on each ad: paused GOOD/BEST registry
        assets first as REACTIVATE, then never-seen discovered material as
        ADD. Everything here waits for approval.
        """
        claimed = claimed if claimed is not None else set()
        discovered = list(discovered)
        changes = []

        for snapshot in collections:
            for asset_type in AssetType:
                current = snapshot.assets(asset_type)
                free = self.config.max_for(asset_type) - len(current)
                if free <= 0:
                    continue

                for candidate in self.registry.replacement_candidates(
                        asset_type, PerformanceLabel.GOOD, exclude=set(current) | claimed)[:free]:
                    provenance = candidate.source_type.value
                    if candidate.source_id:
                        provenance += f" {candidate.source_id}"
                    changes.append(Change(
                        campaign_id=campaign.campaign_id,
                        ad_group_id=snapshot.ad_group_id,
                        ad_id=snapshot.ad_id,
                        asset_type=asset_type,
                        action=ChangeAction.REACTIVATE,
                        approval_mode=ApprovalMode.PENDING,
                        reason=(f"Free {asset_type.value} slot ({len(current)}/"
                                f"{self.config.max_for(asset_type)}): reactivate paused "
                                f"{candidate.asset_id} ({provenance}), best-ever "
                                f"{candidate.best_performance.value}, activated "
                                f"{candidate.times_activated}x."),
                        new_asset_source=NewAssetSource(
                            kind=SourceKind.REGISTRY_REUSE, id=candidate.asset_id,
                            text=candidate.text, concept_id=candidate.concept_id,
                        ),
                        snapshot_of_current_assets=current,
                    ))
                    claimed.add(candidate.asset_id)
                    free -= 1

                for item in discovered:
                    if free <= 0:
                        break
                    if item.asset_type != asset_type or item.source_id in claimed:
                        continue
                    if self.registry.find_by_source(item.source_id) is not None:
                        continue
                    if self.registry.is_protected_material(asset_type, item.source_id,
                                                           item.concept_id, item.text):
                        continue
                    if asset_type in TEXT_ASSET_TYPES and (item.text or item.source_id) in current:
                        continue
                    source_type = item.source_type or (
                        SourceType.EXTERNAL_VIDEO if asset_type == AssetType.VIDEO
                        else SourceType.EXTERNAL_IMAGE if asset_type == AssetType.IMAGE
                        else None
                    )
                    label = source_type.value if source_type else "TEXT"
                    changes.append(Change(
                        campaign_id=campaign.campaign_id,
                        ad_group_id=snapshot.ad_group_id,
                        ad_id=snapshot.ad_id,
                        asset_type=asset_type,
                        action=ChangeAction.ADD,
                        approval_mode=ApprovalMode.PENDING,
                        reason=(f"Free {asset_type.value} slot ({len(current)}/"
                                f"{self.config.max_for(asset_type)}): add new {label} "
                                f"{item.source_id}"
                                + (f" (concept {item.concept_id})" if item.concept_id else "")
                                + ", no performance history yet."),
                        new_asset_source=NewAssetSource(
                            kind=SourceKind.EXTERNAL, id=item.source_id,
                            source_type=source_type, text=item.text,
                            concept_id=item.concept_id,
                        ),
                        snapshot_of_current_assets=current,
                    ))
                    claimed.add(item.source_id)
                    free -= 1

        if changes:
            logger.info(f"  {len(changes)} free-slot proposals for campaign {campaign.campaign_id}")
        return changes

    # ── RUN ──────────────────────────────────────────────────────────────────

    def _open_changes(self) -> List[Change]:
        return (self.store.query_by_status(ChangeStatus.PENDING) +
                self.store.query_by_status(ChangeStatus.APPROVED))

    @staticmethod
    def _change_key(change: Change) -> tuple:
        source = change.new_asset_source.id if change.new_asset_source else ""
        return (change.ad_id, change.asset_type, change.action,
                change.current_asset_id or "", source)

    def analyze_all_campaigns(self, discovered: Iterable[DiscoveredAsset] = ()) -> AnalysisSummary:
        """
        Analyze every configured campaign independently. A campaign that
        fails contributes nothing and lands in the error list.
        """
        self.config.require_campaigns()
        discovered = list(discovered)
        summary = AnalysisSummary(dry_run=self.config.dry_run)

        open_changes = self._open_changes()
        open_keys = {self._change_key(c) for c in open_changes}
        claimed = {c.new_asset_source.id for c in open_changes if c.new_asset_source}

        logger.info("=" * 60)
        logger.info(f"ASSET ANALYSIS: {len(self.config.campaigns)} campaigns")
        logger.info("=" * 60)

        for campaign in self.config.campaigns:
            try:
                analysis = self.analyze_campaign(campaign, claimed, discovered)
            except Exception as e:
                logger.error(f"Campaign {campaign.campaign_id} analysis failed: {e}")
                summary.campaigns_failed += 1
                summary.errors.append(f"Campaign {campaign.campaign_id}: {e}")
                continue

            summary.campaigns_analyzed += 1
            summary.assets_evaluated += analysis.evaluated
            summary.skipped += analysis.skipped

            for change in analysis.changes:
                key = self._change_key(change)
                if key in open_keys:
                    summary.duplicates += 1
                    logger.info(f"  Already proposed: {change.action.value} on ad {change.ad_id} "
                                f"({change.current_asset_id or change.new_asset_source.id})")
                    continue
                open_keys.add(key)
                self.store.append(change)
                self._dispatch(change, summary)

        summary.finished_at = datetime.now().isoformat()
        logger.info(f"Analysis done: {len(summary.changes)} changes "
                    f"({summary.auto_executed} auto-executed, {summary.pending_approval} pending, "
                    f"{summary.auto_failed} failed), {len(summary.errors)} errors")
        return summary

    def _dispatch(self, change: Change, summary: AnalysisSummary):
        if change.approval_mode != ApprovalMode.AUTO or self.executor is None:
            summary.pending_approval += 1
            summary.changes.append(change)
            return

        result = self.executor.execute_and_record(change)
        stored = self.store.get(change.change_id) or change
        summary.changes.append(stored)
        if stored.status == ChangeStatus.EXECUTED:
            summary.auto_executed += 1
        elif stored.status == ChangeStatus.FAILED:
            summary.auto_failed += 1
            summary.errors.append(f"{change.change_id} ({change.action.value} on ad {change.ad_id}): "
                                  f"{result.outcome.value}: {result.message}")
        else:
            summary.auto_deferred += 1
        if result.partial:
            summary.partials.append(change.change_id)
