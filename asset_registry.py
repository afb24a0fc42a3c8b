"""
================================================================================
 APP ASSET ROTATION - ASSET REGISTRY
 -----------------------------------
 Durable record of every asset ever seen on a managed App campaign:
 best-ever and current performance label, live status, provenance and
 lifetime counters.

 The registry is the only writer of asset records. Callers get copies and
 ask for changes through the operations below:
   - record_performance   (sync from the performance query)
   - register_created     (asset created by the Change Executor)
   - mark_active / mark_paused
   - replacement_candidates (ranked pool for the Decision Engine)

 Records are never deleted. Removed assets are paused in place.
================================================================================
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from row_store import RowStore

logger = logging.getLogger("AssetRegistry")


class AssetType(Enum):
    """App ad asset fields."""
    VIDEO = "VIDEO"
    IMAGE = "IMAGE"
    HEADLINE = "HEADLINE"
    DESCRIPTION = "DESCRIPTION"


TEXT_ASSET_TYPES = frozenset({AssetType.HEADLINE, AssetType.DESCRIPTION})


class SourceType(Enum):
    """Where an asset came from."""
    PLATFORM_NATIVE = "PLATFORM_NATIVE"
    EXTERNAL_VIDEO = "EXTERNAL_VIDEO"
    EXTERNAL_IMAGE = "EXTERNAL_IMAGE"
    REGISTRY_REUSE = "REGISTRY_REUSE"


class AssetStatus(Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class PerformanceLabel(Enum):
    """Platform performance tier for an asset within its ad."""
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"
    LEARNING = "LEARNING"
    LOW = "LOW"
    GOOD = "GOOD"
    BEST = "BEST"

    @property
    def rank(self) -> Optional[int]:
        """Position in UNKNOWN < LOW < GOOD < BEST. None for PENDING/LEARNING."""
        return PERFORMANCE_RANK.get(self)

    @classmethod
    def parse(cls, value: str) -> "PerformanceLabel":
        """Lenient parse: anything unrecognised is UNKNOWN."""
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


PERFORMANCE_RANK = {
    PerformanceLabel.UNKNOWN: 0,
    PerformanceLabel.LOW: 1,
    PerformanceLabel.GOOD: 2,
    PerformanceLabel.BEST: 3,
}


def best_of(current_best: PerformanceLabel, observed: PerformanceLabel) -> PerformanceLabel:
    """
    Fold one observation into a best-ever label. Unranked labels
    (PENDING, LEARNING) leave it untouched; it never moves down.
    """
    if observed.rank is None:
        return current_best
    if current_best.rank is None or observed.rank > current_best.rank:
        return observed
    return current_best


@dataclass
class AssetRecord:
    """One registry row."""
    asset_id: str
    asset_type: AssetType
    source_type: SourceType = SourceType.PLATFORM_NATIVE
    source_id: str = ""
    concept_id: str = ""
    text: str = ""
    status: AssetStatus = AssetStatus.ACTIVE
    pause_reason: str = ""
    best_performance: PerformanceLabel = PerformanceLabel.UNKNOWN
    current_performance: PerformanceLabel = PerformanceLabel.UNKNOWN
    times_activated: int = 0
    total_impressions: int = 0
    first_seen_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        now = datetime.now().isoformat()
        if not self.first_seen_at:
            self.first_seen_at = now
        if not self.updated_at:
            self.updated_at = now

    @property
    def reference(self) -> str:
        """Entry for this asset in an app ad collection."""
        if self.asset_type in TEXT_ASSET_TYPES and self.text:
            return self.text
        return self.asset_id

    def to_row(self) -> Dict[str, object]:
        return {
            "asset_id": self.asset_id,
            "asset_type": self.asset_type.value,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "concept_id": self.concept_id,
            "text": self.text,
            "status": self.status.value,
            "pause_reason": self.pause_reason,
            "best_performance": self.best_performance.value,
            "current_performance": self.current_performance.value,
            "times_activated": self.times_activated,
            "total_impressions": self.total_impressions,
            "first_seen_at": self.first_seen_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "AssetRecord":
        return cls(
            asset_id=row["asset_id"],
            asset_type=AssetType(row["asset_type"]),
            source_type=SourceType(row.get("source_type") or SourceType.PLATFORM_NATIVE.value),
            source_id=row.get("source_id", ""),
            concept_id=row.get("concept_id", ""),
            text=row.get("text", ""),
            status=AssetStatus(row.get("status") or AssetStatus.ACTIVE.value),
            pause_reason=row.get("pause_reason", ""),
            best_performance=PerformanceLabel.parse(row.get("best_performance", "")),
            current_performance=PerformanceLabel.parse(row.get("current_performance", "")),
            times_activated=int(row.get("times_activated") or 0),
            total_impressions=int(float(row.get("total_impressions") or 0)),
            first_seen_at=row.get("first_seen_at", ""),
            updated_at=row.get("updated_at", ""),
        )


REGISTRY_COLUMNS = list(AssetRecord("_", AssetType.IMAGE).to_row().keys())


class AssetRegistry:
    """
    Lifetime store of asset records behind get / put / query.

    protected_concepts: concept ids (or source ids) that must never be
    offered as replacement material. A custom lookup can be supplied for
    protection flags kept elsewhere.
    """

    def __init__(self, store: RowStore,
                 protected_concepts: Iterable[str] = (),
                 protected_lookup: Callable[[AssetRecord], bool] = None):
        self.store = store
        self.protected_concepts = frozenset(protected_concepts)
        self.protected_lookup = protected_lookup

    @classmethod
    def open(cls, path: str = None, protected_concepts: Iterable[str] = ()) -> "AssetRegistry":
        return cls(RowStore(REGISTRY_COLUMNS, key="asset_id", path=path),
                   protected_concepts=protected_concepts)

    # ── BASIC ACCESS ─────────────────────────────────────────────────────────

    def get(self, asset_id: str) -> Optional[AssetRecord]:
        row = self.store.get(asset_id)
        return AssetRecord.from_row(row) if row else None

    def put(self, record: AssetRecord):
        record = replace(record, updated_at=datetime.now().isoformat())
        self.store.put(record.to_row())

    def query_by_status(self, status: AssetStatus) -> List[AssetRecord]:
        return [AssetRecord.from_row(r) for r in self.store.query(status=status.value)]

    def query_by_type(self, asset_type: AssetType) -> List[AssetRecord]:
        return [AssetRecord.from_row(r) for r in self.store.query(asset_type=asset_type.value)]

    def all(self) -> List[AssetRecord]:
        return [AssetRecord.from_row(r) for r in self.store.all()]

    def find_by_reference(self, asset_type: AssetType, reference: str) -> Optional[AssetRecord]:
        """Resolve a collection entry (resource name or text) to its record."""
        record = self.get(reference)
        if record and record.asset_type == asset_type:
            return record
        if asset_type in TEXT_ASSET_TYPES:
            rows = self.store.query(asset_type=asset_type.value, text=reference)
            if rows:
                return AssetRecord.from_row(rows[0])
        return None

    def find_by_source(self, source_id: str) -> Optional[AssetRecord]:
        if not source_id:
            return None
        rows = self.store.query(source_id=source_id)
        return AssetRecord.from_row(rows[0]) if rows else None

    def save(self):
        self.store.save()

    # ── LIFECYCLE OPERATIONS ─────────────────────────────────────────────────

    def record_performance(self, perf) -> AssetRecord:
        """
        Fold one performance row into the registry. First sighting creates
        the record; later sightings update the current label, raise the
        best-ever label when earned and add to the impression total.
        """
        label = perf.performance_label
        impressions = max(0, int(perf.impressions or 0))
        record = self.get(perf.asset_id)

        if record is None:
            record = AssetRecord(
                asset_id=perf.asset_id,
                asset_type=perf.asset_type,
                text=getattr(perf, "text", "") or "",
                best_performance=best_of(PerformanceLabel.UNKNOWN, label),
                current_performance=label,
                times_activated=1,
                total_impressions=impressions,
            )
            logger.info(f"  New asset observed: {record.asset_id} ({record.asset_type.value}, {label.value})")
        else:
            reactivated = record.status == AssetStatus.PAUSED
            record = replace(
                record,
                current_performance=label,
                best_performance=best_of(record.best_performance, label),
                total_impressions=record.total_impressions + impressions,
                status=AssetStatus.ACTIVE,
                pause_reason="",
                times_activated=record.times_activated + (1 if reactivated else 0),
            )

        self.put(record)
        return record

    def register_created(self, asset_id: str, asset_type: AssetType,
                         source_type: SourceType, source_id: str = "",
                         concept_id: str = "", text: str = "",
                         linked: bool = True) -> AssetRecord:
        """
        Record an asset the executor created. An asset not yet linked to any
        ad starts PAUSED with no activations; linking it goes through
        mark_active(reactivated=True).
        """
        record = AssetRecord(
            asset_id=asset_id,
            asset_type=asset_type,
            source_type=source_type,
            source_id=source_id,
            concept_id=concept_id,
            text=text,
            status=AssetStatus.ACTIVE if linked else AssetStatus.PAUSED,
            pause_reason="" if linked else "Created, not linked",
            times_activated=1 if linked else 0,
        )
        self.put(record)
        logger.info(f"  Registered created asset {asset_id} ({source_type.value}: {source_id})")
        return record

    def mark_active(self, asset_id: str, reactivated: bool = False) -> Optional[AssetRecord]:
        record = self.get(asset_id)
        if record is None:
            return None
        record = replace(
            record,
            status=AssetStatus.ACTIVE,
            pause_reason="",
            times_activated=record.times_activated + (1 if reactivated else 0),
        )
        self.put(record)
        return record

    def mark_paused(self, asset_id: str, reason: str) -> Optional[AssetRecord]:
        record = self.get(asset_id)
        if record is None:
            return None
        record = replace(record, status=AssetStatus.PAUSED, pause_reason=reason)
        self.put(record)
        return record

    # ── REPLACEMENT POOL ─────────────────────────────────────────────────────

    def is_protected(self, record: AssetRecord) -> bool:
        if self.protected_lookup is not None and self.protected_lookup(record):
            return True
        return bool(
            (record.concept_id and record.concept_id in self.protected_concepts) or
            (record.source_id and record.source_id in self.protected_concepts)
        )

    def is_protected_material(self, asset_type: AssetType, source_id: str,
                              concept_id: str = "", text: str = "") -> bool:
        """Protection check for creative material that has no record yet."""
        return self.is_protected(AssetRecord(
            asset_id=source_id, asset_type=asset_type,
            source_id=source_id, concept_id=concept_id, text=text,
        ))

    def replacement_candidates(self, asset_type: AssetType,
                               min_label: PerformanceLabel = PerformanceLabel.GOOD,
                               exclude: Iterable[str] = ()) -> List[AssetRecord]:
        """
        Paused, unprotected records of this type whose best-ever label is at
        least min_label (and at least GOOD). BEST first, then fewest
        activations; asset id breaks remaining ties. `exclude` holds asset
        ids or collection references to leave out.
        """
        floor = max(min_label.rank or 0, PERFORMANCE_RANK[PerformanceLabel.GOOD])
        excluded = set(exclude)
        pool = []
        for record in self.query_by_type(asset_type):
            if record.status != AssetStatus.PAUSED:
                continue
            if (record.best_performance.rank or 0) < floor:
                continue
            if record.asset_id in excluded or record.reference in excluded:
                continue
            if self.is_protected(record):
                logger.debug(f"  Skipping protected candidate {record.asset_id}")
                continue
            pool.append(record)

        pool.sort(key=lambda r: (-(r.best_performance.rank or 0), r.times_activated, r.asset_id))
        return pool
