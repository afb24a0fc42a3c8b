"""
================================================================================
 APP ASSET ROTATION - CHANGE REQUEST STORE
 -----------------------------------------
 Durable queue of proposed asset changes and their approval / execution
 status. Every proposal the Decision Engine makes lands here, AUTO ones
 included, so the sheet doubles as the audit trail.

 Ownership:
   - Decision Engine   appends
   - Change Executor   transitions status (EXECUTED / FAILED)
   - human reviewer    PENDING -> APPROVED / REJECTED, plus a note
 Nothing else about a change may be edited once it is recorded.
================================================================================
"""

import json
import uuid
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import pandas as pd

from asset_registry import AssetType, SourceType
from row_store import RowStore

logger = logging.getLogger("ChangeRequests")


class ChangeAction(Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    REPLACE = "REPLACE"
    REACTIVATE = "REACTIVATE"


class ApprovalMode(Enum):
    AUTO = "AUTO"          # executed without a human
    PENDING = "PENDING"    # waits for an explicit approval


class ChangeStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({ChangeStatus.EXECUTED, ChangeStatus.REJECTED, ChangeStatus.FAILED})

ALLOWED_TRANSITIONS = {
    ChangeStatus.PENDING: {ChangeStatus.APPROVED, ChangeStatus.REJECTED,
                           ChangeStatus.EXECUTED, ChangeStatus.FAILED},
    ChangeStatus.APPROVED: {ChangeStatus.EXECUTED, ChangeStatus.FAILED},
    ChangeStatus.REJECTED: set(),
    ChangeStatus.EXECUTED: set(),
    ChangeStatus.FAILED: set(),
}


class SourceKind(Enum):
    """Where the asset being linked comes from."""
    PLATFORM_NATIVE = "PLATFORM_NATIVE"   # already an asset on the platform
    REGISTRY_REUSE = "REGISTRY_REUSE"     # paused registry asset
    EXTERNAL = "EXTERNAL"                 # must be created first (video id, image url)


class ExecutionOutcome(Enum):
    SUCCESS = "SUCCESS"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    ASSET_NOT_FOUND = "ASSET_NOT_FOUND"
    PLATFORM_REJECTED = "PLATFORM_REJECTED"
    PARTIAL_REPLACE = "PARTIAL_REPLACE"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    ALREADY_EXECUTED = "ALREADY_EXECUTED"
    NOT_EXECUTABLE = "NOT_EXECUTABLE"
    CAMPAIGN_NOT_ENABLED = "CAMPAIGN_NOT_ENABLED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class InvalidTransition(Exception):
    """A status change the lifecycle does not allow."""
    pass


@dataclass(frozen=True)
class NewAssetSource:
    """Tagged reference to the asset a change links in."""
    kind: SourceKind
    id: str
    source_type: Optional[SourceType] = None   # EXTERNAL_VIDEO / EXTERNAL_IMAGE for EXTERNAL
    text: str = ""
    concept_id: str = ""

    def describe(self) -> str:
        label = self.source_type.value if self.source_type else self.kind.value
        return f"{label}:{self.id}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "source_type": self.source_type.value if self.source_type else "",
            "text": self.text,
            "concept_id": self.concept_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "NewAssetSource":
        return cls(
            kind=SourceKind(data["kind"]),
            id=data["id"],
            source_type=SourceType(data["source_type"]) if data.get("source_type") else None,
            text=data.get("text", ""),
            concept_id=data.get("concept_id", ""),
        )


def _new_change_id() -> str:
    return f"chg-{uuid.uuid4().hex[:12]}"


@dataclass
class Change:
    """A proposed or executed modification to one ad's asset collection."""
    campaign_id: str
    ad_group_id: str
    ad_id: str
    asset_type: AssetType
    action: ChangeAction
    approval_mode: ApprovalMode
    reason: str
    current_asset_id: Optional[str] = None
    new_asset_source: Optional[NewAssetSource] = None
    snapshot_of_current_assets: List[str] = field(default_factory=list)
    status: ChangeStatus = ChangeStatus.PENDING
    change_id: str = field(default_factory=_new_change_id)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    executed_at: str = ""
    outcome: Optional[ExecutionOutcome] = None
    result_message: str = ""
    reviewer_note: str = ""

    def __post_init__(self):
        if not (self.reason or "").strip():
            raise ValueError("A change needs a non-empty reason; it is the audit trail")
        if self.action in (ChangeAction.REMOVE, ChangeAction.REPLACE) and not self.current_asset_id:
            raise ValueError(f"{self.action.value} needs the asset it removes")
        if self.action in (ChangeAction.ADD, ChangeAction.REPLACE,
                           ChangeAction.REACTIVATE) and self.new_asset_source is None:
            raise ValueError(f"{self.action.value} needs a new asset source")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_replacement(self) -> bool:
        """REPLACE, or a REMOVE carrying an auto-picked replacement."""
        return self.new_asset_source is not None and self.action in (
            ChangeAction.REPLACE, ChangeAction.REMOVE
        )

    def to_row(self) -> Dict[str, object]:
        return {
            "change_id": self.change_id,
            "campaign_id": self.campaign_id,
            "ad_group_id": self.ad_group_id,
            "ad_id": self.ad_id,
            "asset_type": self.asset_type.value,
            "action": self.action.value,
            "current_asset_id": self.current_asset_id or "",
            "new_asset_source": json.dumps(self.new_asset_source.to_dict()) if self.new_asset_source else "",
            "approval_mode": self.approval_mode.value,
            "status": self.status.value,
            "reason": self.reason,
            "snapshot_of_current_assets": json.dumps(self.snapshot_of_current_assets),
            "created_at": self.created_at,
            "executed_at": self.executed_at,
            "outcome": self.outcome.value if self.outcome else "",
            "result_message": self.result_message,
            "reviewer_note": self.reviewer_note,
        }

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "Change":
        source = row.get("new_asset_source")
        snapshot = row.get("snapshot_of_current_assets")
        return cls(
            change_id=row["change_id"],
            campaign_id=row["campaign_id"],
            ad_group_id=row.get("ad_group_id", ""),
            ad_id=row["ad_id"],
            asset_type=AssetType(row["asset_type"]),
            action=ChangeAction(row["action"]),
            current_asset_id=row.get("current_asset_id") or None,
            new_asset_source=NewAssetSource.from_dict(json.loads(source)) if source else None,
            approval_mode=ApprovalMode(row["approval_mode"]),
            status=ChangeStatus(row["status"]),
            reason=row["reason"],
            snapshot_of_current_assets=json.loads(snapshot) if snapshot else [],
            created_at=row.get("created_at", ""),
            executed_at=row.get("executed_at", ""),
            outcome=ExecutionOutcome(row["outcome"]) if row.get("outcome") else None,
            result_message=row.get("result_message", ""),
            reviewer_note=row.get("reviewer_note", ""),
        )


CHANGE_COLUMNS = [
    "change_id", "campaign_id", "ad_group_id", "ad_id", "asset_type", "action",
    "current_asset_id", "new_asset_source", "approval_mode", "status", "reason",
    "snapshot_of_current_assets", "created_at", "executed_at", "outcome",
    "result_message", "reviewer_note",
]

# Columns a reviewer may change on the review sheet
REVIEWER_WRITABLE = ("status", "reviewer_note")


class ChangeRequestStore:
    """Queue of Change rows with lifecycle-checked status updates."""

    def __init__(self, store: RowStore):
        self.store = store

    @classmethod
    def open(cls, path: str = None) -> "ChangeRequestStore":
        return cls(RowStore(CHANGE_COLUMNS, key="change_id", path=path))

    def __len__(self) -> int:
        return len(self.store)

    def __contains__(self, change_id: str) -> bool:
        return change_id in self.store

    def append(self, change: Change) -> Change:
        if change.change_id in self.store:
            raise ValueError(f"Change {change.change_id} is already recorded")
        self.store.put(change.to_row())
        logger.info(f"  Recorded {change.action.value} [{change.approval_mode.value}] "
                    f"{change.change_id} on ad {change.ad_id}")
        return change

    def get(self, change_id: str) -> Optional[Change]:
        row = self.store.get(change_id)
        return Change.from_row(row) if row else None

    def query(self, status: ChangeStatus = None, approval_mode: ApprovalMode = None,
              campaign_id: str = None) -> List[Change]:
        filters = {}
        if status is not None:
            filters["status"] = status.value
        if approval_mode is not None:
            filters["approval_mode"] = approval_mode.value
        if campaign_id is not None:
            filters["campaign_id"] = campaign_id
        return [Change.from_row(r) for r in self.store.query(**filters)]

    def query_by_status(self, status: ChangeStatus) -> List[Change]:
        return self.query(status=status)

    def executable(self) -> List[Change]:
        """AUTO changes not yet run and APPROVED changes, in store order."""
        changes = []
        for row in self.store.all():
            change = Change.from_row(row)
            if change.status == ChangeStatus.APPROVED:
                changes.append(change)
            elif (change.status == ChangeStatus.PENDING and
                  change.approval_mode == ApprovalMode.AUTO):
                changes.append(change)
        return changes

    def update_status(self, change_id: str, new_status: ChangeStatus,
                      outcome: ExecutionOutcome = None, message: str = None,
                      executed_at: str = None) -> Change:
        change = self.get(change_id)
        if change is None:
            raise KeyError(f"Unknown change {change_id}")
        if new_status not in ALLOWED_TRANSITIONS[change.status]:
            raise InvalidTransition(
                f"{change_id}: {change.status.value} -> {new_status.value} is not allowed"
            )
        updated = replace(
            change,
            status=new_status,
            outcome=outcome if outcome is not None else change.outcome,
            result_message=message if message is not None else change.result_message,
            executed_at=executed_at if executed_at is not None else change.executed_at,
        )
        self.store.put(updated.to_row())
        return updated

    def record_outcome(self, change_id: str, outcome: ExecutionOutcome, message: str) -> Change:
        """Note an attempt that leaves the status where it was."""
        change = self.get(change_id)
        if change is None:
            raise KeyError(f"Unknown change {change_id}")
        updated = replace(change, outcome=outcome, result_message=message)
        self.store.put(updated.to_row())
        return updated

    # ── APPROVAL CHANNEL ─────────────────────────────────────────────────────

    def _review(self, change_id: str, decision: ChangeStatus, note: str) -> Change:
        change = self.get(change_id)
        if change is None:
            raise KeyError(f"Unknown change {change_id}")
        if change.status != ChangeStatus.PENDING:
            raise InvalidTransition(
                f"{change_id} is {change.status.value}; only PENDING changes can be reviewed"
            )
        updated = replace(change, status=decision,
                          reviewer_note=note if note else change.reviewer_note)
        self.store.put(updated.to_row())
        logger.info(f"  {change_id} {decision.value}" + (f" ({note})" if note else ""))
        return updated

    def approve(self, change_id: str, note: str = "") -> Change:
        return self._review(change_id, ChangeStatus.APPROVED, note)

    def reject(self, change_id: str, note: str = "") -> Change:
        return self._review(change_id, ChangeStatus.REJECTED, note)

    def export_review_sheet(self, path: str) -> int:
        """Write every change to a CSV a human can review and edit."""
        df = self.store.to_frame()
        df.to_csv(path, index=False)
        logger.info(f"Exported {len(df)} change requests to {path}")
        return len(df)

    def apply_reviews(self, path: str) -> Dict[str, int]:
        """
        Read a reviewed sheet back. Only status (PENDING -> APPROVED or
        REJECTED) and reviewer_note are taken; edits to any other column
        are ignored and logged.
        """
        counts = {"approved": 0, "rejected": 0, "notes": 0, "ignored": 0}
        sheet = pd.read_csv(path, dtype=str).fillna("")
        missing = {"change_id", "status"} - set(sheet.columns)
        if missing:
            raise ValueError(f"Review sheet {path} is missing columns: {', '.join(sorted(missing))}")

        for row in sheet.to_dict(orient="records"):
            change = self.get(row["change_id"])
            if change is None:
                logger.warning(f"  Review sheet names unknown change {row['change_id']}")
                counts["ignored"] += 1
                continue

            stored = change.to_row()
            edited = [
                col for col in CHANGE_COLUMNS
                if col in row and col not in REVIEWER_WRITABLE
                and str(row[col]) != str(stored[col])
            ]
            if edited:
                logger.warning(f"  {change.change_id}: ignoring edits to read-only columns "
                               f"{', '.join(edited)}")
                counts["ignored"] += 1

            note = row.get("reviewer_note", "")
            if note and note != change.reviewer_note:
                change = replace(change, reviewer_note=note)
                self.store.put(change.to_row())
                counts["notes"] += 1

            requested = row["status"].strip().upper()
            if requested == change.status.value:
                continue
            if requested == ChangeStatus.APPROVED.value and change.status == ChangeStatus.PENDING:
                self.approve(change.change_id)
                counts["approved"] += 1
            elif requested == ChangeStatus.REJECTED.value and change.status == ChangeStatus.PENDING:
                self.reject(change.change_id)
                counts["rejected"] += 1
            else:
                logger.warning(f"  {change.change_id}: status {change.status.value} -> "
                               f"{requested or '<blank>'} is not a reviewer decision; ignored")
                counts["ignored"] += 1

        logger.info(f"Applied reviews from {path}: {counts}")
        return counts

    def save(self):
        self.store.save()
