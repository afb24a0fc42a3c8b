"""
================================================================================
 App Asset Rotation Runner
 ─────────────────────────
 Scheduled entry point for the asset rotation engine. Analysis and execution
 are separate invocations (e.g. daily analysis, hourly execution sweep).

 Usage:
   python run_asset_rotation.py analyze --config rotation.yaml [--discovered new_assets.csv]
   python run_asset_rotation.py execute --config rotation.yaml [--execute] [--budget 300]
   python run_asset_rotation.py export-review review.csv --config rotation.yaml
   python run_asset_rotation.py apply-review review.csv --config rotation.yaml
   python run_asset_rotation.py approve chg-1234abcd --note "ok" --config rotation.yaml
   python run_asset_rotation.py reject chg-1234abcd --config rotation.yaml
   python run_asset_rotation.py status --config rotation.yaml

 Without --execute nothing is sent to Google Ads and nothing is written to
 the registry or request sheets.
================================================================================
"""

import os
import sys
import json
import time
import logging
import argparse
from dataclasses import replace
from datetime import datetime
from typing import Dict, List

import pandas as pd

from ads_platform import GoogleAdsAssetPlatform
from asset_registry import AssetRegistry, AssetStatus, AssetType, SourceType
from change_executor import ChangeExecutor
from change_requests import ApprovalMode, ChangeRequestStore, ChangeStatus, InvalidTransition
from decision_engine import DecisionEngine, DiscoveredAsset
from notifier import RunError, SlackNotifier
from rotation_config import ConfigurationError, RotationConfig, load_config

logger = logging.getLogger("AssetRotation")

HISTORY_LIMIT = 100


def load_discovered(path: str) -> List[DiscoveredAsset]:
    """
    Discovered-asset feed: CSV with asset_type, source_id and optionally
    source_type, text, concept_id.
    """
    df = pd.read_csv(path, dtype=str).fillna("")
    missing = {"asset_type", "source_id"} - set(df.columns)
    if missing:
        raise ConfigurationError(f"Discovered feed {path} is missing columns: {', '.join(sorted(missing))}")

    assets = []
    for row in df.to_dict(orient="records"):
        try:
            asset_type = AssetType(row["asset_type"].strip().upper())
            source_type = SourceType(row["source_type"].strip().upper()) if row.get("source_type") else None
        except ValueError as e:
            logger.warning(f"Skipping discovered row {row.get('source_id')}: {e}")
            continue
        if not row["source_id"]:
            continue
        assets.append(DiscoveredAsset(
            asset_type=asset_type,
            source_id=row["source_id"].strip(),
            source_type=source_type,
            text=row.get("text", ""),
            concept_id=row.get("concept_id", ""),
        ))
    logger.info(f"Loaded {len(assets)} discovered assets from {path}")
    return assets


class AssetRotationRunner:
    """
    Wires platform, registry, request store, engine, executor and notifier
    together and keeps a run history in a JSON state file.
    """

    def __init__(self, config: RotationConfig, platform=None, notifier=None,
                 clock=time.monotonic):
        self.config = config
        self.platform = platform or GoogleAdsAssetPlatform(
            customer_id=config.customer_id,
            login_customer_id=config.login_customer_id,
            dry_run=config.dry_run,
        )
        self.notifier = notifier or SlackNotifier(config.slack_webhook_url)
        self.registry = AssetRegistry.open(config.registry_path, config.protected_concepts)
        self.store = ChangeRequestStore.open(config.requests_path)
        self.executor = ChangeExecutor(self.platform, self.registry, self.store, config,
                                       clock=clock, persist=not config.dry_run)
        self.engine = DecisionEngine(self.platform, self.registry, self.store, config,
                                     executor=self.executor)
        self.state_path = config.state_path
        self.state = self._load_state()

    def _load_state(self) -> Dict:
        if os.path.exists(self.state_path):
            with open(self.state_path) as f:
                return json.load(f)
        return {
            "analysis_runs": 0,
            "execution_runs": 0,
            "last_analysis": None,
            "last_execution": None,
            "history": [],
        }

    def _save_state(self):
        directory = os.path.dirname(self.state_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.state["history"] = self.state["history"][-HISTORY_LIMIT:]
        with open(self.state_path, "w") as f:
            json.dump(self.state, f, indent=2, default=str)

    def _record(self, kind: str, summary: Dict):
        self.state[f"{kind}_runs"] += 1
        self.state[f"last_{kind}"] = summary
        self.state["history"].append({"kind": kind, **summary})
        self._save_state()

    def _persist(self):
        if self.config.dry_run:
            logger.info("DRY RUN: registry and change requests not written")
            return
        self.registry.save()
        self.store.save()

    def _connect(self, stage: str) -> bool:
        if self.platform.connect():
            return True
        error = RunError(stage=stage, message="Could not connect to the Google Ads API")
        self.notifier.notify(error)
        self._record(stage, {"failed": True, "error": error.message, "at": error.occurred_at})
        return False

    # ── RUNS ─────────────────────────────────────────────────────────────────

    def run_analysis(self, discovered: List[DiscoveredAsset] = ()) -> Dict:
        start = datetime.now()
        logger.info("=" * 60)
        logger.info(f"ANALYSIS RUN #{self.state['analysis_runs'] + 1}"
                    f"{' [DRY RUN]' if self.config.dry_run else ''}")
        logger.info(f"Started: {start.isoformat()}")
        logger.info("=" * 60)

        self.config.require_campaigns()
        self.config.require_account()
        if not self._connect("analysis"):
            return {"failed": True}

        summary = self.engine.analyze_all_campaigns(discovered)
        self._persist()

        result = summary.to_dict()
        result["duration_seconds"] = (datetime.now() - start).total_seconds()
        self._record("analysis", result)
        self.notifier.notify(summary)
        return result

    def run_execution(self, budget_seconds: float = None) -> Dict:
        start = datetime.now()
        logger.info("=" * 60)
        logger.info(f"EXECUTION RUN #{self.state['execution_runs'] + 1}"
                    f"{' [DRY RUN]' if self.config.dry_run else ''}")
        logger.info(f"Started: {start.isoformat()}")
        logger.info("=" * 60)

        self.config.require_campaigns()
        self.config.require_account()
        if not self._connect("execution"):
            return {"failed": True}

        summary = self.executor.run_sweep(budget_seconds)
        self._persist()

        result = summary.to_dict()
        result["duration_seconds"] = (datetime.now() - start).total_seconds()
        self._record("execution", result)
        self.notifier.notify(summary)
        return result

    # ── REVIEW ───────────────────────────────────────────────────────────────

    def export_review(self, path: str) -> int:
        return self.store.export_review_sheet(path)

    def apply_review(self, path: str) -> Dict[str, int]:
        counts = self.store.apply_reviews(path)
        self.store.save()
        return counts

    def approve(self, change_id: str, note: str = ""):
        change = self.store.approve(change_id, note)
        self.store.save()
        return change

    def reject(self, change_id: str, note: str = ""):
        change = self.store.reject(change_id, note)
        self.store.save()
        return change

    def status(self) -> Dict:
        by_status = {s.value: len(self.store.query_by_status(s)) for s in ChangeStatus}
        return {
            "changes": by_status,
            "awaiting_approval": [
                {"change_id": c.change_id, "action": c.action.value, "ad_id": c.ad_id,
                 "asset_type": c.asset_type.value, "reason": c.reason}
                for c in self.store.query_by_status(ChangeStatus.PENDING)
                if c.approval_mode == ApprovalMode.PENDING
            ],
            "registry": {s.value: len(self.registry.query_by_status(s)) for s in AssetStatus},
            "analysis_runs": self.state["analysis_runs"],
            "execution_runs": self.state["execution_runs"],
            "last_analysis": (self.state["last_analysis"] or {}).get("finished_at"),
            "last_execution": (self.state["last_execution"] or {}).get("finished_at"),
        }


# ══════════════════════════════════════════════════════════════════════════════
# CLI RUNNER
# ══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="App campaign asset rotation")
    parser.add_argument("--config", default=os.environ.get("ASSET_ROTATION_CONFIG", "rotation.yaml"),
                        help="YAML configuration file")
    parser.add_argument("--execute", action="store_true",
                        help="Actually execute mutations (LIVE MODE)")
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Sync performance and propose changes")
    analyze.add_argument("--discovered", help="CSV feed of new creative material")

    execute = sub.add_parser("execute", help="Run AUTO and APPROVED changes")
    execute.add_argument("--budget", type=float, default=None,
                         help="Wall-clock budget in seconds (default from config)")

    export = sub.add_parser("export-review", help="Write the change requests to a review sheet")
    export.add_argument("path")

    apply_review = sub.add_parser("apply-review", help="Apply approvals from a review sheet")
    apply_review.add_argument("path")

    for name in ("approve", "reject"):
        cmd = sub.add_parser(name, help=f"{name.title()} a pending change")
        cmd.add_argument("change_id")
        cmd.add_argument("--note", default="")

    sub.add_parser("status", help="Show queue and registry counts")
    return parser


def main(argv: List[str] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s [%(name)s] %(message)s')

    try:
        config = load_config(args.config)
        if args.execute:
            config = replace(config, dry_run=False)
        runner = AssetRotationRunner(config)

        if args.command == "analyze":
            discovered = load_discovered(args.discovered) if args.discovered else []
            result = runner.run_analysis(discovered)
        elif args.command == "execute":
            result = runner.run_execution(args.budget)
        elif args.command == "export-review":
            result = {"exported": runner.export_review(args.path), "path": args.path}
        elif args.command == "apply-review":
            result = runner.apply_review(args.path)
        elif args.command == "approve":
            result = runner.approve(args.change_id, args.note).to_row()
        elif args.command == "reject":
            result = runner.reject(args.change_id, args.note).to_row()
        else:
            result = runner.status()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        SlackNotifier().notify(RunError(stage=args.command, message=f"Configuration error: {e}"))
        return 2
    except (KeyError, ValueError, InvalidTransition) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    if args.command in ("analyze", "execute") and runner.platform.mutation_log:
        runner.platform.export_mutation_log(
            f"mutation_log_{args.command}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        )

    print("\n" + "=" * 60)
    print(f"  {args.command.upper()} COMPLETE")
    print("=" * 60)
    print(json.dumps(result, indent=2, default=str))
    return 1 if isinstance(result, dict) and result.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
