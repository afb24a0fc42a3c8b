"""
In-memory stand-ins for the Google Ads adapter and the Slack notifier.

FakePlatform exposes the same methods the engine and executor call on
GoogleAdsAssetPlatform and records every read and write.
"""

from copy import deepcopy
from typing import Callable, Dict, List, Optional

from ads_platform import AdAssetCollection, AssetPerformance, MutationResult, PlatformError
from asset_registry import AssetType, PerformanceLabel

CUSTOMER_ID = "1234567890"


def asset_name(asset_id) -> str:
    return f"customers/{CUSTOMER_ID}/assets/{asset_id}"


def perf(asset_id, label, impressions, asset_type=AssetType.IMAGE, campaign_id="111",
         ad_group_id="222", ad_id="333", text="") -> AssetPerformance:
    return AssetPerformance(
        asset_id=asset_id,
        asset_type=asset_type,
        performance_label=PerformanceLabel(label) if isinstance(label, str) else label,
        impressions=impressions,
        campaign_id=campaign_id,
        ad_group_id=ad_group_id,
        ad_id=ad_id,
        text=text,
    )


class FakePlatform:

    def __init__(self):
        self.customer_id = CUSTOMER_ID
        self.connected = True
        self.ads: Dict[str, dict] = {}               # ad_group_id -> {"campaign_id", "collection"}
        self.performance: Dict[str, List[AssetPerformance]] = {}
        self.disabled_campaigns = set()
        self.failing_campaigns = set()
        self.mutation_errors: List[List[str]] = []   # queued rejections for mutate_ad_assets
        self.create_errors: List[List[str]] = []
        self.on_read: Optional[Callable[["FakePlatform", str, int], None]] = None
        self.read_filter: Optional[Callable[[AdAssetCollection], AdAssetCollection]] = None
        self.reads = 0
        self.mutations = []
        self.created = []
        self.calls = []
        self.mutation_log = []

    # ── setup helpers ────────────────────────────────────────────────────────

    def add_ad(self, campaign_id="111", ad_group_id="222", ad_id="333",
               headlines=(), descriptions=(), images=(), videos=()):
        self.ads[ad_group_id] = {
            "campaign_id": campaign_id,
            "collection": AdAssetCollection(
                ad_id=ad_id, ad_group_id=ad_group_id,
                headlines=list(headlines), descriptions=list(descriptions),
                images=list(images), videos=list(videos),
            ),
        }

    def collection(self, ad_group_id="222") -> AdAssetCollection:
        return self.ads[ad_group_id]["collection"]

    def _find_ad(self, ad_id: str) -> dict:
        for entry in self.ads.values():
            if entry["collection"].ad_id == str(ad_id):
                return entry
        raise PlatformError(f"No ad {ad_id}")

    # ── platform interface ───────────────────────────────────────────────────

    def connect(self) -> bool:
        return self.connected

    def query_asset_performance(self, campaign_id, window_days):
        self.calls.append(("query_asset_performance", campaign_id, window_days))
        if campaign_id in self.failing_campaigns:
            raise PlatformError(f"Query failed for campaign {campaign_id}")
        return list(self.performance.get(campaign_id, []))

    def get_ad_asset_collection(self, campaign_id, ad_group_id):
        self.calls.append(("get_ad_asset_collection", campaign_id, ad_group_id))
        self.reads += 1
        if self.on_read is not None:
            self.on_read(self, ad_group_id, self.reads)
        entry = self.ads.get(ad_group_id)
        if entry is None or entry["campaign_id"] != campaign_id:
            raise PlatformError(f"No app ad found in ad group {ad_group_id}")
        collection = deepcopy(entry["collection"])
        if self.read_filter is not None:
            collection = self.read_filter(collection)
        return collection

    def mutate_ad_assets(self, ad_id, asset_type, full_new_collection):
        self.calls.append(("mutate_ad_assets", ad_id, asset_type))
        self.mutations.append((ad_id, asset_type, list(full_new_collection)))
        if self.mutation_errors:
            return MutationResult(success=False, errors=self.mutation_errors.pop(0))
        entry = self._find_ad(ad_id)
        entry["collection"] = entry["collection"].with_assets(asset_type, full_new_collection)
        return MutationResult(success=True, resource_name=f"customers/{CUSTOMER_ID}/ads/{ad_id}")

    def create_asset(self, asset_type, payload):
        self.calls.append(("create_asset", asset_type))
        if self.create_errors:
            return MutationResult(success=False, errors=self.create_errors.pop(0))
        self.created.append((asset_type, dict(payload)))
        return MutationResult(success=True, resource_name=asset_name(9000 + len(self.created)))

    def is_campaign_enabled(self, campaign_id):
        self.calls.append(("is_campaign_enabled", campaign_id))
        return campaign_id not in self.disabled_campaigns

    # ── assertions ───────────────────────────────────────────────────────────

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)


class RecordingNotifier:

    def __init__(self):
        self.events = []

    def notify(self, event) -> bool:
        self.events.append(event)
        return True
