"""
================================================================================
 APP ASSET ROTATION - GOOGLE ADS PLATFORM ADAPTER
 ------------------------------------------------
 The narrow slice of the Google Ads API the rotation engine consumes:

   1. query_asset_performance   (ad_group_ad_asset_view, per-asset labels)
   2. get_ad_asset_collection   (app_ad headlines/descriptions/images/videos)
   3. mutate_ad_assets          (whole-collection replace, one field mask)
   4. create_asset              (YouTube video, image, text)
   5. is_campaign_enabled

 Transient failures (quota, deadline, unavailable) are retried here with
 exponential backoff. Mutations are logged for audit and can run in dry-run
 mode, where nothing reaches the API.
================================================================================
"""

import os
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Any

import pandas as pd
import requests
from google.ads.googleads.errors import GoogleAdsException
from google.api_core import exceptions as google_exceptions
from google.protobuf import field_mask_pb2
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from asset_registry import AssetType, PerformanceLabel, TEXT_ASSET_TYPES

logger = logging.getLogger("AdsPlatform")

# ──────────────────────────────────────────────────────────────────────────────
# CONSTANTS
# ──────────────────────────────────────────────────────────────────────────────

# The only field each asset type may touch on an app ad
ASSET_FIELD_MASKS = {
    AssetType.HEADLINE: "app_ad.headlines",
    AssetType.DESCRIPTION: "app_ad.descriptions",
    AssetType.IMAGE: "app_ad.images",
    AssetType.VIDEO: "app_ad.youtube_videos",
}

# ad_group_ad_asset_view.field_type -> asset type
FIELD_TYPE_TO_ASSET_TYPE = {
    "HEADLINE": AssetType.HEADLINE,
    "DESCRIPTION": AssetType.DESCRIPTION,
    "MARKETING_IMAGE": AssetType.IMAGE,
    "YOUTUBE_VIDEO": AssetType.VIDEO,
}

DEFAULT_MAX_ATTEMPTS = 3
DRY_RUN_RESOURCE_PREFIX = "dry-run"

TRANSIENT_API_ERRORS = (
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
)

# Anything the API or transport can raise at a call site
API_ERRORS = (
    GoogleAdsException,
    google_exceptions.GoogleAPICallError,
    requests.exceptions.RequestException,
)


class PlatformError(Exception):
    """A platform call failed for good (non-transient, or retries exhausted)."""
    pass


@dataclass
class AssetPerformance:
    """One asset's metrics on one ad for the measurement window."""
    asset_id: str
    asset_type: AssetType
    performance_label: PerformanceLabel
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    cost_micros: int = 0
    campaign_id: str = ""
    ad_group_id: str = ""
    ad_id: str = ""
    text: str = ""


@dataclass
class AdAssetCollection:
    """Asset references currently linked to one app ad."""
    ad_id: str
    ad_group_id: str = ""
    headlines: List[str] = field(default_factory=list)
    descriptions: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    videos: List[str] = field(default_factory=list)

    _FIELDS = {
        AssetType.HEADLINE: "headlines",
        AssetType.DESCRIPTION: "descriptions",
        AssetType.IMAGE: "images",
        AssetType.VIDEO: "videos",
    }

    def assets(self, asset_type: AssetType) -> List[str]:
        return list(getattr(self, self._FIELDS[asset_type]))

    def with_assets(self, asset_type: AssetType, references: List[str]) -> "AdAssetCollection":
        return replace(self, **{self._FIELDS[asset_type]: list(references)})


@dataclass
class MutationResult:
    success: bool
    resource_name: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class PlatformAction(Enum):
    CREATE_ASSET = "create_asset"
    MUTATE_AD_ASSETS = "mutate_ad_assets"


@dataclass
class MutationRecord:
    """Record of a single mutation operation."""
    action: PlatformAction
    target: str
    params: Dict[str, Any]
    timestamp: str = ""
    status: str = "pending"      # pending, executed, failed, dry_run
    result: Optional[str] = None

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()


def is_transient(exc: BaseException) -> bool:
    """Quota/rate limiting and transport hiccups are worth another try."""
    if isinstance(exc, TRANSIENT_API_ERRORS):
        return True
    if isinstance(exc, GoogleAdsException):
        for error in getattr(exc.failure, "errors", []):
            try:
                kind = error.error_code._pb.WhichOneof("error_code")
            except Exception:
                continue
            if kind in ("quota_error", "internal_error"):
                return True
    return False


def describe_errors(exc: BaseException) -> List[str]:
    """Flatten the platform's structured failure into readable lines."""
    if isinstance(exc, GoogleAdsException):
        lines = []
        for error in getattr(exc.failure, "errors", []):
            try:
                code = error.error_code._pb.WhichOneof("error_code")
                value = getattr(error.error_code, code)
                name = getattr(value, "name", value)
                lines.append(f"{code}.{name}: {error.message}")
            except Exception:
                lines.append(str(getattr(error, "message", error)))
        if lines:
            return lines
    return [str(exc)]


# ══════════════════════════════════════════════════════════════════════════════
# GOOGLE ADS APP-ASSET CLIENT
# ══════════════════════════════════════════════════════════════════════════════

class GoogleAdsAssetPlatform:
    """
    Wraps the google-ads library for the reads and writes the rotation
    engine needs. All mutations go through here for logging and safety.
    """

    def __init__(self, customer_id: str, login_customer_id: str = None,
                 developer_token: str = None, dry_run: bool = True,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 backoff_multiplier: float = 1.0, client=None):
        self.customer_id = (customer_id or "").replace("-", "")
        self.login_customer_id = (login_customer_id or "").replace("-", "")
        self.developer_token = developer_token or os.environ.get("GOOGLE_ADS_DEVELOPER_TOKEN", "")
        self.dry_run = dry_run
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.client = client
        self.mutation_log: List[MutationRecord] = []
        self._connected = client is not None
        self._dry_run_counter = 0

    def connect(self) -> bool:
        """Connect to Google Ads API."""
        if self._connected:
            return True
        try:
            from google.ads.googleads.client import GoogleAdsClient

            config = {
                "developer_token": self.developer_token,
                "use_proto_plus": True,
            }
            for key, env in (("client_id", "GOOGLE_ADS_CLIENT_ID"),
                             ("client_secret", "GOOGLE_ADS_CLIENT_SECRET"),
                             ("refresh_token", "GOOGLE_ADS_REFRESH_TOKEN")):
                if os.environ.get(env):
                    config[key] = os.environ[env]
            if self.login_customer_id:
                config["login_customer_id"] = self.login_customer_id

            self.client = GoogleAdsClient.load_from_dict(config)
            self._connected = True
            logger.info(f"Connected to Google Ads API (customer: {self.customer_id})")
            return True
        except Exception as e:
            logger.error(f"Connection failed: {e}")
            return False

    def _require_client(self):
        if not self._connected and not self.connect():
            raise PlatformError("Google Ads API is not connected")

    def _call(self, description: str, fn, *args, **kwargs):
        """Run one API call, retrying transient failures with backoff."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=30),
            retry=retry_if_exception(is_transient),
            before_sleep=lambda state: logger.warning(
                f"  {description}: transient failure (attempt {state.attempt_number}/"
                f"{self.max_attempts}), backing off: {state.outcome.exception()}"
            ),
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)

    def _log_mutation(self, record: MutationRecord):
        """Log every mutation for audit trail."""
        self.mutation_log.append(record)
        mode = "DRY RUN" if self.dry_run else "LIVE"
        logger.info(f"  [{mode}] {record.action.value}: {record.target} -> {record.status}")

    # ── QUERIES ──────────────────────────────────────────────────────────────

    def _search(self, gaql: str) -> list:
        self._require_client()
        ga_service = self.client.get_service("GoogleAdsService")

        def run():
            stream = ga_service.search_stream(customer_id=self.customer_id, query=gaql.strip())
            return [row for batch in stream for row in batch.results]

        try:
            return self._call("search", run)
        except API_ERRORS as e:
            raise PlatformError(f"Query failed: {'; '.join(describe_errors(e))}") from e

    def query(self, gaql: str) -> pd.DataFrame:
        """Run a GAQL query and return parsed asset rows as a DataFrame."""
        rows = [self._parse_asset_row(row) for row in self._search(gaql)]
        rows = [r for r in rows if r]
        return pd.DataFrame(rows) if rows else pd.DataFrame()

    def _parse_asset_row(self, row) -> dict:
        """Row parser for ad_group_ad_asset_view results."""
        view = row.ad_group_ad_asset_view
        asset_type = FIELD_TYPE_TO_ASSET_TYPE.get(view.field_type.name)
        if asset_type is None:
            return {}
        text = ""
        if asset_type in TEXT_ASSET_TYPES:
            text = row.asset.text_asset.text
        return {
            "campaign_id": str(row.campaign.id),
            "ad_group_id": str(row.ad_group.id),
            "ad_id": str(row.ad_group_ad.ad.id),
            "asset_id": row.asset.resource_name,
            "asset_type": asset_type.value,
            "text": text,
            "performance_label": view.performance_label.name,
            "impressions": int(row.metrics.impressions),
            "clicks": int(row.metrics.clicks),
            "conversions": float(row.metrics.conversions),
            "cost_micros": int(row.metrics.cost_micros),
        }

    def query_asset_performance(self, campaign_id: str, window_days: int) -> List[AssetPerformance]:
        """
        Per-asset metrics summed over the window, one entry per
        (ad, asset) link. The label is the platform's current label.
        """
        date_from = (datetime.now() - timedelta(days=window_days)).strftime("%Y-%m-%d")
        date_to = datetime.now().strftime("%Y-%m-%d")

        gaql = f"""
            SELECT
                campaign.id, ad_group.id, ad_group_ad.ad.id,
                asset.resource_name, asset.text_asset.text,
                ad_group_ad_asset_view.field_type,
                ad_group_ad_asset_view.performance_label,
                metrics.impressions, metrics.clicks,
                metrics.conversions, metrics.cost_micros
            FROM ad_group_ad_asset_view
            WHERE campaign.id = {int(campaign_id)}
              AND ad_group_ad_asset_view.enabled = TRUE
              AND segments.date BETWEEN '{date_from}' AND '{date_to}'
        """
        df = self.query(gaql)
        if df.empty:
            logger.warning(f"No asset performance data for campaign {campaign_id}.")
            return []

        keys = ["campaign_id", "ad_group_id", "ad_id", "asset_id", "asset_type",
                "text", "performance_label"]
        agg = df.groupby(keys, as_index=False, sort=False).agg({
            "impressions": "sum",
            "clicks": "sum",
            "conversions": "sum",
            "cost_micros": "sum",
        })

        return [
            AssetPerformance(
                asset_id=r["asset_id"],
                asset_type=AssetType(r["asset_type"]),
                performance_label=PerformanceLabel.parse(r["performance_label"]),
                impressions=int(r["impressions"]),
                clicks=int(r["clicks"]),
                conversions=float(r["conversions"]),
                cost_micros=int(r["cost_micros"]),
                campaign_id=r["campaign_id"],
                ad_group_id=r["ad_group_id"],
                ad_id=r["ad_id"],
                text=r["text"],
            )
            for r in agg.to_dict(orient="records")
        ]

    def get_ad_asset_collection(self, campaign_id: str, ad_group_id: str) -> AdAssetCollection:
        """Fresh read of the app ad in an ad group."""
        gaql = f"""
            SELECT
                ad_group.id, ad_group_ad.ad.id,
                ad_group_ad.ad.app_ad.headlines,
                ad_group_ad.ad.app_ad.descriptions,
                ad_group_ad.ad.app_ad.images,
                ad_group_ad.ad.app_ad.youtube_videos
            FROM ad_group_ad
            WHERE campaign.id = {int(campaign_id)}
              AND ad_group.id = {int(ad_group_id)}
              AND ad_group_ad.status != 'REMOVED'
        """
        rows = self._search(gaql)
        if not rows:
            raise PlatformError(f"No app ad found in ad group {ad_group_id} (campaign {campaign_id})")

        ad = rows[0].ad_group_ad.ad
        return AdAssetCollection(
            ad_id=str(ad.id),
            ad_group_id=str(ad_group_id),
            headlines=[h.text for h in ad.app_ad.headlines],
            descriptions=[d.text for d in ad.app_ad.descriptions],
            images=[i.asset for i in ad.app_ad.images],
            videos=[v.asset for v in ad.app_ad.youtube_videos],
        )

    def is_campaign_enabled(self, campaign_id: str) -> bool:
        rows = self._search(f"""
            SELECT campaign.id, campaign.status
            FROM campaign
            WHERE campaign.id = {int(campaign_id)}
        """)
        return bool(rows) and rows[0].campaign.status.name == "ENABLED"

    # ── MUTATIONS ────────────────────────────────────────────────────────────

    def _dry_run_resource(self) -> str:
        self._dry_run_counter += 1
        return f"customers/{self.customer_id}/assets/{DRY_RUN_RESOURCE_PREFIX}-{self._dry_run_counter}"

    def create_asset(self, asset_type: AssetType, payload: Dict[str, Any]) -> MutationResult:
        """
        Create an asset. Payload keys by type:
          VIDEO: youtube_video_id;  IMAGE: image_url or image_data;
          HEADLINE / DESCRIPTION: text.  Optional: name.
        """
        record = MutationRecord(
            action=PlatformAction.CREATE_ASSET,
            target=f"{asset_type.value} asset",
            params={k: v for k, v in payload.items() if k != "image_data"},
        )

        if self.dry_run:
            record.status = "dry_run"
            record.result = self._dry_run_resource()
            self._log_mutation(record)
            return MutationResult(success=True, resource_name=record.result)

        try:
            self._require_client()
            asset_service = self.client.get_service("AssetService")
            asset_op = self.client.get_type("AssetOperation")
            asset = asset_op.create
            if payload.get("name"):
                asset.name = payload["name"]

            if asset_type == AssetType.VIDEO:
                asset.type_ = self.client.enums.AssetTypeEnum.YOUTUBE_VIDEO
                asset.youtube_video_asset.youtube_video_id = payload["youtube_video_id"]
            elif asset_type == AssetType.IMAGE:
                data = payload.get("image_data")
                if data is None:
                    data = self._call("image download", self._download, payload["image_url"])
                asset.type_ = self.client.enums.AssetTypeEnum.IMAGE
                asset.image_asset.data = data
            else:
                asset.type_ = self.client.enums.AssetTypeEnum.TEXT
                asset.text_asset.text = payload["text"]

            response = self._call(
                "create asset", asset_service.mutate_assets,
                customer_id=self.customer_id, operations=[asset_op],
            )
            record.status = "executed"
            record.result = response.results[0].resource_name
            self._log_mutation(record)
            return MutationResult(success=True, resource_name=record.result)
        except (PlatformError, KeyError, *API_ERRORS) as e:
            errors = describe_errors(e)
            record.status = "failed"
            record.result = "; ".join(errors)
            self._log_mutation(record)
            return MutationResult(success=False, errors=errors)

    @staticmethod
    def _download(url: str) -> bytes:
        response = requests.get(url, timeout=30)
        response.raise_for_status()
        return response.content

    def mutate_ad_assets(self, ad_id: str, asset_type: AssetType,
                         full_new_collection: List[str]) -> MutationResult:
        """
        Overwrite one asset field of an app ad. The platform replaces the
        whole list, so the caller passes everything the ad should keep.
        Only that field is named in the update mask.
        """
        mask = ASSET_FIELD_MASKS[asset_type]
        record = MutationRecord(
            action=PlatformAction.MUTATE_AD_ASSETS,
            target=f"Ad {ad_id} [{mask}]",
            params={"ad_id": ad_id, "field": mask, "collection": list(full_new_collection)},
        )

        if self.dry_run:
            record.status = "dry_run"
            self._log_mutation(record)
            return MutationResult(success=True, resource_name=f"customers/{self.customer_id}/ads/{ad_id}")

        try:
            self._require_client()
            ad_service = self.client.get_service("AdService")
            ad_op = self.client.get_type("AdOperation")
            ad = ad_op.update
            ad.resource_name = ad_service.ad_path(self.customer_id, ad_id)

            for reference in full_new_collection:
                if asset_type == AssetType.HEADLINE:
                    item = self.client.get_type("AdTextAsset")
                    item.text = reference
                    ad.app_ad.headlines.append(item)
                elif asset_type == AssetType.DESCRIPTION:
                    item = self.client.get_type("AdTextAsset")
                    item.text = reference
                    ad.app_ad.descriptions.append(item)
                elif asset_type == AssetType.IMAGE:
                    item = self.client.get_type("AdImageAsset")
                    item.asset = reference
                    ad.app_ad.images.append(item)
                else:
                    item = self.client.get_type("AdVideoAsset")
                    item.asset = reference
                    ad.app_ad.youtube_videos.append(item)

            self.client.copy_from(ad_op.update_mask, field_mask_pb2.FieldMask(paths=[mask]))

            response = self._call(
                "mutate ad", ad_service.mutate_ads,
                customer_id=self.customer_id, operations=[ad_op],
            )
            record.status = "executed"
            record.result = response.results[0].resource_name
            self._log_mutation(record)
            return MutationResult(success=True, resource_name=record.result)
        except (PlatformError, *API_ERRORS) as e:
            errors = describe_errors(e)
            record.status = "failed"
            record.result = "; ".join(errors)
            self._log_mutation(record)
            return MutationResult(success=False, errors=errors)

    # ── EXPORT & AUDIT ───────────────────────────────────────────────────────

    def export_mutation_log(self, path: str = "mutation_log.json"):
        """Export all mutations to a JSON file for audit."""
        records = [{
            "action": r.action.value,
            "target": r.target,
            "params": r.params,
            "timestamp": r.timestamp,
            "status": r.status,
            "result": r.result,
        } for r in self.mutation_log]
        with open(path, "w") as f:
            json.dump({"mutations": records, "total": len(records),
                       "exported_at": datetime.now().isoformat()}, f, indent=2)
        logger.info(f"Exported {len(records)} mutation records to {path}")
