"""
================================================================================
 APP ASSET ROTATION - CONFIGURATION
 ----------------------------------
 Immutable configuration value handed to the Decision Engine, the Change
 Executor and the runner at construction time.

 Loaded from a YAML file. Credentials may come from the environment:
   GOOGLE_ADS_CUSTOMER_ID, GOOGLE_ADS_LOGIN_CUSTOMER_ID, SLACK_WEBHOOK_URL
================================================================================
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Any, FrozenSet

import yaml

from asset_registry import AssetType, PerformanceLabel

logger = logging.getLogger("RotationConfig")

# ──────────────────────────────────────────────────────────────────────────────
# DEFAULTS
# ──────────────────────────────────────────────────────────────────────────────

# App ad limits per asset field (min, max)
DEFAULT_PER_TYPE_MIN_MAX = {
    AssetType.HEADLINE: (1, 5),
    AssetType.DESCRIPTION: (1, 5),
    AssetType.IMAGE: (1, 20),
    AssetType.VIDEO: (1, 20),
}

DEFAULT_UNTOUCHABLE_LABELS = frozenset({
    PerformanceLabel.PENDING, PerformanceLabel.LEARNING, PerformanceLabel.BEST,
})
DEFAULT_AUTO_REMOVE_LABELS = frozenset({PerformanceLabel.LOW})
DEFAULT_MANUAL_APPROVAL_LABELS = frozenset({PerformanceLabel.GOOD})

DEFAULT_MIN_IMPRESSIONS = 1000
DEFAULT_WINDOW_DAYS = 30
DEFAULT_EXECUTION_BUDGET_SECONDS = 300


class ConfigurationError(Exception):
    """Missing or invalid configuration. Aborts the run before any work."""
    pass


@dataclass(frozen=True)
class CampaignConfig:
    """One App campaign under management."""
    campaign_id: str
    name: str = ""
    ad_group_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RotationConfig:
    """Options recognised by the decision and execution stages."""
    # Decision thresholds
    min_impressions_for_action: int = DEFAULT_MIN_IMPRESSIONS
    performance_window_days: int = DEFAULT_WINDOW_DAYS
    per_type_min_max: Dict[AssetType, Tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_PER_TYPE_MIN_MAX)
    )
    untouchable_labels: FrozenSet[PerformanceLabel] = DEFAULT_UNTOUCHABLE_LABELS
    auto_remove_labels: FrozenSet[PerformanceLabel] = DEFAULT_AUTO_REMOVE_LABELS
    manual_approval_labels: FrozenSet[PerformanceLabel] = DEFAULT_MANUAL_APPROVAL_LABELS
    auto_add_replacement: bool = False
    fill_free_slots: bool = False
    verify_before_write: bool = True
    protected_concepts: FrozenSet[str] = frozenset()
    # Accounts
    campaigns: Tuple[CampaignConfig, ...] = ()
    customer_id: str = ""
    login_customer_id: str = ""
    dry_run: bool = True
    # Runs
    execution_budget_seconds: int = DEFAULT_EXECUTION_BUDGET_SECONDS
    registry_path: str = "asset_registry.csv"
    requests_path: str = "change_requests.csv"
    state_path: str = "asset_rotation_state.json"
    slack_webhook_url: Optional[str] = None

    def __post_init__(self):
        if not self.dry_run and not self.customer_id:
            raise ConfigurationError("customer_id is required for live runs")

    def min_for(self, asset_type: AssetType) -> int:
        return self.per_type_min_max[asset_type][0]

    def max_for(self, asset_type: AssetType) -> int:
        return self.per_type_min_max[asset_type][1]

    def require_campaigns(self):
        """Fatal check run before any analysis or execution."""
        if not self.campaigns:
            raise ConfigurationError("No campaigns configured. Nothing to analyze.")

    def require_account(self):
        """Fatal check run before connecting: every stage reads the account."""
        if not self.customer_id:
            raise ConfigurationError(
                "No customer_id configured. Set it in the config file or GOOGLE_ADS_CUSTOMER_ID."
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RotationConfig":
        """Build and validate a config from plain YAML/JSON data."""
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid configuration format: expected mapping, got {type(data).__name__}"
            )

        kwargs: Dict[str, Any] = {}
        for key in ("min_impressions_for_action", "performance_window_days",
                    "execution_budget_seconds"):
            if key in data:
                kwargs[key] = _positive_int(key, data[key])

        for key in ("auto_add_replacement", "fill_free_slots",
                    "verify_before_write", "dry_run"):
            if key in data:
                kwargs[key] = bool(data[key])

        for key in ("untouchable_labels", "auto_remove_labels", "manual_approval_labels"):
            if key in data:
                kwargs[key] = _label_set(key, data[key])

        for key in ("customer_id", "login_customer_id"):
            if data.get(key):
                kwargs[key] = str(data[key]).replace("-", "")

        for key in ("registry_path", "requests_path", "state_path", "slack_webhook_url"):
            if data.get(key):
                kwargs[key] = str(data[key])

        if "per_type_min_max" in data:
            kwargs["per_type_min_max"] = _limits(data["per_type_min_max"])

        if "protected_concepts" in data:
            kwargs["protected_concepts"] = frozenset(
                str(c) for c in (data["protected_concepts"] or [])
            )

        kwargs["campaigns"] = tuple(_campaign(c) for c in (data.get("campaigns") or []))

        config = cls(**kwargs)
        overlap = config.untouchable_labels & (
            config.auto_remove_labels | config.manual_approval_labels
        )
        if overlap:
            names = ", ".join(sorted(l.value for l in overlap))
            raise ConfigurationError(f"Labels cannot be both untouchable and actionable: {names}")
        return config


def _positive_int(key: str, value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"'{key}' must be an integer, got {value!r}")
    if number <= 0:
        raise ConfigurationError(f"'{key}' must be positive, got {number}")
    return number


def _label_set(key: str, values: Any) -> FrozenSet[PerformanceLabel]:
    if isinstance(values, str):
        values = [values]
    try:
        return frozenset(PerformanceLabel(str(v).upper()) for v in values or [])
    except ValueError as e:
        raise ConfigurationError(f"'{key}' contains an unknown performance label: {e}")


def _limits(raw: Any) -> Dict[AssetType, Tuple[int, int]]:
    if not isinstance(raw, dict):
        raise ConfigurationError("'per_type_min_max' must map asset types to {min, max}")
    limits = dict(DEFAULT_PER_TYPE_MIN_MAX)
    for type_name, bounds in raw.items():
        try:
            asset_type = AssetType(str(type_name).upper())
        except ValueError:
            raise ConfigurationError(f"Unknown asset type in per_type_min_max: {type_name}")
        if not isinstance(bounds, dict) or "min" not in bounds or "max" not in bounds:
            raise ConfigurationError(f"Limits for {asset_type.value} need both 'min' and 'max'")
        low, high = int(bounds["min"]), int(bounds["max"])
        if low < 0 or high < low:
            raise ConfigurationError(
                f"Invalid limits for {asset_type.value}: min={low}, max={high}"
            )
        limits[asset_type] = (low, high)
    return limits


def _campaign(raw: Any) -> CampaignConfig:
    if isinstance(raw, (str, int)):
        return CampaignConfig(campaign_id=str(raw))
    if not isinstance(raw, dict) or not raw.get("campaign_id"):
        raise ConfigurationError(f"Campaign entry needs a 'campaign_id': {raw!r}")
    return CampaignConfig(
        campaign_id=str(raw["campaign_id"]),
        name=str(raw.get("name", "")),
        ad_group_ids=tuple(str(a) for a in raw.get("ad_group_ids") or []),
    )


def load_config(path: str) -> RotationConfig:
    """
    Load configuration from a YAML file, then apply environment overrides
    for account ids and the Slack webhook.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML configuration: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Invalid configuration format: expected mapping, got {type(data).__name__}"
        )

    env_overrides = {
        "customer_id": os.environ.get("GOOGLE_ADS_CUSTOMER_ID"),
        "login_customer_id": os.environ.get("GOOGLE_ADS_LOGIN_CUSTOMER_ID"),
        "slack_webhook_url": os.environ.get("SLACK_WEBHOOK_URL"),
    }
    for key, value in env_overrides.items():
        if value and not data.get(key):
            data[key] = value

    config = RotationConfig.from_dict(data)
    logger.info(f"Configuration loaded from {path} ({len(config.campaigns)} campaigns)")
    return config
