"""Tests for configuration loading and validation."""

import pytest

from asset_registry import AssetType, PerformanceLabel
from rotation_config import CampaignConfig, ConfigurationError, RotationConfig, load_config


CONFIG_YAML = """
customer_id: 123-456-7890
min_impressions_for_action: 2000
performance_window_days: 14
auto_add_replacement: true
auto_remove_labels: [low]
per_type_min_max:
  video: {min: 2, max: 10}
protected_concepts: [brand-launch]
campaigns:
  - campaign_id: 111
    name: Receipts US
    ad_group_ids: [222, 223]
  - 444
"""


class TestDefaults:

    def test_defaults(self):
        config = RotationConfig()
        assert config.min_impressions_for_action == 1000
        assert config.performance_window_days == 30
        assert config.untouchable_labels == {
            PerformanceLabel.PENDING, PerformanceLabel.LEARNING, PerformanceLabel.BEST,
        }
        assert config.auto_remove_labels == {PerformanceLabel.LOW}
        assert config.manual_approval_labels == {PerformanceLabel.GOOD}
        assert config.min_for(AssetType.IMAGE) == 1
        assert config.max_for(AssetType.HEADLINE) == 5
        assert config.dry_run
        assert config.verify_before_write
        assert not config.auto_add_replacement

    def test_no_campaigns_is_fatal(self):
        with pytest.raises(ConfigurationError):
            RotationConfig().require_campaigns()

    def test_live_run_needs_customer_id(self):
        with pytest.raises(ConfigurationError, match="customer_id"):
            RotationConfig(dry_run=False)

    def test_missing_customer_id_is_fatal_before_connecting(self):
        with pytest.raises(ConfigurationError, match="customer_id"):
            RotationConfig().require_account()
        RotationConfig(customer_id="1234567890").require_account()


class TestFromDict:

    def test_parses_campaigns(self):
        config = RotationConfig.from_dict({
            "campaigns": [{"campaign_id": 111, "ad_group_ids": [222]}, "444"],
        })
        assert config.campaigns == (
            CampaignConfig(campaign_id="111", ad_group_ids=("222",)),
            CampaignConfig(campaign_id="444"),
        )

    @pytest.mark.parametrize("data", [
        {"min_impressions_for_action": 0},
        {"performance_window_days": "soon"},
        {"auto_remove_labels": ["TERRIBLE"]},
        {"per_type_min_max": {"CAROUSEL": {"min": 1, "max": 2}}},
        {"per_type_min_max": {"IMAGE": {"min": 3, "max": 2}}},
        {"per_type_min_max": {"IMAGE": {"max": 2}}},
        {"campaigns": [{"name": "no id"}]},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigurationError):
            RotationConfig.from_dict(data)

    def test_label_cannot_be_untouchable_and_actionable(self):
        with pytest.raises(ConfigurationError, match="BEST"):
            RotationConfig.from_dict({"manual_approval_labels": ["GOOD", "BEST"]})

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            RotationConfig.from_dict(["campaign"])

    def test_campaigns_without_customer_id(self):
        config = RotationConfig.from_dict({"campaigns": ["1"]})
        assert config.customer_id == ""
        with pytest.raises(ConfigurationError):
            config.require_account()
        with pytest.raises(ConfigurationError, match="customer_id"):
            RotationConfig.from_dict({"campaigns": ["1"], "dry_run": False})

    def test_limit_override_keeps_other_types(self):
        config = RotationConfig.from_dict({"per_type_min_max": {"video": {"min": 2, "max": 10}}})
        assert config.per_type_min_max[AssetType.VIDEO] == (2, 10)
        assert config.per_type_min_max[AssetType.IMAGE] == (1, 20)


class TestLoadConfig:

    def test_load_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GOOGLE_ADS_CUSTOMER_ID", raising=False)
        path = tmp_path / "rotation.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(str(path))
        assert config.customer_id == "1234567890"
        assert config.min_impressions_for_action == 2000
        assert config.performance_window_days == 14
        assert config.auto_add_replacement
        assert config.min_for(AssetType.VIDEO) == 2
        assert config.protected_concepts == {"brand-launch"}
        assert [c.campaign_id for c in config.campaigns] == ["111", "444"]
        assert config.campaigns[0].ad_group_ids == ("222", "223")

    def test_environment_fills_missing_credentials(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_ADS_CUSTOMER_ID", "999-888-7777")
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.com/services/T/B/X")
        path = tmp_path / "rotation.yaml"
        path.write_text("campaigns: [111]\n")

        config = load_config(str(path))
        assert config.customer_id == "9998887777"
        assert config.slack_webhook_url == "https://hooks.slack.com/services/T/B/X"

    def test_file_value_wins_over_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_ADS_CUSTOMER_ID", "999-888-7777")
        path = tmp_path / "rotation.yaml"
        path.write_text(CONFIG_YAML)
        assert load_config(str(path)).customer_id == "1234567890"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("campaigns: [111\n")
        with pytest.raises(ConfigurationError):
            load_config(str(path))
