"""Tests for the Google Ads adapter with a mocked client."""

import json
from types import SimpleNamespace as NS
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests
from google.api_core import exceptions as google_exceptions

from ads_platform import (
    ASSET_FIELD_MASKS, AdAssetCollection, GoogleAdsAssetPlatform, PlatformError, is_transient,
)
from asset_registry import AssetType, PerformanceLabel


def mock_client():
    client = MagicMock()
    client.get_type.side_effect = lambda name: MagicMock(name=name)
    return client


def live_platform(client, **kwargs):
    return GoogleAdsAssetPlatform("123-456-7890", dry_run=False, client=client,
                                  backoff_multiplier=0, **kwargs)


def asset_row(asset_id, field_type, label, impressions, ad_id=333, text="", clicks=1):
    return NS(
        campaign=NS(id=111),
        ad_group=NS(id=222),
        ad_group_ad=NS(ad=NS(id=ad_id)),
        asset=NS(resource_name=asset_id, text_asset=NS(text=text)),
        ad_group_ad_asset_view=NS(field_type=NS(name=field_type), performance_label=NS(name=label)),
        metrics=NS(impressions=impressions, clicks=clicks, conversions=0.5, cost_micros=1000),
    )


class TestFieldMasks:

    @pytest.mark.parametrize("asset_type, mask, field", [
        (AssetType.HEADLINE, "app_ad.headlines", "headlines"),
        (AssetType.DESCRIPTION, "app_ad.descriptions", "descriptions"),
        (AssetType.IMAGE, "app_ad.images", "images"),
        (AssetType.VIDEO, "app_ad.youtube_videos", "youtube_videos"),
    ])
    def test_each_write_names_exactly_one_field(self, asset_type, mask, field):
        client = mock_client()
        ad_service = client.get_service.return_value
        ad_service.mutate_ads.return_value = NS(results=[NS(resource_name="customers/1234567890/ads/333")])
        platform = live_platform(client)

        result = platform.mutate_ad_assets("333", asset_type, ["a", "b"])
        assert result.success
        assert ASSET_FIELD_MASKS[asset_type] == mask

        update_mask = client.copy_from.call_args[0][1]
        assert list(update_mask.paths) == [mask]

        ad_op = ad_service.mutate_ads.call_args.kwargs["operations"][0]
        assert ad_op.update.resource_name == ad_service.ad_path.return_value
        ad_service.ad_path.assert_called_with("1234567890", "333")
        appended = getattr(ad_op.update.app_ad, field).append.call_args_list
        assert len(appended) == 2

    def test_text_entries_carry_text(self):
        client = mock_client()
        client.get_service.return_value.mutate_ads.return_value = NS(results=[NS(resource_name="r")])
        live_platform(client).mutate_ad_assets("333", AssetType.HEADLINE, ["Scan receipts fast"])
        op = client.get_service.return_value.mutate_ads.call_args.kwargs["operations"][0]
        item = op.update.app_ad.headlines.append.call_args[0][0]
        assert item.text == "Scan receipts fast"


class TestRetry:

    def test_transient_failure_is_retried(self):
        client = mock_client()
        ad_service = client.get_service.return_value
        ad_service.mutate_ads.side_effect = [
            google_exceptions.ServiceUnavailable("busy"),
            NS(results=[NS(resource_name="customers/1234567890/ads/333")]),
        ]
        result = live_platform(client).mutate_ad_assets("333", AssetType.IMAGE, ["a"])
        assert result.success
        assert ad_service.mutate_ads.call_count == 2

    def test_retries_are_bounded(self):
        client = mock_client()
        ad_service = client.get_service.return_value
        ad_service.mutate_ads.side_effect = google_exceptions.ResourceExhausted("quota")
        platform = live_platform(client, max_attempts=3)

        result = platform.mutate_ad_assets("333", AssetType.IMAGE, ["a"])
        assert not result.success
        assert "quota" in result.errors[0]
        assert ad_service.mutate_ads.call_count == 3
        assert platform.mutation_log[-1].status == "failed"

    def test_permanent_failure_is_not_retried(self):
        client = mock_client()
        ad_service = client.get_service.return_value
        ad_service.mutate_ads.side_effect = google_exceptions.InvalidArgument("unsupported aspect ratio")

        result = live_platform(client).mutate_ad_assets("333", AssetType.IMAGE, ["a"])
        assert not result.success
        assert ad_service.mutate_ads.call_count == 1

    @pytest.mark.parametrize("exc, expected", [
        (google_exceptions.ResourceExhausted("quota"), True),
        (google_exceptions.DeadlineExceeded("slow"), True),
        (requests.exceptions.Timeout("slow"), True),
        (google_exceptions.InvalidArgument("bad"), False),
        (ValueError("bad"), False),
    ])
    def test_transient_classification(self, exc, expected):
        assert is_transient(exc) is expected


class TestDryRun:

    def test_mutations_are_logged_not_sent(self):
        platform = GoogleAdsAssetPlatform("1234567890", dry_run=True)
        result = platform.mutate_ad_assets("333", AssetType.VIDEO, ["customers/1/assets/1"])
        assert result.success
        assert platform.client is None
        record = platform.mutation_log[0]
        assert record.status == "dry_run"
        assert record.params["field"] == "app_ad.youtube_videos"

    def test_created_assets_get_placeholder_names(self):
        platform = GoogleAdsAssetPlatform("1234567890", dry_run=True)
        first = platform.create_asset(AssetType.VIDEO, {"youtube_video_id": "abc"})
        second = platform.create_asset(AssetType.IMAGE, {"image_url": "https://cdn/x.png"})
        assert first.resource_name == "customers/1234567890/assets/dry-run-1"
        assert second.resource_name == "customers/1234567890/assets/dry-run-2"

    def test_export_mutation_log(self, tmp_path):
        platform = GoogleAdsAssetPlatform("1234567890", dry_run=True)
        platform.mutate_ad_assets("333", AssetType.IMAGE, ["a"])
        path = tmp_path / "log.json"
        platform.export_mutation_log(str(path))
        data = json.loads(path.read_text())
        assert data["total"] == 1
        assert data["mutations"][0]["action"] == "mutate_ad_assets"


class TestCreateAsset:

    def test_image_is_downloaded_and_uploaded(self):
        client = mock_client()
        asset_service = client.get_service.return_value
        asset_service.mutate_assets.return_value = NS(results=[NS(resource_name="customers/1/assets/9")])
        with patch("ads_platform.requests.get") as get:
            get.return_value = Mock(content=b"\x89PNG", raise_for_status=Mock())
            result = live_platform(client).create_asset(AssetType.IMAGE, {"image_url": "https://cdn/x.png"})

        assert result.success and result.resource_name == "customers/1/assets/9"
        get.assert_called_once_with("https://cdn/x.png", timeout=30)
        op = asset_service.mutate_assets.call_args.kwargs["operations"][0]
        assert op.create.image_asset.data == b"\x89PNG"

    def test_youtube_video(self):
        client = mock_client()
        asset_service = client.get_service.return_value
        asset_service.mutate_assets.return_value = NS(results=[NS(resource_name="customers/1/assets/10")])
        result = live_platform(client).create_asset(AssetType.VIDEO, {"youtube_video_id": "dQw4w9WgXcQ"})
        assert result.success
        op = asset_service.mutate_assets.call_args.kwargs["operations"][0]
        assert op.create.youtube_video_asset.youtube_video_id == "dQw4w9WgXcQ"

    def test_missing_payload_key_fails_cleanly(self):
        result = live_platform(mock_client()).create_asset(AssetType.VIDEO, {})
        assert not result.success


class TestQueries:

    def test_performance_is_summed_per_asset_and_ad(self):
        platform = live_platform(mock_client())
        rows = [
            asset_row("customers/1/assets/1", "MARKETING_IMAGE", "LOW", 9000),
            asset_row("customers/1/assets/1", "MARKETING_IMAGE", "LOW", 6000),
            asset_row("customers/1/assets/2", "HEADLINE", "GOOD", 300, text="Scan receipts"),
            asset_row("customers/1/assets/3", "MANDATORY_AD_TEXT", "GOOD", 300),
        ]
        with patch.object(platform, "_search", return_value=rows):
            result = platform.query_asset_performance("111", 30)

        by_id = {p.asset_id: p for p in result}
        assert set(by_id) == {"customers/1/assets/1", "customers/1/assets/2"}
        image = by_id["customers/1/assets/1"]
        assert image.asset_type == AssetType.IMAGE
        assert image.performance_label == PerformanceLabel.LOW
        assert image.impressions == 15000
        assert image.clicks == 2
        assert image.ad_id == "333" and image.ad_group_id == "222"
        assert by_id["customers/1/assets/2"].text == "Scan receipts"

    def test_no_rows(self):
        platform = live_platform(mock_client())
        with patch.object(platform, "_search", return_value=[]):
            assert platform.query_asset_performance("111", 30) == []

    def test_ad_asset_collection(self):
        platform = live_platform(mock_client())
        ad = NS(id=333, app_ad=NS(
            headlines=[NS(text="h1"), NS(text="h2")],
            descriptions=[NS(text="d1")],
            images=[NS(asset="customers/1/assets/5")],
            youtube_videos=[NS(asset="customers/1/assets/6")],
        ))
        with patch.object(platform, "_search", return_value=[NS(ad_group_ad=NS(ad=ad))]):
            collection = platform.get_ad_asset_collection("111", "222")
        assert collection == AdAssetCollection(
            ad_id="333", ad_group_id="222", headlines=["h1", "h2"], descriptions=["d1"],
            images=["customers/1/assets/5"], videos=["customers/1/assets/6"],
        )

    def test_missing_ad_raises(self):
        platform = live_platform(mock_client())
        with patch.object(platform, "_search", return_value=[]):
            with pytest.raises(PlatformError):
                platform.get_ad_asset_collection("111", "222")

    def test_campaign_status(self):
        platform = live_platform(mock_client())
        enabled = [NS(campaign=NS(status=NS(name="ENABLED")))]
        paused = [NS(campaign=NS(status=NS(name="PAUSED")))]
        with patch.object(platform, "_search", return_value=enabled):
            assert platform.is_campaign_enabled("111")
        with patch.object(platform, "_search", return_value=paused):
            assert not platform.is_campaign_enabled("111")

    def test_query_failure_raises_platform_error(self):
        client = mock_client()
        client.get_service.return_value.search_stream.side_effect = google_exceptions.InvalidArgument("bad")
        with pytest.raises(PlatformError):
            live_platform(client).query("SELECT campaign.id FROM campaign")

    def test_collection_helpers(self):
        collection = AdAssetCollection(ad_id="1", images=["a"])
        updated = collection.with_assets(AssetType.IMAGE, ["a", "b"])
        assert updated.assets(AssetType.IMAGE) == ["a", "b"]
        assert collection.images == ["a"]
