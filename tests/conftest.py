"""
Shared fixtures: an in-memory platform, registry, request store and the
engine/executor pair wired the way the runner wires them.
"""

import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from asset_registry import AssetRegistry
from change_executor import ChangeExecutor
from change_requests import ChangeRequestStore
from decision_engine import DecisionEngine
from rotation_config import CampaignConfig, RotationConfig
from tests.fakes import FakePlatform, RecordingNotifier


@pytest.fixture
def config():
    return RotationConfig(
        campaigns=(CampaignConfig(campaign_id="111", name="App Installs"),),
        customer_id="1234567890",
        dry_run=False,
    )


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def registry():
    return AssetRegistry.open(None)


@pytest.fixture
def store():
    return ChangeRequestStore.open(None)


@pytest.fixture
def executor(platform, registry, store, config):
    return ChangeExecutor(platform, registry, store, config)


@pytest.fixture
def engine(platform, registry, store, config, executor):
    return DecisionEngine(platform, registry, store, config, executor=executor)


@pytest.fixture
def notifier():
    return RecordingNotifier()
