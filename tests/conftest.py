"""Pytest configuration and shared fixtures for the deferral test suite."""

import logging
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from deferral.broker.broker import SuspensionBroker
from deferral.broker.config import BrokerConfig
from deferral.initiator import RequestInitiator
from tests.fixtures.executors import ScriptedExecutor


# Configure logging for tests
logging.basicConfig(level=logging.WARNING)


@pytest.fixture
def executor() -> ScriptedExecutor:
    """Executor that answers every call with 200 "OK" unless scripted otherwise."""
    return ScriptedExecutor()


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig(default_timeout=5.0, max_timeout=10.0)


@pytest.fixture
async def broker(
    executor: ScriptedExecutor, broker_config: BrokerConfig
) -> AsyncGenerator[SuspensionBroker, None]:
    """Broker that is closed after the test."""
    broker = SuspensionBroker(executor, broker_config)
    yield broker
    await broker.close()


@pytest.fixture
def initiator(broker: SuspensionBroker) -> RequestInitiator:
    return RequestInitiator(broker)


# Test markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Component integration tests")
    config.addinivalue_line("markers", "slow: Tests that take >1s")


# Timeout configuration
def pytest_collection_modifyitems(config, items):
    """Add a timeout to every test based on its markers."""
    for item in items:
        if item.get_closest_marker("slow"):
            item.add_marker(pytest.mark.timeout(30))
        elif item.get_closest_marker("unit"):
            item.add_marker(pytest.mark.timeout(5))
        else:
            item.add_marker(pytest.mark.timeout(10))
