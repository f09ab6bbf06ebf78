"""Test fixtures for image cache manager tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager

import pytest
import pytest_asyncio
import respx
from pydantic import SecretStr
from safir.testing.kubernetes import MockKubernetesApi, patch_kubernetes
from safir.testing.slack import MockSlackWebhook, mock_slack_webhook

from imagecache.config import Config
from imagecache.factory import Factory
from imagecache.services.manager import ImageManager

from .support.config import configure


@pytest.fixture
def config() -> Config:
    """Construct default configuration for tests."""
    return configure("standard")


@pytest_asyncio.fixture
async def factory(
    config: Config,
    mock_kubernetes: MockKubernetesApi,
    mock_slack: MockSlackWebhook,
) -> AsyncIterator[Factory]:
    """Create a component factory for tests."""
    async with Factory.standalone(config) as factory:
        yield factory


@pytest.fixture
def manager(factory: Factory) -> ImageManager:
    """Image manager with its background tasks not running."""
    return factory.image_manager


@pytest.fixture
def mock_kubernetes() -> Iterator[MockKubernetesApi]:
    with contextmanager(patch_kubernetes)() as mock:
        yield mock


@pytest.fixture
def mock_slack(
    config: Config, respx_mock: respx.Router
) -> Iterator[MockSlackWebhook]:
    webhook = "https://slack.example.com/webhook"
    config.slack_webhook = SecretStr(webhook)
    yield mock_slack_webhook(webhook, respx_mock)
    config.slack_webhook = None
