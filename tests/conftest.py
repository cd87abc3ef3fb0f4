"""
Shared test configuration and fixtures.

Provides in-memory stores, a subscriber registry with one connected
channel, and fakes for the browser-side collaborators (tab opening and
attachment capture).
"""

import logging

import pytest

from set_aside.capture import BrowserTab
from set_aside.config import SetAsideConfig
from set_aside.exceptions import CaptureFailedError
from set_aside.models import Item
from set_aside.stores.blobs import SQLiteBlobStore
from set_aside.stores.metadata import LocalMetadataStore
from set_aside.sync.coordinator import SyncCoordinator
from set_aside.sync.subscribers import QueueChannel, SubscriberRegistry

logger = logging.getLogger(__name__)


class FakeTabService:
    """
    Records opened and closed tabs.

    URLs in fail_urls report failure, URLs in raise_urls raise.
    """

    def __init__(self):
        self.opened: list[tuple[str, object]] = []
        self.closed: list[BrowserTab] = []
        self.fail_urls: set[str] = set()
        self.raise_urls: set[str] = set()

    async def open_tab(self, url: str, destination) -> bool:
        if url in self.raise_urls:
            raise RuntimeError(f"browser refused {url}")
        if url in self.fail_urls:
            return False
        self.opened.append((url, destination))
        return True

    async def close_tabs(self, tabs: list[BrowserTab]) -> None:
        self.closed.extend(tabs)


class FakeCaptureService:
    """Produces deterministic attachment bytes per tab."""

    def __init__(self):
        self.failing_tabs: set = set()
        self.captured: list = []

    async def capture_favicon(self, tab: BrowserTab) -> bytes | None:
        if tab.tab_id in self.failing_tabs:
            raise CaptureFailedError(tab.tab_id, "favicon")
        self.captured.append(("favicon", tab.tab_id))
        return f"icon-{tab.tab_id}".encode()

    async def capture_thumbnail(self, tab: BrowserTab) -> bytes | None:
        if tab.tab_id in self.failing_tabs:
            raise CaptureFailedError(tab.tab_id, "thumbnail")
        self.captured.append(("thumbnail", tab.tab_id))
        return f"thumb-{tab.tab_id}".encode()


def make_items(*urls: str) -> list[Item]:
    """Items with attachments derived from their URL."""
    return [
        Item(
            url=url,
            title=f"Title of {url}",
            favicon=f"icon:{url}".encode(),
            thumbnail=f"thumb:{url}".encode(),
        )
        for url in urls
    ]


@pytest.fixture
def config():
    return SetAsideConfig()


@pytest.fixture
async def metadata_store():
    store = LocalMetadataStore()
    yield store
    await store.close()


@pytest.fixture
async def blob_store():
    store = SQLiteBlobStore(":memory:")
    yield store
    await store.close()


@pytest.fixture
def registry():
    return SubscriberRegistry()


@pytest.fixture
def channel(registry):
    """A channel already connected to the registry."""
    channel = QueueChannel(name="sidebar")
    registry.connect(channel)
    return channel


@pytest.fixture
def tab_service():
    return FakeTabService()


@pytest.fixture
def capture_service():
    return FakeCaptureService()


@pytest.fixture
def uninitialized_coordinator(
    metadata_store, blob_store, tab_service, capture_service, registry, config
):
    """Coordinator that has not run init() yet."""
    return SyncCoordinator(
        metadata_store,
        blob_store,
        tab_service=tab_service,
        capture_service=capture_service,
        registry=registry,
        config=config,
    )


@pytest.fixture
async def coordinator(uninitialized_coordinator):
    """Hydrated coordinator over empty stores."""
    await uninitialized_coordinator.init()
    yield uninitialized_coordinator
    await uninitialized_coordinator.wait_idle()


@pytest.fixture
def item_factory():
    """Returns make_items for building items with attachments."""
    return make_items
