"""
Interfaces to the browser and the tab capture pipeline.

The browser side is not part of this package: a host provides a
TabService that opens and closes tabs and a CaptureService that renders
favicons and thumbnails. This module turns live tab handles into Items,
degrading any capture failure to a missing attachment.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlsplit

from .exceptions import CaptureFailedError
from .id_utils import generate_id
from .models import Item

logger = logging.getLogger(__name__)


@dataclass
class BrowserTab:
    """Handle of a live browser tab."""

    tab_id: int | str
    url: str
    title: str = ""
    window_id: int | str | None = None
    incognito: bool = False
    discarded: bool = False
    pinned: bool = False
    hidden: bool = False


class CaptureService(Protocol):
    """Produces attachments for live tabs.

    Either method may raise CaptureFailedError or return None when
    nothing could be captured.
    """

    async def capture_favicon(self, tab: BrowserTab) -> bytes | None: ...

    async def capture_thumbnail(self, tab: BrowserTab) -> bytes | None: ...


class TabService(Protocol):
    """Opens and closes browser tabs."""

    async def open_tab(self, url: str, destination: Any) -> bool:
        """Open url in the destination window; return False on failure."""
        ...

    async def close_tabs(self, tabs: list[BrowserTab]) -> None: ...


def is_restorable(url: str, schemes: Iterable[str]) -> bool:
    """Return True if a tab with this URL can be reopened later."""
    return urlsplit(url).scheme.lower() in set(schemes)


def select_capturable_tabs(tabs: Iterable[BrowserTab], schemes: Iterable[str]) -> list[BrowserTab]:
    """Pick the tabs of a window that can be set aside.

    Pinned and hidden tabs stay open. Incognito windows are never
    captured. Tabs whose URL cannot be restored are skipped.
    """
    visible = [tab for tab in tabs if not tab.pinned and not tab.hidden]
    if not visible or visible[0].incognito:
        return []
    return [tab for tab in visible if is_restorable(tab.url, schemes)]


async def _attempt(
    capture: Callable[[BrowserTab], Awaitable[bytes | None]],
    tab: BrowserTab,
    attachment: str,
) -> bytes | None:
    try:
        return await capture(tab)
    except CaptureFailedError as e:
        logger.warning(f"Capturing {attachment} of tab {tab.tab_id} failed: {e.message}")
        return None


async def capture_items(
    tabs: Iterable[BrowserTab],
    capture: CaptureService,
    id_factory: Callable[[], str] = generate_id,
) -> list[Item]:
    """Build Items with attachments for the given tabs, in tab order.

    Discarded tabs get no attachments: they can only be captured once
    restored, and waiting for that could hang indefinitely.
    """

    async def capture_one(tab: BrowserTab) -> Item:
        favicon = thumbnail = None
        if not tab.discarded:
            favicon, thumbnail = await asyncio.gather(
                _attempt(capture.capture_favicon, tab, "favicon"),
                _attempt(capture.capture_thumbnail, tab, "thumbnail"),
            )
        return Item(
            url=tab.url,
            title=tab.title,
            id=id_factory(),
            favicon=favicon,
            thumbnail=thumbnail,
        )

    return list(await asyncio.gather(*(capture_one(tab) for tab in tabs)))
