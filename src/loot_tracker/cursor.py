"""Page orchestration over the kill feed, driven by the last processed event id."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .config import TrackerSettings
from .errors import FeedUnavailableError
from .events import KillEvent
from .sources import EventSource

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchWindow:
    """All events fetched in one poll, de-duplicated and in ascending id order."""

    events: list[KillEvent] = field(default_factory=list)
    pages: int = 0
    first_page_size: int = 0
    gap: int = 0
    saturated: bool = False
    partial: bool = False

    @property
    def max_event_id(self) -> int:
        return max((e.event_id for e in self.events), default=0)

    @property
    def min_event_id(self) -> int:
        return min((e.event_id for e in self.events), default=0)


class GapAwareCursor:
    """Fetches enough pages to reach back to the cursor, within fixed bounds.

    The feed returns newest events first. When the oldest event on a full
    first page is further than one page beyond ``last_event_id`` (but under
    the gap ceiling), older pages are requested until the gap is covered, a
    page comes back empty, or the page budget runs out.
    """

    def __init__(
        self,
        source: EventSource,
        settings: TrackerSettings,
        guild_id: Optional[str] = None,
    ) -> None:
        self.source = source
        self.settings = settings
        self.guild_id = guild_id

    def fetch(
        self,
        last_event_id: int,
        *,
        activity_start_time: Optional[datetime] = None,
    ) -> FetchWindow:
        page_size = self.settings.page_size
        first_page = self._fetch_page(0)
        window = FetchWindow(pages=1, first_page_size=len(first_page))
        collected = list(first_page)

        if last_event_id <= 0:
            collected += self._fetch_initial_window(first_page, activity_start_time, window)
        elif len(first_page) >= page_size:
            oldest = min(e.event_id for e in first_page)
            potential_gap = oldest - last_event_id
            if page_size < potential_gap < self.settings.gap_ceiling:
                logger.info(
                    "Potential gap of %d events after %d; fetching older pages.",
                    potential_gap,
                    last_event_id,
                )
                max_pages = min(
                    self.settings.max_gap_pages, math.ceil(potential_gap / page_size)
                )
                collected += self._fill_gap(last_event_id, max_pages, window)

        window.events = _dedupe_ascending(collected)
        if last_event_id > 0:
            # A full first page may hide older kills even when no id gap shows.
            window.saturated = window.first_page_size >= page_size
            if window.events:
                window.gap = max(0, window.min_event_id - last_event_id - 1)
        return window

    def _fetch_initial_window(
        self,
        first_page: list[KillEvent],
        activity_start_time: Optional[datetime],
        window: FetchWindow,
    ) -> list[KillEvent]:
        # No cursor yet: take everything available back to the activity start.
        collected: list[KillEvent] = []
        page = first_page
        offset = self.settings.page_size
        while (
            len(page) >= self.settings.page_size
            and window.pages < self.settings.max_gap_pages
            and offset <= self.settings.offset_limit
            and not _reaches_before(page, activity_start_time)
        ):
            page = self._fetch_optional_page(offset, window)
            if not page:
                break
            collected += page
            window.pages += 1
            offset += self.settings.page_size
        return collected

    def _fill_gap(
        self, last_event_id: int, max_pages: int, window: FetchWindow
    ) -> list[KillEvent]:
        collected: list[KillEvent] = []
        offset = self.settings.page_size
        while window.pages < max_pages and offset <= self.settings.offset_limit:
            page = self._fetch_optional_page(offset, window)
            if not page:
                break
            collected += page
            window.pages += 1
            offset += self.settings.page_size
            if min(e.event_id for e in page) <= last_event_id:
                logger.info("Gap covered after %d pages.", window.pages)
                break
        return collected

    def _fetch_page(self, offset: int) -> list[KillEvent]:
        if self.guild_id:
            return self.source.fetch_guild_events(
                self.guild_id, self.settings.page_size, offset
            )
        return self.source.fetch_events(self.settings.page_size, offset)

    def _fetch_optional_page(self, offset: int, window: FetchWindow) -> list[KillEvent]:
        try:
            return self._fetch_page(offset)
        except FeedUnavailableError as exc:
            logger.warning("Stopping pagination at offset %d: %s", offset, exc)
            window.partial = True
            return []


def _reaches_before(page: list[KillEvent], start: Optional[datetime]) -> bool:
    if start is None or not page:
        return False
    return min(e.timestamp for e in page) < start


def _dedupe_ascending(events: list[KillEvent]) -> list[KillEvent]:
    unique: dict[int, KillEvent] = {}
    for event in events:
        unique.setdefault(event.event_id, event)
    return [unique[event_id] for event_id in sorted(unique)]
