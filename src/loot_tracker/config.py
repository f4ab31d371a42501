"""Configuration models and helpers for the loot tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for polling, the event feed and the price feed."""

    poll_interval: timedelta = timedelta(minutes=3)
    page_size: int = 51
    max_gap_pages: int = 10
    gap_ceiling: int = 1000
    offset_limit: int = 1000
    events_request_spacing: timedelta = timedelta(seconds=1)
    price_request_spacing: timedelta = timedelta(milliseconds=350)
    price_chunk_size: int = 100
    request_timeout: timedelta = timedelta(seconds=15)
    default_city: str = "Caerleon"
    feed_base_url: str = "https://gameinfo.albiononline.com/api/gameinfo"
    price_base_url: str = "https://west.albion-online-data.com"

    @classmethod
    def from_intervals(
        cls,
        poll_seconds: float,
        page_size: int | None = None,
        max_gap_pages: int | None = None,
        timeout_seconds: float | None = None,
        default_city: str | None = None,
    ) -> "TrackerSettings":
        defaults = cls()
        return cls(
            poll_interval=timedelta(seconds=poll_seconds),
            page_size=page_size if page_size is not None else defaults.page_size,
            max_gap_pages=(
                max_gap_pages if max_gap_pages is not None else defaults.max_gap_pages
            ),
            request_timeout=(
                timedelta(seconds=timeout_seconds)
                if timeout_seconds is not None
                else defaults.request_timeout
            ),
            default_city=default_city or defaults.default_city,
        )
