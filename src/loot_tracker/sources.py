"""Kill-event feed adapter for the game's public info service."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Any, Optional, Protocol

import httpx

from .config import TrackerSettings
from .errors import FeedUnavailableError
from .events import KillEvent, parse_events

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    def fetch_events(self, limit: int, offset: int) -> list[KillEvent]: ...

    def fetch_guild_events(
        self, guild_id: str, limit: int, offset: int
    ) -> list[KillEvent]: ...


class RequestSpacer:
    """Enforces a minimum delay between consecutive calls."""

    def __init__(self, spacing: timedelta) -> None:
        self._spacing = spacing.total_seconds()
        self._last_call = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self._spacing:
                time.sleep(self._spacing - elapsed)
            self._last_call = time.monotonic()


class AlbionEventSource:
    """Fetches kill events, guild search results and guild rosters."""

    def __init__(
        self,
        settings: Optional[TrackerSettings] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings or TrackerSettings()
        self._client = client or httpx.Client(
            base_url=self.settings.feed_base_url,
            timeout=self.settings.request_timeout.total_seconds(),
            headers={"Accept": "application/json"},
        )
        self._spacer = RequestSpacer(self.settings.events_request_spacing)

    def close(self) -> None:
        self._client.close()

    def fetch_events(self, limit: int, offset: int) -> list[KillEvent]:
        self._spacer.wait()
        payload = self._get_json("/events", {"limit": limit, "offset": offset})
        return parse_events(payload)

    def fetch_guild_events(
        self, guild_id: str, limit: int, offset: int
    ) -> list[KillEvent]:
        self._spacer.wait()
        payload = self._get_json(
            "/events", {"limit": limit, "offset": offset, "guildId": guild_id}
        )
        return parse_events(payload)

    def search_guilds(self, query: str) -> list[dict[str, Any]]:
        payload = self._get_json("/search", {"q": query})
        guilds = payload.get("guilds") if isinstance(payload, dict) else None
        return list(guilds or [])

    def fetch_guild_members(self, guild_id: str) -> list[dict[str, Any]]:
        payload = self._get_json(f"/guilds/{guild_id}/members", None)
        if not isinstance(payload, list):
            return []
        return [
            {
                "id": member.get("Id"),
                "name": member.get("Name"),
                "guildName": member.get("GuildName"),
            }
            for member in payload
            if isinstance(member, dict) and member.get("Name")
        ]

    def _get_json(self, path: str, params: Optional[dict[str, Any]]) -> Any:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Kill feed request %s failed: %s", path, exc)
            raise FeedUnavailableError(f"{path}: {exc}") from exc
