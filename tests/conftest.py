from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import pytest

from loot_tracker.config import TrackerSettings
from loot_tracker.db import SqliteStore
from loot_tracker.engine import TrackerEngine
from loot_tracker.errors import FeedUnavailableError, ValuationUnavailableError
from loot_tracker.events import KillEvent
from loot_tracker.models import ItemPrice, LootItem
from loot_tracker.valuation import price_key

T0 = datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)
GUILD = "Night Watch"


class FixedClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def raw_player(
    name: str,
    guild: Optional[str] = GUILD,
    *,
    kill_fame: int = 0,
    death_fame: int = 0,
    damage: float = 0.0,
    healing: float = 0.0,
    equipment: Optional[dict[str, Any]] = None,
    inventory: Optional[list[Any]] = None,
) -> dict[str, Any]:
    return {
        "Id": f"id-{name}",
        "Name": name,
        "GuildName": guild,
        "KillFame": kill_fame,
        "DeathFame": death_fame,
        "AverageItemPower": 1100.5,
        "DamageDone": damage,
        "SupportHealingDone": healing,
        "Equipment": equipment or {},
        "Inventory": inventory or [],
    }


def raw_item(item_type: str, count: Optional[int] = 1, quality: Optional[int] = 1) -> dict[str, Any]:
    return {"Type": item_type, "Count": count, "Quality": quality}


def raw_event(
    event_id: int,
    *,
    killer: str = "Alice",
    victim: str = "Enemy",
    assists: Iterable[str] = (),
    timestamp: Optional[datetime] = None,
    killer_guild: Optional[str] = GUILD,
    victim_guild: Optional[str] = "Raiders",
    equipment: Optional[dict[str, Any]] = None,
    inventory: Optional[list[Any]] = None,
    death_fame: int = 5000,
) -> dict[str, Any]:
    when = timestamp or T0 + timedelta(minutes=1)
    killer_entry = raw_player(killer, killer_guild, kill_fame=death_fame, damage=800.0)
    participants = [killer_entry] + [
        raw_player(name, killer_guild, damage=200.0, healing=50.0) for name in assists
    ]
    return {
        "EventId": event_id,
        "BattleId": event_id,
        "TimeStamp": when.strftime("%Y-%m-%dT%H:%M:%S.") + "1234567Z",
        "Killer": killer_entry,
        "Victim": raw_player(
            victim,
            victim_guild,
            death_fame=death_fame,
            equipment=equipment,
            inventory=inventory,
        ),
        "Participants": participants,
    }


def make_event(event_id: int, **kwargs: Any) -> KillEvent:
    return KillEvent.model_validate(raw_event(event_id, **kwargs))


class FakeEventSource:
    """Serves events newest first, sliced by offset like the public feed."""

    def __init__(self, events: Iterable[KillEvent] = (), fail_offsets: Iterable[int] = ()) -> None:
        self.events: list[KillEvent] = []
        self.fail_offsets = set(fail_offsets)
        self.fail_all = False
        self.calls: list[tuple[Optional[str], int, int]] = []
        self.members: list[dict[str, Any]] = []
        self.publish(*events)

    def publish(self, *events: KillEvent) -> None:
        self.events.extend(events)
        self.events.sort(key=lambda event: event.event_id, reverse=True)

    def fetch_events(self, limit: int, offset: int) -> list[KillEvent]:
        return self._page(None, limit, offset)

    def fetch_guild_events(self, guild_id: str, limit: int, offset: int) -> list[KillEvent]:
        return self._page(guild_id, limit, offset)

    def fetch_guild_members(self, guild_id: str) -> list[dict[str, Any]]:
        if self.fail_all:
            raise FeedUnavailableError("feed down")
        return list(self.members)

    def _page(self, guild_id: Optional[str], limit: int, offset: int) -> list[KillEvent]:
        self.calls.append((guild_id, limit, offset))
        if self.fail_all or offset in self.fail_offsets:
            raise FeedUnavailableError(f"offset {offset} unavailable")
        return self.events[offset : offset + limit]


class FakePriceSource:
    def __init__(self, prices: Optional[dict[str, int]] = None) -> None:
        self.prices = prices or {}
        self.fail = False
        self.calls: list[tuple[list[LootItem], str]] = []

    def get_items_prices(self, items: list[LootItem], city: str) -> dict[str, ItemPrice]:
        self.calls.append((list(items), city))
        if self.fail:
            raise ValuationUnavailableError("market data down")
        result: dict[str, ItemPrice] = {}
        for item in items:
            sell = self.prices.get(item.item_type, 0)
            result[price_key(item.item_type, item.quality)] = ItemPrice(
                sell_price=sell, buy_price=sell // 2, city=city, last_update=T0, found=sell > 0
            )
        return result


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> TrackerSettings:
    return TrackerSettings(
        page_size=5,
        max_gap_pages=4,
        gap_ceiling=100,
        events_request_spacing=timedelta(0),
        price_request_spacing=timedelta(0),
    )


@pytest.fixture
def feed() -> FakeEventSource:
    return FakeEventSource()


@pytest.fixture
def prices() -> FakePriceSource:
    return FakePriceSource({"T4_SWORD": 1000, "T4_BAG": 250, "T5_CAPE": 4000})


@pytest.fixture
def store(tmp_path) -> SqliteStore:
    return SqliteStore(tmp_path / "tracker.sqlite3")


@pytest.fixture
def engine(feed, prices, store, settings, clock) -> TrackerEngine:
    return TrackerEngine(feed, prices, store, settings, directory=feed, clock=clock)
