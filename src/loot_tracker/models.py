"""Domain models for tracked activities, kills and loot."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO timestamp into an aware UTC datetime.

    The kill feed reports up to nine fractional digits and a ``Z`` suffix,
    neither of which ``datetime.fromisoformat`` accepts on every interpreter.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTION_PATTERN.sub(
            lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1
        )
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_optional_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_timestamp(value)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _milliseconds(value: timedelta) -> int:
    return int(round(value.total_seconds() * 1000))


class ActivityStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class KillStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class ChestKey(NamedTuple):
    """Stacking identity of an item: type, quality and the slot it came from."""

    item_type: str
    quality: int
    slot: str


@dataclass(frozen=True, slots=True)
class ItemPrice:
    sell_price: int = 0
    buy_price: int = 0
    city: Optional[str] = None
    last_update: Optional[datetime] = None
    found: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sellPrice": self.sell_price,
            "buyPrice": self.buy_price,
            "city": self.city,
            "lastUpdate": format_timestamp(self.last_update),
            "found": self.found,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ItemPrice":
        return cls(
            sell_price=int(data.get("sellPrice") or 0),
            buy_price=int(data.get("buyPrice") or 0),
            city=data.get("city"),
            last_update=parse_optional_timestamp(data.get("lastUpdate")),
            found=bool(data.get("found", False)),
        )


@dataclass(frozen=True, slots=True)
class LootItem:
    """A stack of items found on a victim, optionally carrying a market price."""

    item_type: str
    quality: int = 0
    slot: str = ""
    count: int = 1
    price: Optional[ItemPrice] = None

    @property
    def key(self) -> ChestKey:
        return ChestKey(self.item_type, self.quality, self.slot)

    @property
    def value(self) -> int:
        return self.count * (self.price.sell_price if self.price else 0)

    def with_price(self, price: Optional[ItemPrice]) -> "LootItem":
        return replace(self, price=price)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.item_type,
            "count": self.count,
            "quality": self.quality,
            "slot": self.slot,
            "price": self.price.to_dict() if self.price else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LootItem":
        price = data.get("price")
        return cls(
            item_type=data["type"],
            quality=int(data.get("quality") or 0),
            slot=str(data.get("slot") or ""),
            count=int(data.get("count") or 1),
            price=ItemPrice.from_dict(price) if price else None,
        )


@dataclass(frozen=True, slots=True)
class PlayerSnapshot:
    """Killer or victim as reported by the kill feed at the time of the kill."""

    id: Optional[str]
    name: str
    guild_name: Optional[str] = None
    kill_fame: int = 0
    death_fame: int = 0
    average_item_power: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "guildName": self.guild_name,
            "killFame": self.kill_fame,
            "deathFame": self.death_fame,
            "averageItemPower": self.average_item_power,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlayerSnapshot":
        return cls(
            id=data.get("id"),
            name=data.get("name") or "",
            guild_name=data.get("guildName"),
            kill_fame=int(data.get("killFame") or 0),
            death_fame=int(data.get("deathFame") or 0),
            average_item_power=float(data.get("averageItemPower") or 0.0),
        )


@dataclass(frozen=True, slots=True)
class KillParticipant:
    name: str
    id: Optional[str] = None
    damage_done: float = 0.0
    healing_done: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "damageDone": self.damage_done,
            "healingDone": self.healing_done,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KillParticipant":
        return cls(
            name=data.get("name") or "",
            id=data.get("id"),
            damage_done=float(data.get("damageDone") or 0.0),
            healing_done=float(data.get("healingDone") or 0.0),
        )


@dataclass(slots=True)
class KillRecord:
    """One kill from the feed mapped into activity terms."""

    event_id: int
    battle_id: int
    timestamp: datetime
    killer: PlayerSnapshot
    victim: PlayerSnapshot
    participants: list[KillParticipant] = field(default_factory=list)
    victim_inventory: tuple[LootItem, ...] = ()
    loot_confirmed: list[LootItem] = field(default_factory=list)
    status: KillStatus = KillStatus.PENDING

    @property
    def destroyed_loot(self) -> list[LootItem]:
        """Items the victim carried that were not confirmed as looted."""
        remaining: dict[ChestKey, int] = {}
        for item in self.loot_confirmed:
            remaining[item.key] = remaining.get(item.key, 0) + item.count
        destroyed: list[LootItem] = []
        for item in self.victim_inventory:
            taken = min(remaining.get(item.key, 0), item.count)
            if taken:
                remaining[item.key] -= taken
            if item.count - taken > 0:
                destroyed.append(replace(item, count=item.count - taken, price=None))
        return destroyed

    @property
    def destroyed_count(self) -> int:
        return sum(item.count for item in self.destroyed_loot)

    @property
    def confirmed_count(self) -> int:
        return sum(item.count for item in self.loot_confirmed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "battleId": self.battle_id,
            "timestamp": format_timestamp(self.timestamp),
            "killer": self.killer.to_dict(),
            "victim": self.victim.to_dict(),
            "participants": [p.to_dict() for p in self.participants],
            "victimInventory": [item.to_dict() for item in self.victim_inventory],
            "lootConfirmed": [item.to_dict() for item in self.loot_confirmed],
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KillRecord":
        inventory = data.get("victimInventory") or data.get("lootDetected") or []
        return cls(
            event_id=int(data["eventId"]),
            battle_id=int(data.get("battleId") or 0),
            timestamp=parse_timestamp(data["timestamp"]),
            killer=PlayerSnapshot.from_dict(data.get("killer") or {}),
            victim=PlayerSnapshot.from_dict(data.get("victim") or {}),
            participants=[
                KillParticipant.from_dict(p) for p in data.get("participants") or []
            ],
            victim_inventory=tuple(LootItem.from_dict(item) for item in inventory),
            loot_confirmed=[
                LootItem.from_dict(item) for item in data.get("lootConfirmed") or []
            ],
            status=KillStatus(data.get("status") or KillStatus.PENDING.value),
        )


@dataclass(slots=True)
class ParticipantStats:
    kills: int = 0
    assists: int = 0
    deaths: int = 0
    damage_done: float = 0.0
    healing_done: float = 0.0
    kill_fame: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kills": self.kills,
            "assists": self.assists,
            "deaths": self.deaths,
            "damageDone": self.damage_done,
            "healingDone": self.healing_done,
            "killFame": self.kill_fame,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParticipantStats":
        return cls(
            kills=int(data.get("kills") or 0),
            assists=int(data.get("assists") or 0),
            deaths=int(data.get("deaths") or 0),
            damage_done=float(data.get("damageDone") or 0.0),
            healing_done=float(data.get("healingDone") or 0.0),
            kill_fame=int(data.get("killFame") or 0),
        )


@dataclass(frozen=True, slots=True)
class PauseInterval:
    paused_at: datetime
    resumed_at: datetime

    @property
    def duration(self) -> timedelta:
        return self.resumed_at - self.paused_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "pausedAt": format_timestamp(self.paused_at),
            "resumedAt": format_timestamp(self.resumed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PauseInterval":
        return cls(
            paused_at=parse_timestamp(data["pausedAt"]),
            resumed_at=parse_timestamp(data["resumedAt"]),
        )


@dataclass(slots=True)
class Participant:
    """A guild member's membership record within one activity."""

    name: str
    joined_at: datetime
    left_at: Optional[datetime] = None
    is_paused: bool = False
    paused_at: Optional[datetime] = None
    pause_history: list[PauseInterval] = field(default_factory=list)
    total_active_time: timedelta = timedelta(0)
    stats: ParticipantStats = field(default_factory=ParticipantStats)

    @property
    def has_left(self) -> bool:
        return self.left_at is not None

    @property
    def is_active(self) -> bool:
        return not self.has_left and not self.is_paused

    def active_time(self, now: datetime) -> timedelta:
        end = self.left_at or now
        paused = sum((pause.duration for pause in self.pause_history), timedelta(0))
        if self.is_paused and self.paused_at is not None:
            paused += end - self.paused_at
        return (end - self.joined_at) - paused

    def refresh_active_time(self, now: datetime) -> timedelta:
        self.total_active_time = self.active_time(now)
        return self.total_active_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "joinedAt": format_timestamp(self.joined_at),
            "leftAt": format_timestamp(self.left_at),
            "isPaused": self.is_paused,
            "pausedAt": format_timestamp(self.paused_at),
            "pauseHistory": [pause.to_dict() for pause in self.pause_history],
            "totalActiveTime": _milliseconds(self.total_active_time),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Participant":
        return cls(
            name=data["name"],
            joined_at=parse_timestamp(data["joinedAt"]),
            left_at=parse_optional_timestamp(data.get("leftAt")),
            is_paused=bool(data.get("isPaused", False)),
            paused_at=parse_optional_timestamp(data.get("pausedAt")),
            pause_history=[
                PauseInterval.from_dict(pause)
                for pause in data.get("pauseHistory") or []
                if pause.get("pausedAt") and pause.get("resumedAt")
            ],
            total_active_time=timedelta(
                milliseconds=float(data.get("totalActiveTime") or 0)
            ),
            stats=ParticipantStats.from_dict(data.get("stats") or {}),
        )


@dataclass(slots=True)
class GuildMember:
    name: str
    id: Optional[str] = None
    guild_name: Optional[str] = None
    first_seen: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "guildName": self.guild_name,
            "firstSeen": format_timestamp(self.first_seen),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuildMember":
        return cls(
            name=data["name"],
            id=data.get("id"),
            guild_name=data.get("guildName"),
            first_seen=parse_optional_timestamp(data.get("firstSeen")),
        )


@dataclass(slots=True)
class GuildConfig:
    """The guild whose members are tracked, and its known roster."""

    guild_name: str
    guild_id: Optional[str] = None
    members: list[GuildMember] = field(default_factory=list)

    @property
    def member_names(self) -> list[str]:
        return [member.name for member in self.members]

    def get_member(self, name: str) -> Optional[GuildMember]:
        return next((m for m in self.members if m.name == name), None)

    def add_member(self, name: str, now: Optional[datetime] = None) -> bool:
        if self.get_member(name):
            return False
        self.members.append(
            GuildMember(name=name, guild_name=self.guild_name, first_seen=now or utcnow())
        )
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "guildName": self.guild_name,
            "guildId": self.guild_id,
            "members": [member.to_dict() for member in self.members],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuildConfig":
        return cls(
            guild_name=data.get("guildName") or "",
            guild_id=data.get("guildId") or None,
            members=[GuildMember.from_dict(m) for m in data.get("members") or []],
        )
