"""Immutable schema for kill events from the game's info feed.

The feed sends PascalCase JSON. Payloads are validated into frozen pydantic
models and mapped into :class:`~loot_tracker.models.KillRecord` by a pure
function; the raw payload is never mutated.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import (
    KillParticipant,
    KillRecord,
    KillStatus,
    LootItem,
    PlayerSnapshot,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class FeedModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class FeedItem(FeedModel):
    type: Optional[str] = Field(default=None, alias="Type")
    count: Optional[int] = Field(default=None, alias="Count")
    quality: Optional[int] = Field(default=None, alias="Quality")


class FeedPlayer(FeedModel):
    id: Optional[str] = Field(default=None, alias="Id")
    name: str = Field(default="", alias="Name")
    guild_name: Optional[str] = Field(default=None, alias="GuildName")
    kill_fame: int = Field(default=0, alias="KillFame")
    death_fame: int = Field(default=0, alias="DeathFame")
    average_item_power: float = Field(default=0.0, alias="AverageItemPower")
    damage_done: float = Field(default=0.0, alias="DamageDone")
    healing_done: float = Field(default=0.0, alias="SupportHealingDone")
    equipment: dict[str, Optional[FeedItem]] = Field(default_factory=dict, alias="Equipment")
    inventory: list[Optional[FeedItem]] = Field(default_factory=list, alias="Inventory")

    @field_validator(
        "kill_fame", "death_fame", "average_item_power", "damage_done", "healing_done",
        mode="before",
    )
    @classmethod
    def _none_as_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("equipment", "inventory", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any, info) -> Any:
        if value is None:
            return {} if info.field_name == "equipment" else []
        return value


class KillEvent(FeedModel):
    event_id: int = Field(alias="EventId")
    battle_id: int = Field(default=0, alias="BattleId")
    timestamp: datetime = Field(alias="TimeStamp")
    killer: FeedPlayer = Field(alias="Killer")
    victim: FeedPlayer = Field(alias="Victim")
    participants: list[FeedPlayer] = Field(default_factory=list, alias="Participants")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    @field_validator("battle_id", mode="before")
    @classmethod
    def _battle_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("participants", mode="before")
    @classmethod
    def _participants_default(cls, value: Any) -> Any:
        return [] if value is None else value

    def involves(self, names: Iterable[str]) -> bool:
        """True when the killer or any participant is one of ``names``."""
        wanted = set(names)
        return self.killer.name in wanted or any(
            p.name in wanted for p in self.participants
        )

    def involves_guild(self, guild_name: str) -> bool:
        return self.killer.guild_name == guild_name or any(
            p.guild_name == guild_name for p in self.participants
        )


def parse_events(payload: Any) -> list[KillEvent]:
    """Validate a raw feed page, dropping entries that do not fit the schema."""
    if not isinstance(payload, list):
        logger.warning("Kill feed returned %s instead of a list.", type(payload).__name__)
        return []
    events: list[KillEvent] = []
    for raw in payload:
        try:
            events.append(KillEvent.model_validate(raw))
        except ValidationError as exc:
            event_id = raw.get("EventId") if isinstance(raw, dict) else None
            logger.warning(
                "Skipping malformed kill event %s: %d validation errors.",
                event_id,
                exc.error_count(),
            )
    return events


def victim_inventory(event: KillEvent) -> tuple[LootItem, ...]:
    """Everything the victim carried: equipped slots first, then bag slots."""
    items: list[LootItem] = []
    for slot, item in event.victim.equipment.items():
        if item is not None and item.type:
            items.append(_loot_item(item, slot))
    for index, item in enumerate(event.victim.inventory):
        if item is not None and item.type:
            items.append(_loot_item(item, f"inventory_{index}"))
    return tuple(items)


def _loot_item(item: FeedItem, slot: str) -> LootItem:
    return LootItem(
        item_type=item.type or "",
        quality=item.quality or 0,
        slot=slot,
        count=item.count or 1,
    )


def _snapshot(player: FeedPlayer) -> PlayerSnapshot:
    return PlayerSnapshot(
        id=player.id,
        name=player.name,
        guild_name=player.guild_name,
        kill_fame=player.kill_fame,
        death_fame=player.death_fame,
        average_item_power=player.average_item_power,
    )


def to_kill_record(event: KillEvent) -> KillRecord:
    return KillRecord(
        event_id=event.event_id,
        battle_id=event.battle_id,
        timestamp=event.timestamp,
        killer=_snapshot(event.killer),
        victim=_snapshot(event.victim),
        participants=[
            KillParticipant(
                name=p.name,
                id=p.id,
                damage_done=p.damage_done,
                healing_done=p.healing_done,
            )
            for p in event.participants
        ],
        victim_inventory=victim_inventory(event),
        loot_confirmed=[],
        status=KillStatus.PENDING,
    )
