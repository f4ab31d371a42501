"""Activity aggregate: participant ledger, kill lifecycle and loot chest."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from .chest import LootChest
from .models import (
    ActivityStatus,
    ChestKey,
    KillRecord,
    KillStatus,
    LootItem,
    Participant,
    PauseInterval,
    format_timestamp,
    parse_optional_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CITY = "Caerleon"


@dataclass(slots=True)
class CleanupResult:
    duplicates: int = 0
    stale: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.duplicates or self.stale)


@dataclass(slots=True)
class Activity:
    """One timed session with a roster, pending and confirmed kills, and a chest.

    Every mutation except ``complete``/``cancel`` is a logged no-op unless the
    activity is active.
    """

    name: str
    start_time: datetime
    id: str = ""
    end_time: Optional[datetime] = None
    status: ActivityStatus = ActivityStatus.ACTIVE
    city: str = DEFAULT_CITY
    participants: list[Participant] = field(default_factory=list)
    pending_kills: list[KillRecord] = field(default_factory=list)
    kills: list[KillRecord] = field(default_factory=list)
    last_event_id: int = 0
    loot_chest: LootChest = field(default_factory=LootChest)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"activity_{int(self.start_time.timestamp() * 1000)}"
        if self.loot_chest.city is None:
            self.loot_chest.city = self.city

    @classmethod
    def create(
        cls,
        name: str,
        participants: Iterable[str] = (),
        *,
        city: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Activity":
        started = now or utcnow()
        activity = cls(name=name, start_time=started, city=city or DEFAULT_CITY)
        for participant in participants:
            activity.add_participant(participant, now=started)
        return activity

    @property
    def is_active(self) -> bool:
        return self.status is ActivityStatus.ACTIVE

    def _require_active(self, operation: str) -> bool:
        if self.is_active:
            return True
        logger.info(
            "Ignoring %s on %s activity %s.", operation, self.status.value, self.id
        )
        return False

    def _reference_time(self, now: Optional[datetime]) -> datetime:
        return self.end_time or now or utcnow()

    # Participant ledger

    def get_participant(self, name: str) -> Optional[Participant]:
        return next((p for p in self.participants if p.name == name), None)

    def active_participant_names(self) -> list[str]:
        return [p.name for p in self.participants if not p.has_left]

    def add_participant(self, name: str, now: Optional[datetime] = None) -> bool:
        if not self._require_active("add_participant"):
            return False
        if self.get_participant(name):
            logger.debug("Participant %s already in activity %s.", name, self.id)
            return False
        self.participants.append(Participant(name=name, joined_at=now or utcnow()))
        return True

    def pause_participant(self, name: str, now: Optional[datetime] = None) -> bool:
        if not self._require_active("pause_participant"):
            return False
        participant = self.get_participant(name)
        if participant is None or participant.has_left or participant.is_paused:
            return False
        participant.is_paused = True
        participant.paused_at = now or utcnow()
        return True

    def resume_participant(self, name: str, now: Optional[datetime] = None) -> bool:
        if not self._require_active("resume_participant"):
            return False
        participant = self.get_participant(name)
        if participant is None or participant.has_left or not participant.is_paused:
            return False
        self._close_pause(participant, now or utcnow())
        return True

    def remove_participant(self, name: str, now: Optional[datetime] = None) -> bool:
        if not self._require_active("remove_participant"):
            return False
        participant = self.get_participant(name)
        if participant is None or participant.has_left:
            return False
        left_at = now or utcnow()
        if participant.is_paused:
            self._close_pause(participant, left_at)
        participant.left_at = left_at
        participant.refresh_active_time(left_at)
        return True

    @staticmethod
    def _close_pause(participant: Participant, resumed_at: datetime) -> None:
        paused_at = participant.paused_at or resumed_at
        participant.pause_history.append(
            PauseInterval(paused_at=paused_at, resumed_at=resumed_at)
        )
        participant.is_paused = False
        participant.paused_at = None

    def participant_active_time(
        self, name: str, now: Optional[datetime] = None
    ) -> timedelta:
        participant = self.get_participant(name)
        if participant is None:
            return timedelta(0)
        return participant.refresh_active_time(self._reference_time(now))

    def participation_percentage(self, name: str, now: Optional[datetime] = None) -> float:
        if self.get_participant(name) is None:
            return 0.0
        duration = self.duration(now)
        if duration <= timedelta(0):
            return 0.0
        return self.participant_active_time(name, now) / duration * 100.0

    def duration(self, now: Optional[datetime] = None) -> timedelta:
        return self._reference_time(now) - self.start_time

    def update_participant_stats(self, kill: KillRecord) -> None:
        """Credit a confirmed kill to the roster."""
        killer = self.get_participant(kill.killer.name)
        if killer is not None and killer.is_active:
            killer.stats.kills += 1
            killer.stats.kill_fame += kill.killer.kill_fame

        for entry in kill.participants:
            participant = self.get_participant(entry.name)
            if participant is None or participant.has_left:
                continue
            if entry.name != kill.killer.name:
                participant.stats.assists += 1
            participant.stats.damage_done += entry.damage_done
            participant.stats.healing_done += entry.healing_done

        victim = self.get_participant(kill.victim.name)
        if victim is not None and not victim.has_left:
            victim.stats.deaths += 1

    # Kill lifecycle

    def has_kill(self, event_id: int) -> bool:
        return any(k.event_id == event_id for k in self.pending_kills) or any(
            k.event_id == event_id for k in self.kills
        )

    def get_pending_kill(self, event_id: int) -> Optional[KillRecord]:
        return next((k for k in self.pending_kills if k.event_id == event_id), None)

    def add_pending_kill(self, kill: KillRecord) -> bool:
        if not self._require_active("add_pending_kill"):
            return False
        if self.has_kill(kill.event_id):
            logger.info("Skipping duplicate kill eventId %s.", kill.event_id)
            return False
        kill.status = KillStatus.PENDING
        kill.loot_confirmed = []
        self.pending_kills.append(kill)
        return True

    def confirm_kill(
        self,
        event_id: int,
        selected_loot: Optional[Iterable[LootItem]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[KillRecord]:
        """Commit a pending kill with the selected loot (all loot when omitted)."""
        if not self._require_active("confirm_kill"):
            return None
        kill = self.get_pending_kill(event_id)
        if kill is None:
            logger.info("No pending kill with eventId %s to confirm.", event_id)
            return None
        loot = (
            list(kill.victim_inventory)
            if selected_loot is None
            else self._restrict_to_inventory(kill, selected_loot)
        )
        self.pending_kills.remove(kill)
        kill.loot_confirmed = loot
        kill.status = KillStatus.CONFIRMED
        self.kills.append(kill)
        self.update_participant_stats(kill)
        self.loot_chest.add_loot(loot, now=now)
        return kill

    @staticmethod
    def _restrict_to_inventory(
        kill: KillRecord, selected: Iterable[LootItem]
    ) -> list[LootItem]:
        available: dict[ChestKey, int] = {}
        for item in kill.victim_inventory:
            available[item.key] = available.get(item.key, 0) + item.count
        accepted: list[LootItem] = []
        for item in selected:
            remaining = available.get(item.key, 0)
            if remaining <= 0:
                logger.warning(
                    "Ignoring %s for kill %s: not in the victim inventory.",
                    item.key,
                    kill.event_id,
                )
                continue
            count = min(item.count, remaining)
            available[item.key] = remaining - count
            accepted.append(item if count == item.count else replace(item, count=count))
        return accepted

    def discard_kill(self, event_id: int) -> bool:
        if not self._require_active("discard_kill"):
            return False
        before = len(self.pending_kills)
        self.pending_kills = [k for k in self.pending_kills if k.event_id != event_id]
        if len(self.pending_kills) == before:
            logger.info("No pending kill with eventId %s to discard.", event_id)
            return False
        return True

    def cleanup_pending_kills(self) -> CleanupResult:
        """Drop duplicate and pre-start pending kills carried over in a snapshot."""
        result = CleanupResult()
        confirmed_ids = {k.event_id for k in self.kills}
        seen: set[int] = set()
        kept: list[KillRecord] = []
        for kill in self.pending_kills:
            if kill.event_id in seen or kill.event_id in confirmed_ids:
                result.duplicates += 1
                continue
            if kill.timestamp < self.start_time:
                result.stale += 1
                continue
            seen.add(kill.event_id)
            kept.append(kill)
        self.pending_kills = kept
        if result.changed:
            logger.info(
                "Removed %d duplicate and %d stale pending kills from %s.",
                result.duplicates,
                result.stale,
                self.id,
            )
        return result

    def advance_cursor(self, event_id: int) -> bool:
        if not self._require_active("advance_cursor"):
            return False
        if event_id <= self.last_event_id:
            return False
        self.last_event_id = event_id
        return True

    # Activity lifecycle

    def set_city(self, city: str) -> bool:
        if not self._require_active("set_city"):
            return False
        self.city = city
        self.loot_chest.city = city
        return True

    def complete(self, now: Optional[datetime] = None) -> bool:
        return self._finish(ActivityStatus.COMPLETED, now)

    def cancel(self, now: Optional[datetime] = None) -> bool:
        return self._finish(ActivityStatus.CANCELLED, now)

    def _finish(self, status: ActivityStatus, now: Optional[datetime]) -> bool:
        if not self.is_active:
            return False
        self.end_time = now or utcnow()
        self.status = status
        for participant in self.participants:
            if not participant.has_left:
                participant.refresh_active_time(self.end_time)
        return True

    def summary(self, now: Optional[datetime] = None) -> dict[str, Any]:
        return {
            "totalKills": len(self.kills),
            "totalPendingKills": len(self.pending_kills),
            "totalFame": sum(k.victim.death_fame for k in self.kills),
            "totalLoot": sum(len(k.loot_confirmed) for k in self.kills),
            "duration": int(self.duration(now).total_seconds() * 1000),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time),
            "status": self.status.value,
            "city": self.city,
            "participants": [p.to_dict() for p in self.participants],
            "kills": [k.to_dict() for k in self.kills],
            "pendingKills": [k.to_dict() for k in self.pending_kills],
            "lastEventId": self.last_event_id,
            "lootChest": self.loot_chest.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Activity":
        city = data.get("city") or DEFAULT_CITY
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            start_time=parse_timestamp(data["startTime"]),
            end_time=parse_optional_timestamp(data.get("endTime")),
            status=ActivityStatus(data.get("status") or ActivityStatus.ACTIVE.value),
            city=city,
            participants=[Participant.from_dict(p) for p in data.get("participants") or []],
            kills=[KillRecord.from_dict(k) for k in data.get("kills") or []],
            pending_kills=[
                KillRecord.from_dict(k) for k in data.get("pendingKills") or []
            ],
            last_event_id=int(data.get("lastEventId") or 0),
            loot_chest=LootChest.from_dict(data.get("lootChest") or {}, city=city),
        )
