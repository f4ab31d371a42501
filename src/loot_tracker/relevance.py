"""Decide which feed events belong to the current activity."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .events import KillEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FilterStats:
    included: int = 0
    already_processed: int = 0
    before_activity: int = 0
    no_participation: int = 0
    wrong_guild: int = 0
    guilds_seen: Counter = field(default_factory=Counter)


def filter_activity_kills(
    events: Sequence[KillEvent],
    active_participant_names: Iterable[str],
    *,
    last_event_id: int = 0,
    include_all: bool = False,
    guild_name: Optional[str] = None,
    activity_start_time: Optional[datetime] = None,
    stats: Optional[FilterStats] = None,
) -> list[KillEvent]:
    """Return the events involving the roster, in input order.

    When ``guild_name`` is given an event must match the roster *and* carry
    that guild tag on the killer or a participant.
    """
    names = set(active_participant_names)
    stats = stats if stats is not None else FilterStats()
    if not names:
        logger.warning("No active participants; no kills can match.")
        return []

    selected: list[KillEvent] = []
    for event in events:
        if event.killer.guild_name:
            stats.guilds_seen[event.killer.guild_name] += 1
        if not include_all and event.event_id <= last_event_id:
            stats.already_processed += 1
            continue
        if activity_start_time is not None and event.timestamp < activity_start_time:
            stats.before_activity += 1
            continue
        if not event.involves(names):
            stats.no_participation += 1
            continue
        if guild_name and not event.involves_guild(guild_name):
            stats.wrong_guild += 1
            continue
        stats.included += 1
        selected.append(event)

    logger.debug(
        "Filter results: %d included, %d already processed, %d before activity, "
        "%d without participants, %d wrong guild.",
        stats.included,
        stats.already_processed,
        stats.before_activity,
        stats.no_participation,
        stats.wrong_guild,
    )
    return selected


def filter_other_guild_kills(
    events: Sequence[KillEvent],
    guild_member_names: Iterable[str],
    activity_participant_names: Iterable[str] = (),
    activity_start_time: Optional[datetime] = None,
) -> list[KillEvent]:
    """Guild kills that belong to nobody in the current activity.

    Events at or after the activity start are left to the activity view.
    """
    members = set(guild_member_names)
    in_activity = set(activity_participant_names)
    selected: list[KillEvent] = []
    for event in events:
        if not event.involves(members):
            continue
        if activity_start_time is not None and event.timestamp >= activity_start_time:
            continue
        if in_activity and event.involves(in_activity):
            continue
        selected.append(event)
    return selected
