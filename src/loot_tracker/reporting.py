"""Console summaries of the current activity and the activity history."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from .activity import Activity
from .models import KillRecord, parse_optional_timestamp
from .valuation import format_price


class ActivitySummaryPrinter:
    """Render human-readable activity summaries in the console."""

    def print_activity(self, activity: Optional[Activity], now: Optional[datetime] = None) -> None:
        if activity is None:
            print("No activity in progress.")
            return

        summary = activity.summary(now)
        print(f"{activity.name} [{activity.status.value}] in {activity.city}")
        print("-" * 50)
        print(f"Duration:       {format_duration(activity.duration(now))}")
        print(f"Kills:          {summary['totalKills']} confirmed, "
              f"{summary['totalPendingKills']} pending")
        print(f"Fame:           {summary['totalFame']:,}")
        print(f"Last event id:  {activity.last_event_id}")

        chest = activity.loot_chest
        print(f"{chest.name}:     {chest.total_items} items "
              f"({len(chest.items)} stacks), {format_price(chest.total_value)} silver")
        print()

        if activity.participants:
            print("Participants:")
            for participant in activity.participants:
                state = "left" if participant.has_left else (
                    "paused" if participant.is_paused else "active"
                )
                share = activity.participation_percentage(participant.name, now)
                active = activity.participant_active_time(participant.name, now)
                stats = participant.stats
                print(
                    f"  {participant.name:<20} {state:<7} {format_duration(active)} "
                    f"{share:5.1f}%  K/A/D {stats.kills}/{stats.assists}/{stats.deaths}"
                )

        if activity.pending_kills:
            print()
            print("Pending kills:")
            for kill in activity.pending_kills:
                print(f"  {format_kill(kill)}")

    def print_history(self, history: Iterable[dict[str, Any]], limit: int = 10) -> None:
        entries = list(history)
        if not entries:
            print("No finished activities.")
            return
        print(f"{'Activity':<30} {'Status':<10} {'Kills':>5} {'Duration':>10} {'Chest':>10}")
        for entry in entries[:limit]:
            start = parse_optional_timestamp(entry.get("startTime"))
            end = parse_optional_timestamp(entry.get("endTime"))
            duration = (end - start) if start and end else timedelta(0)
            chest_value = (entry.get("lootChest") or {}).get("totalValue") or 0
            print(
                f"{(entry.get('name') or '')[:30]:<30} {entry.get('status', ''):<10} "
                f"{len(entry.get('kills') or []):>5} {format_duration(duration):>10} "
                f"{format_price(chest_value):>10}"
            )


def format_kill(kill: KillRecord) -> str:
    return (
        f"#{kill.event_id} {kill.timestamp:%H:%M:%S} {kill.killer.name} killed "
        f"{kill.victim.name} ({kill.victim.guild_name or 'no guild'}), "
        f"{len(kill.victim_inventory)} items"
    )


def format_duration(value: timedelta | float) -> str:
    seconds = value.total_seconds() if isinstance(value, timedelta) else value
    total_seconds = max(0, int(round(seconds)))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
