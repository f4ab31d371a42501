"""Activity reconciliation engine.

Owns the guild configuration and the current activity, and applies poll
results and operator decisions to them. Collaborators (kill feed, price feed,
persistence) are injected; nothing here is global.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from .activity import Activity
from .config import TrackerSettings
from .cursor import GapAwareCursor
from .db import CONFIG_KEY, CURRENT_ACTIVITY_KEY, HISTORY_KEY, Store
from .errors import ImportFormatError, Notice, NoticeKind, TrackerError
from .events import to_kill_record
from .export import build_envelope, parse_envelope
from .models import GuildConfig, GuildMember, KillRecord, LootItem, utcnow
from .normalization import find_name_mismatches
from .relevance import FilterStats, filter_activity_kills, filter_other_guild_kills
from .sources import EventSource
from .valuation import PriceSource, attach_prices

logger = logging.getLogger(__name__)

MAX_NOTICES = 200


class GuildDirectory(Protocol):
    def fetch_guild_members(self, guild_id: str) -> list[dict[str, Any]]: ...


@dataclass(slots=True)
class PollReport:
    skipped: bool = False
    include_all: bool = False
    fetched: int = 0
    relevant: int = 0
    added: int = 0
    duplicates: int = 0
    last_event_id: int = 0
    notices: list[Notice] = field(default_factory=list)


class TrackerEngine:
    """Coordinates polling, kill adjudication and persistence for one guild.

    Not re-entrant: at most one poll runs at a time and a second request is
    dropped. Feed and price I/O happens outside the state lock, so every
    apply step re-checks that the activity it read is still current and
    active before touching it.
    """

    def __init__(
        self,
        source: EventSource,
        prices: PriceSource,
        store: Store,
        settings: Optional[TrackerSettings] = None,
        *,
        directory: Optional[GuildDirectory] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.prices = prices
        self.store = store
        self.settings = settings or TrackerSettings()
        self.directory = directory
        self.clock = clock
        self.config: Optional[GuildConfig] = None
        self.current_activity: Optional[Activity] = None
        self._poll_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._notices: deque[Notice] = deque(maxlen=MAX_NOTICES)

    # Notices and persistence

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices)

    def notify(self, kind: NoticeKind, message: str) -> Notice:
        notice = Notice(kind=kind, message=message, created_at=self.clock())
        self._notices.append(notice)
        if kind in (NoticeKind.GAP, NoticeKind.SATURATED, NoticeKind.TRANSPORT,
                    NoticeKind.NAME_MISMATCH):
            logger.warning("%s", message)
        else:
            logger.info("%s", message)
        return notice

    def load(self) -> Optional[Activity]:
        """Restore configuration and the current activity from the store."""
        with self._state_lock:
            raw_config = self.store.load(CONFIG_KEY)
            self.config = GuildConfig.from_dict(raw_config) if raw_config else None
            raw_activity = self.store.load(CURRENT_ACTIVITY_KEY)
            if not raw_activity:
                self.current_activity = None
                return None
            activity = Activity.from_dict(raw_activity)
            self.current_activity = activity
            if activity.cleanup_pending_kills().changed:
                self._save_activity()
            logger.info(
                "Restored activity %s (%s) at lastEventId %d.",
                activity.name,
                activity.status.value,
                activity.last_event_id,
            )
            return activity

    def _save_activity(self) -> None:
        if self.current_activity is not None:
            self.store.save(CURRENT_ACTIVITY_KEY, self.current_activity.to_dict())

    def _save_config(self) -> None:
        if self.config is not None:
            self.store.save(CONFIG_KEY, self.config.to_dict())

    def history(self) -> list[dict[str, Any]]:
        return list(self.store.load(HISTORY_KEY) or [])

    def _active_activity(self, operation: str) -> Optional[Activity]:
        activity = self.current_activity
        if activity is None or not activity.is_active:
            self.notify(NoticeKind.INACTIVE, f"No active activity for {operation}.")
            return None
        return activity

    # Guild configuration

    def configure_guild(
        self,
        guild_name: str,
        member_names: Iterable[str],
        guild_id: Optional[str] = None,
    ) -> GuildConfig:
        with self._state_lock:
            config = GuildConfig(guild_name=guild_name.strip(), guild_id=guild_id or None)
            now = self.clock()
            for name in member_names:
                config.add_member(name, now=now)
            self.config = config
            self._save_config()
            return config

    def refresh_guild_members(self) -> int:
        """Replace the roster with the guild's current member list."""
        config = self.config
        if config is None or not config.guild_id or self.directory is None:
            logger.warning("Cannot refresh members without a configured guild id.")
            return 0
        try:
            members = self.directory.fetch_guild_members(config.guild_id)
        except TrackerError as exc:
            self.notify(NoticeKind.TRANSPORT, f"Guild roster unavailable: {exc}")
            return 0
        with self._state_lock:
            now = self.clock()
            refreshed: list[GuildMember] = []
            for member in members:
                existing = config.get_member(member["name"])
                refreshed.append(
                    GuildMember(
                        name=member["name"],
                        id=member.get("id"),
                        guild_name=member.get("guildName") or config.guild_name,
                        first_seen=existing.first_seen if existing else now,
                    )
                )
            config.members = refreshed
            self._save_config()
            return len(refreshed)

    # Activity lifecycle

    def start_activity(
        self,
        name: str,
        participants: Iterable[str],
        city: Optional[str] = None,
    ) -> Optional[Activity]:
        with self._state_lock:
            running = self.current_activity
            if running is not None and running.is_active:
                self.notify(
                    NoticeKind.ACTIVITY_RUNNING,
                    f"Activity {running.name!r} is still active; end it first.",
                )
                return None
            activity = Activity.create(
                name,
                participants,
                city=city or self.settings.default_city,
                now=self.clock(),
            )
            self.current_activity = activity
            self._save_activity()
            logger.info(
                "Started activity %s with %d participants in %s.",
                activity.name,
                len(activity.participants),
                activity.city,
            )
            return activity

    def complete_activity(self) -> Optional[Activity]:
        return self._finish_activity(cancel=False)

    def cancel_activity(self) -> Optional[Activity]:
        return self._finish_activity(cancel=True)

    def _finish_activity(self, *, cancel: bool) -> Optional[Activity]:
        with self._state_lock:
            activity = self._active_activity("cancel" if cancel else "complete")
            if activity is None:
                return None
            now = self.clock()
            if cancel:
                activity.cancel(now)
            else:
                activity.complete(now)
            history = self.history()
            history.insert(0, activity.to_dict())
            self.store.save(HISTORY_KEY, history)
            self.store.remove(CURRENT_ACTIVITY_KEY)
            self.current_activity = None
            logger.info("Activity %s %s.", activity.name, activity.status.value)
            return activity

    def set_city(self, city: str) -> bool:
        with self._state_lock:
            activity = self._active_activity("set_city")
            if activity is None or not activity.set_city(city):
                return False
            self._save_activity()
            return True

    def rename_chest(self, name: str) -> bool:
        with self._state_lock:
            activity = self._active_activity("rename_chest")
            if activity is None:
                return False
            activity.loot_chest.rename(name)
            self._save_activity()
            return True

    # Participant ledger

    def add_participant(self, name: str) -> bool:
        return self._participant_op("add_participant", name)

    def pause_participant(self, name: str) -> bool:
        return self._participant_op("pause_participant", name)

    def resume_participant(self, name: str) -> bool:
        return self._participant_op("resume_participant", name)

    def remove_participant(self, name: str) -> bool:
        return self._participant_op("remove_participant", name)

    def _participant_op(self, operation: str, name: str) -> bool:
        with self._state_lock:
            activity = self._active_activity(operation)
            if activity is None:
                return False
            changed = getattr(activity, operation)(name, now=self.clock())
            if changed:
                self._save_activity()
            return changed

    # Polling

    def poll(self, include_all: Optional[bool] = None) -> PollReport:
        """Fetch new kill events and record the relevant ones as pending kills.

        ``include_all`` defaults to True while the activity has no cursor yet.
        """
        report = PollReport()
        if not self._poll_lock.acquire(blocking=False):
            report.skipped = True
            report.notices.append(
                self.notify(NoticeKind.POLL_BUSY, "A poll is already running; skipped.")
            )
            return report
        try:
            return self._poll(include_all, report)
        finally:
            self._poll_lock.release()

    def _poll(self, include_all: Optional[bool], report: PollReport) -> PollReport:
        with self._state_lock:
            activity = self.current_activity
            if activity is None or not activity.is_active:
                logger.debug("Skipping poll: no active activity.")
                report.skipped = True
                return report
            last_event_id = activity.last_event_id
            start_time = activity.start_time
            names = activity.active_participant_names()
            guild_name = self.config.guild_name if self.config else None
            guild_id = self.config.guild_id if self.config else None

        if include_all is None:
            include_all = last_event_id == 0
        report.include_all = include_all

        cursor = GapAwareCursor(self.source, self.settings, guild_id)
        try:
            window = cursor.fetch(
                0 if include_all else last_event_id, activity_start_time=start_time
            )
        except TrackerError as exc:
            report.notices.append(
                self.notify(NoticeKind.TRANSPORT, f"Kill feed unavailable: {exc}")
            )
            return report

        report.fetched = len(window.events)
        if window.partial:
            report.notices.append(
                self.notify(
                    NoticeKind.TRANSPORT,
                    f"Kill feed stopped responding after {window.pages} pages.",
                )
            )
        if not include_all and window.saturated:
            report.notices.append(
                self.notify(
                    NoticeKind.SATURATED,
                    f"Kill feed returned a full page ({window.first_page_size} events); "
                    "some kills may have been missed.",
                )
            )
        if not include_all and window.gap:
            report.notices.append(
                self.notify(
                    NoticeKind.GAP,
                    f"Gap of {window.gap} events after eventId {last_event_id} "
                    f"(oldest fetched {window.min_event_id}).",
                )
            )

        stats = FilterStats()
        relevant = filter_activity_kills(
            window.events,
            names,
            last_event_id=last_event_id,
            include_all=include_all,
            guild_name=guild_name or None,
            activity_start_time=start_time,
            stats=stats,
        )
        report.relevant = len(relevant)
        if not relevant and window.events:
            logger.info(
                "No kills matched %d participants; killer guilds seen: %s",
                len(names),
                ", ".join(f"{guild} ({count})" for guild, count in stats.guilds_seen.most_common())
                or "none",
            )
            mismatches = find_name_mismatches(window.events, names)
            if mismatches:
                pairs = ", ".join(f"{ours!r} vs {theirs!r}" for ours, theirs in mismatches)
                report.notices.append(
                    self.notify(NoticeKind.NAME_MISMATCH, f"Possible name mismatches: {pairs}")
                )

        with self._state_lock:
            if self.current_activity is not activity or not activity.is_active:
                logger.info(
                    "Activity ended while polling; discarding %d fetched events.",
                    len(window.events),
                )
                report.skipped = True
                return report
            for event in relevant:
                if activity.add_pending_kill(to_kill_record(event)):
                    report.added += 1
                else:
                    report.duplicates += 1
            if report.duplicates:
                report.notices.append(
                    self.notify(
                        NoticeKind.DUPLICATE,
                        f"Ignored {report.duplicates} kills that were already recorded.",
                    )
                )
            advanced = activity.advance_cursor(window.max_event_id)
            report.last_event_id = activity.last_event_id
            if report.added or advanced:
                self._save_activity()

        logger.info(
            "Poll fetched %d events in %d pages: %d relevant, %d new pending kills, "
            "lastEventId %d.",
            report.fetched,
            window.pages,
            report.relevant,
            report.added,
            report.last_event_id,
        )
        return report

    # Kill lifecycle

    def confirm_kill(
        self, event_id: int, selected: Optional[Sequence[LootItem]] = None
    ) -> Optional[KillRecord]:
        """Price the selected loot (all of it by default) and confirm the kill.

        Valuation is best effort: if prices cannot be fetched the loot is
        recorded with zero-value prices and the kill is still confirmed.
        """
        with self._state_lock:
            activity = self._active_activity("confirm_kill")
            if activity is None:
                return None
            kill = activity.get_pending_kill(event_id)
            if kill is None:
                self.notify(NoticeKind.UNKNOWN_KILL, f"No pending kill {event_id} to confirm.")
                return None
            loot = list(kill.victim_inventory if selected is None else selected)
            city = activity.city

        price_map = {}
        if loot:
            try:
                price_map = self.prices.get_items_prices(loot, city)
            except TrackerError as exc:
                self.notify(
                    NoticeKind.TRANSPORT,
                    f"Prices unavailable for kill {event_id}; recorded at zero value: {exc}",
                )
        priced = attach_prices(loot, price_map, city, now=self.clock())

        with self._state_lock:
            if self.current_activity is not activity or not activity.is_active:
                self.notify(
                    NoticeKind.INACTIVE, f"Activity ended before kill {event_id} was confirmed."
                )
                return None
            confirmed = activity.confirm_kill(event_id, priced, now=self.clock())
            if confirmed is None:
                self.notify(NoticeKind.UNKNOWN_KILL, f"Kill {event_id} is no longer pending.")
                return None
            self._save_activity()
            logger.info(
                "Confirmed kill %d: %d of %d items kept, chest value %d.",
                event_id,
                len(confirmed.loot_confirmed),
                len(confirmed.victim_inventory),
                activity.loot_chest.total_value,
            )
            return confirmed

    def confirm_kill_by_index(
        self, event_id: int, indices: Iterable[int]
    ) -> Optional[KillRecord]:
        """Confirm using positions in the victim inventory, as picked in a loot editor."""
        with self._state_lock:
            activity = self.current_activity
            kill = activity.get_pending_kill(event_id) if activity else None
            inventory = kill.victim_inventory if kill else ()
        selected = [inventory[i] for i in sorted(set(indices)) if 0 <= i < len(inventory)]
        return self.confirm_kill(event_id, selected)

    def discard_kill(self, event_id: int) -> bool:
        with self._state_lock:
            activity = self._active_activity("discard_kill")
            if activity is None:
                return False
            if not activity.discard_kill(event_id):
                self.notify(NoticeKind.UNKNOWN_KILL, f"No pending kill {event_id} to discard.")
                return False
            self._save_activity()
            return True

    def refresh_chest_prices(self) -> int:
        """Re-price every chest stack; returns the number of stacks updated."""
        with self._state_lock:
            activity = self._active_activity("refresh_chest_prices")
            if activity is None:
                return 0
            items = [
                LootItem(item_type=i.item_type, quality=i.quality, slot=i.slot, count=i.count)
                for i in activity.loot_chest.items.values()
            ]
            city = activity.city
        if not items:
            return 0
        try:
            price_map = self.prices.get_items_prices(items, city)
        except TrackerError as exc:
            self.notify(NoticeKind.TRANSPORT, f"Prices unavailable: {exc}")
            return 0
        with self._state_lock:
            if self.current_activity is not activity or not activity.is_active:
                return 0
            updated = activity.loot_chest.apply_prices(price_map, now=self.clock())
            self._save_activity()
            return updated

    # Secondary views

    def load_other_guild_kills(self, offset: int = 0) -> list[KillRecord]:
        """Guild kills before the activity, or by members outside it."""
        with self._state_lock:
            config = self.config
            if config is None:
                return []
            activity = self.current_activity
            active = activity is not None and activity.is_active
            names = activity.active_participant_names() if active else []
            start_time = activity.start_time if active else None
        try:
            if config.guild_id:
                events = self.source.fetch_guild_events(
                    config.guild_id, self.settings.page_size, offset
                )
            else:
                events = self.source.fetch_events(self.settings.page_size, offset)
        except TrackerError as exc:
            self.notify(NoticeKind.TRANSPORT, f"Kill feed unavailable: {exc}")
            return []
        selected = filter_other_guild_kills(
            events, config.member_names, names, activity_start_time=start_time
        )
        return [to_kill_record(event) for event in selected]

    # Export / import

    def export_data(self) -> dict[str, Any]:
        with self._state_lock:
            return build_envelope(
                config=self.config.to_dict() if self.config else None,
                current_activity=(
                    self.current_activity.to_dict() if self.current_activity else None
                ),
                history=self.history(),
                exported_at=self.clock(),
            )

    def import_data(self, data: Any, *, activity_only: bool = False) -> None:
        envelope = parse_envelope(data)
        try:
            config = GuildConfig.from_dict(envelope.config) if envelope.config else None
            raw_activity = envelope.current_activity or (
                envelope.activity if activity_only else None
            )
            activity = Activity.from_dict(raw_activity) if raw_activity else None
            history = [Activity.from_dict(entry).to_dict() for entry in envelope.history or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise ImportFormatError(f"Invalid export contents: {exc}") from exc

        with self._state_lock:
            if activity_only:
                if activity is None:
                    raise ImportFormatError("Export file contains no activity.")
                self._replace_activity(activity)
                return
            if config is not None:
                self.config = config
                self._save_config()
            if activity is not None:
                self._replace_activity(activity)
            if envelope.history is not None:
                self.store.save(HISTORY_KEY, history)

    def _replace_activity(self, activity: Activity) -> None:
        activity.cleanup_pending_kills()
        self.current_activity = activity
        self._save_activity()
