import logging
from datetime import timedelta

import pytest

from loot_tracker.activity import Activity
from loot_tracker.db import CONFIG_KEY, CURRENT_ACTIVITY_KEY, HISTORY_KEY, SqliteStore
from loot_tracker.engine import TrackerEngine
from loot_tracker.errors import ImportFormatError, NoticeKind
from loot_tracker.models import ActivityStatus

from conftest import GUILD, T0, FakeEventSource, FakePriceSource, make_event, raw_item

LOOT = {
    "MainHand": raw_item("T4_SWORD"),
    "Cape": raw_item("T5_CAPE"),
    "Bag": raw_item("T4_BAG", count=2),
}


def _kinds(engine: TrackerEngine) -> list[NoticeKind]:
    return [notice.kind for notice in engine.notices]


def test_start_activity_persists_and_blocks_a_second_one(engine, store) -> None:
    activity = engine.start_activity("Roam", ["A", "B"])

    assert activity.city == "Caerleon"
    assert store.load(CURRENT_ACTIVITY_KEY)["id"] == activity.id
    assert engine.start_activity("Another", ["C"]) is None
    assert _kinds(engine) == [NoticeKind.ACTIVITY_RUNNING]
    assert engine.current_activity is activity


def test_poll_scenario_keeps_participant_kill_and_advances_cursor(engine, feed) -> None:
    engine.start_activity("Roam", ["A", "B"])
    feed.publish(
        make_event(10, killer="A", timestamp=T0 + timedelta(seconds=1)),
        make_event(9, killer="C", timestamp=T0 - timedelta(seconds=5)),
    )

    report = engine.poll()

    assert report.include_all is True
    assert (report.fetched, report.relevant, report.added) == (2, 1, 1)
    assert [k.event_id for k in engine.current_activity.pending_kills] == [10]
    assert engine.current_activity.last_event_id == 10


def test_cursor_advances_even_without_relevant_kills(engine, feed, store) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A"))
    engine.poll()
    feed.publish(make_event(11, killer="Stranger"), make_event(12, killer="Other"))

    report = engine.poll()

    assert report.include_all is False
    assert report.added == 0
    assert engine.current_activity.last_event_id == 12
    assert store.load(CURRENT_ACTIVITY_KEY)["lastEventId"] == 12


def test_cursor_never_regresses_when_feed_returns_older_events(engine, feed) -> None:
    engine.start_activity("Roam", ["A"])
    engine.current_activity.last_event_id = 50
    feed.publish(make_event(40, killer="A"))

    engine.poll()

    assert engine.current_activity.last_event_id == 50
    assert engine.current_activity.pending_kills == []


def test_rescan_reports_duplicates(engine, feed) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A"), make_event(11, killer="A"))
    engine.poll()

    report = engine.poll(include_all=True)

    assert (report.added, report.duplicates) == (0, 2)
    assert NoticeKind.DUPLICATE in _kinds(engine)
    assert len(engine.current_activity.pending_kills) == 2


def test_gap_and_saturated_page_are_reported(engine, feed) -> None:
    engine.start_activity("Roam", ["Alice"])
    engine.current_activity.last_event_id = 100
    feed.publish(*(make_event(i) for i in range(101, 131)))

    report = engine.poll()

    kinds = [n.kind for n in report.notices]
    assert NoticeKind.GAP in kinds
    assert NoticeKind.SATURATED in kinds
    assert report.added == 20
    assert engine.current_activity.last_event_id == 130


def test_full_page_without_gap_still_warns(engine, feed) -> None:
    engine.start_activity("Roam", ["Alice"])
    engine.current_activity.last_event_id = 100
    feed.publish(*(make_event(i) for i in range(101, 106)))

    report = engine.poll()

    kinds = [n.kind for n in report.notices]
    assert NoticeKind.SATURATED in kinds
    assert NoticeKind.GAP not in kinds
    assert engine.current_activity.last_event_id == 105


def test_unmatched_poll_logs_guilds_seen(engine, feed, caplog) -> None:
    engine.start_activity("Roam", ["Alice"])
    feed.publish(make_event(10, killer="Zed", killer_guild="Red Hand"))

    with caplog.at_level(logging.INFO, logger="loot_tracker.engine"):
        report = engine.poll()

    assert report.relevant == 0
    assert "Red Hand" in caplog.text


def test_feed_outage_leaves_state_untouched(engine, feed) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A"))
    feed.fail_all = True

    report = engine.poll()

    assert [n.kind for n in report.notices] == [NoticeKind.TRANSPORT]
    assert engine.current_activity.last_event_id == 0
    assert engine.current_activity.pending_kills == []


def test_busy_poll_is_skipped(engine, feed) -> None:
    engine.start_activity("Roam", ["A"])
    engine._poll_lock.acquire()
    try:
        report = engine.poll()
    finally:
        engine._poll_lock.release()

    assert report.skipped
    assert [n.kind for n in report.notices] == [NoticeKind.POLL_BUSY]
    assert feed.calls == []


def test_poll_without_activity_is_skipped(engine, feed) -> None:
    assert engine.poll().skipped
    assert feed.calls == []


def test_activity_ended_during_fetch_discards_results(engine, feed) -> None:
    class EndingFeed(FakeEventSource):
        def fetch_events(self, limit, offset):
            engine.cancel_activity()
            return super().fetch_events(limit, offset)

    ending = EndingFeed([make_event(10, killer="A")])
    engine.source = ending
    activity = engine.start_activity("Roam", ["A"])

    report = engine.poll()

    assert report.skipped
    assert activity.status is ActivityStatus.CANCELLED
    assert activity.pending_kills == []
    assert activity.last_event_id == 0


def test_name_mismatch_hint_when_nothing_matches(engine, feed) -> None:
    engine.start_activity("Roam", ["alice"])
    feed.publish(make_event(10, killer="Alice"))

    report = engine.poll()

    assert report.relevant == 0
    mismatch = next(n for n in report.notices if n.kind is NoticeKind.NAME_MISMATCH)
    assert "'alice' vs 'Alice'" in mismatch.message


def test_configured_guild_filters_and_uses_guild_feed(engine, feed, store) -> None:
    engine.configure_guild(GUILD, ["A", "B"], guild_id="g-1")
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A"), make_event(11, killer="A", killer_guild="Old"))

    engine.poll()

    assert [k.event_id for k in engine.current_activity.pending_kills] == [10]
    assert {guild_id for guild_id, _, _ in feed.calls} == {"g-1"}
    assert store.load(CONFIG_KEY)["guildId"] == "g-1"


def test_confirm_prices_loot_and_fills_chest(engine, feed, prices, store) -> None:
    engine.start_activity("Roam", ["A"], city="Lymhurst")
    feed.publish(make_event(10, killer="A", equipment=LOOT))
    engine.poll()

    kill = engine.confirm_kill(10)

    assert kill.confirmed_count == 4
    assert prices.calls[0][1] == "Lymhurst"
    assert {i.item_type: i.price.sell_price for i in kill.loot_confirmed} == {
        "T4_SWORD": 1000,
        "T5_CAPE": 4000,
        "T4_BAG": 250,
    }
    chest = engine.current_activity.loot_chest
    assert chest.total_value == 1000 + 4000 + 2 * 250
    assert store.load(CURRENT_ACTIVITY_KEY)["lootChest"]["totalValue"] == chest.total_value
    assert engine.current_activity.pending_kills == []


def test_confirm_with_price_outage_records_zero_value(engine, feed, prices) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A", equipment=LOOT))
    engine.poll()
    prices.fail = True

    kill = engine.confirm_kill(10)

    assert kill is not None
    assert all(not item.price.found for item in kill.loot_confirmed)
    assert engine.current_activity.loot_chest.total_value == 0
    assert NoticeKind.TRANSPORT in _kinds(engine)


def test_confirm_selected_indices_reports_destroyed(engine, feed) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A", equipment=LOOT))
    engine.poll()

    kill = engine.confirm_kill_by_index(10, [1, 7])

    assert [i.item_type for i in kill.loot_confirmed] == ["T5_CAPE"]
    assert engine.current_activity.loot_chest.total_items == 1
    assert kill.destroyed_count == 3


def test_unknown_kill_operations_record_notices(engine) -> None:
    engine.start_activity("Roam", ["A"])

    assert engine.confirm_kill(999) is None
    assert engine.discard_kill(999) is False
    assert _kinds(engine) == [NoticeKind.UNKNOWN_KILL, NoticeKind.UNKNOWN_KILL]


def test_discard_removes_pending_kill(engine, feed, store) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A"))
    engine.poll()

    assert engine.discard_kill(10) is True
    assert store.load(CURRENT_ACTIVITY_KEY)["pendingKills"] == []


def test_participant_operations_persist(engine, clock, store) -> None:
    engine.start_activity("Roam", ["A"])
    clock.advance(minutes=5)
    assert engine.add_participant("B") is True
    assert engine.pause_participant("B") is True
    clock.advance(minutes=5)
    assert engine.resume_participant("B") is True
    assert engine.remove_participant("A") is True

    saved = {p["name"]: p for p in store.load(CURRENT_ACTIVITY_KEY)["participants"]}
    assert saved["A"]["leftAt"] is not None
    assert len(saved["B"]["pauseHistory"]) == 1
    assert engine.add_participant("B") is False


def test_complete_moves_activity_to_history(engine, clock, store) -> None:
    first = engine.start_activity("First", ["A"])
    clock.advance(hours=1)
    engine.complete_activity()
    second = engine.start_activity("Second", ["A"])
    engine.cancel_activity()

    history = engine.history()
    assert [h["id"] for h in history] == [second.id, first.id]
    assert history[1]["status"] == "completed"
    assert history[0]["status"] == "cancelled"
    assert store.load(CURRENT_ACTIVITY_KEY) is None
    assert engine.current_activity is None
    assert first.get_participant("A").total_active_time == timedelta(hours=1)


def test_operations_without_activity_record_inactive(engine) -> None:
    assert engine.complete_activity() is None
    assert engine.add_participant("A") is False
    assert engine.set_city("Martlock") is False
    assert set(_kinds(engine)) == {NoticeKind.INACTIVE}


def test_city_and_chest_name_changes(engine, feed, prices, store) -> None:
    engine.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A", equipment=LOOT))
    engine.poll()
    engine.confirm_kill(10)

    assert engine.set_city("Martlock") is True
    assert engine.rename_chest("Castle") is True
    prices.prices["T5_CAPE"] = 6000
    updated = engine.refresh_chest_prices()

    saved = store.load(CURRENT_ACTIVITY_KEY)
    assert saved["city"] == "Martlock"
    assert saved["lootChest"]["name"] == "Castle"
    assert updated == 3
    assert prices.calls[-1][1] == "Martlock"
    assert engine.current_activity.loot_chest.total_value == 1000 + 6000 + 500


def test_load_restores_and_cleans_snapshot(feed, prices, store, settings, clock) -> None:
    first = TrackerEngine(feed, prices, store, settings, clock=clock)
    first.configure_guild(GUILD, ["A"])
    first.start_activity("Roam", ["A"])
    feed.publish(make_event(10, killer="A"))
    first.poll()
    raw = store.load(CURRENT_ACTIVITY_KEY)
    raw["pendingKills"].append(dict(raw["pendingKills"][0]))
    store.save(CURRENT_ACTIVITY_KEY, raw)

    second = TrackerEngine(feed, prices, store, settings, clock=clock)
    activity = second.load()

    assert activity.last_event_id == 10
    assert [k.event_id for k in activity.pending_kills] == [10]
    assert len(store.load(CURRENT_ACTIVITY_KEY)["pendingKills"]) == 1
    assert second.config.member_names == ["A"]


def test_other_guild_kills(engine, feed) -> None:
    engine.configure_guild(GUILD, ["A", "Dave"])
    engine.start_activity("Roam", ["A"])
    feed.publish(
        make_event(1, killer="Dave", timestamp=T0 - timedelta(hours=2)),
        make_event(2, killer="A", timestamp=T0 - timedelta(hours=2)),
        make_event(3, killer="Dave"),
    )

    kills = engine.load_other_guild_kills()

    assert [k.event_id for k in kills] == [1]


def test_refresh_guild_members_replaces_roster(engine, feed, clock) -> None:
    engine.configure_guild(GUILD, ["Alice", "Gone"], guild_id="g-1")
    clock.advance(days=1)
    feed.members = [
        {"id": "1", "name": "Alice", "guildName": GUILD},
        {"id": "2", "name": "Newbie", "guildName": GUILD},
    ]

    assert engine.refresh_guild_members() == 2

    assert engine.config.member_names == ["Alice", "Newbie"]
    assert engine.config.get_member("Alice").first_seen == T0
    assert engine.config.get_member("Newbie").first_seen == T0 + timedelta(days=1)


def test_refresh_guild_members_outage(engine, feed) -> None:
    engine.configure_guild(GUILD, ["Alice"], guild_id="g-1")
    feed.fail_all = True

    assert engine.refresh_guild_members() == 0
    assert engine.config.member_names == ["Alice"]
    assert _kinds(engine) == [NoticeKind.TRANSPORT]


def test_export_then_import_into_fresh_store(engine, feed, settings, clock, tmp_path) -> None:
    engine.configure_guild(GUILD, ["A"])
    engine.start_activity("Old", ["A"])
    engine.complete_activity()
    clock.advance(seconds=30)
    engine.start_activity("Current", ["A"])
    feed.publish(make_event(10, killer="A", equipment=LOOT))
    engine.poll()
    engine.confirm_kill(10)

    data = engine.export_data()
    assert data["version"] == "1.0"
    assert data["exportDate"].endswith("Z")

    other_store = SqliteStore(tmp_path / "other.sqlite3")
    other = TrackerEngine(feed, FakePriceSource(), other_store, settings, clock=clock)
    other.import_data(data)

    assert other.config.guild_name == GUILD
    assert other.current_activity.name == "Current"
    assert other.current_activity.loot_chest.total_value == 5500
    assert [h["name"] for h in other_store.load(HISTORY_KEY)] == ["Old"]


def test_import_single_activity_form(engine) -> None:
    activity = Activity.create("Solo", ["A"], now=T0)

    engine.import_data({"version": 1, "activity": activity.to_dict()}, activity_only=True)

    assert engine.current_activity.id == activity.id


def test_import_rejects_missing_version(engine) -> None:
    with pytest.raises(ImportFormatError):
        engine.import_data({"history": []})
    with pytest.raises(ImportFormatError):
        engine.import_data(["not", "an", "object"])
    with pytest.raises(ImportFormatError):
        engine.import_data({"version": "1.0", "history": [{"name": "no start"}]})
