from datetime import timedelta

from loot_tracker.relevance import FilterStats, filter_activity_kills, filter_other_guild_kills

from conftest import GUILD, T0, make_event


def test_scenario_only_participant_kill_after_start_matches() -> None:
    events = [
        make_event(10, killer="A", timestamp=T0 + timedelta(seconds=1)),
        make_event(9, killer="C", timestamp=T0 - timedelta(seconds=5)),
    ]

    selected = filter_activity_kills(
        events, ["A", "B"], include_all=True, activity_start_time=T0
    )

    assert [e.event_id for e in selected] == [10]


def test_assist_counts_as_participation() -> None:
    events = [make_event(11, killer="Stranger", assists=["B"])]

    assert filter_activity_kills(events, ["B"]) == events


def test_already_processed_events_skipped_unless_include_all() -> None:
    events = [make_event(5), make_event(6), make_event(7)]
    stats = FilterStats()

    selected = filter_activity_kills(events, ["Alice"], last_event_id=6, stats=stats)

    assert [e.event_id for e in selected] == [7]
    assert stats.already_processed == 2
    assert len(filter_activity_kills(events, ["Alice"], last_event_id=6, include_all=True)) == 3


def test_guild_filter_requires_both_roster_and_guild_match() -> None:
    events = [
        make_event(1, killer="Alice"),
        make_event(2, killer="Alice", killer_guild="Old Guild"),
        make_event(3, killer="Stranger"),
    ]
    stats = FilterStats()

    selected = filter_activity_kills(events, ["Alice"], guild_name=GUILD, stats=stats)

    assert [e.event_id for e in selected] == [1]
    assert stats.wrong_guild == 1
    assert stats.no_participation == 1
    assert stats.guilds_seen[GUILD] == 2


def test_no_participants_matches_nothing() -> None:
    assert filter_activity_kills([make_event(1)], []) == []


def test_input_order_is_preserved() -> None:
    events = [make_event(30), make_event(10), make_event(20)]

    selected = filter_activity_kills(events, ["Alice"])

    assert [e.event_id for e in selected] == [30, 10, 20]


def test_other_guild_kills_exclude_current_activity() -> None:
    events = [
        make_event(1, killer="Dave", timestamp=T0 - timedelta(hours=1)),
        make_event(2, killer="Alice", timestamp=T0 - timedelta(hours=1)),
        make_event(3, killer="Dave", timestamp=T0 + timedelta(minutes=5)),
        make_event(4, killer="Stranger", timestamp=T0 - timedelta(hours=1)),
    ]

    selected = filter_other_guild_kills(
        events, ["Alice", "Dave"], ["Alice"], activity_start_time=T0
    )

    assert [e.event_id for e in selected] == [1]


def test_other_guild_kills_without_activity() -> None:
    events = [make_event(1, killer="Dave"), make_event(2, killer="Stranger")]

    assert [e.event_id for e in filter_other_guild_kills(events, ["Dave"])] == [1]
