from loot_tracker.normalization import (
    find_name_mismatches,
    normalize_member_name,
    parse_member_names,
)

from conftest import make_event


def test_parse_member_names_splits_trims_and_dedupes() -> None:
    text = " Alice \nBob,Carol\r\n\nAlice\n  \nDave , Bob"

    assert parse_member_names(text) == ["Alice", "Bob", "Carol", "Dave"]


def test_normalize_member_name_drops_blanks() -> None:
    assert normalize_member_name("  Sir Lancelot ") == "SirLancelot"
    assert normalize_member_name("   ") is None
    assert normalize_member_name(None) is None


def test_find_name_mismatches_reports_near_misses_only() -> None:
    events = [
        make_event(1, killer="Alice", assists=["Bobby"]),
        make_event(2, killer="Carol"),
    ]

    mismatches = find_name_mismatches(events, ["alice", "Bob", "Carol", "Zed"])

    assert ("alice", "Alice") in mismatches
    assert ("Bob", "Bobby") in mismatches
    assert not any(target in ("Carol", "Zed") for target, _ in mismatches)
