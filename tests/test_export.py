import pytest

from loot_tracker.errors import ImportFormatError
from loot_tracker.export import EXPORT_VERSION, build_envelope, parse_envelope

from conftest import T0


def test_build_envelope_shape() -> None:
    envelope = build_envelope(
        config={"guildName": "Night Watch"},
        current_activity=None,
        history=[],
        exported_at=T0,
    )

    assert envelope == {
        "version": EXPORT_VERSION,
        "config": {"guildName": "Night Watch"},
        "currentActivity": None,
        "history": [],
        "exportDate": "2024-05-01T18:00:00Z",
    }


def test_parse_envelope_accepts_camel_case_and_numeric_version() -> None:
    envelope = parse_envelope(
        {"version": 1.0, "currentActivity": {"id": "a"}, "exportDate": "x", "extra": True}
    )

    assert envelope.version == "1.0"
    assert envelope.current_activity == {"id": "a"}
    assert envelope.history is None


@pytest.mark.parametrize(
    "payload",
    [None, [], {"config": {}}, {"version": ""}, {"version": "1.0", "history": "nope"}],
)
def test_parse_envelope_rejects_invalid_files(payload) -> None:
    with pytest.raises(ImportFormatError):
        parse_envelope(payload)
