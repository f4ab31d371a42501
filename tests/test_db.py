from loot_tracker.db import (
    HISTORY_KEY,
    SqliteStore,
    database_connection,
    load_blob,
    remove_blob,
    save_blob,
)


def test_blob_upsert_replaces_value(tmp_path) -> None:
    path = tmp_path / "blobs.sqlite3"
    with database_connection(path) as conn:
        save_blob(conn, "k", "first")
        save_blob(conn, "k", "second")
        assert load_blob(conn, "k") == "second"
        assert conn.execute("SELECT COUNT(*) FROM blobs").fetchone()[0] == 1
        remove_blob(conn, "k")
        assert load_blob(conn, "k") is None


def test_store_round_trips_json(tmp_path) -> None:
    store = SqliteStore(tmp_path / "tracker.sqlite3")
    history = [{"id": "activity_1", "name": "Roam", "kills": []}]

    store.save(HISTORY_KEY, history)

    assert store.load(HISTORY_KEY) == history
    assert store.load("missing") is None


def test_store_persists_across_instances(tmp_path) -> None:
    path = tmp_path / "tracker.sqlite3"
    SqliteStore(path).save("guild_config", {"guildName": "Night Watch"})

    assert SqliteStore(path).load("guild_config") == {"guildName": "Night Watch"}

    SqliteStore(path).remove("guild_config")
    assert SqliteStore(path).load("guild_config") is None
