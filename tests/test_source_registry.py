import sqlite3

import pytest

from db.sources import SourceRegistry


def test_registry_orders_enabled_sources_by_priority_then_name(tmp_path) -> None:
    registry = SourceRegistry(str(tmp_path / "sources.sqlite"))
    registry.create("Bravo", "b = 1", priority=5)
    registry.create("Alpha", "a = 1", priority=5)
    registry.create("Charlie", "c = 1", priority=10)
    registry.create("Disabled", "d = 1", priority=99, enabled=False)

    enabled = registry.list_enabled_by_priority()

    assert [record.name for record in enabled] == ["Charlie", "Alpha", "Bravo"]
    assert [record.name for record in registry.list_sources()] == ["Disabled", "Charlie", "Alpha", "Bravo"]


def test_registry_create_and_get_round_trip(tmp_path) -> None:
    registry = SourceRegistry(str(tmp_path / "sources.sqlite"))

    record = registry.create("  Main  ", "value = 1", category="music", priority=3)

    loaded = registry.get(record.id)
    assert loaded == record
    assert loaded.name == "Main"
    assert loaded.enabled is True
    assert loaded.to_dict(include_script=False).get("script") is None
    assert registry.get("") is None
    assert registry.get("missing") is None


def test_registry_requires_name_and_script(tmp_path) -> None:
    registry = SourceRegistry(str(tmp_path / "sources.sqlite"))

    with pytest.raises(ValueError):
        registry.create("", "value = 1")
    with pytest.raises(ValueError):
        registry.create("Name", "   ")


def test_registry_update_toggle_and_delete(tmp_path) -> None:
    registry = SourceRegistry(str(tmp_path / "sources.sqlite"))
    record = registry.create("Main", "value = 1")

    updated = registry.update(record.id, priority=7, script="value = 2")
    assert updated.priority == 7
    assert updated.script == "value = 2"

    toggled = registry.toggle(record.id)
    assert toggled.enabled is False
    assert registry.list_enabled_by_priority() == []

    assert registry.update("missing", priority=1) is None
    with pytest.raises(ValueError):
        registry.update(record.id, owner="someone")

    assert registry.delete(record.id) is True
    assert registry.delete(record.id) is False


def test_registry_reads_db_path_from_environment(tmp_path, monkeypatch) -> None:
    db_path = tmp_path / "env.sqlite"
    monkeypatch.setenv("MUSIC_SOURCES_DB_PATH", str(db_path))

    SourceRegistry().create("Main", "value = 1")

    conn = sqlite3.connect(str(db_path))
    try:
        count = conn.execute("SELECT COUNT(*) FROM sources").fetchone()[0]
    finally:
        conn.close()
    assert count == 1
