import json

import pytest

from conftest import FakeEC
from swarmboard.categories import (
    DEFAULT_CATEGORY,
    Category,
    CategoryStore,
    ec_color_to_hex,
    hex_color_to_ec,
    translate_path,
)
from swarmboard.errors import CategoryError


@pytest.mark.asyncio
async def test_load_without_file_creates_default(tmp_path):
    store = CategoryStore(tmp_path / "categories.json")
    await store.load()

    assert store.get_by_name(DEFAULT_CATEGORY) is not None
    saved = json.loads((tmp_path / "categories.json").read_text())
    assert saved["version"] == 1
    assert DEFAULT_CATEGORY in saved["categories"]


@pytest.mark.asyncio
async def test_store_round_trips_through_disk(tmp_path, store):
    store.import_category("movies", path="/data/movies", color="#112233", external_ids={"qbittorrent-h-8080": "movies"})
    await store.save()

    reloaded = CategoryStore(tmp_path / "categories.json")
    await reloaded.load()

    movies = reloaded.get_by_name("movies")
    assert movies.path == "/data/movies"
    assert movies.color == "#112233"
    assert reloaded.get_by_external_id("qbittorrent-h-8080", "movies") is movies


def test_link_keeps_one_category_per_backend_id(tmp_path):
    store = CategoryStore(tmp_path / "c.json")
    store.import_category("a", external_ids={"x": 5})
    store.import_category("b")

    store.link_external_id("b", "x", 5)

    assert store.get_by_name("a").external_ids == {}
    assert store.get_by_name("b").external_ids == {"x": 5}


def test_snapshot_excludes_default_from_unlinked(tmp_path):
    store = CategoryStore(tmp_path / "c.json")
    store._ensure_default()
    store.import_category("linked", external_ids={"x": 1})
    store.import_category("loose")

    snapshot = store.get_categories_snapshot()

    assert [c.name for c in snapshot.get_unlinked_for("x")] == ["loose"]
    assert snapshot.get_by_external_id("x", 1).name == "linked"


@pytest.mark.asyncio
async def test_default_cannot_be_renamed_or_deleted(store):
    with pytest.raises(CategoryError):
        await store.rename(DEFAULT_CATEGORY, "Other")
    with pytest.raises(CategoryError):
        await store.delete(DEFAULT_CATEGORY)


@pytest.mark.asyncio
async def test_duplicate_names_are_rejected(store):
    await store.create("tv")
    with pytest.raises(CategoryError):
        await store.create("tv")
    with pytest.raises(CategoryError):
        store.import_category("tv")


@pytest.mark.asyncio
async def test_rename_and_delete_drive_connected_backends(make_amule_manager, store):
    fake = FakeEC()
    manager = make_amule_manager(fake)
    await manager.init_client()

    await store.create("tv", path="/data/tv")
    tv_id = store.get_by_name("tv").external_ids[manager.instance_id]

    await store.rename("tv", "shows")
    assert store.get_by_name("tv") is None
    assert store.get_by_name("shows").external_ids[manager.instance_id] == tv_id
    assert fake.categories[tv_id]['title'] == "shows"

    await store.delete("shows")
    assert tv_id not in fake.categories
    assert store.get_by_name("shows") is None


@pytest.mark.asyncio
async def test_update_returns_backend_verification(make_amule_manager, store):
    fake = FakeEC()
    manager = make_amule_manager(fake)
    await manager.init_client()
    await store.create("tv", path="/data/tv")

    results = await store.update("tv", comment="Series", priority=2)

    assert results[manager.instance_id]['verified'] is True
    tv_id = store.get_by_name("tv").external_ids[manager.instance_id]
    assert fake.categories[tv_id]['comment'] == "Series"
    assert fake.categories[tv_id]['priority'] == 2


@pytest.mark.asyncio
async def test_path_validation_flags_missing_directories(tmp_path, store):
    good = tmp_path / "good"
    good.mkdir()
    store.import_category("good", path=str(good))
    store.import_category("missing", path=str(tmp_path / "nope"))

    warnings = await store.validate_all_paths()

    assert set(warnings) == {"missing"}
    assert warnings["missing"]["warning"] == "Directory not found"
    assert store.get_path_warnings() == warnings


@pytest.mark.asyncio
async def test_path_validation_is_debounced(tmp_path, store):
    store.validate_debounce = 0.01
    calls = []
    original = store._validate_now

    def counting():
        calls.append(1)
        return original()

    store._validate_now = counting
    first = store.schedule_path_validation()
    second = store.schedule_path_validation()

    assert first is second
    await first
    assert calls == [1]


def test_ec_color_conversion():
    assert ec_color_to_hex(0x0000FF) == "#FF0000"
    assert hex_color_to_ec("#FF0000") == 0x0000FF
    assert hex_color_to_ec("#123456") == 0x563412
    assert hex_color_to_ec(None) == 0


def test_translate_path_prefers_instance_mapping():
    category = Category(name="tv", path="/data/tv", path_mappings={"deluge-nas-8112": "/mnt/tv"})
    assert translate_path(category, "deluge-nas-8112") == "/mnt/tv"
    assert translate_path(category, "other") == "/data/tv"
    assert translate_path(Category(name="x"), "other") is None
