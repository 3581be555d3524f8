import httpx
import pytest

from conftest import form, rpc_body
from swarmboard.backends import Grouping, QBittorrentOps
from swarmboard.categories import Category
from swarmboard.reconcile import reconcile


class FakeDelugeWeb:
    """Deluge Web JSON-RPC with the Label plugin enabled."""

    def __init__(self, labels):
        self.labels = list(labels)
        self.methods = []

    def __call__(self, request):
        body = rpc_body(request)
        method = body["method"]
        self.methods.append(method)
        headers = {}
        if method == "auth.login":
            result = True
            headers = {"Set-Cookie": "_session_id=s1; Path=/json"}
        elif method == "label.add":
            self.labels.append(body["params"][0])
            result = None
        else:
            result = {
                "web.connected": True,
                "daemon.get_version": "2.1.1",
                "core.get_enabled_plugins": ["Label"],
                "core.get_listen_port": 6881,
                "label.get_labels": list(self.labels),
            }[method]
        return httpx.Response(200, json={"result": result, "error": None, "id": body["id"]}, headers=headers)

    def mutations(self):
        return [m for m in self.methods if m in ("label.add", "label.remove", "label.set_torrent")]


class FakeTransmission:
    """Transmission RPC where labels live only on items."""

    def __init__(self, torrents):
        self.torrents = torrents
        self.methods = []

    def __call__(self, request):
        body = rpc_body(request)
        method = body["method"]
        arguments = body.get("arguments") or {}
        self.methods.append(method)
        if method == "session-get":
            result = {"version": "4.0.5", "peer-port": 51413, "download-dir": "/downloads"}
        elif method == "port-test":
            result = {"port-is-open": True}
        elif method == "torrent-get":
            result = {"torrents": [dict(t) for t in self.torrents]}
        elif method == "torrent-set":
            for torrent in self.torrents:
                if torrent["hashString"] in arguments["ids"]:
                    torrent["labels"] = arguments["labels"]
            result = {}
        else:
            raise AssertionError(method)
        return httpx.Response(200, json={"result": "success", "arguments": result})


class FakeQbitCategories:
    """qBittorrent categories. With keep_paths the server ignores path edits."""

    def __init__(self, categories, keep_paths=False):
        self.categories = categories
        self.keep_paths = keep_paths
        self.endpoints = []

    def __call__(self, request):
        endpoint = request.url.path.split("/api/v2/", 1)[1]
        self.endpoints.append(endpoint)
        if endpoint == "auth/login":
            return httpx.Response(200, text="Ok.", headers={"Set-Cookie": "SID=s1; HttpOnly; path=/"})
        if endpoint == "app/version":
            return httpx.Response(200, text="v5.0.0")
        if endpoint == "app/preferences":
            return httpx.Response(200, json={"listen_port": 6881})
        if endpoint == "torrents/categories":
            return httpx.Response(200, json={name: dict(info) for name, info in self.categories.items()})
        if endpoint == "torrents/createCategory":
            data = form(request)
            self.categories[data["category"]] = {"name": data["category"], "savePath": data.get("savePath", "")}
            return httpx.Response(200)
        if endpoint == "torrents/editCategory":
            data = form(request)
            if not self.keep_paths:
                self.categories[data["category"]]["savePath"] = data.get("savePath", "")
            return httpx.Response(200)
        raise AssertionError(endpoint)

    def mutations(self):
        return [e for e in self.endpoints if e in ("torrents/createCategory", "torrents/editCategory")]


# --- DELUGE ---

@pytest.mark.asyncio
async def test_deluge_label_links_to_category_ignoring_case(make_http_manager, store):
    await store.create("TV", path="/data/tv")
    fake = FakeDelugeWeb(labels=["tv"])
    manager = make_http_manager("deluge", fake)
    assert await manager.init_client()

    report = await reconcile(manager, store)

    assert report.linked == ["TV"]
    assert report.imported == report.pushed == []
    assert store.get_by_name("TV").external_ids[manager.instance_id] == "tv"
    assert store.get_by_name("tv") is None
    assert fake.mutations() == []

    report = await reconcile(manager, store)

    assert fake.mutations() == []
    assert report.linked == report.pushed == report.updated == []


@pytest.mark.asyncio
async def test_deluge_pushes_lowercase_label_once(make_http_manager, store):
    await store.create("Movies")
    fake = FakeDelugeWeb(labels=[])
    manager = make_http_manager("deluge", fake)
    assert await manager.init_client()

    report = await reconcile(manager, store)
    await reconcile(manager, store)

    assert report.pushed == ["Movies"]
    assert fake.labels == ["movies"]
    assert fake.mutations() == ["label.add"]


# --- TRANSMISSION ---

@pytest.mark.asyncio
async def test_transmission_push_links_without_rpc_and_link_is_reused(make_http_manager, store):
    await store.create("movies")
    await store.create("tv")
    fake = FakeTransmission([
        {"hashString": "aaa", "labels": []},
        {"hashString": "bbb", "labels": ["movies"]},
    ])
    manager = make_http_manager("transmission", fake)
    assert await manager.init_client()
    fake.methods.clear()

    report = await reconcile(manager, store)

    assert report.linked == ["movies"]
    assert report.pushed == ["tv"]
    assert store.get_by_name("tv").external_ids[manager.instance_id] == "tv"
    assert fake.methods == ["torrent-get"]

    await manager.set_category_or_label("aaa", category_name="tv")

    assert fake.methods == ["torrent-get", "torrent-set"]
    assert fake.torrents[0]["labels"] == ["tv"]

    fake.methods.clear()
    report = await reconcile(manager, store)

    assert fake.methods == ["torrent-get"]
    assert report.imported == report.linked == report.pushed == []


# --- QBITTORRENT ---

def test_qbittorrent_compares_path_only():
    ops = QBittorrentOps()
    grouping = Grouping(id="movies", name="movies", path="/data/movies", comment="from backend", color="#FF0000")
    assert ops.grouping_diffs(grouping, Category(name="movies", path="/data/movies", comment="mine"), None) == []
    assert ops.grouping_diffs(grouping, Category(name="movies", path="/media/movies"), None) == ['path']


@pytest.mark.asyncio
async def test_qbittorrent_path_drift_is_fixed_once(make_http_manager, store):
    await store.create("movies", path="/data/movies")
    fake = FakeQbitCategories({"movies": {"name": "movies", "savePath": "/old/movies"}})
    manager = make_http_manager("qbittorrent", fake)
    assert await manager.init_client()

    report = await reconcile(manager, store)

    assert report.linked == ["movies"]
    assert report.updated == ["movies"]
    assert report.mismatches == {}
    assert fake.categories["movies"]["savePath"] == "/data/movies"

    report = await reconcile(manager, store)

    assert fake.mutations() == ["torrents/editCategory"]
    assert report.updated == []


@pytest.mark.asyncio
async def test_qbittorrent_edit_that_does_not_stick_is_reported(make_http_manager, store):
    await store.create("movies", path="/data/movies")
    fake = FakeQbitCategories({"movies": {"name": "movies", "savePath": "/old/movies"}}, keep_paths=True)
    manager = make_http_manager("qbittorrent", fake)
    assert await manager.init_client()

    report = await reconcile(manager, store)

    assert report.updated == ["movies"]
    assert report.mismatches == {
        "movies": [{'field': 'path', 'expected': '/data/movies', 'actual': '/old/movies'}],
    }
