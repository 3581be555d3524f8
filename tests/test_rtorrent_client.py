import xmlrpc.client

import bencodepy
import httpx
import pytest

from conftest import mock_transport
from swarmboard.backends import RTorrentOps
from swarmboard.categories import Category
from swarmboard.clients.rtorrent import RTorrentClient
from swarmboard.errors import AuthFailure, RemoteError

HEX_HASH = "c12fe1c06bba254a9dc9f519b335aa7c1367a88a"


def xml_call(request):
    params, method = xmlrpc.client.loads(request.content, use_builtin_types=True)
    return method, list(params)


def xml_reply(value):
    return httpx.Response(200, text=xmlrpc.client.dumps((value,), methodresponse=True))


class FakeRtorrent:
    """Dispatches XML-RPC calls to a dict of canned replies, recording them."""

    def __init__(self, replies=None):
        self.replies = dict({"system.client_version": "0.9.8"}, **(replies or {}))
        self.calls = []

    def __call__(self, request):
        method, params = xml_call(request)
        self.calls.append((method, params))
        reply = self.replies.get(method, 0)
        if isinstance(reply, xmlrpc.client.Fault):
            return httpx.Response(200, text=xmlrpc.client.dumps(reply, methodresponse=True))
        return xml_reply(reply(params) if callable(reply) else reply)

    def methods(self):
        return [method for method, _ in self.calls]


def make_client(fake, **config):
    return RTorrentClient(dict({"host": "rt", "port": 8000}, **config), transport=mock_transport(fake))


def row(hash_val, label="", **overrides):
    values = {
        "hash": hash_val, "name": "item", "size": 1000, "completed": 250, "downRate": 50,
        "upRate": 0, "upTotal": 0, "ratio": 1500, "open": 1, "active": 1, "hashing": 0,
        "complete": 0, "label": label, "directory": "/data", "addedAt": 0, "message": "",
        "seeds": 1, "peers": 2, "multiFile": 0,
    }
    values.update(overrides)
    return list(values.values())


@pytest.mark.asyncio
async def test_login_reads_version_with_basic_auth():
    def handler(request):
        assert request.url.path == "/RPC2"
        assert request.headers["authorization"].startswith("Basic ")
        return FakeRtorrent()(request)

    client = RTorrentClient({"host": "rt", "username": "u", "password": "p"}, transport=mock_transport(handler))
    result = await client.test_connection()
    assert result == {"success": True, "version": "rTorrent 0.9.8"}


@pytest.mark.asyncio
async def test_rejected_credentials_are_auth_failure():
    client = make_client(lambda request: httpx.Response(401))
    with pytest.raises(AuthFailure):
        await client.login()
    result = await client.test_connection()
    assert result["success"] is False


@pytest.mark.asyncio
async def test_fault_is_remote_error():
    fake = FakeRtorrent({"d.check_hash": xmlrpc.client.Fault(-501, "Could not find info-hash.")})
    client = make_client(fake)
    with pytest.raises(RemoteError, match="Could not find info-hash"):
        await client.recheck("abc")
    assert fake.calls[-1] == ("d.check_hash", ["ABC"])


@pytest.mark.asyncio
async def test_listing_decodes_labels_and_lowercases_hashes():
    fake = FakeRtorrent({"d.multicall2": [row("ABCDEF", "TV%20Shows"), row("123456")]})
    client = make_client(fake)

    torrents = await client.get_torrents()

    assert [t["hash"] for t in torrents] == ["abcdef", "123456"]
    assert torrents[0]["label"] == "TV Shows"
    assert torrents[1]["label"] == ""

    item = RTorrentOps().normalize(torrents[0], "rt-1")
    assert item["progress"] == 0.25
    assert item["ratio"] == 1.5
    assert item["status"] == "downloading"
    assert item["eta"] == 15
    assert item["category"] == "TV Shows"


@pytest.mark.parametrize("overrides, status", [
    ({"hashing": 1}, "checking"),
    ({"active": 0}, "paused"),
    ({"open": 0}, "paused"),
    ({"complete": 1}, "seeding"),
])
def test_item_states(overrides, status):
    keys = ["hash", "name", "size", "completed", "downRate", "upRate", "upTotal", "ratio", "open",
            "active", "hashing", "complete", "label", "directory", "addedAt", "message", "seeds",
            "peers", "multiFile"]
    item = dict(zip(keys, row("aa", **overrides)))
    assert RTorrentOps().normalize(item)["status"] == status


@pytest.mark.asyncio
async def test_add_magnet_sets_label_and_returns_hash():
    fake = FakeRtorrent()
    client = make_client(fake)
    ops = RTorrentOps()

    uri = f"magnet:?xt=urn:btih:{HEX_HASH}&dn=x"
    hash_val = await ops.add_magnet(client, uri, "TV Shows", {"savePath": "/data/tv"})

    assert hash_val == HEX_HASH
    method, params = fake.calls[-1]
    assert method == "load.start_verbose"
    assert params == ["", uri, 'd.custom1.set="TV%20Shows"', 'd.directory.set="/data/tv"']


@pytest.mark.asyncio
async def test_add_torrent_file_sends_payload_as_base64():
    info = {b"name": b"a.iso", b"length": 10, b"piece length": 16384, b"pieces": b"\x00" * 20}
    payload = bencodepy.encode({b"info": info})
    fake = FakeRtorrent()
    client = make_client(fake)

    await client.add_torrent_file(payload, {"start": False})

    method, params = fake.calls[-1]
    assert method == "load.raw_verbose"
    assert params == ["", payload]


@pytest.mark.asyncio
async def test_trackers_and_peers_use_one_request():
    def multicall(params):
        replies = []
        for call in params[0]:
            if call["methodName"] == "t.multicall":
                replies.append([[["udp://tracker.example:80", 1, 0, 5, 3], ["udp://off.example:80", 0, 1, 0, 0]]])
            else:
                replies.append([[["10.0.0.2", 51413, "qBittorrent 4.6", 50, 0, 2048]]])
        return replies

    fake = FakeRtorrent({"system.multicall": multicall})
    client = make_client(fake)
    ops = RTorrentOps()

    cache = await ops.fetch_trackers_and_peers(client, [{"hash": "aa"}, {"hash": "bb"}])

    assert fake.methods().count("system.multicall") == 1
    assert set(cache) == {"aa", "bb"}
    assert cache["aa"]["trackers"] == ["udp://tracker.example:80"]
    assert len(cache["aa"]["trackersDetailed"]) == 2
    assert cache["aa"]["peersDetailed"][0]["address"] == "10.0.0.2:51413"
    assert cache["aa"]["peersDetailed"][0]["uploadSpeed"] == 2048


@pytest.mark.asyncio
async def test_remove_with_data_is_refused_before_any_call():
    fake = FakeRtorrent()
    client = make_client(fake)
    await client.login()
    with pytest.raises(RemoteError):
        await client.remove("aa", delete_files=True)
    assert fake.methods() == ["system.client_version"]


@pytest.mark.asyncio
async def test_rename_relabels_only_members():
    labels = {"AA": "tv", "BB": "movies", "CC": "tv"}

    def listing(params):
        return [row(h, label) for h, label in labels.items()]

    fake = FakeRtorrent({"d.multicall2": listing})
    client = make_client(fake)

    new_id = await RTorrentOps().rename_grouping(client, "tv", "tv", Category(name="shows"))

    assert new_id == "shows"
    relabels = [params for method, params in fake.calls if method == "d.custom1.set"]
    assert relabels == [["AA", "shows"], ["CC", "shows"]]
