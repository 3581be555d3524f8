import pytest

from swarmboard.backends import DelugeOps, TransmissionOps, get_backend_ops
from swarmboard.categories import Category
from swarmboard.clients import get_available_clients, get_client_display_name
from swarmboard.errors import ConfigurationError
from swarmboard.normalize import normalize_deluge, normalize_qbittorrent, normalize_transmission


class LabelClient:
    """Deluge Label plugin stand-in."""

    def __init__(self, labels, items):
        self.labels = list(labels)
        self.items = dict(items)

    async def get_labels(self):
        return list(self.labels)

    async def add_label(self, label):
        self.labels.append(label)

    async def remove_label(self, label):
        self.labels.remove(label)
        for hash_val, label_of in self.items.items():
            if label_of == label:
                self.items[hash_val] = ""

    async def get_torrents_status(self, filter_dict, keys):
        return {h: {'label': l} for h, l in self.items.items() if l == filter_dict['label']}

    async def set_torrent_label(self, hash_val, label):
        self.items[hash_val] = label


class TransmissionStub:

    def __init__(self, torrents):
        self.torrents = torrents
        self.set_calls = []

    async def get_torrents(self, fields=None, ids=None):
        return [dict(t) for t in self.torrents]

    async def set_labels(self, ids, labels):
        self.set_calls.append((ids, labels))
        for t in self.torrents:
            if t['hash'] == ids:
                t['labels'] = labels

    async def get_labels(self):
        return sorted({label for t in self.torrents for label in t.get('labels') or []})


def test_unknown_backend_type():
    with pytest.raises(ConfigurationError):
        get_backend_ops("utorrent")


@pytest.mark.asyncio
async def test_deluge_rename_relabels_members():
    ops = DelugeOps()
    ops.label_plugin = True
    client = LabelClient(["movies", "tv"], {"a": "movies", "b": "movies", "c": "tv"})

    new_id = await ops.rename_grouping(client, "movies", "movies", Category(name="Films"))

    assert new_id == "films"
    assert client.labels == ["tv", "films"]
    assert client.items == {"a": "films", "b": "films", "c": "tv"}


@pytest.mark.asyncio
async def test_deluge_without_label_plugin_has_no_groupings():
    ops = DelugeOps()
    client = LabelClient(["movies"], {})
    assert ops.supports_categories is False
    assert await ops.list_groupings(client) == []
    assert await ops.create_grouping(client, Category(name="tv")) is None


@pytest.mark.asyncio
async def test_deluge_ensure_grouping_matches_case_insensitively():
    ops = DelugeOps()
    ops.label_plugin = True
    client = LabelClient(["movies"], {})

    assert await ops.ensure_grouping(client, Category(name="Movies")) == "movies"
    assert client.labels == ["movies"]


@pytest.mark.asyncio
async def test_transmission_rename_keeps_other_labels():
    ops = TransmissionOps()
    client = TransmissionStub([
        {'hash': 'a', 'labels': ['tv', 'hd']},
        {'hash': 'b', 'labels': ['movies']},
        {'hash': 'c', 'labels': ['shows', 'tv']},
    ])

    assert await ops.rename_grouping(client, 'tv', 'tv', Category(name='shows')) == 'shows'

    assert client.set_calls == [('a', ['shows', 'hd']), ('c', ['shows'])]
    assert await client.get_labels() == ['hd', 'movies', 'shows']


def test_transmission_add_options_carry_the_label():
    ops = TransmissionOps()
    assert ops.add_options('tv', {'paused': True}) == {'paused': True, 'labels': ['tv']}
    assert ops.add_options('', None) == {}


def test_deluge_progress_is_scaled():
    item = normalize_deluge({'hash': 'ABC', 'progress': 42.0, 'total_wanted': 100, 'state': 'Downloading'}, 'd1')
    assert item['hash'] == 'abc'
    assert item['progress'] == pytest.approx(0.42)
    assert item['status'] == 'downloading'
    assert item['instanceId'] == 'd1'


@pytest.mark.parametrize("state, status", [
    ('stalledUP', 'seeding'),
    ('stoppedDL', 'paused'),
    ('checkingResumeData', 'checking'),
    ('somethingNew', 'unknown'),
])
def test_qbittorrent_states(state, status):
    assert normalize_qbittorrent({'hash': 'x', 'state': state})['status'] == status


def test_transmission_error_overrides_status():
    item = normalize_transmission({
        'hash': 'x', 'status': 4, 'error': 2, 'errorString': 'Tracker gave HTTP 404',
        'labels': ['tv'], 'trackers': [{'announce': 'https://tracker.example/announce'}],
    })
    assert item['status'] == 'error'
    assert item['message'] == 'Tracker gave HTTP 404'
    assert item['category'] == 'tv'
    assert item['tracker'] == 'tracker.example'
    assert item['trackers'] == []


def test_display_names_come_from_client_classes():
    names = {option['id']: option['name'] for option in get_available_clients()}
    assert names == {
        'amule': 'aMule',
        'deluge': 'Deluge',
        'qbittorrent': 'qBittorrent',
        'rtorrent': 'rTorrent',
        'transmission': 'Transmission',
    }
    assert get_client_display_name("QBittorrent") == "qBittorrent"
    assert get_client_display_name("utorrent") == "Utorrent"
