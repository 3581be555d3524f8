import logging

from ..errors import SwarmBoardError
from ..normalize import normalize_transmission, transmission_trackers_and_peers
from .base import BackendOps, Grouping

log = logging.getLogger(__name__)


class TransmissionOps(BackendOps):
    """
    Transmission labels are free-form strings attached to items. A label
    exists only while some item carries it, so creating or deleting one is a
    no-op and discovery scans every item.
    """

    client_type = "transmission"
    supports_categories = True
    default_grouping_id = ""
    batched_trackers = True

    def __init__(self, transport=None):
        super().__init__(transport=transport)
        self.port_open = None

    async def after_connect(self, client) -> dict:
        session = await client.get_session(["peer-port", "download-dir"])
        try:
            self.port_open = await client.port_test()
        except SwarmBoardError as e:
            log.debug(f"Transmission port test failed: {e}")
            self.port_open = None
        return {'listenPort': session.get('peer-port')}

    async def fetch_trackers_and_peers(self, client, items) -> dict:
        # One batched torrent-get covers every item
        torrents = await client.get_torrents(["hashString", "trackerStats", "peers"])
        return {t['hash']: transmission_trackers_and_peers(t) for t in torrents if t.get('hash')}

    def normalize(self, item, instance_id=None) -> dict:
        return normalize_transmission(item, instance_id)

    async def get_stats(self, client) -> dict:
        return await client.get_session_stats()

    def extract_metrics(self, raw) -> dict:
        cumulative = raw.get('cumulative-stats') or {}
        return {
            'uploadSpeed': raw.get('uploadSpeed', 0),
            'downloadSpeed': raw.get('downloadSpeed', 0),
            'uploadTotal': cumulative.get('uploadedBytes'),
            'downloadTotal': cumulative.get('downloadedBytes'),
        }

    def get_network_status(self, raw) -> dict:
        if self.port_open:
            return {'status': 'green', 'text': 'Connected'}
        if self.port_open is None:
            return {'status': 'green', 'text': 'Connected (port not tested)'}
        return {'status': 'yellow', 'text': 'Peer port closed'}

    def add_options(self, grouping_id, options) -> dict:
        add_options = dict(options or {})
        if grouping_id:
            add_options['labels'] = [grouping_id]
        return add_options

    async def set_grouping(self, client, item_id, grouping_id):
        await client.set_labels(item_id, [grouping_id] if grouping_id else [])

    async def get_default_directory(self, client):
        session = await client.get_session(["download-dir"])
        return session.get('download-dir')

    # --- GROUPINGS ---

    def grouping_id_for_name(self, name):
        return name or ""

    async def list_groupings(self, client) -> list:
        return [Grouping(id=label, name=label) for label in await client.get_labels()]

    async def create_grouping(self, client, category, default_path=None):
        return category.name

    async def rename_grouping(self, client, grouping_id, old_name, category, default_path=None):
        old_label = grouping_id or old_name
        new_label = category.name
        if old_label == new_label:
            return new_label
        torrents = await client.get_torrents(["hashString", "labels"])
        for torrent in torrents:
            labels = torrent.get('labels') or []
            if old_label in labels:
                relabeled = [new_label if label == old_label else label for label in labels]
                await client.set_labels(torrent['hash'], list(dict.fromkeys(relabeled)))
        return new_label
