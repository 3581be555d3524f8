import logging

from ..normalize import normalize_rtorrent, rtorrent_trackers_and_peers
from .base import BackendOps, Grouping

log = logging.getLogger(__name__)


class RTorrentOps(BackendOps):
    """
    rTorrent labels live in each item's d.custom1 field, the ruTorrent
    convention. Like Transmission labels they exist only while some item
    carries them.
    """

    client_type = "rtorrent"
    supports_categories = True
    default_grouping_id = ""
    batched_trackers = True

    async def after_connect(self, client) -> dict:
        return {'listenPort': await client.get_listen_port() or None}

    async def fetch_trackers_and_peers(self, client, items) -> dict:
        # One system.multicall covers every item
        raw = await client.get_trackers_and_peers([item['hash'] for item in items if item.get('hash')])
        return {hash_val: rtorrent_trackers_and_peers(data) for hash_val, data in raw.items()}

    def normalize(self, item, instance_id=None) -> dict:
        return normalize_rtorrent(item, instance_id)

    async def get_stats(self, client) -> dict:
        return await client.get_global_stats()

    def get_network_status(self, raw) -> dict:
        if raw.get('listenPort'):
            return {'status': 'green', 'text': 'Connected'}
        return {'status': 'yellow', 'text': 'Not listening for incoming peers'}

    async def stop(self, client, item_id):
        await client.close(item_id)

    def add_options(self, grouping_id, options) -> dict:
        options = dict(options or {})
        add_options = {'start': options.get('start', True)}
        if grouping_id:
            add_options['label'] = grouping_id
        if options.get('savePath'):
            add_options['directory'] = options['savePath']
        return add_options

    async def set_grouping(self, client, item_id, grouping_id):
        await client.set_label(item_id, grouping_id or "")

    async def get_default_directory(self, client):
        return await client.get_default_directory()

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
        members = [t['hash'] for t in await client.get_torrents() if t.get('label') == old_label]
        if members:
            await client.set_label(members, new_label)
        log.info(f"Relabeled {len(members)} rTorrent items from {old_label} to {new_label}")
        return new_label
