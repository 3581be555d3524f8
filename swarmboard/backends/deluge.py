import asyncio
import logging

from ..errors import RemoteError
from ..normalize import deluge_trackers_and_peers, normalize_deluge
from .base import BackendOps, Grouping

log = logging.getLogger(__name__)


class DelugeOps(BackendOps):
    """Deluge groups items with the Label plugin. Labels are lowercase strings."""

    client_type = "deluge"
    default_grouping_id = ""

    def __init__(self, transport=None):
        super().__init__(transport=transport)
        self.label_plugin = False

    @property
    def supports_categories(self):
        return self.label_plugin

    async def after_connect(self, client) -> dict:
        try:
            self.label_plugin = await client.ensure_label_plugin()
        except RemoteError as e:
            log.warning(f"Could not check Deluge Label plugin: {e}")
            self.label_plugin = False
        if not self.label_plugin:
            log.warning("Deluge Label plugin unavailable, categories disabled for this client")

        port = await client.get_listen_port()
        # Older daemons return [port, port]
        if isinstance(port, (list, tuple)):
            port = port[0] if port else None
        return {'listenPort': port}

    async def fetch_item_trackers(self, client, item) -> dict:
        return deluge_trackers_and_peers(await client.get_trackers_and_peers(item['hash']))

    def normalize(self, item, instance_id=None) -> dict:
        return normalize_deluge(item, instance_id)

    async def get_stats(self, client) -> dict:
        return await client.get_session_status()

    def extract_metrics(self, raw) -> dict:
        return {
            'uploadSpeed': raw.get('payload_upload_rate', raw.get('upload_rate', 0)),
            'downloadSpeed': raw.get('payload_download_rate', raw.get('download_rate', 0)),
            'uploadTotal': raw.get('total_upload'),
            'downloadTotal': raw.get('total_download'),
        }

    def get_network_status(self, raw) -> dict:
        if raw.get('has_incoming_connections'):
            return {'status': 'green', 'text': 'Connected'}
        return {'status': 'yellow', 'text': 'No incoming connections'}

    async def _add_then_label(self, hash_val, client, grouping_id):
        if hash_val and grouping_id and self.label_plugin:
            await client.set_torrent_label(hash_val, grouping_id)
        return hash_val

    async def add_magnet(self, client, uri, grouping_id, options) -> str:
        # The Label plugin ignores a label in the add options
        hash_val = await client.add_magnet(uri, self.add_options(grouping_id, options))
        return await self._add_then_label(hash_val, client, grouping_id)

    async def add_torrent_raw(self, client, payload, grouping_id, options) -> str:
        hash_val = await client.add_torrent_file(payload, self.add_options(grouping_id, options))
        return await self._add_then_label(hash_val, client, grouping_id)

    async def set_grouping(self, client, item_id, grouping_id):
        if not self.label_plugin:
            raise RemoteError("Deluge Label plugin is not enabled")
        await client.set_torrent_label(item_id, grouping_id or "")

    async def get_default_directory(self, client):
        return await client.get_config_value("download_location")

    # --- GROUPINGS ---

    def grouping_id_for_name(self, name):
        return name.lower() if name else ""

    async def list_groupings(self, client) -> list:
        if not self.label_plugin:
            return []
        return [Grouping(id=label, name=label) for label in await client.get_labels()]

    async def create_grouping(self, client, category, default_path=None):
        if not self.label_plugin:
            return None
        label = self.grouping_id_for_name(category.name)
        await client.add_label(label)
        return label

    async def delete_grouping(self, client, grouping_id):
        if self.label_plugin and grouping_id:
            await client.remove_label(grouping_id)

    async def rename_grouping(self, client, grouping_id, old_name, category, default_path=None):
        """Labels can't be renamed: add the new one, relabel members, drop the old one."""
        if not self.label_plugin:
            return None
        old_label = grouping_id or self.grouping_id_for_name(old_name)
        new_label = self.grouping_id_for_name(category.name)
        if old_label == new_label:
            return new_label

        if new_label not in await client.get_labels():
            await client.add_label(new_label)
        members = await client.get_torrents_status({"label": old_label}, ["label"])
        await asyncio.gather(*(client.set_torrent_label(h, new_label) for h in members))
        await client.remove_label(old_label)
        log.info(f"Renamed Deluge label {old_label} to {new_label} ({len(members)} items)")
        return new_label
