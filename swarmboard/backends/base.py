"""
Per-backend capability sets for the shared ConnectionManager.

A manager owns one BackendOps instance. The ops object builds the protocol
client, knows how to list and normalize that backend's items, and maps the
application's categories onto whatever grouping the backend has natively.
Backends without native groupings keep the no-op stand-ins defined here.
"""
import asyncio
import logging
from dataclasses import dataclass

from ..categories import translate_path
from ..clients import get_protocol_client
from ..errors import RemoteError
from ..normalize import extract_uploads

log = logging.getLogger(__name__)


@dataclass
class Grouping:
    """A backend's native category or label. For label backends id is the label."""
    id: object
    name: str
    path: str = ""
    comment: str = ""
    color: str = None
    priority: int = 0


class BackendOps:
    client_type = None
    reconnect_delay = 30
    supports_categories = False
    # The backend's immutable "no category" grouping
    default_grouping_id = None
    # Trackers and peers arrive with the listing, no per-item fan-out needed
    batched_trackers = False

    def __init__(self, transport=None):
        self.transport = transport
        # Set by the owning manager
        self.instance_id = None

    def build_client(self, config):
        return get_protocol_client(self.client_type, config, transport=self.transport)

    async def after_connect(self, client) -> dict:
        """Caches per-connection metadata. Returns {'listenPort': ...} when known."""
        return {}

    # --- DATA ---

    async def list_items(self, client) -> list:
        return await client.get_torrents()

    async def fetch_item_trackers(self, client, item) -> dict:
        """Returns {'trackersDetailed', 'trackers', 'peersDetailed'} for one item."""
        return {}

    async def fetch_trackers_and_peers(self, client, items) -> dict:
        """
        Fetches trackers and peers for every item concurrently. Items whose
        fetch fails are left out of the result.
        """
        hashes = [item['hash'] for item in items if item.get('hash')]
        if not hashes:
            return {}
        by_hash = {item['hash']: item for item in items}
        results = await asyncio.gather(
            *(self.fetch_item_trackers(client, by_hash[h]) for h in hashes),
            return_exceptions=True,
        )
        cache = {}
        for hash_val, result in zip(hashes, results):
            if isinstance(result, BaseException):
                log.debug(f"[TRACKERS] Skipping {hash_val}: {result}")
                continue
            cache[hash_val] = result
        return cache

    def normalize(self, item, instance_id=None) -> dict:
        raise NotImplementedError

    def build_data(self, items, instance_id=None) -> dict:
        downloads = [self.normalize(item, instance_id) for item in items]
        return {
            'downloads': downloads,
            'sharedFiles': [d for d in downloads if d['progress'] >= 1],
            'uploads': extract_uploads(downloads),
        }

    async def get_stats(self, client) -> dict:
        return {}

    def extract_metrics(self, raw) -> dict:
        """{'uploadSpeed', 'downloadSpeed', 'uploadTotal', 'downloadTotal'} from get_stats()."""
        return {
            'uploadSpeed': raw.get('uploadSpeed', 0),
            'downloadSpeed': raw.get('downloadSpeed', 0),
            'uploadTotal': raw.get('uploadTotal'),
            'downloadTotal': raw.get('downloadTotal'),
        }

    def get_network_status(self, raw) -> dict:
        """{'status': green|yellow|red, 'text': ...} for the status indicator."""
        return {'status': 'green', 'text': 'Connected'}

    # --- CONTROL ---

    async def pause(self, client, item_id):
        await client.pause(item_id)

    async def resume(self, client, item_id):
        await client.resume(item_id)

    async def stop(self, client, item_id):
        # Torrent backends have no separate stopped state
        await client.pause(item_id)

    async def remove(self, client, item_id, delete_files=False):
        await client.remove(item_id, delete_files)

    async def move(self, client, item_id, destination):
        await client.move(item_id, destination)

    async def recheck(self, client, item_id):
        await client.recheck(item_id)

    async def reannounce(self, client, item_id):
        await client.reannounce(item_id)

    async def add_magnet(self, client, uri, grouping_id, options) -> str:
        return await client.add_magnet(uri, self.add_options(grouping_id, options))

    async def add_torrent_raw(self, client, payload, grouping_id, options) -> str:
        return await client.add_torrent_file(payload, self.add_options(grouping_id, options))

    def add_options(self, grouping_id, options) -> dict:
        return dict(options or {})

    async def set_grouping(self, client, item_id, grouping_id):
        raise RemoteError(f"{self.client_type} does not support categories")

    async def get_files(self, client, item_id) -> list:
        return await client.get_files(item_id)

    async def get_default_directory(self, client):
        return None

    # --- GROUPINGS ---

    def category_path(self, category) -> str:
        """The path this backend should use for category: its mapping, else the shared path."""
        return translate_path(category, self.instance_id) or ""

    def grouping_id_for_name(self, name):
        """The id a grouping called name has on label backends, None elsewhere."""
        return None

    def grouping_diffs(self, grouping, category, default_path) -> list:
        """Attribute names where the backend grouping differs from the app's category."""
        return []

    async def list_groupings(self, client) -> list:
        return []

    async def create_grouping(self, client, category, default_path=None):
        """Creates the native grouping for category. Returns its id."""
        return None

    async def update_grouping(self, client, grouping_id, category, default_path=None) -> dict:
        return {'success': True, 'verified': True, 'mismatches': []}

    async def delete_grouping(self, client, grouping_id):
        return None

    async def rename_grouping(self, client, grouping_id, old_name, category, default_path=None):
        """Returns the grouping's id after the rename."""
        return grouping_id

    async def ensure_grouping(self, client, category, default_path=None, existing=None):
        """Returns the id of an existing grouping matching category, creating it if needed."""
        if existing is None:
            existing = await self.list_groupings(client)
        key = self.grouping_id_for_name(category.name)
        for grouping in existing:
            if grouping.id == key or grouping.name == category.name:
                return grouping.id
        return await self.create_grouping(client, category, default_path)

    async def ensure_groupings_batch(self, client, categories, default_path=None) -> list:
        """Ensures each category exists. Returns [(name, grouping_id), ...]."""
        existing = await self.list_groupings(client)
        results = []
        for category in categories:
            grouping_id = await self.ensure_grouping(client, category, default_path, existing)
            results.append((category.name, grouping_id))
        return results

