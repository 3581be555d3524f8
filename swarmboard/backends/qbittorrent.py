from ..normalize import normalize_qbittorrent, qbittorrent_trackers_and_peers
from .base import BackendOps, Grouping


class QBittorrentOps(BackendOps):
    """qBittorrent categories are keyed by name and carry a save path."""

    client_type = "qbittorrent"
    supports_categories = True
    default_grouping_id = ""

    async def after_connect(self, client) -> dict:
        preferences = await client.get_preferences()
        return {'listenPort': preferences.get('listen_port')}

    async def fetch_item_trackers(self, client, item) -> dict:
        return qbittorrent_trackers_and_peers(await client.get_trackers_and_peers(item['hash']))

    def normalize(self, item, instance_id=None) -> dict:
        return normalize_qbittorrent(item, instance_id)

    async def get_stats(self, client) -> dict:
        data = await client.get_main_data()
        return data.get('server_state') or {}

    def extract_metrics(self, raw) -> dict:
        return {
            'uploadSpeed': raw.get('up_info_speed', 0),
            'downloadSpeed': raw.get('dl_info_speed', 0),
            'uploadTotal': raw.get('alltime_ul'),
            'downloadTotal': raw.get('alltime_dl'),
        }

    def get_network_status(self, raw) -> dict:
        status = raw.get('connection_status')
        if status == 'connected':
            return {'status': 'green', 'text': 'Connected'}
        if status == 'firewalled':
            return {'status': 'yellow', 'text': 'Firewalled'}
        return {'status': 'red', 'text': 'Disconnected'}

    def add_options(self, grouping_id, options) -> dict:
        add_options = dict(options or {})
        if grouping_id:
            add_options['category'] = grouping_id
        return add_options

    async def set_grouping(self, client, item_id, grouping_id):
        await client.set_category(item_id, grouping_id or "")

    async def get_default_directory(self, client):
        return await client.get_default_save_path()

    # --- GROUPINGS ---

    def grouping_id_for_name(self, name):
        return name or ""

    def grouping_diffs(self, grouping, category, default_path) -> list:
        if (grouping.path or "") != self.category_path(category):
            return ['path']
        return []

    async def list_groupings(self, client) -> list:
        categories = await client.get_categories()
        return [
            Grouping(id=name, name=name, path=info.get('savePath') or "")
            for name, info in categories.items()
        ]

    async def create_grouping(self, client, category, default_path=None):
        await client.create_category(category.name, self.category_path(category))
        return category.name

    async def update_grouping(self, client, grouping_id, category, default_path=None) -> dict:
        expected = self.category_path(category)
        result = await client.edit_category(grouping_id, expected)
        mismatches = []
        if not result['verified']:
            mismatches.append({'field': 'path', 'expected': expected, 'actual': result['savePath']})
        return {'success': True, 'verified': result['verified'], 'mismatches': mismatches}

    async def delete_grouping(self, client, grouping_id):
        if grouping_id:
            await client.remove_categories(grouping_id)

    async def rename_grouping(self, client, grouping_id, old_name, category, default_path=None):
        old = grouping_id or old_name
        if old == category.name:
            return old
        await client.rename_category(old, category.name, self.category_path(category))
        return category.name
