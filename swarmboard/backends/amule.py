import logging

from ..categories import ec_color_to_hex, hex_color_to_ec
from ..normalize import normalize_amule, normalize_amule_upload
from .base import BackendOps, Grouping

log = logging.getLogger(__name__)


class AmuleOps(BackendOps):
    """
    aMule categories are numbered. Id 0 is the built-in default and can't be
    renamed or removed; the others carry title, path, comment, a BGR color
    and a priority, all of which the app keeps authoritative.
    """

    client_type = "amule"
    reconnect_delay = 10
    supports_categories = True
    default_grouping_id = 0

    def __init__(self, transport=None, ec_client_factory=None):
        super().__init__(transport=transport)
        self.ec_client_factory = ec_client_factory

    def build_client(self, config):
        if self.ec_client_factory is not None:
            config = dict(config, clientFactory=self.ec_client_factory)
        return super().build_client(config)

    async def after_connect(self, client) -> dict:
        preferences = await client.get_preferences()
        return {'listenPort': preferences.get('tcpPort')}

    async def list_items(self, client) -> list:
        downloads = await client.get_torrents()
        shared = await client.get_shared_files()
        uploads = await client.get_upload_queue()
        for item in downloads:
            item['_kind'] = 'download'
        for item in shared:
            item['_kind'] = 'shared'
        for item in uploads:
            item['_kind'] = 'upload'
        return downloads + shared + uploads

    async def fetch_trackers_and_peers(self, client, items) -> dict:
        # ed2k has no trackers
        return {}

    def normalize(self, item, instance_id=None) -> dict:
        return normalize_amule(item, instance_id)

    def build_data(self, items, instance_id=None) -> dict:
        return {
            'downloads': [self.normalize(i, instance_id) for i in items if i.get('_kind', 'download') == 'download'],
            'sharedFiles': [self.normalize(i, instance_id) for i in items if i.get('_kind') == 'shared'],
            'uploads': [normalize_amule_upload(i, instance_id) for i in items if i.get('_kind') == 'upload'],
        }

    async def get_stats(self, client) -> dict:
        return await client.get_stats()

    def get_network_status(self, raw) -> dict:
        ed2k = raw.get('ed2kConnected')
        kad = raw.get('kadConnected')
        if not ed2k and not kad:
            return {'status': 'red', 'text': 'Not connected to ed2k or Kad'}
        if (ed2k and not raw.get('ed2kHighId')) or (kad and raw.get('kadFirewalled')):
            return {'status': 'yellow', 'text': 'Low ID / firewalled'}
        return {'status': 'green', 'text': 'Connected'}

    async def stop(self, client, item_id):
        await client.stop(item_id)

    def add_options(self, grouping_id, options) -> dict:
        add_options = dict(options or {})
        add_options['categoryId'] = grouping_id or 0
        return add_options

    async def set_grouping(self, client, item_id, grouping_id):
        await client.set_file_category(item_id, grouping_id or 0)

    async def get_default_directory(self, client):
        preferences = await client.get_preferences()
        return preferences.get('incomingDir')

    # --- GROUPINGS ---

    def _effective_path(self, category, default_path):
        return self.category_path(category) or default_path or ""

    def _payload(self, category, default_path):
        return {
            'title': category.name,
            'path': self._effective_path(category, default_path),
            'comment': category.comment or "",
            'color': hex_color_to_ec(category.color),
            'priority': category.priority or 0,
        }

    def grouping_diffs(self, grouping, category, default_path) -> list:
        diffs = []
        if grouping.name != category.name:
            diffs.append('title')
        if (grouping.color or "").upper() != (category.color or "").upper():
            diffs.append('color')
        # An empty path on the backend means its incoming directory
        if (grouping.path or default_path or "") != self._effective_path(category, default_path):
            diffs.append('path')
        if (grouping.comment or "") != (category.comment or ""):
            diffs.append('comment')
        if (grouping.priority or 0) != (category.priority or 0):
            diffs.append('priority')
        return diffs

    async def list_groupings(self, client) -> list:
        return [
            Grouping(
                id=c.get('id'),
                name=c.get('title') or "",
                path=c.get('path') or "",
                comment=c.get('comment') or "",
                color=ec_color_to_hex(c.get('color')),
                priority=c.get('priority') or 0,
            )
            for c in await client.get_categories()
        ]

    async def create_grouping(self, client, category, default_path=None):
        payload = self._payload(category, default_path)
        return await client.create_category(
            payload['title'], payload['path'], payload['comment'], payload['color'], payload['priority'],
        )

    async def update_grouping(self, client, grouping_id, category, default_path=None) -> dict:
        """Pushes every attribute, then reads the category back and reports what didn't stick."""
        payload = self._payload(category, default_path)
        await client.update_category(
            grouping_id, payload['title'], payload['path'], payload['comment'], payload['color'], payload['priority'],
        )

        current = next((c for c in await client.get_categories() if c.get('id') == grouping_id), None)
        if current is None:
            return {'success': False, 'verified': False, 'mismatches': [{'field': 'id', 'expected': grouping_id, 'actual': None}]}

        mismatches = []
        for field, expected in payload.items():
            actual = current.get(field)
            if field in ('path', 'comment', 'title'):
                actual = actual or ""
            if actual != expected:
                mismatches.append({'field': field, 'expected': expected, 'actual': actual})
        if mismatches:
            log.warning(f"aMule category {grouping_id} did not accept: {', '.join(m['field'] for m in mismatches)}")
        return {'success': True, 'verified': not mismatches, 'mismatches': mismatches}

    async def delete_grouping(self, client, grouping_id):
        if grouping_id:
            await client.delete_category(grouping_id)

    async def rename_grouping(self, client, grouping_id, old_name, category, default_path=None):
        if grouping_id is None:
            return None
        await self.update_grouping(client, grouping_id, category, default_path)
        return grouping_id
