"""
Connection lifecycle shared by every backend.

A ConnectionManager owns at most one live protocol client for one configured
backend instance. It connects, watches for connection loss, reconnects on an
interval, refreshes tracker and peer details in the background and exposes a
uniform data/control surface. Everything backend-specific is delegated to the
manager's BackendOps.
"""
import asyncio
import enum
import logging
import time
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError

from .categories import DEFAULT_CATEGORY
from .errors import CategoryError, NotConnected, SwarmBoardError, is_connection_loss
from .reconcile import reconcile

log = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SHUTTING_DOWN = "shutting_down"


class InstanceLogger(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['instance_id']}] {msg}", kwargs


class ConnectionManager:

    # Shutdown waits up to poll_attempts * poll_interval for an in-flight connect
    shutdown_poll_interval = 0.1
    shutdown_poll_attempts = 50

    def __init__(self, instance_id, ops, config, scheduler, *, category_store=None, history=None,
                 tracker_interval=10, display_name=None):
        self.instance_id = instance_id
        self.ops = ops
        self.ops.instance_id = instance_id
        self.client_type = ops.client_type
        self.config = config
        self.scheduler = scheduler
        self.category_store = category_store
        self.history = history
        self.tracker_interval = tracker_interval
        self.display_name = display_name or config.get("displayName") or instance_id
        self.reconnect_delay = config.get("reconnectDelay") or ops.reconnect_delay

        self.client = None
        self.state = ConnectionState.DISCONNECTED
        self.connection_in_progress = False
        self.last_error = None
        self.last_error_time = None

        self.tracker_cache = {}
        self.cached_listen_port = None
        self.last_items = []
        self.last_stats = {}

        self._listeners = []
        self._listener_tasks = set()
        self.log = InstanceLogger(log, {'instance_id': instance_id})

    @property
    def reconnect_job_id(self):
        return f"{self.instance_id}:reconnect"

    @property
    def tracker_job_id(self):
        return f"{self.instance_id}:trackers"

    # --- STATE ---

    def is_enabled(self) -> bool:
        return bool(self.config.get("enabled", True))

    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected()

    def _record_error(self, error) -> None:
        self.last_error = str(error)
        self.last_error_time = time.time()

    def _clear_error(self) -> None:
        self.last_error = None
        self.last_error_time = None

    def status(self) -> dict:
        return {
            'instanceId': self.instance_id,
            'type': self.client_type,
            'displayName': self.display_name,
            'enabled': self.is_enabled(),
            'connected': self.is_connected(),
            'state': self.state.value,
            'lastError': self.last_error,
            'lastErrorTime': self.last_error_time,
            'listenPort': self.cached_listen_port,
            'reconnectScheduled': self.scheduler.get_job(self.reconnect_job_id) is not None,
        }

    # --- LIFECYCLE ---

    async def init_client(self) -> bool:
        """
        Builds a fresh protocol client and tests it. Returns True once the
        manager is Connected. Failures are recorded, never raised. A call made
        while another connect is running returns False immediately.
        """
        if self.connection_in_progress:
            self.log.info("Connection attempt already in progress, skipping")
            return False
        if self.state is ConnectionState.SHUTTING_DOWN:
            return False
        if not self.is_enabled():
            self.log.info(f"{self.display_name} is disabled, not connecting")
            return False
        # No await between the check above and this line
        self.connection_in_progress = True
        self.state = ConnectionState.CONNECTING

        try:
            if self.client is not None:
                old_client, self.client = self.client, None
                await self._close_client(old_client)

            new_client = self.ops.build_client(self.config)
            self.log.info(f"Connecting to {self.display_name} at {new_client.host}:{new_client.port}")
            result = await new_client.test_connection()

            if self.state is ConnectionState.SHUTTING_DOWN:
                await self._close_client(new_client)
                return False

            if not result.get("success"):
                error = result.get("error") or "Connection test failed"
                self.log.error(f"Connection failed: {error}")
                self._record_error(error)
                self.state = ConnectionState.DISCONNECTED
                return False

            self.client = new_client
            self._clear_error()
            self.clear_reconnect()
            self.state = ConnectionState.CONNECTED
            self.log.info(f"Connected to {self.display_name} ({result.get('version', 'unknown version')})")

            try:
                metadata = await self.ops.after_connect(new_client)
                self.cached_listen_port = metadata.get('listenPort')
            except SwarmBoardError as e:
                self.log.warning(f"Could not read backend metadata: {e}")

            self.start_tracker_refresh()
            self._publish_connect()
            return True
        except SwarmBoardError as e:
            self.log.error(f"Connection failed: {e}")
            self._record_error(e)
            self.client = None
            self.stop_tracker_refresh()
            if self.state is not ConnectionState.SHUTTING_DOWN:
                self.state = ConnectionState.DISCONNECTED
            return False
        finally:
            self.connection_in_progress = False

    async def start_connection(self) -> bool:
        """Connects, or schedules reconnect attempts if the first try fails."""
        if not self.is_enabled():
            return False
        connected = await self.init_client()
        if not connected and self.state is not ConnectionState.SHUTTING_DOWN:
            self.schedule_reconnect()
        return connected

    def schedule_reconnect(self, delay=None) -> None:
        if not self.is_enabled() or self.state is ConnectionState.SHUTTING_DOWN:
            return
        delay = delay or self.reconnect_delay
        # A pending timer is replaced, never stacked
        self._remove_job(self.reconnect_job_id)
        self.log.info(f"[RECONNECT] Will retry {self.display_name} every {delay} seconds")
        self.scheduler.add_job(
            self._reconnect_tick, 'interval', seconds=delay,
            id=self.reconnect_job_id, replace_existing=True,
            max_instances=1, coalesce=True,
        )

    def clear_reconnect(self) -> None:
        self._remove_job(self.reconnect_job_id)

    async def _reconnect_tick(self) -> None:
        if not self.is_enabled():
            self.clear_reconnect()
            return
        self.log.info(f"[RECONNECT] Attempting to reconnect to {self.display_name}")
        if await self.init_client():
            self.clear_reconnect()

    def _remove_job(self, job_id) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    async def _close_client(self, client) -> None:
        try:
            await client.disconnect()
        except SwarmBoardError as e:
            self.log.debug(f"Ignoring disconnect error: {e}")

    def _mark_disconnected(self, error) -> None:
        self._record_error(error)
        if self.client is not None:
            self.client.connected = False
        if self.state is ConnectionState.CONNECTED:
            self.state = ConnectionState.DISCONNECTED
        self.stop_tracker_refresh()
        self.schedule_reconnect()

    async def shutdown(self) -> None:
        """Stops timers, waits briefly for an in-flight connect and drops the client."""
        self.log.info(f"Shutting down {self.display_name}")
        self.state = ConnectionState.SHUTTING_DOWN
        self.clear_reconnect()
        self.stop_tracker_refresh()

        for _ in range(self.shutdown_poll_attempts):
            if not self.connection_in_progress:
                break
            await asyncio.sleep(self.shutdown_poll_interval)
        else:
            self.log.warning("Connection attempt still running, shutting down anyway")

        client, self.client = self.client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception as e:
                self.log.warning(f"Error during disconnect: {e}")

        for task in list(self._listener_tasks):
            task.cancel()
        self.tracker_cache = {}

    # --- ON-CONNECT LISTENERS ---

    def on_connect(self, listener) -> None:
        """Registers listener(manager) to run after every successful connect."""
        self._listeners.append(listener)

    def _publish_connect(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(self)
            except Exception:
                self.log.exception("On-connect listener failed")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.log.error(f"On-connect listener failed: {error}", exc_info=error)

    async def on_connect_sync(self, category_store=None) -> dict:
        """Reconciles categories with this backend, then fans out to the others."""
        store = category_store or self.category_store
        if store is None or self.client is None:
            return None

        try:
            default_dir = await self.ops.get_default_directory(self.client)
            if default_dir:
                store.set_client_default_path(self.instance_id, default_dir)
        except SwarmBoardError as e:
            self.log.warning(f"Could not read default download directory: {e}")

        report = None
        if self.ops.supports_categories:
            try:
                report = await reconcile(self, store)
            except SwarmBoardError as e:
                self.log.error(f"[SYNC] Category sync failed: {e}")
        else:
            self.log.info("[SYNC] Backend has no categories, skipping sync")

        await store.propagate_to_other_clients(self.instance_id)
        await store.validate_all_paths()
        return report.as_dict() if report else None

    # --- TRACKER REFRESH ---

    def start_tracker_refresh(self) -> None:
        if self.scheduler.get_job(self.tracker_job_id) is not None:
            return
        self.scheduler.add_job(
            self.refresh_trackers, 'interval', seconds=self.tracker_interval,
            id=self.tracker_job_id, replace_existing=True,
            max_instances=1, coalesce=True, next_run_time=datetime.now(),
        )

    def stop_tracker_refresh(self) -> None:
        self._remove_job(self.tracker_job_id)

    async def refresh_trackers(self) -> None:
        """Rebuilds the tracker/peer cache. Items whose fetch fails are dropped from it."""
        if not self.is_connected():
            return
        items = self.last_items
        try:
            if not items:
                items = await self.ops.list_items(self.client)
            cache = await self.ops.fetch_trackers_and_peers(self.client, items)
        except SwarmBoardError as e:
            self.log.debug(f"[TRACKERS] Refresh failed: {e}")
            return
        # Replaced wholesale so removed items don't linger
        self.tracker_cache = cache
        self.log.debug(f"[TRACKERS] Refreshed {len(cache)} items")

    def _merge_tracker_data(self, items) -> None:
        for item in items:
            cached = self.tracker_cache.get(item.get('hash'))
            if cached:
                item['trackersDetailed'] = cached.get('trackersDetailed', [])
                item['trackers'] = cached.get('trackers', [])
                item['peersDetailed'] = cached.get('peersDetailed', [])

    # --- DATA ---

    async def get_items(self) -> list:
        """Raw items with tracker data merged. Falls back to the last good snapshot."""
        if self.client is None or not self.is_connected():
            return self.last_items
        try:
            items = await self.ops.list_items(self.client)
        except SwarmBoardError as e:
            self.log.error(f"Failed to fetch items: {e}")
            if is_connection_loss(e):
                self._mark_disconnected(e)
            return self.last_items
        self._merge_tracker_data(items)
        self.last_items = items
        return items

    async def fetch_data(self) -> dict:
        items = await self.get_items()
        return self.ops.build_data(items, self.instance_id)

    async def get_stats(self) -> dict:
        if self.client is None or not self.is_connected():
            return self.last_stats
        try:
            self.last_stats = await self.ops.get_stats(self.client)
        except SwarmBoardError as e:
            self.log.error(f"Failed to fetch stats: {e}")
            if is_connection_loss(e):
                self._mark_disconnected(e)
        return self.last_stats

    def extract_metrics(self, raw) -> dict:
        return self.ops.extract_metrics(raw or {})

    def get_network_status(self, raw) -> dict:
        if not self.is_connected():
            return {'status': 'red', 'text': self.last_error or 'Disconnected'}
        return self.ops.get_network_status(raw or {})

    # --- CONTROL ---

    def _require_client(self):
        """The live client. User actions never trigger a silent re-login."""
        if self.state is not ConnectionState.CONNECTED or not self.is_connected():
            raise NotConnected(f"{self.display_name} not connected")
        return self.client

    async def _control(self, action, *args):
        client = self._require_client()
        try:
            return await getattr(self.ops, action)(client, *args)
        except SwarmBoardError as e:
            if is_connection_loss(e):
                self._mark_disconnected(e)
            raise

    async def pause(self, item_id):
        await self._control('pause', item_id)

    async def resume(self, item_id):
        await self._control('resume', item_id)

    async def stop(self, item_id):
        await self._control('stop', item_id)

    async def move(self, item_id, destination):
        await self._control('move', item_id, destination)

    async def recheck(self, item_id):
        await self._control('recheck', item_id)

    async def reannounce(self, item_id):
        await self._control('reannounce', item_id)

    async def get_files(self, item_id) -> list:
        return await self._control('get_files', item_id)

    async def remove_download(self, item_id, delete_files=False) -> None:
        await self._control('remove', item_id, delete_files)
        if self.history is not None:
            try:
                self.history.mark_deleted(item_id, self.instance_id)
            except Exception as e:
                self.log.warning(f"History update failed for {item_id}: {e}")

    async def add_magnet(self, uri, options=None):
        options = dict(options or {})
        grouping_id = await self.resolve_grouping(options.get('categoryName'))
        hash_val = await self._control('add_magnet', uri, grouping_id, options)
        self._record_added(hash_val, options)
        return hash_val

    async def add_torrent_raw(self, payload, options=None):
        options = dict(options or {})
        grouping_id = await self.resolve_grouping(options.get('categoryName'))
        hash_val = await self._control('add_torrent_raw', payload, grouping_id, options)
        self._record_added(hash_val, options)
        return hash_val

    def _record_added(self, hash_val, options) -> None:
        if self.history is None:
            return
        hash_val = hash_val or options.get('hash')
        if not hash_val:
            return
        try:
            self.history.add_download(
                hash_val, options.get('name'), options.get('size'),
                username=options.get('username'), client_type=self.client_type,
                category=options.get('categoryName') or DEFAULT_CATEGORY,
                instance_id=self.instance_id,
            )
        except Exception as e:
            self.log.warning(f"History insert failed for {hash_val}: {e}")

    async def set_category_or_label(self, item_id, category_name=None):
        grouping_id = await self.resolve_grouping(category_name)
        await self._control('set_grouping', item_id, grouping_id)

    async def resolve_grouping(self, category_name):
        """
        Native grouping id for a category name on this backend. A category not
        yet linked here is created on the backend and the link recorded.
        """
        if not category_name or category_name == DEFAULT_CATEGORY:
            return self.ops.default_grouping_id
        store = self.category_store
        if store is None:
            return self.ops.grouping_id_for_name(category_name)

        category = store.get_by_name(category_name)
        if category is None:
            raise CategoryError(f'Category "{category_name}" not found')
        grouping_id = category.external_ids.get(self.instance_id)
        if grouping_id is not None:
            return grouping_id

        client = self._require_client()
        async with store.lock:
            grouping_id = category.external_ids.get(self.instance_id)
            if grouping_id is None:
                grouping_id = await self.ops.ensure_grouping(client, category, self._default_path())
                if grouping_id is not None:
                    store.link_external_id(category.name, self.instance_id, grouping_id)
                    await store.save()
        return grouping_id

    # --- CATEGORY PASS-THROUGH ---

    def _default_path(self):
        if self.category_store is None:
            return None
        return self.category_store.get_client_default_path(self.instance_id)

    async def ensure_categories_batch(self, categories) -> list:
        client = self._require_client()
        return await self.ops.ensure_groupings_batch(client, categories, self._default_path())

    async def create_category(self, category):
        client = self._require_client()
        return await self.ops.ensure_grouping(client, category, self._default_path())

    async def update_category(self, category) -> dict:
        client = self._require_client()
        grouping_id = category.external_ids.get(self.instance_id)
        if grouping_id is None:
            grouping_id = await self.ops.ensure_grouping(client, category, self._default_path())
            if grouping_id is not None and self.category_store is not None:
                self.category_store.link_external_id(category.name, self.instance_id, grouping_id)
            return {'success': True, 'verified': True, 'mismatches': [], 'created': True}
        return await self.ops.update_grouping(client, grouping_id, category, self._default_path())

    async def rename_category(self, old_name, category):
        client = self._require_client()
        grouping_id = category.external_ids.get(self.instance_id)
        if grouping_id is None:
            grouping_id = self.ops.grouping_id_for_name(old_name)
        return await self.ops.rename_grouping(client, grouping_id, old_name, category, self._default_path())

    async def delete_category(self, category) -> None:
        client = self._require_client()
        grouping_id = category.external_ids.get(self.instance_id)
        if grouping_id is None:
            grouping_id = self.ops.grouping_id_for_name(category.name)
        if grouping_id is None or grouping_id == self.ops.default_grouping_id:
            return
        await self.ops.delete_grouping(client, grouping_id)
