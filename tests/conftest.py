import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from swarmboard.backends import AmuleOps, get_backend_ops
from swarmboard.categories import CategoryStore
from swarmboard.config import normalize_client_config
from swarmboard.manager import ConnectionManager
from swarmboard.registry import ClientRegistry


class FakeEC:
    """In-memory aMule EC session recording every call."""

    def __init__(self, categories=None):
        self.categories = {0: {'id': 0, 'title': 'all', 'path': '', 'comment': '', 'color': 0, 'priority': 0}}
        for cat in categories or []:
            self.categories[cat['id']] = dict({'path': '', 'comment': '', 'color': 0, 'priority': 0}, **cat)
        self.next_id = max(self.categories) + 1
        self.calls = []
        self.connected = False
        self.connect_error = None
        self.connect_gate = None
        self.connect_count = 0
        self.downloads = []
        self.queue_error = None
        self.ignore_fields = set()

    async def connect(self):
        self.connect_count += 1
        self.calls.append(('connect',))
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return {'version': '2.3.3'}

    async def disconnect(self):
        self.calls.append(('disconnect',))
        self.connected = False

    def is_connected(self):
        return self.connected

    async def get_download_queue(self):
        if self.queue_error is not None:
            raise self.queue_error
        return [dict(d) for d in self.downloads]

    async def get_shared_files(self):
        return []

    async def get_upload_queue(self):
        return []

    async def get_stats(self):
        return {'uploadSpeed': 10, 'downloadSpeed': 20, 'ed2kConnected': True, 'ed2kHighId': True}

    async def get_preferences(self):
        return {'tcpPort': 4662, 'incomingDir': '/incoming'}

    async def pause_download(self, file_hash):
        self.calls.append(('pause_download', file_hash))

    async def resume_download(self, file_hash):
        self.calls.append(('resume_download', file_hash))

    async def stop_download(self, file_hash):
        self.calls.append(('stop_download', file_hash))

    async def cancel_download(self, file_hash):
        self.calls.append(('cancel_download', file_hash))

    async def add_ed2k_link(self, link, category_id=0):
        self.calls.append(('add_ed2k_link', link, category_id))
        return True

    async def set_file_category(self, file_hash, category_id):
        self.calls.append(('set_file_category', file_hash, category_id))

    async def get_categories(self):
        self.calls.append(('get_categories',))
        return [dict(c) for c in self.categories.values()]

    async def create_category(self, title, path, comment, color, priority):
        self.calls.append(('create_category', title))
        category_id = self.next_id
        self.next_id += 1
        self.categories[category_id] = {
            'id': category_id, 'title': title, 'path': path,
            'comment': comment, 'color': color, 'priority': priority,
        }
        return {'success': True, 'categoryId': category_id}

    async def update_category(self, category_id, title, path, comment, color, priority):
        self.calls.append(('update_category', category_id))
        values = {'title': title, 'path': path, 'comment': comment, 'color': color, 'priority': priority}
        for key, value in values.items():
            if key not in self.ignore_fields:
                self.categories[category_id][key] = value

    async def delete_category(self, category_id):
        self.calls.append(('delete_category', category_id))
        del self.categories[category_id]

    def mutating_calls(self):
        return [c for c in self.calls if c[0] in ('create_category', 'update_category', 'delete_category')]


@pytest.fixture
def scheduler():
    # Never started: jobs stay pending and can be inspected
    return AsyncIOScheduler()


@pytest.fixture
def registry():
    return ClientRegistry()


@pytest_asyncio.fixture
async def store(tmp_path, registry):
    category_store = CategoryStore(tmp_path / "categories.json", registry=registry, validate_debounce=0)
    await category_store.load()
    return category_store


@pytest.fixture
def make_amule_manager(scheduler, store, registry):
    def factory(fake, host="mule", **record):
        config = normalize_client_config(dict({"type": "amule", "host": host, "password": "pw"}, **record))
        ops = AmuleOps(ec_client_factory=lambda _config: fake)
        manager = ConnectionManager(config["id"], ops, config, scheduler, category_store=store)
        registry.register(manager)
        return manager
    return factory


@pytest.fixture
def make_http_manager(scheduler, store):
    """Manager for an HTTP backend whose requests go to handler."""
    def factory(client_type, handler, host="box", **record):
        defaults = {"type": client_type, "host": host, "username": "admin", "password": "pw"}
        config = normalize_client_config(dict(defaults, **record))
        ops = get_backend_ops(client_type, transport=mock_transport(handler))
        return ConnectionManager(config["id"], ops, config, scheduler, category_store=store)
    return factory


def form(request):
    """Decoded x-www-form-urlencoded body of a mocked request."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def rpc_body(request):
    return json.loads(request.content)


def mock_transport(handler):
    return httpx.MockTransport(handler)
