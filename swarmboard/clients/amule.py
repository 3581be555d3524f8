"""
aMule talks the External Connections (EC) protocol: a stateful binary TCP
session. The framing lives outside this package. What the rest of the code
relies on is the `ECClient` contract below; a concrete implementation is
chosen per client record through its `clientFactory` setting, a
``"module:callable"`` path that is called with the record and returns an
object satisfying the contract.
"""
import importlib
import logging
from typing import Protocol, runtime_checkable

from ..errors import ConfigurationError, RemoteError, SwarmBoardError
from .base import ProtocolClient, as_list, error_text

log = logging.getLogger(__name__)


@runtime_checkable
class ECClient(Protocol):
    """Operations an EC session must offer. All methods are coroutines."""

    async def connect(self) -> dict:
        """Opens and authenticates the session. Returns {'version': ...}."""

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    async def get_download_queue(self) -> list:
        """Partial files: dicts with hash, name, size, completed, speed, status, category..."""

    async def get_shared_files(self) -> list: ...

    async def get_upload_queue(self) -> list: ...

    async def get_stats(self) -> dict:
        """uploadSpeed, downloadSpeed, uploadTotal, downloadTotal, ed2kConnected, ed2kHighId, kadConnected, kadFirewalled."""

    async def get_preferences(self) -> dict: ...

    async def pause_download(self, file_hash: str) -> None: ...

    async def resume_download(self, file_hash: str) -> None: ...

    async def stop_download(self, file_hash: str) -> None: ...

    async def cancel_download(self, file_hash: str) -> None: ...

    async def add_ed2k_link(self, link: str, category_id: int = 0) -> bool: ...

    async def set_file_category(self, file_hash: str, category_id: int) -> None: ...

    async def get_categories(self) -> list:
        """[{'id', 'title', 'path', 'comment', 'color', 'priority'}, ...] with id 0 as the default."""

    async def create_category(self, title: str, path: str, comment: str, color: int, priority: int) -> dict:
        """Returns {'success': bool, 'categoryId': int}."""

    async def update_category(self, category_id: int, title: str, path: str, comment: str,
                              color: int, priority: int) -> None: ...

    async def delete_category(self, category_id: int) -> None: ...


def load_client_factory(path: str):
    """Resolves a ``"package.module:callable"`` factory path."""
    module_name, _, attr = (path or "").partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid clientFactory {path!r}, expected 'module:callable'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import clientFactory module {module_name}: {e}") from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ConfigurationError(f"clientFactory {path!r} not found") from e


class AmuleClient(ProtocolClient):
    """Adapts an injected EC session to the uniform Protocol Client surface."""

    display_name = "aMule"
    default_port = 4712

    def __init__(self, config, transport=None, ec_client=None):
        super().__init__(config, transport=transport)
        self.version = None
        if ec_client is None:
            factory = config.get("clientFactory")
            if callable(factory):
                ec_client = factory(config)
            elif factory:
                ec_client = load_client_factory(factory)(config)
            else:
                raise ConfigurationError("aMule client record needs a clientFactory")
        self.ec = ec_client

    def is_connected(self) -> bool:
        return self.connected and self.ec.is_connected()

    async def ensure_logged_in(self) -> None:
        if not self.is_connected():
            await self.login()

    async def login(self) -> bool:
        info = await self.ec.connect()
        self.version = (info or {}).get("version")
        self.connected = True
        return True

    async def test_connection(self) -> dict:
        try:
            await self.login()
            return {"success": True, "version": f"aMule {self.version}" if self.version else "aMule"}
        except SwarmBoardError as e:
            self.connected = False
            return {"success": False, "error": error_text(e)}

    async def disconnect(self) -> None:
        try:
            await self.ec.disconnect()
        except SwarmBoardError as e:
            log.debug(f"Ignoring aMule disconnect error: {e}")
        self.connected = False

    # --- LISTING ---

    async def get_torrents(self) -> list:
        """Download queue as raw dicts (the uniform listing entry point)."""
        await self.ensure_logged_in()
        items = await self.ec.get_download_queue() or []
        for item in items:
            item['hash'] = (item.get('hash') or '').lower()
        return items

    async def get_shared_files(self) -> list:
        await self.ensure_logged_in()
        return await self.ec.get_shared_files() or []

    async def get_upload_queue(self) -> list:
        await self.ensure_logged_in()
        return await self.ec.get_upload_queue() or []

    async def get_stats(self) -> dict:
        await self.ensure_logged_in()
        return await self.ec.get_stats() or {}

    async def get_preferences(self) -> dict:
        await self.ensure_logged_in()
        return await self.ec.get_preferences() or {}

    async def get_files(self, hash_val: str) -> list:
        # ed2k downloads are always a single file
        for item in await self.get_torrents():
            if item['hash'] == hash_val.lower():
                size = item.get('size', 0)
                return [{
                    'index': 0,
                    'path': item.get('name'),
                    'size': size,
                    'progress': (item.get('completed', 0) / size) if size else 0,
                    'priority': item.get('priority', 0),
                }]
        return []

    # --- CONTROL ---

    async def pause(self, hashes) -> None:
        await self.ensure_logged_in()
        for file_hash in as_list(hashes):
            await self.ec.pause_download(file_hash)

    async def resume(self, hashes) -> None:
        await self.ensure_logged_in()
        for file_hash in as_list(hashes):
            await self.ec.resume_download(file_hash)

    async def stop(self, hashes) -> None:
        await self.ensure_logged_in()
        for file_hash in as_list(hashes):
            await self.ec.stop_download(file_hash)

    async def remove(self, hash_val: str, delete_files: bool = False) -> None:
        # Cancelling a partial file always discards its data
        await self.ensure_logged_in()
        await self.ec.cancel_download(hash_val)

    async def move(self, hashes, destination: str) -> None:
        raise RemoteError("aMule cannot move individual downloads")

    async def recheck(self, hashes) -> None:
        raise RemoteError("aMule does not support rechecking downloads")

    async def reannounce(self, hashes) -> None:
        raise RemoteError("aMule has no trackers to reannounce to")

    async def add_magnet(self, uri: str, options: dict = None):
        """Adds an ed2k:// link. The name is kept for the uniform surface."""
        await self.ensure_logged_in()
        category_id = (options or {}).get('categoryId') or 0
        if not await self.ec.add_ed2k_link(uri, category_id):
            raise RemoteError("aMule rejected the ed2k link")
        return None

    async def add_torrent_file(self, payload: bytes, options: dict = None):
        raise RemoteError("aMule does not accept .torrent files")

    async def set_file_category(self, hash_val: str, category_id: int) -> None:
        await self.ensure_logged_in()
        await self.ec.set_file_category(hash_val, category_id)

    # --- CATEGORIES ---

    async def get_categories(self) -> list:
        await self.ensure_logged_in()
        return await self.ec.get_categories() or []

    async def create_category(self, title, path, comment, color, priority) -> int:
        await self.ensure_logged_in()
        result = await self.ec.create_category(title, path, comment, color, priority) or {}
        if not result.get('success'):
            raise RemoteError(f"aMule failed to create category {title}")
        return result.get('categoryId')

    async def update_category(self, category_id, title, path, comment, color, priority) -> None:
        await self.ensure_logged_in()
        await self.ec.update_category(category_id, title, path, comment, color, priority)

    async def delete_category(self, category_id) -> None:
        await self.ensure_logged_in()
        await self.ec.delete_category(category_id)
