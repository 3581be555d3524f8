import asyncio
import logging
import re

from ..errors import AuthFailure, RemoteError, SwarmBoardError
from .base import ProtocolClient, as_list, error_text

log = logging.getLogger(__name__)

SID_COOKIE_RE = re.compile(r'SID=([^;,\s]+)')


class QBittorrentClient(ProtocolClient):
    """Client for the qBittorrent WebUI REST API (/api/v2)."""

    display_name = "qBittorrent"
    default_port = 8080

    def __init__(self, config, transport=None):
        super().__init__(config, transport=transport)
        path = (config.get("path") or "").rstrip("/")
        self.api_url = f"{self.base_url}{path}/api/v2"
        self.version = None

    def _capture_session(self, response):
        match = SID_COOKIE_RE.search(response.headers.get("set-cookie", ""))
        if match:
            self.session_artifact = f"SID={match.group(1)}"

    async def _request(self, method: str, endpoint: str, *, params=None, data=None, files=None,
                       timeout=None, retry_auth=True):
        """
        Calls one API endpoint. A 401/403 clears the SID, logs in again and
        retries once. Non-success statuses raise RemoteError carrying the
        status so callers can detect 404 on renamed endpoints.
        """
        # qBittorrent v4.1+ requires a Referer header to prevent CSRF errors
        headers = {'Referer': self.base_url}
        if self.session_artifact:
            headers['Cookie'] = self.session_artifact

        response = await self._send(
            method, f"{self.api_url}/{endpoint}",
            params=params, data=data, files=files, headers=headers, timeout=timeout,
        )

        if response.status_code in (401, 403):
            self.session_artifact = None
            self.connected = False
            if retry_auth:
                log.debug(f"qBittorrent session rejected on {endpoint}, logging in again")
                await self.login()
                return await self._request(
                    method, endpoint, params=params, data=data, files=files,
                    timeout=timeout, retry_auth=False,
                )
            raise AuthFailure(f"qBittorrent authentication failed on {endpoint}")

        if not response.is_success:
            raise RemoteError(
                f"qBittorrent HTTP {response.status_code} on {endpoint}: {response.text[:200]}",
                status=response.status_code,
            )

        self._capture_session(response)

        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    async def _post_with_fallback(self, endpoint: str, legacy_endpoint: str, data: dict):
        # v5 renamed pause/resume to stop/start; only a 404 means the old API
        try:
            return await self._request("POST", endpoint, data=data)
        except RemoteError as e:
            if e.status != 404:
                raise
            log.debug(f"qBittorrent {endpoint} not found, falling back to {legacy_endpoint}")
            return await self._request("POST", legacy_endpoint, data=data)

    # --- SESSION ---

    async def login(self) -> bool:
        """Authenticates with qBittorrent and stores the SID cookie."""
        self.session_artifact = None
        response = await self._send(
            "POST", f"{self.api_url}/auth/login",
            data={'username': self.username, 'password': self.password},
            headers={'Referer': self.base_url},
        )
        if response.status_code == 403:
            self.connected = False
            raise AuthFailure("qBittorrent login refused (IP banned after too many failed attempts)")
        if not response.is_success or "Ok." not in response.text:
            self.connected = False
            raise AuthFailure("qBittorrent login failed: invalid username or password")

        self._capture_session(response)
        self.connected = True
        return True

    async def test_connection(self) -> dict:
        try:
            await self.login()
            self.version = await self._request("GET", "app/version")
            return {"success": True, "version": self.version}
        except SwarmBoardError as e:
            self.connected = False
            return {"success": False, "error": error_text(e)}

    async def disconnect(self) -> None:
        if self.session_artifact:
            try:
                await self._request("POST", "auth/logout", retry_auth=False)
            except SwarmBoardError as e:
                log.debug(f"Ignoring qBittorrent logout error: {e}")
        self.session_artifact = None
        self.connected = False

    # --- LISTING ---

    async def get_torrents(self, filter=None, category=None) -> list:
        await self.ensure_logged_in()
        params = {}
        if filter:
            params['filter'] = filter
        if category is not None:
            params['category'] = category
        torrents = await self._request("GET", "torrents/info", params=params) or []
        for torrent in torrents:
            torrent['hash'] = torrent.get('hash', '').lower()
        return torrents

    async def get_trackers(self, hash_val: str) -> list:
        await self.ensure_logged_in()
        return await self._request("GET", "torrents/trackers", params={'hash': hash_val}) or []

    async def get_peers(self, hash_val: str) -> dict:
        await self.ensure_logged_in()
        data = await self._request("GET", "sync/torrentPeers", params={'hash': hash_val, 'rid': 0}) or {}
        return data.get('peers') or {}

    async def get_trackers_and_peers(self, hash_val: str) -> dict:
        trackers, peers = await asyncio.gather(self.get_trackers(hash_val), self.get_peers(hash_val))
        return {'trackers': trackers, 'peers': peers}

    async def get_files(self, hash_val: str) -> list:
        await self.ensure_logged_in()
        files = await self._request("GET", "torrents/files", params={'hash': hash_val}) or []
        return [
            {
                'index': f.get('index', i),
                'path': f.get('name'),
                'size': f.get('size', 0),
                'progress': f.get('progress', 0),
                'priority': f.get('priority', 1),
            }
            for i, f in enumerate(files)
        ]

    async def get_properties(self, hash_val: str) -> dict:
        await self.ensure_logged_in()
        return await self._request("GET", "torrents/properties", params={'hash': hash_val}) or {}

    async def get_main_data(self) -> dict:
        await self.ensure_logged_in()
        return await self._request("GET", "sync/maindata", params={'rid': 0}) or {}

    async def get_preferences(self) -> dict:
        await self.ensure_logged_in()
        return await self._request("GET", "app/preferences") or {}

    async def get_default_save_path(self) -> str:
        await self.ensure_logged_in()
        return await self._request("GET", "app/defaultSavePath")

    async def get_log(self, last_known_id: int = -1) -> list:
        await self.ensure_logged_in()
        return await self._request("GET", "log/main", params={'last_known_id': last_known_id}) or []

    # --- CONTROL ---

    async def pause(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._post_with_fallback("torrents/stop", "torrents/pause", {'hashes': '|'.join(as_list(hashes))})

    async def resume(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._post_with_fallback("torrents/start", "torrents/resume", {'hashes': '|'.join(as_list(hashes))})

    async def remove(self, hash_val: str, delete_files: bool = False) -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/delete", data={
            'hashes': hash_val,
            'deleteFiles': 'true' if delete_files else 'false',
        })

    async def move(self, hashes, destination: str) -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/setLocation", data={
            'hashes': '|'.join(as_list(hashes)),
            'location': destination,
        })

    async def recheck(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/recheck", data={'hashes': '|'.join(as_list(hashes))})

    async def reannounce(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/reannounce", data={'hashes': '|'.join(as_list(hashes))})

    async def set_category(self, hashes, category: str) -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/setCategory", data={
            'hashes': '|'.join(as_list(hashes)),
            'category': category,
        })

    def _add_form(self, options):
        options = options or {}
        form = {}
        if options.get('category'):
            form['category'] = options['category']
        if options.get('savePath'):
            form['savepath'] = options['savePath']
        if not options.get('start', True):
            # Both spellings so old and new WebUI APIs honour it
            form['paused'] = 'true'
            form['stopped'] = 'true'
        return form

    async def add_magnet(self, uri: str, options: dict = None):
        await self.ensure_logged_in()
        form = self._add_form(options)
        form['urls'] = uri
        result = await self._request("POST", "torrents/add", data=form)
        if isinstance(result, str) and "Fails." in result:
            raise RemoteError("qBittorrent rejected the magnet link")
        return None

    async def add_torrent_file(self, payload: bytes, options: dict = None):
        await self.ensure_logged_in()
        filename = (options or {}).get('filename') or 'upload.torrent'
        files = {'torrents': (filename, payload, 'application/x-bittorrent')}
        result = await self._request("POST", "torrents/add", data=self._add_form(options), files=files)
        if isinstance(result, str) and "Fails." in result:
            raise RemoteError("qBittorrent rejected the torrent file")
        return None

    # --- CATEGORIES ---

    async def get_categories(self) -> dict:
        """Returns {name: {'name', 'savePath'}}."""
        await self.ensure_logged_in()
        return await self._request("GET", "torrents/categories") or {}

    async def create_category(self, name: str, save_path: str = "") -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/createCategory", data={'category': name, 'savePath': save_path or ''})

    async def edit_category(self, name: str, save_path: str = "") -> dict:
        """Edits the save path and reads it back. Returns {'verified', 'savePath'}."""
        await self.ensure_logged_in()
        await self._request("POST", "torrents/editCategory", data={'category': name, 'savePath': save_path or ''})
        current = (await self.get_categories()).get(name)
        actual = (current or {}).get('savePath', '')
        return {'verified': actual == (save_path or ''), 'savePath': actual}

    async def remove_categories(self, names) -> None:
        await self.ensure_logged_in()
        await self._request("POST", "torrents/removeCategories", data={'categories': '\n'.join(as_list(names))})

    async def rename_category(self, old_name: str, new_name: str, save_path: str = "") -> dict:
        """
        qBittorrent has no rename primitive, so this creates the new category,
        moves every member across and then removes the old one. If moving the
        members fails the new category is removed again and the error raised.
        """
        await self.create_category(new_name, save_path)
        try:
            members = await self.get_torrents(category=old_name)
            hashes = [t['hash'] for t in members]
            if hashes:
                await self.set_category(hashes, new_name)
        except SwarmBoardError:
            try:
                await self.remove_categories(new_name)
            except SwarmBoardError as cleanup_error:
                log.warning(f"Could not remove {new_name} after failed rename: {cleanup_error}")
            raise

        await self.remove_categories(old_name)

        categories = await self.get_categories()
        verified = new_name in categories and old_name not in categories
        return {'verified': verified, 'moved': len(hashes)}
