import base64
import logging
import re

from ..errors import AuthFailure, RemoteError, SwarmBoardError
from .base import ProtocolClient, as_list, error_text

log = logging.getLogger(__name__)

SESSION_COOKIE_RE = re.compile(r'_session_id=([^;,\s]+)')

# Fields requested from web.update_ui for the batched listing
TORRENT_FIELDS = [
    "hash", "name", "state", "progress", "total_wanted", "total_done",
    "total_uploaded", "download_payload_rate", "upload_payload_rate",
    "eta", "ratio", "num_seeds", "total_seeds", "num_peers", "total_peers",
    "save_path", "download_location", "time_added", "tracker_host",
    "label", "num_files", "message",
]


class DelugeClient(ProtocolClient):
    """
    Client for the Deluge Web API (JSON-RPC at /json).

    The WebUI and the daemon are separate processes: a successful login only
    proves the WebUI is reachable, so `test_connection` also attaches the
    WebUI to a daemon host when it isn't already.
    """

    display_name = "Deluge"
    default_port = 8112

    def __init__(self, config, transport=None):
        super().__init__(config, transport=transport)
        path = (config.get("path") or "/json").rstrip("/")
        if not path.endswith("/json"):
            path = f"{path}/json"
        self.rpc_url = f"{self.base_url}{path}"
        self._request_id = 0

    def _get_id(self):
        self._request_id += 1
        return self._request_id

    def _capture_session(self, response):
        match = SESSION_COOKIE_RE.search(response.headers.get("set-cookie", ""))
        if match:
            self.session_artifact = f"_session_id={match.group(1)}"

    @staticmethod
    def _is_auth_error(error) -> bool:
        # Deluge answers HTTP 200 with error code 1 when the session expired
        message = str(error.get("message", "")).lower() if isinstance(error, dict) else str(error).lower()
        code = error.get("code") if isinstance(error, dict) else None
        return code == 1 or "not authenticated" in message

    async def _call(self, method: str, params: list = None, *, timeout=None, retry_auth=True):
        """Performs one JSON-RPC call, re-logging in once if the session is rejected."""
        payload = {
            "method": method,
            "params": params if params is not None else [],
            "id": self._get_id(),
        }
        # Deluge checks this header to allow non-browser clients
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'X-Deluge-Web-Client': 'SwarmBoard',
        }
        if self.session_artifact:
            headers['Cookie'] = self.session_artifact

        response = await self._send("POST", self.rpc_url, json=payload, headers=headers, timeout=timeout)

        auth_invalid = response.status_code in (401, 403)
        body = None
        if not auth_invalid:
            if not response.is_success:
                raise RemoteError(f"Deluge HTTP {response.status_code} on {method}", status=response.status_code)
            try:
                body = response.json()
            except ValueError as e:
                raise RemoteError(f"Invalid JSON response from Deluge: {response.text[:200]}") from e
            error = body.get("error")
            if error is not None and self._is_auth_error(error):
                auth_invalid = True

        if auth_invalid:
            self.session_artifact = None
            self.connected = False
            if retry_auth:
                log.debug(f"Deluge session rejected on {method}, logging in again")
                await self.login()
                return await self._call(method, params, timeout=timeout, retry_auth=False)
            raise AuthFailure(f"Deluge authentication failed on {method}")

        # Deluge rotates sessions, so the cookie is captured on every response
        self._capture_session(response)

        error = body.get("error")
        if error is not None:
            message = error.get("message", "Unknown Deluge Error") if isinstance(error, dict) else error
            raise RemoteError(f"Deluge API Error: {message}")
        return body.get("result")

    # --- SESSION ---

    async def login(self) -> bool:
        self.session_artifact = None
        result = await self._call("auth.login", [self.password], retry_auth=False)
        if not result:
            self.connected = False
            raise AuthFailure("Deluge login failed: invalid password")
        self.connected = True
        return True

    async def _ensure_daemon_connection(self) -> bool:
        if await self._call("web.connected"):
            return True

        # host structure: [id, ip, port, status]
        hosts = await self._call("web.get_hosts")
        if not hosts:
            raise RemoteError("Deluge WebUI has no daemon hosts configured")

        target_host = hosts[0][0]
        log.info(f"Deluge WebUI not attached to a daemon, connecting to host {target_host}")
        await self._call("web.connect", [target_host])

        try:
            status = await self._call("web.get_host_status", [target_host])
            log.debug(f"Deluge daemon host status: {status}")
        except RemoteError:
            pass
        return bool(await self._call("web.connected"))

    async def test_connection(self) -> dict:
        try:
            await self.login()
            if not await self._ensure_daemon_connection():
                self.connected = False
                return {"success": False, "error": "Deluge WebUI online, but daemon disconnected"}
            try:
                version = await self._call("daemon.get_version")
            except RemoteError:
                version = None
            return {"success": True, "version": f"Deluge {version}" if version else "Deluge"}
        except SwarmBoardError as e:
            self.connected = False
            return {"success": False, "error": error_text(e)}

    async def disconnect(self) -> None:
        if self.session_artifact:
            try:
                await self._call("auth.delete_session", retry_auth=False)
            except SwarmBoardError as e:
                log.debug(f"Ignoring Deluge disconnect error: {e}")
        self.session_artifact = None
        self.connected = False

    # --- LISTING ---

    async def get_torrents(self) -> list:
        await self.ensure_logged_in()
        data = await self._call("web.update_ui", [TORRENT_FIELDS, {}])
        torrents = (data or {}).get("torrents") or {}
        result = []
        for hash_val, info in torrents.items():
            item = dict(info)
            item["hash"] = hash_val.lower()
            result.append(item)
        return result

    async def get_torrent_status(self, hash_val: str, keys: list) -> dict:
        await self.ensure_logged_in()
        return await self._call("core.get_torrent_status", [hash_val, keys]) or {}

    async def get_torrents_status(self, filter_dict: dict, keys: list) -> dict:
        await self.ensure_logged_in()
        return await self._call("core.get_torrents_status", [filter_dict, keys]) or {}

    async def get_trackers_and_peers(self, hash_val: str) -> dict:
        return await self.get_torrent_status(hash_val, ["trackers", "tracker_status", "peers"])

    async def get_files(self, hash_val: str) -> list:
        data = await self.get_torrent_status(hash_val, ["files", "file_progress", "file_priorities"])
        files = data.get("files") or []
        progress = data.get("file_progress") or []
        priorities = data.get("file_priorities") or []
        result = []
        for f in files:
            index = f.get("index", len(result))
            result.append({
                "index": index,
                "path": f.get("path"),
                "size": f.get("size", 0),
                "progress": progress[index] if index < len(progress) else 0,
                "priority": priorities[index] if index < len(priorities) else 1,
            })
        return result

    async def get_session_status(self) -> dict:
        await self.ensure_logged_in()
        keys = [
            "download_rate", "upload_rate", "payload_download_rate", "payload_upload_rate",
            "total_download", "total_upload", "dht_nodes", "has_incoming_connections",
            "num_peers",
        ]
        return await self._call("core.get_session_status", [keys]) or {}

    async def get_listen_port(self):
        await self.ensure_logged_in()
        return await self._call("core.get_listen_port")

    async def get_free_space(self, path: str = None):
        await self.ensure_logged_in()
        return await self._call("core.get_free_space", [path] if path else [])

    async def get_config_value(self, key: str):
        await self.ensure_logged_in()
        return await self._call("core.get_config_value", [key])

    # --- CONTROL ---

    async def pause(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("core.pause_torrent", [as_list(hashes)])

    async def resume(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("core.resume_torrent", [as_list(hashes)])

    async def remove(self, hash_val: str, delete_files: bool = False) -> None:
        await self.ensure_logged_in()
        await self._call("core.remove_torrent", [hash_val, bool(delete_files)])

    async def move(self, hashes, destination: str) -> None:
        await self.ensure_logged_in()
        await self._call("core.move_storage", [as_list(hashes), destination])

    async def recheck(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("core.force_recheck", [as_list(hashes)])

    async def reannounce(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("core.force_reannounce", [as_list(hashes)])

    async def set_torrent_options(self, hashes, options: dict) -> None:
        await self.ensure_logged_in()
        await self._call("core.set_torrent_options", [as_list(hashes), options])

    def _add_options(self, options):
        options = options or {}
        deluge_options = {"add_paused": not options.get("start", True)}
        if options.get("savePath"):
            deluge_options["download_location"] = options["savePath"]
        return deluge_options

    async def add_magnet(self, uri: str, options: dict = None):
        await self.ensure_logged_in()
        result = await self._call("core.add_torrent_magnet", [uri, self._add_options(options)])
        return result.lower() if isinstance(result, str) else None

    async def add_torrent_file(self, payload: bytes, options: dict = None):
        await self.ensure_logged_in()
        filename = (options or {}).get("filename") or "upload.torrent"
        encoded = base64.b64encode(payload).decode("ascii")
        result = await self._call("core.add_torrent_file", [filename, encoded, self._add_options(options)])
        return result.lower() if isinstance(result, str) else None

    # --- PLUGINS & LABELS ---

    async def get_enabled_plugins(self) -> list:
        await self.ensure_logged_in()
        return await self._call("core.get_enabled_plugins") or []

    async def get_available_plugins(self) -> list:
        await self.ensure_logged_in()
        return await self._call("core.get_available_plugins") or []

    async def enable_plugin(self, name: str) -> None:
        await self.ensure_logged_in()
        await self._call("core.enable_plugin", [name])

    async def ensure_label_plugin(self) -> bool:
        """Enables the Label plugin when it's installed but off. Returns availability."""
        if "Label" in await self.get_enabled_plugins():
            return True
        if "Label" not in await self.get_available_plugins():
            return False
        log.info("Enabling Deluge Label plugin")
        await self.enable_plugin("Label")
        return "Label" in await self.get_enabled_plugins()

    async def get_labels(self) -> list:
        await self.ensure_logged_in()
        return await self._call("label.get_labels") or []

    async def add_label(self, label: str) -> None:
        await self.ensure_logged_in()
        await self._call("label.add", [label])

    async def remove_label(self, label: str) -> None:
        await self.ensure_logged_in()
        await self._call("label.remove", [label])

    async def set_torrent_label(self, hash_val: str, label: str) -> None:
        await self.ensure_logged_in()
        await self._call("label.set_torrent", [hash_val, label])
