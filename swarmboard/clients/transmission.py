# swarmboard/clients/transmission.py
import base64
import json
import logging

from ..errors import AuthFailure, RemoteError, SwarmBoardError, TransportError
from .base import ProtocolClient, as_list, error_text

log = logging.getLogger(__name__)

SESSION_HEADER = 'X-Transmission-Session-Id'

TORRENT_FIELDS = [
    "id", "hashString", "name", "status", "percentDone", "totalSize", "sizeWhenDone",
    "leftUntilDone", "downloadedEver", "uploadedEver", "rateDownload", "rateUpload",
    "eta", "uploadRatio", "downloadDir", "addedDate", "labels", "error", "errorString",
    "peersConnected", "peersSendingToUs", "peersGettingFromUs", "isFinished",
    "trackers", "trackerStats", "peers", "fileCount",
]


class TransmissionClient(ProtocolClient):
    """
    Client for a Transmission RPC server.
    Supports both Legacy (v4.0.x) and JSON-RPC 2.0 (v4.1.0+) response formats.

    Transmission guards its RPC endpoint with a session id header: the first
    request is answered with 409 and the id to use, which is cached and sent
    on every later call.
    """

    display_name = "Transmission"
    default_port = 9091

    def __init__(self, config, transport=None):
        super().__init__(config, transport=transport)
        path = (config.get("path") or "/transmission/rpc").rstrip("/")
        # Transmission ALWAYS needs /transmission/rpc at the end
        if not path.endswith("/transmission/rpc"):
            path = f"{path}/transmission/rpc"
        self.rpc_url = f"{self.base_url}{path}"
        self.version = None
        self._rpc_id_counter = 0

    def _get_next_rpc_id(self):
        """Generates a unique tag for each RPC request."""
        self._rpc_id_counter += 1
        return self._rpc_id_counter

    async def _call(self, method: str, arguments: dict = None, *, timeout=None, retry_csrf=True):
        """Performs an RPC request, handling auth, CSRF, and response normalization."""
        headers = {'Content-Type': 'application/json'}
        if self.session_artifact:
            headers[SESSION_HEADER] = self.session_artifact

        # Use Basic Auth if credentials are provided
        auth = (self.username, self.password) if self.username or self.password else None

        request_body = {"method": method, "tag": self._get_next_rpc_id()}
        if arguments is not None:
            request_body["arguments"] = arguments

        response = await self._send(
            "POST", self.rpc_url,
            content=json.dumps(request_body), headers=headers, auth=auth, timeout=timeout,
        )

        if response.status_code == 409:
            new_token = response.headers.get(SESSION_HEADER)
            if new_token and retry_csrf:
                self.session_artifact = new_token
                return await self._call(method, arguments, timeout=timeout, retry_csrf=False)
            raise TransportError("Transmission CSRF token refresh failed")

        if response.status_code == 401:
            self.connected = False
            raise AuthFailure("Transmission authentication failed: invalid username or password")

        if not response.is_success:
            raise RemoteError(f"Transmission HTTP {response.status_code} on {method}", status=response.status_code)

        try:
            rpc_response = response.json()
        except ValueError as e:
            raise RemoteError(f"Invalid JSON response from Transmission: {response.text[:200]}") from e

        # Transmission 4.0.x returns data in 'arguments' and 'result' is just "success".
        # Transmission 4.1.x returns data in 'result'.
        if rpc_response.get('error'):
            raise RemoteError(f"Transmission RPC error in {method}: {rpc_response['error']}")
        if 'arguments' in rpc_response:
            if rpc_response.get('result') != 'success':
                raise RemoteError(f"Transmission RPC error in {method}: {rpc_response.get('result')}")
            return rpc_response['arguments']

        result = rpc_response.get('result')
        if isinstance(result, dict):
            return result
        if result == 'success':
            return {}
        raise RemoteError(f"Transmission RPC error in {method}: {result}")

    # --- SESSION ---

    async def login(self) -> bool:
        """Implicit login via session-get, which also primes the CSRF token."""
        data = await self._call("session-get", {"fields": ["version"]})
        self.version = data.get('version')
        self.connected = True
        return True

    async def ensure_logged_in(self) -> None:
        if not self.connected:
            await self.login()

    async def test_connection(self) -> dict:
        try:
            await self.login()
            return {"success": True, "version": self.version or "Unknown"}
        except SwarmBoardError as e:
            self.connected = False
            return {"success": False, "error": error_text(e)}

    async def disconnect(self) -> None:
        # Transmission sessions are stateless beyond the CSRF token
        self.session_artifact = None
        self.connected = False

    # --- LISTING ---

    async def get_torrents(self, fields=None, ids=None) -> list:
        await self.ensure_logged_in()
        arguments = {"fields": fields or TORRENT_FIELDS}
        if ids is not None:
            arguments["ids"] = as_list(ids)
        data = await self._call("torrent-get", arguments)
        torrents = data.get('torrents') or []
        for torrent in torrents:
            torrent['hash'] = (torrent.get('hashString') or '').lower()
        return torrents

    async def get_files(self, hash_val: str) -> list:
        torrents = await self.get_torrents(["hashString", "files", "fileStats"], ids=hash_val)
        if not torrents:
            return []
        torrent = torrents[0]
        stats = torrent.get('fileStats') or []
        result = []
        for index, f in enumerate(torrent.get('files') or []):
            length = f.get('length', 0)
            stat = stats[index] if index < len(stats) else {}
            result.append({
                'index': index,
                'path': f.get('name'),
                'size': length,
                'progress': (f.get('bytesCompleted', 0) / length) if length else 0,
                # Transmission priorities are -1/0/1, wanted=False means skipped
                'priority': stat.get('priority', 0) + 1 if stat.get('wanted', True) else 0,
            })
        return result

    async def get_session(self, fields=None) -> dict:
        await self.ensure_logged_in()
        return await self._call("session-get", {"fields": fields} if fields else None)

    async def get_session_stats(self) -> dict:
        await self.ensure_logged_in()
        return await self._call("session-stats")

    async def port_test(self) -> bool:
        await self.ensure_logged_in()
        data = await self._call("port-test", timeout=20.0)
        return bool(data.get('port-is-open'))

    # --- CONTROL ---

    async def pause(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("torrent-stop", {"ids": as_list(hashes)})

    async def resume(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("torrent-start", {"ids": as_list(hashes)})

    async def remove(self, hash_val: str, delete_files: bool = False) -> None:
        await self.ensure_logged_in()
        await self._call("torrent-remove", {"ids": [hash_val], "delete-local-data": bool(delete_files)})

    async def move(self, hashes, destination: str) -> None:
        await self.ensure_logged_in()
        await self._call("torrent-set-location", {"ids": as_list(hashes), "location": destination, "move": True})

    async def recheck(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("torrent-verify", {"ids": as_list(hashes)})

    async def reannounce(self, hashes) -> None:
        await self.ensure_logged_in()
        await self._call("torrent-reannounce", {"ids": as_list(hashes)})

    async def set_torrent(self, hashes, fields: dict) -> None:
        await self.ensure_logged_in()
        arguments = {"ids": as_list(hashes)}
        arguments.update(fields)
        await self._call("torrent-set", arguments)

    async def set_labels(self, hashes, labels: list) -> None:
        await self.set_torrent(hashes, {"labels": list(labels)})

    async def _add(self, arguments: dict, options: dict):
        await self.ensure_logged_in()
        options = options or {}
        if options.get('savePath'):
            arguments['download-dir'] = options['savePath']
        arguments['paused'] = not options.get('start', True)
        if options.get('labels'):
            arguments['labels'] = list(options['labels'])

        data = await self._call("torrent-add", arguments)
        added = data.get('torrent-added') or data.get('torrent-duplicate')
        if not added:
            return None
        return (added.get('hashString') or '').lower() or None

    async def add_magnet(self, uri: str, options: dict = None):
        return await self._add({"filename": uri}, options)

    async def add_torrent_file(self, payload: bytes, options: dict = None):
        return await self._add({"metainfo": base64.b64encode(payload).decode("ascii")}, options)

    # --- LABELS ---

    async def get_labels(self) -> list:
        """Labels are ad hoc in Transmission: the set in use across all items."""
        torrents = await self.get_torrents(["hashString", "labels"])
        labels = set()
        for torrent in torrents:
            labels.update(torrent.get('labels') or [])
        return sorted(labels)
