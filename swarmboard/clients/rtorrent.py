# swarmboard/clients/rtorrent.py
import base64
import logging
import xml.etree.ElementTree as ET
from urllib.parse import quote, unquote

from ..errors import AuthFailure, RemoteError, SwarmBoardError
from ..hashing import info_hash_from_payload, parse_magnet_uri
from .base import ProtocolClient, as_list, error_text

log = logging.getLogger(__name__)

# Standard ruTorrent label field, stored URL-encoded
LABEL_ATTR = "d.custom1"

TORRENT_FIELDS = [
    ("hash", "d.hash="),
    ("name", "d.name="),
    ("size", "d.size_bytes="),
    ("completed", "d.completed_bytes="),
    ("downRate", "d.down.rate="),
    ("upRate", "d.up.rate="),
    ("upTotal", "d.up.total="),
    ("ratio", "d.ratio="),
    ("open", "d.state="),
    ("active", "d.is_active="),
    ("hashing", "d.is_hash_checking="),
    ("complete", "d.complete="),
    ("label", f"{LABEL_ATTR}="),
    ("directory", "d.directory="),
    ("addedAt", "d.load_date="),
    ("message", "d.message="),
    ("seeds", "d.peers_complete="),
    ("peers", "d.peers_accounted="),
    ("multiFile", "d.is_multi_file="),
]

TRACKER_FIELDS = ["t.url=", "t.is_enabled=", "t.group=", "t.scrape_complete=", "t.scrape_incomplete="]
PEER_FIELDS = ["p.address=", "p.port=", "p.client_version=", "p.completed_percent=", "p.down_rate=", "p.up_rate="]


def _xml_value(parent, value):
    """Appends <value> for a Python value. Order matters: bool is an int."""
    node = ET.SubElement(parent, "value")
    if isinstance(value, bool):
        ET.SubElement(node, "boolean").text = "1" if value else "0"
    elif isinstance(value, int):
        # i8 is safer for file sizes
        ET.SubElement(node, "i8").text = str(value)
    elif isinstance(value, float):
        ET.SubElement(node, "double").text = repr(value)
    elif isinstance(value, (bytes, bytearray)):
        ET.SubElement(node, "base64").text = base64.b64encode(value).decode("ascii")
    elif isinstance(value, (list, tuple)):
        data = ET.SubElement(ET.SubElement(node, "array"), "data")
        for item in value:
            _xml_value(data, item)
    elif isinstance(value, dict):
        struct = ET.SubElement(node, "struct")
        for key, item in value.items():
            member = ET.SubElement(struct, "member")
            ET.SubElement(member, "name").text = str(key)
            _xml_value(member, item)
    else:
        ET.SubElement(node, "string").text = "" if value is None else str(value)


def build_method_call(method: str, params=None) -> bytes:
    root = ET.Element("methodCall")
    ET.SubElement(root, "methodName").text = method
    params_node = ET.SubElement(root, "params")
    for param in params or []:
        _xml_value(ET.SubElement(params_node, "param"), param)
    return b"<?xml version='1.0'?>\n" + ET.tostring(root)


def _parse_value(node):
    children = list(node)
    if not children:
        # Untyped values are strings
        return node.text or ""
    typed = children[0]
    tag = typed.tag
    if tag == "string":
        return typed.text or ""
    if tag in ("i4", "i8", "int"):
        return int(typed.text)
    if tag == "boolean":
        return typed.text.strip() == "1"
    if tag == "double":
        return float(typed.text)
    if tag == "base64":
        return base64.b64decode(typed.text or "")
    if tag == "nil":
        return None
    if tag == "array":
        return [_parse_value(v) for v in typed.findall("data/value")]
    if tag == "struct":
        return {m.findtext("name"): _parse_value(m.find("value")) for m in typed.findall("member")}
    return typed.text


def parse_method_response(text: str):
    """Returns the single result value. Faults raise RemoteError."""
    try:
        # Some web servers emit newlines before <?xml>
        root = ET.fromstring(text.strip())
    except ET.ParseError as e:
        raise RemoteError(f"Failed to parse rTorrent response: {e} | Raw: {text[:100]}") from e

    fault = root.find("fault/value")
    if fault is not None:
        detail = _parse_value(fault)
        message = detail.get("faultString") if isinstance(detail, dict) else detail
        raise RemoteError(f"XML-RPC Fault: {message or 'Unknown'}")

    value = root.find("params/param/value")
    return _parse_value(value) if value is not None else None


class RTorrentClient(ProtocolClient):
    """
    Client for rTorrent's XML-RPC interface, usually exposed by a web server
    at /RPC2. The interface is stateless: credentials, when set, go out as
    HTTP Basic auth on every request. Item hashes are uppercase on the wire.
    """

    display_name = "rTorrent"
    default_port = 8000

    def __init__(self, config, transport=None):
        super().__init__(config, transport=transport)
        path = config.get("path") or "/RPC2"
        self.rpc_url = f"{self.base_url}{path if path.startswith('/') else '/' + path}"
        self.version = None

    async def _call(self, method: str, params=None, *, timeout=None):
        auth = (self.username, self.password) if self.username else None
        response = await self._send(
            "POST", self.rpc_url,
            content=build_method_call(method, params),
            headers={"Content-Type": "text/xml"},
            auth=auth, timeout=timeout,
        )
        if response.status_code in (401, 403):
            self.connected = False
            raise AuthFailure("rTorrent authentication failed: invalid username or password")
        if not response.is_success:
            raise RemoteError(f"rTorrent HTTP {response.status_code} on {method}", status=response.status_code)
        return parse_method_response(response.text)

    async def multicall(self, calls):
        """
        Runs [(method, params), ...] in one system.multicall request. Returns
        the results in order. A fault in any call raises RemoteError.
        """
        payload = [{"methodName": method, "params": list(params)} for method, params in calls]
        results = await self._call("system.multicall", [payload])
        values = []
        for (method, _), result in zip(calls, results or []):
            if isinstance(result, dict):
                raise RemoteError(f"XML-RPC Fault in {method}: {result.get('faultString', 'Unknown')}")
            values.append(result[0] if result else None)
        return values

    # --- SESSION ---

    async def login(self) -> bool:
        self.version = await self._call("system.client_version")
        self.connected = True
        return True

    async def ensure_logged_in(self) -> None:
        if not self.connected:
            await self.login()

    async def test_connection(self) -> dict:
        try:
            await self.login()
            return {"success": True, "version": f"rTorrent {self.version}" if self.version else "rTorrent"}
        except SwarmBoardError as e:
            self.connected = False
            return {"success": False, "error": error_text(e)}

    async def disconnect(self) -> None:
        self.connected = False

    # --- LISTING ---

    async def get_torrents(self) -> list:
        await self.ensure_logged_in()
        rows = await self._call("d.multicall2", ["", "main"] + [cmd for _, cmd in TORRENT_FIELDS])
        torrents = []
        for row in rows or []:
            torrent = dict(zip((key for key, _ in TORRENT_FIELDS), row))
            torrent['hash'] = (torrent.get('hash') or '').lower()
            torrent['label'] = unquote(torrent.get('label') or '')
            torrents.append(torrent)
        return torrents

    async def get_files(self, hash_val: str) -> list:
        await self.ensure_logged_in()
        rows = await self._call("f.multicall", [
            hash_val.upper(), "", "f.path=", "f.size_bytes=", "f.completed_chunks=",
            "f.size_chunks=", "f.priority=",
        ])
        result = []
        for index, (path, size, done_chunks, chunks, priority) in enumerate(rows or []):
            result.append({
                'index': index,
                'path': path,
                'size': size,
                'progress': (done_chunks / chunks) if chunks else 0,
                # rTorrent file priorities: 0 off, 1 normal, 2 high
                'priority': priority,
            })
        return result

    async def get_trackers_and_peers(self, hashes) -> dict:
        """{hash: {'trackers': rows, 'peers': rows}} for every hash, in one request."""
        await self.ensure_logged_in()
        hashes = [h.lower() for h in as_list(hashes)]
        if not hashes:
            return {}
        calls = []
        for hash_val in hashes:
            calls.append(("t.multicall", [hash_val.upper(), ""] + TRACKER_FIELDS))
            calls.append(("p.multicall", [hash_val.upper(), ""] + PEER_FIELDS))
        values = await self.multicall(calls)
        return {
            hash_val: {'trackers': values[2 * i] or [], 'peers': values[2 * i + 1] or []}
            for i, hash_val in enumerate(hashes)
        }

    async def get_global_stats(self) -> dict:
        await self.ensure_logged_in()
        down_rate, up_rate, down_total, up_total, port = await self.multicall([
            ("throttle.global_down.rate", []),
            ("throttle.global_up.rate", []),
            ("throttle.global_down.total", []),
            ("throttle.global_up.total", []),
            ("network.listen.port", []),
        ])
        return {
            'downloadSpeed': down_rate or 0,
            'uploadSpeed': up_rate or 0,
            'downloadTotal': down_total or 0,
            'uploadTotal': up_total or 0,
            'listenPort': port or None,
        }

    async def get_listen_port(self):
        await self.ensure_logged_in()
        return await self._call("network.listen.port")

    async def get_default_directory(self) -> str:
        await self.ensure_logged_in()
        return await self._call("directory.default")

    # --- CONTROL ---

    async def _each(self, command: str, hashes, *extra) -> None:
        await self.ensure_logged_in()
        for hash_val in as_list(hashes):
            await self._call(command, [hash_val.upper(), *extra])

    async def pause(self, hashes) -> None:
        await self._each("d.stop", hashes)

    async def resume(self, hashes) -> None:
        await self._each("d.start", hashes)

    async def close(self, hashes) -> None:
        """Fully closes the item, releasing its file handles."""
        await self._each("d.close", hashes)

    async def remove(self, hash_val: str, delete_files: bool = False) -> None:
        if delete_files:
            # d.erase only forgets the item; rTorrent has no call that deletes data
            raise RemoteError("rTorrent cannot delete downloaded data, remove without deleting files")
        await self._each("d.erase", hash_val)

    async def move(self, hashes, destination: str) -> None:
        # Points rTorrent at the new directory; the data itself is not moved
        await self._each("d.directory.set", hashes, destination)

    async def recheck(self, hashes) -> None:
        await self._each("d.check_hash", hashes)

    async def reannounce(self, hashes) -> None:
        await self._each("d.tracker_announce", hashes)

    async def set_label(self, hashes, label: str) -> None:
        await self._each(f"{LABEL_ATTR}.set", hashes, quote(label or ""))

    def _load_commands(self, options: dict) -> list:
        commands = []
        if options.get('label'):
            commands.append(f'{LABEL_ATTR}.set="{quote(options["label"])}"')
        if options.get('directory'):
            commands.append(f'd.directory.set="{options["directory"]}"')
        return commands

    async def add_magnet(self, uri: str, options: dict = None):
        await self.ensure_logged_in()
        options = options or {}
        method = "load.start_verbose" if options.get('start', True) else "load.verbose"
        await self._call(method, ["", uri] + self._load_commands(options))
        return parse_magnet_uri(uri)['hash']

    async def add_torrent_file(self, payload: bytes, options: dict = None):
        await self.ensure_logged_in()
        options = options or {}
        method = "load.raw_start_verbose" if options.get('start', True) else "load.raw_verbose"
        await self._call(method, ["", bytes(payload)] + self._load_commands(options))
        return info_hash_from_payload(payload)

    # --- LABELS ---

    async def get_labels(self) -> list:
        """Labels only exist on items: the set in use across all of them."""
        await self.ensure_logged_in()
        rows = await self._call("d.multicall2", ["", "main", f"{LABEL_ATTR}="])
        return sorted({unquote(row[0]) for row in rows or [] if row and row[0]})
