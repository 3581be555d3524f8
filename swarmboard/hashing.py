# swarmboard/hashing.py - Info hash and metadata extraction for added items
import base64
import hashlib
from urllib.parse import parse_qs, unquote_plus, urlparse

import bencodepy
import httpx

from .errors import RemoteError, TransportError


def _info_dict(payload: bytes):
    try:
        torrent_data = bencodepy.decode(payload)
    except Exception as e:
        raise RemoteError(f"Invalid torrent payload: {e}") from e
    if not isinstance(torrent_data, dict) or b'info' not in torrent_data:
        raise RemoteError("Invalid torrent payload: missing info dictionary")
    return torrent_data[b'info']


def info_hash_from_payload(payload: bytes) -> str:
    """Returns the lowercase hex SHA1 of the bencoded info dictionary."""
    bencoded_info = bencodepy.encode(_info_dict(payload))
    return hashlib.sha1(bencoded_info).hexdigest()


def parse_torrent_payload(payload: bytes) -> dict:
    """
    Extracts {'hash', 'name', 'size'} from a raw .torrent file.
    Size is the sum of all file lengths for multi-file torrents.
    """
    info = _info_dict(payload)
    name = info.get(b'name', b'')
    if isinstance(name, bytes):
        name = name.decode('utf-8', errors='replace')

    if b'files' in info:
        size = sum(f.get(b'length', 0) for f in info[b'files'])
    else:
        size = info.get(b'length', 0)

    return {
        'hash': hashlib.sha1(bencodepy.encode(info)).hexdigest(),
        'name': name,
        'size': size,
    }


def parse_magnet_uri(uri: str) -> dict:
    """
    Extracts {'hash', 'name'} from a magnet link. Base32 btih values are
    converted to hex. Returns hash None when the link has no btih topic.
    """
    parsed = urlparse(uri)
    if parsed.scheme != 'magnet':
        raise ValueError(f"Not a magnet link: {uri[:40]}")

    query = parse_qs(parsed.query)
    info_hash = None
    for topic in query.get('xt', []):
        if not topic.lower().startswith('urn:btih:'):
            continue
        value = topic[9:]
        if len(value) == 32:
            value = base64.b32decode(value.upper()).hex()
        info_hash = value.lower()
        break

    names = query.get('dn', [])
    return {
        'hash': info_hash,
        'name': unquote_plus(names[0]) if names else None,
    }


async def fetch_torrent_payload(url: str, timeout: float = 10) -> bytes:
    """Downloads a .torrent file and checks it decodes before returning it."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=timeout, follow_redirects=True)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise RemoteError(f"Torrent download failed: {e}", status=e.response.status_code) from e
    except httpx.RequestError as e:
        raise TransportError(f"Torrent download failed: {e}") from e

    _info_dict(response.content)
    return response.content
