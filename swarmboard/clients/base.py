# swarmboard/clients/base.py
from abc import ABC, abstractmethod

import httpx

from ..errors import Timeout, TransportError


class ProtocolClient(ABC):
    """
    One logical session with a download-client daemon.

    Subclasses implement their backend's transport (`_call` / `_request`) and
    translate the uniform operations below into wire calls. A client is cheap
    to build: nothing touches the network until `login()` or
    `test_connection()` is awaited.
    """

    # User-friendly name, set by each backend
    display_name = None
    default_port = None
    default_timeout = 30.0

    def __init__(self, config, transport=None):
        self.config = config
        self.host = config.get("host") or "localhost"
        self.port = config.get("port") or self.default_port
        self.username = config.get("username") or ""
        self.password = config.get("password") or ""
        self.use_ssl = bool(config.get("useSsl", False))
        self.timeout = float(config.get("timeout") or self.default_timeout)

        self.base_url = f"{'https' if self.use_ssl else 'http'}://{self.host}:{self.port}"
        # Cookie string, CSRF token, or None depending on the backend
        self.session_artifact = None
        self.connected = False

        # Tests inject an httpx.MockTransport here
        self._transport = transport

    async def _send(self, method: str, url: str, *, timeout=None, **kwargs) -> httpx.Response:
        """
        Performs a single HTTP exchange and normalizes network failures.
        Timeouts and refused connections both surface as `Timeout`.
        """
        try:
            # verify=False handles self-signed certs often found on seedboxes
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=timeout or self.timeout,
                verify=False,
            ) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise Timeout(f"Connection timeout to {self.host}:{self.port}") from e
        except httpx.ConnectError as e:
            raise Timeout(f"Connection refused by {self.host}:{self.port}: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error communicating with {self.display_name}: {e}") from e

    # --- SESSION ---

    @abstractmethod
    async def login(self) -> bool:
        """Authenticates with the backend. Raises AuthFailure when rejected."""

    @abstractmethod
    async def test_connection(self) -> dict:
        """Returns {'success': bool, 'version'?: str, 'error'?: str}. Never raises."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Drops the session (server side where the backend has one)."""

    def is_connected(self) -> bool:
        return self.connected

    async def ensure_logged_in(self) -> None:
        """No-op while the session is live, otherwise logs in."""
        if not self.connected or not self.session_artifact:
            await self.login()

    # --- ITEMS ---

    @abstractmethod
    async def get_torrents(self) -> list:
        """Returns every item as a raw dict carrying a lowercase 'hash' key."""

    @abstractmethod
    async def get_files(self, hash_val: str) -> list:
        """Returns [{'path', 'size', 'progress', 'priority', 'index'}, ...]."""

    @abstractmethod
    async def pause(self, hashes) -> None:
        pass

    @abstractmethod
    async def resume(self, hashes) -> None:
        pass

    @abstractmethod
    async def remove(self, hash_val: str, delete_files: bool = False) -> None:
        pass

    @abstractmethod
    async def move(self, hashes, destination: str) -> None:
        pass

    @abstractmethod
    async def recheck(self, hashes) -> None:
        pass

    @abstractmethod
    async def reannounce(self, hashes) -> None:
        pass

    @abstractmethod
    async def add_magnet(self, uri: str, options: dict = None):
        """Adds a magnet link. Returns the item hash when the backend reports it."""

    @abstractmethod
    async def add_torrent_file(self, payload: bytes, options: dict = None):
        """Adds a raw .torrent payload. Returns the item hash when known."""


def as_list(ids) -> list:
    return list(ids) if isinstance(ids, (list, tuple, set)) else [ids]


def error_text(err: BaseException) -> str:
    cause = err.__cause__
    if cause is not None and str(cause) and str(cause) not in str(err):
        return f"{err} ({cause})"
    return str(err) or err.__class__.__name__
