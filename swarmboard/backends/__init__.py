from ..errors import ConfigurationError
from .amule import AmuleOps
from .base import BackendOps, Grouping
from .deluge import DelugeOps
from .qbittorrent import QBittorrentOps
from .rtorrent import RTorrentOps
from .transmission import TransmissionOps

BACKEND_MAP = {
    "amule": AmuleOps,
    "deluge": DelugeOps,
    "qbittorrent": QBittorrentOps,
    "rtorrent": RTorrentOps,
    "transmission": TransmissionOps,
}


def get_backend_ops(client_type, **kwargs) -> BackendOps:
    ops_class = BACKEND_MAP.get((client_type or "").lower())
    if ops_class is None:
        raise ConfigurationError(f"Unsupported client type: {client_type}")
    return ops_class(**kwargs)


__all__ = [
    "AmuleOps",
    "BACKEND_MAP",
    "BackendOps",
    "DelugeOps",
    "Grouping",
    "QBittorrentOps",
    "RTorrentOps",
    "TransmissionOps",
    "get_backend_ops",
]
