# swarmboard/clients/__init__.py
from ..errors import ConfigurationError
from .amule import AmuleClient, ECClient
from .base import ProtocolClient
from .deluge import DelugeClient
from .qbittorrent import QBittorrentClient
from .rtorrent import RTorrentClient
from .transmission import TransmissionClient

# Registry mapping config strings to Client Classes
CLIENT_MAP = {
    "amule": AmuleClient,
    "deluge": DelugeClient,
    "qbittorrent": QBittorrentClient,
    "rtorrent": RTorrentClient,
    "transmission": TransmissionClient,
}


def get_protocol_client(client_type, config, transport=None):
    """
    Factory function to create the appropriate protocol client instance.
    """
    client_class = CLIENT_MAP.get((client_type or "").lower())
    if client_class:
        return client_class(config, transport=transport)

    raise ConfigurationError(f"Unsupported client type: {client_type}")


def get_client_display_name(client_type):
    """
    Retrieves the display name defined in the client class itself.
    """
    client_class = CLIENT_MAP.get((client_type or "").lower())
    if client_class and client_class.display_name:
        return client_class.display_name

    # Fallback to title case if class not found
    return (client_type or "").title()


def get_available_clients():
    """
    Returns a sorted list of dictionaries for the UI.
    Example: [{'id': 'qbittorrent', 'name': 'qBittorrent'}, ...]
    """
    options = [
        {'id': client_id, 'name': get_client_display_name(client_id)}
        for client_id in CLIENT_MAP
    ]
    return sorted(options, key=lambda x: x['name'])


__all__ = [
    "AmuleClient",
    "CLIENT_MAP",
    "DelugeClient",
    "ECClient",
    "ProtocolClient",
    "QBittorrentClient",
    "RTorrentClient",
    "TransmissionClient",
    "get_available_clients",
    "get_client_display_name",
    "get_protocol_client",
]
