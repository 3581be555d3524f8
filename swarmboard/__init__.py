"""SwarmBoard: one view over Deluge, qBittorrent, Transmission and aMule."""

__version__ = "0.1.0"
